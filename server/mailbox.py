"""
Per-recipient inbox queues.

The relay never looks inside envelopes; it only appends them to the
recipient's FIFO queue and hands them back on fetch.

Every fetch is one-shot: the entries returned are removed from the queue
in the same critical section. ``fetch_private`` takes only entries with no
group, ``fetch_group`` only entries of one group, ``fetch_all`` everything.
A client that fails to decrypt a fetched entry cannot fetch it again.
"""

import logging
from typing import Callable, Dict, List, Optional
from dataclasses import dataclass, field

from crypto.envelope import now_ms

from .errors import Forbidden, QueueFull, RecipientNoPrekey, RecipientUnknown
from .groups import Group, GroupDirectory
from .registry import UserRegistry
from .store import KeyValueStore, KeyedLocks

logger = logging.getLogger(__name__)

QUEUES = "queues"


@dataclass
class InboxItem:
    """One queued delivery"""
    sender: str
    envelope: str
    timestamp: int
    group_id: Optional[str] = None
    group_version: Optional[int] = None

    def to_dict(self) -> Dict:
        data = {
            'sender': self.sender,
            'envelope': self.envelope,
            'timestamp': self.timestamp
        }
        if self.group_id is not None:
            data['group_id'] = self.group_id
            data['group_version'] = self.group_version
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'InboxItem':
        return cls(
            sender=data['sender'],
            envelope=data['envelope'],
            timestamp=data['timestamp'],
            group_id=data.get('group_id'),
            group_version=data.get('group_version')
        )


@dataclass
class GroupDelivery:
    """Per-member outcome of a group send"""
    delivered: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    version: int = 0
    stale: bool = False


class MessageRouter:
    """Queues envelopes for recipients and drains them on fetch"""

    def __init__(self, store: KeyValueStore, registry: UserRegistry, groups: GroupDirectory,
                 max_queue_length: int = 1000):
        self.store = store
        self.registry = registry
        self.groups = groups
        self.max_queue_length = max_queue_length
        self._locks = KeyedLocks()

    def enqueue(self, recipient: str, item: InboxItem) -> None:
        """
        Append to the recipient's queue.

        Raises:
            RecipientUnknown: If the recipient never registered
            RecipientNoPrekey: If the recipient has not published a prekey
            QueueFull: If the queue is at its configured cap
        """
        if not self.registry.is_registered(recipient):
            raise RecipientUnknown(f"{recipient} is not registered")
        if not self.registry.has_prekey(recipient):
            raise RecipientNoPrekey(f"{recipient} has no published prekey")

        with self._locks(recipient):
            queue = self.store.get(QUEUES, recipient) or []
            if self.max_queue_length and len(queue) >= self.max_queue_length:
                raise QueueFull(f"Inbox of {recipient} is full")
            queue.append(item.to_dict())
            self.store.put(QUEUES, recipient, queue)

    def send_private(self, sender: str, recipient: str, envelope: str) -> InboxItem:
        item = InboxItem(sender=sender, envelope=envelope, timestamp=now_ms())
        self.enqueue(recipient, item)
        logger.info("Private message %s -> %s", sender, recipient)
        return item

    def enqueue_group(self, group_id: str, sender: str, envelope: str,
                      expected_version: Optional[int] = None) -> GroupDelivery:
        """
        Copy one envelope to every other current member.

        Members that cannot take delivery are reported in ``failed`` with
        the error code instead of aborting the send. A mismatched
        ``expected_version`` is reported as ``stale`` and does not block
        delivery.

        Raises:
            GroupNotFound: If the group does not exist
            Forbidden: If the sender is not a member
        """
        group = self.groups.info(group_id)
        if sender not in group.members:
            raise Forbidden(f"{sender} is not a member of {group_id}")

        result = GroupDelivery(
            version=group.version,
            stale=expected_version is not None and expected_version != group.version
        )
        timestamp = now_ms()
        for member in group.members:
            if member == sender:
                continue
            item = InboxItem(sender=sender, envelope=envelope, timestamp=timestamp,
                             group_id=group_id, group_version=group.version)
            try:
                self.enqueue(member, item)
            except (RecipientUnknown, RecipientNoPrekey, QueueFull) as e:
                logger.warning("Group %s: delivery to %s failed: %s", group_id, member, e.code)
                result.failed[member] = e.code
                continue
            result.delivered.append(member)

        logger.info("Group %s message from %s delivered=%d failed=%d",
                    group_id, sender, len(result.delivered), len(result.failed))
        return result

    def _drain(self, user: str, wanted: Callable[[Dict], bool]) -> List[InboxItem]:
        with self._locks(user):
            queue = self.store.get(QUEUES, user) or []
            taken = [entry for entry in queue if wanted(entry)]
            if taken:
                self.store.put(QUEUES, user, [entry for entry in queue if not wanted(entry)])
        return [InboxItem.from_dict(entry) for entry in taken]

    def fetch_all(self, user: str) -> List[InboxItem]:
        return self._drain(user, lambda entry: True)

    def fetch_private(self, user: str) -> List[InboxItem]:
        items = self._drain(user, lambda entry: entry.get('group_id') is None)
        if items:
            logger.info("Delivering %d private messages to %s", len(items), user)
        return items

    def fetch_group(self, group: Group, user: str) -> List[InboxItem]:
        """
        Drain one group's entries for a member.

        Takes the group snapshot the caller already read, so the caller can
        answer from it even if the group is destroyed after the drain.

        Raises:
            Forbidden: If the user is not a member
        """
        if user not in group.members:
            raise Forbidden(f"{user} is not a member of {group.group_id}")
        items = self._drain(user, lambda entry: entry.get('group_id') == group.group_id)
        if items:
            logger.info("Delivering %d messages of %s to %s", len(items), group.group_id, user)
        return items

    def clear(self, user: str) -> int:
        """Drop every queued entry for a user"""
        return len(self.fetch_all(user))

    def queue_stats(self) -> Dict[str, int]:
        return {user: len(queue) for user, queue in self.store.items(QUEUES)}
