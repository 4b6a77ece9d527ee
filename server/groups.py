"""
Authoritative group directory.

A group is active while it has members and is deleted outright when the
last member leaves. Every membership change (join, forced add, removal)
bumps ``version`` by one; message traffic never does.

The version is only a staleness signal telling clients to re-read the
member list before trusting who can read a group message. No key is
rotated when it changes: group messages are still encrypted under the
pairwise session keys, so a removed member who kept an old session key
with a sender could still decrypt anything that sender addressed to it.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Iterable
from dataclasses import dataclass, field, asdict

from .errors import (
    GroupExists,
    GroupNotFound,
    UnknownCreator,
    AlreadyMember,
    NotMember,
    Forbidden,
)
from .registry import UserRegistry
from .store import KeyValueStore, KeyedLocks

logger = logging.getLogger(__name__)

GROUPS = "groups"
INVITES = "invites"


@dataclass
class Group:
    """Snapshot of one group's state"""
    group_id: str
    creator: str
    members: List[str]
    pending_members: List[str] = field(default_factory=list)
    version: int = 1
    created_at: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'Group':
        return cls(**data)

    def snapshot(self) -> Dict:
        """Public view returned by info queries"""
        return {
            'creator': self.creator,
            'members': list(self.members),
            'pending_members': list(self.pending_members),
            'version': self.version
        }


@dataclass
class Removal:
    """Outcome of remove_member"""
    group_id: str
    removed: str
    destroyed: bool
    group: Optional[Group] = None
    new_creator: Optional[str] = None


def first_remaining(group: Group) -> str:
    return group.members[0]


def alphabetical(group: Group) -> str:
    return min(group.members)


SUCCESSION_POLICIES: Dict[str, Callable[[Group], str]] = {
    'first': first_remaining,
    'alphabetical': alphabetical,
}


def _unique(names: Iterable[str]) -> List[str]:
    seen = []
    for name in names:
        if name and name not in seen:
            seen.append(name)
    return seen


class GroupDirectory:
    """
    Group membership state machine.

    Each group is read, modified and written back under its own lock so two
    concurrent membership changes can never compute the same next version.
    """

    def __init__(self, store: KeyValueStore, registry: UserRegistry,
                 succession: Callable[[Group], str] = first_remaining):
        self.store = store
        self.registry = registry
        self.succession = succession
        self._locks = KeyedLocks()
        self._invite_locks = KeyedLocks()

    def _load(self, group_id: str) -> Optional[Group]:
        data = self.store.get(GROUPS, group_id)
        return Group.from_dict(data) if data is not None else None

    def _save(self, group: Group) -> None:
        self.store.put(GROUPS, group.group_id, group.to_dict())

    def _add_invite(self, user: str, group_id: str) -> None:
        with self._invite_locks(user):
            invites = self.store.get(INVITES, user) or []
            if group_id not in invites:
                invites.append(group_id)
                self.store.put(INVITES, user, invites)

    def create(self, group_id: str, creator: str, requested_members: Iterable[str]) -> Group:
        """
        Create a group.

        Registered requested members join immediately; the rest become
        pending and receive an invite that is honoured when they register.

        Raises:
            UnknownCreator: If the creator is not registered
            GroupExists: If the id is taken
        """
        if not self.registry.is_registered(creator):
            raise UnknownCreator(f"Creator {creator} is not registered")

        with self._locks(group_id):
            if self._load(group_id) is not None:
                raise GroupExists(f"Group {group_id} already exists")

            members = [creator]
            pending = []
            for member in _unique(requested_members):
                if member == creator:
                    continue
                if self.registry.is_registered(member):
                    members.append(member)
                else:
                    pending.append(member)

            # Invites exist before the group is saved; anyone who registered
            # in the meantime joins now.
            for member in pending:
                self._add_invite(member, group_id)
            for member in list(pending):
                if self.registry.is_registered(member):
                    pending.remove(member)
                    members.append(member)

            group = Group(
                group_id=group_id,
                creator=creator,
                members=members,
                pending_members=pending,
                version=1,
                created_at=datetime.now(timezone.utc).isoformat()
            )
            self._save(group)

        logger.info("Group %s created by %s members=%s pending=%s",
                    group_id, creator, members, pending)
        return group

    def consume_invites(self, user: str) -> List[str]:
        """
        Join every group that still lists the user as pending.

        All of the user's invites are consumed, including ones whose group
        has since been destroyed or no longer lists the user.

        Returns:
            Ids of the groups joined
        """
        with self._invite_locks(user):
            invites = self.store.get(INVITES, user) or []
            if invites:
                self.store.delete(INVITES, user)

        joined = []
        for group_id in invites:
            with self._locks(group_id):
                group = self._load(group_id)
                if group is None or user not in group.pending_members:
                    logger.debug("Dropping stale invite of %s to %s", user, group_id)
                    continue
                group.pending_members.remove(user)
                group.members.append(user)
                group.version += 1
                self._save(group)
            joined.append(group_id)
            logger.info("%s joined %s from invite (v%d)", user, group_id, group.version)
        return joined

    def force_add(self, group_id: str, user: str) -> Group:
        """
        Add a user directly, clearing any pending entry.

        Raises:
            GroupNotFound: If the group does not exist
            AlreadyMember: If the user is already a member
        """
        with self._locks(group_id):
            group = self._load(group_id)
            if group is None:
                raise GroupNotFound(f"Group {group_id} not found")
            if user in group.members:
                raise AlreadyMember(f"{user} is already in {group_id}")
            group.members.append(user)
            if user in group.pending_members:
                group.pending_members.remove(user)
            group.version += 1
            self._save(group)

        logger.info("%s added to %s (v%d)", user, group_id, group.version)
        return group

    def remove_member(self, group_id: str, actor: str, target: str) -> Removal:
        """
        Remove a member or pending member.

        Only the creator, or the target removing themself, may do this.
        An emptied group is destroyed. If the creator leaves, the
        succession policy picks the new creator.

        Raises:
            GroupNotFound: If the group does not exist
            Forbidden: If the actor is neither the creator nor the target
            NotMember: If the target is neither a member nor pending
        """
        with self._locks(group_id):
            group = self._load(group_id)
            if group is None:
                raise GroupNotFound(f"Group {group_id} not found")
            if actor != group.creator and actor != target:
                raise Forbidden(f"{actor} may not remove {target} from {group_id}")
            if target not in group.members and target not in group.pending_members:
                raise NotMember(f"{target} is not in {group_id}")

            group.members = [m for m in group.members if m != target]
            group.pending_members = [m for m in group.pending_members if m != target]

            if not group.members:
                self.store.delete(GROUPS, group_id)
                logger.info("Group %s deleted (no members left)", group_id)
                return Removal(group_id=group_id, removed=target, destroyed=True)

            new_creator = None
            if target == group.creator:
                group.creator = new_creator = self.succession(group)
            group.version += 1
            self._save(group)

        if new_creator:
            logger.info("Creator of %s passed to %s", group_id, new_creator)
        logger.info("%s removed from %s by %s (v%d)", target, group_id, actor, group.version)
        return Removal(group_id=group_id, removed=target, destroyed=False,
                       group=group, new_creator=new_creator)

    def info(self, group_id: str) -> Group:
        """
        Raises:
            GroupNotFound: If the group does not exist
        """
        group = self._load(group_id)
        if group is None:
            raise GroupNotFound(f"Group {group_id} not found")
        return group

    def groups_for(self, user: str) -> Dict[str, Dict]:
        """Snapshots of every group the user is a member of"""
        return {
            group_id: Group.from_dict(data).snapshot()
            for group_id, data in self.store.items(GROUPS)
            if user in data['members']
        }

    def pending_invites(self, user: str) -> List[str]:
        return list(self.store.get(INVITES, user) or [])

    def stats(self) -> dict:
        return {
            'groups': self.store.count(GROUPS),
            'pending_invites': self.store.count(INVITES)
        }
