"""
Request/response operations exposed over the RPC boundary.

Each method takes plain values and returns a JSON-ready dict, raising a
``ChatError`` subclass on failure. The HTTP layer is a thin mapping onto
these methods.
"""

from typing import Iterable, Optional

from .config import Settings
from .errors import UserUnknown
from .groups import GroupDirectory, SUCCESSION_POLICIES
from .mailbox import MessageRouter
from .registry import UserRegistry
from .store import KeyValueStore, create_store


class ChatService:
    """Directory, group and relay operations over one store"""

    def __init__(self, store: KeyValueStore, settings: Optional[Settings] = None):
        settings = settings or Settings()
        self.store = store
        self.registry = UserRegistry(store)
        self.groups = GroupDirectory(store, self.registry,
                                     succession=SUCCESSION_POLICIES[settings.creator_succession])
        self.router = MessageRouter(store, self.registry, self.groups,
                                    max_queue_length=settings.max_queue_length)

    @classmethod
    def from_settings(cls, settings: Settings) -> 'ChatService':
        return cls(create_store(settings.database_url), settings)

    # Users and prekeys

    def register(self, user: str, identity_pub: str) -> dict:
        self.registry.register(user, identity_pub)
        joined = self.groups.consume_invites(user)
        return {'success': True, 'auto_joined_groups': joined}

    def publish_prekey(self, user: str, prekey_pub: str) -> dict:
        self.registry.publish_prekey(user, prekey_pub)
        return {'success': True}

    def fetch_prekey(self, user: str) -> dict:
        return {'x25519_pub': self.registry.fetch_prekey(user)}

    def check_invites(self, user: str) -> dict:
        if not self.registry.is_registered(user):
            raise UserUnknown(f"User {user} is not registered")
        had_invites = bool(self.groups.pending_invites(user))
        joined = self.groups.consume_invites(user)
        return {'joined_groups': joined, 'had_pending_invites': had_invites}

    # Private messages

    def send_private(self, sender: str, recipient: str, envelope: str) -> dict:
        item = self.router.send_private(sender, recipient, envelope)
        return {'success': True, 'timestamp': item.timestamp}

    def fetch_private(self, user: str) -> dict:
        return {'messages': [item.to_dict() for item in self.router.fetch_private(user)]}

    def clear_private(self, user: str) -> dict:
        return {'success': True, 'cleared': self.router.clear(user)}

    # Groups

    def create_group(self, group_id: str, creator: str, members: Iterable[str]) -> dict:
        group = self.groups.create(group_id, creator, members)
        return {
            'success': True,
            'members': group.members,
            'pending_members': group.pending_members,
            'version': group.version
        }

    def force_add_member(self, group_id: str, user: str) -> dict:
        group = self.groups.force_add(group_id, user)
        return {'success': True, 'members': group.members, 'version': group.version}

    def remove_member(self, group_id: str, target: str, actor: str) -> dict:
        removal = self.groups.remove_member(group_id, actor, target)
        if removal.destroyed:
            return {
                'success': True,
                'group_deleted': True,
                'members': [],
                'version': 0,
                'creator': None,
                'new_creator': None
            }
        return {
            'success': True,
            'group_deleted': False,
            'members': removal.group.members,
            'version': removal.group.version,
            'creator': removal.group.creator,
            'new_creator': removal.new_creator
        }

    def send_group(self, group_id: str, sender: str, envelope: str,
                   expected_version: Optional[int] = None) -> dict:
        delivery = self.router.enqueue_group(group_id, sender, envelope, expected_version)
        return {
            'success': True,
            'delivered_to': delivery.delivered,
            'failed': list(delivery.failed),
            'failure_reasons': delivery.failed,
            'group_version': delivery.version,
            'stale': delivery.stale
        }

    def fetch_group(self, group_id: str, user: str) -> dict:
        group = self.groups.info(group_id)
        items = self.router.fetch_group(group, user)
        return {
            'messages': [item.to_dict() for item in items],
            'current_version': group.version,
            'group_members': group.members
        }

    def group_info(self, group_id: str) -> dict:
        group = self.groups.info(group_id)
        info = group.snapshot()
        info['group_id'] = group.group_id
        info['created_at'] = group.created_at
        return info

    def list_user_groups(self, user: str) -> dict:
        return {'groups': self.groups.groups_for(user)}

    def status(self) -> dict:
        queues = self.router.queue_stats()
        return {
            'server': 'online',
            **self.registry.stats(),
            **self.groups.stats(),
            'active_queues': len(queues),
            'queued_messages': sum(queues.values())
        }
