"""
User and prekey directory.

Identity keys are trusted on first registration and never rotate. Prekeys
may be republished at any time; the directory keeps only the latest one.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from crypto import InvalidPeerKey, public_key_from_hex

from .errors import UserExists, UserUnknown, MalformedKey, PrekeyNotFound
from .store import KeyValueStore, KeyedLocks

logger = logging.getLogger(__name__)

USERS = "users"
PREKEYS = "prekeys"


def _validate_key(value: str, what: str) -> str:
    try:
        public_key_from_hex(value)
    except InvalidPeerKey as e:
        raise MalformedKey(f"Invalid {what}: {e}") from e
    return value.lower()


class UserRegistry:
    """Registered users and their published prekeys"""

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._locks = KeyedLocks()

    def register(self, user: str, identity_pub: str) -> dict:
        """
        Register a new user.

        Raises:
            UserExists: If the name is already taken
            MalformedKey: If the identity key is not a 32-byte X25519 key
        """
        identity_pub = _validate_key(identity_pub, "identity key")
        with self._locks(user):
            if self.store.get(USERS, user) is not None:
                raise UserExists(f"User {user} already registered")
            record = {
                'identity_pub': identity_pub,
                'registered_at': datetime.now(timezone.utc).isoformat()
            }
            self.store.put(USERS, user, record)
        logger.info("Registered user %s", user)
        return record

    def publish_prekey(self, user: str, prekey_pub: str) -> None:
        """
        Store or replace the prekey for a user.

        Raises:
            UserUnknown: If the user never registered
            MalformedKey: If the prekey is not a 32-byte X25519 key
        """
        prekey_pub = _validate_key(prekey_pub, "prekey")
        with self._locks(user):
            if self.store.get(USERS, user) is None:
                raise UserUnknown(f"User {user} is not registered")
            self.store.put(PREKEYS, user, {
                'x25519_pub': prekey_pub,
                'updated_at': datetime.now(timezone.utc).isoformat()
            })
        logger.info("Prekey updated for %s", user)

    def fetch_prekey(self, user: str) -> str:
        """
        Return the current prekey (hex).

        Raises:
            PrekeyNotFound: If no prekey was ever published
        """
        record = self.store.get(PREKEYS, user)
        if record is None:
            raise PrekeyNotFound(f"No prekey published for {user}")
        return record['x25519_pub']

    def get_user(self, user: str) -> Optional[dict]:
        return self.store.get(USERS, user)

    def is_registered(self, user: str) -> bool:
        return self.store.get(USERS, user) is not None

    def has_prekey(self, user: str) -> bool:
        return self.store.get(PREKEYS, user) is not None

    def stats(self) -> dict:
        return {
            'users': self.store.count(USERS),
            'with_prekeys': self.store.count(PREKEYS)
        }
