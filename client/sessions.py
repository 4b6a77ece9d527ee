"""
Client-side session cache.

A session key is a pure function of our prekey private key, the peer's
published prekey and the two user ids, so it is derived lazily and cached.
There is no lock around derivation: concurrent callers for the same peer
compute the same bytes. Only the cache write is serialized.

When the peer republishes its prekey the cached key silently goes stale;
the first decryption failure evicts it and the next use re-derives.
"""

import logging
import threading
from typing import Callable, Dict, Optional, Union
from dataclasses import dataclass

from crypto import (
    KeyPair,
    Envelope,
    DecryptionFailed,
    derive_shared_secret,
    derive_session_key,
    seal,
    open_envelope,
)
from crypto.primitives import KEY_SIZE

from .storage import ClientStorage, SESSIONS

logger = logging.getLogger(__name__)


class ClientError(Exception):
    """A local precondition for a client operation is not met"""
    pass


class NoLocalPrekey(ClientError):
    """Raised when a session is needed before our own prekey exists"""
    pass


@dataclass
class SessionInvalidated:
    """
    Decryption under the cached session failed and the session was dropped.

    The usual cause is a rotated prekey on either side; the next send or
    receive with this peer derives a fresh key.
    """
    peer_id: str
    reason: str


class SessionStore:
    """
    Peer id -> 32-byte session key for one local user.

    Args:
        local_id: Our user id
        storage: Persistence for the ``sessions`` document
        local_prekey: Callable returning our current prekey pair (or None)
        fetch_prekey: Callable returning a peer's published prekey (hex)
    """

    def __init__(self, local_id: str, storage: ClientStorage,
                 local_prekey: Callable[[], Optional[KeyPair]],
                 fetch_prekey: Callable[[str], str]):
        self.local_id = local_id
        self.storage = storage
        self.local_prekey = local_prekey
        self.fetch_prekey = fetch_prekey
        self._lock = threading.Lock()
        self._keys: Dict[str, bytes] = {}
        for peer, key_hex in (storage.load(SESSIONS, {}) or {}).items():
            try:
                self._keys[peer] = bytes.fromhex(key_hex)
            except (TypeError, ValueError):
                logger.debug("Ignoring unreadable stored session for %s", peer)

    def _persist(self):
        self.storage.save(SESSIONS, {peer: key.hex() for peer, key in self._keys.items()})

    def cached(self, peer_id: str) -> Optional[bytes]:
        key = self._keys.get(peer_id)
        if key is not None and len(key) == KEY_SIZE:
            return key
        return None

    def get_or_establish(self, peer_id: str) -> bytes:
        """
        Return the session key for a peer, deriving it if needed.

        Raises:
            NoLocalPrekey: If we have not generated our own prekey
            InvalidPeerKey: If the peer's published prekey is malformed
            RpcError: If the peer's prekey cannot be fetched
        """
        key = self.cached(peer_id)
        if key is not None:
            return key

        prekey = self.local_prekey()
        if prekey is None:
            raise NoLocalPrekey("Upload a prekey before starting sessions")

        logger.info("Establishing session with %s", peer_id)
        peer_prekey = self.fetch_prekey(peer_id)
        shared_secret = derive_shared_secret(prekey.private_key, peer_prekey)
        key = derive_session_key(shared_secret, self.local_id, peer_id)

        with self._lock:
            self._keys[peer_id] = key
            self._persist()
        return key

    def invalidate(self, peer_id: str) -> None:
        with self._lock:
            if self._keys.pop(peer_id, None) is not None:
                self._persist()
                logger.info("Session with %s invalidated", peer_id)

    def clear(self) -> None:
        """Drop every session, e.g. after our own prekey changed"""
        with self._lock:
            self._keys.clear()
            self._persist()

    def encrypt_for(self, peer_id: str, plaintext: bytes, group_version: Optional[int] = None,
                    intended_recipient: Optional[str] = None) -> Envelope:
        key = self.get_or_establish(peer_id)
        return seal(key, plaintext, group_version=group_version,
                    intended_recipient=intended_recipient)

    def decrypt_from(self, peer_id: str, envelope: Envelope) -> Union[bytes, SessionInvalidated]:
        """
        Decrypt a message from a peer.

        Returns the plaintext, or SessionInvalidated after evicting the
        session if the envelope does not authenticate.
        """
        key = self.get_or_establish(peer_id)
        try:
            return open_envelope(key, envelope)
        except DecryptionFailed as e:
            self.invalidate(peer_id)
            return SessionInvalidated(peer_id=peer_id, reason=str(e))
