"""
Pairwise Key Agreement

Each user owns a long-lived identity key pair and a re-publishable prekey
pair. Two users agree on a session key by running X25519 between their own
prekey private key and the peer's published prekey, then feeding the shared
secret and the sorted pair of user ids through a double SHA-256.

The derivation is deterministic, so neither side transmits any
key-confirmation material. When a peer republishes its prekey the old
session key silently stops working; callers detect that through
decryption failure.
"""

from typing import Dict, Optional
from dataclasses import dataclass
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey

from .primitives import (
    generate_dh_keypair,
    dh_exchange,
    session_kdf,
    serialize_public_key,
    deserialize_public_key,
    serialize_private_key,
    deserialize_private_key,
    InvalidPeerKey,
)


@dataclass
class KeyPair:
    """
    X25519 key pair used both for identity and prekeys.

    Attributes:
        private_key: Private half, never leaves the owning client
        public_key: Public half, published to the directory
    """
    private_key: X25519PrivateKey
    public_key: X25519PublicKey

    @property
    def public_bytes(self) -> bytes:
        return serialize_public_key(self.public_key)

    @property
    def public_hex(self) -> str:
        return self.public_bytes.hex()

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            'pub': self.public_hex,
            'priv': serialize_private_key(self.private_key).hex()
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'KeyPair':
        """Create from dictionary"""
        private_key = deserialize_private_key(bytes.fromhex(data['priv']))
        return cls(private_key=private_key, public_key=private_key.public_key())


def generate_keypair() -> KeyPair:
    """
    Generate a fresh X25519 key pair from the OS random source.

    Raises:
        KeyGenError: If the backend cannot produce a key
    """
    private_key, public_key = generate_dh_keypair()
    return KeyPair(private_key=private_key, public_key=public_key)


def public_key_from_hex(value: Optional[str]) -> X25519PublicKey:
    """
    Parse a hex-encoded raw public key.

    Raises:
        InvalidPeerKey: If the value is missing, not hex, or not 32 bytes
    """
    if not value:
        raise InvalidPeerKey("Public key is empty")
    try:
        raw = bytes.fromhex(value)
    except ValueError as e:
        raise InvalidPeerKey("Public key is not valid hex") from e
    return deserialize_public_key(raw)


def derive_shared_secret(local_private: X25519PrivateKey, remote_public) -> bytes:
    """
    Run X25519 between our private key and the peer's public key.

    Args:
        local_private: Our prekey private key
        remote_public: Peer public key as an object, raw bytes or hex string

    Returns:
        32-byte shared secret

    Raises:
        InvalidPeerKey: If the remote key is malformed or low-order
    """
    if isinstance(remote_public, str):
        remote_public = public_key_from_hex(remote_public)
    elif isinstance(remote_public, (bytes, bytearray)):
        remote_public = deserialize_public_key(bytes(remote_public))
    return dh_exchange(local_private, remote_public)


def derive_session_key(shared_secret: bytes, local_id: str, remote_id: str) -> bytes:
    """
    Derive the 32-byte session key for a pair of users.

    derive_session_key(s, a, b) == derive_session_key(s, b, a) for all inputs.
    """
    return session_kdf(shared_secret, local_id, remote_id)
