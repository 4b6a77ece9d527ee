"""
Cryptographic module for end-to-end encrypted chat.

Implements a pairwise session scheme with:
- X25519 key agreement between published prekeys
- Deterministic double-SHA-256 session key derivation
- AES-256-GCM message envelopes
"""

from .primitives import (
    CryptoError,
    KeyGenError,
    InvalidPeerKey,
    DecryptionFailed,
    encrypt_message,
    decrypt_message,
)
from .key_agreement import (
    KeyPair,
    generate_keypair,
    derive_shared_secret,
    derive_session_key,
    public_key_from_hex,
)
from .envelope import Envelope, seal, open_envelope, encode_bundle, decode_bundle

__all__ = [
    'CryptoError',
    'KeyGenError',
    'InvalidPeerKey',
    'DecryptionFailed',
    'encrypt_message',
    'decrypt_message',
    'KeyPair',
    'generate_keypair',
    'derive_shared_secret',
    'derive_session_key',
    'public_key_from_hex',
    'Envelope',
    'seal',
    'open_envelope',
    'encode_bundle',
    'decode_bundle',
]
