"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational operations used by the pairwise
session scheme: X25519 key agreement, the double-SHA-256 session KDF and
AES-256-GCM authenticated encryption.
"""

import os
import hashlib
from typing import Tuple
from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class KeyGenError(CryptoError):
    """Raised when a key pair cannot be generated"""
    pass


class InvalidPeerKey(CryptoError):
    """Raised when a remote public key is malformed or unusable"""
    pass


class DecryptionFailed(CryptoError):
    """Raised when a ciphertext does not authenticate under the given key"""
    pass


def generate_dh_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a Curve25519 Diffie-Hellman keypair for key exchange.

    Returns:
        Tuple of (private_key, public_key)

    Raises:
        KeyGenError: If the backend cannot produce a key
    """
    try:
        private_key = X25519PrivateKey.generate()
    except (UnsupportedAlgorithm, OSError) as e:
        raise KeyGenError(f"Key generation failed: {e}") from e
    public_key = private_key.public_key()
    return private_key, public_key


def dh_exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """
    Perform Diffie-Hellman key exchange.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret

    Raises:
        InvalidPeerKey: If the peer key is a low-order point
    """
    try:
        return private_key.exchange(public_key)
    except ValueError as e:
        # cryptography rejects exchanges that produce an all-zero secret
        raise InvalidPeerKey(f"Key exchange rejected peer key: {e}") from e


def session_kdf(shared_secret: bytes, first_id: str, second_id: str) -> bytes:
    """
    Double SHA-256 over the shared secret and the canonical user pair.

    The pair is sorted so both participants compute the same key no matter
    who initiates. No randomness is involved.
    """
    low, high = sorted((first_id, second_id))
    seed = f"{low}-{high}-session-key".encode("utf-8")
    key = hashlib.sha256(shared_secret + seed).digest()
    key = hashlib.sha256(key).digest()
    return key[:KEY_SIZE]


def encrypt_message(key: bytes, plaintext: bytes, associated_data: bytes = b"") -> Tuple[bytes, bytes, bytes]:
    """
    Encrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        Tuple of (nonce (12 bytes), tag (16 bytes), ciphertext)
    """
    if len(key) != KEY_SIZE:
        raise CryptoError(f"Key must be {KEY_SIZE} bytes")

    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    sealed = aesgcm.encrypt(nonce, plaintext, associated_data)
    return nonce, sealed[-TAG_SIZE:], sealed[:-TAG_SIZE]


def decrypt_message(key: bytes, nonce: bytes, tag: bytes, ciphertext: bytes,
                    associated_data: bytes = b"") -> bytes:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        nonce: 12-byte nonce used at encryption time
        tag: 16-byte authentication tag
        ciphertext: Encrypted message body
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionFailed: If the key, nonce or tag is malformed or the tag
            does not verify
    """
    if len(key) != KEY_SIZE:
        raise DecryptionFailed("Key has wrong length")
    if len(nonce) != NONCE_SIZE:
        raise DecryptionFailed("Nonce has wrong length")
    if len(tag) != TAG_SIZE:
        raise DecryptionFailed("Tag has wrong length")

    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, ciphertext + tag, associated_data)
    except InvalidTag as e:
        raise DecryptionFailed("Authentication tag did not verify") from e


def serialize_public_key(public_key: X25519PublicKey) -> bytes:
    """Serialize X25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_public_key(key_bytes: bytes) -> X25519PublicKey:
    """Deserialize bytes to X25519 public key"""
    if len(key_bytes) != KEY_SIZE:
        raise InvalidPeerKey(f"Public key must be {KEY_SIZE} bytes, got {len(key_bytes)}")
    try:
        return X25519PublicKey.from_public_bytes(key_bytes)
    except ValueError as e:
        raise InvalidPeerKey(f"Invalid public key: {e}") from e


def serialize_private_key(private_key: X25519PrivateKey) -> bytes:
    """Serialize X25519 private key to raw bytes"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )


def deserialize_private_key(key_bytes: bytes) -> X25519PrivateKey:
    """Deserialize raw bytes to X25519 private key"""
    if len(key_bytes) != KEY_SIZE:
        raise CryptoError(f"Private key must be {KEY_SIZE} bytes")
    return X25519PrivateKey.from_private_bytes(key_bytes)

