"""
Encrypted message envelopes.

An envelope carries everything a recipient needs to decrypt one message
under a pairwise session key. It travels as a single opaque base64 blob so
the server never inspects (or needs to understand) the contents.
"""

import base64
import binascii
import json
import time
from typing import Dict, List, Optional
from dataclasses import dataclass

from .primitives import encrypt_message, decrypt_message, DecryptionFailed


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def now_ms() -> int:
    return int(time.time() * 1000)


def _bound_metadata(timestamp: int, group_version: Optional[int],
                    intended_recipient: Optional[str]) -> bytes:
    """Envelope metadata authenticated as AES-GCM associated data"""
    return json.dumps({
        'timestamp': timestamp,
        'group_version': group_version,
        'for_member': intended_recipient
    }, sort_keys=True, separators=(',', ':')).encode("utf-8")


@dataclass
class Envelope:
    """
    Encrypted message container.

    Attributes:
        nonce: 12-byte random AES-GCM nonce
        tag: 16-byte authentication tag
        ciphertext: Encrypted message body
        timestamp: Sender clock in milliseconds
        group_version: Group epoch the sender saw, for group messages
        intended_recipient: Recipient id, for per-member group envelopes
    """
    nonce: bytes
    tag: bytes
    ciphertext: bytes
    timestamp: int
    group_version: Optional[int] = None
    intended_recipient: Optional[str] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        data = {
            'iv': _b64(self.nonce),
            'tag': _b64(self.tag),
            'data': _b64(self.ciphertext),
            'timestamp': self.timestamp
        }
        if self.group_version is not None:
            data['group_version'] = self.group_version
        if self.intended_recipient is not None:
            data['for_member'] = self.intended_recipient
        return data

    def associated_data(self) -> bytes:
        return _bound_metadata(self.timestamp, self.group_version, self.intended_recipient)

    @classmethod
    def from_dict(cls, data: Dict) -> 'Envelope':
        """
        Create from dictionary.

        Raises:
            DecryptionFailed: If fields are missing or not valid base64
        """
        try:
            return cls(
                nonce=_unb64(data['iv']),
                tag=_unb64(data['tag']),
                ciphertext=_unb64(data['data']),
                timestamp=int(data['timestamp']),
                group_version=data.get('group_version'),
                intended_recipient=data.get('for_member')
            )
        except (KeyError, TypeError, ValueError, AttributeError, binascii.Error) as e:
            raise DecryptionFailed(f"Malformed envelope: {e}") from e

    def encode(self) -> str:
        """Encode as an opaque ASCII blob"""
        return _b64(json.dumps(self.to_dict(), separators=(',', ':')).encode("utf-8"))

    @classmethod
    def decode(cls, blob: str) -> 'Envelope':
        """
        Decode an opaque blob produced by encode().

        Raises:
            DecryptionFailed: If the blob is not a valid envelope
        """
        try:
            data = json.loads(_unb64(blob).decode("utf-8"))
        except (ValueError, UnicodeDecodeError, binascii.Error, AttributeError) as e:
            raise DecryptionFailed(f"Malformed envelope: {e}") from e
        if not isinstance(data, dict):
            raise DecryptionFailed("Malformed envelope: expected an object")
        return cls.from_dict(data)


def seal(key: bytes, plaintext: bytes, group_version: Optional[int] = None,
         intended_recipient: Optional[str] = None) -> Envelope:
    """
    Encrypt plaintext under a session key with a fresh random nonce.

    Args:
        key: 32-byte session key
        plaintext: Message bytes
        group_version: Group epoch to stamp on group messages
        intended_recipient: Recipient id for per-member group envelopes

    Returns:
        Envelope ready for encoding
    """
    timestamp = now_ms()
    nonce, tag, ciphertext = encrypt_message(
        key, plaintext, _bound_metadata(timestamp, group_version, intended_recipient))
    return Envelope(
        nonce=nonce,
        tag=tag,
        ciphertext=ciphertext,
        timestamp=timestamp,
        group_version=group_version,
        intended_recipient=intended_recipient
    )


def open_envelope(key: bytes, envelope: Envelope) -> bytes:
    """
    Decrypt an envelope.

    Raises:
        DecryptionFailed: If the tag does not verify, fields are malformed,
            or the metadata was changed in transit
    """
    return decrypt_message(key, envelope.nonce, envelope.tag, envelope.ciphertext,
                           envelope.associated_data())


def encode_bundle(envelopes: List[Envelope]) -> str:
    """Pack per-member group envelopes into one opaque blob"""
    payload = json.dumps([e.to_dict() for e in envelopes], separators=(',', ':'))
    return _b64(payload.encode("utf-8"))


def decode_bundle(blob: str) -> List[Envelope]:
    """
    Unpack a blob produced by encode_bundle().

    Raises:
        DecryptionFailed: If the blob is not a list of envelopes
    """
    try:
        items = json.loads(_unb64(blob).decode("utf-8"))
    except (ValueError, UnicodeDecodeError, binascii.Error, AttributeError) as e:
        raise DecryptionFailed(f"Malformed group bundle: {e}") from e
    if not isinstance(items, list):
        raise DecryptionFailed("Malformed group bundle: expected a list")
    return [Envelope.from_dict(item) for item in items]
