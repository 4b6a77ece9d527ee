"""
Chat client orchestration.

Drives registration, prekey publication, pairwise sessions and group
operations against the server's RPC interface, and turns fetched envelopes
into typed ``ReceivedMessage`` results. Nothing here prints; the CLI
decides what the user sees.
"""

import logging
from enum import Enum
from typing import Dict, List, Optional
from dataclasses import dataclass, field

from crypto import (
    CryptoError,
    DecryptionFailed,
    Envelope,
    KeyPair,
    generate_keypair,
    encode_bundle,
    decode_bundle,
)

from .sessions import SessionStore, SessionInvalidated, ClientError
from .storage import ClientStorage, MemoryStorage, IDENTITY, PREKEY, GROUPS
from .transport import HttpTransport, RpcError

logger = logging.getLogger(__name__)

# Server answers that mean we are no longer in a group
GONE = ("Forbidden", "GroupNotFound")

# Follow-up bundles sent when the group changes mid-send
STALE_RETRIES = 2


class MessageStatus(Enum):
    DECRYPTED = "decrypted"
    SESSION_INVALIDATED = "session_invalidated"
    NOT_ADDRESSED = "not_addressed"
    MALFORMED = "malformed"
    NO_SESSION = "no_session"


@dataclass
class ReceivedMessage:
    """One fetched message after decryption was attempted"""
    sender: str
    timestamp: int
    status: MessageStatus
    text: Optional[str] = None
    group_id: Optional[str] = None
    group_version: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is MessageStatus.DECRYPTED


@dataclass
class GroupSendReport:
    """Per-member result of a group send"""
    group_id: str
    version: int
    delivered: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    refreshed: bool = False


class ChatClient:
    """
    End-to-end encrypted chat client for one local user.
    """

    def __init__(self, username: str, transport: Optional[HttpTransport] = None,
                 storage: Optional[ClientStorage] = None):
        """
        Initialize chat client.

        Args:
            username: Local user id
            transport: RPC transport; defaults to HTTP on localhost:8000
            storage: Local persistence; defaults to in-memory
        """
        self.username = username
        self.transport = transport or HttpTransport()
        self.storage = storage or MemoryStorage(username)

        identity = self.storage.load(IDENTITY)
        prekey = self.storage.load(PREKEY)
        self.identity: Optional[KeyPair] = KeyPair.from_dict(identity) if identity else None
        self.prekey: Optional[KeyPair] = KeyPair.from_dict(prekey) if prekey else None
        self.groups: Dict[str, Dict] = self.storage.load(GROUPS, {}) or {}

        self.sessions = SessionStore(
            username,
            self.storage,
            local_prekey=lambda: self.prekey,
            fetch_prekey=self._fetch_prekey
        )

    def _fetch_prekey(self, peer: str) -> str:
        return self.transport.call('fetch_prekey', user=peer)['x25519_pub']

    def _save_groups(self):
        self.storage.save(GROUPS, self.groups)

    def _forget_group(self, group_id: str):
        if self.groups.pop(group_id, None) is not None:
            self._save_groups()
            logger.info("Removed %s from local group list", group_id)

    def _refresh_group(self, group_id: str) -> Dict:
        info = self.transport.call('group_info', group_id=group_id)
        self.groups[group_id] = {'version': info['version']}
        self._save_groups()
        return info

    def _set_version(self, group_id: str, version: int):
        if self.groups.get(group_id, {}).get('version') != version:
            logger.info("Group %s now at v%d", group_id, version)
            self.groups[group_id] = {'version': version}
            self._save_groups()

    # Registration and keys

    def register(self) -> List[str]:
        """
        Register with the server, creating an identity key on first use.

        Returns:
            Groups joined automatically from pending invites
        """
        if self.identity is None:
            self.identity = generate_keypair()
            self.storage.save(IDENTITY, self.identity.to_dict())

        result = self.transport.call('register', user=self.username,
                                     identity_pub=self.identity.public_hex)
        joined = result.get('auto_joined_groups', [])
        for group_id in joined:
            self._refresh_group(group_id)
        return joined

    def upload_prekey(self) -> str:
        """
        Generate and publish a new prekey.

        Every cached session was derived from the previous prekey, so all
        of them are dropped once the new one is published.

        Returns:
            The new prekey's public half (hex)
        """
        if self.identity is None:
            raise ClientError("Register before uploading a prekey")

        prekey = generate_keypair()
        self.transport.call('publish_prekey', user=self.username, x25519_pub=prekey.public_hex)
        self.prekey = prekey
        self.storage.save(PREKEY, prekey.to_dict())
        self.sessions.clear()
        return prekey.public_hex

    def check_invites(self) -> List[str]:
        result = self.transport.call('check_invites', user=self.username)
        joined = result.get('joined_groups', [])
        for group_id in joined:
            self._refresh_group(group_id)
        return joined

    # Private messages

    def send_private(self, peer: str, text: str) -> Dict:
        """
        Encrypt and send a message to one peer.

        Raises:
            RpcError: RecipientUnknown / RecipientNoPrekey / PrekeyNotFound
            ClientError: If we have no prekey yet
        """
        envelope = self.sessions.encrypt_for(peer, text.encode("utf-8"))
        return self.transport.call('send_private', from_user=self.username, to=peer,
                                   payload=envelope.encode())

    def fetch_private(self) -> List[ReceivedMessage]:
        result = self.transport.call('fetch_private', user=self.username)
        return [self._open(m['sender'], m['envelope'], m['timestamp'])
                for m in result.get('messages', [])]

    def _open(self, sender: str, blob: str, timestamp: int, group_id: Optional[str] = None,
              group_version: Optional[int] = None) -> ReceivedMessage:
        message = ReceivedMessage(sender=sender, timestamp=timestamp, status=MessageStatus.MALFORMED,
                                  group_id=group_id, group_version=group_version)
        try:
            if group_id is None:
                envelope = Envelope.decode(blob)
            else:
                envelope = self._pick_envelope(decode_bundle(blob))
                if envelope is None:
                    message.status = MessageStatus.NOT_ADDRESSED
                    return message
        except DecryptionFailed as e:
            message.error = str(e)
            return message

        try:
            result = self.sessions.decrypt_from(sender, envelope)
        except (RpcError, CryptoError, ClientError) as e:
            message.status = MessageStatus.NO_SESSION
            message.error = str(e)
            return message

        if isinstance(result, SessionInvalidated):
            logger.warning("Could not decrypt message from %s: %s", sender, result.reason)
            message.status = MessageStatus.SESSION_INVALIDATED
            message.error = result.reason
            return message

        message.status = MessageStatus.DECRYPTED
        message.text = result.decode("utf-8", errors="replace")
        return message

    def _pick_envelope(self, envelopes: List[Envelope]) -> Optional[Envelope]:
        for envelope in envelopes:
            if envelope.intended_recipient == self.username:
                return envelope
        return None

    # Groups

    def create_group(self, group_id: str, members: List[str]) -> Dict:
        result = self.transport.call('create_group', group_id=group_id, creator=self.username,
                                     members=members)
        self._set_version(group_id, result['version'])
        return result

    def force_add(self, group_id: str, user: str) -> Dict:
        result = self.transport.call('force_add_member', group_id=group_id, user=user)
        if group_id in self.groups:
            self._set_version(group_id, result['version'])
        return result

    def remove_member(self, group_id: str, target: str) -> Dict:
        result = self.transport.call('remove_member', group_id=group_id,
                                     user_to_remove=target, removed_by=self.username)
        if result['group_deleted'] or target == self.username:
            self._forget_group(group_id)
        else:
            self._set_version(group_id, result['version'])
        return result

    def leave_group(self, group_id: str) -> Dict:
        return self.remove_member(group_id, self.username)

    def sync_groups(self) -> Dict[str, Dict]:
        """
        Reconcile the local group list with the server.

        Adds groups we were added to, updates stale versions and drops
        groups we are no longer in.
        """
        remote = self.transport.call('list_user_groups', user=self.username)['groups']
        changed = False
        for group_id, info in remote.items():
            if self.groups.get(group_id, {}).get('version') != info['version']:
                self.groups[group_id] = {'version': info['version']}
                changed = True
        for group_id in list(self.groups):
            if group_id not in remote:
                del self.groups[group_id]
                changed = True
        if changed:
            self._save_groups()
        return dict(self.groups)

    def _group_call(self, operation: str, group_id: str, **params) -> Dict:
        try:
            return self.transport.call(operation, group_id=group_id, **params)
        except RpcError as e:
            if e.code in GONE:
                self._forget_group(group_id)
            raise

    def _seal_for_members(self, members: List[str], plaintext: bytes, version: int,
                          report: GroupSendReport) -> List[Envelope]:
        envelopes = []
        for member in members:
            try:
                envelopes.append(self.sessions.encrypt_for(member, plaintext, group_version=version,
                                                           intended_recipient=member))
            except RpcError as e:
                report.failed[member] = e.code
            except (CryptoError, ClientError) as e:
                report.failed[member] = type(e).__name__
        return envelopes

    def send_group(self, group_id: str, text: str) -> GroupSendReport:
        """
        Send one message to every other member of a group.

        The member list and version are re-read first; if our cached
        version is stale it is refreshed before encrypting. Each member
        gets an envelope under its own session key, all packed into one
        blob that the server copies to every member.

        If membership changes between that read and the send, the server
        answers ``stale``. The member list is then read again and members
        missing from the bundle get a follow-up bundle of their own, up to
        ``STALE_RETRIES`` times. Only members whose envelope was delivered
        are reported in ``delivered``.

        Raises:
            ClientError: If the group is not in our local list
            RpcError: Forbidden / GroupNotFound (the group is then dropped locally)
        """
        if group_id not in self.groups:
            raise ClientError(f"Not in group {group_id}; run sync first")

        info = self._group_call('group_info', group_id)
        version = info['version']
        report = GroupSendReport(group_id=group_id, version=version,
                                 refreshed=self.groups[group_id].get('version') != version)
        self._set_version(group_id, version)

        plaintext = text.encode("utf-8")
        addressed = set()
        targets = [m for m in info['members'] if m != self.username]

        for _ in range(STALE_RETRIES + 1):
            envelopes = self._seal_for_members(targets, plaintext, version, report)
            if not envelopes:
                break
            sealed = {envelope.intended_recipient for envelope in envelopes}
            addressed |= sealed

            result = self._group_call('send_group', group_id, from_user=self.username,
                                      payload=encode_bundle(envelopes), expected_version=version)

            for member, reason in result.get('failure_reasons', {}).items():
                if member in sealed:
                    report.failed.setdefault(member, reason)
            report.delivered.extend(m for m in result['delivered_to']
                                    if m in sealed and m not in report.failed)
            report.version = result['group_version']
            if not result.get('stale'):
                break

            # membership changed while we were encrypting
            report.refreshed = True
            info = self._group_call('group_info', group_id)
            version = info['version']
            report.version = version
            self._set_version(group_id, version)
            targets = [m for m in info['members']
                       if m != self.username and m not in addressed and m not in report.failed]
            if not targets:
                break
            logger.info("Group %s changed during send, following up for %s", group_id, targets)

        return report

    def fetch_group(self, group_id: str) -> List[ReceivedMessage]:
        """
        Fetch and decrypt queued messages for one group.

        Raises:
            RpcError: Forbidden / GroupNotFound (the group is then dropped locally)
        """
        result = self._group_call('fetch_group', group_id, user=self.username)

        self._set_version(group_id, result['current_version'])
        return [self._open(m['sender'], m['envelope'], m['timestamp'], group_id=group_id,
                           group_version=m.get('group_version'))
                for m in result.get('messages', [])]

    def close(self):
        self.transport.close()
        self.storage.close()
