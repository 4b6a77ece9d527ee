"""
Local storage for chat client state.

The client keeps four documents per local user: ``identity`` (key pair),
``prekey`` (key pair), ``sessions`` (peer -> hex session key) and
``groups`` (group id -> {version}). Each is loaded on start with an empty
default and rewritten after every mutation.
"""

import os
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from pathlib import Path
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

IDENTITY = "identity"
PREKEY = "prekey"
SESSIONS = "sessions"
GROUPS = "groups"


class StorageLocked(Exception):
    """Raised when encrypted storage is used before unlock() or with a wrong password"""
    pass


class ClientStorage(ABC):
    """Injectable persistence for one local user"""

    def __init__(self, username: str):
        self.username = username

    @abstractmethod
    def load(self, kind: str, default: Any = None) -> Any:
        """Load a document, or return default if it was never saved"""

    @abstractmethod
    def save(self, kind: str, data: Any) -> None:
        """Replace a document"""

    def close(self):
        pass


class MemoryStorage(ClientStorage):
    """Keeps documents in memory, for tests and throwaway clients"""

    def __init__(self, username: str):
        super().__init__(username)
        self._docs: Dict[str, str] = {}

    def load(self, kind: str, default: Any = None) -> Any:
        raw = self._docs.get(kind)
        return json.loads(raw) if raw is not None else default

    def save(self, kind: str, data: Any) -> None:
        self._docs[kind] = json.dumps(data)


class JsonFileStorage(ClientStorage):
    """
    One JSON file per document: ``<dir>/<username>_<kind>.json``.

    Unreadable or corrupt files load as the default.
    """

    def __init__(self, username: str, storage_dir: str = "client_data"):
        super().__init__(username)
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, kind: str) -> Path:
        return self.storage_dir / f"{self.username}_{kind}.json"

    def load(self, kind: str, default: Any = None) -> Any:
        path = self._path(kind)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError):
            return default

    def save(self, kind: str, data: Any) -> None:
        path = self._path(kind)
        tmp = path.with_suffix(".tmp")
        with self._lock:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            # atomic rename, readers never see a half-written file
            os.replace(tmp, path)


class EncryptedStorage(ClientStorage):
    """
    SQLite storage with every document encrypted under a password-derived key.

    Call unlock() before use.
    """

    def __init__(self, username: str, storage_dir: str = "client_data"):
        """
        Initialize encrypted storage.

        Args:
            username: Username for this storage
            storage_dir: Directory to store encrypted data
        """
        super().__init__(username)
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_dir / f"{username}.db"
        self.salt_path = self.storage_dir / f"{username}.salt"
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive encryption key from password using PBKDF2.

        Args:
            password: User's password
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return kdf.derive(password.encode())

    def unlock(self, password: str) -> None:
        """
        Unlock storage with password, creating it on first use.

        Raises:
            StorageLocked: If the password does not match existing data
        """
        if self.salt_path.exists():
            salt = self.salt_path.read_bytes()
        else:
            salt = os.urandom(16)
            self.salt_path.write_bytes(salt)

        self.encryption_key = self.derive_key(password, salt)
        self._init_database()

        # Verify password against any stored document
        cursor = self.db.cursor()
        cursor.execute("SELECT encrypted_data FROM documents LIMIT 1")
        row = cursor.fetchone()
        if row:
            try:
                self._decrypt(row[0])
            except InvalidTag:
                self.close()
                self.encryption_key = None
                raise StorageLocked("Wrong password for local storage")

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path), check_same_thread=False)
        cursor = self.db.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                kind TEXT PRIMARY KEY,
                encrypted_data BLOB NOT NULL
            )
        """)
        self.db.commit()

    def _encrypt(self, data: bytes) -> bytes:
        """Encrypt data with storage key"""
        nonce = os.urandom(12)
        aesgcm = AESGCM(self.encryption_key)
        ciphertext = aesgcm.encrypt(nonce, data, self.username.encode())
        return nonce + ciphertext

    def _decrypt(self, encrypted_data: bytes) -> bytes:
        """Decrypt data with storage key"""
        nonce = encrypted_data[:12]
        ciphertext = encrypted_data[12:]

        aesgcm = AESGCM(self.encryption_key)
        return aesgcm.decrypt(nonce, ciphertext, self.username.encode())

    def load(self, kind: str, default: Any = None) -> Any:
        if not self.db or not self.encryption_key:
            raise StorageLocked("Storage not unlocked")

        with self._lock:
            cursor = self.db.cursor()
            cursor.execute("SELECT encrypted_data FROM documents WHERE kind = ?", (kind,))
            result = cursor.fetchone()

        if not result:
            return default
        return json.loads(self._decrypt(result[0]).decode())

    def save(self, kind: str, data: Any) -> None:
        if not self.db or not self.encryption_key:
            raise StorageLocked("Storage not unlocked")

        encrypted = self._encrypt(json.dumps(data).encode())
        with self._lock:
            cursor = self.db.cursor()
            cursor.execute(
                "INSERT OR REPLACE INTO documents (kind, encrypted_data) VALUES (?, ?)",
                (kind, encrypted)
            )
            self.db.commit()

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
