"""
Persistence for directory and relay state.

State objects write every mutation through a small key-value interface,
namespaced per kind of record (``users``, ``prekeys``, ``groups``,
``invites``, ``queues``). Values are JSON-compatible dicts/lists.

Two backends are provided: an in-memory dict for tests and ephemeral
servers, and a SQLAlchemy table for anything that should survive restart.
"""

import json
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import create_engine, Column, String, Text, DateTime, select
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Record(Base):
    """One JSON value addressed by (namespace, key)"""
    __tablename__ = "records"

    namespace = Column(String(32), primary_key=True)
    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class KeyValueStore(ABC):
    """Injectable persistence boundary"""

    @abstractmethod
    def get(self, namespace: str, key: str) -> Optional[Any]:
        """Return the stored value or None"""

    @abstractmethod
    def put(self, namespace: str, key: str, value: Any) -> None:
        """Create or replace a value"""

    @abstractmethod
    def delete(self, namespace: str, key: str) -> None:
        """Remove a value; missing keys are ignored"""

    @abstractmethod
    def items(self, namespace: str) -> List[Tuple[str, Any]]:
        """Snapshot of every (key, value) pair in a namespace"""

    def count(self, namespace: str) -> int:
        return len(self.items(namespace))


class MemoryStore(KeyValueStore):
    """Dict-backed store; values are copied through JSON on the way in and out"""

    def __init__(self):
        self._data: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def get(self, namespace: str, key: str) -> Optional[Any]:
        with self._lock:
            raw = self._data.get(namespace, {}).get(key)
        return json.loads(raw) if raw is not None else None

    def put(self, namespace: str, key: str, value: Any) -> None:
        raw = json.dumps(value)
        with self._lock:
            self._data.setdefault(namespace, {})[key] = raw

    def delete(self, namespace: str, key: str) -> None:
        with self._lock:
            self._data.get(namespace, {}).pop(key, None)

    def items(self, namespace: str) -> List[Tuple[str, Any]]:
        with self._lock:
            snapshot = list(self._data.get(namespace, {}).items())
        return [(key, json.loads(raw)) for key, raw in snapshot]


class SqlStore(KeyValueStore):
    """SQLAlchemy-backed store using a single ``records`` table"""

    def __init__(self, database_url: str = "sqlite:///./chat.db"):
        """
        Initialize database connection and create the table if needed.

        Args:
            database_url: SQLAlchemy database URL
        """
        kwargs: Dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, otherwise each thread sees its own empty database
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, echo=False, **kwargs)
        self.session_factory = sessionmaker(self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def get(self, namespace: str, key: str) -> Optional[Any]:
        with self.session_factory() as session:
            record = session.get(Record, (namespace, key))
            return json.loads(record.value) if record else None

    def put(self, namespace: str, key: str, value: Any) -> None:
        with self.session_factory() as session:
            session.merge(Record(namespace=namespace, key=key, value=json.dumps(value)))
            session.commit()

    def delete(self, namespace: str, key: str) -> None:
        with self.session_factory() as session:
            record = session.get(Record, (namespace, key))
            if record:
                session.delete(record)
                session.commit()

    def items(self, namespace: str) -> List[Tuple[str, Any]]:
        with self.session_factory() as session:
            result = session.execute(select(Record).where(Record.namespace == namespace))
            return [(r.key, json.loads(r.value)) for r in result.scalars()]

    def close(self):
        self.engine.dispose()


class KeyedLocks:
    """
    One lock per entity key.

    The only nesting is a group lock taken before an invite lock, so
    acquisition order is always group then invite.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def __call__(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


def create_store(database_url: Optional[str]) -> KeyValueStore:
    """Pick a backend from configuration"""
    if not database_url:
        return MemoryStore()
    return SqlStore(database_url)
