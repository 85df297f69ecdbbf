"""Session persistence for the signaling hub.

This module provides the durable record of active sessions:
- A store contract of individually atomic primitives (insert, find,
  push/pull of receivers, find-and-delete)
- An in-memory implementation for tests and ephemeral hubs
- A TOML-file implementation for single-node durability
"""

from __future__ import annotations

import hmac
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any

from .errors import DuplicateKeyError
from .models import ItemMetadata, Session
from .util import parse_conn_hex


class SessionStore(ABC):
    """Persistence contract for session records.

    Every method is atomic on its own; callers get copies, never live records.
    """

    @abstractmethod
    def insert(self, session: Session) -> None: ...

    @abstractmethod
    def get(self, public_id: str) -> Session | None: ...

    @abstractmethod
    def find_open(self, public_id: str) -> Session | None: ...

    @abstractmethod
    def add_receiver(self, public_id: str, conn: bytes) -> bool: ...

    @abstractmethod
    def pop_by_sender(self, conn: bytes) -> list[Session]: ...

    @abstractmethod
    def pull_receiver(self, conn: bytes) -> int: ...

    @abstractmethod
    def delete_with_secret(self, public_id: str, secret: str) -> Session | None: ...

    @abstractmethod
    def delete_expired(self, cutoff: float) -> list[Session]: ...

    @abstractmethod
    def count(self) -> int: ...

    def close(self) -> None:
        return None


class MemorySessionStore(SessionStore):
    """Non-durable store keyed by public id, with secret and sender indexes."""

    def __init__(self) -> None:
        self.log = logging.getLogger("oshub.store")
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._index_by_secret: dict[str, str] = {}  # deletion secret -> public id
        self._index_by_sender: dict[bytes, set[str]] = {}  # sender conn -> public ids

    def _changed(self) -> None:
        """Hook run with the lock held after every successful mutation."""
        return None

    def _snapshot(self) -> list[Session] | None:
        """State to restore if ``_changed`` fails. Nothing to undo in memory."""
        return None

    def _restore(self, saved: list[Session]) -> None:
        self._sessions.clear()
        self._index_by_secret.clear()
        self._index_by_sender.clear()
        for session in saved:
            self._index_add(session)

    def _commit(self, saved: list[Session] | None) -> None:
        try:
            self._changed()
        except Exception:
            if saved is not None:
                self._restore(saved)
                self.log.error("Store write failed, change rolled back")
            raise

    def _index_add(self, session: Session) -> None:
        self._sessions[session.public_id] = session
        self._index_by_secret[session.deletion_secret] = session.public_id
        self._index_by_sender.setdefault(bytes(session.sender_id), set()).add(
            session.public_id
        )

    def _index_remove(self, public_id: str) -> Session | None:
        session = self._sessions.pop(public_id, None)
        if session is None:
            return None
        self._index_by_secret.pop(session.deletion_secret, None)
        owned = self._index_by_sender.get(bytes(session.sender_id))
        if owned is not None:
            owned.discard(public_id)
            if not owned:
                self._index_by_sender.pop(bytes(session.sender_id), None)
        return session

    def insert(self, session: Session) -> None:
        with self._lock:
            if session.public_id in self._sessions:
                raise DuplicateKeyError("public_id")
            if session.deletion_secret in self._index_by_secret:
                raise DuplicateKeyError("deletion_secret")
            saved = self._snapshot()
            self._index_add(session.copy())
            self._commit(saved)

    def get(self, public_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(public_id)
            return session.copy() if session is not None else None

    def find_open(self, public_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(public_id)
            if session is None or not session.is_open:
                return None
            return session.copy()

    def add_receiver(self, public_id: str, conn: bytes) -> bool:
        with self._lock:
            session = self._sessions.get(public_id)
            if session is None:
                return False
            if bytes(conn) not in session.receiver_ids:
                saved = self._snapshot()
                session.receiver_ids.add(bytes(conn))
                self._commit(saved)
            return True

    def pop_by_sender(self, conn: bytes) -> list[Session]:
        with self._lock:
            owned = sorted(self._index_by_sender.get(bytes(conn), ()))
            if not owned:
                return []
            saved = self._snapshot()
            removed = [s for s in (self._index_remove(pid) for pid in owned) if s]
            self._commit(saved)
            return removed

    def pull_receiver(self, conn: bytes) -> int:
        with self._lock:
            saved = self._snapshot()
            modified = 0
            for session in self._sessions.values():
                if bytes(conn) in session.receiver_ids:
                    session.receiver_ids.discard(bytes(conn))
                    modified += 1
            if modified:
                self._commit(saved)
            return modified

    def delete_with_secret(self, public_id: str, secret: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(public_id)
            if session is None or not isinstance(secret, str):
                return None
            if not hmac.compare_digest(
                session.deletion_secret.encode("utf-8"), secret.encode("utf-8")
            ):
                return None
            saved = self._snapshot()
            removed = self._index_remove(public_id)
            self._commit(saved)
            return removed

    def delete_expired(self, cutoff: float) -> list[Session]:
        with self._lock:
            expired = [
                pid for pid, s in self._sessions.items() if s.created_at < cutoff
            ]
            if not expired:
                return []
            saved = self._snapshot()
            removed = [s for s in (self._index_remove(pid) for pid in expired) if s]
            self._commit(saved)
            return removed

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)


class TomlSessionStore(MemorySessionStore):
    """Durable store that rewrites a TOML document after every mutation.

    A mutation whose write fails is undone in memory before the error propagates.

    Layout::

        [sessions."Ab3_x9"]
        sender = "<hex link id>"
        deletion_secret = "..."
        is_open = true
        created_at = 1730000000.0
        receivers = ["<hex link id>", ...]

        [[sessions."Ab3_x9".items]]
        name = "a.txt"
        size = 10
        mime_type = "text/plain"
    """

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = path
        self._write_lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return

        from tomlkit import parse

        with open(self.path, encoding="utf-8") as f:
            doc = parse(f.read()).unwrap()

        sessions = doc.get("sessions")
        if sessions is None:
            return
        if not isinstance(sessions, dict):
            raise ValueError(f"{self.path}: [sessions] must be a table")

        loaded = 0
        for public_id, raw in sessions.items():
            try:
                session = self._session_from_table(str(public_id), raw)
            except (TypeError, ValueError) as e:
                self.log.warning("Skipping malformed session %r: %s", public_id, e)
                continue
            if session.deletion_secret in self._index_by_secret:
                self.log.warning(
                    "Skipping session %r with duplicate deletion secret", public_id
                )
                continue
            self._index_add(session)
            loaded += 1

        self.log.info("Loaded %d session(s) from %s", loaded, self.path)

    def _session_from_table(self, public_id: str, raw: Any) -> Session:
        if not isinstance(raw, dict):
            raise TypeError("session entry must be a table")

        sender = raw.get("sender")
        if not isinstance(sender, str):
            raise TypeError("sender must be a hex string")

        secret = raw.get("deletion_secret")
        if not isinstance(secret, str) or not secret:
            raise TypeError("deletion_secret must be a non-empty string")

        raw_items = raw.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            raise ValueError("items must be a non-empty array of tables")
        items: list[ItemMetadata] = []
        for item in raw_items:
            if not isinstance(item, dict):
                raise TypeError("item must be a table")
            name = item.get("name")
            size = item.get("size")
            mime = item.get("mime_type")
            if not isinstance(name, str) or not isinstance(mime, str):
                raise TypeError("item name and mime_type must be strings")
            if not isinstance(size, int) or isinstance(size, bool) or size < 0:
                raise ValueError("item size must be a non-negative integer")
            items.append(ItemMetadata(name=str(name), size=int(size), mime_type=str(mime)))

        receivers: set[bytes] = set()
        for r in raw.get("receivers", []) or []:
            receivers.add(parse_conn_hex(str(r)))

        created_at = raw.get("created_at", 0.0)
        try:
            created_at = float(created_at)
        except (TypeError, ValueError):
            created_at = 0.0

        return Session(
            public_id=public_id,
            sender_id=parse_conn_hex(sender),
            deletion_secret=str(secret),
            items=tuple(items),
            receiver_ids=receivers,
            is_open=bool(raw.get("is_open", True)),
            created_at=created_at,
        )

    def _snapshot(self) -> list[Session]:
        return [s.copy() for s in self._sessions.values()]

    def _changed(self) -> None:
        from tomlkit import aot, document, dumps, table

        doc = document()
        doc.add("sessions", table())
        for public_id in sorted(self._sessions):
            s = self._sessions[public_id]
            tbl = table()
            tbl["sender"] = bytes(s.sender_id).hex()
            tbl["deletion_secret"] = s.deletion_secret
            tbl["is_open"] = bool(s.is_open)
            tbl["created_at"] = float(s.created_at)
            tbl["receivers"] = sorted(bytes(r).hex() for r in s.receiver_ids)
            items = aot()
            for item in s.items:
                it = table()
                it["name"] = item.name
                it["size"] = int(item.size)
                it["mime_type"] = item.mime_type
                items.append(it)
            tbl["items"] = items
            doc["sessions"][public_id] = tbl

        text = dumps(doc)
        with self._write_lock:
            file_stat = None
            try:
                file_stat = os.stat(self.path)
            except FileNotFoundError:
                file_stat = None

            parent = os.path.dirname(self.path)
            if parent:
                os.makedirs(parent, exist_ok=True)

            tmp_path = f"{self.path}.tmp"
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    f.write(text)
                    f.flush()
                    os.fsync(f.fileno())
                if file_stat is not None:
                    os.chmod(tmp_path, file_stat.st_mode)
                else:
                    os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
            finally:
                if os.path.exists(tmp_path):
                    try:
                        os.remove(tmp_path)
                    except OSError:
                        self.log.warning("Could not remove %s", tmp_path)
