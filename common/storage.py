"""
Session and transaction storage.

``EscrowStore`` is the repository contract the ledger and the scheduler
write through. It provides:
- Per-user serialization points (``lock_users``)
- Units of work that are applied entirely or not at all (``atomic``)
- An append-only transaction log
- Session rows that are inserted and updated, never deleted by callers

``InMemoryStore`` implements the contract for tests and single-process runs.
A production backend maps ``lock_users`` to row locks and ``atomic`` to a
database transaction.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import ExitStack, contextmanager
from typing import Callable, Iterator, Optional


class EscrowStore(ABC):
    @abstractmethod
    def lock_users(self, *user_ids: str):
        """Context manager holding every given user's lock."""

    @abstractmethod
    def atomic(self):
        """Context manager for a unit of work. Nested units join the outer one."""

    @abstractmethod
    def on_rollback(self, callback: Callable[[], None]) -> None:
        """Register a compensation to run if the current unit of work fails."""

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[dict]: ...

    @abstractmethod
    def insert_session(self, data: dict) -> dict: ...

    @abstractmethod
    def update_session(self, session_id: str, changes: dict) -> dict: ...

    @abstractmethod
    def sessions_for_user(self, user_id: str) -> list[dict]:
        """Sessions where the user is teacher or student, in insertion order."""

    @abstractmethod
    def append_transaction(self, data: dict) -> dict: ...

    @abstractmethod
    def transactions_for_user(self, user_id: str) -> list[dict]:
        """The user's transactions in append order."""


class InMemoryStore(EscrowStore):
    def __init__(self):
        self.sessions: dict[str, dict] = {}
        self.transactions: dict[str, list[dict]] = {}
        self._user_locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._data_lock = threading.RLock()
        self._local = threading.local()

    def _lock_for(self, user_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.RLock()
            return lock

    @contextmanager
    def lock_users(self, *user_ids: str) -> Iterator[None]:
        # Sorted acquisition order keeps two-party locking deadlock free.
        with ExitStack() as stack:
            for user_id in sorted(set(user_ids)):
                stack.enter_context(self._lock_for(user_id))
            yield

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if getattr(self._local, "journal", None) is not None:
            yield
            return

        self._local.journal = []
        try:
            yield
        except BaseException:
            journal = self._local.journal
            self._local.journal = None
            for undo in reversed(journal):
                undo()
            raise
        finally:
            self._local.journal = None

    def on_rollback(self, callback: Callable[[], None]) -> None:
        journal = getattr(self._local, "journal", None)
        if journal is not None:
            journal.append(callback)

    def get_session(self, session_id: str) -> Optional[dict]:
        with self._data_lock:
            data = self.sessions.get(session_id)
            return dict(data) if data else None

    def insert_session(self, data: dict) -> dict:
        session_id = data["id"]
        with self._data_lock:
            self.sessions[session_id] = dict(data)
        self.on_rollback(lambda: self._discard_session(session_id))
        return dict(data)

    def _discard_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)

    def update_session(self, session_id: str, changes: dict) -> dict:
        with self._data_lock:
            previous = self.sessions[session_id]
            updated = {**previous, **changes}
            self.sessions[session_id] = updated
        self.on_rollback(lambda: self._restore_session(session_id, previous))
        return dict(updated)

    def _restore_session(self, session_id: str, data: dict) -> None:
        with self._data_lock:
            self.sessions[session_id] = data

    def sessions_for_user(self, user_id: str) -> list[dict]:
        with self._data_lock:
            return [
                dict(s) for s in self.sessions.values()
                if s["teacher_id"] == user_id or s["student_id"] == user_id
            ]

    def append_transaction(self, data: dict) -> dict:
        entry = dict(data)
        with self._data_lock:
            self.transactions.setdefault(entry["user_id"], []).append(entry)
        self.on_rollback(lambda: self._discard_transaction(entry))
        return dict(entry)

    def _discard_transaction(self, entry: dict) -> None:
        with self._data_lock:
            entries = self.transactions.get(entry["user_id"], [])
            self.transactions[entry["user_id"]] = [e for e in entries if e is not entry]

    def transactions_for_user(self, user_id: str) -> list[dict]:
        with self._data_lock:
            return [dict(e) for e in self.transactions.get(user_id, [])]
