from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from chatrelay.logging import get_logger
from chatrelay.storage.errors import ConstraintViolation
from chatrelay.storage.models import (
    DEFAULT_SYSTEM_ROLE,
    TURN_ROLES,
    ConversationTurn,
    MirroredUser,
    User,
)


class MemoryUserStore:
    """In-process primary user store used by tests and local development."""

    kind = "memory"

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._data_lock = threading.RLock()

    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        *,
        system_role: str = DEFAULT_SYSTEM_ROLE,
    ) -> User:
        with self._data_lock:
            # check and insert under one lock, like a unique index
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=uuid.uuid4().hex,
                name=name,
                email=email,
                password_hash=password_hash,
                system_role=system_role,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = list(self.users.values())
            return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def page_users(self, after: Optional[str], limit: int) -> List[User]:
        """Users in insertion order, starting after the user with id ``after``."""
        with self._data_lock:
            ids = list(self.users)
            start = ids.index(after) + 1 if after is not None else 0
            return [self.users[user_id] for user_id in ids[start : start + limit]]

    def set_system_role(self, user_id: str, system_role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.system_role = system_role
            return user

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None


class MemoryMirrorStore:
    """In-process stand-in for the relational user mirror."""

    kind = "memory"

    def __init__(self) -> None:
        self.rows: List[MirroredUser] = []
        self._data_lock = threading.RLock()

    def get_user_by_email(self, email: str) -> Optional[MirroredUser]:
        with self._data_lock:
            return next((row for row in self.rows if row.email == email), None)

    def insert_user(self, record: MirroredUser) -> MirroredUser:
        with self._data_lock:
            if any(row.email == record.email for row in self.rows):
                raise ConstraintViolation("email already exists", {"field": "email"})
            row = MirroredUser(
                name=record.name,
                email=record.email,
                password_hash=record.password_hash,
                id=len(self.rows) + 1,
                created_at=datetime.now(timezone.utc),
            )
            self.rows.append(row)
            return row

    def list_users(self, limit: int = 100) -> List[MirroredUser]:
        with self._data_lock:
            return list(self.rows[:limit])

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None


class MemoryConversationStore:
    """Append-only per-user turn log kept in process memory."""

    kind = "memory"

    def __init__(self) -> None:
        self.turns: Dict[str, List[ConversationTurn]] = {}
        self._data_lock = threading.RLock()

    def append_turns(
        self, user_id: str, turns: Sequence[Tuple[str, str]]
    ) -> List[ConversationTurn]:
        for role, _ in turns:
            if role not in TURN_ROLES:
                raise ConstraintViolation("invalid turn role", {"role": role})
        with self._data_lock:
            log = self.turns.setdefault(user_id, [])
            stamp = datetime.now(timezone.utc)
            if log and log[-1].timestamp > stamp:
                stamp = log[-1].timestamp
            written = [
                ConversationTurn(
                    id=uuid.uuid4().hex,
                    user_id=user_id,
                    role=role,
                    content=content,
                    timestamp=stamp,
                )
                for role, content in turns
            ]
            log.extend(written)
            return written

    def list_turns(self, user_id: str, limit: Optional[int] = None) -> List[ConversationTurn]:
        with self._data_lock:
            log = list(self.turns.get(user_id, []))
        if limit is None:
            return log
        return log[-limit:]

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
