from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

DEFAULT_SYSTEM_ROLE = "You are a helpful assistant."

TURN_ROLES = ("user", "assistant")


@dataclass
class User:
    id: str
    name: str
    email: str
    password_hash: str
    system_role: str = DEFAULT_SYSTEM_ROLE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class MirroredUser:
    """Row in the relational mirror; not authoritative for authentication."""

    name: str
    email: str
    password_hash: str
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class ConversationTurn:
    id: str
    user_id: str
    role: str
    content: str
    timestamp: datetime

    def as_message(self) -> dict:
        return {"role": self.role, "content": self.content}
