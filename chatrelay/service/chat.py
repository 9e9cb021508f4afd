from __future__ import annotations

import asyncio
from typing import List, Optional, Protocol, Sequence, Tuple

from chatrelay.logging import get_logger
from chatrelay.service.completion import CompletionClient, Message
from chatrelay.service.errors import NotFoundError, StoreError, ValidationError
from chatrelay.storage.errors import ConstraintViolation, StorageError
from chatrelay.storage.models import DEFAULT_SYSTEM_ROLE, ConversationTurn, User

logger = get_logger(__name__)


class UserRecords(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def set_system_role(self, user_id: str, system_role: str) -> Optional[User]: ...


class TurnLog(Protocol):
    def append_turns(
        self, user_id: str, turns: Sequence[Tuple[str, str]]
    ) -> List[ConversationTurn]: ...

    def list_turns(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[ConversationTurn]: ...


def build_messages(
    system_role: Optional[str],
    history: Sequence[ConversationTurn],
    message: str,
) -> List[Message]:
    """System entry, then prior turns oldest first, then the new user message."""

    messages: List[Message] = [
        {"role": "system", "content": system_role or DEFAULT_SYSTEM_ROLE}
    ]
    messages.extend(turn.as_message() for turn in history)
    messages.append({"role": "user", "content": message})
    return messages


class ContextAssembler:
    """Runs one chat exchange for an authenticated user.

    Nothing is appended to the conversation log unless the completion call
    succeeds; the user turn and the assistant turn are then written together.
    """

    def __init__(
        self,
        users: UserRecords,
        conversations: TurnLog,
        completion: CompletionClient,
        *,
        history_limit: Optional[int] = None,
    ) -> None:
        self.users = users
        self.conversations = conversations
        self.completion = completion
        self.history_limit = history_limit
        self.logger = logger

    async def converse(
        self, user_id: str, message: str, system_role: Optional[str] = None
    ) -> str:
        if not message or not message.strip():
            raise ValidationError("message is required", detail={"fields": ["message"]})

        try:
            user = await asyncio.to_thread(self.users.get_user, user_id)
            if user and system_role:
                user = await asyncio.to_thread(
                    self.users.set_system_role, user_id, system_role
                )
                if user:
                    self.logger.info("system_role_updated", user_id=user_id)
        except StorageError as exc:
            raise StoreError("user store unavailable") from exc
        if not user:
            raise NotFoundError("user not found")

        try:
            history = await asyncio.to_thread(
                self.conversations.list_turns, user_id, self.history_limit
            )
        except StorageError as exc:
            raise StoreError("conversation store unavailable") from exc

        messages = build_messages(user.system_role, history, message)
        reply = await self.completion.complete(messages)

        try:
            await asyncio.to_thread(
                self.conversations.append_turns,
                user_id,
                [("user", message), ("assistant", reply)],
            )
        except (ConstraintViolation, StorageError) as exc:
            self.logger.error(
                "conversation_write_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
            )
            raise StoreError("failed to save conversation") from exc

        self.logger.info(
            "chat_turn_completed",
            user_id=user_id,
            history_turns=len(history),
        )
        return reply
