"""Registration and lookup across the primary user store and its relational mirror.

The primary store is authoritative: its unique email index settles races
between concurrent registrations, and only it is read for authentication.
The mirror is written after the primary commit on a best-effort basis; a
failed mirror write is logged and counted but never fails the caller.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, List, Optional, Protocol

from chatrelay.logging import get_logger
from chatrelay.metrics import MIRROR_WRITE_FAILURES
from chatrelay.service.auth import AuthService, Credential, normalize_email
from chatrelay.service.errors import (
    DuplicateUserError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from chatrelay.storage.errors import ConstraintViolation, StorageError
from chatrelay.storage.models import MirroredUser, User

logger = get_logger(__name__)

RECONCILE_BATCH_SIZE = 500


class PrimaryUserStore(Protocol):
    def create_user(self, name: str, email: str, password_hash: str) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def page_users(self, after: Optional[str], limit: int) -> List[User]: ...


class MirrorUserStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[MirroredUser]: ...

    def insert_user(self, record: MirroredUser) -> MirroredUser: ...

    def list_users(self, limit: int = 100) -> List[MirroredUser]: ...


class RegistryCoordinator:
    def __init__(
        self,
        primary: PrimaryUserStore,
        mirror: MirrorUserStore,
        auth: AuthService,
    ) -> None:
        self.primary = primary
        self.mirror = mirror
        self.auth = auth
        self.logger = logger
        self.mirror_failures = 0

    async def register(self, name: str, email: str, password: str) -> Credential:
        name = (name or "").strip()
        normalized = normalize_email(email)
        if not name or not normalized or not password:
            raise ValidationError(
                "name, email and password are required",
                detail={"fields": ["name", "email", "password"]},
            )

        try:
            existing = await asyncio.to_thread(self.primary.get_user_by_email, normalized)
        except StorageError as exc:
            raise StoreError("user store unavailable") from exc
        if existing:
            raise DuplicateUserError("user already exists")

        try:
            mirrored = await asyncio.to_thread(self.mirror.get_user_by_email, normalized)
        except StorageError as exc:
            # primary index still guards uniqueness; mirror outages do not block signup
            self.logger.warning("mirror_check_failed", error_type=type(exc).__name__)
            mirrored = None
        if mirrored:
            raise DuplicateUserError("user already exists")

        password_hash = await asyncio.to_thread(self.auth.hash_password, password)

        try:
            user = await asyncio.to_thread(
                self.primary.create_user, name, normalized, password_hash
            )
        except ConstraintViolation as exc:
            raise DuplicateUserError("user already exists") from exc
        except StorageError as exc:
            self.logger.error("user_create_failed", error_type=type(exc).__name__)
            raise StoreError("failed to create user") from exc

        await self._mirror(user)
        self.logger.info("user_registered", user_id=user.id)
        return self.auth.issue_credential(user.id)

    async def _mirror(self, user: User) -> bool:
        record = MirroredUser(
            name=user.name, email=user.email, password_hash=user.password_hash
        )
        try:
            await asyncio.to_thread(self.mirror.insert_user, record)
        except (ConstraintViolation, StorageError) as exc:
            self.mirror_failures += 1
            MIRROR_WRITE_FAILURES.inc()
            self.logger.error(
                "mirror_write_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                failed_writes=self.mirror_failures,
            )
            return False
        return True

    async def lookup(self, email: str) -> User:
        try:
            user = await asyncio.to_thread(
                self.primary.get_user_by_email, normalize_email(email)
            )
        except StorageError as exc:
            raise StoreError("user store unavailable") from exc
        if not user:
            raise NotFoundError("user not found")
        return user

    async def list_users(self, limit: int = 100) -> List[User]:
        try:
            return await asyncio.to_thread(self.primary.list_users, limit)
        except StorageError as exc:
            raise StoreError("user store unavailable") from exc

    async def list_mirrored_users(self, limit: int = 100) -> List[MirroredUser]:
        try:
            return await asyncio.to_thread(self.mirror.list_users, limit)
        except StorageError as exc:
            raise StoreError("mirror store unavailable") from exc

    async def _iter_primary(self) -> AsyncIterator[User]:
        after: Optional[str] = None
        while True:
            try:
                batch = await asyncio.to_thread(
                    self.primary.page_users, after, RECONCILE_BATCH_SIZE
                )
            except StorageError as exc:
                raise StoreError("user store unavailable") from exc
            for user in batch:
                yield user
            if len(batch) < RECONCILE_BATCH_SIZE:
                return
            after = batch[-1].id

    async def reconcile_mirror(self, *, dry_run: bool = False) -> dict:
        """Copy primary users that are missing from the mirror.

        Walks the whole primary store in id order, one batch at a time.
        Returns counts of users ``checked``, ``backfilled`` (or that would be,
        with ``dry_run``) and ``failed``.
        """

        summary = {"checked": 0, "backfilled": 0, "failed": 0}
        async for user in self._iter_primary():
            summary["checked"] += 1
            try:
                present = await asyncio.to_thread(self.mirror.get_user_by_email, user.email)
            except StorageError:
                summary["failed"] += 1
                continue
            if present:
                continue
            if dry_run:
                summary["backfilled"] += 1
                continue
            if await self._mirror(user):
                summary["backfilled"] += 1
            else:
                summary["failed"] += 1
        self.logger.info("mirror_reconciled", dry_run=dry_run, **summary)
        return summary
