"""MongoDB-backed primary user store and conversation store.

Documents keep the field names of the existing ``users`` and
``conversations`` collections (``password``, ``systemRole``, ``userId``) so a
deployment can point at data written by earlier versions of the service.
Those versions stored emails as typed, so email lookups and the unique email
index use a case-insensitive collation.
"""

from __future__ import annotations

import contextlib
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collation import Collation, CollationStrength
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from chatrelay.logging import get_logger
from chatrelay.storage.errors import ConstraintViolation, StorageError
from chatrelay.storage.models import (
    DEFAULT_SYSTEM_ROLE,
    TURN_ROLES,
    ConversationTurn,
    User,
)

logger = get_logger(__name__)

USERS_COLLECTION = "users"
CONVERSATIONS_COLLECTION = "conversations"

# strength 2 compares case-insensitively
EMAIL_COLLATION = Collation(locale="en", strength=CollationStrength.SECONDARY)
EMAIL_INDEX_NAME = "email_ci_unique"


def open_mongo(uri: str, *, timeout_ms: int = 5000) -> MongoClient:
    """Create the process-wide client; connection happens lazily on first use."""

    return MongoClient(
        uri,
        serverSelectionTimeoutMS=timeout_ms,
        connectTimeoutMS=timeout_ms,
        tz_aware=True,
    )


@contextlib.contextmanager
def _translate_errors(store: str, operation: str) -> Iterator[None]:
    try:
        yield
    except DuplicateKeyError as exc:
        raise ConstraintViolation("email already exists", {"field": "email"}) from exc
    except PyMongoError as exc:
        logger.error(
            "mongo_operation_failed",
            store=store,
            operation=operation,
            error_type=type(exc).__name__,
        )
        raise StorageError(
            f"{store} {operation} failed", store=store, operation=operation
        ) from exc


def _to_object_id(raw: str) -> Optional[ObjectId]:
    try:
        return ObjectId(raw)
    except (InvalidId, TypeError):
        return None


class MongoUserStore:
    """Authoritative user records in a document collection with a unique email index."""

    kind = "mongo"

    def __init__(self, database: Database, *, ensure_indexes: bool = True) -> None:
        self.db = database
        self.collection = database[USERS_COLLECTION]
        if ensure_indexes:
            with _translate_errors("primary", "create_index"):
                self.collection.create_index(
                    [("email", ASCENDING)],
                    unique=True,
                    collation=EMAIL_COLLATION,
                    name=EMAIL_INDEX_NAME,
                )

    @staticmethod
    def _to_user(doc: dict) -> User:
        return User(
            id=str(doc["_id"]),
            name=doc.get("name", ""),
            email=doc["email"],
            password_hash=doc.get("password", ""),
            system_role=doc.get("systemRole") or DEFAULT_SYSTEM_ROLE,
            created_at=doc.get("createdAt") or datetime.now(timezone.utc),
        )

    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        *,
        system_role: str = DEFAULT_SYSTEM_ROLE,
    ) -> User:
        doc = {
            "name": name,
            "email": email,
            "password": password_hash,
            "systemRole": system_role,
            "createdAt": datetime.now(timezone.utc),
        }
        with _translate_errors("primary", "insert"):
            result = self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return self._to_user(doc)

    def get_user(self, user_id: str) -> Optional[User]:
        oid = _to_object_id(user_id)
        if oid is None:
            return None
        with _translate_errors("primary", "find"):
            doc = self.collection.find_one({"_id": oid})
        return self._to_user(doc) if doc else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with _translate_errors("primary", "find"):
            doc = self.collection.find_one({"email": email}, collation=EMAIL_COLLATION)
        return self._to_user(doc) if doc else None

    def list_users(self, limit: int = 100) -> List[User]:
        with _translate_errors("primary", "list"):
            docs = list(
                self.collection.find({}).sort("createdAt", DESCENDING).limit(limit)
            )
        return [self._to_user(doc) for doc in docs]

    def page_users(self, after: Optional[str], limit: int) -> List[User]:
        """Users in ``_id`` order, starting after the user with id ``after``."""
        query = {}
        if after is not None:
            oid = _to_object_id(after)
            if oid is None:
                return []
            query = {"_id": {"$gt": oid}}
        with _translate_errors("primary", "list"):
            docs = list(self.collection.find(query).sort("_id", ASCENDING).limit(limit))
        return [self._to_user(doc) for doc in docs]

    def set_system_role(self, user_id: str, system_role: str) -> Optional[User]:
        oid = _to_object_id(user_id)
        if oid is None:
            return None
        with _translate_errors("primary", "update"):
            result = self.collection.update_one(
                {"_id": oid}, {"$set": {"systemRole": system_role}}
            )
        if not result.matched_count:
            return None
        return self.get_user(user_id)

    def verify_connection(self) -> None:
        with _translate_errors("primary", "ping"):
            self.db.command("ping")

    def close(self) -> None:
        # the MongoClient is shared with the conversation store and closed by the runtime
        return None


class MongoConversationStore:
    """Append-only turn log keyed by ``userId``."""

    kind = "mongo"

    def __init__(self, database: Database, *, ensure_indexes: bool = True) -> None:
        self.db = database
        self.collection = database[CONVERSATIONS_COLLECTION]
        if ensure_indexes:
            with _translate_errors("conversations", "create_index"):
                self.collection.create_index(
                    [("userId", ASCENDING), ("timestamp", ASCENDING), ("_id", ASCENDING)]
                )

    @staticmethod
    def _to_turn(doc: dict) -> ConversationTurn:
        return ConversationTurn(
            id=str(doc["_id"]),
            user_id=doc["userId"],
            role=doc["role"],
            content=doc.get("content", ""),
            timestamp=doc["timestamp"],
        )

    def _latest_timestamp(self, user_id: str) -> Optional[datetime]:
        doc = self.collection.find_one(
            {"userId": user_id},
            sort=[("timestamp", DESCENDING), ("_id", DESCENDING)],
            projection={"timestamp": 1},
        )
        return doc["timestamp"] if doc else None

    def append_turns(
        self, user_id: str, turns: Sequence[Tuple[str, str]]
    ) -> List[ConversationTurn]:
        for role, _ in turns:
            if role not in TURN_ROLES:
                raise ConstraintViolation("invalid turn role", {"role": role})
        with _translate_errors("conversations", "insert"):
            stamp = datetime.now(timezone.utc)
            latest = self._latest_timestamp(user_id)
            if latest and latest > stamp:
                stamp = latest
            docs = [
                {"userId": user_id, "role": role, "content": content, "timestamp": stamp}
                for role, content in turns
            ]
            if not docs:
                return []
            # ordered insert keeps ObjectId order equal to turn order
            result = self.collection.insert_many(docs, ordered=True)
        for doc, inserted_id in zip(docs, result.inserted_ids):
            doc["_id"] = inserted_id
        return [self._to_turn(doc) for doc in docs]

    def list_turns(self, user_id: str, limit: Optional[int] = None) -> List[ConversationTurn]:
        with _translate_errors("conversations", "find"):
            if limit is None:
                cursor = self.collection.find({"userId": user_id}).sort(
                    [("timestamp", ASCENDING), ("_id", ASCENDING)]
                )
                docs = list(cursor)
            else:
                cursor = (
                    self.collection.find({"userId": user_id})
                    .sort([("timestamp", DESCENDING), ("_id", DESCENDING)])
                    .limit(limit)
                )
                docs = list(cursor)
                docs.reverse()
        return [self._to_turn(doc) for doc in docs]

    def verify_connection(self) -> None:
        with _translate_errors("conversations", "ping"):
            self.db.command("ping")

    def close(self) -> None:
        return None
