from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from chatrelay.config import Settings, get_settings
from chatrelay.logging import get_logger
from chatrelay.service.auth import AuthService
from chatrelay.service.chat import ContextAssembler
from chatrelay.service.completion import CompletionClient, build_completion_client
from chatrelay.service.registry import RegistryCoordinator
from chatrelay.storage.memory import (
    MemoryConversationStore,
    MemoryMirrorStore,
    MemoryUserStore,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URI with ``***`` for logging.

    mongodb://app:secret@db:27017/chat -> mongodb://app:***@db:27017/chat
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        host = parsed.netloc.rsplit("@", 1)[-1]
        netloc = f"{parsed.username or ''}:***@{host}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Process-wide collaborators, created once at startup and closed at shutdown.

    The FastAPI app keeps its instance on ``app.state.runtime`` and hands it to
    route handlers through a dependency.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        completion: Optional[CompletionClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.settings.ensure_complete()
        self.mongo_client = None
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            completion_backend=self.settings.completion_backend.value,
            test_mode=self.settings.test_mode,
        )

        if self.settings.use_memory_store:
            self.users = MemoryUserStore()
            self.mirror = MemoryMirrorStore()
            self.conversations = MemoryConversationStore()
        else:
            self._init_persistent_stores()
        logger.info(
            "runtime_stores_initialized",
            primary=self.users.kind,
            mirror=self.mirror.kind,
            conversations=self.conversations.kind,
        )

        self.auth = AuthService(self.users, self.settings)
        self.registry = RegistryCoordinator(self.users, self.mirror, self.auth)
        self.completion = completion or build_completion_client(self.settings)
        self.chat = ContextAssembler(
            self.users,
            self.conversations,
            self.completion,
            history_limit=self.settings.chat_history_limit,
        )

    def _init_persistent_stores(self) -> None:
        from chatrelay.storage.mongo import (
            MongoConversationStore,
            MongoUserStore,
            open_mongo,
        )
        from chatrelay.storage.postgres import PostgresMirrorStore

        try:
            self.mongo_client = open_mongo(self.settings.mongo_uri)
            database = self.mongo_client[self.settings.mongo_db_name]
            self.users = MongoUserStore(database)
            self.conversations = MongoConversationStore(database)
            self.mirror = PostgresMirrorStore(self.settings.mirror_conninfo())
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                mongo_uri=_mask_url_password(self.settings.mongo_uri),
                mirror_host=self.settings.db_host,
                error_type=type(exc).__name__,
            )
            self.close()
            raise

    def close(self) -> None:
        for name in ("users", "mirror", "conversations"):
            store = getattr(self, name, None)
            if store is None:
                continue
            try:
                store.close()
            except Exception as exc:
                logger.warning("store_close_failed", store=name, error_type=type(exc).__name__)
        if self.mongo_client is not None:
            self.mongo_client.close()
            self.mongo_client = None
        logger.info("runtime_closed")
