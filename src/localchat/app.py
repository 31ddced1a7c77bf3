"""Application wiring - builds all components and manages their lifecycle."""

from __future__ import annotations

from pathlib import Path

from localchat.ai.orchestrator import ChatOrchestrator
from localchat.ai.provider import ProviderClient
from localchat.ai.relay import StreamingRelay
from localchat.config import AppConfig
from localchat.log import get_logger
from localchat.services.image_dispatcher import ImageDispatcher
from localchat.storage.attachment_store import LocalImageStore
from localchat.storage.database import Database
from localchat.storage.message_repo import SqliteMessageStore
from localchat.storage.session_repo import SqliteSessionStore

logger = get_logger(__name__)


class LocalChatApp:
    """Top-level application object."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.sessions = SqliteSessionStore(self.db)
        self.messages = SqliteMessageStore(self.db)
        self.provider = ProviderClient(config.provider)
        self.relay = StreamingRelay(self.provider)
        self.image_store = LocalImageStore(
            config.renderer.images_dir, url_prefix=config.renderer.url_prefix
        )
        self.images = ImageDispatcher(config.renderer, self.image_store)
        self.orchestrator = ChatOrchestrator(
            sessions=self.sessions,
            messages=self.messages,
            provider=self.provider,
            relay=self.relay,
            images=self.images,
            chat_config=config.chat,
        )

    async def start(self) -> None:
        """Open storage and probe the backends."""
        Path(self.config.data_dir).mkdir(parents=True, exist_ok=True)
        await self.db.initialize()
        await self.images.start()

        provider_up = await self.provider.is_available()
        if not provider_up:
            logger.warning("provider_unreachable", base_url=self.config.provider.base_url)
        logger.info(
            "localchat_started",
            provider_available=provider_up,
            renderer_available=self.images.availability.is_available,
        )

    async def stop(self) -> None:
        await self.images.stop()
        await self.provider.close()
        await self.db.close()
        logger.info("localchat_stopped")

    async def __aenter__(self) -> LocalChatApp:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
