"""Shared fixtures: temporary SQLite stores and httpx clients backed by MockTransport."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from localchat.ai.provider import ProviderClient
from localchat.config import ProviderConfig, RendererConfig
from localchat.storage.attachment_store import LocalImageStore
from localchat.storage.database import Database
from localchat.storage.message_repo import SqliteMessageStore
from localchat.storage.session_repo import SqliteSessionStore

LLM_URL = "http://llm.test"
RENDERER_URL = "http://renderer.test"

Handler = Callable[[httpx.Request], httpx.Response]


def mock_http(handler: Handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def request_json(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content)


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(base_url=LLM_URL, default_model="llama3.2")


@pytest.fixture
def renderer_config(tmp_path) -> RendererConfig:
    return RendererConfig(
        enabled=True,
        base_url=RENDERER_URL,
        images_dir=str(tmp_path / "images"),
    )


@pytest.fixture
def make_provider(provider_config) -> Callable[[Handler], ProviderClient]:
    def _make(handler: Handler) -> ProviderClient:
        return ProviderClient(provider_config, http=mock_http(handler))

    return _make


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def session_store(db) -> SqliteSessionStore:
    return SqliteSessionStore(db)


@pytest.fixture
def message_store(db) -> SqliteMessageStore:
    return SqliteMessageStore(db)


@pytest.fixture
def image_store(renderer_config) -> LocalImageStore:
    return LocalImageStore(renderer_config.images_dir, url_prefix=renderer_config.url_prefix)
