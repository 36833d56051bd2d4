# tests/conftest.py
import asyncio
import logging
from typing import Any, AsyncIterator, Callable, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from storyai.core.errors import PersistenceError
from storyai.main import create_app
from storyai.providers.registry import ProviderRegistry
from storyai.schemas.settings import PROVIDERS, AIModel, Settings
from storyai.services.generation import GenerationService
from storyai.services.streaming import relay_fragments


class FakeSettingsStore:
    # in-memory stand-in for the settings backend; keeps the camelCase wire record
    def __init__(self, record: Optional[dict] = None) -> None:
        self.record = record or {"id": "settings-1", "availableModels": []}
        self.updates: List[dict] = []
        self.reads = 0
        self.fail_reads = False
        self.fail_writes = False

    async def get_settings(self) -> Settings:
        self.reads += 1
        if self.fail_reads:
            raise PersistenceError("settings read failed")
        return Settings.model_validate(self.record)

    async def update_settings(self, settings_id: str, updates: dict) -> Settings:
        if self.fail_writes:
            raise PersistenceError("settings write failed")
        assert settings_id == self.record["id"]
        self.updates.append(updates)
        self.record = {**self.record, **updates}
        return Settings.model_validate(self.record)


class FakeProvider:
    """
    Provider double driven through the real relay_fragments().
    mode="list" streams `fragments`, "hang" never opens, "feed" streams
    whatever the test puts on the per-call queue (None ends the stream).
    """

    def __init__(self, name: str, fragments=("Hello", " world"), models=(), mode: str = "list") -> None:
        self.name = name
        self.fragments = list(fragments)
        self.models = list(models)
        self.mode = mode
        self.initialized_with: List[str] = []
        self.tokens: List[Any] = []
        self.calls: List[dict] = []
        self.feeds: List[asyncio.Queue] = []
        self.fail_mid_stream = False

    def initialize(self, credential: Optional[str] = None) -> None:
        if not credential:
            return
        self.initialized_with.append(credential)

    def is_initialized(self) -> bool:
        return bool(self.initialized_with)

    async def fetch_models(self) -> List[AIModel]:
        return list(self.models)

    async def generate(self, messages, model_id, temperature, max_tokens, cancel_token):
        self.tokens.append(cancel_token)
        self.calls.append({"model_id": model_id, "temperature": temperature, "max_tokens": max_tokens})
        feed: asyncio.Queue = asyncio.Queue()
        self.feeds.append(feed)

        async def source() -> AsyncIterator[str]:
            if self.mode == "feed":
                while True:
                    item = await feed.get()
                    if item is None:
                        return
                    yield item
            for fragment in self.fragments:
                yield fragment
            if self.fail_mid_stream:
                raise RuntimeError("connection reset")

        async def open_stream():
            if self.mode == "hang":
                await asyncio.Event().wait()
            return source()

        return await relay_fragments(open_stream, lambda chunk: chunk, cancel_token)


async def read_body(response) -> bytes:
    return b"".join([chunk async for chunk in response.body_iterator])


async def wait_for(predicate: Callable[[], bool], attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@pytest.fixture
def store():
    return FakeSettingsStore()


@pytest.fixture
def fake_providers():
    return {name: FakeProvider(name) for name in PROVIDERS}


@pytest_asyncio.fixture
async def service(store, fake_providers):
    svc = GenerationService(store, ProviderRegistry(providers=fake_providers))
    await svc.initialize()
    return svc


@pytest_asyncio.fixture
async def app(service):
    return create_app(service)


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def caplog_info(caplog):
    caplog.set_level(logging.INFO)
    return caplog
