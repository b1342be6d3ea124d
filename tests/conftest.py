import asyncio
import base64
from types import SimpleNamespace

import pytest

from src.mamasaheli import config, db, gemini_api, store

TEST_IDS = {var: f"{var.lower()}_test" for var in config.REQUIRED_IDS.values()}


@pytest.fixture(autouse=True)
def test_env(tmp_path, monkeypatch):
    """Full configuration pointing at a temporary SQLite database for each test."""
    for var, value in TEST_IDS.items():
        monkeypatch.setenv(var, value)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("CHAT_DB_KEY", base64.urlsafe_b64encode(b"0123456789abcdef0123456789abcdef").decode())
    monkeypatch.setenv("GEMINI_API_KEY", "AIzaTestKey")
    monkeypatch.setenv("AI_AGENT", "gemini-test")
    monkeypatch.setenv("APP_BASE_URL", "http://testserver/v1")
    monkeypatch.setenv("ENVIRONMENT", "debug")

    config.reset_settings()
    db.reset_encryption_key()
    store.reset_store()
    gemini_api._async_client = None
    yield
    config.reset_settings()
    db.reset_encryption_key()
    store.reset_store()
    gemini_api._async_client = None
    db._engine = None
    db._db_initialized = False


@pytest.fixture
def run():
    """Run a coroutine on a fresh loop, releasing the engine and store afterwards."""
    def _run(coro):
        async def main():
            try:
                return await coro
            finally:
                await db.dispose_engine()
                store.reset_store()
        return asyncio.run(main())
    return _run


@pytest.fixture
def settings():
    return config.get_settings()


# ------------------------------------------------------------------------------
# Fake Gemini
# ------------------------------------------------------------------------------
class FakeModels:
    def __init__(self, text="", chunks=(), error=None):
        self.text = text
        self.chunks = list(chunks)
        self.error = error
        self.calls = []

    async def generate_content(self, model, contents, config):
        self.calls.append({"model": model, "contents": contents, "config": config})
        if self.error:
            raise self.error
        return SimpleNamespace(text=self.text)

    async def generate_content_stream(self, model, contents, config):
        self.calls.append({"model": model, "contents": contents, "config": config})
        if self.error:
            raise self.error

        async def stream():
            for chunk in self.chunks:
                yield SimpleNamespace(text=chunk)
        return stream()


@pytest.fixture
def fake_gemini():
    """Install a fake Gemini client; returns its models object for inspection."""
    def _install(text="", chunks=(), error=None):
        models = FakeModels(text=text, chunks=chunks, error=error)
        gemini_api._async_client = SimpleNamespace(aio=SimpleNamespace(models=models))
        return models
    return _install
