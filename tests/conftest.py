import json
from typing import List

import pytest
from fastapi.testclient import TestClient


class FakeAsyncRedis:
    def __init__(self, store: dict | None = None):
        self._store = store if store is not None else {}

    @classmethod
    def from_url(cls, *args, **kwargs):  # pragma: no cover - factory compatibility
        return cls()

    async def ping(self):
        return True

    async def close(self):  # pragma: no cover - compatibility
        return None

    async def get(self, key: str):
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None):
        self._store[key] = value
        return True

    async def delete(self, key: str):
        self._store.pop(key, None)
        return 1

    async def exists(self, key: str):
        return 1 if key in self._store else 0

    async def scan(self, cursor: int = 0, match: str = "*", count: int = 100):
        keys = [k for k in self._store.keys() if k.startswith(match.replace("*", ""))]
        return 0, keys

    async def mget(self, keys: List[str]):
        return [self._store.get(k) for k in keys]


class FakeSyncRedis:
    """Synchronous twin used by the Celery task; can share a store with FakeAsyncRedis."""

    def __init__(self, store: dict | None = None):
        self._store = store if store is not None else {}

    def get(self, key: str):
        return self._store.get(key)

    def set(self, key: str, value: str, ex: int | None = None):
        self._store[key] = value
        return True

    def job(self, job_id: str) -> dict:
        return json.loads(self._store[f"job:{job_id}"])


class RecordingSender:
    """Stands in for the Celery app: records tasks instead of sending them."""

    def __init__(self):
        self.sent = []

    def send_task(self, name, args=None, kwargs=None, **options):
        self.sent.append((name, args or [], kwargs or {}))
        return None


@pytest.fixture()
def redis_store() -> dict:
    return {}


@pytest.fixture()
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture()
def work_dirs(tmp_path, monkeypatch):
    import server
    import tasks

    temp_dir = tmp_path / "temp"
    output_dir = tmp_path / "outputs"
    temp_dir.mkdir()
    output_dir.mkdir()
    monkeypatch.setattr(server, "TEMP_DIR", temp_dir)
    monkeypatch.setattr(server, "OUTPUT_DIR", output_dir)
    monkeypatch.setattr(tasks.settings, "output_dir", output_dir)
    return temp_dir, output_dir


@pytest.fixture()
def sync_redis(redis_store, monkeypatch) -> FakeSyncRedis:
    import tasks

    fake = FakeSyncRedis(redis_store)
    monkeypatch.setattr(tasks, "_get_sync_redis", lambda: fake)
    return fake


@pytest.fixture()
def client(monkeypatch, redis_store, sender, work_dirs) -> TestClient:
    import server

    monkeypatch.setattr(server, "AsyncRedis", FakeAsyncRedis)

    fake = FakeAsyncRedis(redis_store)

    async def _get_redis_override():
        return fake

    monkeypatch.setattr(server, "_get_redis", _get_redis_override)
    monkeypatch.setattr(server, "redis_client", fake)
    monkeypatch.setattr(server, "celery_app", sender)

    # Fresh rate-limit window per test
    server.rate_limit_store.clear()

    return TestClient(server.app)
