"""Pytest fixtures and config."""

import asyncio
import fnmatch

import pytest


@pytest.fixture(autouse=True)
def env_cleanup(monkeypatch):
    """Avoid picking up real provider credentials in tests."""
    for name in ("OPENAI_API_KEY", "OPENAI_BASE_URL", "ENCRYPTION_KEY", "REQRELAY_ENV_PREFIX", "PORT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/1")
    yield


class FakeRedis:
    """The subset of redis.Redis (decode_responses=True) the config store uses."""

    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value
        return True

    def delete(self, *keys):
        removed = 0
        for k in keys:
            if k in self.data:
                del self.data[k]
                removed += 1
        return removed

    def keys(self, pattern="*"):
        return [k for k in self.data if fnmatch.fnmatchcase(k, pattern)]

    def pipeline(self):
        return FakePipeline(self)

    def close(self):
        pass


class FakePipeline:
    """Queues commands; `execute` applies them in order and returns their results."""

    def __init__(self, client):
        self._client = client
        self._ops = []

    def set(self, key, value):
        self._ops.append(("set", (key, value)))
        return self

    def delete(self, *keys):
        self._ops.append(("delete", keys))
        return self

    def execute(self):
        results = [getattr(self._client, name)(*args) for name, args in self._ops]
        self._ops = []
        return results


@pytest.fixture
def fake_redis():
    return FakeRedis()


class StubProvider:
    """Provider whose stream yields `chunks`, then raises `fail_with` (if set).

    Records calls and whether the upstream iterator was closed.
    """

    def __init__(self, chunks, *, fail_with=None, open_error=None, delay=0.0):
        self.chunks = list(chunks)
        self.fail_with = fail_with
        self.open_error = open_error
        self.delay = delay
        self.calls = []
        self.pulled = 0
        self.closed = False

    async def open_stream(self, role, prompt, *, file_ids=()):
        self.calls.append({"role": role, "prompt": prompt, "file_ids": tuple(file_ids)})
        if self.open_error is not None:
            raise self.open_error
        return self._gen()

    async def _gen(self):
        try:
            for c in self.chunks:
                if self.delay:
                    await asyncio.sleep(self.delay)
                else:
                    await asyncio.sleep(0)
                self.pulled += 1
                yield c
            if self.fail_with is not None:
                raise self.fail_with
        finally:
            self.closed = True


@pytest.fixture
def stub_provider_cls():
    return StubProvider
