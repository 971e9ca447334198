"""共通フィクスチャ"""

import pytest
from flaggate.cache import CacheBackend


class FakeClock:
    """手動で進める単調時計。"""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingBackend(CacheBackend):
    """全操作が失敗するキャッシュバックエンド。"""

    async def get(self, key: str) -> str | None:
        raise ConnectionError("redis down")

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        raise ConnectionError("redis down")

    async def delete(self, *keys: str) -> int:
        raise ConnectionError("redis down")

    async def delete_pattern(self, pattern: str) -> int:
        raise ConnectionError("redis down")

    async def ping(self) -> None:
        raise ConnectionError("redis down")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def failing_backend() -> FailingBackend:
    return FailingBackend()
