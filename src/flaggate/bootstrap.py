"""設定からのコンポーネント組み立て"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import redis.asyncio as redis
from fastapi import FastAPI

from .cache import CacheBackend, FlagCache, InMemoryCacheBackend
from .config import FlagGateConfig
from .health import CacheHealthCheck, HealthChecker
from .invalidation import InMemoryInvalidationBus, InvalidationBus, RedisInvalidationBus
from .redis_cache import RedisCacheBackend
from .server import ApplicationResolver, StaticApplicationResolver, create_app
from .service import EvaluationService
from .store import RuleStore
from .usage import LoggingUsageRecorder, UsageRecorder

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """組み立て済みのサーバー側コンポーネント一式。"""

    config: FlagGateConfig
    service: EvaluationService
    cache: FlagCache
    bus: InvalidationBus
    checker: HealthChecker

    async def start(self) -> None:
        """無効化バスの受信を開始し、キャッシュを購読させる。"""
        self.cache.attach(self.bus)
        await self.bus.start()
        logger.info(
            "flaggate runtime started",
            extra={"service": self.config.service.name, "bus": type(self.bus).__name__},
        )

    async def stop(self) -> None:
        """受信停止・利用記録の送出・接続解放を行う。"""
        await self.bus.stop()
        await self.service.aclose()
        await self.cache.close()
        logger.info("flaggate runtime stopped", extra={"service": self.config.service.name})


def build_runtime(
    config: FlagGateConfig,
    store: RuleStore,
    *,
    recorder: UsageRecorder | None = None,
) -> Runtime:
    """設定に応じて Redis またはインメモリのバックエンドで組み立てる。"""
    backend: CacheBackend
    bus: InvalidationBus
    if config.redis is not None:
        client = redis.from_url(
            config.redis.url,
            decode_responses=True,
            socket_timeout=config.redis.socket_timeout,
            socket_connect_timeout=config.redis.socket_timeout,
        )
        backend = RedisCacheBackend(client)
        bus = RedisInvalidationBus(client, config.invalidation.channel)
    else:
        backend = InMemoryCacheBackend()
        bus = InMemoryInvalidationBus()

    cache = FlagCache(backend, config.cache)
    service = EvaluationService(
        store,
        cache=cache,
        recorder=recorder if recorder is not None else LoggingUsageRecorder(),
        usage_config=config.usage,
    )
    checker = HealthChecker()
    checker.add(CacheHealthCheck(cache))
    return Runtime(config=config, service=service, cache=cache, bus=bus, checker=checker)


def create_app_from_config(
    config: FlagGateConfig,
    store: RuleStore,
    *,
    resolver: ApplicationResolver | None = None,
    recorder: UsageRecorder | None = None,
) -> FastAPI:
    """設定から FastAPI アプリケーションを生成する。ライフサイクルは lifespan に束ねる。"""
    runtime = build_runtime(config, store, recorder=recorder)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = create_app(
        runtime.service,
        resolver or StaticApplicationResolver(config.api_keys),
        runtime.checker,
        prefix=config.server.prefix,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    return app
