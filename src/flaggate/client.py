"""Feature flag SDK クライアント (httpx)

評価サービスからコンテキスト単位でフラグ一覧を取得し、ClientCache に保持する。
取得に失敗しても例外は送出せず、期限切れの値か空の結果を返す。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from types import TracebackType
from typing import Any
from urllib.parse import quote

import httpx

from .client_cache import ClientCache, ClientCacheStats
from .exceptions import FlagGateError, FlagGateErrorCodes
from .models import EvaluationResult, Reason

logger = logging.getLogger(__name__)

FlagMap = dict[str, EvaluationResult]


@dataclass
class ClientConfig:
    """SDK クライアント設定。"""

    base_url: str
    api_key: str
    timeout_seconds: float = 5.0
    enable_cache: bool = True
    cache_ttl_seconds: float = 300.0
    cache_max_size: int = 1000
    enable_background_refresh: bool = False
    background_refresh_interval: float = 60.0

    def __post_init__(self) -> None:
        if not self.base_url:
            raise FlagGateError(
                code=FlagGateErrorCodes.CONFIG_ERROR,
                message="base_url is required",
            )
        if not self.api_key:
            raise FlagGateError(
                code=FlagGateErrorCodes.CONFIG_ERROR,
                message="api_key is required",
            )
        self.base_url = self.base_url.rstrip("/")


@dataclass
class FlagDetails:
    """単一フラグの評価詳細。"""

    key: str
    enabled: bool
    reason: str
    flag_id: str | None = None
    flag_name: str | None = None
    rule_id: str | None = None
    rule_type: str | None = None

    @classmethod
    def from_result(cls, key: str, result: EvaluationResult) -> FlagDetails:
        return cls(
            key=key,
            enabled=result.enabled,
            reason=result.reason,
            flag_id=result.flag_id,
            flag_name=result.flag_name,
            rule_id=result.rule_id,
            rule_type=result.rule_type,
        )


class BackgroundRefresher:
    """一定間隔で refresh コールバックを呼び出す asyncio Task。"""

    def __init__(self, refresh: Callable[[], Awaitable[Any]], interval_seconds: float) -> None:
        self._refresh = refresh
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """更新タスクを開始する。開始済みなら何もしない。"""
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """更新タスクを停止する。"""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                await self._refresh()
            except Exception as e:
                logger.error("Background refresh failed", extra={"error": str(e)})


class FeatureFlagClient:
    """評価サービスに接続する SDK クライアント。

    Examples:
        async with FeatureFlagClient(config) as client:
            if await client.is_enabled("new_checkout", {"user_id": "u1"}):
                ...
    """

    def __init__(self, config: ClientConfig) -> None:
        self._config = config
        self._headers = {"Content-Type": "application/json", "X-API-Key": config.api_key}
        self._client: httpx.AsyncClient | None = None
        self._cache: ClientCache[FlagMap] | None = (
            ClientCache(ttl=config.cache_ttl_seconds, max_size=config.cache_max_size)
            if config.enable_cache
            else None
        )
        self._last_context: dict[str, Any] = {}
        self._refresher = BackgroundRefresher(self._refresh_last_context, config.background_refresh_interval)

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def cache(self) -> ClientCache[FlagMap] | None:
        return self._cache

    @property
    def last_context(self) -> dict[str, Any]:
        return dict(self._last_context)

    @property
    def background_refresh_running(self) -> bool:
        return self._refresher.running

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._config.base_url,
            headers=self._headers,
            timeout=self._config.timeout_seconds,
        )

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._make_client()
        return self._client

    @staticmethod
    def _unwrap(resp: httpx.Response, context: str) -> Any:
        if resp.status_code >= 400:
            raise FlagGateError(
                code=FlagGateErrorCodes.TRANSPORT_ERROR,
                message=f"{context}: HTTP {resp.status_code}: {resp.text}",
            )
        body = resp.json()
        if not isinstance(body, dict) or body.get("success") is not True:
            raise FlagGateError(
                code=FlagGateErrorCodes.TRANSPORT_ERROR,
                message=f"{context}: unsuccessful response",
            )
        return body.get("data")

    async def fetch_flags(self, context: Mapping[str, Any] | None = None) -> FlagMap:
        """全フラグの評価結果をサービスから取得する。キャッシュは参照しない。

        Raises:
            FlagGateError: 通信失敗・タイムアウト・非 2xx・success != true の場合
        """
        try:
            resp = await self._http().post("/evaluate/flags", json=dict(context or {}))
            data = self._unwrap(resp, "fetch_flags")
        except FlagGateError:
            raise
        except Exception as e:
            raise FlagGateError(
                code=FlagGateErrorCodes.TRANSPORT_ERROR,
                message=f"Failed to fetch flags: {e}",
                cause=e,
            ) from e
        if not isinstance(data, dict):
            raise FlagGateError(
                code=FlagGateErrorCodes.TRANSPORT_ERROR,
                message="fetch_flags: data must be an object",
            )
        return {
            key: EvaluationResult.from_dict({"flag_key": key, **value})
            for key, value in data.items()
            if isinstance(value, dict)
        }

    async def get_all_flags(
        self,
        context: Mapping[str, Any] | None = None,
        *,
        force_refresh: bool = False,
    ) -> FlagMap:
        """コンテキストに対する全フラグを返す。

        キャッシュが有効ならそれを優先し、取得失敗時は期限切れの値、
        それも無ければ空の辞書を返す。
        """
        ctx = dict(context or {})
        self._last_context = ctx
        if self._cache is not None and not force_refresh:
            cached = self._cache.get(ctx)
            if cached is not None:
                return cached

        try:
            flags = await self.fetch_flags(ctx)
        except FlagGateError as e:
            stale = self._cache.get_stale(ctx) if self._cache is not None else None
            logger.warning(
                "Failed to fetch flags",
                extra={"error": str(e), "stale_fallback": stale is not None},
            )
            return stale if stale is not None else {}

        if self._cache is not None:
            self._cache.set(ctx, flags)
        return flags

    async def evaluate(self, flag_key: str, context: Mapping[str, Any] | None = None) -> EvaluationResult:
        """単一フラグをサービスで評価する。失敗時はキャッシュ済みの結果を返す。"""
        ctx = dict(context or {})
        try:
            resp = await self._http().post(f"/evaluate/{quote(flag_key, safe='')}", json=ctx)
            data = self._unwrap(resp, f"evaluate({flag_key})")
            if not isinstance(data, dict):
                raise ValueError("data must be an object")
            return EvaluationResult.from_dict({"flag_key": flag_key, **data})
        except Exception as e:
            logger.warning("Failed to evaluate flag", extra={"flag_key": flag_key, "error": str(e)})

        if self._cache is not None:
            cached = self._cache.get_stale(ctx)
            if cached is not None and flag_key in cached:
                return cached[flag_key]
        return EvaluationResult(enabled=False, reason=Reason.EVALUATION_ERROR, flag_key=flag_key)

    async def is_enabled(self, flag_key: str, context: Mapping[str, Any] | None = None) -> bool:
        flags = await self.get_all_flags(context)
        result = flags.get(flag_key)
        return result is not None and result.enabled

    async def get_flag(self, flag_key: str, context: Mapping[str, Any] | None = None) -> FlagDetails | None:
        flags = await self.get_all_flags(context)
        result = flags.get(flag_key)
        if result is None:
            return None
        return FlagDetails.from_result(flag_key, result)

    async def get_enabled_flags(self, context: Mapping[str, Any] | None = None) -> list[str]:
        flags = await self.get_all_flags(context)
        return [key for key, result in flags.items() if result.enabled]

    async def check_multiple(
        self,
        flag_keys: Sequence[str],
        context: Mapping[str, Any] | None = None,
    ) -> dict[str, bool]:
        flags = await self.get_all_flags(context)
        return {key: key in flags and flags[key].enabled for key in flag_keys}

    def invalidate_cache(self, context: Mapping[str, Any] | None = None) -> None:
        if self._cache is not None:
            self._cache.invalidate(context)

    def cache_stats(self) -> ClientCacheStats | None:
        return self._cache.stats() if self._cache is not None else None

    def cleanup_cache(self) -> int:
        return self._cache.cleanup() if self._cache is not None else 0

    def update_cache_ttl(self, ttl_seconds: float) -> None:
        if self._cache is not None:
            self._cache.update_ttl(ttl_seconds)

    async def health_check(self) -> bool:
        """評価サービスの疎通確認。失敗は False として扱う。"""
        try:
            resp = await self._http().get("/evaluate/health")
        except Exception as e:
            logger.warning("Health check failed", extra={"error": str(e)})
            return False
        return resp.is_success

    async def _refresh_last_context(self) -> None:
        await self.get_all_flags(self._last_context, force_refresh=True)

    async def start_background_refresh(self, context: Mapping[str, Any] | None = None) -> None:
        """最後に使ったコンテキストを定期的に再取得するタスクを開始する。"""
        if context is not None:
            self._last_context = dict(context)
        await self._refresher.start()
        logger.info(
            "Background refresh started",
            extra={"interval_seconds": self._config.background_refresh_interval},
        )

    async def stop_background_refresh(self) -> None:
        await self._refresher.stop()

    async def aclose(self) -> None:
        """更新タスクを停止し HTTP クライアントを解放する。"""
        await self._refresher.stop()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> FeatureFlagClient:
        if self._config.enable_background_refresh:
            await self.start_background_refresh()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
