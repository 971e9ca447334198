"""サーバー側リードスルーキャッシュ

CacheBackend はキーと JSON 文字列を扱う最小の抽象で、FlagCache が
フラグ・ルール、アプリケーション単位のフラグ一覧、評価結果のキー設計と
無効化を担う。キャッシュはあくまで高速化層であり、バックエンドの障害は
ログに記録してミス扱いにし、呼び出し元へは送出しない。
"""

from __future__ import annotations

import fnmatch
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .bucketing import context_fingerprint
from .conditions import Context
from .config import CacheSection
from .metrics import record_cache_lookup
from .models import EvaluationResult, Flag, FlagWithRules, InvalidationAction, InvalidationEvent

if TYPE_CHECKING:
    from .invalidation import InvalidationBus

logger = logging.getLogger(__name__)

FLAG_RULES_PREFIX = "flag_rules:"
APP_FLAGS_PREFIX = "app_flags:"
EVALUATION_PREFIX = "eval:"


class CacheBackend(ABC):
    """キャッシュバックエンド抽象基底クラス。"""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """キーに対応する値を取得する。存在しなければ None。"""
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        """キーと値を保存する。ttl 指定時は有効期限付き（秒）。"""
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """キーを削除し、削除できた件数を返す。"""
        ...

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """glob パターン (``*``) に一致するキーを削除し、件数を返す。"""
        ...

    @abstractmethod
    async def ping(self) -> None:
        """疎通確認。到達できなければ例外を送出する。"""
        ...

    async def close(self) -> None:
        """接続を解放する。"""
        return None


class _CacheEntry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: str, expires_at: float | None) -> None:
        self.value = value
        self.expires_at = expires_at


class InMemoryCacheBackend(CacheBackend):
    """プロセス内キャッシュバックエンド。clock を差し替えて時間経過を再現できる。"""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: dict[str, _CacheEntry] = {}

    def _expired(self, entry: _CacheEntry) -> bool:
        return entry.expires_at is not None and self._clock() >= entry.expires_at

    async def get(self, key: str) -> str | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if self._expired(entry):
            self._store.pop(key, None)
            return None
        return entry.value

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        self._store[key] = _CacheEntry(value, expires_at)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
        return removed

    async def delete_pattern(self, pattern: str) -> int:
        matched = [key for key in self._store if fnmatch.fnmatchcase(key, pattern)]
        return await self.delete(*matched)

    async def ping(self) -> None:
        return None

    def keys(self) -> list[str]:
        """期限切れを含む保持中のキー一覧 (テスト・診断用)。"""
        return list(self._store)


class FlagCache:
    """フラグ評価用のリードスルーキャッシュ。

    キー:
        ``flag_rules:{app}:{flag_key}``         フラグとルール
        ``app_flags:{app}``                     アプリケーションのフラグ一覧
        ``eval:{app}:{flag_key}:{fingerprint}`` 評価結果 (有効化時のみ)
    """

    def __init__(self, backend: CacheBackend, config: CacheSection | None = None) -> None:
        self._backend = backend
        self._config = config or CacheSection()
        self._bus: InvalidationBus | None = None

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    @property
    def evaluation_cache_enabled(self) -> bool:
        return self._config.evaluation_cache_enabled

    @staticmethod
    def flag_key_for(application_id: str, flag_key: str) -> str:
        return f"{FLAG_RULES_PREFIX}{application_id}:{flag_key}"

    @staticmethod
    def app_flags_key_for(application_id: str) -> str:
        return f"{APP_FLAGS_PREFIX}{application_id}"

    @staticmethod
    def evaluation_key_for(application_id: str, flag_key: str, fingerprint: str) -> str:
        return f"{EVALUATION_PREFIX}{application_id}:{flag_key}:{fingerprint}"

    def fingerprint(self, context: Context) -> str:
        return context_fingerprint(context, self._config.fingerprint_attributes)

    async def _read(self, key: str, tier: str) -> Any | None:
        try:
            raw = await self._backend.get(key)
        except Exception as e:
            logger.warning("Cache read failed", extra={"key": key, "error": str(e)})
            record_cache_lookup(tier, "error")
            return None
        if raw is None:
            record_cache_lookup(tier, "miss")
            return None
        try:
            value = json.loads(raw)
        except ValueError as e:
            logger.warning("Dropping corrupted cache entry", extra={"key": key, "error": str(e)})
            await self._delete(key)
            record_cache_lookup(tier, "error")
            return None
        record_cache_lookup(tier, "hit")
        return value

    async def _write(self, key: str, value: Any, ttl: float) -> None:
        try:
            await self._backend.set(key, json.dumps(value, ensure_ascii=False), ttl)
        except Exception as e:
            logger.warning("Cache write failed", extra={"key": key, "error": str(e)})

    async def _delete(self, *keys: str) -> None:
        try:
            await self._backend.delete(*keys)
        except Exception as e:
            logger.warning("Cache delete failed", extra={"keys": list(keys), "error": str(e)})

    async def _delete_pattern(self, pattern: str) -> None:
        try:
            await self._backend.delete_pattern(pattern)
        except Exception as e:
            logger.warning("Cache pattern delete failed", extra={"pattern": pattern, "error": str(e)})

    async def get_flag_with_rules(self, application_id: str, flag_key: str) -> FlagWithRules | None:
        """キャッシュ済みのフラグとルールを返す。ミス・障害時は None。"""
        key = self.flag_key_for(application_id, flag_key)
        data = await self._read(key, "flag")
        if data is None:
            return None
        try:
            return FlagWithRules.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Dropping malformed flag entry", extra={"key": key, "error": str(e)})
            await self._delete(key)
            return None

    async def set_flag_with_rules(
        self, application_id: str, flag_key: str, entry: FlagWithRules
    ) -> None:
        await self._write(
            self.flag_key_for(application_id, flag_key),
            entry.to_dict(),
            self._config.flag_ttl,
        )

    async def get_application_flags(self, application_id: str) -> list[Flag] | None:
        """キャッシュ済みのアプリケーションフラグ一覧を返す。ミス・障害時は None。"""
        key = self.app_flags_key_for(application_id)
        data = await self._read(key, "app_flags")
        if data is None:
            return None
        try:
            return [Flag.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Dropping malformed flag list", extra={"key": key, "error": str(e)})
            await self._delete(key)
            return None

    async def set_application_flags(self, application_id: str, flags: list[Flag]) -> None:
        await self._write(
            self.app_flags_key_for(application_id),
            [flag.to_dict() for flag in flags],
            self._config.app_flags_ttl,
        )

    async def get_evaluation_result(
        self, application_id: str, flag_key: str, context: Context
    ) -> EvaluationResult | None:
        if not self._config.evaluation_cache_enabled:
            return None
        key = self.evaluation_key_for(application_id, flag_key, self.fingerprint(context))
        data = await self._read(key, "evaluation")
        if data is None:
            return None
        return EvaluationResult.from_dict(data)

    async def set_evaluation_result(
        self,
        application_id: str,
        flag_key: str,
        context: Context,
        result: EvaluationResult,
    ) -> None:
        if not self._config.evaluation_cache_enabled:
            return
        await self._write(
            self.evaluation_key_for(application_id, flag_key, self.fingerprint(context)),
            result.to_dict(),
            self._config.evaluation_ttl,
        )

    async def invalidate_flag(self, application_id: str, flag_key: str) -> None:
        """フラグ単位の無効化: フラグ・そのフラグの評価結果・アプリ一覧を削除する。"""
        await self._delete(
            self.flag_key_for(application_id, flag_key),
            self.app_flags_key_for(application_id),
        )
        await self._delete_pattern(f"{EVALUATION_PREFIX}{application_id}:{flag_key}:*")
        logger.debug(
            "Flag cache invalidated",
            extra={"application_id": application_id, "flag_key": flag_key},
        )

    async def clear_application(self, application_id: str) -> None:
        """アプリケーション単位の無効化: 一覧・全フラグ・全評価結果を削除する。"""
        await self._delete(self.app_flags_key_for(application_id))
        await self._delete_pattern(f"{FLAG_RULES_PREFIX}{application_id}:*")
        await self._delete_pattern(f"{EVALUATION_PREFIX}{application_id}:*")
        logger.debug("Application cache cleared", extra={"application_id": application_id})

    async def handle_invalidation(self, event: InvalidationEvent) -> None:
        """無効化通知を適用する。バスのハンドラとして登録される。"""
        if event.action == InvalidationAction.BULK_UPDATE or not event.flag_key:
            await self.clear_application(event.application_id)
        else:
            await self.invalidate_flag(event.application_id, event.flag_key)

    def attach(self, bus: InvalidationBus) -> None:
        """無効化バスを購読する。"""
        if self._bus is bus:
            return
        self.detach()
        bus.subscribe(self.handle_invalidation)
        self._bus = bus

    def detach(self) -> None:
        """無効化バスの購読を解除する。"""
        if self._bus is not None:
            self._bus.unsubscribe(self.handle_invalidation)
            self._bus = None

    async def is_healthy(self) -> bool:
        try:
            await self._backend.ping()
            return True
        except Exception as e:
            logger.warning("Cache backend unreachable", extra={"error": str(e)})
            return False

    async def close(self) -> None:
        self.detach()
        try:
            await self._backend.close()
        except Exception as e:
            logger.warning("Cache backend close failed", extra={"error": str(e)})
