"""SDK 側のコンテキスト単位キャッシュ (LRU + TTL)"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ClientCacheStats:
    """キャッシュ統計。"""

    total_entries: int
    valid_entries: int
    expired_entries: int
    max_size: int
    ttl: float


class _Entry(Generic[T]):
    __slots__ = ("value", "stored_at")

    def __init__(self, value: T, stored_at: float) -> None:
        self.value = value
        self.stored_at = stored_at


class ClientCache(Generic[T]):
    """評価コンテキストをキーにした有界・有期限キャッシュ。

    容量超過時は最も長くアクセスされていないエントリを追い出す。
    期限切れエントリは get ではミス扱いになるが、stale フォールバック用に
    cleanup か LRU 追い出しまで値を保持する。
    """

    def __init__(
        self,
        ttl: float = 300.0,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._ttl = ttl
        self._max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, _Entry[T]] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    @property
    def max_size(self) -> int:
        return self._max_size

    @staticmethod
    def make_key(context: Mapping[str, Any] | None) -> str:
        """属性の挿入順に依存しない正規化キーを返す。"""
        return json.dumps(
            dict(context or {}),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        )

    def _is_valid(self, entry: _Entry[T]) -> bool:
        return self._clock() - entry.stored_at < self._ttl

    def get(self, context: Mapping[str, Any] | None) -> T | None:
        """有効なエントリを返し、アクセス順を更新する。期限切れ・未登録は None。"""
        key = self.make_key(context)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not self._is_valid(entry):
                return None
            self._entries.move_to_end(key)
            return entry.value

    def get_stale(self, context: Mapping[str, Any] | None) -> T | None:
        """期限切れでも最後に保存した値を返す。アクセス順は変えない。"""
        with self._lock:
            entry = self._entries.get(self.make_key(context))
            return entry.value if entry is not None else None

    def set(self, context: Mapping[str, Any] | None, value: T) -> None:
        """値を保存し、容量超過分を LRU で追い出す。"""
        key = self.make_key(context)
        with self._lock:
            self._entries[key] = _Entry(value, self._clock())
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted LRU cache entry", extra={"key": evicted})

    def has(self, context: Mapping[str, Any] | None) -> bool:
        with self._lock:
            entry = self._entries.get(self.make_key(context))
            return entry is not None and self._is_valid(entry)

    def invalidate(self, context: Mapping[str, Any] | None = None) -> None:
        """context 指定時はそのエントリを、未指定時は全エントリを削除する。"""
        with self._lock:
            if context is None:
                self._entries.clear()
            else:
                self._entries.pop(self.make_key(context), None)

    def cleanup(self) -> int:
        """期限切れエントリを削除し、削除件数を返す。"""
        with self._lock:
            expired = [key for key, entry in self._entries.items() if not self._is_valid(entry)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Cache cleanup completed", extra={"cleaned_entries": len(expired)})
        return len(expired)

    def update_ttl(self, ttl: float) -> None:
        self._ttl = ttl

    def stats(self) -> ClientCacheStats:
        with self._lock:
            valid = sum(1 for entry in self._entries.values() if self._is_valid(entry))
            total = len(self._entries)
        return ClientCacheStats(
            total_entries=total,
            valid_entries=valid,
            expired_entries=total - valid,
            max_size=self._max_size,
            ttl=self._ttl,
        )

    def keys(self) -> list[str]:
        """LRU 順 (古い順) のキー一覧。"""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
