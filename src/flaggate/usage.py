"""評価利用記録 (fire-and-forget)"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable

from .conditions import Context, Scalar
from .models import UsageEvent

logger = logging.getLogger(__name__)

DEFAULT_USAGE_ATTRIBUTES: tuple[str, ...] = ("user_id", "session_id")


def sanitize_context(
    context: Context, allowed: Iterable[str] = DEFAULT_USAGE_ATTRIBUTES
) -> dict[str, Scalar]:
    """許可された属性だけを残したコンテキストのコピーを返す。"""
    return {key: context[key] for key in allowed if key in context}


class UsageRecorder(ABC):
    """利用記録シンク抽象基底クラス。"""

    @abstractmethod
    async def record(self, event: UsageEvent) -> None:
        """利用記録を送る。失敗時は例外を送出してよい (呼び出し側で握りつぶす)。"""
        ...


class LoggingUsageRecorder(UsageRecorder):
    """利用記録を構造化ログとして出力する。"""

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    async def record(self, event: UsageEvent) -> None:
        logger.log(self._level, "Flag evaluation recorded", extra=event.to_dict())


class InMemoryUsageRecorder(UsageRecorder):
    """テスト用インメモリ利用記録。"""

    def __init__(self) -> None:
        self.events: list[UsageEvent] = []

    async def record(self, event: UsageEvent) -> None:
        self.events.append(event)
