"""キャッシュ無効化バス

フラグ・ルールの変更をコミット後に publish し、購読している全キャッシュ
インスタンスが該当エントリを削除する。結果整合であり、通知の到達までの
古さはキャッシュ TTL で上限が決まる。
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as redis

from .exceptions import FlagGateError, FlagGateErrorCodes
from .models import InvalidationAction, InvalidationEvent

logger = logging.getLogger(__name__)

InvalidationHandler = Callable[[InvalidationEvent], Awaitable[None]]

DEFAULT_CHANNEL = "flag_updates"


class InvalidationBus(ABC):
    """無効化通知の publish/subscribe 抽象基底クラス。"""

    def __init__(self) -> None:
        self._handlers: list[InvalidationHandler] = []

    def subscribe(self, handler: InvalidationHandler) -> None:
        """ハンドラを登録する。"""
        self._handlers.append(handler)

    def unsubscribe(self, handler: InvalidationHandler) -> None:
        """ハンドラの登録を解除する。未登録なら何もしない。"""
        with contextlib.suppress(ValueError):
            self._handlers.remove(handler)

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    async def _deliver(self, event: InvalidationEvent) -> None:
        # 1 つのハンドラの失敗で他の購読者への配信を止めない
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "Invalidation handler failed",
                    extra={
                        "application_id": event.application_id,
                        "flag_key": event.flag_key,
                        "error": str(e),
                    },
                )

    @abstractmethod
    async def publish(self, event: InvalidationEvent) -> None:
        """無効化通知を発行する。"""
        ...

    async def start(self) -> None:
        """受信処理を開始する。"""
        return None

    async def stop(self) -> None:
        """受信処理を停止する。"""
        return None


class InMemoryInvalidationBus(InvalidationBus):
    """同一プロセス内の購読者へ同期的に配信するバス。"""

    def __init__(self) -> None:
        super().__init__()
        self.published: list[InvalidationEvent] = []

    async def publish(self, event: InvalidationEvent) -> None:
        self.published.append(event)
        await self._deliver(event)


class RedisInvalidationBus(InvalidationBus):
    """Redis Pub/Sub を使ったインスタンス間の無効化バス。"""

    def __init__(
        self,
        client: redis.Redis,
        channel: str = DEFAULT_CHANNEL,
        *,
        poll_timeout: float = 1.0,
        retry_delay: float = 1.0,
    ) -> None:
        super().__init__()
        self._client = client
        self._channel = channel
        self._poll_timeout = poll_timeout
        self._retry_delay = retry_delay
        self._pubsub: Any = None
        self._task: asyncio.Task[None] | None = None

    @property
    def channel(self) -> str:
        return self._channel

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def publish(self, event: InvalidationEvent) -> None:
        try:
            await self._client.publish(self._channel, json.dumps(event.to_dict()))
        except Exception as e:
            raise FlagGateError(
                code=FlagGateErrorCodes.PUBLISH_ERROR,
                message=f"Failed to publish invalidation for {event.application_id}:{event.flag_key}",
                cause=e,
            ) from e

    async def start(self) -> None:
        """チャネルを購読し、受信タスクを開始する。"""
        if self.running:
            return
        self._pubsub = self._client.pubsub()
        await self._pubsub.subscribe(self._channel)
        self._task = asyncio.create_task(self._listen())
        logger.info("Invalidation listener started", extra={"channel": self._channel})

    async def stop(self) -> None:
        """受信タスクを停止し、購読を解除する。"""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self._channel)
                await self._pubsub.aclose()
            except Exception as e:
                logger.warning("Failed to close pubsub", extra={"error": str(e)})
            self._pubsub = None

    async def handle_message(self, data: Any) -> None:
        """受信したメッセージ本文をデコードしてハンドラへ配信する。"""
        try:
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            payload = json.loads(data)
            event = InvalidationEvent.from_dict(payload)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Dropping malformed invalidation message", extra={"error": str(e)})
            return
        await self._deliver(event)

    async def _listen(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_timeout
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Invalidation listener error", extra={"error": str(e)})
                await asyncio.sleep(self._retry_delay)
                continue
            if message is None or message.get("type") != "message":
                continue
            await self.handle_message(message.get("data"))


async def publish_flag_change(
    bus: InvalidationBus,
    application_id: str,
    flag_key: str | None,
    action: InvalidationAction | str = InvalidationAction.UPDATE,
) -> InvalidationEvent:
    """管理層が書き込みのコミット後に呼ぶ無効化通知ヘルパー。"""
    event = InvalidationEvent(
        application_id=application_id,
        flag_key=flag_key,
        action=InvalidationAction(action),
    )
    await bus.publish(event)
    return event
