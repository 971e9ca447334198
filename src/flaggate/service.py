"""評価サービス

キャッシュ → ルールストア → 評価エンジン → 利用記録 (fire-and-forget) を
束ねる。評価呼び出しはビジネスロジック上の理由では例外を送出しない。
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence

from .cache import FlagCache
from .conditions import Context
from .config import UsageSection
from .engine import evaluate
from .exceptions import FlagGateError, FlagGateErrorCodes
from .metrics import flag_evaluations_total, flag_usage_delivery_errors_total
from .models import EvaluationResult, Flag, FlagWithRules, Reason, UsageEvent
from .store import RuleStore
from .usage import UsageRecorder, sanitize_context

logger = logging.getLogger(__name__)


class EvaluationService:
    """フラグ評価のオーケストレーション。"""

    def __init__(
        self,
        store: RuleStore,
        cache: FlagCache | None = None,
        recorder: UsageRecorder | None = None,
        usage_config: UsageSection | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._recorder = recorder
        self._usage_config = usage_config or UsageSection()
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def cache(self) -> FlagCache | None:
        return self._cache

    async def _load_flag(self, application_id: str, flag_key: str) -> FlagWithRules | None:
        if self._cache is not None:
            cached = await self._cache.get_flag_with_rules(application_id, flag_key)
            if cached is not None:
                return cached

        flag = await self._store.get_flag(application_id, flag_key)
        if flag is None:
            return None
        rules = await self._store.get_rules(flag.id)
        entry = FlagWithRules(flag=flag, rules=list(rules or []))
        if self._cache is not None:
            await self._cache.set_flag_with_rules(application_id, flag_key, entry)
        return entry

    async def evaluate_flag(
        self,
        application_id: str,
        flag_key: str,
        context: Context | None = None,
    ) -> EvaluationResult:
        """単一フラグを評価する。

        Args:
            application_id: 呼び出し元アプリケーション ID
            flag_key: フラグキー
            context: 評価コンテキスト

        Returns:
            EvaluationResult。入力不足は INVALID_INPUT、ストア障害は
            EVALUATION_ERROR の結果として返す。
        """
        if not application_id or not flag_key:
            return EvaluationResult(
                enabled=False, reason=Reason.INVALID_INPUT, flag_key=flag_key or ""
            )
        ctx: Context = context if context is not None else {}
        if not isinstance(ctx, Mapping):
            return EvaluationResult(enabled=False, reason=Reason.INVALID_INPUT, flag_key=flag_key)

        if self._cache is not None:
            cached_result = await self._cache.get_evaluation_result(application_id, flag_key, ctx)
            if cached_result is not None:
                flag_evaluations_total.add(
                    1, {"reason": str(cached_result.reason), "enabled": cached_result.enabled}
                )
                if cached_result.flag_id is not None:
                    self._record_usage(application_id, cached_result, ctx)
                return cached_result

        try:
            entry = await self._load_flag(application_id, flag_key)
        except Exception as e:
            logger.error(
                "Failed to load flag",
                extra={"application_id": application_id, "flag_key": flag_key, "error": str(e)},
            )
            result = EvaluationResult(
                enabled=False, reason=Reason.EVALUATION_ERROR, flag_key=flag_key
            )
            flag_evaluations_total.add(1, {"reason": str(result.reason), "enabled": False})
            return result

        if entry is None:
            result = evaluate(None, [], ctx, flag_key=flag_key)
        else:
            result = evaluate(entry.flag, entry.rules, ctx)

        flag_evaluations_total.add(1, {"reason": str(result.reason), "enabled": result.enabled})
        if self._cache is not None and result.reason != Reason.EVALUATION_ERROR:
            await self._cache.set_evaluation_result(application_id, flag_key, ctx, result)
        if entry is not None:
            self._record_usage(application_id, result, ctx)
        return result

    async def evaluate_flags(
        self,
        application_id: str,
        flag_keys: Sequence[str],
        context: Context | None = None,
    ) -> dict[str, EvaluationResult]:
        """複数フラグを並行評価する。

        Raises:
            FlagGateError: application_id が無い、または flag_keys がリストでない場合
        """
        if not application_id:
            raise FlagGateError(FlagGateErrorCodes.INVALID_INPUT, "application_id is required")
        if isinstance(flag_keys, (str, bytes)) or not isinstance(flag_keys, Sequence):
            raise FlagGateError(FlagGateErrorCodes.INVALID_INPUT, "flag_keys must be a list")
        results = await asyncio.gather(
            *(self.evaluate_flag(application_id, key, context) for key in flag_keys)
        )
        return {result.flag_key: result for result in results if result.flag_key}

    async def _list_flags(self, application_id: str) -> list[Flag]:
        if self._cache is not None:
            cached = await self._cache.get_application_flags(application_id)
            if cached:
                return cached
        try:
            flags = await self._store.list_flags(application_id)
        except Exception as e:
            raise FlagGateError(
                code=FlagGateErrorCodes.STORE_ERROR,
                message=f"Failed to list flags for application {application_id}",
                cause=e,
            ) from e
        if flags and self._cache is not None:
            await self._cache.set_application_flags(application_id, flags)
        return flags

    async def get_all_flags(
        self,
        application_id: str,
        context: Context | None = None,
    ) -> dict[str, EvaluationResult]:
        """アプリケーションの全フラグをコンテキストで評価する。

        Raises:
            FlagGateError: application_id が無い (INVALID_INPUT)、
                フラグ一覧を読めない (STORE_ERROR) 場合
        """
        if not application_id:
            raise FlagGateError(FlagGateErrorCodes.INVALID_INPUT, "application_id is required")
        flags = await self._list_flags(application_id)
        results: dict[str, EvaluationResult] = {}
        for flag in flags:
            if not flag.key:
                logger.error("Flag without key", extra={"flag_id": flag.id})
                continue
            result = await self.evaluate_flag(application_id, flag.key, context)
            result.flag_name = result.flag_name or flag.name or flag.key
            results[flag.key] = result
        return results

    def _record_usage(self, application_id: str, result: EvaluationResult, context: Context) -> None:
        if self._recorder is None or not self._usage_config.enabled:
            return
        event = UsageEvent(
            flag_id=result.flag_id,
            app_id=application_id,
            flag_key=result.flag_key,
            enabled=result.enabled,
            reason=str(result.reason),
            sanitized_context=sanitize_context(context, self._usage_config.context_attributes),
        )
        task = asyncio.create_task(self._deliver_usage(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver_usage(self, event: UsageEvent) -> None:
        assert self._recorder is not None
        try:
            await self._recorder.record(event)
        except Exception as e:
            flag_usage_delivery_errors_total.add(1)
            logger.warning(
                "Failed to record flag usage",
                extra={"flag_key": event.flag_key, "app_id": event.app_id, "error": str(e)},
            )

    async def flush_usage(self) -> None:
        """未完了の利用記録送信を待つ。"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        """利用記録を送り切り、キャッシュの購読を解除する。"""
        await self.flush_usage()
        if self._cache is not None:
            self._cache.detach()
