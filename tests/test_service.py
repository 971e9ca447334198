"""EvaluationService のユニットテスト"""

import uuid
from datetime import datetime, timezone
from typing import Any

import pytest
from flaggate.cache import FlagCache, InMemoryCacheBackend
from flaggate.config import CacheSection, UsageSection
from flaggate.exceptions import FlagGateError, FlagGateErrorCodes
from flaggate.invalidation import InMemoryInvalidationBus
from flaggate.models import Flag, Reason, Rule, RuleType, UsageEvent
from flaggate.service import EvaluationService
from flaggate.store import InMemoryRuleStore
from flaggate.usage import InMemoryUsageRecorder, UsageRecorder


class CountingStore(InMemoryRuleStore):
    """読み取り回数を数えるストア。"""

    def __init__(self, *args: object, **kwargs: object) -> None:
        super().__init__(*args, **kwargs)  # type: ignore[arg-type]
        self.flag_reads = 0
        self.list_reads = 0

    async def get_flag(self, application_id: str, key: str) -> Flag | None:
        self.flag_reads += 1
        return await super().get_flag(application_id, key)

    async def list_flags(self, application_id: str) -> list[Flag]:
        self.list_reads += 1
        return await super().list_flags(application_id)


class BrokenStore(InMemoryRuleStore):
    async def get_flag(self, application_id: str, key: str) -> Flag | None:
        raise ConnectionError("database unavailable")

    async def list_flags(self, application_id: str) -> list[Flag]:
        raise ConnectionError("database unavailable")


class FailingRecorder(UsageRecorder):
    async def record(self, event: UsageEvent) -> None:
        raise RuntimeError("sink down")


async def seed(store: InMemoryRuleStore) -> None:
    await store.put_flag(Flag(id="f1", application_id="app-1", key="premium_features", name="Premium", enabled=True))
    await store.put_rule(Rule(id="r1", flag_id="f1", type=RuleType.PERCENTAGE, priority=1, target_percentage=50))
    await store.put_flag(Flag(id="f2", application_id="app-1", key="dark_mode", enabled=False))


async def test_invalid_input_returns_result() -> None:
    """必須 ID が無い場合は例外ではなく INVALID_INPUT の結果を返すこと。"""
    service = EvaluationService(InMemoryRuleStore())
    assert (await service.evaluate_flag("", "x")).reason == Reason.INVALID_INPUT
    assert (await service.evaluate_flag("app-1", "")).reason == Reason.INVALID_INPUT
    result = await service.evaluate_flag("app-1", "x", ["bad"])  # type: ignore[arg-type]
    assert result.reason == Reason.INVALID_INPUT
    assert result.enabled is False


async def test_evaluate_flag_reference_example() -> None:
    store = InMemoryRuleStore()
    await seed(store)
    service = EvaluationService(store)
    mohit = await service.evaluate_flag("app-1", "premium_features", {"user_id": "mohit"})
    alice = await service.evaluate_flag("app-1", "premium_features", {"user_id": "alice"})
    assert (mohit.enabled, mohit.reason) == (False, Reason.PERCENTAGE_EXCLUDED)
    assert (alice.enabled, alice.reason) == (True, Reason.PERCENTAGE_INCLUDED)
    assert alice.flag_id == "f1"
    assert alice.flag_name == "Premium"


async def test_flag_not_found() -> None:
    recorder = InMemoryUsageRecorder()
    service = EvaluationService(InMemoryRuleStore(), recorder=recorder)
    result = await service.evaluate_flag("app-1", "missing", {})
    await service.flush_usage()
    assert result.reason == Reason.FLAG_NOT_FOUND
    assert result.flag_key == "missing"
    assert recorder.events == []


async def test_read_through_populates_cache() -> None:
    """2 回目はストアを読まずキャッシュから評価すること。"""
    store = CountingStore()
    await seed(store)
    cache = FlagCache(InMemoryCacheBackend())
    service = EvaluationService(store, cache=cache)

    first = await service.evaluate_flag("app-1", "premium_features", {"user_id": "alice"})
    second = await service.evaluate_flag("app-1", "premium_features", {"user_id": "alice"})

    assert first == second
    assert store.flag_reads == 1
    assert await cache.get_flag_with_rules("app-1", "premium_features") is not None


async def test_invalidation_forces_reload() -> None:
    """ルール変更の無効化通知後は新しいルールで評価されること。"""
    bus = InMemoryInvalidationBus()
    store = CountingStore(bus)
    await seed(store)
    cache = FlagCache(InMemoryCacheBackend())
    cache.attach(bus)
    service = EvaluationService(store, cache=cache)

    before = await service.evaluate_flag("app-1", "premium_features", {"user_id": "mohit"})
    await store.put_rule(Rule(id="r1", flag_id="f1", type=RuleType.PERCENTAGE, priority=1, target_percentage=100))
    after = await service.evaluate_flag("app-1", "premium_features", {"user_id": "mohit"})

    assert before.enabled is False
    assert after.enabled is True
    assert store.flag_reads == 2


async def test_evaluation_result_cache() -> None:
    store = CountingStore()
    await seed(store)
    cache = FlagCache(InMemoryCacheBackend(), CacheSection(evaluation_cache_enabled=True))
    recorder = InMemoryUsageRecorder()
    service = EvaluationService(store, cache=cache, recorder=recorder)

    await service.evaluate_flag("app-1", "premium_features", {"user_id": "alice"})
    await cache.backend.delete(FlagCache.flag_key_for("app-1", "premium_features"))
    cached = await service.evaluate_flag("app-1", "premium_features", {"user_id": "alice", "email": "x"})
    await service.flush_usage()

    assert cached.reason == Reason.PERCENTAGE_INCLUDED
    assert store.flag_reads == 1
    assert len(recorder.events) == 2


async def test_evaluation_cache_accepts_non_json_context_values() -> None:
    """UUID や datetime を含むコンテキストでも評価結果キャッシュを経由して評価できること。"""
    store = CountingStore()
    await seed(store)
    cache = FlagCache(InMemoryCacheBackend(), CacheSection(evaluation_cache_enabled=True))
    service = EvaluationService(store, cache=cache)
    context = {"user_id": uuid.UUID(int=1), "signup": datetime(2024, 1, 1, tzinfo=timezone.utc)}

    first = await service.evaluate_flag("app-1", "premium_features", context)
    await cache.backend.delete(FlagCache.flag_key_for("app-1", "premium_features"))
    second = await service.evaluate_flag("app-1", "premium_features", context)

    assert first.reason in (Reason.PERCENTAGE_INCLUDED, Reason.PERCENTAGE_EXCLUDED)
    assert second == first
    assert store.flag_reads == 1


async def test_store_failure_returns_evaluation_error() -> None:
    service = EvaluationService(BrokenStore())
    result = await service.evaluate_flag("app-1", "premium_features", {"user_id": "alice"})
    assert result.enabled is False
    assert result.reason == Reason.EVALUATION_ERROR


async def test_cache_outage_falls_through_to_store(failing_backend: Any) -> None:
    """キャッシュ障害時もストアから評価できること。"""
    store = InMemoryRuleStore()
    await seed(store)
    cache = FlagCache(failing_backend, CacheSection(evaluation_cache_enabled=True))
    service = EvaluationService(store, cache=cache)
    result = await service.evaluate_flag("app-1", "premium_features", {"user_id": "alice"})
    assert result.reason == Reason.PERCENTAGE_INCLUDED
    all_flags = await service.get_all_flags("app-1", {"user_id": "alice"})
    assert set(all_flags) == {"premium_features", "dark_mode"}


async def test_usage_is_recorded_with_sanitized_context() -> None:
    store = InMemoryRuleStore()
    await seed(store)
    recorder = InMemoryUsageRecorder()
    service = EvaluationService(store, recorder=recorder)
    await service.evaluate_flag(
        "app-1", "premium_features", {"user_id": "alice", "email": "alice@example.com", "session_id": "s1"}
    )
    await service.flush_usage()

    event = recorder.events[0]
    assert event.flag_id == "f1"
    assert event.app_id == "app-1"
    assert event.enabled is True
    assert event.reason == "PERCENTAGE_INCLUDED"
    assert event.sanitized_context == {"user_id": "alice", "session_id": "s1"}


async def test_usage_can_be_disabled() -> None:
    store = InMemoryRuleStore()
    await seed(store)
    recorder = InMemoryUsageRecorder()
    service = EvaluationService(store, recorder=recorder, usage_config=UsageSection(enabled=False))
    await service.evaluate_flag("app-1", "premium_features", {"user_id": "alice"})
    await service.flush_usage()
    assert recorder.events == []


async def test_usage_failure_does_not_affect_result() -> None:
    """利用記録の失敗は握りつぶされること。"""
    store = InMemoryRuleStore()
    await seed(store)
    service = EvaluationService(store, recorder=FailingRecorder())
    result = await service.evaluate_flag("app-1", "premium_features", {"user_id": "alice"})
    await service.flush_usage()
    assert result.enabled is True


async def test_evaluate_flags() -> None:
    store = InMemoryRuleStore()
    await seed(store)
    service = EvaluationService(store)
    results = await service.evaluate_flags("app-1", ["premium_features", "dark_mode", "missing"], {"user_id": "alice"})
    assert results["premium_features"].enabled is True
    assert results["dark_mode"].reason == Reason.FLAG_DISABLED
    assert results["missing"].reason == Reason.FLAG_NOT_FOUND


@pytest.mark.parametrize(("app_id", "keys"), [("", ["a"]), ("app-1", "premium_features"), ("app-1", None)])
async def test_evaluate_flags_invalid_input(app_id: str, keys: object) -> None:
    service = EvaluationService(InMemoryRuleStore())
    with pytest.raises(FlagGateError) as exc_info:
        await service.evaluate_flags(app_id, keys)  # type: ignore[arg-type]
    assert exc_info.value.code == FlagGateErrorCodes.INVALID_INPUT


async def test_get_all_flags_uses_cached_list() -> None:
    store = CountingStore()
    await seed(store)
    cache = FlagCache(InMemoryCacheBackend())
    service = EvaluationService(store, cache=cache)

    first = await service.get_all_flags("app-1", {"user_id": "mohit"})
    second = await service.get_all_flags("app-1", {"user_id": "mohit"})

    assert first == second
    assert store.list_reads == 1
    assert first["dark_mode"].flag_name == "dark_mode"
    assert first["premium_features"].flag_name == "Premium"


async def test_get_all_flags_errors() -> None:
    with pytest.raises(FlagGateError) as exc_info:
        await EvaluationService(InMemoryRuleStore()).get_all_flags("")
    assert exc_info.value.code == FlagGateErrorCodes.INVALID_INPUT

    with pytest.raises(FlagGateError) as exc_info:
        await EvaluationService(BrokenStore()).get_all_flags("app-1")
    assert exc_info.value.code == FlagGateErrorCodes.STORE_ERROR


async def test_aclose_detaches_cache() -> None:
    bus = InMemoryInvalidationBus()
    cache = FlagCache(InMemoryCacheBackend())
    cache.attach(bus)
    service = EvaluationService(InMemoryRuleStore(), cache=cache)
    await service.aclose()
    assert bus.handler_count == 0
