"""サーバー側キャッシュのユニットテスト"""

import logging
from typing import Any

import pytest
from flaggate.cache import FlagCache, InMemoryCacheBackend
from flaggate.config import CacheSection
from flaggate.invalidation import InMemoryInvalidationBus, publish_flag_change
from flaggate.models import (
    EvaluationResult,
    Flag,
    FlagWithRules,
    InvalidationAction,
    InvalidationEvent,
    Reason,
    Rule,
    RuleType,
)


def make_entry(key: str = "beta", app: str = "app-1") -> FlagWithRules:
    flag = Flag(id=f"id-{key}", application_id=app, key=key, enabled=True)
    return FlagWithRules(
        flag=flag,
        rules=[Rule(id="r1", flag_id=flag.id, type=RuleType.PERCENTAGE, target_percentage=50)],
    )


def make_cache(clock: Any, evaluation: bool = True) -> tuple[FlagCache, InMemoryCacheBackend]:
    backend = InMemoryCacheBackend(clock=clock)
    config = CacheSection(flag_ttl=300, app_flags_ttl=1800, evaluation_ttl=60, evaluation_cache_enabled=evaluation)
    return FlagCache(backend, config), backend


async def test_flag_round_trip_before_ttl(clock: Any) -> None:
    """TTL 内は保存したものと等しい値が返ること。"""
    cache, _ = make_cache(clock)
    entry = make_entry()
    await cache.set_flag_with_rules("app-1", "beta", entry)
    clock.advance(299)
    assert await cache.get_flag_with_rules("app-1", "beta") == entry


async def test_flag_expires_after_ttl(clock: Any) -> None:
    """TTL 経過後はミスになること。"""
    cache, backend = make_cache(clock)
    await cache.set_flag_with_rules("app-1", "beta", make_entry())
    clock.advance(300)
    assert await cache.get_flag_with_rules("app-1", "beta") is None
    assert backend.keys() == []


async def test_application_flags_round_trip(clock: Any) -> None:
    cache, _ = make_cache(clock)
    flags = [make_entry("a").flag, make_entry("b").flag]
    await cache.set_application_flags("app-1", flags)
    clock.advance(1799)
    assert await cache.get_application_flags("app-1") == flags
    clock.advance(1)
    assert await cache.get_application_flags("app-1") is None


async def test_evaluation_result_keyed_by_fingerprint(clock: Any) -> None:
    """許可リスト外の属性は評価結果キャッシュのキーに影響しないこと。"""
    cache, _ = make_cache(clock)
    result = EvaluationResult(enabled=True, reason=Reason.PERCENTAGE_INCLUDED, flag_key="beta", flag_id="id-beta")
    await cache.set_evaluation_result("app-1", "beta", {"user_id": "u1", "email": "a@x"}, result)
    assert await cache.get_evaluation_result("app-1", "beta", {"user_id": "u1"}) == result
    assert await cache.get_evaluation_result("app-1", "beta", {"user_id": "u2"}) is None
    clock.advance(60)
    assert await cache.get_evaluation_result("app-1", "beta", {"user_id": "u1"}) is None


async def test_evaluation_cache_disabled_by_default() -> None:
    backend = InMemoryCacheBackend()
    cache = FlagCache(backend)
    result = EvaluationResult(enabled=True, reason=Reason.TOGGLE_ENABLED, flag_key="beta")
    await cache.set_evaluation_result("app-1", "beta", {"user_id": "u1"}, result)
    assert backend.keys() == []
    assert await cache.get_evaluation_result("app-1", "beta", {"user_id": "u1"}) is None


async def test_invalidate_flag_removes_related_entries(clock: Any) -> None:
    """フラグ・評価結果・アプリ一覧が削除され、他フラグは残ること。"""
    cache, backend = make_cache(clock)
    result = EvaluationResult(enabled=True, reason=Reason.TOGGLE_ENABLED, flag_key="beta")
    await cache.set_flag_with_rules("app-1", "beta", make_entry("beta"))
    await cache.set_flag_with_rules("app-1", "other", make_entry("other"))
    await cache.set_application_flags("app-1", [make_entry("beta").flag])
    await cache.set_evaluation_result("app-1", "beta", {"user_id": "u1"}, result)
    await cache.set_evaluation_result("app-1", "beta", {"user_id": "u2"}, result)
    await cache.set_evaluation_result("app-1", "other", {"user_id": "u1"}, result)

    await cache.invalidate_flag("app-1", "beta")

    assert await cache.get_flag_with_rules("app-1", "beta") is None
    assert await cache.get_application_flags("app-1") is None
    assert await cache.get_evaluation_result("app-1", "beta", {"user_id": "u1"}) is None
    assert await cache.get_evaluation_result("app-1", "beta", {"user_id": "u2"}) is None
    assert await cache.get_flag_with_rules("app-1", "other") is not None
    assert await cache.get_evaluation_result("app-1", "other", {"user_id": "u1"}) is not None
    assert sorted(backend.keys())[0].startswith("eval:app-1:other:")


async def test_bulk_update_clears_application_only(clock: Any) -> None:
    cache, _ = make_cache(clock)
    await cache.set_flag_with_rules("app-1", "a", make_entry("a"))
    await cache.set_flag_with_rules("app-1", "b", make_entry("b"))
    await cache.set_flag_with_rules("app-2", "a", make_entry("a", "app-2"))

    await cache.handle_invalidation(
        InvalidationEvent(application_id="app-1", flag_key=None, action=InvalidationAction.BULK_UPDATE)
    )

    assert await cache.get_flag_with_rules("app-1", "a") is None
    assert await cache.get_flag_with_rules("app-1", "b") is None
    assert await cache.get_flag_with_rules("app-2", "a") is not None


async def test_attach_reacts_to_bus_events(clock: Any) -> None:
    """バスに発行された無効化通知でエントリが消えること。"""
    cache, _ = make_cache(clock)
    bus = InMemoryInvalidationBus()
    cache.attach(bus)
    cache.attach(bus)
    assert bus.handler_count == 1

    await cache.set_flag_with_rules("app-1", "beta", make_entry())
    await publish_flag_change(bus, "app-1", "beta", InvalidationAction.UPDATE)
    assert await cache.get_flag_with_rules("app-1", "beta") is None

    cache.detach()
    assert bus.handler_count == 0


async def test_backend_failures_are_swallowed(failing_backend: Any, caplog: pytest.LogCaptureFixture) -> None:
    """バックエンド障害は例外にならずミス扱いでログに残ること。"""
    cache = FlagCache(failing_backend, CacheSection(evaluation_cache_enabled=True))
    result = EvaluationResult(enabled=True, reason=Reason.TOGGLE_ENABLED, flag_key="beta")
    with caplog.at_level(logging.WARNING, logger="flaggate.cache"):
        await cache.set_flag_with_rules("app-1", "beta", make_entry())
        assert await cache.get_flag_with_rules("app-1", "beta") is None
        assert await cache.get_application_flags("app-1") is None
        await cache.set_evaluation_result("app-1", "beta", {}, result)
        assert await cache.get_evaluation_result("app-1", "beta", {}) is None
        await cache.invalidate_flag("app-1", "beta")
        await cache.clear_application("app-1")
        assert await cache.is_healthy() is False
        await cache.close()
    assert "Cache read failed" in caplog.text
    assert "Cache write failed" in caplog.text


async def test_corrupted_entry_is_dropped(clock: Any) -> None:
    cache, backend = make_cache(clock)
    await backend.set(FlagCache.flag_key_for("app-1", "beta"), "{not json", 300)
    assert await cache.get_flag_with_rules("app-1", "beta") is None
    assert backend.keys() == []


async def test_malformed_entry_is_dropped(clock: Any) -> None:
    cache, backend = make_cache(clock)
    await backend.set(FlagCache.flag_key_for("app-1", "beta"), '{"rules": []}', 300)
    assert await cache.get_flag_with_rules("app-1", "beta") is None
    assert backend.keys() == []


async def test_in_memory_backend_delete_pattern() -> None:
    backend = InMemoryCacheBackend()
    await backend.set("eval:app-1:beta:x", "1")
    await backend.set("eval:app-1:beta:y", "1")
    await backend.set("eval:app-1:betamax:y", "1")
    assert await backend.delete_pattern("eval:app-1:beta:*") == 2
    assert backend.keys() == ["eval:app-1:betamax:y"]
