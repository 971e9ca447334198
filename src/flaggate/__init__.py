"""flaggate feature flag library."""

from .cache import CacheBackend, FlagCache, InMemoryCacheBackend
from .client import BackgroundRefresher, ClientConfig, FeatureFlagClient, FlagDetails
from .client_cache import ClientCache, ClientCacheStats
from .engine import evaluate, evaluate_rule, order_rules
from .exceptions import FlagGateError, FlagGateErrorCodes
from .invalidation import InMemoryInvalidationBus, InvalidationBus, RedisInvalidationBus
from .models import (
    EvaluationResult,
    Flag,
    FlagWithRules,
    InvalidationAction,
    InvalidationEvent,
    Reason,
    Rule,
    RuleType,
    UsageEvent,
)
from .redis_cache import RedisCacheBackend
from .service import EvaluationService
from .store import InMemoryRuleStore, RuleStore
from .usage import InMemoryUsageRecorder, LoggingUsageRecorder, UsageRecorder

__all__ = [
    "BackgroundRefresher",
    "CacheBackend",
    "ClientCache",
    "ClientCacheStats",
    "ClientConfig",
    "EvaluationResult",
    "EvaluationService",
    "FeatureFlagClient",
    "Flag",
    "FlagCache",
    "FlagDetails",
    "FlagGateError",
    "FlagGateErrorCodes",
    "FlagWithRules",
    "InMemoryCacheBackend",
    "InMemoryInvalidationBus",
    "InMemoryRuleStore",
    "InMemoryUsageRecorder",
    "InvalidationAction",
    "InvalidationBus",
    "InvalidationEvent",
    "LoggingUsageRecorder",
    "Reason",
    "RedisCacheBackend",
    "RedisInvalidationBus",
    "Rule",
    "RuleStore",
    "RuleType",
    "UsageEvent",
    "UsageRecorder",
    "evaluate",
    "evaluate_rule",
    "order_rules",
]
