"""OpenTelemetry メトリクス定義"""

from __future__ import annotations

from opentelemetry import metrics

_meter = metrics.get_meter("flaggate", version="0.1.0")

flag_evaluations_total = _meter.create_counter(
    name="flag_evaluations_total",
    description="Total number of flag evaluations by reason",
    unit="1",
)

flag_cache_requests_total = _meter.create_counter(
    name="flag_cache_requests_total",
    description="Server-side cache lookups by tier and result",
    unit="1",
)

flag_usage_delivery_errors_total = _meter.create_counter(
    name="flag_usage_delivery_errors_total",
    description="Usage records that could not be delivered",
    unit="1",
)


def record_cache_lookup(tier: str, result: str) -> None:
    """キャッシュ参照結果 (hit / miss / error) を記録する。"""
    flag_cache_requests_total.add(1, {"tier": tier, "result": result})
