"""設定型定義と YAML 読み込み"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .bucketing import DEFAULT_FINGERPRINT_ATTRIBUTES
from .exceptions import FlagGateError, FlagGateErrorCodes


class ServiceSection(BaseModel):
    """サービス基本設定。"""

    name: str = "flaggate"
    version: str = "0.1.0"
    environment: str = "development"


class ServerSection(BaseModel):
    """HTTP サーバー設定。"""

    host: str = "0.0.0.0"
    port: int = Field(default=3001, ge=1, le=65535)
    prefix: str = "/api"


class CacheSection(BaseModel):
    """サーバー側キャッシュ設定 (TTL は秒)。"""

    flag_ttl: int = Field(default=300, gt=0)
    app_flags_ttl: int = Field(default=1800, gt=0)
    evaluation_ttl: int = Field(default=60, gt=0)
    evaluation_cache_enabled: bool = False
    fingerprint_attributes: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FINGERPRINT_ATTRIBUTES)
    )


class RedisSection(BaseModel):
    """Redis 接続設定。"""

    url: str = "redis://localhost:6379/0"
    socket_timeout: float = Field(default=1.0, gt=0)


class InvalidationSection(BaseModel):
    """無効化バス設定。"""

    channel: str = "flag_updates"


class UsageSection(BaseModel):
    """利用記録設定。"""

    enabled: bool = True
    context_attributes: list[str] = Field(default_factory=lambda: ["user_id", "session_id"])


class LogSection(BaseModel):
    """ログ設定。"""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"


class FlagGateConfig(BaseModel):
    """flaggate 設定全体。"""

    service: ServiceSection = Field(default_factory=ServiceSection)
    server: ServerSection = Field(default_factory=ServerSection)
    cache: CacheSection = Field(default_factory=CacheSection)
    redis: RedisSection | None = None
    invalidation: InvalidationSection = Field(default_factory=InvalidationSection)
    usage: UsageSection = Field(default_factory=UsageSection)
    log: LogSection = Field(default_factory=LogSection)
    # API キー -> アプリケーション ID
    api_keys: dict[str, str] = Field(default_factory=dict)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """override を優先して再帰的にマージした新しい辞書を返す。マッピング以外 (リスト含む) は置換。"""
    merged = {**base, **override}
    for key in base.keys() & override.keys():
        if isinstance(base[key], dict) and isinstance(override[key], dict):
            merged[key] = deep_merge(base[key], override[key])
    return merged


def _config_error(message: str, cause: Exception | None = None) -> FlagGateError:
    return FlagGateError(FlagGateErrorCodes.CONFIG_ERROR, message, cause)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise _config_error(f"Failed to read config file: {path}", e) from e
    except yaml.YAMLError as e:
        raise _config_error(f"Failed to parse YAML: {path}", e) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise _config_error(f"Config root must be a mapping: {path}")
    return data


def load(base_path: Path, env_path: Path | None = None) -> FlagGateConfig:
    """ベース設定に環境別設定 (存在する場合のみ) を重ねて FlagGateConfig を返す。

    Raises:
        FlagGateError: 読み込み・パース・検証に失敗した場合 (CONFIG_ERROR)
    """
    data = _read_yaml(base_path)
    if env_path is not None and env_path.exists():
        data = deep_merge(data, _read_yaml(env_path))
    try:
        return FlagGateConfig.model_validate(data)
    except ValidationError as e:
        raise _config_error(f"Config validation failed: {e}", e) from e
