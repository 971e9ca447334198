"""パーセンテージロールアウト用のバケット計算とコンテキスト指紋"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from typing import Any

from .conditions import Context

BUCKET_COUNT = 100

DEFAULT_FINGERPRINT_ATTRIBUTES: tuple[str, ...] = (
    "user_id",
    "session_id",
    "user_tier",
    "country",
    "plan_type",
)


def hash_text(value: Any) -> str:
    """ハッシュ入力用にコンテキスト値を文字列化する。

    bool は "true"/"false"、整数値の float は小数部なしで表現し、
    それ以外は str() をそのまま使う。
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def bucket_for(hash_value: Any, flag_key: str) -> int:
    """(hash_value, flag_key) から 0-99 のバケットを決定的に算出する。

    入力文字列 ``f"{hash_value}:{flag_key}"`` を UTF-8 で MD5 し、
    16 進ダイジェストの先頭 8 文字 (上位 32 ビット) を符号なし整数として
    100 で割った余りを返す。プロセスや再起動をまたいで同じ値になる。

    例: bucket_for("mohit", "premium_features") == 78 (ダイジェスト先頭 99d3e186)
    """
    source = f"{hash_text(hash_value)}:{flag_key}".encode("utf-8")
    digest = hashlib.md5(source).hexdigest()  # nosec B324
    return int(digest[:8], 16) % BUCKET_COUNT


def context_fingerprint(
    context: Context,
    attributes: Iterable[str] = DEFAULT_FINGERPRINT_ATTRIBUTES,
) -> str:
    """許可リストの属性だけをキー順に並べたコンテキストの MD5 指紋を返す。"""
    allowed = set(attributes)
    relevant = {key: context[key] for key in sorted(context) if key in allowed}
    payload = json.dumps(relevant, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()  # nosec B324
