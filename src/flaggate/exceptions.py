"""flaggate ライブラリの例外型定義"""

from __future__ import annotations


class FlagGateError(Exception):
    """flaggate ライブラリのエラー基底クラス。"""

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class FlagGateErrorCodes:
    """FlagGateError のエラーコード定数。"""

    INVALID_INPUT: str = "INVALID_INPUT"
    STORE_ERROR: str = "STORE_ERROR"
    CACHE_ERROR: str = "CACHE_ERROR"
    PUBLISH_ERROR: str = "PUBLISH_ERROR"
    TRANSPORT_ERROR: str = "TRANSPORT_ERROR"
    CONFIG_ERROR: str = "CONFIG_ERROR"
