"""structlog ベースのロガー設定"""

from __future__ import annotations

import logging
import sys

import structlog

from .config import LogSection


def new_logger(
    level: str = "INFO",
    format: str = "json",
    *,
    service_name: str | None = None,
) -> structlog.stdlib.BoundLogger:
    """設定済みの structlog ロガーを返す。

    ライブラリ内部は stdlib の logging に ``extra`` 付きで出力するため、
    ExtraAdder で extra の項目もイベント辞書へ取り込む。

    Args:
        level: ログレベル ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        format: 出力形式 ("json" or "text")
        service_name: 指定時は全ログに ``service`` として付与する

    Returns:
        設定済みの structlog.stdlib.BoundLogger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    renderer: structlog.types.Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
        shared.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger: structlog.stdlib.BoundLogger = structlog.stdlib.get_logger("flaggate")
    if service_name:
        logger = logger.bind(service=service_name)
    return logger


def configure_logging(config: LogSection, service_name: str | None = None) -> structlog.stdlib.BoundLogger:
    """LogSection からロガーを設定する。"""
    return new_logger(level=config.level, format=config.format, service_name=service_name)
