"""評価トランスポート (FastAPI)

SDK から呼ばれる評価 API。API キーは注入された ApplicationResolver で
アプリケーション ID に解決する。認証基盤そのものは外部の責務。
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from contextlib import AbstractAsyncContextManager
from typing import Any, Callable, Protocol

import structlog
from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse

from .exceptions import FlagGateError
from .health import HealthChecker, HealthStatus
from .service import EvaluationService

logger = logging.getLogger(__name__)


class ApplicationResolver(Protocol):
    """API キーをアプリケーション ID に解決するプロトコル。"""

    async def resolve(self, api_key: str) -> str | None: ...


class StaticApplicationResolver:
    """固定のキー対応表による ApplicationResolver 実装。"""

    def __init__(self, api_keys: Mapping[str, str]) -> None:
        self._api_keys = dict(api_keys)

    async def resolve(self, api_key: str) -> str | None:
        return self._api_keys.get(api_key)


def _results_to_dict(results: Mapping[str, Any]) -> dict[str, Any]:
    return {key: result.to_dict() for key, result in results.items()}


def build_router(
    service: EvaluationService,
    resolver: ApplicationResolver,
    checker: HealthChecker | None = None,
) -> APIRouter:
    """評価 API のルーターを組み立てる。"""

    async def application_id(
        x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    ) -> str:
        if not x_api_key:
            raise HTTPException(status_code=401, detail="Missing API Key")
        app_id = await resolver.resolve(x_api_key)
        if not app_id:
            raise HTTPException(status_code=401, detail="Invalid API Key")
        structlog.contextvars.bind_contextvars(application_id=app_id)
        return app_id

    router = APIRouter(prefix="/evaluate")

    @router.post("/flags")
    async def evaluate_all_flags(
        app_id: str = Depends(application_id),
        context: dict[str, Any] | None = Body(default=None),
    ) -> JSONResponse:
        try:
            results = await service.get_all_flags(app_id, context or {})
        except FlagGateError as e:
            logger.error("Failed to evaluate all flags", extra={"application_id": app_id, "error": str(e)})
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": str(e), "data": {}},
            )
        return JSONResponse(
            content={"success": True, "data": _results_to_dict(results), "count": len(results)}
        )

    @router.post("/batch")
    async def evaluate_batch(
        app_id: str = Depends(application_id),
        payload: dict[str, Any] = Body(...),
    ) -> JSONResponse:
        flag_keys = payload.get("flagKeys")
        context = payload.get("context") or {}
        if not isinstance(flag_keys, list):
            raise HTTPException(status_code=400, detail="flagKeys must be an array")
        if not flag_keys:
            raise HTTPException(status_code=400, detail="flagKeys array cannot be empty")
        if not isinstance(context, dict):
            raise HTTPException(status_code=400, detail="context must be an object")
        results = await service.evaluate_flags(app_id, [str(k) for k in flag_keys], context)
        return JSONResponse(content={"success": True, "data": _results_to_dict(results)})

    @router.get("/health")
    async def health(app_id: str = Depends(application_id)) -> JSONResponse:
        if checker is None:
            body: dict[str, Any] = {"status": HealthStatus.HEALTHY.value, "checks": {}}
            healthy = True
        else:
            response = await checker.run_all()
            body = response.to_dict()
            healthy = response.status != HealthStatus.UNHEALTHY
        body["success"] = healthy
        body["application"] = {"id": app_id}
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    @router.post("/{flag_key}")
    async def evaluate_flag(
        flag_key: str,
        app_id: str = Depends(application_id),
        context: dict[str, Any] | None = Body(default=None),
    ) -> JSONResponse:
        structlog.contextvars.bind_contextvars(flag_key=flag_key)
        result = await service.evaluate_flag(app_id, flag_key, context or {})
        return JSONResponse(content={"success": True, "data": result.to_dict()})

    return router


def create_app(
    service: EvaluationService,
    resolver: ApplicationResolver,
    checker: HealthChecker | None = None,
    *,
    prefix: str = "/api",
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[None]] | None = None,
) -> FastAPI:
    """評価 API の FastAPI アプリケーションを生成する。"""
    app = FastAPI(title="flaggate", lifespan=lifespan)

    @app.middleware("http")
    async def clear_log_context(request: Any, call_next: Any) -> Any:
        structlog.contextvars.clear_contextvars()
        return await call_next(request)

    app.include_router(build_router(service, resolver, checker), prefix=prefix)
    return app
