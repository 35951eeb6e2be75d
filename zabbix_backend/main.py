# Copyright (c) 2025, Project Grafana Zabbix Backend. All rights reserved.

import logging
import time
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest
from pythonjsonlogger import jsonlogger

from .auth import require_token
from .backend import ZabbixBackend
from .config import get_config
from .models import DatasourceRequest


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger("zabbix_backend")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
        logger.addHandler(handler)
    level_name = (level or get_config().log_level).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    return logger


_logger = configure_logging()

app = FastAPI()

metrics_requests = Counter("app_requests_total", "Total requests", ["path"])
metrics_latency = Gauge("app_latency_ms", "Latency per endpoint", ["path"])
metrics_query_results = Counter(
    "app_query_results_total", "Query results by outcome", ["outcome"]
)

_backend: Optional[ZabbixBackend] = None


def get_backend() -> ZabbixBackend:
    global _backend
    if _backend is None:
        _backend = ZabbixBackend()
    return _backend


def success(data: Any) -> JSONResponse:
    return JSONResponse(content={"status": "status.ok", "data": data})


def failure(code: str, http_status: int = 400, detail: Any = None) -> JSONResponse:
    body: Dict[str, Any] = {"status": "status.error", "error_code": code}
    if detail is not None:
        body["detail"] = detail
    return JSONResponse(status_code=http_status, content=body)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return failure("error.payload.invalid", 422, detail=jsonable_encoder(exc.errors()))


@app.middleware("http")
async def measure_latency(request: Request, call_next):
    path = request.url.path
    t0 = time.monotonic()
    resp = await call_next(request)
    ms = (time.monotonic() - t0) * 1000.0
    metrics_latency.labels(path=path).set(ms)
    _logger.info("request", extra={"path": path, "latency_ms": round(ms, 2)})
    return resp


@app.on_event("shutdown")
async def _shutdown() -> None:
    global _backend
    if _backend is not None:
        await _backend.close()
        _backend = None


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/v1/health")
async def health(
    token: str = Depends(require_token),
    backend: ZabbixBackend = Depends(get_backend),
) -> JSONResponse:
    metrics_requests.labels(path="/v1/health").inc()
    return success({"cached_datasources": len(backend.datasource_cache)})


@app.post("/v1/query")
async def query(
    payload: DatasourceRequest,
    token: str = Depends(require_token),
    backend: ZabbixBackend = Depends(get_backend),
) -> JSONResponse:
    metrics_requests.labels(path="/v1/query").inc()
    resp = await backend.query(payload)
    for result in resp.results:
        metrics_query_results.labels(outcome="error" if result.error else "ok").inc()
    return success(resp.to_json_dict())
