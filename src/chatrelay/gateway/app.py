from __future__ import annotations

import inspect
import logging
from dataclasses import asdict
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .backend import BackendPool, OllamaBackend
from .config import GatewayConfig
from .config_loader import list_env_overrides, load_file_config, update_config_file
from .errors import (
    GatewayError,
    err_invalid_json,
    err_invalid_request,
    err_metrics_disabled,
)
from .logging_utils import JsonlLogger
from .metrics import MetricsAggregator
from .models import ChatRequest
from .relay import ResponseRelay
from .sse import SSE_HEADERS

logger = logging.getLogger(__name__)

CONFIG_PRECEDENCE = ["environment", "config_file", "defaults"]

_cfg = GatewayConfig.load()
_metrics = MetricsAggregator()
_logger = JsonlLogger(_cfg.log_path, _cfg.max_log_bytes)
_pool = BackendPool(lambda: OllamaBackend.from_config(_cfg), _cfg.backend_pool_size)
_relay = ResponseRelay(_pool, _cfg, metrics=_metrics, request_log=_logger)

app = FastAPI(title="Chat Relay", version="0.1")


def _error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.detail)


@app.post("/chat")
async def chat(req: Request):
    try:
        payload = await req.json()
    except ValueError:
        return _error_response(err_invalid_json())
    try:
        request = ChatRequest.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(part) for part in first.get("loc", ())) or "body"
        reason = f"{where}: {first.get('msg', 'invalid value')}"
        return _error_response(err_invalid_request(reason))

    result = await _relay.relay(request, is_disconnected=req.is_disconnected)
    if inspect.isasyncgen(result):
        return StreamingResponse(
            result, media_type="text/event-stream", headers=SSE_HEADERS
        )
    return JSONResponse(content=result)


@app.get("/v1/health")
async def health():
    return {
        "status": "ok",
        "uptime_seconds": _metrics.summary().get("uptime_seconds"),
        "backend": {"pool_size": _pool.size, "idle": _pool.idle},
    }


@app.get("/v1/metrics")
async def metrics():
    if not _cfg.enable_metrics:
        return _error_response(err_metrics_disabled())
    return _metrics.summary()


def _runtime_config_snapshot() -> tuple[dict[str, Any], dict[str, Any], str | None]:
    runtime_dict = asdict(_cfg)
    config_path = runtime_dict.pop("config_file_path", None)
    return runtime_dict, load_file_config(), config_path


@app.get("/v1/config")
async def read_config():
    runtime_dict, file_dict, config_path = _runtime_config_snapshot()
    return JSONResponse(
        content={
            "runtime": runtime_dict,
            "file": file_dict,
            "config_file_path": config_path,
            "env_overrides": list_env_overrides(),
            "precedence": CONFIG_PRECEDENCE,
        }
    )


@app.put("/v1/config")
async def update_config(payload: dict[str, Any] = Body(...)):
    if not payload:
        raise HTTPException(
            status_code=400, detail="Request body must be a non-empty object."
        )
    try:
        updated = update_config_file(payload)
    except KeyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("[app] Failed to update relay config.")
        raise HTTPException(
            status_code=500, detail="Failed to update configuration."
        ) from exc

    runtime_dict = asdict(updated)
    config_path = runtime_dict.pop("config_file_path", None)
    return JSONResponse(
        content={
            "status": "written",
            "runtime": runtime_dict,
            "file": load_file_config(),
            "config_file_path": config_path,
            "env_overrides": list_env_overrides(),
            "precedence": CONFIG_PRECEDENCE,
            "requires_restart": True,
            "message": "Config file updated. Restart chat-relay to apply changes.",
        }
    )


@app.on_event("startup")
async def _startup():  # pragma: no cover
    logger.info(
        "[app] Relaying to %s (pool=%d, wire=%s, timeout=%s)",
        _cfg.ollama_base_url,
        _cfg.backend_pool_size,
        _cfg.stream_wire_format,
        _cfg.backend_timeout_s or "none",
    )
    if _cfg.host != "127.0.0.1":
        logger.warning("[app] Exposed host without auth; consider a reverse proxy.")


@app.on_event("shutdown")
async def _shutdown():  # pragma: no cover
    await _pool.aclose()


def main(host: str | None = None, port: int | None = None):  # pragma: no cover
    import uvicorn

    uvicorn.run(app, host=host or _cfg.host, port=port or _cfg.port)


if __name__ == "__main__":  # pragma: no cover
    main()
