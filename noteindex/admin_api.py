from __future__ import annotations

import contextlib
import logging
from typing import Any, Dict, Optional

from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .config import get_config
from .search import SearchScope
from .service import (cancel_embeddings_op, check_stale_op, get_index_stats_op,
                      get_schema_op, get_status_op, rebuild_index_op,
                      search_op, start_service, stop_service,
                      verify_index_op)

logger = logging.getLogger("noteindex_admin")


def _get_admin_cfg() -> Dict[str, Any]:
    config = get_config()
    return {
        "enabled": config.admin_enabled,
        "host": config.admin_host,
        "port": config.admin_port,
        "api_key": config.admin_api_key,
        "allowed_ips": config.admin_allowed_ips,
    }


def _is_allowed_ip(ip: Optional[str]) -> bool:
    if not ip:
        return False
    cfg = _get_admin_cfg()
    allowed = set(cfg["allowed_ips"] or ["127.0.0.1", "::1"])
    return ip in allowed


async def require_admin(request: Request) -> Optional[JSONResponse]:
    """
    Common gate for all admin endpoints.

    - Enforce local-only IP (admin.allowed_ips)
    - Enforce X-Admin-Key header if admin.api_key is set
    """
    client = request.client
    client_ip = client.host if client else None
    cfg = _get_admin_cfg()

    if not cfg["enabled"]:
        logger.warning("Admin API called but admin.enabled=false")
        return JSONResponse({"error": "admin_disabled"}, status_code=503)

    if not _is_allowed_ip(client_ip):
        logger.warning("Admin access denied from IP %r", client_ip)
        return JSONResponse(
            {"error": "forbidden", "reason": "ip_not_allowed"},
            status_code=403,
        )

    api_key = cfg["api_key"]
    if api_key:
        header_key = request.headers.get("x-admin-key")
        if header_key != api_key:
            logger.warning("Admin access denied due to invalid API key")
            return JSONResponse({"error": "unauthorized"}, status_code=401)

    return None


def _internal_error(name: str, exc: Exception) -> JSONResponse:
    logger.exception("%s failed: %s", name, exc)
    return JSONResponse(
        {"error": "internal_error", "detail": str(exc)},
        status_code=500,
    )


async def _json_body(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    data = await request.json()
    return data if isinstance(data, dict) else {}


async def admin_status(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    cfg = _get_admin_cfg()
    try:
        payload = get_status_op()
    except Exception as exc:
        return _internal_error("admin_status", exc)
    payload["admin"] = {
        "host": cfg["host"],
        "port": cfg["port"],
        "enabled": cfg["enabled"],
    }
    return JSONResponse(payload)


async def admin_index_stats(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    try:
        return JSONResponse(get_index_stats_op())
    except Exception as exc:
        return _internal_error("admin_index_stats", exc)


async def admin_index_schema(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    try:
        return JSONResponse(get_schema_op())
    except Exception as exc:
        return _internal_error("admin_index_schema", exc)


async def admin_index_rebuild(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    try:
        return JSONResponse(await rebuild_index_op())
    except Exception as exc:
        return _internal_error("admin_index_rebuild", exc)


async def admin_index_verify(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    try:
        return JSONResponse(await verify_index_op())
    except Exception as exc:
        return _internal_error("admin_index_verify", exc)


async def admin_index_check_stale(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    try:
        body = await _json_body(request)
        max_reindex = max(0, int(body.get("max_reindex", 0)))
    except ValueError:
        return JSONResponse(
            {"error": "bad_request", "detail": "max_reindex must be an integer"},
            status_code=400,
        )

    try:
        return JSONResponse(await check_stale_op(max_reindex=max_reindex))
    except Exception as exc:
        return _internal_error("admin_index_check_stale", exc)


async def admin_search(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    params = request.query_params
    query = (params.get("q") or "").strip()
    if not query:
        return JSONResponse(
            {"error": "bad_request", "detail": "missing query parameter 'q'"},
            status_code=400,
        )
    try:
        limit = int(params["limit"]) if "limit" in params else None
        scope = SearchScope(params.get("scope", "all"), params.get("path"))
    except ValueError as exc:
        return JSONResponse({"error": "bad_request", "detail": str(exc)}, status_code=400)

    try:
        return JSONResponse(await search_op(query, params.get("mode"), limit, scope))
    except ValueError as exc:
        # unknown mode
        return JSONResponse({"error": "bad_request", "detail": str(exc)}, status_code=400)
    except Exception as exc:
        return _internal_error("admin_search", exc)


async def admin_embeddings_cancel(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    return JSONResponse(cancel_embeddings_op())


@contextlib.asynccontextmanager
async def lifespan(app: Starlette):
    await start_service()
    try:
        yield
    finally:
        await stop_service()


routes = [
    Route("/admin/status", admin_status, methods=["GET"]),
    Route("/admin/index/stats", admin_index_stats, methods=["GET"]),
    Route("/admin/index/schema", admin_index_schema, methods=["GET"]),
    Route("/admin/index/rebuild", admin_index_rebuild, methods=["POST"]),
    Route("/admin/index/verify", admin_index_verify, methods=["POST"]),
    Route("/admin/index/check-stale", admin_index_check_stale, methods=["POST"]),
    Route("/admin/search", admin_search, methods=["GET"]),
    Route("/admin/embeddings/cancel", admin_embeddings_cancel, methods=["POST"]),
]

app = Starlette(debug=False, routes=routes, lifespan=lifespan)

# CORS for a local UI dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)
