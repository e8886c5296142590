"""FastAPI blob store that merges every write against what it holds."""

import asyncio
import json
import logging
import secrets
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from ..config import Config
from ..state.models import now_ms
from ..store import KeyValueStore
from ..sync.blob_client import SYNC_ID_PATTERN
from ..sync.merge import merge_blobs

logger = logging.getLogger(__name__)

ALL_METHODS = ["GET", "PUT", "POST", "PATCH", "DELETE"]

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET,PUT,OPTIONS",
    "access-control-allow-headers": "content-type,authorization,x-auth-token",
}

NO_STORE = {"cache-control": "no-store"}


def _error(error: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": error, **extra}, status_code=status_code)


def blob_key(sync_id: str) -> str:
    return f"blob:{sync_id}"


def _same(given: str, expected: str) -> bool:
    return secrets.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def create_app(
    config: Config,
    store: KeyValueStore | None = None,
    clock: Callable[[], int] = now_ms,
) -> FastAPI:
    """Create the blob store application.

    Args:
        config: Application configuration; ``server.auth_token`` is the
            expected bearer token.
        store: Optional KeyValueStore for blobs. Defaults to the
            configured server database.
        clock: Millisecond clock used as the merge's "now".

    Returns:
        Configured FastAPI application.
    """
    if store is None:
        store = KeyValueStore(config.server.db_path)
        store.connect()

    app = FastAPI(
        title="Scribble Blob Store",
        description="Merging key/value blob store for Scribble task lists",
        version="0.1.0",
    )

    app.state.config = config
    app.state.store = store
    # Serializes read-merge-write within this process
    app.state.write_lock = asyncio.Lock()

    def check_auth(request: Request) -> JSONResponse | None:
        expected = config.server.auth_token
        if not expected:
            logger.error("Rejecting blob request: no auth token configured")
            return _error(
                "server_not_configured",
                500,
                hint="Set SCRIBBLE_AUTH_TOKEN or server.auth_token",
            )

        auth = request.headers.get("authorization", "")
        token = request.headers.get("x-auth-token", "")
        if _same(auth, f"Bearer {expected}") or _same(token, expected):
            return None
        return _error("unauthorized", 401)

    @app.middleware("http")
    async def cors(request: Request, call_next):
        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            response = await call_next(request)
        for name, value in CORS_HEADERS.items():
            response.headers[name] = value
        return response

    @app.api_route("/", methods=ALL_METHODS)
    async def health() -> dict[str, Any]:
        """Public health check."""
        return {"ok": True, "msg": "use /v1/blob/<syncId>"}

    @app.api_route("/v1/blob/{sync_id}", methods=ALL_METHODS)
    async def blob(sync_id: str, request: Request) -> Response:
        """Read or merge-write the blob for one sync id."""
        if not SYNC_ID_PATTERN.match(sync_id):
            return _error("not_found", 404)

        auth_error = check_auth(request)
        if auth_error is not None:
            return auth_error

        key = blob_key(sync_id)

        if request.method == "GET":
            return JSONResponse(store.get(key), headers=NO_STORE)

        if request.method == "PUT":
            try:
                incoming = json.loads(await request.body())
            except ValueError:
                return _error("invalid_json", 400)

            async with app.state.write_lock:
                existing = store.get(key)
                merged = merge_blobs(existing, incoming, clock())
                store.set(key, merged)

            logger.info(
                f"Merged blob {sync_id}: {len(merged['data']['todos'])} tasks, "
                f"updatedAt={merged['updatedAt']}",
                extra={"sync_id": sync_id},
            )
            return JSONResponse(merged, headers=NO_STORE)

        return _error("method_not_allowed", 405)

    @app.api_route("/{path:path}", methods=ALL_METHODS)
    async def not_found(path: str) -> Response:
        return _error("not_found", 404)

    return app
