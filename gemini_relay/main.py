import json
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from loguru import logger

from gemini_relay.config import Constants, RelaySettings, load_settings, setup_logging
from gemini_relay.forwarder import KeyFallbackForwarder, RelayError, error_body


# ===========================
# FastAPI Application
# ===========================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings: RelaySettings = app.state.settings

    # Shared HTTP client
    app.state.http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.request_timeout),
        limits=httpx.Limits(
            max_keepalive_connections=Constants.MAX_KEEPALIVE_CONNECTIONS,
            max_connections=Constants.MAX_CONNECTIONS
        )
    )
    app.state.forwarder = KeyFallbackForwarder(settings, app.state.http_client)

    logger.info(
        f"Relay started with {len(settings.credentials)} Gemini API key(s) for model {settings.model}"
    )
    logger.info("Relay is ready!")

    yield

    await app.state.http_client.aclose()


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    """Map relay failures to a 500 response without credential values."""
    return JSONResponse(status_code=500, content=error_body(exc))


def _reject_constant(name: str) -> Any:
    """NaN and Infinity are not JSON."""
    raise ValueError(f"Invalid JSON constant: {name}")


def _body_too_large(max_body_bytes: int) -> HTTPException:
    return HTTPException(
        status_code=413,
        detail=f"Request body exceeds {max_body_bytes} bytes"
    )


async def read_json_body(request: Request, max_body_bytes: int) -> Any:
    """Read the inbound body as JSON, enforcing the size limit."""
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > max_body_bytes:
        raise _body_too_large(max_body_bytes)

    raw = await request.body()
    if len(raw) > max_body_bytes:
        raise _body_too_large(max_body_bytes)

    try:
        return json.loads(raw, parse_constant=_reject_constant)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON in request body")


def create_app(settings: Optional[RelaySettings] = None) -> FastAPI:
    """Build the relay application around resolved settings."""
    if settings is None:
        settings = load_settings()
    setup_logging(settings.log_level)

    app = FastAPI(
        title="Gemini Key-Fallback Relay",
        description="Forwards chat payloads to Gemini, falling back through API keys in order",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.add_exception_handler(RelayError, relay_error_handler)

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    # ===========================
    # API Endpoints
    # ===========================

    @app.post("/api/chat")
    async def chat(request: Request):
        """Forward the payload verbatim and pass the upstream body back."""
        request_id = f"chat-{uuid.uuid4()}"
        payload = await read_json_body(request, settings.max_body_bytes)
        logger.info(f"[{request_id}] Received chat request.")

        forwarder: KeyFallbackForwarder = request.app.state.forwarder
        try:
            result = await forwarder.forward(payload, request_id)
        except RelayError:
            raise
        except Exception:
            logger.exception(f"[{request_id}] Unexpected error in chat endpoint")
            raise HTTPException(status_code=500, detail="Internal server error")

        return JSONResponse(content=result)

    @app.get("/")
    async def index():
        """Serve the front-end entry page."""
        if not os.path.isfile(settings.index_file):
            return JSONResponse(status_code=404, content={"error": "Index page not found"})
        return FileResponse(settings.index_file, media_type="text/html")

    # ===========================
    # Health Check
    # ===========================

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "gemini_keys": len(settings.credentials),
            "model": settings.model,
            "timestamp": int(time.time())
        }

    return app


app = create_app()


def main() -> None:
    settings: RelaySettings = app.state.settings
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
