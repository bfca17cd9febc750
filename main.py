import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from dal.persona_dal import RequestSnapshotDAL, ResultRecordDAL
from routes.library_route import router as library_router
from routes.persona_route import router as persona_router
from routes.relay_route import router as relay_router
from services.persona_generator import PersonaGenerator
from services.persona_library import RequestLibrary
from services.persona_parser import SectionParser
from services.relay.errors import RelayError
from services.relay.gateway import RelayGateway
from services.thumbnail_generator import ThumbnailGenerator
from utils.config import AppConfig
from utils.database_init import AsyncDatabaseInitializer

load_dotenv()  # Load environment variables from .env file if present

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOGGER = logging.getLogger(__name__)


def error_payload(status_code: int, message: str, details: str = "") -> dict:
    """Return the shared error body used by every endpoint."""
    return {"error": {"code": str(status_code), "message": message, "details": details}}


def create_app(
    config: Optional[AppConfig] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    db_initializer: Optional[AsyncDatabaseInitializer] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application instance.

    Every component is constructed here and attached to `app.state`; pass
    `http_client` or `db_initializer` to substitute them (the app only closes
    an HTTP client it created itself).
    """
    config = config or AppConfig.from_env()
    owns_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.upstream_timeout, connect=10.0),
            follow_redirects=True,
        )
    db_initializer = db_initializer or AsyncDatabaseInitializer(config.database_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan manager to ensure the SQLite library schema exists before
        serving and to release the upstream HTTP client on shutdown.
        """
        await db_initializer.ensure_database()
        LOGGER.info("Library database ready at %s", db_initializer.db_path)
        try:
            yield
        finally:
            if owns_client:
                await http_client.aclose()

    app = FastAPI(lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    gateway = RelayGateway(
        http_client,
        aggregator_markers=config.aggregator_markers,
        referer=config.frontend_url,
        app_title=config.app_title,
    )
    parser = SectionParser()
    request_library = RequestLibrary(
        RequestSnapshotDAL(db_initializer, max_record_bytes=config.max_record_bytes),
        max_embedded_chars=config.max_embedded_chars,
    )
    result_dal = ResultRecordDAL(db_initializer)

    app.state.config = config
    app.state.http_client = http_client
    app.state.db_initializer = db_initializer
    app.state.gateway = gateway
    app.state.parser = parser
    app.state.request_library = request_library
    app.state.result_dal = result_dal
    app.state.persona_generator = PersonaGenerator(
        gateway,
        parser,
        request_library,
        result_dal,
        thumbnails=ThumbnailGenerator(),
        default_max_tokens=config.default_max_tokens,
        default_temperature=config.default_temperature,
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(exc.status_code, str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=error_payload(422, "Invalid request", json.dumps(jsonable_encoder(exc.errors()))),
        )

    @app.get("/health")
    async def health():
        """Liveness probe."""
        timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        return {"status": "ok", "timestamp": timestamp}

    # Register application routers
    app.include_router(relay_router)
    app.include_router(library_router)
    app.include_router(persona_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.config.port)
