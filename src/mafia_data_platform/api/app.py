"""HTTP control surface for imports.

Routes (prefix /api/import):
- POST   /api/import        start an import (202)
- GET    /api/import        status document
- DELETE /api/import        cancel the running import
- POST   /api/import/retry  retry skipped units of one phase
- GET    /api/import/retry  list skipped units

Domain errors map to a ``{error, code, details}`` body.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from mafia_data_platform.models import SkippedStatus
from mafia_data_platform.pipeline.control import ImportControl
from mafia_data_platform.pipeline.errors import (
    ImportConflictError,
    InvalidPhaseError,
    NoImportRunningError,
)

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def error_response(status_code: int, error: str, code: str, details: Any = None) -> JSONResponse:
    content: dict[str, Any] = {"error": error, "code": code}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


# ==============================================================================
# Request Models
# ==============================================================================


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartImportRequest(CamelModel):
    force_restart: bool = False


class RetryRequest(CamelModel):
    phase: str
    skipped_entity_ids: Optional[list[int]] = None
    entity_ids: Optional[list[str]] = None
    page_numbers: Optional[list[int]] = None


# ==============================================================================
# Routes
# ==============================================================================


def get_control(request: Request) -> ImportControl:
    return request.app.state.control


def build_router() -> APIRouter:
    router = APIRouter(prefix="/api/import", tags=["Import"])

    @router.post("", status_code=202)
    def start_import(request: Request, body: Optional[StartImportRequest] = None) -> dict[str, Any]:
        """Start a full import in the background."""
        body = body or StartImportRequest()
        return get_control(request).start(force_restart=body.force_restart)

    @router.get("")
    def get_import_status(request: Request, response: Response) -> dict[str, Any]:
        """Current import status, summary counts and validation metrics."""
        response.headers.update(NO_CACHE_HEADERS)
        return get_control(request).status()

    @router.delete("")
    def cancel_import(request: Request) -> dict[str, Any]:
        """Request cancellation; the worker saves a checkpoint and stops."""
        return get_control(request).cancel()

    @router.post("/retry")
    def retry_skipped(request: Request, body: RetryRequest) -> dict[str, Any]:
        return get_control(request).retry(
            body.phase,
            skipped_entity_ids=body.skipped_entity_ids,
            entity_ids=body.entity_ids,
            page_numbers=body.page_numbers,
        )

    @router.get("/retry")
    def list_skipped(
        request: Request,
        phase: Optional[str] = Query(default=None),
        status: Optional[SkippedStatus] = Query(default=None),
    ) -> dict[str, Any]:
        return get_control(request).list_skipped(phase=phase, status=status)

    return router


# ==============================================================================
# Error Handlers
# ==============================================================================


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ImportConflictError)
    async def handle_conflict(request: Request, exc: ImportConflictError) -> JSONResponse:
        return error_response(409, str(exc), "IMPORT_RUNNING", exc.progress or None)

    @app.exception_handler(NoImportRunningError)
    async def handle_not_running(request: Request, exc: NoImportRunningError) -> JSONResponse:
        return error_response(404, str(exc), "NO_IMPORT_RUNNING")

    @app.exception_handler(InvalidPhaseError)
    async def handle_invalid_phase(request: Request, exc: InvalidPhaseError) -> JSONResponse:
        return error_response(400, str(exc), "INVALID_PHASE")

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return error_response(500, "Internal server error", "INTERNAL_ERROR")


# ==============================================================================
# Application
# ==============================================================================


def create_app(control: ImportControl) -> FastAPI:
    """Build the API around an ImportControl.

    Runs owned by this process are cancelled on shutdown so their
    checkpoints are saved before the process exits.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down; cancelling imports owned by this process")
        control.shutdown()

    app = FastAPI(
        lifespan=lifespan,
        title="Mafia Data Platform API",
        description="Import orchestration for the mafia rating site",
    )
    app.state.control = control
    app.include_router(build_router())
    register_error_handlers(app)

    @app.get("/health", tags=["Health"])
    def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app
