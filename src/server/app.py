"""FastAPI application for the image set generation API."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))
from config import paths, settings
from definition_generator import DefinitionGenerator
from image_generator import ImageGenerator
from pipeline import GenerationPipeline
from services.set_store import SetStore

from .models import ErrorResponse

logger = logging.getLogger(__name__)


# Global instances
pipeline: GenerationPipeline | None = None
store: SetStore | None = None


def get_pipeline() -> GenerationPipeline:
    """Get the generation pipeline instance."""
    global pipeline
    if pipeline is None:
        raise RuntimeError("Generation pipeline not initialized")
    return pipeline


def get_store() -> SetStore:
    """Get the set store instance."""
    global store
    if store is None:
        raise RuntimeError("Set store not initialized")
    return store


def build_pipeline(set_store: SetStore) -> GenerationPipeline:
    """Wire the services together from the global settings."""
    return GenerationPipeline(
        definition_generator=DefinitionGenerator(settings.text_model),
        synthesizer=ImageGenerator(settings.image_model),
        batch_config=settings.batch,
        store=set_store,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle app startup and shutdown."""
    global pipeline, store

    paths.storage_dir.mkdir(parents=True, exist_ok=True)

    store = SetStore(paths.storage_dir, url_prefix=settings.server.files_url_prefix)
    pipeline = build_pipeline(store)
    logger.info(f"Storing sets under {paths.storage_dir}")

    yield

    pipeline = None
    store = None


def _error_response(status_code: int, error: str, stage: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=error, stage=stage)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True, exclude_none=True))


def _format_validation_errors(errors) -> str:
    messages = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "Invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages) or "Invalid request"


def install_error_handlers(app: FastAPI) -> None:
    """Make every error a JSON body with a success flag and an error string."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _error_response(400, _format_validation_errors(exc.errors()))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error for {request.method} {request.url.path}: {exc}")
        return _error_response(500, "Internal server error")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Styleset",
        description="Generate styled image sets from a prompt and reference images",
        version="1.0.0",
        lifespan=lifespan,
    )

    install_error_handlers(app)

    # Import and include routes
    from .routes import router
    app.include_router(router)

    # Stored images are served as static files
    paths.storage_dir.mkdir(parents=True, exist_ok=True)
    app.mount(
        settings.server.files_url_prefix,
        StaticFiles(directory=str(paths.storage_dir)),
        name="files",
    )

    return app


# Create the app instance
app = create_app()
