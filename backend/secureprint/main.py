import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from secureprint import __version__
from secureprint.config import settings
from secureprint.database import SessionLocal, init_db
from secureprint.dependencies import get_lifecycle
from secureprint.errors import FileTooLarge, LengthRequired, PrintLinkError
from secureprint.logging_config import setup_logging
from secureprint.routers import jobs
from secureprint.services.lifecycle import LifecycleManager, lifecycle_manager
from secureprint.services.sweeper import Sweeper
from secureprint.utils.filesystem import ensure_data_dirs

setup_logging(settings.log_level)
logger = logging.getLogger("secureprint")

# Room for multipart boundaries and the form fields around the file.
MULTIPART_OVERHEAD_BYTES = 64 * 1024


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_data_dirs()
    init_db()
    db = SessionLocal()
    try:
        lifecycle_manager.reap_expired_rows(db)
    except Exception as exc:
        logger.error("Startup reconciliation failed: %s", exc)
    finally:
        db.close()

    sweeper = Sweeper(lifecycle_manager, SessionLocal)
    await sweeper.start()
    app.state.sweeper = sweeper
    yield
    await sweeper.stop()


app = FastAPI(
    title="Secure Print Link",
    description="Time-limited, token-protected print release links",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.middleware("http")
async def upload_size_guard(request: Request, call_next):
    # Reject oversize submissions before the multipart body is read. Chunked
    # bodies carry no length to check, so they are refused outright.
    if request.method == "POST" and request.url.path.rstrip("/") == f"{settings.api_prefix}/jobs":
        length = request.headers.get("content-length")
        exc = None
        if length is None:
            exc = LengthRequired()
        elif length.isdigit() and int(length) > settings.max_upload_bytes + MULTIPART_OVERHEAD_BYTES:
            exc = FileTooLarge(f"File size exceeds limit (max {settings.max_upload_bytes} bytes)")
        if exc is not None:
            return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})
    return await call_next(request)


@app.exception_handler(PrintLinkError)
async def _print_link_error_handler(_request: Request, exc: PrintLinkError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.code, exc.message, exc_info=exc)
        message = type(exc).message
    else:
        message = exc.message
    return JSONResponse(status_code=exc.status_code, content={"error": message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Request validation error: %s", exc.errors())
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "code": "VALIDATION_ERROR", "detail": jsonable_errors(exc)},
    )


@app.exception_handler(Exception)
async def _unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "code": "INTERNAL_ERROR"})


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]


app.include_router(jobs.router, prefix=settings.api_prefix)


@app.get("/health")
async def health(lifecycle: LifecycleManager = Depends(get_lifecycle)):
    return {"status": "ok", "version": __version__, "indexed_jobs": len(lifecycle.index)}
