"""FastAPI app entry."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from chatbridge.adapters.openai_compat.router import router as openai_router
from chatbridge.adapters.openai_compat.upstream import close_backend_async_client
from chatbridge.config.settings import settings
from chatbridge.util.logger import logger


@asynccontextmanager
async def lifespan(_app: FastAPI):
    logger.info(
        "%s starting backend=%s fast_model=%s full_model=%s",
        settings.app_name,
        settings.backend_base_url,
        settings.default_fast_model,
        settings.default_full_model,
    )
    if not settings.backend_api_key:
        logger.warning("CHATBRIDGE_BACKEND_API_KEY is empty; backend calls will likely be rejected")
    yield
    await close_backend_async_client()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.include_router(openai_router, prefix="/v1")


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"message": message}})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("request validation failed path=%s errors=%s", request.url.path, exc.errors()[:3])
    return _error_response(400, "request body must be a JSON object")


@app.middleware("http")
async def request_boundary_middleware(request: Request, call_next):
    if request.url.path == "/health":
        return await call_next(request)

    max_body = int(settings.max_request_body_bytes)
    if max_body > 0 and request.method.upper() in {"POST", "PUT", "PATCH"}:
        content_length_header = request.headers.get("content-length", "").strip()
        if content_length_header:
            try:
                content_length = int(content_length_header)
            except ValueError:
                logger.warning("boundary reject invalid content-length path=%s", request.url.path)
                return _error_response(400, "invalid content-length header")
        else:
            content_length = len(await request.body())
        if content_length > max_body:
            logger.warning(
                "boundary reject oversize request size=%s max=%s path=%s",
                content_length,
                max_body,
                request.url.path,
            )
            return _error_response(413, f"request body exceeds {max_body} bytes")

    try:
        return await call_next(request)
    except Exception as exc:  # pragma: no cover - fail-safe
        logger.exception("gateway unhandled exception path=%s", request.url.path)
        return _error_response(500, f"gateway internal error: {exc}")


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
