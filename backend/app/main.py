import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.conversations import router as conversations_router
from app.api.v1.email_webhook import router as email_webhook_router
from app.api.v1.twilio_whatsapp_webhook import router as twilio_whatsapp_router
from app.api.v1.vouchers import router as vouchers_router
from app.api.v1.whatsapp_webhook import router as whatsapp_webhook_router
from app.core.config import get_settings
from app.core.runtime import build_voucher_runtime
from app.services.recurring_jobs import start_conversation_sweep_worker, start_message_dedup_sweep_worker

settings = get_settings()
_conversation_sweep_task = None
_message_dedup_sweep_task = None

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Voucher Desk API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)
app.state.voucher_runtime = build_voucher_runtime(settings)


@app.on_event("startup")
async def _startup_jobs():
    global _conversation_sweep_task, _message_dedup_sweep_task
    if not settings.enable_recurring_jobs:
        return
    runtime = app.state.voucher_runtime
    if _conversation_sweep_task is None:
        _conversation_sweep_task = start_conversation_sweep_worker(runtime.sweep_conversations)
    if _message_dedup_sweep_task is None:
        _message_dedup_sweep_task = start_message_dedup_sweep_worker(runtime.dedup)


@app.on_event("shutdown")
async def _shutdown_jobs():
    global _conversation_sweep_task, _message_dedup_sweep_task
    if _conversation_sweep_task is not None:
        _conversation_sweep_task.cancel()
        _conversation_sweep_task = None
    if _message_dedup_sweep_task is not None:
        _message_dedup_sweep_task.cancel()
        _message_dedup_sweep_task = None


app.include_router(whatsapp_webhook_router, prefix="/api/v1", tags=["webhooks"])
app.include_router(twilio_whatsapp_router, prefix="/api/v1", tags=["webhooks"])
app.include_router(email_webhook_router, prefix="/api/v1", tags=["webhooks"])
app.include_router(conversations_router, prefix="/api/v1", tags=["conversations"])
app.include_router(vouchers_router, prefix="/api/v1", tags=["vouchers"])


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx in production unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Error interno"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception path=%s", request.url.path)
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Error interno"})


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    headers = response.headers
    if "X-Content-Type-Options" not in headers:
        headers["X-Content-Type-Options"] = "nosniff"
    if "X-Frame-Options" not in headers:
        headers["X-Frame-Options"] = "DENY"
    if "Referrer-Policy" not in headers:
        headers["Referrer-Policy"] = "no-referrer"
    return response


@app.get("/health")
async def health_check():
    runtime = app.state.voucher_runtime
    return {"status": "ok", "conversations": len(runtime.store)}
