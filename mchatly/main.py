import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mchatly import __version__
from mchatly.config import settings
from mchatly.database import create_tables
from mchatly.dependencies import get_container
from mchatly.logging_config import get_logger, setup_logging
from mchatly.routers import chat, escalations, operator, push
from mchatly.services.validation import InvalidIdentifierError, UnknownTenantError

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="Mchatly API",
    description="Hybrid bot/operator response routing for Mchatly chat widgets",
    version=__version__,
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router)
app.include_router(operator.router)
app.include_router(push.router)
app.include_router(escalations.router)


@app.exception_handler(InvalidIdentifierError)
async def invalid_identifier_handler(request: Request, exc: InvalidIdentifierError):
    return JSONResponse(status_code=400, content={"detail": str(exc), "field": exc.field})


@app.exception_handler(UnknownTenantError)
async def unknown_tenant_handler(request: Request, exc: UnknownTenantError):
    return JSONResponse(status_code=404, content={"detail": "Chatbot not found"})


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_escalation_restore_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("ESCALATION_RESTORE_ENABLED"), default=True)


@app.on_event("startup")
async def restore_escalations() -> None:
    if _is_env_enabled(os.environ.get("AUTO_CREATE_TABLES"), default=False):
        create_tables()
    if not _is_escalation_restore_enabled():
        return
    try:
        restored = await get_container().scheduler.restore()
        logger.info("Escalation timers restored", extra={"context": {"restored": restored}})
    except Exception as exc:
        logger.error("Escalation restore failed", extra={"context": {"error": str(exc)}})


@app.on_event("shutdown")
async def close_services() -> None:
    if get_container.cache_info().currsize == 0:
        return
    await get_container().close()


@app.get("/health")
async def health():
    return {"status": "ok"}
