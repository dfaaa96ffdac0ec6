import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from paydesk.config import settings
from paydesk.database import SessionLocal
from paydesk.logging_config import get_logger, setup_logging
from paydesk.routers import escalation, refund, telegram, transactions, users, webhook
from paydesk.services.escalation_service import cancel_all_timers, load_escalated_channels
from paydesk.services.feature_flags import seed_feature_flags
from paydesk.services.idempotency_service import purge_expired_events
from paydesk.services.redis_client import close_redis

setup_logging(settings.log_level)

app = FastAPI(
    title="Paydesk API",
    description="Support automation backend for payment refunds and escalations",
    version="0.1.0",
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

app.include_router(webhook.router)
app.include_router(refund.router)
app.include_router(escalation.router)
app.include_router(transactions.router)
app.include_router(users.router)
app.include_router(telegram.router)

logger = get_logger("main")
maintenance_logger = get_logger("maintenance_worker")
_maintenance_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_background_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("MAINTENANCE_WORKER_ENABLED"), default=True)


async def _maintenance_loop() -> None:
    while True:
        try:
            await asyncio.sleep(max(settings.maintenance_interval_seconds, 1.0))
            db = SessionLocal()
            try:
                purged = purge_expired_events(db)
                if purged:
                    maintenance_logger.info("Expired processed events purged", extra={"context": {"count": purged}})
            finally:
                db.close()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            maintenance_logger.error(
                "Maintenance loop failed",
                extra={"context": {"error": str(exc)}},
            )


def _restore_state() -> None:
    db = SessionLocal()
    try:
        seed_feature_flags(db)
        load_escalated_channels(db)
    except Exception as exc:
        logger.error("Startup state restore failed", extra={"context": {"error": str(exc)}})
    finally:
        db.close()


@app.on_event("startup")
async def startup() -> None:
    global _maintenance_task
    if not _is_background_enabled():
        return
    _restore_state()
    if _maintenance_task is None or _maintenance_task.done():
        _maintenance_task = asyncio.create_task(_maintenance_loop())
        maintenance_logger.info("Maintenance worker started")


@app.on_event("shutdown")
async def shutdown() -> None:
    global _maintenance_task
    if _maintenance_task is not None:
        _maintenance_task.cancel()
        try:
            await _maintenance_task
        except asyncio.CancelledError:
            pass
        _maintenance_task = None
    await cancel_all_timers()
    await close_redis()


@app.get("/health")
async def health():
    return {"status": "ok"}
