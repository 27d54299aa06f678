"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select

from hookrelay.api import auth, webhooks
from hookrelay.config import get_settings
from hookrelay.database import async_session, init_models
from hookrelay.models import User
from hookrelay.services.auth import hash_password
from hookrelay.services.retry_scheduler import RetryScheduler
from hookrelay.services.webhook_dispatcher import WebhookDispatcher

settings = get_settings()
logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _bootstrap_admin() -> None:
    async with async_session() as db:
        result = await db.execute(select(User).where(User.email == settings.admin_email))
        if not result.scalar_one_or_none():
            admin = User(
                email=settings.admin_email,
                company_id=settings.admin_company_id,
                hashed_password=hash_password(settings.admin_password),
                is_superuser=True,
            )
            db.add(admin)
            await db.commit()
            logger.info(f"Created admin user {settings.admin_email}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await init_models()
    await _bootstrap_admin()

    dispatcher = WebhookDispatcher()
    dispatcher.start()
    app.state.dispatcher = dispatcher

    stop_event = asyncio.Event()
    retry_task = None
    if settings.retry_scheduler_enabled:
        scheduler = RetryScheduler(dispatcher)
        retry_task = asyncio.create_task(scheduler.run_forever(stop_event), name="webhook-retry-scheduler")

    yield

    stop_event.set()
    if retry_task is not None:
        await retry_task
    await dispatcher.stop()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Multi-tenant outbound webhooks with signed, retried delivery",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(auth.router, prefix="/api/v1")
app.include_router(webhooks.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.app_name}
