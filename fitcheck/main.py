"""FastAPI application for credits, generation and billing."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import app_context
from .app.billing import PolarPortalClient
from .app.generation import InMemoryTaskRepository, KieGenerationProvider, PostgresTaskRepository
from .app.ledger import InMemoryLedgerStore
from .app.ledger.repository import PostgresLedgerStore, create_ledger_pool
from .app.ledger.schema import apply_schema
from .app.routes.billing import router as billing_router
from .app.routes.billing import webhook_router as billing_webhook_router
from .app.routes.credits import router as credits_router
from .app.routes.generation import router as generation_router
from .app.services.generation import get_task_orchestrator
from .config import AppConfig, debug_enabled, load_config

load_dotenv()

logging.basicConfig(
    level=logging.DEBUG if debug_enabled() else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("fitcheck")


async def _configure_backends(app: FastAPI, config: AppConfig) -> None:
    pool = None
    if config.ledger_backend == "postgres":
        pool = await create_ledger_pool(config.db_config)
        async with pool.acquire() as connection:
            await apply_schema(connection)
        ledger_store = PostgresLedgerStore(pool)
        task_repository = PostgresTaskRepository(pool)
    else:
        logger.warning("Using the in-memory ledger; balances are lost on restart")
        ledger_store = InMemoryLedgerStore()
        task_repository = InMemoryTaskRepository()

    provider: Optional[KieGenerationProvider] = None
    if config.kie_api_key:
        provider = KieGenerationProvider(config.kie_api_key, base_url=config.kie_base_url)
    else:
        logger.warning("KIE_API_KEY is not set; generation endpoints are unavailable")

    portal: Optional[PolarPortalClient] = None
    if config.polar_access_token:
        portal = PolarPortalClient(config.polar_access_token, base_url=config.polar_api_url)

    app_context.configure(
        config=config,
        ledger_store=ledger_store,
        task_repository=task_repository,
        generation_provider=provider,
        billing_portal=portal,
    )
    app.state.db_pool = pool
    app.state.generation_provider = provider
    app.state.billing_portal = portal


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    config = load_config()
    await _configure_backends(app, config)

    orchestrator = None
    if app.state.generation_provider is not None:
        orchestrator = get_task_orchestrator()
        await orchestrator.resume_pending()

    try:
        yield
    finally:
        if orchestrator is not None:
            await orchestrator.shutdown()
        if app.state.generation_provider is not None:
            await app.state.generation_provider.aclose()
        if app.state.billing_portal is not None:
            await app.state.billing_portal.aclose()
        if app.state.db_pool is not None:
            await app.state.db_pool.close()


app = FastAPI(title="Fitcheck Credits API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(credits_router)
app.include_router(generation_router)
app.include_router(billing_router)
app.include_router(billing_webhook_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok"}


# run: uvicorn fitcheck.main:app --host 127.0.0.1 --port 8000 --reload
