import asyncio
import logging
import time
from contextlib import asynccontextmanager
from zoneinfo import ZoneInfo

import httpx
from fastapi import FastAPI

from disburser.settings import settings
from disburser.api.v1.scheduler import router as scheduler_router
from disburser.api.v1.jobs import router as jobs_router
from disburser.api.v1.system import router as system_router
from disburser.api.v1.events import router as events_router
from disburser.api.v1.metrics import router as metrics_router

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    from disburser.db.session import check_connection, init_models
    from disburser.domain.models import SchedulerSettings
    from disburser.scheduler.dispatcher import DispatchEngine
    from disburser.scheduler.service import PaymentScheduler
    from disburser.services.events import EventBus
    from disburser.services.payment_client import PaymentGateway, TokenProvider
    from disburser.stores.clients import SqlClientSource
    from disburser.stores.jobs import SqlJobStore
    from disburser.stores.state import SqlSchedulerStateStore

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logger = logging.getLogger("uvicorn")

    # 1. Bootstrap tables (retry while the database comes up)
    for i in range(10):
        try:
            await init_models()
            logger.info("BOOTSTRAP: database tables ready")
            break
        except Exception as e:
            logger.warning(f"Bootstrap: database not ready, retrying in 2s... ({i+1}/10): {e}")
            await asyncio.sleep(2)
    else:
        logger.error("Bootstrap: could not create tables, continuing anyway")

    # 2. Upstream gateway
    http = httpx.AsyncClient(verify=settings.VERIFY_TLS)
    tokens = TokenProvider(
        http,
        auth_url=settings.AUTH_URL,
        username=settings.API_USERNAME,
        password=settings.API_PASSWORD,
        ttl_seconds=settings.TOKEN_TTL_SECONDS,
        timeout=settings.TOKEN_FETCH_TIMEOUT_SECONDS,
        attempts=settings.TOKEN_FETCH_ATTEMPTS,
    )
    gateway = PaymentGateway(
        http,
        tokens,
        primary_url=settings.PRIMARY_ENDPOINT_URL,
        fallback_url=settings.FALLBACK_ENDPOINT_URL,
        cp_id=settings.CPID,
        charge_amount=settings.CHARGE_AMOUNT,
        default_offer_code=settings.DEFAULT_OFFER_CODE,
        language=settings.LANGUAGE,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
        primary_split=settings.PRIMARY_SPLIT,
    )

    # 3. Scheduler
    events = EventBus()
    client_source = SqlClientSource()
    job_store = SqlJobStore()
    scheduler = PaymentScheduler(
        DispatchEngine(gateway, batch_delay=settings.BATCH_DELAY_SECONDS),
        client_source,
        job_store,
        SqlSchedulerStateStore(),
        events,
        defaults=SchedulerSettings(
            interval_hours=settings.DEFAULT_INTERVAL_HOURS,
            batch_size=settings.DEFAULT_BATCH_SIZE,
        ),
        tz=ZoneInfo(settings.SCHEDULER_TIMEZONE),
        reconcile_interval=settings.RECONCILE_INTERVAL_SECONDS,
        upcoming_count=settings.UPCOMING_RUNS,
    )

    app.state.started_at = time.monotonic()
    app.state.tokens = tokens
    app.state.events = events
    app.state.client_source = client_source
    app.state.job_store = job_store
    app.state.scheduler = scheduler
    app.state.db_check = check_connection

    await scheduler.initialize()

    yield

    # Shutdown
    await scheduler.shutdown()
    await http.aclose()

def create_app(lifespan=lifespan) -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan
    )

    app.include_router(scheduler_router, prefix="/api/v1/scheduler", tags=["scheduler"])
    app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
    app.include_router(system_router, prefix="/api/v1/system", tags=["system"])
    app.include_router(events_router, prefix="/api/v1", tags=["events"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app

app = create_app()
