"""
Converter bot service.
Runs the job scheduler and burst aggregator in-process and serves health,
readiness, scheduler stats and metrics.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI

from convbot.api.routes import health
from convbot.core.config import settings
from convbot.core.logging import configure_logging
from convbot.services.batching.aggregator import BurstAggregator
from convbot.services.conversion.base import Converter
from convbot.services.conversion.factory import load_converter
from convbot.services.credits.service import CreditLedger
from convbot.services.notifications.transport import TelegramTransport
from convbot.services.selection.service import SelectionService
from convbot.services.tasks.prompts import FormatPrompter
from convbot.services.tasks.store import RedisTaskStore
from convbot.utils.metrics import router as metrics_router
from convbot.workers.scheduler import JobScheduler


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    store: RedisTaskStore
    transport: TelegramTransport
    ledger: CreditLedger
    scheduler: JobScheduler
    aggregator: BurstAggregator
    selection: SelectionService


def build_runtime(converter: Converter) -> Runtime:
    store = RedisTaskStore()
    transport = TelegramTransport()
    ledger = CreditLedger()
    scheduler = JobScheduler(store, converter, transport)
    prompter = FormatPrompter(store, transport)
    aggregator = BurstAggregator(store, prompter)
    selection = SelectionService(store, ledger, scheduler, transport, prompter)
    return Runtime(store, transport, ledger, scheduler, aggregator, selection)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    app.state.runtime = None
    app.state.scheduler = None
    if not settings.converter_class:
        logger.warning("CONVERTER_CLASS is not set, scheduler not started")
        yield
        return

    runtime = build_runtime(load_converter(settings.converter_class))
    runtime.scheduler.start()
    app.state.runtime = runtime
    app.state.scheduler = runtime.scheduler
    try:
        yield
    finally:
        runtime.aggregator.shutdown()
        runtime.scheduler.stop(timeout=settings.conversion_timeout_seconds)
        runtime.transport.client.close()


app = FastAPI(
    title="Converter Bot",
    description="Job scheduling, burst aggregation and credits for the converter bot",
    version="1.0.0",
    lifespan=lifespan,
)

# Routers
app.include_router(health.router, tags=["health"])
app.include_router(metrics_router)
