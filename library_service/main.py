import asyncio
import json
import logging
from contextlib import asynccontextmanager

from aiokafka import AIOKafkaProducer
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from library_service.api.loans import router as loans_router
from library_service.api.logs import router as logs_router
from library_service.api.reservations import router as reservations_router
from library_service.api.stock import router as stock_router
from library_service.config import settings
from library_service.database import AsyncSessionLocal, init_models
from library_service.dependencies import get_policy
from library_service.kafka.consumer import run_consumer
from library_service.middleware.errors import register_exception_handlers
from library_service.services.notifications import KafkaNotificationDispatcher, NotificationLogStore

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

_consumer_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _consumer_task
    if settings.create_schema:
        logger.info("Creating database schema...")
        await init_models()

    producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        value_serializer=lambda v: json.dumps(v).encode("utf-8"),
    )
    await producer.start()
    app.state.dispatcher = KafkaNotificationDispatcher(
        producer, NotificationLogStore(AsyncSessionLocal), settings.notifications_topic
    )

    if settings.stock_consumer_enabled:
        logger.info("Starting Kafka consumer...")
        _consumer_task = asyncio.create_task(run_consumer(app.state.dispatcher, get_policy()))
    yield
    if _consumer_task:
        _consumer_task.cancel()
        try:
            await _consumer_task
        except asyncio.CancelledError:
            pass
    await producer.stop()
    logger.info("Library service stopped.")


app = FastAPI(
    title="Library Service",
    description="Loans, reservations and stock for the library",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)

register_exception_handlers(app)

app.include_router(loans_router)
app.include_router(reservations_router)
app.include_router(stock_router)
app.include_router(logs_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
