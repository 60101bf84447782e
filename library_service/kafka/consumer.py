"""Kafka consumer: applies stock.adjusted events and publishes stock.updated."""
import json
import logging
from datetime import datetime, timezone

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from sqlalchemy.ext.asyncio import async_sessionmaker

from library_service.config import settings
from library_service.database import AsyncSessionLocal
from library_service.errors import NotFound
from library_service.policies import LoanPolicy
from library_service.services.activity import ActivityLog
from library_service.services.inventory import adjust_stock
from library_service.services.notifications import NotificationDispatcher
from library_service.services.reservations import ReservationService

logger = logging.getLogger(__name__)


async def _adjust_stock(
    adjustment_event: dict,
    dispatcher: NotificationDispatcher,
    policy: LoanPolicy,
    session_factory: async_sessionmaker = AsyncSessionLocal,
):
    items = adjustment_event.get("items") or [adjustment_event]
    activity_log = ActivityLog(session_factory)

    for item in items:
        try:
            book_id = int(item["bookId"])
            delta = int(item["delta"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed stock.adjusted item %r, skipping", item)
            continue

        async with session_factory() as session:
            reservations = ReservationService(session, policy, dispatcher, activity_log)
            try:
                adjustment = await adjust_stock(session, book_id, delta, reservations)
            except NotFound:
                logger.warning("Stock record not found for book_id=%s, skipping", book_id)
                continue

        yield {
            "bookId": book_id,
            "previousQuantity": adjustment.previous_quantity,
            "newQuantity": adjustment.new_quantity,
            "reservationsPromoted": len(adjustment.promotions),
            "reason": adjustment_event.get("reason"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


async def run_consumer(dispatcher: NotificationDispatcher, policy: LoanPolicy) -> None:
    consumer = AIOKafkaConsumer(
        settings.stock_adjusted_topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=settings.kafka_group_id,
        value_deserializer=lambda m: json.loads(m.decode("utf-8")),
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        value_serializer=lambda v: json.dumps(v).encode("utf-8"),
    )

    await consumer.start()
    await producer.start()
    logger.info("Stock Kafka consumer started.")

    try:
        async for msg in consumer:
            adjustment_event = msg.value
            logger.info("Received %s event: %s", settings.stock_adjusted_topic, adjustment_event)

            async for stock_event in _adjust_stock(adjustment_event, dispatcher, policy):
                await producer.send_and_wait(settings.stock_updated_topic, value=stock_event)
                logger.info("Published %s: bookId=%s", settings.stock_updated_topic, stock_event["bookId"])

            await consumer.commit()
    except Exception as exc:
        logger.error("Consumer error: %s", exc, exc_info=True)
        raise
    finally:
        await consumer.stop()
        await producer.stop()
