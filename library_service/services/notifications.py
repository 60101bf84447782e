"""User notification dispatch.

Lifecycle services only see ``NotificationDispatcher``. The Kafka
implementation publishes to the push topic and records every attempt,
successful or not, in the notification log.
"""
import abc
import logging

from aiokafka import AIOKafkaProducer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from library_service.models.base import utcnow
from library_service.models.logs import NotificationLog, NotificationType

logger = logging.getLogger(__name__)


class NotificationDispatcher(abc.ABC):
    @abc.abstractmethod
    async def notify_user(
        self, user_id: int, message: str, type: NotificationType = NotificationType.INFO
    ) -> bool:
        """Deliver ``message`` to the user. Returns False when delivery failed."""


class NotificationLogStore:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def record(
        self,
        user_id: int,
        type: NotificationType,
        message: str,
        delivered: bool = True,
        error: str | None = None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(
                    NotificationLog(
                        user_id=user_id,
                        type=type,
                        message=message,
                        delivered=delivered,
                        error=error,
                    )
                )
                await session.commit()
        except Exception:
            logger.exception("Notification log write failed for user_id=%s", user_id)

    async def for_user(self, user_id: int) -> list[NotificationLog]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(NotificationLog)
                .where(NotificationLog.user_id == user_id)
                .order_by(NotificationLog.sent_at.desc(), NotificationLog.id.desc())
            )
            return list(result.scalars())


class KafkaNotificationDispatcher(NotificationDispatcher):
    def __init__(self, producer: AIOKafkaProducer, log_store: NotificationLogStore, topic: str):
        self._producer = producer
        self._log_store = log_store
        self._topic = topic

    async def notify_user(
        self, user_id: int, message: str, type: NotificationType = NotificationType.INFO
    ) -> bool:
        if not message or not message.strip():
            raise ValueError("Notification message cannot be empty.")

        event = {
            "userId": user_id,
            "type": type.value,
            "message": message,
            "sentAt": utcnow().isoformat(),
        }
        try:
            await self._producer.send_and_wait(self._topic, key=str(user_id).encode("utf-8"), value=event)
        except Exception as exc:
            logger.error("Notification delivery failed for user_id=%s: %s", user_id, exc, exc_info=True)
            await self._log_store.record(user_id, type, message, delivered=False, error=str(exc))
            return False

        logger.info("Published %s notification for user_id=%s", type.value, user_id)
        await self._log_store.record(user_id, type, message)
        return True
