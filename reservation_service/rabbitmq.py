import logging

import aio_pika

from .config import EXCHANGE_NAME, RABBIT_URL

logger = logging.getLogger(__name__)


class RabbitPublisher:
    """
    Topic-exchange publisher for domain events.

    Disabled when no broker URL is configured. Publishing never raises: a lost
    event is logged, the committed reservation stands.
    """

    def __init__(self, url: str | None = RABBIT_URL, exchange_name: str = EXCHANGE_NAME):
        self._url = url
        self._exchange_name = exchange_name
        self._conn = None
        self._channel = None
        self._exchange = None

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    async def start(self):
        if not self.enabled:
            return
        if self._conn and not self._conn.is_closed:
            return
        self._conn = await aio_pika.connect_robust(self._url)
        self._channel = await self._conn.channel()
        self._exchange = await self._channel.declare_exchange(
            self._exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
        )

    async def publish(self, routing_key: str, body: str):
        if not self.enabled:
            return
        try:
            await self.start()
            msg = aio_pika.Message(
                body=body.encode("utf-8"),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            )
            await self._exchange.publish(msg, routing_key=routing_key)
        except Exception as e:
            logger.warning("Failed to publish %s: %s", routing_key, e)

    async def close(self):
        if self._conn and not self._conn.is_closed:
            await self._conn.close()
        self._conn = None
        self._channel = None
        self._exchange = None
