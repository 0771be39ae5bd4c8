import asyncio
import json
import logging

import aio_pika

from . import providers
from .config import EXCHANGE_NAME, RABBIT_URL
from .models import Provider

logger = logging.getLogger(__name__)

QUEUE_NAME = "reservation_service_domain_events"
ROUTING_KEYS = ["provider.created", "provider.updated", "provider.deactivated"]

RETRY_SECONDS = 5


async def apply_provider_event(session, event_type: str, data: dict) -> bool:
    """
    Mirror a provider profile change into the local directory.

    Only id, hourly_rate and is_active are taken from the event; booking
    counters and the busy flag belong to this service and are left alone.
    Returns False when the event was ignored.
    """
    provider_id = data.get("provider_id") or data.get("id")
    if event_type not in ROUTING_KEYS or not provider_id:
        return False

    provider = await providers.get_provider(session, provider_id, lock=True)

    if event_type == "provider.deactivated":
        if provider is None:
            return False
        provider.is_active = False
        return True

    hourly_rate = data.get("hourly_rate")
    if hourly_rate is not None:
        try:
            hourly_rate = float(hourly_rate)
        except (TypeError, ValueError):
            logger.warning("Ignoring %s with bad hourly_rate %r", event_type, hourly_rate, extra={"provider_id": provider_id})
            return False
        if hourly_rate < 0:
            logger.warning("Ignoring %s with negative hourly_rate", event_type, extra={"provider_id": provider_id})
            return False

    if provider is None:
        if hourly_rate is None:
            logger.warning("Ignoring %s without hourly_rate for unknown provider", event_type, extra={"provider_id": provider_id})
            return False
        session.add(
            Provider(
                id=provider_id,
                hourly_rate=hourly_rate,
                is_active=bool(data.get("is_active", True)),
            )
        )
        return True

    if hourly_rate is not None:
        provider.hourly_rate = hourly_rate
    if "is_active" in data:
        provider.is_active = bool(data["is_active"])
    return True


def message_handler(session_factory):
    async def handle_message(message: aio_pika.IncomingMessage):
        async with message.process(requeue=False):
            try:
                payload = json.loads(message.body.decode("utf-8"))
            except ValueError:
                logger.warning("Dropping undecodable message on %s", message.routing_key)
                return

            event_type = payload.get("event_type")
            data = payload.get("data") or {}

            async with session_factory() as session:
                async with session.begin():
                    applied = await apply_provider_event(session, event_type, data)

            if applied:
                logger.info("Applied %s", event_type, extra={"provider_id": data.get("provider_id") or data.get("id")})

    return handle_message


async def _connect_and_consume(session_factory, url: str):
    connection = await aio_pika.connect_robust(url)

    channel = await connection.channel()
    await channel.set_qos(prefetch_count=50)

    exchange = await channel.declare_exchange(EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True)
    queue = await channel.declare_queue(QUEUE_NAME, durable=True)
    for rk in ROUTING_KEYS:
        await queue.bind(exchange, routing_key=rk)

    await queue.consume(message_handler(session_factory))

    logger.info("Provider event consumer started")
    return connection


async def start_consumer_with_retry(session_factory, stop_event: asyncio.Event, url: str | None = RABBIT_URL):
    if not url:
        logger.info("RABBIT_URL not set, provider event consumer disabled")
        return None

    while not stop_event.is_set():
        try:
            return await _connect_and_consume(session_factory, url)
        except Exception as e:
            logger.warning("Consumer connect failed, retrying in %ss: %s", RETRY_SECONDS, e)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=RETRY_SECONDS)
            except asyncio.TimeoutError:
                continue

    return None
