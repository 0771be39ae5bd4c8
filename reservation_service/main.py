import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import DATABASE_URL, LOG_LEVEL
from .consumer import start_consumer_with_retry
from .db import get_engine, get_session
from .errors import ReservationError
from .idempotency import build_idempotency_store
from .rabbitmq import RabbitPublisher
from .routes import router
from .service import ReservationService


class ContextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        extras = []
        for key in ("reservation_id", "provider_id", "status", "counter"):
            value = getattr(record, key, None)
            if value not in (None, ""):
                extras.append(f"{key}={value}")
        base = super().format(record)
        if extras:
            return f"{base} | " + " ".join(extras)
        return base


handler = logging.StreamHandler()
handler.setFormatter(ContextFormatter("%(asctime)s %(levelname)s:%(name)s:%(message)s"))

root = logging.getLogger()
root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
root.handlers.clear()
root.addHandler(handler)

logger = logging.getLogger(__name__)

engine = get_engine(DATABASE_URL)
SessionLocal = get_session(engine)
publisher = RabbitPublisher()

app = FastAPI(title="Reservation Service")
app.state.reservation_service = ReservationService(SessionLocal, publisher=publisher)
app.state.idempotency_store = build_idempotency_store()
app.include_router(router)


@app.exception_handler(ReservationError)
async def reservation_error_handler(request: Request, exc: ReservationError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": "ValidationError", "message": "Invalid request", "errors": errors},
    )


@app.get("/health")
async def health():
    return {"status": "ok", "service": "reservation-service"}


_stop_event = asyncio.Event()
_consumer_task = None


@app.on_event("startup")
async def startup():
    global _consumer_task
    try:
        await publisher.start()
    except Exception as e:
        logger.warning("RabbitMQ not reachable at startup, events will retry on publish: %s", e)
    _stop_event.clear()
    _consumer_task = asyncio.create_task(start_consumer_with_retry(SessionLocal, _stop_event))


@app.on_event("shutdown")
async def shutdown():
    _stop_event.set()
    if _consumer_task is not None:
        try:
            conn = await _consumer_task
            if conn and not conn.is_closed:
                await conn.close()
        except Exception as e:
            logger.warning("Consumer close failed: %s", e)
    try:
        await publisher.close()
    except Exception as e:
        logger.warning("Publisher close failed: %s", e)
    await app.state.idempotency_store.close()
    await engine.dispose()
