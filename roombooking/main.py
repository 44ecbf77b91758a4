import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request

from .config import get_settings
from .database import close_db, init_db
from .deps import get_uow_factory
from .infrastructure.broadcast import ChannelBroadcaster
from .routers import events, notifications, reservations, rooms, waitlist
from .sweep import sweep_forever
from .utils.request_id import REQUEST_ID_HEADER, generate_request_id, reset_request_id, set_request_id

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    if settings.auto_create_tables:
        await init_db()

    sweep_task = None
    if settings.sweep_interval_seconds > 0:
        sweep_task = asyncio.create_task(
            sweep_forever(
                get_uow_factory(),
                app.state.broadcaster,
                interval_seconds=settings.sweep_interval_seconds,
            )
        )
    try:
        yield
    finally:
        if sweep_task is not None:
            sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep_task
        await close_db()


app = FastAPI(title="Room Booking API", lifespan=lifespan)
app.state.broadcaster = ChannelBroadcaster()


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
    token = set_request_id(request_id)
    try:
        response = await call_next(request)
    finally:
        reset_request_id(token)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(rooms.router)
app.include_router(reservations.router)
app.include_router(waitlist.router)
app.include_router(notifications.router)
app.include_router(events.router)
