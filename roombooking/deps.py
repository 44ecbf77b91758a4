from functools import partial
from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import HTTPConnection

from .config import get_settings
from .database import async_session
from .domain.repositories import UnitOfWorkFactory
from .domain.services import BookingPolicy
from .infrastructure.broadcast import ChannelBroadcaster
from .infrastructure.unit_of_work import SqlAlchemyUnitOfWork
from .models import User
from .utils.auth import decode_access_token, parse_bearer

_BEARER_CHALLENGE = {"WWW-Authenticate": "Bearer"}


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


def get_uow_factory() -> UnitOfWorkFactory:
    return partial(SqlAlchemyUnitOfWork, async_session)


def get_broadcaster(connection: HTTPConnection) -> ChannelBroadcaster:
    return connection.app.state.broadcaster


def get_booking_policy() -> BookingPolicy:
    return BookingPolicy.from_settings(get_settings())


def authenticate_token(token: str | None) -> int:
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
            headers=_BEARER_CHALLENGE,
        )
    settings = get_settings()
    try:
        return decode_access_token(token, secret=settings.auth_secret, algorithms=[settings.auth_algorithm])
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers=_BEARER_CHALLENGE,
        ) from exc


async def get_current_user_id(
    authorization: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> int:
    user_id = authenticate_token(parse_bearer(authorization))
    try:
        found = await session.scalar(select(User.id).where(User.id == user_id))
    except ProgrammingError as exc:
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="user lookup failed") from exc
    if found is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
            headers=_BEARER_CHALLENGE,
        )
    return user_id
