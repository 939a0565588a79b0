import logging
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy import event
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.domain.errors import TransientStorageError
from app.infra.tracing import instrument_sqlalchemy
from app.settings import settings

Base = declarative_base()

# Register every mapped class before relationships are configured.
import app.infra.models  # noqa: F401,E402

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _engine, _session_factory
    if _session_factory is None:
        is_postgres = settings.database_url.startswith(("postgresql://", "postgresql+"))

        engine_kwargs: dict[str, Any] = {
            "pool_pre_ping": True,
        }

        if is_postgres:
            engine_kwargs.update({
                "pool_size": settings.database_pool_size,
                "max_overflow": settings.database_max_overflow,
                "pool_timeout": settings.database_pool_timeout_seconds,
                "connect_args": {
                    "options": f"-c statement_timeout={int(settings.database_statement_timeout_ms)}",
                },
            })

        _engine = create_async_engine(settings.database_url, **engine_kwargs)
        _configure_logging(_engine)
        if settings.tracing_enabled:
            instrument_sqlalchemy(_engine.sync_engine)
        _session_factory = async_sessionmaker(
            _engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )
    return _session_factory


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return _get_session_factory()


def resolve_session_factory(app_state: object) -> async_sessionmaker[AsyncSession]:
    factory = getattr(app_state, "db_session_factory", None)
    if factory is not None:
        return factory
    return _get_session_factory()


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def _configure_logging(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "handle_error")
    def receive_error(context):  # noqa: ANN001
        exc = context.original_exception or context.sqlalchemy_exception
        if isinstance(exc, TimeoutError):
            logger.warning(
                "db_pool_timeout",
                extra={"extra": {"operation": str(context.statement) if context.statement else None}},
            )


class UnitOfWork:
    """Explicit transaction boundary for domain mutations.

    ``with_transaction`` opens a fresh session, begins a transaction, runs the
    callback and commits; any exception rolls the whole unit back. Connection
    level failures are re-raised as :class:`TransientStorageError` so callers
    can tell a retryable outage from a domain refusal.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def with_transaction(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await fn(session)
        except (OperationalError, InterfaceError, TimeoutError) as exc:
            logger.warning(
                "db_transaction_failed",
                extra={"extra": {"reason": type(exc).__name__}},
            )
            raise TransientStorageError(detail="Storage temporarily unavailable") from exc


def resolve_unit_of_work(app_state: object) -> UnitOfWork:
    return UnitOfWork(resolve_session_factory(app_state))
