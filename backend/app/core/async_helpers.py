"""
Async helpers for running async code in Celery tasks.

Usage:
    from app.core.async_helpers import run_async, run_async_with_db

    result = run_async(my_async_function())

    async def my_db_operation(db: AsyncSession):
        ...

    result = run_async_with_db(my_db_operation)
"""
import asyncio
import logging
from typing import TypeVar, Callable, Awaitable

from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

_POOL_LOGGERS = ("sqlalchemy.pool", "sqlalchemy.pool.impl")


def _dispose_engine(loop: asyncio.AbstractEventLoop) -> None:
    """
    Drop pooled connections created on a previous event loop.

    asyncpg connections are bound to the loop that opened them. Closing
    connections from an already-closed loop raises "Event loop is closed",
    which is expected here, so the pool loggers are silenced meanwhile.
    """
    from app.core.database import engine

    pool_loggers = [logging.getLogger(name) for name in _POOL_LOGGERS]
    previous_levels = [pl.level for pl in pool_loggers]
    for pl in pool_loggers:
        pl.setLevel(logging.CRITICAL)
    try:
        loop.run_until_complete(engine.dispose())
    except RuntimeError as e:
        if "Event loop is closed" not in str(e):
            raise
    finally:
        for pl, level in zip(pool_loggers, previous_levels):
            pl.setLevel(level)


def run_async(coro: Awaitable[T]) -> T:
    """
    Run an async coroutine in a new event loop.

    Each Celery task gets a fresh loop and a freshly disposed engine pool.

    Args:
        coro: The coroutine to execute

    Returns:
        The result of the coroutine
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        _dispose_engine(loop)
        return loop.run_until_complete(coro)
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()


def run_async_with_db(
    func: Callable[[AsyncSession], Awaitable[T]],
    *,
    commit: bool = False,
) -> T:
    """
    Run an async function with a database session.

    Args:
        func: Async function that takes a database session and returns a result
        commit: If True, commits the session after the function completes

    Returns:
        The result of the function

    Example:
        @celery_app.task
        def stop_deployment_task(deployment_id: str):
            async def do_work(db: AsyncSession):
                return await deployment_service.finish_stop(db, UUID(deployment_id))

            return run_async_with_db(do_work)
    """
    async def wrapper():
        from app.core.database import async_session_maker
        async with async_session_maker() as db:
            result = await func(db)
            if commit:
                await db.commit()
            return result

    return run_async(wrapper())
