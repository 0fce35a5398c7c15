"""Helper utilities for short-lived Postgres transactions."""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

T = TypeVar("T")


async def run_on_engine(
    engine: AsyncEngine,
    action: Callable[[AsyncConnection], Awaitable[T]],
) -> T:
    """Executes ``action`` within a single transaction of ``engine``.

    Every store operation of the analysis queue is one short transaction, so
    row-level atomicity comes from the statement itself and the connection
    goes back to the pool as soon as the coroutine completes.
    """

    async with engine.begin() as conn:
        return await action(conn)


def dump_json(value: Any) -> Optional[str]:
    """Serializes a payload for a ``CAST(:param AS jsonb)`` bind."""

    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def load_json(value: Any) -> Any:
    """asyncpg may hand jsonb back either decoded or as raw text."""

    if value is None or isinstance(value, (dict, list)):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return None
