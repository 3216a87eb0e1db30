"""Utility functions for repository operations."""

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Union


def ensure_json(value: Optional[Union[str, dict, list]]) -> Optional[Union[dict, list]]:
    """
    Normalize JSONB values from database to Python dict/list.

    asyncpg can return JSONB as:
    - dict/list (when codec is configured)
    - str (default behavior)
    - None (NULL)

    This helper ensures consistent handling regardless of asyncpg config.

    Args:
        value: The value from database (str, dict, list, or None)

    Returns:
        Parsed Python dict/list, or None

    Raises:
        TypeError: If value is an unexpected type
        json.JSONDecodeError: If string is not valid JSON
    """
    if value is None:
        return None

    if isinstance(value, (dict, list)):
        return value

    if isinstance(value, str):
        return json.loads(value)

    raise TypeError(
        f"Expected str, dict, list, or None for JSONB value, got {type(value).__name__}"
    )


def to_jsonb(value: Any) -> Optional[str]:
    """Serialize a Python value for a ``$n::jsonb`` parameter."""
    if value is None:
        return None
    return json.dumps(value, default=str)


@asynccontextmanager
async def acquire(pool, conn=None) -> AsyncIterator[Any]:
    """Yield ``conn`` when the caller already holds one, else borrow from the pool.

    Lets repository methods join a transaction opened by another repository.
    """
    if conn is not None:
        yield conn
        return
    async with pool.acquire() as acquired:
        yield acquired
