"""
Supabase Client Helper for the Sales CRM Hub.
Provides connection, table query and mutation functions, plus the async
realtime backend used by the notification watcher.

Usage:
    from scripts.lib.supabase_client import get_client, query_table, update_rows

    rows = query_table("deals", filters={"assigned_rep": uid, "created_at__gte": since})
    update_rows("opportunities", {"id": opp_id}, {"spin_completion_score": 75})

Filter keys are column names, optionally suffixed with an operator:
``col`` (eq), ``col__neq``, ``col__gt``, ``col__gte``, ``col__lt``,
``col__lte``, ``col__in`` and ``col__is``.

All helpers raise on failure (DataFetchError / DataWriteError); callers
decide how to surface the error.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv

from scripts.lib.errors import (
    ConfigError,
    DataFetchError,
    DataWriteError,
    IdentityError,
    SubscriptionError,
)
from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)

# Load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(PROJECT_ROOT / ".env")

SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_KEY = (
    os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
    or os.environ.get("SUPABASE_KEY", "")
)
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY", "") or SUPABASE_KEY

_OPERATORS = ("neq", "gt", "gte", "lt", "lte", "in", "is")

_client = None


def get_client():
    """Create and return a Supabase client (singleton)."""
    global _client
    if _client is not None:
        return _client

    if not SUPABASE_URL or not SUPABASE_KEY:
        raise ConfigError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in .env",
            setting="SUPABASE_URL",
        )

    from supabase import create_client
    _client = create_client(SUPABASE_URL, SUPABASE_KEY)
    logger.info("Supabase client connected to %s", SUPABASE_URL)
    return _client


def apply_filters(query, filters: Optional[Dict[str, Any]]):
    """Apply ``col[__op]=value`` filters to a postgrest query builder."""
    if not filters:
        return query

    for key, val in filters.items():
        col, _, op = key.partition("__")
        if not op:
            query = query.eq(col, val)
        elif op == "in":
            query = query.in_(col, list(val))
        elif op == "is":
            query = query.is_(col, "null" if val is None else val)
        elif op in _OPERATORS:
            query = getattr(query, op)(col, val)
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
    return query


def query_table(
    table: str,
    select: str = "*",
    filters: Dict[str, Any] = None,
    order_by: str = None,
    desc: bool = True,
    limit: int = None,
    offset: int = 0,
) -> List[Dict]:
    """
    Query a Supabase table with optional filters, ordering, and pagination.

    Args:
        table: Table name.
        select: Columns to select (default "*").
        filters: Dict of ``col[__op]`` filters.
        order_by: Column to order by.
        desc: Descending order (default True).
        limit: Max rows to return (default: no limit).
        offset: Rows to skip.

    Returns:
        List of row dicts.

    Raises:
        DataFetchError: if the query fails.
    """
    try:
        client = get_client()
        query = apply_filters(client.table(table).select(select), filters)

        if order_by:
            query = query.order(order_by, desc=desc)

        if limit is not None:
            query = query.range(offset, offset + limit - 1)

        result = query.execute()
        return result.data or []
    except ConfigError:
        raise
    except Exception as e:
        logger.error("Supabase query failed on %s: %s", table, e)
        raise DataFetchError(table, e) from e


def update_rows(table: str, match: Dict[str, Any], values: Dict[str, Any]) -> List[Dict]:
    """
    Update rows matching ``match`` (equality) with ``values``.

    Returns:
        The updated rows.

    Raises:
        DataWriteError: if the update fails.
    """
    try:
        client = get_client()
        query = apply_filters(client.table(table).update(values), match)
        result = query.execute()
        return result.data or []
    except ConfigError:
        raise
    except Exception as e:
        logger.error("Supabase update failed on %s (%s): %s", table, match, e)
        raise DataWriteError(table, e, match=match) from e


def upsert_row(table: str, row: Dict, on_conflict: str = None) -> Dict:
    """
    Upsert a single row into a table.

    Args:
        table: Table name.
        row: Dict of column=value pairs.
        on_conflict: Conflict resolution column(s) for upsert.

    Returns:
        The written row as returned by the backend (falls back to ``row``).

    Raises:
        DataWriteError: if the write fails.
    """
    try:
        client = get_client()
        query = client.table(table)
        if on_conflict:
            result = query.upsert(row, on_conflict=on_conflict).execute()
        else:
            result = query.insert(row).execute()
        return (result.data or [row])[0]
    except ConfigError:
        raise
    except Exception as e:
        logger.error("Supabase upsert failed on %s: %s", table, e)
        raise DataWriteError(table, e) from e


# ─── Realtime backend ────────────────────────────────────────


@dataclass
class ChangeEvent:
    """A committed row change delivered by the realtime feed."""
    table: str
    event: str
    old: Dict[str, Any] = field(default_factory=dict)
    new: Dict[str, Any] = field(default_factory=dict)


def change_from_payload(table: str, event: str, payload: Dict[str, Any]) -> ChangeEvent:
    """Normalise a realtime postgres_changes payload into a ChangeEvent."""
    data = payload.get("data", payload)
    new = data.get("record") or data.get("new") or {}
    old = data.get("old_record") or data.get("old") or {}
    return ChangeEvent(table=table, event=event, old=dict(old), new=dict(new))


class ChannelHandle:
    """Owns one realtime channel; ``stop()`` removes it exactly once."""

    def __init__(self, client, channel, name: str):
        self._client = client
        self._channel = channel
        self.name = name
        self.active = True

    async def stop(self):
        if not self.active:
            return
        self.active = False
        try:
            await self._client.remove_channel(self._channel)
            logger.debug("Removed realtime channel %s", self.name)
        except Exception as e:
            logger.warning("Failed to remove realtime channel %s: %s", self.name, e)


class SupabaseRealtimeBackend:
    """
    Async backend bound to one user's access token.

    Exposes the four operations the CRM core relies on: identity lookup,
    table fetch, table update, and change-event subscription.
    """

    def __init__(self, access_token: str = None, url: str = None, key: str = None):
        self.access_token = access_token
        self.url = url or SUPABASE_URL
        self.key = key or SUPABASE_ANON_KEY
        self._client = None

    async def _get_client(self):
        if self._client is not None:
            return self._client

        if not self.url or not self.key:
            raise ConfigError(
                "SUPABASE_URL and SUPABASE_ANON_KEY must be set in .env",
                setting="SUPABASE_ANON_KEY",
            )

        from supabase import acreate_client
        client = await acreate_client(self.url, self.key)
        if self.access_token:
            client.postgrest.auth(self.access_token)
            await client.realtime.set_auth(self.access_token)
        self._client = client
        return client

    async def current_user_id(self) -> Optional[str]:
        """Return the authenticated user's id, or raise IdentityError."""
        try:
            client = await self._get_client()
            response = await client.auth.get_user(self.access_token)
        except Exception as e:
            raise IdentityError(f"Could not resolve user: {e}") from e

        user = getattr(response, "user", None)
        if user is None or not getattr(user, "id", None):
            raise IdentityError()
        return str(user.id)

    async def fetch(self, table: str, filters: Dict[str, Any] = None) -> List[Dict]:
        try:
            client = await self._get_client()
            query = apply_filters(client.table(table).select("*"), filters)
            result = await query.execute()
            return result.data or []
        except ConfigError:
            raise
        except Exception as e:
            logger.error("Realtime backend fetch failed on %s: %s", table, e)
            raise DataFetchError(table, e) from e

    async def update(self, table: str, match: Dict[str, Any],
                     values: Dict[str, Any]) -> List[Dict]:
        try:
            client = await self._get_client()
            query = apply_filters(client.table(table).update(values), match)
            result = await query.execute()
            return result.data or []
        except ConfigError:
            raise
        except Exception as e:
            logger.error("Realtime backend update failed on %s: %s", table, e)
            raise DataWriteError(table, e, match=match) from e

    async def subscribe(
        self,
        table: str,
        event: str,
        filter: str,
        callback: Callable[[ChangeEvent], Any],
    ) -> ChannelHandle:
        """
        Subscribe to ``event`` (INSERT/UPDATE/DELETE) on ``table`` rows
        matching a postgrest ``filter`` such as ``assigned_to=eq.<uid>``.
        """
        name = f"{table}:{event.lower()}:{filter}"
        try:
            client = await self._get_client()
            channel = client.channel(name)
            channel.on_postgres_changes(
                event=event,
                schema="public",
                table=table,
                filter=filter,
                callback=lambda payload: callback(
                    change_from_payload(table, event, payload)
                ),
            )
            await channel.subscribe()
        except Exception as e:
            raise SubscriptionError(table, event, e) from e

        logger.info("Subscribed to %s", name)
        return ChannelHandle(client, channel, name)

    async def close(self):
        if self._client is None:
            return
        try:
            await self._client.remove_all_channels()
        except Exception as e:
            logger.warning("Failed to close realtime client: %s", e)
        self._client = None
