"""Supabase client configuration and table helpers."""

import os
from typing import Optional

import httpx
from dotenv import load_dotenv
from supabase import create_client, Client
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.utils.errors import InternalError
from src.utils.logger import supabase_logger as sb_logger

load_dotenv()

_client: Optional[Client] = None


def _get_supabase_credentials() -> tuple[str, str]:
    """Get and validate Supabase credentials from environment."""
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_SERVICE_KEY")

    if not url or not key:
        raise ValueError(
            "SUPABASE_URL and SUPABASE_SERVICE_KEY environment variables are required"
        )

    return url, key


def _create_supabase_client() -> Client:
    url, key = _get_supabase_credentials()

    sb_logger.info("🔧 Initializing Supabase connection...")
    sb_logger.info(f"   🌐 URL: {url}")

    try:
        return create_client(url, key)
    except Exception as e:
        sb_logger.error(f"❌ Supabase connection failed: {e}")
        raise


def get_supabase() -> Client:
    """Shared client, created on first use so imports never need credentials."""
    global _client
    if _client is None:
        _client = _create_supabase_client()
    return _client


# ===============================================================
# query helpers
# ===============================================================
_FILTER_OPS = ("neq", "lt", "lte", "gt", "gte")


def supabase_apply_filter(query, filters: dict | None):
    """
    Apply a filter dict to a query builder.

    Plain values are equality filters. Structured values select an operator:
    ``{"in": [...]}``, ``{"neq": v}``, ``{"lt": v}``, ``{"lte": v}``,
    ``{"gt": v}``, ``{"gte": v}`` and ``{"is": "null"}``. None values are skipped.
    """
    if not filters:
        return query
    for k, v in filters.items():
        if v is None:
            sb_logger.debug(f"supabase_apply_filter: skipping filter {k}=None")
            continue

        if isinstance(v, dict):
            if "in" in v:
                in_val = v.get("in")
                if not isinstance(in_val, (list, tuple)) or len(in_val) == 0:
                    sb_logger.debug(
                        f"supabase_apply_filter: skipping filter {k} IN {in_val!r}"
                    )
                else:
                    query = query.in_(k, list(in_val))
                continue

            if "is" in v:
                query = query.is_(k, v["is"])
                continue

            applied = False
            for op in _FILTER_OPS:
                if op in v and v[op] is not None:
                    query = getattr(query, op)(k, v[op])
                    applied = True
            if not applied:
                sb_logger.debug(
                    f"supabase_apply_filter: unrecognized filter object for key={k}: {v!r}"
                )
            continue

        query = query.eq(k, v)
    return query


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(min=0.5, max=4),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
def _execute_write(query):
    # updates and upserts are idempotent, safe to resend after a dropped connection
    return query.execute()


def _rows(res) -> list[dict]:
    return list(getattr(res, "data", None) or [])


# ===============================================================
# getters
# ===============================================================
def supabase_get_row(
    table: str, filters: dict, columns: str = "*", order_by: str | None = None
) -> dict | None:
    """Get a single row of ``table`` matching filters."""
    try:
        q = supabase_apply_filter(get_supabase().table(table).select(columns), filters)
        if order_by:
            q = q.order(order_by, desc=True)
        rows = _rows(q.limit(1).execute())
        return rows[0] if rows else None
    except Exception as e:
        sb_logger.exception("supabase_get_row(%s) failed: %s", table, e)
        raise InternalError(f"Database fetch error ({table})")


def supabase_get_rows(
    table: str,
    filters: dict | None = None,
    columns: str = "*",
    order_by: str | None = None,
    limit: int | None = None,
) -> list[dict]:
    """Get rows of ``table`` matching filters, newest first when order_by is given."""
    try:
        q = supabase_apply_filter(get_supabase().table(table).select(columns), filters)
        if order_by:
            q = q.order(order_by, desc=True)
        if limit:
            q = q.limit(limit)
        return _rows(q.execute())
    except Exception as e:
        sb_logger.exception("supabase_get_rows(%s) failed: %s", table, e)
        raise InternalError(f"Database fetch error ({table})")


def supabase_get_order(filters: dict, columns: str = "*") -> dict | None:
    return supabase_get_row("orders", filters, columns)


def supabase_get_listing(filters: dict, columns: str = "*") -> dict | None:
    return supabase_get_row("listings", filters, columns)


def supabase_get_shipment(filters: dict, columns: str = "*") -> dict | None:
    return supabase_get_row("order_shipments", filters, columns)


def supabase_get_profile(filters: dict, columns: str = "*") -> dict | None:
    return supabase_get_row("profiles", filters, columns)


# ===============================================================
# insert / update / upsert
# ===============================================================
def supabase_mutate(
    table: str,
    mutate_type: str,
    payload: dict,
    filters: dict | None = None,
    on_conflict: str | None = None,
    ignore_duplicates: bool = False,
) -> list[dict]:
    """
    Insert, update or upsert rows of ``table`` and return the affected rows.

    For conditional updates the returned list is how callers learn whether the
    condition matched. For ``upsert`` with ``ignore_duplicates`` an empty list
    means the row already existed.
    """
    try:
        t = get_supabase().table(table)
        if mutate_type == "insert":
            return _rows(t.insert(payload).execute())
        if mutate_type == "update":
            if not filters:
                raise ValueError("update requires filters")
            return _rows(_execute_write(supabase_apply_filter(t.update(payload), filters)))
        if mutate_type == "upsert":
            q = t.upsert(
                payload,
                on_conflict=on_conflict or "id",
                ignore_duplicates=ignore_duplicates,
            )
            return _rows(_execute_write(q))
        raise ValueError("mutate_type must be 'insert', 'update' or 'upsert'")
    except Exception as e:
        sb_logger.exception("supabase_mutate(%s, %s) failed: %s", table, mutate_type, e)
        raise InternalError(f"Database mutate error ({table})")


def supabase_mutate_order(
    mutate_type: str, payload: dict, filters: dict | None = None, **kwargs
) -> list[dict]:
    return supabase_mutate("orders", mutate_type, payload, filters, **kwargs)


def supabase_mutate_listing(
    mutate_type: str, payload: dict, filters: dict | None = None, **kwargs
) -> list[dict]:
    return supabase_mutate("listings", mutate_type, payload, filters, **kwargs)


def supabase_mutate_shipment(
    mutate_type: str, payload: dict, filters: dict | None = None, **kwargs
) -> list[dict]:
    return supabase_mutate("order_shipments", mutate_type, payload, filters, **kwargs)
