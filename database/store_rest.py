"""
RestStore — Supabase (PostgREST) backend over HTTP.

Talks to the same `line_users` and `queue_snapshots` tables as SqlStore,
through the PostgREST query syntax:

    GET   /rest/v1/line_users?is_active=eq.true&tracked_queue=not.is.null
    PATCH /rest/v1/line_users?line_user_id=eq.U123   {"tracked_queue": null}
    GET   /rest/v1/queue_snapshots?current_counter=eq.1&order=current_queue.desc&limit=1
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from database.store_base import BaseStore, StoreError
from models.schemas import Subscription

logger = structlog.get_logger()

USERS_TABLE = "line_users"
SNAPSHOTS_TABLE = "queue_snapshots"


def _is_transient(exc: BaseException) -> bool:
    """Network failures, 5xx and 429 are worth another attempt. Other 4xx are not."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    return isinstance(exc, httpx.TransportError)


class RestStore(BaseStore):
    """Supabase PostgREST client implementing repository and oracle."""

    def __init__(self, base_url: str, service_key: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/rest/v1",
                headers={
                    "apikey": self.service_key,
                    "Authorization": f"Bearer {self.service_key}",
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                transport=self._transport,
            )
        return self._client

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def _request(self, method: str, table: str, **kwargs) -> Any:
        client = await self._get_client()
        resp = await client.request(method, f"/{table}", **kwargs)
        if resp.status_code >= 400:
            logger.error("supabase_api_error", status=resp.status_code,
                         table=table, body=resp.text[:500])
            resp.raise_for_status()
        if not resp.content:
            return None
        return resp.json()

    async def _call(self, method: str, table: str, **kwargs) -> Any:
        try:
            return await self._request(method, table, **kwargs)
        except (httpx.HTTPError, ValueError) as e:
            raise StoreError(f"{method} {table} failed: {e}") from e

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()

    # ── Subscriptions ──────────────────────────────────────

    async def list_active_tracked(self) -> list[Subscription]:
        rows = await self._call("GET", USERS_TABLE, params={
            "select": "line_user_id,display_name,tracked_queue,is_active",
            "is_active": "eq.true",
            "tracked_queue": "not.is.null",
        })
        return [self._row_to_subscription(r) for r in rows or []]

    async def get_subscription(self, subscriber_id: str) -> Optional[Subscription]:
        rows = await self._call("GET", USERS_TABLE, params={
            "select": "line_user_id,display_name,tracked_queue,is_active",
            "line_user_id": f"eq.{subscriber_id}",
            "limit": "1",
        })
        return self._row_to_subscription(rows[0]) if rows else None

    async def find_tracker(self, number: str, exclude_subscriber_id: str = "") -> Optional[Subscription]:
        params = {
            "select": "line_user_id,display_name,tracked_queue,is_active",
            "tracked_queue": f"eq.{number}",
            "is_active": "eq.true",
            "limit": "1",
        }
        if exclude_subscriber_id:
            params["line_user_id"] = f"neq.{exclude_subscriber_id}"
        rows = await self._call("GET", USERS_TABLE, params=params)
        return self._row_to_subscription(rows[0]) if rows else None

    async def upsert_subscriber(self, subscriber_id: str, display_name: str = "") -> Subscription:
        payload = {"line_user_id": subscriber_id, "is_active": True}
        if display_name:
            payload["display_name"] = display_name
        rows = await self._call(
            "POST", USERS_TABLE,
            params={"on_conflict": "line_user_id"},
            json=payload,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        if rows:
            return self._row_to_subscription(rows[0])
        return Subscription(subscriber_id=subscriber_id, display_name=display_name)

    async def set_tracking(self, subscriber_id: str, number: str) -> None:
        # Upsert: a user may send a number before the follow event was stored.
        await self._call(
            "POST", USERS_TABLE,
            params={"on_conflict": "line_user_id"},
            json={"line_user_id": subscriber_id, "tracked_queue": number, "is_active": True},
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def clear_tracking(self, subscriber_id: str) -> None:
        await self._update(subscriber_id, {"tracked_queue": None})

    async def deactivate(self, subscriber_id: str) -> None:
        await self._update(subscriber_id, {"is_active": False, "tracked_queue": None})

    async def _update(self, subscriber_id: str, values: dict[str, Any]) -> None:
        await self._call(
            "PATCH", USERS_TABLE,
            params={"line_user_id": f"eq.{subscriber_id}"},
            json=values,
            headers={"Prefer": "return=minimal"},
        )

    # ── Queue snapshots ────────────────────────────────────

    async def latest_called(self, counter_id: int) -> Optional[int]:
        rows = await self._call("GET", SNAPSHOTS_TABLE, params={
            "select": "current_queue",
            "current_counter": f"eq.{counter_id}",
            "order": "current_queue.desc",
            "limit": "1",
        })
        if not rows:
            return None
        try:
            return int(rows[0]["current_queue"])
        except (KeyError, TypeError, ValueError):
            logger.warning("snapshot_unparseable", counter_id=counter_id, row=rows[0])
            return None

    async def record_snapshot(self, counter_id: int, latest_called: int) -> None:
        await self._call(
            "POST", SNAPSHOTS_TABLE,
            json={"current_counter": counter_id, "current_queue": latest_called},
            headers={"Prefer": "return=minimal"},
        )

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_subscription(row: dict[str, Any]) -> Subscription:
        tracked = row.get("tracked_queue")
        return Subscription(
            subscriber_id=row["line_user_id"],
            tracked_number=str(tracked) if tracked is not None else None,
            active=bool(row.get("is_active", True)),
            display_name=row.get("display_name") or "",
        )
