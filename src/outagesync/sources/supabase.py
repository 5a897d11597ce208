"""PostgREST bulk queries and Supabase Realtime subscriptions."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

import aiohttp

from outagesync.config import TenantConfig
from outagesync.exceptions import ConfigurationError, FetchError
from outagesync.sources.base import EventCallback, StatusCallback
from outagesync.sources.realtime import RealtimeChannel, realtime_url

_logger = logging.getLogger(__name__)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_query_params(
    equality_filters: Mapping[str, Any],
    require_non_null: Sequence[str] = (),
    *,
    select: str = "*",
) -> list[tuple[str, str]]:
    """Encode filters in PostgREST syntax (``col=eq.value``, ``col=not.is.null``)."""
    params: list[tuple[str, str]] = [("select", select)]
    for column, value in equality_filters.items():
        if value is None:
            params.append((column, "is.null"))
        else:
            params.append((column, f"eq.{_format_value(value)}"))
    for column in require_non_null:
        params.append((column, "not.is.null"))
    return params


def parse_content_range(value: str | None) -> int | None:
    """Total row count from a ``Content-Range`` header (``0-24/3573`` or ``*/0``)."""
    if not value or "/" not in value:
        return None
    total = value.rsplit("/", 1)[1].strip()
    return int(total) if total.isdigit() else None


class SupabaseClient:
    """Async client for a tenant's Supabase project.

    Implements both :class:`~outagesync.sources.base.SnapshotSource`
    (PostgREST) and :class:`~outagesync.sources.base.ChangeFeed`
    (Realtime ``postgres_changes``).

    Usage::

        async with SupabaseClient(url, key) as client:
            rows = await client.fetch("mfs", {"status": "Offline"}, ["latitude", "longitude"])
    """

    def __init__(
        self,
        url: str,
        key: str,
        *,
        session: aiohttp.ClientSession | None = None,
        schema: str = "public",
        timeout: float = 30.0,
        realtime_filter: str | None = None,
        channel_prefix: str = "outagesync",
    ) -> None:
        if not url or not key:
            raise ConfigurationError("Supabase url and key are required")
        self._url = url.rstrip("/")
        self._key = key
        self._external_session = session is not None
        self._http_session = session
        self._schema = schema
        self._timeout = timeout
        self._realtime_filter = realtime_filter
        self._channel_prefix = channel_prefix

    @classmethod
    def from_config(cls, config: TenantConfig, *, session: aiohttp.ClientSession | None = None) -> SupabaseClient:
        if not config.is_configured:
            raise ConfigurationError(f"No data source configured for tenant {config.tenant_id!r}")
        assert config.supabase_url is not None and config.supabase_key is not None  # noqa: S101
        realtime_filter = None
        if config.multi_tenant:
            realtime_filter = f"{config.tenant_column}=eq.{config.tenant_id}"
        return cls(
            config.supabase_url,
            config.supabase_key,
            session=session,
            timeout=config.request_timeout,
            realtime_filter=realtime_filter,
            channel_prefix=f"{config.tenant_id}",
        )

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SupabaseClient:
        self._ensure_session()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
        self._http_session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        return self._http_session

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self._key,
            "authorization": f"Bearer {self._key}",
            "accept": "application/json",
            "accept-profile": self._schema,
        }

    # ------------------------------------------------------------------
    # Bulk queries
    # ------------------------------------------------------------------

    async def fetch(
        self,
        table: str,
        equality_filters: Mapping[str, Any],
        require_non_null: Sequence[str] = (),
    ) -> list[dict[str, Any]]:
        """Run one filtered ``select *`` against *table*."""
        http = self._ensure_session()
        url = f"{self._url}/rest/v1/{table}"
        params = build_query_params(equality_filters, require_non_null)

        _logger.debug("GET %s params=%s", url, params)

        try:
            async with http.get(
                url,
                params=params,
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                text = await resp.text()
                if resp.status >= 300:
                    raise FetchError(
                        f"HTTP {resp.status} from {table}: {text[:200]}",
                        table=table,
                        status_code=resp.status,
                    )
        except FetchError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise FetchError(f"Request to {table} failed: {exc!r}", table=table) from exc

        try:
            body = json.loads(text)
        except json.JSONDecodeError as exc:
            raise FetchError(f"Invalid JSON from {table}: {text[:200]}", table=table) from exc

        if not isinstance(body, list):
            raise FetchError(f"Expected a row list from {table}, got {type(body).__name__}", table=table)
        return body

    async def count(self, table: str, equality_filters: Mapping[str, Any] | None = None) -> int:
        """Exact row count for *table* under *equality_filters*."""
        http = self._ensure_session()
        url = f"{self._url}/rest/v1/{table}"
        params = build_query_params(equality_filters or {})
        headers = {**self._headers(), "prefer": "count=exact"}

        try:
            async with http.head(
                url,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if resp.status >= 300:
                    raise FetchError(f"HTTP {resp.status} counting {table}", table=table, status_code=resp.status)
                total = parse_content_range(resp.headers.get("Content-Range"))
        except FetchError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise FetchError(f"Count on {table} failed: {exc!r}", table=table) from exc

        if total is None:
            raise FetchError(f"Missing Content-Range count from {table}", table=table)
        return total

    async def ping(self, table: str, equality_filters: Mapping[str, Any] | None = None) -> bool:
        """Connection test: True when *table* can be counted."""
        try:
            total = await self.count(table, equality_filters)
        except FetchError:
            _logger.warning("Connection test failed for %s", table, exc_info=True)
            return False
        _logger.info("Connection test for %s succeeded (%d rows)", table, total)
        return True

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    async def subscribe(self, table: str, on_event: EventCallback, on_status: StatusCallback) -> RealtimeChannel:
        channel = RealtimeChannel(
            session=self._ensure_session(),
            url=realtime_url(self._url, self._key),
            access_token=self._key,
            channel=f"{self._channel_prefix}-{table}-changes",
            table=table,
            schema=self._schema,
            row_filter=self._realtime_filter,
            on_event=on_event,
            on_status=on_status,
        )
        await channel.open()
        return channel

    async def unsubscribe(self, handle: RealtimeChannel) -> None:
        await handle.close()
