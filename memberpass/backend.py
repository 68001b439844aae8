from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from .config import Settings, get_settings
from .models import (
    Client,
    LogStatus,
    RecordError,
    ValidationLogEntry,
    client_from_row,
    entry_from_row,
    log_row,
)

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """The backend could not be reached or returned something unusable."""


def ilike_escape(term: str) -> str:
    """Escape LIKE wildcards in a search term.

    The backend reads `*` as `%` in ilike patterns and offers no escape for
    it, so a literal asterisk becomes a single-character wildcard.
    """
    term = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return term.replace("*", "_")


def content_range_total(header: str | None) -> int | None:
    """Row count from a `Content-Range: 0-19/57` header, None if unknown."""
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1].strip()
    return int(total) if total.isdigit() else None


class BackendClient:
    """Thin async client for the hosted PostgREST backend.

    Only the calls the validation workflow depends on live here: client
    lookups, member-code updates, and the validation log store.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = settings or get_settings()
        self.base_url = f"{settings.backend_url.rstrip('/')}/rest/v1"
        self.api_key = settings.backend_anon_key
        self.timeout = settings.request_timeout
        self.retries = settings.request_retries
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"apikey": self.api_key},
                timeout=self.timeout,
                transport=self._transport
                or httpx.AsyncHTTPTransport(retries=self.retries),
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _send(
        self,
        method: str,
        endpoint: str,
        token: str | None = None,
        allow: tuple[int, ...] = (),
        **kwargs,
    ) -> httpx.Response:
        client = await self._get_client()
        url = f"{self.base_url}/{endpoint}"
        logger.debug("%s %s", method, endpoint)
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {token or self.api_key}"
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
            if response.status_code not in allow:
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {endpoint} failed: {e}") from e
        return response

    async def _request(
        self, method: str, endpoint: str, token: str | None = None, **kwargs
    ) -> Any:
        response = await self._send(method, endpoint, token=token, **kwargs)
        return self._json(response, f"{method} {endpoint}")

    @staticmethod
    def _json(response: httpx.Response, what: str) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"{what} returned invalid JSON") from e

    async def find_clients_by_code(
        self, code: str, token: str | None = None
    ) -> list[Client]:
        """Exact-match lookup of clients by member code, lowest id first."""
        rows = await self._request(
            "GET",
            "profiles",
            token=token,
            params={
                "select": "*",
                "member_code": f"eq.{code}",
                "role": "eq.client",
                "order": "id.asc",
            },
        )
        return self._parse(rows, client_from_row)

    async def get_client(self, client_id: str, token: str | None = None) -> Client | None:
        """Fetch a single client by id."""
        rows = await self._request(
            "GET",
            "profiles",
            token=token,
            params={"select": "*", "id": f"eq.{client_id}", "role": "eq.client"},
        )
        clients = self._parse(rows, client_from_row)
        return clients[0] if clients else None

    async def list_member_codes(self, token: str | None = None) -> list[tuple[str, str]]:
        """All (client id, member code) pairs with a non-null code."""
        rows = await self._request(
            "GET",
            "profiles",
            token=token,
            params={
                "select": "id,member_code",
                "role": "eq.client",
                "member_code": "not.is.null",
                "order": "id.asc",
            },
        )
        pairs = []
        for row in rows or []:
            try:
                pairs.append((str(row["id"]), str(row["member_code"])))
            except (KeyError, TypeError) as e:
                raise BackendError(f"Malformed profile row: {e}") from e
        return pairs

    async def update_member_code(
        self, client_id: str, code: str, token: str | None = None
    ) -> None:
        await self._request(
            "PATCH",
            "profiles",
            token=token,
            params={"id": f"eq.{client_id}"},
            json={"member_code": code},
        )

    async def insert_validation_log(
        self,
        company_id: str,
        client_id: str,
        status: LogStatus,
        validated_by: str,
        token: str | None = None,
    ) -> None:
        """Append one row to the validation log."""
        await self._request(
            "POST",
            "validation_logs",
            token=token,
            headers={"Prefer": "return=minimal"},
            json=log_row(company_id, client_id, status, validated_by),
        )

    async def list_validation_logs(
        self,
        company_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        search: str = "",
        limit: int | None = None,
        offset: int = 0,
        token: str | None = None,
    ) -> tuple[list[ValidationLogEntry], int]:
        """
        One slice of a company's validation log, newest first.

        Filtering, ordering and paging all happen in the backend. Returns the
        entries and the exact number of rows matching the filters.
        """
        params: list[tuple[str, str]] = [
            ("select", "*"),
            ("company_id", f"eq.{company_id}"),
            ("order", "created_at.desc,id.desc"),
        ]
        if since is not None:
            params.append(("created_at", f"gte.{since.isoformat()}"))
        if until is not None:
            params.append(("created_at", f"lte.{until.isoformat()}"))
        if search:
            params.append(("client_name", f"ilike.*{ilike_escape(search)}*"))
        if limit is not None:
            params.append(("limit", str(limit)))
            params.append(("offset", str(offset)))

        endpoint = "validation_logs_enriched"
        response = await self._send(
            "GET",
            endpoint,
            token=token,
            allow=(416,),
            headers={"Prefer": "count=exact"},
            params=params,
        )
        # 416: the offset is past the last row; the header still has the count
        if response.status_code == 416:
            entries = []
        else:
            entries = self._parse(self._json(response, f"GET {endpoint}"), entry_from_row)
        total = content_range_total(response.headers.get("content-range"))
        if total is None:
            total = offset + len(entries)
        return entries, total

    @staticmethod
    def _parse(rows: Any, parse_row) -> list:
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise BackendError(f"Expected a list of rows, got {type(rows).__name__}")
        try:
            return [parse_row(row) for row in rows]
        except RecordError as e:
            raise BackendError(str(e)) from e
