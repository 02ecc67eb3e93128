"""
Taskdesk - Appwrite document gateway.

Low-level HTTP access to the Appwrite REST API. All store traffic goes
through DocumentGateway.request(), which attaches the project header,
forwards interactive session cookies or (server context only) the
privileged API key, and normalizes failures into TransportError results.

list() pushes filters, sort and the offset window down as native Appwrite
queries and pages through results. The window is only pushed when every
filter clause has an exact native equivalent. If the store rejects the query it
falls back to an unfiltered listing; callers re-apply filtering in memory
either way (see ListResult.pushed_down).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import quote

import httpx

from taskdesk.config import Settings
from taskdesk.db.errors import (
    BackendError,
    BackendResult,
    TransportError,
    auth_config_error,
    database_config_error,
    error_from_response,
    missing_collection_error,
)
from taskdesk.db.filters import FilterClause, OrderBy
from taskdesk.db.request_context import get_request_context
from taskdesk.db.schema import TableRegistry, extract_document_id, normalize_document

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 100
MAX_LIST_OFFSET = 5000

# Statuses that mean "this request will fail regardless of query shape"
_NON_QUERY_FAILURES = {401, 403, 404, 409, 429}


def encode_path(value: str) -> str:
    return quote(value, safe="")


# =============================================================================
# Native query translation
# =============================================================================


# Application field -> store system attribute
_SYSTEM_ATTRIBUTES = {"id": "$id"}


def _query(method: str, attribute: str | None = None, values: list[Any] | None = None) -> str:
    body: dict[str, Any] = {"method": method}
    if attribute is not None:
        body["attribute"] = _SYSTEM_ATTRIBUTES.get(attribute, attribute)
    if values is not None:
        body["values"] = values
    return json.dumps(body, separators=(",", ":"))


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def can_push_down(clause: FilterClause) -> bool:
    """
    Whether the store's native operator selects exactly the rows matches() does.

    neq is kept in memory because notEqual drops rows where the attribute
    is null; search because the store's full-text search matches whole
    words rather than substrings. Equality against null never matches
    natively.
    """
    match clause.op:
        case "eq":
            return clause.value is not None and not isinstance(clause.value, (list, tuple, set, frozenset, dict))
        case "in":
            return (
                isinstance(clause.value, (list, tuple, set, frozenset))
                and len(clause.value) > 0
                and None not in clause.value
            )
        case "lt" | "lte" | "gt" | "gte":
            return clause.value is not None
        case "not_null":
            return True
    return False


def build_server_queries(filters: list[FilterClause], order_by: OrderBy | None) -> list[str]:
    """
    Translate filter clauses and sort into Appwrite query strings.

    Clauses that fail can_push_down() are left out; the executor applies
    them in memory.
    """
    queries: list[str] = []

    for clause in filters:
        if not can_push_down(clause):
            continue
        match clause.op:
            case "eq" | "in":
                queries.append(_query("equal", clause.field, _as_list(clause.value)))
            case "lt":
                queries.append(_query("lessThan", clause.field, [clause.value]))
            case "lte":
                queries.append(_query("lessThanEqual", clause.field, [clause.value]))
            case "gt":
                queries.append(_query("greaterThan", clause.field, [clause.value]))
            case "gte":
                queries.append(_query("greaterThanEqual", clause.field, [clause.value]))
            case "not_null":
                queries.append(_query("isNotNull", clause.field))

    if order_by is not None:
        queries.append(_query("orderAsc" if order_by.ascending else "orderDesc", order_by.field))

    return queries


def limit_query(count: int) -> str:
    return _query("limit", values=[count])


def offset_query(count: int) -> str:
    return _query("offset", values=[count])


# =============================================================================
# Gateway
# =============================================================================


@dataclass
class ListResult:
    """
    Rows from a paginated listing.

    pushed_down is True when the store applied filters, sort and the
    offset/limit window itself; False means `rows` is a superset of the
    matches (possibly the whole collection) and every query step must be
    applied in memory.
    """

    rows: list[dict[str, Any]] = field(default_factory=list)
    total_count: int = 0
    error: BackendError | None = None
    pushed_down: bool = False
    pages: int = 0


class DocumentGateway:
    """HTTP client for Appwrite databases, accounts and storage."""

    def __init__(
        self,
        settings: Settings,
        registry: TableRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.registry = registry or TableRegistry()
        self._http = http_client

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def collection_id(self, table: str) -> str | None:
        return self.settings.collections.get(table) or None

    def topic_for_table(self, table: str) -> str | None:
        """Realtime channel name for a table's documents."""
        collection_id = self.collection_id(table)
        database_id = self.settings.appwrite_database_id.strip()
        if not collection_id or not database_id:
            return None
        return f"databases.{database_id}.collections.{collection_id}.documents"

    def _documents_path(self, collection_id: str, document_id: str | None = None) -> str:
        path = (
            f"/databases/{encode_path(self.settings.appwrite_database_id.strip())}"
            f"/collections/{encode_path(collection_id)}/documents"
        )
        if document_id is not None:
            path += f"/{encode_path(document_id)}"
        return path

    def _resolve_collection(self, table: str) -> tuple[str | None, BackendError | None]:
        if not self.settings.has_database_config:
            return None, database_config_error()
        collection_id = self.collection_id(table)
        if not collection_id:
            return None, missing_collection_error(table)
        return collection_id, None

    def _headers(self, with_project_header: bool) -> dict[str, str]:
        headers: dict[str, str] = {}
        project_id = self.settings.appwrite_project_id.strip()
        if with_project_header and project_id:
            headers["X-Appwrite-Project"] = project_id

        context = get_request_context()
        if context is None:
            # Server-side jobs authenticate without browser cookies
            if self.settings.appwrite_api_key:
                headers["X-Appwrite-Key"] = self.settings.appwrite_api_key
        elif context.cookies:
            headers["Cookie"] = "; ".join(f"{name}={value}" for name, value in context.cookies.items())
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: list[tuple[str, str]] | None = None,
        files: Mapping[str, Any] | None = None,
        data: Mapping[str, Any] | None = None,
        with_project_header: bool = True,
    ) -> BackendResult:
        """Send one request to the store. Never raises for HTTP or network failures."""
        if not self.settings.endpoint_with_version:
            return BackendResult(error=auth_config_error())

        url = f"{self.settings.endpoint_with_version}{path}"
        try:
            response = await self.http.request(
                method,
                url,
                json=json,
                params=params,
                files=files,
                data=data,
                headers=self._headers(with_project_header),
            )
        except httpx.HTTPError as exc:
            logger.warning("Store request %s %s failed: %s", method, path, exc)
            return BackendResult(error=TransportError(str(exc) or "Network request failed.", status=0))

        context = get_request_context()
        if context is not None and response.cookies:
            context.cookies.update(dict(response.cookies.items()))
        # Session cookies belong to the request context, not the shared client
        self.http.cookies.clear()

        payload: Any = None
        if "application/json" in response.headers.get("content-type", ""):
            try:
                payload = response.json()
            except ValueError:
                payload = None

        if not response.is_success:
            return BackendResult(error=error_from_response(payload, response.status_code))
        return BackendResult(data=payload)

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    async def list(
        self,
        table: str,
        filters: list[FilterClause] | None = None,
        order_by: OrderBy | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> ListResult:
        """
        Fetch all documents matching the query, page by page.

        Pages are requested strictly in offset order. A rejected native query
        on the first page triggers the unfiltered fallback.
        """
        collection_id, error = self._resolve_collection(table)
        if error is not None:
            return ListResult(error=error)

        path = self._documents_path(collection_id)
        filters = filters or []
        window_pushed = all(can_push_down(clause) for clause in filters)
        if window_pushed:
            start = max(0, offset or 0)
            requested_limit = max(0, limit) if limit is not None else None
        else:
            # Some clause runs in memory only: the store cannot know which rows fall in the window
            start, requested_limit = 0, None

        result = await self._collect_pages(path, build_server_queries(filters, order_by), start, requested_limit)
        if result.error is None:
            result.pushed_down = window_pushed
            return result

        if result.pages > 0 or result.error.status in _NON_QUERY_FAILURES or result.error.status == 0:
            return result

        logger.warning(
            "Native query rejected for table %s (%s); fetching unfiltered rows",
            table,
            result.error.message,
        )
        fallback = await self._collect_pages(path, [], 0, None)
        if fallback.error is None or fallback.pages > 0:
            return fallback

        # Query syntax unavailable entirely: one bare listing
        bare = await self.request("GET", path)
        if bare.error is not None or not isinstance(bare.data, dict):
            return ListResult(error=bare.error or TransportError("Failed to list documents."))
        rows = [normalize_document(doc) for doc in bare.data.get("documents") or []]
        total = bare.data.get("total")
        return ListResult(rows=rows, total_count=total if isinstance(total, int) else len(rows), pages=1)

    async def _collect_pages(
        self,
        path: str,
        base_queries: list[str],
        offset: int,
        requested_limit: int | None,
    ) -> ListResult:
        if requested_limit is None:
            page_limit = LIST_PAGE_SIZE
        else:
            # limit 0 still fetches one row so the store reports its total
            page_limit = max(1, min(requested_limit, LIST_PAGE_SIZE))

        rows: list[dict[str, Any]] = []
        total = 0
        pages = 0
        current = offset
        remaining = requested_limit

        while True:
            queries = [*base_queries, limit_query(page_limit), offset_query(current)]
            response = await self.request("GET", path, params=[("queries[]", q) for q in queries])
            if response.error is not None or not isinstance(response.data, dict):
                return ListResult(
                    error=response.error or TransportError("Failed to list documents."),
                    pages=pages,
                )

            pages += 1
            documents = [normalize_document(doc) for doc in response.data.get("documents") or []]
            rows.extend(documents)
            reported = response.data.get("total")
            total = reported if isinstance(reported, int) else offset + len(rows)

            if not documents or offset + len(rows) >= total:
                break

            current += len(documents)
            if remaining is not None:
                remaining -= len(documents)
                if remaining <= 0:
                    break

            if current > MAX_LIST_OFFSET:
                logger.warning("Listing %s stopped at offset %d (ceiling reached)", path, current)
                break

        if requested_limit is not None:
            rows = rows[:requested_limit]
        return ListResult(rows=rows, total_count=total, pages=pages)

    async def create(self, table: str, payload: Mapping[str, Any] | None) -> BackendResult:
        """Insert one document. Uses payload['id'] when given, else a store id."""
        collection_id, error = self._resolve_collection(table)
        if error is not None:
            return BackendResult(data={}, error=error)

        body = {
            "documentId": extract_document_id(payload),
            "data": self.registry.sanitize(table, payload, is_insert=True),
        }
        response = await self.request("POST", self._documents_path(collection_id), json=body)
        if response.error is not None or not isinstance(response.data, dict):
            return BackendResult(data={}, error=response.error or TransportError("Failed to create document."))
        return BackendResult(data=normalize_document(response.data))

    async def update(self, table: str, document_id: str, payload: Mapping[str, Any] | None) -> BackendResult:
        collection_id, error = self._resolve_collection(table)
        if error is not None:
            return BackendResult(data={}, error=error)

        body = {"data": self.registry.sanitize(table, payload, is_insert=False)}
        response = await self.request("PATCH", self._documents_path(collection_id, document_id), json=body)
        if response.error is not None or not isinstance(response.data, dict):
            return BackendResult(data={}, error=response.error or TransportError("Failed to update document."))
        return BackendResult(data=normalize_document(response.data))

    async def remove(self, table: str, document_id: str) -> BackendResult:
        collection_id, error = self._resolve_collection(table)
        if error is not None:
            return BackendResult(error=error)

        response = await self.request("DELETE", self._documents_path(collection_id, document_id))
        if response.error is not None:
            return BackendResult(error=response.error)
        return BackendResult()
