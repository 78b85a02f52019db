"""
Supabase backend client.

This module provides the data access object used to read dashboard tables
through PostgREST.
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Sequence, Tuple, Union

import httpx

from utils.logging_config import log_backend_call, log_backend_error

logger = logging.getLogger(__name__)

# PostgREST filter: (column, operator, value)
Filter = Tuple[str, str, Any]

_SUPPORTED_OPERATORS = ('eq', 'neq', 'gt', 'gte', 'lt', 'lte', 'like', 'ilike', 'is', 'in')


class BackendConfigError(Exception):
    """Raised when the Supabase URL or API key is not configured."""


@dataclass
class SupabaseConfig:
    """Configuration for Supabase backend access."""
    url: Optional[str] = None
    api_key: Optional[str] = None
    schema: str = "public"
    timeout_seconds: float = 30.0
    page_size: int = 1000
    max_rows: int = 50000

    @classmethod
    def from_env(cls) -> 'SupabaseConfig':
        """Build configuration from SUPABASE_* and AZM_BACKEND_* environment variables."""
        return cls(
            url=os.getenv('SUPABASE_URL'),
            api_key=os.getenv('SUPABASE_SERVICE_ROLE_KEY') or os.getenv('SUPABASE_ANON_KEY'),
            schema=os.getenv('SUPABASE_SCHEMA', 'public'),
            timeout_seconds=float(os.getenv('AZM_BACKEND_TIMEOUT', '30')),
            page_size=int(os.getenv('AZM_BACKEND_PAGE_SIZE', '1000')),
            max_rows=int(os.getenv('AZM_BACKEND_MAX_ROWS', '50000')),
        )

    def validate(self) -> None:
        missing = []
        if not self.url:
            missing.append('SUPABASE_URL')
        if not self.api_key:
            missing.append('SUPABASE_SERVICE_ROLE_KEY')
        if missing:
            raise BackendConfigError(f"Missing backend configuration: {', '.join(missing)}")


def format_filter_value(operator: str, value: Any) -> str:
    """Render a filter value the way PostgREST expects it."""
    if operator == 'in':
        items = ','.join(_quote_list_item(v) for v in value)
        return f"in.({items})"
    if operator == 'is':
        return f"is.{'null' if value is None else str(value).lower()}"
    if isinstance(value, bool):
        value = str(value).lower()
    return f"{operator}.{value}"


def _quote_list_item(value: Any) -> str:
    text = str(value)
    if any(ch in text for ch in ',()"'):
        return '"' + text.replace('"', '\\"') + '"'
    return text


def parse_content_range_total(value: Optional[str]) -> Optional[int]:
    """Total row count from a Content-Range header ("0-999/4213"), None when unknown ("0-999/*")."""
    if not value or '/' not in value:
        return None
    total = value.rsplit('/', 1)[1].strip()
    return int(total) if total.isdigit() else None


class SupabaseDAO:
    """Data Access Object for the Supabase PostgREST endpoint."""

    def __init__(self, config: Optional[SupabaseConfig] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        self.config = config or SupabaseConfig.from_env()
        self.config.validate()
        self.base_url = self.config.url.rstrip('/')
        self.client = httpx.Client(
            base_url=self.base_url,
            headers=self._default_headers(),
            timeout=self.config.timeout_seconds,
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        self.client.close()

    def _default_headers(self) -> Dict[str, str]:
        return {
            "apikey": self.config.api_key,
            "Authorization": f"Bearer {self.config.api_key}",
            "Accept-Profile": self.config.schema,
            "Content-Type": "application/json",
        }

    def _build_params(
        self,
        columns: str,
        filters: Optional[Sequence[Filter]],
        or_filters: Optional[Sequence[Filter]],
        order: Optional[Union[str, Sequence[str]]],
        limit: Optional[int]
    ) -> List[Tuple[str, str]]:
        params: List[Tuple[str, str]] = [("select", columns)]

        for column, operator, value in filters or []:
            if operator not in _SUPPORTED_OPERATORS:
                raise ValueError(f"Unsupported filter operator: {operator}")
            params.append((column, format_filter_value(operator, value)))

        if or_filters:
            clauses = ','.join(
                f"{column}.{format_filter_value(operator, value)}"
                for column, operator, value in or_filters
            )
            params.append(("or", f"({clauses})"))

        if order:
            order_list = [order] if isinstance(order, str) else list(order)
            params.append(("order", ','.join(order_list)))

        if limit is not None:
            params.append(("limit", str(limit)))

        return params

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Sequence[Filter]] = None,
        or_filters: Optional[Sequence[Filter]] = None,
        order: Optional[Union[str, Sequence[str]]] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Read rows from a table or view.

        Args:
            table: Table name
            columns: PostgREST select expression
            filters: AND-ed (column, operator, value) filters
            or_filters: OR-ed filters, e.g. resource_type ilike *sql*
            order: "column.asc" / "column.desc" or a list of them
            limit: Maximum number of rows

        Returns:
            List of row dictionaries

        Raises:
            httpx.HTTPStatusError: On a non-2xx response
        """
        params = self._build_params(columns, filters, or_filters, order, limit)
        log_backend_call(logger, 'rest', table, params=params)
        try:
            response = self.client.get(f"/rest/v1/{table}", params=params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            log_backend_error(logger, 'rest', table, e)
            raise
        return response.json()

    def select_all(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Sequence[Filter]] = None,
        or_filters: Optional[Sequence[Filter]] = None,
        order: Optional[Union[str, Sequence[str]]] = None
    ) -> List[Dict[str, Any]]:
        """
        Read every matching row, paging with Range headers past the server row cap.

        The server may return fewer rows than requested (its max-rows setting
        wins over Range), so the next page starts after the rows actually
        received. Paging ends at the exact count reported in Content-Range,
        on an empty page, or at config.max_rows.
        """
        params = self._build_params(columns, filters, or_filters, order, None)
        page_size = self.config.page_size
        rows: List[Dict[str, Any]] = []
        start = 0
        total: Optional[int] = None

        while start < self.config.max_rows:
            end = min(start + page_size, self.config.max_rows) - 1
            headers = {"Range-Unit": "items", "Range": f"{start}-{end}"}
            if start == 0:
                headers["Prefer"] = "count=exact"
            log_backend_call(logger, 'rest', table, range=f"{start}-{end}")
            try:
                response = self.client.get(f"/rest/v1/{table}", params=params, headers=headers)
                response.raise_for_status()
            except httpx.HTTPError as e:
                log_backend_error(logger, 'rest', table, e)
                raise

            if total is None:
                total = parse_content_range_total(response.headers.get("Content-Range"))

            page = response.json()
            if not page:
                break
            rows.extend(page[:self.config.max_rows - start])
            start += len(page)
            if total is not None and start >= total:
                break

        if start >= self.config.max_rows and (total is None or total > self.config.max_rows):
            logger.warning(f"Row cap of {self.config.max_rows} reached while reading {table}")

        return rows

    def health_check(self, table: str = "azure_resources") -> Dict[str, Any]:
        """Check that the REST endpoint answers and the given table is readable."""
        try:
            self.select(table, columns="id", limit=1)
            return {
                "status": "success",
                "data": {"url": self.base_url, "table": table, "reachable": True},
                "message": f"Backend reachable and {table} is readable"
            }
        except httpx.HTTPStatusError as e:
            return {
                "status": "error",
                "error_code": str(e.response.status_code),
                "message": f"Backend returned {e.response.status_code} for {table}",
                "data": {"url": self.base_url, "table": table, "reachable": True}
            }
        except httpx.RequestError as e:
            return {
                "status": "error",
                "error_code": type(e).__name__,
                "message": f"Backend unreachable: {str(e)}",
                "data": {"url": self.base_url, "table": table, "reachable": False}
            }


_default_dao: Optional[SupabaseDAO] = None


def get_dao() -> SupabaseDAO:
    """Return a process-wide DAO built from the environment."""
    global _default_dao
    if _default_dao is None:
        _default_dao = SupabaseDAO()
    return _default_dao


def reset_dao() -> None:
    global _default_dao
    if _default_dao is not None:
        _default_dao.close()
    _default_dao = None
