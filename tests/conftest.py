"""
Pytest configuration and fixtures for Azure optimization testing.

This module provides common fixtures for all tests, including backend rows,
metric usage factories and a Supabase DAO wired to an httpx mock transport.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Any, Callable, Optional
from unittest.mock import patch

import httpx
import pytest

from playbooks.azure.scoring_config import UnderutilizationThresholds
from playbooks.azure.utilization import MetricUsage, empty_metric_usage
from services.supabase_client import SupabaseConfig, SupabaseDAO, reset_dao

# Configure logging for tests
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

TEST_SUPABASE_URL = "https://test-project.supabase.co"
TEST_API_KEY = "test-service-role-key"


@pytest.fixture(autouse=True)
def _reset_default_dao():
    """Drop the process-wide DAO between tests."""
    reset_dao()
    yield
    reset_dao()


@pytest.fixture
def supabase_env():
    """Backend configuration through environment variables."""
    with patch.dict('os.environ', {
        'SUPABASE_URL': TEST_SUPABASE_URL,
        'SUPABASE_SERVICE_ROLE_KEY': TEST_API_KEY,
    }):
        yield


@pytest.fixture
def supabase_config():
    return SupabaseConfig(url=TEST_SUPABASE_URL, api_key=TEST_API_KEY, page_size=2, max_rows=10)


class RecordingBackend:
    """
    In-memory PostgREST stand-in: returns canned rows per table and records requests.

    max_rows_per_response mimics the server's db-max-rows setting, which caps a
    response regardless of the requested Range. report_count=False leaves the
    total out of Content-Range ("0-1/*").
    """

    def __init__(self, tables: Dict[str, List[Dict[str, Any]]] = None):
        self.tables = tables or {}
        self.requests: List[httpx.Request] = []
        self.status_overrides: Dict[str, httpx.Response] = {}
        self.max_rows_per_response: Optional[int] = None
        self.report_count = True

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.status_overrides:
            return self.status_overrides[path]

        table = path.rsplit("/", 1)[-1]
        all_rows = self.tables.get(table, [])
        rows = all_rows
        start = 0
        range_header = request.headers.get("Range")
        if range_header:
            start, end = (int(x) for x in range_header.split("-"))
            rows = rows[start:end + 1]
        limit = request.url.params.get("limit")
        if limit is not None:
            rows = rows[:int(limit)]
        if self.max_rows_per_response is not None:
            rows = rows[:self.max_rows_per_response]

        counted = self.report_count and 'count=exact' in request.headers.get("Prefer", "")
        total = str(len(all_rows)) if counted else '*'
        content_range = f"{start}-{start + len(rows) - 1}/{total}" if rows else f"*/{total}"
        return httpx.Response(200, json=rows, headers={"Content-Range": content_range})


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def mock_dao(supabase_config, backend):
    """SupabaseDAO whose HTTP traffic is served by the RecordingBackend fixture."""
    dao = SupabaseDAO(config=supabase_config, transport=httpx.MockTransport(backend.handler))
    yield dao
    dao.close()


@pytest.fixture
def default_thresholds():
    return UnderutilizationThresholds()


@pytest.fixture
def make_usage() -> Callable[..., Dict[str, Any]]:
    """Factory for MetricUsageMap: make_usage(cpu=(avg, max), dtu=(avg, max), ...)."""
    def _make(**categories):
        usage = empty_metric_usage()
        for category, values in categories.items():
            if values is None:
                continue
            avg, peak = values
            usage[category] = MetricUsage(category=category, avg_value=avg, max_value=peak)
        return usage
    return _make


@pytest.fixture
def now():
    return datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def vm_resource():
    return {
        "id": "res-vm-1",
        "azure_resource_id": "/subscriptions/sub-1/resourceGroups/rg-app/providers/Microsoft.Compute/virtualMachines/vm-app-01",
        "name": "vm-app-01",
        "resource_type": "Microsoft.Compute/virtualMachines",
        "resource_group": "rg-app",
        "location": "westeurope",
        "sku": {"name": "Standard_D4s_v5", "tier": "Standard"},
        "azure_tenant_id": "tenant-1",
    }


@pytest.fixture
def sql_resource():
    return {
        "id": "res-sql-1",
        "azure_resource_id": "/subscriptions/sub-1/resourceGroups/rg-data/providers/Microsoft.Sql/servers/sql-01/databases/orders",
        "name": "orders",
        "resource_type": "Microsoft.Sql/servers/databases",
        "resource_group": "rg-data",
        "location": "westeurope",
        "sku": {"name": "S3", "tier": "Standard"},
        "azure_tenant_id": "tenant-1",
    }


@pytest.fixture
def metric_rows(now):
    """Metric rows for one mostly idle VM over the last few days."""
    def row(resource_id, name, avg, peak, hours_ago, unit="Percent"):
        return {
            "azure_resource_id": resource_id,
            "metric_name": name,
            "average": avg,
            "maximum": peak,
            "unit": unit,
            "timestamp_utc": (now - timedelta(hours=hours_ago)).isoformat(),
        }
    return [
        row("res-vm-1", "Percentage CPU", 2.0, 8.0, 1),
        row("res-vm-1", "Percentage CPU", 4.0, 12.0, 25),
        row("res-vm-1", "Available Memory Bytes", 20.0, 30.0, 1),
        row("res-vm-1", "Network In Total", 500.0, 900.0, 1, unit="Bytes"),
    ]
