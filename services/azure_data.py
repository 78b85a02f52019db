"""
Azure data service module.

This module provides one fetch function per row family synced into the
Supabase backend: resource metadata, Azure Monitor metrics, cost rows and
the Azure SQL performance, wait-stat, replication and recommendation tables.
Every function returns a {"status", "data", "message"} dictionary and never
raises.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Any, Sequence

import httpx

from services.supabase_client import SupabaseDAO, BackendConfigError, Filter, get_dao
from utils.error_handler import ResponseFormatter

logger = logging.getLogger(__name__)

RESOURCES_TABLE = 'azure_resources'
METRICS_TABLE = 'azure_metrics'
COST_TABLE = 'azure_cost_data'
SQL_PERFORMANCE_TABLE = 'azure_sql_performance_stats'
SQL_WAIT_STATS_TABLE = 'azure_sql_wait_stats'
SQL_REPLICATION_TABLE = 'azure_sql_replication_links'
SQL_RECOMMENDATIONS_TABLE = 'azure_sql_recommendations'

RESOURCE_COLUMNS = 'id, azure_resource_id, name, resource_type, resource_group, location, sku, azure_tenant_id'

# SQL servers and databases are matched by resource type, case-insensitively
SQL_RESOURCE_FILTER: List[Filter] = [
    ('resource_type', 'ilike', '*sql*'),
    ('resource_type', 'ilike', '*database*'),
]

WAIT_STATS_LIMIT = 50

# Range-paged reads need a total order; id breaks ties
TIEBREAK = 'id.asc'


def _run_query(description: str, query, dao: Optional[SupabaseDAO]) -> Dict[str, Any]:
    """Run a DAO query and wrap its rows in a status envelope."""
    try:
        rows = query(dao or get_dao())
    except (httpx.HTTPError, BackendConfigError) as e:
        error = ResponseFormatter.error_response(e, description)
        error.pop("traceback", None)
        return error
    except Exception as e:
        logger.error(f"Unexpected error fetching {description}: {str(e)}")
        return {
            "status": "error",
            "message": f"Unexpected error: {str(e)}"
        }

    return {
        "status": "success",
        "data": rows,
        "message": f"Retrieved {len(rows)} {description}"
    }


def _empty(description: str) -> Dict[str, Any]:
    return {
        "status": "success",
        "data": [],
        "message": f"Retrieved 0 {description}"
    }


def current_month_start(today: Optional[date] = None) -> str:
    """First day of the current billing month as YYYY-MM-DD."""
    today = today or datetime.now(timezone.utc).date()
    return today.replace(day=1).isoformat()


def _days_ago(days: int, now: Optional[datetime] = None) -> datetime:
    return (now or datetime.now(timezone.utc)) - timedelta(days=days)


# ============================================================================
# Resources
# ============================================================================

def get_resources(
    tenant_id: Optional[str] = None,
    sql_only: bool = False,
    dao: Optional[SupabaseDAO] = None
) -> Dict[str, Any]:
    """
    Get Azure resource metadata.

    Args:
        tenant_id: Restrict to one Azure tenant (optional)
        sql_only: Only SQL servers and databases
        dao: Backend DAO (defaults to the environment-configured one)

    Returns:
        Dictionary containing the resource rows
    """
    filters: List[Filter] = []
    if tenant_id:
        filters.append(('azure_tenant_id', 'eq', tenant_id))

    return _run_query(
        "Azure resources",
        lambda d: d.select_all(
            RESOURCES_TABLE,
            columns=RESOURCE_COLUMNS,
            filters=filters,
            or_filters=SQL_RESOURCE_FILTER if sql_only else None,
            order=TIEBREAK,
        ),
        dao
    )


# ============================================================================
# Metrics
# ============================================================================

def get_metrics(
    resource_ids: Optional[Sequence[str]] = None,
    lookback_days: int = 7,
    now: Optional[datetime] = None,
    dao: Optional[SupabaseDAO] = None
) -> Dict[str, Any]:
    """
    Get Azure Monitor metric rows within a lookback window.

    Args:
        resource_ids: Restrict to these resource ids (optional)
        lookback_days: Days of history to read
        now: Reference time for the window (defaults to the current UTC time)
        dao: Backend DAO

    Returns:
        Dictionary containing the metric rows
    """
    if resource_ids is not None and len(resource_ids) == 0:
        return _empty("metric rows")

    filters: List[Filter] = [('timestamp_utc', 'gte', _days_ago(lookback_days, now).isoformat())]
    if resource_ids is not None:
        filters.append(('azure_resource_id', 'in', list(resource_ids)))

    return _run_query(
        "metric rows",
        lambda d: d.select_all(
            METRICS_TABLE,
            columns='azure_resource_id, metric_name, average, maximum, unit, timestamp_utc',
            filters=filters,
            order=['timestamp_utc.desc', TIEBREAK],
        ),
        dao
    )


# ============================================================================
# Costs
# ============================================================================

def get_cost_rows(
    since: Optional[str] = None,
    tenant_id: Optional[str] = None,
    dao: Optional[SupabaseDAO] = None
) -> Dict[str, Any]:
    """
    Get daily cost rows on or after a usage date.

    Args:
        since: First usage date (YYYY-MM-DD); defaults to the current month start
        tenant_id: Restrict to one Azure tenant (optional)
        dao: Backend DAO

    Returns:
        Dictionary containing the cost rows ordered by usage date
    """
    filters: List[Filter] = [('usage_date', 'gte', since or current_month_start())]
    if tenant_id:
        filters.append(('azure_tenant_id', 'eq', tenant_id))

    return _run_query(
        "cost rows",
        lambda d: d.select_all(
            COST_TABLE,
            columns='azure_resource_id, azure_tenant_id, resource_group, usage_date, cost_amount, currency',
            filters=filters,
            order=['usage_date.asc', TIEBREAK],
        ),
        dao
    )


def get_cost_history(
    days: int = 30,
    tenant_id: Optional[str] = None,
    today: Optional[date] = None,
    dao: Optional[SupabaseDAO] = None
) -> Dict[str, Any]:
    """Get cost rows for the last N days."""
    today = today or datetime.now(timezone.utc).date()
    return get_cost_rows(since=(today - timedelta(days=days)).isoformat(), tenant_id=tenant_id, dao=dao)


# ============================================================================
# Azure SQL
# ============================================================================

def get_sql_performance_stats(
    resource_ids: Sequence[str],
    dao: Optional[SupabaseDAO] = None
) -> Dict[str, Any]:
    """
    Get SQL performance stat rows, newest first.

    Args:
        resource_ids: SQL resource ids
        dao: Backend DAO

    Returns:
        Dictionary containing the performance rows
    """
    if not resource_ids:
        return _empty("SQL performance rows")

    return _run_query(
        "SQL performance rows",
        lambda d: d.select_all(
            SQL_PERFORMANCE_TABLE,
            filters=[('azure_resource_id', 'in', list(resource_ids))],
            order=['timestamp_utc.desc', TIEBREAK],
        ),
        dao
    )


def get_sql_storage_trend(
    resource_id: str,
    days: int = 30,
    now: Optional[datetime] = None,
    dao: Optional[SupabaseDAO] = None
) -> Dict[str, Any]:
    """Get storage columns of one database's performance rows, oldest first."""
    return _run_query(
        "SQL storage rows",
        lambda d: d.select_all(
            SQL_PERFORMANCE_TABLE,
            columns='timestamp_utc, data_space_used_bytes, data_space_allocated_bytes, storage_percent, max_size_bytes',
            filters=[
                ('azure_resource_id', 'eq', resource_id),
                ('timestamp_utc', 'gte', _days_ago(days, now).isoformat()),
            ],
            order=['timestamp_utc.asc', TIEBREAK],
        ),
        dao
    )


def get_sql_wait_stats(
    resource_ids: Sequence[str],
    limit: int = WAIT_STATS_LIMIT,
    dao: Optional[SupabaseDAO] = None
) -> Dict[str, Any]:
    """Get the largest wait-stat rows, ordered by wait time descending."""
    if not resource_ids:
        return _empty("SQL wait stat rows")

    return _run_query(
        "SQL wait stat rows",
        lambda d: d.select(
            SQL_WAIT_STATS_TABLE,
            filters=[('azure_resource_id', 'in', list(resource_ids))],
            order='wait_time_ms.desc',
            limit=limit,
        ),
        dao
    )


def get_sql_replication_links(
    resource_ids: Sequence[str],
    dao: Optional[SupabaseDAO] = None
) -> Dict[str, Any]:
    """Get geo-replication link rows for the given databases."""
    if not resource_ids:
        return _empty("SQL replication links")

    return _run_query(
        "SQL replication links",
        lambda d: d.select_all(
            SQL_REPLICATION_TABLE,
            filters=[('azure_resource_id', 'in', list(resource_ids))],
            order=TIEBREAK,
        ),
        dao
    )


def get_sql_recommendations(
    resource_ids: Sequence[str],
    dao: Optional[SupabaseDAO] = None
) -> Dict[str, Any]:
    """Get unresolved Azure SQL advisor recommendations for the given resources, highest impact first."""
    if not resource_ids:
        return _empty("SQL recommendations")

    return _run_query(
        "SQL recommendations",
        lambda d: d.select_all(
            SQL_RECOMMENDATIONS_TABLE,
            columns='id, azure_resource_id, name, category, impact, impacted_field, solution',
            filters=[
                ('is_resolved', 'eq', False),
                ('azure_resource_id', 'in', list(resource_ids)),
            ],
            order=['impact.desc', TIEBREAK],
        ),
        dao
    )


def sum_costs_by_resource(cost_rows: List[Dict[str, Any]],
                          id_map: Optional[Dict[str, str]] = None) -> Dict[str, float]:
    """
    Total cost_amount per resource id.

    Args:
        cost_rows: Rows from get_cost_rows
        id_map: Optional lower-cased ARM id -> internal id mapping; ids not in
            the map are kept as-is

    Returns:
        resource id -> total cost
    """
    totals: Dict[str, float] = {}
    for row in cost_rows:
        resource_id = row.get('azure_resource_id')
        if not resource_id:
            continue
        if id_map:
            resource_id = id_map.get(resource_id.lower(), resource_id)
        totals[resource_id] = totals.get(resource_id, 0.0) + (row.get('cost_amount') or 0)
    return totals


def build_resource_id_map(resources: List[Dict[str, Any]]) -> Dict[str, str]:
    """Map lower-cased ARM resource ids to internal resource ids."""
    return {
        r['azure_resource_id'].lower(): r['id']
        for r in resources
        if r.get('azure_resource_id') and r.get('id')
    }
