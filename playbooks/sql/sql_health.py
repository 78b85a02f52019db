"""
Azure SQL Health Playbook

This module scores Azure SQL databases on performance (DTU/CPU, deadlocks,
blocked processes), wait statistics and geo-replication, and lists the
databases behind each issue.
"""

import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Any, Optional

from playbooks.azure.scoring_config import (
    SQL_UTILIZATION_PENALTIES,
    SQL_DEADLOCK_PENALTIES,
    SQL_BLOCKED_PENALTIES,
    SQL_WAIT_TIME_PENALTIES,
    SQL_REPLICATION_ISSUE_PENALTIES,
    SQL_REPLICATION_LAG_PENALTIES,
    SQL_HEALTH_WEIGHTS,
    SQL_WARNING_UTILIZATION,
    SQL_CRITICAL_UTILIZATION,
    SQL_HIGH_DTU_UTILIZATION,
    HEALTHY_REPLICATION_STATES,
    apply_penalty,
    clamp_score,
)
from services.azure_data import (
    get_resources,
    get_sql_performance_stats,
    get_sql_wait_stats,
    get_sql_replication_links,
    get_sql_recommendations,
)
from utils.logging_config import log_analysis_start, log_analysis_complete

logger = logging.getLogger(__name__)

# Databases above this utilization make the overall severity critical
CRITICAL_SEVERITY_UTILIZATION = 90.0


@dataclass
class SqlHealthFactors:
    avg_dtu_percent: Optional[float] = None
    avg_cpu_percent: Optional[float] = None
    high_dtu_count: int = 0
    deadlock_count: int = 0
    blocked_count: int = 0
    top_wait_type: Optional[str] = None
    top_wait_time_ms: float = 0
    replication_issues: int = 0
    avg_replication_lag: float = 0


@dataclass
class SqlHealthScore:
    """Composite health score for a fleet of Azure SQL databases."""
    overall_score: int = 100
    performance_score: int = 100
    wait_stats_score: int = 100
    replication_score: int = 100
    database_count: int = 0
    healthy_count: int = 0
    warning_count: int = 0
    critical_count: int = 0
    last_updated: Optional[str] = None
    factors: SqlHealthFactors = field(default_factory=SqlHealthFactors)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# Sub-scores
# ============================================================================

def calculate_performance_score(
    avg_dtu: Optional[float],
    avg_cpu: Optional[float],
    deadlocks: int,
    blocked: int
) -> int:
    """
    Performance sub-score.

    Utilization is avg_dtu, falling back to avg_cpu, then 0.

    Args:
        avg_dtu: Average DTU percent across databases
        avg_cpu: Average CPU percent across databases
        deadlocks: Total deadlocks
        blocked: Total blocked processes

    Returns:
        Score in [0, 100]
    """
    utilization = avg_dtu if avg_dtu is not None else (avg_cpu if avg_cpu is not None else 0)
    score = 100
    score -= apply_penalty(utilization, SQL_UTILIZATION_PENALTIES)
    score -= apply_penalty(deadlocks, SQL_DEADLOCK_PENALTIES)
    score -= apply_penalty(blocked, SQL_BLOCKED_PENALTIES)
    return clamp_score(score)


def calculate_wait_stats_score(top_wait_time_ms: Optional[float]) -> int:
    """Wait-stats sub-score from the largest wait time, penalized in seconds."""
    seconds = (top_wait_time_ms or 0) / 1000
    return clamp_score(100 - apply_penalty(seconds, SQL_WAIT_TIME_PENALTIES))


def calculate_replication_score(issues: int, avg_lag_seconds: Optional[float]) -> int:
    """Replication sub-score; lag only counts when there is at least one unhealthy link."""
    if not issues:
        return 100
    score = 100
    score -= apply_penalty(issues, SQL_REPLICATION_ISSUE_PENALTIES)
    score -= apply_penalty(avg_lag_seconds or 0, SQL_REPLICATION_LAG_PENALTIES)
    return clamp_score(score)


def calculate_overall_score(performance: int, wait_stats: int, replication: int) -> int:
    return clamp_score(
        performance * SQL_HEALTH_WEIGHTS['performance']
        + wait_stats * SQL_HEALTH_WEIGHTS['wait_stats']
        + replication * SQL_HEALTH_WEIGHTS['replication']
    )


# ============================================================================
# Row aggregation
# ============================================================================

def latest_per_resource(perf_rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep the newest row (by timestamp_utc) for each azure_resource_id."""
    latest: Dict[str, Dict[str, Any]] = {}
    for row in perf_rows:
        resource_id = row.get('azure_resource_id')
        if not resource_id:
            continue
        current = latest.get(resource_id)
        if current is None or (row.get('timestamp_utc') or '') > (current.get('timestamp_utc') or ''):
            latest[resource_id] = row
    return list(latest.values())


def row_utilization(row: Dict[str, Any]) -> float:
    """DTU percent, else CPU percent, else 0."""
    return row.get('dtu_percent') or row.get('cpu_percent') or 0


def _mean_of(rows: List[Dict[str, Any]], key: str) -> Optional[float]:
    values = [row[key] for row in rows if row.get(key) is not None]
    return sum(values) / len(values) if values else None


def calculate_sql_health_score(
    database_count: int,
    perf_rows: List[Dict[str, Any]],
    wait_rows: List[Dict[str, Any]],
    replication_links: List[Dict[str, Any]]
) -> SqlHealthScore:
    """
    Compute the composite SQL health score from backend rows.

    Args:
        database_count: Number of SQL resources in scope
        perf_rows: Performance rows, any order, possibly several per database
        wait_rows: Wait-stat rows
        replication_links: Replication link rows

    Returns:
        SqlHealthScore; every score is 100 and every count 0 when
        database_count is 0
    """
    if database_count == 0:
        return SqlHealthScore()

    latest = latest_per_resource(perf_rows)

    factors = SqlHealthFactors(
        avg_dtu_percent=_mean_of(latest, 'dtu_percent'),
        avg_cpu_percent=_mean_of(latest, 'cpu_percent'),
        high_dtu_count=sum(1 for r in latest if row_utilization(r) > SQL_HIGH_DTU_UTILIZATION),
        deadlock_count=sum(r.get('deadlock_count') or 0 for r in latest),
        blocked_count=sum(r.get('blocked_count') or 0 for r in latest),
    )

    top_wait = max(wait_rows, key=lambda w: w.get('wait_time_ms') or 0, default=None)
    if top_wait is not None:
        factors.top_wait_type = top_wait.get('wait_type')
        factors.top_wait_time_ms = top_wait.get('wait_time_ms') or 0

    factors.replication_issues = sum(
        1 for link in replication_links
        if link.get('replication_state') not in HEALTHY_REPLICATION_STATES
    )
    if replication_links:
        factors.avg_replication_lag = (
            sum(link.get('replication_lag_seconds') or 0 for link in replication_links)
            / len(replication_links)
        )

    performance = calculate_performance_score(
        factors.avg_dtu_percent, factors.avg_cpu_percent,
        factors.deadlock_count, factors.blocked_count
    )
    wait_stats = calculate_wait_stats_score(factors.top_wait_time_ms)
    replication = calculate_replication_score(factors.replication_issues, factors.avg_replication_lag)

    utilizations = [row_utilization(r) for r in latest]
    timestamps = [r.get('timestamp_utc') for r in latest]
    timestamps += [w.get('collected_at') for w in wait_rows]
    timestamps += [link.get('synced_at') for link in replication_links]
    timestamps = [str(t) for t in timestamps if t]

    return SqlHealthScore(
        overall_score=calculate_overall_score(performance, wait_stats, replication),
        performance_score=performance,
        wait_stats_score=wait_stats,
        replication_score=replication,
        database_count=database_count,
        healthy_count=sum(1 for u in utilizations if u < SQL_WARNING_UTILIZATION),
        warning_count=sum(1 for u in utilizations if SQL_WARNING_UTILIZATION <= u < SQL_CRITICAL_UTILIZATION),
        critical_count=sum(1 for u in utilizations if u >= SQL_CRITICAL_UTILIZATION),
        last_updated=max(timestamps) if timestamps else None,
        factors=factors,
    )


# ============================================================================
# Issue details
# ============================================================================

def build_sql_issue_details(
    resources: List[Dict[str, Any]],
    perf_rows: List[Dict[str, Any]],
    recommendations: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Any]:
    """
    List databases with deadlocks, blocking, high DTU and missing indexes.

    Args:
        resources: SQL resource rows (id, name)
        perf_rows: Performance rows
        recommendations: Unresolved advisor recommendations (optional)

    Returns:
        Dictionary with deadlocks, blocked, high_dtu, missing_indexes,
        summary counts and overall_severity
    """
    names = {r.get('id'): r.get('name') for r in resources}
    deadlocks, blocked, high_dtu = [], [], []

    for row in latest_per_resource(perf_rows):
        resource_id = row['azure_resource_id']
        if resource_id not in names:
            continue

        if (row.get('deadlock_count') or 0) > 0:
            deadlocks.append({
                "resource_id": resource_id,
                "resource_name": names[resource_id],
                "count": row['deadlock_count'],
                "last_occurred": row.get('synced_at') or row.get('timestamp_utc'),
            })

        if (row.get('blocked_count') or 0) > 0:
            blocked.append({
                "resource_id": resource_id,
                "resource_name": names[resource_id],
                "count": row['blocked_count'],
            })

        if row_utilization(row) > SQL_HIGH_DTU_UTILIZATION:
            high_dtu.append({
                "resource_id": resource_id,
                "resource_name": names[resource_id],
                "dtu_percent": row.get('dtu_percent') or 0,
                "cpu_percent": row.get('cpu_percent') or 0,
                "storage_percent": row.get('storage_percent') or 0,
            })

    deadlocks.sort(key=lambda d: d['count'], reverse=True)
    blocked.sort(key=lambda d: d['count'], reverse=True)
    high_dtu.sort(key=lambda d: max(d['dtu_percent'], d['cpu_percent']), reverse=True)

    missing_indexes = [
        {
            "id": rec.get('id'),
            "resource_id": rec.get('azure_resource_id'),
            "resource_name": names.get(rec.get('azure_resource_id')) or 'Unknown',
            "table_name": rec.get('impacted_field') or 'Unknown',
            "impact": rec.get('impact') or 'Low',
            "statement": rec.get('solution') or '',
            "category": rec.get('category') or 'Index',
        }
        for rec in (recommendations or [])
        if rec.get('azure_resource_id') in names
    ]

    issue_count = len(deadlocks) + len(blocked) + len(high_dtu) + len(missing_indexes)
    critical_utilization = any(
        max(d['dtu_percent'], d['cpu_percent']) > CRITICAL_SEVERITY_UTILIZATION for d in high_dtu
    )
    if deadlocks or critical_utilization:
        severity = 'critical'
    elif issue_count > 0:
        severity = 'warning'
    else:
        severity = 'healthy'

    return {
        "deadlocks": deadlocks,
        "blocked": blocked,
        "high_dtu": high_dtu,
        "missing_indexes": missing_indexes,
        "summary": {
            "sql_issue_count": issue_count,
            "overall_severity": severity,
        },
    }


# ============================================================================
# Orchestration
# ============================================================================

def get_sql_health_score(tenant_id: Optional[str] = None, dao=None) -> Dict[str, Any]:
    """
    Fetch SQL rows from the backend and compute the composite health score.

    Args:
        tenant_id: Restrict to one Azure tenant (optional)
        dao: Backend DAO

    Returns:
        Dictionary containing the SqlHealthScore
    """
    start_time = time.time()
    log_analysis_start(logger, 'sql_health_score', tenant_id=tenant_id)

    resources_result = get_resources(tenant_id=tenant_id, sql_only=True, dao=dao)
    if resources_result["status"] != "success":
        return resources_result
    resource_ids = [r['id'] for r in resources_result["data"]]

    perf_result = get_sql_performance_stats(resource_ids, dao=dao)
    if perf_result["status"] != "success":
        return perf_result
    wait_result = get_sql_wait_stats(resource_ids, dao=dao)
    if wait_result["status"] != "success":
        return wait_result
    replication_result = get_sql_replication_links(resource_ids, dao=dao)
    if replication_result["status"] != "success":
        return replication_result

    health = calculate_sql_health_score(
        len(resource_ids), perf_result["data"], wait_result["data"], replication_result["data"]
    )

    execution_time = time.time() - start_time
    log_analysis_complete(logger, 'sql_health_score', 'success', execution_time,
                          overall_score=health.overall_score)

    return {
        "status": "success",
        "data": health.to_dict(),
        "message": f"SQL health score {health.overall_score}/100 across {health.database_count} databases",
        "execution_time": execution_time,
    }


def get_sql_issue_details(tenant_id: Optional[str] = None, dao=None) -> Dict[str, Any]:
    """Fetch SQL rows and list the databases behind each health issue."""
    resources_result = get_resources(tenant_id=tenant_id, sql_only=True, dao=dao)
    if resources_result["status"] != "success":
        return resources_result
    resources = resources_result["data"]

    perf_result = get_sql_performance_stats([r['id'] for r in resources], dao=dao)
    if perf_result["status"] != "success":
        return perf_result

    recs_result = get_sql_recommendations([r['id'] for r in resources], dao=dao)
    if recs_result["status"] != "success":
        return recs_result

    details = build_sql_issue_details(resources, perf_result["data"], recs_result["data"])
    return {
        "status": "success",
        "data": details,
        "message": (
            f"{details['summary']['sql_issue_count']} SQL issues, "
            f"severity {details['summary']['overall_severity']}"
        )
    }
