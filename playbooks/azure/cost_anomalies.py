"""
Azure Cost Anomaly Playbook

This module detects unusual daily spend. Anomalies compare each day against
the mean and standard deviation of the preceding window; spikes compare each
day against the period's daily average.
"""

import logging
import math
import time
from dataclasses import dataclass, asdict
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Any, Optional

from services.azure_data import get_cost_history
from utils.logging_config import log_analysis_start, log_analysis_complete

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 14
DEFAULT_DEVIATION_THRESHOLD = 2.0
DEFAULT_SPIKE_THRESHOLD = 2.0
DEFAULT_HISTORY_DAYS = 30
DEFAULT_HISTORICAL_CUTOFF_DAYS = 3

# Windows with less variation or spend than this are not analyzed
MIN_WINDOW_STD_DEV = 1.0
MIN_WINDOW_MEAN = 10.0

CRITICAL_DEVIATION_PERCENT = 100.0
WARNING_DEVIATION_PERCENT = 50.0


@dataclass
class CostAnomaly:
    """A day whose total cost deviates from the trailing window."""
    tenant_id: str
    resource_id: Optional[str]
    resource_group: Optional[str]
    anomaly_date: str
    expected_cost: float
    actual_cost: float
    deviation_percent: float
    anomaly_type: str
    severity: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CostSpike:
    date: str
    cost: float
    daily_average: float
    percent_above_average: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _round_cents(value: float) -> float:
    return math.floor(value * 100 + 0.5) / 100


def daily_totals(cost_rows: List[Dict[str, Any]]) -> Dict[str, float]:
    """Sum cost_amount per usage_date."""
    totals: Dict[str, float] = {}
    for row in cost_rows:
        usage_date = str(row.get('usage_date'))[:10]
        totals[usage_date] = totals.get(usage_date, 0.0) + (row.get('cost_amount') or 0)
    return totals


def classify_severity(deviation_percent: float) -> str:
    magnitude = abs(deviation_percent)
    if magnitude > CRITICAL_DEVIATION_PERCENT:
        return 'critical'
    if magnitude > WARNING_DEVIATION_PERCENT:
        return 'warning'
    return 'info'


def detect_cost_anomalies(
    cost_rows: List[Dict[str, Any]],
    tenant_id: str,
    window_days: int = DEFAULT_WINDOW_DAYS,
    deviation_threshold: float = DEFAULT_DEVIATION_THRESHOLD
) -> List[CostAnomaly]:
    """
    Detect anomalous days in one tenant's daily cost totals.

    Each day after the first window_days is compared with the population
    mean and standard deviation of the window before it.

    Args:
        cost_rows: Cost rows of a single tenant
        tenant_id: Tenant the rows belong to
        window_days: Trailing window length
        deviation_threshold: Minimum |z-score| for an anomaly

    Returns:
        Anomalies in date order
    """
    totals = daily_totals(cost_rows)
    dates = sorted(totals)
    anomalies = []

    for i in range(window_days, len(dates)):
        window = [totals[d] for d in dates[i - window_days:i]]
        mean = sum(window) / len(window)
        std_dev = math.sqrt(sum((c - mean) ** 2 for c in window) / len(window))

        if std_dev < MIN_WINDOW_STD_DEV or mean < MIN_WINDOW_MEAN:
            continue

        current = totals[dates[i]]
        z_score = (current - mean) / std_dev
        if abs(z_score) < deviation_threshold:
            continue

        deviation_percent = (current - mean) / mean * 100
        anomalies.append(CostAnomaly(
            tenant_id=tenant_id,
            resource_id=None,
            resource_group=None,
            anomaly_date=dates[i],
            expected_cost=_round_cents(mean),
            actual_cost=_round_cents(current),
            deviation_percent=_round_cents(deviation_percent),
            anomaly_type='spike' if z_score > 0 else 'drop',
            severity=classify_severity(deviation_percent),
        ))

    return anomalies


def filter_recent_anomalies(
    anomalies: List[CostAnomaly],
    cutoff_days: int,
    today: Optional[date] = None
) -> List[CostAnomaly]:
    """Keep anomalies on or after today - cutoff_days."""
    today = today or datetime.now(timezone.utc).date()
    cutoff = (today - timedelta(days=cutoff_days)).isoformat()
    return [a for a in anomalies if a.anomaly_date >= cutoff]


def summarize_anomalies(anomalies: List[CostAnomaly]) -> Dict[str, Any]:
    by_severity = {'critical': 0, 'warning': 0, 'info': 0}
    by_type = {'spike': 0, 'drop': 0}
    for anomaly in anomalies:
        by_severity[anomaly.severity] += 1
        by_type[anomaly.anomaly_type] += 1

    return {
        "total": len(anomalies),
        "by_severity": by_severity,
        "by_type": by_type,
        "average_deviation_percent": (
            sum(abs(a.deviation_percent) for a in anomalies) / len(anomalies) if anomalies else 0
        ),
    }


def detect_cost_spikes(
    daily_costs: List[Dict[str, Any]],
    threshold: float = DEFAULT_SPIKE_THRESHOLD
) -> List[CostSpike]:
    """
    Find days whose cost is at least threshold x the period's daily average.

    Args:
        daily_costs: [{"date": ..., "cost": ...}, ...]
        threshold: Multiple of the daily average

    Returns:
        Spikes ordered by percent above average, highest first
    """
    if not daily_costs:
        return []

    daily_average = sum(d.get('cost') or 0 for d in daily_costs) / len(daily_costs)
    if daily_average == 0:
        return []

    spikes = [
        CostSpike(
            date=str(d.get('date')),
            cost=d.get('cost') or 0,
            daily_average=daily_average,
            percent_above_average=((d.get('cost') or 0) - daily_average) / daily_average * 100,
        )
        for d in daily_costs
        if (d.get('cost') or 0) >= daily_average * threshold
    ]
    spikes.sort(key=lambda s: s.percent_above_average, reverse=True)
    return spikes


# ============================================================================
# Orchestration
# ============================================================================

def run_cost_anomaly_detection(
    tenant_id: Optional[str] = None,
    window_days: int = DEFAULT_WINDOW_DAYS,
    deviation_threshold: float = DEFAULT_DEVIATION_THRESHOLD,
    history_days: int = DEFAULT_HISTORY_DAYS,
    skip_historical: bool = True,
    historical_cutoff_days: int = DEFAULT_HISTORICAL_CUTOFF_DAYS,
    dao=None
) -> Dict[str, Any]:
    """
    Fetch recent cost history and detect anomalies per tenant.

    Args:
        tenant_id: Restrict to one Azure tenant (optional)
        window_days: Trailing window length
        deviation_threshold: Minimum |z-score|
        history_days: Days of cost history to read
        skip_historical: Only keep anomalies within historical_cutoff_days
        historical_cutoff_days: Recency cut-off in days
        dao: Backend DAO

    Returns:
        Dictionary containing anomalies and a summary
    """
    start_time = time.time()
    log_analysis_start(logger, 'cost_anomalies', tenant_id=tenant_id)

    cost_result = get_cost_history(days=history_days, tenant_id=tenant_id, dao=dao)
    if cost_result["status"] != "success":
        return cost_result

    by_tenant: Dict[str, List[Dict[str, Any]]] = {}
    for row in cost_result["data"]:
        by_tenant.setdefault(row.get('azure_tenant_id'), []).append(row)

    anomalies: List[CostAnomaly] = []
    for tid, rows in by_tenant.items():
        found = detect_cost_anomalies(rows, tid, window_days, deviation_threshold)
        if skip_historical:
            recent = filter_recent_anomalies(found, historical_cutoff_days)
            logger.info(f"Tenant {tid}: {len(found)} anomalies, keeping {len(recent)} "
                        f"within {historical_cutoff_days}-day cutoff")
            found = recent
        anomalies.extend(found)

    execution_time = time.time() - start_time
    log_analysis_complete(logger, 'cost_anomalies', 'success', execution_time, anomalies=len(anomalies))

    return {
        "status": "success",
        "data": {
            "anomalies": [a.to_dict() for a in anomalies],
            "summary": summarize_anomalies(anomalies),
            "skip_historical": skip_historical,
            "historical_cutoff_days": historical_cutoff_days,
        },
        "message": f"Detected {len(anomalies)} cost anomalies",
        "execution_time": execution_time,
    }


def get_cost_spikes(
    tenant_id: Optional[str] = None,
    days: int = DEFAULT_HISTORY_DAYS,
    threshold: float = DEFAULT_SPIKE_THRESHOLD,
    dao=None
) -> Dict[str, Any]:
    """Fetch recent cost history and report spike days."""
    cost_result = get_cost_history(days=days, tenant_id=tenant_id, dao=dao)
    if cost_result["status"] != "success":
        return cost_result

    totals = daily_totals(cost_result["data"])
    spikes = detect_cost_spikes([{"date": d, "cost": totals[d]} for d in sorted(totals)], threshold)

    return {
        "status": "success",
        "data": {
            "spikes": [s.to_dict() for s in spikes],
            "days_analyzed": len(totals),
            "threshold": threshold,
        },
        "message": f"Found {len(spikes)} cost spikes over {len(totals)} days"
    }
