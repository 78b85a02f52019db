"""
Azure SQL Storage Projection

Projects data-space growth for a database from its recent performance rows.
"""

import logging
import math
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Any, Optional

from playbooks.azure.utilization import parse_timestamp
from services.azure_data import get_sql_storage_trend

logger = logging.getLogger(__name__)

MAX_PROJECTION_DAYS = 3650
MIN_TREND_POINTS = 7
INCREASING_RATIO = 1.2
DECREASING_RATIO = 0.8

_BYTE_UNITS = ['B', 'KB', 'MB', 'GB', 'TB']


@dataclass
class StorageProjection:
    daily_growth_bytes: float
    monthly_growth_bytes: float
    days_until_full: Optional[int]
    projected_full_date: Optional[str]
    growth_trend: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_bytes(num_bytes: Optional[float]) -> str:
    """Render a byte count as B, KB, MB, GB or TB with one decimal below 100."""
    if not num_bytes:
        return '0 B'
    value = float(num_bytes)
    exponent = 0
    while abs(value) >= 1024 and exponent < len(_BYTE_UNITS) - 1:
        value /= 1024
        exponent += 1
    return f"{value:.{0 if abs(value) >= 100 else 1}f} {_BYTE_UNITS[exponent]}"


def _half_growth(points: List[Dict[str, Any]]) -> float:
    if len(points) < 2:
        return 0.0
    return ((points[-1]['data_space_used_bytes'] or 0) - (points[0]['data_space_used_bytes'] or 0)) / len(points)


def classify_growth_trend(points: List[Dict[str, Any]]) -> str:
    """Compare growth per point in the first and second halves of the series."""
    if len(points) < MIN_TREND_POINTS:
        return 'stable'
    mid = len(points) // 2
    first = _half_growth(points[:mid])
    second = _half_growth(points[mid:])
    if second > first * INCREASING_RATIO:
        return 'increasing'
    if second < first * DECREASING_RATIO:
        return 'decreasing'
    return 'stable'


def project_storage_growth(
    rows: List[Dict[str, Any]],
    today: Optional[datetime] = None
) -> Optional[StorageProjection]:
    """
    Project storage growth from performance rows ordered oldest first.

    Args:
        rows: Rows with timestamp_utc, data_space_used_bytes and max_size_bytes
        today: Reference date for projected_full_date

    Returns:
        StorageProjection, or None with fewer than two usable points or no
        elapsed time between them
    """
    points = [r for r in rows if r.get('data_space_used_bytes') is not None]
    if len(points) < 2:
        return None

    first, last = points[0], points[-1]
    start, end = parse_timestamp(first.get('timestamp_utc')), parse_timestamp(last.get('timestamp_utc'))
    if start is None or end is None:
        return None
    elapsed_days = (end - start).total_seconds() / 86400
    if elapsed_days <= 0:
        return None

    daily_growth = (last['data_space_used_bytes'] - first['data_space_used_bytes']) / elapsed_days

    days_until_full = None
    projected_full_date = None
    max_size = last.get('max_size_bytes')
    if max_size and last['data_space_used_bytes'] and daily_growth > 0:
        days_until_full = int(math.floor((max_size - last['data_space_used_bytes']) / daily_growth))
        if 0 < days_until_full < MAX_PROJECTION_DAYS:
            today = today or datetime.now(timezone.utc)
            projected_full_date = (today + timedelta(days=days_until_full)).date().isoformat()

    return StorageProjection(
        daily_growth_bytes=daily_growth,
        monthly_growth_bytes=daily_growth * 30,
        days_until_full=days_until_full,
        projected_full_date=projected_full_date,
        growth_trend=classify_growth_trend(points),
    )


def get_storage_projection(resource_id: str, days: int = 30, dao=None) -> Dict[str, Any]:
    """
    Fetch a database's storage history and project its growth.

    Args:
        resource_id: SQL database resource id
        days: History window in days
        dao: Backend DAO

    Returns:
        Dictionary containing the projection (None when there is too little data)
    """
    trend_result = get_sql_storage_trend(resource_id, days=days, dao=dao)
    if trend_result["status"] != "success":
        return trend_result

    rows = trend_result["data"]
    projection = project_storage_growth(rows)
    if projection is None:
        return {
            "status": "success",
            "data": {"resource_id": resource_id, "projection": None, "points": len(rows)},
            "message": "Not enough storage history to project growth"
        }

    latest = rows[-1]
    return {
        "status": "success",
        "data": {
            "resource_id": resource_id,
            "projection": projection.to_dict(),
            "points": len(rows),
            "current_used": format_bytes(latest.get('data_space_used_bytes')),
            "max_size": format_bytes(latest.get('max_size_bytes')),
            "monthly_growth": format_bytes(projection.monthly_growth_bytes),
        },
        "message": (
            f"Storage growing {format_bytes(projection.daily_growth_bytes)} per day, trend {projection.growth_trend}"
        )
    }
