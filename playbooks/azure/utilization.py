"""
Azure Metric Utilization Analysis

Classifies raw Azure Monitor metric names into utilization categories, folds
metric rows into one MetricUsage per category per resource, and compares the
result against underutilization thresholds.
"""

import logging
import re
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Any, Optional, Iterable

from playbooks.azure.scoring_config import (
    METRIC_CATEGORIES,
    THRESHOLD_CATEGORIES,
    UnderutilizationThresholds,
)

logger = logging.getLogger(__name__)

_FRACTIONAL_SECONDS = re.compile(r'(\d{2}:\d{2}:\d{2})\.(\d+)')

# Ordered; some metric names match more than one group
_CATEGORY_KEYWORDS = [
    ('cpu', ('cpu',)),
    ('memory', ('memory', 'workingset')),
    ('dtu', ('dtu',)),
    ('storage', ('storage', 'capacity', 'disk')),
    ('network', ('network', 'ingress', 'egress')),
]


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class MetricSample:
    """A single metric row as stored by the backend metrics sync."""
    resource_id: str
    metric_name: str
    average: Optional[float] = None
    maximum: Optional[float] = None
    unit: Optional[str] = None
    timestamp: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'MetricSample':
        return cls(
            resource_id=row.get('resource_id') or row.get('azure_resource_id'),
            metric_name=row.get('metric_name') or '',
            average=row.get('average'),
            maximum=row.get('maximum'),
            unit=row.get('unit'),
            timestamp=row.get('timestamp') or row.get('timestamp_utc'),
        )


@dataclass
class MetricUsage:
    """Aggregated utilization for one category of one resource."""
    category: str
    avg_value: float
    max_value: float
    unit: str = '%'

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ThresholdAnalysis:
    """Per-category underutilization flags."""
    cpu_underutilized: bool = False
    memory_underutilized: bool = False
    dtu_underutilized: bool = False
    storage_underutilized: bool = False
    metrics_analyzed: int = 0
    metrics_below_threshold: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


MetricUsageMap = Dict[str, Optional[MetricUsage]]


# ============================================================================
# Classification
# ============================================================================

def categorize_metric(metric_name: Optional[str]) -> Optional[str]:
    """
    Map an Azure Monitor metric name to a utilization category.

    Args:
        metric_name: Free-text metric name, e.g. "Percentage CPU"

    Returns:
        One of cpu, memory, dtu, storage, network, or None when unrecognized
    """
    if not metric_name:
        return None

    lower = metric_name.lower()
    if lower == 'percentage cpu':
        return 'cpu'

    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return category

    return None


# ============================================================================
# Aggregation
# ============================================================================

def empty_metric_usage() -> MetricUsageMap:
    return {category: None for category in METRIC_CATEGORIES}


def filter_samples_in_window(
    samples: Iterable[MetricSample],
    lookback_days: int,
    now: Optional[datetime] = None
) -> List[MetricSample]:
    """Keep samples whose timestamp falls within the lookback window.

    Samples without a parseable timestamp are kept.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=lookback_days)
    kept = []
    for sample in samples:
        parsed = parse_timestamp(sample.timestamp)
        if parsed is None or parsed >= cutoff:
            kept.append(sample)
    return kept


def _normalize_fraction(match) -> str:
    return f"{match.group(1)}.{match.group(2)[:6].ljust(6, '0')}"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp (with 'Z' or offset) into an aware datetime.

    PostgREST trims trailing zeros from fractional seconds ("12:00:00.12");
    the fraction is padded or cut to microseconds before parsing.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = _FRACTIONAL_SECONDS.sub(_normalize_fraction, str(value).replace('Z', '+00:00'), count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Unparseable timestamp: {value}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def aggregate_metric_usage(samples: Iterable[MetricSample]) -> Dict[str, MetricUsageMap]:
    """
    Fold metric samples into per-resource, per-category usage.

    Averages are summed and divided by the sample count; the maximum is the
    largest of each sample's maximum, falling back to its average. Samples
    whose metric name is unrecognized are dropped.

    Args:
        samples: Metric samples for any number of resources

    Returns:
        resource_id -> {category -> MetricUsage or None}
    """
    accumulators: Dict[str, Dict[str, Dict[str, Any]]] = {}

    for sample in samples:
        if not sample.resource_id:
            continue
        category = categorize_metric(sample.metric_name)
        if category is None:
            continue

        by_category = accumulators.setdefault(sample.resource_id, {})
        acc = by_category.setdefault(category, {'sum': 0.0, 'max': 0.0, 'count': 0, 'unit': None})
        acc['sum'] += sample.average or 0
        acc['max'] = max(acc['max'], sample.maximum or sample.average or 0)
        acc['count'] += 1
        if acc['unit'] is None and sample.unit:
            acc['unit'] = sample.unit

    usage_by_resource: Dict[str, MetricUsageMap] = {}
    for resource_id, by_category in accumulators.items():
        usage = empty_metric_usage()
        for category, acc in by_category.items():
            if acc['count'] == 0:
                continue
            usage[category] = MetricUsage(
                category=category,
                avg_value=max(0.0, acc['sum'] / acc['count']),
                max_value=max(0.0, acc['max']),
                unit=acc['unit'] or '%',
            )
        usage_by_resource[resource_id] = usage

    return usage_by_resource


def analyze_thresholds(
    metrics: MetricUsageMap,
    thresholds: UnderutilizationThresholds
) -> ThresholdAnalysis:
    """
    Flag each measured category whose average is below its threshold.

    Unmeasured categories are neither analyzed nor flagged, so
    metrics_below_threshold never exceeds metrics_analyzed.
    """
    analysis = ThresholdAnalysis()
    for category in THRESHOLD_CATEGORIES:
        usage = metrics.get(category)
        if usage is None:
            continue
        analysis.metrics_analyzed += 1
        if usage.avg_value < thresholds.for_category(category):
            setattr(analysis, f"{category}_underutilized", True)
            analysis.metrics_below_threshold += 1
    return analysis


def metric_usage_to_dict(metrics: MetricUsageMap) -> Dict[str, Optional[Dict[str, Any]]]:
    return {
        category: usage.to_dict() if usage is not None else None
        for category, usage in metrics.items()
    }


def metric_usage_from_dict(data: Optional[Dict[str, Any]]) -> MetricUsageMap:
    """
    Build a MetricUsageMap from caller-supplied JSON.

    Accepts {"cpu": {"avg": 3, "max": 15}, ...} as well as the avg_value /
    max_value spelling produced by metric_usage_to_dict.
    """
    usage = empty_metric_usage()
    for category, raw in (data or {}).items():
        if category not in usage or raw is None:
            continue
        avg = raw.get('avg_value', raw.get('avg'))
        peak = raw.get('max_value', raw.get('max', avg))
        if avg is None:
            continue
        usage[category] = MetricUsage(
            category=category,
            avg_value=max(0.0, float(avg)),
            max_value=max(0.0, float(peak if peak is not None else avg)),
            unit=raw.get('unit') or '%',
        )
    return usage
