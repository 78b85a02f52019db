"""
Azure Underutilization and Rightsizing Playbook

This module scores how far a resource's utilization sits below its thresholds,
generates rightsizing recommendations (downsize, deallocate, reserved capacity,
spot) and builds the underutilized resource report across a tenant.
"""

import json
import logging
import math
import time
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Any, Optional

from playbooks.azure.scoring_config import (
    UNDERUTILIZATION_WEIGHTS,
    REPORTABLE_SCORE,
    PRIMARY_METRIC_CANDIDATE_RATIO,
    FALLBACK_SAVINGS_RATIO,
    DEALLOCATE_RULE,
    DOWNSIZE_RULE,
    RESERVED_RULE,
    SPOT_RULE,
    MEMORY_RULE,
    UnderutilizationThresholds,
    round_half_up,
)
from playbooks.azure.utilization import (
    MetricSample,
    MetricUsageMap,
    ThresholdAnalysis,
    aggregate_metric_usage,
    analyze_thresholds,
    metric_usage_to_dict,
)
from services.azure_data import (
    get_resources,
    get_metrics,
    get_cost_rows,
    sum_costs_by_resource,
    build_resource_id_map,
)
from utils.logging_config import (
    log_analysis_start,
    log_analysis_complete,
    log_cost_optimization_finding,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class RightsizingRecommendation:
    """A single rightsizing suggestion with its monthly savings estimate."""
    type: str
    title: str
    description: str
    estimated_savings: float
    savings_percent: int
    confidence: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UnderutilizedResourceReport:
    """Underutilization findings for one resource."""
    resource_id: str
    resource_name: Optional[str]
    resource_type: Optional[str]
    resource_group: Optional[str]
    location: Optional[str]
    sku: Optional[str]
    monthly_cost: float
    potential_savings: float
    savings_basis: str
    metrics: MetricUsageMap
    threshold_analysis: ThresholdAnalysis
    recommendations: List[RightsizingRecommendation] = field(default_factory=list)
    underutilization_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "resource_name": self.resource_name,
            "resource_type": self.resource_type,
            "resource_group": self.resource_group,
            "location": self.location,
            "sku": self.sku,
            "monthly_cost": self.monthly_cost,
            "potential_savings": self.potential_savings,
            "savings_basis": self.savings_basis,
            "metrics": metric_usage_to_dict(self.metrics),
            "threshold_analysis": self.threshold_analysis.to_dict(),
            "recommendations": [rec.to_dict() for rec in self.recommendations],
            "underutilization_score": self.underutilization_score,
        }


# ============================================================================
# Scoring
# ============================================================================

def calculate_underutilization_score(
    metrics: MetricUsageMap,
    thresholds: UnderutilizationThresholds
) -> int:
    """
    Calculate a 0-100 weighted underutilization score.

    Each measured category contributes its percentage shortfall below the
    threshold, weighted cpu=3, dtu=3, memory=2, storage=1. Network is ignored.

    Args:
        metrics: Per-category usage; None categories are skipped
        thresholds: Underutilization thresholds

    Returns:
        Integer score; 0 when no weighted category was measured
    """
    weighted_total = 0.0
    weight_total = 0

    for category, weight in UNDERUTILIZATION_WEIGHTS.items():
        usage = metrics.get(category)
        if usage is None:
            continue
        threshold = thresholds.for_category(category)
        if threshold is not None and threshold > 0:
            shortfall = max(0.0, (threshold - usage.avg_value) / threshold * 100)
        else:
            shortfall = 0.0
        weighted_total += shortfall * weight
        weight_total += weight

    if weight_total == 0:
        return 0

    return round_half_up(min(100.0, weighted_total / weight_total))


# ============================================================================
# Recommendations
# ============================================================================

def describe_sku(sku: Any) -> str:
    """Return the SKU tier, then name, then a generic label."""
    if isinstance(sku, str):
        text = sku
        try:
            sku = json.loads(text)
        except ValueError:
            return text or 'current tier'
        if isinstance(sku, str):
            return sku or 'current tier'
        if not isinstance(sku, dict):
            return text
    if isinstance(sku, dict):
        return sku.get('tier') or sku.get('name') or 'current tier'
    return 'current tier'


def _sku_text(sku: Any) -> Optional[str]:
    if sku is None:
        return None
    return sku if isinstance(sku, str) else json.dumps(sku, sort_keys=True)


def _savings(monthly_cost: float, percent: int) -> float:
    return max(0.0, monthly_cost or 0.0) * percent / 100


def _downsize_savings_percent(cpu_avg: float) -> int:
    for below, percent in DOWNSIZE_RULE['savings_tiers']:
        if cpu_avg < below:
            return percent
    return DOWNSIZE_RULE['default_savings_percent']


def generate_rightsizing_recommendations(
    resource: Dict[str, Any],
    metrics: MetricUsageMap,
    thresholds: UnderutilizationThresholds,
    monthly_cost: float
) -> List[RightsizingRecommendation]:
    """
    Generate rightsizing recommendations for one resource.

    CPU figures fall back to DTU when the resource has no CPU metric. Every
    matching rule produces a recommendation, in the order deallocate,
    downsize, reserved, spot, memory.

    Args:
        resource: Resource row with resource_type, sku and name
        metrics: Per-category usage
        thresholds: Underutilization thresholds
        monthly_cost: Current month cost of the resource

    Returns:
        List of RightsizingRecommendation
    """
    recommendations: List[RightsizingRecommendation] = []
    resource_type = (resource.get('resource_type') or '').lower()

    primary = metrics.get('cpu') or metrics.get('dtu')
    cpu_avg = primary.avg_value if primary else None
    cpu_max = primary.max_value if primary else None

    if (cpu_avg is not None and cpu_avg < DEALLOCATE_RULE['max_avg']
            and cpu_max < DEALLOCATE_RULE['max_peak']):
        percent = DEALLOCATE_RULE['savings_percent']
        recommendations.append(RightsizingRecommendation(
            type='deallocate',
            title='Consider Deallocation',
            description=(
                f"This resource shows very low utilization (avg {cpu_avg:.1f}%, max {cpu_max:.1f}%). "
                "If it's a dev/test environment, consider deallocating during off-hours or using auto-shutdown."
            ),
            estimated_savings=_savings(monthly_cost, percent),
            savings_percent=percent,
            confidence='high' if cpu_max < DEALLOCATE_RULE['high_confidence_peak'] else 'medium',
        ))

    if cpu_avg is not None and cpu_avg < thresholds.cpu and cpu_max < DOWNSIZE_RULE['max_peak']:
        percent = _downsize_savings_percent(cpu_avg)
        high = (cpu_max < DOWNSIZE_RULE['high_confidence_peak']
                or cpu_avg < DOWNSIZE_RULE['high_confidence_avg'])
        recommendations.append(RightsizingRecommendation(
            type='downsize',
            title='Downsize to Smaller SKU',
            description=(
                f"Current usage (avg {cpu_avg:.1f}%) suggests this resource can be downsized from "
                f"{describe_sku(resource.get('sku'))}. Consider moving to a smaller tier while monitoring peak usage."
            ),
            estimated_savings=_savings(monthly_cost, percent),
            savings_percent=percent,
            confidence='high' if high else 'medium',
        ))

    is_vm = 'virtualmachines' in resource_type
    is_sql = 'sql' in resource_type

    if (is_vm or is_sql) and (monthly_cost or 0) > RESERVED_RULE['min_monthly_cost']:
        percent = RESERVED_RULE['sql_savings_percent'] if is_sql else RESERVED_RULE['vm_savings_percent']
        recommendations.append(RightsizingRecommendation(
            type='reserved',
            title='Consider Reserved Capacity',
            description=(
                f"For predictable workloads, Azure Reserved Instances can save up to {percent}% compared to "
                "pay-as-you-go pricing. Requires 1 or 3 year commitment."
            ),
            estimated_savings=_savings(monthly_cost, percent),
            savings_percent=percent,
            confidence='medium',
        ))

    if is_vm and cpu_avg is not None and cpu_avg < SPOT_RULE['max_avg']:
        percent = SPOT_RULE['savings_percent']
        recommendations.append(RightsizingRecommendation(
            type='spot',
            title='Use Spot VMs for Batch Workloads',
            description=(
                "If this workload can tolerate interruptions, Azure Spot VMs offer up to 90% savings. "
                "Best for batch processing, dev/test, and fault-tolerant applications."
            ),
            estimated_savings=_savings(monthly_cost, percent),
            savings_percent=percent,
            confidence='low',
        ))

    memory = metrics.get('memory')
    if memory is not None and memory.avg_value < thresholds.memory and memory.max_value < MEMORY_RULE['max_peak']:
        percent = MEMORY_RULE['savings_percent']
        recommendations.append(RightsizingRecommendation(
            type='downsize',
            title='Memory Oversized',
            description=(
                f"Memory utilization is low (avg {memory.avg_value:.1f}%). Consider a VM series with less "
                "memory but similar CPU, or a burstable instance."
            ),
            estimated_savings=_savings(monthly_cost, percent),
            savings_percent=percent,
            confidence='medium',
        ))

    return recommendations


# ============================================================================
# Report building
# ============================================================================

def is_underutilization_candidate(
    metrics: MetricUsageMap,
    thresholds: UnderutilizationThresholds
) -> bool:
    """
    Decide whether a resource is worth a full report.

    A resource qualifies when at least half (rounded up) of its measured
    cpu, dtu and memory categories are below threshold, or when its primary
    metric (cpu, else dtu) averages below 75% of the cpu threshold.
    """
    analyzed = 0
    below = 0
    for category in ('cpu', 'dtu', 'memory'):
        usage = metrics.get(category)
        if usage is None:
            continue
        analyzed += 1
        if usage.avg_value < thresholds.for_category(category):
            below += 1

    if analyzed == 0:
        return False

    primary = metrics.get('cpu') or metrics.get('dtu')
    if below >= math.ceil(analyzed / 2):
        return True
    return primary is not None and primary.avg_value < thresholds.cpu * PRIMARY_METRIC_CANDIDATE_RATIO


def build_underutilized_report(
    resource: Dict[str, Any],
    metrics: MetricUsageMap,
    thresholds: UnderutilizationThresholds,
    monthly_cost: float
) -> UnderutilizedResourceReport:
    """Build the report for one resource, including recommendations and potential savings."""
    recommendations = generate_rightsizing_recommendations(resource, metrics, thresholds, monthly_cost)

    if recommendations:
        potential_savings = max(rec.estimated_savings for rec in recommendations)
        savings_basis = 'recommendation'
    else:
        potential_savings = max(0.0, monthly_cost or 0.0) * FALLBACK_SAVINGS_RATIO
        savings_basis = 'fallback_estimate'

    return UnderutilizedResourceReport(
        resource_id=resource.get('id'),
        resource_name=resource.get('name'),
        resource_type=resource.get('resource_type'),
        resource_group=resource.get('resource_group'),
        location=resource.get('location'),
        sku=_sku_text(resource.get('sku')),
        monthly_cost=monthly_cost,
        potential_savings=potential_savings,
        savings_basis=savings_basis,
        metrics=metrics,
        threshold_analysis=analyze_thresholds(metrics, thresholds),
        recommendations=recommendations,
        underutilization_score=calculate_underutilization_score(metrics, thresholds),
    )


def is_reportable(report: UnderutilizedResourceReport) -> bool:
    return bool(report.recommendations) or report.underutilization_score > REPORTABLE_SCORE


def summarize_underutilization(reports: List[UnderutilizedResourceReport]) -> Dict[str, Any]:
    """
    Aggregate statistics over the reported resources.

    Returns:
        total_resources, total_monthly_cost, total_potential_savings and
        by_recommendation_type {type: {count, savings}}
    """
    by_type: Dict[str, Dict[str, Any]] = {}
    for report in reports:
        for rec in report.recommendations:
            entry = by_type.setdefault(rec.type, {"count": 0, "savings": 0.0})
            entry["count"] += 1
            entry["savings"] += rec.estimated_savings

    return {
        "total_resources": len(reports),
        "total_monthly_cost": sum(r.monthly_cost for r in reports),
        "total_potential_savings": sum(r.potential_savings for r in reports),
        "by_recommendation_type": by_type,
    }


def find_underutilized_resources(
    resources: List[Dict[str, Any]],
    samples: List[MetricSample],
    costs_by_resource: Dict[str, float],
    thresholds: UnderutilizationThresholds
) -> List[UnderutilizedResourceReport]:
    """
    Select candidates among resources above the cost floor and build their reports.

    Args:
        resources: Resource rows (id, name, resource_type, sku, ...)
        samples: Metric samples already restricted to the lookback window
        costs_by_resource: Current month cost per resource id
        thresholds: Underutilization thresholds

    Returns:
        Reportable resources ordered by potential savings, highest first
    """
    expensive = {
        resource_id: cost for resource_id, cost in costs_by_resource.items()
        if cost > thresholds.min_monthly_cost
    }
    usage_by_resource = aggregate_metric_usage(s for s in samples if s.resource_id in expensive)

    reports = []
    for resource in resources:
        resource_id = resource.get('id')
        metrics = usage_by_resource.get(resource_id)
        if resource_id not in expensive or metrics is None:
            continue
        if not is_underutilization_candidate(metrics, thresholds):
            continue

        report = build_underutilized_report(resource, metrics, thresholds, expensive[resource_id])
        if is_reportable(report):
            reports.append(report)

    reports.sort(key=lambda r: r.potential_savings, reverse=True)
    return reports


# ============================================================================
# Orchestration
# ============================================================================

def get_underutilized_resources(
    thresholds: Optional[UnderutilizationThresholds] = None,
    tenant_id: Optional[str] = None,
    dao=None
) -> Dict[str, Any]:
    """
    Fetch costs, metrics and resources from the backend and report underutilized resources.

    Args:
        thresholds: Underutilization thresholds (defaults apply when omitted)
        tenant_id: Restrict to one Azure tenant (optional)
        dao: Backend DAO (defaults to the environment-configured one)

    Returns:
        Dictionary with the reports, statistics and thresholds used
    """
    thresholds = thresholds or UnderutilizationThresholds()
    start_time = time.time()
    log_analysis_start(logger, 'underutilized_resources', tenant_id=tenant_id, **thresholds.to_dict())

    resources_result = get_resources(tenant_id=tenant_id, dao=dao)
    if resources_result["status"] != "success":
        return resources_result
    resources = resources_result["data"]

    cost_result = get_cost_rows(tenant_id=tenant_id, dao=dao)
    if cost_result["status"] != "success":
        return cost_result
    costs = sum_costs_by_resource(cost_result["data"], build_resource_id_map(resources))

    candidate_ids = [rid for rid, cost in costs.items() if cost > thresholds.min_monthly_cost]
    metrics_result = get_metrics(resource_ids=candidate_ids, lookback_days=thresholds.lookback_days, dao=dao)
    if metrics_result["status"] != "success":
        return metrics_result
    samples = [MetricSample.from_row(row) for row in metrics_result["data"]]

    reports = find_underutilized_resources(resources, samples, costs, thresholds)
    for report in reports:
        log_cost_optimization_finding(
            logger, 'underutilized_resource', report.resource_id,
            potential_savings=report.potential_savings,
            underutilization_score=report.underutilization_score
        )

    stats = summarize_underutilization(reports)
    execution_time = time.time() - start_time
    log_analysis_complete(logger, 'underutilized_resources', 'success', execution_time,
                          resources_reported=len(reports))

    return {
        "status": "success",
        "data": {
            "underutilized": [report.to_dict() for report in reports],
            "stats": stats,
            "thresholds": thresholds.to_dict(),
        },
        "message": (
            f"Found {len(reports)} underutilized resources with "
            f"${stats['total_potential_savings']:.2f} potential monthly savings"
        ),
        "execution_time": execution_time,
    }
