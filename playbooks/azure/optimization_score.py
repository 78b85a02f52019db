"""
Azure Optimization Score Playbook

Grades each resource from A to F on utilization, cost efficiency and best
practices, and detects idle resources that keep accruing cost.
"""

import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Dict, List, Any, Optional, Set, Tuple

from playbooks.azure.scoring_config import (
    OPTIMIZATION_LOW_UTILIZATION_PENALTIES,
    OPTIMIZATION_HIGH_UTILIZATION_PENALTIES,
    OPTIMIZATION_CONSISTENCY_BONUS,
    OPTIMIZATION_CONSISTENCY_RATIO,
    OPTIMIZATION_COST_EFFICIENCY_PENALTIES,
    OPTIMIZATION_RECOMMENDATION_PENALTY,
    OPTIMIZATION_WEIGHTS,
    GRADE_BOUNDARIES,
    NEEDS_ATTENTION_SCORE,
    apply_penalty,
    apply_floor_penalty,
    clamp_score,
    grade_for_score,
)
from playbooks.azure.utilization import MetricSample, filter_samples_in_window
from services.azure_data import (
    get_resources,
    get_metrics,
    get_cost_rows,
    get_sql_recommendations,
    sum_costs_by_resource,
    build_resource_id_map,
)
from utils.logging_config import log_analysis_start, log_analysis_complete, log_cost_optimization_finding

logger = logging.getLogger(__name__)

IDLE_MIN_MONTHLY_COST = 10.0
IDLE_LOOKBACK_DAYS = 7
IDLE_CPU_AVG = 2.0
IDLE_CPU_MAX = 5.0
IDLE_STRICT_CPU_AVG = 1.0
IDLE_STRICT_CPU_MAX = 2.0
IDLE_NETWORK_BYTES = 1000.0
IDLE_REQUEST_COUNT = 10.0

_COMPUTE_KEYWORDS = ('cpu', 'dtu')
_NETWORK_KEYWORDS = ('network', 'ingress', 'egress', 'bytes')
_REQUEST_KEYWORDS = ('request', 'connection')


@dataclass
class OptimizationScore:
    """Optimization score for one resource."""
    resource_id: str
    score: int
    grade: str
    breakdown: Dict[str, int] = field(default_factory=dict)
    resource_name: Optional[str] = None
    resource_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IdleResource:
    """A resource with near-zero activity over the lookback window."""
    resource_id: str
    tenant_id: Optional[str]
    idle_days: int
    monthly_cost: float
    idle_reason: str
    metrics_summary: Dict[str, float] = field(default_factory=dict)
    resource_name: Optional[str] = None
    resource_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _matching(samples: List[MetricSample], keywords: Tuple[str, ...]) -> List[MetricSample]:
    return [s for s in samples if any(k in (s.metric_name or '').lower() for k in keywords)]


def _avg(samples: List[MetricSample]) -> Optional[float]:
    if not samples:
        return None
    return sum(s.average or 0 for s in samples) / len(samples)


def _peak(samples: List[MetricSample]) -> Optional[float]:
    if not samples:
        return None
    return max(s.maximum or s.average or 0 for s in samples)


# ============================================================================
# Optimization score
# ============================================================================

def calculate_utilization_subscore(compute_samples: List[MetricSample]) -> int:
    """Utilization sub-score from CPU/DTU samples; 100 when none exist."""
    score = 100
    if not compute_samples:
        return score

    avg = _avg(compute_samples)
    peak = _peak(compute_samples)

    low_penalty = apply_floor_penalty(avg, OPTIMIZATION_LOW_UTILIZATION_PENALTIES)
    score -= low_penalty or apply_penalty(avg, OPTIMIZATION_HIGH_UTILIZATION_PENALTIES)

    if peak > 0 and avg > 0 and (peak - avg) / avg < OPTIMIZATION_CONSISTENCY_RATIO:
        score = min(100, score + OPTIMIZATION_CONSISTENCY_BONUS)

    return score


def calculate_cost_efficiency_subscore(compute_samples: List[MetricSample], monthly_cost: float) -> int:
    score = 100
    if not compute_samples or monthly_cost <= 0:
        return score

    avg = _avg(compute_samples)
    for below, cost_above, points in OPTIMIZATION_COST_EFFICIENCY_PENALTIES:
        if avg < below and monthly_cost > cost_above:
            return score - points
    return score


def calculate_optimization_score(
    resource: Dict[str, Any],
    samples: List[MetricSample],
    monthly_cost: float,
    has_recommendations: bool
) -> OptimizationScore:
    """
    Score one resource from 0 to 100 and grade it.

    Args:
        resource: Resource row with id, name and resource_type
        samples: Metric samples for this resource
        monthly_cost: Current month cost
        has_recommendations: Whether unresolved advisor recommendations exist

    Returns:
        OptimizationScore with per-dimension breakdown
    """
    compute = _matching(samples, _COMPUTE_KEYWORDS)

    utilization = calculate_utilization_subscore(compute)
    cost_efficiency = calculate_cost_efficiency_subscore(compute, monthly_cost)
    best_practices = 100 - (OPTIMIZATION_RECOMMENDATION_PENALTY if has_recommendations else 0)

    score = clamp_score(
        utilization * OPTIMIZATION_WEIGHTS['utilization']
        + cost_efficiency * OPTIMIZATION_WEIGHTS['cost_efficiency']
        + best_practices * OPTIMIZATION_WEIGHTS['best_practices']
    )

    return OptimizationScore(
        resource_id=resource.get('id'),
        score=score,
        grade=grade_for_score(score),
        breakdown={
            "utilization": max(0, utilization),
            "cost_efficiency": max(0, cost_efficiency),
            "best_practices": max(0, best_practices),
        },
        resource_name=resource.get('name'),
        resource_type=resource.get('resource_type'),
    )


def summarize_optimization_scores(scores: List[OptimizationScore]) -> Dict[str, Any]:
    """Count, average score, per-grade counts and resources needing attention."""
    grade_counts = {grade: 0 for _, grade in GRADE_BOUNDARIES}
    grade_counts['F'] = 0
    for s in scores:
        grade_counts[s.grade] += 1

    return {
        "total_resources": len(scores),
        "average_score": (sum(s.score for s in scores) / len(scores)) if scores else 0,
        "grade_counts": grade_counts,
        "needs_attention": sum(1 for s in scores if s.score < NEEDS_ATTENTION_SCORE),
    }


# ============================================================================
# Idle detection
# ============================================================================

def detect_idle_resource(
    resource: Dict[str, Any],
    samples: List[MetricSample],
    monthly_cost: float,
    lookback_days: int = IDLE_LOOKBACK_DAYS
) -> Optional[IdleResource]:
    """
    Decide whether one resource is idle.

    Args:
        resource: Resource row
        samples: Metric samples for the resource within the lookback window
        monthly_cost: Current month cost
        lookback_days: Window length reported as idle_days

    Returns:
        IdleResource, or None when the resource shows meaningful activity
    """
    base = dict(
        resource_id=resource.get('id'),
        tenant_id=resource.get('azure_tenant_id'),
        idle_days=lookback_days,
        monthly_cost=monthly_cost,
        resource_name=resource.get('name'),
        resource_type=resource.get('resource_type'),
    )

    if not samples:
        return IdleResource(idle_reason='No metrics data available', **base)

    compute = _matching(samples, _COMPUTE_KEYWORDS)
    network = _matching(samples, _NETWORK_KEYWORDS)
    requests = _matching(samples, _REQUEST_KEYWORDS)

    avg_cpu = _avg(compute)
    max_cpu = _peak(compute)
    avg_network = _avg(network)
    total_requests = sum(s.average or 0 for s in requests) if requests else None

    reasons = []
    if avg_cpu is not None and avg_cpu < IDLE_CPU_AVG and max_cpu < IDLE_CPU_MAX:
        reasons.append(f"Near-zero CPU (avg {avg_cpu:.1f}%, max {max_cpu:.1f}%)")
    if avg_network is not None and avg_network < IDLE_NETWORK_BYTES:
        reasons.append('Minimal network activity')
    if total_requests is not None and total_requests < IDLE_REQUEST_COUNT:
        reasons.append(f"Very few requests ({total_requests:.0f} total)")

    strictly_idle_cpu = (avg_cpu is not None and avg_cpu < IDLE_STRICT_CPU_AVG
                         and max_cpu < IDLE_STRICT_CPU_MAX)
    if len(reasons) < 2 and not strictly_idle_cpu:
        return None

    return IdleResource(
        idle_reason='; '.join(reasons) or 'Very low activity across all metrics',
        metrics_summary={
            "avg_cpu": avg_cpu or 0,
            "max_cpu": max_cpu or 0,
            "avg_network": avg_network or 0,
            "total_requests": total_requests or 0,
        },
        **base
    )


def detect_idle_resources(
    resources: List[Dict[str, Any]],
    samples: List[MetricSample],
    costs_by_resource: Dict[str, float],
    lookback_days: int = IDLE_LOOKBACK_DAYS,
    min_cost: float = IDLE_MIN_MONTHLY_COST,
    now: Optional[datetime] = None
) -> List[IdleResource]:
    """Detect idle resources, most expensive first; resources below min_cost are skipped."""
    in_window = filter_samples_in_window(samples, lookback_days, now)
    by_resource: Dict[str, List[MetricSample]] = {}
    for sample in in_window:
        by_resource.setdefault(sample.resource_id, []).append(sample)

    idle = []
    for resource in resources:
        monthly_cost = costs_by_resource.get(resource.get('id'), 0.0)
        if monthly_cost < min_cost:
            continue
        finding = detect_idle_resource(resource, by_resource.get(resource.get('id'), []),
                                       monthly_cost, lookback_days)
        if finding is not None:
            idle.append(finding)

    idle.sort(key=lambda r: r.monthly_cost, reverse=True)
    return idle


def summarize_idle_resources(idle: List[IdleResource]) -> Dict[str, Any]:
    total_monthly = sum(r.monthly_cost for r in idle)
    return {
        "total_idle": len(idle),
        "total_monthly_cost": total_monthly,
        "potential_annual_savings": total_monthly * 12,
        "average_idle_days": (sum(r.idle_days for r in idle) / len(idle)) if idle else 0,
    }


# ============================================================================
# Orchestration
# ============================================================================

def _load_inputs(tenant_id: Optional[str], lookback_days: int, dao) -> Dict[str, Any]:
    """Fetch resources, their metric samples and current month costs."""
    resources_result = get_resources(tenant_id=tenant_id, dao=dao)
    if resources_result["status"] != "success":
        return resources_result
    resources = resources_result["data"]

    metrics_result = get_metrics(resource_ids=[r['id'] for r in resources],
                                 lookback_days=lookback_days, dao=dao)
    if metrics_result["status"] != "success":
        return metrics_result

    cost_result = get_cost_rows(tenant_id=tenant_id, dao=dao)
    if cost_result["status"] != "success":
        return cost_result

    return {
        "status": "success",
        "data": {
            "resources": resources,
            "samples": [MetricSample.from_row(row) for row in metrics_result["data"]],
            "costs": sum_costs_by_resource(cost_result["data"], build_resource_id_map(resources)),
        }
    }


def get_optimization_scores(
    tenant_id: Optional[str] = None,
    lookback_days: int = 7,
    dao=None
) -> Dict[str, Any]:
    """
    Score every resource of a tenant, lowest score first.

    Args:
        tenant_id: Restrict to one Azure tenant (optional)
        lookback_days: Metric window in days
        dao: Backend DAO

    Returns:
        Dictionary containing scores and a summary
    """
    start_time = time.time()
    log_analysis_start(logger, 'optimization_scores', tenant_id=tenant_id)

    inputs = _load_inputs(tenant_id, lookback_days, dao)
    if inputs["status"] != "success":
        return inputs
    resources = inputs["data"]["resources"]
    samples = inputs["data"]["samples"]
    costs = inputs["data"]["costs"]

    recs_result = get_sql_recommendations([r['id'] for r in resources], dao=dao)
    if recs_result["status"] != "success":
        return recs_result
    with_recommendations: Set[str] = {r.get('azure_resource_id') for r in recs_result["data"]}

    by_resource: Dict[str, List[MetricSample]] = {}
    for sample in samples:
        by_resource.setdefault(sample.resource_id, []).append(sample)

    scores = [
        calculate_optimization_score(
            resource,
            by_resource.get(resource['id'], []),
            costs.get(resource['id'], 0.0),
            resource['id'] in with_recommendations
        )
        for resource in resources
    ]
    scores.sort(key=lambda s: s.score)

    execution_time = time.time() - start_time
    log_analysis_complete(logger, 'optimization_scores', 'success', execution_time,
                          resources_scored=len(scores))

    summary = summarize_optimization_scores(scores)
    return {
        "status": "success",
        "data": {
            "scores": [s.to_dict() for s in scores],
            "summary": summary,
        },
        "message": f"Scored {len(scores)} resources, {summary['needs_attention']} need attention",
        "execution_time": execution_time,
    }


def get_idle_resources(
    tenant_id: Optional[str] = None,
    lookback_days: int = IDLE_LOOKBACK_DAYS,
    min_cost: float = IDLE_MIN_MONTHLY_COST,
    dao=None
) -> Dict[str, Any]:
    """
    Detect idle resources for a tenant.

    Args:
        tenant_id: Restrict to one Azure tenant (optional)
        lookback_days: Activity window in days
        min_cost: Skip resources cheaper than this per month
        dao: Backend DAO

    Returns:
        Dictionary containing idle resources and a summary
    """
    start_time = time.time()
    log_analysis_start(logger, 'idle_resources', tenant_id=tenant_id)

    inputs = _load_inputs(tenant_id, lookback_days, dao)
    if inputs["status"] != "success":
        return inputs

    idle = detect_idle_resources(
        inputs["data"]["resources"],
        inputs["data"]["samples"],
        inputs["data"]["costs"],
        lookback_days=lookback_days,
        min_cost=min_cost,
    )
    for resource in idle:
        log_cost_optimization_finding(logger, 'idle_resource', resource.resource_id,
                                      potential_savings=resource.monthly_cost)

    execution_time = time.time() - start_time
    log_analysis_complete(logger, 'idle_resources', 'success', execution_time, idle_count=len(idle))

    summary = summarize_idle_resources(idle)
    return {
        "status": "success",
        "data": {
            "idle_resources": [r.to_dict() for r in idle],
            "summary": summary,
        },
        "message": f"Found {len(idle)} idle resources costing ${summary['total_monthly_cost']:.2f} per month",
        "execution_time": execution_time,
    }
