"""
Runbook Functions for Azure Cost and Health Optimization

This module contains all the runbook/playbook functions exposed as MCP tools.
"""

import json
import logging
from typing import Dict, List, Any, Optional, Tuple
from mcp.types import TextContent

from playbooks.azure.scoring_config import UnderutilizationThresholds
from playbooks.azure.utilization import categorize_metric, metric_usage_from_dict, analyze_thresholds
from playbooks.azure.underutilization import (
    calculate_underutilization_score,
    generate_rightsizing_recommendations,
    get_underutilized_resources,
)
from playbooks.azure.optimization_score import get_optimization_scores, get_idle_resources
from playbooks.azure.cost_anomalies import run_cost_anomaly_detection, get_cost_spikes, detect_cost_spikes
from playbooks.sql.sql_health import get_sql_health_score, get_sql_issue_details
from playbooks.sql.storage_projection import get_storage_projection
from services.supabase_client import get_dao
from utils.error_handler import ResponseFormatter, handle_backend_error

logger = logging.getLogger(__name__)

_THRESHOLD_KEYS = ('cpu', 'memory', 'dtu', 'storage', 'min_monthly_cost', 'lookback_days')


def _text(result: Dict[str, Any]) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]


def _is_number(value: Any) -> bool:
    # bool is an int subclass; JSON true/false must not pass as 1/0
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_thresholds(arguments: Dict[str, Any]) -> Tuple[Optional[UnderutilizationThresholds], Optional[Dict[str, Any]]]:
    """
    Merge threshold overrides from tool arguments over the defaults.

    Overrides may be given flat or under a "thresholds" key.

    Returns:
        (thresholds, None) on success, (None, validation error) otherwise
    """
    overrides = dict(arguments.get("thresholds") or {})
    for key in _THRESHOLD_KEYS:
        if arguments.get(key) is not None:
            overrides[key] = arguments[key]

    for key in ('cpu', 'memory', 'dtu', 'storage'):
        value = overrides.get(key)
        if value is not None and (not _is_number(value) or value <= 0 or value > 100):
            return None, ResponseFormatter.validation_error(
                f"{key} threshold must be a percentage between 0 (exclusive) and 100", field=key
            )

    min_cost = overrides.get('min_monthly_cost')
    if min_cost is not None and (not _is_number(min_cost) or min_cost < 0):
        return None, ResponseFormatter.validation_error(
            "min_monthly_cost must be a non-negative number", field='min_monthly_cost'
        )

    lookback = overrides.get('lookback_days')
    if lookback is not None and (not isinstance(lookback, int) or isinstance(lookback, bool) or lookback < 1):
        return None, ResponseFormatter.validation_error(
            "lookback_days must be an integer of at least 1", field='lookback_days'
        )

    return UnderutilizationThresholds.from_overrides(overrides), None


def _validate_positive_int(arguments: Dict[str, Any], key: str, default: int) -> Tuple[Optional[int], Optional[Dict[str, Any]]]:
    value = arguments.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        return None, ResponseFormatter.validation_error(f"{key} must be an integer of at least 1", field=key)
    return value, None


def _validate_positive_number(arguments: Dict[str, Any], key: str, default: float) -> Tuple[Optional[float], Optional[Dict[str, Any]]]:
    value = arguments.get(key, default)
    if not _is_number(value) or value <= 0:
        return None, ResponseFormatter.validation_error(f"{key} must be a positive number", field=key)
    return float(value), None


def _validate_bool(arguments: Dict[str, Any], key: str, default: bool) -> Tuple[Optional[bool], Optional[Dict[str, Any]]]:
    value = arguments.get(key, default)
    if not isinstance(value, bool):
        return None, ResponseFormatter.validation_error(f"{key} must be true or false", field=key)
    return value, None


# ============================================================================
# Pure scoring tools
# ============================================================================

@handle_backend_error
async def classify_metric(arguments: Dict[str, Any]) -> List[TextContent]:
    """Classify one or more Azure Monitor metric names."""
    names = arguments.get("metric_names")
    if names is None:
        names = [arguments.get("metric_name")]
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        return _text(ResponseFormatter.validation_error(
            "metric_name must be a string or metric_names a list of strings", field='metric_name'
        ))

    return _text(ResponseFormatter.success_response(
        data={name: categorize_metric(name) for name in names},
        message=f"Classified {len(names)} metric names",
        analysis_type="metric_classification"
    ))


@handle_backend_error
async def run_rightsizing_recommendations(arguments: Dict[str, Any]) -> List[TextContent]:
    """Score and recommend for caller-supplied utilization, without touching the backend."""
    thresholds, error = parse_thresholds(arguments)
    if error:
        return _text(error)

    monthly_cost = arguments.get("monthly_cost", 0)
    if not _is_number(monthly_cost):
        return _text(ResponseFormatter.validation_error("monthly_cost must be a number", field='monthly_cost'))

    resource = {
        "id": arguments.get("resource_id"),
        "name": arguments.get("resource_name"),
        "resource_type": arguments.get("resource_type", ""),
        "sku": arguments.get("sku"),
    }
    metrics = metric_usage_from_dict(arguments.get("metrics"))
    recommendations = generate_rightsizing_recommendations(resource, metrics, thresholds, monthly_cost)

    return _text(ResponseFormatter.success_response(
        data={
            "underutilization_score": calculate_underutilization_score(metrics, thresholds),
            "threshold_analysis": analyze_thresholds(metrics, thresholds).to_dict(),
            "recommendations": [rec.to_dict() for rec in recommendations],
            "thresholds": thresholds.to_dict(),
        },
        message=f"Generated {len(recommendations)} rightsizing recommendations",
        analysis_type="rightsizing"
    ))


@handle_backend_error
async def run_cost_spike_analysis(arguments: Dict[str, Any]) -> List[TextContent]:
    """Detect cost spikes from supplied daily costs, or from backend cost history."""
    threshold, error = _validate_positive_number(arguments, "threshold", 2.0)
    if error:
        return _text(error)

    daily_costs = arguments.get("daily_costs")
    if daily_costs is not None:
        spikes = detect_cost_spikes(daily_costs, threshold)
        return _text(ResponseFormatter.success_response(
            data={"spikes": [s.to_dict() for s in spikes], "days_analyzed": len(daily_costs), "threshold": threshold},
            message=f"Found {len(spikes)} cost spikes over {len(daily_costs)} days",
            analysis_type="cost_spikes"
        ))

    days, error = _validate_positive_int(arguments, "days", 30)
    if error:
        return _text(error)
    return _text(get_cost_spikes(tenant_id=arguments.get("tenant_id"), days=days, threshold=threshold))


# ============================================================================
# Backend-backed tools
# ============================================================================

@handle_backend_error
async def run_underutilized_resources_analysis(arguments: Dict[str, Any]) -> List[TextContent]:
    """Run the underutilized resource analysis."""
    thresholds, error = parse_thresholds(arguments)
    if error:
        return _text(error)
    return _text(get_underutilized_resources(thresholds=thresholds, tenant_id=arguments.get("tenant_id")))


def format_underutilization_markdown(data: Dict[str, Any]) -> str:
    """Render the underutilized resource analysis as a markdown report."""
    stats = data["stats"]
    report = f"""# Azure Underutilization Report

## Summary
- **Resources**: {stats['total_resources']}
- **Monthly Cost**: ${stats['total_monthly_cost']:.2f}
- **Potential Monthly Savings**: ${stats['total_potential_savings']:.2f}

## Savings by Recommendation Type
"""
    for rec_type, entry in sorted(stats['by_recommendation_type'].items()):
        report += f"- **{rec_type}**: {entry['count']} recommendations, ${entry['savings']:.2f}\n"

    report += "\n## Resources\n"
    for resource in data["underutilized"]:
        report += f"""
### {resource['resource_name'] or resource['resource_id']}
- **Type**: {resource['resource_type'] or 'N/A'}
- **Resource Group**: {resource['resource_group'] or 'N/A'}
- **Monthly Cost**: ${resource['monthly_cost']:.2f}
- **Potential Savings**: ${resource['potential_savings']:.2f} ({resource['savings_basis']})
- **Underutilization Score**: {resource['underutilization_score']}/100
"""
        for rec in resource['recommendations']:
            report += (
                f"  - {rec['title']} ({rec['confidence']} confidence): "
                f"${rec['estimated_savings']:.2f}/month\n"
            )

    return report


@handle_backend_error
async def generate_underutilization_report(arguments: Dict[str, Any]) -> List[TextContent]:
    """Generate the underutilization report as JSON or markdown."""
    thresholds, error = parse_thresholds(arguments)
    if error:
        return _text(error)

    output_format = arguments.get("output_format", "json")
    if output_format not in ("json", "markdown"):
        return _text(ResponseFormatter.validation_error(
            "output_format must be 'json' or 'markdown'", field='output_format'
        ))

    result = get_underutilized_resources(thresholds=thresholds, tenant_id=arguments.get("tenant_id"))
    if result["status"] != "success" or output_format == "json":
        return _text(result)

    return [TextContent(type="text", text=format_underutilization_markdown(result["data"]))]


@handle_backend_error
async def run_sql_health_score(arguments: Dict[str, Any]) -> List[TextContent]:
    """Compute the composite Azure SQL health score."""
    return _text(get_sql_health_score(tenant_id=arguments.get("tenant_id")))


@handle_backend_error
async def run_sql_issue_details(arguments: Dict[str, Any]) -> List[TextContent]:
    """List the SQL databases behind each health issue."""
    return _text(get_sql_issue_details(tenant_id=arguments.get("tenant_id")))


@handle_backend_error
async def run_optimization_scores(arguments: Dict[str, Any]) -> List[TextContent]:
    """Score and grade every resource."""
    lookback, error = _validate_positive_int(arguments, "lookback_days", 7)
    if error:
        return _text(error)
    return _text(get_optimization_scores(tenant_id=arguments.get("tenant_id"), lookback_days=lookback))


@handle_backend_error
async def run_idle_resources_detection(arguments: Dict[str, Any]) -> List[TextContent]:
    """Detect idle resources."""
    lookback, error = _validate_positive_int(arguments, "lookback_days", 7)
    if error:
        return _text(error)
    min_cost = arguments.get("min_cost", 10.0)
    if not _is_number(min_cost) or min_cost < 0:
        return _text(ResponseFormatter.validation_error("min_cost must be a non-negative number", field='min_cost'))

    return _text(get_idle_resources(
        tenant_id=arguments.get("tenant_id"),
        lookback_days=lookback,
        min_cost=min_cost
    ))


@handle_backend_error
async def run_cost_anomaly_analysis(arguments: Dict[str, Any]) -> List[TextContent]:
    """Detect daily cost anomalies."""
    window_days, error = _validate_positive_int(arguments, "window_days", 14)
    if error:
        return _text(error)
    deviation, error = _validate_positive_number(arguments, "deviation_threshold", 2.0)
    if error:
        return _text(error)
    cutoff, error = _validate_positive_int(arguments, "historical_cutoff_days", 3)
    if error:
        return _text(error)
    skip_historical, error = _validate_bool(arguments, "skip_historical", True)
    if error:
        return _text(error)

    return _text(run_cost_anomaly_detection(
        tenant_id=arguments.get("tenant_id"),
        window_days=window_days,
        deviation_threshold=deviation,
        skip_historical=skip_historical,
        historical_cutoff_days=cutoff
    ))


@handle_backend_error
async def run_storage_projection(arguments: Dict[str, Any]) -> List[TextContent]:
    """Project storage growth for one SQL database."""
    resource_id = arguments.get("resource_id")
    if not resource_id:
        return _text(ResponseFormatter.validation_error("resource_id is required", field='resource_id'))
    days, error = _validate_positive_int(arguments, "days", 30)
    if error:
        return _text(error)
    return _text(get_storage_projection(resource_id, days=days))


@handle_backend_error
async def check_backend_connection(arguments: Dict[str, Any]) -> List[TextContent]:
    """Check that the Supabase backend is configured and reachable."""
    return _text(get_dao().health_check(arguments.get("table", "azure_resources")))
