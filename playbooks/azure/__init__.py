"""
Azure Optimization Playbooks for AZM Tips MCP Server

Provides utilization classification, underutilization scoring, rightsizing
recommendations, optimization scores, idle detection and cost anomalies.
"""

from .utilization import categorize_metric, aggregate_metric_usage, analyze_thresholds
from .underutilization import (
    calculate_underutilization_score,
    generate_rightsizing_recommendations,
    get_underutilized_resources,
)
from .optimization_score import get_optimization_scores, get_idle_resources
from .cost_anomalies import run_cost_anomaly_detection, get_cost_spikes

__all__ = [
    'categorize_metric',
    'aggregate_metric_usage',
    'analyze_thresholds',
    'calculate_underutilization_score',
    'generate_rightsizing_recommendations',
    'get_underutilized_resources',
    'get_optimization_scores',
    'get_idle_resources',
    'run_cost_anomaly_detection',
    'get_cost_spikes'
]
