"""
Property-based tests for the underutilization scorer and recommendation generator.

These tests verify universal properties that should hold across all inputs
using the Hypothesis library for property-based testing.
"""

import pytest
from hypothesis import given, strategies as st, settings

from playbooks.azure.scoring_config import UnderutilizationThresholds, METRIC_CATEGORIES
from playbooks.azure.utilization import MetricUsage, analyze_thresholds, empty_metric_usage
from playbooks.azure.underutilization import (
    calculate_underutilization_score,
    generate_rightsizing_recommendations,
    build_underutilized_report,
)

percentages = st.floats(min_value=0, max_value=100, allow_nan=False)
costs = st.floats(min_value=-100, max_value=100000, allow_nan=False)

RESOURCE_TYPES = [
    'Microsoft.Compute/virtualMachines',
    'Microsoft.Sql/servers/databases',
    'Microsoft.Web/sites',
    'Microsoft.Storage/storageAccounts',
]


@st.composite
def usage_maps(draw):
    """MetricUsageMap with a random subset of categories measured."""
    usage = empty_metric_usage()
    for category in METRIC_CATEGORIES:
        if draw(st.booleans()):
            avg = draw(percentages)
            peak = draw(st.floats(min_value=avg, max_value=100, allow_nan=False))
            usage[category] = MetricUsage(category=category, avg_value=avg, max_value=peak)
    return usage


@st.composite
def threshold_sets(draw):
    return UnderutilizationThresholds(
        cpu=draw(st.floats(min_value=1, max_value=100)),
        memory=draw(st.floats(min_value=1, max_value=100)),
        dtu=draw(st.floats(min_value=1, max_value=100)),
        storage=draw(st.floats(min_value=1, max_value=100)),
    )


@pytest.mark.unit
class TestScoreBounds:
    """
    Property 1: Underutilization score bounds

    For any usage profile and thresholds, the score is an integer in [0, 100]
    and is 0 when no weighted category is measured.
    """

    @settings(max_examples=100)
    @given(usage=usage_maps(), thresholds=threshold_sets())
    def test_score_is_bounded(self, usage, thresholds):
        score = calculate_underutilization_score(usage, thresholds)
        assert isinstance(score, int)
        assert 0 <= score <= 100

    @settings(max_examples=100)
    @given(usage=usage_maps(), thresholds=threshold_sets())
    def test_unmeasured_profile_scores_zero(self, usage, thresholds):
        if any(usage[c] is not None for c in ('cpu', 'dtu', 'memory', 'storage')):
            return
        assert calculate_underutilization_score(usage, thresholds) == 0


@pytest.mark.unit
class TestThresholdCounts:
    """
    Property 2: Threshold analysis counts

    For any usage profile, metrics_below_threshold never exceeds
    metrics_analyzed, and metrics_analyzed counts the measured categories.
    """

    @settings(max_examples=100)
    @given(usage=usage_maps(), thresholds=threshold_sets())
    def test_below_never_exceeds_analyzed(self, usage, thresholds):
        analysis = analyze_thresholds(usage, thresholds)
        measured = sum(1 for c in ('cpu', 'memory', 'dtu', 'storage') if usage[c] is not None)
        assert analysis.metrics_analyzed == measured
        assert 0 <= analysis.metrics_below_threshold <= analysis.metrics_analyzed


@pytest.mark.unit
class TestSavingsBounds:
    """
    Property 3: Savings bounds

    For any resource, usage and monthly cost, every recommendation's
    estimated savings and the report's potential savings lie within
    [0, max(cost, 0)].
    """

    @settings(max_examples=100)
    @given(
        usage=usage_maps(),
        thresholds=threshold_sets(),
        monthly_cost=costs,
        resource_type=st.sampled_from(RESOURCE_TYPES),
    )
    def test_savings_within_cost(self, usage, thresholds, monthly_cost, resource_type):
        resource = {"id": "r-1", "resource_type": resource_type, "sku": {"tier": "Standard"}}
        ceiling = max(0.0, monthly_cost)

        recommendations = generate_rightsizing_recommendations(resource, usage, thresholds, monthly_cost)
        for rec in recommendations:
            assert 0 <= rec.estimated_savings <= ceiling
            assert 0 <= rec.savings_percent <= 100
            assert rec.confidence in ('high', 'medium', 'low')
            assert rec.type in ('downsize', 'deallocate', 'reserved', 'spot')

        report = build_underutilized_report(resource, usage, thresholds, monthly_cost)
        assert 0 <= report.potential_savings <= ceiling


@pytest.mark.unit
class TestRecommendationDeterminism:
    """
    Property 4: Recommendations are a pure function of their inputs

    For any inputs, generating recommendations twice yields equal results.
    """

    @settings(max_examples=100)
    @given(usage=usage_maps(), monthly_cost=costs, resource_type=st.sampled_from(RESOURCE_TYPES))
    def test_same_inputs_same_recommendations(self, usage, monthly_cost, resource_type):
        resource = {"id": "r-1", "resource_type": resource_type}
        thresholds = UnderutilizationThresholds()
        first = generate_rightsizing_recommendations(resource, usage, thresholds, monthly_cost)
        second = generate_rightsizing_recommendations(resource, usage, thresholds, monthly_cost)
        assert first == second
