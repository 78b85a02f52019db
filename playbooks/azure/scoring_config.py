"""
Scoring Configuration for Azure Resource Optimization

Declarative tables for every weight, savings percentage and penalty tier used
by the underutilization, optimization and SQL health scorers. Keeping the
constants here lets each rule cascade be audited and tested in isolation.
"""

import math
from dataclasses import dataclass, asdict, fields
from typing import Dict, List, Optional, Any, Tuple

# A penalty tier is (threshold, points). Tiers are ordered from the most
# severe threshold down; the first tier whose threshold the value strictly
# exceeds applies.
PenaltyTiers = List[Tuple[float, int]]

METRIC_CATEGORIES = ('cpu', 'memory', 'dtu', 'storage', 'network')

# Categories that take part in threshold analysis, in report order
THRESHOLD_CATEGORIES = ('cpu', 'memory', 'dtu', 'storage')

# Network is collected but never weighted
UNDERUTILIZATION_WEIGHTS: Dict[str, int] = {
    'cpu': 3,
    'dtu': 3,
    'memory': 2,
    'storage': 1,
}

# Reports with a score above this are kept even without recommendations
REPORTABLE_SCORE = 30

# Primary metric (cpu, else dtu) below this fraction of the cpu threshold
# marks a resource as a candidate on its own
PRIMARY_METRIC_CANDIDATE_RATIO = 0.75

# Fallback potential savings when no recommendation fires
FALLBACK_SAVINGS_RATIO = 0.3


@dataclass
class UnderutilizationThresholds:
    """Percentage cut points below which a category counts as underutilized."""
    cpu: float = 20.0
    memory: float = 30.0
    dtu: float = 20.0
    storage: float = 40.0
    min_monthly_cost: float = 50.0
    lookback_days: int = 7

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, Any]] = None) -> 'UnderutilizationThresholds':
        """Merge a partial override dict over the defaults, ignoring unknown or None keys."""
        known = {f.name for f in fields(cls)}
        values = {
            key: value for key, value in (overrides or {}).items()
            if key in known and value is not None
        }
        return cls(**values)

    def for_category(self, category: str) -> Optional[float]:
        return getattr(self, category, None) if category in THRESHOLD_CATEGORIES else None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_THRESHOLDS = UnderutilizationThresholds()


# ============================================================================
# Rightsizing rules
# ============================================================================

DEALLOCATE_RULE = {
    'max_avg': 5.0,
    'max_peak': 20.0,
    'high_confidence_peak': 10.0,
    'savings_percent': 70,
}

DOWNSIZE_RULE = {
    'max_peak': 60.0,
    'high_confidence_peak': 40.0,
    'high_confidence_avg': 10.0,
    # (avg below, savings percent); falls through to default_savings_percent
    'savings_tiers': [(10.0, 50), (15.0, 35)],
    'default_savings_percent': 25,
}

RESERVED_RULE = {
    'min_monthly_cost': 100.0,
    'sql_savings_percent': 40,
    'vm_savings_percent': 35,
}

SPOT_RULE = {
    'max_avg': 30.0,
    'savings_percent': 60,
}

MEMORY_RULE = {
    'max_peak': 50.0,
    'savings_percent': 20,
}


# ============================================================================
# SQL health penalty tables
# ============================================================================

SQL_UTILIZATION_PENALTIES: PenaltyTiers = [(90, 40), (80, 25), (70, 10)]
SQL_DEADLOCK_PENALTIES: PenaltyTiers = [(10, 30), (5, 20), (0, 10)]
SQL_BLOCKED_PENALTIES: PenaltyTiers = [(20, 20), (10, 10), (0, 5)]
# Thresholds in seconds
SQL_WAIT_TIME_PENALTIES: PenaltyTiers = [(10000, 40), (5000, 25), (1000, 15), (100, 5)]
SQL_REPLICATION_ISSUE_PENALTIES: PenaltyTiers = [(5, 30), (2, 15), (0, 5)]
SQL_REPLICATION_LAG_PENALTIES: PenaltyTiers = [(300, 40), (60, 25), (30, 15), (10, 5)]

SQL_HEALTH_WEIGHTS = {
    'performance': 0.5,
    'wait_stats': 0.3,
    'replication': 0.2,
}

# Utilization bands used to categorize databases
SQL_WARNING_UTILIZATION = 70.0
SQL_CRITICAL_UTILIZATION = 85.0
SQL_HIGH_DTU_UTILIZATION = 80.0

HEALTHY_REPLICATION_STATES = ('CATCH_UP', 'SEEDING')


# ============================================================================
# Optimization score tables
# ============================================================================

# (avg below, points); checked before the high-utilization tiers
OPTIMIZATION_LOW_UTILIZATION_PENALTIES: PenaltyTiers = [(10, 40), (20, 25), (40, 10)]
OPTIMIZATION_HIGH_UTILIZATION_PENALTIES: PenaltyTiers = [(85, 20), (75, 10)]
OPTIMIZATION_CONSISTENCY_BONUS = 5
OPTIMIZATION_CONSISTENCY_RATIO = 0.3

# (avg below, cost above, points)
OPTIMIZATION_COST_EFFICIENCY_PENALTIES: List[Tuple[float, float, int]] = [
    (15, 100, 40),
    (25, 200, 30),
    (20, 50, 20),
]
OPTIMIZATION_RECOMMENDATION_PENALTY = 25

OPTIMIZATION_WEIGHTS = {
    'utilization': 0.4,
    'cost_efficiency': 0.3,
    'best_practices': 0.3,
}

GRADE_BOUNDARIES: List[Tuple[int, str]] = [(90, 'A'), (80, 'B'), (70, 'C'), (60, 'D')]
NEEDS_ATTENTION_SCORE = 70


# ============================================================================
# Helpers
# ============================================================================

def apply_penalty(value: Optional[float], tiers: PenaltyTiers) -> int:
    """
    Return the points for the first tier whose threshold the value exceeds.

    Args:
        value: Observed value; None never incurs a penalty
        tiers: (threshold, points) pairs ordered from most severe

    Returns:
        Penalty points, or 0 when no tier matches
    """
    if value is None:
        return 0
    for threshold, points in tiers:
        if value > threshold:
            return points
    return 0


def apply_floor_penalty(value: Optional[float], tiers: PenaltyTiers) -> int:
    """Like apply_penalty but for 'below threshold' tiers ordered from lowest."""
    if value is None:
        return 0
    for threshold, points in tiers:
        if value < threshold:
            return points
    return 0


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values, matching dashboard rounding."""
    return int(math.floor(value + 0.5))


def clamp_score(score: float) -> int:
    """Round and clamp a score to the 0-100 range."""
    return max(0, min(100, round_half_up(score)))


def grade_for_score(score: float) -> str:
    for boundary, grade in GRADE_BOUNDARIES:
        if score >= boundary:
            return grade
    return 'F'
