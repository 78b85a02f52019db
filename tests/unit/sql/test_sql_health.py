"""
Unit tests for the Azure SQL health scorer and issue details.
"""

import pytest
from unittest.mock import patch

from playbooks.sql.sql_health import (
    SqlHealthScore,
    calculate_performance_score,
    calculate_wait_stats_score,
    calculate_replication_score,
    calculate_overall_score,
    calculate_sql_health_score,
    latest_per_resource,
    build_sql_issue_details,
    get_sql_health_score,
    get_sql_issue_details,
)


def perf_row(resource_id, timestamp, dtu=None, cpu=None, deadlocks=0, blocked=0, storage=None):
    return {
        "azure_resource_id": resource_id,
        "timestamp_utc": timestamp,
        "dtu_percent": dtu,
        "cpu_percent": cpu,
        "deadlock_count": deadlocks,
        "blocked_count": blocked,
        "storage_percent": storage,
    }


@pytest.mark.unit
class TestPerformanceScore:
    """Test the performance sub-score penalty tables."""

    def test_saturated_database_with_locking(self):
        assert calculate_performance_score(95, None, 12, 25) == 10

    def test_healthy(self):
        assert calculate_performance_score(40, 35, 0, 0) == 100

    @pytest.mark.parametrize("utilization,expected", [(91, 60), (90, 75), (81, 75), (80, 90), (71, 90), (70, 100)])
    def test_utilization_tiers(self, utilization, expected):
        assert calculate_performance_score(utilization, None, 0, 0) == expected

    def test_cpu_used_when_dtu_missing(self):
        assert calculate_performance_score(None, 85, 0, 0) == 75

    def test_dtu_preferred_over_cpu(self):
        assert calculate_performance_score(10, 99, 0, 0) == 100

    @pytest.mark.parametrize("deadlocks,expected", [(1, 90), (5, 90), (6, 80), (11, 70)])
    def test_deadlock_tiers(self, deadlocks, expected):
        assert calculate_performance_score(None, None, deadlocks, 0) == expected

    @pytest.mark.parametrize("blocked,expected", [(1, 95), (11, 90), (21, 80)])
    def test_blocked_tiers(self, blocked, expected):
        assert calculate_performance_score(None, None, 0, blocked) == expected


@pytest.mark.unit
class TestWaitAndReplicationScores:

    @pytest.mark.parametrize("wait_ms,expected", [
        (None, 100), (50000, 100), (100001, 95), (1000001, 85), (5000001, 75), (10000001, 60),
    ])
    def test_wait_stats_tiers(self, wait_ms, expected):
        assert calculate_wait_stats_score(wait_ms) == expected

    def test_replication_without_issues_ignores_lag(self):
        assert calculate_replication_score(0, 500) == 100

    @pytest.mark.parametrize("issues,lag,expected", [(1, 0, 95), (3, 11, 80), (6, 301, 30), (2, 61, 70)])
    def test_replication_tiers(self, issues, lag, expected):
        assert calculate_replication_score(issues, lag) == expected

    def test_overall_weights(self):
        # 10 * 0.5 + 100 * 0.3 + 100 * 0.2 = 55
        assert calculate_overall_score(10, 100, 100) == 55

    def test_overall_rounds_half_up(self):
        # 95 * 0.5 + 100 * 0.3 + 100 * 0.2 = 97.5
        assert calculate_overall_score(95, 100, 100) == 98


@pytest.mark.unit
class TestSqlHealthScore:
    """Test the composite score computed from backend rows."""

    def test_no_databases(self):
        health = calculate_sql_health_score(0, [perf_row("db-1", "2026-10-01", dtu=99)], [], [])
        assert health == SqlHealthScore()
        assert health.to_dict()["overall_score"] == 100
        assert health.to_dict()["factors"]["avg_dtu_percent"] is None

    def test_latest_row_per_database(self):
        rows = [
            perf_row("db-1", "2026-10-01T00:00:00Z", dtu=10),
            perf_row("db-1", "2026-10-02T00:00:00Z", dtu=95, deadlocks=12, blocked=25),
            perf_row("db-2", "2026-10-01T00:00:00Z", dtu=None, cpu=40),
        ]
        latest = latest_per_resource(rows)
        assert {r["azure_resource_id"]: r["dtu_percent"] for r in latest} == {"db-1": 95, "db-2": None}

    def test_full_score(self):
        rows = [
            perf_row("db-1", "2026-10-02T00:00:00Z", dtu=95, deadlocks=12, blocked=25),
            perf_row("db-2", "2026-10-02T01:00:00Z", cpu=50),
            perf_row("db-3", "2026-10-01T00:00:00Z", dtu=75),
        ]
        waits = [
            {"wait_type": "PAGEIOLATCH_SH", "wait_time_ms": 2000000, "collected_at": "2026-10-02T03:00:00Z"},
            {"wait_type": "CXPACKET", "wait_time_ms": 500000},
        ]
        links = [
            {"replication_state": "CATCH_UP", "replication_lag_seconds": 5},
            {"replication_state": "SUSPENDED", "replication_lag_seconds": 115, "synced_at": "2026-10-02T02:00:00Z"},
        ]

        health = calculate_sql_health_score(3, rows, waits, links)

        factors = health.factors
        assert factors.avg_dtu_percent == 85
        assert factors.avg_cpu_percent == 50
        assert factors.high_dtu_count == 1
        assert factors.deadlock_count == 12
        assert factors.blocked_count == 25
        assert factors.top_wait_type == "PAGEIOLATCH_SH"
        assert factors.top_wait_time_ms == 2000000
        assert factors.replication_issues == 1
        assert factors.avg_replication_lag == 60

        # dtu 85 -> 25, deadlocks 12 -> 30, blocked 25 -> 20
        assert health.performance_score == 25
        # 2000 s -> 15
        assert health.wait_stats_score == 85
        # 1 issue -> 5, lag 60 -> 15
        assert health.replication_score == 80
        # 12.5 + 25.5 + 16 = 54
        assert health.overall_score == 54
        assert (health.healthy_count, health.warning_count, health.critical_count) == (1, 1, 1)
        assert health.database_count == 3
        assert health.last_updated == "2026-10-02T03:00:00Z"

    def test_databases_without_rows(self):
        health = calculate_sql_health_score(2, [], [], [])
        assert health.overall_score == 100
        assert health.database_count == 2
        assert health.healthy_count == 0
        assert health.last_updated is None


@pytest.mark.unit
class TestSqlIssueDetails:
    """Test per-database issue lists and severity."""

    RESOURCES = [{"id": "db-1", "name": "orders"}, {"id": "db-2", "name": "billing"}]

    def test_critical_on_deadlocks(self):
        rows = [
            perf_row("db-1", "2026-10-02", dtu=50, deadlocks=3, blocked=2),
            perf_row("db-2", "2026-10-02", dtu=85, storage=40),
            perf_row("db-9", "2026-10-02", dtu=99, deadlocks=50),
        ]
        details = build_sql_issue_details(self.RESOURCES, rows)

        assert details["deadlocks"] == [
            {"resource_id": "db-1", "resource_name": "orders", "count": 3, "last_occurred": "2026-10-02"}
        ]
        assert details["blocked"][0]["count"] == 2
        assert details["high_dtu"] == [{
            "resource_id": "db-2", "resource_name": "billing",
            "dtu_percent": 85, "cpu_percent": 0, "storage_percent": 40,
        }]
        assert details["summary"] == {"sql_issue_count": 3, "overall_severity": "critical"}

    def test_critical_on_utilization_above_90(self):
        details = build_sql_issue_details(self.RESOURCES, [perf_row("db-1", "2026-10-02", cpu=92)])
        assert details["summary"]["overall_severity"] == "critical"

    def test_warning_on_missing_indexes_only(self):
        recommendations = [{
            "id": "rec-1", "azure_resource_id": "db-2", "impacted_field": "dbo.Orders",
            "impact": "High", "solution": "CREATE INDEX ...", "category": "CreateIndex",
        }, {"id": "rec-2", "azure_resource_id": None}]
        details = build_sql_issue_details(self.RESOURCES, [], recommendations)

        assert details["missing_indexes"] == [{
            "id": "rec-1", "resource_id": "db-2", "resource_name": "billing", "table_name": "dbo.Orders",
            "impact": "High", "statement": "CREATE INDEX ...", "category": "CreateIndex",
        }]
        assert details["summary"] == {"sql_issue_count": 1, "overall_severity": "warning"}

    def test_healthy(self):
        details = build_sql_issue_details(self.RESOURCES, [perf_row("db-1", "2026-10-02", dtu=30)], [])
        assert details["summary"] == {"sql_issue_count": 0, "overall_severity": "healthy"}

    def test_recommendations_outside_scope_are_ignored(self):
        recommendations = [{"id": "rec-9", "azure_resource_id": "db-tenant-b", "impact": "High"}]

        details = build_sql_issue_details(
            [{"id": "db-1", "name": "orders"}], [perf_row("db-1", "2026-10-02", dtu=30)], recommendations
        )

        assert details["missing_indexes"] == []
        assert details["summary"] == {"sql_issue_count": 0, "overall_severity": "healthy"}


@pytest.mark.unit
class TestOrchestration:
    """Test the backend-backed entry points with data functions patched."""

    @patch('playbooks.sql.sql_health.get_sql_replication_links')
    @patch('playbooks.sql.sql_health.get_sql_wait_stats')
    @patch('playbooks.sql.sql_health.get_sql_performance_stats')
    @patch('playbooks.sql.sql_health.get_resources')
    def test_health_score(self, mock_resources, mock_perf, mock_waits, mock_links, sql_resource):
        mock_resources.return_value = {"status": "success", "data": [sql_resource]}
        mock_perf.return_value = {"status": "success", "data": [
            perf_row("res-sql-1", "2026-10-02T00:00:00Z", dtu=95, deadlocks=12, blocked=25)
        ]}
        mock_waits.return_value = {"status": "success", "data": []}
        mock_links.return_value = {"status": "success", "data": []}

        result = get_sql_health_score(tenant_id="tenant-1")

        assert result["status"] == "success"
        assert result["data"]["performance_score"] == 10
        assert result["data"]["overall_score"] == 55
        assert result["data"]["critical_count"] == 1
        mock_resources.assert_called_once_with(tenant_id="tenant-1", sql_only=True, dao=None)
        mock_perf.assert_called_once_with(["res-sql-1"], dao=None)

    @patch('playbooks.sql.sql_health.get_sql_performance_stats')
    @patch('playbooks.sql.sql_health.get_resources')
    def test_health_score_error(self, mock_resources, mock_perf):
        mock_resources.return_value = {"status": "success", "data": []}
        mock_perf.return_value = {"status": "error", "message": "Backend error: 500 - boom"}
        assert get_sql_health_score()["status"] == "error"

    @patch('playbooks.sql.sql_health.get_sql_recommendations')
    @patch('playbooks.sql.sql_health.get_sql_performance_stats')
    @patch('playbooks.sql.sql_health.get_resources')
    def test_issue_details(self, mock_resources, mock_perf, mock_recs, sql_resource):
        mock_resources.return_value = {"status": "success", "data": [sql_resource]}
        mock_perf.return_value = {"status": "success", "data": [
            perf_row("res-sql-1", "2026-10-02T00:00:00Z", dtu=82)
        ]}
        mock_recs.return_value = {"status": "success", "data": []}

        result = get_sql_issue_details()

        assert result["data"]["high_dtu"][0]["resource_name"] == "orders"
        assert result["data"]["summary"]["overall_severity"] == "warning"
        assert result["message"] == "1 SQL issues, severity warning"
        mock_recs.assert_called_once_with(["res-sql-1"], dao=None)
