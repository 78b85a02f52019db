"""
Azure SQL Playbooks for AZM Tips MCP Server

Provides the composite SQL health score, per-database issue details and
storage growth projection.
"""

from .sql_health import get_sql_health_score, get_sql_issue_details, calculate_sql_health_score
from .storage_projection import get_storage_projection, project_storage_growth, format_bytes

__all__ = [
    'get_sql_health_score',
    'get_sql_issue_details',
    'calculate_sql_health_score',
    'get_storage_projection',
    'project_storage_growth',
    'format_bytes'
]
