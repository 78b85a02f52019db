#!/usr/bin/env python3
"""
AZM Tips - Azure Resource Health & Optimization MCP Server

A Model Context Protocol (MCP) server for Azure resource health and cost
optimization. The server reads the tables synced into a Supabase backend
(resources, Azure Monitor metrics, costs, Azure SQL performance data) and
scores them:
- Metric classification and underutilization scoring
- Rightsizing recommendations (downsize, deallocate, reserved, spot)
- Underutilized resource reports in JSON or Markdown
- Azure SQL health score and issue details
- Optimization scores and grades
- Idle resource detection
- Cost anomaly and spike detection
- SQL storage growth projection

Configuration:
- SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_ANON_KEY)
- AZM_BACKEND_TIMEOUT, AZM_BACKEND_PAGE_SIZE
- AZM_LOG_LEVEL, AZM_LOG_STRUCTURED
"""

import asyncio
import logging
import sys
import os
from datetime import datetime
from typing import Dict, List, Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

# Add the current directory to Python path for imports
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from utils.logging_config import setup_logging, log_function_entry, log_function_exit
logger = setup_logging()

from runbook_functions import (
    classify_metric,
    run_rightsizing_recommendations,
    run_underutilized_resources_analysis,
    generate_underutilization_report,
    run_sql_health_score,
    run_sql_issue_details,
    run_optimization_scores,
    run_idle_resources_detection,
    run_cost_anomaly_analysis,
    run_cost_spike_analysis,
    run_storage_projection,
    check_backend_connection,
)

# Initialize the MCP server
server = Server("azm_tips")

_THRESHOLD_PROPERTIES = {
    "cpu": {"type": "number", "description": "CPU threshold percent", "default": 20},
    "memory": {"type": "number", "description": "Memory threshold percent", "default": 30},
    "dtu": {"type": "number", "description": "DTU threshold percent", "default": 20},
    "storage": {"type": "number", "description": "Storage threshold percent", "default": 40},
    "min_monthly_cost": {"type": "number", "description": "Skip resources costing less per month", "default": 50},
    "lookback_days": {"type": "integer", "description": "Metric window in days", "default": 7},
}

_TENANT_PROPERTY = {"tenant_id": {"type": "string", "description": "Azure tenant id (optional)"}}

_METRIC_USAGE_SCHEMA = {
    "type": "object",
    "properties": {
        "avg": {"type": "number"},
        "max": {"type": "number"},
        "unit": {"type": "string"}
    },
    "required": ["avg"]
}

TOOL_HANDLERS = {
    "classify_metric": classify_metric,
    "rightsizing_recommendations": run_rightsizing_recommendations,
    "underutilized_resources": run_underutilized_resources_analysis,
    "underutilization_report": generate_underutilization_report,
    "sql_health_score": run_sql_health_score,
    "sql_issue_details": run_sql_issue_details,
    "optimization_scores": run_optimization_scores,
    "idle_resources": run_idle_resources_detection,
    "cost_anomalies": run_cost_anomaly_analysis,
    "cost_spikes": run_cost_spike_analysis,
    "storage_projection": run_storage_projection,
    "check_backend_connection": check_backend_connection,
}


@server.list_tools()
async def list_tools() -> List[Tool]:
    """List available tools for Azure health and cost optimization."""
    log_function_entry(logger, "list_tools")
    try:
        tools = [
        # Scoring tools (no backend access)
        Tool(
            name="classify_metric",
            description="Classify Azure Monitor metric names into cpu, memory, dtu, storage or network",
            inputSchema={
                "type": "object",
                "properties": {
                    "metric_name": {"type": "string", "description": "A single metric name, e.g. 'Percentage CPU'"},
                    "metric_names": {"type": "array", "items": {"type": "string"}}
                }
            }
        ),
        Tool(
            name="rightsizing_recommendations",
            description="Score underutilization and generate rightsizing recommendations for supplied utilization",
            inputSchema={
                "type": "object",
                "properties": {
                    "resource_id": {"type": "string"},
                    "resource_name": {"type": "string"},
                    "resource_type": {"type": "string", "description": "e.g. Microsoft.Compute/virtualMachines"},
                    "sku": {"type": "object", "description": "SKU with tier and/or name"},
                    "monthly_cost": {"type": "number", "default": 0},
                    "metrics": {
                        "type": "object",
                        "properties": {
                            "cpu": _METRIC_USAGE_SCHEMA,
                            "memory": _METRIC_USAGE_SCHEMA,
                            "dtu": _METRIC_USAGE_SCHEMA,
                            "storage": _METRIC_USAGE_SCHEMA,
                            "network": _METRIC_USAGE_SCHEMA
                        }
                    },
                    **_THRESHOLD_PROPERTIES
                },
                "required": ["resource_type", "metrics"]
            }
        ),

        # Underutilization tools
        Tool(
            name="underutilized_resources",
            description="Find underutilized Azure resources above a monthly cost floor with savings estimates",
            inputSchema={
                "type": "object",
                "properties": {**_TENANT_PROPERTY, **_THRESHOLD_PROPERTIES}
            }
        ),
        Tool(
            name="underutilization_report",
            description="Generate the underutilized resource report in JSON or Markdown",
            inputSchema={
                "type": "object",
                "properties": {
                    **_TENANT_PROPERTY,
                    **_THRESHOLD_PROPERTIES,
                    "output_format": {"type": "string", "enum": ["json", "markdown"], "default": "json"}
                }
            }
        ),

        # Azure SQL tools
        Tool(
            name="sql_health_score",
            description="Composite 0-100 health score for Azure SQL databases (performance, wait stats, replication)",
            inputSchema={"type": "object", "properties": {**_TENANT_PROPERTY}}
        ),
        Tool(
            name="sql_issue_details",
            description="List Azure SQL databases with deadlocks, blocking, high DTU or missing indexes",
            inputSchema={"type": "object", "properties": {**_TENANT_PROPERTY}}
        ),
        Tool(
            name="storage_projection",
            description="Project data-space growth and days until full for an Azure SQL database",
            inputSchema={
                "type": "object",
                "properties": {
                    "resource_id": {"type": "string", "description": "SQL database resource id"},
                    "days": {"type": "integer", "description": "History window in days", "default": 30}
                },
                "required": ["resource_id"]
            }
        ),

        # Fleet analysis tools
        Tool(
            name="optimization_scores",
            description="Score and grade (A-F) every resource on utilization, cost efficiency and best practices",
            inputSchema={
                "type": "object",
                "properties": {
                    **_TENANT_PROPERTY,
                    "lookback_days": {"type": "integer", "default": 7}
                }
            }
        ),
        Tool(
            name="idle_resources",
            description="Detect resources with near-zero CPU, network and request activity",
            inputSchema={
                "type": "object",
                "properties": {
                    **_TENANT_PROPERTY,
                    "lookback_days": {"type": "integer", "default": 7},
                    "min_cost": {"type": "number", "description": "Skip resources cheaper than this per month", "default": 10}
                }
            }
        ),
        Tool(
            name="cost_anomalies",
            description="Detect daily cost anomalies with a rolling mean and standard deviation",
            inputSchema={
                "type": "object",
                "properties": {
                    **_TENANT_PROPERTY,
                    "window_days": {"type": "integer", "default": 14},
                    "deviation_threshold": {"type": "number", "description": "Minimum |z-score|", "default": 2},
                    "skip_historical": {"type": "boolean", "default": True},
                    "historical_cutoff_days": {"type": "integer", "default": 3}
                }
            }
        ),
        Tool(
            name="cost_spikes",
            description="Find days whose cost is at least N times the period's daily average",
            inputSchema={
                "type": "object",
                "properties": {
                    **_TENANT_PROPERTY,
                    "days": {"type": "integer", "default": 30},
                    "threshold": {"type": "number", "default": 2.0},
                    "daily_costs": {
                        "type": "array",
                        "description": "Optional [{date, cost}] series; the backend is used when omitted",
                        "items": {
                            "type": "object",
                            "properties": {"date": {"type": "string"}, "cost": {"type": "number"}}
                        }
                    }
                }
            }
        ),

        # Backend
        Tool(
            name="check_backend_connection",
            description="Check that the Supabase backend is configured and reachable",
            inputSchema={
                "type": "object",
                "properties": {
                    "table": {"type": "string", "default": "azure_resources"}
                }
            }
        ),
        ]
        log_function_exit(logger, "list_tools", "success", None)
        return tools
    except Exception as e:
        logger.warning(f"Error listing tools: {str(e)}")
        log_function_exit(logger, "list_tools", "error", None)
        raise


@server.call_tool()
async def call_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
    """Handle tool calls."""
    start_time = datetime.now()
    log_function_entry(logger, f"call_tool[{name}]", arguments=arguments)

    handler = TOOL_HANDLERS.get(name)
    if handler is None:
        logger.warning(f"Unknown tool requested: {name}")
        return [TextContent(type="text", text=f"Unknown tool: {name}")]

    try:
        result = await handler(arguments or {})
    except Exception as e:
        execution_time = (datetime.now() - start_time).total_seconds()
        logger.error(f"Error calling tool '{name}': {str(e)} (execution time: {execution_time:.2f}s)")
        return [TextContent(type="text", text=f"Error: {str(e)}")]

    execution_time = (datetime.now() - start_time).total_seconds()
    log_function_exit(logger, f"call_tool[{name}]", "success", execution_time)
    return result


async def main():
    """Main function to run the MCP server."""
    logger.info("Starting AZM Tips MCP Server")
    try:
        async with stdio_server() as (read_stream, write_stream):
            logger.info("MCP server initialized successfully")
            await server.run(read_stream, write_stream, server.create_initialization_options())
    except Exception as e:
        logger.error(f"MCP server error: {str(e)}")
        raise
    finally:
        logger.info("AZM Tips MCP Server shutting down")


def main_sync():
    """Console script entry point."""
    try:
        logger.info("AZM Tips MCP Server starting up")
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("AZM Tips MCP Server stopped by user")
    except Exception as e:
        logger.error(f"Fatal error in MCP server: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main_sync()
