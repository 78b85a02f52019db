"""
Centralized logging configuration for AZM Tips MCP Server

"""

import logging
import sys
import os
import json
import tempfile
from datetime import datetime
from typing import Dict, Any, Optional

LOG_FILE_NAME = 'azm_tips_mcp.log'
ERROR_LOG_FILE_NAME = 'azm_tips_mcp_errors.log'

_RESERVED_RECORD_KEYS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'taskName'
}


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured logging with JSON output."""

    def format(self, record):
        """Format log record as structured JSON."""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        # Fields passed through `extra=`
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS and key not in log_entry:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class StandardFormatter(logging.Formatter):
    """Enhanced standard formatter with more context."""

    def __init__(self):
        super().__init__(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
        )


def _add_file_handlers(root_logger: logging.Logger, log_dir: str, formatter: logging.Formatter) -> None:
    file_handler = logging.FileHandler(os.path.join(log_dir, LOG_FILE_NAME))
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    error_handler = logging.FileHandler(os.path.join(log_dir, ERROR_LOG_FILE_NAME))
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)
    root_logger.addHandler(error_handler)


def setup_logging(structured: Optional[bool] = None, log_level: Optional[str] = None,
                  log_dir: str = 'logs'):
    """
    Configure file logging for the application.

    Nothing is written to stdout, which carries the MCP stdio transport.

    Args:
        structured: Whether to use structured JSON logging (default: AZM_LOG_STRUCTURED)
        log_level: Logging level (default: AZM_LOG_LEVEL, then INFO)
        log_dir: Preferred directory for log files
    """
    if structured is None:
        structured = os.getenv('AZM_LOG_STRUCTURED', 'false').lower() in ('1', 'true', 'yes')
    if log_level is None:
        log_level = os.getenv('AZM_LOG_LEVEL', 'INFO')

    formatter = StructuredFormatter() if structured else StandardFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # logs/ first, then the working directory, then the temp directory
    try:
        os.makedirs(log_dir, exist_ok=True)
        _add_file_handlers(root_logger, log_dir, formatter)
    except (OSError, PermissionError):
        try:
            _add_file_handlers(root_logger, os.getcwd(), formatter)
        except (OSError, PermissionError):
            temp_dir = tempfile.gettempdir()
            try:
                _add_file_handlers(root_logger, temp_dir, formatter)
                print(f"Warning: Using temp directory for logs: {temp_dir}", file=sys.stderr)
            except (OSError, PermissionError):
                raise RuntimeError("Could not create log files in any location")

    return logging.getLogger(__name__)


def log_function_entry(logger, func_name, **kwargs):
    """Log function entry with parameters."""
    logger.info(f"Entering {func_name} with params: {kwargs}")


def log_function_exit(logger, func_name, result_status=None, execution_time=None):
    """Log function exit with results."""
    msg = f"Exiting {func_name}"
    if result_status:
        msg += f" - Status: {result_status}"
    if execution_time:
        msg += f" - Time: {execution_time:.2f}s"
    logger.info(msg)


def log_backend_call(logger, endpoint: str, resource: str, **params):
    """Log a backend request against a REST table."""
    logger.debug(f"Backend call: {endpoint}/{resource} with params: {params}")


def log_backend_error(logger, endpoint: str, resource: str, error):
    """Log a failed backend request."""
    logger.error(f"Backend error: {endpoint}/{resource} - {str(error)}")


def log_analysis_start(logger, analysis_type: str, **kwargs):
    """
    Log analysis start with structured data.

    Args:
        logger: Logger instance
        analysis_type: Type of analysis
        **kwargs: Additional analysis parameters
    """
    log_data = {
        'event_type': 'analysis_start',
        'analysis_type': analysis_type,
    }
    log_data.update(kwargs)

    logger.info(f"Starting analysis: {analysis_type}", extra=log_data)


def log_analysis_complete(logger, analysis_type: str, status: str, execution_time: float, **kwargs):
    """
    Log analysis completion with structured data.

    Args:
        logger: Logger instance
        analysis_type: Type of analysis
        status: Analysis status
        execution_time: Execution time in seconds
        **kwargs: Additional analysis results
    """
    log_data = {
        'event_type': 'analysis_complete',
        'analysis_type': analysis_type,
        'status': status,
        'execution_time': execution_time,
    }
    log_data.update(kwargs)

    logger.info(f"Completed analysis: {analysis_type} - Status: {status}", extra=log_data)


def log_cost_optimization_finding(logger, finding_type: str, resource_id: str,
                                  potential_savings: Optional[float] = None, **kwargs):
    """
    Log cost optimization findings with structured data.

    Args:
        logger: Logger instance
        finding_type: Type of optimization finding
        resource_id: Resource identifier
        potential_savings: Estimated monthly savings
        **kwargs: Additional finding details
    """
    log_data: Dict[str, Any] = {
        'event_type': 'cost_optimization_finding',
        'finding_type': finding_type,
        'resource_id': resource_id,
        'potential_savings': potential_savings
    }
    log_data.update(kwargs)

    logger.info(f"Cost optimization finding: {finding_type} for {resource_id}", extra=log_data)
