"""
Centralized Error Handler for AZM Tips MCP Server

Provides consistent error handling and formatting across all modules.
"""

import functools
import logging
import traceback
from typing import Dict, Any, List, Optional

import httpx
from mcp.types import TextContent
import json

from services.supabase_client import BackendConfigError

logger = logging.getLogger(__name__)


class BackendErrorHandler:
    """Centralized Supabase backend error handling and formatting."""

    # HTTP status codes and the guidance returned with them
    STATUS_GUIDANCE = {
        401: 'Check SUPABASE_SERVICE_ROLE_KEY; the API key was rejected',
        403: 'Row level security denied the request; use a key with read access to the table',
        404: 'Table, view, RPC or edge function not found; check the name and schema',
        406: 'Requested representation not acceptable; check the select expression',
        416: 'Requested range not satisfiable; reduce the page offset',
        429: 'Request rate exceeded, implement retry logic',
    }

    RETRYABLE_STATUS = (429, 500, 502, 503, 504)

    @staticmethod
    def _postgrest_error(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"message": response.text}
        return body if isinstance(body, dict) else {"message": str(body)}

    @staticmethod
    def format_http_error(e: httpx.HTTPStatusError, context: str) -> Dict[str, Any]:
        """
        Format a non-2xx backend response into standardized error response.

        Args:
            e: The HTTPStatusError exception
            context: Context where the error occurred

        Returns:
            Standardized error response dictionary
        """
        status_code = e.response.status_code
        details = BackendErrorHandler._postgrest_error(e.response)
        error_code = details.get('code') or str(status_code)
        error_message = details.get('message') or str(e)
        error_traceback = ''.join(traceback.format_exception(type(e), e, e.__traceback__))

        logger.error(f"Backend error in {context}: {status_code} {error_code} - {error_message}")

        response = {
            "status": "error",
            "error_code": error_code,
            "http_status": status_code,
            "message": f"Backend error: {status_code} - {error_message}",
            "context": context,
            "traceback": error_traceback,
        }

        if details.get('hint'):
            response["hint"] = details['hint']
        if details.get('details'):
            response["details"] = details['details']

        if status_code in BackendErrorHandler.STATUS_GUIDANCE:
            response["permission_guidance"] = BackendErrorHandler.STATUS_GUIDANCE[status_code]

        if status_code in BackendErrorHandler.RETRYABLE_STATUS:
            response["retry_guidance"] = {
                "retryable": True,
                "suggested_delay": "exponential backoff starting at 1 second"
            }

        return response

    @staticmethod
    def format_request_error(e: httpx.RequestError, context: str) -> Dict[str, Any]:
        """Format a transport failure (DNS, connect, timeout) into standardized response."""
        logger.error(f"Backend unreachable in {context}: {type(e).__name__} - {str(e)}")

        return {
            "status": "error",
            "error_code": type(e).__name__,
            "message": f"Backend unreachable: {str(e)}",
            "context": context,
            "retry_guidance": {
                "retryable": True,
                "suggested_delay": "exponential backoff starting at 1 second"
            }
        }

    @staticmethod
    def format_config_error(e: BackendConfigError, context: str) -> Dict[str, Any]:
        """Format BackendConfigError into standardized response."""
        logger.error(f"Backend not configured in {context}: {str(e)}")

        return {
            "status": "error",
            "error_code": "BackendConfigError",
            "message": str(e) or "Supabase backend not configured",
            "context": context,
            "setup_guidance": {
                "url": "Set SUPABASE_URL to the project URL, e.g. https://<ref>.supabase.co",
                "api_key": "Set SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_ANON_KEY for read-only access)",
                "tuning": "Optionally set AZM_BACKEND_TIMEOUT and AZM_BACKEND_PAGE_SIZE"
            }
        }

    @staticmethod
    def format_general_error(e, context: str) -> Dict[str, Any]:
        """
        Format general exceptions into standardized response.

        Args:
            e: Exception object or string error message
            context: Context where the error occurred

        Returns:
            Standardized error response dictionary
        """
        if isinstance(e, str):
            error_message = e
            error_code = "GeneralError"
            error_traceback = "No traceback available (error passed as string)"
            logger.error(f"General error in {context}: {error_message}")
        else:
            error_message = str(e)
            error_code = type(e).__name__
            error_traceback = ''.join(traceback.format_exception(type(e), e, e.__traceback__))
            logger.error(f"General error in {context}: {error_message}\n{error_traceback}")

        return {
            "status": "error",
            "error_code": error_code,
            "message": error_message,
            "context": context,
            "traceback": error_traceback
        }

    @staticmethod
    def to_text_content(error_dict: Dict[str, Any]) -> List[TextContent]:
        """Convert error dictionary to MCP TextContent format."""
        return [TextContent(type="text", text=json.dumps(error_dict, indent=2, default=str))]


class ResponseFormatter:
    """Standardized response formatting for MCP tools."""

    @staticmethod
    def success_response(data: Any, message: str, analysis_type: str = None,
                         execution_time: float = None, metadata: Dict = None) -> Dict[str, Any]:
        """
        Format successful response with consistent structure.

        Args:
            data: The response data
            message: Success message
            analysis_type: Type of analysis performed
            execution_time: Execution time in seconds
            metadata: Additional metadata

        Returns:
            Standardized success response
        """
        response = {
            "status": "success",
            "data": data,
            "message": message
        }

        if analysis_type:
            response["analysis_type"] = analysis_type

        if execution_time is not None:
            response["execution_time"] = execution_time

        if metadata:
            response["metadata"] = metadata

        return response

    @staticmethod
    def validation_error(message: str, field: Optional[str] = None) -> Dict[str, Any]:
        response = {
            "status": "error",
            "error_code": "ValidationError",
            "message": message
        }
        if field:
            response["field"] = field
        return response

    @staticmethod
    def error_response(error: Exception, context: str) -> Dict[str, Any]:
        """
        Format error response based on exception type.

        Args:
            error: The exception that occurred
            context: Context where error occurred

        Returns:
            Standardized error response
        """
        if isinstance(error, httpx.HTTPStatusError):
            return BackendErrorHandler.format_http_error(error, context)
        elif isinstance(error, httpx.RequestError):
            return BackendErrorHandler.format_request_error(error, context)
        elif isinstance(error, BackendConfigError):
            return BackendErrorHandler.format_config_error(error, context)
        else:
            return BackendErrorHandler.format_general_error(error, context)

    @staticmethod
    def to_text_content(response_dict: Dict[str, Any]) -> List[TextContent]:
        """Convert response dictionary to MCP TextContent format."""
        return [TextContent(type="text", text=json.dumps(response_dict, indent=2, default=str))]


def handle_backend_error(func):
    """Decorator for consistent backend error handling in async MCP tools."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            error_response = ResponseFormatter.error_response(e, func.__name__)
            return ResponseFormatter.to_text_content(error_response)

    return wrapper
