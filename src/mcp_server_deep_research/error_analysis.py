"""Failure classification and error reports for research jobs."""

import json
import traceback
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, Field

from .exceptions import FetchTimeoutError


class ErrorCategory(str, Enum):
    CONNECTION = "connection"
    RATE_LIMIT = "rate-limit"
    TIMEOUT = "timeout"
    MEMORY = "memory"
    UNKNOWN = "unknown"


class ApiErrorDetails(BaseModel):
    status: int | None = None
    reason: str | None = None
    url: str | None = None
    method: str | None = None
    data: Any = None


class ErrorAnalysis(BaseModel):
    """Classified failure with suggested remedies."""

    message: str
    type: str
    category: ErrorCategory
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    stack: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    api_error: ApiErrorDetails | None = None
    suggestions: list[str] = Field(default_factory=list)


_SUGGESTIONS: dict[ErrorCategory, list[str]] = {
    ErrorCategory.CONNECTION: [
        "Check network connectivity",
        "Verify API endpoint URLs are correct",
        "Check if service is running and accessible",
        "Consider increasing request timeout values",
    ],
    ErrorCategory.RATE_LIMIT: [
        "Reduce concurrency limit in config",
        "Check API usage quotas",
    ],
    ErrorCategory.TIMEOUT: [
        "Increase request timeout values",
        "Check network latency",
        "Consider breaking work into smaller chunks",
    ],
    ErrorCategory.MEMORY: [
        "Reduce the content token limit",
        "Process fewer documents concurrently",
    ],
    ErrorCategory.UNKNOWN: [
        "Check log files for more detailed error information",
        "Verify all required environment variables are set",
        "Ensure all dependencies are properly installed",
    ],
}

_EXTRA_RECOMMENDATIONS: dict[ErrorCategory, list[str]] = {
    ErrorCategory.CONNECTION: [
        "Check if any firewalls might be blocking the connection",
        "Verify DNS resolution is working correctly",
    ],
    ErrorCategory.RATE_LIMIT: [
        "Wrap the search or model client with a retrying transport",
    ],
    ErrorCategory.TIMEOUT: [
        "Make the search queries more specific",
        "Lower the search result limit to reduce response size",
    ],
    ErrorCategory.MEMORY: [
        "Lower research breadth so fewer documents are held at once",
    ],
}


def _categorize(error: BaseException) -> ErrorCategory:
    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 429:
        return ErrorCategory.RATE_LIMIT
    if isinstance(error, TimeoutError | httpx.TimeoutException | FetchTimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, ConnectionError | httpx.ConnectError):
        return ErrorCategory.CONNECTION
    if isinstance(error, MemoryError):
        return ErrorCategory.MEMORY

    message = str(error).lower()
    if "rate limit" in message or "429" in message:
        return ErrorCategory.RATE_LIMIT
    if "timeout" in message or "timed out" in message:
        return ErrorCategory.TIMEOUT
    if "memory" in message or "heap" in message:
        return ErrorCategory.MEMORY
    if "connection refused" in message or "connection aborted" in message:
        return ErrorCategory.CONNECTION
    return ErrorCategory.UNKNOWN


def _api_details(error: BaseException) -> ApiErrorDetails | None:
    if not isinstance(error, httpx.HTTPStatusError):
        return None
    response = error.response
    try:
        data = response.json()
    except ValueError:
        data = response.text[:1000] or None
    return ApiErrorDetails(
        status=response.status_code,
        reason=response.reason_phrase,
        url=str(error.request.url),
        method=error.request.method,
        data=data,
    )


def analyze_error(error: BaseException, context: dict[str, Any] | None = None) -> ErrorAnalysis:
    """Classify ``error`` and attach suggestions for the operator."""
    category = _categorize(error)
    stack = "".join(traceback.format_exception(error)) if error.__traceback__ else None
    return ErrorAnalysis(
        message=str(error) or type(error).__name__,
        type=type(error).__name__,
        category=category,
        stack=stack,
        context=context or {},
        api_error=_api_details(error),
        suggestions=list(_SUGGESTIONS[category]),
    )


def _format_value(value: Any) -> str:
    return json.dumps(value, default=str) if isinstance(value, dict | list) else str(value)


def create_error_report(analysis: ErrorAnalysis, research_info: dict[str, Any] | None = None) -> str:
    """Render an analysis as a Markdown debug report."""
    sections = [
        "# Error Analysis Report\n",
        "## Error Overview",
        f"- **Timestamp**: {analysis.timestamp}",
        f"- **Type**: {analysis.type}",
        f"- **Message**: {analysis.message}",
        f"- **Category**: {analysis.category.value}",
    ]

    if analysis.context:
        sections.append("\n## Context Information")
        sections.extend(f"- **{key}**: {_format_value(value)}" for key, value in analysis.context.items())

    if research_info:
        sections.append("\n## Research Context")
        sections.extend(f"- **{key}**: {_format_value(value)}" for key, value in research_info.items())

    if analysis.api_error:
        api = analysis.api_error
        sections.extend(
            [
                "\n## API Error Details",
                f"- **Status**: {api.status} ({api.reason})",
                f"- **URL**: {api.url}",
                f"- **Method**: {api.method}",
            ]
        )
        if api.data:
            sections.append(f"- **Response Data**: ```json\n{json.dumps(api.data, indent=2, default=str)}\n```")

    if analysis.suggestions:
        sections.append("\n## Suggested Actions")
        sections.extend(f"- {suggestion}" for suggestion in analysis.suggestions)

    if analysis.stack:
        sections.extend(["\n## Stack Trace", "```", analysis.stack.rstrip(), "```"])

    return "\n".join(sections)


def get_error_recommendations(analysis: ErrorAnalysis) -> list[str]:
    """Suggestions for the analysis plus category specific and general debugging steps."""
    return [
        *analysis.suggestions,
        *_EXTRA_RECOMMENDATIONS.get(analysis.category, []),
        "Review the complete logs for additional context",
        "Try running with reduced breadth and depth parameters",
        "Check for similar errors in the job history",
    ]
