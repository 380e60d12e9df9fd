"""
Sentry observability integration for the live data source.

Provides centralized Sentry initialization and helper functions for reporting.
All helpers are no-ops until init_sentry() has run with a DSN configured.
"""

import logging
import os
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from .config import get_sentry_dsn

logger = logging.getLogger(__name__)

_sentry_initialized = False
_service_name: Optional[str] = None


def init_sentry(service_name: str, datasource_uid: Optional[str] = None) -> None:
    """
    Initialize Sentry for the service.

    Args:
        service_name: Name of the service (e.g., "stream_runner")
        datasource_uid: Optional data source uid tag
    """
    global _sentry_initialized, _service_name

    sentry_dsn = get_sentry_dsn()
    if not sentry_dsn:
        logger.info("SENTRY_DSN not set, skipping Sentry initialization")
        return

    try:
        sentry_sdk.init(
            dsn=sentry_dsn,
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1")),
            environment=os.getenv("SENTRY_ENVIRONMENT", "development"),
            release=os.getenv("SENTRY_RELEASE", "unknown"),
            integrations=[
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR,
                ),
            ],
        )

        sentry_sdk.set_tag("service_name", service_name)
        if datasource_uid:
            sentry_sdk.set_tag("datasource_uid", datasource_uid)

        _sentry_initialized = True
        _service_name = service_name

        logger.info(f"Sentry initialized for {service_name} "
                    f"(environment: {os.getenv('SENTRY_ENVIRONMENT', 'development')})")

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}", exc_info=True)


def capture_startup(service_name: str, additional_data: Optional[Dict[str, Any]] = None) -> None:
    """
    Capture service startup event.

    Args:
        service_name: Name of the service
        additional_data: Optional additional context data
    """
    if not _sentry_initialized:
        return

    try:
        with sentry_sdk.new_scope() as scope:
            scope.set_tag("event_type", "startup")
            for key, value in (additional_data or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_message(f"Service {service_name} started", level="info")

        logger.debug(f"Sentry: Captured startup for {service_name}")

    except Exception as e:
        logger.warning(f"Failed to capture startup to Sentry: {e}")


def capture_exception(error: Exception, additional_data: Optional[Dict[str, Any]] = None) -> None:
    """
    Capture exception.

    Args:
        error: Exception to capture
        additional_data: Optional additional context data (large lists are redacted)
    """
    if not _sentry_initialized:
        return

    try:
        redacted_data = _redact_large_lists(additional_data) if additional_data else None

        with sentry_sdk.new_scope() as scope:
            scope.set_tag("event_type", "exception")
            for key, value in (redacted_data or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(error)

        logger.debug(f"Sentry: Captured exception: {type(error).__name__}")

    except Exception as e:
        logger.warning(f"Failed to capture exception to Sentry: {e}")


def add_breadcrumb(message: str, category: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
    """
    Add a breadcrumb to the current Sentry scope.

    Args:
        message: Breadcrumb message
        category: Breadcrumb category (e.g., "live.subscribe", "backend.query")
        level: Breadcrumb level (info, warning, error)
        data: Optional additional data (large lists are redacted)
    """
    if not _sentry_initialized:
        return

    try:
        sentry_sdk.add_breadcrumb(
            message=message,
            category=category,
            level=level,
            data=_redact_large_lists(data) if data else None,
        )
    except Exception as e:
        logger.warning(f"Failed to add breadcrumb to Sentry: {e}")


def set_tag(key: str, value: Any) -> None:
    if not _sentry_initialized:
        return

    try:
        sentry_sdk.set_tag(key, value)
    except Exception as e:
        logger.warning(f"Failed to set tag in Sentry: {e}")


def _redact_large_lists(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Replace lists longer than 10 items with a summary, recursing into dicts.

    Frame values can be arbitrarily long; only their size is reported.
    """
    if not data:
        return data

    redacted = {}
    for key, value in data.items():
        if isinstance(value, list) and len(value) > 10:
            redacted[key] = f"[REDACTED: {len(value)} items]"
        elif isinstance(value, dict):
            redacted[key] = _redact_large_lists(value)
        else:
            redacted[key] = value

    return redacted


def is_initialized() -> bool:
    """Check if Sentry is initialized."""
    return _sentry_initialized
