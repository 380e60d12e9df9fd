"""
Configuration management for the live data source.

Handles environment variable loading for the data source instance, the
backend query API, the message broker and the stream runner.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env from project root (2 levels up from datasource/shared/)
_env_path = Path(__file__).parent.parent.parent / ".env"
if _env_path.exists():
    load_dotenv(_env_path)


def get_datasource_uid() -> str:
    """
    Get the data source instance uid.

    The uid is assigned when the data source is provisioned and becomes the
    namespace of its live channels.

    Returns:
        Data source uid

    Raises:
        ValueError: If DATASOURCE_UID is not set
    """
    uid = os.getenv("DATASOURCE_UID", "").strip()
    if not uid:
        raise ValueError(
            "DATASOURCE_UID environment variable is required. "
            "Use the uid shown on the data source settings page."
        )
    return uid


def get_datasource_name() -> str:
    return os.getenv("DATASOURCE_NAME", "live-datasource")


def get_backend_config() -> dict:
    """
    Get backend query API configuration from environment variables.

    Returns:
        Dictionary with base_url, api_token, timeout and max_retries
    """
    return {
        "base_url": os.getenv("BACKEND_URL", "http://localhost:3000").rstrip("/"),
        "api_token": os.getenv("BACKEND_API_TOKEN") or None,
        "timeout": float(os.getenv("BACKEND_TIMEOUT_SECONDS", "10")),
        "max_retries": int(os.getenv("BACKEND_MAX_RETRIES", "2")),
    }


def get_nats_config() -> dict:
    """
    Get NATS connection configuration from environment variables.

    Returns:
        Dictionary with NATS connection parameters
    """
    return {
        "host": os.getenv("NATS_HOST", "localhost"),
        "port": int(os.getenv("NATS_PORT", "4222")),
    }


def get_live_request_timeout() -> float:
    """Timeout in seconds for the subscribe handshake with the plugin backend."""
    return float(os.getenv("LIVE_REQUEST_TIMEOUT_SECONDS", "5"))


def get_stream_interval_seconds() -> float:
    """Delay between packets produced by the stream runner."""
    return float(os.getenv("STREAM_INTERVAL_SECONDS", "1"))


def get_log_level() -> str:
    """
    Get log level from environment variable.

    Returns:
        Log level string (default: "INFO")
    """
    return os.getenv("LOG_LEVEL", "INFO").upper()


def get_sentry_dsn() -> Optional[str]:
    return os.getenv("SENTRY_DSN") or None
