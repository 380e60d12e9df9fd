"""
Backend query executor over the platform's HTTP query API.

Sends query requests to /api/ds/query with timeout, retry and backoff, and
converts the returned data frames into QueryResponse batches.
"""

import asyncio
import logging
from functools import partial
from typing import Any, AsyncIterator, Dict, List, Optional

import requests

from datasource.base import BackendQueryExecutor
from datasource.shared.config import get_backend_config
from datasource.shared.constants import QUERY_API_PATH
from datasource.shared.schema import (
    DataFrame,
    FrameField,
    LoadingState,
    QueryRequest,
    QueryResponse,
)
from datasource.shared.sentry import add_breadcrumb, capture_exception

logger = logging.getLogger(__name__)


class BackendQueryError(Exception):
    """Raised when the backend query API fails or returns an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class HTTPBackendExecutor(BackendQueryExecutor):
    """Executes queries against the backend query API with requests."""

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        datasource_uid: Optional[str] = None,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff_seconds: float = 1.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the executor.

        Args:
            base_url: Backend base URL (e.g., "http://localhost:3000")
            api_token: Optional bearer token
            datasource_uid: Default data source reference for queries without one
            timeout: Per-attempt HTTP timeout in seconds
            max_retries: Retries after the first attempt for retryable failures
            backoff_seconds: Base delay; attempt n waits backoff_seconds * 2**n
            session: Optional requests session (default: a new one)
        """
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.datasource_uid = datasource_uid
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.session = session or requests.Session()

    @classmethod
    def from_env(cls, datasource_uid: Optional[str] = None) -> "HTTPBackendExecutor":
        config = get_backend_config()
        return cls(datasource_uid=datasource_uid, **config)

    @property
    def url(self) -> str:
        return f"{self.base_url}{QUERY_API_PATH}"

    async def execute(self, request: QueryRequest) -> AsyncIterator[QueryResponse]:
        """Run the request and yield a single response batch."""
        body = build_query_body(request, self.datasource_uid)
        if not body["queries"]:
            yield QueryResponse(state=LoadingState.DONE)
            return

        add_breadcrumb(
            f"Backend query {request.request_id}",
            category="backend.query",
            data={"queries": [q["refId"] for q in body["queries"]]},
        )
        payload = await self._post_with_retry(body)
        yield parse_query_response(payload)

    async def _post_with_retry(self, body: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        loop = asyncio.get_running_loop()
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            try:
                logger.info(f"POST {self.url} (attempt {attempt + 1}/{attempts})")
                response = await loop.run_in_executor(
                    None,
                    partial(self.session.post, self.url, json=body, headers=headers, timeout=self.timeout),
                )
                if response.status_code >= 500:
                    raise BackendQueryError(
                        f"Backend returned {response.status_code}: {response.text[:200]}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    # Client errors are not retried
                    error = BackendQueryError(
                        f"Backend rejected query ({response.status_code}): {response.text[:200]}",
                        status_code=response.status_code,
                    )
                    capture_exception(error, {"url": self.url, "status_code": response.status_code})
                    raise error
                return response.json()

            except (requests.Timeout, requests.ConnectionError, BackendQueryError) as e:
                if isinstance(e, BackendQueryError) and (e.status_code or 0) < 500:
                    raise
                logger.warning(f"Backend query failed: {e} (attempt {attempt + 1}/{attempts})")
                if attempt < self.max_retries:
                    backoff_time = self.backoff_seconds * (2 ** attempt)
                    logger.info(f"Retrying in {backoff_time} seconds...")
                    await asyncio.sleep(backoff_time)
                    continue

                logger.error(f"Backend query failed after {attempts} attempts")
                capture_exception(e, {"url": self.url, "attempts": attempts})
                if isinstance(e, BackendQueryError):
                    raise
                raise BackendQueryError(f"Backend unreachable: {e}") from e

        # Unreachable: the loop either returns or raises
        raise BackendQueryError("Backend query failed")


def build_query_body(request: QueryRequest, default_uid: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the JSON body for the query API.

    Hidden queries are skipped. Extra query keys are passed through as is.
    """
    queries: List[Dict[str, Any]] = []
    for query in request.queries:
        if query.hide:
            continue

        item: Dict[str, Any] = dict(query.model_extra or {})
        item.update({
            "refId": query.ref_id,
            "constant": query.constant,
            "withStreaming": query.with_streaming,
        })
        if query.path is not None:
            item["path"] = query.path

        uid = query.datasource_uid or default_uid
        if uid:
            item["datasource"] = {"uid": uid}
        if request.interval_ms is not None:
            item["intervalMs"] = request.interval_ms
        if request.max_data_points is not None:
            item["maxDataPoints"] = request.max_data_points
        queries.append(item)

    body: Dict[str, Any] = {"queries": queries}
    if request.range is not None:
        body["from"] = str(int(request.range.from_.timestamp() * 1000))
        body["to"] = str(int(request.range.to.timestamp() * 1000))
    return body


def parse_query_response(payload: Dict[str, Any]) -> QueryResponse:
    """
    Convert a query API response into one QueryResponse.

    Per-query errors are collected into `errors` and set the state to Error.
    """
    frames: List[DataFrame] = []
    errors: List[Dict[str, Any]] = []

    for ref_id, result in (payload.get("results") or {}).items():
        if result.get("error"):
            errors.append({"refId": ref_id, "message": result["error"]})
        for raw_frame in result.get("frames") or []:
            frames.append(parse_frame(raw_frame, ref_id))

    return QueryResponse(
        data=frames,
        state=LoadingState.ERROR if errors else LoadingState.DONE,
        errors=errors,
    )


def parse_frame(raw: Dict[str, Any], ref_id: Optional[str] = None) -> DataFrame:
    """Parse a data-plane JSON frame ({"schema": ..., "data": {"values": ...}})."""
    schema = raw.get("schema") or {}
    values = (raw.get("data") or {}).get("values") or []
    meta = schema.get("meta") or {}

    fields = []
    for index, field in enumerate(schema.get("fields") or []):
        fields.append(FrameField(
            name=field.get("name", f"field{index}"),
            type=field.get("type", "other"),
            values=values[index] if index < len(values) else [],
        ))

    return DataFrame(
        name=schema.get("name") or ref_id or "",
        fields=fields,
        channel=meta.get("channel"),
    )
