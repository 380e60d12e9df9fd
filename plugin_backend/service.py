"""
Sample backend plugin service.

Serves three things:
- query_data: a fixed three-row frame per query, tagged with the data
  source's live channel when the query asks for the `stream` path
- subscribe_stream / run_stream: the `stream` channel, a counter frame
  produced every interval
- call_resource: `/echo` and `/count` resources
"""

import asyncio
import itertools
import logging
import threading
from datetime import datetime, timezone
from typing import AsyncIterator, Optional, Tuple

from datasource.shared.config import get_stream_interval_seconds
from datasource.shared.constants import STREAM_PATH
from datasource.shared.schema import (
    DataFrame,
    DataResponse,
    FrameError,
    FrameField,
    LiveChannelAddress,
    LiveChannelScope,
    PublishStreamRequest,
    PublishStreamResponse,
    PublishStreamStatus,
    QueryDataRequest,
    RunStreamRequest,
    StreamPacket,
    SubscribeStreamRequest,
    SubscribeStreamResponse,
)

logger = logging.getLogger(__name__)


class QueryError(Exception):
    """A single query could not be answered."""

    def __init__(self, ref_id: str):
        super().__init__(f"Error querying backend for {ref_id}")
        self.ref_id = ref_id


class StreamError(Exception):
    """Error while producing stream packets."""


class ResourceNotFoundError(Exception):
    """Unknown resource path."""

    status_code = 404

    def __init__(self, path: str):
        super().__init__("Not found")
        self.path = path


async def _empty_stream() -> AsyncIterator[bytes]:
    return
    yield


class PluginService:
    """Backend data, stream and resource service for the live data source."""

    def __init__(self, stream_interval: Optional[float] = None):
        """
        Args:
            stream_interval: Seconds between stream packets (default: STREAM_INTERVAL_SECONDS)
        """
        self.stream_interval = stream_interval if stream_interval is not None else get_stream_interval_seconds()
        self._counter = itertools.count()
        self._counter_lock = threading.Lock()

    # Data

    async def query_data(self, request: QueryDataRequest) -> AsyncIterator[DataResponse]:
        """Yield one response per query, in query order."""
        logger.info(f"Querying data (rows=3, queries={len(request.queries)})")

        for query in request.queries:
            frame = self._sample_frame()
            if request.datasource_uid and query.path == STREAM_PATH:
                frame.channel = LiveChannelAddress(
                    scope=LiveChannelScope.DATASOURCE,
                    namespace=request.datasource_uid,
                    path=STREAM_PATH,
                ).to_channel()

            try:
                frame.check()
            except FrameError:
                error = QueryError(query.ref_id)
                logger.warning(str(error))
                yield DataResponse(ref_id=query.ref_id, error=str(error))
                continue

            yield DataResponse(ref_id=query.ref_id, frames=[frame])

    def _sample_frame(self) -> DataFrame:
        start = datetime(2021, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        return DataFrame(
            name="foo",
            fields=[
                FrameField(name="time", type="time",
                           values=[start.replace(second=s) for s in range(3)]),
                FrameField(name="x", type="number", values=[1, 2, 3]),
                FrameField(name="y", type="string", values=["a", "b", "c"]),
            ],
        )

    # Streams

    async def subscribe_stream(self, request: SubscribeStreamRequest) -> SubscribeStreamResponse:
        logger.info(f"Subscribing to stream (path={request.path})")
        if request.path == STREAM_PATH:
            return SubscribeStreamResponse.ok()
        return SubscribeStreamResponse.not_found()

    async def run_stream(self, request: RunStreamRequest) -> AsyncIterator[StreamPacket]:
        """
        Produce counter frames forever: x = [n, n+1, n+2], then n += 3.

        The generator is closed when the last client disconnects.
        """
        logger.info(f"Running stream (path={request.path})")
        x = 0
        n = 3
        try:
            while True:
                frame = DataFrame(
                    name="foo",
                    fields=[FrameField(name="x", type="number", values=list(range(x, x + n)))],
                )
                try:
                    packet = StreamPacket.from_frame(frame)
                except FrameError as e:
                    raise StreamError(f"Invalid frame returned: {e}") from e

                logger.debug(f"Yielding frame from {x} to {x + n}")
                yield packet
                x += n
                await asyncio.sleep(self.stream_interval)
        finally:
            datasource = f"datasource {request.datasource_uid}, " if request.datasource_uid else ""
            logger.info(f"client disconnected for {datasource}path {request.path}")

    async def publish_stream(self, request: PublishStreamRequest) -> PublishStreamResponse:
        logger.info(f"Publishing to stream (path={request.path}) is not allowed")
        return PublishStreamResponse(status=PublishStreamStatus.PERMISSION_DENIED)

    # Resources

    def _next_count(self) -> int:
        with self._counter_lock:
            return next(self._counter)

    async def call_resource(self, path: str, body: bytes = b"") -> Tuple[bytes, AsyncIterator[bytes]]:
        """
        Handle a resource call.

        Args:
            path: Resource path ("/echo" or "/count")
            body: Request body

        Returns:
            (initial response body, stream of further body chunks)

        Raises:
            ResourceNotFoundError: For any other path
        """
        if path == "/echo":
            return body, _empty_stream()

        if path == "/count":
            initial = str(self._next_count()).encode()

            async def counts() -> AsyncIterator[bytes]:
                while True:
                    yield str(self._next_count()).encode()

            return initial, counts()

        raise ResourceNotFoundError(path)
