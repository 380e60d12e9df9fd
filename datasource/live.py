"""
Live stream service over the message broker.

A subscription first asks the owning plugin backend to accept the channel
(request/reply on live.control.<scope>.<namespace>.subscribe), then listens
on the channel subject and turns each packet into a streaming QueryResponse.
"""

import asyncio
import logging
from typing import Optional

from pydantic import ValidationError

from datasource.base import LiveStreamService
from datasource.shared.config import get_live_request_timeout
from datasource.shared.constants import CONTROL_SUBSCRIBE, CONTROL_UNSUBSCRIBE
from datasource.shared.messaging import MessageBroker, get_broker
from datasource.shared.schema import (
    DataFrame,
    LiveChannelAddress,
    LoadingState,
    QueryResponse,
    StreamingFrameAction,
    StreamingFrameOptions,
    StreamPacket,
    SubscribeStreamResponse,
    SubscribeStreamStatus,
)
from datasource.shared.sentry import add_breadcrumb

logger = logging.getLogger(__name__)

_CLOSED = object()

# Packets held for a slow consumer under the append action; replace keeps one
MAX_PENDING_PACKETS = 100


class SubscriptionRejectedError(Exception):
    """Raised when the plugin backend does not accept a channel subscription."""

    def __init__(self, address: LiveChannelAddress, status: SubscribeStreamStatus):
        super().__init__(f"Subscription to {address.to_channel()} rejected: {status.value}")
        self.address = address
        self.status = status


class LiveDataStream:
    """
    Handle for one live channel subscription.

    Nothing is sent until the first item is requested. aclose() ends the
    subscription, also while the subscribe handshake is still in flight;
    a closed stream cannot be restarted.
    """

    def __init__(
        self,
        address: LiveChannelAddress,
        buffer: StreamingFrameOptions,
        broker: Optional[MessageBroker] = None,
        request_timeout: float = 5.0,
    ):
        self.address = address
        self.buffer = buffer
        self._broker = broker
        self._request_timeout = request_timeout
        self._queue: Optional[asyncio.Queue] = None
        self._subscription_id: Optional[str] = None
        self._accepted = False
        self._frame: Optional[DataFrame] = None
        self._started = False
        self._closed = False

    @property
    def key(self) -> str:
        return self.address.to_channel()

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "LiveDataStream":
        return self

    async def __anext__(self) -> QueryResponse:
        if self._closed:
            raise StopAsyncIteration
        if not self._started:
            await self._start()

        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration

        return QueryResponse(
            data=[self._merge(item)],
            key=self.key,
            state=LoadingState.STREAMING,
        )

    async def aclose(self) -> None:
        """Unsubscribe and notify the plugin backend."""
        if self._closed:
            return
        self._closed = True

        if self._queue is not None:
            self._enqueue(_CLOSED)

        # A handshake still in flight releases the channel itself once it returns
        if self._accepted:
            await self._release()

    async def _release(self) -> None:
        if self._subscription_id is not None:
            subscription_id, self._subscription_id = self._subscription_id, None
            await self._broker.unsubscribe(subscription_id)
        if self._accepted:
            self._accepted = False
            await self._broker.publish(
                self.address.control_subject(CONTROL_UNSUBSCRIBE),
                {"path": self.address.path},
            )
            logger.info(f"Closed live stream {self.key}")

    async def _start(self) -> None:
        self._started = True
        try:
            if self._broker is None:
                self._broker = await get_broker()

            reply = await self._broker.request(
                self.address.control_subject(CONTROL_SUBSCRIBE),
                {"path": self.address.path},
                timeout=self._request_timeout,
            )
            response = SubscribeStreamResponse.model_validate(reply)
            if response.status != SubscribeStreamStatus.OK:
                raise SubscriptionRejectedError(self.address, response.status)
            self._accepted = True

            if self._closed:
                await self._release()
                raise StopAsyncIteration

            maxsize = 1 if self.buffer.action == StreamingFrameAction.REPLACE else MAX_PENDING_PACKETS
            self._queue = asyncio.Queue(maxsize=maxsize)
            if response.initial_data is not None:
                self._enqueue(response.initial_data)

            self._subscription_id = await self._broker.subscribe(
                self.address.to_subject(), self._on_packet
            )
            if self._closed:
                await self._release()
                raise StopAsyncIteration
        except Exception:
            self._closed = True
            raise

        add_breadcrumb(f"Subscribed to {self.key}", category="live.subscribe",
                       data={"action": self.buffer.action.value})
        logger.info(f"Subscribed to live stream {self.key} ({self.buffer.action.value})")

    def _enqueue(self, item) -> None:
        """Add an item, dropping the oldest pending one when the queue is full."""
        if self._queue.full():
            self._queue.get_nowait()
            if item is not _CLOSED and self.buffer.action == StreamingFrameAction.APPEND:
                logger.warning(f"Live stream {self.key} consumer is behind; dropped oldest packet")
        self._queue.put_nowait(item)

    async def _on_packet(self, topic: str, payload: dict) -> None:
        try:
            packet = StreamPacket.model_validate(payload)
        except ValidationError as e:
            logger.error(f"Dropping malformed packet on {topic}: {e}")
            return None
        if not self._closed:
            self._enqueue(packet.frame)
        return None

    def _merge(self, frame: DataFrame) -> DataFrame:
        max_length = self.buffer.max_length
        if self.buffer.action == StreamingFrameAction.REPLACE:
            self._frame = frame
            return frame.model_copy(deep=True)

        if self._frame is None or [f.name for f in self._frame.fields] != [f.name for f in frame.fields]:
            # First frame or schema changed; start a new buffer
            self._frame = frame
            for field in self._frame.fields:
                field.values = field.values[-max_length:]
            return self._frame.model_copy(deep=True)

        for buffered, incoming in zip(self._frame.fields, frame.fields):
            buffered.values = (buffered.values + incoming.values)[-max_length:]
        return self._frame.model_copy(deep=True)


class NATSLiveStreamService(LiveStreamService):
    """Live stream service backed by the shared message broker."""

    def __init__(self, broker: Optional[MessageBroker] = None, request_timeout: Optional[float] = None):
        """
        Args:
            broker: Connected broker (default: the global broker from get_broker())
            request_timeout: Subscribe handshake timeout in seconds
        """
        self.broker = broker
        self.request_timeout = request_timeout if request_timeout is not None else get_live_request_timeout()

    def subscribe(self, address: LiveChannelAddress, buffer: StreamingFrameOptions) -> LiveDataStream:
        return LiveDataStream(
            address=address,
            buffer=buffer,
            broker=self.broker,
            request_timeout=self.request_timeout,
        )
