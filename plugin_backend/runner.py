"""
Stream runner for the sample plugin backend.

Answers subscribe requests for the data source's live channels and publishes
run_stream packets to the broker while at least one client is subscribed.
"""

import asyncio
import logging
from functools import partial
from typing import Dict, List, Optional

from datasource.shared.config import get_datasource_uid, get_log_level
from datasource.shared.constants import CONTROL_SUBSCRIBE, CONTROL_UNSUBSCRIBE, STREAM_PATH
from datasource.shared.messaging import MessageBroker, get_broker
from datasource.shared.schema import (
    LiveChannelAddress,
    LiveChannelScope,
    RunStreamRequest,
    SubscribeStreamRequest,
    SubscribeStreamStatus,
)
from datasource.shared.sentry import (
    add_breadcrumb,
    capture_exception,
    capture_startup,
    init_sentry,
    set_tag,
)
from plugin_backend.service import PluginService

logger = logging.getLogger(__name__)


class StreamRunner:
    """Bridges PluginService streams onto broker subjects for one data source."""

    def __init__(self, service: PluginService, broker: MessageBroker, datasource_uid: str):
        self.service = service
        self.broker = broker
        self.datasource_uid = datasource_uid
        self._control_subscriptions: List[str] = []
        self._subscribers: Dict[str, int] = {}
        self._pumps: Dict[str, asyncio.Task] = {}

    def _address(self, path: str) -> LiveChannelAddress:
        return LiveChannelAddress(
            scope=LiveChannelScope.DATASOURCE,
            namespace=self.datasource_uid,
            path=path,
        )

    async def start(self) -> None:
        """Listen for subscribe/unsubscribe control messages."""
        control = self._address(STREAM_PATH)
        self._control_subscriptions = [
            await self.broker.subscribe(control.control_subject(CONTROL_SUBSCRIBE), self.handle_subscribe),
            await self.broker.subscribe(control.control_subject(CONTROL_UNSUBSCRIBE), self.handle_unsubscribe),
        ]
        logger.info(f"Stream runner started for datasource {self.datasource_uid}")

    async def stop(self) -> None:
        """Stop all pumps and control subscriptions."""
        for subscription_id in self._control_subscriptions:
            await self.broker.unsubscribe(subscription_id)
        self._control_subscriptions = []

        for path in list(self._pumps):
            await self._stop_pump(path)
        self._subscribers.clear()
        logger.info(f"Stream runner stopped for datasource {self.datasource_uid}")

    def active_paths(self) -> List[str]:
        return [path for path, task in self._pumps.items() if not task.done()]

    def subscriber_count(self, path: str) -> int:
        return self._subscribers.get(path, 0)

    async def handle_subscribe(self, topic: str, payload: dict) -> dict:
        """Reply with the service's subscribe decision; start the pump on OK."""
        path = payload.get("path", "")
        response = await self.service.subscribe_stream(
            SubscribeStreamRequest(path=path, datasource_uid=self.datasource_uid)
        )

        if response.status == SubscribeStreamStatus.OK:
            self._subscribers[path] = self._subscribers.get(path, 0) + 1
            add_breadcrumb(f"Client subscribed to {path}", category="live.subscribe",
                           data={"subscribers": self._subscribers[path]})
            if path not in self._pumps or self._pumps[path].done():
                task = asyncio.create_task(self._pump(path))
                task.add_done_callback(partial(self._on_pump_done, path))
                self._pumps[path] = task
        else:
            logger.warning(f"Rejected subscription to {path}: {response.status.value}")

        return response.model_dump(mode="json")

    async def handle_unsubscribe(self, topic: str, payload: dict) -> None:
        path = payload.get("path", "")
        remaining = max(self._subscribers.get(path, 0) - 1, 0)
        self._subscribers[path] = remaining
        logger.info(f"Client unsubscribed from {path} ({remaining} remaining)")
        if remaining == 0:
            await self._stop_pump(path)
        return None

    async def _pump(self, path: str) -> None:
        subject = self._address(path).to_subject()
        stream = self.service.run_stream(RunStreamRequest(path=path, datasource_uid=self.datasource_uid))
        try:
            async for packet in stream:
                await self.broker.publish(subject, packet.model_dump(mode="json"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Stream pump for {path} failed: {e}", exc_info=True)
            capture_exception(e, {"operation": "run_stream", "path": path})
            raise
        finally:
            await stream.aclose()

    def _on_pump_done(self, path: str, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        # A failed pump leaves no stream behind; subscribers must subscribe again
        if self._pumps.get(path) is task:
            del self._pumps[path]
            self._subscribers.pop(path, None)

    async def _stop_pump(self, path: str) -> None:
        task = self._pumps.pop(path, None)
        self._subscribers.pop(path, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


async def main(datasource_uid: Optional[str] = None) -> None:
    """Main entry point for the stream runner."""
    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    datasource_uid = datasource_uid or get_datasource_uid()
    logger.info("=" * 60)
    logger.info(f"STARTING STREAM RUNNER (datasource {datasource_uid})")
    logger.info("=" * 60)

    init_sentry("stream_runner", datasource_uid)
    capture_startup("stream_runner", {"datasource_uid": datasource_uid})
    set_tag("datasource_uid", datasource_uid)

    try:
        broker = await get_broker()
    except Exception as e:
        logger.error(f"Failed to initialize message broker: {e}", exc_info=True)
        capture_exception(e, {"operation": "broker_init"})
        raise

    runner = StreamRunner(PluginService(), broker, datasource_uid)
    await runner.start()

    try:
        await asyncio.Event().wait()
    finally:
        await runner.stop()
        await broker.disconnect()
        logger.info("Stream runner stopped.")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")


if __name__ == "__main__":
    run()
