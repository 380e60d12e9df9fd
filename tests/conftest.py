"""Shared fixtures: an in-process broker and recording collaborators."""

import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Tuple
from uuid import uuid4

import pytest

_root = Path(__file__).resolve().parent.parent
if str(_root) not in sys.path:
    sys.path.insert(0, str(_root))

from datasource.base import BackendQueryExecutor, LiveStreamService
from datasource.shared.messaging import Handler, MessageBroker
from datasource.shared.schema import DataSourceInstanceSettings


class FakeBroker(MessageBroker):
    """Delivers messages to handlers in-process, in publish order."""

    def __init__(self):
        self.connected = False
        self.subscriptions: Dict[str, Tuple[str, Handler]] = {}
        self.published: List[Tuple[str, dict]] = []
        self.requests: List[Tuple[str, dict]] = []

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def publish(self, topic: str, payload: dict) -> None:
        self.published.append((topic, payload))
        for sub_topic, handler in list(self.subscriptions.values()):
            if sub_topic == topic:
                await handler(topic, payload)

    async def subscribe(self, topic: str, handler: Handler) -> str:
        subscription_id = str(uuid4())
        self.subscriptions[subscription_id] = (topic, handler)
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> None:
        self.subscriptions.pop(subscription_id, None)

    async def request(self, topic: str, payload: dict, timeout: float) -> dict:
        self.requests.append((topic, payload))
        for sub_topic, handler in list(self.subscriptions.values()):
            if sub_topic == topic:
                reply = await handler(topic, payload)
                if reply is not None:
                    return reply
        raise asyncio.TimeoutError(f"No responders for {topic}")

    async def is_connected(self) -> bool:
        return self.connected

    def topics(self) -> List[str]:
        return [topic for topic, _ in self.subscriptions.values()]

    def published_on(self, topic: str) -> List[dict]:
        return [payload for t, payload in self.published if t == topic]


class RecordingExecutor(BackendQueryExecutor):
    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result if result is not None else object()
        self.error = error

    def execute(self, request):
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return self.result


class RecordingLiveService(LiveStreamService):
    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result if result is not None else object()
        self.error = error

    def subscribe(self, address, buffer):
        self.calls.append((address, buffer))
        if self.error is not None:
            raise self.error
        return self.result


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the event loop until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def settings():
    return DataSourceInstanceSettings(uid="ds-uid-1", name="test-live")


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def live_service():
    return RecordingLiveService()
