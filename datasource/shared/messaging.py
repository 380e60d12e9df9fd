"""
Message broker abstraction layer for the live data source.

Provides the pub/sub and request/reply interface that live channels travel
over. NATS is the supported backend.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

import nats

from .config import get_nats_config

logger = logging.getLogger(__name__)

# Handler signature: async handler(topic, payload) -> optional reply payload
Handler = Callable[[str, dict], Awaitable[Optional[dict]]]


class MessageBroker(ABC):
    """Abstract base class for message broker implementations."""

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to the message broker."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to the message broker."""
        pass

    @abstractmethod
    async def publish(self, topic: str, payload: dict) -> None:
        """
        Publish a message to a topic.

        Args:
            topic: Topic name (e.g., "live.ds.abc123.stream")
            payload: Message payload as dictionary
        """
        pass

    @abstractmethod
    async def subscribe(self, topic: str, handler: Handler) -> str:
        """
        Subscribe to a topic and register a handler function.

        Args:
            topic: Topic name to subscribe to
            handler: Async function called with (topic, payload) when messages arrive.
                A non-None return value is sent back when the message expects a reply.

        Returns:
            Subscription id, to be passed to unsubscribe()
        """
        pass

    @abstractmethod
    async def unsubscribe(self, subscription_id: str) -> None:
        """Remove a subscription created by subscribe()."""
        pass

    @abstractmethod
    async def request(self, topic: str, payload: dict, timeout: float) -> dict:
        """
        Send a request and wait for a single reply.

        Args:
            topic: Topic name
            payload: Request payload
            timeout: Seconds to wait for the reply

        Returns:
            Reply payload
        """
        pass

    @abstractmethod
    async def is_connected(self) -> bool:
        """Check if the broker connection is active."""
        pass


class NATSBackend(MessageBroker):
    """NATS message broker backend."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ):
        """
        Initialize NATS backend.

        Args:
            host: NATS server host (default: from env NATS_HOST or localhost)
            port: NATS server port (default: from env NATS_PORT or 4222)
        """
        config = get_nats_config()
        self.host = host or config["host"]
        self.port = port or config["port"]
        self.nc = None
        self._subscriptions: Dict[str, Any] = {}

    async def connect(self) -> None:
        """Connect to NATS server."""
        try:
            servers = [f"nats://{self.host}:{self.port}"]
            self.nc = await nats.connect(servers=servers)
            logger.info(f"Connected to NATS at {self.host}:{self.port}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def disconnect(self) -> None:
        """Close NATS connection."""
        if self.nc:
            await self.nc.close()
            self.nc = None
            self._subscriptions.clear()
            logger.info("Disconnected from NATS")

    async def publish(self, topic: str, payload: dict) -> None:
        """Publish message to NATS topic."""
        if not self.nc:
            raise RuntimeError("Not connected to NATS. Call connect() first.")

        try:
            await self.nc.publish(topic, json.dumps(payload).encode())
            logger.debug(f"Published to {topic}")
        except Exception as e:
            logger.error(f"Failed to publish to {topic}: {e}")
            raise

    async def subscribe(self, topic: str, handler: Handler) -> str:
        """Subscribe to NATS topic."""
        if not self.nc:
            raise RuntimeError("Not connected to NATS. Call connect() first.")

        async def message_handler(msg):
            try:
                payload = json.loads(msg.data.decode())
                reply = await handler(topic, payload)
                if reply is not None and msg.reply:
                    await msg.respond(json.dumps(reply).encode())
            except Exception as e:
                logger.error(f"Error handling message from {topic}: {e}")

        try:
            sub = await self.nc.subscribe(topic, cb=message_handler)
        except Exception as e:
            logger.error(f"Failed to subscribe to {topic}: {e}")
            raise

        subscription_id = str(uuid4())
        self._subscriptions[subscription_id] = sub
        logger.info(f"Subscribed to {topic}")
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> None:
        """Unsubscribe from a NATS subscription."""
        sub = self._subscriptions.pop(subscription_id, None)
        if sub is None:
            return
        try:
            await sub.unsubscribe()
            logger.info(f"Unsubscribed from {sub.subject}")
        except Exception as e:
            logger.error(f"Failed to unsubscribe {subscription_id}: {e}")
            raise

    async def request(self, topic: str, payload: dict, timeout: float) -> dict:
        """Send a NATS request and decode the reply."""
        if not self.nc:
            raise RuntimeError("Not connected to NATS. Call connect() first.")

        try:
            msg = await self.nc.request(topic, json.dumps(payload).encode(), timeout=timeout)
        except Exception as e:
            logger.error(f"Request to {topic} failed: {e}")
            raise
        return json.loads(msg.data.decode())

    async def is_connected(self) -> bool:
        """Check if NATS connection is active."""
        return self.nc is not None and not self.nc.is_closed


def create_broker() -> MessageBroker:
    """
    Create a message broker instance based on configuration.

    Returns:
        MessageBroker instance (NATS)
    """
    config = get_nats_config()
    logger.info(f"Using broker backend: NATS ({config['host']}:{config['port']})")
    return NATSBackend(host=config["host"], port=config["port"])


_broker_instance: Optional[MessageBroker] = None


async def get_broker() -> MessageBroker:
    """
    Get or create the global broker instance.

    Returns:
        Connected MessageBroker instance (singleton)

    Raises:
        ConnectionError: If broker connection fails
    """
    global _broker_instance
    if _broker_instance is None:
        broker = create_broker()
        try:
            await broker.connect()
        except Exception as e:
            logger.error(f"Failed to connect to broker: {e}")
            raise ConnectionError(f"Failed to connect to broker: {e}") from e
        _broker_instance = broker
    return _broker_instance
