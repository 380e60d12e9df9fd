"""
Collaborator interfaces for the data source.

The data source itself executes nothing. It hands each query to one of two
collaborators implementing these interfaces:
- BackendQueryExecutor: one-shot request/response queries
- LiveStreamService: subscription-based, continuously updated channels

Both return a response stream: an async iterator of QueryResponse batches
that is started lazily and cancelled with aclose().
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator

from datasource.shared.schema import (
    LiveChannelAddress,
    QueryRequest,
    QueryResponse,
    StreamingFrameOptions,
)


class BackendQueryExecutor(ABC):
    """Executes queries through the platform's backend query protocol."""

    @abstractmethod
    def execute(self, request: QueryRequest) -> AsyncIterator[QueryResponse]:
        """
        Execute a query request.

        Args:
            request: The request to execute, passed through unmodified

        Returns:
            Response stream. No work happens until it is iterated.
        """
        pass


class LiveStreamService(ABC):
    """Provides subscriptions to live channels."""

    @abstractmethod
    def subscribe(
        self,
        address: LiveChannelAddress,
        buffer: StreamingFrameOptions,
    ) -> AsyncIterator[QueryResponse]:
        """
        Subscribe to a live channel.

        Args:
            address: Channel to subscribe to
            buffer: How incoming frames are merged into the delivered batches

        Returns:
            Response stream for the subscription. Closing it ends the subscription.
        """
        pass
