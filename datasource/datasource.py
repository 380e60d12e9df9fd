"""
Live data source client.

Routes each query request either to a live channel subscription or to the
standard backend query path.
"""

import logging
from typing import AsyncIterator, Optional

from datasource.base import BackendQueryExecutor, LiveStreamService
from datasource.shared.constants import STREAM_PATH
from datasource.shared.schema import (
    DataSourceInstanceSettings,
    LiveChannelAddress,
    LiveChannelScope,
    QueryRequest,
    QueryResponse,
    StreamingFrameAction,
    StreamingFrameOptions,
)

logger = logging.getLogger(__name__)


class DataSource:
    """
    Data source client with a live streaming branch.

    Live streaming requests subscribe to this instance's `stream` channel with
    a replace buffer. Every other request goes to the backend executor. Both
    branches return the collaborator's stream as is; errors are not caught.
    """

    def __init__(
        self,
        instance_settings: DataSourceInstanceSettings,
        executor: BackendQueryExecutor,
        live_service: LiveStreamService,
    ):
        self.instance_settings = instance_settings
        self.executor = executor
        self.live_service = live_service

    @property
    def uid(self) -> str:
        return self.instance_settings.uid

    def query(self, request: QueryRequest) -> AsyncIterator[QueryResponse]:
        """
        Dispatch a query request.

        Args:
            request: Query request; not modified

        Returns:
            Response stream from the live stream service or the backend executor
        """
        if request.live_streaming:
            address = LiveChannelAddress(
                scope=LiveChannelScope.DATASOURCE,
                namespace=self.uid,
                path=STREAM_PATH,
            )
            buffer = StreamingFrameOptions(action=StreamingFrameAction.REPLACE)
            logger.debug(f"Request {request.request_id}: live stream {address.to_channel()}")
            return self.live_service.subscribe(address, buffer)

        logger.debug(f"Request {request.request_id}: backend query ({len(request.queries)} queries)")
        return self.executor.execute(request)


def create_datasource(settings: Optional[DataSourceInstanceSettings] = None) -> DataSource:
    """
    Create a data source wired to the HTTP backend and the NATS live service.

    Args:
        settings: Instance settings (default: built from DATASOURCE_UID / DATASOURCE_NAME)

    Returns:
        DataSource instance
    """
    from datasource.backend_client import HTTPBackendExecutor
    from datasource.live import NATSLiveStreamService
    from datasource.shared.config import get_datasource_name, get_datasource_uid

    if settings is None:
        settings = DataSourceInstanceSettings(
            uid=get_datasource_uid(),
            name=get_datasource_name(),
        )

    return DataSource(
        instance_settings=settings,
        executor=HTTPBackendExecutor.from_env(datasource_uid=settings.uid),
        live_service=NATSLiveStreamService(),
    )
