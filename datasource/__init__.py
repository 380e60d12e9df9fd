"""
Live data source client.

Routes queries either to the backend query API or to a live channel
subscription on the message broker.
"""

from datasource.base import BackendQueryExecutor, LiveStreamService
from datasource.datasource import DataSource, create_datasource

__all__ = [
    "BackendQueryExecutor",
    "LiveStreamService",
    "DataSource",
    "create_datasource",
]
