"""
Data model for the live data source.

Pydantic models for query requests, response frames, live channel addresses
and the backend plugin wire types.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import LIVE_SUBJECT_PREFIX


class FrameError(ValueError):
    """Raised when a data frame is structurally invalid."""


class TimeRange(BaseModel):
    """Shared time range for every query in a request."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: datetime = Field(..., alias="from", description="Range start")
    to: datetime = Field(..., description="Range end")
    raw: Dict[str, str] = Field(default_factory=dict, description="Unparsed range, e.g. {'from': 'now-6h'}")

    @field_validator("from_", "to")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        # Naive datetimes are UTC, never the host's local time
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class DataQuery(BaseModel):
    """A single query specification inside a request."""
    model_config = ConfigDict(frozen=True, extra="allow")

    ref_id: str = Field(..., description="Query reference id (A, B, ...)")
    datasource_uid: Optional[str] = Field(None, description="Target data source uid")
    path: Optional[str] = Field(None, description="Optional channel path for streaming frames")
    constant: float = Field(0.0, description="Constant value passed to the backend")
    with_streaming: bool = Field(False, description="Ask the backend to attach a live channel")
    hide: bool = Field(False, description="Query is disabled in the panel")


class QueryRequest(BaseModel):
    """Query request issued once per user query. Never mutated downstream."""
    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: str(uuid4()), description="Unique request identifier")
    queries: List[DataQuery] = Field(default_factory=list)
    range: Optional[TimeRange] = None
    live_streaming: bool = Field(False, description="Caller wants a live result instead of a one-shot result")
    interval_ms: Optional[int] = None
    max_data_points: Optional[int] = None
    app: Optional[str] = None


class FrameField(BaseModel):
    """One column of a data frame."""
    name: str
    type: str = "other"
    values: List[Any] = Field(default_factory=list)


class DataFrame(BaseModel):
    """Columnar data frame, optionally bound to a live channel."""
    name: str
    fields: List[FrameField] = Field(default_factory=list)
    channel: Optional[str] = Field(None, description="Live channel this frame can be refreshed from")

    @property
    def length(self) -> int:
        return len(self.fields[0].values) if self.fields else 0

    def check(self) -> "DataFrame":
        """Validate that every field holds the same number of values."""
        lengths = {len(f.values) for f in self.fields}
        if len(lengths) > 1:
            raise FrameError(
                f"Frame '{self.name}' has fields of differing lengths: "
                + ", ".join(f"{f.name}={len(f.values)}" for f in self.fields)
            )
        return self


class LoadingState(str, Enum):
    """Loading state of a query response batch."""
    NOT_STARTED = "NotStarted"
    LOADING = "Loading"
    STREAMING = "Streaming"
    DONE = "Done"
    ERROR = "Error"


class QueryResponse(BaseModel):
    """One response batch delivered to the caller."""
    data: List[DataFrame] = Field(default_factory=list)
    key: Optional[str] = Field(None, description="Stream key; identifies the live channel for streaming batches")
    state: LoadingState = LoadingState.DONE
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class LiveChannelScope(str, Enum):
    """Scope part of a live channel address."""
    GRAFANA = "grafana"
    PLUGIN = "plugin"
    DATASOURCE = "ds"
    STREAM = "stream"


class LiveChannelAddress(BaseModel):
    """Stream address: (scope, namespace, path) identifying one channel."""
    model_config = ConfigDict(frozen=True)

    scope: LiveChannelScope
    namespace: str
    path: str

    @field_validator("namespace", "path")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("namespace and path must not be empty")
        return v

    def to_channel(self) -> str:
        """Channel id as used in frames, e.g. 'ds/abc123/stream'."""
        return f"{self.scope.value}/{self.namespace}/{self.path}"

    def to_subject(self) -> str:
        """Broker subject carrying this channel's packets."""
        path = self.path.strip("/").replace("/", ".")
        return f"{LIVE_SUBJECT_PREFIX}.{self.scope.value}.{self.namespace}.{path}"

    def control_subject(self, action: str) -> str:
        """Subject the owning backend listens on for subscribe/unsubscribe."""
        return f"{LIVE_SUBJECT_PREFIX}.control.{self.scope.value}.{self.namespace}.{action}"

    @classmethod
    def parse(cls, channel: str) -> "LiveChannelAddress":
        """Parse 'scope/namespace/path'; the path may itself contain slashes."""
        parts = channel.split("/", 2)
        if len(parts) != 3:
            raise ValueError(f"Invalid channel: {channel!r}. Expected 'scope/namespace/path'")
        scope, namespace, path = parts
        return cls(scope=LiveChannelScope(scope), namespace=namespace, path=path)


class StreamingFrameAction(str, Enum):
    """How incoming frames are merged into the caller-visible buffer."""
    REPLACE = "replace"
    APPEND = "append"


class StreamingFrameOptions(BaseModel):
    """Buffer policy for a live data stream."""
    model_config = ConfigDict(frozen=True)

    action: StreamingFrameAction = StreamingFrameAction.REPLACE
    max_length: int = Field(1000, gt=0, description="Row limit for the append action")


class DataSourceInstanceSettings(BaseModel):
    """Settings assigned to a data source instance at provisioning time."""
    model_config = ConfigDict(frozen=True)

    uid: str = Field(..., description="Stable instance identifier")
    name: str = "live-datasource"
    type: str = "live-datasource"
    url: Optional[str] = None
    json_data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("uid")
    @classmethod
    def validate_uid(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("uid must not be empty")
        return v.strip()


# Backend plugin wire types

class BackendQuery(BaseModel):
    """Query as received by the backend plugin service."""
    ref_id: str
    path: Optional[str] = None
    constant: float = 0.0
    with_streaming: bool = False


class QueryDataRequest(BaseModel):
    datasource_uid: Optional[str] = None
    queries: List[BackendQuery] = Field(default_factory=list)


class DataResponse(BaseModel):
    """Per-query result of the backend plugin service."""
    ref_id: str
    frames: List[DataFrame] = Field(default_factory=list)
    error: Optional[str] = None


class SubscribeStreamStatus(str, Enum):
    OK = "OK"
    NOT_FOUND = "NotFound"
    PERMISSION_DENIED = "PermissionDenied"


class SubscribeStreamRequest(BaseModel):
    path: str
    datasource_uid: Optional[str] = None


class SubscribeStreamResponse(BaseModel):
    status: SubscribeStreamStatus
    initial_data: Optional[DataFrame] = None

    @classmethod
    def ok(cls, initial_data: Optional[DataFrame] = None) -> "SubscribeStreamResponse":
        return cls(status=SubscribeStreamStatus.OK, initial_data=initial_data)

    @classmethod
    def not_found(cls) -> "SubscribeStreamResponse":
        return cls(status=SubscribeStreamStatus.NOT_FOUND)


class PublishStreamStatus(str, Enum):
    OK = "OK"
    NOT_FOUND = "NotFound"
    PERMISSION_DENIED = "PermissionDenied"


class PublishStreamRequest(BaseModel):
    path: str
    datasource_uid: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class PublishStreamResponse(BaseModel):
    status: PublishStreamStatus


class RunStreamRequest(BaseModel):
    path: str
    datasource_uid: Optional[str] = None


class StreamPacket(BaseModel):
    """A frame sent over a live channel."""
    frame: DataFrame

    @classmethod
    def from_frame(cls, frame: DataFrame) -> "StreamPacket":
        return cls(frame=frame.check())
