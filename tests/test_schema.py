"""Channel addresses, frames and settings validation."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from datasource.shared.schema import (
    DataFrame,
    DataSourceInstanceSettings,
    FrameError,
    FrameField,
    LiveChannelAddress,
    LiveChannelScope,
    StreamingFrameAction,
    StreamingFrameOptions,
    TimeRange,
)


def test_address_channel_and_subjects():
    address = LiveChannelAddress(scope=LiveChannelScope.DATASOURCE, namespace="abc", path="stream")

    assert address.to_channel() == "ds/abc/stream"
    assert address.to_subject() == "live.ds.abc.stream"
    assert address.control_subject("subscribe") == "live.control.ds.abc.subscribe"


def test_nested_path_maps_to_dotted_subject():
    address = LiveChannelAddress.parse("plugin/my-plugin/metrics/cpu")

    assert address.scope == LiveChannelScope.PLUGIN
    assert address.namespace == "my-plugin"
    assert address.path == "metrics/cpu"
    assert address.to_subject() == "live.plugin.my-plugin.metrics.cpu"
    assert LiveChannelAddress.parse(address.to_channel()) == address


@pytest.mark.parametrize("channel", ["ds/abc", "unknown/abc/stream", "ds//stream"])
def test_parse_rejects_invalid_channels(channel):
    with pytest.raises(ValueError):
        LiveChannelAddress.parse(channel)


def test_address_is_frozen():
    address = LiveChannelAddress(scope=LiveChannelScope.DATASOURCE, namespace="abc", path="stream")
    with pytest.raises(ValidationError):
        address.path = "other"


def test_frame_check_rejects_uneven_fields():
    frame = DataFrame(name="foo", fields=[
        FrameField(name="x", values=[1, 2, 3]),
        FrameField(name="y", values=["a"]),
    ])

    with pytest.raises(FrameError, match="differing lengths"):
        frame.check()


def test_frame_length():
    assert DataFrame(name="empty").length == 0
    assert DataFrame(name="foo", fields=[FrameField(name="x", values=[1, 2])]).check().length == 2


def test_buffer_defaults_to_replace():
    assert StreamingFrameOptions().action == StreamingFrameAction.REPLACE


@pytest.mark.parametrize("uid", ["", "   "])
def test_settings_require_uid(uid):
    with pytest.raises(ValidationError):
        DataSourceInstanceSettings(uid=uid)


def test_time_range_reads_naive_datetimes_as_utc():
    time_range = TimeRange(**{"from": datetime(2021, 1, 1)}, to=datetime(2021, 1, 1, 1))

    assert time_range.from_ == datetime(2021, 1, 1, tzinfo=timezone.utc)
    assert time_range.to.tzinfo is timezone.utc


def test_time_range_keeps_explicit_offsets():
    plus_two = timezone(timedelta(hours=2))
    time_range = TimeRange(**{"from": datetime(2021, 1, 1, 2, tzinfo=plus_two)}, to=datetime(2021, 1, 1, 3, tzinfo=plus_two))

    assert time_range.from_.utcoffset() == timedelta(hours=2)
    assert time_range.from_.timestamp() == 1609459200
