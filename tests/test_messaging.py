"""NATS broker backend against a mocked nats-py client."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from datasource.shared import messaging
from datasource.shared.messaging import NATSBackend, get_broker


def _client():
    client = MagicMock()
    client.is_closed = False
    client.publish = AsyncMock()
    client.request = AsyncMock()
    client.close = AsyncMock()
    client.subscribe = AsyncMock(side_effect=lambda topic, cb: MagicMock(subject=topic, unsubscribe=AsyncMock()))
    return client


def _message(payload, reply=""):
    msg = MagicMock()
    msg.data = json.dumps(payload).encode()
    msg.reply = reply
    msg.respond = AsyncMock()
    return msg


async def _connected(client):
    backend = NATSBackend(host="nats.local", port=4333)
    with patch("nats.connect", new=AsyncMock(return_value=client)) as connect:
        await backend.connect()
    connect.assert_awaited_once_with(servers=["nats://nats.local:4333"])
    return backend


@pytest.mark.asyncio
async def test_publish_encodes_json():
    client = _client()
    backend = await _connected(client)

    await backend.publish("live.ds.abc.stream", {"frame": None})

    client.publish.assert_awaited_once_with("live.ds.abc.stream", b'{"frame": null}')
    assert await backend.is_connected() is True


@pytest.mark.asyncio
async def test_handler_reply_is_sent_when_message_expects_one():
    client = _client()
    backend = await _connected(client)
    handler = AsyncMock(return_value={"status": "OK"})

    await backend.subscribe("live.control.ds.abc.subscribe", handler)
    callback = client.subscribe.call_args.kwargs["cb"]
    msg = _message({"path": "stream"}, reply="_INBOX.abc")
    await callback(msg)

    handler.assert_awaited_once_with("live.control.ds.abc.subscribe", {"path": "stream"})
    msg.respond.assert_awaited_once_with(b'{"status": "OK"}')


@pytest.mark.asyncio
async def test_handler_reply_is_dropped_without_reply_subject():
    client = _client()
    backend = await _connected(client)

    await backend.subscribe("live.ds.abc.stream", AsyncMock(return_value={"status": "OK"}))
    msg = _message({"frame": None})
    await client.subscribe.call_args.kwargs["cb"](msg)

    msg.respond.assert_not_awaited()


@pytest.mark.asyncio
async def test_handler_errors_do_not_reach_nats():
    client = _client()
    backend = await _connected(client)

    await backend.subscribe("live.ds.abc.stream", AsyncMock(side_effect=ValueError("bad packet")))
    msg = _message({"frame": None}, reply="_INBOX.abc")
    await client.subscribe.call_args.kwargs["cb"](msg)

    msg.respond.assert_not_awaited()


@pytest.mark.asyncio
async def test_unsubscribe_uses_the_matching_subscription():
    client = _client()
    backend = await _connected(client)

    first = await backend.subscribe("live.ds.abc.stream", AsyncMock())
    second = await backend.subscribe("live.ds.abc.other", AsyncMock())
    first_sub = backend._subscriptions[first]
    second_sub = backend._subscriptions[second]

    await backend.unsubscribe(first)
    await backend.unsubscribe(first)

    first_sub.unsubscribe.assert_awaited_once()
    second_sub.unsubscribe.assert_not_awaited()
    assert list(backend._subscriptions) == [second]


@pytest.mark.asyncio
async def test_request_decodes_reply():
    client = _client()
    client.request.return_value = MagicMock(data=b'{"status": "NotFound"}')
    backend = await _connected(client)

    reply = await backend.request("live.control.ds.abc.subscribe", {"path": "nope"}, timeout=0.5)

    assert reply == {"status": "NotFound"}
    client.request.assert_awaited_once_with(
        "live.control.ds.abc.subscribe", b'{"path": "nope"}', timeout=0.5
    )


@pytest.mark.asyncio
async def test_calls_before_connect_are_rejected():
    backend = NATSBackend(host="nats.local", port=4333)

    with pytest.raises(RuntimeError, match="Not connected"):
        await backend.publish("live.ds.abc.stream", {})
    assert await backend.is_connected() is False


@pytest.mark.asyncio
async def test_disconnect_closes_client():
    client = _client()
    backend = await _connected(client)
    await backend.subscribe("live.ds.abc.stream", AsyncMock())

    await backend.disconnect()

    client.close.assert_awaited_once()
    assert backend._subscriptions == {}
    assert await backend.is_connected() is False


@pytest.mark.asyncio
async def test_get_broker_reports_connect_failure(monkeypatch):
    monkeypatch.setattr(messaging, "_broker_instance", None)

    with patch("nats.connect", new=AsyncMock(side_effect=OSError("connection refused"))):
        with pytest.raises(ConnectionError, match="connection refused"):
            await get_broker()

    assert messaging._broker_instance is None


@pytest.mark.asyncio
async def test_get_broker_reuses_connected_instance(monkeypatch):
    monkeypatch.setattr(messaging, "_broker_instance", None)
    client = _client()

    with patch("nats.connect", new=AsyncMock(return_value=client)) as connect:
        first = await get_broker()
        second = await get_broker()

    assert first is second
    connect.assert_awaited_once()
