#!/usr/bin/env python3
"""Tests for HeaderListener.

The websocket is replaced by an in-memory fake that replays scripted
frames, so the subscription handshake and dispatch run unchanged.
"""

import asyncio
import json
import unittest
from unittest.mock import AsyncMock

import pytest

from glin_explorer.errors import ChainConnectionError
from glin_explorer.utils.header_listener import HeaderListener, parse_header_number


class FakeWebSocket:
    """Scripted websocket: ``recv`` and iteration read from one queue."""

    def __init__(self, frames=None, hold_open=False):
        self.sent = []
        self.frames = asyncio.Queue()
        for frame in frames or []:
            self.frames.put_nowait(frame)
        self.hold_open = hold_open
        self.closed = asyncio.Event()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed.set()

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def recv(self):
        return await self.frames.get()

    async def close(self):
        self.closed.set()

    def __aiter__(self):
        return self

    async def __anext__(self):
        while self.frames.empty():
            if not self.hold_open or self.closed.is_set():
                raise StopAsyncIteration
            await asyncio.sleep(0.01)
        return self.frames.get_nowait()


def new_head(subscription, number):
    return json.dumps({
        "jsonrpc": "2.0",
        "method": "chain_newHead",
        "params": {"subscription": subscription, "result": {"number": hex(number), "parentHash": "0x00"}}
    })


SUBSCRIBED = json.dumps({"jsonrpc": "2.0", "id": 1, "result": "sub-1"})


class TestParseHeaderNumber:
    """Tests for parse_header_number."""

    @pytest.mark.parametrize("raw, expected", [("0x1a", 26), (26, 26), ("26", 26), ("0x0", 0)])
    def test_valid(self, raw, expected):
        assert parse_header_number({"number": raw}) == expected

    @pytest.mark.parametrize("raw", [True, None, 1.5, "0xzz"])
    def test_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_header_number({"number": raw})

    def test_missing(self):
        with pytest.raises(KeyError):
            parse_header_number({})


class TestHeaderListener(unittest.IsolatedAsyncioTestCase):
    """Test cases for the subscription session."""

    def make_listener(self, websocket):
        self.connect_calls = []

        def connect_fn(url, **kwargs):
            self.connect_calls.append((url, kwargs))
            return websocket

        return HeaderListener("ws://127.0.0.1:9944", subscribe_timeout=1.0, connect_fn=connect_fn)

    async def test_dispatches_headers_for_own_subscription(self):
        websocket = FakeWebSocket([SUBSCRIBED, new_head("sub-1", 5), new_head("other", 6), new_head("sub-1", 7)])
        listener = self.make_listener(websocket)
        callback = AsyncMock()
        subscribed = []

        with self.assertRaises(ChainConnectionError):
            await listener.listen(callback, on_subscribed=lambda: subscribed.append(True))

        assert subscribed == [True]
        assert [call.args[0]["number"] for call in callback.await_args_list] == ["0x5", "0x7"]
        assert listener.headers_received == 2
        assert websocket.sent[0]["method"] == "chain_subscribeNewHeads"
        assert self.connect_calls[0][0] == "ws://127.0.0.1:9944"

    async def test_ignores_frames_before_subscription_response(self):
        notice = json.dumps({"jsonrpc": "2.0", "id": 99, "result": True})
        websocket = FakeWebSocket([notice, SUBSCRIBED])
        listener = self.make_listener(websocket)

        with self.assertRaises(ChainConnectionError, msg="Header stream closed by node"):
            await listener.listen(AsyncMock())

    async def test_subscription_rejected(self):
        rejected = json.dumps({"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "Method not found"}})
        listener = self.make_listener(FakeWebSocket([rejected]))

        with self.assertRaisesRegex(ChainConnectionError, "Subscription rejected"):
            await listener.listen(AsyncMock())

    async def test_connection_refused(self):
        def refuse(url, **kwargs):
            raise ConnectionRefusedError("refused")

        listener = HeaderListener("ws://127.0.0.1:1", connect_fn=refuse)

        with self.assertRaisesRegex(ChainConnectionError, "Header stream failed"):
            await listener.listen(AsyncMock())

    async def test_stop_ends_session_cleanly(self):
        websocket = FakeWebSocket([SUBSCRIBED], hold_open=True)
        listener = self.make_listener(websocket)
        session = asyncio.create_task(listener.listen(AsyncMock()))

        while listener.subscription_id is None:
            await asyncio.sleep(0.01)
        await listener.stop()
        await asyncio.wait_for(session, timeout=1.0)

        assert websocket.sent[-1] == {
            "jsonrpc": "2.0",
            "id": 2,
            "method": "chain_unsubscribeNewHeads",
            "params": ["sub-1"]
        }
        assert websocket.closed.is_set()

    async def test_callback_errors_do_not_end_session(self):
        listener = self.make_listener(FakeWebSocket())
        listener.subscription_id = "sub-1"
        listener.header_callback = AsyncMock(side_effect=RuntimeError("boom"))

        await listener._handle_message(new_head("sub-1", 1))
        await listener._handle_message("not json")
        await listener._handle_message(json.dumps({"jsonrpc": "2.0", "id": 2, "result": True}))

        assert listener.headers_received == 1
