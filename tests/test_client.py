import asyncio

import pytest

from relayhub.client import ClientState, ConnectionState, ReconnectionController, backoff_delay
from relayhub.errors import NotConnectedError
from relayhub.history import ChatMessage


def _wire(i, client="peer"):
    return {"type": "message", "content": f"m{i}", "clientId": client, "timestamp": f"2024-01-01T00:00:{i:02d}.000Z"}


def test_backoff_schedule_in_milliseconds():
    assert [backoff_delay(n, 3.0) * 1000 for n in range(1, 6)] == [3000, 6000, 12000, 24000, 48000]


class RecordingCache:
    def __init__(self):
        self.added = []
        self.cleared = 0
        self.stored = []

    def add_message(self, msg):
        self.added.append(msg)

    def get_messages(self, limit=50):
        return self.stored[:limit]

    def clear_messages(self):
        self.cleared += 1


class BrokenCache(RecordingCache):
    def add_message(self, msg):
        raise OSError("disk full")


class TestClientState:
    def test_connected_envelope_seeds_state(self):
        state = ClientState()
        state.apply({"type": "connected", "clientId": "me", "userCount": 3, "recentMessages": [_wire(1), _wire(2)]})
        assert state.client_id == "me"
        assert state.user_count == 3
        assert [m.content for m in state.messages] == ["m2", "m1"]

    def test_messages_are_newest_first_and_capped(self):
        cache = RecordingCache()
        state = ClientState(cache=cache)
        for i in range(105):
            state.apply(_wire(i % 60))
        assert len(state.messages) == 100
        assert state.messages[0].content == "m44"
        assert len(cache.added) == 105

    def test_incomplete_or_unknown_envelopes_are_ignored(self):
        state = ClientState()
        assert state.apply({"type": "message", "content": "no sender"}) is False
        assert state.apply({"type": "status"}) is False
        assert state.apply({"type": "userCount"}) is False
        assert state.apply({"type": "userCount", "count": 7}) is True
        assert state.user_count == 7
        assert state.messages == []

    def test_cache_failure_does_not_break_apply(self):
        state = ClientState(cache=BrokenCache())
        assert state.apply(_wire(1)) is True
        assert [m.content for m in state.messages] == ["m1"]

    def test_clear_messages_clears_cache(self):
        cache = RecordingCache()
        state = ClientState(cache=cache)
        state.apply(_wire(1))
        state.clear_messages()
        assert state.messages == []
        assert cache.cleared == 1

    @pytest.mark.asyncio
    async def test_load_cached_replays_newest_fifty(self):
        cache = RecordingCache()
        cache.stored = [ChatMessage.from_wire(_wire(i)) for i in range(59, -1, -1)]
        state = ClientState(cache=cache)
        assert await state.load_cached() == 50
        assert state.messages[0].content == "m59"
        assert state.messages[-1].content == "m10"


class TestReconnectionController:
    @pytest.mark.asyncio
    async def test_gives_up_after_five_retries(self):
        calls = []
        exhausted = asyncio.Event()

        async def refuse(url):
            calls.append(url)
            raise OSError("connection refused")

        ctl = ReconnectionController("ws://hub/ws", base_delay=0.001, connector=refuse, on_exhausted=exhausted.set)
        ctl.connect()
        await asyncio.wait_for(exhausted.wait(), timeout=2.0)

        assert len(calls) == 6
        assert ctl.exhausted
        assert ctl.attempt == 5
        assert not ctl.reconnect_pending
        assert ctl.status is ConnectionState.DISCONNECTED

        await asyncio.sleep(0.05)
        assert len(calls) == 6

    @pytest.mark.asyncio
    async def test_manual_connect_after_exhaustion_starts_over(self, client_connection_factory, until):
        conn = client_connection_factory()
        outcomes = [OSError("down")] * 6 + [conn]
        exhausted = asyncio.Event()

        async def connector(url):
            result = outcomes.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        ctl = ReconnectionController("ws://hub/ws", base_delay=0.001, connector=connector, on_exhausted=exhausted.set)
        ctl.connect()
        await asyncio.wait_for(exhausted.wait(), timeout=2.0)

        ctl.connect()
        await until(lambda: ctl.connected)
        assert not ctl.exhausted
        assert ctl.attempt == 0
        await ctl.aclose()

    @pytest.mark.asyncio
    async def test_connect_is_a_no_op_while_connecting(self):
        calls = []
        gate = asyncio.Event()

        async def slow(url):
            calls.append(url)
            await gate.wait()
            raise OSError("never mind")

        ctl = ReconnectionController("ws://hub/ws", base_delay=10, connector=slow)
        ctl.connect()
        await asyncio.sleep(0)
        ctl.connect()
        ctl.connect()
        await asyncio.sleep(0.01)

        assert len(calls) == 1
        assert ctl.status is ConnectionState.CONNECTING
        ctl.disconnect()
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_send_while_disconnected_fails_immediately(self):
        ctl = ReconnectionController("ws://hub/ws")
        with pytest.raises(NotConnectedError):
            await ctl.send("hello")
        with pytest.raises(NotConnectedError):
            await ctl.ping()

    @pytest.mark.asyncio
    async def test_connected_session_dispatches_and_sends(self, client_connection_factory, until):
        conn = client_connection_factory()
        seen = []
        flips = []

        async def connector(url):
            return conn

        ctl = ReconnectionController("ws://hub/ws", connector=connector)
        ctl.on("message", seen.append)
        ctl.on_connection_change(flips.append)
        ctl.connect()
        await until(lambda: ctl.connected)

        conn.feed({"type": "connected", "clientId": "me", "userCount": 2, "recentMessages": []})
        conn.feed(_wire(1))
        conn.feed({"type": "pong"})
        await until(lambda: ctl.last_pong is not None)

        assert ctl.state.client_id == "me"
        assert ctl.state.user_count == 2
        assert ctl.state.connected is True
        assert [m["content"] for m in seen] == ["m1"]

        await ctl.send("hi there")
        assert conn.sent == [{"type": "message", "content": "hi there"}]

        await ctl.aclose()
        assert conn.closed
        assert flips == [True, False]
        assert not ctl.reconnect_pending

    @pytest.mark.asyncio
    async def test_lost_connection_retries_with_reset_counter(self, client_connection_factory, until):
        first, second = client_connection_factory(), client_connection_factory()
        outcomes = [first, OSError("blip"), second]

        async def connector(url):
            result = outcomes.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        ctl = ReconnectionController("ws://hub/ws", base_delay=0.001, connector=connector)
        ctl.connect()
        await until(lambda: ctl.connected)
        assert ctl.attempt == 0

        first.drop()
        await until(lambda: ctl.connected and not outcomes)

        assert ctl.attempt == 0
        assert first.closed
        await ctl.aclose()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_retry(self):
        calls = []

        async def refuse(url):
            calls.append(url)
            raise OSError("refused")

        ctl = ReconnectionController("ws://hub/ws", base_delay=0.05, connector=refuse)
        ctl.connect()
        await asyncio.sleep(0.01)
        assert ctl.reconnect_pending

        ctl.disconnect()
        assert not ctl.reconnect_pending
        await asyncio.sleep(0.1)
        assert len(calls) == 1
        assert ctl.status is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_failing_handler_keeps_connection_alive(self, client_connection_factory, until):
        conn = client_connection_factory()
        counts = []

        def broken_ui(envelope):
            raise ValueError("ui bug")

        async def connector(url):
            return conn

        ctl = ReconnectionController("ws://hub/ws", connector=connector)
        ctl.on("userCount", broken_ui)
        ctl.on("message", counts.append)
        ctl.connect()
        await until(lambda: ctl.connected)

        conn.feed({"type": "userCount", "count": 3})
        conn.feed(_wire(1))
        await until(lambda: counts)

        assert ctl.status is ConnectionState.CONNECTED
        assert ctl.state.user_count == 3
        await ctl.send("still here")
        assert conn.sent == [{"type": "message", "content": "still here"}]
        await ctl.aclose()

    @pytest.mark.asyncio
    async def test_unexpected_read_error_schedules_reconnect(self, client_connection_factory, until):
        conn = client_connection_factory()
        calls = []

        async def connector(url):
            calls.append(url)
            return conn

        ctl = ReconnectionController("ws://hub/ws", base_delay=10, connector=connector)
        ctl.connect()
        await until(lambda: ctl.connected)

        conn.incoming.put_nowait(RuntimeError("decoder blew up"))
        await until(lambda: ctl.reconnect_pending)

        assert ctl.status is ConnectionState.DISCONNECTED
        assert ctl.attempt == 1
        assert conn.closed
        ctl.disconnect()

    @pytest.mark.asyncio
    async def test_invalid_utf8_from_hub_is_dropped(self, client_connection_factory, until):
        conn = client_connection_factory()

        async def connector(url):
            return conn

        ctl = ReconnectionController("ws://hub/ws", connector=connector)
        ctl.connect()
        await until(lambda: ctl.connected)

        conn.incoming.put_nowait(b'{"type":"message","content":"\xff\xfe","clientId":"p","timestamp":"t"}')
        conn.feed({"type": "pong"})
        await until(lambda: ctl.last_pong is not None)

        assert ctl.state.messages == []
        assert ctl.connected
        await ctl.aclose()

    @pytest.mark.asyncio
    async def test_disconnect_closes_transport_before_returning(self, client_connection_factory, until):
        class Transport:
            closed = False

            def close(self):
                self.closed = True

        conn = client_connection_factory()
        conn.transport = Transport()

        async def connector(url):
            return conn

        ctl = ReconnectionController("ws://hub/ws", connector=connector)
        ctl.connect()
        await until(lambda: ctl.connected)

        task = ctl._task
        ctl.disconnect()

        assert conn.transport.closed
        assert ctl.status is ConnectionState.DISCONNECTED
        with pytest.raises(NotConnectedError):
            await ctl.send("too late")
        await asyncio.gather(task, return_exceptions=True)
        assert conn.closed
