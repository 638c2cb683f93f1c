# Tests for live sync: server-side broker and client-side event stream
#
# Coverage:
#   - Per-subscriber authorization using the store's access check
#   - Idle heartbeats, also while every event is being denied
#   - Bounded queues: a lagging subscriber is cancelled alone
#   - Session / user / shutdown cancellation
#   - Client reconnect backoff, attempt exhaustion and counter reset
#   - Reconnect policy taken from settings
#   - Authorization failures are never retried
#   - Heartbeats and malformed frames never reach the handler

import asyncio
from contextlib import asynccontextmanager

import pytest

from sealvault.config import Settings
from sealvault.exceptions import AuthorizationError, SyncConnectionLost, TransportError, ValidationError
from sealvault.sync.broker import SyncEventBroker
from sealvault.sync.client import StreamState, SyncEventStream, backoff_delay
from sealvault.sync.events import SyncEventKind, heartbeat_event, make_event, parse_event


async def _take(sub, count=1, timeout=2.0):
    """First `count` events a subscription yields."""
    events = []
    agen = sub.events()
    try:
        while len(events) < count:
            events.append(await asyncio.wait_for(agen.__anext__(), timeout))
    finally:
        await agen.aclose()
    return events


def _allow_all(user_id, event):
    return True


# ── Events ──────────────────────────────────────────────────────────


class TestSyncEvents:

    def test_wire_shape_omits_empty_fields(self):
        wire = make_event(SyncEventKind.BLOB_UPLOAD, actor_user_id="u1", vault_id="v1").to_wire()
        assert wire["type"] == "blob_upload"
        assert wire["vault_id"] == "v1"
        assert "team_id" not in wire
        assert isinstance(wire["t"], int)

    def test_parse_ignores_unknown_fields(self):
        event = parse_event({"t": 1, "type": "team_update", "team_id": "t1", "extra": "x"})
        assert event.type == SyncEventKind.TEAM_UPDATE

    def test_parse_rejects_unknown_type(self):
        with pytest.raises(ValidationError):
            parse_event({"t": 1, "type": "vault_delete"})


# ── Broker ──────────────────────────────────────────────────────────


class TestBroker:

    @pytest.mark.asyncio
    async def test_idle_subscriber_gets_heartbeat(self):
        broker = SyncEventBroker(_allow_all, heartbeat_seconds=0.01)
        sub = broker.subscribe("u1")
        [event] = await _take(sub)
        assert event.is_heartbeat

    @pytest.mark.asyncio
    async def test_non_member_never_receives_member_removal(self, store):
        alice = store.ensure_user("alice")
        bob = store.ensure_user("bob")
        carol = store.ensure_user("carol")
        store.register_keys(bob["id"], "s", "e", "{}", "sig")
        team = store.create_team("Ops", alice["id"], "w", "pk")
        member = store.invite_member(team["team_id"], bob["id"], "viewer", alice["id"], "w")
        store.accept_invite(team["team_id"], bob["id"])

        broker = SyncEventBroker(store.can_receive_event, heartbeat_seconds=0.05)
        alice_sub = broker.subscribe(alice["id"])
        bob_sub = broker.subscribe(bob["id"])
        carol_sub = broker.subscribe(carol["id"])

        store.revoke_member(team["team_id"], member["member_id"])
        removal = make_event(
            SyncEventKind.TEAM_MEMBER_REMOVE,
            actor_user_id=alice["id"],
            team_id=team["team_id"],
            member_id=member["member_id"],
        )
        assert broker.publish(removal) == 3

        assert (await _take(alice_sub))[0] == removal
        assert (await _take(bob_sub))[0] == removal
        [carol_first] = await _take(carol_sub)
        assert carol_first.is_heartbeat
        assert carol_sub.dropped == 1

    @pytest.mark.asyncio
    async def test_access_is_checked_at_delivery_time(self, store):
        alice = store.ensure_user("alice")
        bob = store.ensure_user("bob")
        vault = store.create_personal_vault(alice["id"], "w")
        share = store.create_share(vault["id"], "w", "read", alice["id"], target_user_id=bob["id"])

        broker = SyncEventBroker(store.can_receive_event, heartbeat_seconds=0.05)
        bob_sub = broker.subscribe(bob["id"])
        broker.publish(make_event(SyncEventKind.BLOB_UPLOAD, vault_id=vault["id"]))
        store.revoke_share(share["id"])

        [first] = await _take(bob_sub)
        assert first.is_heartbeat

    @pytest.mark.asyncio
    async def test_lagging_subscriber_is_cancelled_alone(self):
        broker = SyncEventBroker(_allow_all, heartbeat_seconds=5, queue_size=2)
        fast = broker.subscribe("fast")
        slow = broker.subscribe("slow")

        broker.publish(make_event(SyncEventKind.BLOB_UPLOAD, vault_id="v1"))
        broker.publish(make_event(SyncEventKind.BLOB_UPLOAD, vault_id="v2"))
        drained = await _take(fast, count=2)
        assert [e.vault_id for e in drained] == ["v1", "v2"]

        accepted = broker.publish(make_event(SyncEventKind.BLOB_UPLOAD, vault_id="v3"))
        assert accepted == 1
        assert slow.cancelled and slow.close_reason == "lagged"
        assert not fast.cancelled
        assert [e.vault_id for e in await _take(fast)] == ["v3"]

    @pytest.mark.asyncio
    async def test_cancelled_subscription_ends_iteration(self):
        broker = SyncEventBroker(_allow_all, heartbeat_seconds=5)
        sub = broker.subscribe("u1")
        sub.cancel("test")
        assert [e async for e in sub.events()] == []

    @pytest.mark.asyncio
    async def test_failing_access_check_drops_event(self):
        def explode(user_id, event):
            raise RuntimeError("db down")

        broker = SyncEventBroker(explode, heartbeat_seconds=0.01)
        sub = broker.subscribe("u1")
        broker.publish(make_event(SyncEventKind.TEAM_UPDATE, team_id="t1"))
        [event] = await _take(sub)
        assert event.is_heartbeat
        assert sub.dropped == 1

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_interval_while_events_are_denied(self):
        broker = SyncEventBroker(lambda user_id, event: False, heartbeat_seconds=0.2)
        sub = broker.subscribe("outsider")

        async def publish_denied():
            for n in range(20):
                broker.publish(make_event(SyncEventKind.BLOB_UPLOAD, vault_id=f"v{n}"))
                await asyncio.sleep(0.05)

        publisher = asyncio.create_task(publish_denied())
        try:
            frames = await _take(sub, count=2, timeout=0.6)
        finally:
            publisher.cancel()

        assert all(frame.is_heartbeat for frame in frames)
        assert sub.dropped > 0

    def test_close_session_and_user(self):
        broker = SyncEventBroker(_allow_all)
        a1 = broker.subscribe("alice", session_id="s1")
        a2 = broker.subscribe("alice", session_id="s2")
        b1 = broker.subscribe("bob", session_id="s3")

        assert broker.close_session("s1") == 1
        assert a1.cancelled and not a2.cancelled
        assert broker.close_user("alice") == 2
        assert a2.close_reason == "user_closed"
        assert not b1.cancelled

        broker.close()
        assert b1.close_reason == "shutdown"
        assert broker.subscriber_count == 0

    def test_unsubscribe(self):
        broker = SyncEventBroker(_allow_all)
        sub = broker.subscribe("u1")
        broker.unsubscribe(sub)
        assert broker.subscriber_count == 0
        assert broker.publish(heartbeat_event()) == 0


# ── Client stream ───────────────────────────────────────────────────


class ScriptedOpener:
    """Opener whose successive connections follow a script.

    Each step is an exception to raise on connect or a list of raw event
    dicts to stream before the server closes. Once the script runs out
    every connect fails.
    """

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        step = self.steps.pop(0) if self.steps else TransportError("server down")
        return self._connect(step)

    @asynccontextmanager
    async def _connect(self, step):
        if isinstance(step, BaseException):
            raise step

        async def frames():
            for item in step:
                yield item

        yield frames()


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _raw(kind="blob_upload", **fields):
    return {"t": 1_700_000_000_000, "type": kind, **fields}


class TestBackoff:

    def test_doubles_then_caps(self):
        assert [backoff_delay(n, 1.0, 30.0) for n in range(7)] == [1, 2, 4, 8, 16, 30, 30]


class TestSyncEventStream:

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        opener, sleep = ScriptedOpener(), FakeSleep()
        states = []
        stream = SyncEventStream(opener, max_attempts=5, sleep=sleep, on_state_change=states.append)

        with pytest.raises(SyncConnectionLost):
            await stream.run(lambda event: None)

        assert sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert opener.calls == 6
        assert stream.state == StreamState.CLOSED
        assert states[0] == StreamState.CONNECTING
        assert states[-1] == StreamState.CLOSED
        assert StreamState.RECONNECTING in states

    @pytest.mark.asyncio
    async def test_successful_connect_resets_attempts(self):
        received = []
        opener = ScriptedOpener(
            TransportError("blip"),
            TransportError("blip"),
            [_raw(vault_id="v1")],
        )
        sleep = FakeSleep()
        stream = SyncEventStream(opener, max_attempts=2, sleep=sleep)

        with pytest.raises(SyncConnectionLost):
            await stream.run(received.append)

        assert sleep.delays == [1.0, 2.0, 1.0, 2.0]
        assert [e.vault_id for e in received] == ["v1"]

    @pytest.mark.asyncio
    async def test_authorization_error_is_not_retried(self):
        opener, sleep = ScriptedOpener(AuthorizationError("session revoked")), FakeSleep()
        stream = SyncEventStream(opener, sleep=sleep)

        with pytest.raises(AuthorizationError):
            await stream.run(lambda event: None)

        assert opener.calls == 1
        assert sleep.delays == []
        assert stream.state == StreamState.CLOSED

    @pytest.mark.asyncio
    async def test_heartbeats_and_garbage_are_filtered(self):
        received = []

        async def handler(event):
            received.append(event)

        opener = ScriptedOpener([
            _raw("heartbeat"),
            {"type": "nonsense"},
            _raw("team_update", team_id="t1"),
        ])
        stream = SyncEventStream(opener, max_attempts=0, sleep=FakeSleep())

        with pytest.raises(SyncConnectionLost):
            await stream.run(handler)

        assert [e.type for e in received] == [SyncEventKind.TEAM_UPDATE]
        assert stream.last_heartbeat_ms == 1_700_000_000_000

    @pytest.mark.asyncio
    async def test_close_stops_background_stream(self):
        hang = asyncio.Event()

        @asynccontextmanager
        async def opener():
            async def frames():
                await hang.wait()
                yield _raw()

            yield frames()

        stream = SyncEventStream(opener, sleep=FakeSleep())
        task = stream.start(lambda event: None)
        for _ in range(50):
            if stream.state == StreamState.STREAMING:
                break
            await asyncio.sleep(0)
        assert stream.state == StreamState.STREAMING

        await stream.close()
        assert task.done()
        assert stream.state == StreamState.CLOSED

    @pytest.mark.asyncio
    async def test_policy_from_settings(self):
        settings = Settings(sync_max_reconnects=2, sync_base_delay=0.5, sync_max_delay=1.0)
        opener, sleep = ScriptedOpener(), FakeSleep()
        stream = SyncEventStream.from_settings(opener, settings, sleep=sleep)

        with pytest.raises(SyncConnectionLost):
            await stream.run(lambda event: None)

        assert sleep.delays == [0.5, 1.0]
        assert opener.calls == 3

    def test_reconnect_policy_read_from_environment(self):
        settings = Settings.from_env({
            "SEALVAULT_TOKEN_SECRET": "x" * 32,
            "SEALVAULT_SYNC_MAX_RECONNECTS": "3",
            "SEALVAULT_SYNC_BASE_DELAY": "0.25",
            "SEALVAULT_SYNC_MAX_DELAY": "4",
        })
        assert settings.sync_max_reconnects == 3
        assert settings.sync_base_delay == 0.25
        assert settings.sync_max_delay == 4.0
