"""
Tests for the mirroring engine: replay of observed actions and echo suppression.
"""

from __future__ import annotations

import asyncio

import pytest
from conftest import EventCollector, FakeAdapter, FakeConnector, FakeWebSocket, SleepRecorder, wait_until

from xtest_cli.controller import SessionController
from xtest_cli.mirroring import MirrorEngine
from xtest_cli.remote.control_channel import ChannelState, ControlChannel
from xtest_cli.schemas import CommandType, MirrorEvent, MirrorEventKind, RemoteApiError, SessionKind


def navigation(url: str) -> MirrorEvent:
    return MirrorEvent(MirrorEventKind.NAVIGATION, url=url)


class TestMirrorEngine:
    @pytest.mark.asyncio
    async def test_local_navigation_is_mirrored_exactly_once(self):
        local, remote = FakeAdapter(SessionKind.LOCAL), FakeAdapter(SessionKind.REMOTE)
        forward = MirrorEngine(local, remote)
        backward = MirrorEngine(remote, local)
        await forward.start()
        await backward.start()

        local.emit(navigation("https://example.com"))
        await wait_until(lambda: forward.mirrored == 1)
        await asyncio.sleep(0.05)

        assert len(remote.executed) == 1
        command = remote.executed[0]
        assert command.type is CommandType.NAVIGATE
        assert command.params == {"url": "https://example.com"}
        assert command.mirrored is True
        assert local.executed == []
        assert backward.mirrored == 0

        await forward.stop()
        await backward.stop()

    @pytest.mark.asyncio
    async def test_replayed_command_is_not_observed_on_target(self):
        local, remote = FakeAdapter(SessionKind.LOCAL), FakeAdapter(SessionKind.REMOTE)
        engine = MirrorEngine(local, remote)
        await engine.start()

        async with EventCollector(remote) as collector:
            local.emit(navigation("https://example.com"))
            await wait_until(lambda: engine.mirrored == 1)
            remote.emit(navigation("https://other.test"))
            await wait_until(lambda: len(collector.events) == 1)

        assert collector.events[0].url == "https://other.test"
        await engine.stop()

    @pytest.mark.asyncio
    async def test_events_replayed_in_observation_order(self):
        local, remote = FakeAdapter(SessionKind.LOCAL), FakeAdapter(SessionKind.REMOTE)
        engine = MirrorEngine(local, remote)
        await engine.start()

        local.emit(MirrorEvent(MirrorEventKind.CLICK, selector="#search"))
        local.emit(MirrorEvent(MirrorEventKind.INPUT, selector="#q", value="python"))
        local.emit(navigation("https://example.com/results"))
        await wait_until(lambda: engine.mirrored == 3)

        assert [(c.type, c.params) for c in remote.executed] == [
            (CommandType.CLICK, {"selector": "#search"}),
            (CommandType.TYPE, {"selector": "#q", "text": "python"}),
            (CommandType.NAVIGATE, {"url": "https://example.com/results"}),
        ]
        await engine.stop()

    @pytest.mark.asyncio
    async def test_blank_navigation_is_skipped(self):
        local, remote = FakeAdapter(SessionKind.LOCAL), FakeAdapter(SessionKind.REMOTE)
        engine = MirrorEngine(local, remote)
        await engine.start()

        local.emit(navigation("about:blank"))
        local.emit(navigation("https://example.com"))
        await wait_until(lambda: engine.mirrored == 1)

        assert [c.params["url"] for c in remote.executed] == ["https://example.com"]
        await engine.stop()

    @pytest.mark.asyncio
    async def test_replay_failure_is_counted_and_mirroring_continues(self):
        local, remote = FakeAdapter(SessionKind.LOCAL), FakeAdapter(SessionKind.REMOTE)
        remote.failures.append(RemoteApiError(500, "browser crashed"))
        engine = MirrorEngine(local, remote)
        await engine.start()

        local.emit(MirrorEvent(MirrorEventKind.CLICK, selector="#a"))
        local.emit(MirrorEvent(MirrorEventKind.CLICK, selector="#b"))
        await wait_until(lambda: engine.mirrored + engine.failed == 2)

        assert engine.failed == 1
        assert engine.mirrored == 1
        assert engine.running is True
        await engine.stop()

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self):
        local, remote = FakeAdapter(SessionKind.LOCAL), FakeAdapter(SessionKind.REMOTE)
        engine = MirrorEngine(local, remote)
        await engine.start()
        assert local.subscriber_count == 1

        await engine.stop()
        await engine.stop()

        assert local.subscriber_count == 0
        assert engine.running is False
        local.emit(navigation("https://example.com"))
        await asyncio.sleep(0.02)
        assert remote.executed == []

    @pytest.mark.asyncio
    async def test_events_dropped_while_channel_closed(self):
        local, remote = FakeAdapter(SessionKind.LOCAL), FakeAdapter(SessionKind.REMOTE)
        channel_open = False
        engine = MirrorEngine(local, remote, is_open=lambda: channel_open)
        await engine.start()

        local.emit(navigation("https://offline.test"))
        await wait_until(lambda: engine.dropped == 1)
        channel_open = True
        local.emit(navigation("https://online.test"))
        await wait_until(lambda: engine.mirrored == 1)

        assert [c.params["url"] for c in remote.executed] == ["https://online.test"]
        assert engine.failed == 0
        await engine.stop()


class TestControllerMirroring:
    @pytest.mark.asyncio
    async def test_mirror_mode_replays_local_actions_to_remote(self, config):
        channel = ControlChannel(
            "http://xtest.local",
            "test-key",
            "cli-test",
            mode="mirror",
            connect=FakeConnector(FakeWebSocket()),
            sleep=SleepRecorder(),
        )
        local, remote = FakeAdapter(SessionKind.LOCAL), FakeAdapter(SessionKind.REMOTE)
        controller = SessionController(
            config, "both", mirror=True, local_adapter=local, remote_adapter=remote, channel=channel
        )
        await controller.start()
        assert await channel.wait_open(timeout=2.0)

        result = await controller.navigate("local", "https://example.com")
        await wait_until(lambda: len(remote.executed) == 1)

        assert result.local.success is True
        assert remote.executed[0].params == {"url": "https://example.com"}
        assert remote.executed[0].mirrored is True
        assert controller.status_payload()["mirroring"] is True

        await controller.stop()
        assert controller.mirror is None

    @pytest.mark.asyncio
    async def test_local_actions_not_mirrored_while_reconnecting(self, config):
        never = asyncio.Event()

        async def blocking_sleep(delay: float) -> None:
            await never.wait()

        websocket = FakeWebSocket()
        channel = ControlChannel(
            "http://xtest.local",
            "test-key",
            "cli-test",
            mode="mirror",
            connect=FakeConnector(websocket),
            sleep=blocking_sleep,
        )
        local, remote = FakeAdapter(SessionKind.LOCAL), FakeAdapter(SessionKind.REMOTE)
        controller = SessionController(
            config, "both", mirror=True, local_adapter=local, remote_adapter=remote, channel=channel
        )
        await controller.start()
        assert await channel.wait_open(timeout=2.0)

        websocket.drop()
        await wait_until(lambda: channel.state is ChannelState.RECONNECTING)
        local.emit(navigation("https://example.com"))
        local.emit(MirrorEvent(MirrorEventKind.CLICK, selector="#buy"))
        await wait_until(lambda: controller.mirror.dropped == 2)

        assert remote.executed == []
        assert controller.mirror.mirrored == 0
        await controller.stop()
        assert channel.state is ChannelState.DISCONNECTED
