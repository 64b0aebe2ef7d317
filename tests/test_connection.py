from __future__ import annotations

import asyncio
from typing import List

import pytest

from vivavoce.errors import SessionConnectionError
from vivavoce.schemas import ConnectionState, Session, SessionMode
from vivavoce.services.completion import CompletionDetector
from vivavoce.services.connection import (
	TRANSITIONS,
	ConnectionManager,
	TransportError,
	classify_transport_error,
	describe_call,
)

from fakes import FakeFallback, FakeTransport

ROOM = "https://tavus.daily.co/c-1"


def _session() -> Session:
	return Session(id="conv-1", room_handle=ROOM, mode=SessionMode.EXAM, external_conversation_id="c-1")


def _manager(transport: FakeTransport, log: List[str], **kwargs) -> ConnectionManager:
	return ConnectionManager(
		_session(),
		transport,
		on_ended=lambda source: log.append(f"ended:{source}"),
		end_remote=lambda cid: log.append(f"beacon:{cid}"),
		**kwargs,
	)


def test_join_reaches_connected() -> None:
	log: List[str] = []
	transport = FakeTransport(log=log)
	manager = _manager(transport, log)

	state = asyncio.run(manager.connect())

	assert state is ConnectionState.CONNECTED
	assert manager.session.connection_state is ConnectionState.CONNECTED
	assert transport.subscribed


def test_join_timeout_fails_with_fallback_offer() -> None:
	log: List[str] = []
	transport = FakeTransport(auto_join=False, log=log)
	manager = _manager(transport, log, join_timeout=0.05)

	with pytest.raises(SessionConnectionError) as excinfo:
		asyncio.run(manager.connect())

	assert excinfo.value.reason == "timeout"
	assert excinfo.value.offers_fallback
	assert manager.state is ConnectionState.FAILED
	assert not transport.subscribed
	view = describe_call(manager.state, manager.failure)
	assert view.show_error and view.offer_retry and view.offer_fallback


def test_late_joined_signal_does_not_resurrect_failed_session() -> None:
	log: List[str] = []
	transport = FakeTransport(join_delay=0.2, log=log)
	manager = _manager(transport, log, join_timeout=0.05)

	async def scenario() -> None:
		with pytest.raises(SessionConnectionError):
			await manager.connect()
		await asyncio.sleep(0.3)
		manager._handle_joined()
		assert manager.handle_remote_end() is False

	asyncio.run(scenario())

	assert manager.state is ConnectionState.FAILED
	assert not any(entry.startswith("ended") for entry in log)


def test_terminal_states_have_no_outgoing_transitions() -> None:
	for (state, _signal), _target in TRANSITIONS.items():
		assert not state.terminal


def test_transport_error_fails_with_reason() -> None:
	log: List[str] = []
	manager = _manager(FakeTransport(join_error=PermissionError("NotAllowedError: Permission denied"), log=log), log)

	with pytest.raises(SessionConnectionError) as excinfo:
		asyncio.run(manager.connect())

	assert excinfo.value.reason == "permission-denied"
	assert not excinfo.value.offers_fallback


def test_incompatible_transport_degrades_to_fallback_surface() -> None:
	log: List[str] = []
	transport = FakeTransport(join_error=TransportError("Failed to execute 'postMessage' on 'DOMWindow'"), log=log)
	fallback = FakeFallback()
	manager = _manager(transport, log, fallback=fallback)

	async def scenario() -> None:
		assert await manager.connect() is ConnectionState.DEGRADED
		assert fallback.opened == [ROOM]
		assert not transport.subscribed
		assert describe_call(manager.state).show_controls
		assert manager.toggle_mute() is False
		assert await manager.leave() is True

	asyncio.run(scenario())

	assert manager.state is ConnectionState.ENDED
	assert log.count("ended:local") == 1
	assert "beacon:c-1" in log
	# The abandoned embedded frame is not asked to leave
	assert "leave" not in log


def test_incompatible_transport_without_fallback_fails() -> None:
	log: List[str] = []
	transport = FakeTransport(join_error=TransportError("blocked", reason="transport-incompatible"), log=log)
	manager = _manager(transport, log, fallback=FakeFallback(opens=False))

	with pytest.raises(SessionConnectionError) as excinfo:
		asyncio.run(manager.connect())

	assert excinfo.value.reason == "transport-incompatible"
	assert manager.state is ConnectionState.FAILED


def test_leave_tears_down_subscriptions_before_transport_leave() -> None:
	log: List[str] = []
	transport = FakeTransport(log=log)
	manager = _manager(transport, log)

	async def scenario() -> None:
		await manager.connect()
		await manager.leave()

	asyncio.run(scenario())

	leave_at = log.index("leave")
	assert all(log.index(f"off:{e}") < leave_at for e in ("joined-meeting", "left-meeting", "error"))
	assert log.index("beacon:c-1") < leave_at
	# The frame's own left-meeting echo is not seen as a second end
	assert log.count("ended:local") == 1
	assert not any(entry == "ended:remote" for entry in log)
	assert manager.state is ConnectionState.ENDED


def test_remote_hangup_ends_session() -> None:
	log: List[str] = []
	transport = FakeTransport(log=log)
	manager = _manager(transport, log)

	async def scenario() -> None:
		await manager.connect()
		transport.emit("left-meeting")
		assert await manager.leave() is False

	asyncio.run(scenario())

	assert manager.state is ConnectionState.ENDED
	assert log.count("ended:remote") == 1
	assert "beacon:c-1" not in log


def test_simultaneous_local_and_remote_end_complete_once() -> None:
	completions: List[str] = []
	detector = CompletionDetector(on_complete=completions.append)
	transport = FakeTransport()
	manager = ConnectionManager(_session(), transport, on_ended=detector.signal)

	async def scenario() -> None:
		await manager.connect()
		asyncio.get_running_loop().call_soon(transport.emit, "left-meeting")
		await asyncio.gather(manager.leave(), asyncio.sleep(0))

	asyncio.run(scenario())

	assert len(completions) == 1


def test_media_toggles_only_while_connected() -> None:
	log: List[str] = []
	transport = FakeTransport(log=log)
	manager = _manager(transport, log)

	assert manager.toggle_mute() is False
	assert manager.toggle_video() is False

	async def scenario() -> None:
		await manager.connect()
		assert manager.toggle_mute() is True
		assert manager.toggle_video() is True
		await manager.leave()
		assert manager.toggle_mute() is False

	asyncio.run(scenario())

	assert log.count("audio:False") == 1
	assert log.count("video:False") == 1
	assert manager.muted is True


def test_close_releases_everything_synchronously() -> None:
	log: List[str] = []
	transport = FakeTransport(log=log)
	manager = _manager(transport, log)

	async def scenario() -> None:
		await manager.connect()
		manager.close()
		assert not transport.subscribed
		assert manager.state is ConnectionState.ENDED
		await asyncio.sleep(0)

	asyncio.run(scenario())

	assert "beacon:c-1" in log
	assert not any(entry.startswith("ended") for entry in log)


def test_connect_is_single_use() -> None:
	log: List[str] = []
	manager = _manager(FakeTransport(log=log), log)

	async def scenario() -> None:
		await manager.connect()
		with pytest.raises(RuntimeError):
			await manager.connect()

	asyncio.run(scenario())


@pytest.mark.parametrize(
	"error, reason",
	[
		(TransportError("x", reason="network"), "network"),
		(PermissionError("denied"), "permission-denied"),
		(asyncio.TimeoutError(), "timeout"),
		(ConnectionResetError("reset by peer"), "network"),
		({"type": "SecurityError", "errorMsg": "Blocked a frame with origin from accessing a cross-origin frame"}, "transport-incompatible"),
		({"errorMsg": "NotAllowedError: camera"}, "permission-denied"),
		(ValueError("something odd"), "unknown"),
	],
)
def test_classify_transport_error(error, reason: str) -> None:
	assert classify_transport_error(error) == reason


def test_views_cover_every_state() -> None:
	for state in ConnectionState:
		view = describe_call(state)
		assert view.headline
		assert view.show_loading is (state is ConnectionState.CONNECTING)
		assert view.show_media is (state is ConnectionState.CONNECTED)
		assert view.show_error is (state is ConnectionState.FAILED)
