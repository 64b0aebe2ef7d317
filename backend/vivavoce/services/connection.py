"""
Live Session Connection Management
==================================

``ConnectionManager`` owns the lifecycle of one learner's live conversation as
an explicit finite-state machine::

	Idle --join--> Connecting --joined--> Connected --left/leave--> Ended
	                   |  \\--error/timeout--> Failed
	                   \\--incompatible--> Degraded --left/leave--> Ended
	                                          \\--fallback-failed--> Failed

Every inbound signal goes through ``TRANSITIONS``; a (state, signal) pair that
is not in the table is dropped. ``Ended`` and ``Failed`` have no outgoing
entries, which is what keeps a late "joined" from resurrecting a timed-out
session.

The join is raced against a deadline timer. Both resolve on the event loop,
so whichever callback runs first applies its transition and the other one
finds no entry for its signal.

Transport event subscriptions are held in a ``_Subscriptions`` scope and are
always released *before* the transport is asked to leave, so the transport's
own "left-meeting" echo cannot reach a live handler and fire completion twice.

Rendering is kept out of this module except for ``describe_call``, a pure
function from state to the flags a call screen needs.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import webbrowser
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from ..errors import SessionConnectionError
from ..schemas import ConnectionState, Session

logger = logging.getLogger(__name__)

DEFAULT_JOIN_TIMEOUT = 30.0

JOINED_EVENT = "joined-meeting"
LEFT_EVENT = "left-meeting"
ERROR_EVENT = "error"


class Signal(str, enum.Enum):
	JOIN = "join"
	JOINED = "joined"
	ERROR = "error"
	TIMEOUT = "timeout"
	INCOMPATIBLE = "incompatible"
	FALLBACK_FAILED = "fallback-failed"
	LEFT = "left"
	LEAVE = "leave"


_LIVE = (ConnectionState.IDLE, ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.DEGRADED)

TRANSITIONS: Dict[Tuple[ConnectionState, Signal], ConnectionState] = {
	(ConnectionState.IDLE, Signal.JOIN): ConnectionState.CONNECTING,
	(ConnectionState.CONNECTING, Signal.JOINED): ConnectionState.CONNECTED,
	(ConnectionState.CONNECTING, Signal.ERROR): ConnectionState.FAILED,
	(ConnectionState.CONNECTING, Signal.TIMEOUT): ConnectionState.FAILED,
	(ConnectionState.CONNECTING, Signal.INCOMPATIBLE): ConnectionState.DEGRADED,
	(ConnectionState.DEGRADED, Signal.FALLBACK_FAILED): ConnectionState.FAILED,
	(ConnectionState.CONNECTED, Signal.LEFT): ConnectionState.ENDED,
	(ConnectionState.DEGRADED, Signal.LEFT): ConnectionState.ENDED,
	**{(state, Signal.LEAVE): ConnectionState.ENDED for state in _LIVE},
}


class TransportError(Exception):
	def __init__(self, message: str, *, reason: Optional[str] = None) -> None:
		super().__init__(message)
		self.reason = reason


class Transport(Protocol):
	"""Embedded real-time transport (call frame)."""

	async def join(self, room_handle: str) -> None: ...

	async def leave(self) -> None: ...

	def set_local_audio(self, enabled: bool) -> None: ...

	def set_local_video(self, enabled: bool) -> None: ...

	def on(self, event: str, handler: Callable[[Any], None]) -> None: ...

	def off(self, event: str, handler: Callable[[Any], None]) -> None: ...


class FallbackSurface(Protocol):
	def open(self, room_handle: str) -> bool: ...


class BrowserFallback:
	"""Opens the room in a new top-level browser window."""

	def open(self, room_handle: str) -> bool:
		return webbrowser.open_new(room_handle)


_INCOMPATIBLE_HINTS = ("postmessage", "cross-origin", "securityerror", "blocked by browser", "x-frame-options")
_PERMISSION_HINTS = ("notallowederror", "permission", "denied")
_NETWORK_HINTS = ("network", "connection", "unreachable", "dns")


def classify_transport_error(error: Any) -> str:
	"""Map a transport failure onto a ``SessionConnectionError`` reason code."""
	if isinstance(error, TransportError) and error.reason:
		return error.reason
	if isinstance(error, PermissionError):
		return "permission-denied"
	if isinstance(error, asyncio.TimeoutError):
		return "timeout"
	if isinstance(error, dict):
		text = f"{error.get('type', '')} {error.get('errorMsg', '')} {error.get('message', '')}"
	else:
		text = f"{type(error).__name__} {error}"
	text = text.lower()
	if any(h in text for h in _INCOMPATIBLE_HINTS):
		return "transport-incompatible"
	if any(h in text for h in _PERMISSION_HINTS):
		return "permission-denied"
	if isinstance(error, OSError) or any(h in text for h in _NETWORK_HINTS):
		return "network"
	return "unknown"


class _Subscriptions:
	"""Transport handlers registered together and released together."""

	def __init__(self, transport: Transport, handlers: Dict[str, Callable[[Any], None]]) -> None:
		self._transport = transport
		self._handlers = dict(handlers)
		for event, handler in self._handlers.items():
			transport.on(event, handler)

	def release(self) -> None:
		handlers, self._handlers = self._handlers, {}
		for event, handler in handlers.items():
			try:
				self._transport.off(event, handler)
			except Exception as err:
				logger.warning("Failed to remove %s handler: %s", event, err)


class ConnectionManager:
	"""Drives one ``Session`` from Idle to a terminal state.

	Args:
		session: The session to drive; its ``connection_state`` is written only here.
		transport: Embedded transport used for the first join attempt.
		fallback: Surface opened when the embedded transport is incompatible.
		join_timeout: Seconds allowed between join request and "joined".
		on_ended: Called with "local" or "remote" when the session reaches Ended.
		end_remote: Fire-and-forget notifier told to end the provider session on local leave.
		on_state_change: Observer for every applied transition.
	"""

	def __init__(
		self,
		session: Session,
		transport: Transport,
		*,
		fallback: Optional[FallbackSurface] = None,
		join_timeout: float = DEFAULT_JOIN_TIMEOUT,
		on_ended: Optional[Callable[[str], None]] = None,
		end_remote: Optional[Callable[[str], None]] = None,
		on_state_change: Optional[Callable[[ConnectionState], None]] = None,
	) -> None:
		self._session = session
		self._transport = transport
		self._fallback = fallback
		self.join_timeout = join_timeout
		self._on_ended = on_ended
		self._end_remote = end_remote
		self._on_state_change = on_state_change
		self.failure: Optional[SessionConnectionError] = None
		self.muted = False
		self.video_off = False
		self._settled: Optional[asyncio.Event] = None
		self._subscriptions: Optional[_Subscriptions] = None
		self._join_task: Optional[asyncio.Future] = None
		self._deadline: Optional[asyncio.TimerHandle] = None

	@property
	def session(self) -> Session:
		return self._session

	@property
	def state(self) -> ConnectionState:
		return self._session.connection_state

	# ------------------------------------------------------------------
	# State machine core
	# ------------------------------------------------------------------

	def _transition(self, signal: Signal, *, reason: Optional[str] = None, message: str = "") -> bool:
		current = self.state
		target = TRANSITIONS.get((current, signal))
		if target is None:
			logger.debug("Dropping %s signal in state %s", signal.value, current.value)
			return False
		self._session.connection_state = target
		if target is ConnectionState.FAILED:
			self.failure = SessionConnectionError(reason or "unknown", message)
			logger.warning("Session %s failed: %s", self._session.id, self.failure.reason)
		else:
			logger.info("Session %s: %s -> %s", self._session.id, current.value, target.value)
		if target is not ConnectionState.CONNECTING and self._settled is not None:
			self._settled.set()
		if self._on_state_change is not None:
			self._on_state_change(target)
		return True

	# ------------------------------------------------------------------
	# Join
	# ------------------------------------------------------------------

	async def connect(self) -> ConnectionState:
		"""Join the room and wait until the attempt settles.

		Returns ``Connected``, ``Degraded`` (fallback surface opened) or
		``Ended`` (left while connecting).

		Raises:
			SessionConnectionError: the attempt ended in ``Failed``.
		"""
		if not self._transition(Signal.JOIN):
			raise RuntimeError(f"connect() is only valid from idle, not {self.state.value}")
		loop = asyncio.get_running_loop()
		self._settled = asyncio.Event()
		self._subscriptions = _Subscriptions(
			self._transport,
			{JOINED_EVENT: self._handle_joined, LEFT_EVENT: self._handle_left, ERROR_EVENT: self._handle_error},
		)
		self._deadline = loop.call_later(self.join_timeout, self._handle_deadline)
		self._join_task = asyncio.ensure_future(self._transport.join(self._session.room_handle))
		self._join_task.add_done_callback(self._handle_join_done)
		try:
			await self._settled.wait()
		finally:
			self._cancel_deadline()

		if self.state is ConnectionState.DEGRADED:
			self._enter_fallback()
		if self.state is ConnectionState.FAILED:
			self._teardown()
			raise self.failure
		return self.state

	def _handle_deadline(self) -> None:
		self._deadline = None
		self._transition(Signal.TIMEOUT, reason="timeout", message=f"No joined signal within {self.join_timeout:g}s")

	def _handle_join_done(self, task: asyncio.Future) -> None:
		if task.cancelled():
			return
		error = task.exception()
		if error is not None:
			self._signal_error(error)

	def _handle_joined(self, _payload: Any = None) -> None:
		self._transition(Signal.JOINED)

	def _handle_error(self, payload: Any = None) -> None:
		self._signal_error(payload)

	def _signal_error(self, error: Any) -> None:
		reason = classify_transport_error(error)
		if reason == "transport-incompatible":
			self._transition(Signal.INCOMPATIBLE)
		else:
			self._transition(Signal.ERROR, reason=reason, message=str(error))

	def _enter_fallback(self) -> None:
		# The embedded attempt is abandoned before the alternate surface opens
		self._teardown()
		opened = False
		if self._fallback is not None:
			try:
				opened = bool(self._fallback.open(self._session.room_handle))
			except Exception as err:
				logger.warning("Fallback surface failed to open: %s", err)
		if opened:
			logger.info("Session %s continuing in fallback surface", self._session.id)
		else:
			self._transition(
				Signal.FALLBACK_FAILED,
				reason="transport-incompatible",
				message="Embedded transport blocked and no fallback surface could be opened",
			)

	# ------------------------------------------------------------------
	# End of session
	# ------------------------------------------------------------------

	def _handle_left(self, _payload: Any = None) -> None:
		self.handle_remote_end()

	def handle_remote_end(self) -> bool:
		"""Apply a remote hang-up (transport event, or provider status seen by the client)."""
		if not self._transition(Signal.LEFT):
			return False
		self._teardown()
		self._notify_ended("remote")
		return True

	async def leave(self) -> bool:
		"""Local leave: Ended from any live state. Returns False if already terminal."""
		if self.state.terminal:
			return False
		joined = self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED)
		self._teardown()
		self._transition(Signal.LEAVE)
		self._send_end_notification()
		self._notify_ended("local")
		if joined:
			try:
				await self._transport.leave()
			except Exception as err:
				logger.warning("Transport leave failed for session %s: %s", self._session.id, err)
		return True

	def close(self) -> None:
		"""Synchronous teardown for unmount/close.

		Releases subscriptions and timers before returning. A live session is
		moved to Ended and the provider is told to end it, without reporting a
		completion.
		"""
		joined = self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED)
		self._teardown()
		if self.state.terminal:
			return
		self._transition(Signal.LEAVE)
		self._send_end_notification()
		if joined:
			self._leave_in_background()

	def _teardown(self) -> None:
		# Order matters: handlers go first so nothing below can re-enter them
		if self._subscriptions is not None:
			self._subscriptions.release()
		self._cancel_deadline()
		if self._join_task is not None and not self._join_task.done():
			self._join_task.cancel()

	def _cancel_deadline(self) -> None:
		if self._deadline is not None:
			self._deadline.cancel()
			self._deadline = None

	def _notify_ended(self, source: str) -> None:
		if self._on_ended is not None:
			self._on_ended(source)

	def _send_end_notification(self) -> None:
		if self._end_remote is None:
			return
		try:
			self._end_remote(self._session.external_conversation_id)
		except Exception as err:
			logger.warning("End-session notification for %s failed: %s", self._session.external_conversation_id, err)

	def _leave_in_background(self) -> None:
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			return
		task = loop.create_task(self._transport.leave())
		task.add_done_callback(_log_leave_result)

	# ------------------------------------------------------------------
	# Local media
	# ------------------------------------------------------------------

	def toggle_mute(self) -> bool:
		"""Flip the local microphone; a no-op (False) unless Connected."""
		if self.state is not ConnectionState.CONNECTED:
			return False
		self.muted = not self.muted
		self._transport.set_local_audio(not self.muted)
		return True

	def toggle_video(self) -> bool:
		if self.state is not ConnectionState.CONNECTED:
			return False
		self.video_off = not self.video_off
		self._transport.set_local_video(not self.video_off)
		return True


def _log_leave_result(task: asyncio.Task) -> None:
	if not task.cancelled() and task.exception() is not None:
		logger.warning("Background transport leave failed: %s", task.exception())


# ============================================================================
# CALL SCREEN VIEW
# ============================================================================

FAILURE_MESSAGES: Dict[str, str] = {
	"permission-denied": "Camera or microphone access was denied.",
	"network": "We couldn't reach the video service. Check your connection and try again.",
	"timeout": "Connection timed out. You can retry or open the session in a new window.",
	"transport-incompatible": "The video call was blocked by browser security. Open it in a new window instead.",
	"unknown": "Something went wrong while connecting.",
}


@dataclass(frozen=True)
class CallView:
	state: ConnectionState
	headline: str
	show_loading: bool
	show_media: bool
	show_controls: bool
	show_error: bool
	offer_retry: bool
	offer_fallback: bool
	error_reason: Optional[str] = None


def describe_call(state: ConnectionState, failure: Optional[SessionConnectionError] = None) -> CallView:
	"""Every call-screen variant as a function of connection state."""
	if state is ConnectionState.FAILED:
		reason = failure.reason if failure is not None else "unknown"
		return CallView(
			state=state,
			headline=FAILURE_MESSAGES.get(reason, FAILURE_MESSAGES["unknown"]),
			show_loading=False,
			show_media=False,
			show_controls=False,
			show_error=True,
			offer_retry=True,
			offer_fallback=failure.offers_fallback if failure is not None else False,
			error_reason=reason,
		)
	headlines = {
		ConnectionState.IDLE: "Ready to start your session",
		ConnectionState.CONNECTING: "Connecting you with your AI expert...",
		ConnectionState.CONNECTED: "Connected",
		ConnectionState.DEGRADED: "Your session continues in a separate window",
		ConnectionState.ENDED: "Session ended",
	}
	return CallView(
		state=state,
		headline=headlines[state],
		show_loading=state is ConnectionState.CONNECTING,
		show_media=state is ConnectionState.CONNECTED,
		show_controls=state in (ConnectionState.CONNECTED, ConnectionState.DEGRADED),
		show_error=False,
		offer_retry=False,
		offer_fallback=False,
	)
