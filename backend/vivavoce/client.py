"""
Learner Client
==============

``ConversationClient`` is the learner-side driver for one conversation at a
time: it asks the backend to initiate a room, runs the ``ConnectionManager``
against an embedded transport, latches the first "ended" signal and reports it
to the backend, then polls for the assessment outcome.

``TerminationBeacon`` is the fire-and-forget end notification. It posts from a
non-daemon worker thread with its own short-lived ``httpx.Client``, so it never
blocks the caller and still goes out while the process is shutting down.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Callable, Dict, Optional

import httpx

from .errors import InitiationError
from .schemas import ConnectionState, Session, SessionMode
from .services.completion import CompletionDetector
from .services.connection import (
	BrowserFallback,
	CallView,
	ConnectionManager,
	FallbackSurface,
	Transport,
	describe_call,
)
from .settings import settings

logger = logging.getLogger(__name__)

FINAL_EVALUATION_STATES = ("completed", "failed", "skipped")
REMOTE_END_STATES = ("ended", "failed")


class TerminationBeacon:
	def __init__(
		self,
		base_url: Optional[str] = None,
		*,
		timeout: float = 5.0,
		transport: Optional[httpx.BaseTransport] = None,
	) -> None:
		self.url = f"{(base_url or settings.public_base_url).rstrip('/')}/conversations/end"
		self.timeout = timeout
		self._transport = transport

	def send(self, conversation_id: str) -> threading.Thread:
		thread = threading.Thread(target=self._post, args=(conversation_id,), name=f"end-beacon-{conversation_id}")
		thread.start()
		return thread

	def _post(self, conversation_id: str) -> None:
		# Same shape as a browser beacon: text/plain body, no auth, response ignored
		body = json.dumps({"conversation_id": conversation_id})
		try:
			with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
				client.post(self.url, content=body, headers={"Content-Type": "text/plain;charset=UTF-8"})
		except httpx.HTTPError as err:
			logger.warning("End beacon for %s was not delivered: %s", conversation_id, err)


class ConversationClient:
	def __init__(
		self,
		token: str,
		*,
		transport_factory: Callable[[], Transport],
		base_url: Optional[str] = None,
		fallback: Optional[FallbackSurface] = None,
		http_client: Optional[httpx.AsyncClient] = None,
		beacon: Optional[TerminationBeacon] = None,
		join_timeout: Optional[float] = None,
		status_interval: float = 5.0,
	) -> None:
		self._transport_factory = transport_factory
		self._fallback = fallback if fallback is not None else BrowserFallback()
		self._owns_client = http_client is None
		self._http = http_client or httpx.AsyncClient(base_url=base_url or settings.public_base_url, timeout=30)
		self._headers = {"Authorization": f"Bearer {token}"}
		self._beacon = beacon or TerminationBeacon(base_url)
		self.join_timeout = join_timeout if join_timeout is not None else settings.join_timeout_seconds
		self.status_interval = status_interval
		self.manager: Optional[ConnectionManager] = None
		self.detector: Optional[CompletionDetector] = None
		self._report: Optional[asyncio.Task] = None
		self._watcher: Optional[asyncio.Task] = None

	@property
	def session(self) -> Optional[Session]:
		return self.manager.session if self.manager else None

	@property
	def live(self) -> bool:
		return self.manager is not None and not self.manager.state.terminal

	def view(self) -> CallView:
		if self.manager is None:
			return describe_call(ConnectionState.IDLE)
		return describe_call(self.manager.state, self.manager.failure)

	async def start(
		self,
		*,
		course_id: str,
		course_topic: str,
		module_summary: str,
		mode: SessionMode,
		module_index: int = 0,
	) -> Session:
		"""Initiate and join a conversation.

		Raises:
			RuntimeError: a session is already live on this client.
			InitiationError: the backend could not get a room from the provider.
			SessionConnectionError: the join attempt failed.
		"""
		if self.live:
			raise RuntimeError("A conversation is already in progress")
		r = await self._http.post(
			"/conversations/initiate",
			headers=self._headers,
			json={
				"course_id": course_id,
				"course_topic": course_topic,
				"module_summary": module_summary,
				"module_index": module_index,
				"mode": SessionMode(mode).value,
			},
		)
		if r.status_code in (502, 503):
			detail = r.json().get("detail")
			message = detail.get("message") if isinstance(detail, dict) else str(detail)
			raise InitiationError(message or "Failed to start conversation", status_code=r.status_code)
		r.raise_for_status()
		data = r.json()
		session = Session(
			id=data["id"],
			room_handle=data["room_handle"],
			mode=SessionMode(mode),
			external_conversation_id=data["conversation_id"],
		)
		self.detector = CompletionDetector(on_complete=self._on_complete)
		self._report = None
		self.manager = ConnectionManager(
			session,
			self._transport_factory(),
			fallback=self._fallback,
			join_timeout=self.join_timeout,
			on_ended=self.detector.signal,
			end_remote=self._beacon.send,
		)
		await self.manager.connect()
		if self.manager.state is ConnectionState.DEGRADED:
			# The fallback window reports nothing back; watch the backend for the hang-up
			self._watcher = asyncio.get_running_loop().create_task(self._watch_remote_end(self.manager))
		return session

	async def _watch_remote_end(self, manager: ConnectionManager) -> None:
		conversation_id = manager.session.id
		while manager.state is ConnectionState.DEGRADED:
			await asyncio.sleep(self.status_interval)
			try:
				r = await self._http.get(f"/conversations/{conversation_id}/outcome", headers=self._headers)
				r.raise_for_status()
			except httpx.HTTPError as err:
				logger.warning("Status check for %s failed: %s", conversation_id, err)
				continue
			data = r.json()
			if data.get("status") in REMOTE_END_STATES or data.get("completed_by"):
				manager.handle_remote_end()

	def _stop_watching(self) -> None:
		if self._watcher is not None and not self._watcher.done():
			self._watcher.cancel()
		self._watcher = None

	def _on_complete(self, source: str) -> None:
		logger.info("Conversation %s completed (%s)", self.manager.session.id, source)
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			return
		self._report = loop.create_task(self._report_completion(self.manager.session.id))

	async def _report_completion(self, conversation_id: str) -> Optional[Dict[str, Any]]:
		try:
			r = await self._http.post(f"/conversations/{conversation_id}/complete", headers=self._headers)
			r.raise_for_status()
			return r.json()
		except httpx.HTTPError as err:
			# The provider webhook still completes the conversation server-side
			logger.warning("Completion report for %s failed: %s", conversation_id, err)
			return None

	async def leave(self) -> None:
		if self.manager is None:
			return
		self._stop_watching()
		await self.manager.leave()
		if self._report is not None:
			await self._report

	def toggle_mute(self) -> bool:
		return self.manager.toggle_mute() if self.manager else False

	def toggle_video(self) -> bool:
		return self.manager.toggle_video() if self.manager else False

	async def wait_for_outcome(self, *, interval: float = 1.0, attempts: int = 30) -> Optional[Dict[str, Any]]:
		"""Poll the backend until grading settles; None if it is still running after ``attempts``."""
		if self.manager is None:
			raise RuntimeError("No conversation to wait for")
		conversation_id = self.manager.session.id
		for attempt in range(1, attempts + 1):
			r = await self._http.get(f"/conversations/{conversation_id}/outcome", headers=self._headers)
			r.raise_for_status()
			data = r.json()
			if data.get("evaluation_status") in FINAL_EVALUATION_STATES and not data.get("processing"):
				return data
			if attempt < attempts:
				await asyncio.sleep(interval)
		return None

	def close(self) -> None:
		self._stop_watching()
		if self.manager is not None:
			self.manager.close()

	async def aclose(self) -> None:
		self.close()
		if self._report is not None and not self._report.done():
			await self._report
		if self._owns_client:
			await self._http.aclose()
