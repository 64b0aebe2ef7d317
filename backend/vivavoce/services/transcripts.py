"""
Transcript retrieval and normalization.

The provider exposes a finished conversation's transcript some seconds after
the call ends. ``TranscriptFetcher`` polls for it on a fixed interval with a
bounded number of attempts, and ``normalize_transcript`` turns whatever role
labels the provider used into the binary user/assistant sequence the
evaluation prompt expects.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import httpx

from ..errors import EmptyTranscript, TranscriptUnavailable
from ..schemas import TranscriptEntry

logger = logging.getLogger(__name__)

MIN_ENTRY_CHARS = 6

ROLE_TABLE: Dict[str, str] = {
	"user": "user",
	"human": "user",
	"student": "user",
	"learner": "user",
	"participant": "user",
	"assistant": "assistant",
	"ai": "assistant",
	"bot": "assistant",
	"examiner": "assistant",
	"replica": "assistant",
	"tutor": "assistant",
	# Provider briefing text; kept out of the graded user side
	"system": "assistant",
}

TRANSCRIPT_READY_EVENT = "application.transcription_ready"


class ConversationStore(Protocol):
	async def get_conversation(self, conversation_id: str, *, verbose: bool = True) -> Dict[str, Any]: ...


def _role_for(entry: Dict[str, Any]) -> str:
	label = entry.get("role")
	if isinstance(label, str) and label.strip():
		return ROLE_TABLE.get(label.strip().lower(), "user")
	participant = str(entry.get("participant_id") or "").lower()
	if participant.startswith(("replica", "tavus")):
		return "assistant"
	return "user"


def normalize_transcript(raw_entries: List[Dict[str, Any]]) -> List[TranscriptEntry]:
	"""Map raw log entries onto ``TranscriptEntry`` values.

	Provider order is preserved, so normalizing the same payload twice yields
	the same sequence. Entries under six characters are dropped as noise.

	Raises:
		EmptyTranscript: no user entry survives filtering.
	"""
	entries: List[TranscriptEntry] = []
	for raw in raw_entries or []:
		if not isinstance(raw, dict):
			continue
		content = raw.get("content")
		if content is None:
			content = raw.get("text")
		content = str(content or "").strip()
		if len(content) < MIN_ENTRY_CHARS:
			continue
		timestamp = raw.get("timestamp")
		entries.append(
			TranscriptEntry(
				role=_role_for(raw),
				content=content,
				timestamp=float(timestamp) if isinstance(timestamp, (int, float)) else None,
			)
		)
	if not any(e.role == "user" for e in entries):
		raise EmptyTranscript("No user responses found in transcript")
	return entries


def extract_transcript(payload: Optional[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
	"""Return the raw transcript once the provider marks it ready, else None.

	Two payload shapes are understood: a ``transcription_ready`` event carrying
	the transcript, or an ended conversation with ``properties.transcript``.
	"""
	if not payload:
		return None
	for event in payload.get("events") or []:
		if isinstance(event, dict) and event.get("event_type") == TRANSCRIPT_READY_EVENT:
			transcript = (event.get("properties") or {}).get("transcript")
			if transcript:
				return list(transcript)
	properties = payload.get("properties") or {}
	transcript = properties.get("transcript")
	if payload.get("status") == "ended" and transcript:
		return list(transcript)
	return None


class TranscriptFetcher:
	"""Poll the conversation store until a transcript is ready.

	``fetch`` is a plain coroutine: cancelling the task that awaits it stops
	polling at the next await point, and no timer outlives it.
	"""

	def __init__(
		self,
		store: ConversationStore,
		*,
		interval: float = 1.0,
		attempts: int = 30,
		request_timeout: float = 10.0,
		sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
	) -> None:
		if attempts < 1:
			raise ValueError("attempts must be at least 1")
		self._store = store
		self.interval = interval
		self.attempts = attempts
		self.request_timeout = request_timeout
		self._sleep = sleep

	async def _poll_once(self, conversation_id: str, timeout: float) -> Optional[Dict[str, Any]]:
		try:
			return await asyncio.wait_for(
				self._store.get_conversation(conversation_id, verbose=True),
				timeout=timeout,
			)
		except (httpx.HTTPError, asyncio.TimeoutError, ValueError) as err:
			# Transient: the store may 404, stall or answer with a half-written body until the call is finalized
			logger.warning("Transcript poll for %s failed: %r", conversation_id, err)
			return None

	async def fetch(self, conversation_id: str) -> List[TranscriptEntry]:
		"""Return the normalized transcript, or raise ``TranscriptUnavailable``.

		The whole fetch is bounded by ``attempts * interval``: each poll waits at
		most the time left before that deadline. A zero interval leaves only the
		per-request timeout.
		"""
		loop = asyncio.get_running_loop()
		budget = self.attempts * self.interval
		deadline = loop.time() + budget if budget > 0 else None
		for attempt in range(1, self.attempts + 1):
			timeout = self.request_timeout
			if deadline is not None:
				remaining = deadline - loop.time()
				if remaining <= 0:
					raise TranscriptUnavailable(conversation_id, attempt - 1)
				timeout = min(timeout, remaining)
			raw = extract_transcript(await self._poll_once(conversation_id, timeout))
			if raw:
				logger.info("Transcript for %s ready after %d attempt(s)", conversation_id, attempt)
				return normalize_transcript(raw)
			if attempt < self.attempts:
				await self._sleep(self.interval)
		raise TranscriptUnavailable(conversation_id, self.attempts)
