from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from .. import personas
from ..errors import InitiationError
from ..schemas import SessionMode

logger = logging.getLogger(__name__)


class ConversationProvider(Protocol):
	async def create_conversation(
		self,
		*,
		replica_id: str,
		persona_id: str,
		conversation_name: str,
		conversational_context: str,
		custom_greeting: str,
		callback_url: Optional[str] = None,
	) -> Dict[str, Any]: ...


@dataclass(frozen=True)
class InitiationRequest:
	user_id: str
	user_name: str
	course_topic: str
	module_summary: str
	mode: SessionMode


@dataclass(frozen=True)
class InitiationResult:
	conversation_id: str
	room_handle: str
	persona_id: str
	replica_id: str
	status: str
	category: str


class SessionInitiator:
	"""Asks the video provider for a new conversation room.

	Nothing is stored here. The caller records the conversation only after
	``initiate`` returns, so a rejected request leaves no local state behind.
	"""

	def __init__(self, provider: ConversationProvider, *, callback_url: Optional[str] = None) -> None:
		self._provider = provider
		self.callback_url = callback_url

	async def initiate(self, request: InitiationRequest) -> InitiationResult:
		mode = SessionMode(request.mode)
		persona = personas.select_persona(mode, request.course_topic)
		label = "Oral Examination" if mode is SessionMode.EXAM else "Practice Session"
		try:
			data = await self._provider.create_conversation(
				replica_id=persona.replica_id,
				persona_id=persona.persona_id,
				conversation_name=f"{label}: {request.course_topic} - {request.user_name}",
				conversational_context=personas.conversational_context(
					request.user_name, request.course_topic, request.module_summary, mode
				),
				custom_greeting=personas.custom_greeting(request.user_name, request.course_topic, mode),
				callback_url=self.callback_url,
			)
		except httpx.HTTPStatusError as err:
			logger.error("Provider rejected conversation for %s: %s %s", request.user_id, err.response.status_code, err.response.text[:300])
			raise InitiationError(
				f"Video provider returned {err.response.status_code}", status_code=err.response.status_code
			) from err
		except httpx.HTTPError as err:
			logger.error("Provider request failed for %s: %s", request.user_id, err)
			raise InitiationError(f"Video provider unreachable: {err}") from err

		conversation_id = data.get("conversation_id")
		room_handle = data.get("conversation_url")
		if not conversation_id or not room_handle:
			raise InitiationError("Video provider response is missing conversation_id or conversation_url")
		logger.info(
			"Conversation %s created for %s (%s, %s persona)", conversation_id, request.user_id, mode.value, persona.category
		)
		return InitiationResult(
			conversation_id=conversation_id,
			room_handle=room_handle,
			persona_id=persona.persona_id,
			replica_id=persona.replica_id,
			status=str(data.get("status") or "active"),
			category=persona.category,
		)
