from __future__ import annotations
import logging
import httpx
from typing import Any, Dict, Optional
from .settings import settings

logger = logging.getLogger(__name__)


class TavusClient:
	"""Thin async wrapper over the video-session provider's conversation API.

	Errors are left as ``httpx`` exceptions; callers decide whether a failure
	is an initiation error, a not-ready transcript or a harmless double end.
	"""

	def __init__(
		self,
		api_key: Optional[str] = None,
		*,
		base_url: Optional[str] = None,
		http_client: Optional[httpx.AsyncClient] = None,
	) -> None:
		self.api_key = api_key or settings.tavus_api_key
		if not self.api_key:
			raise ValueError("TAVUS_API_KEY is not configured")
		self.base_url = (base_url or settings.tavus_base_url).rstrip("/")
		self._owns_client = http_client is None
		self._client = http_client or httpx.AsyncClient(timeout=30)
		self._headers = {"x-api-key": self.api_key, "Content-Type": "application/json"}

	async def create_conversation(
		self,
		*,
		replica_id: str,
		persona_id: str,
		conversation_name: str,
		conversational_context: str,
		custom_greeting: str,
		callback_url: Optional[str] = None,
	) -> Dict[str, Any]:
		payload: Dict[str, Any] = {
			"replica_id": replica_id,
			"persona_id": persona_id,
			"conversation_name": conversation_name,
			"conversational_context": conversational_context,
			"custom_greeting": custom_greeting,
			"properties": {"enable_recording": False, "enable_transcription": True},
		}
		if callback_url:
			payload["callback_url"] = callback_url
		r = await self._client.post(f"{self.base_url}/conversations", headers=self._headers, json=payload)
		r.raise_for_status()
		return r.json()

	async def get_conversation(self, conversation_id: str, *, verbose: bool = True) -> Dict[str, Any]:
		params = {"verbose": "true"} if verbose else {}
		r = await self._client.get(f"{self.base_url}/conversations/{conversation_id}", headers=self._headers, params=params)
		r.raise_for_status()
		return r.json()

	async def end_conversation(self, conversation_id: str) -> bool:
		"""End a conversation; returns False when it was already over."""
		r = await self._client.post(f"{self.base_url}/conversations/{conversation_id}/end", headers=self._headers)
		if r.status_code == 404 or (r.status_code >= 400 and "already ended" in r.text.lower()):
			logger.info("Conversation %s already ended or not found", conversation_id)
			return False
		r.raise_for_status()
		return True

	async def aclose(self) -> None:
		if self._owns_client:
			await self._client.aclose()
