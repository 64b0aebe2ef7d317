from __future__ import annotations
import logging
import httpx
from typing import Any, Dict, Optional
from .settings import settings

logger = logging.getLogger(__name__)


class GeminiClient:
	"""Scoring oracle client: Gemini first, OpenRouter as an optional fallback.

	Pass ``http_client`` to share a connection pool (or a mock transport in
	tests); the client only closes pools it created itself.
	"""

	def __init__(
		self,
		api_key: Optional[str] = None,
		*,
		base_url: Optional[str] = None,
		model: Optional[str] = None,
		http_client: Optional[httpx.AsyncClient] = None,
		fallback_api_key: Optional[str] = None,
	) -> None:
		self.api_key = api_key or settings.gemini_api_key
		if not self.api_key:
			raise ValueError("GEMINI_API_KEY is not configured")
		self.model = model or settings.gemini_model
		self.provider = settings.gemini_provider
		if self.provider == "vertex":
			region = settings.vertex_region
			project = settings.vertex_project or "placeholder-project"
			self.base_url = base_url or (
				f"https://{region}-aiplatform.googleapis.com/v1/projects/{project}/locations/{region}/publishers/google/models/{self.model}:generateContent"
			)
			self._auth_in_query = False
		else:
			self.base_url = base_url or f"https://generativelanguage.googleapis.com/v1beta/models/{self.model}:generateContent"
			self._auth_in_query = True
		self._owns_client = http_client is None
		self._client = http_client or httpx.AsyncClient(timeout=30)
		self._openrouter_api_key = fallback_api_key or settings.openrouter_api_key
		self._fallback_enabled = bool(self._openrouter_api_key)
		self._openrouter_headers = {
			"Authorization": f"Bearer {self._openrouter_api_key}" if self._openrouter_api_key else "",
			"Content-Type": "application/json",
			"HTTP-Referer": settings.openrouter_referer,
			"X-Title": settings.openrouter_title,
		}

	async def generate_json(self, prompt: str, *, system: Optional[str] = None, temperature: float = 0.3) -> str:
		"""Ask for a JSON-only answer and return the raw text.

		Parsing is left to the caller so that a malformed body can be reported
		as a contract failure rather than a transport failure.
		"""
		payload: Dict[str, Any] = {
			"contents": [{"role": "user", "parts": [{"text": prompt}]}],
			"generationConfig": {"temperature": temperature, "responseMimeType": "application/json"},
		}
		if system:
			payload["systemInstruction"] = {"parts": [{"text": system}]}
		params: Dict[str, Any] = {}
		headers: Dict[str, str] = {}
		if self._auth_in_query:
			params["key"] = self.api_key
		else:
			headers["x-goog-api-key"] = self.api_key
		last_error: Optional[Exception] = None
		try:
			r = await self._client.post(self.base_url, params=params, headers=headers, json=payload)
			r.raise_for_status()
			data = r.json()
			return data["candidates"][0]["content"]["parts"][0]["text"]
		except httpx.HTTPError as err:
			last_error = err
		except (KeyError, IndexError, TypeError, ValueError):
			last_error = RuntimeError(f"Unexpected Gemini response: {r.text[:500]}")
		if not self._fallback_enabled:
			raise last_error
		logger.warning("Gemini call failed (%s); trying OpenRouter fallback", last_error)
		return await self._fallback_generate(prompt, system, temperature, last_error)

	async def aclose(self) -> None:
		if self._owns_client:
			await self._client.aclose()

	async def _fallback_generate(
		self,
		prompt: str,
		system: Optional[str],
		temperature: float,
		primary_error: Exception,
	) -> str:
		headers = {k: v for k, v in self._openrouter_headers.items() if v}
		messages = []
		if system:
			messages.append({"role": "system", "content": system})
		messages.append({"role": "user", "content": prompt})
		payload: Dict[str, Any] = {
			"model": settings.openrouter_model,
			"messages": messages,
			"temperature": temperature,
			"response_format": {"type": "json_object"},
		}
		try:
			r = await self._client.post(settings.openrouter_base_url, headers=headers, json=payload)
			r.raise_for_status()
			data = r.json()
			return data["choices"][0]["message"]["content"]
		except Exception as fallback_err:
			raise RuntimeError(
				f"Gemini primary call failed ({primary_error}); fallback via OpenRouter also failed"
			) from fallback_err
