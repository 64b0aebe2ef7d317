from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import httpx
import pytest

from vivavoce.errors import InitiationError
from vivavoce.personas import category_for_topic, conversational_context, custom_greeting, select_persona
from vivavoce.schemas import SessionMode
from vivavoce.services.initiator import InitiationRequest, SessionInitiator
from vivavoce.tavus_client import TavusClient


def _request(mode: SessionMode = SessionMode.EXAM, topic: str = "Introduction to Machine Learning") -> InitiationRequest:
	return InitiationRequest(
		user_id="alice",
		user_name="Alice",
		course_topic=topic,
		module_summary="Model evaluation and overfitting",
		mode=mode,
	)


def _initiate(handler, request: InitiationRequest, **kwargs):
	async def scenario():
		async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
			tavus = TavusClient("test-key", base_url="https://tavus.test/v2", http_client=http)
			return await SessionInitiator(tavus, **kwargs).initiate(request)

	return asyncio.run(scenario())


@pytest.mark.parametrize(
	"topic, category",
	[
		("Introduction to Machine Learning", "technology"),
		("AI Ethics", "technology"),
		("Marketing Strategy 101", "business"),
		("Organic Chemistry", "science"),
		("Spanish for Beginners", "language"),
		("Music Theory", "arts"),
		("Domain Modelling", "default"),
		("Underwater Basket Weaving", "default"),
	],
)
def test_category_for_topic(topic: str, category: str) -> None:
	assert category_for_topic(topic) == category


def test_scripts_differ_by_mode() -> None:
	exam = conversational_context("Alice", "Organic Chemistry", "Reaction mechanisms", SessionMode.EXAM)
	practice = conversational_context("Alice", "Organic Chemistry", "Reaction mechanisms", SessionMode.PRACTICE)

	assert "oral examination" in exam and "Scientific rigor" in exam
	assert "practice conversation" in practice
	assert custom_greeting("Alice", "Organic Chemistry", SessionMode.EXAM).startswith("Good day, Alice")
	assert select_persona(SessionMode.PRACTICE, "Organic Chemistry").category == "science"


def test_initiate_sends_persona_and_scripts() -> None:
	seen: List[Dict[str, Any]] = []

	def handler(request: httpx.Request) -> httpx.Response:
		seen.append({"path": request.url.path, "key": request.headers["x-api-key"], "body": json.loads(request.content)})
		return httpx.Response(200, json={"conversation_id": "c-123", "conversation_url": "https://tavus.daily.co/c-123", "status": "active"})

	result = _initiate(handler, _request(), callback_url="https://api.example/conversations/webhook")

	assert result.conversation_id == "c-123"
	assert result.room_handle == "https://tavus.daily.co/c-123"
	assert result.category == "technology"
	assert result.status == "active"
	body = seen[0]["body"]
	assert seen[0]["path"] == "/v2/conversations"
	assert seen[0]["key"] == "test-key"
	assert body["persona_id"] == result.persona_id
	assert body["callback_url"] == "https://api.example/conversations/webhook"
	assert body["conversation_name"].startswith("Oral Examination: Introduction to Machine Learning")
	assert "Model evaluation and overfitting" in body["conversational_context"]


def test_provider_rejection_is_an_initiation_error() -> None:
	def handler(request: httpx.Request) -> httpx.Response:
		return httpx.Response(401, json={"message": "Invalid access token"})

	with pytest.raises(InitiationError) as excinfo:
		_initiate(handler, _request())

	assert excinfo.value.status_code == 401
	assert excinfo.value.retryable


def test_unreachable_provider_is_an_initiation_error() -> None:
	def handler(request: httpx.Request) -> httpx.Response:
		raise httpx.ConnectError("connection refused", request=request)

	with pytest.raises(InitiationError):
		_initiate(handler, _request(SessionMode.PRACTICE))


def test_incomplete_provider_response_is_an_initiation_error() -> None:
	def handler(request: httpx.Request) -> httpx.Response:
		return httpx.Response(200, json={"conversation_id": "c-9", "status": "active"})

	with pytest.raises(InitiationError):
		_initiate(handler, _request())


def test_end_conversation_treats_already_ended_as_done() -> None:
	responses = iter([httpx.Response(200), httpx.Response(404), httpx.Response(400, text="Conversation already ended")])

	def handler(request: httpx.Request) -> httpx.Response:
		return next(responses)

	async def scenario():
		async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
			tavus = TavusClient("test-key", base_url="https://tavus.test/v2", http_client=http)
			return [await tavus.end_conversation("c-1") for _ in range(3)]

	assert asyncio.run(scenario()) == [True, False, False]
