"""
Oral Examination Evaluation
===========================

Grades an exam transcript with an LLM scoring oracle against a fixed rubric:

- Conceptual accuracy (0-30)
- Depth of analysis (0-40)
- Practical application (0-30)

The oracle's answer must match ``EvaluationResult`` exactly. Nothing is clamped
or coerced: an out-of-range score or a missing list is a contract mismatch and
raises ``EvaluationValidationError``, which is never retried. Transport and
provider failures raise ``EvaluationProviderError``; ``evaluate_with_retry``
retries those a bounded number of times with exponential backoff.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

import httpx
from pydantic import ValidationError

from ..errors import EvaluationProviderError, EvaluationValidationError, InsufficientResponses
from ..schemas import EvaluationResult, TranscriptEntry

logger = logging.getLogger(__name__)

MIN_RESPONSE_CHARS = 50
RESPONSE_SEPARATOR = "\n\n--- Next Response ---\n\n"

SYSTEM_PROMPT = (
	"You are an expert academic examiner. Provide fair, rigorous, and constructive evaluation "
	"of student responses. Return only valid JSON."
)


class ScoringOracle(Protocol):
	async def generate_json(self, prompt: str, *, system: Optional[str] = None, temperature: float = 0.3) -> str: ...


def _extract_json_block(text: str) -> Dict[str, Any]:
	"""Extract a JSON object from LLM response text.

	Tries the whole text first, then the outermost ``{...}`` span (models
	sometimes wrap JSON in a markdown fence).

	Raises:
		ValueError: If no JSON object can be recovered.
	"""
	try:
		data = json.loads(text)
	except (TypeError, ValueError):
		match = re.search(r"\{[\s\S]*\}", text or "")
		if not match:
			raise ValueError("Failed to parse JSON from oracle output")
		try:
			data = json.loads(match.group(0))
		except ValueError as err:
			raise ValueError("Failed to parse JSON from oracle output") from err
	if not isinstance(data, dict):
		raise ValueError("Oracle output is not a JSON object")
	return data


def user_responses(transcript: Sequence[TranscriptEntry]) -> str:
	"""Join the learner's turns for grading.

	Raises:
		InsufficientResponses: the learner said fewer than 50 characters in total.
	"""
	text = RESPONSE_SEPARATOR.join(e.content for e in transcript if e.role == "user")
	if len(text.strip()) < MIN_RESPONSE_CHARS:
		raise InsufficientResponses("Insufficient user responses for evaluation")
	return text


def build_evaluation_prompt(transcript: Sequence[TranscriptEntry], course_topic: str, module_summary: str) -> str:
	"""Render the grading request. Same inputs always give the same prompt."""
	responses = user_responses(transcript)
	return f"""
As an expert examiner in "{course_topic}", evaluate the following user responses from an oral examination.

MODULE FOCUS: {module_summary}

USER RESPONSES:
{responses}

EVALUATION CRITERIA:
1. Conceptual Accuracy (0-30 points): Correctness of fundamental concepts, terminology usage, and theoretical understanding
2. Depth of Analysis (0-40 points): Critical thinking, connections between concepts, synthesis of ideas, analytical reasoning
3. Practical Application (0-30 points): Real-world relevance, problem-solving ability, implementation understanding

ASSESSMENT REQUIREMENTS:
- Identify 1-5 key strengths with examples
- Highlight 1-3 areas for improvement
- Extract 1-5 of the most impactful or insightful user quotes
- Give an overall assessment of 50-500 characters
- Give 1-3 learning recommendations
- The score is the sum of the three criteria

Return STRICT JSON only, no markdown, following exactly this schema:
{{
  "score": number (0-100),
  "breakdown": {{
    "conceptual_accuracy": number (0-30),
    "depth_of_analysis": number (0-40),
    "practical_application": number (0-30)
  }},
  "strengths": [string],
  "weaknesses": [string],
  "impactful_quotes": [string],
  "overall_assessment": string,
  "recommendations": [string]
}}
""".strip()


def parse_evaluation(raw: str) -> EvaluationResult:
	try:
		data = _extract_json_block(raw)
	except ValueError as err:
		raise EvaluationValidationError(str(err)) from err
	try:
		return EvaluationResult.model_validate(data)
	except ValidationError as err:
		details: List[Any] = [
			{"loc": list(e.get("loc", ())), "type": e.get("type"), "msg": e.get("msg")} for e in err.errors()
		]
		raise EvaluationValidationError(f"Evaluation result failed validation ({err.error_count()} errors)", details) from err


class EvaluationEngine:
	def __init__(self, oracle: Optional[ScoringOracle], *, temperature: float = 0.0) -> None:
		self._oracle = oracle
		self.temperature = temperature

	async def evaluate(
		self,
		transcript: Sequence[TranscriptEntry],
		course_topic: str,
		module_summary: str,
	) -> EvaluationResult:
		prompt = build_evaluation_prompt(transcript, course_topic, module_summary)
		if self._oracle is None:
			raise EvaluationProviderError("No scoring oracle is configured")
		logger.info("Requesting evaluation for %r (%d transcript entries)", course_topic, len(transcript))
		try:
			raw = await self._oracle.generate_json(prompt, system=SYSTEM_PROMPT, temperature=self.temperature)
		except (httpx.HTTPError, RuntimeError) as err:
			raise EvaluationProviderError(str(err)) from err
		result = parse_evaluation(raw)
		logger.info("Evaluation completed: score=%s", result.score)
		return result


async def evaluate_with_retry(
	engine: EvaluationEngine,
	transcript: Sequence[TranscriptEntry],
	course_topic: str,
	module_summary: str,
	*,
	attempts: int = 3,
	backoff: float = 1.0,
	sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> EvaluationResult:
	"""Retry provider failures with exponential backoff; validation errors pass straight through."""
	for attempt in range(1, attempts + 1):
		try:
			return await engine.evaluate(transcript, course_topic, module_summary)
		except EvaluationProviderError as err:
			if attempt >= attempts:
				raise
			delay = backoff * (2 ** (attempt - 1))
			logger.warning("Evaluation attempt %d/%d failed (%s); retrying in %.1fs", attempt, attempts, err, delay)
			await sleep(delay)
	raise EvaluationProviderError("evaluation attempts exhausted")
