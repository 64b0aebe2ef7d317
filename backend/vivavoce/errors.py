"""Exceptions raised across the assessment pipeline.

Every error carries a stable ``code`` that is stored on the conversation row
and returned to clients, so a learner-facing surface can decide between a
retry affordance, a fallback offer or a plain acknowledgment.
"""

from __future__ import annotations

from typing import Any, List, Optional


CONNECTION_REASONS = ("permission-denied", "network", "timeout", "transport-incompatible", "unknown")


class PipelineError(Exception):
	code = "pipeline-error"
	retryable = False


class InitiationError(PipelineError):
	"""The video provider rejected or failed a session request."""

	code = "initiation-failed"
	retryable = True

	def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
		super().__init__(message)
		self.status_code = status_code


class SessionConnectionError(PipelineError):
	"""A live session attempt ended in ``Failed``."""

	code = "connection-failed"
	retryable = True

	def __init__(self, reason: str, message: str = "") -> None:
		if reason not in CONNECTION_REASONS:
			reason = "unknown"
		super().__init__(message or reason)
		self.reason = reason

	@property
	def offers_fallback(self) -> bool:
		return self.reason in ("timeout", "transport-incompatible")


class TranscriptUnavailable(PipelineError):
	code = "transcript-unavailable"

	def __init__(self, conversation_id: str, attempts: int) -> None:
		super().__init__(f"Transcript for {conversation_id} not ready after {attempts} attempts")
		self.conversation_id = conversation_id
		self.attempts = attempts


class EmptyTranscript(PipelineError):
	code = "empty-transcript"


class InsufficientResponses(EmptyTranscript):
	code = "insufficient-responses"


class EvaluationValidationError(PipelineError):
	"""The oracle answered, but not with a valid EvaluationResult."""

	code = "evaluation-invalid"

	def __init__(self, message: str, errors: Optional[List[Any]] = None) -> None:
		super().__init__(message)
		self.errors = errors or []


class EvaluationProviderError(PipelineError):
	code = "evaluation-provider-failed"
	retryable = True


class CertificateIssuanceError(PipelineError):
	code = "certificate-issuance-failed"


class ProgressError(PipelineError):
	code = "progress-failed"
