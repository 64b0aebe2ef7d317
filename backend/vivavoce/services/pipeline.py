"""
Assessment Pipeline
===================

Runs once per completed conversation, after the completion latch:

1. Practice: no grading; the module pointer advances.
2. Exam: fetch transcript -> evaluate (bounded retry) -> decide, then issue the
   certificate and record course completion concurrently.

Grading failures (no transcript, nothing gradable, invalid or unavailable
oracle) end in an ungraded completion carrying a ``failure_code``; progress is
still recorded. Any other error, or cancellation, closes the run the same way
with ``pipeline-error`` or ``cancelled`` so no exam stays "evaluating" once its
task is gone. Certificate failures are logged and never reach the learner.
Issuance and progress are independent: neither waits on nor undoes the other.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..errors import (
	CertificateIssuanceError,
	EmptyTranscript,
	EvaluationProviderError,
	EvaluationValidationError,
	ProgressError,
	TranscriptUnavailable,
)
from ..models import VideoConversation
from ..schemas import EvaluationResult, EvaluationStatus, SessionMode, Tier, TranscriptEntry
from .certification import PASS_MARK, CertificateIssuer, CertificationDecision, decide
from .evaluation import EvaluationEngine, evaluate_with_retry
from .progress import ProgressTracker
from .transcripts import TranscriptFetcher

logger = logging.getLogger(__name__)

GRADING_FAILURES = (TranscriptUnavailable, EmptyTranscript, EvaluationValidationError, EvaluationProviderError)

# failure_code for runs that stop outside GRADING_FAILURES
PIPELINE_ERROR = "pipeline-error"
CANCELLED = "cancelled"


class ConversationNotFound(LookupError):
	pass


@dataclass(frozen=True)
class AssessmentOutcome:
	conversation_id: str
	mode: SessionMode
	graded: bool
	score: Optional[float] = None
	tier: Optional[Tier] = None
	certificate_id: Optional[str] = None
	progress_recorded: bool = False
	failure_code: Optional[str] = None

	def to_dict(self) -> Dict[str, Any]:
		data = asdict(self)
		data["mode"] = self.mode.value
		data["tier"] = self.tier.value if self.tier else None
		return data


@dataclass(frozen=True)
class _Conversation:
	id: str
	user_id: str
	course_id: str
	mode: SessionMode
	module_index: int
	course_topic: str
	module_summary: str
	external_conversation_id: str


class AssessmentPipeline:
	def __init__(
		self,
		session_factory: sessionmaker,
		*,
		fetcher: TranscriptFetcher,
		engine: EvaluationEngine,
		issuer: CertificateIssuer,
		tracker: ProgressTracker,
		evaluation_attempts: int = 3,
		evaluation_backoff: float = 1.0,
		pass_mark: float = PASS_MARK,
		sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
	) -> None:
		self._session_factory = session_factory
		self._fetcher = fetcher
		self._engine = engine
		self._issuer = issuer
		self._tracker = tracker
		self.evaluation_attempts = evaluation_attempts
		self.evaluation_backoff = evaluation_backoff
		self.pass_mark = pass_mark
		self._sleep = sleep

	async def run(self, conversation_id: str, source: str = "remote") -> AssessmentOutcome:
		conv = await asyncio.to_thread(self._load, conversation_id)
		logger.info("Processing %s conversation %s (completed by %s signal)", conv.mode.value, conv.id, source)
		if conv.mode is SessionMode.PRACTICE:
			progress = await self._record_progress(conv, completed=False)
			outcome = AssessmentOutcome(conversation_id=conv.id, mode=conv.mode, graded=False, progress_recorded=progress)
			await asyncio.to_thread(self._save, conv.id, EvaluationStatus.SKIPPED, outcome)
			return outcome

		await asyncio.to_thread(self._save, conv.id, EvaluationStatus.EVALUATING)
		try:
			return await self._grade(conv)
		except asyncio.CancelledError:
			# Runs inline: the task is already cancelled, the row must not stay "evaluating"
			logger.warning("Grading for %s cancelled", conv.id)
			self._abandon(conv, CANCELLED)
			raise
		except Exception:
			logger.exception("Grading for %s crashed", conv.id)
			return await asyncio.to_thread(self._abandon, conv, PIPELINE_ERROR)

	async def _grade(self, conv: _Conversation) -> AssessmentOutcome:
		try:
			transcript = await self._fetcher.fetch(conv.external_conversation_id)
			await asyncio.to_thread(self._save_transcript, conv.id, transcript)
			evaluation = await evaluate_with_retry(
				self._engine,
				transcript,
				conv.course_topic,
				conv.module_summary,
				attempts=self.evaluation_attempts,
				backoff=self.evaluation_backoff,
				sleep=self._sleep,
			)
		except GRADING_FAILURES as err:
			logger.warning("Grading for %s failed (%s): %s", conv.id, err.code, err)
			progress = await self._record_progress(conv, completed=True)
			outcome = AssessmentOutcome(
				conversation_id=conv.id,
				mode=conv.mode,
				graded=False,
				progress_recorded=progress,
				failure_code=err.code,
			)
			await asyncio.to_thread(self._save, conv.id, EvaluationStatus.FAILED, outcome)
			return outcome

		decision = decide(evaluation, pass_mark=self.pass_mark)
		jobs: List[Awaitable[Any]] = [self._record_progress(conv, completed=True)]
		if decision.issue:
			jobs.append(self._issue(conv, evaluation, transcript, decision))
		results = await asyncio.gather(*jobs)
		certificate_id = results[1] if decision.issue else None
		outcome = AssessmentOutcome(
			conversation_id=conv.id,
			mode=conv.mode,
			graded=True,
			score=evaluation.score,
			tier=decision.tier if certificate_id else None,
			certificate_id=certificate_id,
			progress_recorded=results[0],
		)
		await asyncio.to_thread(self._save, conv.id, EvaluationStatus.COMPLETED, outcome, evaluation.to_wire())
		return outcome

	async def _issue(
		self,
		conv: _Conversation,
		evaluation: EvaluationResult,
		transcript: Sequence[TranscriptEntry],
		decision: CertificationDecision,
	) -> Optional[str]:
		try:
			record = await self._issuer.issue(
				student_id=conv.user_id,
				course_id=conv.course_id,
				evaluation=evaluation,
				transcript=transcript,
				decision=decision,
			)
		except CertificateIssuanceError as err:
			logger.error("Certificate issuance for %s failed: %s", conv.id, err)
			return None
		return record.certificate_id

	async def _record_progress(self, conv: _Conversation, *, completed: bool) -> bool:
		try:
			progress = await asyncio.to_thread(
				self._tracker.record_session, conv.user_id, conv.course_id, conv.module_index, completed=completed
			)
		except (ProgressError, SQLAlchemyError) as err:
			logger.error("Progress update for %s failed: %s", conv.id, err)
			return False
		return progress is not None

	def _abandon(self, conv: _Conversation, failure_code: str) -> AssessmentOutcome:
		"""Close out a run that stopped outside the grading failures: ungraded, progress recorded."""
		try:
			progress = self._tracker.record_session(conv.user_id, conv.course_id, conv.module_index, completed=True) is not None
		except (ProgressError, SQLAlchemyError) as err:
			logger.error("Progress update for %s failed: %s", conv.id, err)
			progress = False
		outcome = AssessmentOutcome(
			conversation_id=conv.id,
			mode=conv.mode,
			graded=False,
			progress_recorded=progress,
			failure_code=failure_code,
		)
		self._save(conv.id, EvaluationStatus.FAILED, outcome)
		return outcome

	# ------------------------------------------------------------------
	# Conversation row access (worker thread)
	# ------------------------------------------------------------------

	def _load(self, conversation_id: str) -> _Conversation:
		with self._session_factory() as db:
			row = db.get(VideoConversation, conversation_id)
			if row is None:
				raise ConversationNotFound(conversation_id)
			return _Conversation(
				id=row.id,
				user_id=row.user_id,
				course_id=row.course_id,
				mode=SessionMode(row.mode),
				module_index=row.module_index,
				course_topic=row.course_topic,
				module_summary=row.module_summary,
				external_conversation_id=row.external_conversation_id,
			)

	def _save(
		self,
		conversation_id: str,
		status: EvaluationStatus,
		outcome: Optional[AssessmentOutcome] = None,
		evaluation: Optional[Dict[str, Any]] = None,
	) -> None:
		with self._session_factory() as db:
			row = db.get(VideoConversation, conversation_id)
			if row is None:
				return
			row.evaluation_status = status.value
			if status is EvaluationStatus.EVALUATING:
				row.failure_code = None
			if evaluation is not None:
				row.evaluation_result = evaluation
			if outcome is not None:
				row.failure_code = outcome.failure_code
				row.record_outcome(outcome.to_dict())
			row.stamp(f"evaluation_{status.value}")
			db.commit()

	def _save_transcript(self, conversation_id: str, transcript: Sequence[TranscriptEntry]) -> None:
		with self._session_factory() as db:
			row = db.get(VideoConversation, conversation_id)
			if row is None:
				return
			row.transcript = [e.model_dump() for e in transcript]
			db.commit()


class PipelineRunner:
	"""Background tasks for pipeline runs, at most one per conversation."""

	def __init__(self, pipeline: AssessmentPipeline) -> None:
		self._pipeline = pipeline
		self._tasks: Dict[str, asyncio.Task] = {}

	def submit(self, conversation_id: str, source: str) -> bool:
		running = self._tasks.get(conversation_id)
		if running is not None and not running.done():
			logger.info("Pipeline already running for %s", conversation_id)
			return False
		task = asyncio.get_running_loop().create_task(self._pipeline.run(conversation_id, source))
		self._tasks[conversation_id] = task
		task.add_done_callback(lambda t, cid=conversation_id: self._finished(cid, t))
		return True

	def running(self, conversation_id: str) -> bool:
		task = self._tasks.get(conversation_id)
		return task is not None and not task.done()

	def _finished(self, conversation_id: str, task: asyncio.Task) -> None:
		if self._tasks.get(conversation_id) is task:
			del self._tasks[conversation_id]
		if task.cancelled():
			logger.info("Pipeline for %s cancelled", conversation_id)
		elif task.exception() is not None:
			logger.error("Pipeline for %s crashed: %r", conversation_id, task.exception())

	def cancel(self, conversation_id: str) -> bool:
		task = self._tasks.get(conversation_id)
		if task is None or task.done():
			return False
		task.cancel()
		return True

	async def wait(self, conversation_id: str) -> Optional[AssessmentOutcome]:
		task = self._tasks.get(conversation_id)
		if task is None:
			return None
		return await task

	async def shutdown(self) -> None:
		tasks = list(self._tasks.values())
		for task in tasks:
			task.cancel()
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)
