"""
Certification: the pass/tier decision and certificate issuance.

``decide`` is a pure function of the score. ``CertificateIssuer`` persists a
record for a qualifying evaluation and then, separately, tries to anchor it on
an external ledger. Anchoring runs as its own task: its failure is logged and
never touches the stored record.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Sequence, Set, Tuple

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import CertificateIssuanceError
from ..models import Certificate, CertificateLog
from ..schemas import EvaluationResult, Tier, TranscriptEntry

logger = logging.getLogger(__name__)

PASS_MARK = 70
MAX_SCORE = 100

_ID_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class CertificationDecision:
	issue: bool
	tier: Tier
	score: float


def tier_for(score: float, max_score: float = MAX_SCORE) -> Tier:
	percentage = (score / max_score) * 100 if max_score else 0
	if percentage >= 95:
		return Tier.PLATINUM
	if percentage >= 85:
		return Tier.GOLD
	if percentage >= 75:
		return Tier.SILVER
	return Tier.BRONZE


def decide(evaluation: EvaluationResult, *, pass_mark: float = PASS_MARK) -> CertificationDecision:
	# tier is always computed; it is only attached to a record when issue is True
	return CertificationDecision(
		issue=evaluation.score >= pass_mark,
		tier=tier_for(evaluation.score),
		score=evaluation.score,
	)


@dataclass(frozen=True)
class CertificateRecord:
	certificate_id: str
	student_id: str
	course_id: str
	score: float
	max_score: float
	transcript_fingerprint: str
	tier: str
	issued_at: datetime
	status: str
	ledger_ref: Optional[str] = None

	@classmethod
	def from_row(cls, row: Certificate) -> "CertificateRecord":
		return cls(
			certificate_id=row.certificate_id,
			student_id=row.student_id,
			course_id=row.course_id,
			score=row.score,
			max_score=row.max_score,
			transcript_fingerprint=row.transcript_fingerprint,
			tier=row.tier,
			issued_at=row.issued_at,
			status=row.status,
			ledger_ref=row.ledger_ref,
		)


def generate_certificate_id(now_ms: Optional[int] = None) -> str:
	"""``CERT-<epoch ms>-<8 random base36 chars>``; ~2.8e12 suffixes per millisecond."""
	ms = now_ms if now_ms is not None else int(time.time() * 1000)
	suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))
	return f"CERT-{ms}-{suffix}"


def transcript_fingerprint(transcript: Sequence[TranscriptEntry], evaluation: EvaluationResult) -> str:
	payload = {
		"transcript": [e.model_dump() for e in transcript],
		"evaluation": evaluation.to_wire(),
	}
	canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
	return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class LedgerAnchor(Protocol):
	async def anchor(self, note: Dict[str, Any]) -> str: ...


class HttpLedgerAnchor:
	"""Posts a certificate note to a ledger gateway and returns its transaction reference."""

	def __init__(self, url: str, *, api_key: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None) -> None:
		self.url = url
		self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
		self._owns_client = http_client is None
		self._client = http_client or httpx.AsyncClient(timeout=30)

	async def anchor(self, note: Dict[str, Any]) -> str:
		r = await self._client.post(self.url, headers=self._headers, json={"type": "course_certificate", "note": note})
		r.raise_for_status()
		data = r.json()
		ref = data.get("tx_id") or data.get("txId") or data.get("id")
		if not ref:
			raise RuntimeError(f"Ledger response carried no transaction id: {data}")
		return str(ref)

	async def aclose(self) -> None:
		if self._owns_client:
			await self._client.aclose()


class CertificateIssuer:
	def __init__(
		self,
		session_factory: sessionmaker,
		*,
		ledger: Optional[LedgerAnchor] = None,
		max_score: float = MAX_SCORE,
	) -> None:
		self._session_factory = session_factory
		self._ledger = ledger
		self.max_score = max_score
		self._pending: Set[asyncio.Task] = set()

	async def issue(
		self,
		*,
		student_id: str,
		course_id: str,
		evaluation: EvaluationResult,
		transcript: Sequence[TranscriptEntry],
		decision: CertificationDecision,
	) -> CertificateRecord:
		"""Persist a certificate for a qualifying evaluation.

		The same (student, course, fingerprint) returns the already-issued
		record; a new qualifying attempt gets a new certificate id.

		Raises:
			CertificateIssuanceError: the decision does not qualify or the write failed.
		"""
		if not decision.issue:
			raise CertificateIssuanceError(f"score {decision.score} does not qualify for a certificate")
		fingerprint = transcript_fingerprint(transcript, evaluation)
		try:
			record, created = await asyncio.to_thread(
				self._persist, student_id, course_id, evaluation.score, fingerprint, decision.tier
			)
		except SQLAlchemyError as err:
			raise CertificateIssuanceError(f"Failed to save certificate: {err}") from err
		if created:
			logger.info("Certificate %s issued to %s for %s (%s)", record.certificate_id, student_id, course_id, record.tier)
			if self._ledger is not None:
				self._schedule_anchor(record)
		else:
			logger.info("Certificate %s already issued for this evaluation", record.certificate_id)
		return record

	def _persist(
		self,
		student_id: str,
		course_id: str,
		score: float,
		fingerprint: str,
		tier: Tier,
	) -> Tuple[CertificateRecord, bool]:
		with self._session_factory() as db:
			existing = (
				db.query(Certificate)
				.filter(
					Certificate.student_id == student_id,
					Certificate.course_id == course_id,
					Certificate.transcript_fingerprint == fingerprint,
					Certificate.status == "active",
				)
				.first()
			)
			if existing is not None:
				return CertificateRecord.from_row(existing), False
			row = Certificate(
				certificate_id=generate_certificate_id(),
				student_id=student_id,
				course_id=course_id,
				score=score,
				max_score=self.max_score,
				transcript_fingerprint=fingerprint,
				tier=tier.value,
				issued_at=datetime.utcnow(),
				status="active",
			)
			db.add(row)
			db.add(CertificateLog(certificate_id=row.certificate_id, action="issued", details=f"Certificate issued for course {course_id}"))
			try:
				db.commit()
			except SQLAlchemyError:
				db.rollback()
				raise
			return CertificateRecord.from_row(row), True

	def _schedule_anchor(self, record: CertificateRecord) -> None:
		task = asyncio.create_task(self._anchor(record))
		self._pending.add(task)
		task.add_done_callback(self._pending.discard)

	async def _anchor(self, record: CertificateRecord) -> None:
		note = {
			"certificate_id": record.certificate_id,
			"student_id": record.student_id,
			"course_id": record.course_id,
			"score": record.score,
			"max_score": record.max_score,
			"fingerprint": record.transcript_fingerprint,
			"issued_at": record.issued_at.isoformat(),
		}
		try:
			ref = await self._ledger.anchor(note)
			await asyncio.to_thread(self._attach_ledger_ref, record.certificate_id, ref)
		except Exception as err:
			logger.warning("Ledger anchoring for %s failed, certificate kept without it: %s", record.certificate_id, err)
			return
		logger.info("Certificate %s anchored as %s", record.certificate_id, ref)

	def _attach_ledger_ref(self, certificate_id: str, ref: str) -> None:
		with self._session_factory() as db:
			row = db.get(Certificate, certificate_id)
			if row is None:
				return
			row.ledger_ref = ref
			db.add(CertificateLog(certificate_id=certificate_id, action="anchored", details=ref))
			db.commit()

	async def drain(self) -> None:
		"""Wait for in-flight anchoring tasks (shutdown and tests)."""
		if self._pending:
			await asyncio.gather(*list(self._pending), return_exceptions=True)

	def cancel_pending(self) -> None:
		for task in list(self._pending):
			task.cancel()


def revoke_certificate(db: Session, certificate_id: str, *, reason: str = "") -> Optional[CertificateRecord]:
	row = db.get(Certificate, certificate_id)
	if row is None:
		return None
	if row.status != "revoked":
		row.status = "revoked"
		db.add(CertificateLog(certificate_id=certificate_id, action="revoked", details=reason or None))
		db.commit()
	return CertificateRecord.from_row(row)
