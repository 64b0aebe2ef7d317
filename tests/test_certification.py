from __future__ import annotations

import asyncio
import json
import re

import httpx
import pytest

from vivavoce.errors import CertificateIssuanceError
from vivavoce.models import Certificate, CertificateLog
from vivavoce.schemas import EvaluationResult, Tier
from vivavoce.services.certification import (
	CertificateIssuer,
	HttpLedgerAnchor,
	decide,
	generate_certificate_id,
	revoke_certificate,
	tier_for,
	transcript_fingerprint,
)
from vivavoce.services.transcripts import normalize_transcript

from fakes import RAW_TRANSCRIPT, evaluation_payload


def _evaluation(score: float) -> EvaluationResult:
	# Breakdown consistent with the total is not part of the contract
	return EvaluationResult.model_validate(evaluation_payload(score=score))


@pytest.mark.parametrize(
	"score, issue, tier",
	[
		(69, False, Tier.BRONZE),
		(70, True, Tier.BRONZE),
		(75, True, Tier.SILVER),
		(82, True, Tier.SILVER),
		(85, True, Tier.GOLD),
		(95, True, Tier.PLATINUM),
		(100, True, Tier.PLATINUM),
	],
)
def test_decision_boundaries(score: float, issue: bool, tier: Tier) -> None:
	decision = decide(_evaluation(score))

	assert decision.issue is issue
	assert decision.tier is tier


def test_tier_uses_percentage_of_max_score() -> None:
	assert tier_for(19, max_score=20) is Tier.PLATINUM
	assert tier_for(0, max_score=0) is Tier.BRONZE


def test_certificate_ids_are_unique_within_one_millisecond() -> None:
	ids = {generate_certificate_id(now_ms=1700000000000) for _ in range(1000)}

	assert len(ids) == 1000
	assert all(re.fullmatch(r"CERT-1700000000000-[A-Z0-9]{8}", i) for i in ids)


def test_fingerprint_is_stable_and_content_sensitive() -> None:
	transcript = normalize_transcript(RAW_TRANSCRIPT)
	evaluation = _evaluation(82)

	assert transcript_fingerprint(transcript, evaluation) == transcript_fingerprint(list(transcript), _evaluation(82))
	assert transcript_fingerprint(transcript, evaluation) != transcript_fingerprint(transcript, _evaluation(83))
	assert len(transcript_fingerprint(transcript, evaluation)) == 64


class _FailingLedger:
	def __init__(self) -> None:
		self.notes = []

	async def anchor(self, note):
		self.notes.append(note)
		raise RuntimeError("ledger node unreachable")


class _Ledger:
	async def anchor(self, note):
		return "TX-ABC123"


def _issue(issuer: CertificateIssuer, score: float = 82):
	transcript = normalize_transcript(RAW_TRANSCRIPT)
	evaluation = _evaluation(score)

	async def scenario():
		record = await issuer.issue(
			student_id="alice",
			course_id="ml-101",
			evaluation=evaluation,
			transcript=transcript,
			decision=decide(evaluation),
		)
		await issuer.drain()
		return record

	return asyncio.run(scenario())


def test_issue_persists_record_and_log(session_factory) -> None:
	record = _issue(CertificateIssuer(session_factory))

	assert record.tier == "silver"
	assert record.status == "active"
	assert record.max_score == 100
	with session_factory() as db:
		row = db.get(Certificate, record.certificate_id)
		assert row is not None and row.score == 82
		actions = [l.action for l in db.query(CertificateLog).filter_by(certificate_id=record.certificate_id)]
		assert actions == ["issued"]


def test_same_evaluation_is_not_issued_twice(session_factory) -> None:
	issuer = CertificateIssuer(session_factory)

	first = _issue(issuer)
	second = _issue(issuer)
	third = _issue(issuer, score=90)

	assert first.certificate_id == second.certificate_id
	assert third.certificate_id != first.certificate_id
	with session_factory() as db:
		assert db.query(Certificate).count() == 2


def test_non_qualifying_decision_is_refused(session_factory) -> None:
	with pytest.raises(CertificateIssuanceError):
		_issue(CertificateIssuer(session_factory), score=65)
	with session_factory() as db:
		assert db.query(Certificate).count() == 0


def test_ledger_failure_keeps_the_certificate(session_factory) -> None:
	ledger = _FailingLedger()

	record = _issue(CertificateIssuer(session_factory, ledger=ledger))

	assert len(ledger.notes) == 1
	assert ledger.notes[0]["certificate_id"] == record.certificate_id
	with session_factory() as db:
		row = db.get(Certificate, record.certificate_id)
		assert row.status == "active"
		assert row.ledger_ref is None


def test_ledger_reference_attaches_after_issue(session_factory) -> None:
	record = _issue(CertificateIssuer(session_factory, ledger=_Ledger()))

	assert record.ledger_ref is None
	with session_factory() as db:
		assert db.get(Certificate, record.certificate_id).ledger_ref == "TX-ABC123"
		actions = [l.action for l in db.query(CertificateLog).filter_by(certificate_id=record.certificate_id).order_by(CertificateLog.id)]
		assert actions == ["issued", "anchored"]


def test_http_ledger_anchor_returns_transaction_id() -> None:
	seen = {}

	def handler(request: httpx.Request) -> httpx.Response:
		seen["auth"] = request.headers.get("authorization")
		seen["body"] = json.loads(request.content)
		return httpx.Response(200, json={"txId": "ALGO-TX-1"})

	async def scenario():
		async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
			anchor = HttpLedgerAnchor("https://ledger.example/notes", api_key="secret", http_client=client)
			return await anchor.anchor({"certificate_id": "CERT-1-ABC"})

	assert asyncio.run(scenario()) == "ALGO-TX-1"
	assert seen["auth"] == "Bearer secret"
	assert seen["body"]["note"]["certificate_id"] == "CERT-1-ABC"


def test_revoke_marks_status_and_logs_once(session_factory) -> None:
	record = _issue(CertificateIssuer(session_factory))

	with session_factory() as db:
		revoked = revoke_certificate(db, record.certificate_id, reason="academic misconduct")
		again = revoke_certificate(db, record.certificate_id)
		missing = revoke_certificate(db, "CERT-0-NOPE")
		actions = [l.action for l in db.query(CertificateLog).filter_by(certificate_id=record.certificate_id)]

	assert revoked.status == "revoked" and again.status == "revoked"
	assert missing is None
	assert actions.count("revoked") == 1
