from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import Certificate, CertificateLog
from ..services.certification import CertificateRecord, revoke_certificate
from .auth import User, get_current_user

router = APIRouter(prefix="/certificates", tags=["certificates"])


class CertificateOut(BaseModel):
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
	def from_record(cls, r: CertificateRecord) -> "CertificateOut":
		return cls(**asdict(r))


class LogEntry(BaseModel):
	action: str
	details: Optional[str] = None
	created_at: datetime


class CertificateDetail(CertificateOut):
	log: List[LogEntry] = []


class RevokeRequest(BaseModel):
	reason: str = ""


@router.get("", response_model=List[CertificateOut])
def list_certificates(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	rows = (
		db.query(Certificate)
		.filter(Certificate.student_id == user.username)
		.order_by(Certificate.issued_at.desc())
		.all()
	)
	return [CertificateOut.from_record(CertificateRecord.from_row(r)) for r in rows]


# Verification is public: anyone holding a certificate id can check it
@router.get("/{certificate_id}", response_model=CertificateDetail)
def verify(certificate_id: str, db: Session = Depends(get_db)):
	row = db.get(Certificate, certificate_id)
	if row is None:
		raise HTTPException(status_code=404, detail="Certificate not found")
	logs = (
		db.query(CertificateLog)
		.filter(CertificateLog.certificate_id == certificate_id)
		.order_by(CertificateLog.id.asc())
		.all()
	)
	base = CertificateOut.from_record(CertificateRecord.from_row(row))
	return CertificateDetail(
		**base.model_dump(),
		log=[LogEntry(action=l.action, details=l.details, created_at=l.created_at) for l in logs],
	)


@router.post("/{certificate_id}/revoke", response_model=CertificateOut)
def revoke(certificate_id: str, req: RevokeRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = db.get(Certificate, certificate_id)
	if row is None or row.student_id != user.username:
		raise HTTPException(status_code=404, detail="Certificate not found")
	record = revoke_certificate(db, certificate_id, reason=req.reason)
	return CertificateOut.from_record(record)
