"""
Conversation Endpoints
======================

- POST /conversations/initiate: ask the provider for a room, then record it
- POST /conversations/{id}/complete: local "ended" signal from the learner
- POST /conversations/end: termination beacon (raw body, answered at once)
- POST /conversations/webhook: provider events, including the remote "ended"
- GET /conversations/{id}/outcome: grading state and result
- POST /conversations/{id}/evaluate: rerun grading after a failed attempt

Local and remote "ended" signals both go through ``claim_completion``; only
the first one starts the assessment pipeline.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import InitiationError
from ..models import VideoConversation
from ..schemas import ConversationStatus, EvaluationStatus, SessionMode
from ..services.completion import LOCAL, REMOTE, claim_completion
from ..services.initiator import InitiationRequest
from ..tavus_client import TavusClient
from .auth import User, get_current_user

router = APIRouter(prefix="/conversations", tags=["conversations"])

logger = logging.getLogger(__name__)

ENDED_EVENTS = ("conversation_ended", "system.shutdown")
STARTED_EVENTS = ("conversation_started", "system.replica_joined")
FAILED_EVENTS = ("conversation_failed",)


class InitiateRequest(BaseModel):
	course_id: str = Field(min_length=1)
	course_topic: str = Field(min_length=1)
	module_summary: str = ""
	module_index: int = Field(default=0, ge=0)
	mode: SessionMode
	user_name: Optional[str] = None


class InitiateResponse(BaseModel):
	id: str
	conversation_id: str
	room_handle: str
	persona_id: str
	replica_id: str
	status: str


def _own_conversation(db: Session, conversation_id: str, user: User) -> VideoConversation:
	row = db.get(VideoConversation, conversation_id)
	if row is None or row.user_id != user.username:
		raise HTTPException(status_code=404, detail="Conversation not found")
	return row


@router.post("/initiate", response_model=InitiateResponse)
async def initiate(req: InitiateRequest, request: Request, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	initiator = request.app.state.initiator
	if initiator is None:
		raise HTTPException(status_code=503, detail="Video provider is not configured")
	try:
		result = await initiator.initiate(
			InitiationRequest(
				user_id=user.username,
				user_name=req.user_name or user.name,
				course_topic=req.course_topic,
				module_summary=req.module_summary,
				mode=req.mode,
			)
		)
	except InitiationError as err:
		raise HTTPException(status_code=502, detail={"code": err.code, "message": str(err), "retryable": err.retryable})

	row = VideoConversation(
		user_id=user.username,
		course_id=req.course_id,
		mode=req.mode.value,
		module_index=req.module_index,
		course_topic=req.course_topic,
		module_summary=req.module_summary,
		external_conversation_id=result.conversation_id,
		room_handle=result.room_handle,
		replica_id=result.replica_id,
		persona_id=result.persona_id,
		status=ConversationStatus.INITIATED.value,
	)
	row.stamp("initiated", category=result.category, provider_status=result.status)
	db.add(row)
	db.commit()
	return InitiateResponse(
		id=row.id,
		conversation_id=result.conversation_id,
		room_handle=result.room_handle,
		persona_id=result.persona_id,
		replica_id=result.replica_id,
		status=result.status,
	)


@router.post("/{conversation_id}/complete", status_code=202)
async def complete(conversation_id: str, request: Request, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = _own_conversation(db, conversation_id, user)
	claimed = claim_completion(db, row.id, LOCAL)
	if claimed:
		request.app.state.runner.submit(row.id, LOCAL)
	db.refresh(row)
	return {"accepted": claimed, "completed_by": row.completed_by}


async def _end_remote(tavus: TavusClient, external_id: str) -> None:
	try:
		ended = await tavus.end_conversation(external_id)
	except httpx.HTTPError as err:
		logger.warning("Ending conversation %s failed: %s", external_id, err)
		return
	logger.info("Conversation %s %s", external_id, "ended" if ended else "was already over")


@router.post("/end", status_code=202)
async def end_beacon(request: Request, background: BackgroundTasks, db: Session = Depends(get_db)):
	# Beacons arrive as text/plain without auth headers; only known conversations are ended
	raw = await request.body()
	try:
		payload = json.loads(raw or b"{}")
	except ValueError:
		raise HTTPException(status_code=400, detail="Body must be JSON")
	external_id = payload.get("conversation_id") if isinstance(payload, dict) else None
	if not external_id:
		raise HTTPException(status_code=400, detail="conversation_id is required")
	row = db.query(VideoConversation).filter(VideoConversation.external_conversation_id == external_id).first()
	tavus = request.app.state.tavus
	if row is None or tavus is None:
		return {"accepted": False}
	row.stamp("end_requested")
	db.commit()
	background.add_task(_end_remote, tavus, external_id)
	return {"accepted": True}


@router.post("/webhook")
async def webhook(payload: Dict[str, Any], request: Request, db: Session = Depends(get_db)):
	external_id = payload.get("conversation_id")
	event_type = str(payload.get("event_type") or "")
	row = (
		db.query(VideoConversation).filter(VideoConversation.external_conversation_id == external_id).first()
		if external_id
		else None
	)
	if row is None:
		logger.info("Ignoring %s event for unknown conversation %s", event_type, external_id)
		return {"ok": True, "ignored": True}

	row.stamp(event_type or "unknown_event")
	if event_type in STARTED_EVENTS and row.status == ConversationStatus.INITIATED.value:
		row.status = ConversationStatus.ACTIVE.value
	elif event_type in FAILED_EVENTS and row.completed_by is None:
		row.status = ConversationStatus.FAILED.value
	elif event_type.startswith("participant_"):
		logger.info("Conversation %s: %s", external_id, event_type)
	db.commit()

	if event_type in ENDED_EVENTS and claim_completion(db, row.id, REMOTE):
		request.app.state.runner.submit(row.id, REMOTE)
	return {"ok": True}


@router.get("/{conversation_id}/outcome")
async def outcome(conversation_id: str, request: Request, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = _own_conversation(db, conversation_id, user)
	return {
		"id": row.id,
		"mode": row.mode,
		"status": row.status,
		"completed_by": row.completed_by,
		"evaluation_status": row.evaluation_status,
		"failure_code": row.failure_code,
		"processing": request.app.state.runner.running(row.id),
		"outcome": (row.session_log or {}).get("outcome"),
		"evaluation": row.evaluation_result,
	}


@router.post("/{conversation_id}/evaluate", status_code=202)
async def evaluate(conversation_id: str, request: Request, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = _own_conversation(db, conversation_id, user)
	if row.mode != SessionMode.EXAM.value:
		raise HTTPException(status_code=409, detail="Only exam sessions are graded")
	if row.completed_by is None:
		raise HTTPException(status_code=409, detail="Conversation has not completed")
	runner = request.app.state.runner
	# "evaluating" with no live task means the run was lost with its process
	stranded = row.evaluation_status == EvaluationStatus.EVALUATING.value and not runner.running(row.id)
	if row.evaluation_status != EvaluationStatus.FAILED.value and not stranded:
		raise HTTPException(status_code=409, detail=f"Evaluation is {row.evaluation_status}")
	if not runner.submit(row.id, "retry"):
		raise HTTPException(status_code=409, detail="Evaluation already running")
	return {"accepted": True}
