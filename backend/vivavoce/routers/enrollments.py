from __future__ import annotations

from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from ..errors import ProgressError
from ..services.progress import EnrollmentNotFound, EnrollmentProgress, ProgressTracker
from .auth import User, get_current_user

router = APIRouter(prefix="/enrollments", tags=["enrollments"])


class EnrollRequest(BaseModel):
	course_id: str = Field(min_length=1)


class ProgressRequest(BaseModel):
	module_index: int = Field(ge=0)
	completed: bool = False


class EnrollmentOut(BaseModel):
	id: str
	user_id: str
	course_id: str
	current_module_index: int
	status: str
	enrolled_at: datetime

	@classmethod
	def from_progress(cls, p: EnrollmentProgress) -> "EnrollmentOut":
		return cls(
			id=p.id,
			user_id=p.user_id,
			course_id=p.course_id,
			current_module_index=p.current_module_index,
			status=p.status,
			enrolled_at=p.enrolled_at,
		)


def get_tracker(request: Request) -> ProgressTracker:
	return request.app.state.tracker


@router.post("", response_model=EnrollmentOut, status_code=201)
def enroll(req: EnrollRequest, user: User = Depends(get_current_user), tracker: ProgressTracker = Depends(get_tracker)):
	try:
		return EnrollmentOut.from_progress(tracker.enroll(user.username, req.course_id))
	except ProgressError as err:
		raise HTTPException(status_code=409, detail=str(err))


@router.get("/current", response_model=EnrollmentOut)
def current(course_id: str, user: User = Depends(get_current_user), tracker: ProgressTracker = Depends(get_tracker)):
	progress = tracker.current(user.username, course_id)
	if progress is None:
		raise HTTPException(status_code=404, detail="No active enrollment")
	return EnrollmentOut.from_progress(progress)


@router.get("/history", response_model=List[EnrollmentOut])
def history(course_id: str, user: User = Depends(get_current_user), tracker: ProgressTracker = Depends(get_tracker)):
	return [EnrollmentOut.from_progress(p) for p in tracker.history(user.username, course_id)]


@router.post("/{enrollment_id}/progress", response_model=EnrollmentOut)
def advance(
	enrollment_id: str,
	req: ProgressRequest,
	user: User = Depends(get_current_user),
	tracker: ProgressTracker = Depends(get_tracker),
):
	try:
		progress = tracker.advance(enrollment_id, req.module_index, completed=req.completed, user_id=user.username)
	except EnrollmentNotFound:
		raise HTTPException(status_code=404, detail="Enrollment not found")
	except ProgressError as err:
		raise HTTPException(status_code=409, detail=str(err))
	return EnrollmentOut.from_progress(progress)
