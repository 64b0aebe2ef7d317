from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..errors import ProgressError
from ..models import UserEnrollment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrollmentProgress:
	id: str
	user_id: str
	course_id: str
	current_module_index: int
	status: str
	enrolled_at: datetime

	@classmethod
	def from_row(cls, row: UserEnrollment) -> "EnrollmentProgress":
		return cls(
			id=row.id,
			user_id=row.user_id,
			course_id=row.course_id,
			current_module_index=row.current_module_index,
			status=row.status,
			enrolled_at=row.enrolled_at,
		)


class EnrollmentNotFound(ProgressError):
	code = "enrollment-not-found"


class ProgressTracker:
	"""Enrollment rows and module progress.

	Every method is one transaction: a row is either fully advanced or left
	exactly as it was. The methods are synchronous; async callers run them in
	a worker thread.
	"""

	def __init__(self, session_factory: sessionmaker) -> None:
		self._session_factory = session_factory

	def enroll(self, user_id: str, course_id: str) -> EnrollmentProgress:
		"""Start a fresh enrollment, demoting any active one to ``dropped``."""
		with self._session_factory() as db:
			try:
				dropped = (
					db.query(UserEnrollment)
					.filter(
						UserEnrollment.user_id == user_id,
						UserEnrollment.course_id == course_id,
						UserEnrollment.status == "active",
					)
					.update({UserEnrollment.status: "dropped"}, synchronize_session=False)
				)
				row = UserEnrollment(user_id=user_id, course_id=course_id, current_module_index=0, status="active", enrolled_at=datetime.utcnow())
				db.add(row)
				db.commit()
			except SQLAlchemyError as err:
				db.rollback()
				raise ProgressError(f"Failed to enroll {user_id} in {course_id}: {err}") from err
			if dropped:
				logger.info("Previous active enrollment for %s in %s marked as dropped", user_id, course_id)
			return EnrollmentProgress.from_row(row)

	def current(self, user_id: str, course_id: str) -> Optional[EnrollmentProgress]:
		with self._session_factory() as db:
			row = (
				db.query(UserEnrollment)
				.filter(
					UserEnrollment.user_id == user_id,
					UserEnrollment.course_id == course_id,
					UserEnrollment.status == "active",
				)
				.first()
			)
			return EnrollmentProgress.from_row(row) if row else None

	def history(self, user_id: str, course_id: str) -> List[EnrollmentProgress]:
		with self._session_factory() as db:
			rows = (
				db.query(UserEnrollment)
				.filter(UserEnrollment.user_id == user_id, UserEnrollment.course_id == course_id)
				.order_by(UserEnrollment.enrolled_at.desc())
				.all()
			)
			return [EnrollmentProgress.from_row(r) for r in rows]

	def advance(
		self,
		enrollment_id: str,
		module_index: int,
		*,
		completed: bool = False,
		user_id: Optional[str] = None,
	) -> EnrollmentProgress:
		"""Move the module pointer forward (never back) and optionally complete.

		Raises:
			EnrollmentNotFound: unknown id, or owned by another user.
			ProgressError: the enrollment was superseded, or the write failed.
		"""
		if module_index < 0:
			raise ProgressError("module_index must be non-negative")
		with self._session_factory() as db:
			row = db.get(UserEnrollment, enrollment_id)
			if row is None or (user_id is not None and row.user_id != user_id):
				raise EnrollmentNotFound(f"Enrollment {enrollment_id} not found")
			if row.status == "dropped":
				raise ProgressError(f"Enrollment {enrollment_id} was superseded by a newer enrollment")
			row.current_module_index = max(row.current_module_index, module_index)
			if completed:
				row.status = "completed"
			try:
				db.commit()
			except SQLAlchemyError as err:
				db.rollback()
				raise ProgressError(f"Failed to update course progress: {err}") from err
			return EnrollmentProgress.from_row(row)

	def record_session(
		self,
		user_id: str,
		course_id: str,
		module_index: int,
		*,
		completed: bool,
	) -> Optional[EnrollmentProgress]:
		"""Progress hook for a finished conversation.

		Targets the active enrollment, or the most recent completed one when a
		grading retry runs after completion. Returns None and writes nothing
		when the learner has no such enrollment.
		"""
		with self._session_factory() as db:
			row = (
				db.query(UserEnrollment)
				.filter(
					UserEnrollment.user_id == user_id,
					UserEnrollment.course_id == course_id,
					UserEnrollment.status.in_(("active", "completed")),
				)
				.order_by((UserEnrollment.status == "active").desc(), UserEnrollment.enrolled_at.desc())
				.first()
			)
			if row is None:
				logger.warning("No enrollment for %s in %s; progress left unchanged", user_id, course_id)
				return None
			enrollment_id = row.id
		return self.advance(enrollment_id, module_index, completed=completed)
