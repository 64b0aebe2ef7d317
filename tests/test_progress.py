from __future__ import annotations

import pytest

from vivavoce.errors import ProgressError
from vivavoce.models import UserEnrollment
from vivavoce.services.progress import EnrollmentNotFound, ProgressTracker


def test_repeated_enrollment_keeps_one_active_row(session_factory) -> None:
	tracker = ProgressTracker(session_factory)

	enrollments = [tracker.enroll("alice", "ml-101") for _ in range(4)]

	with session_factory() as db:
		statuses = [r.status for r in db.query(UserEnrollment).filter_by(user_id="alice", course_id="ml-101")]
	assert statuses.count("active") == 1
	assert statuses.count("dropped") == 3
	assert tracker.current("alice", "ml-101").id == enrollments[-1].id
	assert len(tracker.history("alice", "ml-101")) == 4


def test_enrollments_are_scoped_per_course(session_factory) -> None:
	tracker = ProgressTracker(session_factory)

	tracker.enroll("alice", "ml-101")
	tracker.enroll("alice", "stats-200")

	assert tracker.current("alice", "ml-101").status == "active"
	assert tracker.current("alice", "stats-200").status == "active"
	assert tracker.current("bob", "ml-101") is None


def test_module_index_never_regresses(session_factory) -> None:
	tracker = ProgressTracker(session_factory)
	enrollment = tracker.enroll("alice", "ml-101")

	assert tracker.advance(enrollment.id, 3).current_module_index == 3
	assert tracker.advance(enrollment.id, 1).current_module_index == 3


def test_completion_is_independent_of_module_pointer(session_factory) -> None:
	tracker = ProgressTracker(session_factory)
	enrollment = tracker.enroll("alice", "ml-101")

	done = tracker.advance(enrollment.id, 0, completed=True)

	assert done.status == "completed"
	assert tracker.current("alice", "ml-101") is None


def test_dropped_enrollment_cannot_advance(session_factory) -> None:
	tracker = ProgressTracker(session_factory)
	old = tracker.enroll("alice", "ml-101")
	tracker.enroll("alice", "ml-101")

	with pytest.raises(ProgressError):
		tracker.advance(old.id, 2)

	with session_factory() as db:
		assert db.get(UserEnrollment, old.id).current_module_index == 0


def test_other_users_enrollment_is_not_found(session_factory) -> None:
	tracker = ProgressTracker(session_factory)
	enrollment = tracker.enroll("alice", "ml-101")

	with pytest.raises(EnrollmentNotFound):
		tracker.advance(enrollment.id, 1, user_id="mallory")
	with pytest.raises(EnrollmentNotFound):
		tracker.advance("missing", 1)


def test_record_session_targets_active_then_completed(session_factory) -> None:
	tracker = ProgressTracker(session_factory)
	tracker.enroll("alice", "ml-101")

	practiced = tracker.record_session("alice", "ml-101", 2, completed=False)
	examined = tracker.record_session("alice", "ml-101", 3, completed=True)
	regraded = tracker.record_session("alice", "ml-101", 3, completed=True)

	assert (practiced.current_module_index, practiced.status) == (2, "active")
	assert (examined.current_module_index, examined.status) == (3, "completed")
	assert regraded.id == examined.id


def test_record_session_without_enrollment_writes_nothing(session_factory) -> None:
	tracker = ProgressTracker(session_factory)

	assert tracker.record_session("alice", "ml-101", 1, completed=True) is None
	with session_factory() as db:
		assert db.query(UserEnrollment).count() == 0
