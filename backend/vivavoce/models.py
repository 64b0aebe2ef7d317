from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, Float, Text, JSON, Index, text
from .db import Base


def _uuid() -> str:
	return uuid.uuid4().hex


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username; it doubles as the user id everywhere else
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	display_name = Column(String(128), nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	# jti of the issued token; deleting the row revokes the token
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), nullable=False, index=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class VideoConversation(Base):
	__tablename__ = "video_conversations"
	id = Column(String(32), primary_key=True, default=_uuid)
	user_id = Column(String(128), nullable=False, index=True)
	course_id = Column(String(64), nullable=False, index=True)
	mode = Column(String(16), nullable=False)  # practice|exam
	module_index = Column(Integer, default=0, nullable=False)
	course_topic = Column(Text, nullable=False)
	module_summary = Column(Text, nullable=False)
	external_conversation_id = Column(String(128), nullable=False, unique=True, index=True)
	room_handle = Column(Text, nullable=False)
	replica_id = Column(String(64), nullable=True)
	persona_id = Column(String(64), nullable=True)
	# initiated|active|ended|failed
	status = Column(String(16), default="initiated", nullable=False)
	# Which signal won the completion latch (local|remote); null until completed
	completed_by = Column(String(16), nullable=True)
	# pending|evaluating|completed|failed|skipped
	evaluation_status = Column(String(16), default="pending", nullable=False)
	evaluation_result = Column(JSON, nullable=True)
	transcript = Column(JSON, nullable=True)
	failure_code = Column(String(64), nullable=True)
	session_log = Column(JSON, default=dict, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	def stamp(self, event: str, **details) -> None:
		# JSON columns only notice reassignment, so the log is rebuilt, not mutated
		log = dict(self.session_log or {})
		events = list(log.get("events") or [])
		events.append({"event": event, "at": datetime.utcnow().isoformat(), **details})
		log["events"] = events
		self.session_log = log

	def record_outcome(self, outcome: dict) -> None:
		log = dict(self.session_log or {})
		log["outcome"] = outcome
		self.session_log = log


class Certificate(Base):
	__tablename__ = "certificates"
	certificate_id = Column(String(64), primary_key=True)
	student_id = Column(String(128), nullable=False, index=True)
	course_id = Column(String(64), nullable=False, index=True)
	score = Column(Float, nullable=False)
	max_score = Column(Float, nullable=False)
	transcript_fingerprint = Column(String(64), nullable=False, index=True)
	tier = Column(String(16), nullable=False)  # bronze|silver|gold|platinum
	issued_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	status = Column(String(16), default="active", nullable=False)  # active|revoked
	ledger_ref = Column(String(128), nullable=True)


class CertificateLog(Base):
	__tablename__ = "certificate_logs"
	id = Column(Integer, primary_key=True, autoincrement=True)
	certificate_id = Column(String(64), nullable=False, index=True)
	action = Column(String(16), nullable=False)  # issued|anchored|revoked
	details = Column(Text, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class UserEnrollment(Base):
	__tablename__ = "user_enrollments"
	id = Column(String(32), primary_key=True, default=_uuid)
	user_id = Column(String(128), nullable=False, index=True)
	course_id = Column(String(64), nullable=False, index=True)
	current_module_index = Column(Integer, default=0, nullable=False)
	status = Column(String(16), default="active", nullable=False)  # active|completed|dropped
	enrolled_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	__table_args__ = (
		# At most one active enrollment per (user, course); history rows are kept as dropped/completed
		Index(
			"uq_user_enrollments_active",
			"user_id",
			"course_id",
			unique=True,
			sqlite_where=text("status = 'active'"),
			postgresql_where=text("status = 'active'"),
		),
	)
