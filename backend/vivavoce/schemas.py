from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr


class SessionMode(str, enum.Enum):
	PRACTICE = "practice"
	EXAM = "exam"


class ConnectionState(str, enum.Enum):
	IDLE = "idle"
	CONNECTING = "connecting"
	CONNECTED = "connected"
	DEGRADED = "degraded"
	ENDED = "ended"
	FAILED = "failed"

	@property
	def terminal(self) -> bool:
		return self in (ConnectionState.ENDED, ConnectionState.FAILED)


class Tier(str, enum.Enum):
	BRONZE = "bronze"
	SILVER = "silver"
	GOLD = "gold"
	PLATINUM = "platinum"


@dataclass
class Session:
	"""The learner's one live conversation.

	Built from a successful initiation; only ConnectionManager assigns
	``connection_state`` after that.
	"""

	id: str
	room_handle: str
	mode: SessionMode
	external_conversation_id: str
	connection_state: ConnectionState = ConnectionState.IDLE


class TranscriptEntry(BaseModel):
	model_config = ConfigDict(frozen=True)

	role: Literal["user", "assistant"]
	content: str
	timestamp: Optional[float] = None


# ============================================================================
# EVALUATION RESULT
# ============================================================================
# Wire names follow the oracle prompt (conceptual_accuracy, impactful_quotes, ...);
# attribute names are the short forms used in the rest of the code.
# Scalars are strict so "82" never becomes 82: a mistyped field is a contract
# violation, the same as an out-of-range one.

class Breakdown(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	conceptual: float = Field(ge=0, le=30, strict=True, alias="conceptual_accuracy")
	depth: float = Field(ge=0, le=40, strict=True, alias="depth_of_analysis")
	practical: float = Field(ge=0, le=30, strict=True, alias="practical_application")


class EvaluationResult(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	score: float = Field(ge=0, le=100, strict=True)
	breakdown: Breakdown
	strengths: List[StrictStr] = Field(min_length=1, max_length=5)
	weaknesses: List[StrictStr] = Field(min_length=1, max_length=3)
	quotes: List[StrictStr] = Field(min_length=1, max_length=5, alias="impactful_quotes")
	assessment: StrictStr = Field(min_length=50, max_length=500, alias="overall_assessment")
	recommendations: List[StrictStr] = Field(min_length=1, max_length=3)

	def to_wire(self) -> dict:
		return self.model_dump(by_alias=True)


class ConversationStatus(str, enum.Enum):
	INITIATED = "initiated"
	ACTIVE = "active"
	ENDED = "ended"
	FAILED = "failed"


class EvaluationStatus(str, enum.Enum):
	PENDING = "pending"
	EVALUATING = "evaluating"
	COMPLETED = "completed"
	FAILED = "failed"
	SKIPPED = "skipped"
