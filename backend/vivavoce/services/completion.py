from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..models import VideoConversation

logger = logging.getLogger(__name__)

LOCAL = "local"
REMOTE = "remote"


class CompletionDetector:
	"""Latches on the first "ended" signal and ignores the rest.

	A local leave and the remote hang-up usually arrive within milliseconds
	of each other; only the first one reaches ``on_complete``.
	"""

	def __init__(self, on_complete: Optional[Callable[[str], None]] = None) -> None:
		self._on_complete = on_complete
		self._lock = threading.Lock()
		self._source: Optional[str] = None

	@property
	def completed(self) -> bool:
		return self._source is not None

	@property
	def source(self) -> Optional[str]:
		return self._source

	def signal(self, source: str) -> bool:
		"""Report an end signal; returns True only for the one that won."""
		with self._lock:
			if self._source is not None:
				logger.debug("Ignoring %s end signal; already completed by %s", source, self._source)
				return False
			self._source = source
		if self._on_complete is not None:
			self._on_complete(source)
		return True


def claim_completion(db: Session, conversation_id: str, source: str) -> bool:
	"""Cross-process form of the latch for the API.

	A single conditional UPDATE: whichever request flips ``completed_by`` from
	NULL wins, no matter which worker handles the webhook or the learner's
	completion call.
	"""
	claimed = (
		db.query(VideoConversation)
		.filter(VideoConversation.id == conversation_id, VideoConversation.completed_by.is_(None))
		.update(
			{
				VideoConversation.completed_by: source,
				VideoConversation.status: "ended",
				VideoConversation.updated_at: datetime.utcnow(),
			},
			synchronize_session=False,
		)
	)
	db.commit()
	if claimed:
		logger.info("Conversation %s completed (%s signal)", conversation_id, source)
	return bool(claimed)
