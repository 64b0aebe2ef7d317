from __future__ import annotations
from datetime import datetime, timedelta
from sqlalchemy.orm import Session

from .models import VideoConversation
from .schemas import ConversationStatus


STALE_AFTER = timedelta(days=1)


def expire_stale_conversations(db: Session, *, older_than: timedelta = STALE_AFTER) -> int:
	"""Mark rooms that were created but never joined as failed.

	Only ``initiated`` rows are touched; anything that reached active or ended
	has its own lifecycle.
	"""
	threshold = datetime.utcnow() - older_than
	expired = (
		db.query(VideoConversation)
		.filter(
			VideoConversation.status == ConversationStatus.INITIATED.value,
			VideoConversation.created_at < threshold,
		)
		.update(
			{
				VideoConversation.status: ConversationStatus.FAILED.value,
				VideoConversation.failure_code: "abandoned",
				VideoConversation.updated_at: datetime.utcnow(),
			},
			synchronize_session=False,
		)
	)
	db.commit()
	return expired or 0
