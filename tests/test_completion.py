from __future__ import annotations

import threading

from vivavoce.models import VideoConversation
from vivavoce.services.completion import LOCAL, REMOTE, CompletionDetector, claim_completion


def test_first_signal_wins() -> None:
	calls = []
	detector = CompletionDetector(on_complete=calls.append)

	assert detector.signal(REMOTE) is True
	assert detector.signal(LOCAL) is False
	assert detector.signal(REMOTE) is False

	assert calls == [REMOTE]
	assert detector.completed and detector.source == REMOTE


def test_concurrent_signals_fire_one_callback() -> None:
	calls = []
	detector = CompletionDetector(on_complete=calls.append)
	barrier = threading.Barrier(16)

	def fire(i: int) -> None:
		barrier.wait()
		detector.signal(LOCAL if i % 2 else REMOTE)

	threads = [threading.Thread(target=fire, args=(i,)) for i in range(16)]
	for t in threads:
		t.start()
	for t in threads:
		t.join()

	assert len(calls) == 1


def test_claim_completion_latches_in_the_database(session_factory, make_conversation) -> None:
	conversation_id = make_conversation()

	with session_factory() as db:
		assert claim_completion(db, conversation_id, LOCAL) is True
		assert claim_completion(db, conversation_id, REMOTE) is False
		row = db.get(VideoConversation, conversation_id)
		assert row.completed_by == LOCAL
		assert row.status == "ended"


def test_claim_completion_unknown_conversation(session_factory) -> None:
	with session_factory() as db:
		assert claim_completion(db, "missing", REMOTE) is False
