from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterator

import pytest
from sqlalchemy.orm import sessionmaker

from vivavoce.db import create_session_factory, init_schema
from vivavoce.models import VideoConversation
from vivavoce.settings import settings


@pytest.fixture(autouse=True)
def _no_openrouter(monkeypatch: pytest.MonkeyPatch) -> None:
	# A developer's OPENROUTER_API_KEY must not turn provider failures into fallbacks
	monkeypatch.setattr(settings, "openrouter_api_key", None)


@pytest.fixture()
def session_factory(tmp_path: Path) -> Iterator[sessionmaker]:
	factory = create_session_factory(f"sqlite:///{tmp_path / 'vivavoce-test.db'}")
	init_schema(factory)
	try:
		yield factory
	finally:
		factory.kw["bind"].dispose()


@pytest.fixture()
def make_conversation(session_factory: sessionmaker) -> Callable[..., str]:
	def _make(
		*,
		mode: str = "exam",
		user_id: str = "alice",
		course_id: str = "ml-101",
		module_index: int = 2,
		external_id: str = "c-1",
	) -> str:
		with session_factory() as db:
			row = VideoConversation(
				user_id=user_id,
				course_id=course_id,
				mode=mode,
				module_index=module_index,
				course_topic="Introduction to Machine Learning",
				module_summary="Model evaluation and overfitting",
				external_conversation_id=external_id,
				room_handle=f"https://tavus.daily.co/{external_id}",
			)
			db.add(row)
			db.commit()
			return row.id

	return _make
