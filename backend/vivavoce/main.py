from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .cleanup import expire_stale_conversations
from .db import create_session_factory, init_schema
from .gemini_client import GeminiClient
from .routers import auth, certificates, conversations, enrollments
from .services.certification import CertificateIssuer, HttpLedgerAnchor
from .services.evaluation import EvaluationEngine
from .services.initiator import SessionInitiator
from .services.pipeline import AssessmentPipeline, PipelineRunner
from .services.progress import ProgressTracker
from .services.transcripts import TranscriptFetcher
from .settings import Settings, settings
from .tavus_client import TavusClient

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 60 * 60


def configure_logging(level: str) -> None:
	logging.basicConfig(level=level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
	logging.getLogger("passlib").setLevel(logging.ERROR)
	logging.getLogger("httpx").setLevel(logging.WARNING)


def _run_cleanup(session_factory: sessionmaker) -> None:
	with session_factory() as db:
		expired = expire_stale_conversations(db)
	if expired:
		logger.info("Marked %d stale conversation(s) as failed", expired)


async def _cleanup_watcher(session_factory: sessionmaker) -> None:
	# Run once at startup, then hourly
	while True:
		try:
			await asyncio.to_thread(_run_cleanup, session_factory)
		except SQLAlchemyError as err:
			logger.warning("Stale conversation cleanup failed: %s", err)
		await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)


def create_app(
	config: Settings = settings,
	*,
	session_factory: sessionmaker | None = None,
	tavus=None,
	oracle=None,
	ledger=None,
	run_cleanup: bool = True,
) -> FastAPI:
	"""Build the API. Collaborators left as None are created from ``config``."""

	@asynccontextmanager
	async def lifespan(app: FastAPI):
		factory = session_factory or create_session_factory(config.database_url)
		init_schema(factory)
		owned = []

		provider = tavus
		if provider is None and config.tavus_api_key:
			provider = TavusClient(config.tavus_api_key, base_url=config.tavus_base_url)
			owned.append(provider)
		scorer = oracle
		if scorer is None and config.gemini_api_key:
			scorer = GeminiClient(config.gemini_api_key, fallback_api_key=config.openrouter_api_key)
			owned.append(scorer)
		anchor = ledger
		if anchor is None and config.ledger_url:
			anchor = HttpLedgerAnchor(config.ledger_url, api_key=config.ledger_api_key)
			owned.append(anchor)
		if provider is None:
			logger.warning("TAVUS_API_KEY is not set; sessions cannot be initiated")
		if scorer is None:
			logger.warning("GEMINI_API_KEY is not set; exam grading will fail")

		tracker = ProgressTracker(factory)
		issuer = CertificateIssuer(factory, ledger=anchor)
		pipeline = AssessmentPipeline(
			factory,
			fetcher=TranscriptFetcher(
				provider,
				interval=config.transcript_poll_interval_seconds,
				attempts=config.transcript_poll_attempts,
			),
			engine=EvaluationEngine(scorer),
			issuer=issuer,
			tracker=tracker,
			evaluation_attempts=config.evaluation_attempts,
			evaluation_backoff=config.evaluation_backoff_seconds,
			pass_mark=config.certificate_pass_mark,
		)
		runner = PipelineRunner(pipeline)

		app.state.session_factory = factory
		app.state.tavus = provider
		app.state.initiator = SessionInitiator(provider, callback_url=config.tavus_callback_url) if provider else None
		app.state.tracker = tracker
		app.state.issuer = issuer
		app.state.runner = runner

		watcher = asyncio.create_task(_cleanup_watcher(factory)) if run_cleanup else None
		try:
			yield
		finally:
			if watcher is not None:
				watcher.cancel()
			await runner.shutdown()
			issuer.cancel_pending()
			for client in owned:
				await client.aclose()

	app = FastAPI(title="Viva Voce Assessment API", lifespan=lifespan)
	app.include_router(auth.router)
	app.include_router(conversations.router)
	app.include_router(enrollments.router)
	app.include_router(certificates.router)

	@app.get("/info")
	def info():
		return {
			"status": "ok",
			"gemini_configured": bool(oracle or config.gemini_api_key),
			"tavus_configured": bool(tavus or config.tavus_api_key),
			"ledger_configured": bool(ledger or config.ledger_url),
		}

	return app


configure_logging(settings.log_level)
app = create_app()
