from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	# Scoring oracle. Provider can be "vertex" (Vertex AI Express) or "ai_studio" (Generative Language API)
	gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")
	gemini_provider: str = Field(default="ai_studio", validation_alias="GEMINI_PROVIDER")
	gemini_model: str = Field(default="gemini-2.5-flash", validation_alias="GEMINI_MODEL")
	vertex_region: str = Field(default="us-central1", validation_alias="GEMINI_VERTEX_REGION")
	vertex_project: str | None = Field(default=None, validation_alias="GEMINI_VERTEX_PROJECT")

	# OpenRouter fallback for the scoring oracle (optional)
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_model: str = Field(default="x-ai/grok-4-fast:free", validation_alias="OPENROUTER_MODEL")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://localhost", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="Viva Voce Assessments", validation_alias="OPENROUTER_TITLE")

	# Video-session provider
	tavus_api_key: str | None = Field(default=None, validation_alias="TAVUS_API_KEY")
	tavus_base_url: str = Field(default="https://tavusapi.com/v2", validation_alias="TAVUS_BASE_URL")
	# Where the provider should POST conversation events (our /conversations/webhook)
	tavus_callback_url: str | None = Field(default=None, validation_alias="TAVUS_CALLBACK_URL")
	tavus_replica_id: str = Field(default="r6ae5b6efc9d", validation_alias="TAVUS_REPLICA_ID")
	tavus_persona_id: str = Field(default="pe9ddc17da43", validation_alias="TAVUS_PERSONA_ID")

	# Auth configuration
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=120, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")

	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# Pipeline timing
	join_timeout_seconds: float = Field(default=30.0, validation_alias="JOIN_TIMEOUT_SECONDS")
	transcript_poll_interval_seconds: float = Field(default=1.0, validation_alias="TRANSCRIPT_POLL_INTERVAL_SECONDS")
	transcript_poll_attempts: int = Field(default=30, validation_alias="TRANSCRIPT_POLL_ATTEMPTS")
	evaluation_attempts: int = Field(default=3, validation_alias="EVALUATION_ATTEMPTS")
	evaluation_backoff_seconds: float = Field(default=1.0, validation_alias="EVALUATION_BACKOFF_SECONDS")

	# Certification
	certificate_pass_mark: int = Field(default=70, validation_alias="CERTIFICATE_PASS_MARK")
	# Optional ledger anchoring endpoint; anchoring is skipped when unset
	ledger_url: str | None = Field(default=None, validation_alias="LEDGER_URL")
	ledger_api_key: str | None = Field(default=None, validation_alias="LEDGER_API_KEY")

	# Public base URL of this API, used by the learner client for beacons
	public_base_url: str = Field(default="http://localhost:8000", validation_alias="PUBLIC_BASE_URL")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
