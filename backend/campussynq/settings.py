from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	app_name: str = Field(default="CampusSynq API", validation_alias="APP_NAME")
	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# Chat-completion provider used by the content endpoints (OpenAI-compatible)
	llm_api_key: str | None = Field(default=None, validation_alias="LLM_API_KEY")
	llm_base_url: str = Field(default="https://api.openai.com/v1/chat/completions", validation_alias="LLM_BASE_URL")
	llm_model: str = Field(default="gpt-4o-mini", validation_alias="LLM_MODEL")
	llm_temperature: float = Field(default=0.7, validation_alias="LLM_TEMPERATURE")
	llm_timeout_seconds: float = Field(default=30.0, validation_alias="LLM_TIMEOUT_SECONDS")

	# OpenRouter fallback configuration (optional)
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_model: str = Field(default="google/gemini-2.5-flash", validation_alias="OPENROUTER_MODEL")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://localhost", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="CampusSynq", validation_alias="OPENROUTER_TITLE")

	# Auth configuration
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=120, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
	sign_in_path: str = Field(default="/auth", validation_alias="SIGN_IN_PATH")

	# Privileged XP credit path; unset means the ledger always writes directly
	service_role_key: str | None = Field(default=None, validation_alias="SERVICE_ROLE_KEY")

	# Progression and feed tuning
	xp_per_level: int = Field(default=500, validation_alias="XP_PER_LEVEL")
	xp_write_retries: int = Field(default=3, validation_alias="XP_WRITE_RETRIES")
	activity_feed_limit: int = Field(default=20, validation_alias="ACTIVITY_FEED_LIMIT")
	top_movers_limit: int = Field(default=3, validation_alias="TOP_MOVERS_LIMIT")
	profile_cache_size: int = Field(default=1024, validation_alias="PROFILE_CACHE_SIZE")
	group_message_max_length: int = Field(default=2000, validation_alias="GROUP_MESSAGE_MAX_LENGTH")

	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
