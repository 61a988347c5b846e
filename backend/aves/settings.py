from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# Auth configuration (local accounts signed with JWT)
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	jwt_expire_hours: int = Field(default=24, validation_alias="JWT_EXPIRE_HOURS")
	# Comma separated list of emails treated as admins
	admin_emails: str = Field(default="", validation_alias="ADMIN_EMAILS")

	# Supabase token verification (optional)
	supabase_url: str | None = Field(default=None, validation_alias="SUPABASE_URL")
	supabase_service_role_key: str | None = Field(default=None, validation_alias="SUPABASE_SERVICE_ROLE_KEY")

	# Unsplash image search
	unsplash_access_key: str | None = Field(default=None, validation_alias="UNSPLASH_ACCESS_KEY")
	unsplash_base_url: str = Field(default="https://api.unsplash.com", validation_alias="UNSPLASH_BASE_URL")

	# Claude vision
	anthropic_api_key: str | None = Field(default=None, validation_alias="ANTHROPIC_API_KEY")
	anthropic_model: str = Field(default="claude-sonnet-4-5-20250929", validation_alias="ANTHROPIC_MODEL")

	# Limits and thresholds
	ai_rate_limit_per_hour: int = Field(default=500, validation_alias="AI_RATE_LIMIT_PER_HOUR")
	annotation_quality_threshold: int = Field(default=60, validation_alias="ANNOTATION_QUALITY_THRESHOLD")
	exercise_cache_ttl_seconds: int = Field(default=86400, validation_alias="EXERCISE_CACHE_TTL_SECONDS")
	exercise_cache_max_entries: int = Field(default=10000, validation_alias="EXERCISE_CACHE_MAX_ENTRIES")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

	@property
	def admin_email_set(self) -> set[str]:
		return {e.strip().lower() for e in self.admin_emails.split(",") if e.strip()}

settings = Settings()
