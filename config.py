"""Configuration settings for the conversation orchestration service"""
import os
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


def detect_environment() -> str:
    """
    Detect current environment from the ENVIRONMENT variable.
    Returns: 'dev', 'staging', or 'prod'
    """
    explicit_env = os.getenv("ENVIRONMENT", "").lower()
    if explicit_env in ("dev", "staging", "prod", "production", "development"):
        if explicit_env == "production":
            return "prod"
        if explicit_env == "development":
            return "dev"
        return explicit_env

    # Local development
    return "dev"


class Settings(BaseSettings):
    """Application settings using Pydantic for validation and environment variable loading"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Database configuration (no host means in-memory storage)
    DB_NAME: str = "conversation_engine"
    DB_USER: str = "postgres"
    DB_PASS: Optional[str] = None
    DB_HOST: Optional[str] = None
    DB_PORT: int = 5432

    # Model backend configuration (OpenAI-compatible chat API)
    LLM_API_KEY: Optional[str] = None
    LLM_BASE_URL: str = "https://api.deepseek.com/v1"
    LLM_MODEL: str = "deepseek-chat"
    LLM_TIMEOUT: float = 30.0
    LLM_MAX_RETRIES: int = 2
    LLM_MAX_TOKENS: int = 2000

    # Session lifecycle
    SESSION_MAX_IDLE_SECONDS: float = 30 * 60
    SESSION_MAX_DURATION_SECONDS: float = 2 * 60 * 60
    SESSION_MAX_MESSAGES: int = 100
    SESSION_MAX_TOKENS: int = 100000
    SESSION_AUTO_CLEANUP: bool = True
    SESSION_CLEANUP_INTERVAL_SECONDS: float = 5 * 60
    SESSION_DEFAULT_TEMPERATURE: float = 0.7

    # Dialogue
    DIALOGUE_MAX_CONTEXT_TURNS: int = 10
    DIALOGUE_RECOGNITION_MODE: str = "lexical"

    # Monitoring
    HEALTH_CHECK_INTERVAL_SECONDS: float = 60.0

    # Optional JSON file with knowledge entries for the in-memory store
    KNOWLEDGE_SEED_PATH: Optional[str] = None

    # Application settings
    ENVIRONMENT: str = detect_environment()
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Environment helpers
    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment"""
        return self.ENVIRONMENT == "dev"

    @property
    def database_enabled(self) -> bool:
        """Postgres storage is used only when a host is configured"""
        return bool(self.DB_HOST)

    def session_config(self):
        from core.conversation.context.session_store import SessionConfig

        return SessionConfig(
            max_idle_time=self.SESSION_MAX_IDLE_SECONDS,
            max_session_duration=self.SESSION_MAX_DURATION_SECONDS,
            max_message_count=self.SESSION_MAX_MESSAGES,
            max_tokens=self.SESSION_MAX_TOKENS,
            auto_cleanup=self.SESSION_AUTO_CLEANUP,
            cleanup_interval=self.SESSION_CLEANUP_INTERVAL_SECONDS,
            default_model=self.LLM_MODEL,
            default_temperature=self.SESSION_DEFAULT_TEMPERATURE,
        )

    def dialogue_config(self):
        from core.conversation.orchestration.dialogue_engine import DialogueConfig

        return DialogueConfig(
            max_context_turns=self.DIALOGUE_MAX_CONTEXT_TURNS,
            recognition_mode=self.DIALOGUE_RECOGNITION_MODE,
        )


# Global settings instance
settings = Settings()
