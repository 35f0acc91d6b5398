"""
Configuration Management

Uses Pydantic BaseSettings to load configuration from environment variables.
All settings can be overridden via .env file or environment variables.

Environment Variables:
    REDIS_URL: Redis connection string (conversation state backing store)
    ANTHROPIC_API_KEY: API key for the decision, greeting and extraction models
    BOOKING_BACKEND: "http" (booking API) or "memory" (local development)
    BOOKING_API_URL: Base URL of the booking operations API
    APP_ENV: Environment name (development/staging/production)
    DEBUG: Enable debug mode (default: False)

Tenant persona, office hours and workflow text are NOT settings: they are
per-organization configuration loaded through app.core.agent.tenant_config.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis Configuration
    redis_url: str = "redis://localhost:6379/0"
    """Redis connection URL.

    Format: redis://host:port/db
    Example: redis://localhost:6379/0

    Used as the backing store for conversation state so that several
    worker processes can serve the same session.
    """

    redis_session_ttl: int = 1800
    """Conversation state TTL in seconds (default: 30 minutes)."""

    redis_socket_timeout: float = 2.0
    """Connect and read timeout in seconds for Redis calls."""

    redis_reconnect_interval: float = 15.0
    """Seconds to wait after a failed connection before trying Redis again."""

    # Anthropic Configuration
    anthropic_api_key: str = ""
    """Anthropic API key. Required outside of tests."""

    claude_default_model: str = "claude-3-5-haiku-20241022"
    """Default fast model used when a caller does not pick one."""

    claude_fallback_model: str = "claude-sonnet-4-20250514"
    """Model tried once when the primary model call fails."""

    orchestrator_model: str = "claude-sonnet-4-20250514"
    """Model used by the orchestrator's function-calling decision step."""

    greeting_model: str = "claude-3-5-haiku-20241022"
    """Model used by the greeting agent to classify the caller's first words."""

    extraction_model: str = "claude-3-5-haiku-20241022"
    """Model used for bounded parameter extraction."""

    router_confidence_threshold: float = 0.6
    """Below this confidence the greeting agent re-prompts instead of guessing."""

    # Booking Operations
    booking_backend: Literal["http", "memory"] = "http"
    """Which booking operations adapter to use.

    Options:
    - http: POST {booking_api_url}/api/booking with functionName + parameters
    - memory: In-process store seeded with demo data (development and tests)
    """

    booking_api_url: str = "http://localhost:3000"
    """Base URL of the booking operations API."""

    booking_api_timeout: float = 10.0
    """Timeout in seconds for a single booking API call."""

    # Orchestrator Limits
    orchestrator_max_iterations: int = 6
    """Maximum planning/resolving iterations within a single turn.

    When exceeded the turn ends with a human handoff reply instead of looping.
    """

    backend_max_retries: int = 1
    """Automatic retries of a transient booking failure within one turn."""

    extraction_history_turns: int = 6
    """Number of recent conversation turns sent to parameter extraction."""

    max_history_messages: int = 40
    """Conversation messages kept on the state (~20 turns)."""

    # Scheduling
    default_appointment_minutes: int = 30
    """Default appointment length when neither the caller nor the tenant set one."""

    max_offered_slots: int = 4
    """Most slots offered to the caller at once."""

    # Tenant Configuration
    tenant_config_ttl: int = 60
    """Seconds a tenant's agent configuration is cached before re-fetching."""

    dispatch_table_path: Optional[str] = None
    """Optional JSON file replacing the bundled priority function catalog."""

    # Notifications
    notification_webhook_url: Optional[str] = None
    """Webhook receiving booking events. Events are only logged when unset."""

    # Application Environment
    app_env: Literal["development", "staging", "production"] = "development"
    """Current application environment.

    Options:
    - development: Local development, verbose logging, debug enabled
    - staging: Pre-production testing environment
    - production: Live production environment, minimal logging
    """

    debug: bool = False
    """Enable debug mode.

    When True:
    - Detailed error messages in responses
    - DEBUG log level

    Should be False in production.
    """

    # Application Configuration
    app_name: str = "dental-booking-orchestrator"
    """Application name."""

    host: str = "0.0.0.0"
    """Host to bind the application server."""

    port: int = 8000
    """Port to bind the application server."""

    # CORS Configuration
    cors_origins: str = "http://localhost:3000"
    """Comma-separated list of allowed CORS origins."""

    # Pydantic configuration
    model_config = SettingsConfigDict(
        env_file=".env",  # Load from .env file if it exists
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra environment variables
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"

    @property
    def cors_origins_list(self) -> list[str]:
        """Split cors_origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once and reused
    across the application.

    Returns:
        Settings: Cached settings instance
    """
    return Settings()


# Module-level settings instance for easy imports
settings = get_settings()
