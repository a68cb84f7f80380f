"""
Application configuration with environment-based settings.
All configuration is explicit, validated, and logged at startup.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings have sensible defaults for development but require
    explicit configuration in production environments.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
        protected_namespaces=("settings_",),
    )

    # Application
    app_name: str = Field(default="SmearScan", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # CORS
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins"
    )

    # Remote multimodal inference (OpenAI-compatible endpoint)
    llm_api_key: str = Field(default="", description="API key for the remote inference service")
    llm_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta/openai/",
        description="OpenAI-compatible base URL of the remote inference service"
    )
    llm_model: str = Field(default="gemini-2.5-flash", description="Multimodal model to use")
    llm_max_tokens: int = Field(default=2048, ge=1, description="Max tokens per response")
    llm_temperature: float = Field(default=0.2, ge=0.0, le=2.0, description="Model temperature")
    llm_timeout_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Transport timeout for a single remote call"
    )

    # Local CNN classifier
    model_path: str = Field(
        default="models/malaria-detection/model.keras",
        description="Path to the trained Keras smear classifier"
    )
    image_size: int = Field(default=128, ge=1, description="Square input size expected by the classifier")
    resize_filter: Literal["bilinear", "nearest"] = Field(
        default="bilinear",
        description="Resampling filter used for every resize (inference and validation)"
    )
    preload_model: bool = Field(default=True, description="Load the classifier at startup")
    simulation_delay_min_ms: int = Field(
        default=800,
        ge=0,
        description="Lower bound of the simulated inference latency"
    )
    simulation_delay_max_ms: int = Field(
        default=1200,
        ge=0,
        description="Upper bound of the simulated inference latency"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format"
    )

    @model_validator(mode="after")
    def validate_simulation_delay(self) -> "Settings":
        """Ensure the simulated latency band is ordered."""
        if self.simulation_delay_min_ms > self.simulation_delay_max_ms:
            raise ValueError(
                "simulation_delay_min_ms must not exceed simulation_delay_max_ms"
            )
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def llm_configured(self) -> bool:
        """Check whether the remote inference service has credentials."""
        return bool(self.llm_api_key)

    def get_safe_config_dict(self) -> dict:
        """Return configuration dict with secrets redacted for logging."""
        config = self.model_dump()
        # Redact sensitive values
        if config.get("llm_api_key"):
            config["llm_api_key"] = "***REDACTED***"
        return config


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Settings are loaded once and cached for the application lifetime.
    Use dependency injection in FastAPI routes for testability.
    """
    return Settings()
