"""API and transport settings using Pydantic BaseSettings."""

from functools import lru_cache
from typing import List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class APISettings(BaseSettings):
    """
    Server and transport settings.

    Settings can be configured via environment variables with the prefix
    LABGUARD_API_. For example: LABGUARD_API_PORT=3443,
    LABGUARD_API_HTTPS_ENABLED=false

    Attributes:
        host: Server bind address
        port: Primary listener port (HTTPS when enabled, plain HTTP otherwise)
        http_port: Plain HTTP listener that redirects to the secure port
        https_enabled: Force HTTPS on or off; None means on in production
        environment: Deployment environment name (development, production, test)
        http_redirect: Run the HTTP-to-HTTPS redirect listener when HTTPS is on
        debug: Enable verbose error responses
        allowed_origins: List of allowed CORS origins
        log_requests: Log all requests and responses
        config_file: Optional YAML service configuration file
    """

    model_config = SettingsConfigDict(
        env_prefix="LABGUARD_API_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server settings
    host: str = "0.0.0.0"
    port: int = 3001
    http_port: int = 3000
    debug: bool = False
    allowed_origins: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "https://localhost:3001",
        "https://127.0.0.1:3001",
    ]
    log_requests: bool = True
    openapi_url: str = "/openapi.json"

    # Transport settings
    https_enabled: Optional[bool] = None
    environment: str = "development"
    http_redirect: bool = False

    config_file: Optional[str] = None

    @field_validator("environment")
    @classmethod
    def normalize_environment(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("port", "http_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError(f"Invalid port: {v}")
        return v

    @model_validator(mode="after")
    def validate_ports(self) -> "APISettings":
        """The redirect listener needs its own port."""
        if self.use_https and self.http_redirect and self.port == self.http_port and self.port != 0:
            raise ValueError(
                "LABGUARD_API_PORT and LABGUARD_API_HTTP_PORT must differ when the "
                "HTTP redirect listener is enabled"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def use_https(self) -> bool:
        """HTTPS is on when explicitly enabled, or in production unless explicitly disabled."""
        if self.https_enabled is not None:
            return self.https_enabled
        return self.is_production


@lru_cache
def get_settings() -> APISettings:
    """
    Get cached API settings instance.

    Returns:
        APISettings instance (cached)
    """
    return APISettings()
