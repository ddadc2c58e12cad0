"""Application configuration using pydantic-settings.

Settings come from environment variables (or a local .env file).
Malformed settings fail at startup. Missing OAuth client credentials do not:
the relay stays up and reports a configuration error on each callback instead.
"""

import json
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Google OAuth token endpoint
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


class ConfigurationError(Exception):
    """Raised when server-side configuration needed by a request is missing."""


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    OAuth client credentials can be given directly:
    - CLIENT_ID / CLIENT_SECRET
    or through a Google client JSON file ("web" or "installed" section):
    - CREDENTIALS_FILE
    Explicit values win over the file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars not defined in Settings
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 8080
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # OAuth client
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    credentials_file: str = ""

    # Provider token exchange
    token_url: str = GOOGLE_TOKEN_URL
    exchange_timeout_seconds: float = 30.0

    # Token hand-off window
    token_ttl_seconds: int = 300
    cleanup_interval_seconds: float = 60.0

    # Entry store backend: "memory" (single process) or "firestore"
    store_backend: str = "memory"
    google_cloud_project: str = ""
    firestore_database: str = "(default)"
    store_timeout_seconds: float = 10.0

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def effective_redirect_uri(self) -> str:
        """Redirect URI registered with the provider.

        Defaults to this server's own /callback on localhost.
        """
        if self.redirect_uri:
            return self.redirect_uri
        return f"http://localhost:{self.port}/callback"

    def get_client_credentials(self) -> tuple[str, str]:
        """Return (client_id, client_secret).

        Empty values are filled from the credentials file when one is configured.

        Raises:
            ConfigurationError: If either value is still missing, or the
                credentials file cannot be read.
        """
        client_id, client_secret = self.client_id, self.client_secret

        if self.credentials_file and (not client_id or not client_secret):
            file_id, file_secret = load_credentials_file(self.credentials_file)
            client_id = client_id or file_id
            client_secret = client_secret or file_secret

        if not client_id or not client_secret:
            raise ConfigurationError(
                "OAuth client credentials not configured. "
                "Set CLIENT_ID and CLIENT_SECRET or CREDENTIALS_FILE."
            )
        return client_id, client_secret

    @model_validator(mode="after")
    def validate_backend_settings(self) -> "Settings":
        """Validate settings that depend on the selected store backend."""
        if self.store_backend == "firestore" and not self.google_cloud_project:
            raise ValueError("GOOGLE_CLOUD_PROJECT must be set for the firestore store backend")
        return self

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is a known value."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of: {allowed}")
        return v

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        """Validate store backend is a known value."""
        allowed = {"memory", "firestore"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"store_backend must be one of: {allowed}")
        return v_lower

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("token_ttl_seconds")
    @classmethod
    def validate_token_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("token_ttl_seconds must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a known value."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v_upper


def load_credentials_file(path: str) -> tuple[str, str]:
    """Read client id and secret from a Google OAuth client JSON file.

    The "web" section is preferred over "installed".

    Raises:
        ConfigurationError: If the file is unreadable or holds no credentials.
    """
    try:
        data = json.loads(Path(path).read_text("utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Cannot read credentials file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Credentials file {path} is not valid JSON: {e}") from e

    if isinstance(data, dict):
        for section in ("web", "installed"):
            creds = data.get(section)
            if isinstance(creds, dict) and creds.get("client_id"):
                return creds["client_id"], creds.get("client_secret", "")

    raise ConfigurationError(f"No client credentials found in {path}")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings are loaded once and cached for the lifetime of the application.
    """
    return Settings()
