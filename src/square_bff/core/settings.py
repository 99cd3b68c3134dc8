"""
Settings for the Square backend-for-frontend.
"""

from typing import List, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

SQUARE_BASE_URL_SANDBOX = "https://connect.squareupsandbox.com"
SQUARE_BASE_URL_PRODUCTION = "https://connect.squareup.com"

load_dotenv()


class SquareSettings(BaseSettings):
    """
    Settings for the Square integration.

    Credentials and signing keys come from the environment (or a `.env` file
    populated by the deployment's secret provider) and are never hard-coded.
    """

    square_app_id: str = ""
    square_app_secret: str = ""
    environment: str = "sandbox"
    square_redirect_uri: str = ""
    redirect_uri_allow_list: List[str] = ["http://localhost:3000/auth/callback"]
    webhook_signature_key: str = ""

    jwt_secret_key: str = ""
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60 * 24 * 7

    database_url: str = "sqlite:///./square_bff.db"
    database_timeout_seconds: float = 5.0

    oauth_state_ttl_seconds: int = 600
    credential_ttl_days: int = 365
    webhook_event_ttl_days: int = 90

    square_timeout_seconds: float = 10.0
    square_read_max_retries: int = 2

    cors_origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    audit_log_path: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def app_id(self) -> str:
        """Shorthand for the Square application id."""
        return self.square_app_id

    @property
    def app_secret(self) -> str:
        """Shorthand for the Square application secret."""
        return self.square_app_secret

    @property
    def is_production(self) -> bool:
        """Whether the settings target the production Square environment."""
        return self.environment == "production"

    @property
    def square_base_url(self) -> str:
        """Square connect base URL for the configured environment."""
        base_urls = {
            "sandbox": SQUARE_BASE_URL_SANDBOX,
            "production": SQUARE_BASE_URL_PRODUCTION,
        }
        try:
            return base_urls[self.environment]
        except KeyError as e:
            raise ValueError(f"Invalid environment: {self.environment}") from e
