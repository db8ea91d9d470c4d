"""Configuration for the knife ActivityPub federation engine."""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FederationConfig(BaseSettings):
    """Public identity and outbound federation settings."""

    model_config = SettingsConfigDict(env_prefix="KNIFE_")

    protocol: str = Field(
        default="https",
        description="Public protocol scheme used to build canonical IRIs"
    )
    host: str = Field(
        default="localhost",
        description="Public host (optionally with port) used to build canonical IRIs"
    )
    dev_mode: bool = Field(
        default=False,
        description="Disable the SSRF guard on actor fetches (development only)"
    )
    delivery_rate_per_minute: int = Field(
        default=100,
        ge=1,
        le=6000,
        description="Outbound deliveries released per minute"
    )
    delivery_queue_size: int = Field(
        default=100,
        ge=1,
        le=100000,
        description="Pending deliveries before enqueue blocks"
    )
    max_concurrent_deliveries: int = Field(
        default=16,
        ge=1,
        le=1024,
        description="Deliveries allowed in flight at once"
    )
    delivery_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds allowed for a single inbox POST"
    )
    fetch_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds allowed for a remote actor fetch"
    )
    user_agent: str = Field(
        default="knife-activitypub/0.1.0",
        description="User-Agent sent on outbound requests"
    )

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        """Only http and https are meaningful for federation."""
        v = v.lower().rstrip(":/")
        if v not in ("http", "https"):
            raise ValueError("protocol must be http or https")
        return v

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v:
            raise ValueError("host must not be empty")
        return v

    @property
    def base_url(self) -> str:
        """Canonical site base URL, e.g. https://example.social."""
        return f"{self.protocol}://{self.host}"

    @property
    def actor_iri(self) -> str:
        """IRI of the single local actor."""
        return f"{self.base_url}/profile"


class ServerConfig(BaseSettings):
    """HTTP listener settings."""

    model_config = SettingsConfigDict(env_prefix="SERVER_")

    host: str = Field(
        default="0.0.0.0",
        description="Host address for HTTP server"
    )
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port for HTTP server"
    )


class DatabaseConfig(BaseSettings):
    """Database settings."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    url: str = Field(
        default="sqlite+aiosqlite:///knife.db",
        description="SQLAlchemy database URL"
    )


class KnifeConfig(BaseSettings):
    """Main configuration combining all settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    federation: FederationConfig = Field(default_factory=FederationConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @classmethod
    def from_yaml(cls, path: str) -> "KnifeConfig":
        """Load configuration from YAML file."""
        import yaml
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)


def load_config() -> KnifeConfig:
    """Load configuration from environment and .env file."""
    return KnifeConfig()
