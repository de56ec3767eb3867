"""Configuration handling for the booking engine."""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import yaml  # type: ignore
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


# Load environment variables from .env file if it exists
load_dotenv()

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
]


@dataclass
class GoogleOAuthConfig:
    """OAuth2 client registration for the external calendar."""

    client_id: str
    client_secret: str
    redirect_uri: Optional[str] = None
    auth_uri: str = GOOGLE_AUTH_URI
    token_uri: str = GOOGLE_TOKEN_URI
    scopes: List[str] = field(default_factory=lambda: list(GOOGLE_CALENDAR_SCOPES))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["GoogleOAuthConfig"]:
        """Create OAuth2 configuration from dictionary."""
        # Client credentials can be specified in environment variables
        client_id = data.get("client_id") or os.environ.get("GOOGLE_CLIENT_ID")
        client_secret = data.get("client_secret") or os.environ.get(
            "GOOGLE_CLIENT_SECRET"
        )

        if not client_id or not client_secret:
            return None

        return cls(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=data.get("redirect_uri")
            or os.environ.get("GOOGLE_REDIRECT_URI"),
            auth_uri=data.get("auth_uri", GOOGLE_AUTH_URI),
            token_uri=data.get("token_uri", GOOGLE_TOKEN_URI),
            scopes=data.get("scopes") or list(GOOGLE_CALENDAR_SCOPES),
        )


@dataclass
class ZoomConfig:
    """Zoom server-to-server OAuth app credentials."""

    account_id: str
    client_id: str
    client_secret: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["ZoomConfig"]:
        account_id = data.get("account_id") or os.environ.get("ZOOM_ACCOUNT_ID")
        client_id = data.get("client_id") or os.environ.get("ZOOM_CLIENT_ID")
        client_secret = data.get("client_secret") or os.environ.get(
            "ZOOM_CLIENT_SECRET"
        )

        if not account_id or not client_id or not client_secret:
            return None

        return cls(
            account_id=account_id,
            client_id=client_id,
            client_secret=client_secret,
        )


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SyncConfig:
    """Calendar sync scheduling."""

    interval_seconds: int = 300
    timeout_seconds: int = 120
    window_days: int = 90
    retention_days: int = 90
    # Periodic sync from the API process. The calendar worker is the usual owner;
    # enable only when no worker runs.
    run_in_engine: bool = False

    def __post_init__(self):
        for name in ("interval_seconds", "timeout_seconds", "window_days", "retention_days"):
            if getattr(self, name) <= 0:
                raise ValueError(f"sync.{name} must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        return cls(
            interval_seconds=int(data.get("interval_seconds", 300)),
            timeout_seconds=int(data.get("timeout_seconds", 120)),
            window_days=int(data.get("window_days", 90)),
            retention_days=int(data.get("retention_days", 90)),
            run_in_engine=_as_bool(
                data.get("run_in_engine", os.environ.get("SYNC_IN_ENGINE", "false"))
            ),
        )


@dataclass
class SlotConfig:
    """Slot computation defaults."""

    granularity_minutes: int = 30
    cache_ttl_seconds: int = 60

    def __post_init__(self):
        if self.granularity_minutes <= 0:
            raise ValueError("slots.granularity_minutes must be positive")
        if self.cache_ttl_seconds < 0:
            raise ValueError("slots.cache_ttl_seconds cannot be negative")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SlotConfig":
        return cls(
            granularity_minutes=int(data.get("granularity_minutes", 30)),
            cache_ttl_seconds=int(data.get("cache_ttl_seconds", 60)),
        )


class DatabaseBackend(Enum):
    """Database backend type."""

    SQLITE = "sqlite"
    POSTGRES = "postgres"

    @classmethod
    def from_string(cls, value: str) -> "DatabaseBackend":
        normalized = value.lower().strip()
        if normalized in ("sqlite", "sqlite3"):
            return cls.SQLITE
        if normalized in ("postgres", "postgresql"):
            return cls.POSTGRES
        raise ValueError(
            f"Invalid database backend '{value}'. Must be 'sqlite' or 'postgres'."
        )


@dataclass
class PostgresConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "booking_desk"
    user: str = "booking_desk"
    password: str = ""
    ssl_mode: str = "prefer"

    @property
    def connection_string(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}?sslmode={self.ssl_mode}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PostgresConfig":
        return cls(
            host=data.get("host") or os.environ.get("POSTGRES_HOST", "localhost"),
            port=int(data.get("port") or os.environ.get("POSTGRES_PORT", "5432")),
            database=data.get("database")
            or os.environ.get("POSTGRES_DATABASE", "booking_desk"),
            user=data.get("user") or os.environ.get("POSTGRES_USER", "booking_desk"),
            password=data.get("password") or os.environ.get("POSTGRES_PASSWORD", ""),
            ssl_mode=data.get("ssl_mode", "prefer"),
        )


@dataclass
class DatabaseConfig:
    """Database configuration."""

    backend: DatabaseBackend = DatabaseBackend.SQLITE
    sqlite_path: str = "config/booking_desk.db"
    postgres: PostgresConfig = field(default_factory=PostgresConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatabaseConfig":
        backend_str = data.get("backend") or os.environ.get("DATABASE_BACKEND", "sqlite")
        sqlite_data = data.get("sqlite") or {}

        return cls(
            backend=DatabaseBackend.from_string(backend_str),
            sqlite_path=sqlite_data.get("path")
            or os.environ.get("SQLITE_PATH", "config/booking_desk.db"),
            postgres=PostgresConfig.from_dict(data.get("postgres") or {}),
        )


@dataclass
class HttpServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HttpServerConfig":
        return cls(
            host=data.get("host") or os.environ.get("ENGINE_HOST", "127.0.0.1"),
            port=int(data.get("port") or os.environ.get("ENGINE_PORT", "8080")),
        )


@dataclass
class ServerConfig:
    """Booking engine configuration."""

    timezone: str
    encryption_key: str
    google: Optional[GoogleOAuthConfig] = None
    zoom: Optional[ZoomConfig] = None
    sync: SyncConfig = field(default_factory=SyncConfig)
    slots: SlotConfig = field(default_factory=SlotConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    server: HttpServerConfig = field(default_factory=HttpServerConfig)

    def __post_init__(self):
        """Validate server configuration."""
        try:
            ZoneInfo(self.timezone)
        except Exception as e:
            raise ValueError(
                f"Invalid timezone '{self.timezone}': {e}. "
                "Must be a valid IANA timezone (e.g., 'America/Los_Angeles')"
            )

        if not self.encryption_key:
            raise ValueError(
                "Missing 'encryption_key'. Set it in config.yaml or the "
                "ENCRYPTION_KEY environment variable."
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        """Create configuration from dictionary."""
        if not data.get("google") and not os.environ.get("GOOGLE_CLIENT_ID"):
            logger.warning(
                "Google OAuth client not configured - calendar connect and sync disabled"
            )

        return cls(
            timezone=data.get("timezone") or os.environ.get("DEFAULT_TIMEZONE", "UTC"),
            encryption_key=data.get("encryption_key")
            or os.environ.get("ENCRYPTION_KEY", ""),
            google=GoogleOAuthConfig.from_dict(data.get("google") or {}),
            zoom=ZoomConfig.from_dict(data.get("zoom") or {}),
            sync=SyncConfig.from_dict(data.get("sync") or {}),
            slots=SlotConfig.from_dict(data.get("slots") or {}),
            database=DatabaseConfig.from_dict(data.get("database") or {}),
            server=HttpServerConfig.from_dict(data.get("server") or {}),
        )


def load_config(config_path: Optional[str] = None) -> ServerConfig:
    """Load configuration from file or environment variables.

    Args:
        config_path: Path to configuration file

    Returns:
        Server configuration

    Raises:
        ValueError: If configuration is invalid
    """
    default_locations = [
        Path("config/config.yaml"),
        Path("config/config.yml"),
        Path("config.yaml"),
        Path("config.yml"),
        Path("~/.config/booking-desk/config.yaml"),
        Path("/etc/booking-desk/config.yaml"),
    ]

    config_path = config_path or os.environ.get("CONFIG_PATH")
    config_data: Dict[str, Any] = {}

    if config_path:
        try:
            with open(Path(config_path).expanduser(), "r") as f:
                config_data = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {config_path}")
        except FileNotFoundError:
            logger.warning(f"Configuration file not found: {config_path}")
    else:
        for path in default_locations:
            expanded_path = path.expanduser()
            if expanded_path.exists():
                with open(expanded_path, "r") as f:
                    config_data = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from {expanded_path}")
                break

    if not config_data:
        logger.info("No configuration file found, using environment variables")

    return ServerConfig.from_dict(config_data)
