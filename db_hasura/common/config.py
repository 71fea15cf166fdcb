import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

load_dotenv()


def _env(name: str, default: str):
    return field(default_factory=lambda: os.getenv(name, default))


@dataclass
class Settings:
    # Hasura
    hasura_uri: str = _env("HASURA_URI", "http://localhost:8090")
    hasura_cli_path: str = _env("HASURA_CLI_PATH", "hasura")
    hasura_project_dir: str = _env("HASURA_PROJECT_DIR", "./hasura/project")
    hasura_role: str = _env("HASURA_ROLE", "cardano-graphql")

    # Polling intervals (milliseconds)
    ada_supply_polling_interval: int = field(
        default_factory=lambda: int(os.getenv("POLLING_INTERVAL_ADA_SUPPLY", "60000"))
    )
    protocol_version_polling_interval: int = field(
        default_factory=lambda: int(os.getenv("POLLING_INTERVAL_PROTOCOL_VERSION", "60000"))
    )

    # Last major protocol version known to the cardano-node config
    last_configured_major_version: int = field(
        default_factory=lambda: int(os.getenv("LAST_CONFIGURED_MAJOR_VERSION", "2"))
    )

    # Retry policy for schema apply and introspection
    retry_backoff_factor: float = field(
        default_factory=lambda: float(os.getenv("RETRY_BACKOFF_FACTOR", "1.75"))
    )
    retry_max_attempts: int = field(
        default_factory=lambda: int(os.getenv("RETRY_MAX_ATTEMPTS", "10"))
    )
    retry_min_delay: float = field(
        default_factory=lambda: float(os.getenv("RETRY_MIN_DELAY", "1.0"))
    )

    # HTTP Settings
    http_timeout: int = field(default_factory=lambda: int(os.getenv("HTTP_TIMEOUT", "30")))  # seconds

    # Logging
    log_level: str = _env("LOG_LEVEL", "INFO")
    log_dir: str = _env("LOG_DIR", "./logs")

    @property
    def graphql_url(self) -> str:
        return f"{self.hasura_uri.rstrip('/')}/v1/graphql"

    def validate(self):
        """Validate configuration on startup"""
        if not self.hasura_uri:
            raise ValueError("HASURA_URI must be set")
        if not self.hasura_uri.startswith(("http://", "https://")):
            raise ValueError(f"HASURA_URI must be an http(s) URI, got {self.hasura_uri}")
        if self.retry_backoff_factor <= 1:
            raise ValueError("RETRY_BACKOFF_FACTOR must be greater than 1")
        if self.retry_max_attempts < 1:
            raise ValueError("RETRY_MAX_ATTEMPTS must be at least 1")
        if self.ada_supply_polling_interval <= 0 or self.protocol_version_polling_interval <= 0:
            raise ValueError("Polling intervals must be positive")

        return True

settings = Settings()
settings.validate()

def get_config():
    """Get configuration settings"""
    return {
        "hasura_uri": settings.hasura_uri,
        "hasura_cli_path": settings.hasura_cli_path,
        "hasura_project_dir": settings.hasura_project_dir,
        "log_level": settings.log_level,
        "log_dir": settings.log_dir,
        "http_timeout": settings.http_timeout,
        "retry_max_attempts": settings.retry_max_attempts,
    }
