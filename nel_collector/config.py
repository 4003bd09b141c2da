import os
from dataclasses import dataclass

from dotenv import load_dotenv


DEFAULT_MAX_MESSAGE_SIZE = 1 << 20


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Collector configuration, normally read from the environment."""

    db_table: str = ""
    db_driver: str = ""
    dsn: str = ""
    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE
    number_of_proxies: int = 0
    allow_additional_body: bool = False
    read_timeout: float = 10.0
    write_timeout: float = 10.0
    path: str = "/"
    host: str = "0.0.0.0"
    port: int = 8080
    log_file: str = "nel-collector.log"
    log_payloads: bool = False

    @property
    def maximum_bytes(self) -> int:
        """Request size ceiling; bodies this large or larger are rejected."""
        if self.max_message_size > 0:
            return self.max_message_size
        return DEFAULT_MAX_MESSAGE_SIZE

    def database_url(self) -> str:
        if not self.dsn:
            raise RuntimeError("DSN is required")
        if "://" in self.dsn:
            return self.dsn
        if not self.db_driver:
            raise RuntimeError("DB_DRIVER is required when DSN has no scheme")
        return f"{self.db_driver}://{self.dsn}"


def load_settings() -> Settings:
    """Build Settings from environment variables (and a ``.env`` file)."""
    load_dotenv()
    return Settings(
        db_table=os.getenv("NEL_DB_TABLE", Settings.db_table).strip(),
        db_driver=os.getenv("DB_DRIVER", Settings.db_driver).strip(),
        dsn=os.getenv("DSN", Settings.dsn).strip(),
        max_message_size=int(os.getenv("NEL_MAX_MESSAGE_SIZE", Settings.max_message_size)),
        number_of_proxies=int(os.getenv("NEL_NUMBER_OF_PROXIES", Settings.number_of_proxies)),
        allow_additional_body=_parse_bool(os.getenv("NEL_ALLOW_ADDITIONAL_BODY", "false")),
        read_timeout=float(os.getenv("NEL_READ_TIMEOUT", Settings.read_timeout)),
        write_timeout=float(os.getenv("NEL_WRITE_TIMEOUT", Settings.write_timeout)),
        path=os.getenv("NEL_PATH", Settings.path),
        host=os.getenv("NEL_HOST", Settings.host),
        port=int(os.getenv("NEL_PORT", Settings.port)),
        log_file=os.getenv("NEL_LOG_FILE", Settings.log_file),
        log_payloads=_parse_bool(os.getenv("NEL_LOG_PAYLOADS", "false")),
    )
