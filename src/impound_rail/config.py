"""
Configuration and Logging

Settings are read from the environment once, at startup, into a frozen
`Settings`. Every variable has a development default so the server and CLI run
without any setup.
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

import structlog

from .core.tariff import DEFAULT_TARIFF_TABLE, TariffTable
from .receipts.renderer import Municipality

DEFAULT_API_KEY = "dev-key-change-in-production"


@dataclass(frozen=True)
class Settings:
    """Runtime configuration."""
    database_url: str = "sqlite:///impound_rail.db"
    receipt_storage_path: str = "receipts"
    public_base_url: str = "http://127.0.0.1:8000"
    municipality: Municipality = field(default_factory=Municipality)
    tariff_file: Optional[str] = None
    key_storage_path: str = ".keys"
    key_master_secret: Optional[str] = None
    api_key: str = DEFAULT_API_KEY
    gateway_secret: Optional[str] = None
    log_format: str = "console"
    log_level: str = "INFO"
    cors_origins: Tuple[str, ...] = ("*",)
    port: int = 8000

    def load_tariffs(self) -> TariffTable:
        """Tariff table from TARIFF_FILE, or the built-in one."""
        if self.tariff_file:
            return TariffTable.load(self.tariff_file)
        return DEFAULT_TARIFF_TABLE


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from `env` (defaults to os.environ)."""
    env = os.environ if env is None else env
    defaults = Settings()
    default_municipality = defaults.municipality

    def get(name: str, default: Optional[str]) -> Optional[str]:
        value = env.get(name)
        return value if value not in (None, "") else default

    try:
        port = int(get("PORT", str(defaults.port)))
    except ValueError:
        raise ValueError(f"PORT must be an integer, got {env.get('PORT')!r}")

    return Settings(
        database_url=get("DATABASE_URL", defaults.database_url),
        receipt_storage_path=get("RECEIPT_STORAGE_PATH", defaults.receipt_storage_path),
        public_base_url=get("PUBLIC_BASE_URL", defaults.public_base_url).rstrip("/"),
        municipality=Municipality(
            name=get("MUNICIPALITY_NAME", default_municipality.name),
            address=get("MUNICIPALITY_ADDRESS", default_municipality.address),
            phone=get("MUNICIPALITY_PHONE", default_municipality.phone),
            currency=get("CURRENCY", default_municipality.currency),
        ),
        tariff_file=get("TARIFF_FILE", None),
        key_storage_path=get("KEY_STORAGE_PATH", defaults.key_storage_path),
        key_master_secret=get("KEY_MASTER_SECRET", None),
        api_key=get("API_KEY", defaults.api_key),
        gateway_secret=get("GATEWAY_SECRET", None),
        log_format=get("LOG_FORMAT", defaults.log_format).lower(),
        log_level=get("LOG_LEVEL", defaults.log_level).upper(),
        cors_origins=tuple(o.strip() for o in get("CORS_ORIGINS", "*").split(",") if o.strip()),
        port=port,
    )


def configure_logging(level: str = "INFO", log_format: str = "console") -> None:
    """
    Configure structlog on top of stdlib logging.

    log_format is "json" for machine-readable output, anything else renders
    for a terminal.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer(ensure_ascii=False))
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stdout,
        force=True,
    )
