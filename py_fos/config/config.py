import logging
import os
import sys
from pathlib import Path

import structlog
from dotenv import dotenv_values
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env for local runs, without overriding values already in the environment
BASE_DIR = Path(__file__).resolve().parent.parent.parent
env_file = BASE_DIR / ".env"

if env_file.exists():
    file_env = dotenv_values(env_file)
    missing_keys = {k: v for k, v in file_env.items() if k not in os.environ and v is not None}
    for k, v in missing_keys.items():
        os.environ[k] = v


class Settings(BaseSettings):
    """Runtime settings pulled from FOS_* environment variables."""

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Logging format (json or console)")

    # Parallel Analysis Configuration
    max_workers: int = Field(default=4, ge=1, description="Worker threads for chunked analysis")
    chunk_size: int = Field(default=64, ge=1, description="Elements per analysis chunk")

    # Acuteness Configuration
    boundary_threshold: float = Field(
        default=0.1, gt=0.0, lt=0.5, description="Width of the boundary band in a bounded cube"
    )
    boundary_factor: float = Field(
        default=0.6, ge=0.0, le=1.0, description="Score multiplier for boundary elements"
    )

    # Simulation Configuration
    seed: str = Field(default="fabric", description="Seed for the growth PRNG")

    model_config = SettingsConfigDict(
        env_prefix="FOS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def configure_logging(level: str = None, log_format: str = None) -> None:
    """Route structlog through the stdlib logging module."""
    level = (level or settings.log_level).upper()
    log_format = log_format or settings.log_format

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (structlog.dev.ConsoleRenderer() if log_format == "console"
                else structlog.processors.JSONRenderer())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Instantiate singleton settings object
settings = Settings()
