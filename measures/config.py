"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
"""

import logging
import os
from functools import lru_cache
from typing import Literal, cast

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from .env file
load_dotenv()


class EngineConfig(BaseModel):
    """Formula parsing and evaluation settings."""

    default_decimal_places: int = Field(
        default=2, ge=0, le=10, description="Rounding applied when a definition sets none"
    )
    max_formula_length: int = Field(
        default=1000, gt=0, le=1000, description="Longest formula text accepted by the parser"
    )


class RecalculationConfig(BaseModel):
    """Background recalculation settings."""

    max_concurrent_subjects: int = Field(
        default=10, gt=0, description="Maximum number of subjects recomputed concurrently"
    )
    subject_timeout_seconds: float = Field(
        default=60.0, gt=0.0, description="Timeout for recomputing one subject"
    )
    run_history_size: int = Field(
        default=100, gt=0, description="Number of finished runs kept for inspection"
    )
    max_recorded_failures: int = Field(
        default=50, ge=0, description="Failures kept in detail per run (all are counted)"
    )
    shutdown_timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Grace period for in-flight runs on shutdown"
    )


class CacheConfig(BaseModel):
    """Definition cache settings."""

    enabled: bool = Field(default=True, description="Enable the definition cache")
    ttl_seconds: float = Field(default=300.0, gt=0.0, description="Cache entry lifetime")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    engine: EngineConfig = Field(default_factory=EngineConfig)
    recalculation: RecalculationConfig = Field(default_factory=RecalculationConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    # Detect environment
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    engine_config = EngineConfig(
        default_decimal_places=int(os.getenv("FORMULA_DEFAULT_DECIMAL_PLACES", "2")),
        max_formula_length=int(os.getenv("FORMULA_MAX_LENGTH", "1000")),
    )

    recalculation_config = RecalculationConfig(
        max_concurrent_subjects=int(os.getenv("RECALC_MAX_CONCURRENT_SUBJECTS", "10")),
        subject_timeout_seconds=float(os.getenv("RECALC_SUBJECT_TIMEOUT_SECONDS", "60.0")),
        run_history_size=int(os.getenv("RECALC_RUN_HISTORY_SIZE", "100")),
    )

    cache_config = CacheConfig(
        enabled=_parse_bool(os.getenv("CACHE_ENABLED"), True),
        ttl_seconds=float(os.getenv("CACHE_TTL_SECONDS", "300.0")),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        engine=engine_config,
        recalculation=recalculation_config,
        cache=cache_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Install the structlog processor chain for the configured format and level."""
    config = config or get_config().logging
    logging.basicConfig(format="%(message)s", level=getattr(logging, config.level))

    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"Configuration loaded for {config.environment} environment")
    except Exception as e:
        print(f"Configuration validation failed: {e}")
        raise


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nFORMULA ENGINE")
    print(f"Default Decimal Places: {config.engine.default_decimal_places}")
    print(f"Max Formula Length: {config.engine.max_formula_length}")

    print("\nRECALCULATION")
    print(f"Max Concurrent Subjects: {config.recalculation.max_concurrent_subjects}")
    print(f"Subject Timeout: {config.recalculation.subject_timeout_seconds}s")

    print("\nCACHE")
    print(f"Enabled: {config.cache.enabled}")
    print(f"TTL: {config.cache.ttl_seconds}s")


if __name__ == "__main__":
    # Test configuration loading
    validate_config()
    print_config_summary()
