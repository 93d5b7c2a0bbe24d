"""
Centralized configuration management with validation and type conversion.

All tunables of the POI pipeline are read once from environment variables:
- Per-call timeouts for viewport and background loads
- Retry/backoff policy for rate-limited sources
- Viewport cache TTL, entry cap and bounds precision
- Truncation limit and inter-category throttling
- Source endpoints (Overpass, Geonorge WFS)
"""

import os
import logging
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum


logger = logging.getLogger(__name__)


class Environment(Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class TimeoutConfig:
    """Per source call timeouts in seconds."""
    viewport: float = 8.0
    background: float = 12.0

    def get(self, operation: str) -> float:
        """Get timeout for a specific operation, falling back to the viewport timeout."""
        return getattr(self, operation, self.viewport)


@dataclass
class RetryConfig:
    """Backoff policy for rate-limit responses."""
    max_attempts: int = 3
    backoff_base: float = 10.0
    backoff_step: float = 5.0
    backoff_cap: float = 30.0


@dataclass
class CacheConfig:
    """Viewport cache configuration."""
    ttl_viewport: int = 300  # 5 minutes
    max_entries: int = 64
    bounds_precision: int = 4


@dataclass
class PipelineConfig:
    """Aggregation pipeline configuration."""
    max_pois_per_viewport: int = 1000
    inter_category_delay: float = 0.5
    # high, medium, low priority tiers of the full-catalog load
    catalog_tier_delays: List[float] = field(default_factory=lambda: [3.0, 2.0, 1.0])
    # map views (one pipeline each) kept by the HTTP layer
    max_views: int = 32


@dataclass
class SourceConfig:
    """External geodata source configuration."""
    overpass_url: str = "https://overpass-api.de/api/interpreter"
    overpass_user_agent: str = "Trakke-Norway-Outdoor-App/1.0 (https://github.com/elzacka/trakke-react)"
    overpass_query_timeout: int = 25
    wfs_shelter_url: str = "https://wfs.geonorge.no/skwms1/wfs.tilfluktsrom_offentlige"
    wfs_shelter_type: str = "app:Tilfluktsrom"
    wfs_max_features: int = 100
    riksantikvaren_url: str = "https://husmann.ra.no/arcgis/rest/services/Husmann/Husmann/MapServer"
    riksantikvaren_layer: int = 4
    riksantikvaren_max_records: int = 500
    clamp_to_norway: bool = True
    name_locales: List[str] = field(default_factory=lambda: ["nb", "nn", "no"])


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[str] = None
    max_bytes: int = 10485760  # 10MB
    backup_count: int = 5


class Config:
    """Centralized configuration with validation and type conversion."""

    def __init__(self):
        """Initialize configuration from environment variables."""
        self.environment = self._get_environment()
        self.debug = self._get_bool("DEBUG", False)

        # Optional redis for metrics; empty means process-local metrics
        self.redis_url: Optional[str] = self._get_optional("REDIS_URL") or None
        self.cors_origin = self._get_str("CORS_ORIGIN", "http://localhost:5173")

        self.timeout_config = TimeoutConfig(
            viewport=self._get_float("TIMEOUT_VIEWPORT", 8.0),
            background=self._get_float("TIMEOUT_BACKGROUND", 12.0),
        )

        self.retry_config = RetryConfig(
            max_attempts=self._get_int("RETRY_MAX_ATTEMPTS", 3),
            backoff_base=self._get_float("RETRY_BACKOFF_BASE", 10.0),
            backoff_step=self._get_float("RETRY_BACKOFF_STEP", 5.0),
            backoff_cap=self._get_float("RETRY_BACKOFF_CAP", 30.0),
        )

        self.cache_config = CacheConfig(
            ttl_viewport=self._get_int("CACHE_TTL_VIEWPORT", 300),
            max_entries=self._get_int("CACHE_MAX_ENTRIES", 64),
            bounds_precision=self._get_int("CACHE_BOUNDS_PRECISION", 4),
        )

        self.pipeline_config = PipelineConfig(
            max_pois_per_viewport=self._get_int("MAX_POIS_PER_VIEWPORT", 1000),
            inter_category_delay=self._get_float("INTER_CATEGORY_DELAY", 0.5),
            catalog_tier_delays=[
                float(v) for v in self._get_list("CATALOG_TIER_DELAYS", ["3", "2", "1"])
            ],
            max_views=self._get_int("MAX_VIEWS", 32),
        )

        self.source_config = SourceConfig(
            overpass_url=self._get_str("OVERPASS_URL", SourceConfig.overpass_url),
            overpass_user_agent=self._get_str("OVERPASS_USER_AGENT", SourceConfig.overpass_user_agent),
            overpass_query_timeout=self._get_int("OVERPASS_QUERY_TIMEOUT", 25),
            wfs_shelter_url=self._get_str("WFS_SHELTER_URL", SourceConfig.wfs_shelter_url),
            wfs_shelter_type=self._get_str("WFS_SHELTER_TYPE", SourceConfig.wfs_shelter_type),
            wfs_max_features=self._get_int("WFS_MAX_FEATURES", 100),
            riksantikvaren_url=self._get_str("RIKSANTIKVAREN_URL", SourceConfig.riksantikvaren_url),
            riksantikvaren_layer=self._get_int("RIKSANTIKVAREN_LAYER", 4),
            riksantikvaren_max_records=self._get_int("RIKSANTIKVAREN_MAX_RECORDS", 500),
            clamp_to_norway=self._get_bool("CLAMP_TO_NORWAY", True),
            name_locales=self._get_list("NAME_LOCALES", ["nb", "nn", "no"]),
        )

        self.logging_config = LoggingConfig(
            level=self._get_str("LOG_LEVEL", "INFO"),
            format=self._get_str("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            file=self._get_optional("LOG_FILE"),
            max_bytes=self._get_int("LOG_MAX_BYTES", 10485760),
            backup_count=self._get_int("LOG_BACKUP_COUNT", 5),
        )

        self._validate()

    def _get_environment(self) -> Environment:
        """Get application environment."""
        env_str = self._get_str("ENVIRONMENT", "development").lower()
        try:
            return Environment(env_str)
        except ValueError:
            raise ValueError(f"Invalid environment: {env_str}")

    def _get_optional(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return os.getenv(key, default)

    def _get_str(self, key: str, default: str) -> str:
        return os.getenv(key, default)

    def _get_int(self, key: str, default: int) -> int:
        """Get integer environment variable with default.

        Raises:
            ValueError: If value cannot be converted to int
        """
        value = os.getenv(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"Invalid integer for {key}: {value}")

    def _get_float(self, key: str, default: float) -> float:
        """Get float environment variable with default.

        Raises:
            ValueError: If value cannot be converted to float
        """
        value = os.getenv(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"Invalid float for {key}: {value}")

    def _get_bool(self, key: str, default: bool) -> bool:
        value = os.getenv(key)
        if value is None:
            return default
        return value.lower() in ('1', 'true', 'yes', 'on')

    def _get_list(self, key: str, default: list) -> list:
        value = os.getenv(key)
        if value is None:
            return default
        return [item.strip() for item in value.split(',') if item.strip()]

    def _validate(self):
        """Validate configuration values."""
        for attr_name in ['viewport', 'background']:
            timeout = getattr(self.timeout_config, attr_name)
            if timeout <= 0:
                raise ValueError(f"Invalid timeout for {attr_name}: {timeout}")

        if self.retry_config.max_attempts < 1:
            raise ValueError(f"Invalid RETRY_MAX_ATTEMPTS: {self.retry_config.max_attempts}")
        if self.retry_config.backoff_cap < 0 or self.retry_config.backoff_base < 0:
            raise ValueError("Backoff durations must be non-negative")

        if self.cache_config.ttl_viewport <= 0:
            raise ValueError(f"Invalid CACHE_TTL_VIEWPORT: {self.cache_config.ttl_viewport}")
        if self.cache_config.max_entries < 1:
            raise ValueError(f"Invalid CACHE_MAX_ENTRIES: {self.cache_config.max_entries}")
        if not 0 <= self.cache_config.bounds_precision <= 10:
            raise ValueError(f"Invalid CACHE_BOUNDS_PRECISION: {self.cache_config.bounds_precision}")

        if self.pipeline_config.max_pois_per_viewport < 1:
            raise ValueError(f"Invalid MAX_POIS_PER_VIEWPORT: {self.pipeline_config.max_pois_per_viewport}")
        if len(self.pipeline_config.catalog_tier_delays) != 3:
            raise ValueError("CATALOG_TIER_DELAYS needs exactly three values (high,medium,low)")
        if self.pipeline_config.max_views < 1:
            raise ValueError(f"Invalid MAX_VIEWS: {self.pipeline_config.max_views}")

        # Validate Redis URL only if provided
        if self.redis_url and not self.redis_url.startswith(('redis://', 'rediss://')):
            raise ValueError(f"Invalid Redis URL: {self.redis_url}")

        if not self.redis_url:
            logger.info("REDIS_URL not set - metrics are kept in process memory")

    def get_timeout(self, operation: str) -> float:
        return self.timeout_config.get(operation)

    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary for debugging."""
        return {
            'environment': self.environment.value,
            'debug': self.debug,
            'redis_url': self.redis_url,
            'timeout_config': {
                'viewport': self.timeout_config.viewport,
                'background': self.timeout_config.background,
            },
            'retry_config': {
                'max_attempts': self.retry_config.max_attempts,
                'backoff_base': self.retry_config.backoff_base,
                'backoff_step': self.retry_config.backoff_step,
                'backoff_cap': self.retry_config.backoff_cap,
            },
            'cache_config': {
                'ttl_viewport': self.cache_config.ttl_viewport,
                'max_entries': self.cache_config.max_entries,
                'bounds_precision': self.cache_config.bounds_precision,
            },
            'pipeline_config': {
                'max_pois_per_viewport': self.pipeline_config.max_pois_per_viewport,
                'inter_category_delay': self.pipeline_config.inter_category_delay,
                'catalog_tier_delays': list(self.pipeline_config.catalog_tier_delays),
                'max_views': self.pipeline_config.max_views,
            },
            'overpass_url': self.source_config.overpass_url,
            'wfs_shelter_url': self.source_config.wfs_shelter_url,
            'riksantikvaren_url': self.source_config.riksantikvaren_url,
        }


# Global configuration instance
config = Config()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config


def reload_config() -> Config:
    """Rebuild the global configuration from the current environment."""
    global config
    config = Config()
    return config


def setup_logging():
    """Set up logging based on configuration."""
    from logging.handlers import RotatingFileHandler

    config = get_config()

    logging.basicConfig(
        level=getattr(logging, config.logging_config.level.upper()),
        format=config.logging_config.format,
    )

    if config.logging_config.file:
        file_handler = RotatingFileHandler(
            config.logging_config.file,
            maxBytes=config.logging_config.max_bytes,
            backupCount=config.logging_config.backup_count,
        )
        file_handler.setFormatter(logging.Formatter(config.logging_config.format))
        logging.getLogger().addHandler(file_handler)

    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    if config.is_development() and config.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    elif config.is_production():
        logging.getLogger().setLevel(logging.INFO)
    elif config.is_testing():
        logging.getLogger().setLevel(logging.WARNING)
