#!/usr/bin/env python3
"""
Configuration management for the content processing pipeline.

This module centralizes configuration loading, validation, and logging setup.
Values come from environment variables, an optional `.env` file, an optional
YAML secrets file, and the `feeds.yaml` source list. Components read their
defaults from the global `config` instance but accept explicit overrides in
their constructors.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

LOGGER_PREFIX = "ContentPipeline"
SOURCE_TYPES = ("rss", "podcast")


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() so they inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    # Keep the HTTP client libraries quiet unless we are debugging
    for name in ("httpx", "httpcore", "openai"):
        getLogger(name).setLevel(level if level == DEBUG else WARNING)

    return getLogger(LOGGER_PREFIX)


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "summarizer", "processor")

    Returns:
        A logger named "ContentPipeline.{name}"
    """
    return getLogger(f"{LOGGER_PREFIX}.{name}")


logger = _setup_global_logger()


def mask_secret(value: str | None, show: int = 4) -> str:
    """Mask a secret value for safe logging (keep only first/last few chars)."""
    if not value:
        return "<missing>"
    v = str(value)
    if len(v) <= show * 2:
        return "*" * len(v)
    return f"{v[:show]}***{v[-show:]}"


class Config:
    """Configuration manager for the content pipeline.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE is set), which overrides both
    4. feeds.yaml source list

    Example secrets.yaml format:
    ```yaml
    OPENAI_API_KEY: "your-api-key"
    OPENAI_DAILY_BUDGET: 20
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_bool(self, env_var: str, default: bool) -> bool:
        raw = environ.get(env_var)
        if raw is None:
            return default
        return raw.strip().lower() in ("1", "true", "yes", "on")

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "pipeline.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; ContentPipeline/1.0)")
        self.FORCE_REFRESH_FEEDS = self._validate_bool("FORCE_REFRESH_FEEDS", False)
        self.FETCH_INTERVAL_MINUTES = self._validate_positive_int("FETCH_INTERVAL_MINUTES", 30, 1)

        # HTTP request configuration (feed, transcript and audio fetches)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 3, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.01)
        self.RETRY_DELAY_MAX = self._validate_positive_float("RETRY_DELAY_MAX", 30.0, 0.1)
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 15, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        self.MAX_AUDIO_BYTES = self._validate_positive_int("MAX_AUDIO_BYTES", 25 * 1024 * 1024, 1024)

        # Generation service
        self.OPENAI_API_KEY = environ.get("OPENAI_API_KEY")
        self.OPENAI_MODEL = environ.get("OPENAI_MODEL", "gpt-4o")
        self.TRANSCRIPTION_MODEL = environ.get("TRANSCRIPTION_MODEL", "whisper-1")
        self.AZURE_ENDPOINT = environ.get("AZURE_ENDPOINT")
        # Normalize endpoint (strip scheme and trailing slashes) to avoid malformed URLs
        if self.AZURE_ENDPOINT:
            normalized = self.AZURE_ENDPOINT.strip()
            if normalized.lower().startswith("https://"):
                normalized = normalized[8:]
            elif normalized.lower().startswith("http://"):
                normalized = normalized[7:]
            self.AZURE_ENDPOINT = normalized.strip("/")
        self.OPENAI_API_VERSION = environ.get("OPENAI_API_VERSION")
        self.DEPLOYMENT_NAME = environ.get("DEPLOYMENT_NAME")
        self.GENERATION_TIMEOUT = self._validate_positive_int("GENERATION_TIMEOUT", 120, 5)
        self.GENERATION_MAX_RETRIES = self._validate_positive_int("GENERATION_MAX_RETRIES", 3, 0)

        # Shared request/token ceilings for the generation service
        self.OPENAI_REQUESTS_PER_MINUTE = self._validate_positive_int("OPENAI_REQUESTS_PER_MINUTE", 500, 1)
        self.OPENAI_TOKENS_PER_MINUTE = self._validate_positive_int("OPENAI_TOKENS_PER_MINUTE", 30000, 100)
        self.RATE_LIMIT_MAX_WAIT = self._validate_positive_float("RATE_LIMIT_MAX_WAIT", 120.0, 1.0)

        # Spend ceilings (USD)
        self.OPENAI_DAILY_BUDGET = self._validate_positive_float("OPENAI_DAILY_BUDGET", 50.0, 0.0)
        self.OPENAI_MONTHLY_BUDGET = self._validate_positive_float("OPENAI_MONTHLY_BUDGET", 500.0, 0.0)

        # Summarization eligibility
        self.MIN_WORDS_FOR_SUMMARY = self._validate_positive_int("MIN_WORDS_FOR_SUMMARY", 100, 1)
        self.MIN_WORDS_FOR_PODCAST_SUMMARY = self._validate_positive_int("MIN_WORDS_FOR_PODCAST_SUMMARY", 200, 1)
        self.MAX_AUDIO_DURATION_SECONDS = self._validate_positive_int("MAX_AUDIO_DURATION_SECONDS", 7200, 60)
        self.TRANSCRIBE_IF_MISSING = self._validate_bool("TRANSCRIBE_IF_MISSING", True)

        # Batch processing
        self.PROCESSING_BATCH_SIZE = self._validate_positive_int("PROCESSING_BATCH_SIZE", 10, 1)
        self.PROCESSING_ITEM_DELAY = self._validate_positive_float("PROCESSING_ITEM_DELAY", 1.0, 0.0)
        self.SOURCE_MAX_CONSECUTIVE_ERRORS = self._validate_positive_int("SOURCE_MAX_CONSECUTIVE_ERRORS", 5, 1)

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))
        self.PROMPT_CONFIG_PATH = path.join(base_dir, "prompt.yaml")

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Accepts either a top-level mapping or a mapping nested under `environment`.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config
        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_feed_sources(self) -> None:
        """Populate self.FEED_SOURCES from feeds.yaml.

        Each entry becomes `{slug: {"url": ..., "type": "rss"|"podcast", "interval_minutes": int}}`.
        Any failure results in an empty mapping.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        feeds_section = config_data.get('feeds') if isinstance(config_data, dict) else None
        if not isinstance(feeds_section, dict):
            if config_data is not None:
                logger.warning(f"No valid feeds found in {feeds_path}")
            self.FEED_SOURCES = {}
            return

        sources: Dict[str, Dict[str, Any]] = {}
        for slug, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, str):
                feed_cfg = {'url': feed_cfg}
            if not isinstance(feed_cfg, dict) or not feed_cfg.get('url'):
                logger.warning(f"Skipping invalid feed configuration for '{slug}': {feed_cfg}")
                continue
            source_type = str(feed_cfg.get('type') or 'rss').lower()
            if source_type not in SOURCE_TYPES:
                logger.warning(f"Unknown source type '{source_type}' for '{slug}', treating as rss")
                source_type = 'rss'
            interval = feed_cfg.get('interval_minutes', self.FETCH_INTERVAL_MINUTES)
            try:
                interval = max(int(interval), 1)
            except (TypeError, ValueError):
                interval = self.FETCH_INTERVAL_MINUTES
            sources[slug] = {
                'url': str(feed_cfg['url']).strip(),
                'type': source_type,
                'interval_minutes': interval,
            }

        self.FEED_SOURCES = sources
        logger.info(f"Loaded {len(self.FEED_SOURCES)} sources from {feeds_path}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "source_count": len(self.FEED_SOURCES),
            "fetch_interval_minutes": self.FETCH_INTERVAL_MINUTES,
            "max_retries": self.MAX_RETRIES,
            "http_timeout": self.HTTP_TIMEOUT,
            "model": self.OPENAI_MODEL,
            "requests_per_minute": self.OPENAI_REQUESTS_PER_MINUTE,
            "tokens_per_minute": self.OPENAI_TOKENS_PER_MINUTE,
            "daily_budget": self.OPENAI_DAILY_BUDGET,
            "monthly_budget": self.OPENAI_MONTHLY_BUDGET,
            "min_words": self.MIN_WORDS_FOR_SUMMARY,
            "min_words_podcast": self.MIN_WORDS_FOR_PODCAST_SUMMARY,
            "transcribe_if_missing": self.TRANSCRIBE_IF_MISSING,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "has_openai_key": bool(self.OPENAI_API_KEY),
            "uses_azure": bool(self.AZURE_ENDPOINT),
        }


# Global configuration instance
config = Config()
