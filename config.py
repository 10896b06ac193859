#!/usr/bin/env python3
"""
Configuration management for the Report Pipeline.

This module centralizes configuration loading, validation and logging setup.
It reads environment variables, an optional .env file and an optional YAML
secrets file, and exposes a single global ``config`` object used by every
other module.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List, Tuple
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    environ["PYTHONUNBUFFERED"] = "1"

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

    # Reduce Azure SDK verbosity unless explicitly overridden
    azure_level_str = environ.get("AZURE_LOG_LEVEL", "WARNING").upper()
    environ["AZURE_LOG_LEVEL"] = azure_level_str
    azure_level = level_map.get(azure_level_str, WARNING)
    for name in (
        "azure",
        "azure.core",
        "azure.core.pipeline.policies.http_logging_policy",
        "azure.monitor.opentelemetry.exporter",
    ):
        getLogger(name).setLevel(azure_level)

    # uvicorn access logs are noisy at INFO
    getLogger("uvicorn.access").setLevel(max(level, WARNING))

    return getLogger("ReportPipeline")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "registry", "generator", "admin")

    Returns:
        A logger named "ReportPipeline.{name}"
    """
    return getLogger(f"ReportPipeline.{name}")


logger = _setup_global_logger()


def _parse_key_pairs(raw: str | None) -> Dict[str, str]:
    """Parse "key:user,key2:user2" into a mapping of API key to user id."""
    result: Dict[str, str] = {}
    if not raw:
        return result
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        key, _, user = chunk.partition(":")
        key = key.strip()
        if not key:
            continue
        result[key] = user.strip() or key[:8]
    return result


class Config:
    """Configuration manager for the Report Pipeline.

    Loading order (later sources override earlier ones):
    1. Environment variables
    2. .env file next to this module (if present)
    3. YAML secrets file (if SECRETS_FILE is set)

    Example secrets.yaml format:
    ```yaml
    OPENAI_API_KEY: "your-api-key"
    AZURE_STORAGE_ACCOUNT: "yourstorageaccount"
    AZURE_STORAGE_KEY: "your-storage-key"
    SMTP_PASSWORD: "..."
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()

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

    def _flag(self, env_var: str, default: bool = False) -> bool:
        return environ.get(env_var, "true" if default else "false").strip().lower() == "true"

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATA_PATH = environ.get("DATA_PATH", base_dir)
        self.DATABASE_PATH = environ.get("DATABASE_PATH", path.join(self.DATA_PATH, "reports.db"))
        self.BLOB_STORE_PATH = environ.get("BLOB_STORE_PATH", path.join(self.DATA_PATH, "blobs"))
        self.REPORTS_CONTAINER = environ.get("REPORTS_CONTAINER", "reports")
        self.SUMMARIES_CONTAINER = environ.get("SUMMARIES_CONTAINER", "weekly-summaries")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # Azure storage configuration (falls back to local blob directory when missing)
        self.AZURE_STORAGE_ACCOUNT = environ.get("AZURE_STORAGE_ACCOUNT")
        self.AZURE_STORAGE_KEY = environ.get("AZURE_STORAGE_KEY")

        # Report generation
        self.REPORT_WINDOW_DAYS = self._validate_positive_int("REPORT_WINDOW_DAYS", 7, 1)
        self.REPORT_TOP_ITEMS = self._validate_positive_int("REPORT_TOP_ITEMS", 5, 1)
        self.REPORT_TOP_COMMENTS = self._validate_positive_int("REPORT_TOP_COMMENTS", 5, 1)
        self.REPORT_QUICK_LINKS = self._validate_positive_int("REPORT_QUICK_LINKS", 10, 0)

        # Cache freshness: 0 disables the max-age check
        self.REPORT_CACHE_MAX_AGE_HOURS = self._validate_positive_int("REPORT_CACHE_MAX_AGE_HOURS", 168, 0)
        self.BATCH_REUSE_WINDOW_HOURS = self._validate_positive_int("BATCH_REUSE_WINDOW_HOURS", 24, 0)

        # Registry optimistic concurrency
        self.REGISTRY_MAX_ATTEMPTS = self._validate_positive_int("REGISTRY_MAX_ATTEMPTS", 5, 1)

        # Admin distribution pacing (seconds between configs; 0 disables)
        self.ADMIN_PACING_SECONDS = self._validate_positive_float("ADMIN_PACING_SECONDS", 45.0, 0.0)

        # Background report jobs
        self.JOB_WORKERS = self._validate_positive_int("JOB_WORKERS", 1, 1)

        # HTTP request configuration for platform APIs
        self.USER_AGENT = environ.get("USER_AGENT", "ReportPipeline/1.0 (weekly community reports)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 3, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.PLATFORM_REQUESTS_PER_MINUTE = self._validate_positive_int("PLATFORM_REQUESTS_PER_MINUTE", 30, 0)
        self.GITHUB_TOKEN = environ.get("GITHUB_TOKEN")

        # OpenAI/Azure AI configuration for the analyzer
        self.AZURE_ENDPOINT = environ.get("AZURE_ENDPOINT")
        # Normalize endpoint (strip scheme and trailing slashes) to avoid malformed URLs
        if self.AZURE_ENDPOINT:
            normalized = self.AZURE_ENDPOINT.strip()
            if normalized.lower().startswith("https://"):
                normalized = normalized[8:]
            elif normalized.lower().startswith("http://"):
                normalized = normalized[7:]
            normalized = normalized.strip("/")
            if normalized != self.AZURE_ENDPOINT:
                logger.info(f"Normalized AZURE_ENDPOINT to '{normalized}'")
            self.AZURE_ENDPOINT = normalized
        self.OPENAI_API_KEY = environ.get("OPENAI_API_KEY")
        self.DEPLOYMENT_NAME = environ.get("DEPLOYMENT_NAME")
        self.OPENAI_API_VERSION = environ.get("OPENAI_API_VERSION")
        self.ANALYZER_MAX_RETRIES = self._validate_positive_int("ANALYZER_MAX_RETRIES", 3, 0)
        self.ANALYZER_RETRY_DELAY_BASE = self._validate_positive_float("ANALYZER_RETRY_DELAY_BASE", 1.0, 0.0)
        self.ANALYZER_REQUESTS_PER_MINUTE = self._validate_positive_int("ANALYZER_REQUESTS_PER_MINUTE", 60, 0)
        self.ANALYZER_MAX_INPUT_CHARS = self._validate_positive_int("ANALYZER_MAX_INPUT_CHARS", 60000, 1000)

        # Email delivery
        self.SMTP_HOST = environ.get("SMTP_HOST")
        self.SMTP_PORT = self._validate_positive_int("SMTP_PORT", 587, 1)
        self.SMTP_USER = environ.get("SMTP_USER")
        self.SMTP_PASSWORD = environ.get("SMTP_PASSWORD")
        self.SMTP_USE_TLS = self._flag("SMTP_USE_TLS", True)
        self.EMAIL_FROM = environ.get("EMAIL_FROM", self.SMTP_USER or "reports@localhost")
        self.EMAIL_BACKEND = environ.get("EMAIL_BACKEND", "smtp" if self.SMTP_HOST else "log").strip().lower()

        # API keys ("key:user" pairs); admin keys also authenticate as regular users
        self.API_KEYS = _parse_key_pairs(environ.get("API_KEYS"))
        self.ADMIN_API_KEYS = _parse_key_pairs(environ.get("ADMIN_API_KEYS"))

        # Scheduler configuration
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "UTC")
        self.SCHEDULER_RUN_IMMEDIATELY = self._flag("SCHEDULER_RUN_IMMEDIATELY")
        self.RUN_SCHEDULER_IN_API = self._flag("RUN_SCHEDULER_IN_API")

        # HTTP server
        self.API_HOST = environ.get("API_HOST", "0.0.0.0")
        self.API_PORT = self._validate_positive_int("API_PORT", 8000, 1)

        # File paths
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.PROMPT_CONFIG_PATH = path.join(base_dir, "prompts.yaml")
        self.SCHEDULE_CONFIG_PATH = path.join(base_dir, "schedule.yaml")
        self.TEMPLATES_PATH = path.join(base_dir, "templates")

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and a mapping nested under ``environment`` are accepted.
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

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config
        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'schedule')

        Returns:
            Parsed YAML or None on failure.
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
            with open(file_path, 'r', encoding='utf-8') as f:
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

    def load_yaml(self, file_path: str, kind: str) -> Any | None:
        """Public wrapper used by the scheduler and analyzer to read their YAML files."""
        return self._safe_read_yaml(file_path, 1024 * 1024, kind)

    def has_azure_storage(self) -> bool:
        return bool(self.AZURE_STORAGE_ACCOUNT and self.AZURE_STORAGE_KEY)

    def has_openai(self) -> bool:
        return bool(self.OPENAI_API_KEY and self.AZURE_ENDPOINT and self.OPENAI_API_VERSION and self.DEPLOYMENT_NAME)

    def admin_pacing(self) -> Tuple[float, int]:
        """Return (requests_per_minute, burst) for the admin distribution limiter."""
        if self.ADMIN_PACING_SECONDS <= 0:
            return 0.0, 1
        return 60.0 / self.ADMIN_PACING_SECONDS, 1

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "blob_backend": "azure" if self.has_azure_storage() else f"local:{self.BLOB_STORE_PATH}",
            "report_window_days": self.REPORT_WINDOW_DAYS,
            "report_top_items": self.REPORT_TOP_ITEMS,
            "cache_max_age_hours": self.REPORT_CACHE_MAX_AGE_HOURS,
            "batch_reuse_window_hours": self.BATCH_REUSE_WINDOW_HOURS,
            "admin_pacing_seconds": self.ADMIN_PACING_SECONDS,
            "analyzer_requests_per_minute": self.ANALYZER_REQUESTS_PER_MINUTE,
            "platform_requests_per_minute": self.PLATFORM_REQUESTS_PER_MINUTE,
            "email_backend": self.EMAIL_BACKEND,
            "scheduler_timezone": self.SCHEDULER_TIMEZONE,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "has_openai": self.has_openai(),
            "has_github_token": bool(self.GITHUB_TOKEN),
            "api_key_count": len(self.API_KEYS) + len(self.ADMIN_API_KEYS),
        }


# Global configuration instance
config = Config()
