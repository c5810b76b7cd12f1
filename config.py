#!/usr/bin/env python3
"""
Configuration for the paper ingestion engine.

Settings come from the environment (optionally seeded from .env and a YAML
secrets file). journals.yaml carries the default journals for new users and
the ingestion schedule. Importing this module also sets up logging.
"""

from os import environ, path, access, R_OK
from typing import Callable, Dict, Any, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import re
import sys
import yaml
from dotenv import load_dotenv

LOG_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}


def _setup_global_logger():
    """Configure the root "PaperIngest" logger on stdout.

    LOG_LEVEL picks the level (INFO by default), LOG_TIMESTAMPS=false drops
    the timestamp prefix and SDK_LOG_LEVEL governs the provider SDK loggers.
    """
    level = LOG_LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)
    log_format = '%(name)s - %(levelname)s - %(message)s'
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        log_format = '%(asctime)s - ' + log_format

    basicConfig(level=level, format=log_format, handlers=[StreamHandler(sys.stdout)], force=True)

    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except AttributeError:
        # Captured streams (e.g. under pytest) may not support reconfigure
        pass

    sdk_level = LOG_LEVELS.get(environ.get("SDK_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("openai", "anthropic", "httpx", "azure", "azure.monitor"):
        getLogger(name).setLevel(sdk_level)

    return getLogger("PaperIngest")


def get_logger(name: str):
    """Return the "PaperIngest.<name>" child logger."""
    return getLogger(f"PaperIngest.{name}")


logger = _setup_global_logger()


class Config:
    """Engine settings, read once at import.

    Precedence, lowest first: process environment, .env next to this file,
    then the YAML mapping named by SECRETS_FILE, e.g.::

        OPENAI_API_KEY: "sk-..."
        ANTHROPIC_API_KEY: "sk-ant-..."
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_journal_defaults()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _env_number(self, env_var: str, default, min_val, cast: Callable):
        """Parse a numeric setting, falling back to the default when invalid or too small."""
        raw = environ.get(env_var)
        if raw is None:
            return default
        try:
            value = cast(raw)
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value {raw!r}, using default {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
            return default
        return value

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        return self._env_number(env_var, default, min_val, int)

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        return self._env_number(env_var, default, min_val, float)

    def _validate_and_set_config(self):
        # Storage and identity
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "papers.db")
        self.USER_AGENT = environ.get(
            "USER_AGENT",
            "Mozilla/5.0 (compatible; PaperIngest/1.0; Academic Paper Aggregator)",
        )

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 2, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Fetch pacing: minimum gap between two fetches of the same journal
        self.MIN_FETCH_INTERVAL_MS = self._validate_positive_int("MIN_FETCH_INTERVAL_MS", 5000, 0)
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 3, 1)

        # Page analysis
        self.ANALYSIS_MAX_REDIRECTS = self._validate_positive_int("ANALYSIS_MAX_REDIRECTS", 2, 0)
        self.REDUCED_HTML_MAX_BYTES = self._validate_positive_int("REDUCED_HTML_MAX_BYTES", 40000, 1000)
        self.SAMPLE_PAPER_LIMIT = self._validate_positive_int("SAMPLE_PAPER_LIMIT", 3, 1)

        # Synthetic feed serving
        self.FEED_CACHE_SECONDS = self._validate_positive_int("FEED_CACHE_SECONDS", 1800, 0)

        # AI provider configuration
        self.AI_PROVIDER = environ.get("AI_PROVIDER", "openai").strip().lower()
        self.OPENAI_API_KEY = environ.get("OPENAI_API_KEY")
        self.OPENAI_MODEL = environ.get("OPENAI_MODEL", "gpt-4o")
        self.AZURE_ENDPOINT = normalize_azure_endpoint(environ.get("AZURE_ENDPOINT"))
        self.OPENAI_API_VERSION = environ.get("OPENAI_API_VERSION")
        self.ANTHROPIC_API_KEY = environ.get("ANTHROPIC_API_KEY") or environ.get("CLAUDE_API_KEY")
        self.CLAUDE_MODEL = environ.get("CLAUDE_MODEL", "claude-sonnet-4-20250514")
        self.AI_TIMEOUT = self._validate_positive_int("AI_TIMEOUT", 60, 10)
        self.AI_MAX_RETRIES = self._validate_positive_int("AI_MAX_RETRIES", 2, 0)
        self.AI_RETRY_DELAY_BASE = self._validate_positive_float("AI_RETRY_DELAY_BASE", 1.0, 0.0)
        self.AI_REQUESTS_PER_MINUTE = self._validate_positive_int("AI_REQUESTS_PER_MINUTE", 30, 0)

        # Background job queue
        self.JOB_MAX_ATTEMPTS = self._validate_positive_int("JOB_MAX_ATTEMPTS", 3, 1)
        self.JOB_VISIBILITY_TIMEOUT = self._validate_positive_int("JOB_VISIBILITY_TIMEOUT", 300, 10)
        self.JOB_POLL_INTERVAL = self._validate_positive_float("JOB_POLL_INTERVAL", 5.0, 0.1)
        self.JOB_RETRY_DELAY_BASE = self._validate_positive_float("JOB_RETRY_DELAY_BASE", 30.0, 0.0)

        # Scheduler configuration
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "UTC")

        # HTTP surface
        self.SERVER_HOST = environ.get("SERVER_HOST", "127.0.0.1")
        self.SERVER_PORT = self._validate_positive_int("SERVER_PORT", 8080, 1)

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.PROMPT_CONFIG_PATH = environ.get("PROMPT_CONFIG_PATH", path.join(base_dir, "prompt.yaml"))
        self.JOURNALS_CONFIG_PATH = environ.get("JOURNALS_CONFIG_PATH", path.join(base_dir, "journals.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and a mapping nested under `environment`
        are accepted.
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

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
        else:
            env_vars = secrets_config

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

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'journals')

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

    def _load_journal_defaults(self) -> None:
        """Populate self.DEFAULT_JOURNALS from journals.yaml and DEFAULT_JOURNALS.

        DEFAULT_JOURNALS uses the "NAME|URL,NAME2|URL2" format and appends to
        whatever journals.yaml declares. Any failure results in an empty list.
        """
        journals: List[Dict[str, Any]] = []
        data = self._safe_read_yaml(self.JOURNALS_CONFIG_PATH, 1024 * 1024, 'journals')
        entries = data.get('default_journals') if isinstance(data, dict) else None
        if isinstance(entries, list):
            for entry in entries:
                if isinstance(entry, dict) and entry.get('name') and entry.get('url'):
                    journals.append({
                        'name': str(entry['name']),
                        'full_name': entry.get('full_name'),
                        'source_url': str(entry['url']),
                        'source_type': str(entry.get('source_type', 'rss')),
                        'color': str(entry.get('color', 'bg-gray-500')),
                    })
                else:
                    logger.warning(f"Skipping invalid default journal entry: {entry}")

        journals.extend(parse_default_journals(environ.get("DEFAULT_JOURNALS", "")))
        self.DEFAULT_JOURNALS = journals
        logger.debug(f"Loaded {len(self.DEFAULT_JOURNALS)} default journals")

    def reload_journal_defaults(self):
        """Reload default journals from configuration."""
        logger.info("Reloading default journal configuration")
        self._load_journal_defaults()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_retries": self.MAX_RETRIES,
            "max_redirects": self.MAX_REDIRECTS,
            "min_fetch_interval_ms": self.MIN_FETCH_INTERVAL_MS,
            "fetch_concurrency": self.FETCH_CONCURRENCY,
            "analysis_max_redirects": self.ANALYSIS_MAX_REDIRECTS,
            "reduced_html_max_bytes": self.REDUCED_HTML_MAX_BYTES,
            "ai_provider": self.AI_PROVIDER,
            "openai_model": self.OPENAI_MODEL,
            "claude_model": self.CLAUDE_MODEL,
            "has_openai_key": bool(self.OPENAI_API_KEY),
            "has_anthropic_key": bool(self.ANTHROPIC_API_KEY),
            "has_azure_endpoint": bool(self.AZURE_ENDPOINT),
            "default_journal_count": len(self.DEFAULT_JOURNALS),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


def normalize_azure_endpoint(endpoint: Optional[str]) -> Optional[str]:
    """Reduce an Azure OpenAI endpoint to its bare host, e.g. "myres.openai.azure.com"."""
    if not endpoint:
        return endpoint
    host = re.sub(r"^https?://", "", endpoint.strip(), flags=re.IGNORECASE).strip("/")
    if host != endpoint:
        logger.info(f"Normalized AZURE_ENDPOINT to '{host}'")
    return host


def parse_default_journals(raw: str) -> List[Dict[str, Any]]:
    """Parse the DEFAULT_JOURNALS "NAME|URL,NAME2|URL2" format."""
    journals: List[Dict[str, Any]] = []
    for entry in (part.strip() for part in (raw or "").split(',')):
        if not entry:
            continue
        parts = entry.split('|', 1)
        if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
            logger.warning(f"Ignoring malformed DEFAULT_JOURNALS entry: {entry}")
            continue
        name = parts[0].strip()
        journals.append({
            'name': name,
            'full_name': None,
            'source_url': parts[1].strip(),
            'source_type': 'rss',
            'color': 'bg-gray-500',
        })
    return journals


# Global configuration instance
config = Config()
