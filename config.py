#!/usr/bin/env python3
"""
Configuration management for InfoDash.

This module centralizes configuration loading for the feed acquisition core:
environment variables, an optional .env file, an optional YAML secrets file
and the sources.yaml file that lists default sources and relay mirrors.
It also owns the single logging setup every other module inherits.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger writes to stdout with line buffering. Modules should call
    get_logger() so their loggers inherit this configuration.
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

    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(line_buffering=True)
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(line_buffering=True)

    # aiohttp access logs are noisy at INFO when serving the proxy endpoint
    getLogger("aiohttp.access").setLevel(level_map.get(environ.get("AIOHTTP_LOG_LEVEL", "WARNING").upper(), WARNING))

    return getLogger("InfoDash")


def get_logger(name: str):
    """Get a module-specific logger named "InfoDash.{name}".

    Example:
        logger = get_logger("transport")
        logger.info("This will appear as 'InfoDash.transport - INFO - ...'")
    """
    return getLogger(f"InfoDash.{name}")


logger = _setup_global_logger()


# Realistic desktop browser identities rotated by the direct fetch strategy
DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
]

DEFAULT_CORS_PROXIES = [
    {"name": "allorigins", "prefix": "https://api.allorigins.win/raw?url="},
    {"name": "corsproxy", "prefix": "https://corsproxy.io/?"},
    {"name": "codetabs", "prefix": "https://api.codetabs.com/v1/proxy?quest="},
]

# RSSHub relays, ranked; {url} is replaced with the percent-encoded target
DEFAULT_RSSHUB_MIRRORS = [
    {"name": "allorigins-raw", "template": "https://api.allorigins.win/raw?url={url}"},
    {"name": "corsproxy", "template": "https://corsproxy.io/?{url}"},
    {"name": "allorigins-get", "template": "https://api.allorigins.win/get?url={url}&callback="},
]

DEFAULT_SOURCES = [
    {"name": "36氪", "type": "rss", "url": "https://36kr.com/feed", "icon": "📰"},
    {"name": "少数派", "type": "rss", "url": "https://sspai.com/feed", "icon": "✍️"},
    {"name": "知乎热榜", "type": "zhihu", "url": None, "icon": "🔥"},
    {"name": "微博热搜", "type": "weibo", "url": None, "icon": "📢"},
]


class Config:
    """Configuration manager for InfoDash.

    Configuration is loaded from, in order:
    1. Environment variables
    2. .env file next to this module (if present)
    3. YAML secrets file (if SECRETS_FILE is set)
    4. sources.yaml (default sources and relay mirror lists)

    Example sources.yaml:
    ```yaml
    sources:
      - name: 少数派
        type: rss
        url: https://sspai.com/feed
    cors_proxies:
      - name: allorigins
        prefix: "https://api.allorigins.win/raw?url="
    rsshub:
      hosts: [rss.example.org]
      mirrors:
        - name: allorigins-raw
          template: "https://api.allorigins.win/raw?url={url}"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_sources_config()

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

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.0) -> float:
        """Validate and parse a non-negative float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _optional_url(self, env_var: str) -> Optional[str]:
        value = (environ.get(env_var) or "").strip().rstrip("/")
        return value or None

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "infodash.db")
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SOURCES_CONFIG_PATH = environ.get("SOURCES_CONFIG_PATH", path.join(base_dir, "sources.yaml"))
        self.ITEM_RETENTION_DAYS = self._validate_positive_int("ITEM_RETENTION_DAYS", 90, 1)

        # Transport timeouts (seconds)
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.RSSHUB_TIMEOUT = self._validate_positive_int("RSSHUB_TIMEOUT", 45, 1)
        self.FAVICON_TIMEOUT = self._validate_positive_int("FAVICON_TIMEOUT", 5, 1)
        self.HOT_TOPIC_TIMEOUT = self._validate_positive_int("HOT_TOPIC_TIMEOUT", 10, 1)

        # RSSHub mirror retry policy
        self.RSSHUB_RETRIES = self._validate_positive_int("RSSHUB_RETRIES", 2, 1)
        self.RSSHUB_RETRY_DELAY = self._validate_positive_float("RSSHUB_RETRY_DELAY", 2.0, 0.0)

        # Same-origin proxy base URL; unset disables the server-proxy strategy
        self.PROXY_BASE_URL = self._optional_url("PROXY_BASE_URL")

        # Discovery and normalization
        self.DISCOVERY_BATCH_SIZE = self._validate_positive_int("DISCOVERY_BATCH_SIZE", 6, 1)
        self.SUMMARY_MAX_LENGTH = self._validate_positive_int("SUMMARY_MAX_LENGTH", 300, 10)
        self.FAVICON_BATCH_SIZE = self._validate_positive_int("FAVICON_BATCH_SIZE", 10, 1)

        # Scheduler
        self.FETCH_MAX_RETRIES = self._validate_positive_int("FETCH_MAX_RETRIES", 3, 1)
        self.FETCH_RETRY_BASE = self._validate_positive_float("FETCH_RETRY_BASE", 2.0, 0.0)
        self.FETCH_INTERVAL_MINUTES = self._validate_positive_int("FETCH_INTERVAL_MINUTES", 30, 1)

        # Hot-topic sources
        self.ZHIHU_LIMIT = self._validate_positive_int("ZHIHU_LIMIT", 50, 1)
        self.WEIBO_LIMIT = self._validate_positive_int("WEIBO_LIMIT", 50, 1)
        self.XIAOHONGSHU_LIMIT = self._validate_positive_int("XIAOHONGSHU_LIMIT", 30, 1)
        self.XIAOHONGSHU_API_URL = self._optional_url("XIAOHONGSHU_API_URL")
        self.XIAOHONGSHU_API_KEY = environ.get("XIAOHONGSHU_API_KEY")

        # HTTP adapters
        self.SERVER_HOST = environ.get("SERVER_HOST", "0.0.0.0")
        self.SERVER_PORT = self._validate_positive_int("SERVER_PORT", 8080, 1)

        self.USER_AGENTS: List[str] = list(DEFAULT_USER_AGENTS)
        custom_ua = (environ.get("USER_AGENT") or "").strip()
        if custom_ua:
            self.USER_AGENTS.insert(0, custom_ua)

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and a mapping nested under `environment`
        are accepted:

        ```yaml
        XIAOHONGSHU_API_KEY: "your-api-key"
        # or
        environment:
          XIAOHONGSHU_API_KEY: "your-api-key"
        ```
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

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any:
        """Safely read a YAML file with consistent validation.

        Returns parsed YAML, or None when the file is missing, unreadable,
        too large or malformed.
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

    def _load_sources_config(self) -> None:
        """Populate default sources and relay mirrors from sources.yaml.

        Any missing or invalid section falls back to the built-in defaults.
        """
        self.DEFAULT_SOURCES: List[Dict[str, Any]] = [dict(s) for s in DEFAULT_SOURCES]
        self.CORS_PROXIES: List[Dict[str, str]] = [dict(p) for p in DEFAULT_CORS_PROXIES]
        self.RSSHUB_MIRRORS: List[Dict[str, str]] = [dict(m) for m in DEFAULT_RSSHUB_MIRRORS]
        self.RSSHUB_HOSTS: List[str] = []

        sources_path = self.SOURCES_CONFIG_PATH
        config_data = self._safe_read_yaml(sources_path, 1024 * 1024, 'sources')
        if not isinstance(config_data, dict):
            return

        sources_section = config_data.get('sources')
        if isinstance(sources_section, list):
            loaded = []
            for entry in sources_section:
                if not isinstance(entry, dict) or not entry.get('name') or not entry.get('type'):
                    logger.warning(f"Skipping invalid source entry in {sources_path}: {entry}")
                    continue
                if entry['type'] == 'rss' and not entry.get('url'):
                    logger.warning(f"Skipping rss source '{entry['name']}' without url")
                    continue
                loaded.append(dict(entry))
            self.DEFAULT_SOURCES = loaded
            logger.info(f"Loaded {len(loaded)} default sources from {sources_path}")

        proxies_section = config_data.get('cors_proxies')
        if isinstance(proxies_section, list):
            proxies = [p for p in proxies_section if isinstance(p, dict) and p.get('prefix')]
            if proxies:
                self.CORS_PROXIES = [
                    {"name": str(p.get('name') or f"mirror{i + 1}"), "prefix": str(p['prefix'])}
                    for i, p in enumerate(proxies)
                ]

        rsshub_section = config_data.get('rsshub')
        if isinstance(rsshub_section, dict):
            mirrors = rsshub_section.get('mirrors')
            if isinstance(mirrors, list):
                valid = [m for m in mirrors if isinstance(m, dict) and '{url}' in str(m.get('template', ''))]
                if valid:
                    self.RSSHUB_MIRRORS = [
                        {"name": str(m.get('name') or f"mirror{i + 1}"), "template": str(m['template'])}
                        for i, m in enumerate(valid)
                    ]
                elif mirrors:
                    logger.warning(f"No usable rsshub.mirrors in {sources_path}; keeping defaults")
            hosts = rsshub_section.get('hosts')
            if isinstance(hosts, list):
                self.RSSHUB_HOSTS = [str(h).strip().lower() for h in hosts if str(h).strip()]

    def reload_sources_config(self):
        """Reload sources.yaml."""
        logger.info("Reloading sources configuration")
        self._load_sources_config()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "fetch_interval_minutes": self.FETCH_INTERVAL_MINUTES,
            "fetch_max_retries": self.FETCH_MAX_RETRIES,
            "http_timeout": self.HTTP_TIMEOUT,
            "rsshub_timeout": self.RSSHUB_TIMEOUT,
            "proxy_base_url": self.PROXY_BASE_URL,
            "cors_proxy_count": len(self.CORS_PROXIES),
            "rsshub_mirror_count": len(self.RSSHUB_MIRRORS),
            "default_source_count": len(self.DEFAULT_SOURCES),
            "discovery_batch_size": self.DISCOVERY_BATCH_SIZE,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "has_xiaohongshu_api": bool(self.XIAOHONGSHU_API_URL),
        }


# Global configuration instance
config = Config()
