import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/config.json"

DEFAULT_SELECTORS = [
    'a[href*="Pages/Detail.aspx"]',
    'a[href*="topic"]',
    ".news-item a",
    ".topic-item a",
    'li a[href*="Detail.aspx"]',
    'div a[href*="Detail.aspx"]',
]


class ConfigError(Exception):
    pass


@dataclass
class CrawlerConfig:
    target_url: str
    timeout_seconds: float = 60.0
    max_retries: int = 3
    user_agents: List[str] = field(default_factory=list)
    cache_dir: str = "data"
    cache_max_age_days: int = 30
    selectors: List[str] = field(default_factory=lambda: list(DEFAULT_SELECTORS))
    min_title_length: int = 5
    min_content_length: int = 1000
    use_resolved_ip: bool = True
    dns_timeout_seconds: float = 5.0
    dns_cache_ttl_seconds: float = 300.0
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0


@dataclass
class DeploymentNotificationConfig:
    enabled: bool = False
    dev_email: str = ""


@dataclass
class EmailConfig:
    enabled: bool = False
    smtp_server: str = ""
    smtp_port: int = 587
    username: str = ""
    password: str = ""
    from_email: str = ""
    to_emails: List[str] = field(default_factory=list)
    deployment_notification: DeploymentNotificationConfig = field(default_factory=DeploymentNotificationConfig)
    timeout_seconds: float = 30.0


@dataclass
class ScheduleConfig:
    enabled: bool = True
    interval_hours: float = 24.0
    start_immediately: bool = True


@dataclass
class ServerConfig:
    health_check_port: int = 8080
    health_check_host: str = "0.0.0.0"
    pid_file: str = "data/daemon.pid"


@dataclass
class AppConfig:
    crawler: CrawlerConfig
    email: EmailConfig = field(default_factory=EmailConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    timezone: str = "Asia/Taipei"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


def _env_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


# env var -> (config path, converter)
ENV_OVERRIDES = {
    "TARGET_URL": ("crawler.target_url", str),
    "CACHE_DIR": ("storage.cache_dir", str),
    "EMAIL_ENABLED": ("notifications.email.enabled", _env_bool),
    "EMAIL_SMTP_SERVER": ("notifications.email.smtp_server", str),
    "EMAIL_SMTP_PORT": ("notifications.email.smtp_port", int),
    "EMAIL_USERNAME": ("notifications.email.username", str),
    "EMAIL_PASSWORD": ("notifications.email.password", str),
    "EMAIL_FROM_EMAIL": ("notifications.email.from_email", str),
    "EMAIL_TO_EMAILS": ("notifications.email.to_emails", _env_list),
    "DEPLOYMENT_NOTIFICATION_ENABLED": ("notifications.email.deployment_notification.enabled", _env_bool),
    "DEPLOYMENT_NOTIFICATION_DEV_EMAIL": ("notifications.email.deployment_notification.dev_email", str),
    "SCHEDULER_ENABLED": ("scheduler.enabled", _env_bool),
    "SCHEDULER_START_IMMEDIATELY": ("scheduler.start_immediately", _env_bool),
    "SCHEDULER_INTERVAL_HOURS": ("scheduler.interval_hours", float),
    "PORT": ("server.health_check_port", int),
    "HOST": ("server.health_check_host", str),
}


def _set_nested(data: Dict[str, Any], key_path: str, value: Any):
    keys = key_path.split(".")
    current = data
    for key in keys[:-1]:
        current = current.setdefault(key, {})
    current[keys[-1]] = value


def apply_env_overrides(raw: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    for env_key, (key_path, convert) in ENV_OVERRIDES.items():
        value = environ.get(env_key)
        if not value:
            continue
        try:
            _set_nested(raw, key_path, convert(value))
        except ValueError as e:
            raise ConfigError(f"Invalid value for {env_key}: {value!r} ({e})") from e
    return raw


def _required(section: Dict[str, Any], key: str, path: str) -> Any:
    if key not in section:
        raise ConfigError(
            f"Required configuration '{path}' is missing. Please set this value in config.json or as environment variable"
        )
    value = section[key]
    if value is None or value == "" or value == []:
        raise ConfigError(f"Required configuration '{path}' cannot be empty")
    return value


def parse_config(raw: Dict[str, Any]) -> AppConfig:
    """Build typed config from the raw (already env-overridden) dict."""
    crawler_raw = raw.get("crawler") or {}
    storage_raw = raw.get("storage") or {}
    email_raw = (raw.get("notifications") or {}).get("email") or {}
    deploy_raw = email_raw.get("deployment_notification") or {}
    schedule_raw = raw.get("scheduler") or {}
    server_raw = raw.get("server") or {}

    try:
        crawler = CrawlerConfig(
            target_url=_required(crawler_raw, "target_url", "crawler.target_url"),
            timeout_seconds=float(crawler_raw.get("timeout_seconds", 60)),
            max_retries=int(crawler_raw.get("max_retries", 3)),
            user_agents=list(crawler_raw.get("user_agents") or []),
            cache_dir=storage_raw.get("cache_dir", "data"),
            cache_max_age_days=int(storage_raw.get("max_age_days", 30)),
            selectors=list(crawler_raw.get("selectors") or DEFAULT_SELECTORS),
            min_title_length=int(crawler_raw.get("min_title_length", 5)),
            min_content_length=int(crawler_raw.get("min_content_length", 1000)),
            use_resolved_ip=bool(crawler_raw.get("use_resolved_ip", True)),
            dns_timeout_seconds=float(crawler_raw.get("dns_timeout_seconds", 5)),
            dns_cache_ttl_seconds=float(crawler_raw.get("dns_cache_ttl_seconds", 300)),
            backoff_base_seconds=float(crawler_raw.get("backoff_base_seconds", 1)),
            backoff_max_seconds=float(crawler_raw.get("backoff_max_seconds", 30)),
        )
        if crawler.max_retries < 1:
            raise ConfigError("crawler.max_retries must be at least 1")

        email = EmailConfig(
            enabled=bool(email_raw.get("enabled", False)),
            smtp_server=email_raw.get("smtp_server", ""),
            smtp_port=int(email_raw.get("smtp_port", 587)),
            username=email_raw.get("username", ""),
            password=email_raw.get("password", ""),
            from_email=email_raw.get("from_email", ""),
            to_emails=list(email_raw.get("to_emails") or []),
            deployment_notification=DeploymentNotificationConfig(
                enabled=bool(deploy_raw.get("enabled", False)),
                dev_email=deploy_raw.get("dev_email", ""),
            ),
            timeout_seconds=float(email_raw.get("timeout_seconds", 30)),
        )
        if email.enabled:
            for key in ("smtp_server", "from_email", "to_emails"):
                _required(email_raw, key, f"notifications.email.{key}")
        if email.deployment_notification.enabled:
            _required(deploy_raw, "dev_email", "notifications.email.deployment_notification.dev_email")

        schedule = ScheduleConfig(
            enabled=bool(schedule_raw.get("enabled", True)),
            interval_hours=float(schedule_raw.get("interval_hours", 24)),
            start_immediately=bool(schedule_raw.get("start_immediately", True)),
        )
        if schedule.interval_hours <= 0:
            raise ConfigError("scheduler.interval_hours must be positive")

        server = ServerConfig(
            health_check_port=int(server_raw.get("health_check_port", 8080)),
            health_check_host=server_raw.get("health_check_host", "0.0.0.0"),
            pid_file=server_raw.get("pid_file", "data/daemon.pid"),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e

    return AppConfig(
        crawler=crawler,
        email=email,
        schedule=schedule,
        server=server,
        timezone=raw.get("timezone", "Asia/Taipei"),
    )


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> AppConfig:
    """
    Load config.json, then let environment variables (and .env) override it.
    """
    load_dotenv()
    path = Path(config_path).resolve()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in configuration file {path}: {e}") from e

    config = parse_config(apply_env_overrides(raw))
    logger.info(f"Loaded configuration from {path}")
    return config
