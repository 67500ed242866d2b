# config.py
# Description: Configuration loading for the archiver (INI file + environment overrides).
#
# Imports
import configparser
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
#
########################################################################################################################
#
# Functions:

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "Config_Files" / "config.txt"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/58.0.3029.110 Safari/537.36"
)

DEFAULT_PATH_TEMPLATES: Dict[str, str] = {
    "illust_page": "pixiv/{entity_id}_p{slot}.{ext}",
    "fanbox_image": "fanbox/{entity_id}/image_{slot}.{ext}",
    "fanbox_file": "fanbox/{entity_id}/file_{slot}.{ext}",
}


class ConfigurationError(ValueError):
    """Raised for invalid or missing configuration values."""
    pass


class DatabasePathFormat(str, Enum):
    """How an artifact's on-disk location is written into the store."""
    INLINE = "inline"      # relative to the base directory, survives moving the base directory
    AS_IS = "as_is"        # base directory joined with the relative path, as configured
    ABSOLUTE = "absolute"  # fully resolved path


@dataclass(frozen=True)
class PixivSession:
    uid: int
    cookie: str

    @classmethod
    def from_cookie(cls, cookie: str) -> "PixivSession":
        """The PHPSESSID cookie is ``<uid>_<secret>``; the uid is needed for the bookmarks endpoint."""
        cookie = (cookie or "").strip()
        uid_seg = cookie.split("_", 1)[0]
        if not cookie or not uid_seg:
            raise ConfigurationError("Invalid pixiv cookie")
        try:
            uid = int(uid_seg)
        except ValueError as e:
            raise ConfigurationError("Invalid uid in pixiv cookie") from e
        return cls(uid=uid, cookie=cookie)


@dataclass(frozen=True)
class FanboxSession:
    cookie: str


@dataclass
class ArchiverConfig:
    database_path: str = "illust_archive.sqlite"
    base_dir: Path = Path("archive")
    path_format: DatabasePathFormat = DatabasePathFormat.INLINE
    path_templates: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PATH_TEMPLATES))
    reverify_after_days: int = 30

    request_timeout: float = 30.0
    request_delay_ms: int = 2500
    request_jitter_ms: int = 500
    max_retries: int = 3
    retry_backoff_seconds: float = 5.0
    user_agent: str = DEFAULT_USER_AGENT

    download_workers: int = 1
    show_progress: bool = True

    pixiv_cookie: Optional[str] = None
    fanbox_cookie: Optional[str] = None

    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def pixiv_session(self) -> Optional[PixivSession]:
        if not self.pixiv_cookie:
            return None
        return PixivSession.from_cookie(self.pixiv_cookie)

    @property
    def fanbox_session(self) -> Optional[FanboxSession]:
        if not self.fanbox_cookie:
            return None
        return FanboxSession(cookie=self.fanbox_cookie.strip())

    def with_overrides(self, **overrides: Any) -> "ArchiverConfig":
        """Return a copy with every non-None override applied (CLI flags take precedence)."""
        applied = {k: v for k, v in overrides.items() if v is not None}
        if "base_dir" in applied:
            applied["base_dir"] = Path(applied["base_dir"])
        if "path_format" in applied:
            applied["path_format"] = DatabasePathFormat(applied["path_format"])
        return replace(self, **applied)

    @classmethod
    def from_parser(cls, parser: configparser.ConfigParser) -> "ArchiverConfig":
        defaults = cls()
        try:
            storage = parser["Storage"] if parser.has_section("Storage") else {}
            network = parser["Network"] if parser.has_section("Network") else {}
            download = parser["Download"] if parser.has_section("Download") else {}
            auth = parser["Auth"] if parser.has_section("Auth") else {}
            logging_section = parser["Logging"] if parser.has_section("Logging") else {}

            templates = dict(DEFAULT_PATH_TEMPLATES)
            if parser.has_section("Paths"):
                for source in templates:
                    if parser.has_option("Paths", source):
                        templates[source] = parser.get("Paths", source)

            return cls(
                database_path=storage.get("database_path", defaults.database_path),
                base_dir=Path(storage.get("base_dir", str(defaults.base_dir))),
                path_format=DatabasePathFormat(storage.get("path_format", defaults.path_format.value)),
                path_templates=templates,
                reverify_after_days=int(download.get("reverify_after_days", defaults.reverify_after_days)),
                request_timeout=float(network.get("request_timeout", defaults.request_timeout)),
                request_delay_ms=int(network.get("request_delay_ms", defaults.request_delay_ms)),
                request_jitter_ms=int(network.get("request_jitter_ms", defaults.request_jitter_ms)),
                max_retries=int(network.get("max_retries", defaults.max_retries)),
                retry_backoff_seconds=float(network.get("retry_backoff_seconds", defaults.retry_backoff_seconds)),
                user_agent=network.get("user_agent", defaults.user_agent),
                download_workers=int(download.get("workers", defaults.download_workers)),
                show_progress=str(download.get("show_progress", "true")).strip().lower() in ("1", "true", "yes", "on"),
                pixiv_cookie=auth.get("pixiv_cookie") or None,
                fanbox_cookie=auth.get("fanbox_cookie") or None,
                log_level=logging_section.get("level", defaults.log_level),
                log_file=logging_section.get("file") or None,
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e


def _sqlite_path_from_url(database_url: Optional[str]) -> Optional[str]:
    if not database_url:
        return None
    if database_url.startswith("sqlite://"):
        # sqlite:///abs/path.db -> /abs/path.db, sqlite://rel.db -> rel.db
        return database_url[len("sqlite://"):]
    if database_url.startswith("sqlite:"):
        return database_url[len("sqlite:"):]
    logger.warning("Ignoring DATABASE_URL: only sqlite URLs are supported")
    return None


def _apply_env_overrides(config: ArchiverConfig) -> ArchiverConfig:
    env_map = {
        "database_path": os.getenv("ILLUST_ARCHIVER_DB") or _sqlite_path_from_url(os.getenv("DATABASE_URL")),
        "base_dir": os.getenv("ILLUST_ARCHIVER_BASE_DIR"),
        "pixiv_cookie": os.getenv("PIXIV_COOKIE"),
        "fanbox_cookie": os.getenv("FANBOX_COOKIE"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    applied = [k for k, v in env_map.items() if v]
    if applied:
        logger.debug(f"Applying environment overrides for: {', '.join(applied)}")
    return config.with_overrides(**env_map)


def load_config(config_path: Optional[str] = None) -> ArchiverConfig:
    """
    Load the archiver configuration.

    Resolution order: built-in defaults, then the INI file (``config_path``, ``ILLUST_ARCHIVER_CONFIG``,
    or the bundled ``Config_Files/config.txt``), then environment variables. CLI flags are applied by the
    caller through ``ArchiverConfig.with_overrides``.
    """
    path = Path(config_path or os.getenv("ILLUST_ARCHIVER_CONFIG") or DEFAULT_CONFIG_PATH)
    parser = configparser.ConfigParser(interpolation=None)
    if path.exists():
        logger.info(f"Loading configuration from {path}")
        try:
            parser.read(path, encoding="utf-8")
        except configparser.Error as e:
            raise ConfigurationError(f"Could not parse config file {path}: {e}") from e
    elif config_path:
        raise ConfigurationError(f"Config file not found: {path}")
    else:
        logger.debug(f"No config file at {path}; using defaults")

    config = ArchiverConfig.from_parser(parser)
    return _apply_env_overrides(config)

#
# End of config.py
########################################################################################################################
