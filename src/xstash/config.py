"""Configuration loading and saving.

Config file location: ~/.config/xstash/config.toml

Schema:
    [auth]
    access_token = "..."
    user_id = "..."            # optional, looked up via /2/users/me if absent

    [sync]
    default_initial_max_new = 200
    default_incremental_max_new = "all"    # or a positive integer
    quote_resolve_max_depth = 3            # 1..3
    known_boundary_threshold = 5
    incremental_bookmarks_page_size = 20   # optional, 5..100

    [cost]
    unit_price_post_read_usd = 0.005
    unit_price_user_read_usd = 0.01

    [storage]
    data_dir = "~/.local/share/xstash"

XSTASH_ACCESS_TOKEN in the environment overrides auth.access_token.
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import tomli_w

from .billing import UnitPrices
from .boundary import parse_max_new
from .exceptions import ConfigError

CONFIG_DIR = Path.home() / ".config" / "xstash"
CONFIG_FILE = CONFIG_DIR / "config.toml"
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "xstash"

ACCESS_TOKEN_ENV = "XSTASH_ACCESS_TOKEN"

MIN_QUOTE_DEPTH = 1
MAX_QUOTE_DEPTH = 3


@dataclass(frozen=True)
class AuthConfig:
    access_token: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class SyncConfig:
    default_initial_max_new: int = 200
    default_incremental_max_new: int | None = None  # None = all
    quote_resolve_max_depth: int = 3
    known_boundary_threshold: int = 5
    incremental_bookmarks_page_size: int | None = None

    @property
    def quote_depth(self) -> int:
        return max(MIN_QUOTE_DEPTH, min(MAX_QUOTE_DEPTH, self.quote_resolve_max_depth))


@dataclass(frozen=True)
class CostConfig:
    unit_price_post_read_usd: float = 0.005
    unit_price_user_read_usd: float = 0.01

    @property
    def unit_prices(self) -> UnitPrices:
        return UnitPrices(
            post_read_usd=self.unit_price_post_read_usd,
            user_read_usd=self.unit_price_user_read_usd,
        )


@dataclass(frozen=True)
class AppConfig:
    auth: AuthConfig = field(default_factory=AuthConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    cost: CostConfig = field(default_factory=CostConfig)
    data_dir: Path = DEFAULT_DATA_DIR

    @property
    def db_path(self) -> Path:
        return self.data_dir / "xstash.db"

    @property
    def media_root(self) -> Path:
        return self.data_dir / "media"


def _int(
    section: Mapping[str, Any], key: str, default: int | None, *, minimum: int | None = None
) -> int | None:
    value = section.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Config value {key} must be an integer: {value!r}")
    if minimum is not None and value < minimum:
        raise ConfigError(f"Config value {key} must be an integer >= {minimum}: {value!r}")
    return value


def _price(section: Mapping[str, Any], key: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigError(f"Config value {key} must be a non-negative number: {value!r}")
    return float(value)


def _parse_sync(data: Mapping[str, Any]) -> SyncConfig:
    defaults = SyncConfig()
    incremental_raw = data.get("default_incremental_max_new", "all")
    try:
        incremental = parse_max_new(incremental_raw)
    except ConfigError:
        raise ConfigError(
            "Config value default_incremental_max_new must be a positive "
            f"integer or 'all': {incremental_raw!r}"
        ) from None
    # Non-positive page sizes mean "unset"; depth is clamped by SyncConfig.quote_depth.
    page_size = _int(data, "incremental_bookmarks_page_size", None)
    if page_size is not None and page_size <= 0:
        page_size = None
    return SyncConfig(
        default_initial_max_new=_int(
            data, "default_initial_max_new", defaults.default_initial_max_new, minimum=1
        ),
        default_incremental_max_new=incremental,
        quote_resolve_max_depth=_int(
            data, "quote_resolve_max_depth", defaults.quote_resolve_max_depth
        ),
        known_boundary_threshold=_int(
            data, "known_boundary_threshold", defaults.known_boundary_threshold, minimum=0
        ),
        incremental_bookmarks_page_size=page_size,
    )


def load_config(
    config_path: Path = CONFIG_FILE, env: Mapping[str, str] | None = None
) -> AppConfig:
    """Load config from TOML, falling back to defaults when the file is absent."""
    env = os.environ if env is None else env
    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file {config_path}: {e}") from e

    auth_data = data.get("auth", {})
    cost_data = data.get("cost", {})
    storage_data = data.get("storage", {})

    access_token = env.get(ACCESS_TOKEN_ENV) or auth_data.get("access_token") or None
    data_dir = storage_data.get("data_dir")

    return AppConfig(
        auth=AuthConfig(
            access_token=access_token,
            user_id=auth_data.get("user_id") or None,
        ),
        sync=_parse_sync(data.get("sync", {})),
        cost=CostConfig(
            unit_price_post_read_usd=_price(
                cost_data, "unit_price_post_read_usd", CostConfig.unit_price_post_read_usd
            ),
            unit_price_user_read_usd=_price(
                cost_data, "unit_price_user_read_usd", CostConfig.unit_price_user_read_usd
            ),
        ),
        data_dir=Path(data_dir).expanduser() if data_dir else DEFAULT_DATA_DIR,
    )


def save_config(config: AppConfig, config_path: Path = CONFIG_FILE) -> None:
    """Write config to TOML file with restricted permissions."""
    config_path.parent.mkdir(parents=True, exist_ok=True)

    auth: dict[str, Any] = {}
    if config.auth.access_token:
        auth["access_token"] = config.auth.access_token
    if config.auth.user_id:
        auth["user_id"] = config.auth.user_id

    sync: dict[str, Any] = {
        "default_initial_max_new": config.sync.default_initial_max_new,
        "default_incremental_max_new": (
            "all"
            if config.sync.default_incremental_max_new is None
            else config.sync.default_incremental_max_new
        ),
        "quote_resolve_max_depth": config.sync.quote_resolve_max_depth,
        "known_boundary_threshold": config.sync.known_boundary_threshold,
    }
    if config.sync.incremental_bookmarks_page_size is not None:
        sync["incremental_bookmarks_page_size"] = config.sync.incremental_bookmarks_page_size

    data = {
        "auth": auth,
        "sync": sync,
        "cost": {
            "unit_price_post_read_usd": config.cost.unit_price_post_read_usd,
            "unit_price_user_read_usd": config.cost.unit_price_user_read_usd,
        },
        "storage": {"data_dir": str(config.data_dir)},
    }

    with open(config_path, "wb") as f:
        tomli_w.dump(data, f)

    # Restrict permissions: file contains the access token
    os.chmod(config_path, 0o600)


def config_exists(config_path: Path = CONFIG_FILE) -> bool:
    """Check if config file exists."""
    return config_path.exists()


def mask_secret(value: str | None) -> str:
    if not value:
        return "(unset)"
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}...{value[-4:]}"
