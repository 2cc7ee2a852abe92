"""
Config loading for ledgerscan.

Sources (in precedence order, highest first):
  1. Environment variables (LEDGERSCAN_*, then the bare provider names
     ETHERSCAN_API_KEY / BSCSCAN_API_KEY / ALCHEMY_API_KEY)
  2. ~/.ledgerscan/config.toml
  3. Built-in defaults

Usage:
    from ledgerscan.config import load_config
    config = load_config()
    print(config.gateway.cache_ttl_seconds)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import toml

from ledgerscan.exceptions import ConfigInvalidError

# Default config directory and file
DEFAULT_CONFIG_DIR = Path.home() / ".ledgerscan"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.toml"

# Keys shorter than this are treated as absent.
MIN_CREDENTIAL_LENGTH = 11

# Environment variable → config key mapping
# Format: (env_var_name, dotted_config_path, type_converter)
_ENV_OVERRIDES: list[tuple[str, str, type]] = [
    ("LEDGERSCAN_ETHERSCAN_API_KEY", "api.etherscan_api_key", str),
    ("LEDGERSCAN_BSCSCAN_API_KEY", "api.bscscan_api_key", str),
    ("LEDGERSCAN_ALCHEMY_API_KEY", "api.alchemy_api_key", str),
    ("LEDGERSCAN_CACHE_TTL_SECONDS", "gateway.cache_ttl_seconds", float),
    ("LEDGERSCAN_MAX_RETRIES", "gateway.max_retries", int),
    ("LEDGERSCAN_PAGE_PAUSE", "gateway.page_pause", float),
    ("LEDGERSCAN_SOURCE_PAUSE", "gateway.source_pause", float),
    ("LEDGERSCAN_TIMEOUT", "gateway.timeout", float),
    ("LEDGERSCAN_OUTPUT_FORMAT", "output.default_format", str),
    ("LEDGERSCAN_LOG_LEVEL", "logging.level", str),
]

# Provider-native variable names, honoured when the LEDGERSCAN_* form is unset.
_PROVIDER_ENV: list[tuple[str, str]] = [
    ("ETHERSCAN_API_KEY", "etherscan_api_key"),
    ("BSCSCAN_API_KEY", "bscscan_api_key"),
    ("ALCHEMY_API_KEY", "alchemy_api_key"),
]

VALID_FORMATS = {"json", "jsonl", "table", "csv"}
VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class APIConfig:
    """Per-chain credentials."""

    etherscan_api_key: str = ""
    bscscan_api_key: str = ""
    alchemy_api_key: str = ""

    def credential_for(self, attribute: str) -> str:
        """
        Return the credential stored under `attribute`, or "" if it fails
        the minimum-length check.

        BSC is served by the Etherscan multi-chain endpoint, so the Etherscan
        key stands in when no dedicated BscScan key is set.
        """
        value = getattr(self, attribute, "") or ""
        if attribute == "bscscan_api_key" and not has_valid_credential(value):
            value = self.etherscan_api_key
        return value if has_valid_credential(value) else ""


@dataclass
class GatewayConfig:
    """Request gateway: caching, retry and pacing."""

    cache_ttl_seconds: float = 15 * 60
    max_retries: int = 3
    backoff_base: float = 1.0           # 1s, 2s, 4s ...
    backoff_cap: float = 8.0
    timeout: float = 30.0
    page_pause: float = 0.2             # between pages of one source
    source_pause: float = 0.4           # stagger between record kinds
    lookup_pause: float = 0.05          # between secondary gas lookups
    safety_cap: int = 50_000            # max records per source
    calls_per_second: int = 0           # 0 = use the chain's own limit
    degrade_on_rate_limit: bool = True
    extra_rate_limit_phrases: list[str] = field(default_factory=list)


@dataclass
class OutputConfig:
    """Output formatting defaults."""

    default_format: str = "json"        # json | jsonl | table | csv
    color: bool = True


@dataclass
class LoggingConfig:
    level: str = "WARNING"


@dataclass
class LedgerscanConfig:
    """Full configuration object. Passed via Click context to all commands."""

    api: APIConfig = field(default_factory=APIConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def has_valid_credential(value: str | None) -> bool:
    """Minimum-length heuristic applied before any network call."""
    return bool(value) and len(value.strip()) >= MIN_CREDENTIAL_LENGTH


def load_config(path: str | None = None) -> LedgerscanConfig:
    """
    Load configuration from TOML file + environment variable overrides.

    A missing config file is not an error: defaults plus environment apply.

    Raises:
        ConfigInvalidError: Config file exists but is invalid TOML or values.
    """
    config_path = _resolve_config_path(path)

    raw: dict = {}
    if config_path.exists():
        try:
            raw = toml.load(str(config_path))
        except toml.TomlDecodeError as e:
            raise ConfigInvalidError(f"Invalid TOML in {config_path}: {e}") from e

    config = _dict_to_config(raw)
    _apply_env_overrides(config)
    _validate_config(config)

    return config


def save_config(config: LedgerscanConfig, path: str | None = None) -> Path:
    """
    Serialize LedgerscanConfig to TOML and write to disk.

    Returns the path where config was written.
    """
    config_path = _resolve_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    gw = config.gateway
    data = {
        "api": {
            "etherscan_api_key": config.api.etherscan_api_key,
            "bscscan_api_key": config.api.bscscan_api_key,
            "alchemy_api_key": config.api.alchemy_api_key,
        },
        "gateway": {
            "cache_ttl_seconds": gw.cache_ttl_seconds,
            "max_retries": gw.max_retries,
            "backoff_base": gw.backoff_base,
            "backoff_cap": gw.backoff_cap,
            "timeout": gw.timeout,
            "page_pause": gw.page_pause,
            "source_pause": gw.source_pause,
            "lookup_pause": gw.lookup_pause,
            "safety_cap": gw.safety_cap,
            "calls_per_second": gw.calls_per_second,
            "degrade_on_rate_limit": gw.degrade_on_rate_limit,
            "extra_rate_limit_phrases": list(gw.extra_rate_limit_phrases),
        },
        "output": {
            "default_format": config.output.default_format,
            "color": config.output.color,
        },
        "logging": {
            "level": config.logging.level,
        },
    }

    with open(config_path, "w") as f:
        toml.dump(data, f)

    return config_path


def get_default_config_path() -> Path:
    """Return the default config file path."""
    return DEFAULT_CONFIG_PATH


# ──────────────────────────────────────────────────────────────
# Private helpers
# ──────────────────────────────────────────────────────────────


def _resolve_config_path(path: str | None) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get("LEDGERSCAN_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def _dict_to_config(raw: dict) -> LedgerscanConfig:
    """Build LedgerscanConfig from raw TOML dict, applying defaults for missing keys."""
    config = LedgerscanConfig()
    defaults = GatewayConfig()

    api = raw.get("api", {})
    config.api.etherscan_api_key = api.get("etherscan_api_key", "")
    config.api.bscscan_api_key = api.get("bscscan_api_key", "")
    config.api.alchemy_api_key = api.get("alchemy_api_key", "")

    gw = raw.get("gateway", {})
    try:
        config.gateway.cache_ttl_seconds = float(
            gw.get("cache_ttl_seconds", defaults.cache_ttl_seconds)
        )
        config.gateway.max_retries = int(gw.get("max_retries", defaults.max_retries))
        config.gateway.backoff_base = float(gw.get("backoff_base", defaults.backoff_base))
        config.gateway.backoff_cap = float(gw.get("backoff_cap", defaults.backoff_cap))
        config.gateway.timeout = float(gw.get("timeout", defaults.timeout))
        config.gateway.page_pause = float(gw.get("page_pause", defaults.page_pause))
        config.gateway.source_pause = float(gw.get("source_pause", defaults.source_pause))
        config.gateway.lookup_pause = float(gw.get("lookup_pause", defaults.lookup_pause))
        config.gateway.safety_cap = int(gw.get("safety_cap", defaults.safety_cap))
        config.gateway.calls_per_second = int(
            gw.get("calls_per_second", defaults.calls_per_second)
        )
    except (TypeError, ValueError) as e:
        raise ConfigInvalidError(f"Invalid [gateway] value: {e}") from e
    config.gateway.degrade_on_rate_limit = bool(gw.get("degrade_on_rate_limit", True))
    config.gateway.extra_rate_limit_phrases = [
        str(p) for p in gw.get("extra_rate_limit_phrases", [])
    ]

    output = raw.get("output", {})
    config.output.default_format = output.get("default_format", "json")
    config.output.color = bool(output.get("color", True))

    logging_section = raw.get("logging", {})
    config.logging.level = str(logging_section.get("level", "WARNING"))

    return config


def _apply_env_overrides(config: LedgerscanConfig) -> None:
    """Apply environment variable overrides to a loaded config."""
    for env_var, attribute in _PROVIDER_ENV:
        val = os.environ.get(env_var)
        if val and not getattr(config.api, attribute):
            setattr(config.api, attribute, val)

    if os.environ.get("LEDGERSCAN_NO_COLOR"):
        config.output.color = False

    for env_var, dotted_key, converter in _ENV_OVERRIDES:
        val = os.environ.get(env_var)
        if val is None:
            continue
        section, key = dotted_key.split(".", 1)
        section_obj = getattr(config, section)
        try:
            setattr(section_obj, key, converter(val))
        except (ValueError, TypeError) as e:
            raise ConfigInvalidError(
                f"Invalid value for {env_var}={val!r}: {e}"
            ) from e


def _validate_config(config: LedgerscanConfig) -> None:
    """Validate config values. Raises ConfigInvalidError on invalid values."""
    gw = config.gateway
    if gw.cache_ttl_seconds < 0:
        raise ConfigInvalidError(
            f"gateway.cache_ttl_seconds must be non-negative, got {gw.cache_ttl_seconds}"
        )
    if gw.max_retries < 0:
        raise ConfigInvalidError(f"gateway.max_retries must be non-negative, got {gw.max_retries}")
    if gw.safety_cap <= 0:
        raise ConfigInvalidError(f"gateway.safety_cap must be positive, got {gw.safety_cap}")
    if min(gw.page_pause, gw.source_pause, gw.lookup_pause, gw.backoff_base) < 0:
        raise ConfigInvalidError("gateway pauses and backoff must be non-negative")
    if config.output.default_format not in VALID_FORMATS:
        raise ConfigInvalidError(
            f"output.default_format must be one of {VALID_FORMATS}, "
            f"got {config.output.default_format!r}"
        )
    config.logging.level = config.logging.level.upper()
    if config.logging.level not in VALID_LOG_LEVELS:
        raise ConfigInvalidError(
            f"logging.level must be one of {sorted(VALID_LOG_LEVELS)}, "
            f"got {config.logging.level!r}"
        )
