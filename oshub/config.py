from __future__ import annotations

from dataclasses import asdict, dataclass, replace

from .constants import HUB_LOGGERS


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    store_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "oshub.signal"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "oshub"
    public_id_length: int = 6
    deletion_secret_length: int = 10
    max_id_attempts: int = 5
    max_items: int = 256
    session_ttl_s: float = 24 * 3600
    session_prune_interval_s: float = 3600.0
    rate_limit_msgs_per_minute: int = 240
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0
    max_resource_bytes: int = 256 * 1024  # 256 KiB default
    enable_resource_transfer: bool = True
    stats_interval_s: float = 0.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None
    # (component, level) pairs from [logging.levels], e.g. ("relay", "DEBUG")
    log_levels: tuple[tuple[str, str], ...] = ()


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def logger_component(name: object) -> str:
    """Accept "relay" or "oshub.relay" and return "relay"."""
    text = str(name).strip()
    return text[len("oshub.") :] if text.startswith("oshub.") else text


def apply_config_data(base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    hub = data.get("hub") if isinstance(data, dict) else None
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        if "level" in log_table:
            mapped["log_level"] = log_table.get("level")
        if "rns_level" in log_table:
            mapped["log_rns_level"] = log_table.get("rns_level")
        if "console" in log_table:
            mapped["log_console"] = log_table.get("console")
        if "file" in log_table:
            mapped["log_file"] = log_table.get("file")
        if "format" in log_table:
            mapped["log_format"] = log_table.get("format")
        if "datefmt" in log_table:
            mapped["log_datefmt"] = log_table.get("datefmt")
        levels = log_table.get("levels")
        if isinstance(levels, dict):
            mapped["log_levels"] = tuple(
                sorted((logger_component(k), str(v)) for k, v in levels.items())
            )
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config was read from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "announce" in data and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(data["announce"])
    for optional_key in ("configdir", "store_path", "log_file", "log_datefmt"):
        if optional_key in updates and updates[optional_key] == "":
            updates[optional_key] = None

    return replace(base, **updates) if updates else base


def validate_config(cfg: HubRuntimeConfig) -> HubRuntimeConfig:
    if int(cfg.public_id_length) < 4:
        raise ValueError("public_id_length must be at least 4")
    if int(cfg.deletion_secret_length) < 8:
        raise ValueError("deletion_secret_length must be at least 8")
    if int(cfg.deletion_secret_length) == int(cfg.public_id_length):
        raise ValueError("deletion_secret_length must differ from public_id_length")
    if int(cfg.max_id_attempts) < 1:
        raise ValueError("max_id_attempts must be at least 1")
    if int(cfg.max_items) < 0:
        raise ValueError("max_items must not be negative")
    if int(cfg.rate_limit_msgs_per_minute) < 1:
        raise ValueError("rate_limit_msgs_per_minute must be at least 1")
    if int(cfg.max_resource_bytes) < 0:
        raise ValueError("max_resource_bytes must not be negative")
    for key in (
        "announce_period_s",
        "session_ttl_s",
        "session_prune_interval_s",
        "ping_interval_s",
        "ping_timeout_s",
        "stats_interval_s",
    ):
        if float(getattr(cfg, key)) < 0:
            raise ValueError(f"{key} must not be negative")
    for component, _ in cfg.log_levels:
        if component not in HUB_LOGGERS:
            raise ValueError(f"unknown logger in [logging.levels]: {component!r}")
    return cfg
