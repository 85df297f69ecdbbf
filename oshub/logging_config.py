"""Logging setup for the hub process.

oshub logs under the ``oshub`` logger tree, one child per component (see
``HUB_LOGGERS``). ``[logging] level`` applies to that tree, ``[logging.levels]``
overrides single components, ``rns_level`` applies to Reticulum and anything
else is only shown from WARNING up.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig
from .constants import HUB_LOGGERS

HUB_LOGGER = "oshub"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_level(value: Any, default: int) -> int:
    """Map a level name or number to a logging level, falling back to ``default``."""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    if text.isdigit():
        return int(text)
    return logging.getLevelNamesMapping().get(text, default)


def _log_file(*candidates: Any) -> Path | None:
    for value in candidates:
        if value is not None and str(value).strip():
            return Path(os.path.expanduser(str(value)))
    return None


def _build_handlers(cfg: HubRuntimeConfig, log_file: Path | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        try:
            os.chmod(log_file, 0o600)
        except OSError:
            pass

    datefmt = cfg.log_datefmt if cfg.log_datefmt else None
    formatter = logging.Formatter(
        fmt=str(cfg.log_format or "").strip() or DEFAULT_FORMAT, datefmt=datefmt
    )
    for h in handlers:
        h.setFormatter(formatter)
    return handlers


def configure_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> dict[str, int]:
    """Install handlers and set levels for the oshub logger tree.

    Handlers go on the root logger and replace any already there, so repeated
    calls do not duplicate output. Returns the level set for each oshub
    logger that was configured.
    """
    hub_level = parse_level(override_level or cfg.log_level, logging.INFO)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in _build_handlers(cfg, _log_file(override_file, cfg.log_file)):
        root.addHandler(h)
    root.setLevel(logging.WARNING)

    logging.getLogger("RNS").setLevel(parse_level(cfg.log_rns_level, logging.WARNING))

    levels = {HUB_LOGGER: hub_level}
    # Components not named in [logging.levels] inherit from "oshub".
    for component in HUB_LOGGERS:
        logging.getLogger(f"{HUB_LOGGER}.{component}").setLevel(logging.NOTSET)
    for component, value in cfg.log_levels:
        levels[f"{HUB_LOGGER}.{component}"] = parse_level(value, hub_level)
    for name, level in levels.items():
        logging.getLogger(name).setLevel(level)

    logging.captureWarnings(True)
    return levels
