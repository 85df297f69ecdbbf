from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import HubRuntimeConfig, apply_config_data, load_toml, validate_config
from .logging_config import configure_logging
from .paths import default_paths, ensure_private_dir
from .service import HubService


def _write_default_config(config_path: str, identity_path: str, store_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# oshub configuration (TOML)
#
# This file was created on first run.
# Edit it, then start oshub again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where oshub stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Session store (TOML, rewritten by oshub after every change).
# Leave empty to keep sessions in memory only.
store_path = {store_path!r}

# Destination name to host the hub on.
dest_name = "oshub.signal"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

# Name carried in announce app data.
hub_name = "oshub"

# Identifiers handed out on CREATE (characters from A-Z a-z 0-9 _ -).
public_id_length = 6
deletion_secret_length = 10
max_id_attempts = 5

# Maximum number of items per share session (0 disables the limit).
max_items = 256

# Sessions older than this are deleted and their peers notified (0 disables).
session_ttl_s = 86400.0
session_prune_interval_s = 3600.0

# Per-link message rate limit.
rate_limit_msgs_per_minute = 240

# Hub-initiated liveness checks (0 disables).
ping_interval_s = 0.0
ping_timeout_s = 0.0

# Envelopes larger than the link MTU (SDP offers, long item lists) travel as
# RNS.Resource transfers.
enable_resource_transfer = true
max_resource_bytes = 262144

# Log a statistics summary every N seconds (0 disables).
stats_interval_s = 0.0

[logging]

# Log level for oshub itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""

# Per-component overrides for the oshub.<name> loggers: groups, hub,
# lifecycle, reconciler, relay, resources, router, store.
[logging.levels]
# relay = "DEBUG"
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(config_path: str, identity_path: str, store_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path, store_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except OSError:
            pass
        created_any = True

    if store_path and not os.path.exists(store_path):
        storage_dir = os.path.dirname(store_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        content = """# oshub session store (TOML)
#
# Maintained by oshub; rewritten after every change while the hub runs.
# Each share session is a table under [sessions] keyed by its public id.

[sessions]
"""
        with open(store_path, "w", encoding="utf-8") as f:
            f.write(content)
        try:
            os.chmod(store_path, 0o600)
        except OSError:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    defaults = default_paths()
    p = argparse.ArgumentParser(
        prog="oshub", description="Run a file-share signaling hub over Reticulum"
    )

    p.add_argument(
        "--config",
        default=str(defaults.config),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(defaults.identity),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--store",
        default=str(defaults.store),
        help="Path to the session store TOML (created on first run)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: oshub.signal)"
    )

    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )
    p.add_argument("--hub-name", default=None, help="Hub name in announce data")

    p.add_argument(
        "--session-ttl",
        type=float,
        default=None,
        help="Delete sessions older than this many seconds (0 disables)",
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-link message rate limit",
    )

    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Hub-initiated PING interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-timeout",
        type=float,
        default=None,
        help="Close link if PONG not received within this many seconds (0 disables)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> HubRuntimeConfig:
    """Defaults, then the config file, then command line overrides."""
    config_path = str(args.config)

    cfg = HubRuntimeConfig(
        config_path=config_path,
        configdir=args.configdir,
        identity_path=str(args.identity),
        store_path=str(args.store) if args.store else None,
    )

    if config_path and os.path.exists(config_path):
        cfg = apply_config_data(cfg, load_toml(config_path))

    # --configdir on the command line wins over the file.
    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)

    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)

    if args.session_ttl is not None:
        cfg = replace(cfg, session_ttl_s=float(args.session_ttl))
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute)
        )

    if args.ping_interval is not None:
        cfg = replace(cfg, ping_interval_s=float(args.ping_interval))
    if args.ping_timeout is not None:
        cfg = replace(cfg, ping_timeout_s=float(args.ping_timeout))

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return validate_config(cfg)


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    store_path = str(args.store)

    if _ensure_first_run_files(config_path, identity_path, store_path):
        print(
            "Created default oshub files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            f"- Sessions: {store_path}\n"
            "\nThen re-run oshub.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    try:
        cfg = build_config(args)
    except ValueError as e:
        print(f"oshub: invalid configuration: {e}", file=sys.stderr)
        raise SystemExit(2) from e

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
