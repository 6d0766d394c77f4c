from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import HubRuntimeConfig, load_config
from .logging_config import configure_logging
from .paths import default_config_path, default_identity_path, ensure_private_dir
from .service import HubService


def _write_default_config(config_path: str, identity_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    storage_dir = os.path.dirname(identity_path)
    if storage_dir:
        ensure_private_dir(Path(storage_dir))

    d = HubRuntimeConfig()

    content = f"""# rmatchd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start rmatchd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where rmatchd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Destination name clients open links to.
dest_name = {d.dest_name!r}

# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

hub_name = {d.hub_name!r}

# Per-link inbound message limit (signaling is bursty while ICE gathers).
rate_limit_msgs_per_minute = {d.rate_limit_msgs_per_minute}

# Hub-initiated liveness checks (0 disables). Links that miss a PONG for
# ping_timeout_s are closed, which takes their identity offline.
ping_interval_s = 0.0
ping_timeout_s = 0.0

[http]
enabled = true
host = {d.http_host!r}
port = {d.http_port}
cors_origins = ["*"]

[embedding]
# Hugging Face feature-extraction endpoint. api_key may be left empty and
# supplied through the HUGGINGFACE_API_KEY environment variable instead.
url = {d.embedding_url!r}
api_key = ""
dim = {d.embedding_dim}
timeout_s = {d.embedding_timeout_s}

[retry]
# Applies to embedding and vector index calls.
max_attempts = {d.retry_max_attempts}
backoff_s = {d.retry_backoff_s}
max_backoff_s = {d.retry_max_backoff_s}
budget_s = {d.retry_budget_s}

[index]
# Chroma server holding interest vectors.
host = {d.index_host!r}
port = {d.index_port}
ssl = false
collection = {d.index_collection!r}

[match]
# Neighbors fetched per query before offline users are filtered out.
top_k = {d.match_top_k}
# Cap on returned matches (0 returns every online candidate).
max_results = {d.match_max_results}

[logging]

# Log level for rmatchd itself.
level = "INFO"

# Log levels for Reticulum and for the HTTP stack (httpx, uvicorn).
rns_level = "WARNING"
http_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(config_path: str, identity_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except Exception:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="rmatchd", description="Run a matchmaking and WebRTC signaling hub"
    )

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")

    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: rmatch.hub)"
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

    p.add_argument("--http-host", default=None, help="HTTP API bind address")
    p.add_argument("--http-port", type=int, default=None, help="HTTP API port")
    p.add_argument("--no-http", action="store_true", help="Do not start the HTTP API")

    p.add_argument("--index-host", default=None, help="Vector index (Chroma) host")
    p.add_argument("--index-port", type=int, default=None, help="Vector index (Chroma) port")
    p.add_argument(
        "--top-k",
        type=int,
        default=None,
        help="Neighbors fetched per match query before presence filtering",
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
    cfg = HubRuntimeConfig(configdir=args.configdir, identity_path=str(args.identity))
    if args.config and os.path.exists(args.config):
        cfg = load_config(str(args.config), cfg)
        if args.configdir is not None:
            cfg = replace(cfg, configdir=args.configdir)

    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)

    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))

    if args.http_host is not None:
        cfg = replace(cfg, http_host=args.http_host)
    if args.http_port is not None:
        cfg = replace(cfg, http_port=int(args.http_port))
    if args.no_http:
        cfg = replace(cfg, http_enabled=False)

    if args.index_host is not None:
        cfg = replace(cfg, index_host=args.index_host)
    if args.index_port is not None:
        cfg = replace(cfg, index_port=int(args.index_port))
    if args.top_k is not None:
        cfg = replace(cfg, match_top_k=int(args.top_k))

    if args.ping_interval is not None:
        cfg = replace(cfg, ping_interval_s=float(args.ping_interval))
    if args.ping_timeout is not None:
        cfg = replace(cfg, ping_timeout_s=float(args.ping_timeout))

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)

    if _ensure_first_run_files(config_path, identity_path):
        print(
            "Created default rmatchd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run rmatchd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
