from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace

DEFAULT_EMBEDDING_URL = (
    "https://api-inference.huggingface.co/pipeline/feature-extraction/"
    "sentence-transformers/all-MiniLM-L6-v2"
)


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "rmatch.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "rmatch"
    rate_limit_msgs_per_minute: int = 600
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0
    http_enabled: bool = True
    http_host: str = "0.0.0.0"
    http_port: int = 4000
    http_cors_origins: tuple[str, ...] = ("*",)
    embedding_url: str = DEFAULT_EMBEDDING_URL
    embedding_api_key: str | None = None
    embedding_dim: int = 384
    embedding_timeout_s: float = 30.0
    retry_max_attempts: int = 3
    retry_backoff_s: float = 2.0
    retry_max_backoff_s: float = 10.0
    retry_budget_s: float = 30.0
    index_host: str = "localhost"
    index_port: int = 8000
    index_ssl: bool = False
    index_collection: str = "interests"
    match_top_k: int = 20
    match_max_results: int = 0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_http_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None

    def resolved_embedding_api_key(self) -> str | None:
        if self.embedding_api_key:
            return self.embedding_api_key
        return os.environ.get("HUGGINGFACE_API_KEY") or None


# Tables whose keys map onto "<table>_<key>" fields.
_PREFIXED_TABLES = ("http", "embedding", "retry", "index", "match")

_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "http_level": "log_http_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

_OPTIONAL_STRINGS = ("configdir", "embedding_api_key", "log_file", "log_datefmt")


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    hub = data.get("hub") if isinstance(data, dict) else None
    if isinstance(hub, dict):
        data = {**data, **hub}

    mapped: dict[str, object] = {}
    for table in _PREFIXED_TABLES:
        section = data.get(table)
        if isinstance(section, dict):
            for k, v in section.items():
                mapped[f"{table}_{k}"] = v

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        for k, field_name in _LOGGING_KEYS.items():
            if k in log_table:
                mapped[field_name] = log_table.get(k)
    data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "http_cors_origins" in updates and isinstance(updates["http_cors_origins"], list):
        updates["http_cors_origins"] = tuple(str(x) for x in updates["http_cors_origins"])

    if "announce" in data and "announce_on_start" not in updates:
        try:
            updates["announce_on_start"] = bool(data["announce"])
        except Exception:
            pass
    for key in _OPTIONAL_STRINGS:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(base, **updates) if updates else base


def load_config(path: str, base: HubRuntimeConfig | None = None) -> HubRuntimeConfig:
    cfg = base or HubRuntimeConfig()
    cfg = apply_config_data(cfg, load_toml(path))
    return replace(cfg, config_path=path)
