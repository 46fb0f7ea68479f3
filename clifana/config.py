"""Configuration loading for clifana.

Loads servers, query templates and dashboard settings from a TOML file merged
over defaults, then applies ``CLIFANA_*`` environment overrides.
Search order: explicit --config path → ./config.toml →
~/.config/clifana/config.toml. Finding none of them is an error: without a
server there is nothing to chart.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

ENV_PREFIX = "CLIFANA_"
ENV_SEPARATOR = "__"
# Verbosity override, handled by clifana.logsink rather than the config schema
ENV_LOG = "CLIFANA_LOG"

DEFAULT_CONFIG: dict[str, Any] = {
    "log_level": 0,
    "log_file": "clifana.log",
    "log_capacity": 1024,
    "request_timeout": 10.0,
    "dashboard": {
        "server": "default",
        "query": "",
        "poll_interval": 15.0,
        "tick_interval": 0.25,
        "range": True,
        "window": 3600.0,
        "step": 60.0,
    },
    "variables": {},
    "servers": [],
    "queries": [],
}

_LOCAL_PATH = Path("config.toml")
_DEFAULT_PATH = Path.home() / ".config" / "clifana" / "config.toml"


class ConfigError(Exception):
    """Missing, unreadable or malformed configuration. Fatal at startup."""


# ── Data types ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ServerRef:
    name: str
    url: str


@dataclass(frozen=True)
class QueryRef:
    name: str
    query_template: str


@dataclass
class DashboardSettings:
    server: str = "default"
    query: str = ""
    poll_interval: float = 15.0
    tick_interval: float = 0.25
    range: bool = True
    window: float = 3600.0
    step: float = 60.0


@dataclass
class AppConfig:
    """Validated configuration, read once at startup."""

    servers: list[ServerRef] = field(default_factory=lambda: list[ServerRef]())
    queries: list[QueryRef] = field(default_factory=lambda: list[QueryRef]())
    variables: dict[str, str] = field(default_factory=lambda: dict[str, str]())
    dashboard: DashboardSettings = field(default_factory=DashboardSettings)
    log_level: int = 0
    log_file: str = "clifana.log"
    log_capacity: int = 1024
    request_timeout: float = 10.0
    source: Path | None = None

    def server(self, name: str) -> ServerRef | None:
        for s in self.servers:
            if s.name == name:
                return s
        return None

    def query(self, name: str) -> QueryRef | None:
        for q in self.queries:
            if q.name == name:
                return q
        return None


# ── Merging ────────────────────────────────────────────────────────────────


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base. Nested dicts are merged at the first level only."""
    merged = dict(base)
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            # Merge one level: overlay sub-keys into base sub-keys
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _parse_env_value(raw: str) -> Any:
    """Best-effort typing of an environment value: int, float, bool, else str."""
    lowered = raw.strip().lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


def _upsert_named(
    entries: list[Any], name: str, key: str, value: str
) -> list[dict[str, Any]]:
    """Set ``key`` on the entry called ``name``, compared case-insensitively.

    ``CLIFANA_SERVERS__PROD`` updates a server configured as ``Prod``.
    """
    result: list[dict[str, Any]] = []
    replaced = False
    for entry in entries:
        if isinstance(entry, dict) and str(entry.get("name", "")).lower() == name.lower():
            result.append({**entry, key: value})
            replaced = True
        else:
            result.append(entry)
    if not replaced:
        result.append({"name": name, key: value})
    return result


def apply_env_overrides(
    config: dict[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Apply ``CLIFANA_*`` overrides on top of a merged config dict.

    ``CLIFANA_LOG_LEVEL=2`` sets a top-level key, ``CLIFANA_DASHBOARD__QUERY=cpu``
    sets a key inside a table, and ``CLIFANA_SERVERS__DEFAULT=http://host``
    adds or replaces the server named ``default``.
    """
    env = os.environ if environ is None else environ
    result = dict(config)
    for var in sorted(env):
        if not var.startswith(ENV_PREFIX) or var == ENV_LOG:
            continue
        raw = env[var]
        path = var[len(ENV_PREFIX):].lower().split(ENV_SEPARATOR)
        if len(path) == 1:
            result[path[0]] = _parse_env_value(raw)
            continue
        if len(path) != 2 or not all(path):
            raise ConfigError(f"unsupported environment override: {var}")
        section, key = path
        if section == "servers":
            result["servers"] = _upsert_named(result.get("servers", []), key, "url", raw)
        elif section == "queries":
            result["queries"] = _upsert_named(
                result.get("queries", []), key, "query", raw
            )
        elif section == "variables":
            # Template values are always strings
            result["variables"] = {**result.get("variables", {}), key: raw}
        else:
            table = result.get(section, {})
            if not isinstance(table, dict):
                raise ConfigError(f"{var}: '{section}' is not a table")
            result[section] = {**table, key: _parse_env_value(raw)}
    return result


# ── Validation ─────────────────────────────────────────────────────────────


def _number(value: Any, what: str) -> float:
    """A strictly positive int or float."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{what} must be a number, got {value!r}")
    if value <= 0:
        raise ConfigError(f"{what} must be > 0, got {value!r}")
    return float(value)


def _integer(value: Any, what: str, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{what} must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{what} must be >= {minimum}, got {value!r}")
    return value


def _boolean(value: Any, what: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{what} must be true or false, got {value!r}")
    return value


def _string(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"{what} must be a string, got {value!r}")
    return value


def _named_entries(raw: Any, section: str, value_key: str) -> list[tuple[str, str]]:
    if not isinstance(raw, list):
        raise ConfigError(f"'{section}' must be an array of tables")
    seen: set[str] = set()
    entries: list[tuple[str, str]] = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ConfigError(f"{section}[{i}] must be a table")
        if "name" not in entry or value_key not in entry:
            raise ConfigError(f"{section}[{i}] needs both 'name' and '{value_key}'")
        name = _string(entry["name"], f"{section}[{i}].name")
        value = _string(entry[value_key], f"{section}[{i}].{value_key}")
        if not name:
            raise ConfigError(f"{section}[{i}].name must not be empty")
        if name in seen:
            raise ConfigError(f"duplicate {section} name: {name!r}")
        seen.add(name)
        entries.append((name, value))
    return entries


def parse_config(raw: dict[str, Any], source: Path | None = None) -> AppConfig:
    """Validate a merged config dict and build an :class:`AppConfig`."""
    dash = raw.get("dashboard", {})
    if not isinstance(dash, dict):
        raise ConfigError("'dashboard' must be a table")
    variables = raw.get("variables", {})
    if not isinstance(variables, dict):
        raise ConfigError("'variables' must be a table")

    dashboard = DashboardSettings(
        server=_string(dash.get("server", "default"), "dashboard.server"),
        query=_string(dash.get("query", ""), "dashboard.query"),
        poll_interval=_number(dash.get("poll_interval", 15.0), "dashboard.poll_interval"),
        tick_interval=_number(dash.get("tick_interval", 0.25), "dashboard.tick_interval"),
        range=_boolean(dash.get("range", True), "dashboard.range"),
        window=_number(dash.get("window", 3600.0), "dashboard.window"),
        step=_number(dash.get("step", 60.0), "dashboard.step"),
    )

    return AppConfig(
        servers=[ServerRef(n, u) for n, u in _named_entries(raw.get("servers", []), "servers", "url")],
        queries=[QueryRef(n, q) for n, q in _named_entries(raw.get("queries", []), "queries", "query")],
        variables={str(k): str(v) for k, v in variables.items()},
        dashboard=dashboard,
        log_level=_integer(raw.get("log_level", 0), "log_level", 0),
        log_file=_string(raw.get("log_file", "clifana.log"), "log_file"),
        log_capacity=_integer(raw.get("log_capacity", 1024), "log_capacity", 1),
        request_timeout=_number(raw.get("request_timeout", 10.0), "request_timeout"),
        source=source,
    )


# ── Loading ────────────────────────────────────────────────────────────────


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e


def find_config(path: Path | None = None) -> Path:
    """Return the config file to load, honouring the search order."""
    if path is not None:
        if not path.is_file():
            raise ConfigError(f"config file not found: {path}")
        return path
    for candidate in (_LOCAL_PATH, _DEFAULT_PATH):
        if candidate.is_file():
            return candidate
    raise ConfigError(
        f"no config file found (tried {_LOCAL_PATH} and {_DEFAULT_PATH}); "
        "pass one with --config"
    )


def load_config(
    path: Path | None = None, environ: Mapping[str, str] | None = None
) -> AppConfig:
    """Load configuration, merging user TOML over defaults.

    Args:
        path: Explicit config file path (from --config). If None, tries
              ./config.toml then ~/.config/clifana/config.toml.
        environ: Environment to read overrides from (defaults to os.environ).

    Returns:
        Validated configuration.

    Raises:
        ConfigError: If no file is found, it can't be parsed, or it fails
                     validation.
    """
    source = find_config(path)
    merged = _deep_merge(DEFAULT_CONFIG, _read_toml(source))
    return parse_config(apply_env_overrides(merged, environ), source)


def dump_default_config() -> str:
    """Return the default configuration as a TOML string."""
    dash = DEFAULT_CONFIG["dashboard"]
    lines = [
        "# clifana configuration",
        "# Place this file at ./config.toml or ~/.config/clifana/config.toml",
        "",
        f"log_level = {DEFAULT_CONFIG['log_level']}",
        f'log_file = "{DEFAULT_CONFIG["log_file"]}"',
        f"log_capacity = {DEFAULT_CONFIG['log_capacity']}",
        f"request_timeout = {DEFAULT_CONFIG['request_timeout']}",
        "",
        "[dashboard]",
        f'server = "{dash["server"]}"',
        f'query = "{dash["query"]}"',
        f"poll_interval = {dash['poll_interval']}",
        f"tick_interval = {dash['tick_interval']}",
        f"range = {'true' if dash['range'] else 'false'}",
        f"window = {dash['window']}",
        f"step = {dash['step']}",
        "",
        "# Default values for {{ placeholders }} in query templates",
        "[variables]",
        'job = "node"',
        "",
        "[[servers]]",
        'name = "default"',
        'url = "http://localhost:9090"',
        "",
        "[[queries]]",
        'name = "cpu"',
        "query = 'sum(rate(node_cpu_seconds_total{job=\"{{ job }}\",mode!=\"idle\"}[5m]))'",
    ]
    return "\n".join(lines) + "\n"
