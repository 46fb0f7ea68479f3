"""Templated Prometheus queries: build, send, parse.

A query template such as ``rate(http_requests_total{job="{{ job }}"}[5m])`` is
rendered against a variable mapping, POSTed form-encoded to
``/api/v1/query`` (instant) or ``/api/v1/query_range`` (range), and the
response envelope is flattened into a list of :class:`Sample`.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, NamedTuple

import requests

from clifana.config import AppConfig, QueryRef, ServerRef

_log = logging.getLogger("clifana.query")

INSTANT_PATH = "/api/v1/query"
RANGE_PATH = "/api/v1/query_range"

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.-]*)\s*\}\}")


# ── Errors ─────────────────────────────────────────────────────────────────


class QueryError(Exception):
    """A refresh-cycle failure. Reported, never fatal."""


class UnknownServer(QueryError):
    pass


class UnknownQuery(QueryError):
    pass


class TemplateError(QueryError):
    pass


class BackendError(QueryError):
    """The backend answered, but not with ``status: success`` and data."""


class TransportError(QueryError):
    pass


class ParseError(QueryError):
    pass


# ── Data types ─────────────────────────────────────────────────────────────


class Sample(NamedTuple):
    timestamp: float
    value: float


@dataclass(frozen=True)
class TimeRange:
    """Range-query window ending now. Seconds."""

    window: float = 3600.0
    step: float = 60.0


# ── Templates ──────────────────────────────────────────────────────────────


def render_template(template: str, variables: Mapping[str, str]) -> str:
    """Substitute ``{{ name }}`` placeholders from *variables*.

    Raises:
        TemplateError: If a placeholder names a variable not in the mapping.
    """
    missing = [
        name for name in _PLACEHOLDER.findall(template) if name not in variables
    ]
    if missing:
        names = ", ".join(sorted(set(missing)))
        raise TemplateError(f"template references undefined variable(s): {names}")
    return _PLACEHOLDER.sub(lambda m: str(variables[m.group(1)]), template)


def parse_substitutions(pairs: Iterable[str]) -> dict[str, str]:
    """Turn ``["job=node", "mode=idle"]`` into a mapping. Later pairs win."""
    result: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise TemplateError(f"expected KEY=VALUE, got {pair!r}")
        result[key] = value
    return result


# ── Response parsing ───────────────────────────────────────────────────────


def _pair_to_sample(pair: Any) -> Sample | None:
    """Parse one ``[ts, "value"]`` pair. Returns None (and logs) if malformed."""
    try:
        ts, value = pair
        return Sample(float(ts), float(value))
    except (TypeError, ValueError) as e:
        _log.warning("dropping malformed sample %r: %s", pair, e)
        return None


def parse_response(payload: Any) -> list[Sample]:
    """Flatten a Prometheus response envelope into samples, in backend order.

    Raises:
        BackendError: ``status`` is not ``success`` or ``data`` is missing.
        ParseError: The envelope or ``data.result`` has the wrong shape.
    """
    if not isinstance(payload, dict):
        raise ParseError(f"expected a JSON object, got {type(payload).__name__}")

    status = payload.get("status")
    data = payload.get("data")
    if status != "success" or data is None:
        detail = payload.get("error") or "no data in response"
        kind = payload.get("errorType")
        prefix = f"{kind}: " if kind else ""
        raise BackendError(f"backend returned status={status!r}: {prefix}{detail}")

    if not isinstance(data, dict):
        raise ParseError("'data' is not an object")
    result_type = data.get("resultType", "")
    result = data.get("result")

    if result_type in ("scalar", "string"):
        sample = _pair_to_sample(result)
        return [sample] if sample is not None else []

    if not isinstance(result, list):
        raise ParseError(f"'data.result' is not a list (resultType={result_type!r})")

    samples: list[Sample] = []
    for i, series in enumerate(result):
        if not isinstance(series, dict):
            raise ParseError(f"series #{i} is not an object")
        if "values" in series:
            pairs = series["values"]
            if not isinstance(pairs, list):
                raise ParseError(f"series #{i} 'values' is not a list")
        elif "value" in series:
            pairs = [series["value"]]
        else:
            pairs = []
        for pair in pairs:
            sample = _pair_to_sample(pair)
            if sample is not None:
                samples.append(sample)
    return samples


# ── Executor ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PreparedQuery:
    url: str
    form: dict[str, str]


def _fmt_seconds(value: float) -> str:
    return f"{value:g}" if value != int(value) else str(int(value))


class QueryExecutor:
    """Resolves server/query names from config and runs queries over HTTP."""

    def __init__(
        self,
        servers: Iterable[ServerRef],
        queries: Iterable[QueryRef],
        variables: Mapping[str, str] | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.servers = {s.name: s for s in servers}
        self.queries = {q.name: q for q in queries}
        self.variables = dict(variables or {})
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: AppConfig) -> QueryExecutor:
        return cls(
            config.servers,
            config.queries,
            variables=config.variables,
            timeout=config.request_timeout,
        )

    def prepare(
        self,
        server_name: str,
        query_name: str,
        time_range: TimeRange | None = None,
        variables: Mapping[str, str] | None = None,
        now: float | None = None,
    ) -> PreparedQuery:
        """Resolve names, render the template and build the form body."""
        server = self.servers.get(server_name)
        if server is None:
            raise UnknownServer(f"no server named {server_name!r} in config")
        query = self.queries.get(query_name)
        if query is None:
            raise UnknownQuery(f"no query named {query_name!r} in config")

        mapping = {**self.variables, **(variables or {})}
        rendered = render_template(query.query_template, mapping)
        now = time.time() if now is None else now
        base = server.url.rstrip("/")

        if time_range is None:
            return PreparedQuery(
                url=base + INSTANT_PATH,
                form={"query": rendered, "time": str(int(now))},
            )
        return PreparedQuery(
            url=base + RANGE_PATH,
            form={
                "query": rendered,
                "start": str(int(now - time_range.window)),
                "end": str(int(now)),
                "step": _fmt_seconds(time_range.step),
            },
        )

    def execute(
        self,
        server_name: str,
        query_name: str,
        time_range: TimeRange | None = None,
        variables: Mapping[str, str] | None = None,
        now: float | None = None,
    ) -> list[Sample]:
        """Run one query and return its samples.

        Raises:
            QueryError: Any failure in resolution, rendering, transport or
                        parsing. Callers report it and keep their old data.
        """
        prepared = self.prepare(server_name, query_name, time_range, variables, now)
        _log.debug("POST %s %s", prepared.url, prepared.form)
        try:
            resp = self.session.post(
                prepared.url, data=prepared.form, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise TransportError(f"{prepared.url}: {e}") from e

        try:
            payload = resp.json()
        except ValueError as e:
            if not resp.ok:
                raise TransportError(
                    f"{prepared.url}: HTTP {resp.status_code} {resp.reason}"
                ) from e
            raise ParseError(f"{prepared.url}: response is not JSON: {e}") from e

        samples = parse_response(payload)
        _log.debug("%s/%s: %d sample(s)", server_name, query_name, len(samples))
        return samples
