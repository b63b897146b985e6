"""Metrics backend — instant queries returning labelled samples."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from app.core.config import get_settings
from app.core.errors import TransientQueryError


@dataclass
class MetricSample:
    labels: dict[str, str] = field(default_factory=dict)
    value: float = math.nan


class MetricsBackend(Protocol):
    async def query(self, query: str) -> list[MetricSample]: ...


class PrometheusMetricsBackend:
    """Prometheus HTTP API (``/api/v1/query``) client."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.metrics_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.metrics_timeout_seconds
        self._transport = transport

    async def query(self, query: str) -> list[MetricSample]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(f"{self.base_url}/api/v1/query", params={"query": query})
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as exc:
            raise TransientQueryError(f"Metrics query failed: {exc}") from exc
        except ValueError as exc:
            raise TransientQueryError("Metrics backend returned invalid JSON") from exc

        if body.get("status") != "success":
            raise TransientQueryError(f"Metrics query error: {body.get('error', 'unknown')}")
        return parse_samples(body.get("data", {}))


def parse_samples(data: dict) -> list[MetricSample]:
    """Flatten a Prometheus ``data`` object into samples.

    Vector results carry one ``[ts, "value"]`` pair per series; scalar results
    are a single pair with no labels.
    """
    result_type = data.get("resultType")
    result = data.get("result", [])

    if result_type == "scalar":
        return [MetricSample(labels={}, value=_to_float(result[1]))]

    samples: list[MetricSample] = []
    for series in result:
        if "value" in series:
            samples.append(MetricSample(
                labels=dict(series.get("metric", {})),
                value=_to_float(series["value"][1]),
            ))
        elif series.get("values"):
            # Range vector: evaluate the most recent point
            samples.append(MetricSample(
                labels=dict(series.get("metric", {})),
                value=_to_float(series["values"][-1][1]),
            ))
    return samples


def _to_float(raw: str | float) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return math.nan
