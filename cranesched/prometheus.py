"""A small Prometheus query client that reads one instant-vector value per query."""

from __future__ import annotations

import json
import logging
import math
import time
import urllib.error
import urllib.request
from datetime import timedelta
from typing import Callable, Iterable
from urllib.parse import urlencode, urlsplit

logger = logging.getLogger(__name__)

DEFAULT_PROMETHEUS_QUERY_TIMEOUT = timedelta(seconds=10)

Transport = Callable[[str, float], "tuple[int, bytes]"]


class PrometheusError(Exception):
    """Raised when a Prometheus query fails or returns an unusable result."""


def _urllib_transport(url: str, timeout: float) -> tuple[int, bytes]:
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            return response.status, response.read()
    except urllib.error.HTTPError as exc:
        try:
            return exc.code, exc.read()
        finally:
            exc.close()


def format_vector_value(samples: Iterable[float]) -> str:
    """Format the last sample with five decimals; negative or NaN counts as zero."""
    value = ""
    for sample in samples:
        if sample < 0 or math.isnan(sample):
            sample = 0.0
        value = "+Inf" if math.isinf(sample) else f"{sample:.5f}"
    return value


class PromClient:
    """Queries Prometheus for node metrics by IP or name."""

    def __init__(
        self,
        address: str,
        timeout: timedelta = DEFAULT_PROMETHEUS_QUERY_TIMEOUT,
        transport: Transport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        urlsplit(address)
        self.address = address
        self.timeout = timeout
        self._transport = transport or _urllib_transport
        self._clock = clock

    def query(self, promql: str) -> str:
        """Run an instant query and return its formatted value, or "" if empty."""
        logger.debug("Begin to query prometheus by promQL [%s]...", promql)
        params = urlencode({"query": promql, "time": f"{self._clock():.3f}"})
        url = f"{self.address.rstrip('/')}/api/v1/query?{params}"
        try:
            status, body = self._transport(url, self.timeout.total_seconds())
        except OSError as exc:
            raise PrometheusError(f"query failed: {exc}") from exc
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise PrometheusError(f"bad response (code {status}): {exc}") from exc
        if not isinstance(payload, dict):
            raise PrometheusError(f"bad response (code {status})")
        if payload.get("status") != "success":
            error_type = payload.get("errorType", "server_error")
            error = payload.get("error", f"server error: {status}")
            raise PrometheusError(f"{error_type}: {error}")
        warnings = payload.get("warnings") or []
        if warnings:
            raise PrometheusError(f"unexpected warnings: {warnings}")
        data = payload.get("data") or {}
        result_type = data.get("resultType")
        if result_type != "vector":
            raise PrometheusError(f"illegal result type: {result_type}")
        samples = []
        for element in data.get("result") or []:
            try:
                samples.append(float(element["value"][1]))
            except (KeyError, IndexError, TypeError, ValueError) as exc:
                raise PrometheusError(f"malformed sample {element!r}") from exc
        return format_vector_value(samples)

    def _first_value(self, selectors: list[str]) -> str:
        # Earlier failures are dropped; only the last attempt decides.
        for selector in selectors[:-1]:
            try:
                result = self.query(selector)
            except PrometheusError:
                continue
            if result:
                return result
        return self.query(selectors[-1])

    def query_by_node_ip(self, metric_name: str, ip: str) -> str:
        logger.debug("Try to query %s by node IP[%s]", metric_name, ip)
        return self._first_value(
            [
                f'{metric_name}{{instance=~"{ip}"}} /100',
                f'{metric_name}{{instance=~"{ip}:.+"}} /100',
            ]
        )

    def query_by_node_name(self, metric_name: str, name: str) -> str:
        logger.debug("Try to query %s by node name[%s]", metric_name, name)
        return self.query(f'{metric_name}{{instance=~"{name}"}} /100')

    def query_by_node_ip_with_offset(self, metric_name: str, ip: str, offset: str) -> str:
        logger.debug("Try to query %s with offset %s by node IP[%s]", metric_name, offset, ip)
        return self._first_value(
            [
                f'{metric_name}{{instance=~"{ip}"}} offset {offset} /100',
                f'{metric_name}{{instance=~"{ip}:.+"}} offset {offset} /100',
            ]
        )