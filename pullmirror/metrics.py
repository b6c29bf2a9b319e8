# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Process metrics for the mirror service.

The server and workers report through the ``Observability`` protocol and
never touch a global registry.  ``MetricsRegistry`` is the in-process
implementation; it renders the Prometheus text exposition format for the
metrics endpoint.

Metric names used by the service (without the ``github_webhooks_``
namespace) are defined as module constants below.
"""

import math
import threading
import time
from collections.abc import Mapping, Sequence
from typing import Protocol


NAMESPACE = "github_webhooks"

HOOKS_RECEIVED = "hooks_received_total"
HOOKS_ACCEPTED = "hooks_accepted_total"
HOOKS_UPDATED = "hooks_updated_total"
HOOKS_FAILED = "hooks_failed_total"
HOOKS_RETRIED = "hooks_retried_total"
REPOSITORY_UP = "repository_up"
SERVER_UP = "up"
GIT_LATENCY = "git_latency_seconds"
BOOT_TIME = "boot_time_seconds"
LAST_CONFIG_APPLY = "last_successful_config_apply"

_HELP = {
    HOOKS_RECEIVED: "total number of hooks received",
    HOOKS_ACCEPTED: "number of hooks accepted",
    HOOKS_UPDATED: "number of hooks updated",
    HOOKS_FAILED: "number of hooks failed",
    HOOKS_RETRIED: "number of push retries",
    REPOSITORY_UP: "whether the last update of a repository succeeded",
    SERVER_UP: "whether the server is accepting webhooks",
    GIT_LATENCY: "latency of git operations",
    BOOT_TIME: "unix timestamp of when the service was started",
    LAST_CONFIG_APPLY: (
        "unix timestamp of when the last configuration was "
        "successfully applied"
    ),
}

#: Histogram buckets in seconds; git operations range from ms to minutes.
DEFAULT_BUCKETS: tuple[float, ...] = (
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
)

Labels = Mapping[str, str]
_LabelKey = tuple[tuple[str, str], ...]


class Observability(Protocol):
    """Sink for counters, gauges and latencies."""

    def inc_counter(self, name: str, labels: Labels | None = None) -> None:
        """Increment a counter by one."""
        ...

    def set_gauge(
        self, name: str, labels: Labels | None, value: float
    ) -> None:
        """Set a gauge to an absolute value."""
        ...

    def observe_latency(
        self, name: str, labels: Labels | None, seconds: float
    ) -> None:
        """Record a duration in a histogram."""
        ...


class NullObservability:
    """Observability sink that discards everything."""

    def inc_counter(self, name: str, labels: Labels | None = None) -> None:
        pass

    def set_gauge(
        self, name: str, labels: Labels | None, value: float
    ) -> None:
        pass

    def observe_latency(
        self, name: str, labels: Labels | None, seconds: float
    ) -> None:
        pass


class _Histogram:
    def __init__(self, buckets: Sequence[float]) -> None:
        self.buckets = tuple(buckets)
        self.counts = [0] * len(self.buckets)
        self.total = 0
        self.sum = 0.0

    def observe(self, value: float) -> None:
        for i, bound in enumerate(self.buckets):
            if value <= bound:
                self.counts[i] += 1
        self.total += 1
        self.sum += value


class MetricsRegistry:
    """Thread-safe in-process metrics store.

    Counters, gauges and histograms are created on first use.  A metric
    name always keeps the kind it was first used with.

    Args:
        namespace: Prefix for exported metric names.
        buckets: Histogram bucket upper bounds in seconds.
    """

    def __init__(
        self,
        namespace: str = NAMESPACE,
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ) -> None:
        self.namespace = namespace
        self._buckets = tuple(sorted(buckets))
        self._lock = threading.Lock()
        self._counters: dict[str, dict[_LabelKey, float]] = {}
        self._gauges: dict[str, dict[_LabelKey, float]] = {}
        self._histograms: dict[str, dict[_LabelKey, _Histogram]] = {}

    def inc_counter(self, name: str, labels: Labels | None = None) -> None:
        """Increment a counter by one."""
        key = _label_key(labels)
        with self._lock:
            self._check_kind(name, self._counters)
            series = self._counters.setdefault(name, {})
            series[key] = series.get(key, 0.0) + 1

    def set_gauge(
        self, name: str, labels: Labels | None, value: float
    ) -> None:
        """Set a gauge to an absolute value."""
        key = _label_key(labels)
        with self._lock:
            self._check_kind(name, self._gauges)
            self._gauges.setdefault(name, {})[key] = float(value)

    def observe_latency(
        self, name: str, labels: Labels | None, seconds: float
    ) -> None:
        """Record a duration in the named histogram."""
        key = _label_key(labels)
        with self._lock:
            self._check_kind(name, self._histograms)
            series = self._histograms.setdefault(name, {})
            histogram = series.get(key)
            if histogram is None:
                histogram = series[key] = _Histogram(self._buckets)
            histogram.observe(seconds)

    def get_counter(self, name: str, labels: Labels | None = None) -> float:
        """Return a counter value (0 if never incremented)."""
        with self._lock:
            return self._counters.get(name, {}).get(_label_key(labels), 0.0)

    def get_gauge(
        self, name: str, labels: Labels | None = None
    ) -> float | None:
        """Return a gauge value, or None if never set."""
        with self._lock:
            return self._gauges.get(name, {}).get(_label_key(labels))

    def get_observation_count(
        self, name: str, labels: Labels | None = None
    ) -> int:
        """Return how many durations a histogram series has recorded."""
        with self._lock:
            histogram = self._histograms.get(name, {}).get(_label_key(labels))
            return histogram.total if histogram else 0

    def mark_boot(self, timestamp: float | None = None) -> None:
        """Record the process boot time."""
        self.set_gauge(
            BOOT_TIME, None, time.time() if timestamp is None else timestamp
        )

    def export_prometheus(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        lines: list[str] = []
        with self._lock:
            for name, series in sorted(self._counters.items()):
                full = self._full_name(name)
                self._header(lines, name, full, "counter")
                for key, value in sorted(series.items()):
                    lines.append(f"{full}{_format_labels(key)} {_num(value)}")

            for name, series in sorted(self._gauges.items()):
                full = self._full_name(name)
                self._header(lines, name, full, "gauge")
                for key, value in sorted(series.items()):
                    lines.append(f"{full}{_format_labels(key)} {_num(value)}")

            for name, hseries in sorted(self._histograms.items()):
                full = self._full_name(name)
                self._header(lines, name, full, "histogram")
                for key, histogram in sorted(hseries.items()):
                    for bound, count in zip(
                        histogram.buckets, histogram.counts, strict=True
                    ):
                        le = key + (("le", _num(bound)),)
                        lines.append(
                            f"{full}_bucket{_format_labels(le)} {count}"
                        )
                    inf = key + (("le", "+Inf"),)
                    lines.append(
                        f"{full}_bucket{_format_labels(inf)} {histogram.total}"
                    )
                    lines.append(
                        f"{full}_sum{_format_labels(key)} "
                        f"{_num(histogram.sum)}"
                    )
                    lines.append(
                        f"{full}_count{_format_labels(key)} {histogram.total}"
                    )
        return "\n".join(lines) + "\n" if lines else ""

    def _full_name(self, name: str) -> str:
        return f"{self.namespace}_{name}" if self.namespace else name

    def _check_kind(self, name: str, expected: dict) -> None:
        for store in (self._counters, self._gauges, self._histograms):
            if store is not expected and name in store:
                raise ValueError(
                    f"metric {name} already registered with another type"
                )

    @staticmethod
    def _header(lines: list[str], name: str, full: str, kind: str) -> None:
        help_text = _HELP.get(name)
        if help_text:
            lines.append(f"# HELP {full} {help_text}")
        lines.append(f"# TYPE {full} {kind}")


def _label_key(labels: Labels | None) -> _LabelKey:
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _format_labels(key: _LabelKey) -> str:
    if not key:
        return ""
    pairs = ",".join(f'{k}="{_escape(v)}"' for k, v in key)
    return "{" + pairs + "}"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _num(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == int(value):
        return str(int(value))
    return repr(value)
