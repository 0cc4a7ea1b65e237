"""
quillpass/core/metrics.py

In-process metric series for checkout, webhook, quota and gateway flows,
exported in the Prometheus text format by GET /metrics.

Values live in process memory only; each worker exports its own view.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, List, Optional, Sequence, Tuple

LabelKey = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class _Series:
    kind = "untyped"

    def __init__(self, name: str, help_text: str, label_names: Sequence[str] = ()):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._samples: Dict[LabelKey, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelKey:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name}: unknown labels {sorted(unknown)}")
        return tuple(str(labels.get(label, "")) for label in self.label_names)

    def _add(self, labels: Optional[Dict[str, str]], amount: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._samples[key] = self._samples.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._samples.get(self._key(labels), 0.0)

    def render(self) -> List[str]:
        out = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} {self.kind}"]
        with self._lock:
            samples = sorted(self._samples.items())
        for key, amount in samples:
            if self.label_names:
                pairs = ",".join(f'{label}="{_escape(val)}"' for label, val in zip(self.label_names, key))
                out.append(f"{self.name}{{{pairs}}} {amount}")
            else:
                out.append(f"{self.name} {amount}")
        return out

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()


class Counter(_Series):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        self._add(labels, amount)


class Gauge(_Series):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._samples[key] = float(value)


class Registry:
    """Named series, registered once at import time."""

    def __init__(self):
        self._series: Dict[str, _Series] = {}

    def _register(self, series: _Series) -> _Series:
        if series.name in self._series:
            raise ValueError(f"metric already registered: {series.name}")
        self._series[series.name] = series
        return series

    def counter(self, name: str, help_text: str, label_names: Sequence[str] = ()) -> Counter:
        return self._register(Counter(name, help_text, label_names))

    def gauge(self, name: str, help_text: str, label_names: Sequence[str] = ()) -> Gauge:
        return self._register(Gauge(name, help_text, label_names))

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for series in self._series.values():
            lines.extend(series.render())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        for series in self._series.values():
            series.clear()


METRICS = Registry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests by method, route and status.", ["method", "path", "status"]
)
checkout_sessions_total = METRICS.counter(
    "checkout_sessions_total", "Checkout session attempts.", ["plan", "outcome"]
)
webhook_events_total = METRICS.counter(
    "webhook_events_total", "Gateway webhook events by outcome.", ["event_type", "outcome"]
)
period_end_fallback_total = METRICS.counter(
    "period_end_fallback_total", "Subscriptions whose end date was computed locally.", ["source"]
)
quota_decisions_total = METRICS.counter(
    "quota_decisions_total", "Metered AI-summary quota decisions.", ["plan", "allowed"]
)
gateway_errors_total = METRICS.counter(
    "gateway_errors_total", "Failed payment gateway calls.", ["operation"]
)
completed_transactions_by_plan = METRICS.gauge(
    "completed_transactions_by_plan", "Completed transactions per plan at last stats read.", ["plan"]
)


# Path segments that identify a record rather than a route
_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F-]{8,}|(cs|sub|in|cus|evt|pi)_[A-Za-z0-9_]+)$")


def normalize_path(path: str) -> str:
    """Collapse id-like segments to :id so request labels stay bounded."""
    segments = [":id" if _ID_SEGMENT.match(seg) else seg for seg in path.split("/") if seg]
    return "/" + "/".join(segments)
