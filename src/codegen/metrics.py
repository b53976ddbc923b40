"""Per-request audit log and Prometheus snapshot.

Every chat request appends one JSON line to ``requests-YYYYMMDD.jsonl`` in the
metrics directory. The same record feeds ``codegen_requests_total`` (labelled
by provider, HTTP status, outcome and error code) and
``codegen_request_latency_seconds``; the exposition text is served at
``/metrics`` and mirrored to ``prometheus.prom``.
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import json
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

SNAPSHOT_FILE = "prometheus.prom"
LATENCY_BUCKETS: tuple[float, ...] = (0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0)


def _label_value(value: Any, default: str) -> str:
    text = default if value is None or value == "" else str(value)
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _labels(**labels: str) -> str:
    return "{" + ",".join(f'{name}="{value}"' for name, value in labels.items()) + "}"


@dataclass
class _LatencySeries:
    counts: list[int] = field(default_factory=lambda: [0] * (len(LATENCY_BUCKETS) + 1))
    total_seconds: float = 0.0

    def observe(self, seconds: float) -> None:
        self.counts[bisect.bisect_left(LATENCY_BUCKETS, seconds)] += 1
        self.total_seconds += seconds

    def cumulative(self) -> list[int]:
        return list(itertools.accumulate(self.counts))


class RequestMetrics:
    """Chat request counters, one series per provider/status/outcome/code."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests: dict[tuple[str, str, str, str], int] = {}
        self._latency: dict[tuple[str, str], _LatencySeries] = {}

    def observe(self, record: dict[str, Any]) -> None:
        provider = _label_value(record.get("provider"), "unknown")
        status = _label_value(record.get("status"), "0")
        outcome = "ok" if record.get("ok") else "error"
        code = _label_value(record.get("code"), "none")
        seconds = max(float(record.get("latency_ms") or 0) / 1000.0, 0.0)
        with self._lock:
            key = (provider, status, outcome, code)
            self._requests[key] = self._requests.get(key, 0) + 1
            self._latency.setdefault((provider, outcome), _LatencySeries()).observe(seconds)

    def exposition(self) -> str:
        with self._lock:
            lines = [
                "# HELP codegen_requests_total Chat requests by provider, status, outcome and error code",
                "# TYPE codegen_requests_total counter",
            ]
            for (provider, status, outcome, code), value in sorted(self._requests.items()):
                labels = _labels(provider=provider, status=status, outcome=outcome, code=code)
                lines.append(f"codegen_requests_total{labels} {value}")
            lines += [
                "# HELP codegen_request_latency_seconds Chat request duration until the relay finished or failed",
                "# TYPE codegen_request_latency_seconds histogram",
            ]
            for (provider, outcome), series in sorted(self._latency.items()):
                cumulative = series.cumulative()
                bounds = [format(bound, "g") for bound in LATENCY_BUCKETS] + ["+Inf"]
                for bound, count in zip(bounds, cumulative):
                    labels = _labels(provider=provider, outcome=outcome, le=bound)
                    lines.append(f"codegen_request_latency_seconds_bucket{labels} {count}")
                labels = _labels(provider=provider, outcome=outcome)
                lines.append(f"codegen_request_latency_seconds_count{labels} {cumulative[-1]}")
                lines.append(f"codegen_request_latency_seconds_sum{labels} {series.total_seconds:.6f}")
        return "\n".join(lines) + "\n"


class MetricsLogger:
    def __init__(self, dirpath: str):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self._lock: Optional[asyncio.Lock] = None
        self.requests = RequestMetrics()

    def _file(self) -> str:
        return os.path.join(self.dir, f"requests-{time.strftime('%Y%m%d')}.jsonl")

    def _write_snapshot(self, text: str) -> None:
        path = os.path.join(self.dir, SNAPSHOT_FILE)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_path, path)

    async def write(self, record: dict[str, Any]) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        self.requests.observe(record)
        async with self._lock:
            with open(self._file(), "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
            self._write_snapshot(self.requests.exposition())

    def render_prometheus(self) -> bytes:
        return self.requests.exposition().encode("utf-8")
