"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Dict, List, Tuple

_PREFIX = "graph_memory"

LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class MetricsCollector:
    """Thread-safe counters for the HTTP layer, ingestion and retrieval."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        """Reset all metrics (used by tests)."""
        with self._lock:
            # (method, route, status) -> count
            self._requests: Dict[Tuple[str, str, str], int] = defaultdict(int)
            # route -> [per-bucket counts..., sum, count]
            self._latency: Dict[str, List[float]] = {}
            # (mode, tier) -> count
            self._retrievals: Dict[Tuple[str, str], int] = defaultdict(int)
            self._degraded = 0
            self._ingests: Dict[str, int] = defaultdict(int)
            self._item_errors = 0
            self._entities: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_request(self, method: str, path: str, status: int, duration_seconds: float) -> None:
        route = path or "/"
        seconds = max(0.0, float(duration_seconds))
        with self._lock:
            self._requests[((method or "GET").upper(), route, str(status))] += 1
            hist = self._latency.setdefault(route, [0.0] * (len(LATENCY_BUCKETS) + 2))
            for i, bound in enumerate(LATENCY_BUCKETS):
                if seconds <= bound:
                    hist[i] += 1
            hist[-2] += seconds
            hist[-1] += 1

    def record_retrieval(self, mode: str, tier_used: int, degraded: bool) -> None:
        with self._lock:
            self._retrievals[(mode, str(tier_used))] += 1
            if degraded:
                self._degraded += 1

    def record_ingest(self, source_type: str, item_errors: int) -> None:
        with self._lock:
            self._ingests[source_type] += 1
            self._item_errors += max(0, int(item_errors))

    def set_entity_gauges(self, entities_total_by_user: Dict[str, int]) -> None:
        with self._lock:
            self._entities = {
                str(user): max(0, int(total)) for user, total in entities_total_by_user.items()
            }

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "requests_total": dict(self._requests),
                "request_latency": {route: list(h) for route, h in self._latency.items()},
                "retrievals_total": dict(self._retrievals),
                "retrievals_degraded_total": self._degraded,
                "ingest_events_total": dict(self._ingests),
                "ingest_item_errors_total": self._item_errors,
                "entities_total_by_user": dict(self._entities),
            }

    # ------------------------------------------------------------------
    # Exposition
    # ------------------------------------------------------------------

    def render_prometheus(self) -> str:
        snap = self.snapshot()
        out: List[str] = []

        _family(out, "requests_total", "counter", "Total HTTP requests processed.")
        for (method, route, status), n in sorted(snap["requests_total"].items()):
            out.append(_sample("requests_total", {"method": method, "path": route, "status": status}, n))

        _family(out, "request_duration_seconds", "histogram", "HTTP request latency in seconds.")
        for route, hist in sorted(snap["request_latency"].items()):
            for bound, n in zip(LATENCY_BUCKETS, hist):
                out.append(_sample(
                    "request_duration_seconds_bucket", {"path": route, "le": f"{bound:g}"}, n
                ))
            out.append(_sample("request_duration_seconds_bucket", {"path": route, "le": "+Inf"}, hist[-1]))
            out.append(_sample("request_duration_seconds_sum", {"path": route}, hist[-2]))
            out.append(_sample("request_duration_seconds_count", {"path": route}, hist[-1]))

        _family(out, "retrievals_total", "counter", "Retrievals served, by mode and tier used.")
        for (mode, tier), n in sorted(snap["retrievals_total"].items()):
            out.append(_sample("retrievals_total", {"mode": mode, "tier": tier}, n))

        _family(out, "retrievals_degraded_total", "counter", "Retrievals that skipped or lost a lane.")
        out.append(_sample("retrievals_degraded_total", {}, snap["retrievals_degraded_total"]))

        _family(out, "ingest_events_total", "counter", "Extraction events ingested, by source type.")
        for source_type, n in sorted(snap["ingest_events_total"].items()):
            out.append(_sample("ingest_events_total", {"source_type": source_type}, n))

        _family(out, "ingest_item_errors_total", "counter", "Payload items rejected or failed.")
        out.append(_sample("ingest_item_errors_total", {}, snap["ingest_item_errors_total"]))

        _family(out, "entities_total", "gauge", "Active entities, by user.")
        for user, n in sorted(snap["entities_total_by_user"].items()):
            out.append(_sample("entities_total", {"user": user}, n))

        return "\n".join(out) + "\n"


def _family(out: List[str], name: str, kind: str, help_text: str) -> None:
    out.append(f"# HELP {_PREFIX}_{name} {help_text}")
    out.append(f"# TYPE {_PREFIX}_{name} {kind}")


def _sample(name: str, labels: Dict[str, str], value: float) -> str:
    label_text = ",".join(f'{k}="{_label_escape(v)}"' for k, v in labels.items())
    head = f"{_PREFIX}_{name}{{{label_text}}}" if labels else f"{_PREFIX}_{name}"
    return f"{head} {_format_value(value)}"


def _label_escape(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_value(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{float(value):.9f}".rstrip("0").rstrip(".")


collector = MetricsCollector()


def record_request_metric(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    collector.record_request(method=method, path=path, status=status, duration_seconds=duration_seconds)


def record_retrieval_metric(*, mode: str, tier_used: int, degraded: bool) -> None:
    collector.record_retrieval(mode=mode, tier_used=tier_used, degraded=degraded)


def record_ingest_metric(*, source_type: str, item_errors: int) -> None:
    collector.record_ingest(source_type=source_type, item_errors=item_errors)


def set_entity_gauges(entities_total_by_user: Dict[str, int]) -> None:
    collector.set_entity_gauges(entities_total_by_user)


def render_prometheus_metrics() -> str:
    return collector.render_prometheus()


def reset_metrics() -> None:
    collector.reset()
