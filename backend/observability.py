from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any


class InMemoryMetricsStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._job_status_events: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._job_failures: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._job_latency: dict[str, dict[str, float]] = defaultdict(
            lambda: {"count": 0.0, "sum_ms": 0.0, "max_ms": 0.0}
        )
        # 1s, 5s, 10s, 30s, 60s, 2m, 5m, 10m, 30m, +Inf
        self._latency_buckets_def = [
            1000, 5000, 10000, 30000, 60000, 120000, 300000, 600000, 1800000, float("inf"),
        ]
        self._job_latency_buckets: dict[str, dict[float, int]] = defaultdict(
            lambda: {b: 0 for b in self._latency_buckets_def}
        )
        self._retry_events: dict[str, int] = defaultdict(int)
        self._video_transitions: dict[str, int] = defaultdict(int)
        self._probe_results: dict[str, int] = defaultdict(int)
        self._probe_latency = {"count": 0.0, "sum_ms": 0.0, "max_ms": 0.0}
        self._last_uptime_pct: float | None = None
        self._heartbeats = 0

    def reset(self) -> None:
        with self._lock:
            self._job_status_events.clear()
            self._job_failures.clear()
            self._job_latency.clear()
            self._job_latency_buckets.clear()
            self._retry_events.clear()
            self._video_transitions.clear()
            self._probe_results.clear()
            self._probe_latency = {"count": 0.0, "sum_ms": 0.0, "max_ms": 0.0}
            self._last_uptime_pct = None
            self._heartbeats = 0

    def increment_job_status(self, task_type: str, status: str) -> None:
        normalized_type = (task_type or "unknown").strip() or "unknown"
        normalized_status = (status or "unknown").strip() or "unknown"
        with self._lock:
            self._job_status_events[normalized_type][normalized_status] += 1

    def increment_job_failure(self, task_type: str, error_code: str = "unknown") -> None:
        normalized_type = (task_type or "unknown").strip() or "unknown"
        with self._lock:
            self._job_failures[normalized_type][error_code or "unknown"] += 1

    def observe_job_latency(self, task_type: str, duration_ms: float) -> None:
        normalized_type = (task_type or "unknown").strip() or "unknown"
        with self._lock:
            metric = self._job_latency[normalized_type]
            metric["count"] += 1
            metric["sum_ms"] += max(0.0, duration_ms)
            metric["max_ms"] = max(metric["max_ms"], max(0.0, duration_ms))

            bucket_counts = self._job_latency_buckets[normalized_type]
            for bucket in self._latency_buckets_def:
                if duration_ms <= bucket:
                    bucket_counts[bucket] += 1

    def increment_retry(self, task_type: str) -> None:
        normalized_type = (task_type or "unknown").strip() or "unknown"
        with self._lock:
            self._retry_events[normalized_type] += 1

    def increment_video_transition(self, status: str) -> None:
        with self._lock:
            self._video_transitions[status] += 1

    def increment_heartbeat(self) -> None:
        with self._lock:
            self._heartbeats += 1

    def observe_probe(self, healthy: bool, duration_ms: float, uptime_pct: float | None) -> None:
        with self._lock:
            self._probe_results["healthy" if healthy else "unhealthy"] += 1
            self._probe_latency["count"] += 1
            self._probe_latency["sum_ms"] += max(0.0, duration_ms)
            self._probe_latency["max_ms"] = max(self._probe_latency["max_ms"], max(0.0, duration_ms))
            if uptime_pct is not None:
                self._last_uptime_pct = uptime_pct

    def snapshot(self, queue_depth: dict[str, int] | None = None) -> dict[str, Any]:
        with self._lock:
            latency: dict[str, dict[str, float]] = {}
            for task_type, metric in self._job_latency.items():
                count = metric["count"]
                avg_ms = (metric["sum_ms"] / count) if count > 0 else 0.0
                latency[task_type] = {
                    "count": int(count),
                    "sumMs": round(metric["sum_ms"], 2),
                    "avgMs": round(avg_ms, 2),
                    "maxMs": round(metric["max_ms"], 2),
                }

            latency_buckets = {}
            for task_type, buckets in self._job_latency_buckets.items():
                latency_buckets[task_type] = dict(buckets)

            probe_count = self._probe_latency["count"]
            return {
                "queueDepth": queue_depth or {},
                "jobStatusEvents": {
                    key: dict(value) for key, value in self._job_status_events.items()
                },
                "jobFailures": {key: dict(value) for key, value in self._job_failures.items()},
                "jobLatencyMs": latency,
                "jobLatencyBuckets": latency_buckets,
                "jobRetries": dict(self._retry_events),
                "videoTransitions": dict(self._video_transitions),
                "heartbeats": self._heartbeats,
                "probes": {
                    "results": dict(self._probe_results),
                    "avgMs": round(self._probe_latency["sum_ms"] / probe_count, 2) if probe_count else 0.0,
                    "maxMs": round(self._probe_latency["max_ms"], 2),
                    "uptimePct": self._last_uptime_pct,
                },
            }


def _escape_label(value: str) -> str:
    return value.replace("\\", r"\\").replace('"', r'\"')


def render_prometheus_metrics(snapshot: dict[str, Any]) -> str:
    lines: list[str] = []

    lines.append("# HELP vap_queue_depth Number of processing jobs currently in each status.")
    lines.append("# TYPE vap_queue_depth gauge")
    for status, count in sorted((snapshot.get("queueDepth") or {}).items()):
        lines.append(f'vap_queue_depth{{status="{_escape_label(str(status))}"}} {int(count)}')

    lines.append("# HELP vap_job_status_events_total Total observed job status events.")
    lines.append("# TYPE vap_job_status_events_total counter")
    for task_type, statuses in sorted((snapshot.get("jobStatusEvents") or {}).items()):
        for status, count in sorted((statuses or {}).items()):
            lines.append(
                "vap_job_status_events_total"
                f'{{task_type="{_escape_label(str(task_type))}",status="{_escape_label(str(status))}"}} {int(count)}'
            )

    lines.append("# HELP vap_job_failures_total Total permanently failed jobs by type and error code.")
    lines.append("# TYPE vap_job_failures_total counter")
    for task_type, codes in sorted((snapshot.get("jobFailures") or {}).items()):
        for code, count in sorted((codes or {}).items()):
            lines.append(
                "vap_job_failures_total"
                f'{{task_type="{_escape_label(str(task_type))}",error="{_escape_label(str(code))}"}} {int(count)}'
            )

    lines.append("# HELP vap_job_retries_total Total scheduled retries by job type.")
    lines.append("# TYPE vap_job_retries_total counter")
    for task_type, count in sorted((snapshot.get("jobRetries") or {}).items()):
        lines.append(f'vap_job_retries_total{{task_type="{_escape_label(str(task_type))}"}} {int(count)}')

    lines.append("# HELP vap_job_latency_ms Job latency histogram in milliseconds.")
    lines.append("# TYPE vap_job_latency_ms histogram")
    for task_type, buckets in sorted((snapshot.get("jobLatencyBuckets") or {}).items()):
        label = _escape_label(str(task_type))
        for le, count in sorted(buckets.items(), key=lambda x: x[0]):
            le_str = "+Inf" if le == float("inf") else str(int(le))
            lines.append(f'vap_job_latency_ms_bucket{{task_type="{label}",le="{le_str}"}} {int(count)}')
        latency_info = (snapshot.get("jobLatencyMs") or {}).get(task_type, {})
        lines.append(f'vap_job_latency_ms_sum{{task_type="{label}"}} {float(latency_info.get("sumMs", 0.0))}')
        lines.append(f'vap_job_latency_ms_count{{task_type="{label}"}} {int(latency_info.get("count", 0))}')

    lines.append("# HELP vap_video_transitions_total Video state transitions by target status.")
    lines.append("# TYPE vap_video_transitions_total counter")
    for status, count in sorted((snapshot.get("videoTransitions") or {}).items()):
        lines.append(f'vap_video_transitions_total{{status="{_escape_label(str(status))}"}} {int(count)}')

    lines.append("# HELP vap_heartbeats_total Accepted playback heartbeats.")
    lines.append("# TYPE vap_heartbeats_total counter")
    lines.append(f"vap_heartbeats_total {int(snapshot.get('heartbeats') or 0)}")

    probes = snapshot.get("probes") or {}
    lines.append("# HELP vap_uptime_probes_total Uptime probes by result.")
    lines.append("# TYPE vap_uptime_probes_total counter")
    for result, count in sorted((probes.get("results") or {}).items()):
        lines.append(f'vap_uptime_probes_total{{result="{_escape_label(str(result))}"}} {int(count)}')
    if probes.get("uptimePct") is not None:
        lines.append("# HELP vap_uptime_percentage Rolling playback uptime percentage.")
        lines.append("# TYPE vap_uptime_percentage gauge")
        lines.append(f"vap_uptime_percentage {float(probes['uptimePct'])}")

    return "\n".join(lines) + "\n"


METRICS = InMemoryMetricsStore()
