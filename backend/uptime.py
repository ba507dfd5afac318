"""End-to-end playback probe with rolling uptime and threshold alerts."""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta
from time import perf_counter
from typing import Any, Callable, Dict, Optional

import httpx

from backend.db import get_database
from backend.entitlements import SYSTEM_CALLER, EntitlementClient
from backend.errors import AlertNotFound, PipelineError
from backend.jobs import utc_now
from backend.logging_config import configure_logging
from backend.observability import METRICS
from backend.playback import request_playback
from backend.runtime_config import PipelineSettings, load_settings
from backend.storage import get_object_store


LOGGER = logging.getLogger("vap.uptime")

WINDOW = timedelta(hours=24)
WINDOW_PROBES = 1440
WARNING_CONSECUTIVE_FAILURES = 3
CRITICAL_CONSECUTIVE_FAILURES = 5
RESOLVE_AFTER_HEALTHY = 5

_SEVERITY_RANK = {"WARNING": 1, "CRITICAL": 2}


def rolling_uptime(probes: list[Dict[str, Any]]) -> float:
    if not probes:
        return 100.0
    healthy = sum(1 for probe in probes if probe["is_healthy"])
    return round(healthy / len(probes) * 100.0, 2)


def _leading_run(probes: list[Dict[str, Any]], healthy: bool) -> int:
    run = 0
    for probe in probes:
        if bool(probe["is_healthy"]) != healthy:
            break
        run += 1
    return run


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def alert_api_payload(alert: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": alert["id"],
        "severity": alert["severity"],
        "message": alert["message"],
        "uptimePercentage": alert.get("uptime_percentage"),
        "consecutiveFailures": alert.get("consecutive_failures"),
        "resolved": bool(alert.get("resolved")),
        "timestamp": _iso(alert.get("timestamp")),
        "resolvedAt": _iso(alert.get("resolved_at")),
    }


class UptimeMonitor:
    def __init__(
        self,
        db,
        store,
        settings: Optional[PipelineSettings] = None,
        *,
        http_client: Optional[httpx.Client] = None,
        entitlements: Optional[EntitlementClient] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.store = store
        self.settings = settings or load_settings()
        self._http = http_client
        self.entitlements = entitlements or EntitlementClient()
        self.clock = clock
        self._stop = threading.Event()

    @property
    def http(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=10.0, follow_redirects=True)
        return self._http

    def _reference_video_id(self) -> Optional[str]:
        if self.settings.uptime_reference_video_id:
            return self.settings.uptime_reference_video_id
        video = self.db.fetch_latest_ready_video()
        return video["id"] if video else None

    def _check(self, video_id: str, now: datetime) -> Optional[str]:
        """Return None when playback works end to end, else the failure reason."""
        try:
            playback = request_playback(
                self.db,
                self.store,
                video_id,
                SYSTEM_CALLER,
                entitlements=self.entitlements,
                now=now,
            )
            response = self.http.head(playback["manifestUrl"])
        except (PipelineError, httpx.HTTPError) as exc:
            return f"{type(exc).__name__}: {exc}"
        if response.status_code >= 400:
            return f"manifest HEAD returned {response.status_code}"
        return None

    def probe_once(self, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        timestamp = now or self.clock()
        video_id = self._reference_video_id()
        if video_id is None:
            LOGGER.warning("uptime.no_reference_video")
            return None

        started = perf_counter()
        error = self._check(video_id, timestamp)
        duration_ms = round((perf_counter() - started) * 1000, 2)
        healthy = error is None

        previous = self.db.fetch_probe_window(timestamp - WINDOW, WINDOW_PROBES - 1)
        probe = {
            "id": str(uuid.uuid4()),
            "video_id": video_id,
            "is_healthy": healthy,
            "error_message": error,
            "check_duration_ms": duration_ms,
            "timestamp": timestamp,
        }
        window = [probe] + previous
        probe["uptime_percentage"] = rolling_uptime(window)
        self.db.insert_probe(probe)

        self._evaluate_alerts(
            probe["uptime_percentage"],
            _leading_run(window, healthy=False),
            _leading_run(window, healthy=True),
            timestamp,
        )
        self.db.record_uptime_hour(
            timestamp.replace(minute=0, second=0, microsecond=0),
            healthy,
            self.settings.uptime_critical_pct,
        )
        METRICS.observe_probe(healthy, duration_ms, probe["uptime_percentage"])
        LOGGER.info(
            "uptime.probe",
            extra={
                "video_id": video_id,
                "status": "healthy" if healthy else "unhealthy",
                "uptime_pct": probe["uptime_percentage"],
                "duration_ms": duration_ms,
                "error": error,
            },
        )
        return probe

    def _evaluate_alerts(
        self,
        uptime_pct: float,
        consecutive_failures: int,
        consecutive_successes: int,
        now: datetime,
    ) -> Optional[Dict[str, Any]]:
        """Open, upgrade or resolve the single open alert.

        Thresholds are compared against the current rolling uptime, so an alert
        stays open, or reopens, for as long as uptime is below the warning level.
        """
        open_alert = self.db.fetch_open_alert()
        recovered = uptime_pct >= self.settings.uptime_warning_pct
        if open_alert and recovered and consecutive_successes >= RESOLVE_AFTER_HEALTHY:
            resolved = self.db.resolve_alert(open_alert["id"], now)
            LOGGER.info("uptime.alert_resolved", extra={"alert_id": open_alert["id"], "uptime_pct": uptime_pct})
            return resolved

        severity = None
        message = None
        if consecutive_failures >= CRITICAL_CONSECUTIVE_FAILURES:
            severity, message = "CRITICAL", f"{consecutive_failures} consecutive playback probe failures"
        elif uptime_pct < self.settings.uptime_critical_pct:
            severity = "CRITICAL"
            message = f"Rolling uptime {uptime_pct:.2f}% below {self.settings.uptime_critical_pct}%"
        elif consecutive_failures >= WARNING_CONSECUTIVE_FAILURES:
            severity, message = "WARNING", f"{consecutive_failures} consecutive playback probe failures"
        elif uptime_pct < self.settings.uptime_warning_pct:
            severity = "WARNING"
            message = f"Rolling uptime {uptime_pct:.2f}% below {self.settings.uptime_warning_pct}%"
        if severity is None:
            return None

        extra = {"severity": severity, "uptime_pct": uptime_pct, "consecutive_failures": consecutive_failures}
        if open_alert is None:
            alert = self.db.insert_alert(
                {
                    "id": str(uuid.uuid4()),
                    "severity": severity,
                    "message": message,
                    "uptime_percentage": uptime_pct,
                    "consecutive_failures": consecutive_failures,
                    "timestamp": now,
                }
            )
            LOGGER.warning("uptime.alert_opened", extra={**extra, "alert_id": alert["id"]})
            return alert

        if _SEVERITY_RANK[severity] < _SEVERITY_RANK[open_alert["severity"]]:
            severity = open_alert["severity"]
            message = open_alert["message"]
        alert = self.db.escalate_alert(open_alert["id"], severity, message, uptime_pct, consecutive_failures)
        if severity != open_alert["severity"]:
            LOGGER.warning("uptime.alert_escalated", extra={**extra, "alert_id": open_alert["id"]})
        return alert

    def get_uptime_statistics(self, hours: int = 24, now: Optional[datetime] = None) -> Dict[str, Any]:
        timestamp = now or self.clock()
        since = (timestamp - timedelta(hours=hours)).replace(minute=0, second=0, microsecond=0)
        window = self.db.fetch_probe_window(timestamp - WINDOW, WINDOW_PROBES)
        hourly = self.db.fetch_uptime_statistics(since)
        return {
            "hours": hours,
            "currentUptimePercentage": rolling_uptime(window),
            "probeCount": len(window),
            "warningThreshold": self.settings.uptime_warning_pct,
            "criticalThreshold": self.settings.uptime_critical_pct,
            "hourly": [
                {
                    "hour": _iso(row["hour"]),
                    "totalChecks": row["total_checks"],
                    "successfulChecks": row["successful_checks"],
                    "failedChecks": row["failed_checks"],
                    "uptimePercentage": row["uptime_percentage"],
                    "meetsThreshold": row["meets_threshold"],
                }
                for row in hourly
            ],
        }

    def active_alerts(self) -> list[Dict[str, Any]]:
        return self.db.fetch_active_alerts()

    def resolve_alert(self, alert_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        alert = self.db.resolve_alert(alert_id, now or self.clock())
        if alert is None:
            raise AlertNotFound(f"Alert {alert_id} not found.")
        LOGGER.info("uptime.alert_resolved", extra={"alert_id": alert_id, "mode": "manual"})
        return alert

    def run_forever(self, interval: Optional[float] = None) -> None:
        period = interval if interval is not None else self.settings.uptime_interval_sec
        LOGGER.info("uptime.started", extra={"duration_ms": period * 1000})
        while not self._stop.is_set():
            try:
                self.probe_once()
            except Exception:
                LOGGER.exception("uptime.probe_error")
            self._stop.wait(period)

    def stop(self) -> None:
        self._stop.set()


def main() -> None:
    configure_logging()
    UptimeMonitor(get_database(), get_object_store()).run_forever()


if __name__ == "__main__":
    main()
