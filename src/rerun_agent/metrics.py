"""
Run metrics collection.

Writes one JSON line per event to `<runs>/<run_id>/metrics.jsonl` and keeps
in-memory aggregates for the `rerun-agent stats` command.
"""

import json
import time
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Any, List, Dict

from rerun_agent.logging import get_logger

logger = get_logger(__name__)


def utc_now_iso() -> str:
    """Get current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class MetricType(str, Enum):
    """Types of metrics."""

    RUN_START = "run_start"
    RUN_END = "run_end"

    STATUS_POLL = "status_poll"
    TRIGGER_ATTEMPT = "trigger_attempt"
    CONFIRM_FAILURE = "confirm_failure"
    RETRY_SUBMITTED = "retry_submitted"
    DETECTION_WARNING = "detection_warning"
    ADAPTER_ERROR = "adapter_error"

    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    SINK_FAILURE = "sink_failure"


@dataclass
class Metric:
    """Single metric record."""

    ts: str  # ISO timestamp
    run_id: Optional[str]
    metric_type: MetricType
    operation: Optional[str] = None
    success: bool = True
    duration_ms: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["metric_type"] = self.metric_type.value
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class MetricsCollector:
    """
    Collects and persists metrics.

    Persisting is optional; without a runs directory the collector only keeps
    in-memory aggregates.
    """

    METRICS_FILE = "metrics.jsonl"

    def __init__(self, runs_path: Optional[Path] = None):
        self.runs_path = runs_path
        self.run_id: Optional[str] = None
        self.output_path: Optional[Path] = None
        self._metrics: List[Metric] = []
        self._start_times: Dict[str, float] = {}

        self._counts: Dict[str, int] = defaultdict(int)
        self._durations: Dict[str, List[int]] = defaultdict(list)
        self._errors: Dict[str, int] = defaultdict(int)

    def set_run(self, run_id: str) -> None:
        """Start collecting for a new run; aggregates are reset."""
        self.run_id = run_id
        self.output_path = self.runs_path / run_id / self.METRICS_FILE if self.runs_path else None
        self._metrics = []
        self._start_times = {}
        self._counts = defaultdict(int)
        self._durations = defaultdict(list)
        self._errors = defaultdict(int)

    def record(
        self,
        metric_type: MetricType,
        operation: Optional[str] = None,
        success: bool = True,
        duration_ms: Optional[int] = None,
        **data: Any,
    ) -> Metric:
        """Record a metric."""
        metric = Metric(
            ts=utc_now_iso(),
            run_id=self.run_id,
            metric_type=metric_type,
            operation=operation,
            success=success,
            duration_ms=duration_ms,
            data=data,
        )

        self._metrics.append(metric)
        self._update_aggregates(metric)
        self._persist(metric)

        return metric

    def start_timer(self, key: str) -> None:
        self._start_times[key] = time.monotonic()

    def stop_timer(self, key: str) -> Optional[int]:
        """Stop a timer and return its duration in milliseconds."""
        start = self._start_times.pop(key, None)
        if start is None:
            return None
        return int((time.monotonic() - start) * 1000)

    @property
    def metrics(self) -> List[Metric]:
        return list(self._metrics)

    def count(self, metric_type: MetricType) -> int:
        return self._counts.get(metric_type.value, 0)

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        return {
            "run_id": self.run_id,
            "total_metrics": len(self._metrics),
            "counts": dict(self._counts),
            "errors": dict(self._errors),
            "durations": {k: _duration_stats(v) for k, v in self._durations.items() if v},
        }

    def _update_aggregates(self, metric: Metric) -> None:
        key = metric.metric_type.value

        self._counts[key] += 1

        if metric.duration_ms is not None:
            self._durations[key].append(metric.duration_ms)

        if not metric.success:
            self._errors[key] += 1

    def _persist(self, metric: Metric) -> None:
        """Write metric to file."""
        if not self.output_path:
            return

        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.output_path, "a") as f:
                f.write(metric.to_json() + "\n")
        except OSError as e:
            logger.warning("Failed to persist metric", error=str(e))


class RunMetrics:
    """
    High-level run metrics used by the controller.
    """

    def __init__(self, collector: Optional[MetricsCollector] = None):
        self.collector = collector or MetricsCollector()

    def run_start(self, run_id: str, max_retry_count: int) -> None:
        self.collector.set_run(run_id)
        self.collector.start_timer("run")
        self.collector.record(MetricType.RUN_START, max_retry_count=max_retry_count)

    def run_end(self, phase: str, retry_count: int, reason: Optional[str] = None) -> None:
        self.collector.record(
            MetricType.RUN_END,
            success=phase == "finished",
            duration_ms=self.collector.stop_timer("run"),
            phase=phase,
            retry_count=retry_count,
            reason=reason,
        )

    def status_poll(self, status: str, duration_ms: Optional[int] = None) -> None:
        self.collector.record(
            MetricType.STATUS_POLL,
            operation="status",
            duration_ms=duration_ms,
            status=status,
        )

    def trigger_attempt(self, success: bool) -> None:
        self.collector.record(MetricType.TRIGGER_ATTEMPT, operation="trigger", success=success)

    def confirm_failure(self) -> None:
        self.collector.record(MetricType.CONFIRM_FAILURE, operation="confirm", success=False)

    def retry_submitted(self, retry_count: int) -> None:
        self.collector.record(MetricType.RETRY_SUBMITTED, retry_count=retry_count)

    def detection_warning(self, reason: str) -> None:
        self.collector.record(MetricType.DETECTION_WARNING, success=False, reason=reason)

    def adapter_error(self, operation: str, error: str) -> None:
        self.collector.record(MetricType.ADAPTER_ERROR, operation=operation, success=False, error=error)

    def cancelled(self, reason: str) -> None:
        metric_type = MetricType.TIMEOUT if reason == "timed out" else MetricType.CANCELLED
        self.collector.record(metric_type, reason=reason)

    def sink_failure(self, sink: str, error: str) -> None:
        self.collector.record(MetricType.SINK_FAILURE, operation=sink, success=False, error=error)


def _duration_stats(values: List[int]) -> Dict[str, Any]:
    return {
        "count": len(values),
        "total_ms": sum(values),
        "avg_ms": sum(values) / len(values),
        "min_ms": min(values),
        "max_ms": max(values),
    }


def load_run_metrics(run_path: Path) -> List[Metric]:
    """
    Load metrics written for one run.

    Malformed lines are skipped.
    """
    metrics_file = run_path / MetricsCollector.METRICS_FILE
    if not metrics_file.exists():
        return []

    metrics = []
    with open(metrics_file, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                data["metric_type"] = MetricType(data["metric_type"])
                metrics.append(Metric(**data))
            except (ValueError, KeyError, TypeError):
                continue

    return metrics


def aggregate_run_stats(run_path: Path) -> Dict[str, Any]:
    """Aggregate stats from a run's metrics file."""
    metrics = load_run_metrics(run_path)

    if not metrics:
        return {}

    counts: Dict[str, int] = defaultdict(int)
    durations: Dict[str, List[int]] = defaultdict(list)
    errors = 0
    end: Optional[Metric] = None

    for m in metrics:
        counts[m.metric_type.value] += 1
        if m.duration_ms is not None:
            durations[m.metric_type.value].append(m.duration_ms)
        if not m.success:
            errors += 1
        if m.metric_type == MetricType.RUN_END:
            end = m

    return {
        "run_id": metrics[0].run_id,
        "started_at": metrics[0].ts,
        "total_metrics": len(metrics),
        "counts": dict(counts),
        "durations": {k: _duration_stats(v) for k, v in durations.items()},
        "errors": errors,
        "phase": end.data.get("phase") if end else None,
        "retry_count": end.data.get("retry_count") if end else None,
        "reason": end.data.get("reason") if end else None,
    }
