"""
Counters, step timings and structured lifecycle logging
"""
import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Dict, List, Optional


class MetricsRecorder:
    """In-process counters and timings, keyed by name and label set"""

    def __init__(self):
        self.counters: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self.timings: Dict[str, Dict[str, List[float]]] = defaultdict(lambda: defaultdict(list))

    def inc(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 1):
        self.counters[name][self._labels_key(labels)] += value

    def observe(self, name: str, seconds: float, labels: Optional[Dict[str, str]] = None):
        self.timings[name][self._labels_key(labels)].append(seconds)

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self.counters.get(name, {}).get(self._labels_key(labels), 0.0)

    def total(self, name: str) -> float:
        """Sum of a counter across all label sets"""
        return sum(self.counters.get(name, {}).values())

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        return {name: dict(values) for name, values in self.counters.items()}

    def timing_summary(self) -> Dict[str, Dict[str, Dict[str, float]]]:
        summary = {}
        for name, series in self.timings.items():
            summary[name] = {
                labels: {
                    "count": len(samples),
                    "avg": sum(samples) / len(samples),
                    "max": max(samples),
                }
                for labels, samples in series.items() if samples
            }
        return summary

    @staticmethod
    def _labels_key(labels: Optional[Dict[str, str]]) -> str:
        if not labels:
            return ""
        return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


class TracingManager:
    """Times node steps; durations go to the debug log and, if given, the recorder"""

    def __init__(self, metrics: Optional[MetricsRecorder] = None):
        self.metrics = metrics
        self.logger = logging.getLogger("salesbot.tracing")

    @contextmanager
    def span(self, name: str, **attrs: str):
        started = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - started
            self.logger.debug(
                f"{name} took {duration * 1000:.2f}ms "
                + " ".join(f"{k}={v}" for k, v in attrs.items())
            )
            if self.metrics is not None:
                labels = {"node_type": attrs["node_type"]} if "node_type" in attrs else None
                self.metrics.observe(f"{name}_seconds", duration, labels)


class EventLogger:
    """Lifecycle events on the ``salesbot.events`` logger"""

    def __init__(self):
        self.logger = logging.getLogger("salesbot.events")

    def log(self, event: str, **payload: Any):
        level = logging.WARNING if event.endswith(".failed") else logging.INFO
        fields = " ".join(f"{k}={v}" for k, v in payload.items() if v is not None)
        self.logger.log(level, f"{event} {fields}", extra={"event_payload": payload})
