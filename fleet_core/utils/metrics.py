import json
import os
import time
from threading import RLock
from typing import Any, Dict, Optional

HISTOGRAM_WINDOW = 1000

class MetricsCollector:
    """Counts protocol events for one fleet node (polls, claims, status reports)."""

    def __init__(self, component_name: str, storage_dir: Optional[str] = None, logger=None):
        self.component_name = component_name
        self.storage_dir = storage_dir
        self.logger = logger
        self.lock = RLock()

        self.start_time = time.time()
        self.metrics = {
            "counters": {},     # e.g. claims_accepted
            "gauges": {},       # e.g. busy
            "histograms": {},   # e.g. mission_duration
            "timers": {}        # timer_id -> (name, labels, start_time)
        }

        if self.storage_dir:
            os.makedirs(self.storage_dir, exist_ok=True)
            self.metrics_file = os.path.join(self.storage_dir, f"{component_name}_metrics.json")
        else:
            self.metrics_file = None

    def inc_counter(self, name: str, value: int = 1, labels: Dict[str, str] = None):
        """Increment a counter metric."""
        with self.lock:
            key = self._get_key(name, labels)
            self.metrics["counters"][key] = self.metrics["counters"].get(key, 0) + value

    def get_counter(self, name: str, labels: Dict[str, str] = None) -> int:
        with self.lock:
            return self.metrics["counters"].get(self._get_key(name, labels), 0)

    def set_gauge(self, name: str, value: float, labels: Dict[str, str] = None):
        """Set a gauge metric to a specific value."""
        with self.lock:
            self.metrics["gauges"][self._get_key(name, labels)] = value

    def observe(self, name: str, value: float, labels: Dict[str, str] = None):
        """Add an observation to a histogram metric."""
        with self.lock:
            values = self.metrics["histograms"].setdefault(self._get_key(name, labels), [])
            values.append(value)
            if len(values) > HISTOGRAM_WINDOW:
                del values[:-HISTOGRAM_WINDOW]

    def start_timer(self, name: str, labels: Dict[str, str] = None) -> str:
        """Start a timer and return a timer ID."""
        timer_id = f"{time.time()}_{name}_{hash(str(labels))}"
        with self.lock:
            self.metrics["timers"][timer_id] = {
                "name": name,
                "labels": labels,
                "start_time": time.time()
            }
        return timer_id

    def is_timer_running(self, timer_id: str) -> bool:
        with self.lock:
            return timer_id in self.metrics["timers"]

    def stop_timer(self, timer_id: str) -> Optional[float]:
        """Stop a timer and record its duration in the histogram."""
        with self.lock:
            timer = self.metrics["timers"].pop(timer_id, None)
            if timer is None:
                if self.logger:
                    self.logger.warning(f"Timer '{timer_id}' not found")
                return None
            duration = time.time() - timer["start_time"]
            self.observe(timer["name"], duration, timer["labels"])
            return duration

    def get_metrics(self) -> Dict[str, Any]:
        """Get the current metrics as a dictionary."""
        with self.lock:
            histogram_stats = {}
            for key, values in self.metrics["histograms"].items():
                if not values:
                    continue
                sorted_values = sorted(values)
                n = len(sorted_values)
                histogram_stats[key] = {
                    "count": n,
                    "min": sorted_values[0],
                    "max": sorted_values[-1],
                    "mean": sum(values) / n,
                    "median": sorted_values[n // 2],
                    "p95": sorted_values[int(n * 0.95)],
                }

            return {
                "component": self.component_name,
                "timestamp": time.time(),
                "uptime_seconds": time.time() - self.start_time,
                "counters": dict(self.metrics["counters"]),
                "gauges": dict(self.metrics["gauges"]),
                "histograms": histogram_stats
            }

    def save_metrics(self) -> bool:
        """Save metrics to disk if storage_dir is set."""
        if not self.metrics_file:
            return False

        try:
            with open(self.metrics_file, 'w') as f:
                json.dump(self.get_metrics(), f, indent=2)
            return True
        except OSError as e:
            if self.logger:
                self.logger.error(f"Failed to save metrics: {e}", exc_info=True)
            return False

    def _get_key(self, name: str, labels: Dict[str, str] = None) -> str:
        if not labels:
            return name
        labels_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{labels_str}}}"
