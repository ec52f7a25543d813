# core/metrics.py - in-process metrics collection and authz auditing

import time
import threading
import logging
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from contextlib import contextmanager

@dataclass
class MetricCounter:
    """A counter metric that can only increase."""
    name: str
    value: int = 0
    labels: Dict[str, str] = field(default_factory=dict)
    last_updated: float = field(default_factory=time.time)

@dataclass
class MetricHistogram:
    """A histogram metric for tracking distributions."""
    name: str
    buckets: List[float] = field(default_factory=lambda: [0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0, 50.0, 100.0, 250.0])
    counts: List[int] = field(default_factory=lambda: [0] * 10)
    sum: float = 0.0
    count: int = 0
    labels: Dict[str, str] = field(default_factory=dict)
    last_updated: float = field(default_factory=time.time)

class MetricsCollector:
    """Thread-safe metrics collector."""

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: Dict[str, MetricCounter] = {}
        self._histograms: Dict[str, MetricHistogram] = {}
        self._start_time = time.time()

    def _get_metric_key(self, name: str, labels: Dict[str, str] = None) -> str:
        """Generate a unique key for a metric with labels."""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def increment_counter(self, name: str, value: int = 1, labels: Dict[str, str] = None):
        with self._lock:
            key = self._get_metric_key(name, labels)
            if key not in self._counters:
                self._counters[key] = MetricCounter(name=name, labels=labels or {})
            self._counters[key].value += value
            self._counters[key].last_updated = time.time()

    def observe_histogram(self, name: str, value: float, labels: Dict[str, str] = None):
        with self._lock:
            key = self._get_metric_key(name, labels)
            if key not in self._histograms:
                self._histograms[key] = MetricHistogram(name=name, labels=labels or {})

            histogram = self._histograms[key]
            histogram.sum += value
            histogram.count += 1
            histogram.last_updated = time.time()

            for i, bucket in enumerate(histogram.buckets):
                if value <= bucket:
                    histogram.counts[i] += 1
                    break
            else:
                # Overflow lands in the last bucket
                histogram.counts[-1] += 1

    def get_counter(self, name: str, labels: Dict[str, str] = None) -> int:
        with self._lock:
            counter = self._counters.get(self._get_metric_key(name, labels))
            return counter.value if counter else 0

    def get_histogram_stats(self, name: str, labels: Dict[str, str] = None) -> Dict[str, Any]:
        """Get histogram statistics."""
        with self._lock:
            key = self._get_metric_key(name, labels)
            histogram = self._histograms.get(key, MetricHistogram(name=name, labels=labels or {}))

            return {
                "count": histogram.count,
                "sum": histogram.sum,
                "avg": histogram.sum / histogram.count if histogram.count else 0.0,
                "buckets": dict(zip(histogram.buckets, histogram.counts))
            }

    def get_all_metrics(self) -> Dict[str, Any]:
        """Get all metrics in a structured format."""
        with self._lock:
            metrics = {
                "counters": {},
                "histograms": {},
                "uptime_seconds": time.time() - self._start_time,
                "timestamp": time.time()
            }

            for counter in self._counters.values():
                metrics["counters"].setdefault(counter.name, []).append({
                    "value": counter.value,
                    "labels": counter.labels,
                    "last_updated": counter.last_updated
                })

            for histogram in self._histograms.values():
                metrics["histograms"].setdefault(histogram.name, []).append({
                    "stats": self.get_histogram_stats(histogram.name, histogram.labels),
                    "labels": histogram.labels,
                    "last_updated": histogram.last_updated
                })

            return metrics

    def reset_metrics(self):
        """Reset all metrics to zero."""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
            self._start_time = time.time()

# Global metrics collector instance
_metrics = MetricsCollector()

# Denials go to their own logger so they can be routed to a security sink
audit_logger = logging.getLogger("authz.audit")

def increment_counter(name: str, value: int = 1, labels: Dict[str, str] = None):
    """Increment a counter metric."""
    _metrics.increment_counter(name, value, labels)

def observe_histogram(name: str, value: float, labels: Dict[str, str] = None):
    """Observe a value in a histogram metric."""
    _metrics.observe_histogram(name, value, labels)

def get_counter(name: str, labels: Dict[str, str] = None) -> int:
    """Get the current value of a counter."""
    return _metrics.get_counter(name, labels)

def get_histogram_stats(name: str, labels: Dict[str, str] = None) -> Dict[str, Any]:
    return _metrics.get_histogram_stats(name, labels)

def get_all_metrics() -> Dict[str, Any]:
    """Get all metrics in a structured format."""
    return _metrics.get_all_metrics()

def reset_metrics():
    """Reset all metrics to zero."""
    _metrics.reset_metrics()

@contextmanager
def time_operation(operation_name: str, labels: Dict[str, str] = None):
    """Context manager to time an operation and record it as a histogram."""
    start_time = time.time()
    try:
        yield
    finally:
        duration_ms = (time.time() - start_time) * 1000
        observe_histogram(f"{operation_name}_latency_ms", duration_ms, labels)

# ============================================================================
# Authorization Metrics and Auditing
# ============================================================================

def record_authz_check(granted: bool, capability: str, reason: str, route: str = ""):
    """
    Record a capability resolution.

    Args:
        granted: Whether the capability was granted
        capability: Capability being checked
        reason: Rule that decided (SUPERUSER, ADMINISTRATOR, ...)
        route: Route being accessed, if any
    """
    increment_counter("authz.checks.by_reason", labels={"reason": reason})
    if granted:
        increment_counter("authz.allowed")
        increment_counter("authz.allowed.by_capability", labels={"capability": capability})
    else:
        increment_counter("authz.denied")
        increment_counter("authz.denied.by_capability", labels={"capability": capability})
        if route:
            increment_counter("authz.denied.by_route", labels={"route": route})


def record_moderation_check(action: str, allowed: bool, rule: str = ""):
    """
    Record a hierarchy guard decision.

    Args:
        action: Moderation action (KICK, BAN, TIMEOUT, MANAGE_ROLES)
        allowed: Whether the actor may act on the target
        rule: Rule that decided
    """
    outcome = "allowed" if allowed else "denied"
    increment_counter(f"authz.moderation.{outcome}", labels={"action": action})
    if rule:
        increment_counter("authz.moderation.by_rule", labels={"rule": rule})


def audit_authz_denial(
    capability: str,
    member_id: Optional[str],
    server_id: Optional[str],
    reason: str,
    source: Optional[str] = None,
    scope: str = "SERVER",
    target_id: Optional[str] = None,
    route: str = "",
    method: str = "unknown",
    metadata: Optional[Dict[str, Any]] = None
):
    """
    Emit audit log entry for a denied capability.

    The entry carries the resolver's reason and source so that "why was this
    denied" can be answered from the log alone.

    Args:
        capability: Capability that was denied
        member_id: Member who was denied (None when unidentified)
        server_id: Server the request targeted
        reason: Rule that denied
        source: Role or override id responsible, if any
        scope: Scope of the request
        target_id: Category or channel id, if any
        route: Route/endpoint being accessed
        method: HTTP method
        metadata: Additional context
    """
    audit_entry = {
        "event": "authz_denial",
        "capability": capability,
        "member_id": member_id or "anonymous",
        "server_id": server_id,
        "scope": scope,
        "target_id": target_id,
        "reason": reason,
        "source": source,
        "route": route,
        "method": method,
        "timestamp": time.time(),
    }

    if metadata:
        audit_entry["metadata"] = metadata

    audit_logger.warning(
        f"AUTHZ_DENIAL capability={capability} member={member_id or 'anonymous'} "
        f"server={server_id} reason={reason} source={source} route={method} {route}",
        extra={"audit": audit_entry}
    )

    increment_counter("authz.audit.denials")
    increment_counter("authz.audit.denials.by_capability", labels={"capability": capability})


def get_authz_metrics() -> Dict[str, Any]:
    """
    Get all authorization-related metrics.

    Returns:
        Counters grouped by their second name segment
        (checks, allowed, denied, moderation, audit, cache, ...)
    """
    all_metrics = _metrics.get_all_metrics()

    authz_metrics: Dict[str, Any] = {
        "checks": {},
        "allowed": {},
        "denied": {},
        "moderation": {},
        "audit": {},
        "cache": {},
    }

    for metric_name, metric_data in all_metrics.get("counters", {}).items():
        if not metric_name.startswith("authz."):
            continue
        category = metric_name.split(".")[1]
        authz_metrics.setdefault(category, {})[metric_name] = metric_data

    return authz_metrics
