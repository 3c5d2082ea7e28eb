"""Threshold alerts over the metrics hosts push in.

A monitor triggers when every sample in its trailing window breaches the
threshold and recovers once they no longer all do. A triggered monitor is
not re-evaluated until its cooldown has passed.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from django.utils import timezone

from .models import Host, HostMetric, HostMonitor
from .progress import publish_host_event
from .validation import name_errors, raise_for, schema_errors

logger = logging.getLogger(__name__)

METRIC_COLUMNS = {
    "cpu": "cpu_usage",
    "memory": "memory_usage_percentage",
    "storage": "storage_usage_percentage",
}

MONITOR_SCHEMA = {
    "type": "object",
    "required": ["name", "metric_type", "operator", "threshold"],
    "properties": {
        "name": {"type": "string", "maxLength": 100},
        "metric_type": {"type": "string", "enum": sorted(METRIC_COLUMNS)},
        "operator": {"type": "string", "enum": [">", ">=", "<", "<=", "=="]},
        "threshold": {"type": "number", "minimum": 0, "maximum": 100},
        "duration_minutes": {"type": "integer", "minimum": 1, "maximum": 1440},
        "cooldown_minutes": {"type": "integer", "minimum": 0, "maximum": 10080},
        "enabled": {"type": "boolean"},
    },
}


def create_monitor(host: Host, payload: Dict[str, Any]) -> HostMonitor:
    errors = schema_errors(MONITOR_SCHEMA, payload)
    raise_for(errors, "Invalid monitor")
    raise_for(name_errors(payload["name"]), "Invalid monitor")
    fields = {key: payload[key] for key in MONITOR_SCHEMA["properties"] if key in payload}
    return HostMonitor.objects.create(host=host, **fields)


def breaches(operator: str, value: float, threshold: float) -> bool:
    if operator == ">":
        return value > threshold
    if operator == ">=":
        return value >= threshold
    if operator == "<":
        return value < threshold
    if operator == "<=":
        return value <= threshold
    if operator == "==":
        return abs(value - threshold) < 0.01
    return False


def _due(monitor: HostMonitor, now) -> bool:
    if monitor.status == "normal" or monitor.last_triggered_at is None:
        return True
    return now >= monitor.last_triggered_at + timedelta(minutes=monitor.cooldown_minutes)


def evaluate(monitor: HostMonitor, now=None) -> Optional[str]:
    """Evaluate one monitor and return "triggered", "recovered" or None."""
    now = now or timezone.now()
    if not _due(monitor, now):
        return None
    column = METRIC_COLUMNS[monitor.metric_type]
    since = now - timedelta(minutes=monitor.duration_minutes)
    values = list(
        HostMetric.objects.filter(host_id=monitor.host_id, collected_at__gte=since)
        .order_by("-collected_at")
        .values_list(column, flat=True)
    )
    if not values:
        return None
    breached = all(breaches(monitor.operator, float(value), monitor.threshold) for value in values)
    if breached and monitor.status == "normal":
        monitor.status = "triggered"
        monitor.last_triggered_at = now
        monitor.save(update_fields=["status", "last_triggered_at", "updated_at"])
        outcome = "triggered"
    elif not breached and monitor.status == "triggered":
        monitor.status = "normal"
        monitor.last_recovered_at = now
        monitor.save(update_fields=["status", "last_recovered_at", "updated_at"])
        outcome = "recovered"
    else:
        return None
    logger.warning(
        "monitor %s (%s %s %s) %s on host %s at %.1f",
        monitor.name,
        monitor.metric_type,
        monitor.operator,
        monitor.threshold,
        outcome,
        monitor.host_id,
        values[0],
    )
    publish_host_event(
        monitor.host_id,
        f"monitor.{outcome}",
        {"monitor_id": str(monitor.pk), "name": monitor.name, "metric_type": monitor.metric_type, "value": values[0]},
    )
    return outcome


def evaluate_monitors(now=None) -> Tuple[int, int]:
    now = now or timezone.now()
    triggered = recovered = 0
    for monitor in HostMonitor.objects.filter(enabled=True):
        outcome = evaluate(monitor, now)
        if outcome == "triggered":
            triggered += 1
        elif outcome == "recovered":
            recovered += 1
    return triggered, recovered
