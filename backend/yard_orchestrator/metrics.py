import logging
from datetime import timezone as dt_timezone
from typing import Any, Dict

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .models import Host, HostMetric
from .progress import publish_host_event
from .validation import raise_for, schema_errors

logger = logging.getLogger(__name__)

_PERCENT = {"type": "number", "minimum": 0, "maximum": 100}
_AMOUNT = {"type": "integer", "minimum": 0}

METRIC_SCHEMA = {
    "type": "object",
    "required": [
        "cpu_usage",
        "memory_total_mb",
        "memory_used_mb",
        "memory_usage_percentage",
        "storage_total_gb",
        "storage_used_gb",
        "storage_usage_percentage",
        "collected_at",
    ],
    "properties": {
        "cpu_usage": _PERCENT,
        "memory_total_mb": _AMOUNT,
        "memory_used_mb": _AMOUNT,
        "memory_usage_percentage": _PERCENT,
        "storage_total_gb": _AMOUNT,
        "storage_used_gb": _AMOUNT,
        "storage_usage_percentage": _PERCENT,
        "collected_at": {"type": "string", "minLength": 1},
    },
}


def ingest_metrics(host: Host, payload: Dict[str, Any]) -> HostMetric:
    """Validate and store one sample pushed by the host's metrics agent."""
    errors = schema_errors(METRIC_SCHEMA, payload)
    raise_for(errors, "Invalid metrics sample")
    try:
        collected_at = parse_datetime(payload["collected_at"])
    except ValueError:
        collected_at = None
    if collected_at is None:
        errors.append("collected_at must be an ISO 8601 timestamp")
    elif timezone.is_naive(collected_at):
        collected_at = timezone.make_aware(collected_at, dt_timezone.utc)
    if payload["memory_used_mb"] > payload["memory_total_mb"]:
        errors.append("memory_used_mb cannot exceed memory_total_mb")
    if payload["storage_used_gb"] > payload["storage_total_gb"]:
        errors.append("storage_used_gb cannot exceed storage_total_gb")
    raise_for(errors, "Invalid metrics sample")
    sample = HostMetric.objects.create(
        host=host,
        cpu_usage=payload["cpu_usage"],
        memory_total_mb=payload["memory_total_mb"],
        memory_used_mb=payload["memory_used_mb"],
        memory_usage_percentage=payload["memory_usage_percentage"],
        storage_total_gb=payload["storage_total_gb"],
        storage_used_gb=payload["storage_used_gb"],
        storage_usage_percentage=payload["storage_usage_percentage"],
        collected_at=collected_at,
    )
    logger.debug("stored metrics sample for host %s at %s", host.pk, collected_at)
    publish_host_event(
        host.pk,
        "metrics.sample",
        {
            "cpu_usage": sample.cpu_usage,
            "memory_usage_percentage": sample.memory_usage_percentage,
            "storage_usage_percentage": sample.storage_usage_percentage,
            "collected_at": collected_at.isoformat(),
        },
    )
    return sample
