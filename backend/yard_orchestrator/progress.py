"""Milestone events and the per-host progress channel.

Every milestone is persisted as an OperationEvent row first and then
published on ``shipyard:hosts:<host_id>`` for live consumers. The row is the
record of truth; a consumer that misses a broadcast replays from the table.
"""

import json
import logging
import queue
import threading
import uuid
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional, Protocol

import redis
from django.conf import settings
from django.utils import timezone

from .models import ManagedResource, OperationEvent

logger = logging.getLogger(__name__)

FINAL_STATUSES = {"success", "failed"}


def host_channel(host_id) -> str:
    return f"shipyard:hosts:{host_id}"


class Broadcaster(Protocol):
    def publish(self, channel: str, message: Dict[str, Any]) -> None: ...


class MemoryBroadcaster:
    """In-process fan-out with a bounded backlog per channel."""

    def __init__(self, backlog_size: int = 500):
        self._backlogs: Dict[str, Deque[Dict[str, Any]]] = defaultdict(lambda: deque(maxlen=backlog_size))
        self._subscribers: Dict[str, List[queue.Queue]] = defaultdict(list)
        self._mutex = threading.Lock()

    def publish(self, channel: str, message: Dict[str, Any]) -> None:
        with self._mutex:
            self._backlogs[channel].append(message)
            for subscriber in self._subscribers[channel]:
                try:
                    subscriber.put_nowait(message)
                except queue.Full:
                    # Slow consumers replay from the events table.
                    pass

    def subscribe(self, channel: str, maxsize: int = 256) -> queue.Queue:
        subscriber: queue.Queue = queue.Queue(maxsize=maxsize)
        with self._mutex:
            self._subscribers[channel].append(subscriber)
        return subscriber

    def unsubscribe(self, channel: str, subscriber: queue.Queue) -> None:
        with self._mutex:
            try:
                self._subscribers[channel].remove(subscriber)
            except ValueError:
                pass

    def history(self, channel: str) -> List[Dict[str, Any]]:
        with self._mutex:
            return list(self._backlogs[channel])


class RedisBroadcaster:
    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._client = None

    def _get_client(self):
        if self._client is None:
            self._client = redis.Redis.from_url(self._redis_url)
        return self._client

    def publish(self, channel: str, message: Dict[str, Any]) -> None:
        try:
            self._get_client().publish(channel, json.dumps(message, default=str))
        except redis.RedisError as exc:
            logger.warning("progress publish on %s failed: %s", channel, exc)


_memory_broadcaster = MemoryBroadcaster()
_redis_broadcasters: Dict[str, RedisBroadcaster] = {}


def get_broadcaster() -> Broadcaster:
    backend = getattr(settings, "SHIPYARD_COORDINATION_BACKEND", "redis")
    if backend == "memory":
        return _memory_broadcaster
    if backend == "redis":
        redis_url = settings.SHIPYARD_JOBS_REDIS_URL
        if redis_url not in _redis_broadcasters:
            _redis_broadcasters[redis_url] = RedisBroadcaster(redis_url)
        return _redis_broadcasters[redis_url]
    raise ValueError(f"Unknown coordination backend: {backend}. Use 'memory' or 'redis'")


def publish_host_event(host_id, event_type: str, payload: Dict[str, Any]) -> None:
    message = {"type": event_type, "host_id": str(host_id), "data": payload}
    get_broadcaster().publish(host_channel(host_id), message)


def _validate_step(current_step: int, total_steps: int, previous_step: Optional[int]) -> None:
    if total_steps < 0 or current_step < 0:
        raise ValueError("Step counters must be non-negative")
    if current_step > total_steps:
        raise ValueError(f"current_step {current_step} exceeds total_steps {total_steps}")
    if previous_step is not None and current_step < previous_step:
        raise ValueError(f"current_step regressed from {previous_step} to {current_step}")


def emit(
    resource_id,
    milestone: str,
    current_step: int,
    total_steps: int,
    status: str,
    details: Optional[Dict[str, Any]] = None,
    *,
    operation_type: str = "install",
    run_id: Optional[uuid.UUID] = None,
    error_log: str = "",
) -> OperationEvent:
    """Append one milestone for ``resource_id`` and broadcast it to the host channel."""
    if status not in dict(OperationEvent.STATUS_CHOICES):
        raise ValueError(f"Unknown milestone status: {status}")
    resource = ManagedResource.objects.select_related("host").get(pk=resource_id)
    run_id = run_id or uuid.uuid4()
    previous = (
        OperationEvent.objects.filter(run_id=run_id).order_by("-id").values("current_step", "total_steps", "status").first()
    )
    if previous:
        if previous["status"] in FINAL_STATUSES:
            raise ValueError(f"Run {run_id} already emitted its final milestone")
        if previous["total_steps"] != total_steps:
            raise ValueError("total_steps is fixed for the whole run")
    _validate_step(current_step, total_steps, previous["current_step"] if previous else None)
    base_details = {
        "host_name": resource.host.name,
        "host_ip": resource.host.public_ip,
        "timestamp": timezone.now().isoformat(),
    }
    base_details.update(details or {})
    event = OperationEvent.objects.create(
        host=resource.host,
        resource=resource,
        resource_kind=resource.kind,
        run_id=run_id,
        operation_type=operation_type,
        milestone=milestone,
        current_step=current_step,
        total_steps=total_steps,
        status=status,
        details_json=base_details,
        error_log=error_log,
    )
    publish_host_event(resource.host_id, "operation.milestone", event.as_payload())
    return event


class MilestoneEmitter:
    """Tracks a single job run so callers only pass what changes per milestone."""

    def __init__(self, resource: ManagedResource, operation_type: str, total_steps: int):
        self.resource = resource
        self.operation_type = operation_type
        self.total_steps = total_steps
        self.run_id = uuid.uuid4()
        self.current_step = 0
        self.milestone = ""
        self.finished = False

    def emit(self, milestone: str, current_step: int, status: str = "pending", details=None, error_log: str = ""):
        if self.finished:
            raise ValueError("Run already finished")
        event = emit(
            self.resource.pk,
            milestone,
            current_step,
            self.total_steps,
            status,
            details,
            operation_type=self.operation_type,
            run_id=self.run_id,
            error_log=error_log,
        )
        self.current_step = current_step
        self.milestone = milestone
        self.finished = status in FINAL_STATUSES
        return event

    def succeed(self, details=None) -> OperationEvent:
        label = "Installed" if self.operation_type == "install" else "Uninstalled"
        return self.emit(label, self.total_steps, "success", details)

    def fail(self, error_log: str, details=None) -> OperationEvent:
        milestone = self.milestone or "Starting"
        return self.emit(milestone, self.current_step, "failed", details, error_log=error_log)
