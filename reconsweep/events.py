"""
Typed publish/subscribe boundary for scan lifecycle and discovery events.

Events are a closed set of frozen dataclasses. Each carries an ``event_type``
tag, a ``timestamp`` and a ``source`` plus its own fields. Delivery is
best-effort: a failing handler is logged and never reaches the publisher.
"""

import dataclasses
import logging
import threading
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, ClassVar, Dict, List, Optional

from .models import NodeStatus, ScanStatus, ScanType, Severity, utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SCAN_LAUNCHED = "ScanLaunched"
    PORT_DISCOVERED = "PortDiscovered"
    VULNERABILITY_DISCOVERED = "VulnerabilityDiscovered"
    CRITICAL_VULNERABILITY_ALERT = "CriticalVulnerabilityAlert"
    SCAN_PROGRESS_UPDATE = "ScanProgressUpdate"
    SCAN_COMPLETED = "ScanCompleted"
    TOPOLOGY_UPDATED = "TopologyUpdated"
    CONFIGURATION_APPLIED = "ConfigurationApplied"
    NODE_STATUS_CHANGED = "NodeStatusChanged"


@dataclass(frozen=True, kw_only=True)
class Event:
    event_type: ClassVar[EventType]
    source: str = "ReconSweep"
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        data = {"eventType": self.event_type.value}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            data[f.name] = value
        return data


@dataclass(frozen=True, kw_only=True)
class ScanLaunched(Event):
    event_type: ClassVar[EventType] = EventType.SCAN_LAUNCHED
    scan_id: str
    scan_type: ScanType
    target_count: int
    source: str = "SecurityScanner"


@dataclass(frozen=True, kw_only=True)
class PortDiscovered(Event):
    event_type: ClassVar[EventType] = EventType.PORT_DISCOVERED
    node_id: str
    ip_address: str
    port: int
    service: str
    source: str = "PortScanner"


@dataclass(frozen=True, kw_only=True)
class VulnerabilityDiscovered(Event):
    event_type: ClassVar[EventType] = EventType.VULNERABILITY_DISCOVERED
    vulnerability_id: str
    severity: Severity
    title: str
    ip_address: str
    port: int
    source: str = "SecurityScanner"


@dataclass(frozen=True, kw_only=True)
class CriticalVulnerabilityAlert(Event):
    event_type: ClassVar[EventType] = EventType.CRITICAL_VULNERABILITY_ALERT
    vulnerability_id: str
    title: str
    ip_address: str
    port: int
    cve_id: Optional[str] = None
    priority: str = "URGENT"
    source: str = "SecurityScanner"


@dataclass(frozen=True, kw_only=True)
class ScanProgressUpdate(Event):
    event_type: ClassVar[EventType] = EventType.SCAN_PROGRESS_UPDATE
    scan_id: str
    percent_complete: float
    current_operation: str
    status: ScanStatus = ScanStatus.RUNNING
    source: str = "SecurityScanner"


@dataclass(frozen=True, kw_only=True)
class ScanCompleted(Event):
    event_type: ClassVar[EventType] = EventType.SCAN_COMPLETED
    scan_id: str
    scan_type: ScanType
    status: ScanStatus
    vulnerability_count: int
    critical_count: int = 0
    duration: float = 0.0
    source: str = "SecurityScanner"


@dataclass(frozen=True, kw_only=True)
class TopologyUpdated(Event):
    event_type: ClassVar[EventType] = EventType.TOPOLOGY_UPDATED
    node_count: int
    edge_count: int
    active_nodes: int = 0
    anomaly_count: int = 0
    source: str = "NetworkScanner"


@dataclass(frozen=True, kw_only=True)
class ConfigurationApplied(Event):
    event_type: ClassVar[EventType] = EventType.CONFIGURATION_APPLIED
    node_id: str
    command: str
    success: bool
    message: str = ""
    source: str = "ConfigurationManager"


@dataclass(frozen=True, kw_only=True)
class NodeStatusChanged(Event):
    event_type: ClassVar[EventType] = EventType.NODE_STATUS_CHANGED
    node_id: str
    old_status: NodeStatus
    new_status: NodeStatus
    reason: str = ""
    source: str = "NetworkScanner"


Handler = Callable[[Event], None]


class EventPublisher:
    """
    Fans events out to subscribers.

    By default handlers run on a single background thread so publishing never
    blocks the scan, and delivery order equals publish order. Pass
    ``synchronous=True`` to run handlers inline in the publishing thread.
    """

    def __init__(self, synchronous: bool = False):
        self.synchronous = synchronous
        self._lock = threading.Lock()
        self._handlers: Dict[EventType, List[Handler]] = defaultdict(list)
        self._global_handlers: List[Handler] = []
        self._counts: Counter = Counter()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._closed = False

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        with self._lock:
            self._handlers[EventType(event_type)].append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: EventType, handler: Handler) -> bool:
        with self._lock:
            handlers = self._handlers.get(EventType(event_type), [])
            if handler in handlers:
                handlers.remove(handler)
                return True
            return False

    def publish(self, event: Event) -> None:
        """Queue event for delivery. Never raises because of a handler."""
        with self._lock:
            if self._closed:
                logger.debug("Publisher closed, dropping %s", event.event_type.value)
                return
            self._counts[event.event_type] += 1
            handlers = list(self._handlers.get(event.event_type, ())) + list(self._global_handlers)
            if not self.synchronous and self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="events")
            executor = self._executor

        if self.synchronous or executor is None:
            self._deliver(event, handlers)
            return
        try:
            executor.submit(self._deliver, event, handlers)
        except RuntimeError:
            # close() shut the executor down after the lock was released
            logger.debug("Publisher shut down, dropping %s", event.event_type.value)

    def _deliver(self, event: Event, handlers: List[Handler]) -> None:
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler %r failed for %s", handler, event.event_type.value
                )

    def flush(self, timeout: Optional[float] = 5.0) -> bool:
        """Block until every event published so far has been delivered."""
        with self._lock:
            executor = self._executor
        if executor is None:
            return True
        try:
            marker = executor.submit(lambda: None)
        except RuntimeError:
            return True
        try:
            marker.result(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True

    def counts(self) -> Dict[str, int]:
        """Number of events published so far, per event type."""
        with self._lock:
            return {etype.value: n for etype, n in self._counts.items()}

    def close(self) -> None:
        """Deliver pending events and stop the delivery thread."""
        with self._lock:
            self._closed = True
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
