"""Bounded-concurrency TCP connect prober with retry on transient failures."""

import errno
import logging
import queue
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, Optional

from .config import MAX_RETRIES_LIMIT

logger = logging.getLogger(__name__)

# errno values that mean "try again" rather than "closed"
_TRANSIENT_ERRNOS = {
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ETIMEDOUT,
    errno.EAGAIN,
}

Connector = Callable[[str, int, float], None]


def tcp_connect(host: str, port: int, timeout: float) -> None:
    """Open and immediately close a TCP connection. Raises OSError on failure."""
    with socket.create_connection((host, port), timeout=timeout):
        pass


def is_transient(exc: OSError) -> bool:
    """True for failures worth retrying (reset, timeout, unreachable)."""
    if isinstance(exc, ConnectionRefusedError):
        return False
    if isinstance(exc, (socket.timeout, TimeoutError, ConnectionResetError, ConnectionAbortedError)):
        return True
    return exc.errno in _TRANSIENT_ERRNOS


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base_delay, base_delay * factor, ..."""
    max_retries: int = 2
    base_delay: float = 0.05
    factor: float = 2.0

    def __post_init__(self):
        if not 0 <= self.max_retries <= MAX_RETRIES_LIMIT:
            raise ValueError(f"max_retries must be between 0 and {MAX_RETRIES_LIMIT}")

    def delays(self) -> Iterator[float]:
        delay = self.base_delay
        for _ in range(self.max_retries):
            yield delay
            delay *= self.factor


class PortProber:
    """
    Probes a port set on one host and returns the ports accepting connections.

    At most ``max_concurrency`` connection attempts are in flight at any time:
    a fixed pool of workers drains a shared queue of ports, so a large port set
    never turns into one task (or one socket) per port.
    """

    def __init__(
        self,
        timeout: float = 0.2,
        max_concurrency: int = 50,
        retry: Optional[RetryPolicy] = None,
        max_ports: Optional[int] = None,
        connect: Connector = tcp_connect,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.timeout = timeout
        self.max_concurrency = max_concurrency
        self.retry = retry or RetryPolicy()
        self.max_ports = max_ports
        self.connect = connect
        self.sleep = sleep

    def probe(
        self,
        host: str,
        ports: Iterable[int],
        cancel: Optional[threading.Event] = None,
    ) -> List[int]:
        """
        Return the sorted subset of ports that accepted a TCP connection.

        Stops early (returning what was found so far) once cancel is set.
        """
        port_list = list(dict.fromkeys(ports))
        if self.max_ports is not None:
            port_list = port_list[: self.max_ports]
        if not port_list:
            return []

        pending: "queue.SimpleQueue[int]" = queue.SimpleQueue()
        for port in port_list:
            pending.put(port)

        workers = min(self.max_concurrency, len(port_list))
        logger.debug("Probing %d ports on %s with %d workers", len(port_list), host, workers)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as pool:
            futures = [pool.submit(self._worker, host, pending, cancel) for _ in range(workers)]
            open_ports = [port for fut in futures for port in fut.result()]

        return sorted(open_ports)

    def _worker(
        self,
        host: str,
        pending: "queue.SimpleQueue[int]",
        cancel: Optional[threading.Event],
    ) -> List[int]:
        found: List[int] = []
        while not (cancel is not None and cancel.is_set()):
            try:
                port = pending.get_nowait()
            except queue.Empty:
                break
            if self.probe_port(host, port, cancel):
                found.append(port)
        return found

    def probe_port(self, host: str, port: int, cancel: Optional[threading.Event] = None) -> bool:
        """Try one port, retrying transient failures with exponential backoff."""
        delays = self.retry.delays()
        attempt = 0
        while True:
            if cancel is not None and cancel.is_set():
                return False
            attempt += 1
            try:
                self.connect(host, port, self.timeout)
                return True
            except OSError as exc:
                if not is_transient(exc):
                    return False
                delay = next(delays, None)
                if delay is None:
                    logger.debug(
                        "%s:%d still failing after %d attempts (%s), treating as closed",
                        host, port, attempt, exc,
                    )
                    return False
                if self._wait(delay, cancel):
                    return False

    def _wait(self, delay: float, cancel: Optional[threading.Event]) -> bool:
        """Back off for delay seconds. Returns True if cancelled while waiting."""
        if cancel is None:
            self.sleep(delay)
            return False
        return cancel.wait(delay)
