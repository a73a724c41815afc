"""Target liveness check via the system ping command, with a TCP fallback."""

import logging
import math
import platform
import shutil
import subprocess
from typing import Callable, Iterable, List, Optional

from .models import ScanTarget
from .prober import tcp_connect

logger = logging.getLogger(__name__)

# Ports tried when ICMP is blocked or ping is missing
_FALLBACK_PORTS = (80, 443, 22)


def build_ping_command(host: str, timeout: float, count: int = 1) -> Optional[List[str]]:
    """Return an argv for one ping round, or None when no ping binary is installed."""
    ping_path = shutil.which("ping")
    if not ping_path:
        return None
    system_name = platform.system().lower()
    if system_name == "windows":
        return [ping_path, "-n", str(count), "-w", str(int(timeout * 1000)), host]
    if system_name == "darwin":
        return [ping_path, "-n", "-c", str(count), "-W", str(int(timeout * 1000)), host]
    return [ping_path, "-n", "-c", str(count), "-W", str(max(1, math.ceil(timeout))), host]


class TargetValidator:
    """
    Confirms a target answers before any scan resources are committed.

    The ICMP probe shells out to the system ``ping``. When that fails, a short
    TCP connect to a handful of the target's ports is tried, since many hosts
    drop ICMP but still serve TCP.
    """

    def __init__(
        self,
        timeout: float = 2.0,
        count: int = 1,
        tcp_fallback: bool = True,
        tcp_timeout: float = 0.5,
        connect: Callable[[str, int, float], None] = tcp_connect,
    ):
        self.timeout = timeout
        self.count = count
        self.tcp_fallback = tcp_fallback
        self.tcp_timeout = tcp_timeout
        self.connect = connect

    def is_reachable(self, target: ScanTarget) -> bool:
        host = target.ip_address or target.host_name
        if self.ping(host):
            return True
        if self.tcp_fallback and self._tcp_alive(host, target.ports):
            logger.info("%s ignores ping but accepts TCP connections", host)
            return True
        logger.info("%s is unreachable", host)
        return False

    def ping(self, host: str) -> bool:
        cmd = build_ping_command(host, self.timeout, self.count)
        if cmd is None:
            logger.warning("ping command not found, relying on TCP liveness check")
            return False
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.timeout * self.count + 2,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.debug("ping %s timed out", host)
            return False
        except OSError as exc:
            logger.warning("Could not run ping for %s: %s", host, exc)
            return False
        return result.returncode == 0

    def _tcp_alive(self, host: str, ports: Iterable[int]) -> bool:
        candidates = list(dict.fromkeys(list(ports)[:3] + list(_FALLBACK_PORTS)))
        for port in candidates:
            try:
                self.connect(host, port, self.tcp_timeout)
                return True
            except ConnectionRefusedError:
                # A RST still proves the host is up
                return True
            except OSError:
                continue
        return False
