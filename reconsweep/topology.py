"""
Network topology: graph construction from scan results and a force-directed
3D layout for rendering.

The layout is plain gradient descent on a pairwise potential. Every node pair
repels with ``repulsion * step / d`` and every edge pulls like a spring with
``attraction * strength * d**2 / (2 * k)``, k being the largest node degree,
so one step never carries a node past the centroid of its neighbours.
Displacements for one iteration are accumulated first and applied together,
so the result does not depend on the order nodes are visited in.
"""

import itertools
import logging
import math
import random
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .events import EventPublisher, NodeStatusChanged, TopologyUpdated
from .models import (
    EdgeType,
    NetworkAnomaly,
    NetworkEdge,
    NetworkNode,
    NodeStatus,
    ScanResult,
    Severity,
    TopologyResult,
    Vector3D,
    new_id,
)
from .utils import subnet_key

logger = logging.getLogger(__name__)

SUSPICIOUS_PORTS = (135, 139, 445, 1433, 3389)
MAX_EXPECTED_OPEN_PORTS = 20


class TopologyLayoutEngine:
    """
    Positions nodes in 3D space.

    Runs synchronously. With the defaults, two nodes joined by one edge of
    strength 1.0 settle where 10/d**2 == 0.01*d, i.e. at distance 10.
    """

    def __init__(
        self,
        iterations: int = 100,
        repulsion: float = 1000.0,
        attraction: float = 0.01,
        step: float = 0.01,
        min_distance: float = 0.1,
        spread: float = 200.0,
        seed: Optional[int] = None,
    ):
        self.iterations = iterations
        self.repulsion = repulsion
        self.attraction = attraction
        self.step = step
        self.min_distance = min_distance
        self.spread = spread
        self.seed = seed

    def compute_positions(
        self,
        nodes: Sequence[NetworkNode],
        edges: Iterable[NetworkEdge],
    ) -> Sequence[NetworkNode]:
        """Assign ``position`` on every node in place and return the nodes."""
        rng = random.Random(self.seed)
        half = self.spread / 2
        for node in nodes:
            if node.position is None:
                node.position = Vector3D(
                    rng.uniform(-half, half), rng.uniform(-half, half), rng.uniform(-half, half)
                )

        links = self._resolve_edges(nodes, edges)
        pull = self._spring_constant(links)
        for _ in range(self.iterations):
            self._iterate(nodes, links, pull)
        return nodes

    def layout_energy(self, nodes: Sequence[NetworkNode], edges: Iterable[NetworkEdge]) -> float:
        """The potential compute_positions descends. Unpositioned nodes are skipped."""
        placed = [n for n in nodes if n.position is not None]
        energy = 0.0
        for a, b in itertools.combinations(placed, 2):
            d = max(a.position.distance_to(b.position), self.min_distance)
            energy += self.repulsion * self.step / d
        links = self._resolve_edges(placed, edges)
        pull = self._spring_constant(links)
        for a, b, strength in links:
            d = max(a.position.distance_to(b.position), self.min_distance)
            energy += pull * strength * d * d / 2
        return energy

    @staticmethod
    def _resolve_edges(
        nodes: Sequence[NetworkNode],
        edges: Iterable[NetworkEdge],
    ) -> List[Tuple[NetworkNode, NetworkNode, float]]:
        by_id = {n.id: n for n in nodes}
        links = []
        for edge in edges:
            a, b = by_id.get(edge.source), by_id.get(edge.target)
            if a is None or b is None or a is b:
                logger.debug("Ignoring edge %s with unknown endpoint", edge.id)
                continue
            links.append((a, b, edge.strength))
        return links

    def _spring_constant(self, links) -> float:
        degree: Dict[int, int] = {}
        for a, b, _ in links:
            degree[id(a)] = degree.get(id(a), 0) + 1
            degree[id(b)] = degree.get(id(b), 0) + 1
        return self.attraction / max(degree.values(), default=1)

    def _direction(self, a: NetworkNode, b: NetworkNode) -> Tuple[float, float, float, float]:
        """Unit vector from b to a plus the clamped distance."""
        dx = a.position.x - b.position.x
        dy = a.position.y - b.position.y
        dz = a.position.z - b.position.z
        raw = math.sqrt(dx * dx + dy * dy + dz * dz)
        if raw == 0.0:
            return 1.0, 0.0, 0.0, self.min_distance
        return dx / raw, dy / raw, dz / raw, max(raw, self.min_distance)

    @staticmethod
    def _push(disp_a: List[float], disp_b: List[float], unit: List[float], force: float) -> None:
        """Move a along unit by force and b the opposite way. Negative force pulls."""
        for axis in range(3):
            disp_a[axis] += unit[axis] * force
            disp_b[axis] -= unit[axis] * force

    def _iterate(self, nodes: Sequence[NetworkNode], links, pull: float) -> None:
        disp: Dict[int, List[float]] = {id(n): [0.0, 0.0, 0.0] for n in nodes}

        for a, b in itertools.combinations(nodes, 2):
            *unit, d = self._direction(a, b)
            force = self.repulsion / (d * d) * self.step
            self._push(disp[id(a)], disp[id(b)], unit, force)

        for a, b, strength in links:
            *unit, d = self._direction(a, b)
            force = d * pull * strength
            self._push(disp[id(a)], disp[id(b)], unit, -force)

        for node in nodes:
            dx, dy, dz = disp[id(node)]
            p = node.position
            node.position = Vector3D(p.x + dx, p.y + dy, p.z + dz)


# ---------------------------------------------------------------------------
# Graph construction
# ---------------------------------------------------------------------------

def infer_device_type(open_ports: Iterable[int]) -> str:
    ports = set(open_ports)
    if ports & {22, 23}:
        return "Network Device"
    if ports & {80, 443}:
        return "Web Server"
    if 3389 in ports:
        return "Windows Server"
    if 21 in ports:
        return "FTP Server"
    return "Workstation"


def _status_from_findings(severities: Iterable[Severity]) -> NodeStatus:
    worst = max(severities, key=lambda s: s.rank, default=None)
    if worst is Severity.CRITICAL:
        return NodeStatus.CRITICAL
    if worst in (Severity.HIGH, Severity.MEDIUM):
        return NodeStatus.WARNING
    return NodeStatus.NORMAL


def detect_anomalies(node: NetworkNode) -> List[NetworkAnomaly]:
    anomalies: List[NetworkAnomaly] = []
    if len(node.open_ports) > MAX_EXPECTED_OPEN_PORTS:
        anomalies.append(NetworkAnomaly(
            node_id=node.id,
            anomaly_type="UnusualPortPattern",
            description=f"Excessive open ports detected ({len(node.open_ports)})",
            severity=Severity.MEDIUM,
        ))
    risky = [p for p in node.open_ports if p in SUSPICIOUS_PORTS]
    if risky:
        anomalies.append(NetworkAnomaly(
            node_id=node.id,
            anomaly_type="SuspiciousService",
            description="Potentially risky ports open: " + ", ".join(str(p) for p in risky),
            severity=Severity.HIGH,
        ))
    return anomalies


def build_topology(
    results: Iterable[ScanResult],
    publisher: Optional[EventPublisher] = None,
    network_range: str = "",
) -> TopologyResult:
    """
    Build the node/edge graph for a set of scan results. Positions are left
    unset; run a TopologyLayoutEngine over the nodes afterwards.
    """
    topology = TopologyResult(network_range=network_range)
    for result in results:
        for target in result.targets:
            ports = sorted(result.open_ports.get(target.ip_address, []))
            severities = [v.severity for v in result.vulnerabilities if v.ip_address == target.ip_address]
            node = NetworkNode(
                id=target.node_id or new_id(),
                ip_address=target.ip_address,
                host_name=target.host_name,
                device_type=infer_device_type(ports),
                is_online=target.is_alive,
                open_ports=ports,
            )
            node.status = _status_from_findings(severities) if node.is_online else NodeStatus.OFFLINE
            topology.nodes.append(node)

    online = [n for n in topology.nodes if n.is_online]
    for a, b in itertools.combinations(online, 2):
        key = subnet_key(a.ip_address)
        if key is not None and key == subnet_key(b.ip_address):
            topology.edges.append(NetworkEdge(
                source=a.id, target=b.id, edge_type=EdgeType.SUBNET, label="Subnet Connection",
            ))

    for node in topology.nodes:
        found = detect_anomalies(node)
        topology.anomalies.extend(found)
        if found and node.status is NodeStatus.NORMAL:
            node.status = NodeStatus.ANOMALY

    logger.info(
        "Topology built: %d nodes, %d edges, %d anomalies",
        len(topology.nodes), len(topology.edges), len(topology.anomalies),
    )
    if publisher is not None:
        for node in topology.nodes:
            if node.status is not NodeStatus.NORMAL:
                publisher.publish(NodeStatusChanged(
                    node_id=node.id,
                    old_status=NodeStatus.NORMAL,
                    new_status=node.status,
                    reason="Scan findings" if node.status is not NodeStatus.ANOMALY else "Anomaly detected",
                ))
        publisher.publish(TopologyUpdated(
            node_count=len(topology.nodes),
            edge_count=len(topology.edges),
            active_nodes=topology.active_nodes,
            anomaly_count=len(topology.anomalies),
        ))
    return topology


def serialize_topology(topology: TopologyResult) -> dict:
    """The rendering document consumed by the visualization layer."""
    nodes = []
    for node in topology.nodes:
        pos = node.position or Vector3D()
        nodes.append({
            "id": node.id,
            "label": node.label,
            "ip": node.ip_address,
            "position": {"x": pos.x, "y": pos.y, "z": pos.z},
            "color": node.color,
            "size": node.size,
            "status": node.status.value,
        })
    return {
        "scanId": topology.scan_id,
        "timestamp": topology.timestamp.isoformat(),
        "nodes": nodes,
        "edges": [
            {
                "id": edge.id,
                "source": edge.source,
                "target": edge.target,
                "type": edge.edge_type.value,
                "strength": edge.strength,
            }
            for edge in topology.edges
        ],
        "anomalies": [
            {
                "nodeId": a.node_id,
                "type": a.anomaly_type,
                "description": a.description,
                "severity": a.severity.value,
                "detectedAt": a.detected_at.isoformat(),
            }
            for a in topology.anomalies
        ],
    }
