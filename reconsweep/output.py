"""Rich-powered terminal output, logging setup and file renderers (JSON, text)."""

import dataclasses
import json
import logging
import threading
from typing import Dict, List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from . import __version__
from .events import Event, ScanProgressUpdate
from .models import DeepScanResult, RiskLevel, ScanResult, ScanStatus, Severity, TopologyResult
from .topology import serialize_topology

# ---------------------------------------------------------------------------
# Severity → rich style mapping
# ---------------------------------------------------------------------------
SEVERITY_STYLE: dict[Severity, str] = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH:     "red",
    Severity.MEDIUM:   "yellow",
    Severity.LOW:      "bright_blue",
    Severity.INFO:     "green",
}

RISK_STYLE: dict[RiskLevel, str] = {
    RiskLevel.CRITICAL:  "bold red",
    RiskLevel.VERY_HIGH: "red",
    RiskLevel.HIGH:      "red",
    RiskLevel.MODERATE:  "yellow",
    RiskLevel.LOW:       "green",
}

STATUS_STYLE: dict[ScanStatus, str] = {
    ScanStatus.COMPLETED: "bold green",
    ScanStatus.CANCELLED: "yellow",
    ScanStatus.TIMEOUT:   "yellow",
    ScanStatus.FAILED:    "bold red",
}

_THEME = Theme({
    "info":         "dim white",
    "host.header":  "bold cyan",
    "port.open":    "bold green",
    "vuln.found":   "bold red",
    "vuln.clean":   "green",
})

console = Console(theme=_THEME)
err_console = Console(stderr=True, theme=_THEME)


def setup_logging(verbose: int = 0) -> None:
    """Route log records through rich on stderr. -v shows INFO, -vv shows DEBUG."""
    level = logging.WARNING
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO

    handler = RichHandler(
        console=err_console,
        show_path=verbose >= 2,
        markup=False,
        rich_tracebacks=True,
    )
    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing, RichHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)


def _styled(style: str, text: str) -> str:
    return f"[{style}]{text}[/{style}]"


# ---------------------------------------------------------------------------
# Progress display
# ---------------------------------------------------------------------------

class ProgressDisplay:
    """
    Context manager that renders one live progress bar per scan.

    Bars are fed from ScanProgressUpdate events, so subscribe ``handle_event``
    to the orchestrator's publisher::

        with ProgressDisplay() as display:
            publisher.subscribe(EventType.SCAN_PROGRESS_UPDATE, display.handle_event)
            ...
    """

    def __init__(self):
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold cyan]{task.fields[label]:<18}"),
            TextColumn("{task.description}"),
            BarColumn(bar_width=30),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        )
        self._tasks: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._live: Optional[Live] = None

    def __enter__(self):
        self._live = Live(self._progress, console=console, refresh_per_second=4)
        self._live.__enter__()
        return self

    def __exit__(self, *args):
        if self._live:
            self._live.__exit__(*args)

    def add_scan(self, scan_id: str, label: str) -> None:
        with self._lock:
            if scan_id not in self._tasks:
                self._tasks[scan_id] = self._progress.add_task(
                    "Queued", total=100, label=label[:18]
                )

    def handle_event(self, event: Event) -> None:
        if not isinstance(event, ScanProgressUpdate):
            return
        self.update(event.scan_id, event.percent_complete, event.current_operation)

    def update(self, scan_id: str, percent: float, operation: str) -> None:
        with self._lock:
            task_id = self._tasks.get(scan_id)
            if task_id is None:
                task_id = self._progress.add_task("", total=100, label=scan_id[:8])
                self._tasks[scan_id] = task_id
            self._progress.update(
                task_id,
                completed=min(percent, 100),
                description=operation[:48] if operation else "Scanning...",
            )


# ---------------------------------------------------------------------------
# Terminal renderer
# ---------------------------------------------------------------------------

class TerminalRenderer:
    """Renders scan results to the terminal using rich."""

    def __init__(self, verbose: int = 0):
        self.verbose = verbose  # 0 = normal, 1 = -v, 2 = -vv

    def print_banner(self, target: str, scan_start: str, host_count: int, mode: str) -> None:
        title = Text(f"ReconSweep v{__version__}  -  Network Recon & Vulnerability Assessment", style="bold cyan")
        lines = [
            f"[dim]Target :[/dim]  {target} ({host_count} host{'s' if host_count != 1 else ''})",
            f"[dim]Mode   :[/dim]  {mode}",
            f"[dim]Started:[/dim]  {scan_start}",
        ]
        console.print()
        console.print(Panel(title, border_style="cyan", expand=False))
        for line in lines:
            console.print(f"  {line}")
        console.print()

    def print_result(self, result: ScanResult) -> None:
        """Print one scan: its hosts, open ports and findings."""
        status_str = _styled(STATUS_STYLE.get(result.status, "white"), result.status.value)
        for target in result.targets:
            header = f"[host.header]Host: {target.display_name}[/host.header]  {status_str}"
            if isinstance(result, DeepScanResult) and result.os_fingerprints:
                best = result.os_fingerprints[0]
                header += f"  [dim]OS: {best.name} ({best.confidence}%)[/dim]"
            console.print(header)

            ports = result.open_ports.get(target.ip_address, [])
            if not ports:
                console.print("  [dim]No open ports found.[/dim]")
            else:
                console.print("  Open ports: " + ", ".join(_styled("port.open", str(p)) for p in ports))

        if isinstance(result, DeepScanResult):
            self._print_fingerprints(result)
            if result.synthetic:
                console.print("  [yellow]nmap unavailable - deep scan data is synthetic[/yellow]")

        findings = result.sorted_vulnerabilities
        if findings:
            console.print(self._findings_table(findings))
        elif result.status is not ScanStatus.FAILED:
            console.print("  " + _styled("vuln.clean", "[✓] No vulnerabilities found"))

        if self.verbose >= 2:
            for entry in findings:
                style = SEVERITY_STYLE[entry.severity]
                console.print(f"  {_styled(style, entry.title)}  CVSS {entry.cvss_score:.1f}")
                if entry.description:
                    console.print(f"    {entry.description}")
                if entry.remediation:
                    console.print(f"    [dim]Fix:[/dim] {entry.remediation}")
                if entry.reference:
                    console.print(f"    [link={entry.reference}][dim]{entry.reference}[/dim][/link]")

        self._print_recommendations(result)
        console.print()

    def _print_fingerprints(self, result: DeepScanResult) -> None:
        if not result.service_fingerprints:
            return
        tbl = Table(show_header=True, header_style="bold", box=box.SIMPLE_HEAVY, padding=(0, 1))
        tbl.add_column("PORT", style="bold", min_width=10)
        tbl.add_column("STATE", min_width=8)
        tbl.add_column("SERVICE", min_width=10)
        tbl.add_column("VERSION", min_width=22)
        for fp in result.service_fingerprints:
            tbl.add_row(f"{fp.port}/{fp.protocol}", _styled("port.open", fp.state), fp.service, fp.display_version)
        console.print(tbl)

    def _findings_table(self, findings) -> Table:
        tbl = Table(
            title=_styled("vuln.found", f"Findings ({len(findings)})"),
            box=box.ROUNDED,
            header_style="bold",
            expand=False,
        )
        tbl.add_column("Severity", min_width=9)
        tbl.add_column("Port", justify="right", min_width=5)
        tbl.add_column("Service", min_width=10)
        tbl.add_column("Title", min_width=30)
        tbl.add_column("CVSS", justify="right", min_width=5)
        if self.verbose >= 1:
            tbl.add_column("CVE", min_width=15)
            tbl.add_column("Category", min_width=12)
        for entry in findings:
            style = SEVERITY_STYLE[entry.severity]
            row = [
                _styled(style, entry.severity.value),
                str(entry.port) if entry.port else "-",
                entry.service,
                entry.title,
                _styled(style, f"{entry.cvss_score:.1f}"),
            ]
            if self.verbose >= 1:
                row.extend([entry.cve_id or "", entry.category.value])
            tbl.add_row(*row)
        return tbl

    def _print_recommendations(self, result: ScanResult) -> None:
        if not result.recommendations:
            return
        console.print("  [bold]Recommendations[/bold]")
        for rec in result.recommendations:
            console.print(f"   - {rec}")

    def print_summary(self, results: Sequence[ScanResult], elapsed: float) -> None:
        """Print per-severity totals and the risk level across all scans."""
        console.print()
        console.rule("[bold cyan]Scan Summary[/bold cyan]")
        console.print()

        tbl = Table(box=box.ROUNDED, header_style="bold", expand=False)
        tbl.add_column("Host", style="cyan", min_width=16)
        tbl.add_column("Status", min_width=10)
        for severity in reversed(list(Severity)):
            tbl.add_column(severity.value.title(), justify="right")
        tbl.add_column("Risk", min_width=10)
        tbl.add_column("Score", justify="right")
        for result in results:
            s = result.summary
            host = ", ".join(t.ip_address for t in result.targets)
            tbl.add_row(
                host,
                _styled(STATUS_STYLE.get(result.status, "white"), result.status.value),
                *(str(s.count(sev)) for sev in reversed(list(Severity))),
                _styled(RISK_STYLE[s.risk_level], s.risk_level.value),
                f"{s.risk_score:.1f}",
            )
        console.print(tbl)

        up = sum(r.statistics.active_hosts for r in results)
        total = sum(r.summary.total for r in results)
        critical = sum(r.summary.critical for r in results)
        total_style = "bold red" if critical else ("yellow" if total else "green")
        console.print(
            f"  Hosts up: [cyan]{up}/{len(results)}[/cyan]  |  "
            f"Findings: {_styled(total_style, str(total))}  |  "
            f"Critical: {_styled('bold red' if critical else 'green', str(critical))}  |  "
            f"Elapsed: [dim]{elapsed:.1f}s[/dim]"
        )
        console.print()

    def print_topology(self, topology: TopologyResult) -> None:
        console.print(
            f"  Topology: [cyan]{len(topology.nodes)}[/cyan] nodes, "
            f"[cyan]{len(topology.edges)}[/cyan] edges, "
            f"[cyan]{topology.active_nodes}[/cyan] online"
        )
        for anomaly in topology.anomalies:
            style = SEVERITY_STYLE[anomaly.severity]
            node = next((n for n in topology.nodes if n.id == anomaly.node_id), None)
            where = node.label if node else anomaly.node_id
            console.print(f"   {_styled(style, anomaly.anomaly_type)} {where}: {anomaly.description}")

    def print_error(self, message: str) -> None:
        err_console.print(f"[bold red][ERROR][/bold red] {message}")

    def print_warning(self, message: str) -> None:
        console.print(f"[yellow][WARN][/yellow]  {message}")

    def print_info(self, message: str) -> None:
        if self.verbose >= 1:
            console.print(f"[dim][*][/dim] {message}")


# ---------------------------------------------------------------------------
# File format renderers
# ---------------------------------------------------------------------------

def render_json(results: Sequence[ScanResult]) -> str:
    """Serialize scan results to a pretty-printed JSON document."""
    doc = {
        "version": __version__,
        "scans": [dataclasses.asdict(r) for r in results],
    }
    return json.dumps(doc, indent=2, default=str)


def render_text(results: Sequence[ScanResult]) -> str:
    """
    Render a plain-text (no ANSI codes) report.
    Suitable for -oN file output.
    """
    lines: List[str] = [f"# ReconSweep v{__version__} scan report", ""]

    for result in results:
        lines.append(
            f"Scan {result.scan_id} [{result.scan_type.value}] {result.status.value} "
            f"in {result.duration:.1f}s"
        )
        for target in result.targets:
            state = "up" if target.is_alive else "down"
            lines.append(f"Host: {target.display_name} [{state}]")
            ports = result.open_ports.get(target.ip_address, [])
            if ports:
                lines.append("  Open ports: " + ", ".join(str(p) for p in ports))
            else:
                lines.append("  No open ports found.")

        if isinstance(result, DeepScanResult):
            for fp in result.service_fingerprints:
                port_col = f"{fp.port}/{fp.protocol}"
                lines.append(f"  {port_col:<12} {fp.state:<10} {fp.service:<12} {fp.display_version}")
            for os_info in result.os_fingerprints[:1]:
                lines.append(f"  OS: {os_info.name} ({os_info.confidence}%)")

        for entry in result.sorted_vulnerabilities:
            cve = f" {entry.cve_id}" if entry.cve_id else ""
            lines.append(
                f"  [{entry.severity.value}] {entry.port}/{entry.service} {entry.title}"
                f"{cve} CVSS: {entry.cvss_score:.1f}"
            )
            if entry.description:
                lines.append(f"      {entry.description}")
            if entry.remediation:
                lines.append(f"      Fix: {entry.remediation}")

        s = result.summary
        lines.append(
            f"  Summary: {s.critical} critical, {s.high} high, {s.medium} medium, "
            f"{s.low} low, {s.informational} info | risk {s.risk_level.value} ({s.risk_score:.1f})"
        )
        for rec in result.recommendations:
            lines.append(f"  - {rec}")
        lines.append("")

    total = sum(r.summary.total for r in results)
    lines.append(f"# Summary: {len(results)} scan(s) | {total} finding(s)")
    return "\n".join(lines)


def render_topology_json(topology: TopologyResult) -> str:
    return json.dumps(serialize_topology(topology), indent=2)
