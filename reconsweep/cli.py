"""CLI argument parsing and the main entry point for ReconSweep."""

import argparse
import shutil
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from . import __version__
from .cache import CVECache
from .classifier import VulnerabilityClassifier
from .config import MAX_RETRIES_LIMIT, ScannerSettings
from .cve_lookup import NVDClient
from .events import EventPublisher, EventType
from .models import DepthOptions, ScanIntensity, ScanStatus, ScanTarget, new_id
from .orchestrator import ScanOrchestrator
from .output import (
    ProgressDisplay,
    TerminalRenderer,
    console,
    render_json,
    render_text,
    render_topology_json,
    setup_logging,
)
from .topology import TopologyLayoutEngine, build_topology
from .utils import expand_targets, is_root, parse_port_spec, validate_target

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NO_HOSTS = 2
EXIT_INTERRUPTED = 130


# ---------------------------------------------------------------------------
# Argument pre-processing
# ---------------------------------------------------------------------------

def preprocess_argv(argv: List[str]) -> List[str]:
    """
    Expand nmap-style shorthand into the form argparse expects.

    Transforms:
      -p-       → -p 1-65535
      -vv       → passthrough (action="count" handles it)
    """
    result: List[str] = []
    for arg in argv:
        if arg == "-p-":
            result.extend(["-p", "1-65535"])
        else:
            result.append(arg)
    return result


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reconsweep",
        description=(
            "ReconSweep - Network reconnaissance and vulnerability assessment\n"
            "Finds live hosts and open services, flags risky exposure and "
            "known-vulnerable versions, and maps the network."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  reconsweep 192.168.1.10\n"
            "  reconsweep 10.0.0.0/24 -p 22,80,443 --topology net.json\n"
            "  sudo reconsweep 10.0.0.5 --deep -O --intensity aggressive -oJ results.json\n"
            "  reconsweep 10.0.0.1-20 --nvd --cve-key <key> -v\n"
        ),
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"ReconSweep {__version__}",
    )

    # -----------------------------------------------------------------------
    # Target
    # -----------------------------------------------------------------------
    target_grp = parser.add_argument_group("Scan targets")
    target_grp.add_argument(
        "target",
        nargs="?",
        metavar="<target>",
        help="IP address, hostname, CIDR or range (e.g. 10.0.0.1, host.local, 10.0.0.0/24, 10.0.0.1-20)",
    )
    target_grp.add_argument(
        "--max-hosts",
        metavar="<n>",
        type=int,
        default=50,
        help="Maximum number of hosts to expand the target into (default: 50)",
    )

    # -----------------------------------------------------------------------
    # Port specification
    # -----------------------------------------------------------------------
    port_grp = parser.add_argument_group("Port specification")
    port_grp.add_argument(
        "-p",
        metavar="<ports>",
        help="Port(s) to scan: 22 | 22,80,443 | 1-1024 (use -p- for all)",
    )
    port_grp.add_argument(
        "--top-ports",
        metavar="<n>",
        type=int,
        default=None,
        help="Cap the port set at N ports (quick scan) or scan nmap's top N (deep scan)",
    )

    # -----------------------------------------------------------------------
    # Deep scan
    # -----------------------------------------------------------------------
    deep_grp = parser.add_argument_group("Deep scan")
    deep_grp.add_argument(
        "--deep",
        action="store_true",
        default=False,
        help="Run the nmap-backed deep scan instead of the quick scan",
    )
    deep_grp.add_argument(
        "--intensity",
        choices=[i.value.lower() for i in ScanIntensity],
        default=ScanIntensity.NORMAL.value.lower(),
        help="Deep scan timing (default: normal)",
    )
    deep_grp.add_argument(
        "--no-service-detection",
        action="store_true",
        default=False,
        help="Skip service/version detection (-sV)",
    )
    deep_grp.add_argument(
        "-O",
        action="store_true",
        default=False,
        help="OS detection - requires root",
    )
    deep_grp.add_argument(
        "--no-vuln-scripts",
        action="store_true",
        default=False,
        help="Skip nmap vulnerability scripts",
    )
    deep_grp.add_argument(
        "--timeout",
        metavar="<seconds>",
        type=int,
        default=300,
        help="Deep scan time budget per host (default: 300)",
    )

    # -----------------------------------------------------------------------
    # Probing
    # -----------------------------------------------------------------------
    probe_grp = parser.add_argument_group("Probing")
    probe_grp.add_argument(
        "--max-concurrency",
        metavar="<n>",
        type=int,
        default=50,
        help="Concurrent connection attempts per host (default: 50)",
    )
    probe_grp.add_argument(
        "--probe-timeout",
        metavar="<seconds>",
        type=float,
        default=0.2,
        help="Connect timeout per port (default: 0.2)",
    )
    probe_grp.add_argument(
        "--retries",
        metavar="<n>",
        type=int,
        default=2,
        help=f"Retries after a transient connect failure, 0-{MAX_RETRIES_LIMIT} (default: 2)",
    )

    # -----------------------------------------------------------------------
    # CVE options
    # -----------------------------------------------------------------------
    cve_grp = parser.add_argument_group("CVE options")
    cve_grp.add_argument(
        "--nvd",
        action="store_true",
        default=False,
        help="Look up precise CVSS scores on NVD for findings with a CVE id",
    )
    cve_grp.add_argument(
        "--cve-key",
        metavar="<apikey>",
        default=None,
        help="NVD API key (higher rate limit: 50 req/30s vs 5 req/30s). "
             "Get a free key at https://nvd.nist.gov/developers/request-an-api-key",
    )
    cve_grp.add_argument(
        "--no-cache",
        action="store_true",
        default=False,
        help="Disable the CVE record cache (always query NVD live)",
    )

    # -----------------------------------------------------------------------
    # Output
    # -----------------------------------------------------------------------
    out_grp = parser.add_argument_group("Output")
    out_grp.add_argument(
        "-v",
        action="count",
        default=0,
        dest="verbose",
        help="Verbose output (-v: CVE ids and categories, -vv: full finding details and debug log)",
    )
    out_grp.add_argument(
        "-oN",
        metavar="<file>",
        dest="oN",
        help="Save plain-text report to file",
    )
    out_grp.add_argument(
        "-oJ",
        metavar="<file>",
        dest="oJ",
        help="Save JSON report to file",
    )
    out_grp.add_argument(
        "--topology",
        metavar="<file>",
        default=None,
        help="Build the network topology and save its JSON document to file",
    )
    out_grp.add_argument(
        "--seed",
        metavar="<n>",
        type=int,
        default=None,
        help="Random seed for the topology layout (reproducible positions)",
    )

    return parser


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------

def validate_args(args) -> Optional[str]:
    """
    Validate parsed arguments.
    Returns an error message string, or None if everything is valid.
    """
    if not args.target:
        return "No target specified. Provide an IP, hostname, CIDR or range."

    if not validate_target(args.target):
        return f"Invalid target: {args.target}"

    if args.max_hosts < 1:
        return "--max-hosts must be a positive integer"

    if args.top_ports is not None and args.top_ports < 1:
        return "--top-ports must be a positive integer"

    if args.p:
        try:
            parse_port_spec(args.p)
        except ValueError as exc:
            return f"Invalid port specification: {exc}"

    if args.timeout < 1:
        return "--timeout must be at least 1 second"

    if args.cve_key and not args.nvd:
        args.nvd = True

    return None


def build_settings(args) -> ScannerSettings:
    """Map CLI flags onto ScannerSettings. Raises ValueError on bad values."""
    overrides = {
        "probe_timeout": args.probe_timeout,
        "max_concurrency": args.max_concurrency,
        "max_retries": args.retries,
    }
    if args.top_ports is not None:
        overrides["quick_port_cap"] = args.top_ports
    return ScannerSettings(**overrides)


def build_depth_options(args) -> DepthOptions:
    options = DepthOptions(
        max_hosts=args.max_hosts,
        intensity=ScanIntensity(args.intensity.upper()),
        include_service_detection=not args.no_service_detection,
        include_os_detection=args.O,
        include_vuln_scripts=not args.no_vuln_scripts,
        timeout_seconds=args.timeout,
    )
    if args.top_ports is not None:
        options.max_ports = args.top_ports
    return options


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """
    ReconSweep entry point.

    Returns:
        0   - success
        1   - scan or argument error
        2   - no hosts reachable
        130 - interrupted by the user
    """
    if argv is None:
        argv = sys.argv[1:]

    argv = preprocess_argv(argv)

    parser = build_parser()
    args = parser.parse_args(argv)

    err = validate_args(args)
    if err:
        parser.error(err)

    setup_logging(args.verbose)
    renderer = TerminalRenderer(verbose=args.verbose)

    try:
        settings = build_settings(args)
        hosts = expand_targets(args.target, max_hosts=args.max_hosts)
    except ValueError as exc:
        renderer.print_error(str(exc))
        return EXIT_ERROR

    ports = tuple(parse_port_spec(args.p)) if args.p else ()
    targets = [ScanTarget(ip_address=host, ports=ports, node_id=new_id()) for host in hosts]

    if args.deep and args.O and not is_root():
        renderer.print_warning("-O requires root. OS detection will be skipped.")
    if args.deep and shutil.which("nmap") is None:
        renderer.print_warning("nmap not found on PATH. Deep scans will report synthetic results.")

    # Cache + NVD client
    nvd_client: Optional[NVDClient] = None
    if args.nvd:
        cache: Optional[CVECache] = None
        if not args.no_cache:
            cache = CVECache()
            removed = cache.cleanup()
            if removed:
                renderer.print_info(f"Cache cleanup: removed {removed} expired entries")
        nvd_client = NVDClient(api_key=args.cve_key, cache=cache)
        if not args.cve_key:
            renderer.print_info(
                "No NVD API key set. Rate limit: 5 requests/30s. "
                "Get a free key with --cve-key to increase this."
            )

    mode = "deep" if args.deep else "quick"
    renderer.print_banner(
        args.target, datetime.now().strftime("%Y-%m-%d %H:%M:%S"), len(targets), mode
    )

    publisher = EventPublisher(synchronous=True)
    classifier = VulnerabilityClassifier(cve_client=nvd_client)
    depth = build_depth_options(args)
    started = time.monotonic()
    interrupted = False

    with ScanOrchestrator(settings=settings, publisher=publisher, classifier=classifier) as orchestrator:
        with ProgressDisplay() as display:
            publisher.subscribe(EventType.SCAN_PROGRESS_UPDATE, display.handle_event)
            handles = []
            for target in targets:
                if args.deep:
                    handle = orchestrator.submit_deep_scan(target, depth)
                else:
                    handle = orchestrator.submit_quick_scan(target)
                display.add_scan(handle.scan_id, target.ip_address)
                handles.append(handle)

            try:
                results = [h.result() for h in handles]
            except KeyboardInterrupt:
                interrupted = True
                for h in handles:
                    orchestrator.cancel(h.scan_id)
                results = [h.result() for h in handles]

    elapsed = time.monotonic() - started

    if interrupted:
        renderer.print_warning("Scan interrupted by user. Showing partial results.")

    for result in results:
        renderer.print_result(result)
    renderer.print_summary(results, elapsed)

    if args.topology:
        topology = build_topology(results, publisher, network_range=args.target)
        TopologyLayoutEngine(seed=args.seed).compute_positions(topology.nodes, topology.edges)
        renderer.print_topology(topology)
        _write_file(args.topology, "topology", render_topology_json(topology), renderer)

    _write_output_files(args, results, renderer)

    if interrupted:
        return EXIT_INTERRUPTED
    if not any(r.statistics.active_hosts for r in results):
        renderer.print_warning(
            "No hosts reachable. If hosts block ping, check that at least one common port is open."
        )
        return EXIT_NO_HOSTS
    if any(r.status is ScanStatus.FAILED and r.statistics.active_hosts for r in results):
        return EXIT_ERROR
    return EXIT_OK


def _write_output_files(args, results, renderer: TerminalRenderer) -> None:
    """Write any requested report files (-oN, -oJ)."""
    outputs = [
        (getattr(args, "oN", None), "text", render_text),
        (getattr(args, "oJ", None), "JSON", render_json),
    ]
    for path, fmt, render_fn in outputs:
        if path:
            _write_file(path, fmt, render_fn(results), renderer)


def _write_file(path: str, fmt: str, content: str, renderer: TerminalRenderer) -> None:
    try:
        Path(path).write_text(content, encoding="utf-8")
        console.print(f"[dim][*] Saved {fmt} report → {path}[/dim]")
    except PermissionError:
        renderer.print_warning(f"Cannot write {fmt} report to {path}: permission denied")
    except OSError as exc:
        renderer.print_warning(f"Failed to write {fmt} report to {path}: {exc}")
