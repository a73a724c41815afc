"""Tests for reconsweep.scanner - uses fixture XML and fake nmap processes, no live scans."""

import threading
from pathlib import Path

import pytest

from reconsweep.errors import ScanCancelled, ScanTimeout
from reconsweep.models import DepthOptions, ScanIntensity, ScanTarget, Severity
from reconsweep.scanner import (
    NmapArguments,
    NmapDeepScanAdapter,
    SyntheticDeepScanAdapter,
    default_deep_scan_adapter,
)

FIXTURE_DIR = Path(__file__).parent / "fixtures"
DEEP_XML = FIXTURE_DIR / "nmap_deep_sample.xml"


class FakeNmapProcess:
    """Quacks like libnmap's NmapProcess without spawning anything."""

    instances = []

    def __init__(self, targets, options, safe_mode=True, stdout="", rc=0, alive_polls=0, stderr=""):
        self.targets = targets
        self.options = options
        self.stdout = stdout
        self.stderr = stderr
        self.rc = rc
        self.command = f"nmap -oX - {options} {targets}"
        self.stopped = False
        self._alive_polls = alive_polls
        FakeNmapProcess.instances.append(self)

    def run_background(self):
        pass

    def is_alive(self):
        if self._alive_polls is None:
            return not self.stopped
        if self._alive_polls > 0:
            self._alive_polls -= 1
            return True
        return False

    def stop(self):
        self.stopped = True


def _factory(**behaviour):
    def make(targets, options, safe_mode=True):
        return FakeNmapProcess(targets, options, safe_mode, **behaviour)
    return make


@pytest.fixture(scope="module")
def deep_xml() -> str:
    return DEEP_XML.read_text()


@pytest.fixture
def target():
    return ScanTarget("10.0.0.5", ports=(21, 22, 23, 80, 8080), is_alive=True, node_id="node-5")


@pytest.fixture
def options():
    return DepthOptions(include_os_detection=False)


@pytest.fixture
def parsed(deep_xml, target):
    return NmapDeepScanAdapter().parse_output(deep_xml, target, "nmap -sV 10.0.0.5")


# ---------------------------------------------------------------------------
# NmapArguments
# ---------------------------------------------------------------------------

class TestNmapArguments:
    def test_default_flags(self):
        opts = NmapArguments(DepthOptions()).build().split()
        assert opts[0] == "-T3"
        assert "-sV" in opts
        assert "-O" in opts
        assert "--script=vuln" in opts
        assert opts[opts.index("--top-ports") + 1] == "1000"
        assert opts[opts.index("--host-timeout") + 1] == "300s"

    def test_intensity_maps_to_timing_template(self):
        for intensity, flag in (
            (ScanIntensity.STEALTHY, "-T1"),
            (ScanIntensity.AGGRESSIVE, "-T4"),
            (ScanIntensity.INSANE, "-T5"),
        ):
            assert NmapArguments(DepthOptions(intensity=intensity)).build().startswith(flag)

    def test_disabled_features_are_omitted(self):
        options = DepthOptions(
            include_service_detection=False,
            include_os_detection=False,
            include_vuln_scripts=False,
        )
        opts = NmapArguments(options).build().split()
        assert "-sV" not in opts
        assert "-O" not in opts
        assert "--script=vuln" not in opts

    def test_os_detection_dropped_without_root(self):
        opts = NmapArguments(DepthOptions()).build(allow_root_only=False).split()
        assert "-O" not in opts

    def test_explicit_ports_capped_at_max_ports(self):
        args = NmapArguments(DepthOptions(max_ports=2), ports=[22, 80, 443])
        opts = args.build().split()
        assert opts[opts.index("-p") + 1] == "22,80"
        assert "--top-ports" not in opts

    def test_needs_root_follows_os_detection(self):
        assert NmapArguments(DepthOptions()).needs_root() is True
        assert NmapArguments(DepthOptions(include_os_detection=False)).needs_root() is False


# ---------------------------------------------------------------------------
# parse_output against the fixture
# ---------------------------------------------------------------------------

class TestParseOutput:
    def test_open_ports(self, parsed):
        assert parsed.open_ports == [21, 22, 23, 80]

    def test_fingerprints_include_filtered_port(self, parsed):
        assert len(parsed.fingerprints) == 5
        filtered = [fp for fp in parsed.fingerprints if fp.port == 8080][0]
        assert filtered.state == "filtered"

    def test_fingerprint_details(self, parsed):
        ssh = [fp for fp in parsed.fingerprints if fp.port == 22][0]
        assert ssh.service == "ssh"
        assert ssh.product == "OpenSSH"
        assert ssh.version == "6.6.1p1"
        assert "cpe:/a:openbsd:openssh:6.6.1p1" in ssh.cpes

    def test_command_line_kept(self, parsed):
        assert parsed.command_line == "nmap -sV 10.0.0.5"
        assert parsed.synthetic is False

    def test_finding_count_by_severity(self, parsed):
        severities = [v.severity for v in parsed.vulnerabilities]
        assert len(severities) == 8
        assert severities.count(Severity.CRITICAL) == 3
        assert severities.count(Severity.HIGH) == 4
        assert severities.count(Severity.MEDIUM) == 1

    def test_vsftpd_signature_and_script(self, parsed):
        ftp = [v for v in parsed.vulnerabilities if v.port == 21]
        assert {v.severity for v in ftp} == {Severity.CRITICAL, Severity.HIGH}
        script = [v for v in ftp if v.severity is Severity.HIGH][0]
        assert script.cve_id == "CVE-2011-2523"
        assert script.cvss_score == 10.0
        assert script.title == "vsFTPd version 2.3.4 backdoor"
        assert script.reference.endswith("ftp-vsftpd-backdoor.html")

    def test_vulners_entries(self, parsed):
        vulners = {v.cve_id: v for v in parsed.vulnerabilities if v.port == 22 and v.cve_id}
        assert set(vulners) == {"CVE-2016-1908", "CVE-2015-5600", "CVE-2016-0777"}
        assert vulners["CVE-2016-1908"].severity is Severity.CRITICAL
        assert vulners["CVE-2015-5600"].is_exploitable is True
        assert vulners["CVE-2016-0777"].is_exploitable is False
        assert vulners["CVE-2016-0777"].severity is Severity.MEDIUM

    def test_outdated_openssh_signature(self, parsed):
        titles = [v.title for v in parsed.vulnerabilities if v.port == 22]
        assert "Outdated OpenSSH version" in titles

    def test_host_script_is_port_zero(self, parsed):
        host_level = [v for v in parsed.vulnerabilities if v.port == 0]
        assert len(host_level) == 1
        assert host_level[0].cve_id == "CVE-2017-0143"
        assert host_level[0].severity is Severity.HIGH

    def test_non_vulnerable_script_ignored(self, parsed):
        assert not [v for v in parsed.vulnerabilities if "csrf" in v.description.lower()]

    def test_findings_carry_node_id(self, parsed):
        assert all(v.node_id == "node-5" for v in parsed.vulnerabilities)

    def test_os_matches_ordered_by_confidence(self, parsed):
        assert [m.name for m in parsed.os_matches] == ["Linux 3.2 - 4.9", "Linux 2.6.32"]
        best = parsed.os_matches[0]
        assert best.confidence == 95
        assert best.os_family == "Linux"
        assert best.os_generation == "3.X"
        assert len(best.cpe_matches) == 2

    def test_unparseable_script_skipped(self, target):
        adapter = NmapDeepScanAdapter()
        assert adapter._script_findings(target, 22, "SSH", {"output": "VULNERABLE:\nboom"}) == []
        assert adapter._script_findings(target, 22, "SSH", "not a dict") == []

    def test_other_host_returns_first_block(self, deep_xml):
        other = ScanTarget("10.0.0.99")
        output = NmapDeepScanAdapter().parse_output(deep_xml, other)
        assert output.open_ports == [21, 22, 23, 80]


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class TestSyntheticAdapter:
    def test_reports_requested_ports(self, target, options):
        output = SyntheticDeepScanAdapter().run(target, options)
        assert output.synthetic is True
        assert output.open_ports == [21, 22, 23, 80, 8080]
        assert all(fp.service == "unknown" for fp in output.fingerprints)
        assert output.vulnerabilities == []

    def test_port_limit(self):
        target = ScanTarget("10.0.0.5", ports=tuple(range(1, 50)))
        output = SyntheticDeepScanAdapter().run(target, DepthOptions())
        assert len(output.open_ports) == 10

    def test_max_ports_below_limit(self, target):
        output = SyntheticDeepScanAdapter().run(target, DepthOptions(max_ports=2))
        assert output.open_ports == [21, 22]


class TestNmapAdapter:
    def test_successful_run_parses_xml(self, deep_xml, target, options):
        adapter = NmapDeepScanAdapter(
            process_factory=_factory(stdout=deep_xml, alive_polls=2), poll_interval=0.001
        )
        output = adapter.run(target, options)
        assert output.synthetic is False
        assert output.open_ports == [21, 22, 23, 80]
        assert output.command_line.startswith("nmap")

    def test_missing_binary_falls_back(self, target, options):
        def factory(**kwargs):
            raise EnvironmentError("nmap is not installed")

        output = NmapDeepScanAdapter(process_factory=factory).run(target, options)
        assert output.synthetic is True

    def test_nonzero_exit_falls_back(self, target, options):
        adapter = NmapDeepScanAdapter(process_factory=_factory(rc=1, stderr="boom"))
        assert adapter.run(target, options).synthetic is True

    def test_malformed_xml_falls_back(self, target, options):
        adapter = NmapDeepScanAdapter(process_factory=_factory(stdout="this is not xml"))
        assert adapter.run(target, options).synthetic is True

    def test_cancel_stops_process(self, target, options):
        FakeNmapProcess.instances.clear()
        cancel = threading.Event()
        cancel.set()
        adapter = NmapDeepScanAdapter(process_factory=_factory(alive_polls=None), poll_interval=0.001)
        with pytest.raises(ScanCancelled):
            adapter.run(target, options, cancel)
        assert FakeNmapProcess.instances[-1].stopped is True

    def test_budget_exceeded_raises_timeout(self, target):
        FakeNmapProcess.instances.clear()
        options = DepthOptions(include_os_detection=False, timeout_seconds=0)
        adapter = NmapDeepScanAdapter(
            process_factory=_factory(alive_polls=None), grace=0.0, poll_interval=0.001
        )
        with pytest.raises(ScanTimeout):
            adapter.run(target, options)
        assert FakeNmapProcess.instances[-1].stopped is True

    def test_os_detection_without_root(self, mocker, deep_xml, target):
        mocker.patch("reconsweep.scanner.is_root", return_value=False)
        FakeNmapProcess.instances.clear()
        adapter = NmapDeepScanAdapter(process_factory=_factory(stdout=deep_xml))
        adapter.run(target, DepthOptions())
        assert "-O" not in FakeNmapProcess.instances[-1].options.split()


class TestDefaultAdapter:
    def test_nmap_present(self, mocker):
        mocker.patch("reconsweep.scanner.shutil.which", return_value="/usr/bin/nmap")
        assert isinstance(default_deep_scan_adapter(), NmapDeepScanAdapter)

    def test_nmap_missing(self, mocker):
        mocker.patch("reconsweep.scanner.shutil.which", return_value=None)
        assert isinstance(default_deep_scan_adapter(), SyntheticDeepScanAdapter)
