from __future__ import annotations

import threading
import time

import pytest

from conftest import fake_probe
from netwarden.errors import InvalidConfiguration, ProbeError, ProbeTimeout, RateLimitExceeded
from netwarden.models import PortStatus
from netwarden.scanner.engine import ConcurrencyLimits, ScanBudget, scan_hosts, start_scan
from netwarden.scanner.fingerprinting import identify_service, ssh_protocol_version
from netwarden.scanner.ip_utils import expand_targets
from netwarden.scanner.ports import PORT_PRESETS, parse_port_spec, resolve_ports


def test_resolve_ports_accepts_presets_specs_and_lists():
    assert resolve_ports("quick") == list(PORT_PRESETS["quick"])
    assert resolve_ports("22, 80, 8000-8002") == [22, 80, 8000, 8001, 8002]
    assert resolve_ports([443, 22, 22]) == [22, 443]


@pytest.mark.parametrize("spec", ["", "0", "70000", "90-80", "ssh"])
def test_parse_port_spec_rejects_bad_input(spec):
    with pytest.raises(InvalidConfiguration):
        parse_port_spec(spec)


def test_expand_targets_handles_cidr_ranges_and_duplicates():
    assert expand_targets(["10.0.0.0/30", "10.0.0.1", "10.0.1.5-7"]) == [
        "10.0.0.1",
        "10.0.0.2",
        "10.0.1.5",
        "10.0.1.6",
        "10.0.1.7",
    ]
    with pytest.raises(InvalidConfiguration):
        expand_targets(["10.0.0.0/16"])
    with pytest.raises(InvalidConfiguration):
        expand_targets(["10.0.0.1-\N{SUPERSCRIPT TWO}"])


def test_scan_reports_open_and_closed_in_host_order():
    results = scan_hosts(["10.0.0.2", "10.0.0.1"], [22, 80, 443], probe=fake_probe({80}), cycle_id="c1")

    assert [result.host for result in results] == ["10.0.0.2", "10.0.0.1"]
    for result in results:
        assert result.cycle_id == "c1"
        assert result.open_ports == frozenset({80})
        assert result.statuses[22] is PortStatus.CLOSED
        assert not result.cancelled


def test_probe_failures_map_to_statuses():
    def probe(host, port, timeout):
        if port == 1:
            raise ProbeTimeout(host, port, timeout)
        if port == 2:
            raise ProbeError(host, port, "no route to host")
        if port == 3:
            raise ConnectionRefusedError()
        if port == 4:
            raise RuntimeError("bug in probe")
        return PortStatus.OPEN

    (result,) = scan_hosts(["10.0.0.1"], [1, 2, 3, 4, 5], probe=probe)

    assert dict(result.statuses) == {
        1: PortStatus.FILTERED,
        2: PortStatus.ERROR,
        3: PortStatus.CLOSED,
        4: PortStatus.ERROR,
        5: PortStatus.OPEN,
    }


def test_every_failing_host_still_yields_a_result():
    def probe(host, port, timeout):
        raise ProbeError(host, port, "unreachable")

    results = scan_hosts(["10.0.0.1", "10.0.0.2"], [22, 80], probe=probe)

    assert len(results) == 2
    assert all(set(result.statuses.values()) == {PortStatus.ERROR} for result in results)


def test_concurrency_stays_within_limits():
    lock = threading.Lock()
    active = 0
    peak = 0

    def probe(host, port, timeout):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.02)
        with lock:
            active -= 1
        return PortStatus.CLOSED

    limits = ConcurrencyLimits(max_hosts=2, max_ports_per_host=3)
    scan_hosts([f"10.0.0.{index}" for index in range(1, 7)], range(1, 11), limits=limits, probe=probe)

    assert 1 <= peak <= limits.max_hosts * limits.max_ports_per_host


def test_slow_probes_finish_within_concurrency_bound():
    def probe(host, port, timeout):
        time.sleep(0.1)
        return PortStatus.CLOSED

    started = time.perf_counter()
    scan_hosts(["10.0.0.1", "10.0.0.2"], range(1, 9), limits=ConcurrencyLimits(2, 8), probe=probe)

    # 16 probes of 100ms each run in a single wave.
    assert time.perf_counter() - started < 1.0


def test_cancel_omits_unprobed_ports():
    cancel = threading.Event()
    probed = []

    def probe(host, port, timeout):
        probed.append(port)
        if len(probed) >= 3:
            cancel.set()
        time.sleep(0.01)
        return PortStatus.OPEN

    (result,) = scan_hosts(
        ["10.0.0.1"],
        range(1, 201),
        limits=ConcurrencyLimits(1, 2),
        probe=probe,
        cancel_event=cancel,
    )

    assert result.cancelled
    assert 3 <= len(result.statuses) < 200
    assert set(result.statuses) == set(probed)


@pytest.mark.parametrize(
    "hosts, ports, limits, timeout",
    [
        ([], [22], ConcurrencyLimits(), 0.5),
        (["10.0.0.1"], [], ConcurrencyLimits(), 0.5),
        (["10.0.0.1"], [22], ConcurrencyLimits(max_hosts=0), 0.5),
        (["10.0.0.1"], [22], ConcurrencyLimits(), 0),
    ],
)
def test_invalid_scan_requests_fail_before_probing(hosts, ports, limits, timeout):
    calls = []

    def probe(host, port, timeout):
        calls.append(port)
        return PortStatus.OPEN

    with pytest.raises(InvalidConfiguration):
        scan_hosts(hosts, ports, limits=limits, timeout=timeout, probe=probe)
    assert calls == []


def test_scan_budget_rejects_over_limit(clock):
    budget = ScanBudget(10, clock=clock)
    scan_hosts(["10.0.0.1"], [1, 2, 3, 4, 5, 6], probe=fake_probe(()), budget=budget)

    with pytest.raises(RateLimitExceeded):
        scan_hosts(["10.0.0.1"], [1, 2, 3, 4, 5, 6], probe=fake_probe(()), budget=budget)

    clock.advance(60)
    scan_hosts(["10.0.0.1"], [1, 2, 3, 4, 5, 6], probe=fake_probe(()), budget=budget)
    assert budget.used == 6


def test_banners_are_grabbed_for_open_ports_only():
    grabbed = []

    def grabber(host, port, timeout):
        grabbed.append(port)
        return "SSH-1.5-OpenSSH_3.1"

    (result,) = scan_hosts(
        ["10.0.0.1"], [22, 80], probe=fake_probe({22}), grab_banners=True, banner_grabber=grabber
    )

    assert grabbed == [22]
    assert result.banners == {22: "SSH-1.5-OpenSSH_3.1"}


def test_start_scan_streams_results_and_completes():
    seen = []
    done = threading.Event()

    job = start_scan(
        ["10.0.0.1", "10.0.0.2"],
        [22, 80],
        on_result=seen.append,
        on_complete=done.set,
        probe=fake_probe({22}),
    )

    assert job.wait(5)
    assert done.is_set()
    assert job.error is None
    assert sorted(result.host for result in seen) == ["10.0.0.1", "10.0.0.2"]
    assert len(job.results) == 2


def test_start_scan_validates_eagerly():
    with pytest.raises(InvalidConfiguration):
        start_scan([], [22])


def test_identify_service_from_banners():
    ssh = identify_service(22, "SSH-2.0-OpenSSH_9.6p1 Ubuntu")
    assert (ssh.service, ssh.software, ssh.version, ssh.protocol_version) == ("ssh", "openssh", "9.6p1", "2.0")
    http = identify_service(80, "HTTP/1.1 200 OK Server: nginx/1.25.3")
    assert (http.service, http.software, http.version) == ("http", "nginx", "1.25.3")
    assert identify_service(9999, "").service == "tcp/9999"
    assert ssh_protocol_version("SSH-1.99-Cisco-1.25") == "1.99"
