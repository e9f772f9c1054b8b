from __future__ import annotations

from conftest import make_device, make_result
from netwarden.intel.classify import classify, classify_all, network_risk_score, risk_level, summarize
from netwarden.intel.rules import PORT_RULES, RULESET
from netwarden.models import ThreatCategory


def test_telnet_yields_single_cleartext_finding():
    findings = classify(make_result(open_ports=[23], closed_ports=[22, 80]))

    assert len(findings) == 1
    assert findings[0].category is ThreatCategory.UNENCRYPTED_TRANSPORT
    assert findings[0].severity == 9.0
    assert findings[0].port == 23


def test_rdp_yields_single_remote_access_finding():
    findings = classify(make_result(open_ports=[3389]))

    assert [(f.category, f.severity, f.port) for f in findings] == [
        (ThreatCategory.EXPOSED_REMOTE_ACCESS, 8.0, 3389)
    ]


def test_backdoor_port_is_maximum_severity():
    (finding,) = classify(make_result(open_ports=[31337]))
    assert finding.category is ThreatCategory.BACKDOOR_PORT
    assert finding.severity == 10.0


def test_plaintext_web_only_without_tls():
    plain = classify(make_result(open_ports=[80]))
    assert [(f.category, f.severity) for f in plain] == [(ThreatCategory.UNENCRYPTED_TRANSPORT, 5.3)]
    assert classify(make_result(open_ports=[80, 443])) == []


def test_three_remote_access_ports_add_one_compound_finding():
    findings = classify(make_result(open_ports=[22, 3389, 5900]))

    compound = [f for f in findings if f.port is None]
    assert len(compound) == 1
    assert compound[0].severity == 7.5
    assert compound[0].category is ThreatCategory.EXPOSED_REMOTE_ACCESS
    assert "22, 3389, 5900" in compound[0].description
    assert len(findings) == 3


def test_datastore_on_loopback_is_exempt():
    assert classify(make_result("127.0.0.1", open_ports=[6379])) == []
    (finding,) = classify(make_result("192.168.1.5", open_ports=[6379]))
    assert finding.category is ThreatCategory.EXPOSED_DATASTORE
    assert finding.severity == 9.8


def test_rogue_dhcp_respects_trusted_hosts():
    result = make_result("192.168.1.50", open_ports=[67])

    (finding,) = classify(result)
    assert finding.category is ThreatCategory.ROGUE_DEVICE
    assert classify(result, trusted_hosts={"192.168.1.50"}) == []


def test_ssh_v1_banner_is_weak_auth():
    result = make_result(open_ports=[22], banners={22: "SSH-1.5-OpenSSH_2.9"})

    (finding,) = classify(result)
    assert finding.category is ThreatCategory.WEAK_AUTH_PROTOCOL
    assert finding.rule_id == "NW-SSH-V1-001"


def test_classification_is_deterministic_and_ordered():
    result = make_result(open_ports=[21, 23, 80, 445, 3306, 31337])

    first = classify(result)
    assert first == classify(result)
    severities = [finding.severity for finding in first]
    assert severities == sorted(severities, reverse=True)
    assert first[0].severity == 10.0


def test_port_rules_cover_disjoint_ports():
    seen: set[int] = set()
    for rule in PORT_RULES:
        assert not seen & rule.ports, rule.rule_id
        seen |= rule.ports
    assert len({rule.rule_id for rule in RULESET}) == len(RULESET)


def test_summary_and_network_score():
    results = [
        make_result(make_device("10.0.0.1"), open_ports=[23]),
        make_result(make_device("10.0.0.2"), open_ports=[80]),
        make_result(make_device("10.0.0.3")),
    ]
    findings = classify_all(results)

    summary = summarize(findings)
    assert summary["10.0.0.1"]["risk_level"] == "critical"
    assert summary["10.0.0.2"]["risk_level"] == "medium"
    assert "10.0.0.3" not in summary
    assert network_risk_score(findings, len(results)) == round((9.0 + 5.3) / 3 * 10, 1)
    assert risk_level(0) == "info"
