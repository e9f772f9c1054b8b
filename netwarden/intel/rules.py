"""Static, versioned threat rule table.

Per-port rules cover disjoint port sets, so one open port matches at most
one of them. Host-level rules look at the whole result.
"""

from __future__ import annotations

from dataclasses import dataclass

from netwarden.models import ThreatCategory

RULESET_VERSION = "2026.10.1"


@dataclass(frozen=True, slots=True)
class PortRule:
    rule_id: str
    category: ThreatCategory
    severity: float
    ports: frozenset[int]
    title: str
    description: str
    remediation: str
    loopback_exempt: bool = False


@dataclass(frozen=True, slots=True)
class HostRule:
    rule_id: str
    category: ThreatCategory
    severity: float
    title: str
    description: str
    remediation: str


def _ports(*values: int | range) -> frozenset[int]:
    collected: set[int] = set()
    for value in values:
        if isinstance(value, range):
            collected.update(value)
        else:
            collected.add(value)
    return frozenset(collected)


BACKDOOR_PORTS = _ports(1243, 4444, range(6666, 6670), 12345, 12346, 20034, 27374, range(30100, 30103), 31337, 54321)
CLEARTEXT_SHELL_PORTS = _ports(23, 2323, range(512, 515))
DATASTORE_PORTS = _ports(1433, 1521, 3306, 5432, 5984, 6379, 8086, 9042, 9200, 11211, range(27017, 27020))
RDP_PORTS = _ports(3389)
VNC_PORTS = _ports(range(5900, 5904))
FILE_SHARING_PORTS = _ports(139, 445)
PLAINTEXT_TRANSFER_PORTS = _ports(20, 21, 69)
SNMP_PORTS = _ports(161)
DHCP_SERVER_PORTS = _ports(67)
HTTP_PORT = 80
HTTPS_PORT = 443
REMOTE_ACCESS_PORTS = _ports(22, 23, range(512, 515), 3389, range(5900, 5904), 5938, 6000)
REMOTE_ACCESS_THRESHOLD = 3

PORT_RULES: tuple[PortRule, ...] = (
    PortRule(
        rule_id="NW-BACKDOOR-001",
        category=ThreatCategory.BACKDOOR_PORT,
        severity=10.0,
        ports=BACKDOOR_PORTS,
        title="Known backdoor/trojan port open",
        description="Port {port} is used by well-known remote-access trojans and botnet command channels.",
        remediation="Isolate the host, identify the listening process and reimage if it is not a sanctioned service.",
    ),
    PortRule(
        rule_id="NW-CLEARTEXT-SHELL-001",
        category=ThreatCategory.UNENCRYPTED_TRANSPORT,
        severity=9.0,
        ports=CLEARTEXT_SHELL_PORTS,
        title="Cleartext remote shell exposed",
        description="Port {port} offers a Telnet/r-service login that sends credentials and sessions unencrypted.",
        remediation="Disable the service and use SSH with key-based authentication instead.",
    ),
    PortRule(
        rule_id="NW-DATASTORE-001",
        category=ThreatCategory.EXPOSED_DATASTORE,
        severity=9.8,
        ports=DATASTORE_PORTS,
        title="Datastore reachable from the network",
        description="Database/cache port {port} accepts connections from beyond the local host.",
        remediation="Bind the service to localhost or a private interface, require authentication and firewall the port.",
        loopback_exempt=True,
    ),
    PortRule(
        rule_id="NW-RDP-001",
        category=ThreatCategory.EXPOSED_REMOTE_ACCESS,
        severity=8.0,
        ports=RDP_PORTS,
        title="Remote Desktop exposed",
        description="RDP on port {port} is a frequent brute-force and exploitation target.",
        remediation="Restrict RDP to a VPN or jump host and enable Network Level Authentication.",
    ),
    PortRule(
        rule_id="NW-VNC-001",
        category=ThreatCategory.EXPOSED_REMOTE_ACCESS,
        severity=8.0,
        ports=VNC_PORTS,
        title="VNC exposed",
        description="VNC on port {port} often runs with weak or no authentication and unencrypted sessions.",
        remediation="Tunnel VNC over SSH or a VPN and require strong passwords.",
    ),
    PortRule(
        rule_id="NW-SMB-001",
        category=ThreatCategory.EXPOSED_REMOTE_ACCESS,
        severity=7.5,
        ports=FILE_SHARING_PORTS,
        title="SMB/NetBIOS file sharing exposed",
        description="File sharing on port {port} exposes shares and has a long history of wormable flaws.",
        remediation="Disable SMBv1, limit shares to trusted subnets and keep the host patched.",
    ),
    PortRule(
        rule_id="NW-PLAINTEXT-TRANSFER-001",
        category=ThreatCategory.UNENCRYPTED_TRANSPORT,
        severity=7.5,
        ports=PLAINTEXT_TRANSFER_PORTS,
        title="Plaintext file transfer service",
        description="FTP/TFTP on port {port} transfers files and credentials without encryption.",
        remediation="Replace with SFTP or FTPS and disable anonymous access.",
    ),
    PortRule(
        rule_id="NW-SNMP-001",
        category=ThreatCategory.WEAK_AUTH_PROTOCOL,
        severity=7.5,
        ports=SNMP_PORTS,
        title="SNMP v1/v2c service reachable",
        description="SNMP on port {port} authenticates with community strings sent in cleartext.",
        remediation="Move to SNMPv3 with authentication and privacy, or disable SNMP.",
    ),
)

SSH_V1_RULE = HostRule(
    rule_id="NW-SSH-V1-001",
    category=ThreatCategory.WEAK_AUTH_PROTOCOL,
    severity=7.4,
    title="SSH protocol version 1 offered",
    description="The service on port {port} announces {banner!r}; SSH-1 has broken integrity protection.",
    remediation="Disable protocol 1 in the SSH server configuration and allow only SSH-2.",
)

ROGUE_DHCP_RULE = HostRule(
    rule_id="NW-ROGUE-DHCP-001",
    category=ThreatCategory.ROGUE_DEVICE,
    severity=8.6,
    title="Unexpected DHCP server",
    description="Port {port} answers on a host that is not a trusted DHCP server; it may hand out hostile gateways or DNS.",
    remediation="Locate and disconnect the device or add it to the trusted hosts list; enable DHCP snooping on switches.",
)

PLAINTEXT_WEB_RULE = HostRule(
    rule_id="NW-HTTP-NO-TLS-001",
    category=ThreatCategory.UNENCRYPTED_TRANSPORT,
    severity=5.3,
    title="Web service without TLS",
    description="Port 80 is open while port 443 is not; web traffic, including logins, travels unencrypted.",
    remediation="Serve the site over HTTPS and redirect port 80 to 443.",
)

REMOTE_ACCESS_RULE = HostRule(
    rule_id="NW-REMOTE-ACCESS-STACK-001",
    category=ThreatCategory.EXPOSED_REMOTE_ACCESS,
    severity=7.5,
    title="Multiple remote-access services exposed",
    description="{count} remote-access services are open ({ports}); each one widens the attack surface.",
    remediation="Keep a single hardened remote-access path (SSH or VPN) and close the rest.",
)

RULESET: tuple[PortRule | HostRule, ...] = (*PORT_RULES, SSH_V1_RULE, ROGUE_DHCP_RULE, PLAINTEXT_WEB_RULE, REMOTE_ACCESS_RULE)


def rule_for_port(port: int) -> PortRule | None:
    for rule in PORT_RULES:
        if port in rule.ports:
            return rule
    return None
