"""Banner grabbing and service identification for open TCP ports."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
import socket
from typing import Callable

from .ip_utils import address_family

logger = logging.getLogger(__name__)

MAX_BANNER_BYTES = 256


@dataclass(slots=True)
class ServiceFingerprint:
    service: str = "unknown"
    software: str = "unknown"
    version: str = ""
    banner: str = ""
    protocol_version: str = ""


def _recv_text(sock: socket.socket, limit: int = MAX_BANNER_BYTES) -> str:
    try:
        payload = sock.recv(limit)
    except OSError:
        return ""
    return payload.decode("utf-8", errors="ignore").strip()


def _passive(sock: socket.socket) -> str:
    return _recv_text(sock)


def _http_head(sock: socket.socket) -> str:
    sock.sendall(b"HEAD / HTTP/1.0\r\n\r\n")
    return _recv_text(sock)


def _redis_ping(sock: socket.socket) -> str:
    sock.sendall(b"PING\r\n")
    return _recv_text(sock)


def _nudge(sock: socket.socket) -> str:
    greeting = _recv_text(sock)
    if greeting:
        return greeting
    sock.sendall(b"\r\n")
    return _recv_text(sock)


# Servers that speak first are read passively; others need a request.
BANNER_PROBES: dict[int, Callable[[socket.socket], str]] = {
    21: _passive,
    22: _passive,
    23: _passive,
    25: _passive,
    110: _passive,
    143: _passive,
    3306: _passive,
    80: _http_head,
    8000: _http_head,
    8008: _http_head,
    8080: _http_head,
    8888: _http_head,
    6379: _redis_ping,
}


def grab_banner(host: str, port: int, timeout: float = 0.7) -> str:
    """Read the first line a service offers, or ``""`` when nothing usable arrives."""
    try:
        with socket.socket(address_family(host), socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            sock.connect((host, int(port)))
            banner = BANNER_PROBES.get(int(port), _nudge)(sock)
    except OSError as exc:
        logger.debug("Banner grab on %s:%s failed: %s", host, port, exc)
        return ""
    first_line = banner.splitlines()[0] if banner else ""
    return "".join(char for char in first_line if char.isprintable())[:MAX_BANNER_BYTES]


def _match(pattern: str, banner: str) -> str:
    match = re.search(pattern, banner, flags=re.IGNORECASE)
    return match.group(1).strip() if match else ""


def identify_service(port: int, banner: str) -> ServiceFingerprint:
    """Map a banner onto service, software and version."""
    lowered = banner.lower()

    if lowered.startswith("ssh-"):
        return ServiceFingerprint(
            service="ssh",
            software="openssh" if "openssh" in lowered else "dropbear" if "dropbear" in lowered else "ssh",
            version=_match(r"(?:openssh|dropbear)[_-]([0-9][^\s]*)", banner),
            banner=banner,
            protocol_version=_match(r"^ssh-([0-9.]+)-", banner),
        )
    if lowered.startswith("http/") or "server:" in lowered:
        software = "nginx" if "nginx" in lowered else "apache" if "apache" in lowered else "http-server"
        return ServiceFingerprint(
            service="http",
            software=software,
            version=_match(r"(?:nginx|apache)/([0-9][^\s;]*)", banner),
            banner=banner,
            protocol_version=_match(r"^http/([0-9.]+)", banner),
        )
    if "smtp" in lowered:
        return ServiceFingerprint(service="smtp", software="postfix" if "postfix" in lowered else "smtp-server", banner=banner)
    if "ftp" in lowered or (port == 21 and lowered.startswith("220")):
        return ServiceFingerprint(
            service="ftp",
            software="vsftpd" if "vsftpd" in lowered else "proftpd" if "proftpd" in lowered else "ftp-server",
            version=_match(r"(?:vsftpd|proftpd)[\s-]?([0-9][^\s)]*)", banner),
            banner=banner,
        )
    if lowered.startswith("+pong") or "redis" in lowered:
        return ServiceFingerprint(service="redis", software="redis", banner=banner)
    if "mysql" in lowered or "mariadb" in lowered or port == 3306:
        return ServiceFingerprint(service="mysql", software="mysql", version=_match(r"([0-9]+\.[0-9]+\.[0-9]+)", banner), banner=banner)
    return ServiceFingerprint(service=f"tcp/{port}", banner=banner)


def ssh_protocol_version(banner: str | None) -> str:
    """Return ``"1.5"``, ``"2.0"`` etc. from an SSH identification string."""
    if not banner:
        return ""
    return _match(r"^ssh-([0-9.]+)-", banner.strip())
