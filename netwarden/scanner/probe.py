"""Connection probes: one attempt against one host:port with a timeout."""

from __future__ import annotations

import errno
import socket
from typing import Callable

from netwarden.errors import ProbeError, ProbeTimeout
from netwarden.models import PortStatus

from .ip_utils import address_family

Probe = Callable[[str, int, float], PortStatus]

_REFUSED_ERRNOS = {errno.ECONNREFUSED, errno.ECONNRESET}


def tcp_probe(host: str, port: int, timeout: float) -> PortStatus:
    """TCP connect probe: ``OPEN`` or ``CLOSED``; raises ``ProbeTimeout``/``ProbeError``."""
    try:
        with socket.socket(address_family(host), socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            sock.connect((host, int(port)))
        return PortStatus.OPEN
    except ConnectionRefusedError:
        return PortStatus.CLOSED
    except TimeoutError as exc:
        raise ProbeTimeout(host, port, timeout) from exc
    except OSError as exc:
        if exc.errno in _REFUSED_ERRNOS:
            return PortStatus.CLOSED
        raise ProbeError(host, port, exc.strerror or str(exc)) from exc


def udp_probe(host: str, port: int, timeout: float) -> PortStatus:
    """UDP probe: a reply means open, ICMP port-unreachable means closed, silence is filtered."""
    try:
        with socket.socket(address_family(host), socket.SOCK_DGRAM) as sock:
            sock.settimeout(timeout)
            sock.connect((host, int(port)))
            sock.send(b"\x00")
            sock.recv(512)
        return PortStatus.OPEN
    except ConnectionRefusedError:
        return PortStatus.CLOSED
    except TimeoutError as exc:
        raise ProbeTimeout(host, port, timeout) from exc
    except OSError as exc:
        raise ProbeError(host, port, exc.strerror or str(exc)) from exc
