"""Bounded-concurrency port scan engine.

Two caps bound the thread count regardless of input size: an outer pool
scans at most ``max_hosts`` hosts at once and every host gets its own pool of
at most ``max_ports_per_host`` probe workers.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass, field
import logging
import queue
import threading
import time
import uuid

from netwarden.discovery.identity import identity_key
from netwarden.errors import InvalidConfiguration, ProbeError, ProbeTimeout, RateLimitExceeded
from netwarden.models import Device, PortStatus, ScanResult, utc_now

from .fingerprinting import grab_banner
from .ports import validate_ports
from .probe import Probe, tcp_probe, udp_probe

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.05


@dataclass(frozen=True, slots=True)
class ConcurrencyLimits:
    max_hosts: int = 16
    max_ports_per_host: int = 64

    def validate(self) -> "ConcurrencyLimits":
        if int(self.max_hosts) < 1 or int(self.max_ports_per_host) < 1:
            raise InvalidConfiguration("concurrency limits must be at least 1")
        return self

    @property
    def max_threads(self) -> int:
        return self.max_hosts * (self.max_ports_per_host + 1)


class ScanBudget:
    """Per-minute probe budget shared by every scan that is handed the same instance."""

    def __init__(
        self,
        max_probes_per_minute: int,
        *,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if int(max_probes_per_minute) < 1:
            raise InvalidConfiguration("max_probes_per_minute must be at least 1")
        self.limit = int(max_probes_per_minute)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._window_start: float | None = None
        self._used = 0
        self._lock = threading.Lock()

    def reserve(self, probes: int) -> None:
        """Claim ``probes`` from the current window or raise :class:`RateLimitExceeded`."""
        with self._lock:
            now = self._clock()
            if self._window_start is None or now - self._window_start >= self.window_seconds:
                self._window_start = now
                self._used = 0
            if self._used + probes > self.limit:
                retry_after = self.window_seconds - (now - self._window_start)
                raise RateLimitExceeded(self._used + probes, self.limit, retry_after)
            self._used += probes

    @property
    def used(self) -> int:
        with self._lock:
            return self._used


def _as_device(host: Device | str) -> Device:
    if isinstance(host, Device):
        return host
    address = str(host).strip()
    return Device(key=identity_key(mac=None, ip=address), ip=address)


def _coerce_status(value: object) -> PortStatus:
    if isinstance(value, PortStatus):
        return value
    if isinstance(value, bool):
        return PortStatus.OPEN if value else PortStatus.CLOSED
    return PortStatus(str(value))


def _probe_port(
    probe: Probe,
    host: str,
    port: int,
    timeout: float,
    banner_grabber: Callable[[str, int, float], str] | None,
) -> tuple[PortStatus, str]:
    try:
        status = _coerce_status(probe(host, port, timeout))
    except ProbeTimeout:
        return PortStatus.FILTERED, ""
    except ProbeError as exc:
        logger.debug("Probe error on %s:%s: %s", host, port, exc.reason)
        return PortStatus.ERROR, ""
    except ConnectionRefusedError:
        return PortStatus.CLOSED, ""
    except TimeoutError:
        return PortStatus.FILTERED, ""
    except OSError as exc:
        logger.debug("Probe I/O error on %s:%s: %s", host, port, exc)
        return PortStatus.ERROR, ""
    except Exception:  # noqa: BLE001
        logger.warning("Probe raised unexpectedly on %s:%s", host, port, exc_info=True)
        return PortStatus.ERROR, ""

    banner = ""
    if status is PortStatus.OPEN and banner_grabber is not None:
        try:
            banner = banner_grabber(host, port, timeout)
        except OSError as exc:
            logger.debug("Banner grab on %s:%s failed: %s", host, port, exc)
    return status, banner


def _scan_host(
    device: Device,
    ports: Sequence[int],
    *,
    probe: Probe,
    timeout: float,
    max_workers: int,
    cancel_event: threading.Event | None,
    cycle_id: str,
    protocol: str,
    banner_grabber: Callable[[str, int, float], str] | None,
) -> ScanResult:
    started_at = utc_now()
    started = time.perf_counter()
    statuses: dict[int, PortStatus] = {}
    banners: dict[int, str] = {}
    cancelled = False

    def _record(future: Future[tuple[PortStatus, str]], port: int) -> None:
        status, banner = future.result()
        statuses[port] = status
        if banner:
            banners[port] = banner

    with ThreadPoolExecutor(
        max_workers=max(1, min(max_workers, len(ports))),
        thread_name_prefix=f"probe-{device.ip}",
    ) as pool:
        future_to_port: dict[Future[tuple[PortStatus, str]], int] = {}
        for port in ports:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            future = pool.submit(_probe_port, probe, device.ip, int(port), timeout, banner_grabber)
            future_to_port[future] = int(port)

        pending = set(future_to_port)
        while pending:
            done, pending = wait(pending, timeout=_POLL_SECONDS, return_when=FIRST_COMPLETED)
            for future in done:
                _record(future, future_to_port[future])
            if pending and cancel_event is not None and cancel_event.is_set():
                cancelled = True
                # Queued probes are dropped; probes already on the wire drain.
                in_flight = {future for future in pending if not future.cancel()}
                finished, _ = wait(in_flight)
                for future in finished:
                    _record(future, future_to_port[future])
                pending = set()

    if len(statuses) < len(ports):
        cancelled = True
    return ScanResult(
        device=device,
        timestamp=started_at,
        ports=tuple(ports),
        statuses=statuses,
        duration=time.perf_counter() - started,
        cycle_id=cycle_id,
        protocol=protocol,
        banners=banners,
        cancelled=cancelled,
    )


def _validate(hosts: Sequence[Device | str], ports: Sequence[int], limits: ConcurrencyLimits, timeout: float) -> list[int]:
    if not hosts:
        raise InvalidConfiguration("host list is empty")
    if timeout is None or timeout <= 0:
        raise InvalidConfiguration("probe timeout must be positive")
    limits.validate()
    return validate_ports(ports)


def scan_hosts(
    hosts: Sequence[Device | str],
    ports: Sequence[int],
    *,
    limits: ConcurrencyLimits = ConcurrencyLimits(),
    timeout: float = 0.6,
    probe: Probe = tcp_probe,
    cancel_event: threading.Event | None = None,
    cycle_id: str | None = None,
    grab_banners: bool = False,
    budget: ScanBudget | None = None,
    protocol: str | None = None,
    banner_grabber: Callable[[str, int, float], str] = grab_banner,
    on_result: Callable[[ScanResult], None] | None = None,
) -> list[ScanResult]:
    """Scan every host on every port and return one :class:`ScanResult` per host.

    Results come back in input host order. A host whose probes all fail still
    yields a result (all ``error``). When ``cancel_event`` is set, ports that
    were never probed are left out and the result is marked ``cancelled``.
    """
    port_list = _validate(hosts, ports, limits, timeout)
    devices = [_as_device(host) for host in hosts]
    if budget is not None:
        budget.reserve(len(devices) * len(port_list))

    cycle = cycle_id or uuid.uuid4().hex
    scan_protocol = protocol or ("udp" if probe is udp_probe else "tcp")
    grabber = banner_grabber if grab_banners and scan_protocol == "tcp" else None
    results: dict[int, ScanResult] = {}

    def _host_task(device: Device) -> ScanResult:
        if cancel_event is not None and cancel_event.is_set():
            return ScanResult(
                device=device,
                timestamp=utc_now(),
                ports=tuple(port_list),
                statuses={},
                duration=0.0,
                cycle_id=cycle,
                protocol=scan_protocol,
                cancelled=True,
            )
        try:
            return _scan_host(
                device,
                port_list,
                probe=probe,
                timeout=timeout,
                max_workers=limits.max_ports_per_host,
                cancel_event=cancel_event,
                cycle_id=cycle,
                protocol=scan_protocol,
                banner_grabber=grabber,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Scan of %s failed", device.ip)
            return ScanResult(
                device=device,
                timestamp=utc_now(),
                ports=tuple(port_list),
                statuses={port: PortStatus.ERROR for port in port_list},
                duration=0.0,
                cycle_id=cycle,
                protocol=scan_protocol,
            )

    started = time.perf_counter()
    with ThreadPoolExecutor(max_workers=min(limits.max_hosts, len(devices)), thread_name_prefix="scan-host") as pool:
        futures = {pool.submit(_host_task, device): index for index, device in enumerate(devices)}
        for future in as_completed(futures):
            index = futures[future]
            result = future.result()
            results[index] = result
            if on_result is not None:
                on_result(result)

    ordered = [results[index] for index in range(len(devices))]
    logger.info(
        "Scanned %d host(s) x %d port(s) in %.2fs (cycle %s, %d open)",
        len(devices),
        len(port_list),
        time.perf_counter() - started,
        cycle,
        sum(len(result.open_ports) for result in ordered),
    )
    return ordered


@dataclass(slots=True)
class ScanJob:
    """Async scan handle returned by :func:`start_scan`."""

    _worker: threading.Thread
    _callback_worker: threading.Thread
    _stop_event: threading.Event
    results: list[ScanResult] = field(default_factory=list)
    error: BaseException | None = None

    def cancel(self) -> None:
        """Ask the scan to stop early."""
        self._stop_event.set()

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for workers to finish; returns ``True`` when both are done."""
        self._worker.join(timeout)
        self._callback_worker.join(timeout)
        return not self._worker.is_alive() and not self._callback_worker.is_alive()


def _callback_consumer(
    result_queue: queue.Queue[ScanResult | None],
    on_result: Callable[[ScanResult], None] | None,
    on_complete: Callable[[], None] | None,
    job_results: list[ScanResult],
) -> None:
    """Consume queue entries and run callbacks outside scanner threads."""
    while True:
        result = result_queue.get()
        if result is None:
            result_queue.task_done()
            if on_complete:
                on_complete()
            break

        try:
            job_results.append(result)
            if on_result:
                on_result(result)
        except Exception:  # noqa: BLE001
            logger.exception("Scan result callback failed for %s", result.host)
        finally:
            result_queue.task_done()


def start_scan(
    hosts: Sequence[Device | str],
    ports: Sequence[int],
    *,
    on_result: Callable[[ScanResult], None] | None = None,
    on_complete: Callable[[], None] | None = None,
    **scan_options: object,
) -> ScanJob:
    """Start :func:`scan_hosts` in the background and stream results to ``on_result``.

    Validation errors are raised here, before any thread starts.
    """
    limits = scan_options.get("limits", ConcurrencyLimits())
    timeout = scan_options.get("timeout", 0.6)
    _validate(hosts, ports, limits, timeout)  # type: ignore[arg-type]

    result_queue: queue.Queue[ScanResult | None] = queue.Queue()
    stop_event = threading.Event()
    job_results: list[ScanResult] = []

    callback_worker = threading.Thread(
        target=_callback_consumer,
        args=(result_queue, on_result, on_complete, job_results),
        daemon=True,
        name="scan-callback-consumer",
    )

    job: ScanJob

    def worker() -> None:
        try:
            scan_hosts(hosts, ports, cancel_event=stop_event, on_result=result_queue.put, **scan_options)  # type: ignore[arg-type]
        except Exception as exc:  # noqa: BLE001
            job.error = exc
            logger.exception("Background scan failed")
        finally:
            result_queue.put(None)

    scan_worker = threading.Thread(target=worker, daemon=True, name="scan-submit-worker")
    job = ScanJob(_worker=scan_worker, _callback_worker=callback_worker, _stop_event=stop_event, results=job_results)
    callback_worker.start()
    scan_worker.start()
    return job
