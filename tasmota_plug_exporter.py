from __future__ import annotations

import json
import logging
import math
import re
import signal
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from socketserver import ThreadingMixIn
from threading import Event, Thread, Timer
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import click
import requests
import yaml
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector
from urllib3.exceptions import ReadTimeoutError
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

EXPORTER_VERSION = "1.0.0"

NAMESPACE = "tasmota"
STATUS_COMMAND = "Status 0"

DEFAULT_LISTEN_ADDRESS = ":9184"
DEFAULT_TELEMETRY_PATH = "/metrics"
DEFAULT_TIMEOUT_SECONDS = 5.0

GAUGE = "gauge"
COUNTER = "counter"

READ_CHUNK_BYTES = 4096

INDEX_HTML = b"""<html>
<head><title>Tasmota Exporter</title></head>
<body>
<h1>Tasmota Exporter</h1>
<p><a href="/metrics">Metrics</a></p>
<p><a href="/health">Health</a></p>
</body>
</html>"""


class TasmotaError(Exception):
    """Base error for a failed device fetch."""

    reason = "error"


class TasmotaRequestError(TasmotaError):
    """The request could not be built, e.g. a malformed address."""

    reason = "request"


class TasmotaConnectionError(TasmotaError):
    """Transport level failure talking to the device."""

    reason = "connection"


class TasmotaTimeoutError(TasmotaConnectionError):
    """The fetch did not finish before its deadline."""

    reason = "timeout"


class TasmotaHTTPError(TasmotaError):
    """The device answered with a non-2xx status."""

    reason = "http_status"

    def __init__(self, status_code: int) -> None:
        super().__init__(f"unexpected status code: {status_code}")
        self.status_code = status_code


class TasmotaDataError(TasmotaError):
    """The response body is not a usable status document."""

    reason = "invalid_response"


@dataclass
class Settings:
    targets: List[str]
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    telemetry_path: str = DEFAULT_TELEMETRY_PATH


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True


class QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        return


def setup_logging(level: str) -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(message)s")


def parse_listen_address(s: str) -> Tuple[str, int]:
    s = s.strip()
    if s.startswith(":"):
        return "", int(s[1:])
    if ":" in s:
        host, port_s = s.rsplit(":", 1)
        return host, int(port_s)
    return "", int(s)


def load_config_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()

    if path.lower().endswith(".json"):
        data = json.loads(raw)
    else:
        data = yaml.safe_load(raw)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping/object")
    return data


def parse_targets(raw: Any) -> List[str]:
    """Split a comma separated target list, dropping blank entries.

    Lists (as found in config files) are accepted as well; order is kept.
    """
    if raw is None:
        return []
    items = raw.split(",") if isinstance(raw, str) else [str(x) for x in raw]
    out: List[str] = []
    for item in items:
        t = item.strip()
        if t:
            out.append(t)
    return out


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(s: str) -> float:
    """Parse a Go style duration ("5s", "1m30s", "250ms") into seconds.

    A bare number is taken as seconds.
    """
    s = str(s).strip()
    if not s:
        raise ValueError("empty duration")

    try:
        value = float(s)
    except ValueError:
        pass
    else:
        if not math.isfinite(value):
            raise ValueError(f"invalid duration {s!r}")
        return value

    total = 0.0
    pos = 0
    for m in _DURATION_PART.finditer(s):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos == 0 or pos != len(s):
        raise ValueError(f"invalid duration {s!r}")
    return total


def resolve_timeout(raw: Optional[str]) -> float:
    if raw is None or not str(raw).strip():
        return DEFAULT_TIMEOUT_SECONDS
    try:
        value = parse_duration(raw)
    except ValueError:
        value = -1.0
    if value <= 0:
        logging.warning("invalid scrape timeout %r, using default %.0fs", raw, DEFAULT_TIMEOUT_SECONDS)
        return DEFAULT_TIMEOUT_SECONDS
    return value


def build_settings(
    targets: Optional[str],
    scrape_timeout: Optional[str],
    listen_address: Optional[str],
    telemetry_path: Optional[str],
    file_cfg: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Merge flags/environment over the optional config file.

    Raises SystemExit when no target is configured.
    """
    cfg = file_cfg or {}
    web_cfg = cfg.get("web", {}) if isinstance(cfg.get("web", {}), dict) else {}
    scrape_cfg = cfg.get("scrape", {}) if isinstance(cfg.get("scrape", {}), dict) else {}

    target_list = parse_targets(targets) or parse_targets(cfg.get("targets"))
    if not target_list:
        raise SystemExit("TASMOTA_TARGETS environment variable is required")

    timeout_raw = scrape_timeout if scrape_timeout is not None else scrape_cfg.get("timeout")

    return Settings(
        targets=target_list,
        timeout_seconds=resolve_timeout(None if timeout_raw is None else str(timeout_raw)),
        listen_address=listen_address or str(web_cfg.get("listen_address", DEFAULT_LISTEN_ADDRESS)),
        telemetry_path=telemetry_path or str(web_cfg.get("telemetry_path", DEFAULT_TELEMETRY_PATH)),
    )


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    v = data.get(key)
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise TasmotaDataError(f"{key}: expected object, got {type(v).__name__}")
    return v


def _number(data: Dict[str, Any], key: str) -> float:
    v = data.get(key)
    if v is None:
        return 0.0
    if not _is_number(v):
        raise TasmotaDataError(f"{key}: expected number, got {type(v).__name__}")
    return float(v)


def _integer(data: Dict[str, Any], key: str) -> int:
    v = _number(data, key)
    if not v.is_integer():
        raise TasmotaDataError(f"{key}: expected integer, got {v!r}")
    return int(v)


def _string(data: Dict[str, Any], key: str) -> str:
    v = data.get(key)
    if v is None:
        return ""
    if not isinstance(v, str):
        raise TasmotaDataError(f"{key}: expected string, got {type(v).__name__}")
    return v


def _string_list(data: Dict[str, Any], key: str) -> Tuple[str, ...]:
    v = data.get(key)
    if v is None:
        return ()
    if not isinstance(v, list) or not all(isinstance(x, str) for x in v):
        raise TasmotaDataError(f"{key}: expected list of strings")
    return tuple(v)


@dataclass(frozen=True)
class DeviceInfo:
    device_name: str = ""
    friendly_names: Tuple[str, ...] = ()
    power: str = ""  # "0" or "1"


@dataclass(frozen=True)
class EnergyReading:
    total: float = 0.0
    yesterday: float = 0.0
    today: float = 0.0
    power: float = 0.0
    apparent_power: float = 0.0
    reactive_power: float = 0.0
    factor: float = 0.0
    voltage: float = 0.0
    current: float = 0.0


@dataclass(frozen=True)
class WifiInfo:
    rssi: int = 0
    signal: int = 0


@dataclass(frozen=True)
class StateInfo:
    uptime: str = ""
    uptime_sec: int = 0
    power: str = ""  # "ON" or "OFF"
    wifi: WifiInfo = field(default_factory=WifiInfo)


@dataclass(frozen=True)
class DeviceStatus:
    """Parsed ``Status 0`` response of one device."""

    info: DeviceInfo = field(default_factory=DeviceInfo)
    energy: EnergyReading = field(default_factory=EnergyReading)
    state: StateInfo = field(default_factory=StateInfo)
    time: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> DeviceStatus:
        """Build a status from decoded JSON.

        Missing keys fall back to zero values. Values of the wrong type raise
        TasmotaDataError; there is no partial result.
        """
        if not isinstance(data, dict):
            raise TasmotaDataError(f"status: expected object, got {type(data).__name__}")

        status = _section(data, "Status")
        sns = _section(data, "StatusSNS")
        energy = _section(sns, "ENERGY")
        sts = _section(data, "StatusSTS")
        wifi = _section(sts, "Wifi")

        return cls(
            info=DeviceInfo(
                device_name=_string(status, "DeviceName"),
                friendly_names=_string_list(status, "FriendlyName"),
                power=_string(status, "Power"),
            ),
            energy=EnergyReading(
                total=_number(energy, "Total"),
                yesterday=_number(energy, "Yesterday"),
                today=_number(energy, "Today"),
                power=_number(energy, "Power"),
                apparent_power=_number(energy, "ApparentPower"),
                reactive_power=_number(energy, "ReactivePower"),
                factor=_number(energy, "Factor"),
                voltage=_number(energy, "Voltage"),
                current=_number(energy, "Current"),
            ),
            state=StateInfo(
                uptime=_string(sts, "Uptime"),
                uptime_sec=_integer(sts, "UptimeSec"),
                power=_string(sts, "POWER"),
                wifi=WifiInfo(rssi=_integer(wifi, "RSSI"), signal=_integer(wifi, "Signal")),
            ),
            time=_string(sns, "Time"),
        )

    def display_name(self) -> str:
        return next((n for n in self.info.friendly_names if n), self.info.device_name)

    def relay_state(self) -> float:
        if self.state.power == "ON" or self.info.power == "1":
            return 1.0
        return 0.0


def status_url(address: str) -> str:
    return f"http://{address}/cm?cmnd={quote(STATUS_COMMAND)}"


class TasmotaClient:
    """Fetches ``Status 0`` from Tasmota devices over HTTP.

    Holds no per-request state, so one instance can be shared by every scrape
    thread.
    """

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self.headers = {"User-Agent": f"tasmota-plug-exporter/{EXPORTER_VERSION}"}

    def fetch_status(self, address: str, timeout: Optional[float] = None) -> DeviceStatus:
        timeout_s = self.timeout_seconds if timeout is None else float(timeout)
        deadline = time.monotonic() + timeout_s
        url = status_url(address)

        try:
            with requests.get(url, headers=self.headers, timeout=(timeout_s, timeout_s), stream=True) as resp:
                if not 200 <= resp.status_code < 300:
                    raise TasmotaHTTPError(resp.status_code)
                body = self._read_body(resp, deadline, timeout_s)
        except (
            requests.exceptions.InvalidURL,
            requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema,
            requests.exceptions.URLRequired,
        ) as e:
            raise TasmotaRequestError(f"creating request: {e}") from e
        except requests.exceptions.Timeout as e:
            raise TasmotaTimeoutError(f"fetching status: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TasmotaConnectionError(f"fetching status: {e}") from e

        try:
            data = json.loads(body)
        except ValueError as e:
            raise TasmotaDataError(f"decoding response: {e}") from e
        return DeviceStatus.from_dict(data)

    def _read_body(self, resp: requests.Response, deadline: float, timeout_s: float) -> bytes:
        # the read timeout only bounds a single recv; the timer bounds the whole body
        expired = Event()
        timer = Timer(max(0.0, deadline - time.monotonic()), _abort_response, (resp, expired))
        timer.daemon = True
        timer.start()
        try:
            body = b"".join(resp.iter_content(chunk_size=READ_CHUNK_BYTES))
        except (requests.exceptions.RequestException, OSError) as e:
            if expired.is_set() or _is_read_timeout(e):
                raise TasmotaTimeoutError(f"reading body: deadline of {timeout_s:.3g}s exceeded") from e
            raise TasmotaConnectionError(f"reading body: {e}") from e
        finally:
            timer.cancel()

        if expired.is_set():
            raise TasmotaTimeoutError(f"reading body: deadline of {timeout_s:.3g}s exceeded")
        return body


def _is_read_timeout(e: BaseException) -> bool:
    return any(isinstance(arg, ReadTimeoutError) for arg in e.args)


def _response_socket(resp: requests.Response) -> Optional[socket.socket]:
    conn = getattr(resp.raw, "connection", None)
    sock = getattr(conn, "sock", None)
    if sock is None:
        # "Connection: close" responses hand the socket over to the response stream
        fp = getattr(getattr(resp.raw, "_fp", None), "fp", None)
        sock = getattr(getattr(fp, "raw", None), "_sock", None)
    return sock


def _abort_response(resp: requests.Response, expired: Event) -> None:
    expired.set()
    sock = _response_socket(resp)
    if sock is None:
        resp.close()
        return
    try:
        # shutdown wakes a recv blocked in another thread
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


@dataclass(frozen=True)
class Sample:
    name: str
    value: float
    labels: Tuple[str, ...]
    kind: str = GAUGE


@dataclass(frozen=True)
class MetricDescriptor:
    name: str
    help: str
    kind: str
    labels: Tuple[str, ...]
    read: Optional[Callable[[DeviceStatus], float]] = field(default=None, compare=False, repr=False)

    def family(self):
        if self.kind == COUNTER:
            return CounterMetricFamily(self.name, self.help, labels=list(self.labels))
        return GaugeMetricFamily(self.name, self.help, labels=list(self.labels))

    def sample(self, value: float, labels: Sequence[str]) -> Sample:
        return Sample(self.name, float(value), tuple(labels), self.kind)


def _fqname(name: str) -> str:
    return f"{NAMESPACE}_{name}"


_ADDRESS = ("address",)
_DEVICE = ("address", "device")

UP = MetricDescriptor(_fqname("up"), "Whether the Tasmota device is reachable", GAUGE, _ADDRESS)

READINGS: Tuple[MetricDescriptor, ...] = (
    MetricDescriptor(_fqname("power_watts"), "Current power consumption in watts", GAUGE, _DEVICE,
                     lambda s: s.energy.power),
    MetricDescriptor(_fqname("voltage_volts"), "Current voltage in volts", GAUGE, _DEVICE,
                     lambda s: s.energy.voltage),
    MetricDescriptor(_fqname("current_amps"), "Current in amperes", GAUGE, _DEVICE,
                     lambda s: s.energy.current),
    MetricDescriptor(_fqname("energy_total_kwh"), "Total energy consumed in kWh", COUNTER, _DEVICE,
                     lambda s: s.energy.total),
    # today/yesterday reset daily, so they stay gauges
    MetricDescriptor(_fqname("energy_today_kwh"), "Energy consumed today in kWh", GAUGE, _DEVICE,
                     lambda s: s.energy.today),
    MetricDescriptor(_fqname("energy_yesterday_kwh"), "Energy consumed yesterday in kWh", GAUGE, _DEVICE,
                     lambda s: s.energy.yesterday),
    MetricDescriptor(_fqname("power_factor"), "Power factor (0-1)", GAUGE, _DEVICE,
                     lambda s: s.energy.factor),
    MetricDescriptor(_fqname("apparent_power_va"), "Apparent power in VA", GAUGE, _DEVICE,
                     lambda s: s.energy.apparent_power),
    MetricDescriptor(_fqname("reactive_power_var"), "Reactive power in VAR", GAUGE, _DEVICE,
                     lambda s: s.energy.reactive_power),
    MetricDescriptor(_fqname("relay_state"), "Relay state (1=on, 0=off)", GAUGE, _DEVICE,
                     lambda s: s.relay_state()),
    MetricDescriptor(_fqname("uptime_seconds"), "Device uptime in seconds", GAUGE, _DEVICE,
                     lambda s: s.state.uptime_sec),
    MetricDescriptor(_fqname("wifi_rssi_percent"), "WiFi RSSI as percentage", GAUGE, _DEVICE,
                     lambda s: s.state.wifi.rssi),
    MetricDescriptor(_fqname("wifi_signal_dbm"), "WiFi signal strength in dBm", GAUGE, _DEVICE,
                     lambda s: s.state.wifi.signal),
)

METRICS: Tuple[MetricDescriptor, ...] = (UP,) + READINGS


def status_samples(address: str, status: DeviceStatus) -> List[Sample]:
    device = status.display_name()
    out = [UP.sample(1.0, [address])]
    for desc in READINGS:
        out.append(desc.sample(desc.read(status), [address, device]))
    return out


def scrape_target(client: TasmotaClient, address: str, timeout: float) -> List[Sample]:
    try:
        status = client.fetch_status(address, timeout)
    except TasmotaError as e:
        logging.warning("scrape_failed address=%s reason=%s error=%s", address, e.reason, e)
        return [UP.sample(0.0, [address])]
    return status_samples(address, status)


def collect_samples(targets: Sequence[str], client: TasmotaClient, timeout: float) -> List[Sample]:
    """Scrape every target concurrently and return the combined samples.

    Returns only once every fetch has finished or failed. A failed target
    yields a single ``up`` sample of 0.
    """
    if not targets:
        return []

    with ThreadPoolExecutor(max_workers=len(targets), thread_name_prefix="tasmota-scrape") as executor:
        futs = [(address, executor.submit(scrape_target, client, address, timeout)) for address in targets]

    samples: List[Sample] = []
    for address, fut in futs:
        try:
            samples.extend(fut.result())
        except Exception:
            logging.exception("scrape_failed address=%s reason=unexpected", address)
            samples.append(UP.sample(0.0, [address]))
    return samples


class TasmotaCollector:
    def __init__(self, client: TasmotaClient, targets: Sequence[str], timeout_seconds: float) -> None:
        self.client = client
        self.targets = list(targets)
        self.timeout_seconds = float(timeout_seconds)

    def describe(self):
        return [desc.family() for desc in METRICS]

    def collect(self):
        t0 = time.time()
        samples = collect_samples(self.targets, self.client, self.timeout_seconds)
        dt = time.time() - t0

        families = {desc.name: desc.family() for desc in METRICS}
        filled = set()
        for s in samples:
            families[s.name].add_metric(list(s.labels), s.value)
            filled.add(s.name)

        up_count = sum(1 for s in samples if s.name == UP.name and s.value == 1.0)
        logging.debug("scrape_done targets=%s up=%s duration=%.3fs", len(self.targets), up_count, dt)

        for desc in METRICS:
            if desc.name in filled:
                yield families[desc.name]


def make_app(registry: CollectorRegistry, telemetry_path: str):
    def app(environ, start_response):
        path = environ.get("PATH_INFO", "")
        if path == telemetry_path:
            output = generate_latest(registry)
            start_response("200 OK", [("Content-Type", CONTENT_TYPE_LATEST)])
            return [output]
        if path in ("/health", "/healthz", "/-/healthy"):
            start_response("200 OK", [("Content-Type", "text/plain")])
            return [b"OK\n"]
        if path == "/":
            start_response("200 OK", [("Content-Type", "text/html; charset=utf-8")])
            return [INDEX_HTML]
        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"not found"]

    return app


def build_registry(settings: Settings) -> CollectorRegistry:
    registry = CollectorRegistry()
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)

    client = TasmotaClient(settings.timeout_seconds)
    registry.register(TasmotaCollector(client, settings.targets, settings.timeout_seconds))
    return registry


def serve(settings: Settings) -> None:
    host, port = parse_listen_address(settings.listen_address)
    app = make_app(build_registry(settings), settings.telemetry_path)

    httpd = make_server(
        host,
        port,
        app,
        server_class=ThreadingWSGIServer,
        handler_class=QuietHandler,
    )

    def _sig(*_):
        Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _sig)
    signal.signal(signal.SIGINT, _sig)

    logging.info(
        "listening=%s:%s telemetry_path=%s targets=%s timeout=%.1fs",
        host if host else "0.0.0.0",
        port,
        settings.telemetry_path,
        ",".join(settings.targets),
        settings.timeout_seconds,
    )

    try:
        httpd.serve_forever()
    finally:
        httpd.server_close()


@click.command()
@click.option("--config.file", "config_file", envvar="TASMOTA_EXPORTER_CONFIG", default=None,
              help="Optional YAML or JSON config file.")
@click.option("--tasmota.targets", "targets", envvar="TASMOTA_TARGETS", default=None,
              help="Comma-separated host:port list of Tasmota devices.")
@click.option("--scrape.timeout", "scrape_timeout", envvar="SCRAPE_TIMEOUT", default=None,
              help="Per-device fetch timeout, e.g. 5s or 500ms.  [default: 5s]")
@click.option("--web.listen-address", "listen_address", envvar="LISTEN_ADDRESS", default=None,
              help=f"Address to listen on.  [default: {DEFAULT_LISTEN_ADDRESS}]")
@click.option("--web.telemetry-path", "telemetry_path", envvar="TELEMETRY_PATH", default=None,
              help=f"Path under which to expose metrics.  [default: {DEFAULT_TELEMETRY_PATH}]")
@click.option("--log.level", "log_level", envvar="LOG_LEVEL", default="INFO", show_default=True,
              help="Logging level.")
def main(config_file, targets, scrape_timeout, listen_address, telemetry_path, log_level):
    """Prometheus exporter for Tasmota smart plugs."""
    setup_logging(log_level)

    file_cfg: Dict[str, Any] = {}
    if config_file:
        file_cfg = load_config_file(config_file)
        logging.info("config_file=%s", config_file)

    settings = build_settings(targets, scrape_timeout, listen_address, telemetry_path, file_cfg)
    serve(settings)


if __name__ == "__main__":
    main()
