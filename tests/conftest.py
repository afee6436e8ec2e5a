"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
import socket
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from threading import Event, Thread

import pytest


STATUS_RESPONSE = {
    "Status": {
        "DeviceName": "Tasmota",
        "FriendlyName": ["Test Plug"],
        "Power": "1",
    },
    "StatusSNS": {
        "Time": "2026-01-07T17:25:17",
        "ENERGY": {
            "Total": 100.5,
            "Yesterday": 2.0,
            "Today": 1.5,
            "Power": 50,
            "ApparentPower": 55,
            "ReactivePower": 15,
            "Factor": 0.91,
            "Voltage": 235,
            "Current": 0.213,
        },
    },
    "StatusSTS": {
        "Uptime": "0T01:00:00",
        "UptimeSec": 3600,
        "POWER": "ON",
        "Wifi": {
            "RSSI": 80,
            "Signal": -60,
        },
    },
}


class _DeviceHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        self.server.paths.append(self.path)
        status, body, delay = self.server.reply
        if delay:
            time.sleep(delay)
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        return


@pytest.fixture
def status_response():
    """A full ``Status 0`` document as decoded JSON."""
    return json.loads(json.dumps(STATUS_RESPONSE))


@pytest.fixture
def device_server():
    """Start fake Tasmota devices; returns a factory giving (server, "host:port")."""
    servers = []

    def start(body=None, status=200, delay=0.0):
        if body is None:
            body = json.dumps(STATUS_RESPONSE)
        if isinstance(body, str):
            body = body.encode("utf-8")
        httpd = ThreadingHTTPServer(("127.0.0.1", 0), _DeviceHandler)
        httpd.reply = (status, body, delay)
        httpd.paths = []
        Thread(target=httpd.serve_forever, daemon=True).start()
        servers.append(httpd)
        host, port = httpd.server_address[:2]
        return httpd, f"{host}:{port}"

    yield start

    for httpd in servers:
        httpd.shutdown()
        httpd.server_close()


@pytest.fixture(params=["keep-alive", "close"])
def trickle_server(request):
    """A device that sends headers at once, then its body one byte every 0.1s."""
    body = b'{"Status": {"DeviceName": "x"}}'
    stop = Event()
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(4)
    listener.settimeout(0.2)

    def serve():
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except OSError:
                continue
            with conn:
                try:
                    conn.recv(65536)
                    conn.sendall(
                        b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
                        b"Connection: %s\r\nContent-Length: %d\r\n\r\n" % (request.param.encode("ascii"), len(body))
                    )
                    for i in range(len(body)):
                        if stop.is_set():
                            break
                        conn.sendall(body[i:i + 1])
                        time.sleep(0.1)
                except OSError:
                    pass

    thread = Thread(target=serve, daemon=True)
    thread.start()
    host, port = listener.getsockname()[:2]

    yield f"{host}:{port}"

    stop.set()
    thread.join(timeout=2)
    listener.close()
