"""Pytest configuration and fixtures."""

import socket
import ssl
import struct
import sys
import threading
from pathlib import Path

import paho.mqtt.client as mqtt
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from mqttstat import packets  # noqa: E402
from mqttstat.errors import ConnectionClosed, DecodeError  # noqa: E402
from mqttstat.trace import MilestoneKind, TracePoint  # noqa: E402

MS = 1_000_000
DATA = Path(__file__).parent / "data"


def points(**milestones_ms):
    """Build a trace from keyword milestones in milliseconds, e.g. tcp_dial=0."""
    return [TracePoint(MilestoneKind[name.upper()], int(ms * MS))
            for name, ms in milestones_ms.items()]


# --------------------------------------------------------------------------- #
# Scripted broker
# --------------------------------------------------------------------------- #
def connack(return_code=0, session_present=False):
    return bytes([mqtt.CONNACK, 2, int(session_present), return_code])


def suback(packet_id, codes):
    body = struct.pack("!H", packet_id) + bytes(codes)
    return bytes([mqtt.SUBACK, len(body)]) + body


def pingresp():
    return bytes([mqtt.PINGRESP, 0])


def packet_type(pkt):
    if isinstance(pkt, packets.Publish):
        return mqtt.PUBLISH
    if isinstance(pkt, packets.Puback):
        return mqtt.PUBACK
    if isinstance(pkt, packets.Unknown):
        return pkt.packet_type
    return None


class BrokerSession:
    """One accepted client connection, driven by a test script."""

    def __init__(self, conn, rfile):
        self.conn = conn
        self.rfile = rfile
        self.received = []

    def read(self):
        pkt = packets.read_packet(self.rfile)
        self.received.append(pkt)
        return pkt

    def expect(self, expected_type):
        pkt = self.read()
        got = packet_type(pkt)
        if got != expected_type:
            raise AssertionError(
                f"expected packet 0x{expected_type:02x}, got {pkt!r}")
        return pkt

    def send(self, data: bytes):
        self.conn.sendall(data)

    def handshake(self, return_code=0):
        pkt = self.expect(mqtt.CONNECT)
        self.send(connack(return_code))
        return pkt

    def drain(self):
        """Swallow everything until the client hangs up."""
        try:
            while True:
                self.read()
        except (ConnectionClosed, DecodeError, OSError):
            return


class FakeBroker:
    """
    Single-connection broker on 127.0.0.1 that runs *script(session)*,
    optionally behind TLS when given a server *tls* context.
    """

    def __init__(self, script, tls=None):
        self._script = script
        self._tls = tls
        self._server = socket.create_server(("127.0.0.1", 0))
        self.port = self._server.getsockname()[1]
        self.session = None
        self.error = None
        self._thread = threading.Thread(target=self._run, daemon=True)

    @property
    def address(self):
        scheme = "tcp" if self._tls is None else "tls"
        return f"{scheme}://127.0.0.1:{self.port}"

    def start(self):
        self._thread.start()
        return self

    def _run(self):
        conn, _ = self._server.accept()
        if self._tls is not None:
            try:
                conn = self._tls.wrap_socket(conn, server_side=True)
            except (ssl.SSLError, OSError) as exc:
                self.error = exc
                conn.close()
                return
        rfile = conn.makefile("rb")
        self.session = BrokerSession(conn, rfile)
        try:
            self._script(self.session)
        except Exception as exc:
            self.error = exc
        finally:
            rfile.close()
            conn.close()

    def close(self):
        self._server.close()
        self._thread.join(timeout=5)


@pytest.fixture
def fake_broker():
    """Factory: fake_broker(script, tls=None) starts a scripted broker."""
    brokers = []

    def start(script, tls=None):
        broker = FakeBroker(script, tls).start()
        brokers.append(broker)
        return broker

    yield start
    for broker in brokers:
        broker.close()
    for broker in brokers:
        if broker.error is not None:
            raise broker.error


@pytest.fixture
def broker_tls():
    """Server context with a throwaway self-signed certificate.

    Pinned to TLS 1.2 so the session is available right after the handshake.
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.maximum_version = ssl.TLSVersion.TLSv1_2
    ctx.load_cert_chain(str(DATA / "broker.pem"))
    return ctx
