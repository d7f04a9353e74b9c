"""
Host networking: address parsing, name resolution, TCP dial and TLS.

Each helper wraps OS-level failures in the matching mqttstat error.
"""

import ipaddress
import logging
import socket
import ssl
import struct
from dataclasses import dataclass
from typing import Optional, Tuple

from .config import DEFAULT_PORTS, TCPConfig, TLSConfig
from .errors import HandshakeError, InvalidTarget, ResolutionError, TransportError

log = logging.getLogger("mqttstat.transport")

SCHEMES = ("tcp", "tls")


@dataclass(frozen=True)
class Target:
    scheme: str
    host:   str
    port:   int

    @property
    def secure(self) -> bool:
        return self.scheme == "tls"

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{self.scheme}://{host}:{self.port}"


def split_host_port(hostport: str) -> Tuple[str, Optional[str]]:
    """Split ``host:port`` / ``[v6]:port``; the port may be absent."""
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise InvalidTarget(f"missing ']' in address {hostport!r}")
        host, rest = hostport[1:end], hostport[end + 1:]
        if not rest:
            return host, None
        if not rest.startswith(":"):
            raise InvalidTarget(f"unexpected text after ']' in {hostport!r}")
        return host, rest[1:]
    if hostport.count(":") > 1:
        raise InvalidTarget(f"too many colons in address {hostport!r}")
    host, sep, port = hostport.partition(":")
    return host, (port if sep else None)


def parse_target(url: str) -> Target:
    scheme = "tcp"
    rest = url
    if "://" in url:
        scheme, rest = url.split("://", 1)
        scheme = scheme.lower()
        if scheme not in SCHEMES:
            raise InvalidTarget(f"unsupported scheme {scheme!r} in {url!r}")

    host, port = split_host_port(rest)
    if not host:
        raise InvalidTarget(f"missing host in {url!r}")
    if port is None or port == "":
        return Target(scheme, host, DEFAULT_PORTS[scheme])
    try:
        number = int(port)
    except ValueError:
        raise InvalidTarget(f"invalid port {port!r} in {url!r}") from None
    if not 0 < number < 65536:
        raise InvalidTarget(f"port out of range in {url!r}")
    return Target(scheme, host, number)


def is_literal_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        return False


def resolve(host: str, port: int) -> Tuple[int, str]:
    """Return (family, address) of the first stream address for *host*."""
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise ResolutionError(f"lookup {host}: {exc}") from exc
    if not infos:
        raise ResolutionError(f"lookup {host}: no addresses")
    family, _, _, _, sockaddr = infos[0]
    log.debug("resolved %s -> %s (%d candidates)", host, sockaddr[0], len(infos))
    return family, sockaddr[0]


def address_family(address: str) -> int:
    if ipaddress.ip_address(address).version == 6:
        return socket.AF_INET6
    return socket.AF_INET


def apply_tcp_options(sock: socket.socket, cfg: TCPConfig):
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, int(cfg.keepalive))
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, int(cfg.nodelay))
    if cfg.linger >= 0:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER,
                        struct.pack("ii", 1, cfg.linger))
    if cfg.recv_buf > 0:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, cfg.recv_buf)
    if cfg.send_buf > 0:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, cfg.send_buf)


def open_connection(address: str, port: int, cfg: TCPConfig,
                    family: Optional[int] = None) -> socket.socket:
    """Dial *address* (already resolved) with the tuning options applied."""
    sock = socket.socket(family or address_family(address), socket.SOCK_STREAM)
    try:
        # buffer sizes must be set before connect to affect the window
        apply_tcp_options(sock, cfg)
        sock.connect((address, port))
    except OSError as exc:
        sock.close()
        raise TransportError(f"dial tcp {address}:{port}: {exc}") from exc
    return sock


def build_ssl_context(cfg: TLSConfig) -> ssl.SSLContext:
    ctx = ssl.create_default_context(cafile=cfg.ca_file)
    if cfg.skip_verify:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    if cfg.cert_file:
        ctx.load_cert_chain(cfg.cert_file, cfg.key_file)
    return ctx


def secure(sock: socket.socket, server_hostname: str, ctx: ssl.SSLContext,
           session: Optional[ssl.SSLSession] = None) -> ssl.SSLSocket:
    """Wrap *sock* and run the handshake synchronously."""
    try:
        tls_sock = ctx.wrap_socket(
            sock,
            server_hostname=server_hostname,
            do_handshake_on_connect=False,
            session=session,
        )
        tls_sock.do_handshake()
    except (ssl.SSLError, OSError) as exc:
        sock.close()
        raise HandshakeError(f"tls handshake with {server_hostname}: {exc}") from exc
    log.debug("tls %s established (resumed=%s)",
              tls_sock.version(), tls_sock.session_reused)
    return tls_sock
