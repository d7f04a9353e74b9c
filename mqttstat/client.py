"""
Measuring MQTT client.

Drives one connection attempt forward through

    IDLE -> RESOLVING -> TRANSPORT_CONNECTING -> [SECURE_HANDSHAKING]
         -> PROTOCOL_CONNECTING -> PROTOCOL_CONNECTED -> [SUBSCRIBING]
         -> [PUBLISHING] -> [PINGING] -> [AWAITING_MESSAGE] -> DISCONNECTED

recording a milestone at every transition. From PROTOCOL_CONNECTED on, a
background thread decodes inbound packets and hands replies to the
waiting foreground through the correlation table.

Any failure is terminal for the attempt. There are no timeouts: a broker
that never answers blocks the caller until `abort()` or Ctrl-C.
"""

import enum
import logging
import queue
import socket
import ssl
import threading
from typing import Callable, List, Optional, Sequence

import paho.mqtt.client as mqtt

from . import packets, transport
from .config import ClientConfig, check_qos
from .correlation import AckResult, CorrelationTable, Handoff
from .errors import (ConnectionClosed, DecodeError, Interrupted,
                     MqttStatError, ProtocolRejected, StateError,
                     SubscriptionRefused, WriteError)
from .trace import MilestoneKind, TracePoint, TraceRecorder, now

log = logging.getLogger("mqttstat.client")

MessageHandler = Callable[[mqtt.MQTTMessage], None]


class State(enum.IntEnum):
    IDLE                 = 0
    RESOLVING            = 1
    TRANSPORT_CONNECTING = 2
    SECURE_HANDSHAKING   = 3
    PROTOCOL_CONNECTING  = 4
    PROTOCOL_CONNECTED   = 5
    SUBSCRIBING          = 6
    PUBLISHING           = 7
    PINGING              = 8
    AWAITING_MESSAGE     = 9
    DISCONNECTED         = 10


class Client:
    """
    One measured connection attempt. Not reusable: dial once.

    To resume TLS, pass the previous attempt's *tls_session* together with
    the *ssl_context* that created it.
    """

    def __init__(self, cfg: Optional[ClientConfig] = None,
                 recorder: Optional[TraceRecorder] = None,
                 tls_session: Optional[ssl.SSLSession] = None,
                 ssl_context: Optional[ssl.SSLContext] = None):
        self.cfg = cfg or ClientConfig()
        self.recorder = recorder if recorder is not None else TraceRecorder()
        self.state = State.IDLE
        self.target: Optional[transport.Target] = None

        self._tls_session = tls_session
        self._ssl_context = ssl_context
        self._session_reused = False
        self._local_address: Optional[str] = None
        self._sock: Optional[socket.socket] = None
        self._rfile = None
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()

        self._pending = CorrelationTable()
        self._packet_id = 0
        self._pong: Optional[Handoff] = None
        self._first_message = Handoff()
        self._errors: queue.Queue = queue.Queue(maxsize=1)
        self._handler: Optional[MessageHandler] = None

        self._receiver: Optional[threading.Thread] = None
        self._closing = threading.Event()

    # ------------------------------------------------------------------ #
    # State bookkeeping
    # ------------------------------------------------------------------ #
    def _enter(self, state: State):
        with self._state_lock:
            if state <= self.state:
                raise StateError(
                    f"cannot move from {self.state.name} to {state.name}")
            log.debug("state %s -> %s", self.state.name, state.name)
            self.state = state

    def _require_connected(self):
        if self.state < State.PROTOCOL_CONNECTED or self.state == State.DISCONNECTED:
            raise StateError(f"not connected (state {self.state.name})")
        self._raise_receiver_error()

    def _raise_receiver_error(self):
        """Drain the receive path's error slot, if it has failed."""
        try:
            err = self._errors.get_nowait()
        except queue.Empty:
            return
        # keep it visible to later checks
        self._errors.put_nowait(err)
        raise err

    def _next_packet_id(self) -> int:
        for _ in range(0xFFFF):
            self._packet_id = self._packet_id % 0xFFFF + 1
            if self._packet_id not in self._pending:
                return self._packet_id
        raise MqttStatError("no free packet identifiers")

    def _write(self, data: bytes, what: str):
        try:
            with self._write_lock:
                self._sock.sendall(data)
        except OSError as exc:
            raise WriteError(f"write {what}: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def set_message_handler(self, handler: Optional[MessageHandler]):
        self._handler = handler

    def trace_points(self) -> List[TracePoint]:
        return self.recorder.points()

    @property
    def local_address(self) -> Optional[str]:
        return self._local_address

    @property
    def tls_session(self) -> Optional[ssl.SSLSession]:
        """Session to resume on the next attempt (TLS targets only)."""
        if isinstance(self._sock, ssl.SSLSocket):
            return self._sock.session
        return self._tls_session

    @property
    def session_reused(self) -> bool:
        return self._session_reused

    def dial(self, url: str):
        """Connect to *url* (``tcp://``, ``tls://`` or bare ``host:port``)."""
        target = transport.parse_target(url)
        self.target = target
        try:
            self._dial(target)
        except BaseException:
            self._teardown()
            raise

    def _dial(self, target: transport.Target):
        self._enter(State.RESOLVING)
        address, family = target.host, None
        if not transport.is_literal_address(target.host):
            self.recorder.add_point(MilestoneKind.DNS_LOOKUP)
            family, address = transport.resolve(target.host, target.port)

        self._enter(State.TRANSPORT_CONNECTING)
        self.recorder.add_point(MilestoneKind.TCP_DIAL)
        self._sock = transport.open_connection(address, target.port,
                                               self.cfg.tcp, family)
        host, port = self._sock.getsockname()[:2]
        self._local_address = f"[{host}]:{port}" if ":" in host else f"{host}:{port}"

        if target.secure:
            self._enter(State.SECURE_HANDSHAKING)
            ctx = self._ssl_context or transport.build_ssl_context(self.cfg.tls)
            self.recorder.add_point(MilestoneKind.TLS_DIAL)
            # secure() closes the plain socket itself on failure
            plain, self._sock = self._sock, None
            self._sock = transport.secure(plain, target.host, ctx,
                                          self._tls_session)
            self._session_reused = self._sock.session_reused

        self._enter(State.PROTOCOL_CONNECTING)
        self._rfile = self._sock.makefile("rb")
        connect = packets.encode_connect(
            client_id=self.cfg.client_id,
            username=self.cfg.username,
            password=self.cfg.password,
            clean_session=self.cfg.clean_session,
            keepalive=self.cfg.keepalive,
        )
        self.recorder.add_point(MilestoneKind.CONNECT)
        self._write(connect, "CONNECT")

        try:
            reply = packets.read_packet(self._rfile)
        except OSError as exc:
            raise DecodeError(f"read CONNACK: {exc}") from exc
        received_at = now()
        if not isinstance(reply, packets.Connack):
            raise DecodeError(f"expected CONNACK, got {type(reply).__name__}")
        if reply.return_code != 0:
            raise ProtocolRejected(reply.return_code)
        self.recorder.add_point(MilestoneKind.CONNACK, received_at)

        self._enter(State.PROTOCOL_CONNECTED)
        self._receiver = threading.Thread(target=self._receive_loop,
                                          name="mqttstat-recv", daemon=True)
        self._receiver.start()
        log.info("connected to %s as %r", target, self.cfg.client_id)

    def subscribe(self, topics: Sequence[str], qos_levels: Sequence[int]):
        """
        Subscribe and block for SUBACK. Raises SubscriptionRefused naming
        every refused topic; accepted topics stay subscribed.
        """
        if len(topics) != len(qos_levels):
            raise ValueError("size of topics and qos levels does not match")
        pairs = [(t, check_qos(q)) for t, q in zip(topics, qos_levels)]
        self._require_connected()
        self._enter(State.SUBSCRIBING)

        packet_id = self._next_packet_id()
        handoff = self._pending.register(
            packet_id, self._record_reply(MilestoneKind.SUBACK))
        self._guard(packet_id)
        self.recorder.add_point(MilestoneKind.SUBSCRIBE)
        try:
            self._write(packets.encode_subscribe(packet_id, pairs), "SUBSCRIBE")
        except WriteError:
            self._pending.discard(packet_id)
            raise

        ack: AckResult = self._wait(handoff, packet_id)
        suback: packets.Suback = ack.packet
        if len(suback.return_codes) != len(pairs):
            raise DecodeError(
                f"SUBACK has {len(suback.return_codes)} codes "
                f"for {len(pairs)} topics")
        refused = [pairs[i][0] for i in suback.refused]
        if refused:
            raise SubscriptionRefused(refused)
        return ack

    def publish(self, topic: str, payload: bytes, qos: int = 0) -> Handoff:
        """
        Publish and return a handoff for the acknowledgement. For QoS 1 the
        handoff resolves with the PUBACK; for QoS 0 it is already complete.
        """
        check_qos(qos)
        self._require_connected()
        self._enter(State.PUBLISHING)

        if qos == 0:
            self.recorder.add_point(MilestoneKind.PUBLISH)
            self._write(packets.encode_publish(topic, payload), "PUBLISH")
            return Handoff.completed(AckResult(None, None, now()))

        packet_id = self._next_packet_id()
        handoff = self._pending.register(
            packet_id, self._record_reply(MilestoneKind.PUBACK))
        self._guard(packet_id)
        data = packets.encode_publish(topic, payload, qos, packet_id)
        self.recorder.add_point(MilestoneKind.PUBLISH)
        try:
            self._write(data, "PUBLISH")
        except WriteError:
            self._pending.discard(packet_id)
            raise
        return handoff

    def ping(self) -> AckResult:
        self._require_connected()
        self._enter(State.PINGING)
        self._pong = Handoff(self._record_reply(MilestoneKind.PONG))
        self._guard()
        self.recorder.add_point(MilestoneKind.PING)
        self._write(packets.encode_pingreq(), "PINGREQ")
        return self._wait(self._pong)

    def await_message(self) -> mqtt.MQTTMessage:
        """
        Block until the first inbound PUBLISH. Its milestone is stamped by
        the receive path on arrival.
        """
        self._require_connected()
        self._enter(State.AWAITING_MESSAGE)
        return self._wait(self._first_message)

    def disconnect(self):
        """Best-effort DISCONNECT, then release the transport."""
        if self.state == State.DISCONNECTED:
            return
        connected = self._sock is not None and self.state >= State.PROTOCOL_CONNECTED
        self._closing.set()
        if connected:
            try:
                self._write(packets.encode_disconnect(), "DISCONNECT")
            except WriteError as exc:
                log.debug("ignoring DISCONNECT failure: %s", exc)
        self._teardown()

    def abort(self, reason: str = "interrupted"):
        """Tear the connection down, then unblock every foreground wait."""
        self._closing.set()
        self._teardown(Interrupted(reason))

    # ------------------------------------------------------------------ #
    # Waiting
    # ------------------------------------------------------------------ #
    def _record_reply(self, kind: MilestoneKind):
        def record(ack: AckResult):
            self.recorder.add_point(kind, ack.received_at)
        return record

    def _wait(self, handoff: Handoff, packet_id: Optional[int] = None):
        try:
            return handoff.wait()
        except KeyboardInterrupt:
            if packet_id is not None:
                self._pending.discard(packet_id)
            self.abort("interrupted by user")
            raise

    def _guard(self, packet_id: Optional[int] = None):
        """
        Re-check the receive path after arming a waiter: it reports its
        error before abandoning waiters, so a waiter armed after the
        abandonment still sees the failure here.
        """
        try:
            self._raise_receiver_error()
        except MqttStatError:
            if packet_id is not None:
                self._pending.discard(packet_id)
            raise

    def _fail_waiters(self, err: BaseException):
        self._pending.abandon_all(err)
        if self._pong is not None:
            self._pong.fail(err)
        self._first_message.fail(err)

    # ------------------------------------------------------------------ #
    # Receive path
    # ------------------------------------------------------------------ #
    def _receive_loop(self):
        try:
            while True:
                pkt = packets.read_packet(self._rfile)
                self._dispatch(pkt, now())
        except (DecodeError, OSError, ValueError) as exc:
            if self._closing.is_set():
                # teardown wakes the waiters once the state is final
                log.debug("receive path stopped: %s", exc)
                return
            err = exc if isinstance(exc, DecodeError) else DecodeError(str(exc))
            if isinstance(exc, ConnectionClosed):
                log.warning("broker closed the connection")
            else:
                log.error("receive path failed: %s", err)
            self._report(err)
        except Exception as exc:
            log.exception("receive path crashed")
            self._report(DecodeError(f"receive path crashed: {exc}"))

    def _report(self, err: MqttStatError):
        try:
            self._errors.put_nowait(err)
        except queue.Full:
            pass
        self._fail_waiters(err)

    def _dispatch(self, pkt: packets.Packet, received_at: int):
        if isinstance(pkt, (packets.Suback, packets.Puback)):
            ack = AckResult(pkt.packet_id, pkt, received_at)
            if not self._pending.resolve(pkt.packet_id, ack):
                log.debug("dropping unexpected %s for packet id %d",
                          type(pkt).__name__, pkt.packet_id)
        elif isinstance(pkt, packets.Pingresp):
            if self._pong is None or not self._pong.deliver(
                    AckResult(None, pkt, received_at)):
                log.debug("dropping unsolicited PINGRESP")
        elif isinstance(pkt, packets.Publish):
            self._on_publish(pkt, received_at)
        elif isinstance(pkt, packets.Connack):
            raise DecodeError("unexpected second CONNACK")
        else:
            log.warning("ignoring packet type 0x%02x", pkt.packet_type)

    def _on_publish(self, pkt: packets.Publish, received_at: int):
        if pkt.qos == 1:
            try:
                self._write(packets.encode_puback(pkt.packet_id), "PUBACK")
            except WriteError as exc:
                raise DecodeError(str(exc)) from exc

        msg = mqtt.MQTTMessage(mid=pkt.packet_id or 0,
                               topic=pkt.topic.encode("utf-8"))
        msg.payload = pkt.payload
        msg.qos = pkt.qos
        msg.retain = pkt.retain
        msg.dup = pkt.dup
        msg.timestamp = received_at / 1e9

        self.recorder.record_first(MilestoneKind.MESSAGE, received_at)
        log.debug("message on %s (%d bytes, qos %d)",
                  pkt.topic, len(pkt.payload), pkt.qos)
        if self._handler is not None:
            try:
                self._handler(msg)
            except Exception:
                log.exception("message handler failed for topic %s", pkt.topic)
        self._first_message.deliver(msg)

    # ------------------------------------------------------------------ #
    # Teardown
    # ------------------------------------------------------------------ #
    def _teardown(self, err: Optional[MqttStatError] = None):
        self._closing.set()
        sock, self._sock = self._sock, None
        if isinstance(sock, ssl.SSLSocket) and sock.session is not None:
            self._tls_session = sock.session
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()
        if self._receiver is not None and self._receiver is not threading.current_thread():
            self._receiver.join()
        if self._rfile is not None:
            self._rfile.close()
            self._rfile = None
        with self._state_lock:
            self.state = State.DISCONNECTED
        self._fail_waiters(err or Interrupted("connection closed"))
