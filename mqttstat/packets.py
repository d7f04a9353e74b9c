"""
MQTT 3.1.1 control packet framing.

Only the packets a diagnostic client needs: it encodes CONNECT, SUBSCRIBE,
PUBLISH, PUBACK, PINGREQ and DISCONNECT, and decodes CONNACK, SUBACK,
PUBACK, PUBLISH and PINGRESP. Packet-type constants come from paho.
"""

import struct
from dataclasses import dataclass
from typing import BinaryIO, Optional, Sequence, Tuple, Union

import paho.mqtt.client as mqtt

from .errors import ConnectionClosed, DecodeError

PROTOCOL_NAME  = "MQTT"
PROTOCOL_LEVEL = int(mqtt.MQTTv311)
SUBACK_FAILURE = 0x80
MAX_REMAINING  = 268_435_455        # 4-byte varint limit


# --------------------------------------------------------------------------- #
# Decoded packets
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class Connack:
    session_present: bool
    return_code:     int


@dataclass(frozen=True)
class Suback:
    packet_id:    int
    return_codes: Tuple[int, ...]

    @property
    def refused(self) -> Tuple[int, ...]:
        """Indexes of the topics the broker refused."""
        return tuple(i for i, rc in enumerate(self.return_codes)
                     if rc >= SUBACK_FAILURE)


@dataclass(frozen=True)
class Puback:
    packet_id: int


@dataclass(frozen=True)
class Publish:
    topic:     str
    payload:   bytes
    qos:       int       = 0
    retain:    bool      = False
    dup:       bool      = False
    packet_id: Optional[int] = None


@dataclass(frozen=True)
class Pingresp:
    pass


@dataclass(frozen=True)
class Unknown:
    packet_type: int
    flags:       int
    body:        bytes


Packet = Union[Connack, Suback, Puback, Publish, Pingresp, Unknown]


# --------------------------------------------------------------------------- #
# Encoding
# --------------------------------------------------------------------------- #
def encode_remaining_length(n: int) -> bytes:
    if n < 0 or n > MAX_REMAINING:
        raise ValueError(f"remaining length out of range: {n}")
    out = bytearray()
    while True:
        byte = n % 128
        n //= 128
        if n > 0:
            byte |= 0x80
        out.append(byte)
        if n == 0:
            return bytes(out)


def encode_string(s: Union[str, bytes]) -> bytes:
    if isinstance(s, str):
        s = s.encode("utf-8")
    if len(s) > 0xFFFF:
        raise ValueError("string longer than 65535 bytes")
    return struct.pack("!H", len(s)) + s


def _frame(header: int, body: bytes) -> bytes:
    return bytes([header]) + encode_remaining_length(len(body)) + body


def encode_connect(client_id: str, username: str = "", password: str = "",
                   clean_session: bool = True, keepalive: int = 60) -> bytes:
    flags = 0
    if clean_session:
        flags |= 0x02
    if username:
        flags |= 0x80
    if password:
        flags |= 0x40

    body = bytearray()
    body += encode_string(PROTOCOL_NAME)
    body.append(PROTOCOL_LEVEL)
    body.append(flags)
    body += struct.pack("!H", keepalive)
    body += encode_string(client_id)
    if username:
        body += encode_string(username)
    if password:
        body += encode_string(password)
    return _frame(mqtt.CONNECT, bytes(body))


def encode_subscribe(packet_id: int,
                     topics: Sequence[Tuple[str, int]]) -> bytes:
    if not topics:
        raise ValueError("SUBSCRIBE needs at least one topic")
    body = bytearray(struct.pack("!H", packet_id))
    for topic, qos in topics:
        body += encode_string(topic)
        body.append(qos)
    # bits 3..0 of SUBSCRIBE are reserved as 0b0010
    return _frame(mqtt.SUBSCRIBE | 0x02, bytes(body))


def encode_publish(topic: str, payload: bytes, qos: int = 0,
                   packet_id: Optional[int] = None,
                   retain: bool = False, dup: bool = False) -> bytes:
    header = mqtt.PUBLISH | (qos << 1)
    if retain:
        header |= 0x01
    if dup:
        header |= 0x08
    body = bytearray(encode_string(topic))
    if qos > 0:
        if packet_id is None:
            raise ValueError("QoS > 0 PUBLISH needs a packet id")
        body += struct.pack("!H", packet_id)
    body += payload
    return _frame(header, bytes(body))


def encode_puback(packet_id: int) -> bytes:
    return _frame(mqtt.PUBACK, struct.pack("!H", packet_id))


def encode_pingreq() -> bytes:
    return _frame(mqtt.PINGREQ, b"")


def encode_disconnect() -> bytes:
    return _frame(mqtt.DISCONNECT, b"")


# --------------------------------------------------------------------------- #
# Decoding
# --------------------------------------------------------------------------- #
def _read_exact(stream: BinaryIO, n: int) -> bytes:
    data = stream.read(n)
    if data is None or len(data) != n:
        raise ConnectionClosed(
            f"stream closed after {len(data or b'')} of {n} bytes")
    return data


def read_packet(stream: BinaryIO) -> Packet:
    """Read and decode one packet from a blocking binary stream."""
    first = stream.read(1)
    if not first:
        raise ConnectionClosed("connection closed by broker")

    remaining = 0
    multiplier = 1
    for _ in range(4):
        byte = _read_exact(stream, 1)[0]
        remaining += (byte & 0x7F) * multiplier
        if not byte & 0x80:
            break
        multiplier *= 128
    else:
        raise DecodeError("malformed remaining length")

    body = _read_exact(stream, remaining) if remaining else b""
    return decode_packet(first[0], body)


def decode_packet(header: int, body: bytes) -> Packet:
    packet_type = header & 0xF0
    flags = header & 0x0F

    if packet_type == mqtt.CONNACK:
        if len(body) != 2:
            raise DecodeError(f"CONNACK of {len(body)} bytes")
        return Connack(session_present=bool(body[0] & 0x01),
                       return_code=body[1])

    if packet_type == mqtt.SUBACK:
        if len(body) < 3:
            raise DecodeError(f"SUBACK of {len(body)} bytes")
        (packet_id,) = struct.unpack("!H", body[:2])
        return Suback(packet_id=packet_id, return_codes=tuple(body[2:]))

    if packet_type == mqtt.PUBACK:
        if len(body) < 2:
            raise DecodeError(f"PUBACK of {len(body)} bytes")
        (packet_id,) = struct.unpack("!H", body[:2])
        return Puback(packet_id=packet_id)

    if packet_type == mqtt.PUBLISH:
        return _decode_publish(flags, body)

    if packet_type == mqtt.PINGRESP:
        return Pingresp()

    return Unknown(packet_type=packet_type, flags=flags, body=body)


def _decode_publish(flags: int, body: bytes) -> Publish:
    qos = (flags & 0x06) >> 1
    if qos == 3:
        raise DecodeError("PUBLISH with QoS 3")
    if len(body) < 2:
        raise DecodeError("PUBLISH without topic")
    (topic_len,) = struct.unpack("!H", body[:2])
    offset = 2 + topic_len
    if len(body) < offset:
        raise DecodeError("PUBLISH topic overruns packet")
    try:
        topic = body[2:offset].decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"PUBLISH topic is not UTF-8: {exc}") from exc

    packet_id = None
    if qos > 0:
        if len(body) < offset + 2:
            raise DecodeError("PUBLISH missing packet id")
        (packet_id,) = struct.unpack("!H", body[offset:offset + 2])
        offset += 2

    return Publish(topic=topic, payload=body[offset:], qos=qos,
                   retain=bool(flags & 0x01), dup=bool(flags & 0x08),
                   packet_id=packet_id)
