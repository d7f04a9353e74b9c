"""
Error taxonomy for one measured connection attempt.

Every error is terminal for the attempt that raised it; nothing in
mqttstat retries.
"""

from typing import Iterable, List

import paho.mqtt.client as mqtt


class MqttStatError(Exception):
    """Base class for every failure raised by mqttstat."""


class InvalidTarget(MqttStatError, ValueError):
    """The server address could not be parsed."""


class ResolutionError(MqttStatError):
    """Name resolution of the broker host failed."""


class TransportError(MqttStatError):
    """The TCP connection could not be opened."""


class HandshakeError(MqttStatError):
    """The TLS handshake failed."""


class WriteError(MqttStatError):
    """Sending a request packet failed."""


class DecodeError(MqttStatError):
    """An inbound packet was malformed or unexpected."""


class ConnectionClosed(DecodeError):
    """The broker closed the stream in the middle of the exchange."""


class ProtocolRejected(MqttStatError):
    """CONNACK carried a non-zero return code."""

    def __init__(self, return_code: int):
        self.return_code = return_code
        super().__init__(
            f"MQTT connect failed: {mqtt.connack_string(return_code)} "
            f"(code {return_code})")


class SubscriptionRefused(MqttStatError):
    """SUBACK refused one or more topics."""

    def __init__(self, topics: Iterable[str]):
        self.topics: List[str] = list(topics)
        super().__init__(
            "subscription refused for topic(s): " + ", ".join(self.topics))


class Interrupted(MqttStatError):
    """The attempt was aborted from outside while waiting."""


class StateError(MqttStatError, RuntimeError):
    """An operation was requested out of the connection's forward order."""


class IncompleteTrace(MqttStatError, ValueError):
    """The milestone log stops before the protocol handshake completed."""
