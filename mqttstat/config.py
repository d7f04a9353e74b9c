"""
Client configuration.

Defaults are read from MQTTSTAT_* environment variables into CONFIG; the
command line overrides them.
"""

import logging
import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator

# --------------------------------------------------------------------------- #
# Defaults
# --------------------------------------------------------------------------- #
CONFIG = {
    "server":        os.environ.get("MQTTSTAT_SERVER", "127.0.0.1:1883"),
    "username":      os.environ.get("MQTTSTAT_USERNAME", ""),
    "password":      os.environ.get("MQTTSTAT_PASSWORD", ""),
    "client_id":     os.environ.get("MQTTSTAT_CLIENT_ID", "mqttstat"),
    "keepalive":     int(os.environ.get("MQTTSTAT_KEEPALIVE", "60")),
    "count":         1,
    "delay":         0.2,           # seconds between rounds
}

LOG_LEVEL = os.environ.get("MQTTSTAT_LOG_LEVEL", "WARNING").upper()

DEFAULT_PORTS = {"tcp": 1883, "tls": 8883}


def configure_logging(level: Optional[str] = None):
    """Route log records to stderr; stdout carries only the report."""
    name = (level or LOG_LEVEL).upper()
    logging.basicConfig(level=getattr(logging, name, logging.WARNING),
                        format="%(asctime)s %(levelname)s %(message)s",
                        datefmt="%H:%M:%S")


# --------------------------------------------------------------------------- #
# Models
# --------------------------------------------------------------------------- #
class TCPConfig(BaseModel):
    keepalive: bool = True
    nodelay:   bool = True
    linger:    int  = Field(-1, ge=-1)       # < 0 leaves the OS default
    recv_buf:  int  = Field(0, ge=0)         # 0 leaves the OS default
    send_buf:  int  = Field(0, ge=0)


class TLSConfig(BaseModel):
    skip_verify:    bool = True
    session_ticket: bool = False
    ca_file:        Optional[str] = None
    cert_file:      Optional[str] = None
    key_file:       Optional[str] = None


class ClientConfig(BaseModel):
    username:      str  = ""
    password:      str  = ""
    client_id:     str  = "mqttstat"
    clean_session: bool = True
    keepalive:     int  = Field(60, ge=0, le=0xFFFF)
    tcp:           TCPConfig = Field(default_factory=TCPConfig)
    tls:           TLSConfig = Field(default_factory=TLSConfig)

    @field_validator("client_id")
    @classmethod
    def _client_id_fits(cls, v: str) -> str:
        if len(v.encode("utf-8")) > 0xFFFF:
            raise ValueError("client id longer than 65535 bytes")
        return v

    @classmethod
    def from_defaults(cls, **overrides) -> "ClientConfig":
        values = {
            "username":  CONFIG["username"],
            "password":  CONFIG["password"],
            "client_id": CONFIG["client_id"],
            "keepalive": CONFIG["keepalive"],
        }
        values.update(overrides)
        return cls(**values)


def check_qos(qos: int) -> int:
    """QoS 2 is out of scope for a diagnostic client."""
    if qos not in (0, 1):
        raise ValueError(f"unsupported QoS level {qos} (use 0 or 1)")
    return qos
