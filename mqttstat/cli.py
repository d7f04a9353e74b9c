#!/usr/bin/env python3
"""
mqttstat: phase-by-phase latency of an MQTT connection.

Usage:
    mqttstat [global options] [publish|subscribe|ping] [options]

    mqttstat --server tls://broker.example.com:8883
    mqttstat --server 10.0.0.5:1883 publish --topic a/b --qos 1
    mqttstat subscribe --topic a/b,c/d --qos 1,0 --wait
    mqttstat --count 5 --delay 1 ping
"""

import argparse
import base64
import binascii
import io
import logging
import sys
import time
from typing import List, Optional

from . import transport
from .client import Client
from .config import CONFIG, ClientConfig, TCPConfig, TLSConfig, configure_logging
from .errors import MqttStatError
from .render import BAD, GOOD, MUTED, render_bars, render_waterfall
from .stat import MQTT_MESSAGE_FIELD, format_duration, parse_stat
from .terminal import Terminal
from .trace import TracePoint, TraceRecorder

log = logging.getLogger("mqttstat.cli")


# --------------------------------------------------------------------------- #
# Subcommands
# --------------------------------------------------------------------------- #
def run_publish(client: Client, args):
    handoff = client.publish(args.topic, args.message.encode("utf-8"), args.qos)
    ack = handoff.wait()
    if args.verbose:
        print(ack.packet if ack.packet is not None else "QoS 0: no acknowledgement")
        print()


def run_subscribe(client: Client, args):
    topics = args.topic.split(",")
    try:
        qoss = [int(q) for q in args.qos.split(",")]
    except ValueError:
        raise ValueError(f"invalid qos list {args.qos!r}") from None
    if len(topics) != len(qoss):
        raise ValueError("size of topics and qos levels does not match")

    if args.wait:
        def on_message(msg):
            if args.verbose:
                print(f"topic: {msg.topic}, message size: {len(msg.payload)}, "
                      f"qos: {msg.qos}")
        client.set_message_handler(on_message)

    client.subscribe(topics, qoss)

    # some flows need an initial message on the first topic
    if args.pub:
        try:
            payload = base64.b64decode(args.pub, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"--pub is not valid base64: {exc}") from exc
        client.publish(topics[0], payload, 1).wait()

    if args.wait:
        client.await_message()


def run_ping(client: Client, args):
    pong = client.ping()
    if args.verbose:
        print(pong.packet)
        print()


COMMANDS = {
    "publish":   run_publish,
    "subscribe": run_subscribe,
    "ping":      run_ping,
}


# --------------------------------------------------------------------------- #
# Report
# --------------------------------------------------------------------------- #
def format_trace(points: List[TracePoint]) -> str:
    if not points:
        return ""
    first = points[0].timestamp
    return "".join(f"{p.kind.value:<10} +{format_duration(p.timestamp - first)}\n"
                   for p in points)


def build_report(client: Client, cfg: ClientConfig, server: str,
                 term: Terminal) -> str:
    em = term.emphasize
    out = io.StringIO()
    print("Connected to", em(server, GOOD), "from", client.local_address, file=out)
    print(file=out)
    if cfg.username:
        print(em("Username", MUTED), ":", em(cfg.username, GOOD), file=out)
    if cfg.password:
        print(em("Password", MUTED), ":", em(cfg.password, GOOD), file=out)
    if cfg.client_id:
        print(em("ClientID", MUTED), ":", em(cfg.client_id, GOOD), file=out)
    print(em("CleanSession", MUTED), ":", em(str(cfg.clean_session).lower(), GOOD),
          file=out)
    if client.target is not None and client.target.secure:
        print(em("TLSResumed", MUTED), ":",
              em(str(client.session_reused).lower(), GOOD), file=out)
    print(file=out)

    stat = parse_stat(client.trace_points())
    out.write(render_waterfall(stat.fields, em))
    out.write(render_bars(stat.fields, em))
    if any(f.name == MQTT_MESSAGE_FIELD for f in stat.fields):
        print(file=out)
        print(em(f"note: {MQTT_MESSAGE_FIELD} is the broker's idle time before "
                 "pushing the first message, counted from the end of the "
                 "previous phase", MUTED), file=out)
    return out.getvalue()


# --------------------------------------------------------------------------- #
# Rounds
# --------------------------------------------------------------------------- #
def run_round(client: Client, args):
    """Dial, run the subcommand, always disconnect."""
    try:
        client.dial(args.server)
        if args.command:
            COMMANDS[args.command](client, args)
    finally:
        client.disconnect()


def build_config(args) -> ClientConfig:
    return ClientConfig.from_defaults(
        username=args.username,
        password=args.password,
        client_id=args.clientid,
        clean_session=args.cleansession,
        keepalive=args.keepalive,
        tcp=TCPConfig(
            keepalive=args.tcp_keepalive,
            nodelay=args.tcp_nodelay,
            linger=args.tcp_linger,
            recv_buf=args.tcp_recvbuf,
            send_buf=args.tcp_sendbuf,
        ),
        tls=TLSConfig(
            skip_verify=args.tls_skipverify,
            session_ticket=args.tls_sessionticket,
            ca_file=args.tls_ca,
            cert_file=args.tls_cert,
            key_file=args.tls_key,
        ),
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mqttstat",
        description="Phase-by-phase latency of an MQTT connection")
    p.add_argument("--server",      default=CONFIG["server"],
                   help="broker address: [tcp://|tls://]host:port")
    p.add_argument("--username",    default=CONFIG["username"])
    p.add_argument("--password",    default=CONFIG["password"])
    p.add_argument("--clientid",    default=CONFIG["client_id"])
    p.add_argument("--cleansession", action=argparse.BooleanOptionalAction,
                   default=True)
    p.add_argument("--keepalive",   type=int, default=CONFIG["keepalive"],
                   help="MQTT keepalive in seconds")
    p.add_argument("--count",       type=int, default=CONFIG["count"],
                   help="number of rounds to run")
    p.add_argument("--delay",       type=float, default=CONFIG["delay"],
                   help="seconds to wait between rounds")
    p.add_argument("--trace",       action="store_true",
                   help="print the raw trace points")
    p.add_argument("--inplace",     action="store_true",
                   help="keep running and redraw the report in place")
    p.add_argument("--log-level",   default=None,
                   help="DEBUG, INFO, WARNING (default), ERROR")

    p.add_argument("--tcp-linger",  type=int, default=-1)
    p.add_argument("--tcp-recvbuf", type=int, default=0)
    p.add_argument("--tcp-sendbuf", type=int, default=0)
    p.add_argument("--tcp-nodelay", action=argparse.BooleanOptionalAction,
                   default=True)
    p.add_argument("--tcp-keepalive", action=argparse.BooleanOptionalAction,
                   default=True)

    p.add_argument("--tls-sessionticket", action="store_true",
                   help="resume the TLS session (runs at least two rounds)")
    p.add_argument("--tls-skipverify", action=argparse.BooleanOptionalAction,
                   default=True)
    p.add_argument("--tls-ca",      default=None)
    p.add_argument("--tls-cert",    default=None)
    p.add_argument("--tls-key",     default=None)

    sub = p.add_subparsers(dest="command")

    pub = sub.add_parser("publish", help="publish one message")
    pub.add_argument("--topic",   default="/mqttstat")
    pub.add_argument("--message", default="mqttstat test")
    pub.add_argument("--qos",     type=int, default=1, choices=[0, 1])
    pub.add_argument("-v", "--verbose", action="store_true")

    s = sub.add_parser("subscribe", help="subscribe, optionally wait for a message")
    s.add_argument("--topic", default="/mqttstat",
                   help="comma separated topics")
    s.add_argument("--qos",   default="1",
                   help="comma separated qos levels, one per topic")
    s.add_argument("--pub",   default="",
                   help="base64 message to publish to the first topic")
    s.add_argument("--wait",  action="store_true",
                   help="wait for the first message")
    s.add_argument("-v", "--verbose", action="store_true")

    ping = sub.add_parser("ping", help="send PINGREQ and wait for PINGRESP")
    ping.add_argument("-v", "--verbose", action="store_true")
    return p


# --------------------------------------------------------------------------- #
# Main
# --------------------------------------------------------------------------- #
def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    term = Terminal(sys.stdout)
    err_term = Terminal(sys.stderr)

    count = args.count
    if args.tls_sessionticket and count < 2:
        count = 2

    ssl_ctx = None
    try:
        cfg = build_config(args)
        if args.tls_sessionticket:
            # a session resumes only through the context that created it
            ssl_ctx = transport.build_ssl_context(cfg.tls)
    except (ValueError, OSError) as exc:
        print(err_term.emphasize("error", BAD) + f": {exc}", file=sys.stderr)
        return 1

    session = None
    i = 0
    try:
        while i < count or args.inplace:
            client = None
            try:
                client = Client(cfg, TraceRecorder(), tls_session=session,
                                ssl_context=ssl_ctx)
                run_round(client, args)
            except (MqttStatError, ValueError) as exc:
                log.debug("round %d failed", i + 1, exc_info=True)
                if args.trace and client is not None:
                    sys.stderr.write(format_trace(client.trace_points()))
                print(err_term.emphasize("error", BAD) + f": {exc}", file=sys.stderr)
                return 1

            if args.tls_sessionticket:
                session = client.tls_session

            report = build_report(client, cfg, args.server, term)
            if args.trace:
                report = format_trace(client.trace_points()) + "\n" + report
            if args.inplace:
                term.reset()
            print(report, end="")
            sys.stdout.flush()

            i += 1
            if i < count or args.inplace:
                time.sleep(args.delay)
    except KeyboardInterrupt:
        term.show_cursor()
        return 0
    return 0


if __name__ == "__main__":
    sys.exit(main())
