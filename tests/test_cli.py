"""Tests for the command line front end."""

import paho.mqtt.client as mqtt

from mqttstat import packets
from mqttstat.cli import build_config, build_parser, format_trace, main
from mqttstat.trace import MilestoneKind, TracePoint

from conftest import MS, pingresp


class TestMain:
    """End-to-end runs against a scripted broker."""

    def test_publish_report(self, fake_broker, capsys):
        def script(s):
            s.handshake()
            pub = s.expect(mqtt.PUBLISH)
            s.send(packets.encode_puback(pub.packet_id))
            s.expect(mqtt.DISCONNECT)

        broker = fake_broker(script)
        code = main(["--server", broker.address, "--clientid", "cli-test",
                     "publish", "--qos", "1"])
        out = capsys.readouterr().out

        assert code == 0
        assert f"Connected to {broker.address} from 127.0.0.1:" in out
        assert "ClientID : cli-test" in out
        for name in ("TCP Connection", "MQTT Connection", "MQTT Publish"):
            assert name in out
        assert "\033[" not in out

    def test_ping_with_trace(self, fake_broker, capsys):
        def script(s):
            s.handshake()
            s.expect(mqtt.PINGREQ)
            s.send(pingresp())
            s.expect(mqtt.DISCONNECT)

        broker = fake_broker(script)
        code = main(["--server", broker.address, "--trace", "ping"])
        out = capsys.readouterr().out

        assert code == 0
        assert out.startswith("TCPDial")
        assert "Pong" in out
        assert "MQTT Ping" in out

    def test_rejected_connection(self, fake_broker, capsys):
        def script(s):
            s.handshake(return_code=5)
            s.drain()

        broker = fake_broker(script)
        code = main(["--server", broker.address])
        captured = capsys.readouterr()

        assert code == 1
        assert "MQTT connect failed" in captured.err
        assert captured.out == ""

    def test_topic_qos_mismatch(self, fake_broker, capsys):
        def script(s):
            s.handshake()
            s.expect(mqtt.DISCONNECT)

        broker = fake_broker(script)
        code = main(["--server", broker.address,
                     "subscribe", "--topic", "a,b", "--qos", "1"])
        captured = capsys.readouterr()

        assert code == 1
        assert "does not match" in captured.err

    def test_bad_config(self, capsys):
        code = main(["--tcp-linger", "-5"])
        assert code == 1
        assert "error" in capsys.readouterr().err


class TestHelpers:
    """Tests for argument mapping and the trace dump."""

    def test_config_from_flags(self):
        args = build_parser().parse_args([
            "--username", "u", "--no-cleansession", "--tcp-recvbuf", "4096",
            "--tls-sessionticket", "ping"])
        cfg = build_config(args)

        assert cfg.username == "u"
        assert cfg.clean_session is False
        assert cfg.tcp.recv_buf == 4096
        assert cfg.tls.session_ticket is True
        assert args.command == "ping"

    def test_publish_defaults(self):
        args = build_parser().parse_args(["publish"])
        assert args.topic == "/mqttstat"
        assert args.qos == 1

    def test_format_trace(self):
        text = format_trace([
            TracePoint(MilestoneKind.TCP_DIAL, 10 * MS),
            TracePoint(MilestoneKind.CONNECT, 12 * MS),
            TracePoint(MilestoneKind.CONNACK, 15 * MS),
        ])
        assert text.splitlines() == [
            "TCPDial    +0s",
            "Connect    +2ms",
            "Connack    +5ms",
        ]

    def test_format_empty_trace(self):
        assert format_trace([]) == ""
