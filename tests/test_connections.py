import pytest

from dump_analyze.errors import MalformedAddress, MalformedConnectionLine
from dump_analyze.netstat import (
    Address,
    ConnectionRecord,
    TcpDirection,
    TcpState,
    build_netstat_summary,
    counts_by_peer_and_direction,
    counts_by_state_and_direction,
    direction,
    is_tcp_line,
    listen_ports,
    parse_connection_line,
    parse_snapshot,
)


def _record(local: str, foreign: str, state: TcpState, protocol: str = "tcp") -> ConnectionRecord:
    local_ip, local_port = local.rsplit(":", 1)
    foreign_ip, foreign_port = foreign.rsplit(":", 1)
    return ConnectionRecord(
        protocol=protocol,
        recv_queue=0,
        send_queue=0,
        local=Address(ip=local_ip, port=int(local_port)),
        foreign=Address(ip=foreign_ip, port=int(foreign_port)),
        state=state,
    )


# ============================================================
# PARSING
# ============================================================


def test_parse_linux_line():
    record = parse_connection_line(
        "tcp        0     36 10.0.0.5:40000          10.0.0.20:5432          ESTABLISHED"
    )
    assert record.protocol == "tcp"
    assert record.recv_queue == 0
    assert record.send_queue == 36
    assert record.local == Address(ip="10.0.0.5", port=40000)
    assert record.foreign == Address(ip="10.0.0.20", port=5432)
    assert record.state is TcpState.ESTABLISHED


def test_parse_mac_line():
    record = parse_connection_line(
        "tcp4       0      0  127.0.0.1.8080         *.*                    LISTEN"
    )
    assert record.protocol == "tcp4"
    assert record.local == Address(ip="127.0.0.1", port=8080)
    assert record.foreign == Address(ip="*", port=-1)
    assert record.state is TcpState.LISTEN


def test_parse_tcp6_wildcard_line():
    record = parse_connection_line("tcp6       0      0 :::8080                 :::*   LISTEN")
    assert record.local == Address(ip="0.0.0.0", port=8080)
    assert record.foreign.is_wildcard


def test_trailing_program_column_is_ignored():
    record = parse_connection_line("tcp 0 0 1.1.1.1:22 2.2.2.2:5000 ESTABLISHED 812/sshd")
    assert record.state is TcpState.ESTABLISHED


@pytest.mark.parametrize(
    "line",
    [
        "tcp 0 0 1.1.1.1:22 2.2.2.2:5000",  # missing state
        "tcp x 0 1.1.1.1:22 2.2.2.2:5000 ESTABLISHED",
        "tcp 0 -1 1.1.1.1:22 2.2.2.2:5000 ESTABLISHED",
        "tcp 0 0 1.1.1.1:22 2.2.2.2:5000 CLOSED",
        "tcp 0 0 1.1.1.1:22 2.2.2.2:5000 established",
    ],
)
def test_malformed_lines_are_rejected(line):
    with pytest.raises(MalformedConnectionLine):
        parse_connection_line(line)


def test_address_failure_is_chained():
    with pytest.raises(MalformedConnectionLine) as exc_info:
        parse_connection_line("tcp 0 0 1.1.1.1:ssh 2.2.2.2:5000 ESTABLISHED")
    assert isinstance(exc_info.value.__cause__, MalformedAddress)


def test_is_tcp_line():
    assert is_tcp_line("tcp        0      0 0.0.0.0:22   0.0.0.0:*   LISTEN")
    assert is_tcp_line("tcp4 0 0 127.0.0.1.8080 *.* LISTEN")
    assert is_tcp_line("tcp6 0 0 :::22 :::* LISTEN")
    assert not is_tcp_line("udp        0      0 0.0.0.0:68   0.0.0.0:*")
    assert not is_tcp_line("Proto Recv-Q Send-Q Local Address")
    assert not is_tcp_line("tcpx 0 0 1.1.1.1:1 2.2.2.2:2 LISTEN")
    assert not is_tcp_line("")


def test_records_equal_by_identity_only():
    first = _record("1.1.1.1:443", "2.2.2.2:5000", TcpState.ESTABLISHED)
    second = first.model_copy(update={"state": TcpState.CLOSE_WAIT, "recv_queue": 10})
    other_protocol = first.model_copy(update={"protocol": "tcp6"})

    assert first == second
    assert hash(first) == hash(second)
    assert first != other_protocol
    assert len({first, second, other_protocol}) == 2


# ============================================================
# SNAPSHOTS
# ============================================================


def test_snapshot_ignores_non_tcp_lines(netstat_text):
    snapshot = parse_snapshot(netstat_text.splitlines())

    assert snapshot.total_lines == 14
    assert snapshot.tcp_lines == 9
    assert len(snapshot.records) == 9
    assert snapshot.skipped == []


def test_snapshot_skips_malformed_lines_and_keeps_the_rest():
    lines = [
        "tcp 0 0 0.0.0.0:8080 0.0.0.0:* LISTEN",
        "tcp 0 0 10.0.0.5:8080 10.0.0.9:bad ESTABLISHED",
        "tcp 0 0 10.0.0.5:8080 10.0.0.9:51000 ESTABLISHED",
        "tcp 0 0 10.0.0.5:8080 10.0.0.9:51001 BOGUS",
    ]
    snapshot = parse_snapshot(lines)

    assert [r.state for r in snapshot.records] == [TcpState.LISTEN, TcpState.ESTABLISHED]
    assert [s.line_number for s in snapshot.skipped] == [2, 4]
    assert "BOGUS" in snapshot.skipped[1].reason
    assert all(r.foreign.port != 0 for r in snapshot.records)


# ============================================================
# AGGREGATION
# ============================================================


def test_single_listener_classifies_established_as_incoming():
    records = [
        _record("0.0.0.0:8080", "0.0.0.0:0", TcpState.LISTEN),
        _record("10.0.0.5:8080", "10.0.0.9:51000", TcpState.ESTABLISHED),
    ]
    ports = listen_ports(records)

    assert ports == {8080}
    assert direction(records[1], ports) is TcpDirection.INCOMING


def test_listen_ports_include_ipv6_listeners(netstat_text):
    records = parse_snapshot(netstat_text.splitlines()).records
    assert listen_ports(records) == {22, 8080, 9090}


def test_local_port_matching_unrelated_listener_is_incoming():
    ports = {22}
    record = _record("10.0.0.5:22", "10.0.0.99:443", TcpState.ESTABLISHED)
    assert direction(record, ports) is TcpDirection.INCOMING


def test_counts_by_state_per_direction(netstat_text):
    records = parse_snapshot(netstat_text.splitlines()).records
    ports = listen_ports(records)

    incoming = counts_by_state_and_direction(records, ports, TcpDirection.INCOMING)
    outgoing = counts_by_state_and_direction(records, ports, TcpDirection.OUTGOING)

    assert incoming == {"I ESTABLISHED(8080)": 2, "I TIME_WAIT(8080)": 1}
    assert outgoing == {
        "O CLOSE_WAIT(6379)": 1,
        "O ESTABLISHED(5432)": 1,
        "O ESTABLISHED(6379)": 1,
    }
    assert list(outgoing) == sorted(outgoing)


def test_counts_by_state_never_contain_listen(netstat_text):
    records = parse_snapshot(netstat_text.splitlines()).records
    ports = listen_ports(records)
    for tcp_direction in TcpDirection:
        counts = counts_by_state_and_direction(records, ports, tcp_direction)
        assert not any("LISTEN" in key for key in counts)


def test_counts_by_peer_use_names_for_foreign_ip(netstat_text):
    records = parse_snapshot(netstat_text.splitlines()).records
    ports = listen_ports(records)
    names = {"10.0.0.9": "client-a", "127.0.0.1": "localhost"}

    incoming = counts_by_peer_and_direction(
        records, TcpState.ESTABLISHED, names, ports, TcpDirection.INCOMING
    )
    outgoing = counts_by_peer_and_direction(
        records, TcpState.ESTABLISHED, names, ports, TcpDirection.OUTGOING
    )

    assert incoming == {"I 10.0.0.10(8080)": 1, "I client-a(8080)": 1}
    assert outgoing == {"O 10.0.0.20(5432)": 1, "O localhost(6379)": 1}


def test_counts_by_peer_filter_on_state(netstat_text):
    records = parse_snapshot(netstat_text.splitlines()).records
    ports = listen_ports(records)

    close_wait = counts_by_peer_and_direction(
        records, TcpState.CLOSE_WAIT, {}, ports, TcpDirection.OUTGOING
    )
    assert close_wait == {"O 127.0.0.1(6379)": 1}


def test_netstat_summary(netstat_text):
    records = parse_snapshot(netstat_text.splitlines()).records
    summary = build_netstat_summary(records, {"127.0.0.1": "localhost"})

    assert summary.listen_ports == [22, 8080, 9090]
    assert [d.direction for d in summary.directions] == [
        TcpDirection.INCOMING,
        TcpDirection.OUTGOING,
    ]
    assert summary.directions[1].established_by_peer["O localhost(6379)"] == 1
