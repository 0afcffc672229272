"""Netstat snapshot analysis.

Parses `netstat -an` style TCP listings (Linux and macOS address formats),
classifies connections as incoming or outgoing relative to the local listen
ports, and compares two snapshots taken some time apart.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import TypeAlias

from pydantic import BaseModel, ConfigDict

from dump_analyze.errors import MalformedAddress, MalformedConnectionLine

# ============================================================
# TYPE ALIASES & CONSTANTS
# ============================================================

AddressNames: TypeAlias = Mapping[str, str]

WILDCARD_PORT = -1

TCP_PROTOCOLS: frozenset[str] = frozenset({"tcp", "tcp4", "tcp6"})

CONNECTION_FIELD_COUNT = 6

WHITESPACE_PATTERN: re.Pattern[str] = re.compile(r"\s+")


class TcpState(StrEnum):
    LISTEN = "LISTEN"
    ESTABLISHED = "ESTABLISHED"
    TIME_WAIT = "TIME_WAIT"
    FIN_WAIT1 = "FIN_WAIT1"
    FIN_WAIT2 = "FIN_WAIT2"
    CLOSE_WAIT = "CLOSE_WAIT"
    SYN_RECV = "SYN_RECV"
    SYN_SENT = "SYN_SENT"
    LAST_ACK = "LAST_ACK"


class TcpDirection(StrEnum):
    INCOMING = "INCOMING"
    OUTGOING = "OUTGOING"


DIRECTION_TAGS: dict[TcpDirection, str] = {
    TcpDirection.INCOMING: "I",
    TcpDirection.OUTGOING: "O",
}

# Earlier entries win when deciding which state of a pair is shown first.
TRANSITION_PRIORITY: tuple[TcpState, ...] = (
    TcpState.ESTABLISHED,
    TcpState.FIN_WAIT1,
    TcpState.FIN_WAIT2,
    TcpState.CLOSE_WAIT,
)

# ============================================================
# PYDANTIC MODELS
# ============================================================


class Address(BaseModel):
    """IP address and port; port -1 stands for the `*` wildcard."""

    model_config = ConfigDict(frozen=True)

    ip: str
    port: int

    @property
    def is_wildcard(self) -> bool:
        return self.port == WILDCARD_PORT

    def __str__(self) -> str:
        port = "*" if self.is_wildcard else str(self.port)
        return f"{self.ip}:{port}"


ConnectionIdentity: TypeAlias = tuple[str, Address, Address]


class ConnectionRecord(BaseModel):
    """One TCP line of a netstat snapshot.

    Two records are equal when protocol, local and foreign address match.
    Queue sizes and state are left out: they change while the connection
    itself stays the same between two snapshots.
    """

    model_config = ConfigDict(frozen=True)

    protocol: str
    recv_queue: int
    send_queue: int
    local: Address
    foreign: Address
    state: TcpState

    @property
    def identity(self) -> ConnectionIdentity:
        return (self.protocol, self.local, self.foreign)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConnectionRecord):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self) -> int:
        return hash(self.identity)


class SkippedLine(BaseModel):
    """TCP line that was left out of a snapshot because it could not be parsed."""

    model_config = ConfigDict(frozen=True)

    line_number: int
    line: str
    reason: str


class Snapshot(BaseModel):
    """Parsed connection table of one netstat dump."""

    model_config = ConfigDict(frozen=True)

    records: list[ConnectionRecord]
    skipped: list[SkippedLine]
    total_lines: int
    tcp_lines: int


class StateTransition(BaseModel):
    """State change of one connection between two snapshots."""

    model_config = ConfigDict(frozen=True)

    local: Address
    foreign: Address
    local_label: str
    foreign_label: str
    first_state: TcpState
    second_state: TcpState

    @property
    def states(self) -> str:
        return f"{self.first_state} ==> {self.second_state}"

    def describe(self) -> str:
        return (
            f"{self.foreign_label}({self.foreign.port})-"
            f"{self.local_label}({self.local.port}) {self.states}"
        )


# ============================================================
# PARSING
# ============================================================


def _to_colon_format(token: str) -> str:
    """Rewrite the macOS `ip.port` form to `ip:port`."""
    if ":" in token:
        return token
    ip, dot, port = token.rpartition(".")
    if not dot:
        raise MalformedAddress(f"cannot parse address from: {token}")
    return f"{ip}:{port}"


def parse_address(token: str) -> Address:
    """Parse a local or foreign address column into an Address."""
    text = _to_colon_format(token.strip())
    if text.count(":") == 3:
        # tcp6 wildcard listener, e.g. `:::8080` or `:::*`
        text = text.replace("::", "0.0.0.0")
    if text.count(":") != 1:
        raise MalformedAddress(f"cannot parse address from: {token}")
    ip, port_text = text.split(":")

    if port_text == "*":
        return Address(ip=ip, port=WILDCARD_PORT)
    if not port_text.isdecimal():
        raise MalformedAddress(f"invalid port {port_text!r} in address: {token}")
    return Address(ip=ip, port=int(port_text))


def _parse_queue(value: str, line: str) -> int:
    if not value.isdecimal():
        raise MalformedConnectionLine(f"non-numeric queue size {value!r} in line: {line}")
    return int(value)


def _parse_state(value: str, line: str) -> TcpState:
    try:
        return TcpState(value)
    except ValueError:
        raise MalformedConnectionLine(f"unknown tcp state {value!r} in line: {line}") from None


def is_tcp_line(line: str) -> bool:
    """Check whether a line of netstat output is a TCP connection."""
    fields = line.split(maxsplit=1)
    return bool(fields) and fields[0] in TCP_PROTOCOLS


def parse_connection_line(line: str) -> ConnectionRecord:
    """Parse one `proto recv-q send-q local foreign state` line.

    Trailing columns such as `PID/Program name` of `netstat -p` are ignored.
    """
    fields = WHITESPACE_PATTERN.split(line.strip())
    if len(fields) < CONNECTION_FIELD_COUNT:
        raise MalformedConnectionLine(
            f"expected {CONNECTION_FIELD_COUNT} fields, found {len(fields)} in line: {line}"
        )
    protocol, recv_q, send_q, local_text, foreign_text, state_text = fields[
        :CONNECTION_FIELD_COUNT
    ]

    try:
        local = parse_address(local_text)
        foreign = parse_address(foreign_text)
    except MalformedAddress as e:
        raise MalformedConnectionLine(f"{e} (line: {line})") from e

    return ConnectionRecord(
        protocol=protocol,
        recv_queue=_parse_queue(recv_q, line),
        send_queue=_parse_queue(send_q, line),
        local=local,
        foreign=foreign,
        state=_parse_state(state_text, line),
    )


def parse_snapshot(lines: Iterable[str]) -> Snapshot:
    """Parse all TCP lines of a netstat dump, skipping malformed ones."""
    records: list[ConnectionRecord] = []
    skipped: list[SkippedLine] = []
    total_lines = 0
    tcp_lines = 0

    for line_number, line in enumerate(lines, start=1):
        total_lines += 1
        if not is_tcp_line(line):
            continue
        tcp_lines += 1
        try:
            records.append(parse_connection_line(line))
        except MalformedConnectionLine as e:
            skipped.append(SkippedLine(line_number=line_number, line=line.rstrip(), reason=str(e)))

    return Snapshot(
        records=records, skipped=skipped, total_lines=total_lines, tcp_lines=tcp_lines
    )


# ============================================================
# AGGREGATION
# ============================================================


def listen_ports(records: Iterable[ConnectionRecord]) -> set[int]:
    """Local ports of all LISTEN records."""
    return {record.local.port for record in records if record.state == TcpState.LISTEN}


def direction(record: ConnectionRecord, ports: set[int]) -> TcpDirection:
    """Incoming when the local port is a listen port, outgoing otherwise.

    A connection whose local port happens to equal an unrelated listener is
    still counted as incoming.
    """
    if record.local.port in ports:
        return TcpDirection.INCOMING
    return TcpDirection.OUTGOING


def _direction_port(record: ConnectionRecord, tcp_direction: TcpDirection) -> int:
    if tcp_direction == TcpDirection.INCOMING:
        return record.local.port
    return record.foreign.port


def _sorted_counts(counter: Counter[str]) -> dict[str, int]:
    return dict(sorted(counter.items()))


def counts_by_state_and_direction(
    records: Iterable[ConnectionRecord], ports: set[int], tcp_direction: TcpDirection
) -> dict[str, int]:
    """Count `<tag> <state>(<port>)` keys for one direction, LISTEN excluded."""
    tag = DIRECTION_TAGS[tcp_direction]
    counter: Counter[str] = Counter(
        f"{tag} {record.state}({_direction_port(record, tcp_direction)})"
        for record in records
        if record.state != TcpState.LISTEN and direction(record, ports) == tcp_direction
    )
    return _sorted_counts(counter)


def counts_by_peer_and_direction(
    records: Iterable[ConnectionRecord],
    state: TcpState,
    names: AddressNames,
    ports: set[int],
    tcp_direction: TcpDirection,
) -> dict[str, int]:
    """Count `<tag> <peer>(<port>)` keys for records in one state and direction.

    The peer is always the foreign ip, replaced by its name when mapped.
    """
    tag = DIRECTION_TAGS[tcp_direction]
    counter: Counter[str] = Counter(
        f"{tag} {names.get(record.foreign.ip, record.foreign.ip)}"
        f"({_direction_port(record, tcp_direction)})"
        for record in records
        if record.state == state and direction(record, ports) == tcp_direction
    )
    return _sorted_counts(counter)


# ============================================================
# SNAPSHOT COMPARISON
# ============================================================


def order_states(state: TcpState, other_state: TcpState) -> tuple[TcpState, TcpState]:
    """Order two states of the same connection so the prioritized one comes first.

    Which snapshot was taken first is unknown, so the pair is shown the way a
    connection usually progresses: ESTABLISHED, then FIN_WAIT1, FIN_WAIT2 and
    CLOSE_WAIT.
    """
    for priority_state in TRANSITION_PRIORITY:
        if state == priority_state:
            return state, other_state
        if other_state == priority_state:
            return other_state, state
    return state, other_state


def compare_snapshots(
    first: list[ConnectionRecord],
    second: list[ConnectionRecord],
    port: int,
    names: AddressNames | None = None,
) -> list[StateTransition]:
    """Report state transitions of connections on `port` found in both snapshots.

    Connections missing from the second snapshot are left out. When the second
    snapshot holds the same identity more than once, the first one is used.
    """
    names = names or {}
    first_by_identity: dict[ConnectionIdentity, ConnectionRecord] = {}
    for record in second:
        first_by_identity.setdefault(record.identity, record)

    transitions: list[StateTransition] = []
    for record in first:
        if record.state == TcpState.LISTEN:
            continue
        if port not in (record.local.port, record.foreign.port):
            continue
        other = first_by_identity.get(record.identity)
        if other is None:
            continue
        first_state, second_state = order_states(record.state, other.state)
        transitions.append(
            StateTransition(
                local=record.local,
                foreign=record.foreign,
                local_label=names.get(record.local.ip, record.local.ip),
                foreign_label=names.get(record.foreign.ip, record.foreign.ip),
                first_state=first_state,
                second_state=second_state,
            )
        )
    return transitions


# ============================================================
# REPORT SUMMARY
# ============================================================


class DirectionSummary(BaseModel):
    """Aggregates of one snapshot for a single direction."""

    model_config = ConfigDict(frozen=True)

    direction: TcpDirection
    state_counts: dict[str, int]
    established_by_peer: dict[str, int]


class NetstatSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    listen_ports: list[int]
    directions: list[DirectionSummary]


def build_netstat_summary(
    records: list[ConnectionRecord], names: AddressNames | None = None
) -> NetstatSummary:
    """Listen ports plus per-direction state and peer counts of one snapshot."""
    names = names or {}
    ports = listen_ports(records)
    directions = [
        DirectionSummary(
            direction=tcp_direction,
            state_counts=counts_by_state_and_direction(records, ports, tcp_direction),
            established_by_peer=counts_by_peer_and_direction(
                records, TcpState.ESTABLISHED, names, ports, tcp_direction
            ),
        )
        for tcp_direction in TcpDirection
    ]
    return NetstatSummary(listen_ports=sorted(ports), directions=directions)
