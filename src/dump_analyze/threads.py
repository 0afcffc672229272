"""Thread dump analysis.

Parses JDK 21+ `jcmd <pid> Thread.dump_to_file` style thread dumps and aggregates:
- counts of platform vs virtual threads
- virtual threads without a stack trace
- platform threads carrying a virtual thread
- groups of similar threads by normalized stack trace
- continuity of groups and threads across a time-ordered series of dumps
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from dump_analyze.sources import read_lines

# ============================================================
# CONSTANTS
# ============================================================

EMPTY_STACK_KEY = "<empty>"
FRAME_SEPARATOR = " | "
VIRTUAL_MARKER = " virtual"

THREAD_ID_PATTERN: re.Pattern[str] = re.compile(r"#(\S+)")
THREAD_NAME_PATTERN: re.Pattern[str] = re.compile(r'"(.*?)"')

LEADING_AT_PATTERN: re.Pattern[str] = re.compile(r"^at\s+")
PARENTHESIZED_PATTERN: re.Pattern[str] = re.compile(r"\(.*?\)")
WHITESPACE_PATTERN: re.Pattern[str] = re.compile(r"\s+")

# e.g. thread.dump.jcmd.smurf.2025-09-04T22-48-28.txt
FILENAME_TIMESTAMP_PATTERN: re.Pattern[str] = re.compile(r"(\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2})")
FILENAME_TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"
CONTENT_TIMESTAMP_PATTERN: re.Pattern[str] = re.compile(r"\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}")

# Frames found on a platform thread while it mounts a virtual thread.
CARRIER_FRAME_MARKERS: tuple[str, ...] = (
    "jdk.internal.vm.Continuation.run",
    "jdk.internal.vm.Continuation.enterSpecial",
    "java.lang.VirtualThread.run",
)

# ============================================================
# PYDANTIC MODELS
# ============================================================


class ThreadEntry(BaseModel):
    """One thread header with the stack frames printed below it."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    is_virtual: bool
    stack_frames: tuple[str, ...] = ()

    @property
    def has_stack(self) -> bool:
        return len(self.stack_frames) > 0


class GroupCount(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int = 0
    platform: int = 0
    virtual: int = 0


class ThreadInfo(BaseModel):
    """What a single dump knows about one thread id."""

    model_config = ConfigDict(frozen=True)

    key: str
    is_virtual: bool
    has_stack: bool
    name: str


class DumpResult(BaseModel):
    """Aggregated counts and groups of one thread dump file."""

    model_config = ConfigDict(frozen=True)

    timestamp: str
    platform_count: int = 0
    virtual_count: int = 0
    virtual_without_stack_count: int = 0
    carrier_count: int = 0
    groups: dict[str, GroupCount] = Field(default_factory=dict)
    thread_info_by_id: dict[str, ThreadInfo] = Field(default_factory=dict)


class GroupContinuity(BaseModel):
    """Counts of one group in every dump of a series, zero where absent."""

    model_config = ConfigDict(frozen=True)

    key: str
    counts: list[GroupCount]


class ThreadDrift(BaseModel):
    """Virtual thread whose normalized stack changed between two dumps."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    key_before: str
    key_after: str


class DumpTransition(BaseModel):
    """Thread continuity between two consecutive dumps."""

    model_config = ConfigDict(frozen=True)

    before: str
    after: str
    stable_thread_ids: list[str] = Field(default_factory=list)
    drifted: list[ThreadDrift] = Field(default_factory=list)


class CrossDumpReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamps: list[str]
    groups: list[GroupContinuity]
    transitions: list[DumpTransition]


# ============================================================
# PARSING
# ============================================================


def _parse_header(header: str) -> tuple[str, str, bool]:
    """Extract id, name and virtual flag from a `#<id> "<name>" [virtual]` line."""
    id_match = THREAD_ID_PATTERN.search(header)
    name_match = THREAD_NAME_PATTERN.search(header)
    thread_id = id_match.group(1) if id_match else "?"
    name = name_match.group(1) if name_match else "?"
    return thread_id, name, VIRTUAL_MARKER in header


def parse_thread_entries(lines: Sequence[str]) -> list[ThreadEntry]:
    """Parse every thread of a dump.

    Frames are the non-blank lines following a header, up to the next blank
    line or header.
    """
    entries: list[ThreadEntry] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if not line.startswith("#"):
            i += 1
            continue

        thread_id, name, is_virtual = _parse_header(line)
        frames: list[str] = []
        j = i + 1
        while j < len(lines):
            frame = lines[j]
            if not frame.strip() or frame.startswith("#"):
                break
            frames.append(frame.strip())
            j += 1

        entries.append(
            ThreadEntry(id=thread_id, name=name, is_virtual=is_virtual, stack_frames=tuple(frames))
        )
        i = j

    return entries


# ============================================================
# STACK NORMALIZATION
# ============================================================


def normalize_frame(frame: str) -> str:
    """Reduce a frame to owner and method: no `at`, no (File.java:123) parts."""
    text = LEADING_AT_PATTERN.sub("", frame.strip())
    text = PARENTHESIZED_PATTERN.sub("", text)
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def normalized_key(frames: Sequence[str]) -> str:
    """Grouping key of a stack; threads with equal keys are the same kind of thread."""
    if not frames:
        return EMPTY_STACK_KEY
    return FRAME_SEPARATOR.join(normalize_frame(frame) for frame in frames)


def filter_frames(frames: Sequence[str], frame_filter: str) -> list[str]:
    """Frames containing `frame_filter`, ignoring case."""
    needle = frame_filter.casefold()
    return [frame for frame in frames if needle in frame.casefold()]


def is_carrier_stack(frames: Iterable[str]) -> bool:
    """Heuristic: does this platform thread run a virtual thread continuation?"""
    return any(marker in frame for frame in frames for marker in CARRIER_FRAME_MARKERS)


# ============================================================
# DUMP AGGREGATION
# ============================================================


def _timestamp_from_filename(filename: str) -> str | None:
    match = FILENAME_TIMESTAMP_PATTERN.search(filename)
    if not match:
        return None
    raw = match.group(1)
    try:
        return datetime.strptime(raw, FILENAME_TIMESTAMP_FORMAT).isoformat()
    except ValueError:
        return raw


def _timestamp_from_content(lines: Iterable[str]) -> str | None:
    # jcmd prints the dump time on its own line near the top
    return next((line for line in lines if CONTENT_TIMESTAMP_PATTERN.fullmatch(line)), None)


def resolve_timestamp(filename: str, lines: Sequence[str]) -> str:
    """Timestamp of a dump: from the file name, else from the content, else the file name."""
    return _timestamp_from_filename(filename) or _timestamp_from_content(lines) or filename


def aggregate_dump(
    entries: Iterable[ThreadEntry], timestamp: str, frame_filter: str | None = None
) -> DumpResult:
    """Count and group the threads of one dump.

    With a filter only frames containing the filter text take part in grouping,
    and threads without any such frame are left out of every count. Threads
    without a stack have nothing to filter on and are always counted, so the
    virtual-without-stack count does not depend on the filter.
    """
    platform = 0
    virtual = 0
    virtual_no_stack = 0
    carriers = 0
    tallies: dict[str, Counter[str]] = {}
    thread_info_by_id: dict[str, ThreadInfo] = {}

    for entry in entries:
        frames: Sequence[str] = entry.stack_frames
        if frame_filter and entry.has_stack:
            frames = filter_frames(entry.stack_frames, frame_filter)
            if not frames:
                continue

        if entry.is_virtual:
            virtual += 1
            if not entry.has_stack:
                virtual_no_stack += 1
        else:
            platform += 1
            if is_carrier_stack(frames):
                carriers += 1

        key = normalized_key(frames)
        tally = tallies.setdefault(key, Counter())
        tally["total"] += 1
        tally["virtual" if entry.is_virtual else "platform"] += 1

        thread_info_by_id[entry.id] = ThreadInfo(
            key=key, is_virtual=entry.is_virtual, has_stack=entry.has_stack, name=entry.name
        )

    groups = {
        key: GroupCount(total=tally["total"], platform=tally["platform"], virtual=tally["virtual"])
        for key, tally in tallies.items()
    }

    return DumpResult(
        timestamp=timestamp,
        platform_count=platform,
        virtual_count=virtual,
        virtual_without_stack_count=virtual_no_stack,
        carrier_count=carriers,
        groups=groups,
        thread_info_by_id=thread_info_by_id,
    )


def parse_dump(path: Path, frame_filter: str | None = None) -> DumpResult:
    """Read, parse and aggregate one thread dump file."""
    lines = read_lines(path)
    entries = parse_thread_entries(lines)
    return aggregate_dump(entries, resolve_timestamp(path.name, lines), frame_filter)


def top_groups(result: DumpResult, limit: int) -> list[tuple[str, GroupCount]]:
    """Largest groups of a dump, biggest first."""
    return sorted(result.groups.items(), key=lambda item: item[1].total, reverse=True)[:limit]


# ============================================================
# CROSS-DUMP TRACKING
# ============================================================


def group_continuity(results: Sequence[DumpResult]) -> list[GroupContinuity]:
    """Counts of every group seen in any dump, in first-seen order."""
    keys: dict[str, None] = {}
    for result in results:
        keys.update(dict.fromkeys(result.groups))

    return [
        GroupContinuity(
            key=key, counts=[result.groups.get(key, GroupCount()) for result in results]
        )
        for key in keys
    ]


def stable_threads(before: DumpResult, after: DumpResult) -> list[str]:
    """Ids of threads alive in both dumps with an unchanged normalized stack."""
    return [
        thread_id
        for thread_id, info in before.thread_info_by_id.items()
        if (other := after.thread_info_by_id.get(thread_id)) is not None and other.key == info.key
    ]


def virtual_drift(before: DumpResult, after: DumpResult) -> list[ThreadDrift]:
    """Virtual threads present in both dumps whose normalized stack changed."""
    drifted: list[ThreadDrift] = []
    for thread_id, info in before.thread_info_by_id.items():
        other = after.thread_info_by_id.get(thread_id)
        if other is None or not (info.is_virtual and other.is_virtual):
            continue
        if other.key != info.key:
            drifted.append(
                ThreadDrift(id=thread_id, name=other.name, key_before=info.key, key_after=other.key)
            )
    return drifted


def track_dumps(results: Sequence[DumpResult]) -> CrossDumpReport:
    """Correlate groups over all dumps and threads over consecutive dump pairs."""
    transitions = [
        DumpTransition(
            before=before.timestamp,
            after=after.timestamp,
            stable_thread_ids=stable_threads(before, after),
            drifted=virtual_drift(before, after),
        )
        for before, after in zip(results, results[1:])
    ]
    return CrossDumpReport(
        timestamps=[result.timestamp for result in results],
        groups=group_continuity(results),
        transitions=transitions,
    )
