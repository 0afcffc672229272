#!/usr/bin/env python3
"""Dump Analyzer v1.0 - netstat snapshots and JDK thread dumps.

Offline report generator supporting:
- netstat -an listings (Linux and macOS address formats)
- Incoming/outgoing connection counts per state and per peer
- Snapshot comparison showing state transitions on one port
- JDK 21+ thread dumps: platform vs virtual threads, carrier threads
- Grouping of similar threads by normalized stack trace
- Group and thread continuity across a series of dumps
- Rich terminal output with tables and panels
- Optional Markdown export
"""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from pydantic import BaseModel, Field
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.theme import Theme

from dump_analyze.errors import UnreadableFile
from dump_analyze.netstat import (
    AddressNames,
    NetstatSummary,
    Snapshot,
    StateTransition,
    build_netstat_summary,
    compare_snapshots,
    parse_snapshot,
)
from dump_analyze.sources import (
    dump_files,
    iter_files,
    plan_comparisons,
    read_address_names,
    read_lines,
)
from dump_analyze.threads import (
    CrossDumpReport,
    DumpResult,
    GroupCount,
    parse_dump,
    top_groups,
    track_dumps,
)

VERSION = "1.0.0"

# ============================================================
# SETTINGS
# ============================================================


class ThreadReportSettings(BaseModel):
    """Options of the thread dump report."""

    frame_filter: str | None = None
    top_groups: int = Field(default=10, ge=1)
    continuity_groups: int = Field(default=50, ge=1)
    pattern: str = "*.txt"


class SnapshotReport(BaseModel):
    """Netstat report of one file, as rendered and exported."""

    path: Path
    snapshot: Snapshot
    summary: NetstatSummary


# ============================================================
# RICH OUTPUT RENDERING
# ============================================================

DUMP_ANALYZE_THEME = Theme(
    {
        "critical": "bold red",
        "warning": "bold yellow",
        "success": "bold green",
        "info": "cyan",
        "metric": "white",
        "label": "dim white",
        "header": "bold magenta",
    }
)

console = Console(theme=DUMP_ANALYZE_THEME)


def create_key_value_table(title: str, rows: list[tuple[str, str]]) -> Table:
    """Create a simple two-column key/value table."""
    table = Table(title=title, show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="label")
    table.add_column("Value", style="metric")
    for label, value in rows:
        table.add_row(escape(label), escape(value))
    return table


def create_count_table(title: str, counts: dict[str, int]) -> Table:
    """Create a table of aggregate keys and their counts, in key order."""
    table = Table(title=title, show_header=True, header_style="header")
    table.add_column("Key", style="info")
    table.add_column("Count", justify="right", style="metric")
    for key, count in counts.items():
        table.add_row(escape(key), str(count))
    return table


def format_group_count(count: GroupCount) -> str:
    return f"{count.total} (plat={count.platform}, virt={count.virtual})"


def build_parsing_coverage_rows(snapshot: Snapshot) -> list[tuple[str, str]]:
    """Build rows describing how much of a snapshot could be parsed."""
    rows = [
        ("Total lines", str(snapshot.total_lines)),
        ("TCP lines", str(snapshot.tcp_lines)),
        ("Parsed connections", str(len(snapshot.records))),
        ("Skipped lines", str(len(snapshot.skipped))),
    ]
    if snapshot.tcp_lines > 0:
        parsed_pct = len(snapshot.records) / snapshot.tcp_lines * 100.0
        rows.append(("Parsed rate", f"{parsed_pct:.1f}%"))
    return rows


def build_listen_port_rows(summary: NetstatSummary) -> list[tuple[str, str]]:
    ports = ", ".join(str(port) for port in summary.listen_ports)
    return [(f"Listen ports ({len(summary.listen_ports)})", ports or "none")]


def build_dump_overview_rows(results: list[DumpResult]) -> list[dict[str, str]]:
    """Build one row of thread counts per dump."""
    return [
        {
            "timestamp": result.timestamp,
            "platform": str(result.platform_count),
            "virtual": str(result.virtual_count),
            "virtual_no_stack": str(result.virtual_without_stack_count),
            "carrier": str(result.carrier_count),
            "groups": str(len(result.groups)),
        }
        for result in results
    ]


def build_transition_rows(report: CrossDumpReport) -> list[dict[str, str]]:
    """Build one row per consecutive dump pair."""
    return [
        {
            "before": transition.before,
            "after": transition.after,
            "stable": str(len(transition.stable_thread_ids)),
            "drifted": str(len(transition.drifted)),
        }
        for transition in report.transitions
    ]


def render_snapshot_report(report: SnapshotReport, verbose: bool) -> None:
    """Render the netstat report of one file."""
    console.print()
    console.print(Panel(f"Processing {escape(str(report.path))}", style="header", expand=True))
    console.print()

    coverage_rows = build_parsing_coverage_rows(report.snapshot)
    console.print(create_key_value_table("Parsing Coverage", coverage_rows))
    console.print()
    if verbose:
        for skipped in report.snapshot.skipped:
            console.print(
                f"[warning]line {skipped.line_number}: {escape(skipped.reason)}[/warning]"
            )

    console.print(create_key_value_table("Listen Ports", build_listen_port_rows(report.summary)))
    console.print()

    for direction_summary in report.summary.directions:
        console.print(Panel(str(direction_summary.direction), style="info", expand=True))
        console.print(
            create_count_table(
                f"Count per state ({direction_summary.direction})", direction_summary.state_counts
            )
        )
        console.print(
            create_count_table(
                f"Count established per address and port ({direction_summary.direction})",
                direction_summary.established_by_peer,
            )
        )
        console.print()


def render_transitions(
    first: Path, second: Path, port: int, transitions: list[StateTransition]
) -> None:
    """Render the state transitions found between two snapshots."""
    console.print(Panel(f"compare {escape(first.name)} and {escape(second.name)}", style="header"))
    if not transitions:
        console.print(f"[info]No connections on port {port} found in both snapshots[/info]")
    for transition in transitions:
        console.print(escape(transition.describe()), style="metric")
    console.print()


def render_thread_report(
    results: list[DumpResult], report: CrossDumpReport, settings: ThreadReportSettings
) -> None:
    """Render per-dump counts, top groups, group continuity and thread continuity."""
    console.print()
    title = "Thread-dump analysis report"
    if settings.frame_filter:
        title += f" (frames containing '{escape(settings.frame_filter)}')"
    console.print(Panel(title, style="header", expand=True))
    console.print()

    overview = Table(title="Threads per Dump", show_header=True, header_style="header")
    overview.add_column("Dump", style="info")
    overview.add_column("Platform", justify="right", style="metric")
    overview.add_column("Virtual", justify="right", style="metric")
    overview.add_column("Virtual w/o stack", justify="right", style="metric")
    overview.add_column("Carrier", justify="right", style="metric")
    overview.add_column("Groups", justify="right", style="metric")
    for row in build_dump_overview_rows(results):
        overview.add_row(
            escape(row["timestamp"]),
            row["platform"],
            row["virtual"],
            row["virtual_no_stack"],
            row["carrier"],
            row["groups"],
        )
    console.print(overview)
    console.print()

    for result in results:
        groups_table = Table(
            title=f"Top {settings.top_groups} Groups: {escape(result.timestamp)}",
            show_header=True,
            header_style="header",
        )
        groups_table.add_column("Count", justify="right", style="metric")
        groups_table.add_column("Platform", justify="right", style="metric")
        groups_table.add_column("Virtual", justify="right", style="metric")
        groups_table.add_column("Normalized stack", style="label")
        for key, count in top_groups(result, settings.top_groups):
            groups_table.add_row(
                str(count.total), str(count.platform), str(count.virtual), escape(key)
            )
        console.print(groups_table)
        console.print()

    continuity = Table(
        title=f"Cross-dump Group Continuity (first {settings.continuity_groups} groups)",
        show_header=True,
        header_style="header",
    )
    continuity.add_column("Group", style="label")
    for timestamp in report.timestamps:
        continuity.add_column(escape(timestamp), justify="right", style="metric")
    for group in report.groups[: settings.continuity_groups]:
        continuity.add_row(escape(group.key), *(format_group_count(c) for c in group.counts))
    console.print(continuity)
    console.print()

    if not report.transitions:
        return

    transitions = Table(title="Thread Continuity", show_header=True, header_style="header")
    transitions.add_column("From", style="info")
    transitions.add_column("To", style="info")
    transitions.add_column("Same thread, same stack", justify="right", style="metric")
    transitions.add_column("Virtual drift", justify="right", style="metric")
    for row in build_transition_rows(report):
        transitions.add_row(
            escape(row["before"]), escape(row["after"]), row["stable"], row["drifted"]
        )
    console.print(transitions)
    console.print()

    for transition in report.transitions:
        if not transition.drifted:
            continue
        drift_table = Table(
            title=f"Virtual Drift {escape(transition.before)} -> {escape(transition.after)}",
            show_header=True,
            header_style="header",
        )
        drift_table.add_column("Id", style="info")
        drift_table.add_column("Name", style="info")
        drift_table.add_column("Before", style="label")
        drift_table.add_column("After", style="metric")
        for drift in transition.drifted:
            drift_table.add_row(
                escape(drift.id),
                escape(drift.name),
                escape(drift.key_before),
                escape(drift.key_after),
            )
        console.print(drift_table)
        console.print()


# ============================================================
# MARKDOWN EXPORT
# ============================================================


def export_netstat_markdown(reports: list[SnapshotReport], output_path: Path) -> None:
    """Export netstat reports of one or more files to Markdown format."""
    md_content: list[str] = []

    md_content.append("# Netstat Report\n\n")
    md_content.append(f"**Generated:** {datetime.now().isoformat()}\n\n")

    for report in reports:
        md_content.append(f"## {report.path}\n\n")

        md_content.append("### Parsing Coverage\n\n")
        for label, value in build_parsing_coverage_rows(report.snapshot):
            md_content.append(f"- **{label}:** {value}\n")
        md_content.append("\n")

        for label, value in build_listen_port_rows(report.summary):
            md_content.append(f"**{label}:** {value}\n\n")

        for direction_summary in report.summary.directions:
            md_content.append(f"### {direction_summary.direction}\n\n")
            md_content.append("| Count per state | Count |\n|---|---:|\n")
            for key, count in direction_summary.state_counts.items():
                md_content.append(f"| {key} | {count} |\n")
            md_content.append("\n| Established per address and port | Count |\n|---|---:|\n")
            for key, count in direction_summary.established_by_peer.items():
                md_content.append(f"| {key} | {count} |\n")
            md_content.append("\n")

    output_path.write_text("".join(md_content), encoding="utf-8")


def export_thread_markdown(
    results: list[DumpResult],
    report: CrossDumpReport,
    settings: ThreadReportSettings,
    output_path: Path,
) -> None:
    """Export the thread dump report to Markdown format."""
    md_content: list[str] = []

    md_content.append("# Thread-dump Analysis Report\n\n")
    md_content.append(f"**Generated:** {datetime.now().isoformat()}\n\n")
    if settings.frame_filter:
        md_content.append(f"**Frame filter:** `{settings.frame_filter}`\n\n")

    md_content.append("## Threads per Dump\n\n")
    md_content.append(
        "| Dump | Platform | Virtual | Virtual w/o stack | Carrier | Groups |\n"
        "|---|---:|---:|---:|---:|---:|\n"
    )
    for row in build_dump_overview_rows(results):
        md_content.append(
            f"| {row['timestamp']} | {row['platform']} | {row['virtual']} "
            f"| {row['virtual_no_stack']} | {row['carrier']} | {row['groups']} |\n"
        )
    md_content.append("\n")

    for result in results:
        md_content.append(f"### Top {settings.top_groups} groups: {result.timestamp}\n\n")
        for key, count in top_groups(result, settings.top_groups):
            md_content.append(f"- count={format_group_count(count)} :: `{key}`\n")
        md_content.append("\n")

    md_content.append(
        f"## Cross-dump Group Continuity (first {settings.continuity_groups} groups)\n\n"
    )
    for group in report.groups[: settings.continuity_groups]:
        md_content.append(f"**Group:** `{group.key}`\n\n")
        for timestamp, count in zip(report.timestamps, group.counts):
            md_content.append(f"- {timestamp}: {format_group_count(count)}\n")
        md_content.append("\n")

    if report.transitions:
        md_content.append("## Thread Continuity\n\n")
        for transition in report.transitions:
            md_content.append(f"### {transition.before} -> {transition.after}\n\n")
            md_content.append(
                f"- **Same thread, same stack:** {len(transition.stable_thread_ids)}\n"
            )
            md_content.append(f"- **Virtual drift:** {len(transition.drifted)}\n")
            for drift in transition.drifted:
                md_content.append(
                    f"  - #{drift.id} \"{drift.name}\": "
                    f"`{drift.key_before}` -> `{drift.key_after}`\n"
                )
            md_content.append("\n")

    output_path.write_text("".join(md_content), encoding="utf-8")


# ============================================================
# TYPER CLI INTERFACE
# ============================================================

app = typer.Typer(
    name="dump-analyze",
    help="Offline analyzer for netstat snapshots and JDK thread dumps",
    add_completion=False,
    rich_markup_mode="rich",
)

NamesOption = Annotated[
    Path | None,
    typer.Option(
        "--names",
        "-n",
        help="Mapping file with ip=name lines used to label peers",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
]

OutputOption = Annotated[
    Path | None,
    typer.Option(
        "--output",
        "-o",
        help="Export report to Markdown file (e.g., report.md)",
        file_okay=True,
        dir_okay=False,
    ),
]

VerboseOption = Annotated[
    bool,
    typer.Option(
        "--verbose",
        "-v",
        help="Enable verbose output with detailed parsing information",
    ),
]


def load_names(names: Path | None, verbose: bool) -> AddressNames:
    if names is None:
        return {}
    mapping = read_address_names(names)
    if verbose:
        console.print(f"[info]Loaded {len(mapping)} address names from {escape(str(names))}[/info]")
    return mapping


def load_snapshot(path: Path, cache: dict[Path, Snapshot], verbose: bool) -> Snapshot:
    """Read and parse a snapshot once per command run."""
    if path not in cache:
        lines = read_lines(path)
        if verbose:
            console.print(f"[info]Read {len(lines)} lines from {escape(str(path))}[/info]")
        cache[path] = parse_snapshot(lines)
    return cache[path]


@app.command()
def report(
    path: Annotated[
        Path,
        typer.Argument(
            help="Netstat output file, or a directory of them",
            exists=True,
            file_okay=True,
            dir_okay=True,
            readable=True,
        ),
    ],
    names: NamesOption = None,
    output: OutputOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Report listen ports and connection counts per state and peer.

    Exit codes: 0 = all files processed, 1 = one or more files could not be read.
    """
    try:
        mapping = load_names(names, verbose)
        cache: dict[Path, Snapshot] = {}
        reports: list[SnapshotReport] = []
        failures = 0

        for snapshot_file in iter_files(path):
            try:
                snapshot = load_snapshot(snapshot_file, cache, verbose)
            except UnreadableFile as e:
                console.print(f"[critical]ERROR: {escape(str(e))}[/critical]")
                failures += 1
                continue
            snapshot_report = SnapshotReport(
                path=snapshot_file,
                snapshot=snapshot,
                summary=build_netstat_summary(snapshot.records, mapping),
            )
            render_snapshot_report(snapshot_report, verbose)
            reports.append(snapshot_report)

        if output:
            export_netstat_markdown(reports, output)
            console.print(f"\n[success] Report exported to {escape(str(output))}[/success]")

        if failures:
            sys.exit(1)

    except ValueError as e:
        console.print(f"[critical]ERROR: {escape(str(e))}[/critical]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[critical]ERROR: {escape(str(e))}[/critical]")
        if verbose:
            console.print_exception()
        sys.exit(1)


@app.command()
def compare(
    port: Annotated[
        int,
        typer.Argument(help="Port whose connections are compared", min=0, max=65535),
    ],
    first: Annotated[
        Path,
        typer.Argument(help="First netstat file or directory", exists=True, readable=True),
    ],
    second: Annotated[
        Path,
        typer.Argument(help="Second netstat file or directory", exists=True, readable=True),
    ],
    names: NamesOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show state transitions of connections on PORT between two snapshots.

    Exit codes: 0 = all pairs compared, 1 = bad input or unreadable files.
    """
    try:
        mapping = load_names(names, verbose)
        pairs = plan_comparisons(first, second)
        if verbose:
            console.print(f"[info]Comparing {len(pairs)} snapshot pairs on port {port}[/info]")

        cache: dict[Path, Snapshot] = {}
        failures = 0
        for file_a, file_b in pairs:
            try:
                snapshot_a = load_snapshot(file_a, cache, verbose)
                snapshot_b = load_snapshot(file_b, cache, verbose)
            except UnreadableFile as e:
                console.print(f"[critical]ERROR: {escape(str(e))}[/critical]")
                failures += 1
                continue
            transitions = compare_snapshots(snapshot_a.records, snapshot_b.records, port, mapping)
            render_transitions(file_a, file_b, port, transitions)

        if failures:
            sys.exit(1)

    except ValueError as e:
        console.print(f"[critical]ERROR: {escape(str(e))}[/critical]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[critical]ERROR: {escape(str(e))}[/critical]")
        if verbose:
            console.print_exception()
        sys.exit(1)


@app.command()
def threads(
    directory: Annotated[
        Path,
        typer.Argument(
            help="Directory with thread dump files, processed in file name order",
            exists=True,
            file_okay=False,
            dir_okay=True,
            readable=True,
        ),
    ],
    frame_filter: Annotated[
        str | None,
        typer.Option(
            "--filter",
            "-f",
            help="Only consider stack frames containing this text (case-insensitive)",
        ),
    ] = None,
    top: Annotated[
        int,
        typer.Option("--top", help="Groups shown per dump (default: 10)", min=1),
    ] = 10,
    groups: Annotated[
        int,
        typer.Option("--groups", help="Groups shown in the continuity table (default: 50)", min=1),
    ] = 50,
    pattern: Annotated[
        str,
        typer.Option("--pattern", help="Glob selecting dump files (default: *.txt)"),
    ] = "*.txt",
    output: OutputOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Analyze a series of JDK thread dumps (jcmd Thread.dump_to_file).

    Exit codes: 0 = all dumps processed, 1 = no dumps or unreadable files.
    """
    try:
        settings = ThreadReportSettings(
            frame_filter=frame_filter,
            top_groups=top,
            continuity_groups=groups,
            pattern=pattern,
        )
        files = dump_files(directory, settings.pattern)
        if not files:
            console.print("[warning]No thread dumps found.[/warning]")
            sys.exit(1)

        if verbose:
            console.print(
                f"[info]Found {len(files)} thread dumps in {escape(str(directory))}[/info]"
            )

        results: list[DumpResult] = []
        failures = 0
        with Progress(
            SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console
        ) as progress:
            parse_task = progress.add_task("[cyan]Parsing thread dumps...", total=len(files))
            for dump_file in files:
                try:
                    results.append(parse_dump(dump_file, settings.frame_filter))
                except UnreadableFile as e:
                    progress.console.print(f"[critical]ERROR: {escape(str(e))}[/critical]")
                    failures += 1
                progress.advance(parse_task)

        if verbose:
            console.print(f"[info]Successfully parsed {len(results)} thread dumps[/info]")

        cross_dump = track_dumps(results)
        render_thread_report(results, cross_dump, settings)

        if output:
            export_thread_markdown(results, cross_dump, settings, output)
            console.print(f"\n[success] Report exported to {escape(str(output))}[/success]")

        if failures:
            sys.exit(1)

    except ValueError as e:
        console.print(f"[critical]ERROR: {escape(str(e))}[/critical]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[critical]ERROR: {escape(str(e))}[/critical]")
        if verbose:
            console.print_exception()
        sys.exit(1)


@app.command()
def version() -> None:
    """Display version."""
    console.print(f"dump-analyze {VERSION}")


if __name__ == "__main__":
    app()
