from dump_analyze.threads import (
    DumpResult,
    GroupCount,
    ThreadDrift,
    ThreadInfo,
    aggregate_dump,
    group_continuity,
    parse_thread_entries,
    stable_threads,
    track_dumps,
    virtual_drift,
)


def _dump(timestamp: str, threads: dict[str, tuple[str, bool]]) -> DumpResult:
    """Build a dump result from `id -> (key, is_virtual)`."""
    return DumpResult(
        timestamp=timestamp,
        thread_info_by_id={
            thread_id: ThreadInfo(
                key=key, is_virtual=is_virtual, has_stack=True, name=f"t-{thread_id}"
            )
            for thread_id, (key, is_virtual) in threads.items()
        },
    )


def test_virtual_thread_with_changed_key_drifts_once():
    first = _dump("t1", {"42": ("K1", True)})
    second = _dump("t2", {"42": ("K2", True)})

    report = track_dumps([first, second])

    assert len(report.transitions) == 1
    assert report.transitions[0].drifted == [
        ThreadDrift(id="42", name="t-42", key_before="K1", key_after="K2")
    ]
    assert report.transitions[0].stable_thread_ids == []


def test_unchanged_key_is_stable():
    first = _dump("t1", {"1": ("K1", False), "2": ("K2", True), "3": ("K3", True)})
    second = _dump("t2", {"1": ("K1", False), "2": ("K2", True), "3": ("K4", True)})

    assert stable_threads(first, second) == ["1", "2"]
    assert [d.id for d in virtual_drift(first, second)] == ["3"]


def test_platform_threads_never_drift():
    first = _dump("t1", {"1": ("K1", False), "2": ("K1", True)})
    second = _dump("t2", {"1": ("K2", False), "2": ("K2", False)})

    assert virtual_drift(first, second) == []


def test_thread_missing_from_later_dump_is_neither_stable_nor_drifted():
    first = _dump("t1", {"7": ("K1", True)})
    second = _dump("t2", {"8": ("K1", True)})

    assert stable_threads(first, second) == []
    assert virtual_drift(first, second) == []


def test_only_consecutive_dumps_are_compared():
    dumps = [
        _dump("t1", {"7": ("K1", True)}),
        _dump("t2", {}),
        _dump("t3", {"7": ("K2", True)}),
    ]

    report = track_dumps(dumps)

    assert [(t.before, t.after) for t in report.transitions] == [("t1", "t2"), ("t2", "t3")]
    assert all(t.drifted == [] for t in report.transitions)


def test_group_continuity_in_first_seen_order():
    first = DumpResult(
        timestamp="t1",
        groups={
            "A": GroupCount(total=2, platform=1, virtual=1),
            "B": GroupCount(total=1, platform=1, virtual=0),
        },
    )
    second = DumpResult(
        timestamp="t2",
        groups={
            "C": GroupCount(total=1, platform=0, virtual=1),
            "B": GroupCount(total=3, platform=3, virtual=0),
        },
    )

    continuity = group_continuity([first, second])

    assert [group.key for group in continuity] == ["A", "B", "C"]
    assert continuity[0].counts == [GroupCount(total=2, platform=1, virtual=1), GroupCount()]
    assert continuity[1].counts[1].total == 3
    assert continuity[2].counts == [GroupCount(), GroupCount(total=1, platform=0, virtual=1)]


def test_tracking_does_not_modify_dump_results(thread_dump_text):
    entries = parse_thread_entries(thread_dump_text.splitlines())
    first = aggregate_dump(entries, "t1")
    second = aggregate_dump(entries, "t2")
    before = first.model_dump()

    report = track_dumps([first, second])

    assert first.model_dump() == before
    assert report.timestamps == ["t1", "t2"]
    assert len(report.transitions[0].stable_thread_ids) == 6
    assert report.transitions[0].drifted == []


def test_parsed_virtual_thread_drift(thread_dump_text):
    later_text = thread_dump_text.replace(
        "com.example.Handler.handle(Handler.java:41)",
        "com.example.Repository.query(Repository.java:7)",
    )
    first = aggregate_dump(parse_thread_entries(thread_dump_text.splitlines()), "t1")
    second = aggregate_dump(parse_thread_entries(later_text.splitlines()), "t2")

    drifted = virtual_drift(first, second)

    assert [d.id for d in drifted] == ["97408"]
    assert drifted[0].key_after.endswith("com.example.Repository.query")


def test_single_or_no_dump():
    assert track_dumps([]).transitions == []
    single = track_dumps([_dump("t1", {"1": ("K1", True)})])
    assert single.transitions == []
    assert single.timestamps == ["t1"]
