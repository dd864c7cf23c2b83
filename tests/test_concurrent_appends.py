from __future__ import annotations

import multiprocessing
from pathlib import Path

from contextflow.state.record_log import parse_entries

from conftest import build_context

N_PROCESSES = 4
N_PER_PROCESS = 15


def _append_worker(log_path: str, worker_id: int, count: int) -> None:
    """子进程：通过独立的 SharedContext 追加 `count` 条 note。"""

    from contextflow.tools.args import AppendNoteArgs, parse_args

    ctx = build_context(Path(log_path), overlay={"lock": {"max_wait_ms": 30_000}})
    for i in range(count):
        args = parse_args(
            AppendNoteArgs,
            {
                "agent": f"agent-{worker_id}",
                "session_id": f"s{worker_id % 2}",
                "text": f"worker {worker_id} note {i} " + "x" * 200,
            },
        )
        ctx.append_note(args)


def test_concurrent_appends_from_processes_lose_nothing(tmp_path: Path) -> None:
    """多进程并发追加：行数精确、无交错/损坏行。"""

    log_path = tmp_path / "shared.jsonl"
    mp = multiprocessing.get_context("spawn")
    procs = [
        mp.Process(target=_append_worker, args=(str(log_path), wid, N_PER_PROCESS)) for wid in range(N_PROCESSES)
    ]
    for p in procs:
        p.start()
    for p in procs:
        p.join(timeout=120)
        assert p.exitcode == 0

    raw = log_path.read_text(encoding="utf-8")
    entries, errors = parse_entries(raw)
    assert errors == []
    assert len(raw.splitlines()) == N_PROCESSES * N_PER_PROCESS
    assert len(entries) == N_PROCESSES * N_PER_PROCESS
    assert len({e["id"] for e in entries}) == len(entries)
    for wid in range(N_PROCESSES):
        texts = [e["text"] for e in entries if e["agent"] == f"agent-{wid}"]
        # 同一进程内的写入保持发出顺序
        assert [t.split()[3] for t in texts] == [str(i) for i in range(N_PER_PROCESS)]
    assert not (tmp_path / "shared.jsonl.lock").exists()


def test_session_listing_after_concurrent_appends_matches_full_scan(tmp_path: Path) -> None:
    log_path = tmp_path / "shared.jsonl"
    mp = multiprocessing.get_context("spawn")
    procs = [mp.Process(target=_append_worker, args=(str(log_path), wid, 5)) for wid in range(3)]
    for p in procs:
        p.start()
    for p in procs:
        p.join(timeout=120)
        assert p.exitcode == 0

    ctx = build_context(log_path)
    listed = ctx.list_sessions(project="shared")
    # since 过滤强制走全量扫描，作为索引结果的对照
    scanned = ctx.list_sessions(project="shared", since="1970-01-01T00:00:00.000Z")
    assert not scanned.from_index
    assert [s.to_jsonable() for s in listed.all_sessions] == [s.to_jsonable() for s in scanned.all_sessions]
    assert sum(s.entry_count for s in listed.all_sessions) == 15
