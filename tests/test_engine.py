"""End-to-end runs against the fake cache."""

from __future__ import annotations

import asyncio

from conftest import FakeCache, id_for, run_mirror
from nixmirror.engine import NIX_CACHE_INFO


def artifact_files(mirror_dir):
    return sorted(
        p.relative_to(mirror_dir).as_posix()
        for p in mirror_dir.rglob("*")
        if p.is_file() and p.name != NIX_CACHE_INFO
    )


def test_dependency_is_followed(cache, mirror_dir):
    a = cache.add("a", ["b"])
    cache.add("b")

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a]))

    assert summary.ok
    assert summary.total == 2
    assert summary.succeeded == 2
    assert summary.failed == []
    assert sorted(artifact_files(mirror_dir)) == sorted(
        [cache.narinfo_path("a"), cache.narinfo_path("b"), cache.nar_path("a"), cache.nar_path("b")]
    )
    assert (mirror_dir / cache.nar_path("b")).read_bytes() == cache.files[cache.nar_path("b")]
    assert (mirror_dir / cache.narinfo_path("a")).read_bytes() == cache.files[cache.narinfo_path("a")]
    assert (mirror_dir / NIX_CACHE_INFO).read_text().startswith("StoreDir: /nix/store")


def test_missing_seed_is_reported_not_found(cache, mirror_dir):
    a = id_for("a")

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a]))

    assert not summary.ok
    assert summary.total == 1
    assert summary.succeeded == 0
    assert [(r.id, r.kind) for r in summary.failed] == [(a, "NotFound")]
    assert list(mirror_dir.rglob("*")) == []
    assert cache.requests[cache.narinfo_path("a")] == 1


def test_shared_dependency_fetched_once(cache, mirror_dir):
    a = cache.add("a", ["c"])
    b = cache.add("b", ["c"])
    cache.add("c")

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a, b]))

    assert summary.ok
    assert summary.total == 3
    assert cache.requests[cache.narinfo_path("c")] == 1
    assert cache.requests[cache.nar_path("c")] == 1


def test_cycles_and_self_references_terminate(cache, mirror_dir):
    a = cache.add("a", ["a", "b"])
    cache.add("b", ["a"])

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a]))

    assert summary.ok
    assert summary.total == 2
    assert cache.total_requests == 4


def test_wide_graph_each_path_claimed_once(cache, mirror_dir):
    leaves = [f"leaf{n}" for n in range(30)]
    mids = [f"mid{n}" for n in range(10)]
    for leaf in leaves:
        cache.add(leaf, leaves[:3])
    for n, mid in enumerate(mids):
        cache.add(mid, leaves[n::3] + mids[:2])
    root = cache.add("root", mids)

    summary = asyncio.run(run_mirror(cache, mirror_dir, [root], concurrency=8))

    assert summary.ok
    assert summary.total == 41
    assert set(cache.requests.values()) == {1}
    assert cache.total_requests == 82


def test_failure_of_one_path_does_not_stop_siblings(cache, mirror_dir):
    a = cache.add("a", ["b", "c", "missing"])
    cache.add("b")
    cache.add("c")
    cache.fail(cache.nar_path("b"), *["corrupt"] * 5)

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a]))

    kinds = {r.id: r.kind for r in summary.failed}
    assert kinds == {id_for("b"): "IntegrityMismatch", id_for("missing"): "NotFound"}
    assert summary.succeeded == 2
    assert (mirror_dir / cache.nar_path("c")).exists()
    assert not (mirror_dir / cache.nar_path("b")).exists()
    assert not (mirror_dir / cache.narinfo_path("b")).exists()
    assert cache.requests[cache.nar_path("b")] == 2
    assert list(mirror_dir.rglob("*.part")) == []


def test_mismatch_retried_once_then_accepted(cache, mirror_dir):
    a = cache.add("a")
    cache.fail(cache.nar_path("a"), "corrupt")

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a]))

    assert summary.ok
    assert cache.requests[cache.nar_path("a")] == 2


def test_mismatch_retry_uses_a_new_connection(cache, mirror_dir):
    a = cache.add("a")
    cache.fail(cache.nar_path("a"), "corrupt")

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a], concurrency=1))

    assert summary.ok
    first, second = cache.client_ports[cache.nar_path("a")]
    assert first != second


def test_mismatch_never_retried_when_disabled(cache, mirror_dir):
    a = cache.add("a")
    cache.fail(cache.nar_path("a"), "truncate")

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a], integrity_retries=0))

    assert [r.kind for r in summary.failed] == ["IntegrityMismatch"]
    assert cache.requests[cache.nar_path("a")] == 1
    assert list(mirror_dir.rglob("*")) == []


def test_transient_errors_are_retried(cache, mirror_dir):
    a = cache.add("a")
    cache.fail(cache.narinfo_path("a"), 502)
    cache.fail(cache.nar_path("a"), 503, 500)

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a]))

    assert summary.ok
    assert cache.requests[cache.narinfo_path("a")] == 2
    assert cache.requests[cache.nar_path("a")] == 3


def test_transient_budget_exhausted(cache, mirror_dir):
    a = cache.add("a")
    cache.fail(cache.nar_path("a"), *[503] * 10)

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a], max_retries=2))

    assert [r.kind for r in summary.failed] == ["TransientError"]
    assert cache.requests[cache.nar_path("a")] == 3


def test_corrupt_metadata_is_not_retried(cache, mirror_dir):
    a = id_for("a")
    cache.files[f"{a}.narinfo"] = b"StorePath: /nix/store/" + a.encode() + b"-a\nnonsense\n"

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a]))

    assert [r.kind for r in summary.failed] == ["CorruptMetadata"]
    assert cache.requests[f"{a}.narinfo"] == 1


def test_invalid_references_reported_without_failing(cache, mirror_dir):
    a = cache.add("a", ["b"], raw_references=["garbage!"])
    cache.add("b")

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a]))

    assert summary.ok
    assert summary.total == 2
    assert summary.invalid_references == [(a, "garbage!")]


def test_rerun_performs_no_network_fetches(cache, mirror_dir):
    a = cache.add("a", ["b"])
    cache.add("b", ["c"])
    cache.add("c")
    first = asyncio.run(run_mirror(cache, mirror_dir, [a]))
    assert first.ok

    fresh = FakeCache()
    second = asyncio.run(run_mirror(fresh, mirror_dir, [a]))

    assert second.ok
    assert second.total == 3
    assert second.skipped == 3
    assert fresh.total_requests == 0


def test_rerun_fetches_only_what_is_missing(cache, mirror_dir):
    a = cache.add("a", ["b"])
    cache.add("b")
    asyncio.run(run_mirror(cache, mirror_dir, [a]))
    (mirror_dir / cache.nar_path("b")).unlink()
    (mirror_dir / cache.nar_path("a")).write_bytes(b"short")
    cache.requests.clear()

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a]))

    assert summary.ok
    assert dict(cache.requests) == {cache.nar_path("a"): 1, cache.nar_path("b"): 1}
    assert (mirror_dir / cache.nar_path("a")).read_bytes() == cache.files[cache.nar_path("a")]


def test_unreadable_local_narinfo_is_refetched(cache, mirror_dir):
    a = cache.add("a")
    mirror_dir.mkdir(parents=True)
    (mirror_dir / cache.narinfo_path("a")).write_bytes(b"truncated garb")

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a]))

    assert summary.ok
    assert cache.requests[cache.narinfo_path("a")] == 1
    assert (mirror_dir / cache.narinfo_path("a")).read_bytes() == cache.files[cache.narinfo_path("a")]


def test_stop_abandons_in_flight_work_and_cleans_staging(cache, mirror_dir):
    a = cache.add("a", ["b"], content=b"x" * 200_000)
    cache.add("b")
    cache.fail(cache.nar_path("a"), "hang")

    async def scenario():
        stop = asyncio.Event()

        async def stop_when_hanging():
            while cache.hanging is None:
                await asyncio.sleep(0.01)
            await cache.hanging.wait()
            await asyncio.sleep(0.05)
            stop.set()

        trigger = asyncio.create_task(stop_when_hanging())
        summary = await run_mirror(cache, mirror_dir, [a], stop=stop, concurrency=1)
        await trigger
        return summary

    summary = asyncio.run(scenario())

    assert summary.cancelled
    assert not summary.ok
    records = summary.records
    assert set(records) == {a, id_for("b")}
    assert records[a].kind == "Cancelled"
    assert records[id_for("b")].kind == "Cancelled"
    assert not (mirror_dir / cache.nar_path("a")).exists()
    assert list(mirror_dir.rglob("*.part")) == []


def test_report_lists_failures_first(cache, mirror_dir, tmp_path):
    a = cache.add("a", ["missing"])

    summary = asyncio.run(run_mirror(cache, mirror_dir, [a]))
    report = tmp_path / "report.tsv"
    summary.write_report(report)

    rows = [line.split("\t") for line in report.read_text().splitlines()]
    assert rows[0] == ["id", "status", "kind", "reason"]
    assert rows[1][:3] == [id_for("missing"), "failed", "NotFound"]
    assert rows[2][:2] == [a, "ok"]
