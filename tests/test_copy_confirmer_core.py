from __future__ import annotations

import hashlib
import os
import sys
import threading
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tools import copy_confirmer_core as core
from tools.copy_confirmer_core import (
    AllPresent,
    ChannelError,
    ConfirmerError,
    CopyConfirmer,
    CopyConfirmerConfig,
    ExclusionPattern,
    MissingFiles,
    PhaseProgress,
    ReadError,
    TraversalError,
    WorkerFaultError,
    WorkerPool,
    file_checksum,
    is_excluded,
)


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def _digest(data: bytes) -> str:
    return hashlib.blake2b(data).hexdigest()


@pytest.fixture
def engine():
    confirmer = CopyConfirmer(2)
    yield confirmer
    confirmer.close()


def test_checksum_is_blake2b_512(tmp_path: Path):
    data = os.urandom(300_000)
    target = tmp_path / "big.bin"
    _write_file(target, data)
    digest = file_checksum(target)
    assert digest == _digest(data)
    assert len(digest) == 128
    assert digest == digest.lower()


def test_checksum_missing_file_raises(tmp_path: Path):
    with pytest.raises(OSError):
        file_checksum(tmp_path / "nope.txt")


def test_exclusion_patterns():
    anchored = ExclusionPattern.anchored("source", "dir/foo")
    assert anchored.text == os.path.join("source", "dir", "foo")
    assert anchored.matches(os.path.join("source", "dir", "foo", "a.txt"))
    assert not anchored.matches(os.path.join("other", "source", "dir", "foo"))

    contains = ExclusionPattern.substring(".cache")
    assert contains.matches("/data/.cache/x")
    assert not contains.matches("/data/cache/x")

    absolute = ExclusionPattern.prefix("/data/raw")
    assert absolute.matches("/data/raw/x") and absolute.matches("/data/rawer")
    assert not absolute.matches("/other/data/raw")

    assert is_excluded("/data/.cache/x", [anchored, contains])
    assert not is_excluded("/data/x", [anchored, contains])
    assert not is_excluded("/data/x", [])


def test_missing_file_reported(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "dir_A"
    dest = tmp_path / "dir_B"
    _write_file(source / "foo.txt", b"A")
    _write_file(source / "bar.txt", b"B")
    _write_file(dest / "foo.txt", b"A")

    outcome = engine.compare(source, [dest])

    assert outcome == MissingFiles([str(source / "bar.txt")])


def test_renamed_copies_are_all_present(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    dest = tmp_path / "dest"
    _write_file(source / "dir" / "foo.txt", b"foo content")
    _write_file(source / "dir" / "sub" / "bar.txt", b"bar content")
    _write_file(dest / "renamed_foo.txt", b"foo content")
    _write_file(dest / "elsewhere" / "renamed_bar.txt", b"bar content")

    outcome = engine.compare(source, [dest])

    assert isinstance(outcome, AllPresent)
    assert len(outcome.found) == 2
    foo = outcome.found[_digest(b"foo content")]
    bar = outcome.found[_digest(b"bar content")]
    assert foo.src_paths == [str(source / "dir" / "foo.txt")]
    assert foo.dest_paths == [str(dest / "renamed_foo.txt")]
    assert bar.src_paths == [str(source / "dir" / "sub" / "bar.txt")]
    assert bar.dest_paths == [str(dest / "elsewhere" / "renamed_bar.txt")]


def test_many_to_one_and_one_to_many(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    dest = tmp_path / "dest"
    _write_file(source / "a.txt", b"same")
    _write_file(source / "b.txt", b"same")
    _write_file(dest / "x.txt", b"same")
    _write_file(dest / "y" / "z.txt", b"same")

    outcome = engine.compare(source, [dest])

    assert isinstance(outcome, AllPresent)
    entry = outcome.found[_digest(b"same")]
    assert sorted(entry.src_paths) == [str(source / "a.txt"), str(source / "b.txt")]
    assert sorted(entry.dest_paths) == [str(dest / "x.txt"), str(dest / "y" / "z.txt")]


def test_multiple_destinations_and_extra_files(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    first = tmp_path / "first"
    second = tmp_path / "second"
    _write_file(source / "one.txt", b"1")
    _write_file(source / "two.txt", b"2")
    _write_file(first / "one.txt", b"1")
    _write_file(first / "unrelated.txt", b"extra")
    _write_file(second / "deep" / "two.txt", b"2")

    outcome = engine.compare(source, [first, second])

    assert isinstance(outcome, AllPresent)
    assert _digest(b"extra") not in outcome.found
    total_sources = sum(len(entry.src_paths) for entry in outcome.found.values())
    assert total_sources == 2


def test_missing_checksum_absent_from_found(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    dest = tmp_path / "dest"
    _write_file(source / "kept.txt", b"kept")
    _write_file(source / "lost.txt", b"lost")
    _write_file(dest / "kept.txt", b"kept")

    outcome = engine.compare(source, [dest])

    assert isinstance(outcome, MissingFiles)
    assert outcome.paths == [str(source / "lost.txt")]


def test_same_checksum_found_in_each_destination(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    first = tmp_path / "first"
    second = tmp_path / "second"
    _write_file(source / "a.txt", b"shared")
    _write_file(first / "x.txt", b"shared")
    _write_file(second / "y.txt", b"shared")

    outcome = engine.compare(source, [first, second])

    assert isinstance(outcome, AllPresent)
    entry = outcome.found[_digest(b"shared")]
    assert entry.src_paths == [str(source / "a.txt")]
    assert entry.dest_paths == [str(first / "x.txt"), str(second / "y.txt")]


def test_missing_duplicates_keep_walk_order(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    dest = tmp_path / "dest"
    _write_file(source / "a.txt", b"twin")
    _write_file(source / "b.txt", b"twin")
    _write_file(dest / "other.txt", b"other")

    outcome = engine.compare(source, [dest])

    assert isinstance(outcome, MissingFiles)
    assert outcome.paths == [str(source / "a.txt"), str(source / "b.txt")]


def test_anchored_exclusion(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "source"
    dest = tmp_path / "dest"
    _write_file(source / "dir" / "foo" / "a.txt", b"excluded a")
    _write_file(source / "dir" / "foo" / "deep" / "b.txt", b"excluded b")
    _write_file(source / "dir" / "keep.txt", b"keep")
    _write_file(dest / "keep.txt", b"keep")

    engine.add_exclusion(ExclusionPattern.anchored(source, "dir/foo"))
    outcome = engine.compare(source, [dest])

    assert isinstance(outcome, AllPresent)
    excluded = engine.excluded_paths()
    assert sorted(excluded) == [
        str(source / "dir" / "foo" / "a.txt"),
        str(source / "dir" / "foo" / "deep" / "b.txt"),
    ]
    for entry in outcome.found.values():
        assert not set(entry.src_paths) & set(excluded)


def test_substring_exclusion_not_applied_to_destinations(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    dest = tmp_path / "dest"
    _write_file(source / "notes.tmp", b"scratch")
    _write_file(source / "photo.jpg", b"jpeg")
    _write_file(dest / "backup.tmp", b"jpeg")

    engine.add_exclusion(ExclusionPattern.substring(".tmp"))
    outcome = engine.compare(source, [dest])

    assert isinstance(outcome, AllPresent)
    assert outcome.found[_digest(b"jpeg")].dest_paths == [str(dest / "backup.tmp")]
    assert engine.excluded_paths() == [str(source / "notes.tmp")]


def test_compare_is_idempotent(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    dest = tmp_path / "dest"
    _write_file(source / "a.txt", b"a")
    _write_file(source / "skip" / "b.txt", b"b")
    _write_file(source / "c.txt", b"c")
    _write_file(dest / "a.txt", b"a")

    engine.add_exclusion(ExclusionPattern.anchored(source, "skip"))
    first = engine.compare(source, [dest])
    first_excluded = engine.excluded_paths()
    second = engine.compare(source, [dest])

    assert first == second
    assert engine.excluded_paths() == first_excluded == [str(source / "skip" / "b.txt")]


def test_empty_source_is_all_present(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    dest = tmp_path / "dest"
    source.mkdir()
    dest.mkdir()
    assert engine.compare(source, [dest]) == AllPresent({})


def test_excluded_paths_empty_before_compare():
    with CopyConfirmer(1) as confirmer:
        assert confirmer.excluded_paths() == []


def test_missing_root_is_traversal_error(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    _write_file(source / "a.txt", b"a")
    with pytest.raises(TraversalError):
        engine.compare(source, [tmp_path / "missing"])
    with pytest.raises(TraversalError):
        engine.compare(tmp_path / "missing", [source])


@pytest.mark.skipif(sys.platform.startswith("win") or os.geteuid() == 0, reason="needs POSIX permissions as non-root")
def test_unlistable_directory_aborts(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    locked = source / "locked"
    _write_file(locked / "a.txt", b"a")
    locked.chmod(0)
    try:
        with pytest.raises(TraversalError):
            engine.compare(source, [tmp_path])
    finally:
        locked.chmod(0o755)


@pytest.mark.skipif(sys.platform.startswith("win") or os.geteuid() == 0, reason="needs POSIX permissions as non-root")
def test_unreadable_file_aborts(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    dest = tmp_path / "dest"
    secret = source / "secret.txt"
    _write_file(secret, b"secret")
    _write_file(dest / "secret.txt", b"secret")
    secret.chmod(0)
    try:
        with pytest.raises(ReadError) as info:
            engine.compare(source, [dest])
        assert info.value.path == str(secret)
    finally:
        secret.chmod(0o644)
    assert isinstance(engine.compare(source, [dest]), AllPresent)


def test_read_error_leaves_engine_reusable(tmp_path: Path, engine: CopyConfirmer, monkeypatch):
    source = tmp_path / "src"
    dest = tmp_path / "dest"
    for idx in range(5):
        _write_file(source / f"{idx}.txt", str(idx).encode())
        _write_file(dest / f"{idx}.txt", str(idx).encode())

    real_checksum = core.file_checksum

    def _failing(path, *args, **kwargs):
        if str(path).endswith("3.txt"):
            raise PermissionError(13, "Permission denied", str(path))
        return real_checksum(path, *args, **kwargs)

    monkeypatch.setattr(core, "file_checksum", _failing)
    with pytest.raises(ReadError):
        engine.compare(source, [dest])

    monkeypatch.setattr(core, "file_checksum", real_checksum)
    outcome = engine.compare(source, [dest])
    assert isinstance(outcome, AllPresent)
    assert sum(len(entry.src_paths) for entry in outcome.found.values()) == 5


def test_worker_fault_is_fatal(tmp_path: Path, engine: CopyConfirmer, monkeypatch):
    source = tmp_path / "src"
    _write_file(source / "a.txt", b"a")

    def _explode(path, *args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(core, "file_checksum", _explode)
    with pytest.raises(WorkerFaultError):
        engine.compare(source, [source])


def test_closed_channel_is_reported(tmp_path: Path):
    source = tmp_path / "src"
    _write_file(source / "a.txt", b"a")
    confirmer = CopyConfirmer(1)
    confirmer._channel.close()
    try:
        with pytest.raises(ChannelError):
            confirmer.compare(source, [source])
    finally:
        confirmer.close()


def test_reporter_failure_leaves_engine_reusable(tmp_path: Path):
    first_source = tmp_path / "first"
    for idx in range(6):
        _write_file(first_source / f"{idx}.txt", f"first {idx}".encode())
    second_source = tmp_path / "second"
    dest = tmp_path / "dest"
    _write_file(second_source / "only.txt", b"second")
    _write_file(dest / "only.txt", b"second")

    calls = []

    def _reporter(update):
        calls.append(update)
        if len(calls) == 1:
            raise RuntimeError("reporter broke")

    with CopyConfirmer(2).enable_progress_reporting(_reporter) as confirmer:
        with pytest.raises(RuntimeError):
            confirmer.compare(first_source, [first_source])
        outcome = confirmer.compare(second_source, [dest])

    assert isinstance(outcome, AllPresent)
    assert list(outcome.found) == [_digest(b"second")]
    assert outcome.found[_digest(b"second")].src_paths == [str(second_source / "only.txt")]


def test_compare_after_close_raises(tmp_path: Path):
    source = tmp_path / "src"
    _write_file(source / "a.txt", b"a")
    confirmer = CopyConfirmer(1)
    confirmer.close()
    with pytest.raises(ConfirmerError, match="closed"):
        confirmer.compare(source, [source])


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_directory_links_not_followed(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    outside = tmp_path / "outside"
    dest = tmp_path / "dest"
    _write_file(source / "a.txt", b"a")
    _write_file(outside / "b.txt", b"only outside")
    _write_file(dest / "a.txt", b"a")
    (source / "link").symlink_to(outside, target_is_directory=True)

    outcome = engine.compare(source, [dest])

    assert isinstance(outcome, AllPresent)
    assert outcome.found[_digest(b"a")].src_paths == [str(source / "a.txt")]


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="named pipes unavailable")
def test_special_files_are_skipped(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    dest = tmp_path / "dest"
    _write_file(source / "a.txt", b"a")
    _write_file(dest / "a.txt", b"a")
    os.mkfifo(source / "pipe")
    os.mkfifo(dest / "pipe")

    outcome = engine.compare(source, [dest])

    assert isinstance(outcome, AllPresent)
    assert outcome.found[_digest(b"a")].src_paths == [str(source / "a.txt")]
    assert engine.excluded_paths() == []


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_dangling_file_link_is_skipped(tmp_path: Path, engine: CopyConfirmer):
    source = tmp_path / "src"
    dest = tmp_path / "dest"
    _write_file(source / "a.txt", b"a")
    _write_file(dest / "a.txt", b"a")
    (source / "broken").symlink_to(tmp_path / "does-not-exist")

    outcome = engine.compare(source, [dest])

    assert isinstance(outcome, AllPresent)


def test_progress_reporting(tmp_path: Path):
    source = tmp_path / "src"
    dest = tmp_path / "dest"
    for idx in range(4):
        _write_file(source / f"{idx}.txt", str(idx).encode())
    _write_file(dest / "0.txt", b"0")

    updates = []
    with CopyConfirmer(2).enable_progress_reporting(updates.append) as confirmer:
        outcome = confirmer.compare(source, [dest])

    assert isinstance(outcome, MissingFiles)
    finished = [u for u in updates if u.finished]
    assert [u.total for u in finished] == [4, 1]
    assert all(u.completed == u.total for u in finished)
    assert all(0 <= u.completed <= u.total for u in updates)
    assert all(isinstance(u, PhaseProgress) for u in updates)


def test_from_config(tmp_path: Path):
    source = tmp_path / "src"
    dest = tmp_path / "dest"
    _write_file(source / "a.txt", b"a")
    _write_file(source / "cache" / "b.txt", b"b")
    _write_file(source / "c.log", b"c")
    _write_file(dest / "a.txt", b"a")

    config = CopyConfirmerConfig(
        source=source,
        destinations=[dest],
        jobs=0,
        excludes=["cache"],
        exclude_patterns=[".log"],
    )
    with CopyConfirmer.from_config(config) as confirmer:
        assert confirmer.jobs == 1
        outcome = confirmer.compare(config.source, config.destinations)
        excluded = confirmer.excluded_paths()

    assert isinstance(outcome, AllPresent)
    assert sorted(excluded) == [str(source / "c.log"), str(source / "cache" / "b.txt")]


def test_worker_pool_counts_and_faults():
    pool = WorkerPool(1)
    gate = threading.Event()
    pool.execute(gate.wait)
    pool.execute(lambda: None)
    time.sleep(0.1)
    assert pool.active_count == 1
    assert pool.queued_count == 1
    gate.set()
    assert pool.wait_idle(timeout=5)
    assert pool.pending() == 0
    assert pool.fault_count == 0

    def _fail():
        raise ValueError("bad task")

    pool.execute(_fail)
    assert pool.wait_idle(timeout=5)
    assert pool.fault_count == 1
    pool.execute(lambda: None)
    assert pool.wait_idle(timeout=5)
    assert pool.fault_count == 1
    pool.shutdown()


def test_worker_pool_rejects_tasks_after_shutdown():
    pool = WorkerPool(1)
    pool.shutdown()
    with pytest.raises(RuntimeError):
        pool.execute(lambda: None)
    assert pool.pending() == 0
    assert pool.queued_count == 0
    assert pool.wait_idle(timeout=1)
