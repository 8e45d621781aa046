from __future__ import annotations

import hashlib
import logging
import os
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Union


logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_POLL_INTERVAL = 0.2
_DEFAULT_ALGORITHM = "blake2b"


class ConfirmerError(Exception):
    """Base class for every failure raised by :meth:`CopyConfirmer.compare`."""


class TraversalError(ConfirmerError):
    pass


class ReadError(ConfirmerError):
    def __init__(self, path: str, cause: OSError):
        super().__init__(f"Cannot read {path}: {cause.strerror or cause}")
        self.path = path
        self.cause = cause


class WorkerFaultError(ConfirmerError):
    pass


class ChannelError(ConfirmerError):
    pass


def file_checksum(path: Union[str, os.PathLike], algorithm: str = _DEFAULT_ALGORITHM) -> str:
    """Return the hex digest of the file content at ``path``.

    The file is streamed in fixed-size chunks, so the digest only depends on the
    bytes of the file and never on how they were read.
    """

    hasher = hashlib.new(algorithm)
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class ExclusionKind(str, Enum):
    ANCHORED_PREFIX = "prefix"
    SUBSTRING = "substring"


@dataclass(frozen=True)
class ExclusionPattern:
    kind: ExclusionKind
    text: str

    @classmethod
    def anchored(cls, source_root: Union[str, os.PathLike], relative: str) -> "ExclusionPattern":
        # Same root spelling the walker produces, so "." stays "./..."
        root = os.path.normpath(os.fspath(source_root))
        return cls(ExclusionKind.ANCHORED_PREFIX, os.path.join(root, os.path.normpath(relative)))

    @classmethod
    def prefix(cls, text: str) -> "ExclusionPattern":
        return cls(ExclusionKind.ANCHORED_PREFIX, text)

    @classmethod
    def substring(cls, text: str) -> "ExclusionPattern":
        return cls(ExclusionKind.SUBSTRING, text)

    def matches(self, path: str) -> bool:
        if self.kind == ExclusionKind.ANCHORED_PREFIX:
            return path.startswith(self.text)
        return self.text in path


def is_excluded(path: str, patterns: Sequence[ExclusionPattern]) -> bool:
    return any(pattern.matches(path) for pattern in patterns)


@dataclass
class HashResult:
    path: str
    checksum: Optional[str] = None
    error: Optional[OSError] = None


@dataclass
class FoundFiles:
    src_paths: List[str] = field(default_factory=list)
    dest_paths: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, List[str]]:
        return {"src_paths": list(self.src_paths), "dest_paths": list(self.dest_paths)}


@dataclass
class AllPresent:
    found: Dict[str, FoundFiles]


@dataclass
class MissingFiles:
    paths: List[str]


ComparisonOutcome = Union[AllPresent, MissingFiles]


@dataclass
class PhaseProgress:
    label: str
    completed: int
    total: int
    finished: bool = False


ProgressReporter = Callable[[PhaseProgress], None]


def log_progress(update: PhaseProgress) -> None:
    if update.finished:
        logger.info("%s: %d/%d done", update.label, update.completed, update.total)
    else:
        logger.debug("%s: %d/%d", update.label, update.completed, update.total)


@dataclass
class CopyConfirmerConfig:
    source: Union[str, os.PathLike]
    destinations: Sequence[Union[str, os.PathLike]]
    jobs: int = 1
    excludes: Sequence[str] = ()
    exclude_patterns: Sequence[str] = ()
    progress: bool = False

    def exclusion_patterns(self) -> List[ExclusionPattern]:
        patterns = [ExclusionPattern.anchored(self.source, rel) for rel in self.excludes]
        patterns.extend(ExclusionPattern.substring(text) for text in self.exclude_patterns)
        return patterns


class WorkerPool:
    """Thread pool that keeps the occupancy counters the engine polls.

    ``fault_count`` is sticky: once a task raised, it never goes back to zero.
    """

    def __init__(self, max_workers: int) -> None:
        self.max_workers = max(1, int(max_workers))
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="copcon-hash")
        self._cond = threading.Condition()
        self._active = 0
        self._queued = 0
        self._faults = 0

    @property
    def active_count(self) -> int:
        with self._cond:
            return self._active

    @property
    def queued_count(self) -> int:
        with self._cond:
            return self._queued

    @property
    def fault_count(self) -> int:
        with self._cond:
            return self._faults

    def pending(self) -> int:
        with self._cond:
            return self._active + self._queued

    def execute(self, task: Callable[[], None]) -> None:
        with self._cond:
            self._queued += 1
        try:
            self._executor.submit(self._run, task)
        except RuntimeError:
            with self._cond:
                self._queued -= 1
                if not self._active and not self._queued:
                    self._cond.notify_all()
            raise

    def _run(self, task: Callable[[], None]) -> None:
        with self._cond:
            self._queued -= 1
            self._active += 1
        try:
            task()
        except Exception:
            logger.exception("Hashing task terminated abnormally")
            with self._cond:
                self._faults += 1
        finally:
            with self._cond:
                self._active -= 1
                if not self._active and not self._queued:
                    self._cond.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: not self._active and not self._queued, timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class ResultChannel:
    """Unbounded multi-producer, single-consumer queue of hash results."""

    def __init__(self) -> None:
        self._queue: "queue.SimpleQueue[HashResult]" = queue.SimpleQueue()
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._undelivered = 0

    @property
    def undelivered(self) -> int:
        with self._lock:
            return self._undelivered

    def send(self, result: HashResult) -> None:
        if self._closed.is_set():
            with self._lock:
                self._undelivered += 1
            logger.error("Result for %s dropped: channel closed", result.path)
            return
        self._queue.put(result)

    def drain(self) -> List[HashResult]:
        results: List[HashResult] = []
        while True:
            try:
                results.append(self._queue.get_nowait())
            except queue.Empty:
                return results

    def close(self) -> None:
        self._closed.set()


def _hash_task(path: str, channel: ResultChannel) -> Callable[[], None]:
    def _task() -> None:
        try:
            result = HashResult(path, checksum=file_checksum(path))
        except OSError as exc:
            result = HashResult(path, error=exc)
        channel.send(result)

    return _task


def _iter_files(root: str) -> Iterator[str]:
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            raise TraversalError(f"Cannot list directory {current}: {exc.strerror or exc}") from exc
        dirs: List[str] = []
        for entry in entries:
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_link = entry.is_symlink()
                if is_link and not is_dir and os.path.isdir(entry.path):
                    logger.debug("Not following directory link %s", entry.path)
                    continue
                is_file = not is_dir and entry.is_file()
            except OSError as exc:
                raise TraversalError(f"Cannot read metadata of {entry.path}: {exc.strerror or exc}") from exc
            if is_dir:
                dirs.append(entry.path)
                continue
            # FIFOs, sockets, devices and dangling links would block or fail in open()
            if not is_file:
                logger.debug("Skipping non-regular entry %s", entry.path)
                continue
            yield entry.path
        stack.extend(reversed(dirs))


class CopyConfirmer:
    """Confirms that every file under a source tree has a copy under a destination.

    Files are matched by BLAKE2b-512 content digest. ``compare`` hashes the source
    tree first, waits for the pool to go quiet, then hashes every destination and
    resolves pending source digests against them.

    One engine runs one comparison at a time.
    """

    def __init__(self, jobs: int = 1) -> None:
        self._pool = WorkerPool(jobs)
        self._channel = ResultChannel()
        self._exclusions: List[ExclusionPattern] = []
        self._reporter: Optional[ProgressReporter] = None
        self._excluded: List[str] = []
        self._closed = False

    @classmethod
    def from_config(cls, config: CopyConfirmerConfig) -> "CopyConfirmer":
        engine = cls(config.jobs)
        for pattern in config.exclusion_patterns():
            engine.add_exclusion(pattern)
        if config.progress:
            engine.enable_progress_reporting()
        return engine

    def __enter__(self) -> "CopyConfirmer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def jobs(self) -> int:
        return self._pool.max_workers

    def add_exclusion(self, pattern: ExclusionPattern) -> "CopyConfirmer":
        self._exclusions.append(pattern)
        return self

    def enable_progress_reporting(self, reporter: Optional[ProgressReporter] = None) -> "CopyConfirmer":
        self._reporter = reporter or log_progress
        return self

    def excluded_paths(self) -> List[str]:
        return list(self._excluded)

    def close(self) -> None:
        self._closed = True
        self._channel.close()
        self._pool.shutdown()

    def compare(
        self,
        source: Union[str, os.PathLike],
        destinations: Sequence[Union[str, os.PathLike]],
    ) -> ComparisonOutcome:
        if self._closed:
            raise ConfirmerError("The comparison engine has been closed.")
        source_root = os.path.normpath(os.fspath(source))
        dest_roots = [os.path.normpath(os.fspath(d)) for d in destinations]
        self._excluded = []
        try:
            pending = self._collect_source(source_root)
            found: Dict[str, FoundFiles] = {}
            for dest_root in dest_roots:
                self._resolve_destination(dest_root, pending, found)
        except ConfirmerError as exc:
            logger.error("Comparison aborted: %s", exc)
            self._discard_in_flight()
            raise
        except BaseException:
            self._discard_in_flight()
            raise

        if not pending:
            logger.info("All %d source digests found in destinations", len(found))
            return AllPresent(found)
        missing = [path for paths in pending.values() for path in paths]
        logger.info("%d source files missing from destinations", len(missing))
        return MissingFiles(missing)

    def _collect_source(self, source_root: str) -> Dict[str, List[str]]:
        logger.info("Hashing source %s", source_root)
        total = self._dispatch(source_root, apply_exclusions=True)
        pending: Dict[str, List[str]] = {}
        for result in self._finish_phase(total, "Checking files from source"):
            pending.setdefault(result.checksum, []).append(result.path)
        return pending

    def _resolve_destination(
        self,
        dest_root: str,
        pending: Dict[str, List[str]],
        found: Dict[str, FoundFiles],
    ) -> None:
        logger.info("Hashing destination %s", dest_root)
        total = self._dispatch(dest_root, apply_exclusions=False)
        for result in self._finish_phase(total, f"Checking files from {dest_root}"):
            checksum = result.checksum
            if checksum in pending:
                found[checksum] = FoundFiles(src_paths=pending.pop(checksum))
            entry = found.get(checksum)
            if entry is None:
                continue
            entry.dest_paths.append(result.path)

    def _dispatch(self, root: str, apply_exclusions: bool) -> int:
        if not os.path.isdir(root):
            raise TraversalError(f"Not a directory: {root}")
        submitted = 0
        for path in _iter_files(root):
            if apply_exclusions and is_excluded(path, self._exclusions):
                logger.debug("Excluded %s", path)
                self._excluded.append(path)
                continue
            self._pool.execute(_hash_task(path, self._channel))
            submitted += 1
        return submitted

    def _finish_phase(self, total: int, label: str) -> List[HashResult]:
        self._track_progress(total, label)
        results = self._channel.drain()
        if self._channel.undelivered:
            raise ChannelError("A hash result could not be delivered to the comparison.")
        if self._pool.fault_count:
            raise WorkerFaultError("A worker failed while calculating hashes.")
        for result in results:
            if result.error is not None:
                raise ReadError(result.path, result.error)
        return results

    def _track_progress(self, total: int, label: str) -> None:
        reporter = self._reporter
        while True:
            remaining = self._pool.pending()
            if reporter:
                reporter(PhaseProgress(label, max(0, total - remaining), total))
            if not remaining:
                break
            self._pool.wait_idle(_POLL_INTERVAL)
        if reporter:
            reporter(PhaseProgress(label, total, total, finished=True))

    def _discard_in_flight(self) -> None:
        self._pool.wait_idle()
        dropped = self._channel.drain()
        if dropped:
            logger.debug("Discarded %d undrained results", len(dropped))


__all__ = [
    "AllPresent",
    "ChannelError",
    "ComparisonOutcome",
    "ConfirmerError",
    "CopyConfirmer",
    "CopyConfirmerConfig",
    "ExclusionKind",
    "ExclusionPattern",
    "FoundFiles",
    "HashResult",
    "MissingFiles",
    "PhaseProgress",
    "ReadError",
    "ResultChannel",
    "TraversalError",
    "WorkerFaultError",
    "WorkerPool",
    "file_checksum",
    "is_excluded",
    "log_progress",
]
