#!/usr/bin/env python3
"""
This program finds duplicate files and turns them into hardlinks.
Usage: dedupe_hardlinks.py [options] <path1> [<path2> ...]

Every regular file below the given paths (files or directories) is grouped
by size, then by the SHA256 hash of its content. Groups whose files are not
already hardlinks of each other are reported together with the space that
linking them would free.

Nothing is changed unless --apply is given. With --apply, in each group the
first file is kept and every other file is deleted and replaced with a
hardlink to the kept file.

Be careful: all paths must live on the same filesystem. A group spanning two
filesystems aborts the run before any file of that group is deleted.
Symlinks, devices and other special files are never touched.

Normal output goes to stdout, diagnostics go to stderr.

Options:
  -h, --help        Show this help message and exit.
  -a, --apply       Replace duplicates with hardlinks.
  -n, --dry-run     Only report what would be done (the default).
  -m, --min-bytes   Ignore files smaller than this many bytes (default: 0).
  -c, --chunk-size  Chunk size in bytes when hashing files (default: 8 MiB).
  --progress        Show a progress bar on stderr while hashing.
  -v, --verbose     Enable verbose output.
  --log             Also write diagnostics to this file.

Exit status is 0 when the run completes (with or without duplicates) and 1
when deleting or linking a file fails; links made before the failure are
kept.
"""
from __future__ import annotations

import argparse
import enum
import hashlib
import logging
import os
import stat
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, TextIO, Tuple

from tqdm import tqdm

DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024  # 8 MiB
DEFAULT_MIN_BYTES = 0
LOGGER_NAME = "dedupe_hardlinks"
BYTE_UNITS = ("KiB", "MiB", "GiB", "TiB", "PiB")

logger = logging.getLogger(LOGGER_NAME)


class DedupeError(Exception):
    """Base class for errors that abort a run."""


class MutationError(DedupeError):
    """
    Deleting or linking a file failed while applying a plan.

    `operation` is "delete", "link" or "device", the last one for a
    duplicate that lives on another filesystem than its canonical file.
    """

    ACTIONS = {"device": "link across filesystems"}

    def __init__(self, operation: str, path: Path, reason: object) -> None:
        super().__init__(f"Failed to {self.ACTIONS.get(operation, operation)} {path}: {reason}")
        self.operation = operation
        self.path = path
        self.reason = reason


class Outcome(enum.Enum):
    NO_DUPLICATES = "no-duplicates"
    COMPLETED = "completed"


@dataclass(frozen=True)
class FileIdentity:
    device: int
    inode: int

    @classmethod
    def from_stat(cls, st: os.stat_result) -> FileIdentity:
        return cls(device=st.st_dev, inode=st.st_ino)


@dataclass(frozen=True)
class FileRecord:
    path: Path
    size: int
    identity: FileIdentity

    @classmethod
    def from_stat(cls, path: Path, st: os.stat_result) -> FileRecord:
        return cls(path=Path(path), size=st.st_size, identity=FileIdentity.from_stat(st))

    @classmethod
    def from_path(cls, path: Path) -> FileRecord:
        """Stat `path` without following symlinks. Raises OSError."""
        return cls.from_stat(path, os.lstat(path))

    def same_file(self, other: FileRecord) -> bool:
        return self.identity == other.identity


@dataclass
class SizeBucket:
    """
    Files of one size, one member per underlying file.

    A path that reaches a file already in the bucket is kept as an alias of
    that member instead of becoming a second member, so hardlinked copies are
    hashed once but still show up in the groups built from the bucket.
    """

    size: int
    members: Dict[FileIdentity, FileRecord] = field(default_factory=dict)
    aliases: Dict[FileIdentity, List[FileRecord]] = field(default_factory=dict)
    _paths: Set[Path] = field(default_factory=set, repr=False, compare=False)

    @property
    def count(self) -> int:
        return len(self.members) + sum(len(records) for records in self.aliases.values())

    def admit(self, record: FileRecord) -> None:
        if record.size != self.size:
            raise ValueError(f"{record.path} has {record.size} bytes, bucket holds {self.size}")
        if record.path in self._paths:
            return
        self._paths.add(record.path)
        if record.identity in self.members:
            self.aliases.setdefault(record.identity, []).append(record)
        else:
            self.members[record.identity] = record

    def records_of(self, identity: FileIdentity) -> List[FileRecord]:
        return [self.members[identity], *self.aliases.get(identity, ())]

    def records(self) -> Iterator[FileRecord]:
        for identity in self.members:
            yield from self.records_of(identity)


@dataclass(frozen=True)
class ChecksumGroup:
    digest: str
    size: int
    records: Tuple[FileRecord, ...]

    @property
    def paths(self) -> List[Path]:
        return [record.path for record in self.records]


@dataclass(frozen=True)
class ConsolidationGroup:
    canonical: FileRecord
    replacements: Tuple[FileRecord, ...]
    linked: Tuple[FileRecord, ...] = ()
    reclaimable: int = 0

    @property
    def paths(self) -> List[Path]:
        return [self.canonical.path] + [record.path for record in self.replacements]


@dataclass(frozen=True)
class ConsolidationPlan:
    groups: Tuple[ConsolidationGroup, ...] = ()
    reclaimable: int = 0


@dataclass
class RunStats:
    files_seen: int = 0
    traversal_errors: int = 0
    stat_errors: int = 0
    read_errors: int = 0
    files_linked: int = 0
    bytes_freed: int = 0

    def record_traversal_error(self, exc: OSError) -> None:
        self.traversal_errors += 1
        logger.warning("Cannot read %s: %s", exc.filename, exc)


@dataclass(frozen=True)
class RunResult:
    outcome: Outcome
    plan: ConsolidationPlan
    stats: RunStats


def eprint(message: str) -> None:
    """Print to stderr to keep normal output clean."""
    print(message, file=sys.stderr)


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in BYTE_UNITS:
        value /= 1024.0
        if value < 1024 or unit == BYTE_UNITS[-1]:
            break
    return f"{value:.2f} {unit}"


def configure_logger(verbose: bool = False, log_path: Optional[Path] = None) -> logging.Logger:
    logger.setLevel(logging.INFO)
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.INFO if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(console)

    if log_path is not None:
        handler = logging.FileHandler(log_path, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        logger.addHandler(handler)
    return logger


def iter_regular_files(roots: Iterable[Path], stats: RunStats) -> Iterator[FileRecord]:
    """
    Yield a record for every regular file reachable from `roots`.

    A root may be a file or a directory. Symlinks, devices and other special
    files are skipped silently. Roots and directories that cannot be read are
    logged as traversal errors, files that cannot be stat'ed as stat errors,
    and the walk carries on with their siblings. Directories are visited in
    sorted order.
    """
    for root in roots:
        root = Path(root)
        try:
            st = os.lstat(root)
        except OSError as exc:
            stats.record_traversal_error(exc)
            continue

        if stat.S_ISREG(st.st_mode):
            yield FileRecord.from_stat(root, st)
            continue
        if not stat.S_ISDIR(st.st_mode):
            continue

        for dirpath, dirnames, filenames in os.walk(root, onerror=stats.record_traversal_error):
            dirnames.sort()
            filenames.sort()
            for name in filenames:
                path = Path(dirpath, name)
                try:
                    st = os.lstat(path)
                except OSError as exc:
                    stats.stat_errors += 1
                    logger.warning("Could not stat %s: %s", path, exc)
                    continue
                if stat.S_ISREG(st.st_mode):
                    yield FileRecord.from_stat(path, st)


def bucket_by_size(
    records: Iterable[FileRecord],
    stats: RunStats,
    min_bytes: int = DEFAULT_MIN_BYTES,
) -> Dict[int, SizeBucket]:
    """Group `records` by size, keeping only sizes shared by two or more paths."""
    buckets: Dict[int, SizeBucket] = {}
    for record in records:
        stats.files_seen += 1
        if record.size < min_bytes:
            continue

        bucket = buckets.get(record.size)
        if bucket is None:
            bucket = buckets[record.size] = SizeBucket(record.size)
        bucket.admit(record)

    return {size: bucket for size, bucket in buckets.items() if bucket.count > 1}


def hash_file(path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE, progress: Optional[tqdm] = None) -> str:
    digest = hashlib.sha256()
    with open(path, "rb", buffering=0) as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            digest.update(chunk)
            if progress is not None:
                progress.update(len(chunk))
    return digest.hexdigest()


def group_by_checksum(
    buckets: Dict[int, SizeBucket],
    stats: RunStats,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    show_progress: bool = False,
) -> Dict[str, ChecksumGroup]:
    """
    Hash one path per underlying file and group the bucketed paths by digest.

    Aliases share the digest of their member. A file that cannot be read is
    logged and left out together with its aliases. Only digests shared by two
    or more paths are returned.
    """
    collected: Dict[str, List[FileRecord]] = {}
    total = sum(bucket.size * len(bucket.members) for bucket in buckets.values())
    with tqdm(
        total=total,
        desc="Hashing",
        unit="B",
        unit_scale=True,
        disable=not show_progress,
        file=sys.stderr,
    ) as progress:
        for bucket in buckets.values():
            for identity, member in bucket.members.items():
                try:
                    digest = hash_file(member.path, chunk_size, progress)
                except OSError as exc:
                    stats.read_errors += 1
                    logger.warning("Could not hash %s: %s", member.path, exc)
                    continue
                collected.setdefault(digest, []).extend(bucket.records_of(identity))

    return {
        digest: ChecksumGroup(digest=digest, size=records[0].size, records=tuple(records))
        for digest, records in collected.items()
        if len(records) > 1
    }


def plan_consolidation(groups: Dict[str, ChecksumGroup]) -> ConsolidationPlan:
    """
    Decide which files of each checksum group have to be relinked.

    The first file of a group is canonical. Files already sharing its inode
    need nothing and a group made only of such files is dropped. The space
    of every other inode in the group counts as reclaimable, once per inode.
    """
    planned: List[ConsolidationGroup] = []
    for group in groups.values():
        canonical, *others = group.records
        replacements: List[FileRecord] = []
        linked: List[FileRecord] = []
        counted: Set[FileIdentity] = set()
        reclaimable = 0

        for record in reversed(others):
            if record.same_file(canonical):
                linked.append(record)
                continue
            replacements.append(record)
            if record.identity not in counted:
                counted.add(record.identity)
                reclaimable += record.size

        if not replacements:
            logger.info("All copies of %s are already hardlinked", canonical.path)
            continue

        replacements.reverse()
        linked.reverse()
        planned.append(
            ConsolidationGroup(
                canonical=canonical,
                replacements=tuple(replacements),
                linked=tuple(linked),
                reclaimable=reclaimable,
            )
        )

    return ConsolidationPlan(
        groups=tuple(planned),
        reclaimable=sum(group.reclaimable for group in planned),
    )


def link_group(group: ConsolidationGroup, stats: RunStats, out: Optional[TextIO] = None) -> int:
    """
    Replace the duplicates of one group with hardlinks to its canonical file.

    Every duplicate is re-checked before any of them is touched: one that
    vanished or changed since the scan is skipped with a warning, and one on
    another filesystem raises MutationError while the group is still intact.
    Duplicates are then relinked last to first, and MutationError is raised
    as soon as a delete or link fails. Returns the bytes freed.
    """
    if out is None:
        out = sys.stdout
    canonical = group.canonical
    try:
        current = FileRecord.from_path(canonical.path)
    except OSError as exc:
        logger.warning("Canonical file %s is gone, skipping its group: %s", canonical.path, exc)
        return 0
    if not current.same_file(canonical) or current.size != canonical.size:
        logger.warning("Canonical file %s changed since the scan, skipping its group", canonical.path)
        return 0

    pending: List[FileRecord] = []
    for record in reversed(group.replacements):
        try:
            current = FileRecord.from_path(record.path)
        except OSError as exc:
            logger.warning("Duplicate %s is gone, not linking it: %s", record.path, exc)
            continue
        if current.same_file(canonical):
            continue
        if not current.same_file(record) or current.size != record.size:
            logger.warning("Duplicate %s changed since the scan, not linking it", record.path)
            continue
        if current.identity.device != canonical.identity.device:
            raise MutationError("device", record.path, f"{canonical.path} is on another filesystem")
        pending.append(record)

    freed = 0
    relinked: Set[FileIdentity] = set()
    for record in pending:
        print(f"deleting {record.path}", file=out)
        try:
            os.unlink(record.path)
        except OSError as exc:
            raise MutationError("delete", record.path, exc) from exc

        print(f"linking {canonical.path} to {record.path}", file=out)
        try:
            os.link(canonical.path, record.path)
        except OSError as exc:
            raise MutationError("link", record.path, exc) from exc

        stats.files_linked += 1
        if record.identity not in relinked:
            relinked.add(record.identity)
            freed += record.size

    stats.bytes_freed += freed
    return freed


def apply_plan(plan: ConsolidationPlan, stats: RunStats, out: Optional[TextIO] = None) -> int:
    """Link every group of `plan` in turn. Groups done before a MutationError stay linked."""
    freed = 0
    for group in plan.groups:
        freed += link_group(group, stats, out)
    return freed


def format_group(group: ConsolidationGroup) -> str:
    return "[" + ", ".join(str(path) for path in group.paths) + "]"


def run(
    roots: Iterable[Path],
    apply: bool = False,
    min_bytes: int = DEFAULT_MIN_BYTES,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    show_progress: bool = False,
    out: Optional[TextIO] = None,
) -> RunResult:
    """
    Scan `roots`, report duplicate groups and, when `apply` is set, link them.

    The report is written to `out`. MutationError propagates to the caller.
    """
    if out is None:
        out = sys.stdout
    stats = RunStats()

    buckets = bucket_by_size(iter_regular_files(roots, stats), stats, min_bytes)
    if not buckets:
        print("No duplicates found.", file=out)
        return RunResult(Outcome.NO_DUPLICATES, ConsolidationPlan(), stats)
    print(f"Found {len(buckets)} candidate groups with common size.", file=out)

    groups = group_by_checksum(buckets, stats, chunk_size, show_progress)
    if not groups:
        print("No duplicates found.", file=out)
        return RunResult(Outcome.NO_DUPLICATES, ConsolidationPlan(), stats)
    print(f"Found {len(groups)} candidate groups with same checksum.", file=out)

    plan = plan_consolidation(groups)
    print(f"Found {len(plan.groups)} groups that are duplicates and probably not hard links:", file=out)
    for group in plan.groups:
        print(format_group(group), file=out)
    print(f"Space freed will be about {format_bytes(plan.reclaimable)}.", file=out)

    if apply:
        print("No dry-run. Proceeding to filesystem modifications.", file=out)
        apply_plan(plan, stats, out)
        print(f"Space freed is about {format_bytes(stats.bytes_freed)}.", file=out)
    else:
        print("Dry run: no changes made. Use --apply to link duplicates.", file=out)

    logger.info(
        "Examined %d files; traversal errors %d; stat failures %d; read failures %d; linked %d.",
        stats.files_seen,
        stats.traversal_errors,
        stats.stat_errors,
        stats.read_errors,
        stats.files_linked,
    )
    return RunResult(Outcome.COMPLETED, plan, stats)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Find duplicate files and replace them with hardlinks to one copy.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "paths",
        nargs="+",
        help="Files and directories to scan recursively.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "-a",
        "--apply",
        dest="apply",
        action="store_true",
        help="Delete duplicates and replace them with hardlinks.",
    )
    mode.add_argument(
        "-n",
        "--dry-run",
        dest="apply",
        action="store_false",
        help="Only report what would be done (default).",
    )
    parser.add_argument(
        "-m",
        "--min-bytes",
        type=int,
        default=DEFAULT_MIN_BYTES,
        help="Ignore files smaller than this many bytes (default: 0).",
    )
    parser.add_argument(
        "-c",
        "--chunk-size",
        type=int,
        default=DEFAULT_CHUNK_SIZE,
        help="Chunk size in bytes when hashing files (default: 8 MiB).",
    )
    parser.add_argument(
        "--progress",
        action="store_true",
        help="Show a progress bar on stderr while hashing.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output.",
    )
    parser.add_argument(
        "--log",
        help="Also write diagnostics to this file.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.min_bytes < 0:
        eprint("Minimum file size must be zero or greater.")
        return 1
    if args.chunk_size <= 0:
        eprint("Chunk size must be a positive integer.")
        return 1

    log_path = Path(args.log).expanduser() if args.log else None
    try:
        configure_logger(args.verbose, log_path)
    except OSError as exc:
        eprint(f"[error] Failed to open log file {log_path}: {exc}")
        return 1

    roots = [Path(raw).expanduser() for raw in args.paths]
    try:
        run(
            roots,
            apply=args.apply,
            min_bytes=args.min_bytes,
            chunk_size=args.chunk_size,
            show_progress=args.progress,
        )
    except MutationError as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
