#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from nixmirror.atomic import AtomicWriter
from nixmirror.errors import CorruptMetadata, IOFailure
from nixmirror.ids import ArtifactId, is_artifact_id
from nixmirror.narinfo import ArtifactMetadata, parse_narinfo

CHUNK_SIZE = 1024 * 1024


@dataclass(slots=True)
class VerifyResult:
    ok: int = 0
    problems: list[str] = field(default_factory=list)

    @property
    def ng(self) -> int:
        return len(self.problems)


def iter_narinfos(root: Path) -> Iterable[tuple[ArtifactId, Path]]:
    for path in sorted(root.glob("*.narinfo")):
        if path.is_file() and is_artifact_id(path.stem):
            yield ArtifactId(path.stem), path


def file_digest(path: Path, metadata: ArtifactMetadata) -> bytes:
    hasher = metadata.file_hash.new_hasher()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.digest()


def verify_mirror(root: Path, check_hash: bool = True) -> VerifyResult:
    """Check every narinfo's NAR, every reference, and leftover staging files."""
    result = VerifyResult()
    writer = AtomicWriter(root)
    entries: dict[ArtifactId, ArtifactMetadata] = {}

    for artifact_id, path in iter_narinfos(root):
        try:
            entries[artifact_id] = parse_narinfo(artifact_id, path.read_bytes())
        except (OSError, CorruptMetadata) as e:
            result.problems.append(f"unreadable narinfo: {path.name} ({e})")

    for artifact_id, metadata in entries.items():
        try:
            nar_path = writer.final_path(metadata.nar_relpath)
        except IOFailure as e:
            result.problems.append(f"{artifact_id}: {e}")
            continue
        if not nar_path.is_file():
            result.problems.append(f"missing nar: {metadata.nar_relpath} (for {artifact_id})")
            continue

        actual_size = nar_path.stat().st_size
        if actual_size != metadata.file_size:
            result.problems.append(
                f"size mismatch: {metadata.nar_relpath} (expected={metadata.file_size}, actual={actual_size})"
            )
            continue
        if check_hash and not metadata.file_hash.matches(file_digest(nar_path, metadata)):
            result.problems.append(f"hash mismatch: {metadata.nar_relpath} (expected={metadata.file_hash})")
            continue

        missing_refs = [ref for ref in metadata.references if ref not in entries]
        if missing_refs:
            result.problems.append(f"missing references of {artifact_id}: {' '.join(missing_refs)}")
            continue
        result.ok += 1

    for stray in writer.stray_staging_files():
        result.problems.append(f"stray staging file: {stray.relative_to(root).as_posix()}")

    return result


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Check a mirrored Nix binary cache")
    parser.add_argument("mirror_dir", help="Mirror directory to check")
    parser.add_argument("--no-hash", action="store_true", help="Only check sizes, skip hashing NARs")
    args = parser.parse_args(argv)
    root = Path(args.mirror_dir)

    if not root.is_dir():
        print(f"[NG] mirror directory not found: {root}")
        print("OK: 0")
        print("NG: 1")
        return 1

    result = verify_mirror(root, check_hash=not args.no_hash)
    for problem in result.problems:
        print(f"[NG] {problem}")
    print(f"OK: {result.ok}")
    print(f"NG: {result.ng}")
    return 1 if result.ng > 0 else 0


if __name__ == "__main__":
    sys.exit(main())
