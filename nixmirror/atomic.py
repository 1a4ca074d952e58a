"""Staging-file-plus-rename commit protocol.

Nothing is ever written under a final name directly: bytes go to a hidden
``.part`` sibling whose name is unique per process and attempt, the file is
fsynced, then ``os.replace`` publishes it. A reader of the mirror therefore
sees either no file or the complete file, never a prefix of it.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import AsyncIterable

from .errors import IOFailure

STAGING_SUFFIX = ".part"


class AtomicWriter:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def final_path(self, rel: str) -> Path:
        root = self.root.resolve()
        path = (root / rel).resolve()
        if path == root or root not in path.parents:
            raise IOFailure(f"path escapes mirror root: {rel!r}")
        return path

    def staging_path(self, rel: str, attempt: int = 0, owner: str = "") -> Path:
        final = self.final_path(rel)
        key = f"{owner}.{os.getpid()}" if owner else str(os.getpid())
        return final.with_name(f".{final.name}.{key}.{attempt}{STAGING_SUFFIX}")

    def is_committed(self, rel: str, size: int | None = None) -> bool:
        """Return True if ``rel`` is already published (with ``size`` bytes, if given)."""
        try:
            st = self.final_path(rel).stat()
        except OSError:
            return False
        return size is None or st.st_size == size

    def stray_staging_files(self) -> list[Path]:
        return sorted(p for p in self.root.rglob(f".*{STAGING_SUFFIX}") if p.is_file())

    async def commit(
        self, rel: str, chunks: AsyncIterable[bytes], attempt: int = 0, owner: str = ""
    ) -> Path:
        """Write ``chunks`` to a staging file and rename it to ``rel``.

        Errors raised by ``chunks`` propagate unchanged; local OS errors are
        raised as :class:`IOFailure`. Either way the staging file is gone
        afterwards and the final path is untouched.
        """
        final = self.final_path(rel)
        staging = self.staging_path(rel, attempt, owner)
        try:
            final.parent.mkdir(parents=True, exist_ok=True)
            handle = open(staging, "wb")
        except OSError as exc:
            raise IOFailure(f"cannot create staging file {staging}: {exc}") from exc

        iterator = chunks.__aiter__()
        try:
            try:
                async for chunk in iterator:
                    try:
                        handle.write(chunk)
                    except OSError as exc:
                        raise IOFailure(f"write to {staging} failed: {exc}") from exc
            except BaseException:
                _close_quietly(handle)
                raise
            # From here the sync thread owns the handle and closes it, even if
            # this task is cancelled while it runs.
            try:
                await asyncio.to_thread(_sync_and_close, handle)
            except OSError as exc:
                raise IOFailure(f"fsync of {staging} failed: {exc}") from exc
            try:
                await asyncio.to_thread(os.replace, staging, final)
            except OSError as exc:
                raise IOFailure(f"rename {staging} -> {final} failed: {exc}") from exc
        except BaseException:
            _remove_staging(staging)
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
            raise

        _sync_directory(final.parent)
        logging.debug("Committed %s", final)
        return final

    async def commit_bytes(self, rel: str, data: bytes, attempt: int = 0, owner: str = "") -> Path:
        async def single() -> AsyncIterable[bytes]:
            yield data

        return await self.commit(rel, single(), attempt, owner)


def _sync_and_close(handle) -> None:
    with handle:
        handle.flush()
        os.fsync(handle.fileno())


def _close_quietly(handle) -> None:
    try:
        handle.close()
    except OSError as exc:
        logging.debug("Closing %s failed: %s", handle.name, exc)


def _sync_directory(path: Path) -> None:
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError as exc:
        logging.debug("Directory fsync failed for %s: %s", path, exc)
    finally:
        os.close(fd)


def _remove_staging(staging: Path) -> None:
    try:
        staging.unlink(missing_ok=True)
    except OSError as exc:
        logging.warning("Could not remove staging file %s: %s", staging, exc)
