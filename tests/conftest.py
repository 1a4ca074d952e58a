"""Shared fixtures: a fake binary cache served over real HTTP."""

from __future__ import annotations

import asyncio
import hashlib
from collections import Counter
from pathlib import Path
from typing import Any, Iterable

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from nixmirror.config import Config
from nixmirror.engine import Mirror, MirrorSummary, open_session
from nixmirror.ids import ArtifactId, nix32_encode


def id_for(name: str) -> ArtifactId:
    """Deterministic store hash for a package name (20 bytes -> 32 chars)."""
    return ArtifactId(nix32_encode(hashlib.sha256(name.encode()).digest()[:20]))


def make_narinfo(
    name: str,
    content: bytes,
    references: Iterable[str] = (),
    *,
    raw_references: Iterable[str] = (),
    url: str | None = None,
    file_hash: str | None = None,
    file_size: int | None = None,
) -> tuple[bytes, str]:
    artifact_id = id_for(name)
    digest = nix32_encode(hashlib.sha256(content).digest())
    url = url or f"nar/{digest}.nar.xz"
    refs = " ".join([f"{id_for(r)}-{r}" for r in references] + list(raw_references))
    lines = [
        f"StorePath: /nix/store/{artifact_id}-{name}",
        f"URL: {url}",
        "Compression: xz",
        f"FileHash: {file_hash or 'sha256:' + digest}",
        f"FileSize: {len(content) if file_size is None else file_size}",
        f"NarHash: sha256:{digest}",
        f"NarSize: {len(content) * 3}",
        f"References: {refs}",
    ]
    return ("\n".join(lines) + "\n").encode(), url


class FakeCache:
    """In-memory binary cache.

    ``faults`` maps a request path to a list of actions consumed one per
    request: an int status, ``"corrupt"`` (same length, wrong bytes),
    ``"truncate"`` (short body) or ``"hang"`` (send half then wait for
    ``release``). ``client_ports`` records the client-side port of the
    connection that carried each request.
    """

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.requests: Counter[str] = Counter()
        self.client_ports: dict[str, list[int]] = {}
        self.faults: dict[str, list[Any]] = {}
        self.release: asyncio.Event | None = None
        self.hanging: asyncio.Event | None = None

    def add(self, name: str, references: Iterable[str] = (), content: bytes | None = None, **kwargs: Any) -> ArtifactId:
        content = content if content is not None else (f"nar:{name}\n".encode() * 64)
        narinfo, url = make_narinfo(name, content, references, **kwargs)
        artifact_id = id_for(name)
        self.files[f"{artifact_id}.narinfo"] = narinfo
        self.files[url] = content
        return artifact_id

    def narinfo_path(self, name: str) -> str:
        return f"{id_for(name)}.narinfo"

    def nar_path(self, name: str) -> str:
        text = self.files[self.narinfo_path(name)].decode()
        return next(line.split(": ", 1)[1] for line in text.splitlines() if line.startswith("URL: "))

    def fail(self, path: str, *actions: Any) -> None:
        self.faults.setdefault(path, []).extend(actions)

    def app(self) -> web.Application:
        self.release = asyncio.Event()
        self.hanging = asyncio.Event()
        app = web.Application()
        app.router.add_get("/{tail:.*}", self.handle)
        return app

    async def handle(self, request: web.Request) -> web.StreamResponse:
        path = request.match_info["tail"]
        self.requests[path] += 1
        self.client_ports.setdefault(path, []).append(request.transport.get_extra_info("peername")[1])
        body = self.files.get(path)
        queue = self.faults.get(path)
        action = queue.pop(0) if queue else None

        if isinstance(action, int):
            return web.Response(status=action)
        if body is None:
            return web.Response(status=404)
        if action == "corrupt":
            return web.Response(body=bytes(b ^ 0xFF for b in body))
        if action == "truncate":
            return web.Response(body=body[: len(body) // 2])
        if action == "hang":
            resp = web.StreamResponse()
            resp.content_length = len(body)
            await resp.prepare(request)
            await resp.write(body[: len(body) // 2])
            self.hanging.set()
            await self.release.wait()
            return resp
        return web.Response(body=body)

    @property
    def total_requests(self) -> int:
        return sum(self.requests.values())


def make_config(cache_url: str, mirror_dir: Path, **overrides: Any) -> Config:
    values: dict[str, Any] = dict(
        cache_url=cache_url,
        mirror_dir=str(mirror_dir),
        concurrency=4,
        backoff_base_sec=0.0,
        backoff_max_sec=0.0,
        timeout_sec=5,
    )
    values.update(overrides)
    return Config(**values)


async def run_mirror(
    cache: FakeCache,
    mirror_dir: Path,
    seeds: Iterable[ArtifactId],
    stop: asyncio.Event | None = None,
    **overrides: Any,
) -> MirrorSummary:
    async with TestServer(cache.app()) as server:
        config = make_config(str(server.make_url("/")).rstrip("/"), mirror_dir, **overrides)
        try:
            async with open_session(config) as session:
                return await Mirror(config, session).run(list(seeds), stop=stop)
        finally:
            cache.release.set()


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def mirror_dir(tmp_path: Path) -> Path:
    return tmp_path / "mirror"
