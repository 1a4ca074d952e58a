"""Narinfo parsing.

A narinfo record is a list of ``Key: value`` lines describing one store path:
where its NAR archive lives (``URL``), the digest and size of that archive as
served (``FileHash``/``FileSize``), and the store paths it references. Only
the fields needed to mirror the archive are required; everything else is
kept verbatim in ``raw`` so the record can be stored alongside the NAR.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import posixpath
from dataclasses import dataclass
from urllib.parse import urlparse

from .errors import CorruptMetadata, InvalidIdentifier
from .ids import ArtifactId, basename_to_artifact_id, nix32_decode, nix32_encode, store_path_to_artifact_id

SUPPORTED_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")
REQUIRED_FIELDS = ("StorePath", "URL", "FileHash", "FileSize")


@dataclass(slots=True, frozen=True)
class ContentHash:
    """Algorithm-tagged digest, e.g. ``sha256:1b8m03r63zqhnjf7l5wnldhh7c134ap5vpj0850ymkq1iyzicy5s``."""

    algorithm: str
    digest: bytes

    @classmethod
    def parse(cls, text: str) -> "ContentHash":
        algorithm, sep, value = text.strip().partition(":")
        algorithm = algorithm.lower()
        if not sep or not value:
            raise ValueError(f"hash is not algorithm-tagged: {text!r}")
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"unsupported hash algorithm {algorithm!r}")
        size = hashlib.new(algorithm).digest_size
        if len(value) == size * 2:
            try:
                return cls(algorithm, bytes.fromhex(value))
            except ValueError as exc:
                raise ValueError(f"invalid hex digest {value!r}") from exc
        if len(value) == (size * 8 - 1) // 5 + 1:
            return cls(algorithm, nix32_decode(value))
        try:
            digest = base64.b64decode(value, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"unrecognised digest encoding {value!r}") from exc
        if len(digest) != size:
            raise ValueError(f"digest has wrong length for {algorithm}: {value!r}")
        return cls(algorithm, digest)

    def new_hasher(self):
        return hashlib.new(self.algorithm)

    def matches(self, digest: bytes) -> bool:
        return digest == self.digest

    def __str__(self) -> str:
        return f"{self.algorithm}:{nix32_encode(self.digest)}"


@dataclass(slots=True, frozen=True)
class ArtifactMetadata:
    """Parsed narinfo record. Never mutated after parsing."""

    id: ArtifactId
    store_path: str
    url: str
    file_hash: ContentHash
    file_size: int
    references: tuple[ArtifactId, ...] = ()
    invalid_references: tuple[str, ...] = ()
    compression: str | None = None
    nar_hash: str | None = None
    nar_size: int | None = None
    deriver: str | None = None
    raw: bytes = b""

    @property
    def nar_relpath(self) -> str:
        return nar_relpath(self.url)


def nar_relpath(url: str) -> str:
    """Mirror-relative path of the NAR named by ``url``."""
    path = urlparse(url).path if "://" in url else url
    path = posixpath.normpath(path.lstrip("/")) if path else ""
    if not path or path == "." or path == ".." or path.startswith("../"):
        raise CorruptMetadata(f"unusable URL in narinfo: {url!r}")
    return path


def _parse_size(key: str, value: str, artifact_id: str) -> int:
    try:
        size = int(value)
    except ValueError as exc:
        raise CorruptMetadata(f"{artifact_id}: invalid {key} {value!r}") from exc
    if size < 0:
        raise CorruptMetadata(f"{artifact_id}: negative {key} {value!r}")
    return size


def parse_narinfo(expected_id: ArtifactId, raw: bytes) -> ArtifactMetadata:
    """Parse ``raw`` as the narinfo for ``expected_id``.

    Raises :class:`CorruptMetadata` for anything that makes the record
    unusable. Reference tokens that are not valid store basenames are kept
    in ``invalid_references`` rather than failing the record.
    """
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CorruptMetadata(f"{expected_id}: narinfo is not UTF-8") from exc

    fields: dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), 1):
        if not line.strip():
            continue
        key, sep, value = line.partition(": ")
        if not sep or not key:
            raise CorruptMetadata(f"{expected_id}: malformed narinfo line {lineno}: {line!r}")
        fields[key] = value.strip()

    missing = [key for key in REQUIRED_FIELDS if not fields.get(key)]
    if missing:
        raise CorruptMetadata(f"{expected_id}: narinfo missing {', '.join(missing)}")

    store_path = fields["StorePath"]
    try:
        actual_id = store_path_to_artifact_id(store_path)
    except InvalidIdentifier as exc:
        raise CorruptMetadata(f"{expected_id}: {exc}") from exc
    if actual_id != expected_id:
        raise CorruptMetadata(f"{expected_id}: narinfo describes {store_path}")

    try:
        file_hash = ContentHash.parse(fields["FileHash"])
    except ValueError as exc:
        raise CorruptMetadata(f"{expected_id}: invalid FileHash: {exc}") from exc

    file_size = _parse_size("FileSize", fields["FileSize"], expected_id)
    nar_size = _parse_size("NarSize", fields["NarSize"], expected_id) if fields.get("NarSize") else None
    nar_relpath(fields["URL"])

    references: list[ArtifactId] = []
    invalid: list[str] = []
    for token in fields.get("References", "").split():
        try:
            ref = basename_to_artifact_id(token)
        except InvalidIdentifier:
            invalid.append(token)
            continue
        if ref not in references:
            references.append(ref)

    return ArtifactMetadata(
        id=expected_id,
        store_path=store_path,
        url=fields["URL"],
        file_hash=file_hash,
        file_size=file_size,
        references=tuple(references),
        invalid_references=tuple(invalid),
        compression=fields.get("Compression"),
        nar_hash=fields.get("NarHash"),
        nar_size=nar_size,
        deriver=fields.get("Deriver"),
        raw=raw,
    )
