"""Store path hashes and the nix base32 encoding."""

from __future__ import annotations

from typing import Iterable, NewType

from .errors import InvalidIdentifier

ArtifactId = NewType("ArtifactId", str)

NIX32_ALPHABET = "0123456789abcdfghijklmnpqrsvwxyz"
HASH_LENGTH = 32
STORE_DIR = "/nix/store"

_NIX32_INDEX = {ch: i for i, ch in enumerate(NIX32_ALPHABET)}


def nix32_encode(data: bytes) -> str:
    """Encode bytes the way ``nix-hash --to-base32`` does."""
    if not data:
        return ""
    length = (len(data) * 8 - 1) // 5 + 1
    chars: list[str] = []
    for n in range(length - 1, -1, -1):
        i, j = divmod(n * 5, 8)
        c = data[i] >> j
        if i + 1 < len(data):
            c |= data[i + 1] << (8 - j)
        chars.append(NIX32_ALPHABET[c & 0x1F])
    return "".join(chars)


def nix32_decode(text: str) -> bytes:
    """Inverse of :func:`nix32_encode`. Raises ``ValueError`` on bad input."""
    size = len(text) * 5 // 8
    out = bytearray(size)
    for n, ch in enumerate(reversed(text)):
        digit = _NIX32_INDEX.get(ch)
        if digit is None:
            raise ValueError(f"invalid nix base32 character {ch!r}")
        i, j = divmod(n * 5, 8)
        if i < size:
            out[i] |= (digit << j) & 0xFF
        elif digit:
            raise ValueError(f"nix base32 string has trailing bits: {text!r}")
        carry = digit >> (8 - j)
        if i + 1 < size:
            out[i + 1] |= carry
        elif carry:
            raise ValueError(f"nix base32 string has trailing bits: {text!r}")
    return bytes(out)


def is_artifact_id(token: str) -> bool:
    return len(token) == HASH_LENGTH and all(ch in _NIX32_INDEX for ch in token)


def basename_to_artifact_id(name: str) -> ArtifactId:
    """Extract the hash part from ``<hash>-<name>`` (or a bare hash)."""
    token = name.split("-", 1)[0]
    if not is_artifact_id(token):
        raise InvalidIdentifier(f"failed to parse narinfo hash: {name!r}")
    return ArtifactId(token)


def store_path_to_artifact_id(store_path: str) -> ArtifactId:
    """Extract the hash part from ``/nix/store/<hash>-<name>``."""
    parts = store_path.split("/")
    if len(parts) < 4 or "/".join(parts[:3]) != STORE_DIR or not parts[3]:
        raise InvalidIdentifier(f"failed to parse store path: {store_path!r}")
    return basename_to_artifact_id(parts[3])


def parse_artifact_id(text: str) -> ArtifactId:
    """Accept a full store path, a store basename, or a bare hash."""
    text = text.strip()
    if text.startswith("/"):
        return store_path_to_artifact_id(text)
    return basename_to_artifact_id(text)


def seeds_from_lines(lines: Iterable[str]) -> tuple[list[ArtifactId], list[str]]:
    """Parse a store-paths listing. Return (unique ids in order, invalid lines)."""
    seen: set[ArtifactId] = set()
    ids: list[ArtifactId] = []
    invalid: list[str] = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            artifact_id = parse_artifact_id(line)
        except InvalidIdentifier:
            invalid.append(line)
            continue
        if artifact_id not in seen:
            seen.add(artifact_id)
            ids.append(artifact_id)
    return ids, invalid
