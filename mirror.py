#!/usr/bin/env python3
"""Mirror a Nix binary cache into a local directory.

Phases:
A) Read the seed store paths (plain text or .xz).
B) Walk the reference closure, downloading and verifying every NAR and
   narinfo with retry/backoff, committing each file atomically.
C) Log a summary, list failures, optionally write a TSV report.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import lzma
import signal
from pathlib import Path

from nixmirror.config import Config, load_config
from nixmirror.engine import Mirror, MirrorSummary, open_session
from nixmirror.errors import ConfigError, MirrorError
from nixmirror.ids import ArtifactId, seeds_from_lines

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def read_store_paths(path: Path) -> list[str]:
    """Return the lines of a store-paths file, decompressing .xz input."""
    if path.suffix == ".xz":
        with lzma.open(path, "rt", encoding="utf-8") as fh:
            return fh.read().splitlines()
    return path.read_text(encoding="utf-8").splitlines()


def install_stop_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            logging.debug("Signal handler for %s not supported here", sig)


async def run(config: Config, seeds: list[ArtifactId], invalid_seeds: list[str]) -> MirrorSummary:
    """Run the mirror over ``seeds``; return the summary."""
    logging.info("Starting mirror with config: %s", config)
    stop = asyncio.Event()
    install_stop_handlers(stop)
    async with open_session(config) as session:
        mirror = Mirror(config, session)
        mirror.summary.invalid_seeds.extend(invalid_seeds)
        return await mirror.run(seeds, stop=stop)


def log_summary(summary: MirrorSummary) -> None:
    failed = summary.failed
    for record in failed:
        logging.error("FAILED %s %s: %s", record.id, record.kind, record.reason)
    logging.info(
        "Summary: processed=%s succeeded=%s already_present=%s failed=%s invalid_references=%s invalid_seeds=%s",
        summary.total,
        summary.succeeded,
        summary.skipped,
        len(failed),
        len(summary.invalid_references),
        len(summary.invalid_seeds),
    )


def exit_code(summary: MirrorSummary) -> int:
    if summary.cancelled:
        return EXIT_INTERRUPTED
    return EXIT_OK if summary.ok else EXIT_FAILURES


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """CLI options."""
    parser = argparse.ArgumentParser(description="Synchronize a Nix binary cache into a local directory")
    parser.add_argument(
        "store_paths",
        help="File listing store paths to mirror, e.g. a copy of "
        "https://channels.nixos.org/nixpkgs-unstable/store-paths.xz",
    )
    parser.add_argument("mirror_dir", nargs="?", help="Directory where the mirror is stored")
    parser.add_argument("--config", help="Path to config YAML file")
    parser.add_argument("-c", "--cache-url", help="URL of the binary cache to mirror")
    parser.add_argument("-p", "--parallelism", type=int, help="Maximum number of concurrent downloads")
    parser.add_argument("--report", help="Write a TSV report of every store path to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    config_path = Path(args.config) if args.config else None
    if config_path is not None and not config_path.exists():
        raise SystemExit(f"config file not found: {config_path}")
    try:
        config = load_config(
            config_path,
            cache_url=args.cache_url,
            mirror_dir=args.mirror_dir,
            concurrency=args.parallelism,
            report_path=args.report,
        )
    except ConfigError as exc:
        logging.error("%s", exc)
        raise SystemExit(EXIT_USAGE) from exc

    try:
        lines = read_store_paths(Path(args.store_paths))
    except (OSError, lzma.LZMAError, UnicodeDecodeError) as exc:
        logging.error("cannot read store paths from %s: %s", args.store_paths, exc)
        raise SystemExit(EXIT_USAGE) from exc
    seeds, invalid_seeds = seeds_from_lines(lines)
    for line in invalid_seeds:
        logging.warning("Skipping invalid store path: %r", line)
    if not seeds:
        logging.error("no valid store paths in %s", args.store_paths)
        raise SystemExit(EXIT_USAGE)

    try:
        summary = asyncio.run(run(config, seeds, invalid_seeds))
    except KeyboardInterrupt:
        logging.warning("Interrupted")
        raise SystemExit(EXIT_INTERRUPTED)
    except MirrorError as exc:
        logging.error("%s", exc)
        raise SystemExit(EXIT_USAGE) from exc

    log_summary(summary)
    if config.report_path:
        summary.write_report(Path(config.report_path))
        logging.info("Report written to %s", config.report_path)
    raise SystemExit(exit_code(summary))


if __name__ == "__main__":
    main()
