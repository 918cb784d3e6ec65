"""
Command line entry point for sqlarc.

Usage:
    sqlarc archive app.db archive/ -t users -t events -g 10000
    sqlarc restore restored.db archive/
    sqlarc inspect archive/users.sqlarc

Configuration is read from the environment (see config.py), then from
the --config YAML file, then from command-line flags.

Exit codes:
    0   every table succeeded
    1   at least one table failed, or the restored database failed its
        integrity check
    2   invalid configuration or arguments
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
import threading
from collections import defaultdict
from typing import TextIO

import json_log_formatter

from ._version import __version__
from .archive.archiver import DatabaseArchiver
from .config import (
    ENCODING_MODES,
    TYPE_INFERENCE_MODES,
    ArchiveConfig,
    ObservabilityConfig,
    RestoreConfig,
    ToolConfig,
    load_archive_config,
)
from .container.codec import Compression
from .container.reader import ArchiveReader
from .errors import ArchiveError, IntegrityCheckError
from .reporting import ARCHIVE, ProgressEvent, TableResult
from .restore.restorer import DatabaseRestorer

logger = logging.getLogger(__name__)


def setup_logging(config: ObservabilityConfig, verbose: bool = False) -> None:
    """Configure the root logger.

    Args:
        config: Logging configuration
        verbose: Force DEBUG level
    """
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class ConsoleProgress:
    """Renders progress events as one updating line per table on a stream."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stderr
        self._lock = threading.Lock()

    def on_progress(self, event: ProgressEvent) -> None:
        verb = "Wrote" if event.operation == ARCHIVE else "Restored"
        fraction = event.fraction
        percent = f"{fraction * 100:3.0f}%" if fraction is not None else "  ?%"
        total = event.total_rows if event.total_rows is not None else "?"
        line = (
            f"[{percent}] {event.table}: {verb} {event.rows} of {total} rows "
            f"as {event.row_groups} groups"
        )
        with self._lock:
            self.stream.write("\r" + line + ("\n" if event.finished else ""))
            self.stream.flush()


def _print_results(results: list[TableResult]) -> int:
    failed = 0
    for result in results:
        if result.success:
            print(
                f"  {result.table}: {result.rows} rows, {result.row_groups} groups, "
                f"{result.duration_ms}ms -> {result.path}"
            )
        else:
            failed += 1
            print(f"  FAILED {result.table}: [{result.error_code}] {result.error}")
    print(f"{len(results) - failed} of {len(results)} tables succeeded")
    return 1 if failed else 0


def _archive_config(args: argparse.Namespace, base: ArchiveConfig) -> ArchiveConfig:
    config = base
    if args.config:
        config = load_archive_config(args.config, config)

    changes: dict = {}
    if args.table:
        changes["tables"] = tuple(args.table)
    if args.group_size is not None:
        changes["row_group_size"] = args.group_size
    if args.compression is not None:
        changes["compression"] = Compression.from_str(args.compression)
    if args.level is not None:
        changes["compression_level"] = args.level
    if args.encoding is not None:
        changes["encoding"] = args.encoding
    if args.type_inference is not None:
        changes["type_inference"] = args.type_inference
    if args.jobs is not None:
        changes["max_concurrent"] = args.jobs
    if args.include_schema:
        changes["include_schema"] = True

    config = dataclasses.replace(config, **changes)
    config.validate()
    return config


def cmd_archive(args: argparse.Namespace, config: ToolConfig) -> int:
    archiver = DatabaseArchiver(
        args.sqlite,
        args.out_dir,
        config.archive,
        observer=None if args.quiet else ConsoleProgress(),
        fail_fast=args.fail_fast,
    )
    try:
        results = asyncio.run(archiver.archive_all())
    except KeyboardInterrupt:
        archiver.stop()
        print("Interrupted", file=sys.stderr)
        return 1

    print(f"Archived {args.sqlite} into {args.out_dir}")
    return _print_results(results)


def cmd_restore(args: argparse.Namespace, config: ToolConfig) -> int:
    restorer = DatabaseRestorer(
        args.sqlite,
        config.restore,
        observer=None if args.quiet else ConsoleProgress(),
        fail_fast=args.fail_fast,
    )
    try:
        results = restorer.restore_all(args.archives)
    except IntegrityCheckError as e:
        print(f"Restored into {args.sqlite}")
        _print_results(e.results)
        print(f"Error: [{e.code}] {e}", file=sys.stderr)
        return 1
    if not results:
        print("No archive files found", file=sys.stderr)
        return 1

    print(f"Restored into {args.sqlite}")
    return _print_results(results)


def cmd_inspect(args: argparse.Namespace, config: ToolConfig) -> int:
    compressed: dict[str, int] = defaultdict(int)
    uncompressed: dict[str, int] = defaultdict(int)
    encodings: dict[str, set[str]] = defaultdict(set)
    with ArchiveReader.open(args.archive) as reader:
        metadata = reader.metadata
        footer = reader.parquet_metadata
        for rg in range(footer.num_row_groups):
            row_group = footer.row_group(rg)
            for index, name in enumerate(metadata.table.column_names):
                chunk = row_group.column(index)
                compressed[name] += chunk.total_compressed_size
                uncompressed[name] += chunk.total_uncompressed_size
                encodings[name].update(chunk.encodings)

    if args.json:
        print(json.dumps(metadata.to_dict(), indent=2))
        return 0

    print(f"Table:        {metadata.table.name}")
    print(f"Rows:         {metadata.row_count}")
    print(f"Row groups:   {len(metadata.row_groups)}")
    print(f"Format:       v{metadata.format_version} (Parquet)")
    level = metadata.compression_level
    print(f"Compression:  {metadata.compression.value}" + (f" (level {level})" if level else ""))
    if metadata.table.primary_key:
        print(f"Primary key:  {', '.join(metadata.table.primary_key)}")
    for index_def in metadata.table.indexes:
        unique = "unique " if index_def.unique else ""
        print(f"Index:        {index_def.name} ({unique}{', '.join(index_def.columns)})")

    print()
    print(f"{'column':<24} {'declared':<12} {'physical':<8} {'encoding':<10} "
          f"{'parquet encodings':<36} {'nulls':>8} {'bytes':>12} {'raw bytes':>12}")
    for column, physical_type, encoding in zip(
        metadata.table.columns, metadata.physical_types, metadata.encodings
    ):
        name = column.name
        nulls = sum(s.null_count for s in metadata.column_statistics(name))
        print(
            f"{name:<24} {column.declared_type or '-':<12} {physical_type.value:<8} "
            f"{encoding.value:<10} {','.join(sorted(encodings[name])) or '-':<36} {nulls:>8} "
            f"{compressed[name]:>12} {uncompressed[name]:>12}"
        )
    print(f"{'total':<24} {'':<12} {'':<8} {'':<10} {'':<36} {'':>8} "
          f"{sum(compressed.values()):>12} {sum(uncompressed.values()):>12}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sqlarc", description="Archive SQLite tables into compressed columnar files"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    common.add_argument("-q", "--quiet", action="store_true", help="No progress output")
    common.add_argument("--log-format", choices=["text", "json"], help="Log format")

    # archive command
    archive_parser = subparsers.add_parser(
        "archive", parents=[common], help="Archive tables of a SQLite database"
    )
    archive_parser.add_argument("sqlite", help="SQLite database to archive")
    archive_parser.add_argument("out_dir", help="Directory for the archive files")
    archive_parser.add_argument(
        "-t", "--table", action="append", help="Table to archive (repeatable, default: all)"
    )
    archive_parser.add_argument("-g", "--group-size", type=int, help="Rows per row group")
    archive_parser.add_argument(
        "--compression", choices=[c.value for c in Compression], help="Compression codec"
    )
    archive_parser.add_argument("--level", type=int, help="Compression level")
    archive_parser.add_argument("--encoding", choices=ENCODING_MODES, help="Encoding mode")
    archive_parser.add_argument(
        "--type-inference", choices=TYPE_INFERENCE_MODES, help="Type inference mode"
    )
    archive_parser.add_argument("-c", "--config", help="YAML configuration file")
    archive_parser.add_argument("-j", "--jobs", type=int, help="Tables archived in parallel")
    archive_parser.add_argument(
        "--include-schema",
        action="store_true",
        help="Also archive the sqlite_schema catalog (restored as sqlarc_schema)",
    )
    archive_parser.add_argument(
        "--fail-fast", action="store_true", help="Stop at the first failed table"
    )

    # restore command
    restore_parser = subparsers.add_parser(
        "restore", parents=[common], help="Restore archive files into a SQLite database"
    )
    restore_parser.add_argument("sqlite", help="SQLite database to restore into")
    restore_parser.add_argument(
        "archives", nargs="+", help="Archive files or directories holding them"
    )
    restore_parser.add_argument(
        "--replace", action="store_true", help="Replace tables that already exist"
    )
    restore_parser.add_argument(
        "--no-verify", action="store_true", help="Skip PRAGMA integrity_check"
    )
    restore_parser.add_argument("--journal-mode", help="Journal mode of the destination")
    restore_parser.add_argument(
        "--fail-fast", action="store_true", help="Stop at the first failed table"
    )

    # inspect command
    inspect_parser = subparsers.add_parser(
        "inspect", parents=[common], help="Show the schema and layout of an archive"
    )
    inspect_parser.add_argument("archive", help="Archive file")
    inspect_parser.add_argument("--json", action="store_true", help="Print raw metadata")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = ToolConfig.from_env()
        if args.log_format:
            config.observability = dataclasses.replace(
                config.observability, log_format=args.log_format
            )
        if args.command == "archive":
            config.archive = _archive_config(args, config.archive)
        elif args.command == "restore":
            changes: dict = {}
            if args.replace:
                changes["if_exists"] = "replace"
            if args.no_verify:
                changes["verify"] = False
            if args.journal_mode:
                changes["journal_mode"] = args.journal_mode
            config.restore = dataclasses.replace(config.restore, **changes)
        config.validate()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(config.observability, verbose=args.verbose)
    config.log_config()

    commands = {"archive": cmd_archive, "restore": cmd_restore, "inspect": cmd_inspect}
    try:
        sys.exit(commands[args.command](args, config))
    except ArchiveError as e:
        logger.error(f"{args.command} failed: {e}", extra={"error_code": e.code})
        print(f"Error: [{e.code}] {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
