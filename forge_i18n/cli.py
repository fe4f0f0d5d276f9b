"""Command line entry point: ``forge-i18n extract``."""
import argparse
import asyncio
import sys
from typing import List, Optional

from forge_i18n.app_config import load_app_config
from forge_i18n.errors import ConfigError
from forge_i18n.extract import ExtractionSummary, run_extraction


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='forge-i18n',
        description='Extract Chinese UI text from JS/TS sources into locale files.',
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    extract_parser = subparsers.add_parser('extract', help='Rewrite source files and write locale files.')
    extract_parser.add_argument('--config', '-c', help='Path to forge-i18n.config.yaml (or .yml/.json).')
    extract_parser.add_argument('--cwd', help='Project root; defaults to the current directory.')
    extract_parser.add_argument('--dry-run', action='store_true',
                                help='Report what would change without writing any file.')
    extract_parser.add_argument('--log-level', help='Override the configured log level (e.g. DEBUG).')
    return parser


def format_summary(summary: ExtractionSummary) -> str:
    lines = [
        f"Files processed: {summary.files_processed}",
        f"Files changed:   {len(summary.changed_files)}",
        f"Keys in table:   {summary.key_report.get('total', 0)}",
    ]
    missing = sum(len(stats.missing_samples) for stats in summary.file_stats.values())
    if missing:
        lines.append(f"Han text left in place: {missing}")
    if summary.collisions:
        lines.append(f"Key collisions resolved: {len(summary.collisions)}")
    if summary.errors:
        lines.append(f"Errors: {len(summary.errors)}")
        lines.extend(f"  - {error.file}: {error.message}" for error in summary.errors)
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    overrides = {'dry_run': True} if args.dry_run else None
    try:
        config = load_app_config(config_path=args.config, project_root=args.cwd,
                                 overrides=overrides, log_level=args.log_level)
    except ConfigError as config_exc:
        print(f"Configuration error: {config_exc}", file=sys.stderr)
        return 2

    summary = asyncio.run(run_extraction(config))
    print(format_summary(summary))
    return 1 if summary.errors else 0


if __name__ == '__main__':
    sys.exit(main())
