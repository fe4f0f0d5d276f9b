"""
Extraction run over a whole project.

Files are discovered from the configured globs and transformed one after
another against a single translation table, then the locale files and
reports are written and the optional post commands run.
"""
import glob
import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from forge_i18n import report_writer
from forge_i18n.app_config import AppConfig
from forge_i18n.diagnostics import DeferredBinding, FileStats
from forge_i18n.errors import ForgeI18nError
from forge_i18n.file_processor import transform_file
from forge_i18n.key_generator import KeyGenerator, generate_key_report
from forge_i18n.translation_table import KeyCollision

logger = logging.getLogger(__name__)

_BRACE_RE = re.compile(r'\{([^{}]*,[^{}]*)\}')


@dataclass
class FileError:
    file: str
    message: str


@dataclass
class ExtractionSummary:
    files_processed: int = 0
    changed_files: List[str] = field(default_factory=list)
    errors: List[FileError] = field(default_factory=list)
    collisions: List[KeyCollision] = field(default_factory=list)
    key_report: Dict[str, Any] = field(default_factory=dict)
    file_stats: Dict[str, FileStats] = field(default_factory=dict)
    deferred_bindings: List[DeferredBinding] = field(default_factory=list)


def expand_braces(pattern: str) -> List[str]:
    """Expand ``{a,b}`` alternatives, which ``glob`` does not understand."""
    match = _BRACE_RE.search(pattern)
    if match is None:
        return [pattern]
    expanded = []
    for option in match.group(1).split(','):
        expanded.extend(expand_braces(pattern[:match.start()] + option + pattern[match.end():]))
    return expanded


def is_ignored(relative_path: str, ignore_patterns: List[str]) -> bool:
    for raw in ignore_patterns:
        for pattern in expand_braces(raw):
            if fnmatch(relative_path, pattern):
                return True
            # '**/x' also matches 'x' at the root.
            if pattern.startswith('**/') and fnmatch(relative_path, pattern[3:]):
                return True
    return False


def discover_files(config: AppConfig) -> List[str]:
    """Absolute paths of the files matched by the input globs and not ignored, sorted."""
    found = set()
    for raw in config.input_patterns:
        for pattern in expand_braces(raw):
            for match in glob.glob(pattern, root_dir=config.project_root, recursive=True):
                relative = match.replace(os.sep, '/')
                if is_ignored(relative, config.ignore_patterns):
                    continue
                absolute = os.path.join(config.project_root, match)
                if os.path.isfile(absolute):
                    found.add(os.path.normpath(absolute))
    return sorted(found)


def run_post_commands(commands: List[str], cwd: str) -> None:
    for command in commands:
        logger.info("Running post command: %s", command)
        try:
            subprocess.run(command, shell=True, cwd=cwd, check=True)
        except subprocess.CalledProcessError as cmd_exc:
            logger.warning("Post command failed with exit code %d (%s); please check manually.",
                           cmd_exc.returncode, command)
        except OSError as os_exc:
            logger.warning("Could not run post command '%s': %s", command, os_exc)


def _build_report(config: AppConfig, summary: ExtractionSummary) -> Dict[str, Any]:
    def relative(path: str) -> str:
        return os.path.relpath(path, config.project_root)

    stats = summary.file_stats.values()
    return {
        'summary': {
            'totalFiles': summary.files_processed,
            'changedFiles': len(summary.changed_files),
            'totalExtracted': sum(s.extracted for s in stats),
            'totalReusedKeys': sum(s.reused_keys for s in stats),
            'totalLazyAccessors': sum(s.lazy_accessors for s in stats),
            'totalMissingSamples': sum(len(s.missing_samples) for s in stats),
            'totalUnrecognizedSamples': sum(len(s.unrecognized_samples) for s in stats),
            'collisions': len(summary.collisions),
            'errors': len(summary.errors),
            'languages': list(config.target_languages),
        },
        'keyReport': summary.key_report,
        'fileStats': {relative(path): s.to_dict() for path, s in summary.file_stats.items()},
        'collisions': [
            {'key': c.key, 'texts': c.texts, 'resolvedKey': c.resolved_key} for c in summary.collisions
        ],
        'errors': [{'file': relative(e.file), 'message': e.message} for e in summary.errors],
    }


async def run_extraction(config: AppConfig, key_generator: Optional[KeyGenerator] = None) -> ExtractionSummary:
    """
    Transform every matched file and write the locale files and reports.

    Args:
        config: The loaded configuration.
        key_generator: Key naming to use; built from ``config`` when None.

    Returns:
        ExtractionSummary of the run.
    """
    key_generator = key_generator or KeyGenerator.from_config(config)
    summary = ExtractionSummary()

    files = discover_files(config)
    summary.files_processed = len(files)
    if not files:
        logger.info("No files matched the input patterns. Nothing to do.")
        return summary
    logger.info("Found %d file(s) to process.", len(files))

    table = report_writer.load_translation_table(config)
    previous_collisions = len(table.collisions)

    for file_path in tqdm(files, desc="Extracting", unit="file"):
        try:
            result = await transform_file(
                file_path,
                table,
                key_generator,
                lookup=config.lookup,
                skip_function_calls=config.skip_function_calls,
                dry_run=config.dry_run,
            )
        except (ForgeI18nError, OSError, UnicodeDecodeError) as file_exc:
            logger.warning("Failed to process %s: %s", os.path.relpath(file_path, config.project_root), file_exc)
            summary.errors.append(FileError(file_path, str(file_exc)))
            continue
        except Exception as general_exc:
            logger.error("Unexpected error while processing %s: %s",
                         os.path.relpath(file_path, config.project_root), general_exc, exc_info=True)
            summary.errors.append(FileError(file_path, f"Unexpected error: {general_exc}"))
            continue

        summary.file_stats[file_path] = result.stats
        summary.deferred_bindings.extend(result.stats.deferred_bindings)
        if result.changed:
            summary.changed_files.append(file_path)
        for sample in result.stats.missing_samples:
            logger.warning("Han text left in %s:%d:%d: %s", os.path.relpath(file_path, config.project_root),
                           sample.line, sample.column, sample.text)

    summary.collisions = table.collisions[previous_collisions:]
    summary.key_report = generate_key_report(table)

    if config.dry_run:
        logger.info("Dry run enabled; locale files and reports are not written.")
        return summary

    report_writer.write_locale_files(config, table)
    report_writer.write_detail_file(config, table)
    report_writer.write_run_report(config, _build_report(config, summary))
    report_writer.write_top_level_warnings(config, summary.deferred_bindings)
    run_post_commands(config.post_commands, config.project_root)

    logger.info("Extraction finished: %d of %d file(s) changed, %d error(s).",
                len(summary.changed_files), summary.files_processed, len(summary.errors))
    return summary
