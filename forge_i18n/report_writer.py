"""Locale files, detail/report JSON and the top-level binding warnings document."""
import json
import logging
import os
from typing import Any, Dict, List, Optional

from forge_i18n.app_config import AppConfig
from forge_i18n.diagnostics import DeferredBinding
from forge_i18n.translation_table import TranslationTable

logger = logging.getLogger(__name__)


def _ensure_parent(path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)


def _write_json(path: str, data: Any) -> None:
    _ensure_parent(path)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
        f.write('\n')


def _read_json_object(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read %s (%s); it will be overwritten.", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("%s does not hold a JSON object; it will be overwritten.", path)
        return {}
    return data


def has_reusable_translation(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def load_translation_table(config: AppConfig) -> TranslationTable:
    """Seed the run's table from the detail file of an earlier run, if there is one."""
    data = _read_json_object(config.detail_path(config.source_language))
    table = TranslationTable.from_detail_dict(data)
    if len(table):
        logger.info("Loaded %d existing key(s) from %s", len(table), config.detail_path(config.source_language))
    return table


def write_locale_files(config: AppConfig, table: TranslationTable) -> Dict[str, int]:
    """
    Write ``<locales_dir>/<locale>/<namespace>.json`` for every target language.

    The source language gets the extracted texts. Other languages keep every
    non-empty translation they already had; keys without one are written
    with an empty string.

    Returns:
        Number of keys that were new to each locale file.
    """
    texts = table.texts()
    new_counts: Dict[str, int] = {}
    for locale in config.target_languages:
        output_path = config.output_path(locale)
        existing = _read_json_object(output_path)
        merged: Dict[str, Any] = {}
        if locale == config.source_language:
            merged.update(texts)
        else:
            for key, value in existing.items():
                if has_reusable_translation(value):
                    merged[key] = value
            for key in texts:
                value = existing.get(key)
                merged[key] = value if has_reusable_translation(value) else ''
        _write_json(output_path, merged)
        new_counts[locale] = sum(1 for key in texts if key not in existing)
        logger.info("Wrote %s (+%d new)", output_path, new_counts[locale])
    return new_counts


def write_detail_file(config: AppConfig, table: TranslationTable) -> str:
    path = config.detail_path(config.source_language)
    _write_json(path, table.to_detail_dict())
    logger.info("Wrote %s", path)
    return path


def write_run_report(config: AppConfig, report: Dict[str, Any]) -> str:
    path = config.report_path(config.source_language)
    _write_json(path, report)
    logger.info("Wrote %s", path)
    return path


def render_top_level_warnings(bindings: List[DeferredBinding], project_root: Optional[str] = None) -> str:
    """Markdown listing module-level bindings that call the lookup at import time."""
    lines = ["# Top-level lookup bindings", ""]
    if not bindings:
        lines.extend(["No module-level constants need manual changes.", ""])
        return "\n".join(lines)

    def relative(path: str) -> str:
        return os.path.relpath(path, project_root) if project_root and os.path.isabs(path) else path

    ordered = sorted(bindings, key=lambda b: (relative(b.file), b.line))
    lines.extend([
        "The constants below evaluate a lookup call when their module is imported, before the",
        "locale is loaded. Turn each one into a getter or a function:",
        "",
        "| File | Constant | Line | Key |",
        "| --- | --- | --- | --- |",
    ])
    for binding in ordered:
        lines.append(f"| {relative(binding.file)} | {binding.name or '-'} | {binding.line or '-'} | `{binding.key}` |")
    lines.append("")
    return "\n".join(lines)


def write_top_level_warnings(config: AppConfig, bindings: List[DeferredBinding]) -> Optional[str]:
    path = config.top_level_warnings_path
    if not path:
        return None
    _ensure_parent(path)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(render_top_level_warnings(bindings, config.project_root))
    logger.info("Wrote %s", path)
    return path
