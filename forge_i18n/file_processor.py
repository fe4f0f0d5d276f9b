"""
Whole-file transformation: collect candidate sites, assign keys, rewrite.

The same tree walk runs twice. The collect pass records every site that
would be replaced; keys for all of them are then resolved in one batch
(table hits are reused, new texts go to the key generator together); the
apply pass repeats the walk with the assigned keys and emits the edits.
The result is checked by parsing it again and scanning it for Han text that
is still outside lookup calls.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Hashable, List, Optional, Sequence, Set, Tuple

from tree_sitter import Node

from forge_i18n.diagnostics import DeferredBinding, FileStats
from forge_i18n.errors import RewriteError, SourceParseError
from forge_i18n.import_injector import ensure_lookup_import
from forge_i18n.key_generator import KeyRequest, describe_file
from forge_i18n.markup_merger import merge_markup
from forge_i18n.naming import identify_text_type, is_data_config_file
from forge_i18n.syntax_tree import (
    TYPE_LEVEL_TYPES,
    LookupStyle,
    ParsedSource,
    contains_jsx,
    in_runtime_scope,
    is_lookup_call,
    lookup_key,
    parse_source,
    unwrap,
)
from forge_i18n.translation_table import TranslationEntry, TranslationTable
from forge_i18n.value_extractor import (
    PENDING_KEY,
    CandidateSite,
    Edit,
    ExtractionResult,
    KeyResolver,
    ValueExtractor,
    apply_edits,
    is_excluded_field,
    iter_target_texts,
)

logger = logging.getLogger(__name__)

DEFAULT_LOOKUP = LookupStyle()
DEFAULT_SKIP_FUNCTION_CALLS = ('console', 'require', 'import')


@dataclass
class TransformResult:
    code: str
    changed: bool
    stats: FileStats
    new_keys: List[str] = field(default_factory=list)


class SiteCollector:
    """Resolver of the collect pass: remembers every site and answers with a placeholder."""

    def __init__(self):
        self.sites: List[CandidateSite] = []

    def __call__(self, site: CandidateSite) -> Optional[str]:
        self.sites.append(site)
        return PENDING_KEY


class AssignedKeys:
    """Resolver of the apply pass; counts what it hands out."""

    def __init__(self, keys: Dict[Hashable, str], reused: Set[Hashable], stats: FileStats):
        self.keys = keys
        self.reused = reused
        self.stats = stats
        self.consumed: Set[Hashable] = set()

    def __call__(self, site: CandidateSite) -> Optional[str]:
        key = self.keys.get(site.site_id)
        if key is None:
            return None
        self.consumed.add(site.site_id)
        self.stats.extracted += 1
        self.stats.interpolations += len(site.interpolations)
        if site.site_id in self.reused:
            self.stats.reused_keys += 1
        return key

    def orphans(self) -> List[Hashable]:
        return [site_id for site_id in self.keys if site_id not in self.consumed]


def _inside(node: Node, spans: Sequence[Tuple[int, int]]) -> bool:
    return any(start <= node.start_byte and node.end_byte <= end for start, end in spans)


class _TreeWalk:
    """Pre-order walk that hands every value position to the extractor exactly once."""

    def __init__(self, extractor: ValueExtractor, record_bindings: bool):
        self.extractor = extractor
        self.parsed = extractor.parsed
        self.record_bindings = record_bindings
        self.edits: List[Edit] = []
        self.covered: List[Tuple[int, int]] = []

    def run(self) -> List[Edit]:
        stack = [self.parsed.root]
        while stack:
            node = stack.pop()
            if node.type in TYPE_LEVEL_TYPES or is_excluded_field(node):
                continue
            if _inside(node, self.covered) or _inside(node, self.extractor.aborted):
                continue
            if node.type == 'variable_declarator':
                self._visit_declarator(node)
            elif self.extractor.handles(node):
                self._accept(self.extractor.extract(node, 0))
            if self.extractor.is_opaque(node):
                continue
            stack.extend(reversed(node.children))
        return self.edits

    def _accept(self, result: Optional[ExtractionResult]) -> None:
        if result is None:
            return
        for edit in result.edits:
            if any(edit.start < end and start < edit.end for start, end in self.covered):
                logger.debug("Dropping overlapping edit at %d-%d in %s", edit.start, edit.end, self.parsed.file_path)
                continue
            self.edits.append(edit)
            self.covered.append((edit.start, edit.end))

    def _visit_declarator(self, node: Node) -> None:
        value = node.child_by_field_name('value')
        if value is None:
            return
        result = self.extractor.extract(value, 0)
        self._accept(result)
        if not self.record_bindings or in_runtime_scope(node):
            return

        key = result.matched_key if result is not None else None
        if key is None:
            inner = unwrap(value)
            if is_lookup_call(self.parsed, inner, self.extractor.lookup):
                key = lookup_key(self.parsed, inner)
        name = node.child_by_field_name('name')
        if key is None or name is None or name.type != 'identifier':
            return
        location = self.parsed.location(name.start_byte)
        self.extractor.stats.record_deferred_binding(DeferredBinding(
            name=self.parsed.text(name),
            key=key,
            file=self.parsed.file_path,
            line=location.line,
            column=location.column,
        ))


def run_pass(parsed: ParsedSource, resolve_key: KeyResolver, stats: FileStats, lookup: LookupStyle,
             skip_list: List[str], is_data_file: bool, collecting: bool) -> List[Edit]:
    """Walk ``parsed`` once and return the edits for every site ``resolve_key`` answered."""
    extractor = ValueExtractor(parsed, merge_markup(parsed), resolve_key, stats, lookup, skip_list,
                               is_data_file=is_data_file, collecting=collecting)
    return _TreeWalk(extractor, record_bindings=not collecting).run()


async def resolve_site_keys(sites: List[CandidateSite], table: TranslationTable, key_generator,
                            file_path: str) -> Tuple[Dict[Hashable, str], Set[Hashable], List[str]]:
    """
    Assign a key to every collected site.

    Sites carrying the same message share one key. Messages already in the
    table keep their key; the rest are named by ``key_generator`` in a single
    batch and added to the table.

    Returns:
        Keys by site id, the ids of sites that reuse an existing key, and the
        keys created for this file.
    """
    groups: Dict[Tuple[str, Tuple[str, ...]], List[CandidateSite]] = {}
    for site in sites:
        groups.setdefault(site.signature, []).append(site)

    keys: Dict[Hashable, str] = {}
    reused: Set[Hashable] = set()
    pending: List[List[CandidateSite]] = []
    for group in groups.values():
        existing = table.find_key(group[0].text, group[0].interpolations)
        if existing is None:
            pending.append(group)
            continue
        for site in group:
            keys[site.site_id] = existing
            reused.add(site.site_id)

    new_keys: List[str] = []
    if not pending:
        return keys, reused, new_keys

    context = describe_file(file_path)
    requests = [
        KeyRequest(text=group[0].text, text_type=identify_text_type(group[0].text), context=context)
        for group in pending
    ]
    generated = await key_generator.assign_keys(requests)

    for group, proposed in zip(pending, generated):
        first = group[0]
        if not proposed:
            logger.warning("No key assigned to '%s' in %s:%d; leaving it in place",
                           first.text, file_path, first.line)
            continue
        key = table.add(proposed, TranslationEntry(first.text, file_path, list(first.interpolations)))
        new_keys.append(key)
        for index, site in enumerate(group):
            keys[site.site_id] = key
            if index > 0:
                reused.add(site.site_id)
    return keys, reused, new_keys


def scan_residual(parsed: ParsedSource, stats: FileStats, lookup: LookupStyle, skip_list: List[str],
                  include_markup: bool = True) -> None:
    """Record every Han text of the rewritten file that is not inside a lookup call."""
    for text, kind, start in iter_target_texts(parsed, parsed.root, lookup, skip_list, include_markup):
        location = parsed.location(start)
        stats.record_missing(text, kind, location.line, location.column)


async def transform_source(source: str, file_path: str, table: TranslationTable, key_generator,
                           lookup: LookupStyle = DEFAULT_LOOKUP,
                           skip_function_calls: Optional[Sequence[str]] = None,
                           is_data_file: Optional[bool] = None) -> TransformResult:
    """
    Rewrite the Han text of one source file into lookup calls.

    Args:
        source: File contents.
        file_path: Path used for grammar selection, key context and reports.
        table: The run's translation table; new texts are added to it.
        key_generator: Object with ``async assign_keys(requests)`` returning
            one key (or None) per request.
        lookup: Shape of the lookup call and its import.
        skip_function_calls: Call names whose arguments are left alone.
        is_data_file: Skip markup text. When None, a file counts as pure data
            when its path looks like a data-config module and it has no JSX.

    Returns:
        TransformResult with the new code and the per-file statistics.

    Raises:
        SourceParseError: If ``source`` does not parse.
        RewriteError: If the rewritten code does not parse.
    """
    skip_list = list(DEFAULT_SKIP_FUNCTION_CALLS if skip_function_calls is None else skip_function_calls)
    source_bytes = source.encode('utf-8')
    parsed = parse_source(source_bytes, file_path)
    if is_data_file is None:
        is_data_file = is_data_config_file(file_path) and not contains_jsx(parsed.root)
    stats = FileStats()

    collector = SiteCollector()
    run_pass(parsed, collector, stats, lookup, skip_list, is_data_file, collecting=True)
    keys, reused, new_keys = await resolve_site_keys(collector.sites, table, key_generator, file_path)
    logger.debug("%s: %d candidate site(s), %d new key(s)", file_path, len(collector.sites), len(new_keys))

    resolver = AssignedKeys(keys, reused, stats)
    edits = run_pass(parsed, resolver, stats, lookup, skip_list, is_data_file, collecting=False)
    orphans = resolver.orphans()
    if orphans:
        logger.warning("%d assigned key(s) were not used while rewriting %s", len(orphans), file_path)

    if not edits:
        scan_residual(parsed, stats, lookup, skip_list, include_markup=not is_data_file)
        return TransformResult(code=source, changed=False, stats=stats, new_keys=new_keys)

    edits.extend(ensure_lookup_import(parsed, lookup))
    output = apply_edits(source_bytes, edits)
    try:
        rewritten = parse_source(output, file_path)
    except SourceParseError as parse_exc:
        raise RewriteError(f"Rewriting {file_path} produced invalid code: {parse_exc}") from parse_exc

    scan_residual(rewritten, stats, lookup, skip_list, include_markup=not is_data_file)
    return TransformResult(
        code=output.decode('utf-8'),
        changed=output != source_bytes,
        stats=stats,
        new_keys=new_keys,
    )


async def transform_file(file_path: str, table: TranslationTable, key_generator,
                         lookup: LookupStyle = DEFAULT_LOOKUP,
                         skip_function_calls: Optional[Sequence[str]] = None,
                         dry_run: bool = False) -> TransformResult:
    """Transform ``file_path`` in place; nothing is written when ``dry_run`` is set."""
    with open(file_path, 'r', encoding='utf-8', newline='') as f:
        source = f.read()
    result = await transform_source(source, file_path, table, key_generator, lookup, skip_function_calls)
    if result.changed and not dry_run:
        with open(file_path, 'w', encoding='utf-8', newline='') as f:
            f.write(result.code)
    return result
