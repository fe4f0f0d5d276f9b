"""Node-kind dispatch that finds Han text in an expression and builds its replacement.

``ValueExtractor.extract`` is run twice over the same tree. During the
collect pass the key resolver only records candidate sites and answers with
a placeholder key. During the apply pass it answers with the keys assigned
in between, so both passes make the same decisions and the edits of the
second pass carry real keys. Replacements are byte-span edits against the
original source; nothing in the tree is mutated.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, Iterator, List, Optional, Sequence, Set, Tuple

from tree_sitter import Node

from forge_i18n import diagnostics
from forge_i18n.diagnostics import FileStats
from forge_i18n.markup_merger import MarkupChild, MarkupRun, MarkupText, expression_of, split_children
from forge_i18n.syntax_tree import (
    JSX_ELEMENT_TYPES,
    TYPE_LEVEL_TYPES,
    LookupStyle,
    ParsedSource,
    callee_name,
    in_runtime_scope,
    is_field,
    is_lookup_call,
    is_tagged_template,
    is_translation_call,
    js_string_literal,
    matches_skip_list,
    normalize_jsx_text,
    string_value,
    template_parts,
    unwrap,
)
from forge_i18n.text_detector import contains_target_text

logger = logging.getLogger(__name__)

MAX_EXTRACTION_DEPTH = 10
PENDING_KEY = '__pending__'

# Site kinds
LITERAL = 'literal'
INTERPOLATED = 'interpolated'
MARKUP_TEXT = 'markup-text'

CALL_TYPES = frozenset({'call_expression', 'new_expression'})
FUNCTION_VALUE_TYPES = frozenset({'arrow_function', 'function_expression', 'function'})
WRAPPER_TYPES = frozenset({
    'parenthesized_expression',
    'as_expression',
    'satisfies_expression',
    'non_null_expression',
    'type_assertion',
})

# Positions that hold names rather than values.
_EXCLUDED_FIELDS = {
    'pair': ('key',),
    'pair_pattern': ('key',),
    'method_definition': ('name',),
    'public_field_definition': ('name', 'property'),
    'subscript_expression': ('index',),
    'export_statement': ('source',),
}

_NON_WORD_RE = re.compile(r'[^a-zA-Z0-9]')


@dataclass
class Edit:
    start: int
    end: int
    text: str


@dataclass
class ExtractionResult:
    """Edits produced for one node; ``matched_key`` is set when the node became one lookup call."""
    edits: List[Edit] = field(default_factory=list)
    matched_key: Optional[str] = None


@dataclass
class CandidateSite:
    site_id: Hashable
    text: str
    kind: str
    start: int
    end: int
    interpolations: List[str]
    line: int
    column: int

    @property
    def signature(self) -> Tuple[str, Tuple[str, ...]]:
        return self.text, tuple(sorted(self.interpolations))


KeyResolver = Callable[[CandidateSite], Optional[str]]


def apply_edits(source: bytes, edits: Sequence[Edit], start: int = 0, end: Optional[int] = None) -> bytes:
    """Splice ``edits`` that fall inside ``[start, end)`` into ``source[start:end]``."""
    if end is None:
        end = len(source)
    pieces: List[bytes] = []
    cursor = start
    for edit in sorted(edits, key=lambda e: (e.start, e.end)):
        if edit.start < cursor or edit.end > end:
            continue
        pieces.append(source[cursor:edit.start])
        pieces.append(edit.text.encode('utf-8'))
        cursor = edit.end
    pieces.append(source[cursor:end])
    return b''.join(pieces)


def interpolation_names(parsed: ParsedSource, expressions: Sequence[Optional[Node]]) -> List[str]:
    """
    Name each interpolated expression: identifiers keep their name, member
    expressions become their source text with punctuation turned into ``_``,
    anything else is ``value<i>``.
    """
    names: List[str] = []
    sources: Dict[str, str] = {}
    for index, expression in enumerate(expressions):
        if expression is None:
            name, text = f"value{index}", ''
        else:
            text = parsed.text(expression)
            if expression.type == 'identifier':
                name = text
            elif expression.type == 'member_expression':
                name = _NON_WORD_RE.sub('_', text)
            else:
                name = f"value{index}"
        if name in sources and sources[name] != text:
            name = f"{name}_{index}"
        sources.setdefault(name, text)
        names.append(name)
    return names


def skeleton_text(chunks: Sequence[str], names: Sequence[str]) -> str:
    parts = [chunks[0]]
    for name, chunk in zip(names, chunks[1:]):
        parts.append(f"{{{name}}}")
        parts.append(chunk)
    return ''.join(parts)


def is_excluded_field(node: Node) -> bool:
    parent = node.parent
    if parent is None:
        return False
    return any(is_field(parent, node, name) for name in _EXCLUDED_FIELDS.get(parent.type, ()))


def is_opaque(parsed: ParsedSource, node: Node, lookup: LookupStyle, skip_list: List[str]) -> bool:
    """Subtrees whose text must never be rewritten."""
    if node.type in TYPE_LEVEL_TYPES:
        return True
    if node.type in CALL_TYPES:
        if is_translation_call(parsed, node, lookup):
            return True
        arguments = node.child_by_field_name('arguments')
        if arguments is not None and arguments.type == 'template_string':
            return True
        return matches_skip_list(callee_name(parsed, node), skip_list)
    return False


def iter_target_texts(parsed: ParsedSource, node: Node, lookup: LookupStyle, skip_list: List[str],
                      include_markup: bool = True) -> Iterator[Tuple[str, str, int]]:
    """
    Yield ``(text, sample_kind, start_byte)`` for every string, template or
    markup text under ``node`` that still contains Han text outside of
    lookup calls and skip-listed calls.
    """
    stack = [node]
    while stack:
        current = stack.pop()
        if is_opaque(parsed, current, lookup, skip_list) or is_excluded_field(current):
            continue
        if current.type == 'string':
            value = string_value(parsed, current)
            if contains_target_text(value):
                yield value, diagnostics.STRING_LITERAL, current.start_byte
        elif current.type == 'template_string':
            chunks, expressions = template_parts(parsed, current)
            if contains_target_text(''.join(chunks)):
                text = skeleton_text(chunks, interpolation_names(parsed, expressions))
                yield text, diagnostics.TEMPLATE_LITERAL, current.start_byte
        elif current.type in JSX_ELEMENT_TYPES and include_markup:
            for item in split_children(parsed, current):
                if isinstance(item, MarkupText) and contains_target_text(item.text):
                    yield item.text, diagnostics.JSX_TEXT, item.core_start
        stack.extend(reversed(current.children))


class ValueExtractor:
    """
    Finds extractable text in expressions of one parsed file.

    Args:
        parsed: The parsed source file.
        overlay: Merged JSX children keyed by element node id.
        resolve_key: Callback returning the key for a candidate site, or None
            to leave the site untouched.
        stats: Per-file diagnostics sink.
        lookup: Shape of the emitted lookup call.
        skip_list: Call names whose arguments are never extracted.
        is_data_file: Whether markup text must be skipped in this file.
        collecting: True during the collect pass; warnings and skipped
            samples are only recorded then, counters only in the apply pass.
    """

    def __init__(self, parsed: ParsedSource, overlay: Dict[int, List[MarkupChild]], resolve_key: KeyResolver,
                 stats: FileStats, lookup: LookupStyle, skip_list: List[str],
                 is_data_file: bool = False, collecting: bool = True):
        self.parsed = parsed
        self.overlay = overlay
        self.resolve_key = resolve_key
        self.stats = stats
        self.lookup = lookup
        self.skip_list = skip_list
        self.is_data_file = is_data_file
        self.collecting = collecting
        self.examined: Set[int] = set()
        self.aborted: List[Tuple[int, int]] = []
        self._handlers: Dict[str, Callable[[Node, int], Optional[ExtractionResult]]] = {
            'string': self._extract_string,
            'template_string': self._extract_template,
            'binary_expression': self._extract_binary,
            'ternary_expression': self._extract_ternary,
            'array': self._extract_array,
            'call_expression': self._extract_call,
            'new_expression': self._extract_call,
            'object': self._extract_object,
            'jsx_expression': self._extract_jsx_expression,
            'jsx_element': self._extract_markup,
            'jsx_fragment': self._extract_markup,
        }
        for node_type in FUNCTION_VALUE_TYPES:
            self._handlers[node_type] = self._extract_function
        for node_type in WRAPPER_TYPES:
            self._handlers[node_type] = self._extract_wrapped

    def handles(self, node: Node) -> bool:
        return node.type in self._handlers

    def is_opaque(self, node: Node) -> bool:
        return is_opaque(self.parsed, node, self.lookup, self.skip_list)

    def extract(self, node: Optional[Node], depth: int = 0) -> Optional[ExtractionResult]:
        """
        Extract text from ``node`` and its relevant sub-expressions.

        Returns:
            The edits that replace the found text, or None when nothing under
            ``node`` was extracted and the subtree must be left untouched.
        """
        if node is None or node.id in self.examined:
            return None
        handler = self._handlers.get(node.type)
        if handler is None:
            return None
        if depth >= MAX_EXTRACTION_DEPTH:
            if self.collecting:
                location = self.parsed.location(node.start_byte)
                logger.warning("Extraction depth limit (%d) reached in %s:%d:%d; leaving subtree untouched",
                               MAX_EXTRACTION_DEPTH, self.parsed.file_path, location.line, location.column)
            self.aborted.append((node.start_byte, node.end_byte))
            return None
        self.examined.add(node.id)
        return handler(node, depth)

    # -- sites -----------------------------------------------------------

    def _resolve(self, site_id: Hashable, text: str, kind: str, start: int, end: int,
                 interpolations: List[str]) -> Optional[str]:
        location = self.parsed.location(start)
        site = CandidateSite(site_id, text, kind, start, end, interpolations, location.line, location.column)
        return self.resolve_key(site)

    def lookup_call(self, key: str, values: Sequence[Tuple[str, str]] = ()) -> str:
        arguments = js_string_literal(key)
        if values:
            seen = set()
            props = []
            for name, value in values:
                if name in seen:
                    continue
                seen.add(name)
                props.append(name if value == name else f"{name}: {value}")
            arguments += ", { " + ", ".join(props) + " }"
        return f"{self.lookup.call_prefix}({arguments})"

    def _render(self, node: Node, edits: List[Edit]) -> str:
        return apply_edits(self.parsed.source, edits, node.start_byte, node.end_byte).decode('utf-8')

    def _combine(self, results: Sequence[Optional[ExtractionResult]]) -> Optional[ExtractionResult]:
        edits = [edit for result in results if result is not None for edit in result.edits]
        return ExtractionResult(edits) if edits else None

    def _interpolated(self, span: Tuple[int, int], site_id: Hashable, chunks: List[str],
                      expressions: List[Optional[Node]],
                      depth: int) -> Tuple[Optional[str], Optional[str], List[Edit]]:
        """Shared tail of template, concatenation and markup-run extraction."""
        nested: List[Edit] = []
        for expression in expressions:
            result = self.extract(expression, depth + 1)
            if result is not None:
                nested.extend(result.edits)
        if not contains_target_text(''.join(chunks)):
            return None, None, nested
        names = interpolation_names(self.parsed, expressions)
        text = skeleton_text(chunks, names)
        start, end = span
        kind = INTERPOLATED if expressions else LITERAL
        key = self._resolve(site_id, text, kind, start, end, _unique(names))
        if key is None:
            return None, None, nested
        values = [
            (name, self._render(expression, nested) if expression is not None else 'undefined')
            for name, expression in zip(names, expressions)
        ]
        return key, self.lookup_call(key, values), nested

    # -- handlers --------------------------------------------------------

    def _extract_string(self, node: Node, depth: int) -> Optional[ExtractionResult]:
        value = string_value(self.parsed, node)
        if not contains_target_text(value):
            return None
        key = self._resolve((LITERAL, node.id), value, LITERAL, node.start_byte, node.end_byte, [])
        if key is None:
            return None
        call = self.lookup_call(key)
        if node.parent is not None and node.parent.type == 'jsx_attribute':
            call = f"{{{call}}}"
        return ExtractionResult([Edit(node.start_byte, node.end_byte, call)], key)

    def _extract_template(self, node: Node, depth: int) -> Optional[ExtractionResult]:
        if is_tagged_template(node):
            return None
        chunks, expressions = template_parts(self.parsed, node)
        key, call, nested = self._interpolated((node.start_byte, node.end_byte), (INTERPOLATED, node.id),
                                               chunks, list(expressions), depth)
        if call is None:
            return ExtractionResult(nested) if nested else None
        return ExtractionResult([Edit(node.start_byte, node.end_byte, call)], key)

    def _flatten_concat(self, node: Node) -> List[Node]:
        """Operands of a left-to-right ``+`` chain; parenthesized groups stay single operands."""
        operator = node.child_by_field_name('operator')
        if node.type == 'binary_expression' and operator is not None and operator.type == '+':
            # Inner links of the chain are decided here, never on their own.
            self.examined.add(node.id)
            return self._flatten_concat(node.child_by_field_name('left')) + \
                self._flatten_concat(node.child_by_field_name('right'))
        return [node]

    def _extract_binary(self, node: Node, depth: int) -> Optional[ExtractionResult]:
        operator = node.child_by_field_name('operator')
        op = operator.type if operator is not None else ''
        if op in ('&&', '||', '??'):
            return self._combine([
                self.extract(node.child_by_field_name('left'), depth + 1),
                self.extract(node.child_by_field_name('right'), depth + 1),
            ])
        if op != '+':
            return None

        parts = self._flatten_concat(node)
        chunks = ['']
        slots: List[Optional[Node]] = []
        for part in parts:
            if part.type == 'string':
                chunks[-1] += string_value(self.parsed, part)
            elif part.type == 'template_string' and not template_parts(self.parsed, part)[1]:
                chunks[-1] += template_parts(self.parsed, part)[0][0]
            else:
                slots.append(part)
                chunks.append('')

        if not slots or not contains_target_text(''.join(chunks)):
            # Not one sentence: the operands are independent values.
            return self._combine([self.extract(part, depth + 1) for part in parts])

        for part in parts:
            if part.type in ('string', 'template_string'):
                self.examined.add(part.id)
        key, call, nested = self._interpolated((node.start_byte, node.end_byte), (INTERPOLATED, node.id),
                                               chunks, slots, depth)
        if call is None:
            return ExtractionResult(nested) if nested else None
        return ExtractionResult([Edit(node.start_byte, node.end_byte, call)], key)

    def _extract_ternary(self, node: Node, depth: int) -> Optional[ExtractionResult]:
        return self._combine([
            self.extract(node.child_by_field_name('consequence'), depth + 1),
            self.extract(node.child_by_field_name('alternative'), depth + 1),
        ])

    def _extract_array(self, node: Node, depth: int) -> Optional[ExtractionResult]:
        return self._combine([self.extract(element, depth + 1) for element in node.named_children])

    def _extract_call(self, node: Node, depth: int) -> Optional[ExtractionResult]:
        if is_translation_call(self.parsed, node, self.lookup):
            return None
        arguments = node.child_by_field_name('arguments')
        if arguments is None or arguments.type == 'template_string':
            return None
        name = callee_name(self.parsed, node)
        if matches_skip_list(name, self.skip_list):
            if self.collecting:
                self._record_skipped_arguments(arguments, name)
            return None
        return self._combine([self.extract(argument, depth + 1) for argument in arguments.named_children])

    def _record_skipped_arguments(self, arguments: Node, name: str) -> None:
        reason = diagnostics.skip_function_reason(name)
        for argument in arguments.named_children:
            for text, kind, start in iter_target_texts(self.parsed, argument, self.lookup, self.skip_list):
                location = self.parsed.location(start)
                self.stats.record_unrecognized(text, kind, reason, location.line, location.column)

    def _extract_object(self, node: Node, depth: int) -> Optional[ExtractionResult]:
        edits: List[Edit] = []
        runtime = in_runtime_scope(node)
        for prop in node.named_children:
            if prop.type != 'pair':
                continue
            key_node = prop.child_by_field_name('key')
            value = prop.child_by_field_name('value')
            if key_node is None or value is None:
                continue
            result = self.extract(value, depth + 1)
            can_defer = not runtime and key_node.type in ('property_identifier', 'string')

            if can_defer and result is not None and result.matched_key is not None:
                body = self._render(value, result.edits)
            elif can_defer and result is None and is_lookup_call(self.parsed, unwrap(value), self.lookup):
                body = self.parsed.text(value)
            else:
                if result is not None:
                    edits.extend(result.edits)
                continue

            # Module-level objects are built before the locale is loaded; read on access instead.
            getter = f"get {self.parsed.text(key_node)}() {{ return {body} }}"
            edits.append(Edit(prop.start_byte, prop.end_byte, getter))
            if not self.collecting:
                self.stats.lazy_accessors += 1
        return ExtractionResult(edits) if edits else None

    def _extract_function(self, node: Node, depth: int) -> Optional[ExtractionResult]:
        body = node.child_by_field_name('body')
        if body is None:
            return None
        if body.type != 'statement_block':
            result = self.extract(body, depth + 1)
            return ExtractionResult(result.edits) if result is not None else None
        results = []
        for statement in body.named_children:
            if statement.type != 'return_statement':
                continue
            returned = [child for child in statement.named_children if child.type != 'comment']
            if returned:
                results.append(self.extract(returned[0], depth + 1))
        return self._combine(results)

    def _extract_wrapped(self, node: Node, depth: int) -> Optional[ExtractionResult]:
        if not node.named_children:
            return None
        inner = node.named_children[-1] if node.type == 'type_assertion' else node.named_children[0]
        return self.extract(inner, depth + 1)

    def _extract_jsx_expression(self, node: Node, depth: int) -> Optional[ExtractionResult]:
        return self.extract(expression_of(node), depth + 1)

    def _extract_markup(self, node: Node, depth: int) -> Optional[ExtractionResult]:
        # Nested elements are reached by the tree walk so deep markup never hits the depth limit.
        results = []
        for child in self.overlay.get(node.id, []):
            if isinstance(child, MarkupText):
                results.append(self._extract_markup_text(child))
            elif isinstance(child, MarkupRun):
                results.append(self._extract_markup_run(child, depth))
            elif child.type == 'jsx_expression':
                results.append(self.extract(child, depth + 1))
        return self._combine(results)

    def _extract_markup_text(self, item: MarkupText) -> Optional[ExtractionResult]:
        if not contains_target_text(item.text):
            return None
        if self.is_data_file:
            self._record_data_file_skip(item.text, item.core_start)
            return None
        key = self._resolve(item.site_id, item.text, MARKUP_TEXT, item.core_start, item.core_end, [])
        if key is None:
            return None
        return ExtractionResult([Edit(item.core_start, item.core_end, f"{{{self.lookup_call(key)}}}")], key)

    def _extract_markup_run(self, run: MarkupRun, depth: int) -> Optional[ExtractionResult]:
        containers = run.containers
        chunks = []
        cursor = run.start
        for container in containers:
            chunks.append(self._normalized(cursor, container.start_byte))
            cursor = container.end_byte
        chunks.append(self._normalized(cursor, run.end))

        if self.is_data_file:
            names = interpolation_names(self.parsed, run.expressions)
            self._record_data_file_skip(skeleton_text(chunks, names), run.start)
            return None

        for container in containers:
            self.examined.add(container.id)
        key, call, nested = self._interpolated((run.start, run.end), run.site_id, chunks, run.expressions, depth)
        if call is None:
            return ExtractionResult(nested) if nested else None
        return ExtractionResult([Edit(run.start, run.end, f"{{{call}}}")], key)

    def _normalized(self, start: int, end: int) -> str:
        return normalize_jsx_text(self.parsed.slice(start, end))

    def _record_data_file_skip(self, text: str, start: int) -> None:
        if not self.collecting:
            return
        location = self.parsed.location(start)
        self.stats.record_unrecognized(text, diagnostics.JSX_TEXT, diagnostics.DATA_FILE_SKIP,
                                       location.line, location.column)


def _unique(names: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(names))

