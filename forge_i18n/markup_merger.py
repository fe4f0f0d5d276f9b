"""Grouping of JSX element children into text segments and interpolated runs.

Tree-sitter splits the text of an element into several ``jsx_text`` and
``html_character_reference`` nodes and drops the whitespace between them.
The merger reads the text straight from the source bytes instead: every
stretch between two non-text children becomes one ``MarkupText``. A sentence
interrupted by ``{expressions}`` is collapsed into a single ``MarkupRun`` so
later stages only see one interpolated unit. The tree itself is never
modified; the merged view is an overlay keyed by element node id.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from tree_sitter import Node

from forge_i18n.syntax_tree import JSX_ELEMENT_TYPES, ParsedSource, normalize_jsx_text
from forge_i18n.text_detector import contains_target_text

TEXT_CHILD_TYPES = frozenset({'jsx_text', 'html_character_reference'})
_JSX_WHITESPACE = b' \t\r\n'


@dataclass
class MarkupText:
    """Static text between two non-text children of an element."""
    element_id: int
    start: int
    end: int
    core_start: int
    core_end: int
    text: str

    @property
    def site_id(self) -> Tuple[str, int, int]:
        return ('markup-text', self.element_id, self.start)

    @property
    def is_blank(self) -> bool:
        return self.core_start >= self.core_end


@dataclass
class MarkupRun:
    """Adjacent text and ``{expression}`` children that read as one sentence."""
    element_id: int
    parts: List[Union[MarkupText, Node]] = field(default_factory=list)

    @property
    def site_id(self) -> Tuple[str, int, int]:
        return ('markup', self.element_id, self.start)

    @property
    def expressions(self) -> List[Node]:
        """The value expression inside each ``{...}`` container, in order."""
        return [expression_of(part) for part in self.parts if isinstance(part, Node)]

    @property
    def containers(self) -> List[Node]:
        return [part for part in self.parts if isinstance(part, Node)]

    @property
    def start(self) -> int:
        for part in self.parts:
            if isinstance(part, Node):
                return part.start_byte
            if not part.is_blank:
                return part.core_start
        first = self.parts[0]
        return first.start_byte if isinstance(first, Node) else first.start

    @property
    def end(self) -> int:
        for part in reversed(self.parts):
            if isinstance(part, Node):
                return part.end_byte
            if not part.is_blank:
                return part.core_end
        last = self.parts[-1]
        return last.end_byte if isinstance(last, Node) else last.end


MarkupChild = Union[Node, MarkupText, MarkupRun]


def expression_of(container: Node) -> Optional[Node]:
    """The expression held by a ``jsx_expression``; None for ``{}`` and ``{/* comment */}``."""
    inner = [child for child in container.named_children if child.type != 'comment']
    return inner[0] if inner else None


def _is_interpolation(child: Union[Node, MarkupText]) -> bool:
    if not isinstance(child, Node) or child.type != 'jsx_expression':
        return False
    expression = expression_of(child)
    return expression is not None and expression.type != 'spread_element'


def _content_bounds(element: Node) -> Tuple[int, int, List[Node]]:
    """Byte range between the opening and closing tags plus the children inside it."""
    open_tag = element.child_by_field_name('open_tag')
    close_tag = element.child_by_field_name('close_tag')
    if open_tag is not None and close_tag is not None:
        start, end = open_tag.end_byte, close_tag.start_byte
    else:
        # Older grammars model `<>...</>` as a bare jsx_fragment with punctuation tokens.
        openers = [c for c in element.children if c.type == '>']
        closers = [c for c in element.children if c.type in ('<', '</')]
        start = openers[0].end_byte if openers else element.start_byte
        end = closers[-1].start_byte if closers else element.end_byte
    children = [
        child for child in element.named_children
        if start <= child.start_byte and child.end_byte <= end
    ]
    return start, end, children


def _make_text(parsed: ParsedSource, element: Node, start: int, end: int) -> MarkupText:
    raw = parsed.source[start:end]
    lead = len(raw) - len(raw.lstrip(_JSX_WHITESPACE))
    trail = len(raw) - len(raw.rstrip(_JSX_WHITESPACE))
    core_start = start + lead
    core_end = max(core_start, end - trail)
    text = normalize_jsx_text(parsed.slice(core_start, core_end))
    return MarkupText(element.id, start, end, core_start, core_end, text)


def split_children(parsed: ParsedSource, element: Node) -> List[Union[Node, MarkupText]]:
    """Children of ``element`` with all text stretches folded into ``MarkupText`` items."""
    start, end, children = _content_bounds(element)
    items: List[Union[Node, MarkupText]] = []
    cursor = start
    for child in children:
        if child.type in TEXT_CHILD_TYPES:
            continue
        if cursor < child.start_byte:
            items.append(_make_text(parsed, element, cursor, child.start_byte))
        items.append(child)
        cursor = child.end_byte
    if cursor < end:
        items.append(_make_text(parsed, element, cursor, end))
    return items


def _should_merge(run: List[Union[Node, MarkupText]]) -> bool:
    texts = [part for part in run if isinstance(part, MarkupText)]
    has_target = any(contains_target_text(part.text) for part in texts)
    has_expression = any(isinstance(part, Node) for part in run)
    has_meaningful_text = any(part.text.strip() for part in texts)
    return has_target and has_expression and has_meaningful_text


def merge_children(parsed: ParsedSource, element: Node) -> List[MarkupChild]:
    items = split_children(parsed, element)
    merged: List[MarkupChild] = []
    index = 0
    while index < len(items):
        item = items[index]
        if not isinstance(item, MarkupText) and not _is_interpolation(item):
            merged.append(item)
            index += 1
            continue

        cursor = index
        while cursor < len(items) and (isinstance(items[cursor], MarkupText) or _is_interpolation(items[cursor])):
            cursor += 1
        run = items[index:cursor]

        if _should_merge(run):
            merged.append(MarkupRun(element.id, list(run)))
        else:
            merged.extend(run)
        index = cursor
    return merged


def merge_markup(parsed: ParsedSource) -> Dict[int, List[MarkupChild]]:
    """Build the merged child list of every element in the file, keyed by element node id."""
    overlay: Dict[int, List[MarkupChild]] = {}
    stack = [parsed.root]
    while stack:
        node = stack.pop()
        if node.type in JSX_ELEMENT_TYPES:
            overlay[node.id] = merge_children(parsed, node)
        stack.extend(node.children)
    return overlay
