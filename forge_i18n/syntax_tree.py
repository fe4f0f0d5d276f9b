"""Tree-sitter parsing and node helpers shared by the extraction passes.

The extractor never mutates a tree-sitter tree. All helpers here read from
the original source bytes so that the rewrite pass can splice replacement
text into exact byte spans.
"""
import html
import os
import re
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import tree_sitter_javascript
import tree_sitter_typescript
from tree_sitter import Language, Node, Parser, Tree

from forge_i18n.errors import SourceParseError

# Extensions we know how to parse, mapped to the grammar that handles them.
_GRAMMAR_BY_EXTENSION = {
    '.ts': 'typescript',
    '.tsx': 'tsx',
    '.js': 'javascript',
    '.jsx': 'javascript',
    '.mjs': 'javascript',
    '.cjs': 'javascript',
}
SUPPORTED_EXTENSIONS = frozenset(_GRAMMAR_BY_EXTENSION)

_parsers: Dict[str, Parser] = {}

FUNCTION_TYPES = frozenset({
    'function_declaration',
    'function_expression',
    'function',
    'generator_function',
    'generator_function_declaration',
    'arrow_function',
    'method_definition',
    'class_static_block',
})

# Wrappers that do not change the value of the wrapped expression.
TRANSPARENT_TYPES = frozenset({
    'parenthesized_expression',
    'as_expression',
    'satisfies_expression',
    'non_null_expression',
    'type_assertion',
})

# Subtrees that only describe types or module wiring; text in them is never UI text.
TYPE_LEVEL_TYPES = frozenset({
    'type_annotation',
    'type_alias_declaration',
    'interface_declaration',
    'enum_declaration',
    'type_arguments',
    'type_parameters',
    'literal_type',
    'ambient_declaration',
    'import_statement',
    'comment',
    'regex',
})

JSX_ELEMENT_TYPES = frozenset({'jsx_element', 'jsx_fragment'})

_SIMPLE_ESCAPES = {
    'n': '\n',
    't': '\t',
    'r': '\r',
    'b': '\b',
    'f': '\f',
    'v': '\v',
    '0': '\0',
}
_LINE_CONTINUATIONS = ('\n', '\r', '\r\n', '\u2028', '\u2029')
_ESCAPE_RE = re.compile(r'\\(u\{[0-9a-fA-F]+\}|u[0-9a-fA-F]{4}|x[0-9a-fA-F]{2}|\r\n|[\s\S])')
_JSX_NEWLINE_RE = re.compile(r'\r?\n\s*')
_LONE_SURROGATE_RE = re.compile('[\ud800-\udfff]')


@dataclass(frozen=True)
class LookupStyle:
    """Shape of the runtime lookup call the rewriter emits and recognizes."""
    object_name: str = 'intl'
    methods: Tuple[str, ...] = ('get', 'getHTML')
    module: str = 'react-intl-universal'
    translation_functions: Tuple[str, ...] = ('t',)

    @property
    def call_prefix(self) -> str:
        return f"{self.object_name}.{self.methods[0]}"


@dataclass
class SourceLocation:
    line: int
    column: int


@dataclass
class ParsedSource:
    """A parsed file: raw bytes, the tree and the grammar used."""
    source: bytes
    tree: Tree
    file_path: str
    grammar: str

    @property
    def root(self) -> Node:
        return self.tree.root_node

    def text(self, node: Node) -> str:
        return self.source[node.start_byte:node.end_byte].decode('utf-8')

    def slice(self, start: int, end: int) -> str:
        return self.source[start:end].decode('utf-8')

    def location(self, start_byte: int) -> SourceLocation:
        """1-based line and 0-based character column of a byte offset."""
        line_start = self.source.rfind(b'\n', 0, start_byte) + 1
        line = self.source.count(b'\n', 0, start_byte) + 1
        column = len(self.source[line_start:start_byte].decode('utf-8', errors='replace'))
        return SourceLocation(line=line, column=column)


def grammar_for(file_path: str) -> str:
    extension = os.path.splitext(file_path)[1].lower()
    # Unknown extensions get the most permissive grammar.
    return _GRAMMAR_BY_EXTENSION.get(extension, 'tsx')


def get_parser(grammar: str) -> Parser:
    parser = _parsers.get(grammar)
    if parser is None:
        if grammar == 'typescript':
            language = Language(tree_sitter_typescript.language_typescript())
        elif grammar == 'tsx':
            language = Language(tree_sitter_typescript.language_tsx())
        elif grammar == 'javascript':
            language = Language(tree_sitter_javascript.language())
        else:
            raise ValueError(f"Unsupported grammar: {grammar}")
        parser = Parser(language)
        _parsers[grammar] = parser
    return parser


def _first_error(node: Node) -> Node:
    for child in node.children:
        if child.type == 'ERROR' or child.is_missing:
            return child
        if child.has_error:
            return _first_error(child)
    return node


def parse_source(source: bytes, file_path: str) -> ParsedSource:
    """
    Parse ``source`` with the grammar chosen by the file extension.

    Raises:
        SourceParseError: If the resulting tree contains syntax errors.
    """
    grammar = grammar_for(file_path)
    tree = get_parser(grammar).parse(source)
    parsed = ParsedSource(source=source, tree=tree, file_path=file_path, grammar=grammar)
    if tree.root_node.has_error:
        error_node = _first_error(tree.root_node)
        location = parsed.location(error_node.start_byte)
        raise SourceParseError(file_path, location.line, location.column)
    return parsed


def decode_js_escapes(raw: str) -> str:
    """Cook the escape sequences of a JS string or template chunk."""
    if '\\' not in raw:
        return raw

    def replace(match: re.Match) -> str:
        escape = match.group(1)
        if escape in _LINE_CONTINUATIONS:
            return ''
        if escape.startswith('u{'):
            code_point = int(escape[2:-1], 16)
            if code_point > sys.maxunicode:
                return match.group(0)
            return chr(code_point)
        if escape.startswith('u') and len(escape) == 5:
            return chr(int(escape[1:], 16))
        if escape.startswith('x') and len(escape) == 3:
            return chr(int(escape[1:], 16))
        return _SIMPLE_ESCAPES.get(escape, escape)

    cooked = _ESCAPE_RE.sub(replace, raw)
    # \uD83D\uDE00 style pairs decode to two surrogates; fold them into one code point.
    folded = cooked.encode('utf-16-le', 'surrogatepass').decode('utf-16-le', 'surrogatepass')
    # Lone surrogates have no UTF-8 form; they stay escaped in the text.
    return _LONE_SURROGATE_RE.sub(lambda m: '\\u%04X' % ord(m.group(0)), folded)


def normalize_jsx_text(raw: str) -> str:
    """Apply JSX whitespace folding: line breaks and their indentation disappear."""
    return _JSX_NEWLINE_RE.sub('', html.unescape(raw))


def unwrap(node: Node) -> Node:
    while node.type in TRANSPARENT_TYPES and node.named_children:
        # <T>value puts the type first.
        node = node.named_children[-1] if node.type == 'type_assertion' else node.named_children[0]
    return node


def string_value(parsed: ParsedSource, node: Node) -> str:
    """Return the runtime value of a ``string`` node."""
    raw = parsed.slice(node.start_byte + 1, node.end_byte - 1)
    if node.parent is not None and node.parent.type == 'jsx_attribute':
        # JSX attribute strings do not process backslash escapes.
        return html.unescape(raw)
    return decode_js_escapes(raw)


def template_parts(parsed: ParsedSource, node: Node) -> Tuple[List[str], List[Node]]:
    """
    Split a ``template_string`` into cooked static chunks and substitution expressions.

    Returns:
        A list with ``len(expressions) + 1`` cooked chunks and the list of expressions.
    """
    chunks: List[str] = []
    expressions: List[Node] = []
    cursor = node.start_byte + 1
    for child in node.named_children:
        if child.type != 'template_substitution':
            continue
        chunks.append(decode_js_escapes(parsed.slice(cursor, child.start_byte)))
        inner = [c for c in child.named_children if c.type != 'comment']
        if inner:
            expressions.append(inner[0])
        cursor = child.end_byte
    chunks.append(decode_js_escapes(parsed.slice(cursor, node.end_byte - 1)))
    return chunks, expressions


def is_tagged_template(node: Node) -> bool:
    parent = node.parent
    return (
        node.type == 'template_string'
        and parent is not None
        and parent.type == 'call_expression'
        and _same(parent.child_by_field_name('arguments'), node)
    )


def callee_name(parsed: ParsedSource, call: Node) -> Optional[str]:
    """Resolve the dotted name of a call target, e.g. ``console.log`` or ``alert``."""
    callee = call.child_by_field_name('function') or call.child_by_field_name('constructor')
    if callee is None:
        return None
    callee = unwrap(callee)
    if callee.type in ('identifier', 'import'):
        return parsed.text(callee)
    if callee.type == 'member_expression':
        obj = callee.child_by_field_name('object')
        prop = callee.child_by_field_name('property')
        prop_name = parsed.text(prop) if prop is not None else ''
        if obj is not None and obj.type == 'identifier':
            return f"{parsed.text(obj)}.{prop_name}"
        return prop_name
    return None


def is_lookup_call(parsed: ParsedSource, node: Node, lookup: LookupStyle) -> bool:
    """True for ``intl.get(...)`` / ``intl.getHTML(...)`` style calls."""
    if node.type != 'call_expression':
        return False
    callee = node.child_by_field_name('function')
    if callee is None or callee.type != 'member_expression':
        return False
    obj = callee.child_by_field_name('object')
    prop = callee.child_by_field_name('property')
    return (
        obj is not None
        and prop is not None
        and obj.type == 'identifier'
        and parsed.text(obj) == lookup.object_name
        and parsed.text(prop) in lookup.methods
    )


def is_translation_call(parsed: ParsedSource, node: Node, lookup: LookupStyle) -> bool:
    """Lookup calls plus bare translation helpers such as ``t('...')``."""
    if is_lookup_call(parsed, node, lookup):
        return True
    if node.type != 'call_expression':
        return False
    callee = node.child_by_field_name('function')
    return (
        callee is not None
        and callee.type == 'identifier'
        and parsed.text(callee) in lookup.translation_functions
    )


def lookup_key(parsed: ParsedSource, node: Node) -> Optional[str]:
    """Key passed as the first argument of a lookup call, if it is a plain string."""
    arguments = node.child_by_field_name('arguments')
    if arguments is None or not arguments.named_children:
        return None
    first = arguments.named_children[0]
    if first.type != 'string':
        return None
    return string_value(parsed, first)


def matches_skip_list(name: Optional[str], skip_list: List[str]) -> bool:
    """
    Check a resolved call name against the skip-list.

    Entries containing a dot match exactly; bare entries also match any
    member of that object (``console`` matches ``console.warn``).
    """
    if not name:
        return False
    for entry in skip_list:
        if '.' in entry:
            if name == entry:
                return True
        elif name == entry or name.startswith(f"{entry}."):
            return True
    return False


def in_runtime_scope(node: Node) -> bool:
    """True when ``node`` only evaluates when some function runs."""
    current = node.parent
    while current is not None:
        if current.type in FUNCTION_TYPES:
            return True
        current = current.parent
    return False


def contains_jsx(node: Node) -> bool:
    stack = [node]
    while stack:
        current = stack.pop()
        if current.type in JSX_ELEMENT_TYPES or current.type == 'jsx_self_closing_element':
            return True
        stack.extend(current.children)
    return False


def is_field(parent: Optional[Node], node: Node, field_name: str) -> bool:
    if parent is None:
        return False
    return any(_same(child, node) for child in parent.children_by_field_name(field_name))


def _same(a: Optional[Node], b: Optional[Node]) -> bool:
    return a is not None and b is not None and a.id == b.id


def js_string_literal(value: str) -> str:
    """Render ``value`` as a single-quoted JS string literal, leaving non-ASCII text as is."""
    escaped = (
        value.replace('\\', '\\\\')
        .replace("'", "\\'")
        .replace('\n', '\\n')
        .replace('\r', '\\r')
        .replace('\u2028', '\\u2028')
        .replace('\u2029', '\\u2029')
    )
    return f"'{escaped}'"
