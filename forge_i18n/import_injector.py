"""Makes sure a rewritten file can reach the lookup object."""
import logging
from typing import List, Optional

from tree_sitter import Node

from forge_i18n.syntax_tree import LookupStyle, ParsedSource, string_value
from forge_i18n.value_extractor import Edit

logger = logging.getLogger(__name__)


def _import_source(parsed: ParsedSource, statement: Node) -> Optional[str]:
    source = statement.child_by_field_name('source')
    if source is None or source.type != 'string':
        return None
    return string_value(parsed, source)


def _import_clause(statement: Node) -> Optional[Node]:
    for child in statement.named_children:
        if child.type == 'import_clause':
            return child
    return None


def _is_type_only(statement: Node) -> bool:
    return any(child.type == 'type' for child in statement.children)


def _default_binding(parsed: ParsedSource, clause: Node) -> Optional[str]:
    for child in clause.named_children:
        if child.type == 'identifier':
            return parsed.text(child)
    return None


def _top_level_imports(parsed: ParsedSource) -> List[Node]:
    return [child for child in parsed.root.named_children if child.type == 'import_statement']


def _binds_alias(parsed: ParsedSource, name: str, alias: str) -> bool:
    """True if the module already declares ``const <name> = <alias>`` at top level."""
    for statement in parsed.root.named_children:
        if statement.type not in ('lexical_declaration', 'variable_declaration'):
            continue
        for declarator in statement.named_children:
            if declarator.type != 'variable_declarator':
                continue
            target = declarator.child_by_field_name('name')
            value = declarator.child_by_field_name('value')
            if target is not None and value is not None and parsed.text(target) == name \
                    and parsed.text(value) == alias:
                return True
    return False


def _terminator(imports: List[Node], parsed: ParsedSource) -> str:
    """Follow the file's own style: end the new statement with ';' if its imports do."""
    if imports and parsed.text(imports[0]).rstrip().endswith(';'):
        return ';'
    return ''


def _prologue_end(parsed: ParsedSource) -> Optional[int]:
    """End of the hashbang line and directive prologue, or None if the file has neither."""
    end = None
    for child in parsed.root.children:
        if child.type == 'hash_bang_line':
            end = child.end_byte
            continue
        if child.type == 'expression_statement' and child.named_children \
                and child.named_children[0].type == 'string':
            end = child.end_byte
            continue
        if child.type == 'comment':
            continue
        break
    return end


def ensure_lookup_import(parsed: ParsedSource, lookup: LookupStyle) -> List[Edit]:
    """
    Edits that bring ``lookup.object_name`` into scope, if it is not already.

    An existing import of ``lookup.module`` is reused: a default import under
    another name gets an alias declaration, an import without a default
    binding gets one, and a bare side-effect import is turned into a default
    import. Otherwise a new import is placed after the hashbang and directives.
    """
    name = lookup.object_name
    imports = _top_level_imports(parsed)
    semicolon = _terminator(imports, parsed)

    for statement in imports:
        clause = _import_clause(statement)
        if clause is not None and _default_binding(parsed, clause) == name:
            return []

    for statement in imports:
        if _is_type_only(statement) or _import_source(parsed, statement) != lookup.module:
            continue
        clause = _import_clause(statement)
        if clause is None:
            source = statement.child_by_field_name('source')
            logger.debug("Turning side-effect import of %s into a default import in %s",
                         lookup.module, parsed.file_path)
            return [Edit(source.start_byte, source.start_byte, f"{name} from ")]
        alias = _default_binding(parsed, clause)
        if alias is None:
            return [Edit(clause.start_byte, clause.start_byte, f"{name}, ")]
        if _binds_alias(parsed, name, alias):
            return []
        return [Edit(statement.end_byte, statement.end_byte, f"\nconst {name} = {alias}{semicolon}")]

    statement = f"import {name} from '{lookup.module}'{semicolon}"
    position = _prologue_end(parsed)
    if position is None:
        return [Edit(0, 0, f"{statement}\n")]
    return [Edit(position, position, f"\n{statement}")]
