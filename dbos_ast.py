"""Tree-sitter plumbing shared by the dbos-treesitter analyzers.

Parser construction per file dialect, node classification into the
categories the walker and the detectors dispatch on, and the small set of
navigation helpers every analyzer leans on.
"""

from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import tree_sitter_javascript as tsjs
import tree_sitter_typescript as tsts
from tree_sitter import Language, Parser, Node, Tree

TS_LANG = Language(tsts.language_typescript())
TSX_LANG = Language(tsts.language_tsx())
JS_LANG = Language(tsjs.language())

LANGUAGES: Dict[str, Language] = {
    'typescript': TS_LANG,
    'tsx': TSX_LANG,
    'javascript': JS_LANG,
}

EXTENSION_DIALECTS = {
    '.ts': 'typescript', '.mts': 'typescript', '.cts': 'typescript',
    '.tsx': 'tsx',
    '.js': 'javascript', '.mjs': 'javascript', '.cjs': 'javascript',
    '.jsx': 'javascript',
}


class UnsupportedFileError(ValueError):
    """Raised when no grammar is registered for a file extension."""


def dialect_for_path(file_path: str) -> str:
    ext = Path(file_path).suffix.lower()
    dialect = EXTENSION_DIALECTS.get(ext)
    if dialect is None:
        raise UnsupportedFileError(f"No grammar registered for '{ext}' files ({file_path})")
    return dialect


def parse_source(source_code: str, dialect: str = 'typescript') -> Tree:
    """Parse source text with the grammar for the given dialect."""
    parser = Parser(LANGUAGES[dialect])
    return parser.parse(source_code.encode('utf-8'))


# ============================================================================
# Node Kinds
# ============================================================================

class NodeKind(Enum):
    PROGRAM = "program"
    CLASS = "class"
    FUNCTION = "function"
    INLINE_FUNCTION = "inline function"
    METHOD = "method"
    BLOCK = "block"
    VARIABLE_DECLARATOR = "variable declarator"
    ASSIGNMENT = "assignment"
    UPDATE = "update"
    CALL = "call"
    NEW = "new"
    AWAIT = "await"
    IDENTIFIER = "identifier"
    THIS = "this"
    SUPER = "super"
    STRING = "string"
    NUMBER = "number"
    TEMPLATE = "template"
    BINARY = "binary"
    PARENTHESIZED = "parenthesized"
    MEMBER = "member"
    SUBSCRIPT = "subscript"
    LITERAL = "literal"
    COMMENT = "comment"
    OTHER = "other"


KIND_BY_TYPE: Dict[str, NodeKind] = {
    'program': NodeKind.PROGRAM,
    'class_declaration': NodeKind.CLASS,
    'abstract_class_declaration': NodeKind.CLASS,
    'class': NodeKind.CLASS,
    'function_declaration': NodeKind.FUNCTION,
    'generator_function_declaration': NodeKind.FUNCTION,
    'function_expression': NodeKind.INLINE_FUNCTION,
    'function': NodeKind.INLINE_FUNCTION,
    'generator_function': NodeKind.INLINE_FUNCTION,
    'arrow_function': NodeKind.INLINE_FUNCTION,
    'method_definition': NodeKind.METHOD,
    'statement_block': NodeKind.BLOCK,
    'variable_declarator': NodeKind.VARIABLE_DECLARATOR,
    'assignment_expression': NodeKind.ASSIGNMENT,
    'augmented_assignment_expression': NodeKind.ASSIGNMENT,
    'update_expression': NodeKind.UPDATE,
    'call_expression': NodeKind.CALL,
    'new_expression': NodeKind.NEW,
    'await_expression': NodeKind.AWAIT,
    'identifier': NodeKind.IDENTIFIER,
    'shorthand_property_identifier': NodeKind.IDENTIFIER,
    'shorthand_property_identifier_pattern': NodeKind.IDENTIFIER,
    'this': NodeKind.THIS,
    'super': NodeKind.SUPER,
    'string': NodeKind.STRING,
    'number': NodeKind.NUMBER,
    'template_string': NodeKind.TEMPLATE,
    'binary_expression': NodeKind.BINARY,
    'parenthesized_expression': NodeKind.PARENTHESIZED,
    'member_expression': NodeKind.MEMBER,
    'subscript_expression': NodeKind.SUBSCRIPT,
    'true': NodeKind.LITERAL,
    'false': NodeKind.LITERAL,
    'null': NodeKind.LITERAL,
    'undefined': NodeKind.LITERAL,
    'regex': NodeKind.LITERAL,
    'object': NodeKind.LITERAL,
    'array': NodeKind.LITERAL,
    'comment': NodeKind.COMMENT,
}

LITERAL_KINDS = frozenset({NodeKind.STRING, NodeKind.NUMBER, NodeKind.TEMPLATE, NodeKind.LITERAL})

# Binding-introducing grammar nodes whose body is a lexical function scope
FUNCTION_TYPES = frozenset({
    'function_declaration', 'generator_function_declaration', 'function_expression',
    'function', 'generator_function', 'arrow_function', 'method_definition',
})

IDENTIFIER_TYPES = frozenset({
    'identifier', 'shorthand_property_identifier', 'shorthand_property_identifier_pattern',
})


def kind_of(node: Node) -> NodeKind:
    """Classify a raw grammar node into the category analyzers dispatch on."""
    return KIND_BY_TYPE.get(node.type, NodeKind.OTHER)


# ============================================================================
# AST Helpers
# ============================================================================

def find_nodes(node: Node, type_name: str) -> List[Node]:
    """Find all descendant nodes of a given type, in source order."""
    return [n for n in iter_descendants(node) if n.type == type_name]


def iter_descendants(node: Node) -> Iterator[Node]:
    """Yield every node below (and including) node in source order."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def node_text(node: Node) -> str:
    """Get the source text of a node."""
    return node.text.decode('utf-8') if node.text else ""


def get_node_line(node: Node) -> int:
    """Get 1-based line number."""
    return node.start_point[0] + 1


def get_node_col(node: Node) -> int:
    """Get 0-based column offset."""
    return node.start_point[1]


def get_child_by_type(node: Node, type_name: str) -> Optional[Node]:
    """Get first direct child of a given type."""
    for child in node.children:
        if child.type == type_name:
            return child
    return None


def get_child_by_field(node: Node, field_name: str) -> Optional[Node]:
    """Get child node by tree-sitter field name."""
    return node.child_by_field_name(field_name)


def annotation_of(node: Node, field_name: str = 'type') -> Optional[Node]:
    """Type annotation attached to a declarator, parameter, member or signature."""
    annotation = get_child_by_field(node, field_name)
    if annotation is None and field_name == 'type':
        annotation = get_child_by_type(node, 'type_annotation')
    return annotation


def get_call_args(node: Node) -> List[Node]:
    """Extract argument nodes from a call_expression or new_expression.

    A tagged template (sql`...`) has no argument list and yields nothing.
    """
    args_node = get_child_by_field(node, 'arguments')
    if not args_node or args_node.type != 'arguments':
        return []
    return [c for c in args_node.named_children if c.type != 'comment']


def _is_field(parent: Node, field_name: str, child: Node) -> bool:
    return is_same_node(get_child_by_field(parent, field_name), child)


def get_callee(node: Node) -> Optional[Node]:
    """Callee of a call_expression, with a misparsed `await` peeled off.

    tree-sitter-typescript reads `await a.b<T>(x)` as `(await a.b)<T>(x)`,
    leaving the await as the callee.
    """
    callee = get_child_by_field(node, 'function')
    if callee is not None and callee.type == 'await_expression':
        return first_named_child(callee)
    return callee


def awaited_expression(node: Node) -> Optional[Node]:
    """What an await_expression waits on.

    Normally its operand. When the await was swallowed into a call chain
    (`await a.b<T>(x).c()` parsed as `((await a.b)<T>(x)).c()`), it is the
    outermost call/member chain built on top of the await.
    """
    parent = node.parent
    if parent is None or parent.type != 'call_expression' or not _is_field(parent, 'function', node):
        return first_named_child(node)
    top = parent
    while top.parent is not None:
        up = top.parent
        if up.type == 'member_expression' and _is_field(up, 'object', top):
            top = up
        elif up.type == 'call_expression' and _is_field(up, 'function', top):
            top = up
        elif up.type == 'non_null_expression':
            top = up
        else:
            break
    return top


def named_children(node: Node) -> List[Node]:
    return [c for c in node.named_children if c.type != 'comment']


def first_named_child(node: Node) -> Optional[Node]:
    for child in node.named_children:
        if child.type != 'comment':
            return child
    return None


def is_same_node(a: Optional[Node], b: Optional[Node]) -> bool:
    return a is not None and b is not None and a.id == b.id


def contains(outer: Node, inner: Node) -> bool:
    """True when inner lies within the byte range of outer."""
    return outer.start_byte <= inner.start_byte and inner.end_byte <= outer.end_byte


def unwrap_parentheses(node: Node) -> Node:
    while node.type == 'parenthesized_expression':
        inner = first_named_child(node)
        if inner is None:
            break
        node = inner
    return node


# Expression wrappers whose leftmost operand is their first named child
_LEFTMOST_THROUGH = frozenset({
    'member_expression', 'subscript_expression', 'call_expression',
    'parenthesized_expression', 'non_null_expression', 'as_expression',
    'satisfies_expression', 'array_pattern', 'object_pattern', 'rest_pattern',
    'sequence_expression', 'await_expression',
})


def reduce_to_leftmost(node: Node) -> Node:
    """Reduce `a.b.c`, `f().x` or `(a)[0]` to its leftmost base (`a`, `f`, `a`)."""
    while True:
        if node.type in _LEFTMOST_THROUGH:
            child = first_named_child(node)
        elif node.type == 'new_expression':
            child = get_child_by_field(node, 'constructor')
        elif node.type == 'pair_pattern':
            child = get_child_by_field(node, 'value')
        elif node.type in ('assignment_pattern', 'object_assignment_pattern'):
            child = get_child_by_field(node, 'left')
        else:
            return node
        if child is None:
            return node
        node = child


def leaf_tokens(node: Node) -> Iterator[Node]:
    """Yield the leaf tokens of node, skipping comments."""
    for current in iter_descendants(node):
        if current.type == 'comment':
            continue
        if current.child_count == 0:
            yield current


def joined_token_text(node: Node) -> str:
    """Concatenate the tokens of an expression, so `Math. random` reads `Math.random`."""
    return "".join(node_text(tok) for tok in leaf_tokens(node))


def binding_identifiers(pattern: Node) -> List[Node]:
    """Collect the identifiers a declaration pattern binds.

    Handles plain identifiers and object/array destructuring, including
    defaults (`{a = 1}`), renames (`{a: b}`) and rest elements.
    """
    if pattern.type in IDENTIFIER_TYPES:
        return [pattern]
    results: List[Node] = []
    if pattern.type == 'pair_pattern':
        value = get_child_by_field(pattern, 'value')
        return binding_identifiers(value) if value is not None else results
    if pattern.type in ('assignment_pattern', 'object_assignment_pattern'):
        left = get_child_by_field(pattern, 'left')
        return binding_identifiers(left) if left is not None else results
    if pattern.type in ('object_pattern', 'array_pattern', 'rest_pattern'):
        for child in named_children(pattern):
            results.extend(binding_identifiers(child))
    return results
