"""Symbol and type resolution for TypeScript compilation units.

The analyzers never ask the grammar "what is this name" directly. They go
through a TypeOracle, which answers two questions for a node:

- symbol_of: which declaration does this identifier bind to? Two
  occurrences refer to the same variable exactly when they resolve to the
  same Symbol object, so shadowed names get distinct symbols.
- type_name: what nominal type does this expression have? Declared
  annotations win, then initializers; member accesses are looked up on the
  declaring class/interface with generic arguments substituted.

The oracle is built once per compilation unit and is read-only afterwards.
"""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional, Set, Tuple

from loguru import logger
from tree_sitter import Node, Tree

from dbos_ast import (
    FUNCTION_TYPES, IDENTIFIER_TYPES, annotation_of, binding_identifiers, first_named_child,
    get_callee, get_child_by_field, is_same_node, iter_descendants, named_children, node_text,
    parse_source,
)

# ============================================================================
# Symbols & Scopes
# ============================================================================

BLOCK_SCOPED_KINDS = frozenset({'let', 'const', 'class'})

SCOPE_BLOCK_TYPES = frozenset({
    'statement_block', 'for_statement', 'for_in_statement', 'switch_body',
    'catch_clause', 'class_static_block',
})

CLASS_TYPES = frozenset({'class_declaration', 'abstract_class_declaration', 'class'})

# Identifiers under these parents name exports or type members, not local bindings
_NON_REFERENCE_PARENTS = frozenset({
    'import_specifier', 'export_specifier', 'nested_type_identifier',
    'nested_identifier', 'namespace_export',
})


@dataclass(eq=False)
class Symbol:
    """One declared binding. Compared by identity, never by name."""
    name: str
    kind: str  # let | const | var | param | catch | function | class | import
    scope: 'Scope'
    declarations: List[Node] = field(default_factory=list)

    @property
    def block_scoped(self) -> bool:
        return self.kind in BLOCK_SCOPED_KINDS

    def __repr__(self) -> str:
        return f"Symbol({self.kind} {self.name})"


@dataclass(eq=False)
class Scope:
    node: Node
    kind: str  # module | function | block
    parent: Optional['Scope'] = None
    symbols: Dict[str, Symbol] = field(default_factory=dict)

    def lookup(self, name: str) -> Optional[Symbol]:
        scope: Optional[Scope] = self
        while scope is not None:
            symbol = scope.symbols.get(name)
            if symbol is not None:
                return symbol
            scope = scope.parent
        return None

    def function_scope(self) -> 'Scope':
        scope = self
        while scope.kind == 'block' and scope.parent is not None:
            scope = scope.parent
        return scope


class ScopeIndex:
    """Lexical scopes, declarations and resolved occurrences for one tree."""

    def __init__(self, root: Node):
        self.root = root
        self.module = Scope(root, 'module')
        self.scopes: Dict[int, Scope] = {root.id: self.module}
        self.bindings: Dict[int, Symbol] = {}
        self.references: Dict[int, Symbol] = {}
        self.occurrences: Dict[Symbol, List[Node]] = {}
        self._declare_pass(root, self.module)
        self._resolve_pass()
        for nodes in self.occurrences.values():
            nodes.sort(key=lambda n: n.start_byte)

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def _open(self, node: Node, kind: str, parent: Scope) -> Scope:
        scope = Scope(node, kind, parent)
        self.scopes[node.id] = scope
        return scope

    def _declare(self, scope: Scope, name_node: Node, kind: str) -> Symbol:
        name = node_text(name_node)
        symbol = scope.symbols.get(name)
        if symbol is None:
            symbol = Symbol(name, kind, scope)
            scope.symbols[name] = symbol
        symbol.declarations.append(name_node)
        self.bindings[name_node.id] = symbol
        self.occurrences.setdefault(symbol, []).append(name_node)
        return symbol

    def _declare_pattern(self, scope: Scope, pattern: Optional[Node], kind: str):
        if pattern is None:
            return
        for ident in binding_identifiers(pattern):
            self._declare(scope, ident, kind)

    def _declare_parameter(self, scope: Scope, param: Node):
        if param.type in ('required_parameter', 'optional_parameter'):
            pattern = get_child_by_field(param, 'pattern')
            if pattern is not None and pattern.type != 'this':
                self._declare_pattern(scope, pattern, 'param')
        else:
            # Plain JavaScript parameters are bare patterns
            self._declare_pattern(scope, param, 'param')

    def _declare_pass(self, root: Node, scope: Scope):
        stack: List[Tuple[Node, Scope]] = [(root, scope)]
        while stack:
            node, scope = stack.pop()
            stack.extend(reversed(self._declare_node(node, scope)))

    def _declare_node(self, node: Node, scope: Scope) -> List[Tuple[Node, Scope]]:
        """Record what node declares; return its children with the scope they live in."""
        t = node.type

        if t in FUNCTION_TYPES:
            name = get_child_by_field(node, 'name')
            if name is not None and t in ('function_declaration', 'generator_function_declaration'):
                self._declare(scope, name, 'function')
            fn_scope = self._open(node, 'function', scope)
            if name is not None and t in ('function_expression', 'function', 'generator_function'):
                self._declare(fn_scope, name, 'function')
            params = get_child_by_field(node, 'parameters')
            if params is not None:
                for param in named_children(params):
                    self._declare_parameter(fn_scope, param)
            single = get_child_by_field(node, 'parameter')
            if single is not None:
                self._declare_pattern(fn_scope, single, 'param')
            body = get_child_by_field(node, 'body')
            pending: List[Tuple[Node, Scope]] = []
            for child in node.children:
                if is_same_node(child, body) and child.type == 'statement_block':
                    # Parameters and the top level of the body share one scope
                    self.scopes[child.id] = fn_scope
                    pending.extend((stmt, fn_scope) for stmt in child.children)
                else:
                    pending.append((child, fn_scope))
            return pending

        if t in ('class_declaration', 'abstract_class_declaration'):
            name = get_child_by_field(node, 'name')
            if name is not None:
                self._declare(scope, name, 'class')

        elif t in SCOPE_BLOCK_TYPES:
            block = self._open(node, 'block', scope)
            if t == 'catch_clause':
                self._declare_pattern(block, get_child_by_field(node, 'parameter'), 'catch')
            elif t == 'for_in_statement':
                kind_node = get_child_by_field(node, 'kind')
                kind = node_text(kind_node) if kind_node is not None else ''
                if kind in ('let', 'const'):
                    self._declare_pattern(block, get_child_by_field(node, 'left'), kind)
                elif kind == 'var':
                    self._declare_pattern(block.function_scope(), get_child_by_field(node, 'left'), 'var')
            return [(child, block) for child in node.children]

        elif t == 'lexical_declaration':
            kind_node = get_child_by_field(node, 'kind')
            kind = node_text(kind_node) if kind_node is not None else node_text(node.children[0])
            for decl in named_children(node):
                if decl.type == 'variable_declarator':
                    self._declare_pattern(scope, get_child_by_field(decl, 'name'), kind)

        elif t == 'variable_declaration':
            target = scope.function_scope()
            for decl in named_children(node):
                if decl.type == 'variable_declarator':
                    self._declare_pattern(target, get_child_by_field(decl, 'name'), 'var')

        elif t == 'import_statement':
            self._declare_imports(node)

        return [(child, scope) for child in node.children]

    def _declare_imports(self, node: Node):
        for sub in iter_descendants(node):
            if sub.type == 'import_specifier':
                local = get_child_by_field(sub, 'alias') or get_child_by_field(sub, 'name')
                if local is not None and local.type == 'identifier':
                    self._declare(self.module, local, 'import')
            elif sub.type == 'namespace_import':
                ident = first_named_child(sub)
                if ident is not None and ident.type == 'identifier':
                    self._declare(self.module, ident, 'import')
            elif sub.type == 'import_clause':
                for child in sub.named_children:
                    if child.type == 'identifier':
                        self._declare(self.module, child, 'import')

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    def _resolve_pass(self):
        stack: List[Tuple[Node, Scope]] = [(self.root, self.module)]
        while stack:
            node, scope = stack.pop()
            own = self.scopes.get(node.id)
            if own is not None:
                scope = own
            if node.type in IDENTIFIER_TYPES and node.id not in self.bindings:
                parent = node.parent
                if parent is None or parent.type not in _NON_REFERENCE_PARENTS:
                    symbol = scope.lookup(node_text(node))
                    if symbol is not None:
                        self.references[node.id] = symbol
                        self.occurrences[symbol].append(node)
            for child in reversed(node.children):
                stack.append((child, scope))

    def symbol_of(self, node: Node) -> Optional[Symbol]:
        return self.bindings.get(node.id) or self.references.get(node.id)


# ============================================================================
# Types
# ============================================================================

@dataclass(frozen=True)
class TypeRef:
    """A nominal type: a symbol-backed name plus generic arguments."""
    name: str
    args: Tuple['TypeRef', ...] = ()

    def __str__(self) -> str:
        if not self.args:
            return self.name
        return f"{self.name}<{', '.join(str(a) for a in self.args)}>"


ANY = TypeRef('any')
STRING = TypeRef('string')
NUMBER = TypeRef('number')
BOOLEAN = TypeRef('boolean')

_METHOD_MEMBER_TYPES = frozenset({'method_definition', 'method_signature', 'abstract_method_signature'})
_ARITHMETIC_OPERATORS = frozenset({'-', '*', '/', '%', '**', '&', '|', '^', '<<', '>>', '>>>'})
_COMPARISON_OPERATORS = frozenset({
    '==', '===', '!=', '!==', '<', '<=', '>', '>=', 'instanceof', 'in',
})
_LITERAL_TYPES = {
    'string': STRING, 'template_string': STRING, 'number': NUMBER,
    'true': BOOLEAN, 'false': BOOLEAN, 'null': TypeRef('null'),
    'undefined': TypeRef('undefined'), 'regex': TypeRef('RegExp'),
    'object': TypeRef('__object'), 'array': TypeRef('Array'),
    'arrow_function': TypeRef('__function'), 'function_expression': TypeRef('__function'),
    'function': TypeRef('__function'),
}

MAX_HERITAGE_DEPTH = 8


@dataclass
class TypeDecl:
    """A class or interface declaration, reduced to what member lookup needs."""
    name: str
    node: Node
    type_params: List[str] = field(default_factory=list)
    members: Dict[str, Node] = field(default_factory=dict)
    bases: List[Node] = field(default_factory=list)


# Declarations of the DBOS SDK context types, used when the analyzed unit
# imports them instead of declaring them.
AMBIENT_DECLARATIONS = """
interface DBOSLogger {
  info(message: unknown): void;
  debug(message: unknown): void;
  warn(message: unknown): void;
  error(message: unknown): void;
}
interface DBOSContext {
  readonly request: HTTPRequest;
  readonly workflowUUID: string;
  readonly authenticatedUser: string;
  readonly logger: DBOSLogger;
}
interface WorkflowContext extends DBOSContext {
  invoke<T>(targetClass: T): T;
  childWorkflow<R>(wf: unknown, ...args: unknown[]): Promise<WorkflowHandle<R>>;
  send<T>(destinationUUID: string, message: T, topic?: string): Promise<void>;
  recv<T>(topic?: string, timeoutSeconds?: number): Promise<T | null>;
  setEvent<T>(key: string, value: T): Promise<void>;
  getEvent<T>(workflowUUID: string, key: string, timeoutSeconds?: number): Promise<T | null>;
  sleep(durationSec: number): Promise<void>;
  sleepms(durationMS: number): Promise<void>;
}
interface TransactionContext<T extends UserDatabaseClient> extends DBOSContext {
  readonly client: T;
}
interface StoredProcedureContext extends DBOSContext {
  query<R>(sql: string, ...params: unknown[]): Promise<R>;
}
interface CommunicatorContext extends DBOSContext {
  readonly retriesAllowed: boolean;
  readonly maxAttempts: number;
}
interface StepContext extends CommunicatorContext {}
interface HandlerContext extends DBOSContext {
  invoke<T>(targetClass: T): T;
}
"""


@lru_cache(maxsize=1)
def _ambient_tree() -> Tree:
    return parse_source(AMBIENT_DECLARATIONS, 'typescript')


def _short_type_name(node: Node) -> str:
    if node.type == 'nested_type_identifier':
        name = get_child_by_field(node, 'name')
        return node_text(name) if name is not None else node_text(node)
    return node_text(node)


def _plus_operands(node: Node) -> List[Node]:
    """Operands of a left-nested `a + b + c` chain, in source order."""
    rights: List[Node] = []
    while True:
        left = get_child_by_field(node, 'left')
        right = get_child_by_field(node, 'right')
        if right is not None:
            rights.append(right)
        op = get_child_by_field(left, 'operator') if left is not None and left.type == 'binary_expression' else None
        if op is None or node_text(op) != '+':
            break
        node = left
    return ([left] if left is not None else []) + rights[::-1]


def collect_type_declarations(root: Node) -> Dict[str, TypeDecl]:
    """Index class and interface declarations by name."""
    decls: Dict[str, TypeDecl] = {}
    for node in iter_descendants(root):
        if node.type not in ('class_declaration', 'abstract_class_declaration', 'interface_declaration'):
            continue
        name = get_child_by_field(node, 'name')
        if name is None:
            continue
        decl = TypeDecl(name=node_text(name), node=node)
        type_params = get_child_by_field(node, 'type_parameters')
        if type_params is not None:
            for param in named_children(type_params):
                pname = get_child_by_field(param, 'name')
                if pname is not None:
                    decl.type_params.append(node_text(pname))
        body = get_child_by_field(node, 'body')
        if body is not None:
            _collect_members(body, decl)
        for child in node.named_children:
            if child.type in ('class_heritage', 'extends_type_clause', 'extends_clause'):
                decl.bases.extend(_heritage_types(child))
        decls.setdefault(decl.name, decl)
    return decls


def _collect_members(body: Node, decl: TypeDecl):
    for member in named_children(body):
        if member.type in ('public_field_definition', 'property_signature') or member.type in _METHOD_MEMBER_TYPES:
            name = get_child_by_field(member, 'name')
            if name is None:
                continue
            member_name = node_text(name)
            if member.type == 'method_definition' and member_name == 'constructor':
                _collect_parameter_properties(member, decl)
                continue
            decl.members.setdefault(member_name, member)


def _collect_parameter_properties(ctor: Node, decl: TypeDecl):
    """`constructor(readonly client: Knex)` declares a `client` member."""
    params = get_child_by_field(ctor, 'parameters')
    if params is None:
        return
    for param in named_children(params):
        if param.type not in ('required_parameter', 'optional_parameter'):
            continue
        is_property = any(
            c.type in ('accessibility_modifier', 'readonly', 'override_modifier')
            for c in param.children
        )
        pattern = get_child_by_field(param, 'pattern')
        if is_property and pattern is not None and pattern.type == 'identifier':
            decl.members.setdefault(node_text(pattern), param)


def _heritage_types(clause: Node) -> List[Node]:
    """Type nodes named in an extends/implements clause."""
    results: List[Node] = []
    for child in clause.named_children:
        if child.type in ('extends_clause', 'implements_clause'):
            results.extend(_heritage_types(child))
        elif child.type in ('type_identifier', 'generic_type', 'nested_type_identifier',
                            'identifier', 'member_expression'):
            results.append(child)
    return results


# ============================================================================
# TypeOracle
# ============================================================================

class TypeOracle:
    """Read-only type and symbol queries over one compilation unit."""

    def __init__(self, root: Node):
        self.root = root
        self.index = ScopeIndex(root)
        self.type_decls = collect_type_declarations(root)
        self.ambient_decls = collect_type_declarations(_ambient_tree().root_node)
        self._type_cache: Dict[int, TypeRef] = {}
        self._in_progress: Set[int] = set()
        logger.debug(
            f"type oracle ready: {len(self.index.occurrences)} symbols, "
            f"{len(self.type_decls)} local type declarations"
        )

    # ------------------------------------------------------------------
    # Symbols
    # ------------------------------------------------------------------

    def symbol_of(self, node: Node) -> Optional[Symbol]:
        return self.index.symbol_of(node)

    def occurrences(self, symbol: Symbol) -> List[Node]:
        return self.index.occurrences.get(symbol, [])

    def is_binding(self, node: Node) -> bool:
        """True when node is the declaring occurrence of its symbol."""
        return node.id in self.index.bindings

    # ------------------------------------------------------------------
    # Types
    # ------------------------------------------------------------------

    def type_name(self, node: Node) -> str:
        return self.type_of(node).name

    def type_of(self, node: Node) -> TypeRef:
        cached = self._type_cache.get(node.id)
        if cached is not None:
            return cached
        if node.id in self._in_progress:
            return ANY
        self._in_progress.add(node.id)
        try:
            result = self._compute_type(node)
        finally:
            self._in_progress.discard(node.id)
        self._type_cache[node.id] = result
        return result

    def _compute_type(self, node: Node) -> TypeRef:
        t = node.type
        if t in _LITERAL_TYPES:
            return _LITERAL_TYPES[t]
        if t in IDENTIFIER_TYPES or t == 'type_identifier':
            symbol = self.symbol_of(node)
            return self._symbol_type(symbol) if symbol is not None else ANY
        if t == 'this':
            cls = self.enclosing_class(node)
            name = get_child_by_field(cls, 'name') if cls is not None else None
            return TypeRef(node_text(name)) if name is not None else ANY
        if t == 'member_expression':
            obj = get_child_by_field(node, 'object')
            prop = get_child_by_field(node, 'property')
            if obj is None or prop is None:
                return ANY
            return self.member_type(self.type_of(obj), node_text(prop))
        if t == 'call_expression':
            return self._call_type(node)
        if t == 'new_expression':
            ctor = get_child_by_field(node, 'constructor')
            if ctor is None:
                return ANY
            if ctor.type == 'member_expression':
                prop = get_child_by_field(ctor, 'property')
                ctor_name = node_text(prop) if prop is not None else node_text(ctor)
            else:
                ctor_name = node_text(ctor)
            type_args = get_child_by_field(node, 'type_arguments')
            args = tuple(self.from_annotation(a) for a in named_children(type_args)) if type_args else ()
            return TypeRef(ctor_name, args)
        if t == 'await_expression':
            inner = first_named_child(node)
            awaited = self.type_of(inner) if inner is not None else ANY
            if awaited.name == 'Promise' and awaited.args:
                return awaited.args[0]
            return awaited
        if t in ('parenthesized_expression', 'non_null_expression'):
            inner = first_named_child(node)
            return self.type_of(inner) if inner is not None else ANY
        if t in ('as_expression', 'satisfies_expression'):
            parts = named_children(node)
            return self.from_annotation(parts[-1]) if len(parts) == 2 else ANY
        if t == 'binary_expression':
            return self._binary_type(node)
        return ANY

    def _binary_type(self, node: Node) -> TypeRef:
        op_node = get_child_by_field(node, 'operator')
        op = node_text(op_node) if op_node is not None else ''
        if op in _COMPARISON_OPERATORS:
            return BOOLEAN
        if op in _ARITHMETIC_OPERATORS:
            return NUMBER
        if op == '+':
            sides = [self.type_of(s) for s in _plus_operands(node)]
            if any(s == STRING for s in sides):
                return STRING
            if sides and all(s == NUMBER for s in sides):
                return NUMBER
        return ANY

    def _call_type(self, node: Node) -> TypeRef:
        callee = get_callee(node)
        if callee is None:
            return ANY
        if callee.type == 'identifier':
            symbol = self.symbol_of(callee)
            if symbol is None or symbol.kind != 'function':
                return ANY
            for decl_name in symbol.declarations:
                fn = decl_name.parent
                ret = annotation_of(fn, 'return_type') if fn is not None else None
                if ret is not None:
                    return self.from_annotation(ret)
            return ANY
        if callee.type == 'member_expression':
            obj = get_child_by_field(callee, 'object')
            prop = get_child_by_field(callee, 'property')
            if obj is None or prop is None:
                return ANY
            found = self._find_member(self.type_of(obj), node_text(prop), 0)
            if found is None:
                return ANY
            member, bindings = found
            ret = annotation_of(member, 'return_type')
            if ret is not None:
                return self.from_annotation(ret, bindings)
        return ANY

    def _symbol_type(self, symbol: Symbol) -> TypeRef:
        if symbol.kind in ('function', 'class', 'import'):
            return TypeRef(symbol.name)
        initializers: List[Node] = []
        for decl_name in symbol.declarations:
            holder = decl_name.parent
            if holder is None:
                continue
            if holder.type in ('variable_declarator', 'required_parameter', 'optional_parameter'):
                name_field = 'name' if holder.type == 'variable_declarator' else 'pattern'
                if not is_same_node(get_child_by_field(holder, name_field), decl_name):
                    continue  # bound inside a destructuring pattern
                annotation = annotation_of(holder)
                if annotation is not None:
                    return self.from_annotation(annotation)
                value = get_child_by_field(holder, 'value')
                if value is not None:
                    initializers.append(value)
        for value in initializers:
            inferred = self.type_of(value)
            if inferred != ANY:
                return inferred
        return ANY

    def from_annotation(self, node: Node, bindings: Optional[Dict[str, TypeRef]] = None) -> TypeRef:
        """Convert a type annotation node into a TypeRef, substituting type parameters."""
        bindings = bindings or {}
        while node.type in ('type_annotation', 'parenthesized_type', 'type_arguments'):
            inner = first_named_child(node)
            if inner is None:
                return ANY
            node = inner
        t = node.type
        if t == 'type_identifier':
            text = node_text(node)
            return bindings.get(text, TypeRef(text))
        if t == 'nested_type_identifier':
            return TypeRef(_short_type_name(node))
        if t == 'generic_type':
            name = get_child_by_field(node, 'name') or first_named_child(node)
            type_args = get_child_by_field(node, 'type_arguments')
            args = tuple(self.from_annotation(a, bindings) for a in named_children(type_args)) if type_args else ()
            return TypeRef(_short_type_name(name) if name is not None else 'any', args)
        if t == 'predefined_type':
            return TypeRef(node_text(node))
        if t in ('identifier', 'member_expression'):
            # Heritage clauses name their base as an expression
            prop = get_child_by_field(node, 'property') if t == 'member_expression' else None
            return TypeRef(node_text(prop if prop is not None else node))
        return TypeRef(" ".join(node_text(node).split()))

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def lookup_type_decl(self, name: str) -> Optional[TypeDecl]:
        return self.type_decls.get(name) or self.ambient_decls.get(name)

    def member_type(self, owner: TypeRef, member: str) -> TypeRef:
        found = self._find_member(owner, member, 0)
        if found is None:
            return ANY
        node, bindings = found
        if node.type in _METHOD_MEMBER_TYPES:
            return TypeRef(member)
        annotation = annotation_of(node)
        if annotation is not None:
            return self.from_annotation(annotation, bindings)
        value = get_child_by_field(node, 'value')
        if value is not None:
            return self.type_of(value)
        return ANY

    def _find_member(self, owner: TypeRef, member: str,
                     depth: int) -> Optional[Tuple[Node, Dict[str, TypeRef]]]:
        if depth > MAX_HERITAGE_DEPTH or owner == ANY:
            return None
        decl = self.lookup_type_decl(owner.name)
        if decl is None:
            return None
        bindings = dict(zip(decl.type_params, owner.args))
        node = decl.members.get(member)
        if node is not None:
            return node, bindings
        for base_node in decl.bases:
            base = self.from_annotation(base_node, bindings)
            if base_node.type in ('identifier', 'member_expression'):
                type_args = base_node.next_named_sibling
                if type_args is not None and type_args.type == 'type_arguments':
                    base = TypeRef(base.name, tuple(
                        self.from_annotation(a, bindings) for a in named_children(type_args)))
            found = self._find_member(base, member, depth + 1)
            if found is not None:
                return found
        return None

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def enclosing_class(self, node: Node) -> Optional[Node]:
        current = node.parent
        while current is not None:
            if current.type in CLASS_TYPES:
                return current
            current = current.parent
        return None

    def close(self):
        """Drop per-unit caches once the unit has been analyzed."""
        self._type_cache.clear()
        self._in_progress.clear()
