"""
dbos_rules - Determinism and SQL-injection analysis for DBOS functions
======================================================================
The analysis behind the `dbos-static-analysis` rule.

Functions decorated as workflows must be deterministic so they can be
replayed: they may not mutate globals, call clock/random/IO helpers, or
await anything other than a workflow context. Code that reaches a raw-query
client must build its query strings from literals only.

Flow per compilation unit:
    analyze_source -> analysis_context (binds oracle + sink + policy)
        -> ScopeWalker over the module, each function and each class method
            -> checkers for the enclosing function's category, per node
                -> DiagnosticSink.report
"""

import re
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterator, List, Mapping, Optional, Set

from loguru import logger
from tree_sitter import Node, Tree

from dbos_ast import (
    IDENTIFIER_TYPES, LITERAL_KINDS, NodeKind, awaited_expression, binding_identifiers, contains,
    dialect_for_path, first_named_child, get_call_args, get_callee, get_child_by_field,
    get_node_col, get_node_line, is_same_node, joined_token_text, kind_of,
    node_text, parse_source, reduce_to_leftmost, unwrap_parentheses,
)
from dbos_types import SCOPE_BLOCK_TYPES, Symbol, TypeOracle

RULE_NAME = "dbos-static-analysis"
RULE_DESCRIPTION = "Analyze DBOS applications to make sure they run reliably (e.g. determinism checking)"


# ============================================================================
# Errors
# ============================================================================

class LintError(Exception):
    """Base class for dbos-treesitter errors."""


class AnalysisError(LintError):
    """A structural assumption about the AST did not hold for one query."""


# ============================================================================
# Enums & Data Classes
# ============================================================================

class Severity(Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


SEVERITY_ORDER = {
    Severity.CRITICAL: 4, Severity.HIGH: 3,
    Severity.MEDIUM: 2, Severity.LOW: 1,
}


class RuleCategory(Enum):
    GLOBAL_MUTATION = "globalMutation"
    SQL_INJECTION = "sqlInjection"
    BANNED_CALL = "bannedCall"
    AWAIT_NOT_ALLOWED = "awaitNotAllowed"
    INTERNAL_ERROR = "internalAnalysisError"


CATEGORY_SEVERITY = {
    RuleCategory.SQL_INJECTION: Severity.CRITICAL,
    RuleCategory.GLOBAL_MUTATION: Severity.HIGH,
    RuleCategory.AWAIT_NOT_ALLOWED: Severity.MEDIUM,
    RuleCategory.BANNED_CALL: Severity.MEDIUM,
    RuleCategory.INTERNAL_ERROR: Severity.LOW,
}


@dataclass(frozen=True)
class ArgCountRange:
    """Inclusive argument-count range; max_args None means unbounded."""
    min_args: int = 0
    max_args: Optional[int] = None

    def contains(self, count: int) -> bool:
        if count < self.min_args:
            return False
        return self.max_args is None or count <= self.max_args


DEFAULT_BANNED_CALLS: Dict[str, ArgCountRange] = {
    'Date': ArgCountRange(0, 0),
    'Date.now': ArgCountRange(0, 0),
    'Math.random': ArgCountRange(0, 0),
    'console.log': ArgCountRange(0, None),
    'setTimeout': ArgCountRange(1, None),
    'bcrypt.hash': ArgCountRange(3, 3),
    'bcrypt.compare': ArgCountRange(3, 3),
}

# Receiver type -> methods that take a raw SQL string
DEFAULT_SQL_CLIENTS: Dict[str, FrozenSet[str]] = {
    'Knex': frozenset({'raw'}),
    'PrismaClient': frozenset({'$queryRawUnsafe', '$executeRawUnsafe'}),
    'PoolClient': frozenset({'query'}),
    'TypeORMEntityManager': frozenset({'query'}),
}


@dataclass(frozen=True)
class Policy:
    """The fixed tables the detectors consult. Built once, never mutated."""
    deterministic_decorators: FrozenSet[str] = frozenset({'Workflow'})
    transactional_decorators: FrozenSet[str] = frozenset({'Transaction'})
    awaitable_types: FrozenSet[str] = frozenset({'WorkflowContext'})
    banned_calls: Mapping[str, ArgCountRange] = field(default_factory=lambda: dict(DEFAULT_BANNED_CALLS))
    sql_clients: Mapping[str, FrozenSet[str]] = field(default_factory=lambda: dict(DEFAULT_SQL_CLIENTS))
    # A call that passes a workflow context along is presumed to be a deterministic helper
    ignore_awaits_with_context_param: bool = True
    scan_unannotated_for_injection: bool = True
    check_all_query_arguments: bool = False

    def with_overrides(self, **changes) -> 'Policy':
        return replace(self, **changes)


DEFAULT_POLICY = Policy()


@dataclass
class CheckResult:
    """What a checker hands back for one node."""
    message_id: str
    category: RuleCategory
    format_data: Dict[str, object] = field(default_factory=dict)
    root: Optional[Node] = None
    taint_chain: List[str] = field(default_factory=list)


@dataclass
class Diagnostic:
    """One flagged defect, positioned in the analyzed file."""
    file_path: str
    line_number: int
    col_offset: int
    line_content: str
    message_id: str
    category: RuleCategory
    severity: Severity
    message: str
    format_data: Dict[str, object] = field(default_factory=dict)
    source: Optional[str] = None
    source_line: Optional[int] = None
    source_col: Optional[int] = None
    taint_chain: List[str] = field(default_factory=list)
    cwe_id: str = ""


# ============================================================================
# Message Catalog
# ============================================================================

def _date_message(banned_call: str) -> str:
    return (f"Calling {banned_call} is banned "
            "(consider using `@dbos-inc/communicator-datetime` for consistency and testability)")


_AWAIT_MESSAGE = (
    "The enclosing workflow makes an asynchronous call to a non-DBOS function. "
    "Please verify that this call is deterministic or it may lead to non-reproducible behavior"
)

_BCRYPT_MESSAGE = (
    "Avoid using `bcrypt`, which contains native code. Instead, use `bcryptjs`. "
    "Also, some `bcrypt` functions generate random data and should only be called from communicators"
)

MESSAGES: Dict[str, str] = {
    'sqlInjection': (
        "Possible SQL injection detected. The parameter to the query call site traces back "
        "to the nonliteral on line {{ lineNumber }}: '{{ theExpression }}'"
    ),
    'globalMutation': (
        "Deterministic DBOS operations (e.g. workflow code) should not mutate global variables; "
        "it can lead to non-reproducible behavior"
    ),
    'awaitNotAllowed': _AWAIT_MESSAGE,
    'Date': _date_message("`Date()` or `new Date()`"),
    'Date.now': _date_message("`Date.now()`"),
    'Math.random': (
        "Avoid calling `Math.random()` directly; it can lead to non-reproducible behavior. "
        "See `@dbos-inc/communicator-random`"
    ),
    'console.log': (
        "Avoid calling `console.log` directly; the DBOS logger, `ctxt.logger.info`, is recommended."
    ),
    'setTimeout': "Avoid calling `setTimeout()` directly; it can lead to undesired behavior when debugging",
    'bcrypt.hash': _BCRYPT_MESSAGE,
    'bcrypt.compare': _BCRYPT_MESSAGE,
    'internalAnalysisError': "Static analysis could not finish for this expression: {{ reason }}",
}

BANNED_CALL_FALLBACK = (
    "Calling `{{ name }}` is banned in deterministic code; it can lead to non-reproducible behavior"
)

_PLACEHOLDER_RE = re.compile(r'\{\{\s*(\w+)\s*\}\}')


def format_message(template: str, data: Mapping[str, object]) -> str:
    """Fill `{{ name }}` placeholders; unknown placeholders are left as written."""
    def _sub(match):
        key = match.group(1)
        return str(data[key]) if key in data else match.group(0)
    return _PLACEHOLDER_RE.sub(_sub, template)


def message_template(message_id: str) -> str:
    return MESSAGES.get(message_id, BANNED_CALL_FALLBACK)


def rule_catalog(policy: Policy = DEFAULT_POLICY) -> Dict[str, str]:
    """Message id -> template for every diagnostic the policy can produce."""
    catalog = dict(MESSAGES)
    for name in policy.banned_calls:
        catalog.setdefault(name, BANNED_CALL_FALLBACK.replace('{{ name }}', name))
    return catalog


# ============================================================================
# Diagnostic Sink & Analysis Context
# ============================================================================

class DiagnosticSink:
    """Collects the diagnostics reported for one compilation unit."""

    def __init__(self, file_path: str, source_lines: List[str]):
        self.file_path = file_path
        self.source_lines = source_lines
        self.diagnostics: List[Diagnostic] = []

    def line_content(self, line_num: int) -> str:
        if 0 < line_num <= len(self.source_lines):
            return self.source_lines[line_num - 1].strip()
        return ""

    def report(self, node: Node, message_id: str, format_data: Optional[Dict[str, object]] = None,
               category: Optional[RuleCategory] = None, root: Optional[Node] = None,
               taint_chain: Optional[List[str]] = None):
        format_data = dict(format_data or {})
        if category is None:
            category = RuleCategory(message_id)
        if category is RuleCategory.BANNED_CALL:
            format_data.setdefault('name', message_id)
        line = get_node_line(node)
        diag = Diagnostic(
            file_path=self.file_path,
            line_number=line,
            col_offset=get_node_col(node),
            line_content=self.line_content(line),
            message_id=message_id,
            category=category,
            severity=CATEGORY_SEVERITY[category],
            message=format_message(message_template(message_id), format_data),
            format_data=format_data,
            taint_chain=list(taint_chain or []),
        )
        if root is not None:
            diag.source = node_text(root)
            diag.source_line = get_node_line(root)
            diag.source_col = get_node_col(root)
        if category is RuleCategory.SQL_INJECTION:
            diag.cwe_id = "CWE-89"
        self.diagnostics.append(diag)


@dataclass
class AnalysisContext:
    """Everything one compilation unit's analysis needs, passed explicitly."""
    tree: Tree
    file_path: str
    oracle: Optional[TypeOracle]
    sink: DiagnosticSink
    policy: Policy = DEFAULT_POLICY

    @property
    def root(self) -> Node:
        return self.tree.root_node

    def checkers_for(self, fn: Optional[Node]) -> List['Checker']:
        """Pick the checkers that apply inside fn (None for module-level code).

        Module-level code is always scanned for injection; unannotated
        functions only while the policy asks for it.
        """
        if fn is None:
            return [is_sql_injection]
        names = decorator_names(fn)
        checkers: List[Checker] = []
        if any(name in self.policy.deterministic_decorators for name in names):
            checkers.extend(DETERMINISM_CHECKERS)
        transactional = any(name in self.policy.transactional_decorators for name in names)
        if transactional or self.policy.scan_unannotated_for_injection:
            checkers.append(is_sql_injection)
        return checkers

    def report(self, node: Node, result: CheckResult):
        self.sink.report(node, result.message_id, result.format_data,
                         category=result.category, root=result.root,
                         taint_chain=result.taint_chain)

    def close(self):
        if self.oracle is not None:
            self.oracle.close()
        self.oracle = None


@contextmanager
def analysis_context(tree: Tree, source_code: str, file_path: str,
                     policy: Policy = DEFAULT_POLICY,
                     sink: Optional[DiagnosticSink] = None) -> Iterator[AnalysisContext]:
    """Bind oracle, sink and policy for one unit; always released on exit."""
    sink = sink if sink is not None else DiagnosticSink(file_path, source_code.splitlines())
    ctx = AnalysisContext(tree=tree, file_path=file_path, oracle=TypeOracle(tree.root_node),
                          sink=sink, policy=policy)
    try:
        yield ctx
    finally:
        ctx.close()


# ============================================================================
# Annotations
# ============================================================================

def _decorator_name(decorator: Node) -> str:
    expr = first_named_child(decorator)
    if expr is None:
        return ""
    if expr.type == 'call_expression':
        expr = get_child_by_field(expr, 'function') or expr
    expr = unwrap_parentheses(expr)
    if expr.type == 'member_expression':
        prop = get_child_by_field(expr, 'property')
        return node_text(prop) if prop is not None else node_text(expr)
    return node_text(expr)


def decorator_names(fn: Node) -> List[str]:
    """Names of the decorators on a method (`@Workflow()` -> `Workflow`).

    TypeScript puts method decorators in the class body right before the
    method; JavaScript keeps them as children of the method itself.
    """
    decorators = [c for c in fn.children if c.type == 'decorator']
    parent = fn.parent
    if parent is not None and parent.type == 'class_body':
        sibling = fn.prev_named_sibling
        while sibling is not None and sibling.type in ('decorator', 'comment'):
            if sibling.type == 'decorator':
                decorators.append(sibling)
            sibling = sibling.prev_named_sibling
    return [_decorator_name(d) for d in decorators]


def has_annotation(fn: Node, names: FrozenSet[str]) -> bool:
    return any(name in names for name in decorator_names(fn))


# ============================================================================
# Determinism Checkers
# ============================================================================

Checker = Callable[[Node, 'ScopeWalker'], Optional[CheckResult]]


def mutates_global_variable(node: Node, walker: 'ScopeWalker') -> Optional[CheckResult]:
    """Flag assignments whose base binding lives outside the current function.

    `a.b.c = x` is reduced to `a`. Writes through `this` are treated as local.
    `a = 1, b = 2` and `z = [y, y = z][0]` are separate assignment nodes and
    are judged one by one.
    """
    if node.type in ('assignment_expression', 'augmented_assignment_expression'):
        target = get_child_by_field(node, 'left')
    elif node.type == 'update_expression':
        target = get_child_by_field(node, 'argument')
    else:
        return None

    if target is None:
        raise AnalysisError(f"assignment without a target: '{node_text(node)}'")

    base = reduce_to_leftmost(unwrap_parentheses(target))
    if base.type not in IDENTIFIER_TYPES:
        return None
    if walker.is_local(walker.ctx.oracle.symbol_of(base)):
        return None
    return CheckResult('globalMutation', RuleCategory.GLOBAL_MUTATION)


def calls_banned_function(node: Node, walker: 'ScopeWalker') -> Optional[CheckResult]:
    if node.type == 'call_expression':
        callee = get_callee(node)
    elif node.type == 'new_expression':
        callee = get_child_by_field(node, 'constructor')
    else:
        return None
    if callee is None:
        return None

    # Token-wise so `Math. random` reads as `Math.random`
    name = joined_token_text(callee)
    arg_range = walker.ctx.policy.banned_calls.get(name)
    if arg_range is None:
        return None
    if arg_range.contains(len(get_call_args(node))):
        return CheckResult(name, RuleCategory.BANNED_CALL, {'name': name})
    return None


def awaits_on_not_allowed_type(node: Node, walker: 'ScopeWalker') -> Optional[CheckResult]:
    """Only awaits on calls hanging off a workflow context are deterministic.

    `await ctxt.invoke(Foo).bar()` reduces to `ctxt`; if its type is not
    awaitable, the call may still be a helper that is handed the context
    (`await getUser(ctxt, name)`), which is let through. Receivers that are
    not names at all (`await import("./x")`, an immediately invoked
    function) have no context type and are flagged the same way.
    """
    if node.type != 'await_expression':
        return None
    call = awaited_expression(node)
    if call is None or call.type != 'call_expression':
        return None

    base = reduce_to_leftmost(call)
    if kind_of(base) in LITERAL_KINDS:
        return None  # awaiting on a literal is somebody else's diagnostic
    if base.type == 'ERROR' or base.is_missing:
        raise AnalysisError(f"unparsable receiver in '{node_text(node)}'")

    oracle = walker.ctx.oracle
    policy = walker.ctx.policy
    if oracle.type_name(base) in policy.awaitable_types:
        return None
    if policy.ignore_awaits_with_context_param:
        if any(oracle.type_name(arg) in policy.awaitable_types for arg in get_call_args(call)):
            return None
    return CheckResult('awaitNotAllowed', RuleCategory.AWAIT_NOT_ALLOWED)


# ============================================================================
# Taint Analysis (SQL injection)
# ============================================================================

class LRState(Enum):
    PROVISIONALLY_TRUE = "provisionally-true"
    TRUE = "true"
    FALSE = "false"


@dataclass
class AssignedValue:
    """Something an identifier can hold: an expression, or a marker for a binding we cannot see into."""
    node: Node
    is_parameter: bool = False
    is_opaque: bool = False

    @property
    def is_expression(self) -> bool:
        return not (self.is_parameter or self.is_opaque)


_PATTERN_PARENTS = frozenset({
    'array_pattern', 'object_pattern', 'pair_pattern', 'rest_pattern',
    'assignment_pattern', 'object_assignment_pattern',
})


def _is_plus(node: Node) -> bool:
    op = get_child_by_field(node, 'operator')
    return op is not None and node_text(op) == '+'


class LiteralTracer:
    """Decides whether an expression reduces to string/number literals.

    One tracer serves one query argument. Every node evaluated gets a memo
    entry; a node is marked provisionally true before its operands are
    explored, so a reference cycle such as `x = x + "a"` terminates and the
    cycle counts as literal-reducible.
    """

    def __init__(self, oracle: TypeOracle, fn: Node, program: Node):
        self.oracle = oracle
        self.fn = fn
        self.program = program
        self.states: Dict[int, LRState] = {}
        self.root_problem: Optional[Node] = None
        self.root_chain: List[str] = []
        self._trail: List[Node] = []
        self._handlers: Dict[NodeKind, Callable[[Node], bool]] = {
            NodeKind.STRING: self._literal,
            NodeKind.NUMBER: self._literal,
            NodeKind.TEMPLATE: self._template,
            NodeKind.BINARY: self._concatenation,
            NodeKind.PARENTHESIZED: self._parenthesized,
            NodeKind.IDENTIFIER: self._identifier,
        }

    def is_literal_reducible(self, node: Node) -> bool:
        state = self.states.get(node.id)
        if state is LRState.PROVISIONALLY_TRUE or state is LRState.TRUE:
            return True
        if state is LRState.FALSE:
            return False
        self.states[node.id] = LRState.PROVISIONALLY_TRUE
        result = self._evaluate(node)
        self.states[node.id] = LRState.TRUE if result else LRState.FALSE
        return result

    def _evaluate(self, node: Node) -> bool:
        handler = self._handlers.get(kind_of(node))
        if handler is None:
            return self._not_reducible(node)
        return handler(node)

    def _not_reducible(self, node: Node) -> bool:
        if self.root_problem is None:
            self.root_problem = node
            hops = list(self._trail)
            if not hops or not is_same_node(hops[-1], node):
                hops.append(node)
            self.root_chain = [f"line {get_node_line(n)}: {node_text(n)}" for n in hops]
        return False

    # ------------------------------------------------------------------
    # Grammar of literal-reducible values
    # ------------------------------------------------------------------

    def _literal(self, node: Node) -> bool:
        return True

    def _template(self, node: Node) -> bool:
        for part in node.named_children:
            if part.type != 'template_substitution':
                continue
            expr = first_named_child(part)
            if expr is not None and not self.is_literal_reducible(expr):
                return False
        return True

    def _concatenation(self, node: Node) -> bool:
        if not _is_plus(node):
            return self._not_reducible(node)
        # `a + b + c` nests to the left; walk that spine without recursing
        rights: List[Node] = []
        spine = node
        while True:
            left = get_child_by_field(spine, 'left')
            right = get_child_by_field(spine, 'right')
            if left is None or right is None:
                raise AnalysisError(f"binary expression missing an operand: '{node_text(spine)}'")
            rights.append(right)
            if left.type != 'binary_expression' or not _is_plus(left) or left.id in self.states:
                break
            spine = left
        operands = [left] + rights[::-1]
        return all(self.is_literal_reducible(operand) for operand in operands)

    def _parenthesized(self, node: Node) -> bool:
        inner = first_named_child(node)
        if inner is None or inner.type == 'sequence_expression':
            return self._not_reducible(node)
        return self.is_literal_reducible(inner)

    def _identifier(self, node: Node) -> bool:
        symbol = self.oracle.symbol_of(node)
        if symbol is None:
            # Undeclared names are reported by the compiler, not here
            return True
        self._trail.append(node)
        try:
            for value in self._things_assigned(node, symbol):
                if not value.is_expression:
                    return self._not_reducible(node)
                if not self.is_literal_reducible(value.node):
                    return False
            return True
        finally:
            self._trail.pop()

    # ------------------------------------------------------------------
    # Reaching assignments
    # ------------------------------------------------------------------

    def _search_root(self, symbol: Symbol) -> Node:
        if self.fn is not None and contains(self.fn, symbol.scope.node):
            return self.fn
        return self.program

    def _things_assigned(self, reference: Node, symbol: Symbol) -> List[AssignedValue]:
        search_root = self._search_root(symbol)
        values: List[AssignedValue] = []
        for occurrence in self.oracle.occurrences(symbol):
            if is_same_node(occurrence, reference) or not contains(search_root, occurrence):
                continue
            if (symbol.block_scoped and self.oracle.is_binding(occurrence)
                    and reference.start_byte < occurrence.start_byte):
                # A let/const used before its declaration is a compile error of its own
                continue
            value = self._assigned_at(occurrence, symbol)
            if value is not None:
                values.append(value)
        return values

    def _assigned_at(self, occurrence: Node, symbol: Symbol) -> Optional[AssignedValue]:
        parent = occurrence.parent
        if parent is None:
            raise AnalysisError(f"reference to '{symbol.name}' has no parent node")

        if parent.type == 'variable_declarator' and is_same_node(get_child_by_field(parent, 'name'), occurrence):
            value = get_child_by_field(parent, 'value')
            return AssignedValue(value) if value is not None else None

        if parent.type in ('assignment_expression', 'augmented_assignment_expression') \
                and is_same_node(get_child_by_field(parent, 'left'), occurrence):
            right = get_child_by_field(parent, 'right')
            if right is None:
                raise AnalysisError(f"assignment to '{symbol.name}' has no right-hand side")
            return AssignedValue(right)

        if self.oracle.is_binding(occurrence):
            if symbol.kind == 'param':
                return AssignedValue(occurrence, is_parameter=True)
            return AssignedValue(occurrence, is_opaque=True)

        if parent.type in _PATTERN_PARENTS or occurrence.type == 'shorthand_property_identifier_pattern':
            return AssignedValue(occurrence, is_opaque=True)
        if parent.type == 'for_in_statement' and is_same_node(get_child_by_field(parent, 'left'), occurrence):
            return AssignedValue(occurrence, is_opaque=True)
        return None


def is_sql_injection(node: Node, walker: 'ScopeWalker') -> Optional[CheckResult]:
    """Flag raw-query calls whose SQL argument is not built from literals.

    For `ctxt.client.raw(x)` the receiver `ctxt.client` must resolve to a
    client type whose method table contains `raw`.
    """
    if node.type != 'call_expression':
        return None
    callee = get_callee(node)
    if callee is None or callee.type != 'member_expression':
        return None
    receiver = get_child_by_field(callee, 'object')
    method = get_child_by_field(callee, 'property')
    if receiver is None or method is None:
        return None

    oracle = walker.ctx.oracle
    methods = walker.ctx.policy.sql_clients.get(oracle.type_name(receiver))
    if methods is None or node_text(method) not in methods:
        return None

    args = get_call_args(node)
    if not args:
        return None
    query_args = args if walker.ctx.policy.check_all_query_arguments else args[:1]

    for arg in query_args:
        tracer = LiteralTracer(oracle, walker.fn, walker.ctx.root)
        if tracer.is_literal_reducible(arg):
            continue
        root = tracer.root_problem or arg
        return CheckResult(
            'sqlInjection', RuleCategory.SQL_INJECTION,
            {'lineNumber': get_node_line(root), 'theExpression': node_text(root)},
            root=root, taint_chain=tracer.root_chain,
        )
    return None


DETERMINISM_CHECKERS: List[Checker] = [
    mutates_global_variable, calls_banned_function, awaits_on_not_allowed_type,
]


# ============================================================================
# Scope Walker
# ============================================================================

class ScopeWalker:
    """Depth-first walk over one function body with a stack of scope frames.

    A symbol is local to the function iff some frame on the stack holds it.
    Nested functions and classes get walkers of their own, so anything
    declared outside them is global from their point of view.
    """

    def __init__(self, ctx: AnalysisContext, fn: Node, checkers: List[Checker]):
        self.ctx = ctx
        self.fn = fn
        self.checkers = checkers
        self.frames: List[Set[Symbol]] = [set()]

    def is_local(self, symbol: Optional[Symbol]) -> bool:
        return symbol is not None and any(symbol in frame for frame in self.frames)

    def walk(self, nodes: List[Node]):
        for node in nodes:
            self.visit(node)

    def visit(self, node: Node):
        # Explicit stack: generated or minified code nests deeper than the interpreter allows
        depth = len(self.frames)
        stack: List[Optional[Node]] = [node]
        try:
            while stack:
                current = stack.pop()
                if current is None:
                    self.frames.pop()  # end of a block
                    continue
                self._enter(current, stack)
        finally:
            del self.frames[depth:]

    def _enter(self, node: Node, stack: List[Optional[Node]]):
        if not node.is_named:
            return
        kind = kind_of(node)
        if kind is NodeKind.COMMENT:
            return
        if kind is NodeKind.CLASS:
            analyze_class(self.ctx, node)
            return
        if kind is NodeKind.FUNCTION:
            analyze_function(self.ctx, node)
            return
        if node.type in SCOPE_BLOCK_TYPES:
            self.frames.append(set())
            self._register_header_bindings(node)
            stack.append(None)
        elif kind is NodeKind.VARIABLE_DECLARATOR:
            self._register_declarator(node)
        else:
            self._run_checkers(node)
        stack.extend(reversed(node.children))

    def _register(self, pattern: Optional[Node], frame: Set[Symbol]):
        if pattern is None:
            return
        for ident in binding_identifiers(pattern):
            symbol = self.ctx.oracle.symbol_of(ident)
            if symbol is not None:
                frame.add(symbol)

    def _register_declarator(self, node: Node):
        declaration = node.parent
        # var is hoisted to the function, let/const stay in their block
        is_var = declaration is not None and declaration.type == 'variable_declaration'
        frame = self.frames[0] if is_var else self.frames[-1]
        self._register(get_child_by_field(node, 'name'), frame)

    def _register_header_bindings(self, node: Node):
        if node.type == 'catch_clause':
            self._register(get_child_by_field(node, 'parameter'), self.frames[-1])
        elif node.type == 'for_in_statement' and get_child_by_field(node, 'kind') is not None:
            self._register(get_child_by_field(node, 'left'), self.frames[-1])

    def _run_checkers(self, node: Node):
        for checker in self.checkers:
            try:
                result = checker(node, self)
            except Exception as exc:
                # Report and keep walking the siblings
                logger.warning(
                    f"{self.ctx.file_path}:{get_node_line(node)}: {checker.__name__} failed: {exc}"
                )
                logger.opt(exception=exc).debug("internal analysis error")
                self.ctx.report(node, CheckResult(
                    'internalAnalysisError', RuleCategory.INTERNAL_ERROR, {'reason': str(exc)}))
                continue
            if result is not None:
                self.ctx.report(node, result)


# ============================================================================
# Entry Points
# ============================================================================

def analyze_function(ctx: AnalysisContext, fn: Node):
    """Walk one function or method with a fresh scope stack."""
    body = get_child_by_field(fn, 'body')
    if body is None:
        return  # overload signature or abstract method
    walker = ScopeWalker(ctx, fn, ctx.checkers_for(fn))
    if body.type == 'statement_block':
        walker.walk(body.children)
    else:
        walker.visit(body)


def analyze_class(ctx: AnalysisContext, cls: Node):
    """Analyze each constructor and method on its own."""
    body = get_child_by_field(cls, 'body')
    if body is None:
        return
    for member in body.named_children:
        if member.type == 'method_definition':
            analyze_function(ctx, member)
        elif member.type in ('public_field_definition', 'class_static_block'):
            # Field initializers and static blocks carry no decorators of interest
            walker = ScopeWalker(ctx, member, ctx.checkers_for(member))
            target = get_child_by_field(member, 'value') if member.type == 'public_field_definition' else member
            if target is not None:
                walker.visit(target)


def analyze_program(ctx: AnalysisContext):
    walker = ScopeWalker(ctx, ctx.root, ctx.checkers_for(None))
    walker.walk(ctx.root.children)


def analyze_tree(tree: Tree, source_code: str, file_path: str,
                 policy: Policy = DEFAULT_POLICY) -> List[Diagnostic]:
    with analysis_context(tree, source_code, file_path, policy) as ctx:
        if ctx.root.has_error:
            logger.debug(f"{file_path}: parse errors present, analyzing what parsed")
        analyze_program(ctx)
        return list(ctx.sink.diagnostics)


def analyze_source(source_code: str, file_path: str = "<source>.ts",
                   policy: Optional[Policy] = None, language: Optional[str] = None) -> List[Diagnostic]:
    """Analyze one compilation unit and return its diagnostics."""
    if language is None:
        language = dialect_for_path(file_path)
    tree = parse_source(source_code, language)
    logger.debug(f"analyzing {file_path} ({language})")
    return analyze_tree(tree, source_code, file_path, policy or DEFAULT_POLICY)
