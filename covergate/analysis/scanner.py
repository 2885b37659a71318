"""
Exclusion Scanner.

Walks the syntax trees of a package and records the statement blocks that are
exempt from the coverage requirement:

- statements and functions carrying an explicit marker comment (``# notest``)
- error guards whose error branch only propagates the error
  (``except ...: raise``, ``if err is not None: return err``)
- optionally, every error guard inside a function that returns nothing

Node kinds are handled through an explicit dispatch table; each package is
analysed independently and contributes ranges for its own files only.
"""

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import structlog
from tree_sitter import Node

from covergate.analysis.models import ExclusionSet, SourceRange
from covergate.analysis.parser import (
    STATEMENT_TYPES,
    ParsedModule,
    PythonParser,
    body_block,
    header_end,
    statements_of,
)
from covergate.analysis.types import FunctionScope, TypeIndex, except_alias
from covergate.errors import ScanError
from covergate.packages import PackageSpec, relative_key


log = structlog.get_logger()

DEFAULT_MARKER = "notest"

# Calls that terminate the process.
FATAL_CALLS = frozenset({
    "sys.exit",
    "os._exit",
    "os.abort",
    "exit",
    "quit",
})


class BlockShape(str, Enum):
    """Classification of a guarded block."""

    PROPAGATE_ONLY = "propagate_only"
    """Every statement hands the error (or control) back to the caller."""

    MARKED = "marked"
    """Carries an explicit exclusion marker."""

    OTHER = "other"
    """Anything else; has to be tested."""


class GuardPolarity(str, Enum):
    """Which branch of an ``if`` handles the error."""
    NON_NIL = "non_nil"
    NIL = "nil"


@dataclass
class ScanOptions:
    """Configuration for the exclusion scanner."""
    exclude_err_no_return_param: bool = False
    marker: str = DEFAULT_MARKER

    @property
    def marker_pattern(self) -> re.Pattern[str]:
        return re.compile(rf"^#\s*{re.escape(self.marker)}\b", re.IGNORECASE)


@dataclass
class ScanContext:
    """Accumulates excluded ranges for one scan."""
    ranges: dict[str, list[SourceRange]] = field(default_factory=dict)

    def exclude(self, rng: SourceRange) -> None:
        self.ranges.setdefault(rng.file, []).append(rng)

    def build(self) -> ExclusionSet:
        return ExclusionSet(self.ranges)


@dataclass
class ScanReport:
    """Outcome of scanning a set of packages."""
    exclusions: ExclusionSet
    scanned_packages: list[str] = field(default_factory=list)
    failures: list[ScanError] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return len(self.failures) > 0

    def raise_for_failures(self) -> None:
        """Raise the first package failure, noting the others."""
        if not self.failures:
            return
        first = self.failures[0]
        for other in self.failures[1:]:
            first.add_note(f"also failed: {other}")
        raise first


@dataclass
class _ModuleState:
    """Per-module state threaded through the visitor."""
    module: ParsedModule
    index: TypeIndex
    context: ScanContext
    scope: FunctionScope | None = None


class ExclusionScanner:
    """
    Scan packages for coverage exclusions.

    Usage:
        scanner = ExclusionScanner(ScanOptions(), root=Path.cwd())
        report = scanner.scan(packages)
        report.raise_for_failures()
        exclusions = report.exclusions

        # Or for a single source string
        exclusions = scanner.scan_source(source_code, "mod.py")
    """

    def __init__(self, options: ScanOptions | None = None, root: str | Path | None = None):
        """Initialize the scanner with optional configuration."""
        self.options = options or ScanOptions()
        self.root = Path(root) if root is not None else Path.cwd()
        self._parser = PythonParser()
        self._marker = self.options.marker_pattern
        self._dispatch: dict[str, Callable[[Node, _ModuleState], None]] = {
            "function_definition": self._visit_function,
            "class_definition": self._visit_class,
            "if_statement": self._visit_if,
            "elif_clause": self._visit_elif,
            "except_clause": self._visit_except,
            "except_group_clause": self._visit_except,
        }

    def scan(self, packages: Iterable[PackageSpec]) -> ScanReport:
        """
        Scan packages independently.

        A package that fails to parse contributes no ranges and is reported in
        ScanReport.failures; the remaining packages are still scanned.
        """
        context = ScanContext()
        report_packages: list[str] = []
        failures: list[ScanError] = []
        for package in packages:
            package_context = ScanContext()
            try:
                self.scan_package(package, package_context)
            except ScanError as exc:
                log.warning("scan.package_failed", package=package.import_path, error=str(exc))
                failures.append(exc)
                continue
            for ranges in package_context.ranges.values():
                for rng in ranges:
                    context.exclude(rng)
            report_packages.append(package.import_path)
        return ScanReport(
            exclusions=context.build(),
            scanned_packages=report_packages,
            failures=failures,
        )

    def scan_package(self, package: PackageSpec, context: ScanContext) -> None:
        """
        Scan one package into context.

        Raises:
            ScanError: If any file of the package cannot be read or parsed
        """
        modules = [self._parse(package, path) for path in package.files()]
        index = TypeIndex.build(modules)
        for module in modules:
            self._scan_module(module, index, context)
        log.debug(
            "scan.package",
            package=package.import_path,
            files=len(modules),
            exception_classes=len(index.exception_classes),
        )

    def scan_source(self, source_code: str, file_name: str = "<string>") -> ExclusionSet:
        """
        Scan a single module given as a string.

        Raises:
            ScanError: If the source has syntax errors
        """
        module = self._parser.parse_string(source_code, file_name)
        if module.has_syntax_errors:
            raise ScanError("<string>", file_name, "; ".join(module.syntax_errors))
        context = ScanContext()
        self._scan_module(module, TypeIndex.build([module]), context)
        return context.build()

    def _parse(self, package: PackageSpec, path: Path) -> ParsedModule:
        key = relative_key(path, self.root)
        try:
            module = self._parser.parse_file(path, key)
        except (OSError, UnicodeDecodeError) as exc:
            raise ScanError(package.import_path, key, f"cannot read source: {exc}") from exc
        if module.has_syntax_errors:
            raise ScanError(package.import_path, key, "; ".join(module.syntax_errors))
        return module

    def _scan_module(self, module: ParsedModule, index: TypeIndex, context: ScanContext) -> None:
        state = _ModuleState(module=module, index=index, context=context)
        self._visit_children(module.root, state)

    # ------------------------------------------------------------------
    # Visitor
    # ------------------------------------------------------------------

    def _visit(self, node: Node, state: _ModuleState) -> None:
        if node.type in STATEMENT_TYPES and self._shape_of_statement(node, state) is BlockShape.MARKED:
            state.context.exclude(state.module.range_of(node))
            return
        handler = self._dispatch.get(node.type, self._visit_children)
        handler(node, state)

    def _visit_children(self, node: Node, state: _ModuleState) -> None:
        for child in node.named_children:
            self._visit(child, state)

    def _visit_function(self, node: Node, state: _ModuleState) -> None:
        definition = node.parent if node.parent is not None \
            and node.parent.type == "decorated_definition" else node
        if self._marked_at_body_start(node, state.module):
            state.context.exclude(state.module.range_of(definition))
            return
        inner = _ModuleState(
            module=state.module,
            index=state.index,
            context=state.context,
            scope=FunctionScope(state.module, node, state.index),
        )
        body = node.child_by_field_name("body")
        if body is not None:
            self._visit_children(body, inner)

    def _visit_class(self, node: Node, state: _ModuleState) -> None:
        # Class bodies are not function bodies, even when nested in one.
        inner = _ModuleState(module=state.module, index=state.index, context=state.context)
        body = node.child_by_field_name("body")
        if body is not None:
            self._visit_children(body, inner)

    def _visit_if(self, node: Node, state: _ModuleState) -> None:
        if state.scope is not None:
            branch = self._error_branch(node, state)
            if branch is not None:
                guard_name, block = branch
                if self._excludes_guard(block, guard_name, state):
                    state.context.exclude(state.module.range_of(block))
        self._visit_children(node, state)

    def _visit_elif(self, node: Node, state: _ModuleState) -> None:
        # An elif has no else branch of its own, so only non-nil guards apply.
        condition = node.child_by_field_name("condition")
        block = node.child_by_field_name("consequence")
        if state.scope is not None and condition is not None and block is not None:
            guard = self._guard_of(condition, state)
            if guard is not None and guard[1] is GuardPolarity.NON_NIL:
                if self._excludes_guard(block, guard[0], state):
                    state.context.exclude(state.module.range_of(block))
        self._visit_children(node, state)

    def _visit_except(self, node: Node, state: _ModuleState) -> None:
        if state.scope is not None:
            block = body_block(node)
            if block is not None:
                guard_name = except_alias(state.module, node)
                if self._excludes_guard(block, guard_name, state):
                    state.context.exclude(state.module.range_of(node))
        self._visit_children(node, state)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _excludes_guard(self, block: Node, guard_name: str | None, state: _ModuleState) -> bool:
        scope = state.scope
        if scope is None:
            return False
        if self.options.exclude_err_no_return_param and scope.returns_nothing:
            return True
        return self.classify_block(block, guard_name, state) is BlockShape.PROPAGATE_ONLY

    def classify_block(self, block: Node, guard_name: str | None, state: _ModuleState) -> BlockShape:
        """Classify the error branch of a guard."""
        statements = statements_of(block)
        if not statements:
            return BlockShape.OTHER
        if all(self._is_propagate(stmt, guard_name, state) for stmt in statements):
            return BlockShape.PROPAGATE_ONLY
        return BlockShape.OTHER

    def _is_propagate(self, stmt: Node, guard_name: str | None, state: _ModuleState) -> bool:
        if stmt.type in ("raise_statement", "continue_statement", "break_statement"):
            return True
        if stmt.type == "return_statement":
            value = next((c for c in stmt.named_children if c.type != "comment"), None)
            return value is not None and self._carries_error(value, guard_name, state)
        if stmt.type == "expression_statement":
            expressions = [c for c in stmt.named_children if c.type != "comment"]
            if len(expressions) == 1 and expressions[0].type == "call":
                function = expressions[0].child_by_field_name("function")
                if function is not None:
                    return _compact(state.module.text(function)) in FATAL_CALLS
        return False

    def _carries_error(self, value: Node, guard_name: str | None, state: _ModuleState) -> bool:
        if guard_name is not None and _mentions(state.module, value, guard_name):
            return True
        if value.type in ("expression_list", "tuple"):
            return any(
                state.scope is not None and state.scope.is_error(element)
                for element in value.named_children
            )
        return state.scope is not None and state.scope.is_error(value)

    def _error_branch(self, node: Node, state: _ModuleState) -> tuple[str, Node] | None:
        """Locate the error-handling block of an error guard ``if``."""
        condition = node.child_by_field_name("condition")
        if condition is None or state.scope is None:
            return None
        guard = self._guard_of(condition, state)
        if guard is None:
            return None
        name, polarity = guard
        if polarity is GuardPolarity.NON_NIL:
            block = node.child_by_field_name("consequence")
            return (name, block) if block is not None else None
        alternatives = node.children_by_field_name("alternative")
        if len(alternatives) != 1 or alternatives[0].type != "else_clause":
            return None
        block = alternatives[0].child_by_field_name("body")
        if block is None:
            block = body_block(alternatives[0])
        return (name, block) if block is not None else None

    def _guard_of(self, condition: Node, state: _ModuleState) -> tuple[str, GuardPolarity] | None:
        """Recognise a nil test on an error-typed name."""
        module = state.module
        scope = state.scope
        while condition.type == "parenthesized_expression" and condition.named_children:
            condition = condition.named_children[0]
        if condition.type == "identifier":
            name = module.text(condition)
            return (name, GuardPolarity.NON_NIL) if scope.is_error_name(name) else None
        if condition.type == "not_operator":
            argument = condition.child_by_field_name("argument")
            if argument is not None and argument.type == "identifier":
                name = module.text(argument)
                if scope.is_error_name(name):
                    return (name, GuardPolarity.NIL)
            return None
        if condition.type != "comparison_operator":
            return None
        operands = [c for c in condition.named_children if c.type != "comment"]
        operators = " ".join(c.type for c in condition.children if not c.is_named)
        if len(operands) != 2:
            return None
        left, right = operands
        if right.type == "identifier" and left.type == "none":
            left, right = right, left
        if left.type != "identifier" or right.type != "none":
            return None
        name = module.text(left)
        if not scope.is_error_name(name):
            return None
        if operators in ("is not", "!="):
            return (name, GuardPolarity.NON_NIL)
        if operators in ("is", "=="):
            return (name, GuardPolarity.NIL)
        return None

    def _shape_of_statement(self, node: Node, state: _ModuleState) -> BlockShape:
        """MARKED when a marker comment precedes the statement or trails its first line."""
        module = state.module
        row = node.start_point[0]
        trailing = module.comments.get(row)
        if trailing is not None and not trailing.standalone and self._is_marker(trailing.text):
            if trailing.column > node.start_point[1]:
                return BlockShape.MARKED
        above = row - 1
        while above >= 0:
            comment = module.comments.get(above)
            if comment is None or not comment.standalone:
                break
            if self._is_marker(comment.text):
                return BlockShape.MARKED
            above -= 1
        return BlockShape.OTHER

    def _marked_at_body_start(self, function: Node, module: ParsedModule) -> bool:
        """Marker between the def header and the first body statement."""
        body = function.child_by_field_name("body")
        if body is None:
            return False
        statements = statements_of(body)
        header_row = header_end(function)[0]
        first_row = statements[0].start_point[0] if statements else body.end_point[0] + 1
        for row in range(header_row + 1, first_row):
            comment = module.comments.get(row)
            if comment is not None and comment.standalone and self._is_marker(comment.text):
                return True
        return False

    def _is_marker(self, comment: str) -> bool:
        return self._marker.match(comment.strip()) is not None


def _compact(text: str) -> str:
    return "".join(text.split())


def _mentions(module: ParsedModule, node: Node, name: str) -> bool:
    stack = [node]
    while stack:
        current = stack.pop()
        if current.type == "identifier" and module.text(current) == name:
            # Attribute names (obj.name) are not references to the variable.
            parent = current.parent
            if not (
                parent is not None
                and parent.type == "attribute"
                and parent.child_by_field_name("attribute") == current
            ):
                return True
        stack.extend(current.children)
    return False


# Convenience functions
def scan_string(
    source_code: str,
    file_name: str = "<string>",
    options: ScanOptions | None = None,
) -> ExclusionSet:
    """
    Scan Python source code string.

    Args:
        source_code: Python source code
        file_name: Name for reporting
        options: Optional scanner configuration

    Returns:
        ExclusionSet for the module
    """
    scanner = ExclusionScanner(options)
    return scanner.scan_source(source_code, file_name)
