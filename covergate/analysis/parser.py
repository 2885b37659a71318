"""
Python Parser for Exclusion Scanning.

Uses tree-sitter for fast, position-accurate Python syntax trees.
A ParsedModule keeps the tree together with the helpers both subsystems need:
node text and ranges, comment lines for exclusion markers, and the statement
spans used to place line-level execution data on source ranges.
"""

from dataclasses import dataclass, field
from functools import cached_property
from pathlib import Path

import tree_sitter_python as ts_python
from tree_sitter import Language, Node, Parser, Tree

from covergate.analysis.models import SourceRange


# Initialize tree-sitter Python language
PY_LANGUAGE = Language(ts_python.language())

SIMPLE_STATEMENTS = frozenset({
    "expression_statement",
    "return_statement",
    "raise_statement",
    "pass_statement",
    "break_statement",
    "continue_statement",
    "delete_statement",
    "import_statement",
    "import_from_statement",
    "future_import_statement",
    "assert_statement",
    "global_statement",
    "nonlocal_statement",
    "exec_statement",
    "print_statement",
    "type_alias_statement",
})

COMPOUND_STATEMENTS = frozenset({
    "if_statement",
    "for_statement",
    "while_statement",
    "try_statement",
    "with_statement",
    "match_statement",
    "function_definition",
    "class_definition",
    "decorated_definition",
})

STATEMENT_TYPES = SIMPLE_STATEMENTS | COMPOUND_STATEMENTS

# Clauses whose header line holds an evaluated expression.
HEADER_CLAUSES = frozenset({
    "elif_clause",
    "except_clause",
    "except_group_clause",
    "case_clause",
})


@dataclass
class CommentLine:
    """A comment and whether it is alone on its line."""
    row: int
    column: int
    text: str
    standalone: bool


@dataclass
class ParsedModule:
    """
    Parsing result for one Python file.

    source_file is the key the file is reported under (a root-relative path
    for package files); positions are derived from the tree-sitter tree.
    """
    source_file: str
    source: bytes
    tree: Tree
    syntax_errors: list[str] = field(default_factory=list)

    @property
    def root(self) -> Node:
        return self.tree.root_node

    @property
    def has_syntax_errors(self) -> bool:
        """Check if parsing encountered syntax errors."""
        return len(self.syntax_errors) > 0

    @cached_property
    def raw_lines(self) -> list[bytes]:
        """Source rows as bytes, split on newlines."""
        return self.source.split(b"\n")

    @cached_property
    def lines(self) -> list[str]:
        """Decoded source lines without line terminators."""
        return [row.decode("utf-8", errors="replace").rstrip("\r") for row in self.raw_lines]

    def text(self, node: Node) -> str:
        """Get the text content of a node."""
        return self.source[node.start_byte:node.end_byte].decode("utf-8", errors="replace")

    def range_of(self, node: Node) -> SourceRange:
        """Get the source range of a node."""
        return SourceRange.from_points(self.source_file, node.start_point, node.end_point)

    @cached_property
    def comments(self) -> dict[int, CommentLine]:
        """Comments keyed by 0-based row."""
        found: dict[int, CommentLine] = {}
        for node in walk(self.root):
            if node.type != "comment":
                continue
            row, column = node.start_point[0], node.start_point[1]
            prefix = self.source_line_bytes(row)[:column]
            found[row] = CommentLine(
                row=row,
                column=column,
                text=self.text(node),
                standalone=not prefix.strip(),
            )
        return found

    def source_line_bytes(self, row: int) -> bytes:
        """Raw bytes of a 0-based row."""
        rows = self.raw_lines
        return rows[row].rstrip(b"\r") if 0 <= row < len(rows) else b""

    def statement_spans(self) -> dict[int, SourceRange]:
        """
        Map each 1-based line on which a statement starts to that statement's span.

        The outermost statement starting on a line wins. Compound statements
        are clipped to their header (up to and including the ':'), so that a
        span never includes the body it guards.
        """
        spans: dict[int, SourceRange] = {}
        for node in walk(self.root):
            if node.type not in STATEMENT_TYPES and node.type not in HEADER_CLAUSES:
                continue
            line = node.start_point[0] + 1
            if line in spans:
                continue
            spans[line] = SourceRange.from_points(
                self.source_file, node.start_point, header_end(node)
            )
        return spans

    def line_span(self, line: int) -> SourceRange:
        """Span of the code on a 1-based line, ignoring indentation."""
        raw = self.source_line_bytes(line - 1).rstrip()
        indent = len(raw) - len(raw.lstrip())
        return SourceRange(
            file=self.source_file,
            start_line=line,
            start_col=indent + 1,
            end_line=line,
            end_col=max(len(raw), indent) + 1,
        )


def walk(node: Node):
    """Yield node and all its descendants in pre-order."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def body_block(node: Node) -> Node | None:
    """The block a compound statement or clause guards."""
    if node.type == "decorated_definition":
        definition = node.child_by_field_name("definition")
        return body_block(definition) if definition is not None else None
    for child in node.children:
        if child.type == "block":
            return child
    return None


def header_end(node: Node) -> tuple[int, int]:
    """End point of a statement's header; the whole node for simple statements."""
    block = body_block(node)
    if block is None:
        return node.end_point
    previous = block.prev_sibling
    while previous is not None and previous.type == "comment":
        previous = previous.prev_sibling
    if previous is None:
        return block.start_point
    return previous.end_point


def statements_of(block: Node) -> list[Node]:
    """Named children of a block, comments excluded."""
    return [child for child in block.named_children if child.type != "comment"]


class PythonParser:
    """
    Tree-sitter based Python parser.

    Usage:
        parser = PythonParser()
        module = parser.parse_file("pkg/mod.py", "pkg/mod.py")
        # or
        module = parser.parse_string(source_code, "mod.py")
    """

    def __init__(self):
        """Initialize the parser with tree-sitter Python language."""
        self._parser = Parser(PY_LANGUAGE)

    def parse_file(self, file_path: str | Path, source_file: str | None = None) -> ParsedModule:
        """
        Parse a Python file.

        Args:
            file_path: Path to the Python file
            source_file: Key to report the file under (defaults to the path)

        Returns:
            ParsedModule for the file

        Raises:
            FileNotFoundError: If file does not exist
            PermissionError: If file cannot be read
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        return self.parse_bytes(path.read_bytes(), source_file or str(path))

    def parse_string(self, source_code: str, file_name: str = "<string>") -> ParsedModule:
        """Parse Python source code string."""
        return self.parse_bytes(source_code.encode("utf-8"), file_name)

    def parse_bytes(self, source: bytes, file_name: str = "<string>") -> ParsedModule:
        """
        Parse Python source bytes.

        Raises:
            UnicodeDecodeError: If the source is not valid UTF-8
        """
        source.decode("utf-8")
        tree = self._parser.parse(source)
        module = ParsedModule(source_file=file_name, source=source, tree=tree)

        # Check for syntax errors
        if tree.root_node.has_error:
            self._collect_errors(tree.root_node, module.syntax_errors)
            if not module.syntax_errors:
                module.syntax_errors.append("Syntax error detected in source code")

        return module

    def _collect_errors(self, node: Node, errors: list[str]) -> None:
        """Collect error and missing nodes."""
        for current in walk(node):
            start = current.start_point
            if current.type == "ERROR":
                errors.append(f"syntax error at line {start[0] + 1}, column {start[1] + 1}")
            elif current.is_missing:
                errors.append(
                    f"missing {current.type!r} at line {start[0] + 1}, column {start[1] + 1}"
                )
