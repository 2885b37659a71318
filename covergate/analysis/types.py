"""
Lightweight type information for exclusion scanning.

A TypeIndex is built once per package from its parsed modules. It knows which
class names denote exceptions and which return annotations the package's
functions declare. A FunctionScope uses the index to decide which local names
of one function body hold an error value.
"""

import builtins
import re
from collections.abc import Iterable
from enum import Enum

from tree_sitter import Node

from covergate.analysis.parser import ParsedModule, walk


BUILTIN_EXCEPTIONS = frozenset(
    name
    for name, obj in vars(builtins).items()
    if isinstance(obj, type) and issubclass(obj, BaseException)
)

# Unresolved names are classified by naming convention.
EXCEPTION_SUFFIXES = ("Error", "Exception")

NO_RETURN_ANNOTATIONS = frozenset({
    "None",
    "NoReturn",
    "typing.NoReturn",
    "Never",
    "typing.Never",
})

# Node kinds that open a new scope; their bodies are not part of the enclosing function.
SCOPE_NODES = frozenset({"function_definition", "class_definition", "lambda"})

_OPTIONAL = re.compile(r"^(?:typing\.)?Optional\[(?P<inner>.*)\]$", re.S)
_UNION = re.compile(r"^(?:typing\.)?Union\[(?P<inner>.*)\]$", re.S)
_TUPLE = re.compile(r"^(?:typing\.)?(?:tuple|Tuple)\[(?P<inner>.*)\]$", re.S)


class ValueKind(str, Enum):
    """Static classification of a bound value."""
    ERROR = "error"
    NONE = "none"
    OTHER = "other"


def split_top_level(text: str, separator: str) -> list[str]:
    """Split text on separator, ignoring separators nested in brackets."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in text:
        if char in "[(":
            depth += 1
        elif char in "])":
            depth -= 1
        if char == separator and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    parts.append("".join(current).strip())
    return [part for part in parts if part]


def union_members(annotation: str) -> list[str]:
    """Flatten an annotation into its union members."""
    text = annotation.strip().strip("'\"").strip()
    pipe_parts = split_top_level(text, "|")
    if len(pipe_parts) > 1:
        return [member for part in pipe_parts for member in union_members(part)]
    for pattern in (_OPTIONAL, _UNION):
        match = pattern.match(text)
        if match:
            return [
                member
                for part in split_top_level(match.group("inner"), ",")
                for member in union_members(part)
            ]
    return [text] if text else []


def tuple_elements(annotation: str) -> list[str] | None:
    """Element annotations of a tuple annotation, or None for other annotations."""
    match = _TUPLE.match(annotation.strip().strip("'\"").strip())
    if not match:
        return None
    return split_top_level(match.group("inner"), ",")


def simple_name(dotted: str) -> str:
    """Last component of a dotted name, without subscripts."""
    return dotted.split("[", 1)[0].strip().rsplit(".", 1)[-1]


class TypeIndex:
    """
    Package-level type information.

    Usage:
        index = TypeIndex.build(modules)
        index.is_exception_class("ValidationError")
        index.annotation_is_error("OSError | None")
    """

    def __init__(
        self,
        class_bases: dict[str, list[str]] | None = None,
        return_annotations: dict[str, str | None] | None = None,
    ):
        self.class_bases = class_bases or {}
        self.return_annotations = return_annotations or {}
        self.exception_classes = self._resolve_exception_classes()

    @classmethod
    def build(cls, modules: Iterable[ParsedModule]) -> "TypeIndex":
        """Collect class hierarchies and function signatures from parsed modules."""
        class_bases: dict[str, list[str]] = {}
        return_annotations: dict[str, str | None] = {}
        for module in modules:
            for node in walk(module.root):
                if node.type == "class_definition":
                    name = node.child_by_field_name("name")
                    if name is None:
                        continue
                    bases: list[str] = []
                    superclasses = node.child_by_field_name("superclasses")
                    if superclasses is not None:
                        for base in superclasses.named_children:
                            if base.type in ("identifier", "attribute", "subscript"):
                                bases.append(simple_name(module.text(base)))
                    class_bases.setdefault(module.text(name), []).extend(bases)
                elif node.type == "function_definition":
                    name = node.child_by_field_name("name")
                    if name is None:
                        continue
                    return_type = node.child_by_field_name("return_type")
                    annotation = module.text(return_type) if return_type is not None else None
                    key = module.text(name)
                    if key in return_annotations and return_annotations[key] != annotation:
                        # Conflicting signatures under one name are not trusted.
                        return_annotations[key] = None
                    else:
                        return_annotations[key] = annotation
        return cls(class_bases, return_annotations)

    def _resolve_exception_classes(self) -> set[str]:
        resolved: set[str] = set()
        changed = True
        while changed:
            changed = False
            for name, bases in self.class_bases.items():
                if name in resolved:
                    continue
                if any(self._base_is_exception(base, resolved) for base in bases):
                    resolved.add(name)
                    changed = True
        return resolved

    def _base_is_exception(self, base: str, resolved: set[str]) -> bool:
        if base in resolved or base in BUILTIN_EXCEPTIONS:
            return True
        if base in self.class_bases:
            return False
        return base.endswith(EXCEPTION_SUFFIXES)

    def is_exception_class(self, name: str) -> bool:
        """Check whether a (possibly dotted) class name denotes an exception type."""
        name = simple_name(name)
        if name in self.class_bases:
            return name in self.exception_classes
        return name in BUILTIN_EXCEPTIONS or name.endswith(EXCEPTION_SUFFIXES)

    def annotation_is_error(self, annotation: str | None) -> bool:
        """Check whether an annotation admits an exception instance."""
        if not annotation:
            return False
        for member in union_members(annotation):
            if member == "None" or "[" in member:
                continue
            if self.is_exception_class(member):
                return True
        return False

    def returns_error(self, function_name: str) -> bool:
        """Check whether a package function is declared to return an error."""
        return self.annotation_is_error(self.return_annotations.get(function_name))

    def returned_element(self, function_name: str, position: int, arity: int) -> str | None:
        """Annotation of one element of a function's tuple return value."""
        annotation = self.return_annotations.get(function_name)
        if not annotation:
            return None
        elements = tuple_elements(annotation)
        if elements is None or len(elements) != arity:
            return None
        return elements[position]


class FunctionScope:
    """
    Name resolution for one function body.

    A name is error-typed when every binding of it in the function is an error
    or None, and at least one binding is an error. Bindings that copy another
    name are resolved to a fixed point.
    """

    def __init__(self, module: ParsedModule, function: Node, index: TypeIndex):
        self.module = module
        self.function = function
        self.index = index
        self._bindings: dict[str, list[ValueKind | str]] = {}
        self._collect_parameters()
        body = function.child_by_field_name("body")
        if body is not None:
            self._collect_bindings(body)
        self.error_names = self._resolve()

    def is_error_name(self, name: str) -> bool:
        return name in self.error_names

    def is_error(self, node: Node) -> bool:
        """Check whether an expression statically evaluates to an error."""
        return self._kind_of(node, self.error_names) is ValueKind.ERROR

    @property
    def returns_nothing(self) -> bool:
        """Whether the function declares zero return values."""
        return_type = self.function.child_by_field_name("return_type")
        if return_type is not None:
            annotation = self.module.text(return_type).strip().strip("'\"")
            return annotation in NO_RETURN_ANNOTATIONS
        body = self.function.child_by_field_name("body")
        if body is None:
            return True
        for node in self.own_nodes(body):
            if node.type == "return_statement" and _returned_value(node) is not None:
                return False
            if node.type == "yield":
                return False
        return True

    def own_nodes(self, node: Node):
        """Yield nodes belonging to this function, skipping nested scopes."""
        stack = [node]
        while stack:
            current = stack.pop()
            yield current
            for child in reversed(current.children):
                if child.type not in SCOPE_NODES:
                    stack.append(child)

    def _bind(self, name: str, kind: ValueKind | str) -> None:
        self._bindings.setdefault(name, []).append(kind)

    def _collect_parameters(self) -> None:
        parameters = self.function.child_by_field_name("parameters")
        if parameters is None:
            return
        for param in parameters.named_children:
            if param.type == "identifier":
                self._bind(self.module.text(param), ValueKind.OTHER)
            elif param.type in ("typed_parameter", "typed_default_parameter"):
                name = param.child_by_field_name("name")
                if name is None:
                    name = next(
                        (c for c in param.named_children if c.type == "identifier"), None
                    )
                annotation = param.child_by_field_name("type")
                if name is None or name.type != "identifier":
                    continue
                kind = (
                    ValueKind.ERROR
                    if annotation is not None
                    and self.index.annotation_is_error(self.module.text(annotation))
                    else ValueKind.OTHER
                )
                self._bind(self.module.text(name), kind)
            elif param.type == "default_parameter":
                name = param.child_by_field_name("name")
                if name is not None and name.type == "identifier":
                    self._bind(self.module.text(name), ValueKind.OTHER)

    def _collect_bindings(self, body: Node) -> None:
        for node in self.own_nodes(body):
            if node.type == "assignment":
                self._bind_assignment(node)
            elif node.type == "augmented_assignment":
                left = node.child_by_field_name("left")
                if left is not None and left.type == "identifier":
                    self._bind(self.module.text(left), ValueKind.OTHER)
            elif node.type == "named_expression":
                name = node.child_by_field_name("name")
                value = node.child_by_field_name("value")
                if name is not None and value is not None:
                    self._bind(self.module.text(name), self._binding_of(value))
            elif node.type in ("except_clause", "except_group_clause"):
                alias = except_alias(self.module, node)
                if alias is not None:
                    self._bind(alias, ValueKind.ERROR)
            elif node.type == "for_statement":
                left = node.child_by_field_name("left")
                if left is not None:
                    for name in _target_names(self.module, left):
                        self._bind(name, ValueKind.OTHER)
            elif node.type == "as_pattern" and node.parent is not None \
                    and node.parent.type == "with_item":
                alias = node.child_by_field_name("alias")
                if alias is not None:
                    for name in _target_names(self.module, alias):
                        self._bind(name, ValueKind.OTHER)

    def _bind_assignment(self, node: Node) -> None:
        left = node.child_by_field_name("left")
        right = node.child_by_field_name("right")
        annotation = node.child_by_field_name("type")
        if left is None:
            return
        if left.type == "identifier":
            name = self.module.text(left)
            if annotation is not None:
                annotated = self.index.annotation_is_error(self.module.text(annotation))
                self._bind(name, ValueKind.ERROR if annotated else ValueKind.OTHER)
            elif right is not None:
                self._bind(name, self._binding_of(right))
            return
        if left.type in ("pattern_list", "tuple_pattern", "list_pattern"):
            targets = [c for c in left.named_children if c.type != "comment"]
            callee = _callee_name(self.module, right) if right is not None else None
            for position, target in enumerate(targets):
                if target.type != "identifier":
                    for name in _target_names(self.module, target):
                        self._bind(name, ValueKind.OTHER)
                    continue
                kind = ValueKind.OTHER
                if callee is not None:
                    element = self.index.returned_element(callee, position, len(targets))
                    if self.index.annotation_is_error(element):
                        kind = ValueKind.ERROR
                self._bind(self.module.text(target), kind)
            return
        for name in _target_names(self.module, left):
            self._bind(name, ValueKind.OTHER)

    def _binding_of(self, value: Node) -> ValueKind | str:
        value = _unwrap(value)
        if value.type == "identifier":
            return self.module.text(value)
        return self._kind_of(value, set())

    def _kind_of(self, node: Node, error_names: set[str]) -> ValueKind:
        node = _unwrap(node)
        if node.type == "none":
            return ValueKind.NONE
        if node.type == "identifier":
            return ValueKind.ERROR if self.module.text(node) in error_names else ValueKind.OTHER
        if node.type == "call":
            callee = _callee_name(self.module, node)
            if callee is None:
                return ValueKind.OTHER
            if callee in self.index.return_annotations:
                return ValueKind.ERROR if self.index.returns_error(callee) else ValueKind.OTHER
            if self.index.is_exception_class(callee):
                return ValueKind.ERROR
        return ValueKind.OTHER

    def _resolve(self) -> set[str]:
        error_names: set[str] = set()
        changed = True
        while changed:
            changed = False
            for name, kinds in self._bindings.items():
                if name in error_names:
                    continue
                resolved = [self._resolve_kind(kind, error_names) for kind in kinds]
                if ValueKind.ERROR in resolved and all(
                    kind in (ValueKind.ERROR, ValueKind.NONE) for kind in resolved
                ):
                    error_names.add(name)
                    changed = True
        return error_names

    def _resolve_kind(self, kind: ValueKind | str, error_names: set[str]) -> ValueKind:
        if isinstance(kind, ValueKind):
            return kind
        return ValueKind.ERROR if kind in error_names else ValueKind.OTHER


def _unwrap(node: Node) -> Node:
    while node.type == "parenthesized_expression" and node.named_children:
        node = node.named_children[0]
    return node


def _returned_value(node: Node) -> Node | None:
    for child in node.named_children:
        if child.type != "comment":
            return child
    return None


def _callee_name(module: ParsedModule, node: Node | None) -> str | None:
    """Simple name of the function called by a call expression."""
    if node is None:
        return None
    node = _unwrap(node)
    if node.type == "await":
        inner = node.named_children
        return _callee_name(module, inner[0]) if inner else None
    if node.type != "call":
        return None
    function = node.child_by_field_name("function")
    if function is None:
        return None
    if function.type == "identifier":
        return module.text(function)
    if function.type == "attribute":
        attribute = function.child_by_field_name("attribute")
        return module.text(attribute) if attribute is not None else None
    return None


def _target_names(module: ParsedModule, node: Node) -> list[str]:
    if node.type == "identifier":
        return [module.text(node)]
    names: list[str] = []
    for child in node.named_children:
        if child.type in ("identifier", "pattern_list", "tuple_pattern", "list_pattern",
                          "list_splat_pattern", "tuple", "list", "parenthesized_expression"):
            names.extend(_target_names(module, child))
    return names


def except_alias(module: ParsedModule, clause: Node) -> str | None:
    """Name bound by 'except ... as name', if any."""
    for child in clause.children:
        if child.type == "as_pattern":
            alias = child.child_by_field_name("alias")
            if alias is None:
                return None
            identifiers = [n for n in walk(alias) if n.type == "identifier"]
            return module.text(identifiers[-1]) if identifiers else None
    seen_as = False
    for child in clause.children:
        if child.type == "as":
            seen_as = True
        elif seen_as and child.type == "identifier":
            return module.text(child)
        elif seen_as and child.is_named:
            identifiers = [n for n in walk(child) if n.type == "identifier"]
            return module.text(identifiers[-1]) if identifiers else None
    return None
