"""Capture-clause parsing and live-value lookup.

A Python literal has no explicit list of imported variables, so its capture
clause is derived statically: every name the literal's body reads without
binding it itself (parameters, locals and names bound by nested scopes inside
the literal are excluded). Default values and annotations of the literal itself
are evaluated once, in the defining scope, when the function is created; the
names they read never become closure cells and are left out of the clause.
Their values travel with the function instead. ``symtable`` does the scoping,
so comprehensions, nested lambdas and inner functions are handled the way the
compiler handles them.

The static clause is then cross-checked against what the runtime actually binds
for the function:

    - a closure cell of that name -> captured
    - a global of that name -> captured
    - only a builtin of that name -> ambient, not captured
    - nothing -> ParseError

and every closure cell the runtime holds must appear in the clause.
"""

import io
import symtable
import tokenize
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from .errors import ParseError
from .source.extractor import literal_kind, literal_name
from .source.introspection import code_object, live_bindings


def _compilable(source: str) -> Tuple[str, str]:
    if literal_kind(source) == "lambda":
        # Parenthesized so multi-line lambdas stay valid on their own.
        return f"(\n{source}\n)", "eval"

    return source, "exec"


def _escaping_names(table: symtable.SymbolTable, names: set):
    for symbol in table.get_symbols():
        if (
            symbol.is_referenced()
            and symbol.is_global()
            and not symbol.is_declared_global()
        ):
            names.add(symbol.get_name())

    for child in table.get_children():
        _escaping_names(child, names)


def _literal_table(
    table: symtable.SymbolTable, names: Tuple[str, ...]
) -> Optional[symtable.SymbolTable]:
    """The body scope of the literal, skipping scopes of its defaults and annotations."""
    # Default values are visited before the body, so a lambda default comes
    # first and the literal's own scope is the last one of its name.
    for child in reversed(table.get_children()):
        kind = str(child.get_type())

        if kind == "function" and child.get_name() in names:
            return child

        if kind.startswith("type parameter"):
            # Generic def: the body is nested under its type parameter scope.
            found = _literal_table(child, names)

            if found is not None:
                return found

    return None


def parse_capture_clause(source: str) -> List[str]:
    """Names a function literal reads from its defining scope.

    Args:
        source: A lambda expression or def block, as produced by the extractor.

    Returns:
        The names in order of first appearance in the source.

    Raises:
        ParseError: If the literal is not valid Python on its own (for example a
            ``def`` using ``nonlocal``).
    """
    text, mode = _compilable(source)

    try:
        table = symtable.symtable(text, "<capture-clause>", mode)
    except SyntaxError as e:
        raise ParseError(f"Cannot parse function literal: {e.msg}", source) from e

    name = literal_name(source)
    scopes = ("lambda", "<lambda>") if name == "<lambda>" else (name,)
    body = _literal_table(table, scopes)

    if body is None:
        raise ParseError("Source does not define a function literal.", source)

    names = set()
    _escaping_names(body, names)

    ordered = []

    for token in tokenize.generate_tokens(io.StringIO(text).readline):
        if (
            token.type == tokenize.NAME
            and token.string in names
            and token.string not in ordered
        ):
            ordered.append(token.string)

    return ordered


def extract_captures(
    source: str,
    function: Callable,
    nest: Callable[[Any], Optional[Any]],
) -> Tuple[Dict[str, Any], FrozenSet[str]]:
    """Resolve a literal's capture clause against a live function.

    Args:
        source: The function's literal text.
        function: The live function the text was extracted from.
        nest: Called with every captured value. Returns the wrapper to store in
            place of a closure value, or None if the value is plain data.

    Returns:
        ``(captured, nested)``: the ordered name -> value mapping and the names
        whose value was wrapped by ``nest``.

    Raises:
        ParseError: If the clause names something the runtime does not bind, or
            the runtime holds a closure cell the clause does not name.
    """
    clause = parse_capture_clause(source)
    bindings = live_bindings(function)

    captured = {}
    nested = set()

    for name in clause:
        if name in bindings.nonlocals:
            value = bindings.nonlocals[name]
        elif name in bindings.unbound:
            raise ParseError(
                f"Captured variable '{name}' is referenced before assignment in the enclosing scope.",
                source,
            )
        elif name in bindings.globals:
            value = bindings.globals[name]
        elif name in bindings.builtins:
            continue
        else:
            raise ParseError(
                f"Captured variable '{name}' is not bound for this function.", source
            )

        wrapped = nest(value)

        if wrapped is not None:
            value = wrapped
            nested.add(name)

        captured[name] = value

    unmatched = [
        name for name in code_object(function).co_freevars if name not in clause
    ]

    if unmatched:
        raise ParseError(
            f"Function captures {unmatched} which its source text does not reference. "
            "The source located for it may belong to a different function.",
            source,
        )

    return captured, frozenset(nested)
