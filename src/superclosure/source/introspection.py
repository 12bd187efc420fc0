"""Runtime introspection queries used by the wrap pipeline.

Everything superclosure needs to know about a live function comes from here:

    - locate: where its literal definition lives (file + inclusive line range)
    - parameters: its declared parameter list
    - live_bindings: the values currently bound to the names it captured

The queries are thin layers over ``inspect`` and the function's own
``__code__``/``__closure__``/``__globals__`` attributes and never mutate the function.
"""

import builtins
import inspect
import types
from typing import Any, Callable, List, NamedTuple, Optional, Tuple

import cloudpickle.cloudpickle as _cloudpickle_internal
from cloudpickle.cloudpickle import _get_cell_contents

from ..errors import SourceUnavailableError


class SourceLocation(NamedTuple):
    """Where a function literal was found.

    Attributes:
        path: File (or linecache pseudo-file) holding the definition.
        start_line: First line of the enclosing statement, 1-based.
        end_line: Last line of the enclosing statement, inclusive.
        anchor: ``(line, column)`` of the lambda's body, used to tell apart several
            lambdas sharing a line. None for ``def`` functions or when the
            interpreter does not record column positions.
    """

    path: str
    start_line: int
    end_line: int
    anchor: Optional[Tuple[int, int]] = None


def code_object(function: Callable) -> types.CodeType:
    code = getattr(function, "__code__", None)

    if not isinstance(code, types.CodeType):
        raise SourceUnavailableError(
            f"{function!r} has no code object; only functions defined in Python source can be wrapped."
        )

    return code


def _body_anchor(code: types.CodeType) -> Optional[Tuple[int, int]]:
    """Position of the first instruction of a lambda body.

    co_positions() only exists on Python 3.11+. Entries with zero columns belong to
    the function prologue and are skipped.
    """
    if code.co_name != "<lambda>" or not hasattr(code, "co_positions"):
        return None

    for line, _, col, end_col in code.co_positions():
        if line is not None and (col or end_col):
            return line, col

    return None


def locate(function: Callable) -> SourceLocation:
    """Find the file and line range holding a function's literal definition.

    The code object is inspected directly rather than the function so that
    ``functools.wraps`` chains are not followed to some other function's source.

    Args:
        function: The function to locate.

    Returns:
        The SourceLocation of its definition.

    Raises:
        SourceUnavailableError: If the function has no code object or its
            source cannot be retrieved.
    """
    code = code_object(function)

    try:
        path = inspect.getsourcefile(code) or code.co_filename
        lines, start_line = inspect.getsourcelines(code)
    except (OSError, TypeError) as e:
        raise SourceUnavailableError(
            f"Cannot locate source for '{code.co_name}' ({code.co_filename}): {e}"
        ) from e

    if not lines:
        raise SourceUnavailableError(
            f"Source for '{code.co_name}' ({code.co_filename}) is empty."
        )

    # Modules report line 0 for "whole file".
    start_line = max(start_line, 1)

    return SourceLocation(
        path, start_line, start_line + len(lines) - 1, _body_anchor(code)
    )


def parameters(function: Callable) -> List[inspect.Parameter]:
    return list(inspect.signature(function).parameters.values())


def live_bindings(function: Callable) -> inspect.ClosureVars:
    """Snapshot of the names a function can currently resolve outside its own body.

    Unlike ``inspect.getclosurevars`` this does not try to guess which globals are
    referenced (nested code objects are easy to miss); the full globals mapping is
    returned and the caller looks names up in it.

    Returns:
        ``inspect.ClosureVars`` where ``nonlocals`` maps closure-cell names to their
        values, ``globals`` and ``builtins`` are the function's namespaces, and
        ``unbound`` holds the names of cells that are still empty.
    """
    code = code_object(function)

    nonlocals = {}
    unbound = set()

    for name, cell in zip(code.co_freevars, function.__closure__ or ()):
        value = _get_cell_contents(cell)

        if value is _cloudpickle_internal._empty_cell_value:
            unbound.add(name)
        else:
            nonlocals[name] = value

    globals_ = function.__globals__

    builtins_ = globals_.get("__builtins__", builtins.__dict__)
    if inspect.ismodule(builtins_):
        builtins_ = builtins_.__dict__

    return inspect.ClosureVars(nonlocals, globals_, builtins_, unbound)


def is_closure(value: Any) -> bool:
    """Whether a captured value is a function that must travel by its source.

    Functions importable by reference (module-level functions of installed modules)
    are plain data as far as serialization goes. Lambdas, nested functions and
    functions living in ``__main__`` are not.
    """
    return isinstance(
        value, types.FunctionType
    ) and not _cloudpickle_internal._should_pickle_by_reference(value)
