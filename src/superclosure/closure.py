"""The WrappedClosure entity and the public operations built on it.

Wrapping a function runs the whole capture pipeline once, eagerly:

    1. locate its source (file + line range) through the runtime
    2. cut the exact function literal out of that range
    3. resolve the literal's capture clause against the live bindings,
       wrapping any captured closure recursively

The resulting wrapper is immutable from the outside: calling it forwards to the
wrapped function and never touches its source text or captured variables.
"""

import inspect
import types
from io import StringIO
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from rich.console import Console, Group
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from .capture import extract_captures
from .errors import InvalidInputError, ParseError
from .logger import logger
from .source.extractor import extract_code
from .source.introspection import code_object, is_closure, locate, parameters


class WrappedClosure:
    """A function together with its literal source and captured variables.

    Attributes:
        function: The live function being wrapped.
        code: The exact literal text defining the function.
        used_variables: Captured name -> value. Values of captured closures are
            WrappedClosure instances.
        nested: Names of used_variables whose value is a WrappedClosure.

    Example:
        >>> a = 10
        >>> add = WrappedClosure(lambda x: x + a)
        >>> add(5)
        15
        >>> add.code
        'lambda x: x + a'
        >>> add.used_variables
        {'a': 10}
    """

    def __init__(self, function: Callable, _wrapping: FrozenSet[int] = frozenset()):
        """Wrap a function.

        Args:
            function: A lambda or ``def`` function defined in Python source.
            _wrapping: Ids of the functions currently being wrapped further up a
                capture graph, used to detect cycles.

        Raises:
            InvalidInputError: If ``function`` is not callable, or is a bound method.
            SourceUnavailableError: If its source cannot be located.
            ParseError: If its literal or capture clause cannot be resolved.
        """

        if not callable(function):
            raise InvalidInputError(f"Cannot wrap non-callable value {function!r}.")

        if isinstance(function, types.MethodType):
            raise InvalidInputError(
                f"Cannot wrap bound method {function!r}: capturing its receiver is not supported."
            )

        location = locate(function)
        keyword = "lambda" if code_object(function).co_name == "<lambda>" else "def"

        self._function = function
        self._code = extract_code(
            location.path,
            location.start_line,
            location.end_line,
            keyword=keyword,
            anchor=location.anchor,
        )

        wrapping = _wrapping | {id(function)}

        def nest(value: Any) -> Optional["WrappedClosure"]:

            if isinstance(value, WrappedClosure):
                return value

            if not is_closure(value):
                return None

            if id(value) in wrapping:
                raise ParseError(
                    f"Cyclic capture: '{value.__qualname__}' captures itself directly or indirectly.",
                    self._code,
                )

            logger.debug(f"Wrapping nested closure '{value.__qualname__}'")

            return WrappedClosure(value, _wrapping=wrapping)

        self._used_variables, self._nested = extract_captures(
            self._code, function, nest
        )

        logger.debug(
            f"Wrapped '{code_object(function).co_name}' from {location.path}:{location.start_line} "
            f"capturing {list(self._used_variables)}"
        )

    @property
    def function(self) -> Callable:
        return self._function

    @property
    def code(self) -> str:
        return self._code

    @property
    def used_variables(self) -> Dict[str, Any]:
        return dict(self._used_variables)

    @property
    def nested(self) -> FrozenSet[str]:
        return self._nested

    @property
    def parameters(self) -> List[inspect.Parameter]:
        return parameters(self._function)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:

        return self._function(*args, **kwargs)

    def __reduce__(self):

        from .serialization import from_persisted, to_persisted

        return (from_persisted, (to_persisted(self),))

    def _table(self) -> Table:
        table = Table()
        table.add_column("Name", no_wrap=True)
        table.add_column("Kind")
        table.add_column("Type")
        table.add_column("Value")

        for name, value in self._used_variables.items():
            if name in self._nested:
                kind = "[b purple]nested[/]"
                shown = value.code
            else:
                kind = "[b green]value[/]"
                shown = repr(value)

            table.add_row(name, kind, type(value).__name__, Text(shown))

        return table

    def __str__(self):
        buf = StringIO()
        console = Console(file=buf, force_terminal=True, stderr=False)
        console.print(Group(Syntax(self._code, "python"), self._table()))
        return buf.getvalue()

    def __repr__(self):
        params = ", ".join(str(parameter) for parameter in self.parameters)
        return f"<WrappedClosure ({params}) captures={list(self._used_variables)}>"


def wrap(function: Callable) -> WrappedClosure:
    """Wrap a function, returning existing wrappers unchanged."""

    if isinstance(function, WrappedClosure):
        return function

    return WrappedClosure(function)


def invoke(wrapper: WrappedClosure, *args: Any, **kwargs: Any) -> Any:
    """Call the wrapped function. Its exceptions propagate unchanged."""

    return wrapper(*args, **kwargs)


def get_code(wrapper: WrappedClosure) -> str:

    return wrapper.code


def get_used_variables(wrapper: WrappedClosure) -> Dict[str, Any]:

    return wrapper.used_variables


def get_parameters(wrapper: WrappedClosure) -> List[inspect.Parameter]:

    return wrapper.parameters


def serialize(wrapper: WrappedClosure):
    """Persisted form of a wrapper. See superclosure.serialization.to_persisted."""

    from .serialization import to_persisted

    return to_persisted(wrapper)


def deserialize(form) -> WrappedClosure:
    """Rebuild a wrapper from its persisted form (or its mapping form).

    See superclosure.serialization.from_persisted.
    """

    from .serialization import from_persisted

    return from_persisted(form)
