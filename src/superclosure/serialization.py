"""Source-based serialization of wrapped closures.

A WrappedClosure is persisted as its literal source text plus the values of the
variables it captured, rather than as bytecode. Reconstruction recompiles the
source on whatever interpreter loads it, binding the captured values back in.

Key components:
    - PersistedForm: The flat, storable representation of a wrapper:
      ``source``, ``captured`` and ``nested`` (names of captured values that are
      themselves persisted forms), plus the function's default values and
      annotations, which were evaluated when it was defined.
    - to_persisted/from_persisted: Structural conversion between wrappers and
      persisted forms, recursing into nested closures.
    - make_function: Recompiles a literal with its captured values bound as
      genuine closure cells.
    - ClosurePickler/ClosureUnpickler: cloudpickle-based pickling where every
      function that would be pickled by value travels as a persisted form, and
      objects can be referenced by persistent id instead of serialized.
    - dumps/loads: High-level API for bytes or files (named to match the standard
      pickle module API).

Example:
    >>> from superclosure import wrap
    >>> from superclosure.serialization import to_persisted, from_persisted
    >>> a = 10
    >>> add = wrap(lambda x: x + a)
    >>> form = to_persisted(add)
    >>> form.source, form.captured
    ('lambda x: x + a', {'a': 10})
    >>> from_persisted(form)(5)
    15
"""

import dataclasses
import io
import linecache
import pickle
import types
import uuid
import weakref
from pathlib import Path
from typing import (
    Any,
    BinaryIO,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)

import cloudpickle
from typing_extensions import Self

from . import CONFIG
from .closure import WrappedClosure
from .errors import ClosureError, ReconstructionError, SourceUnavailableError
from .logger import logger
from .source.extractor import literal_kind, literal_name, reindent

FACTORY_NAME = "__closure_factory__"


@dataclasses.dataclass(frozen=True)
class PersistedForm:
    """Flat persisted representation of a WrappedClosure.

    Attributes:
        source: The exact function-literal text.
        captured: Captured name -> value. Values listed in ``nested`` are
            PersistedForm instances, everything else is carried as-is.
        nested: Names in ``captured`` whose value is a PersistedForm.
        defaults: Positional default values (``__defaults__``).
        kwdefaults: Keyword-only default values (``__kwdefaults__``).
        annotations: The function's ``__annotations__``.
    """

    source: str
    captured: Dict[str, Any] = dataclasses.field(default_factory=dict)
    nested: FrozenSet[str] = frozenset()
    defaults: Tuple[Any, ...] = ()
    kwdefaults: Dict[str, Any] = dataclasses.field(default_factory=dict)
    annotations: Dict[str, Any] = dataclasses.field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Plain mapping form, JSON-friendly when the carried values are."""
        return {
            "source": self.source,
            "captured": {
                name: value.to_dict() if name in self.nested else value
                for name, value in self.captured.items()
            },
            "nested": sorted(self.nested),
            "defaults": list(self.defaults),
            "kwdefaults": dict(self.kwdefaults),
            "annotations": dict(self.annotations),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> Self:
        try:
            source = data["source"]
            captured = dict(data.get("captured") or {})
            nested = frozenset(data.get("nested") or ())
            defaults = tuple(data.get("defaults") or ())
            kwdefaults = dict(data.get("kwdefaults") or {})
            annotations = dict(data.get("annotations") or {})
        except (KeyError, TypeError, ValueError) as e:
            raise ReconstructionError(f"Malformed persisted form: {e!r}") from e

        for name in nested:
            if isinstance(captured.get(name), Mapping):
                captured[name] = cls.from_dict(captured[name])

        return cls(source, captured, nested, defaults, kwdefaults, annotations)


def _annotations(function: types.FunctionType) -> Dict[str, Any]:
    try:
        return dict(getattr(function, "__annotations__", None) or {})
    except NameError:
        # Lazily evaluated annotations naming something that is not defined.
        return {}


def to_persisted(wrapper: WrappedClosure) -> PersistedForm:
    """Convert a wrapper into its persisted form, recursing into nested wrappers."""

    captured = {}

    for name, value in wrapper.used_variables.items():
        captured[name] = to_persisted(value) if name in wrapper.nested else value

    function = wrapper.function

    logger.debug(f"Serialized closure capturing {list(captured)}")

    return PersistedForm(
        wrapper.code,
        captured,
        wrapper.nested,
        defaults=getattr(function, "__defaults__", None) or (),
        kwdefaults=dict(getattr(function, "__kwdefaults__", None) or {}),
        annotations=_annotations(function),
    )


def _validate(form: Union[PersistedForm, Mapping]) -> PersistedForm:
    if isinstance(form, Mapping):
        form = PersistedForm.from_dict(form)

    if not isinstance(form, PersistedForm):
        raise ReconstructionError(
            f"Expected a PersistedForm or mapping, got {type(form).__name__}."
        )

    if not isinstance(form.source, str):
        raise ReconstructionError(
            f"Persisted source must be a string, got {type(form.source).__name__}."
        )

    missing = sorted(form.nested - set(form.captured))

    if missing:
        raise ReconstructionError(
            f"Nested names {missing} are not captured.", form.source
        )

    for name in form.nested:
        if not isinstance(form.captured[name], (PersistedForm, Mapping)):
            raise ReconstructionError(
                f"Nested capture '{name}' is not a persisted form.", form.source
            )

    return form


def _find_code(code: types.CodeType, name: str) -> Optional[types.CodeType]:
    found = None

    # For lambdas with lambda defaults several constants are named "<lambda>";
    # the literal itself is compiled last.
    for const in code.co_consts:
        if isinstance(const, types.CodeType) and const.co_name == name:
            found = const

    return found


def make_function(
    source: str,
    closure_names: List[str],
    closure_values: List[Any],
    defaults: Optional[Tuple[Any, ...]] = None,
    kwdefaults: Optional[Dict[str, Any]] = None,
    annotations: Optional[Dict[str, Any]] = None,
    filename: Optional[str] = None,
) -> types.FunctionType:
    """Recompile a function literal with its captured values bound.

    The literal is compiled inside a factory function whose parameters are the
    captured names, which turns every captured name the literal reads into a
    free variable of the literal's code object. That code object is taken from
    the factory's constants and made into a function directly, with a
    ``types.CellType`` cell per free variable. The factory itself never runs, so
    the literal's default expressions and annotations are not evaluated again:
    ``defaults``, ``kwdefaults`` and ``annotations`` are restored as given.

    The function's globals are a fresh dict holding only ``__builtins__``,
    created for this call alone. Reconstructions never share a namespace, so
    concurrent reconstructions cannot see each other's bindings.

    The factory source is registered in linecache under ``filename`` so the rebuilt
    function's source can be located like any other; the entry is dropped when the
    function is garbage-collected.

    Args:
        source: A lambda expression or def block.
        closure_names: Captured variable names.
        closure_values: Their values, in the same order.
        defaults: Positional default values.
        kwdefaults: Keyword-only default values.
        annotations: Annotations to restore on the function.
        filename: Pseudo-filename for the compiled source. A unique
            ``<SOURCE_PREFIX-...>`` name is generated when None.

    Returns:
        The newly constructed function.

    Raises:
        ReconstructionError: If the source is not a function literal or fails
            to compile.
    """
    kind = literal_kind(source)

    if kind is None:
        raise ReconstructionError("Persisted source is not a lambda or def literal.", source)

    # Annotations inside the literal's body are stored as strings so they are
    # not evaluated against the limited namespace used for reconstruction.
    factory_source = (
        "from __future__ import annotations\n" if CONFIG.APP.FUTURE_ANNOTATIONS else ""
    )
    factory_source += f"def {FACTORY_NAME}({', '.join(closure_names)}):\n"

    if kind == "lambda":
        # The bracket opens on the lambda's own line so a multi-line lambda
        # stays one logical line when its source is located again.
        factory_source += f"    return ({source}\n    )\n"
    else:
        factory_source += reindent(source, 4).rstrip("\n") + "\n"
        factory_source += f"    return {literal_name(source)}\n"

    if filename is None:
        filename = f"<{CONFIG.APP.SOURCE_PREFIX}-{uuid.uuid4().hex}>"

    try:
        module_code = compile(factory_source, filename, "exec")
    except (SyntaxError, ValueError) as e:
        raise ReconstructionError(
            f"Failed to compile persisted source: {e!r}", source
        ) from e

    factory_code = _find_code(module_code, FACTORY_NAME)
    function_code = None

    if factory_code is not None:
        function_code = _find_code(factory_code, literal_name(source))

    if function_code is None:
        raise ReconstructionError(
            "Persisted source does not compile to a function.", source
        )

    bindings = dict(zip(closure_names, closure_values))
    closure = tuple(
        types.CellType(bindings[name]) for name in function_code.co_freevars
    )

    function = types.FunctionType(
        function_code,
        {"__builtins__": __builtins__},
        function_code.co_name,
        tuple(defaults) if defaults else None,
        closure or None,
    )

    if kwdefaults:
        function.__kwdefaults__ = dict(kwdefaults)

    if annotations:
        function.__annotations__ = dict(annotations)

    linecache.cache[filename] = (
        len(factory_source),
        None,
        factory_source.splitlines(keepends=True),
        filename,
    )

    weakref.finalize(function, linecache.cache.pop, filename, None)

    return function


def rebuild_function(form: Union[PersistedForm, Mapping]) -> types.FunctionType:
    """Rebuild the raw function of a persisted form, nested closures first."""

    form = _validate(form)

    closure_names = []
    closure_values = []

    for name, value in form.captured.items():
        if name in form.nested:
            value = rebuild_function(value)

        closure_names.append(name)
        closure_values.append(value)

    return make_function(
        form.source,
        closure_names,
        closure_values,
        defaults=form.defaults,
        kwdefaults=form.kwdefaults,
        annotations=form.annotations,
    )


def from_persisted(form: Union[PersistedForm, Mapping]) -> WrappedClosure:
    """Reconstruct a wrapper from its persisted form.

    The rebuilt function goes through the full wrap pipeline again, so the result
    is equivalent to wrapping a live closure with the same source and captures.

    Raises:
        ReconstructionError: If the form is malformed, its source fails to
            compile, or the rebuilt function does not wrap consistently.
    """
    form = _validate(form)
    function = rebuild_function(form)

    try:
        wrapper = WrappedClosure(function)
    except ClosureError as e:
        raise ReconstructionError(
            f"Reconstructed function does not match its persisted form: {e}",
            form.source,
        ) from e

    logger.debug(f"Reconstructed closure capturing {list(wrapper.used_variables)}")

    return wrapper


class ClosurePickler(cloudpickle.Pickler):
    """A cloudpickle-based pickler that serializes functions as persisted forms.

    Every function cloudpickle would serialize by value (lambdas, nested functions,
    functions defined in ``__main__``) is wrapped and pickled as its PersistedForm
    instead of its bytecode, so it can be rebuilt on a different Python version.
    Functions importable by reference are still pickled by reference.

    Objects with a ``_persistent_id`` in their ``__dict__`` are pickled as that id
    and resolved by ClosureUnpickler at load time.

    Example:
        >>> import io
        >>> a = 2
        >>> buffer = io.BytesIO()
        >>> ClosurePickler(buffer).dump(lambda x: x * a)
    """

    def _dynamic_function_reduce(self, func: types.FunctionType) -> tuple:
        """Reduce a by-value function to ``rebuild_function(persisted_form)``.

        Raises:
            pickle.PicklingError: If the function's source is unavailable.
        """
        try:
            form = to_persisted(WrappedClosure(func))
        except SourceUnavailableError as e:
            raise pickle.PicklingError(
                f"Cannot serialize function '{func.__name__}': source code unavailable. "
                f"Original error: {e}"
            ) from e

        return (rebuild_function, (form,))

    def persistent_id(self, obj: Any) -> Optional[Any]:
        """Objects a closure captures but should not carry, such as handles to
        live resources, set ``_persistent_id`` on their instance. Only that id is
        written; ``loads`` swaps the caller's object back in.
        """
        state = getattr(obj, "__dict__", None)

        if isinstance(state, dict):
            return state.get("_persistent_id")

        return None


class ClosureUnpickler(pickle.Unpickler):
    """Loads ``dumps`` output, answering persistent ids from ``persistent_objects``.

    Persisted closures rebuild themselves through ``rebuild_function`` as they
    are loaded; only the captured values marked with a persistent id need the
    mapping.
    """

    def __init__(self, file: BinaryIO, persistent_objects: Optional[dict] = None):
        super().__init__(file)
        self.persistent_objects = persistent_objects or {}

    def persistent_load(self, pid: Any) -> Any:
        if pid in self.persistent_objects:
            return self.persistent_objects[pid]

        raise pickle.UnpicklingError(f"Unknown persistent id: {pid}")


def dumps(
    obj: Any,
    path: Optional[Union[str, Path]] = None,
    protocol: Optional[int] = None,
) -> Optional[bytes]:
    """Pickle ``obj`` with every closure in it carried as its persisted form.

    ``obj`` may be a WrappedClosure, a bare function or any structure holding
    them. Writes to ``path`` and returns None when one is given, otherwise
    returns the bytes. ``protocol`` defaults to CONFIG.APP.PICKLE_PROTOCOL.

    Example:
        >>> data = dumps(wrap(lambda x: x + 1))
        >>> dumps(wrap(lambda x: x + 1), "closure.pkl")
    """
    if protocol is None:
        protocol = CONFIG.APP.PICKLE_PROTOCOL

    if path is None:
        buffer = io.BytesIO()
        ClosurePickler(buffer, protocol=protocol).dump(obj)
        buffer.seek(0)
        return buffer.read()

    path = Path(path)
    with path.open("wb") as file:
        ClosurePickler(file, protocol=protocol).dump(obj)


def loads(
    data: Union[str, bytes, Path],
    persistent_objects: Optional[dict] = None,
) -> Any:
    """Load what ``dumps`` wrote, from bytes or from a file path.

    Closures are rebuilt from their source on this interpreter, in fresh
    namespaces. ``persistent_objects`` maps the persistent ids written for
    shared objects back to the objects to use.

    Raises:
        pickle.UnpicklingError: If an id is missing from ``persistent_objects``.
        ReconstructionError: If a persisted closure cannot be rebuilt.
    """
    if isinstance(data, bytes):
        return ClosureUnpickler(io.BytesIO(data), persistent_objects).load()

    path = Path(data)
    with path.open("rb") as file:
        return ClosureUnpickler(file, persistent_objects).load()
