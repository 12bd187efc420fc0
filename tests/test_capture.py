"""Test capture-clause parsing and live-value resolution."""

import pytest

from superclosure import ParseError
from superclosure.capture import extract_captures, parse_capture_clause


def _no_nesting(value):
    return None


class TestParseCaptureClause:
    """Tests for the names a literal reads from its defining scope."""

    def test_free_names_in_order(self):
        """Test free names are returned in order of first appearance."""
        assert parse_capture_clause("lambda x: b + x + a + b") == ["b", "a"]

    def test_parameters_are_bound(self):
        """Test parameters of every kind are excluded."""
        source = "lambda a, b=1, *args, c, **kwargs: (a, b, args, c, kwargs)"
        assert parse_capture_clause(source) == []

    def test_builtins_are_listed(self):
        """Test builtins appear in the clause and are filtered at lookup."""
        assert parse_capture_clause("lambda xs: len(xs)") == ["len"]

    def test_comprehension(self):
        """Test comprehension variables are bound, the rest are free."""
        assert parse_capture_clause("lambda xs: [v * k for v in xs]") == ["k"]

    def test_nested_lambda(self):
        """Test names free in an inner lambda are free in the literal."""
        assert parse_capture_clause("lambda x: lambda y: x + y + z") == ["z"]

    def test_lambda_default(self):
        """Test names read only by default values are not captured."""
        assert parse_capture_clause("lambda x, y=start: x + y") == []

    def test_lambda_default_lambda(self):
        """Test a lambda default's free names are not the literal's."""
        assert parse_capture_clause("lambda x=lambda: k: x() + m") == ["m"]

    def test_def_locals(self):
        """Test locals assigned inside a def are excluded."""
        source = "def f():\n    t = 1\n    return t + u"
        assert parse_capture_clause(source) == ["u"]

    def test_def_defaults_and_body(self):
        """Test default values are left out while body references are kept."""
        source = "def f(x, y=default, *, z=other):\n    return helper(x) + y + z"
        assert parse_capture_clause(source) == ["helper"]

    def test_default_also_read_by_body(self):
        """Test a name read by a default and by the body is captured."""
        source = "def f(x, scale=factor):\n    return x * scale * factor"
        assert parse_capture_clause(source) == ["factor"]

    def test_def_annotations(self):
        """Test names read only by the literal's own annotations are not captured."""
        source = "def f(x: Tensor) -> Result:\n    return x"
        assert parse_capture_clause(source) == []

    def test_inner_def_annotations(self):
        """Test annotations of a def inside the literal are read by its body."""
        source = "def outer():\n    def inner(x: Tensor):\n        return x\n    return inner"
        assert parse_capture_clause(source) == ["Tensor"]

    def test_inner_def(self):
        """Test an inner def's free names escape; its own name does not."""
        source = "def outer():\n    def inner():\n        return z\n    return inner"
        assert parse_capture_clause(source) == ["z"]

    def test_declared_global(self):
        """Test names declared ``global`` are not captured."""
        source = "def bump():\n    global counter\n    counter += 1"
        assert parse_capture_clause(source) == []

    def test_nonlocal(self):
        """Test a def rebinding a captured name cannot be parsed on its own."""
        source = "def bump():\n    nonlocal n\n    n += 1"

        with pytest.raises(ParseError):
            parse_capture_clause(source)

    def test_invalid_source(self):
        """Test syntactically invalid literals raise ParseError."""
        with pytest.raises(ParseError) as excinfo:
            parse_capture_clause("lambda x: x +")

        assert excinfo.value.source == "lambda x: x +"


class TestExtractCaptures:
    """Tests for resolving the clause against a live function."""

    def test_cell_values(self):
        """Test closure cells resolve to their current values."""
        a = 1
        b = [2]
        fn = lambda x: x + a + b[0]  # noqa: E731

        captured, nested = extract_captures("lambda x: x + a + b[0]", fn, _no_nesting)

        assert captured == {"a": 1, "b": [2]}
        assert captured["b"] is b
        assert nested == frozenset()

    def test_global_values(self):
        """Test module globals resolve through the function's globals."""
        fn = lambda: pytest  # noqa: E731

        captured, _ = extract_captures("lambda: pytest", fn, _no_nesting)

        assert captured == {"pytest": pytest}

    def test_builtins_are_ambient(self):
        """Test names bound only as builtins are not captured."""
        fn = lambda xs: len(xs)  # noqa: E731

        captured, _ = extract_captures("lambda xs: len(xs)", fn, _no_nesting)

        assert captured == {}

    def test_unbound_name(self):
        """Test a clause name the runtime does not bind."""
        fn = lambda x: x  # noqa: E731

        with pytest.raises(ParseError):
            extract_captures("lambda x: x + nowhere", fn, _no_nesting)

    def test_cell_missing_from_clause(self):
        """Test every runtime cell must appear in the clause."""
        a = 1
        fn = lambda x: x + a  # noqa: E731

        with pytest.raises(ParseError):
            extract_captures("lambda x: x", fn, _no_nesting)

    def test_nest_callback(self):
        """Test values the callback wraps are recorded as nested."""
        a = 1
        b = 2
        fn = lambda: a + b  # noqa: E731

        captured, nested = extract_captures(
            "lambda: a + b", fn, lambda value: "wrapped" if value == 2 else None
        )

        assert captured == {"a": 1, "b": "wrapped"}
        assert nested == frozenset({"b"})

    def test_default_from_enclosing_local(self):
        """Test a default read from an enclosing local needs no binding."""
        k = 3
        fn = lambda x, y=k: x + y  # noqa: E731

        captured, _ = extract_captures("lambda x, y=k: x + y", fn, _no_nesting)

        assert captured == {}
        assert fn.__code__.co_freevars == ()
