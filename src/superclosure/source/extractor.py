"""Trimming a located source window down to exactly one function literal.

``inspect`` hands back whole statements: ``f = wrap(lambda x: x + a)`` rather than
just ``lambda x: x + a``, decorators included for ``def`` blocks. The extractor
tokenizes that window (so keywords inside strings or comments never match),
finds the function-introducing token and scans forward, balancing brackets,
to where the literal ends.

This handles cases like:
    - Several lambdas on one line: f, g = lambda x: x*2, lambda x: x+1
    - Nested lambdas: lambda x: lambda y: x + y
    - Lambdas with lambda defaults: lambda x=lambda: 1: x()
    - Lambdas inside calls, literals and comprehensions
    - Multi-line lambdas and indented, decorated or async ``def`` blocks
"""

import io
import linecache
import tokenize
from typing import List, Optional, Set, Tuple

from ..errors import ParseError, SourceUnavailableError

KEYWORDS = ("lambda", "def")

_OPEN = ("(", "[", "{")
_CLOSE = (")", "]", "}")

# Tokens that carry layout only and never start or end a literal.
_LAYOUT = frozenset(
    {
        tokenize.NL,
        tokenize.NEWLINE,
        tokenize.INDENT,
        tokenize.DEDENT,
        tokenize.COMMENT,
        tokenize.ENDMARKER,
    }
)

# String tokens whose text may run over several lines.
_STRING = frozenset(
    getattr(tokenize, name)
    for name in ("STRING", "FSTRING_MIDDLE", "TSTRING_MIDDLE")
    if hasattr(tokenize, name)
)

Position = Tuple[int, int]


def read_lines(path: str, start_line: int, end_line: int) -> List[str]:
    """Read an inclusive, 1-based line range through linecache."""
    linecache.checkcache(path)
    lines = linecache.getlines(path)

    if not lines:
        raise SourceUnavailableError(f"Cannot read source file '{path}'.")

    if start_line < 1 or end_line < start_line or end_line > len(lines):
        raise SourceUnavailableError(
            f"Lines {start_line}-{end_line} are out of range for '{path}' ({len(lines)} lines)."
        )

    return lines[start_line - 1 : end_line]


def _tokenize(text: str) -> Tuple[List[tokenize.TokenInfo], Optional[Exception]]:
    """Tokenize as far as possible.

    A window cut out of a larger file often ends in the middle of an enclosing
    statement. Tokens up to the failure are still usable as long as the literal
    ends before it, so the error is returned rather than raised.
    """
    tokens = []

    try:
        for token in tokenize.generate_tokens(io.StringIO(text).readline):
            tokens.append(token)
    except (tokenize.TokenError, SyntaxError) as e:
        return tokens, e

    return tokens, None


def _is_keyword(token: tokenize.TokenInfo, keywords) -> bool:
    return token.type == tokenize.NAME and token.string in keywords


def _lambda_colon(tokens: List[tokenize.TokenInfo], index: int) -> Optional[int]:
    """Index of the colon opening the body of the lambda at ``index``."""
    depth = 0
    nested = 0

    for j in range(index + 1, len(tokens)):
        token = tokens[j]

        if _is_keyword(token, ("lambda",)):
            # A lambda default value: its colon comes first.
            nested += 1
        elif token.type == tokenize.OP:
            if token.string in _OPEN:
                depth += 1
            elif token.string in _CLOSE:
                depth -= 1
            elif token.string == ":" and depth == 0:
                if nested:
                    nested -= 1
                else:
                    return j
        elif token.type in (tokenize.NEWLINE, tokenize.ENDMARKER):
            return None

    return None


def _find_start(
    tokens: List[tokenize.TokenInfo], keywords, anchor: Optional[Position]
) -> Optional[int]:
    candidates = [i for i, token in enumerate(tokens) if _is_keyword(token, keywords)]

    if not candidates:
        return None

    if anchor is None:
        return candidates[0]

    # The anchor points into the body, so the wanted lambda is the one whose
    # body colon is closest to but before it.
    best = None
    best_colon = None

    for i in candidates:
        if tokens[i].string != "lambda":
            continue

        colon = _lambda_colon(tokens, i)

        if colon is None or tokens[colon].start >= anchor:
            continue

        if best_colon is None or tokens[colon].start > best_colon:
            best, best_colon = i, tokens[colon].start

    return candidates[0] if best is None else best


def _lambda_end(tokens: List[tokenize.TokenInfo], index: int) -> Optional[int]:
    depth = 0
    nested = 0
    past_colon = False
    body = False
    last = None

    for j in range(index + 1, len(tokens)):
        token = tokens[j]

        if token.type == tokenize.NAME:
            if token.string == "lambda":
                nested += 1
            elif token.string == "for" and depth == 0 and past_colon:
                # Comprehension clause of an enclosing expression.
                break
        elif token.type == tokenize.OP:
            if token.string in _OPEN:
                depth += 1
            elif token.string in _CLOSE:
                if depth == 0:
                    break
                depth -= 1
            elif token.string == ":" and depth == 0:
                if nested:
                    nested -= 1
                elif past_colon:
                    # Body separator of an enclosing lambda.
                    break
                else:
                    past_colon = True
                    last = j
                    continue
            elif (
                token.string in (",", ";") and depth == 0 and past_colon and not nested
            ):
                break
        elif token.type in (tokenize.NEWLINE, tokenize.ENDMARKER):
            break

        if token.type not in _LAYOUT:
            last = j
            body = body or past_colon
    else:
        # Ran out of tokens without reaching the end of the literal.
        return None

    if not (past_colon and body and depth == 0):
        return None

    return last


def _def_end(tokens: List[tokenize.TokenInfo], index: int) -> Optional[int]:
    depth = 0
    header = None

    for j in range(index + 1, len(tokens)):
        token = tokens[j]

        if token.type == tokenize.OP:
            if token.string in _OPEN:
                depth += 1
            elif token.string in _CLOSE:
                if depth == 0:
                    return None
                depth -= 1
            elif token.string == ":" and depth == 0:
                header = j
                break
        elif token.type in (tokenize.NEWLINE, tokenize.ENDMARKER):
            return None

    if header is None:
        return None

    last = header
    block = False
    indent = 0

    for j in range(header + 1, len(tokens)):
        token = tokens[j]

        if token.type == tokenize.NEWLINE:
            if block:
                continue
            if last == header:
                # The suite is an indented block on the following lines.
                block = True
                continue
            return last
        elif token.type == tokenize.INDENT:
            if block:
                indent += 1
        elif token.type == tokenize.DEDENT:
            if block:
                indent -= 1
                if indent == 0:
                    return last if last != header else None
        elif token.type == tokenize.ENDMARKER:
            return None
        elif token.type not in _LAYOUT:
            last = j

    return None


def _slice(lines: List[str], start: Position, end: Position) -> str:
    (start_row, start_col), (end_row, end_col) = start, end

    if start_row == end_row:
        return lines[start_row - 1][start_col:end_col]

    parts = [lines[start_row - 1][start_col:]]
    parts.extend(lines[start_row : end_row - 1])
    parts.append(lines[end_row - 1][:end_col])

    return "".join(parts)


def _string_rows(tokens: List[tokenize.TokenInfo]) -> Set[int]:
    """Rows that begin inside a multi-line string."""
    rows = set()

    for token in tokens:
        if token.type in _STRING and token.end[0] > token.start[0]:
            rows.update(range(token.start[0] + 1, token.end[0] + 1))

    return rows


def _shift(lines: List[str], columns: int, keep: Set[int]) -> str:
    shifted = []

    for row, line in enumerate(lines, 1):
        if row in keep or not line.strip():
            shifted.append(line)
        elif columns >= 0:
            shifted.append(" " * columns + line)
        else:
            width = len(line) - len(line.lstrip(" \t"))
            shifted.append(line[min(width, -columns) :])

    return "".join(shifted)


def reindent(source: str, columns: int) -> str:
    """Shift every line of code by ``columns``, negative to dedent.

    Lines continuing a multi-line string are part of the string's value and
    are left exactly as they are. Dedenting never removes more than a line's
    leading whitespace.
    """
    tokens, _ = _tokenize(source)

    return _shift(io.StringIO(source).readlines(), columns, _string_rows(tokens))


def trim_to_literal(
    text: str,
    keyword: Optional[str] = None,
    anchor: Optional[Position] = None,
) -> str:
    """Cut the function literal out of a block of source text.

    Args:
        text: The source window.
        keyword: Only accept this introducing keyword ("lambda" or "def").
            Either is accepted if None.
        anchor: ``(line, column)`` inside the window where the wanted lambda's
            body starts. Without it the first introducing keyword wins.

    Returns:
        The literal text. ``def`` blocks are dedented so that the ``def`` line
        starts at column 0, leaving the contents of multi-line strings alone;
        lambdas are returned exactly as written.

    Raises:
        ParseError: If no introducing keyword is found or the literal does not
            end (balanced) within the window.
    """
    lines = io.StringIO(text).readlines()
    tokens, error = _tokenize(text)
    keywords = (keyword,) if keyword else KEYWORDS

    start = _find_start(tokens, keywords, anchor)

    if start is None:
        raise ParseError(
            f"No {' or '.join(repr(k) for k in keywords)} found in source window.",
            text,
        ) from error

    if tokens[start].string == "lambda":
        end = _lambda_end(tokens, start)
    else:
        end = _def_end(tokens, start)

        if start > 0 and _is_keyword(tokens[start - 1], ("async",)):
            start -= 1

    if end is None:
        raise ParseError(
            "Function literal is not balanced within the source window.", text
        ) from error

    literal = _slice(lines, tokens[start].start, tokens[end].end)

    if tokens[start].string != "lambda":
        row, col = tokens[start].start
        keep = {r - row + 1 for r in _string_rows(tokens) if r > row}

        literal = _shift(io.StringIO(literal).readlines(), -col, keep)

    return literal


def extract_code(
    path: str,
    start_line: int,
    end_line: int,
    keyword: Optional[str] = None,
    anchor: Optional[Position] = None,
) -> str:
    """Read a located line range and return the function literal it contains.

    Args:
        path: Source file or linecache pseudo-file.
        start_line: First line to read, 1-based.
        end_line: Last line to read, inclusive.
        keyword: See trim_to_literal.
        anchor: Absolute ``(line, column)`` of the lambda body, as reported by
            SourceLocation.anchor.

    Raises:
        SourceUnavailableError: If the lines cannot be read.
        ParseError: If the window holds no balanced function literal.
    """
    lines = read_lines(path, start_line, end_line)

    if anchor is not None:
        anchor = (anchor[0] - start_line + 1, anchor[1])

    return trim_to_literal("".join(lines), keyword=keyword, anchor=anchor)


def literal_kind(source: str) -> Optional[str]:
    """"lambda" or "def" depending on how the literal starts, None for anything else."""
    tokens, _ = _tokenize(source)

    for token in tokens:
        if token.type in _LAYOUT:
            continue
        if _is_keyword(token, ("lambda",)):
            return "lambda"
        if _is_keyword(token, ("def", "async")):
            return "def"
        return None

    return None


def literal_name(source: str) -> Optional[str]:
    """Name a literal binds when evaluated: the def name, or "<lambda>"."""
    kind = literal_kind(source)

    if kind == "lambda":
        return "<lambda>"

    if kind == "def":
        tokens, _ = _tokenize(source)

        for i, token in enumerate(tokens[:-1]):
            if _is_keyword(token, ("def",)) and tokens[i + 1].type == tokenize.NAME:
                return tokens[i + 1].string

    return None
