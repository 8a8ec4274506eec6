"""
Small PHP call-argument parser.

Detectors need to know whether a sanitizer call actually takes a given
variable as an argument, not merely whether the call appears nearby.  This
module splits argument lists on top-level commas while respecting quotes and
nesting, and locates call sites and brace-delimited bodies.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Tuple

_OPEN = {"(": ")", "[": "]", "{": "}"}
_CLOSE = {v: k for k, v in _OPEN.items()}
_QUOTES = ("'", '"')

VARIABLE_RE = re.compile(
    r"\$_(?:GET|POST|REQUEST|COOKIE|SERVER|FILES)\s*\[\s*[^\]]*\]|\$\w+")


@dataclass(frozen=True)
class CallSite:
    name: str
    start: int      # offset of the function name
    open_paren: int
    end: int        # offset just past the closing parenthesis
    arguments: Tuple[str, ...]


def split_arguments(text: str) -> List[str]:
    """Split an argument list (without the outer parentheses) on top-level commas."""
    args: List[str] = []
    buf: List[str] = []
    depth = 0
    quote = None
    escaped = False
    for ch in text:
        if quote:
            buf.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in _QUOTES:
            quote = ch
        elif ch in _OPEN:
            depth += 1
        elif ch in _CLOSE:
            depth = max(depth - 1, 0)
        elif ch == "," and depth == 0:
            args.append("".join(buf).strip())
            buf = []
            continue
        buf.append(ch)
    tail = "".join(buf).strip()
    if tail or args:
        args.append(tail)
    return args


def match_delimiter(content: str, open_index: int) -> Optional[int]:
    """Index of the delimiter closing the one at *open_index*, or None.

    Quotes, comments and nested delimiters of any kind are skipped.
    """
    if open_index >= len(content) or content[open_index] not in _OPEN:
        return None
    stack = [_OPEN[content[open_index]]]
    quote = None
    escaped = False
    i = open_index + 1
    n = len(content)
    while i < n:
        ch = content[i]
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
        elif ch in _QUOTES:
            quote = ch
        elif ch == "#" or content.startswith("//", i):
            newline = content.find("\n", i)
            if newline == -1:
                return None
            i = newline
        elif content.startswith("/*", i):
            close = content.find("*/", i + 2)
            if close == -1:
                return None
            i = close + 1
        elif ch in _OPEN:
            stack.append(_OPEN[ch])
        elif ch in _CLOSE:
            if ch != stack[-1]:
                return None
            stack.pop()
            if not stack:
                return i
        i += 1
    return None


def extract_call_arguments(content: str, open_paren: int) -> Optional[Tuple[List[str], int]]:
    """Arguments of the call whose '(' is at *open_paren*, plus the end offset."""
    close = match_delimiter(content, open_paren)
    if close is None:
        return None
    return split_arguments(content[open_paren + 1:close]), close + 1


def _names_regex(names: Iterable[str]) -> Optional[re.Pattern]:
    plain = sorted({n for n in names if n and not n.startswith("(")}, key=len, reverse=True)
    if not plain:
        return None
    alternation = "|".join(re.escape(n) for n in plain)
    return re.compile(r"(?<![\w$])(" + alternation + r")\s*\(", re.IGNORECASE)


def find_calls(content: str, names: Iterable[str], start: int = 0,
               end: Optional[int] = None) -> Iterator[CallSite]:
    """Yield calls to any of *names* whose name starts within [start, end).

    Method calls match too: ``prepare`` finds ``$wpdb->prepare(``.  Argument
    parsing runs over the whole content, so a call may extend past *end*.
    """
    regex = _names_regex(names)
    if regex is None:
        return
    end = len(content) if end is None else min(end, len(content))
    for m in regex.finditer(content, max(start, 0), end):
        open_paren = m.end() - 1
        parsed = extract_call_arguments(content, open_paren)
        if parsed is None:
            continue
        args, call_end = parsed
        yield CallSite(name=m.group(1), start=m.start(), open_paren=open_paren,
                       end=call_end, arguments=tuple(args))


def normalize_expression(expr: str) -> str:
    """Collapse whitespace and quote style so equivalent references compare equal."""
    return re.sub(r"\s+", "", expr).replace('"', "'")


def references_variable(arguments: Iterable[str], variable: str) -> bool:
    """True when any argument mentions *variable* as a whole token.

    ``$id`` does not match ``$identifier``; ``$_GET['x']`` matches
    ``$_GET[ "x" ]`` but not ``$_GET['xy']``.
    """
    target = normalize_expression(variable)
    if not target:
        return False
    token = re.compile(re.escape(target) + (r"(?!\w)" if target[-1].isalnum() or target[-1] == "_" else ""))
    for arg in arguments:
        if token.search(normalize_expression(arg)):
            return True
    return False


def first_variable(text: str) -> Optional[str]:
    """First variable or superglobal access in *text*."""
    m = VARIABLE_RE.search(text)
    return m.group(0) if m else None


def cast_applies(content: str, start: int, end: int, cast: str, variable: str) -> bool:
    """True when ``(int) $var``-style *cast* is applied to *variable* within [start, end)."""
    pattern = re.escape(normalize_expression(cast) + normalize_expression(variable))
    region = normalize_expression(content[max(start, 0):end])
    return re.search(pattern, region, re.IGNORECASE) is not None


def find_block(content: str, search_from: int) -> Optional[Tuple[int, int]]:
    """Span of the first ``{...}`` block starting at or after *search_from*."""
    brace = content.find("{", search_from)
    if brace == -1:
        return None
    close = match_delimiter(content, brace)
    if close is None:
        return None
    return brace, close + 1


def find_function_body(content: str, name: str) -> Optional[Tuple[int, int]]:
    """Span of the body of ``function name(...) {...}`` (also methods)."""
    m = re.search(r"\bfunction\s+&?\s*" + re.escape(name) + r"\s*\(", content, re.IGNORECASE)
    if not m:
        return None
    params_end = match_delimiter(content, m.end() - 1)
    if params_end is None:
        return None
    return find_block(content, params_end + 1)


def callback_name(argument: str) -> Optional[str]:
    """Function or method name from a PHP callable argument.

    Handles ``'fn'``, ``array($this, 'fn')``, ``[$this, 'fn']`` and
    ``'Class::fn'``.  Closures yield None.
    """
    arg = argument.strip()
    if re.match(r"^(?:static\s+)?(?:function|fn)\s*\(", arg):
        return None
    literals = re.findall(r"['\"]([\w\\:]+)['\"]", arg)
    if not literals:
        return None
    return literals[-1].split("::")[-1]


def literal_value(argument: str) -> Optional[str]:
    """Value of a quoted string literal argument, or None."""
    m = re.match(r"""^\s*(['"])(.*)\1\s*$""", argument, re.DOTALL)
    return m.group(2) if m else None
