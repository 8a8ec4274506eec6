"""
Lightweight intra-file taint tracking.

Source -> [Sanitizer] -> Sink

1. Collect ``$var = <expr>`` assignments whose right-hand side reads an
   untrusted source.  With propagation enabled, a small fixed-point pass also
   taints variables assigned from already-tainted variables
   (``$a = $_GET['x']; $b = $a;``).
2. Find sink statements/calls that use a tainted variable.
3. For each usage, look in a +-N character window for a sanitizer call whose
   parsed argument list includes that variable.

State lives only for the duration of one ``trace`` call.
"""

import re
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

from . import arg_parser
from .models import TaintedVariable
from .rule_engine import RuleSet

ASSIGNMENT_RE = re.compile(r"(\$\w+)\s*(\.?=)(?![=>])\s*([^;]+);")
_VAR_TOKEN_RE = re.compile(r"\$\w+")
_CAST_RE = re.compile(r"^\(\s*(int|integer|float|double|bool|boolean)\s*\)", re.IGNORECASE)
_SUPERGLOBAL_RE = re.compile(r"^\$_(?:GET|POST|REQUEST|COOKIE|SERVER|FILES)$")


@dataclass(frozen=True)
class Assignment:
    variable: str
    operator: str
    expression: str
    line: int
    offset: int


@dataclass(frozen=True)
class TaintedUsage:
    """A tainted variable reaching a sink."""
    variable: TaintedVariable
    sink: str
    line: int
    start: int
    end: int
    statement: str
    sanitizer: Optional[str] = None

    @property
    def sanitized(self) -> bool:
        return self.sanitizer is not None


@dataclass
class TaintReport:
    tainted: Dict[str, TaintedVariable]
    usages: List[TaintedUsage]


def _line_of(content: str, offset: int) -> int:
    return content.count("\n", 0, offset) + 1


class TaintTracker:
    """Tracks untrusted data from sources to sinks within one file."""

    def __init__(self, ruleset: RuleSet, propagate: bool = True, window: int = 200):
        self.ruleset = ruleset
        self.propagate = propagate
        self.window = window

    # -- assignments -----------------------------------------------------------

    def find_assignments(self, content: str) -> List[Assignment]:
        assignments = []
        for m in ASSIGNMENT_RE.finditer(content):
            if _SUPERGLOBAL_RE.match(m.group(1)):
                continue
            assignments.append(Assignment(
                variable=m.group(1), operator=m.group(2), expression=m.group(3).strip(),
                line=_line_of(content, m.start()), offset=m.start()))
        return assignments

    def wrapping_sanitizer(self, expression: str) -> Optional[str]:
        """Sanitizer applied to the whole expression, e.g. ``esc_sql($x)`` or ``(int) $x``."""
        expr = expression.strip()
        cast = _CAST_RE.match(expr)
        if cast:
            return "(int)" if cast.group(1).lower().startswith("int") else f"({cast.group(1).lower()})"
        m = re.match(r"^(?:\$\w+\s*->\s*)?(\w+)\s*\(", expr)
        if not m or m.group(1) not in self.ruleset.sanitizer_names():
            return None
        close = arg_parser.match_delimiter(expr, m.end() - 1)
        if close is None or expr[close + 1:].strip():
            return None
        return m.group(1)

    def collect(self, content: str) -> Dict[str, TaintedVariable]:
        """Tainted variables keyed by name; the first tainted assignment wins.

        This is the file-level summary.  Sinks are judged against the state
        left by the latest assignment before them (``assignment_states``).
        """
        assignments = self.find_assignments(content)
        tainted: Dict[str, TaintedVariable] = {}
        for a in assignments:
            if a.variable in tainted:
                continue
            kind = self.ruleset.source_kind_for(a.expression)
            if kind:
                tainted[a.variable] = TaintedVariable(
                    name=a.variable, source_kind=kind, declaration_line=a.line,
                    expression=a.expression, sanitized_by=self.wrapping_sanitizer(a.expression))

        if not self.propagate:
            return tainted

        # Fixed point: each round can only add variables, bounded by the
        # number of distinct assignment targets.
        for _ in range(len(assignments) + 1):
            changed = False
            for a in assignments:
                if a.variable in tainted:
                    continue
                parent = next((tainted[v] for v in _VAR_TOKEN_RE.findall(a.expression)
                               if v in tainted and tainted[v].declaration_line <= a.line), None)
                if parent is None:
                    continue
                sanitizer = self.wrapping_sanitizer(a.expression)
                if sanitizer is None and a.expression.strip() == parent.name:
                    sanitizer = parent.sanitized_by
                tainted[a.variable] = TaintedVariable(
                    name=a.variable, source_kind=parent.source_kind, declaration_line=a.line,
                    expression=a.expression, propagated_from=parent.name,
                    sanitized_by=sanitizer)
                changed = True
            if not changed:
                break
        return tainted

    def _assigned_state(self, a: Assignment,
                        current: Dict[str, Optional[TaintedVariable]]) -> Optional[TaintedVariable]:
        """Taint carried by the right-hand side of *a*, given the states before it."""
        wrap = self.wrapping_sanitizer(a.expression)
        kind = self.ruleset.source_kind_for(a.expression)
        if kind:
            return TaintedVariable(name=a.variable, source_kind=kind, declaration_line=a.line,
                                   expression=a.expression, sanitized_by=wrap)
        refs = [v for v in _VAR_TOKEN_RE.findall(a.expression) if current.get(v) is not None]
        if a.variable in refs:
            # $x = f($x) keeps the origin of $x.
            prev = current[a.variable]
            sanitizer = wrap
            if sanitizer is None and a.expression == a.variable:
                sanitizer = prev.sanitized_by
            return replace(prev, sanitized_by=sanitizer)
        if not refs or not self.propagate:
            return None
        parent = current[refs[0]]
        sanitizer = wrap
        if sanitizer is None and a.expression == parent.name:
            sanitizer = parent.sanitized_by
        return TaintedVariable(name=a.variable, source_kind=parent.source_kind,
                               declaration_line=a.line, expression=a.expression,
                               propagated_from=parent.name, sanitized_by=sanitizer)

    def assignment_states(self, content: str) -> Dict[str, List[Tuple[int, Optional[TaintedVariable]]]]:
        """Per variable, ``(offset, state)`` after each assignment in file order.

        A tainted assignment replaces the earlier state, sanitizer included.
        An untainted one may sit in a single branch, so taint already present
        survives it.  ``.=`` keeps the earlier taint and drops its sanitizer
        when the appended part is sanitized differently.
        """
        states: Dict[str, List[Tuple[int, Optional[TaintedVariable]]]] = {}
        current: Dict[str, Optional[TaintedVariable]] = {}
        for a in self.find_assignments(content):
            state = self._assigned_state(a, current)
            prev = current.get(a.variable)
            if prev is not None:
                if state is None:
                    state = prev
                elif a.operator == ".=":
                    state = prev if state.sanitized_by == prev.sanitized_by else \
                        replace(prev, sanitized_by=None)
            current[a.variable] = state
            states.setdefault(a.variable, []).append((a.offset, state))
        return states

    @staticmethod
    def state_at(history: List[Tuple[int, Optional[TaintedVariable]]],
                 offset: int) -> Optional[TaintedVariable]:
        """State left by the latest assignment starting before *offset*."""
        state = None
        for start, assigned in history:
            if start >= offset:
                break
            state = assigned
        return state

    # -- sanitizers ------------------------------------------------------------

    def find_sanitizer(self, content: str, start: int, end: int, variable: str,
                       vuln_type: str) -> Optional[str]:
        """Sanitizer call within the +-window around [start, end) that takes *variable*."""
        lo = max(start - self.window, 0)
        hi = min(end + self.window, len(content))
        sanitizers = self.ruleset.sanitizers_for(vuln_type)
        names = [s.name for s in sanitizers if not s.is_cast]
        for call in arg_parser.find_calls(content, names, lo, hi):
            if arg_parser.references_variable(call.arguments, variable):
                return call.name
        for s in sanitizers:
            if s.is_cast and arg_parser.cast_applies(content, lo, hi, s.name, variable):
                return s.name
        return None

    def is_sanitized_for(self, var: TaintedVariable, vuln_type: str) -> bool:
        return var.sanitized_by is not None and \
            var.sanitized_by in self.ruleset.sanitizer_names(vuln_type)

    # -- sinks -----------------------------------------------------------------

    def sink_statements(self, content: str, vuln_type: str) -> List[Tuple[str, int, int, List[str]]]:
        """(sink name, start, end, argument texts) for every sink of *vuln_type*."""
        sinks = self.ruleset.sinks_for(vuln_type)
        found = []
        calls = [s.name for s in sinks if not s.construct]
        for call in arg_parser.find_calls(content, calls):
            found.append((call.name, call.start, call.end, list(call.arguments)))
        constructs = [s.name for s in sinks if s.construct]
        if constructs:
            names = "|".join(re.escape(n) for n in sorted(constructs, key=len, reverse=True))
            for m in re.finditer(r"(?<![\w$>])(" + names + r")\b(?!\s*\()\s*([^;]*?)\s*(?:;|\?>)",
                                 content, re.IGNORECASE):
                found.append((m.group(1).lower(), m.start(), m.end(), [m.group(2)]))
            for m in re.finditer(r"(?<![\w$>])(" + names + r")\s*\(", content, re.IGNORECASE):
                parsed = arg_parser.extract_call_arguments(content, m.end() - 1)
                if parsed:
                    found.append((m.group(1).lower(), m.start(), parsed[1], parsed[0]))
            if vuln_type == "xss":
                for m in re.finditer(r"<\?=\s*(.*?)\s*;?\s*\?>", content, re.DOTALL):
                    found.append(("echo", m.start(), m.end(), [m.group(1)]))
        return found

    def find_sink_usages(self, content: str, vuln_type: str,
                         tainted: Optional[Dict[str, TaintedVariable]] = None) -> List[TaintedUsage]:
        if tainted is None:
            tainted = self.collect(content)
        if not tainted:
            return []
        history = self.assignment_states(content)
        usages = []
        for sink, start, end, arguments in self.sink_statements(content, vuln_type):
            line = _line_of(content, start)
            for name in tainted:
                var = self.state_at(history.get(name, []), start)
                if var is None:
                    continue
                if not arg_parser.references_variable(arguments, var.name):
                    continue
                sanitizer = var.sanitized_by if self.is_sanitized_for(var, vuln_type) else None
                if sanitizer is None:
                    sanitizer = self.find_sanitizer(content, start, end, var.name, vuln_type)
                usages.append(TaintedUsage(
                    variable=var, sink=sink, line=line, start=start, end=end,
                    statement=content[start:end], sanitizer=sanitizer))
        usages.sort(key=lambda u: (u.start, u.variable.name))
        return usages

    def trace(self, content: str, vuln_type: str) -> TaintReport:
        tainted = self.collect(content)
        return TaintReport(tainted=tainted,
                           usages=self.find_sink_usages(content, vuln_type, tainted))
