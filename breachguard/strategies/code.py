"""
Source rewrites for injection findings.

The reported statement is rewritten in place: each unescaped occurrence of
the tainted expression is wrapped in the function that neutralizes it for
the finding's class (and, for XSS, its output context).  Inside a
double-quoted string the value is first lifted out by concatenation.
Validation re-runs the finding's detector on the patched file.
"""

import logging
import os
import re
from typing import Any, Dict, List, Optional, Tuple

from .. import arg_parser
from ..context_classifier import ContextClassifier, OutputContext
from ..detectors import DETECTORS
from ..errors import FixApplicationError
from ..models import Finding, FixResult, ValidationResult
from ..safety_assessor import FixPlan, PlannedAction
from .base import FixStrategy, read_text, write_file_atomic

logger = logging.getLogger(__name__)

ESCAPERS = {
    "sql_injection": "esc_sql",
    "file_inclusion": "basename",
    "code_injection": "escapeshellarg",
}

# Calls no argument wrapping can make safe.
UNFIXABLE_CALLS = re.compile(r"\b(?:eval|assert|create_function)\s*\(", re.IGNORECASE)

_STATEMENT_END = re.compile(r";|\?>")
_MAX_STATEMENT_LINES = 10


def variable_pattern(variable: str) -> re.Pattern:
    """Regex for *variable* tolerant of whitespace and quote style, plus any subscripts."""
    parts = []
    for ch in variable:
        if ch.isspace():
            continue
        if ch in "'\"":
            parts.append("[\"']")
        elif ch == "[":
            parts.append(r"\[\s*")
        elif ch == "]":
            parts.append(r"\s*\]")
        else:
            parts.append(re.escape(ch))
    body = "".join(parts)
    if variable[-1:].isalnum() or variable[-1:] == "_":
        body += r"(?!\w)(?:\s*\[[^\]\n]*\]|->\w+)*"
    return re.compile(body)


def in_double_quotes(text: str) -> bool:
    """True when the end of *text* lies inside a double-quoted PHP string."""
    quote = None
    escaped = False
    for ch in text:
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
    return quote == '"'


class CodeFixStrategy(FixStrategy):
    name = "code"
    supported_types = ("sql_injection", "xss", "file_inclusion", "code_injection")

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.classifier = ContextClassifier(self.ruleset, window=self.settings.detection.context_window)

    # -- helpers ---------------------------------------------------------------

    def escaper_for(self, finding: Finding) -> str:
        if finding.type == "xss":
            try:
                context = OutputContext(finding.metadata.get("output_context", "html_content"))
            except ValueError:
                context = OutputContext.HTML_CONTENT
            return self.classifier.required_escaping(context)[0]
        return ESCAPERS[finding.type]

    def variable_for(self, finding: Finding) -> Optional[str]:
        return finding.metadata.get("variable") or arg_parser.first_variable(finding.matched_text)

    @staticmethod
    def statement_span(content: str, line: int) -> Tuple[int, int]:
        """Offsets of the statement starting on *line* (1-based)."""
        starts = [0] + [m.end() for m in re.finditer("\n", content)]
        if line < 1 or line > len(starts):
            raise FixApplicationError(f"Line {line} is outside the file")
        start = starts[line - 1]
        last = line - 1 + _MAX_STATEMENT_LINES
        limit = starts[last] if last < len(starts) else len(content)
        m = _STATEMENT_END.search(content, start, limit)
        end = m.end() if m else limit
        newline = content.find("\n", end)
        return start, (len(content) if newline == -1 else newline)

    def rewrite(self, content: str, finding: Finding) -> Tuple[str, Dict[str, Any]]:
        """Patched content and a change description.  Raises FixApplicationError."""
        start, end = self.statement_span(content, finding.line)
        segment = content[start:end]
        escaper = self.escaper_for(finding)

        used = finding.metadata.get("escaping_used")
        if finding.subtype == "wrong_context_escaping" and used:
            patched, count = re.subn(r"(?<![\w$>])" + re.escape(used) + r"(\s*\()",
                                     escaper + r"\1", segment, count=1)
        else:
            variable = self.variable_for(finding)
            if not variable:
                raise FixApplicationError(f"No variable to escape on line {finding.line}")
            patched, count = self._wrap_occurrences(segment, variable, escaper)
        if count == 0:
            raise FixApplicationError(
                f"Nothing to rewrite on line {finding.line} of {finding.file_path}")
        change = {
            "file": finding.file_path,
            "line": finding.line,
            "escaper": escaper,
            "before": segment,
            "after": patched,
        }
        return content[:start] + patched + content[end:], change

    def _wrap_occurrences(self, segment: str, variable: str, escaper: str) -> Tuple[str, int]:
        out: List[str] = []
        pos = 0
        count = 0
        for m in variable_pattern(variable).finditer(segment):
            s, e = m.start(), m.end()
            before = segment[:s]
            if re.search(re.escape(escaper) + r"\s*\(\s*$", before):
                continue
            if re.match(r"\s*(?:\.=|=(?![=>]))", segment[e:]):
                continue  # assignment target
            expr = m.group(0)
            # Markup quotes before the open tag are not PHP strings.
            opened = max(before.rfind("<?php"), before.rfind("<?="))
            if in_double_quotes(before[opened:] if opened != -1 else before):
                if s > 0 and segment[s - 1] == "{" and segment[e:e + 1] == "}":
                    s, e = s - 1, e + 1
                head, tail = '" . ', ' . "'
                if segment[s - 1:s] == '"':
                    s, head = s - 1, ""
                if segment[e:e + 1] == '"':
                    e, tail = e + 1, ""
                replacement = f"{head}{escaper}({expr}){tail}"
            else:
                replacement = f"{escaper}({expr})"
            out.append(segment[pos:s])
            out.append(replacement)
            pos = e
            count += 1
        out.append(segment[pos:])
        return "".join(out), count

    # -- contract --------------------------------------------------------------

    def fixable(self, finding: Finding) -> bool:
        if not super().fixable(finding):
            return False
        if UNFIXABLE_CALLS.search(finding.matched_text):
            return False
        if finding.subtype == "wrong_context_escaping":
            return bool(finding.metadata.get("escaping_used"))
        return self.variable_for(finding) is not None

    def plan_fix(self, finding: Finding) -> FixPlan:
        target = self.target_path(finding)
        complexity = ["custom_code_changes"]
        if finding.metadata.get("propagated_from"):
            complexity.append("multi_step_fix")
        return FixPlan(
            strategy=self.name,
            actions=(PlannedAction("file_patch", target,
                                   f"Escape {self.variable_for(finding) or 'output'} "
                                   f"with {self.escaper_for(finding)}()"),),
            affected_files=(target,) if target else (),
            complexity_factors=tuple(complexity),
            estimated_time=45,
        )

    def preview(self, finding: Finding, plan: FixPlan) -> List[Dict[str, Any]]:
        _, change = self.rewrite(read_text(self.target_path(finding)), finding)
        return [change]

    def _apply(self, finding: Finding, plan: FixPlan, result: FixResult) -> None:
        path = self.target_path(finding)
        original = read_text(path)
        patched, change = self.rewrite(original, finding)
        write_file_atomic(path, patched)
        logger.debug("Rewrote %s:%d -> %s", path, finding.line, change["after"].strip())
        result.actions_taken.append(f"Patched line {finding.line} of {path} with "
                                    f"{change['escaper']}()")
        result.changes_made.append(change)
        result.rollback_data["file"] = path

    def validate_fix(self, finding: Finding, fix_result: FixResult) -> ValidationResult:
        checks: Dict[str, Any] = {}
        issues: List[str] = []
        path = self.target_path(finding)
        if not os.path.isfile(path):
            return ValidationResult(False, 0.0, {"file_exists": False}, [f"{path} is missing"])
        content = read_text(path)
        checks["file_exists"] = True

        expected = [c["after"] for c in fix_result.changes_made if "after" in c]
        checks["rewrite_present"] = all(text in content for text in expected) and bool(expected)
        if not checks["rewrite_present"]:
            issues.append("Patched code is not present in the file")

        before = [c["before"] for c in fix_result.changes_made if "before" in c]
        checks["delimiters_balanced"] = all(
            a.count("(") - a.count(")") == b.count("(") - b.count(")")
            for a, b in zip(expected, before))
        if not checks["delimiters_balanced"]:
            issues.append("Rewrite left unbalanced parentheses")

        detector_cls = DETECTORS.get(finding.type)
        if detector_cls is not None:
            detector = detector_cls(self.ruleset, self.settings.detection)
            variable = self.variable_for(finding)
            remaining = [
                f for f in detector.detect(content, finding.file_path, finding.metadata)
                if f.line == finding.line and not f.has_validation
                and (f.subtype == finding.subtype or
                     (variable and f.metadata.get("variable") == variable))
            ]
            checks["rescan_clean"] = not remaining
            if remaining:
                issues.append(f"{len(remaining)} unescaped finding(s) remain on line {finding.line}")

        confidence = 0.9 if not issues else 0.0
        return ValidationResult(is_valid=not issues, confidence=confidence, checks=checks,
                                issues=issues)
