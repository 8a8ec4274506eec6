"""
Detector contract and shared matching machinery.

Every detector turns ``(content, path, metadata)`` into a list of Findings
and nothing else: no I/O, no state kept between calls.  The rule set and
settings are fixed at construction, so a detector instance can be shared by
any number of worker threads.

Pipeline for one file:
1. Pattern matching (rules from the detector's YAML file)
2. Detector-specific analysis (taint flows, handlers, forms, ...)
3. Sanitizer window check on every candidate: a recognized sanitizer taking
   the matched variable downgrades severity one level and halves confidence
4. Deduplication and stable ordering
"""

import bisect
import re
import time
from abc import ABC
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .. import arg_parser
from ..config import DetectionSettings
from ..errors import DetectorTimeout
from ..models import Finding, Severity, TaintedVariable
from ..rule_engine import PatternRule, RuleSet
from ..taint_tracker import TaintTracker, TaintedUsage

PHP_EXTENSIONS = (".php", ".php3", ".php4", ".php5", ".php7", ".phtml", ".inc", ".module", ".tpl")

# File metadata keys carried onto findings for the remediation side.
PASSTHROUGH_METADATA = ("component_path", "component_type", "component_category", "component_name")

_AUTO = object()


@dataclass
class ScanContext:
    """Per-call state for one (detector, file) unit."""

    content: str
    path: str
    metadata: Mapping[str, Any]
    detector: str
    timeout: float = 0.0
    deadline: Optional[float] = None
    _line_starts: List[int] = field(default_factory=list, repr=False)
    _lines: List[str] = field(default_factory=list, repr=False)
    _tainted: Optional[Dict[str, TaintedVariable]] = field(default=None, repr=False)

    def check_deadline(self) -> None:
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise DetectorTimeout(self.detector, self.path, self.timeout)

    def line_of(self, offset: int) -> int:
        if not self._line_starts:
            self._line_starts = [0] + [m.end() for m in re.finditer("\n", self.content)]
        return bisect.bisect_right(self._line_starts, offset)

    @property
    def lines(self) -> List[str]:
        if not self._lines:
            self._lines = self.content.split("\n")
        return self._lines

    def lines_around(self, line: int, radius: int) -> str:
        lo = max(line - 1 - radius, 0)
        hi = min(line + radius, len(self.lines))
        return "\n".join(self.lines[lo:hi])


class Detector(ABC):
    """Base class for the pattern- and taint-based detectors."""

    name: str = ""
    vuln_type: str = ""
    cwe: str = ""
    owasp: str = ""
    extensions: Tuple[str, ...] = PHP_EXTENSIONS
    # When False any sanitizer in the window counts, whatever its arguments.
    requires_reference: bool = True
    # Rules whose match is itself the sanitizer call.
    validation_exempt: Tuple[str, ...] = ()

    def __init__(self, ruleset: RuleSet, settings: Optional[DetectionSettings] = None):
        self.ruleset = ruleset
        self.settings = settings or DetectionSettings()
        self.taint = TaintTracker(ruleset, propagate=self.settings.taint_propagation,
                                  window=self.settings.sanitizer_window)

    def __repr__(self):
        return f"<{type(self).__name__} rules={self.ruleset.version}>"

    @property
    def patterns(self) -> Tuple[PatternRule, ...]:
        return self.ruleset.patterns_for(self.name)

    def supports(self, path: str) -> bool:
        return path.lower().endswith(self.extensions)

    # ==================== Entry Point ====================

    def detect(self, content: str, path: str, metadata: Optional[Mapping[str, Any]] = None,
               deadline: Optional[float] = None) -> List[Finding]:
        """Findings for one file.  Raises DetectorTimeout past *deadline*."""
        ctx = ScanContext(content=content, path=path, metadata=metadata or {},
                          detector=self.name, timeout=self.settings.timeout_seconds,
                          deadline=deadline)
        findings = self.scan_patterns(ctx)
        findings.extend(self.analyze(ctx))
        return self.dedupe(findings)

    def analyze(self, ctx: ScanContext) -> List[Finding]:
        """Detector-specific checks beyond the pattern rules."""
        return []

    # ==================== Pattern Stage ====================

    def scan_patterns(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        for rule in self.patterns:
            for m in rule.compiled.finditer(ctx.content):
                ctx.check_deadline()
                finding = self.finding_from_rule(ctx, rule, m)
                if finding is not None:
                    findings.append(finding)
        return findings

    def finding_from_rule(self, ctx: ScanContext, rule: PatternRule,
                          match: "re.Match") -> Optional[Finding]:
        return self.build_finding(
            ctx,
            subtype=rule.id,
            severity=rule.severity,
            confidence=rule.confidence,
            start=match.start(),
            end=match.end(),
            description=rule.description,
            recommendation=rule.recommendation,
            cwe=rule.cwe,
            owasp=rule.owasp,
            rule_id=rule.id,
            validation=None if rule.id in self.validation_exempt else _AUTO,
        )

    # ==================== Shared Helpers ====================

    def find_validation(self, ctx: ScanContext, start: int, end: int,
                        variable: Optional[str]) -> Optional[str]:
        """Name of a sanitizer near [start, end) that covers *variable*."""
        if variable and self.requires_reference:
            return self.taint.find_sanitizer(ctx.content, start, end, variable, self.vuln_type)
        window = self.settings.sanitizer_window
        lo = max(start - window, 0)
        hi = min(end + window, len(ctx.content))
        sanitizers = self.ruleset.sanitizers_for(self.vuln_type)
        names = [s.name for s in sanitizers if not s.is_cast]
        call = next(arg_parser.find_calls(ctx.content, names, lo, hi), None)
        if call is not None:
            return call.name
        region = ctx.content[lo:hi]
        for s in sanitizers:
            if s.is_cast and s.name in arg_parser.normalize_expression(region):
                return s.name
        return None

    def tainted(self, ctx: ScanContext) -> Dict[str, TaintedVariable]:
        if ctx._tainted is None:
            ctx._tainted = self.taint.collect(ctx.content)
        return ctx._tainted

    def taint_usages(self, ctx: ScanContext) -> List[TaintedUsage]:
        return self.taint.find_sink_usages(ctx.content, self.vuln_type, self.tainted(ctx))

    def enclosing_function(self, content: str, offset: int) -> Optional[Tuple[int, int]]:
        """Span of the innermost function body containing *offset*."""
        best = None
        for m in re.finditer(r"\bfunction\b\s*&?\s*\w*\s*\(", content[:offset]):
            params_end = arg_parser.match_delimiter(content, m.end() - 1)
            if params_end is None:
                continue
            block = arg_parser.find_block(content, params_end + 1)
            if block and block[0] <= offset < block[1]:
                if best is None or block[0] > best[0]:
                    best = block
        return best

    def calls_any(self, text: str, names) -> Optional[str]:
        call = next(arg_parser.find_calls(text, names), None)
        return call.name if call else None

    def handler_body(self, content: str, callback_arg: str) -> Optional[str]:
        """Source of a hook callback: a named function in this file or a closure."""
        if re.match(r"^\s*(?:static\s+)?(?:function|fn)\b", callback_arg):
            return callback_arg
        name = arg_parser.callback_name(callback_arg)
        if not name:
            return None
        span = arg_parser.find_function_body(content, name)
        return content[span[0]:span[1]] if span else None

    def build_finding(self, ctx: ScanContext, *, subtype: str, severity: Severity,
                      confidence: float, start: int, end: int, description: str,
                      recommendation: str = "", cwe: str = "", owasp: str = "",
                      rule_id: str = "", variable: Any = _AUTO, validation: Any = _AUTO,
                      context_severity: Optional[Severity] = None,
                      tainted: Optional[TaintedVariable] = None,
                      extra: Optional[Dict[str, Any]] = None) -> Finding:
        """Assemble a Finding, applying context severity and the sanitizer downgrade.

        ``validation`` may be a sanitizer name (already found), None (skip
        the window check) or left alone to search the window.
        """
        matched = ctx.content[start:end]
        line = ctx.line_of(start)
        if variable is _AUTO:
            variable = arg_parser.first_variable(matched)
        if validation is _AUTO:
            validation = self.find_validation(ctx, start, end, variable)

        if context_severity is not None:
            severity = Severity.highest(severity, context_severity)
        if validation:
            severity = severity.downgrade()
            confidence = confidence / 2

        tainted_source = None
        tainted_line = None
        if tainted is None and variable:
            tainted = self.tainted(ctx).get(variable)
        if tainted is not None:
            tainted_source = tainted.source_kind
            tainted_line = tainted.declaration_line
        elif variable:
            kind = self.ruleset.source_kind_for(variable)
            if kind:
                tainted_source = kind
                tainted_line = line

        metadata: Dict[str, Any] = {k: ctx.metadata[k] for k in PASSTHROUGH_METADATA
                                    if k in ctx.metadata}
        if validation:
            metadata["sanitizer"] = validation
        if variable:
            metadata["variable"] = variable
        if extra:
            metadata.update(extra)

        return Finding(
            type=self.vuln_type,
            subtype=subtype,
            severity=severity,
            confidence=round(confidence, 4),
            line=line,
            matched_text=matched.strip()[:500],
            file_path=ctx.path,
            surrounding_context=ctx.lines_around(line, self.settings.context_lines),
            cwe_id=cwe or self.cwe,
            owasp_category=owasp or self.owasp,
            recommendation=recommendation,
            description=description,
            has_validation=bool(validation),
            tainted_source=tainted_source,
            tainted_line=tainted_line,
            detector=self.name,
            rule_id=rule_id or subtype,
            metadata=metadata,
        )

    def dedupe(self, findings: List[Finding]) -> List[Finding]:
        """One finding per (line, subtype, matched text); keep the most severe."""
        best: Dict[Tuple[int, str, str], Finding] = {}
        for f in findings:
            key = (f.line, f.subtype, f.matched_text)
            current = best.get(key)
            if current is None or (f.severity.value, f.confidence) > (
                    current.severity.value, current.confidence):
                best[key] = f
        return sorted(best.values(), key=lambda f: (f.line, f.subtype, f.rule_id, f.matched_text))
