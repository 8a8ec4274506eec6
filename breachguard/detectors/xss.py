"""
Cross-site scripting detector.

Every output site is classified by its surrounding markup (script, style,
URL, attribute or plain HTML).  Severity is the higher of the rule's own
severity and the context's base risk, and escaping is judged against the
function that context requires: ``esc_html()`` inside ``href="..."`` is
reported as wrong-context escaping.
"""

from typing import List, Optional, Set, Tuple

from .. import arg_parser
from ..context_classifier import ContextClassifier, OutputContext
from ..models import Finding, Severity
from ..rule_engine import PatternRule
from .base import Detector, ScanContext

# Numeric conversions are safe in every context.
CONTEXT_NEUTRAL = ("intval", "absint", "floatval", "(int)")

RECOMMENDED_ESCAPING = {
    OutputContext.HTML_CONTENT: "esc_html()",
    OutputContext.ATTRIBUTE: "esc_attr()",
    OutputContext.JAVASCRIPT: "esc_js() or wp_json_encode()",
    OutputContext.CSS: "esc_css() / safecss_filter_attr()",
    OutputContext.URL: "esc_url()",
}


class XSSDetector(Detector):
    name = "xss"
    vuln_type = "xss"
    cwe = "CWE-79"
    owasp = "A03:2021-Injection"
    extensions = Detector.extensions + (".html", ".htm")

    def __init__(self, ruleset, settings=None):
        super().__init__(ruleset, settings)
        self.classifier = ContextClassifier(ruleset, window=self.settings.context_window)

    def _escaper_ok(self, sanitizer: str, context: OutputContext) -> bool:
        return sanitizer in CONTEXT_NEUTRAL or sanitizer in self.classifier.required_escaping(context)

    # -- pattern stage ---------------------------------------------------------

    def finding_from_rule(self, ctx: ScanContext, rule: PatternRule, match) -> Optional[Finding]:
        variable = arg_parser.first_variable(match.group(0))
        context_severity = None
        extra = {}
        if variable:
            offset = match.start() + match.group(0).find(variable)
            context = self.classifier.classify(ctx.content, offset)
            context_severity = self.classifier.severity_for(context)
            extra["output_context"] = context.value
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
            variable=variable,
            context_severity=context_severity,
            extra=extra,
        )

    # -- analysis stage --------------------------------------------------------

    def analyze(self, ctx: ScanContext) -> List[Finding]:
        findings, reported = self._tainted_output(ctx)
        findings.extend(self._escaping_checks(ctx, reported))
        return findings

    def _tainted_output(self, ctx: ScanContext) -> Tuple[List[Finding], Set[Tuple[int, int]]]:
        findings = []
        reported = set()
        for usage in self.taint_usages(ctx):
            ctx.check_deadline()
            var = usage.variable
            offset = ctx.content.find(var.name, usage.start, usage.end)
            context = self.classifier.classify(ctx.content, offset if offset >= 0 else usage.start)
            context_severity = self.classifier.severity_for(context)

            if usage.sanitizer and not self._escaper_ok(usage.sanitizer, context):
                findings.append(self._wrong_context(ctx, usage.start, usage.end,
                                                    usage.sanitizer, context))
                reported.add((usage.start, usage.end))
                continue

            findings.append(self.build_finding(
                ctx,
                subtype="tainted_variable_output",
                severity=Severity.HIGH,
                confidence=0.8 if var.propagated_from is None else 0.7,
                start=usage.start,
                end=usage.end,
                description=f"{var.name} (from {var.source_kind} input, line "
                            f"{var.declaration_line}) is printed in {context.value} context",
                recommendation=f"Escape with {RECOMMENDED_ESCAPING[context]} at output.",
                variable=var.name,
                validation=usage.sanitizer,
                context_severity=context_severity,
                tainted=var,
                extra={"output_context": context.value, "sink": usage.sink,
                       "propagated_from": var.propagated_from},
            ))
        return findings, reported

    def _escaping_checks(self, ctx: ScanContext, reported: Set[Tuple[int, int]]) -> List[Finding]:
        """Escaped output whose escaping function does not fit the context."""
        findings = []
        escapers = [n for n in self.ruleset.sanitizer_names("xss")
                    if not n.startswith("(") and n not in CONTEXT_NEUTRAL]
        for _, start, end, _ in self.taint.sink_statements(ctx.content, "xss"):
            if (start, end) in reported:
                continue
            for call in arg_parser.find_calls(ctx.content, escapers, start, end):
                ctx.check_deadline()
                context = self.classifier.classify(ctx.content, call.start)
                if self._escaper_ok(call.name, context):
                    continue
                findings.append(self._wrong_context(ctx, call.start, call.end, call.name, context))
        return findings

    def _wrong_context(self, ctx: ScanContext, start: int, end: int, used: str,
                       context: OutputContext) -> Finding:
        return self.build_finding(
            ctx,
            subtype="wrong_context_escaping",
            severity=Severity.MEDIUM,
            confidence=0.6,
            start=start,
            end=end,
            description=f"{used}() does not protect output in {context.value} context",
            recommendation=f"Use {RECOMMENDED_ESCAPING[context]} for this context.",
            validation=None,
            extra={"output_context": context.value, "escaping_used": used},
        )
