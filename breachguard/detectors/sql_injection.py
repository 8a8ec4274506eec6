"""
SQL injection detector.

Beyond the pattern rules this follows tainted variables into query calls
and checks ``$wpdb->prepare()`` calls for placeholder/argument mismatches.
"""

import re
from typing import List

from .. import arg_parser
from ..models import Finding, Severity
from .base import Detector, ScanContext


class SQLInjectionDetector(Detector):
    name = "sql_injection"
    vuln_type = "sql_injection"
    cwe = "CWE-89"
    owasp = "A03:2021-Injection"

    def analyze(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        findings.extend(self._tainted_queries(ctx))
        findings.extend(self._prepare_mismatches(ctx))
        return findings

    def _tainted_queries(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        for usage in self.taint_usages(ctx):
            ctx.check_deadline()
            var = usage.variable
            # prepare() wrapping the variable inside the sink call is handled
            # by the sanitizer lookup; no separate rule needed
            findings.append(self.build_finding(
                ctx,
                subtype="tainted_query",
                severity=Severity.CRITICAL,
                confidence=0.85 if var.propagated_from is None else 0.75,
                start=usage.start,
                end=usage.end,
                description=f"{var.name} (from {var.source_kind} input, line "
                            f"{var.declaration_line}) reaches {usage.sink}()",
                recommendation="Pass the value through $wpdb->prepare() with a placeholder.",
                variable=var.name,
                validation=usage.sanitizer,
                tainted=var,
                extra={"sink": usage.sink, "propagated_from": var.propagated_from},
            ))
        return findings

    def _prepare_mismatches(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        placeholder = self.ruleset.expression("prepare_placeholder")
        for call in arg_parser.find_calls(ctx.content, ["prepare"]):
            ctx.check_deadline()
            if not call.arguments or not call.arguments[0]:
                continue
            query = arg_parser.literal_value(call.arguments[0])
            if query is None:
                continue
            expected = len(placeholder.findall(query))
            values = call.arguments[1:]
            interpolated = call.arguments[0].lstrip().startswith('"') and \
                re.search(r"\{?\$\w+", query) is not None

            if interpolated and expected == 0:
                findings.append(self.build_finding(
                    ctx, subtype="prepare_without_placeholders", severity=Severity.HIGH,
                    confidence=0.8, start=call.start, end=call.end,
                    description="prepare() is called on a query with interpolated variables "
                                "and no placeholders, so nothing is escaped.",
                    recommendation="Replace interpolated variables with %s/%d placeholders.",
                    validation=None))
                continue

            # A single array argument carries all values.
            if len(values) == 1 and re.match(r"^\s*(?:array\s*\(|\[)", values[0]):
                continue
            if expected != len(values):
                findings.append(self.build_finding(
                    ctx, subtype="prepare_mismatch", severity=Severity.MEDIUM,
                    confidence=0.7, start=call.start, end=call.end,
                    description=f"prepare() has {expected} placeholder(s) but "
                                f"{len(values)} value argument(s).",
                    recommendation="Give prepare() exactly one value per placeholder.",
                    validation=None,
                    extra={"placeholders": expected, "arguments": len(values)}))
        return findings
