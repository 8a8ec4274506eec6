"""
File inclusion and path traversal detector.
"""

import re
from typing import List

from ..models import Finding, Severity
from .base import Detector, ScanContext

INCLUDE_CONSTRUCTS = ("include", "include_once", "require", "require_once")
TRAVERSAL_RE = re.compile(r"""(?:\.\./|\.\.\\\\|%2e%2e(?:%2f|/))""", re.IGNORECASE)


class FileInclusionDetector(Detector):
    name = "file_inclusion"
    vuln_type = "file_inclusion"
    cwe = "CWE-98"
    owasp = "A03:2021-Injection"

    def analyze(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        findings.extend(self._tainted_paths(ctx))
        findings.extend(self._traversal(ctx))
        return findings

    def _tainted_paths(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        for usage in self.taint_usages(ctx):
            ctx.check_deadline()
            var = usage.variable
            include = usage.sink in INCLUDE_CONSTRUCTS
            findings.append(self.build_finding(
                ctx,
                subtype="tainted_file_path",
                severity=Severity.CRITICAL if include else Severity.HIGH,
                confidence=0.8 if var.propagated_from is None else 0.7,
                start=usage.start,
                end=usage.end,
                description=f"{var.name} (from {var.source_kind} input, line "
                            f"{var.declaration_line}) is used as a path by {usage.sink}",
                recommendation="Map the value to a whitelisted file or resolve it with realpath() "
                               "and check it stays in the allowed directory.",
                cwe="CWE-98" if include else "CWE-22",
                variable=var.name,
                validation=usage.sanitizer,
                tainted=var,
                extra={"sink": usage.sink, "propagated_from": var.propagated_from},
            ))
        return findings

    def _traversal(self, ctx: ScanContext) -> List[Finding]:
        """Relative parent-directory segments joined with a variable at a file sink."""
        findings = []
        for sink, start, end, arguments in self.taint.sink_statements(ctx.content, self.vuln_type):
            ctx.check_deadline()
            text = " ".join(arguments)
            if not TRAVERSAL_RE.search(text) or "$" not in text:
                continue
            findings.append(self.build_finding(
                ctx,
                subtype="path_traversal",
                severity=Severity.HIGH,
                confidence=0.6,
                start=start,
                end=end,
                description=f"{sink} builds a path from '../' segments and a variable",
                recommendation="Build paths from a fixed base directory and basename() of the "
                               "user-supplied part.",
                cwe="CWE-22",
                extra={"sink": sink},
            ))
        return findings
