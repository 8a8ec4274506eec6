"""
Cross-site request forgery detector.

Checks three places a state change can be triggered from another site:
POST forms without a nonce field, AJAX / admin-post handlers whose callback
never verifies a nonce, and ``if (isset($_POST[...]))`` blocks that perform
sensitive operations without verification.
"""

import re
from typing import List

from .. import arg_parser
from ..models import Finding, Severity
from .base import Detector, ScanContext

POST_FORM_RE = re.compile(r"<form\b[^>]*\bmethod\s*=\s*[\"']?post\b[^>]*>", re.IGNORECASE)
POST_BLOCK_RE = re.compile(
    r"\bif\s*\(\s*(?:!\s*empty|isset)\s*\(\s*\$_(?:POST|REQUEST)\s*\[", re.IGNORECASE)


class CSRFDetector(Detector):
    name = "csrf"
    vuln_type = "csrf"
    cwe = "CWE-352"
    owasp = "A01:2021-Broken Access Control"
    requires_reference = False
    validation_exempt = ("nonce_check_ignored",)

    def analyze(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        findings.extend(self._forms(ctx))
        findings.extend(self._handlers(ctx))
        findings.extend(self._post_blocks(ctx))
        return findings

    def _has_nonce_check(self, text: str) -> bool:
        return self.calls_any(text, self.ruleset.word_list("nonce_verifiers")) is not None

    def _sensitive_call(self, text: str):
        return self.calls_any(text, self.ruleset.word_list("sensitive_operations"))

    def _forms(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        nonce_fields = self.ruleset.word_list("nonce_fields")
        sensitive_words = self.ruleset.word_list("sensitive_form_words")
        for m in POST_FORM_RE.finditer(ctx.content):
            ctx.check_deadline()
            close = ctx.content.lower().find("</form>", m.end())
            body_end = close if close != -1 else len(ctx.content)
            body = ctx.content[m.start():body_end]
            if any(field in body for field in nonce_fields):
                continue
            lowered = body.lower()
            sensitive = [w for w in sensitive_words if w in lowered]
            findings.append(self.build_finding(
                ctx,
                subtype="form_missing_nonce",
                severity=Severity.HIGH if sensitive else Severity.MEDIUM,
                confidence=0.8 if sensitive else 0.6,
                start=m.start(),
                end=m.end(),
                description="POST form has no nonce field"
                            + (f" and handles {', '.join(sensitive[:3])}" if sensitive else ""),
                recommendation="Add wp_nonce_field() to the form and verify it with "
                               "check_admin_referer() in the handler.",
                variable=None,
                validation=None,
                extra={"sensitive_fields": sensitive},
            ))
        return findings

    def _handlers(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        for call in arg_parser.find_calls(ctx.content, ["add_action"]):
            ctx.check_deadline()
            if len(call.arguments) < 2:
                continue
            hook = arg_parser.literal_value(call.arguments[0]) or ""
            if hook.startswith("wp_ajax_"):
                subtype = "ajax_missing_nonce"
            elif hook.startswith("admin_post_"):
                subtype = "admin_post_missing_nonce"
            else:
                continue
            body = self.handler_body(ctx.content, call.arguments[1])
            if body is None or self._has_nonce_check(body):
                continue
            operation = self._sensitive_call(body)
            findings.append(self.build_finding(
                ctx,
                subtype=subtype,
                severity=Severity.HIGH if operation else Severity.MEDIUM,
                confidence=0.7 if operation else 0.55,
                start=call.start,
                end=call.end,
                description=f"Handler for '{hook}' never verifies a nonce"
                            + (f" before calling {operation}()" if operation else ""),
                recommendation="Call check_ajax_referer() or wp_verify_nonce() at the top "
                               "of the handler.",
                variable=None,
                validation=None,
                extra={"hook": hook, "callback": arg_parser.callback_name(call.arguments[1])},
            ))
        return findings

    def _post_blocks(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        window = self.settings.sanitizer_window
        for m in POST_BLOCK_RE.finditer(ctx.content):
            ctx.check_deadline()
            cond_end = arg_parser.match_delimiter(ctx.content, m.start() + m.group(0).index("("))
            if cond_end is None:
                continue
            block = arg_parser.find_block(ctx.content, cond_end + 1)
            # The block must follow the condition directly.
            if block is None or ctx.content[cond_end + 1:block[0]].strip():
                continue
            body = ctx.content[block[0]:block[1]]
            operation = self._sensitive_call(body)
            if operation is None:
                continue
            guard = ctx.content[max(m.start() - window, 0):block[1]]
            if self._has_nonce_check(guard):
                continue
            findings.append(self.build_finding(
                ctx,
                subtype="post_handler_missing_nonce",
                severity=Severity.HIGH,
                confidence=0.7,
                start=m.start(),
                end=cond_end + 1,
                description=f"POST handler calls {operation}() without verifying a nonce",
                recommendation="Verify the request with check_admin_referer() before acting on it.",
                variable=None,
                validation=None,
                extra={"operation": operation},
            ))
        return findings
