"""
Authentication and authorization bypass detector.

Checks:
- admin menu callbacks that act on request data without a capability check
- wp_ajax_* handlers performing sensitive operations without a capability
  check, and wp_ajax_nopriv_* handlers performing them at all
- privilege changes (wp_update_user, set_role, ...) with no admin
  capability check in the enclosing function
- secrets compared with ``==`` instead of hash_equals()
- setcookie() without the secure / httponly flags
- include files in sensitive directories that lack a direct-access guard
"""

import logging
import re
from typing import List, Optional

from .. import arg_parser
from ..models import Finding, Severity
from .base import Detector, ScanContext

logger = logging.getLogger(__name__)

# Position of the callback argument for each menu registration function.
MENU_CALLBACK_INDEX = {
    "add_menu_page": 4,
    "add_submenu_page": 5,
    "add_options_page": 4,
    "add_management_page": 4,
    "add_theme_page": 4,
    "add_users_page": 4,
}
MENU_CAPABILITY_INDEX = {name: idx - 1 for name, idx in MENU_CALLBACK_INDEX.items()}

REQUEST_DATA_RE = re.compile(r"\$_(?:GET|POST|REQUEST)\b")
COMPARISON_RE = re.compile(
    r"(\$\w+(?:\s*\[[^\]]*\])?)\s*(?:===?|!==?)\s*(\$\w+(?:\s*\[[^\]]*\])?)")
FALSY_RE = re.compile(r"^\s*(?:false|0|null|'')\s*$", re.IGNORECASE)


class AuthBypassDetector(Detector):
    name = "auth_bypass"
    vuln_type = "auth_bypass"
    cwe = "CWE-287"
    owasp = "A01:2021-Broken Access Control"
    requires_reference = False
    validation_exempt = ("hardcoded_credentials", "hardcoded_password_check")

    def analyze(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        findings.extend(self._admin_callbacks(ctx))
        findings.extend(self._ajax_handlers(ctx))
        findings.extend(self._privilege_escalation(ctx))
        findings.extend(self._timing_comparisons(ctx))
        findings.extend(self._insecure_cookies(ctx))
        findings.extend(self._direct_access(ctx))
        return findings

    # -- helpers ---------------------------------------------------------------

    def _capability_check(self, text: str) -> Optional[str]:
        return self.calls_any(text, self.ruleset.word_list("capability_checks"))

    def _admin_capability_check(self, text: str) -> bool:
        admin_caps = self.ruleset.word_list("admin_capabilities")
        for call in arg_parser.find_calls(text, self.ruleset.word_list("capability_checks")):
            if call.name == "is_super_admin":
                return True
            for arg in call.arguments:
                value = arg_parser.literal_value(arg)
                if value in admin_caps:
                    return True
        return False

    def _sensitive_call(self, text: str) -> Optional[str]:
        return self.calls_any(text, self.ruleset.word_list("sensitive_operations"))

    # -- checks ----------------------------------------------------------------

    def _admin_callbacks(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        admin_caps = self.ruleset.word_list("admin_capabilities")
        for call in arg_parser.find_calls(ctx.content, self.ruleset.word_list("admin_menu_functions")):
            ctx.check_deadline()
            idx = MENU_CALLBACK_INDEX.get(call.name.lower())
            if idx is None or len(call.arguments) <= idx:
                continue
            body = self.handler_body(ctx.content, call.arguments[idx])
            if body is None or self._capability_check(body):
                continue
            if not (REQUEST_DATA_RE.search(body) or self._sensitive_call(body)):
                continue
            capability = arg_parser.literal_value(call.arguments[MENU_CAPABILITY_INDEX[call.name.lower()]])
            weak = capability not in admin_caps
            findings.append(self.build_finding(
                ctx,
                subtype="admin_callback_missing_capability",
                severity=Severity.HIGH if weak else Severity.MEDIUM,
                confidence=0.7 if weak else 0.5,
                start=call.start,
                end=call.end,
                description=f"Menu callback for {call.name}() processes requests without "
                            f"current_user_can() (menu capability: {capability or 'dynamic'})",
                recommendation="Check current_user_can() with an admin capability inside the "
                               "callback before handling submitted data.",
                cwe="CWE-862",
                variable=None,
                validation=None,
                extra={"capability": capability},
            ))
        return findings

    def _ajax_handlers(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        for call in arg_parser.find_calls(ctx.content, ["add_action"]):
            ctx.check_deadline()
            if len(call.arguments) < 2:
                continue
            hook = arg_parser.literal_value(call.arguments[0]) or ""
            if not hook.startswith("wp_ajax_"):
                continue
            body = self.handler_body(ctx.content, call.arguments[1])
            if body is None:
                continue
            operation = self._sensitive_call(body)
            if operation is None or self._capability_check(body):
                continue
            nopriv = hook.startswith("wp_ajax_nopriv_")
            findings.append(self.build_finding(
                ctx,
                subtype="nopriv_sensitive_action" if nopriv else "ajax_missing_capability",
                severity=Severity.CRITICAL if nopriv else Severity.HIGH,
                confidence=0.85 if nopriv else 0.75,
                start=call.start,
                end=call.end,
                description=(f"Unauthenticated AJAX hook '{hook}' calls {operation}()" if nopriv
                             else f"AJAX hook '{hook}' calls {operation}() without a capability check"),
                recommendation="Check current_user_can() in the handler; never expose sensitive "
                               "operations through wp_ajax_nopriv_ hooks.",
                cwe="CWE-862",
                variable=None,
                validation=None,
                extra={"hook": hook, "operation": operation},
            ))
        return findings

    def _privilege_escalation(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        for call in arg_parser.find_calls(ctx.content, self.ruleset.word_list("privilege_functions")):
            ctx.check_deadline()
            span = self.enclosing_function(ctx.content, call.start)
            scope = ctx.content[span[0]:call.start] if span else \
                ctx.content[max(call.start - 5 * self.settings.sanitizer_window, 0):call.start]
            if self._admin_capability_check(scope):
                continue
            args = " ".join(call.arguments)
            from_request = REQUEST_DATA_RE.search(args) is not None or \
                any(arg_parser.references_variable(call.arguments, v) for v in self.tainted(ctx))
            sets_role = "role" in args.lower() or call.name in ("set_role", "add_role", "add_cap")
            findings.append(self.build_finding(
                ctx,
                subtype="privilege_escalation",
                severity=Severity.CRITICAL if from_request and sets_role else Severity.HIGH,
                confidence=0.85 if from_request else 0.6,
                start=call.start,
                end=call.end,
                description=f"{call.name}() changes user privileges without an admin "
                            "capability check",
                recommendation="Require current_user_can('promote_users') or a comparable "
                               "admin capability before changing roles.",
                cwe="CWE-269",
                validation=None,
                extra={"from_request": from_request},
            ))
        return findings

    def _timing_comparisons(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        words = self.ruleset.word_list("auth_words")
        for m in COMPARISON_RE.finditer(ctx.content):
            ctx.check_deadline()
            names = (m.group(1) + " " + m.group(2)).lower()
            if not any(w in names for w in words):
                continue
            findings.append(self.build_finding(
                ctx,
                subtype="timing_attack",
                severity=Severity.MEDIUM,
                confidence=0.6,
                start=m.start(),
                end=m.end(),
                description="Secret compared with a non-constant-time operator",
                recommendation="Compare secrets with hash_equals().",
                cwe="CWE-208",
                owasp="A02:2021-Cryptographic Failures",
            ))
        return findings

    def _insecure_cookies(self, ctx: ScanContext) -> List[Finding]:
        findings = []
        cookie_words = self.ruleset.word_list("cookie_auth_words")
        for call in arg_parser.find_calls(ctx.content, ["setcookie"]):
            ctx.check_deadline()
            args = call.arguments
            if not args:
                continue
            if len(args) >= 3 and re.match(r"^\s*(?:array\s*\(|\[)", args[2]):
                options = args[2].lower()
                secure = re.search(r"['\"]secure['\"]\s*=>\s*true", options) is not None
                httponly = re.search(r"['\"]httponly['\"]\s*=>\s*true", options) is not None
            else:
                secure = len(args) > 5 and not FALSY_RE.match(args[5])
                httponly = len(args) > 6 and not FALSY_RE.match(args[6])
            if secure and httponly:
                continue
            cookie = (arg_parser.literal_value(args[0]) or args[0]).lower()
            auth_cookie = any(w in cookie for w in cookie_words)
            missing = [flag for flag, present in (("secure", secure), ("httponly", httponly))
                       if not present]
            findings.append(self.build_finding(
                ctx,
                subtype="insecure_cookie",
                severity=Severity.MEDIUM if auth_cookie else Severity.LOW,
                confidence=0.6 if auth_cookie else 0.4,
                start=call.start,
                end=call.end,
                description=f"setcookie() without {' and '.join(missing)} flag(s)",
                recommendation="Pass secure and httponly as true (and a SameSite option).",
                cwe="CWE-614",
                owasp="A05:2021-Security Misconfiguration",
                variable=None,
                validation=None,
                extra={"missing_flags": missing},
            ))
        return findings

    def _direct_access(self, ctx: ScanContext) -> List[Finding]:
        if "<?php" not in ctx.content:
            return []
        path = ctx.path.replace("\\", "/")
        if not self.ruleset.expression("sensitive_path").search(path):
            return []
        if self.ruleset.expression("direct_access_guard").search(ctx.content):
            return []
        if not (REQUEST_DATA_RE.search(ctx.content) or self._sensitive_call(ctx.content)):
            return []
        first = ctx.content.index("<?php")
        logger.debug("No direct access guard in %s", ctx.path)
        return [self.build_finding(
            ctx,
            subtype="missing_direct_access_guard",
            severity=Severity.LOW,
            confidence=0.5,
            start=first,
            end=first + len("<?php"),
            description="File in a sensitive directory runs code when requested directly",
            recommendation="Start the file with: defined( 'ABSPATH' ) || exit;",
            cwe="CWE-862",
            variable=None,
            validation=None,
        )]
