"""
Structured manual-fix guidance.

Used whenever a finding cannot (or should not) be fixed automatically.  The
output is data only; rendering is left to whatever presents it.
"""

from typing import Dict, List, Optional

from .models import Finding, InstructionStep, Instructions, Severity


URGENCY = {
    Severity.CRITICAL: "Fix immediately - within 24 hours",
    Severity.HIGH: "Fix within 48-72 hours",
    Severity.MEDIUM: "Fix within 1 week",
    Severity.LOW: "Fix when convenient, within 1 month",
    Severity.INFO: "Review when convenient",
}

TYPE_DIFFICULTY = {
    "configuration": 1,
    "file_permissions": 1,
    "xss": 2,
    "csrf": 2,
    "file_inclusion": 3,
    "sql_injection": 3,
    "auth_bypass": 3,
    "code_injection": 3,
}

SEVERITY_DIFFICULTY = {
    Severity.CRITICAL: 2,
    Severity.HIGH: 1,
}

BASE_MINUTES = {"beginner": 60, "intermediate": 180, "advanced": 480}

TYPE_TIME_MODIFIER = {
    "sql_injection": 1.5,
    "auth_bypass": 1.5,
    "configuration": 0.8,
    "file_permissions": 0.7,
}

# (title, detail, code example)
TEMPLATES: Dict[str, List[tuple]] = {
    "sql_injection": [
        ("Locate the query", "Find every query built from the reported variable, including "
         "copies of it assigned earlier in the function.", None),
        ("Use a prepared statement", "Replace string concatenation with placeholders and pass "
         "the value separately.",
         "$wpdb->get_results( $wpdb->prepare( \"SELECT * FROM {$wpdb->posts} WHERE ID = %d\", $id ) );"),
        ("Validate the input type", "Cast numeric identifiers with absint() or intval() before use.",
         "$id = absint( $_GET['id'] );"),
    ],
    "xss": [
        ("Identify the output context", "Decide whether the value lands in HTML text, an attribute, "
         "a URL, inline JavaScript or CSS.", None),
        ("Escape on output", "Wrap the value in the escaping function for that context: esc_html, "
         "esc_attr, esc_url, esc_js or esc_css.",
         "echo esc_html( $name );"),
        ("Sanitize on input", "Store cleaned values with sanitize_text_field() or wp_kses_post().", None),
    ],
    "csrf": [
        ("Add a nonce to the form", "Emit a nonce field inside every state-changing form.",
         "wp_nonce_field( 'save_settings', 'settings_nonce' );"),
        ("Verify the nonce in the handler", "Check the nonce before doing any work in the POST or "
         "AJAX handler.",
         "check_admin_referer( 'save_settings', 'settings_nonce' );"),
    ],
    "file_inclusion": [
        ("Stop passing user input to include", "Map request values onto a fixed list of allowed "
         "files instead of building paths from them.",
         "$allowed = array( 'home', 'about' );\nif ( in_array( $page, $allowed, true ) ) { include __DIR__ . \"/pages/$page.php\"; }"),
        ("Normalize paths", "Apply basename() and realpath() and confirm the result stays inside "
         "the expected directory.", None),
    ],
    "auth_bypass": [
        ("Check capabilities", "Call current_user_can() with the narrowest capability before "
         "running the privileged action.",
         "if ( ! current_user_can( 'manage_options' ) ) { wp_die( 'Forbidden' ); }"),
        ("Compare secrets in constant time", "Use hash_equals() for tokens and wp_check_password() "
         "for passwords.", None),
        ("Harden cookies", "Set the secure and httponly flags on authentication cookies.", None),
    ],
    "configuration": [
        ("Open the configuration file", "Edit wp-config.php from a shell or the hosting file manager.", None),
        ("Set hardening constants", "Disable the file editor and debug output on production.",
         "define( 'DISALLOW_FILE_EDIT', true );\ndefine( 'WP_DEBUG', false );"),
    ],
    "file_permissions": [
        ("Inspect current modes", "List the permissions of the affected paths.", "ls -l wp-config.php"),
        ("Apply recommended modes", "Files 644, directories 755, wp-config.php 600.",
         "chmod 600 wp-config.php"),
    ],
}

GENERIC_TEMPLATE = [
    ("Review the reported code", "Read the surrounding code and confirm the issue is real.", None),
    ("Apply the recommendation", "Follow the recommendation attached to the finding.", None),
]

VERIFICATION_STEPS = [
    "Re-run the scan on the changed file and confirm the finding is gone",
    "Exercise the affected feature and check the error log",
    "Confirm site performance is unchanged",
]

ROLLBACK_STEPS = [
    "Stop making further changes",
    "Restore the modified files from the backup",
    "Restore database tables if they were changed",
    "Test site functionality after the restore",
]


class ManualGuidance:
    def difficulty(self, finding: Finding) -> str:
        score = TYPE_DIFFICULTY.get(finding.type, 2) + SEVERITY_DIFFICULTY.get(finding.severity, 0)
        if score <= 2:
            return "beginner"
        if score <= 4:
            return "intermediate"
        return "advanced"

    def estimate_minutes(self, finding: Finding, difficulty: Optional[str] = None) -> int:
        difficulty = difficulty or self.difficulty(finding)
        return int(BASE_MINUTES[difficulty] * TYPE_TIME_MODIFIER.get(finding.type, 1.0))

    def build(self, finding: Finding, reason: str = "") -> Instructions:
        template = TEMPLATES.get(finding.type, GENERIC_TEMPLATE)
        steps = [InstructionStep(title, detail, example) for title, detail, example in template]
        if finding.recommendation:
            steps.append(InstructionStep("Finding-specific advice", finding.recommendation))

        where = f"{finding.file_path}:{finding.line}" if finding.file_path else "the site"
        type_label = finding.type.replace("_", " ").title()
        difficulty = self.difficulty(finding)
        prerequisites = [
            "Complete site backup, verified restorable",
            "Administrative and file-system access",
        ]
        if finding.severity in (Severity.CRITICAL, Severity.HIGH):
            prerequisites.append("Staging environment to test the change first")

        return Instructions(
            title=f"Manual Fix Guide: {finding.severity.label.title()} {type_label} in {where}",
            summary={
                "description": finding.description,
                "type": finding.type,
                "subtype": finding.subtype,
                "severity": finding.severity.label,
                "file": finding.file_path,
                "line": finding.line,
                "cwe": finding.cwe_id,
                "code": finding.matched_text,
            },
            steps=steps,
            prerequisites=prerequisites,
            verification_steps=list(VERIFICATION_STEPS),
            rollback_steps=list(ROLLBACK_STEPS),
            difficulty=difficulty,
            estimated_minutes=self.estimate_minutes(finding, difficulty),
            urgency=URGENCY[finding.severity],
            reason=reason,
        )
