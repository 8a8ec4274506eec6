"""
``define()`` constant rewrites in the site configuration file.

Existing definitions get their value replaced; missing ones are inserted
above the "stop editing" marker, or above the settings bootstrap, or at the
end of the file.
"""

import os
import re
from typing import Any, Dict, List, Optional, Tuple

from ..errors import FixApplicationError
from ..models import Finding, FixResult, ValidationResult
from ..safety_assessor import FixPlan, PlannedAction
from .base import FixStrategy, read_text, write_file_atomic


SECURITY_CONSTANTS = {
    "DISALLOW_FILE_EDIT": "true",
    "WP_DEBUG": "false",
    "WP_DEBUG_DISPLAY": "false",
}

CONFIG_FILE = "wp-config.php"
INSERT_MARKERS = ("/* That's all, stop editing!", "require_once ABSPATH . 'wp-settings.php'",
                  "require_once(ABSPATH . 'wp-settings.php')")


def define_pattern(name: str) -> re.Pattern:
    return re.compile(r"define\s*\(\s*(['\"])" + re.escape(name) + r"\1\s*,\s*(.+?)\s*\)\s*;",
                      re.IGNORECASE)


def defined_value(content: str, name: str) -> Optional[str]:
    m = define_pattern(name).search(content)
    return m.group(2) if m else None


class ConfigurationFixStrategy(FixStrategy):
    name = "configuration"
    supported_types = ("configuration", "wp_config_issue", "misconfiguration")

    def target_path(self, finding: Finding) -> str:
        if finding.file_path and os.path.basename(finding.file_path) == CONFIG_FILE:
            return super().target_path(finding)
        return os.path.abspath(self.site.resolve(CONFIG_FILE))

    def desired_constants(self, finding: Finding) -> Dict[str, str]:
        constants = finding.metadata.get("constants")
        if constants:
            return {str(k): str(v) for k, v in constants.items()}
        if finding.metadata.get("constant"):
            return {str(finding.metadata["constant"]): str(finding.metadata.get("value", "true"))}
        return dict(SECURITY_CONSTANTS)

    def rewrite(self, content: str, constants: Dict[str, str]) -> Tuple[str, List[Dict[str, Any]]]:
        changes = []
        for name, value in constants.items():
            pattern = define_pattern(name)
            m = pattern.search(content)
            if m:
                if m.group(2) == value:
                    continue
                replacement = f"define({m.group(1)}{name}{m.group(1)}, {value});"
                content = content[:m.start()] + replacement + content[m.end():]
                changes.append({"constant": name, "old_value": m.group(2), "new_value": value})
                continue
            line = f"define('{name}', {value});\n"
            for marker in INSERT_MARKERS:
                idx = content.find(marker)
                if idx != -1:
                    content = content[:idx] + line + content[idx:]
                    break
            else:
                stripped = content.rstrip()
                if stripped.endswith("?>"):
                    idx = stripped.rfind("?>")
                    content = content[:idx] + line + content[idx:]
                else:
                    content = content + ("" if content.endswith("\n") else "\n") + line
            changes.append({"constant": name, "old_value": None, "new_value": value})
        return content, changes

    def fixable(self, finding: Finding) -> bool:
        path = self.target_path(finding)
        return os.path.isfile(path) and os.access(path, os.W_OK)

    def plan_fix(self, finding: Finding) -> FixPlan:
        path = self.target_path(finding)
        return FixPlan(
            strategy=self.name,
            actions=(PlannedAction("configuration_update", path,
                                   "Set " + ", ".join(self.desired_constants(finding))),),
            affected_files=(path,),
            system_impacts=("updates_wp_config",),
            complexity_factors=("requires_manual_verification",),
            estimated_time=120,
        )

    def preview(self, finding: Finding, plan: FixPlan) -> List[Dict[str, Any]]:
        _, changes = self.rewrite(read_text(self.target_path(finding)),
                                  self.desired_constants(finding))
        return changes

    def _apply(self, finding: Finding, plan: FixPlan, result: FixResult) -> None:
        path = self.target_path(finding)
        if not os.path.isfile(path):
            raise FixApplicationError(f"Configuration file {path} not found")
        content, changes = self.rewrite(read_text(path), self.desired_constants(finding))
        if changes:
            write_file_atomic(path, content)
            result.actions_taken.append(f"Updated {len(changes)} constant(s) in {path}")
        else:
            result.actions_taken.append(f"No changes needed for {path}")
        result.changes_made.extend(changes)
        result.rollback_data["file"] = path

    def validate_fix(self, finding: Finding, fix_result: FixResult) -> ValidationResult:
        path = self.target_path(finding)
        if not os.path.isfile(path):
            return ValidationResult(False, 0.0, {"file_exists": False}, [f"{path} is missing"])
        content = read_text(path)
        checks: Dict[str, Any] = {}
        issues = []
        for name, value in self.desired_constants(finding).items():
            actual = defined_value(content, name)
            checks[name] = actual
            if actual != value:
                issues.append(f"{name} is {actual}, expected {value}")
            elif len(define_pattern(name).findall(content)) > 1:
                issues.append(f"{name} is defined more than once")
        return ValidationResult(is_valid=not issues, confidence=0.9 if not issues else 0.0,
                                checks=checks, issues=issues)
