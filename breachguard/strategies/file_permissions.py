"""Permission hardening for files and directories."""

import logging
import os
import stat
from typing import Any, Dict, List

from ..errors import FixApplicationError
from ..models import Finding, FixResult, RollbackResult, ValidationResult
from ..safety_assessor import FixPlan, PlannedAction
from .base import FixStrategy

logger = logging.getLogger(__name__)

RECOMMENDED_MODES = {
    "files": 0o644,
    "directories": 0o755,
    "wp_config": 0o600,
    "htaccess": 0o644,
    "uploads": 0o755,
}

WORLD_WRITABLE = stat.S_IWOTH


class FilePermissionsFixStrategy(FixStrategy):
    name = "file_permissions"
    supported_types = ("file_permissions", "directory_permissions", "upload_permissions")

    def targets(self, finding: Finding) -> List[str]:
        paths = []
        if finding.file_path:
            paths.append(finding.file_path)
        paths.extend(finding.metadata.get("affected_files", ()))
        resolved = []
        for path in paths:
            full = os.path.abspath(self.site.resolve(path))
            if full not in resolved:
                resolved.append(full)
        return resolved

    def recommended_mode(self, path: str) -> int:
        name = os.path.basename(path)
        if os.path.isdir(path):
            uploads = self.site.resolve(self.site.uploads_dir) if self.site.uploads_dir else ""
            if uploads and os.path.abspath(path).startswith(os.path.abspath(uploads)):
                return RECOMMENDED_MODES["uploads"]
            return RECOMMENDED_MODES["directories"]
        if name == "wp-config.php":
            return RECOMMENDED_MODES["wp_config"]
        if name == ".htaccess":
            return RECOMMENDED_MODES["htaccess"]
        return RECOMMENDED_MODES["files"]

    def fixable(self, finding: Finding) -> bool:
        targets = self.targets(finding)
        return bool(targets) and all(os.path.exists(p) for p in targets)

    def plan_fix(self, finding: Finding) -> FixPlan:
        targets = self.targets(finding)
        return FixPlan(
            strategy=self.name,
            actions=tuple(PlannedAction("permission_change", p,
                                        f"chmod {self.recommended_mode(p):o}")
                          for p in targets),
            affected_files=tuple(targets),
            system_impacts=("changes_permissions",),
            estimated_time=10 * max(len(targets), 1),
        )

    def preview(self, finding: Finding, plan: FixPlan) -> List[Dict[str, Any]]:
        changes = []
        for path in self.targets(finding):
            current = stat.S_IMODE(os.stat(path).st_mode)
            wanted = self.recommended_mode(path)
            if current != wanted:
                changes.append({"path": path, "old_mode": f"{current:o}", "new_mode": f"{wanted:o}"})
        return changes

    def _apply(self, finding: Finding, plan: FixPlan, result: FixResult) -> None:
        modes = result.rollback_data.setdefault("modes", {})
        for path in self.targets(finding):
            if not os.path.exists(path):
                raise FixApplicationError(f"{path} no longer exists")
            current = stat.S_IMODE(os.stat(path).st_mode)
            wanted = self.recommended_mode(path)
            if current == wanted:
                continue
            modes[path] = current
            os.chmod(path, wanted)
            result.actions_taken.append(f"chmod {wanted:o} {path}")
            result.changes_made.append({"path": path, "old_mode": f"{current:o}",
                                        "new_mode": f"{wanted:o}"})
        if not result.changes_made:
            result.actions_taken.append("Permissions already match recommendations")

    def validate_fix(self, finding: Finding, fix_result: FixResult) -> ValidationResult:
        checks: Dict[str, Any] = {}
        issues = []
        for path in self.targets(finding):
            if not os.path.exists(path):
                issues.append(f"{path} is missing")
                continue
            mode = stat.S_IMODE(os.stat(path).st_mode)
            checks[path] = f"{mode:o}"
            if mode != self.recommended_mode(path):
                issues.append(f"{path} has mode {mode:o}, expected {self.recommended_mode(path):o}")
            elif mode & WORLD_WRITABLE:
                issues.append(f"{path} is world writable")
        return ValidationResult(is_valid=not issues, confidence=0.95 if not issues else 0.0,
                                checks=checks, issues=issues)

    def rollback_fix(self, fix_id: str, rollback_data: Dict[str, Any]) -> RollbackResult:
        """Put the recorded modes back; fall back to the backup when none were recorded."""
        modes = rollback_data.get("modes")
        if not modes:
            return super().rollback_fix(fix_id, rollback_data)
        actions = []
        try:
            for path, mode in modes.items():
                os.chmod(path, mode)
                actions.append(f"chmod {mode:o} {path}")
        except OSError as e:
            logger.warning("Direct permission rollback of %s failed (%s), restoring backup",
                           fix_id, e)
            return super().rollback_fix(fix_id, rollback_data)
        return RollbackResult(True, actions_taken=actions)
