"""
Fix strategy contract.

A strategy knows how to remediate one family of vulnerability types.  The
shared ``apply_fix`` drives the FixRecord through its lifecycle:

    pending -> in_progress   only with a completed, verified backup
    in_progress -> completed the strategy's ``_apply`` returned
    in_progress -> failed    ``_apply`` raised; the strategy stops, rolls
                             back from the backup and, if that works, the
                             record ends rolled_back

A rollback that itself fails raises RollbackError: the target may be half
fixed and needs a person.
"""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..backup_manager import BackupManager
from ..config import Settings
from ..errors import BackupError, RollbackError
from ..guidance import ManualGuidance
from ..models import (Backup, FixRecord, FixResult, FixStatus, Finding, Instructions,
                      RollbackResult, SafetyAssessment, Severity, ValidationResult)
from ..rule_engine import RuleSet
from ..safety_assessor import FixPlan, SafetyAssessor, SiteContext

logger = logging.getLogger(__name__)


@dataclass
class FixOptions:
    """Per-call options for ``apply_fix``.

    The fix engine passes the record and backup it already prepared; a
    standalone caller may leave both unset and the strategy creates them.
    """

    dry_run: bool = False
    record: Optional[FixRecord] = None
    backup: Optional[Backup] = None


def write_file_atomic(path: str, text: str) -> None:
    """Replace *path* with *text*, keeping its permission bits."""
    mode = os.stat(path).st_mode if os.path.exists(path) else None
    directory = os.path.dirname(path) or "."
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".breachguard-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


def read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


class FixStrategy(ABC):
    name: str = ""
    supported_types: Tuple[str, ...] = ()

    def __init__(self, ruleset: RuleSet, site: SiteContext, backups: BackupManager,
                 settings: Optional[Settings] = None,
                 assessor: Optional[SafetyAssessor] = None):
        self.ruleset = ruleset
        self.site = site
        self.backups = backups
        self.settings = settings or Settings()
        self.assessor = assessor or SafetyAssessor(self.settings.safety)
        self.guidance = ManualGuidance()

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"

    # ==================== Eligibility ====================

    def supports(self, finding: Finding) -> bool:
        return finding.type in self.supported_types

    def target_path(self, finding: Finding) -> str:
        return os.path.abspath(self.site.resolve(finding.file_path)) if finding.file_path else ""

    def is_protected(self, finding: Finding) -> bool:
        """Security, backup and maintenance components are left alone below the threshold."""
        fix = self.settings.fix
        protected = {c.lower() for c in fix.protected_categories}
        category = str(finding.metadata.get("component_category", "")).lower()
        name = str(finding.metadata.get("component_name", "")).lower()
        if category not in protected and not any(word in name for word in protected):
            return False
        return finding.severity.value < Severity.parse(fix.protected_severity_threshold).value

    def can_auto_fix(self, finding: Finding) -> bool:
        if not self.supports(finding):
            return False
        if self.is_protected(finding):
            logger.info("Not auto-fixing %s: protected component", finding.finding_id)
            return False
        target = self.target_path(finding)
        if target and self.site.is_core_file(target):
            logger.info("Not auto-fixing %s: platform core file %s", finding.finding_id, target)
            return False
        return self.fixable(finding)

    def fixable(self, finding: Finding) -> bool:
        """Strategy-specific precondition: can the change be made at all."""
        target = self.target_path(finding)
        return bool(target) and os.path.isfile(target) and os.access(target, os.W_OK)

    # ==================== Planning & safety ====================

    @abstractmethod
    def plan_fix(self, finding: Finding) -> FixPlan:
        ...

    def assess_fix_safety(self, finding: Finding) -> SafetyAssessment:
        return self.assessor.assess(finding, self.plan_fix(finding), self.site)

    def get_estimated_time(self, finding: Finding) -> int:
        plan = self.plan_fix(finding)
        if plan.estimated_time is not None:
            return plan.estimated_time
        return self.settings.safety.default_estimated_time

    def supports_rollback(self, finding: Finding) -> bool:
        return True

    def generate_manual_instructions(self, finding: Finding, reason: str = "") -> Instructions:
        return self.guidance.build(finding, reason)

    # ==================== Application ====================

    def apply_fix(self, finding: Finding, options: Optional[FixOptions] = None) -> FixResult:
        options = options or FixOptions()
        plan = self.plan_fix(finding)
        record = options.record or FixRecord(FixRecord.new_id(), self.name, finding.finding_id)

        if options.dry_run:
            return FixResult(record.fix_id, success=True, dry_run=True,
                             actions_taken=[f"Would {a.type.replace('_', ' ')} {a.target}"
                                            for a in plan.actions],
                             changes_made=self.preview(finding, plan))

        backup = options.backup
        if backup is None:
            created = self.backups.create_fix_backup(finding, plan)
            if not created.success:
                record.error = f"Backup failed: {created.error}"
                raise BackupError(record.error)
            backup = created.backup
        record.transition(FixStatus.IN_PROGRESS, backup)

        result = FixResult(record.fix_id, rollback_data={"backup_id": backup.id})
        try:
            self._apply(finding, plan, result)
        except Exception as e:
            record.error = str(e)
            record.transition(FixStatus.FAILED)
            result.error = str(e)
            self._sync(record, result)
            logger.error("Fix %s for %s failed, rolling back: %s", record.fix_id,
                         finding.finding_id, e)
            rollback = self.rollback_fix(record.fix_id, result.rollback_data)
            result.rollback = rollback
            if not rollback.success:
                logger.error("Rollback of fix %s failed: %s", record.fix_id, rollback.error)
                raise RollbackError(record.fix_id, rollback.error or "unknown error") from e
            record.transition(FixStatus.ROLLED_BACK)
            return result

        record.transition(FixStatus.COMPLETED)
        result.success = True
        self._sync(record, result)
        logger.info("Fix %s applied to %s", record.fix_id, finding.finding_id)
        return result

    @staticmethod
    def _sync(record: FixRecord, result: FixResult) -> None:
        record.actions_taken = list(result.actions_taken)
        record.changes_made = list(result.changes_made)
        record.rollback_data = dict(result.rollback_data)

    @abstractmethod
    def _apply(self, finding: Finding, plan: FixPlan, result: FixResult) -> None:
        """Make the change, recording actions, changes and rollback data on *result*.

        Raise on any problem; the caller handles rollback.
        """

    def preview(self, finding: Finding, plan: FixPlan) -> List[Dict[str, Any]]:
        return [{"action": a.type, "target": a.target, "description": a.description}
                for a in plan.actions]

    @abstractmethod
    def validate_fix(self, finding: Finding, fix_result: FixResult) -> ValidationResult:
        ...

    def rollback_fix(self, fix_id: str, rollback_data: Dict[str, Any]) -> RollbackResult:
        """Restore the backup taken before the fix."""
        backup_id = rollback_data.get("backup_id")
        if not backup_id:
            return RollbackResult(False, error="No backup recorded for this fix")
        try:
            backup = self.backups.restore_from_backup(backup_id)
        except Exception as e:
            return RollbackResult(False, error=f"Restore of backup {backup_id} failed: {e}")
        return RollbackResult(True, actions_taken=[
            f"Restored {len(backup.files)} file(s) and {len(backup.database_tables)} "
            f"table(s) from backup {backup_id}"])
