"""
End-to-end remediation of findings.

For one finding the engine:

1. looks up the strategy registered for the finding's type
2. asks the strategy whether it can fix it automatically at all
3. gates on the safety assessment (threshold and manual-review flag)
4. takes the per-target locks for everything the fix plan touches
5. creates and verifies a backup; a failed backup ends the attempt
6. applies the fix (the strategy rolls back on its own failures)
7. validates, rolling back when the vulnerability is still there

A rollback that fails raises RollbackError out of ``process_finding``.
Batches catch it per finding, flag the report as critical and carry on with
findings whose targets do not overlap.
"""

import logging
import os
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .backup_manager import BackupManager
from .config import Settings
from .database import DatabaseAdapter
from .errors import (BreachGuardError, FixApplicationError, InvalidTransition, LockTimeout,
                     RollbackError)
from .guidance import ManualGuidance
from .locks import LockManager
from .models import (Finding, FixRecord, FixResult, FixStatus, Instructions, RiskCategory,
                     RollbackResult, SafetyAssessment, ValidationResult)
from .rule_engine import RuleSet
from .safety_assessor import SafetyAssessor, SiteContext
from .strategies import FixOptions, FixStrategy, build_strategies

logger = logging.getLogger(__name__)


class FixOutcome(Enum):
    AUTO_FIXED = "auto_fixed"
    MANUAL_REQUIRED = "manual_required"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class FixReport:
    finding_id: str
    outcome: FixOutcome = FixOutcome.SKIPPED
    strategy: Optional[str] = None
    fix_id: Optional[str] = None
    backup_id: Optional[str] = None
    assessment: Optional[SafetyAssessment] = None
    result: Optional[FixResult] = None
    validation: Optional[ValidationResult] = None
    instructions: Optional[Instructions] = None
    error: Optional[str] = None
    critical: bool = False
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "finding_id": self.finding_id,
            "outcome": self.outcome.value,
            "strategy": self.strategy,
            "fix_id": self.fix_id,
            "backup_id": self.backup_id,
            "assessment": self.assessment.to_dict() if self.assessment else None,
            "validation": {
                "is_valid": self.validation.is_valid,
                "confidence": self.validation.confidence,
                "issues": list(self.validation.issues),
            } if self.validation else None,
            "instructions": self.instructions.to_dict() if self.instructions else None,
            "error": self.error,
            "critical": self.critical,
            "duration": round(self.duration, 3),
        }


@dataclass
class BatchReport:
    reports: List[FixReport] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        counter = Counter(r.outcome.value for r in self.reports)
        return {o.value: counter.get(o.value, 0) for o in FixOutcome}

    @property
    def errors(self) -> List[str]:
        return [r.error for r in self.reports if r.error]

    @property
    def critical(self) -> List[FixReport]:
        return [r for r in self.reports if r.critical]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_processed": len(self.reports),
            **self.counts(),
            "critical": len(self.critical),
            "fixes": [r.to_dict() for r in self.reports],
        }


class FixEngine:
    def __init__(self, ruleset: RuleSet, site: SiteContext,
                 settings: Optional[Settings] = None,
                 database: Optional[DatabaseAdapter] = None,
                 backups: Optional[BackupManager] = None,
                 locks: Optional[LockManager] = None,
                 strategies: Optional[Dict[str, FixStrategy]] = None):
        self.settings = settings or Settings()
        self.site = site
        self.assessor = SafetyAssessor(self.settings.safety)
        self.backups = backups or BackupManager(site, self.settings.backup, database)
        self.locks = locks or LockManager(self.settings.locks)
        if strategies is None:
            strategies = build_strategies(ruleset, site, self.backups, self.settings, self.assessor)
        self.strategies = dict(strategies)
        self.guidance = ManualGuidance()
        self._records: Dict[str, FixRecord] = {}
        self._records_lock = threading.Lock()

    # ==================== Strategies & records ====================

    def register_strategy(self, vuln_type: str, strategy: FixStrategy) -> None:
        self.strategies[vuln_type] = strategy

    def find_strategy(self, finding: Finding) -> Optional[FixStrategy]:
        return self.strategies.get(finding.type)

    def get_record(self, fix_id: str) -> FixRecord:
        with self._records_lock:
            try:
                return self._records[fix_id]
            except KeyError:
                raise BreachGuardError(f"Unknown fix {fix_id}") from None

    def records(self) -> List[FixRecord]:
        with self._records_lock:
            return sorted(self._records.values(), key=lambda r: r.created_at)

    def _new_record(self, strategy: FixStrategy, finding: Finding) -> FixRecord:
        record = FixRecord(FixRecord.new_id(), strategy.name, finding.finding_id)
        with self._records_lock:
            self._records[record.fix_id] = record
        return record

    def _manual(self, report: FixReport, finding: Finding, reason: str,
                strategy: Optional[FixStrategy] = None) -> FixReport:
        report.outcome = FixOutcome.MANUAL_REQUIRED
        if strategy is not None:
            report.instructions = strategy.generate_manual_instructions(finding, reason)
        else:
            report.instructions = self.guidance.build(finding, reason)
        logger.info("%s needs a manual fix: %s", finding.finding_id, reason)
        return report

    # ==================== Processing ====================

    def process_finding(self, finding: Finding, dry_run: Optional[bool] = None,
                        manual_only: bool = False, safety_override: bool = False) -> FixReport:
        """Fix one finding if it is safe to, otherwise explain how to fix it by hand.

        Raises RollbackError when a failed fix could not be undone.
        """
        start = time.time()
        report = FixReport(finding_id=finding.finding_id)
        try:
            self._process(finding, report, dry_run, manual_only, safety_override)
        finally:
            report.duration = time.time() - start
        return report

    def _process(self, finding: Finding, report: FixReport, dry_run: Optional[bool],
                 manual_only: bool, safety_override: bool) -> None:
        strategy = self.find_strategy(finding)
        if strategy is None:
            self._manual(report, finding, f"No automated strategy for {finding.type}")
            return
        report.strategy = strategy.name

        if manual_only:
            self._manual(report, finding, "Manual fixes requested", strategy)
            return
        if not strategy.can_auto_fix(finding):
            self._manual(report, finding, "Target cannot be changed automatically", strategy)
            return

        assessment = strategy.assess_fix_safety(finding)
        report.assessment = assessment
        if assessment.manual_review_required:
            self._manual(report, finding,
                         f"Manual review required ({assessment.risk_category.value} risk)", strategy)
            return
        threshold = self.settings.fix.safety_threshold
        high_allowed = self.settings.fix.allow_high_risk and \
            assessment.risk_category is RiskCategory.HIGH
        if assessment.risk_level > threshold and not (safety_override or high_allowed):
            self._manual(report, finding,
                         f"Risk {assessment.risk_level:.2f} exceeds threshold {threshold:.2f}",
                         strategy)
            return

        if self.settings.fix.dry_run if dry_run is None else dry_run:
            try:
                report.result = strategy.apply_fix(finding, FixOptions(dry_run=True))
            except FixApplicationError as e:
                report.outcome = FixOutcome.FAILED
                report.error = str(e)
                return
            report.outcome = FixOutcome.SKIPPED
            return

        plan = strategy.plan_fix(finding)
        record = self._new_record(strategy, finding)
        report.fix_id = record.fix_id
        try:
            keys = plan.lock_keys(self.site) + self.backups.lock_keys(finding, plan)
            with self.locks.hold(keys, owner=record.fix_id):
                self._apply_locked(finding, strategy, plan, record, report)
        except LockTimeout as e:
            record.error = str(e)
            report.outcome = FixOutcome.FAILED
            report.error = str(e)
        except RollbackError as e:
            report.outcome = FixOutcome.FAILED
            report.error = str(e)
            report.critical = True
            raise

    def _apply_locked(self, finding: Finding, strategy: FixStrategy, plan, record: FixRecord,
                      report: FixReport) -> None:
        created = self.backups.create_fix_backup(finding, plan)
        if not created.success:
            # Nothing was changed; the record stays pending.
            record.error = f"Backup failed: {created.error}"
            report.outcome = FixOutcome.FAILED
            report.error = record.error
            return
        report.backup_id = created.backup_id

        result = strategy.apply_fix(finding, FixOptions(record=record, backup=created.backup))
        report.result = result
        if not result.success:
            report.outcome = FixOutcome.FAILED
            report.error = f"Fix application failed: {result.error}"
            return

        validation = strategy.validate_fix(finding, result)
        report.validation = validation
        record.validation_data = {"is_valid": validation.is_valid,
                                  "confidence": validation.confidence,
                                  "checks": dict(validation.checks),
                                  "issues": list(validation.issues)}
        if validation.is_valid:
            report.outcome = FixOutcome.AUTO_FIXED
            return

        logger.warning("Fix %s did not validate (%s), rolling back", record.fix_id,
                       "; ".join(validation.issues))
        rollback = strategy.rollback_fix(record.fix_id, record.rollback_data)
        if not rollback.success:
            logger.error("Rollback of fix %s failed: %s", record.fix_id, rollback.error)
            record.error = rollback.error
            raise RollbackError(record.fix_id, rollback.error or "unknown error")
        record.transition(FixStatus.ROLLED_BACK)
        record.error = "Validation failed: " + "; ".join(validation.issues)
        report.outcome = FixOutcome.FAILED
        report.error = record.error

    def process_batch(self, findings: Sequence[Finding], **options) -> BatchReport:
        """Process findings on a worker pool; reports keep input order."""
        batch = BatchReport()
        if not findings:
            return batch
        workers = max(self.settings.fix.workers, 1)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fix") as executor:
            futures = [executor.submit(self.process_finding, f, **options) for f in findings]
            for finding, future in zip(findings, futures):
                try:
                    batch.reports.append(future.result())
                except RollbackError as e:
                    logger.critical("Manual recovery needed for %s: %s", finding.finding_id, e)
                    batch.reports.append(FixReport(
                        finding_id=finding.finding_id, outcome=FixOutcome.FAILED,
                        strategy=self.strategies[finding.type].name, fix_id=e.fix_id,
                        error=str(e), critical=True))
                except Exception as e:
                    logger.error("Processing %s failed: %s", finding.finding_id, e)
                    batch.reports.append(FixReport(
                        finding_id=finding.finding_id, outcome=FixOutcome.FAILED,
                        error=f"Unexpected error: {e}"))
        counts = batch.counts()
        logger.info("Processed %d finding(s): %d auto-fixed, %d manual, %d failed, %d skipped",
                    len(batch.reports), counts["auto_fixed"], counts["manual_required"],
                    counts["failed"], counts["skipped"])
        return batch

    # ==================== Rollback & statistics ====================

    def rollback(self, fix_id: str) -> RollbackResult:
        """Undo a completed or failed fix from its backup."""
        record = self.get_record(fix_id)
        if not record.can_transition(FixStatus.ROLLED_BACK):
            raise InvalidTransition(f"Fix {fix_id} is {record.status.value}, cannot roll back")
        strategy = next((s for s in self.strategies.values() if s.name == record.strategy_type), None)
        if strategy is None:
            return RollbackResult(False, error=f"Strategy {record.strategy_type} not available")

        keys = []
        if record.backup_id:
            backup = self.backups.get_backup(record.backup_id)
            keys.extend("file:" + os.path.normpath(f.path).replace("\\", "/") for f in backup.files)
            keys.extend("table:" + t.name.lower() for t in backup.database_tables)
        with self.locks.hold(keys, owner=fix_id):
            result = strategy.rollback_fix(fix_id, record.rollback_data)
        if result.success:
            record.transition(FixStatus.ROLLED_BACK)
            logger.info("Rolled back fix %s", fix_id)
        else:
            logger.error("Rollback of fix %s failed: %s", fix_id, result.error)
        return result

    def get_statistics(self) -> Dict[str, Any]:
        statuses = Counter(r.status.value for r in self.records())
        return {
            "total_fixes_attempted": sum(statuses.values()),
            "successful_fixes": statuses.get(FixStatus.COMPLETED.value, 0),
            "failed_fixes": statuses.get(FixStatus.FAILED.value, 0),
            "rolled_back_fixes": statuses.get(FixStatus.ROLLED_BACK.value, 0),
            "pending_fixes": statuses.get(FixStatus.PENDING.value, 0),
            "available_strategies": len({s.name for s in self.strategies.values()}),
            "backup_success_rate": self.backups.get_success_rate(),
        }
