#!/usr/bin/env python3
"""
Tests for breachguard/fix_engine.py - the gated detect -> backup -> fix ->
validate -> rollback pipeline.
"""

import pytest
import os
import sqlite3
import sys
import tempfile
from datetime import datetime

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from breachguard.backup_manager import BackupResult
from breachguard.config import Settings
from breachguard.database import SQLiteAdapter
from breachguard.detectors import SQLInjectionDetector, XSSDetector
from breachguard.errors import BreachGuardError, InvalidTransition, RollbackError
from breachguard.fix_engine import FixEngine, FixOutcome
from breachguard.models import Finding, FixStatus, RollbackResult, Severity, ValidationResult
from breachguard.rule_engine import RuleEngine
from breachguard.safety_assessor import SiteContext
from breachguard.strategies import CodeFixStrategy

PLUGIN = "wp-content/plugins/demo/demo.php"
VULNERABLE = "<?php\n$name = $_GET['name'];\necho $name;\n"
FIXED = "<?php\n$name = $_GET['name'];\necho esc_html($name);\n"
SQL_VULNERABLE = "<?php\n$id = $_GET['id'];\n$wpdb->query(\"SELECT * FROM t WHERE id = $id\");\n"


@pytest.fixture(scope="module")
def ruleset():
    return RuleEngine().ruleset


@pytest.fixture
def site():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield SiteContext(site_root=tmpdir, now=datetime(2024, 1, 6, 3, 0))


@pytest.fixture
def settings():
    settings = Settings()
    settings.locks.timeout_seconds = 0.2
    return settings


@pytest.fixture
def engine(ruleset, site, settings):
    return FixEngine(ruleset, site, settings)


def write(site, rel, text):
    path = os.path.join(site.site_root, rel)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(text)
    return path


def read(path):
    with open(path) as f:
        return f.read()


def xss_finding(ruleset, site, rel=PLUGIN, text=VULNERABLE):
    write(site, rel, text)
    findings = XSSDetector(ruleset).detect(text, rel)
    return [f for f in findings if f.subtype == "tainted_variable_output"][0]


def replace_strategy(engine, cls):
    strategy = cls(engine.strategies["xss"].ruleset, engine.site, engine.backups,
                   engine.settings, engine.assessor)
    engine.register_strategy("xss", strategy)
    return strategy


class FailingApply(CodeFixStrategy):
    def _apply(self, finding, plan, result):
        super()._apply(finding, plan, result)
        raise OSError("disk full")


class NeverValid(CodeFixStrategy):
    def validate_fix(self, finding, fix_result):
        return ValidationResult(False, 0.0, {}, ["still vulnerable"])


class BrokenRollback(NeverValid):
    def rollback_fix(self, fix_id, rollback_data):
        return RollbackResult(False, error="restore failed")


class TestProcessFinding:
    def test_auto_fix(self, ruleset, site, engine):
        finding = xss_finding(ruleset, site)
        report = engine.process_finding(finding)
        assert report.outcome is FixOutcome.AUTO_FIXED, report.error
        assert report.strategy == "code"
        assert report.validation.is_valid
        assert report.backup_id
        assert read(os.path.join(site.site_root, PLUGIN)) == FIXED

        record = engine.get_record(report.fix_id)
        assert record.status is FixStatus.COMPLETED
        assert record.backup_id == report.backup_id
        assert record.validation_data["is_valid"] is True
        assert engine.locks.held_keys() == []

    def test_manual_rollback(self, ruleset, site, engine):
        finding = xss_finding(ruleset, site)
        report = engine.process_finding(finding)
        result = engine.rollback(report.fix_id)
        assert result.success
        assert read(os.path.join(site.site_root, PLUGIN)) == VULNERABLE
        assert engine.get_record(report.fix_id).status is FixStatus.ROLLED_BACK
        with pytest.raises(InvalidTransition):
            engine.rollback(report.fix_id)

    def test_unknown_fix(self, engine):
        with pytest.raises(BreachGuardError):
            engine.get_record("nope")

    def test_failure_during_fix_rolls_back(self, ruleset, site, engine):
        replace_strategy(engine, FailingApply)
        finding = xss_finding(ruleset, site)
        report = engine.process_finding(finding)
        assert report.outcome is FixOutcome.FAILED
        assert "disk full" in report.error
        assert report.result.rollback.success
        assert engine.get_record(report.fix_id).status is FixStatus.ROLLED_BACK
        assert read(os.path.join(site.site_root, PLUGIN)) == VULNERABLE

    def test_validation_failure_rolls_back(self, ruleset, site, engine):
        replace_strategy(engine, NeverValid)
        finding = xss_finding(ruleset, site)
        report = engine.process_finding(finding)
        assert report.outcome is FixOutcome.FAILED
        assert report.error == "Validation failed: still vulnerable"
        record = engine.get_record(report.fix_id)
        assert record.status is FixStatus.ROLLED_BACK
        assert [h[1] for h in record.history] == ["in_progress", "completed", "rolled_back"]
        assert read(os.path.join(site.site_root, PLUGIN)) == VULNERABLE

    def test_failed_rollback_is_critical(self, ruleset, site, engine):
        replace_strategy(engine, BrokenRollback)
        finding = xss_finding(ruleset, site)
        with pytest.raises(RollbackError):
            engine.process_finding(finding)
        assert engine.locks.held_keys() == []

    def test_backup_failure_keeps_record_pending(self, ruleset, site, engine, monkeypatch):
        monkeypatch.setattr(engine.backups, "create_fix_backup",
                            lambda finding, plan=None: BackupResult(False, "b1", None, "disk full"))
        finding = xss_finding(ruleset, site)
        report = engine.process_finding(finding)
        assert report.outcome is FixOutcome.FAILED
        assert report.error == "Backup failed: disk full"
        record = engine.get_record(report.fix_id)
        assert record.status is FixStatus.PENDING
        assert record.backup_id is None
        assert read(os.path.join(site.site_root, PLUGIN)) == VULNERABLE

    def test_dry_run(self, ruleset, site, engine):
        finding = xss_finding(ruleset, site)
        report = engine.process_finding(finding, dry_run=True)
        assert report.outcome is FixOutcome.SKIPPED
        assert report.result.dry_run
        assert report.result.changes_made[0]["after"] == "echo esc_html($name);"
        assert engine.records() == []
        assert read(os.path.join(site.site_root, PLUGIN)) == VULNERABLE

    def test_core_file_needs_manual_fix(self, ruleset, site, engine):
        finding = xss_finding(ruleset, site, rel="wp-includes/general-template.php")
        report = engine.process_finding(finding)
        assert report.outcome is FixOutcome.MANUAL_REQUIRED
        assert report.instructions.steps
        assert report.fix_id is None

    def test_no_strategy(self, engine):
        finding = Finding(type="csrf", subtype="form_missing_nonce", severity=Severity.HIGH,
                          confidence=0.8, line=1, matched_text="<form method=post>",
                          file_path=PLUGIN)
        report = engine.process_finding(finding)
        assert report.outcome is FixOutcome.MANUAL_REQUIRED
        assert report.strategy is None
        assert "csrf" in report.instructions.reason

    def test_manual_only(self, ruleset, site, engine):
        report = engine.process_finding(xss_finding(ruleset, site), manual_only=True)
        assert report.outcome is FixOutcome.MANUAL_REQUIRED
        assert report.assessment is None

    def test_threshold_and_override(self, ruleset, site, engine):
        engine.settings.fix.safety_threshold = 0.05
        finding = xss_finding(ruleset, site)
        report = engine.process_finding(finding)
        assert report.outcome is FixOutcome.MANUAL_REQUIRED
        assert "exceeds threshold" in report.instructions.reason

        report = engine.process_finding(finding, safety_override=True)
        assert report.outcome is FixOutcome.AUTO_FIXED

    def test_lock_contention(self, ruleset, site, engine):
        finding = xss_finding(ruleset, site)
        keys = engine.strategies["xss"].plan_fix(finding).lock_keys(site)
        engine.locks.acquire(keys, owner="someone-else")
        report = engine.process_finding(finding)
        assert report.outcome is FixOutcome.FAILED
        assert "Could not lock" in report.error
        assert engine.get_record(report.fix_id).status is FixStatus.PENDING
        assert read(os.path.join(site.site_root, PLUGIN)) == VULNERABLE

    def test_scope_table_contention(self, ruleset, site, settings):
        """A table the backup will capture is locked along with the plan's files."""
        db_path = os.path.join(site.site_root, "site.db")
        conn = sqlite3.connect(db_path)
        conn.executescript("""
            CREATE TABLE wp_options (option_id INTEGER PRIMARY KEY, option_name TEXT,
                                     option_value TEXT);
            CREATE TABLE wp_users (ID INTEGER PRIMARY KEY, user_login TEXT);
        """)
        conn.commit()
        conn.close()
        engine = FixEngine(ruleset, site, settings, database=SQLiteAdapter(db_path))
        write(site, PLUGIN, SQL_VULNERABLE)
        finding = [f for f in SQLInjectionDetector(ruleset).detect(SQL_VULNERABLE, PLUGIN)
                   if f.subtype == "tainted_query"][0]
        assert "table:wp_users" in engine.backups.lock_keys(finding)

        engine.locks.acquire(["table:wp_users"], owner="someone-else")
        report = engine.process_finding(finding, safety_override=True)
        assert report.outcome is FixOutcome.FAILED
        assert "Could not lock table:wp_users" in report.error
        assert engine.get_record(report.fix_id).status is FixStatus.PENDING
        assert read(os.path.join(site.site_root, PLUGIN)) == SQL_VULNERABLE
        assert engine.locks.held_keys() == ["table:wp_users"]


class TestBatch:
    def test_batch_keeps_order(self, ruleset, site, engine):
        first = xss_finding(ruleset, site, rel="wp-content/plugins/a/a.php")
        second = xss_finding(ruleset, site, rel="wp-content/plugins/b/b.php")
        csrf = Finding(type="csrf", subtype="form_missing_nonce", severity=Severity.MEDIUM,
                       confidence=0.6, line=1, matched_text="<form>", file_path=PLUGIN)
        batch = engine.process_batch([first, csrf, second])
        assert [r.finding_id for r in batch.reports] == [
            first.finding_id, csrf.finding_id, second.finding_id]
        counts = batch.counts()
        assert counts["auto_fixed"] == 2
        assert counts["manual_required"] == 1
        assert batch.to_dict()["total_processed"] == 3

    def test_critical_report_in_batch(self, ruleset, site, engine):
        replace_strategy(engine, BrokenRollback)
        finding = xss_finding(ruleset, site)
        batch = engine.process_batch([finding])
        assert len(batch.critical) == 1
        assert batch.reports[0].outcome is FixOutcome.FAILED
        assert "restore failed" in batch.reports[0].error

    def test_statistics(self, ruleset, site, engine):
        engine.process_finding(xss_finding(ruleset, site))
        stats = engine.get_statistics()
        assert stats["total_fixes_attempted"] == 1
        assert stats["successful_fixes"] == 1
        assert stats["available_strategies"] == 3
        assert stats["backup_success_rate"] == 100.0

    def test_unexpected_error_does_not_stop_batch(self, ruleset, site, engine, monkeypatch):
        def exploding_backup(finding, plan=None):
            raise ValueError("ZIP does not support timestamps before 1980")

        broken = xss_finding(ruleset, site, rel="wp-content/plugins/a/a.php")
        monkeypatch.setattr(engine.backups, "create_fix_backup", exploding_backup)
        batch = engine.process_batch([broken])
        assert batch.reports[0].outcome is FixOutcome.FAILED
        assert "timestamps before 1980" in batch.reports[0].error
        assert engine.locks.held_keys() == []

        monkeypatch.undo()
        healthy = xss_finding(ruleset, site, rel="wp-content/plugins/b/b.php")
        assert engine.process_batch([healthy]).reports[0].outcome is FixOutcome.AUTO_FIXED
