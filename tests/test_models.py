#!/usr/bin/env python3
"""
Tests for breachguard/models.py - severities, findings and lifecycle rules.
"""

import pytest
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from breachguard.errors import InvalidTransition
from breachguard.models import (
    Backup, BackupStatus, Finding, FixRecord, FixStatus, Severity,
)


def completed_backup(backup_id="b1"):
    backup = Backup(id=backup_id)
    backup.transition(BackupStatus.COMPLETED)
    backup.verified = True
    return backup


class TestSeverity:
    def test_downgrade(self):
        assert Severity.CRITICAL.downgrade() is Severity.HIGH
        assert Severity.LOW.downgrade() is Severity.INFO
        assert Severity.INFO.downgrade() is Severity.INFO

    def test_parse(self):
        assert Severity.parse("High") is Severity.HIGH
        assert Severity.parse(4) is Severity.CRITICAL
        assert Severity.parse(Severity.LOW) is Severity.LOW
        with pytest.raises(ValueError):
            Severity.parse("urgent")

    def test_highest(self):
        assert Severity.highest(Severity.MEDIUM, Severity.CRITICAL, Severity.LOW) is Severity.CRITICAL


class TestFinding:
    def make(self, **kw):
        data = dict(type="xss", subtype="direct_echo", severity=Severity.CRITICAL,
                    confidence=0.9, line=3, matched_text="echo $_GET['x']",
                    file_path="a.php", metadata={"variable": "$_GET['x']"})
        data.update(kw)
        return Finding(**data)

    def test_frozen(self):
        f = self.make()
        with pytest.raises(Exception):
            f.line = 4
        with pytest.raises(TypeError):
            f.metadata["variable"] = "$y"

    def test_id_is_stable(self):
        assert self.make().finding_id == self.make().finding_id
        assert self.make().finding_id != self.make(line=4).finding_id

    def test_with_changes(self):
        f = self.make()
        g = f.with_changes(severity=Severity.HIGH)
        assert g.severity is Severity.HIGH
        assert f.severity is Severity.CRITICAL

    def test_dict_round_trip(self):
        f = self.make()
        g = Finding.from_dict(f.to_dict())
        assert g == f
        assert dict(g.metadata) == dict(f.metadata)


class TestBackupLifecycle:
    def test_completed_then_restored(self):
        backup = completed_backup()
        assert backup.usable
        backup.transition(BackupStatus.RESTORED)
        assert not backup.usable

    def test_failed_is_terminal(self):
        backup = Backup(id="b2")
        backup.transition(BackupStatus.FAILED)
        with pytest.raises(InvalidTransition):
            backup.transition(BackupStatus.COMPLETED)

    def test_unverified_not_usable(self):
        backup = Backup(id="b3")
        backup.transition(BackupStatus.COMPLETED)
        assert not backup.usable


class TestFixRecord:
    def test_happy_path(self):
        record = FixRecord(fix_id="f1", strategy_type="code")
        record.transition(FixStatus.IN_PROGRESS, completed_backup())
        record.transition(FixStatus.COMPLETED)
        record.transition(FixStatus.ROLLED_BACK)
        assert record.backup_id == "b1"
        assert [h[:2] for h in record.history] == [
            ("pending", "in_progress"), ("in_progress", "completed"),
            ("completed", "rolled_back")]

    def test_start_requires_backup(self):
        record = FixRecord(fix_id="f1", strategy_type="code")
        with pytest.raises(InvalidTransition):
            record.transition(FixStatus.IN_PROGRESS)
        with pytest.raises(InvalidTransition):
            record.transition(FixStatus.IN_PROGRESS, Backup(id="creating"))
        assert record.status is FixStatus.PENDING

    def test_backup_must_match(self):
        record = FixRecord(fix_id="f1", strategy_type="code", backup_id="other")
        with pytest.raises(InvalidTransition):
            record.transition(FixStatus.IN_PROGRESS, completed_backup("b1"))

    def test_failed_can_roll_back(self):
        record = FixRecord(fix_id="f1", strategy_type="code")
        record.transition(FixStatus.IN_PROGRESS, completed_backup())
        record.transition(FixStatus.FAILED)
        assert record.can_transition(FixStatus.ROLLED_BACK)
        assert not record.can_transition(FixStatus.COMPLETED)

    def test_pending_cannot_complete(self):
        record = FixRecord(fix_id="f1", strategy_type="code")
        with pytest.raises(InvalidTransition):
            record.transition(FixStatus.COMPLETED)

    def test_rolled_back_is_terminal(self):
        record = FixRecord(fix_id="f1", strategy_type="code")
        record.transition(FixStatus.IN_PROGRESS, completed_backup())
        record.transition(FixStatus.COMPLETED)
        record.transition(FixStatus.ROLLED_BACK)
        for status in FixStatus:
            assert not record.can_transition(status)

    def test_to_dict(self):
        data = FixRecord(fix_id="f1", strategy_type="code").to_dict()
        assert data["status"] == "pending"
        assert data["fix_id"] == "f1"
