#!/usr/bin/env python3
"""
Tests for breachguard/backup_manager.py - verified backups, restore and retention.
"""

import pytest
import os
import sqlite3
import stat
import sys
import tempfile
import time
import zipfile

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from breachguard import backup_manager
from breachguard.backup_manager import BackupManager
from breachguard.config import BackupSettings
from breachguard.database import SQLiteAdapter
from breachguard.errors import BackupError, BackupNotFoundError
from breachguard.models import BackupStatus, Finding, Severity
from breachguard.safety_assessor import FixPlan, PlannedAction, SiteContext

PLUGIN = "wp-content/plugins/demo/demo.php"
ORIGINAL = "<?php\n$id = $_GET['id'];\n$wpdb->query(\"SELECT * FROM t WHERE id = $id\");\n"


def make_finding(vuln_type="xss", path=PLUGIN):
    return Finding(type=vuln_type, subtype="tainted_query", severity=Severity.CRITICAL,
                   confidence=0.85, line=3, matched_text="$wpdb->query(...)", file_path=path)


def write(root, rel, text):
    path = os.path.join(root, rel)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(text)
    return path


def read(path):
    with open(path) as f:
        return f.read()


@pytest.fixture
def site_root():
    with tempfile.TemporaryDirectory() as tmpdir:
        write(tmpdir, PLUGIN, ORIGINAL)
        write(tmpdir, "wp-config.php", "<?php\ndefine('WP_DEBUG', true);\n")
        yield tmpdir


@pytest.fixture
def database(site_root):
    path = os.path.join(site_root, "site.db")
    conn = sqlite3.connect(path)
    conn.executescript("""
        CREATE TABLE wp_options (option_id INTEGER PRIMARY KEY, option_name TEXT UNIQUE,
                                 option_value TEXT);
        CREATE TABLE wp_users (ID INTEGER PRIMARY KEY, user_login TEXT, user_pass TEXT);
        CREATE INDEX users_login ON wp_users (user_login);
        INSERT INTO wp_options (option_name, option_value) VALUES ('siteurl', 'https://example.org');
        INSERT INTO wp_options (option_name, option_value) VALUES ('default_role', 'subscriber');
        INSERT INTO wp_users (user_login, user_pass) VALUES ('admin', 'it''s hashed');
    """)
    conn.commit()
    conn.close()
    return SQLiteAdapter(path)


def manager(site_root, database=None, **settings):
    return BackupManager(SiteContext(site_root=site_root), BackupSettings(**settings), database)


class TestCreate:
    def test_backup_is_verified_and_compressed(self, site_root):
        mgr = manager(site_root)
        result = mgr.create_fix_backup(make_finding())
        assert result.success
        backup = result.backup
        assert backup.status is BackupStatus.COMPLETED
        assert backup.verified
        assert backup.compressed
        assert os.path.isfile(os.path.join(mgr.backup_dir, backup.id + ".zip"))
        assert not os.path.isdir(os.path.join(mgr.backup_dir, backup.id))
        assert [f.relative_path for f in backup.files] == [PLUGIN]
        assert mgr.get_backup(backup.id).checksum == backup.checksum
        assert mgr.verify_backup(backup.id)

    def test_scope_includes_plan_targets(self, site_root):
        mgr = manager(site_root, compression_enabled=False)
        plan = FixPlan(strategy="code",
                       actions=(PlannedAction("file_patch", "wp-content/plugins/demo/extra.php"),),
                       affected_files=(PLUGIN,))
        scope = mgr.determine_scope(make_finding(), plan)
        assert scope.files == [os.path.join(site_root, PLUGIN),
                               os.path.join(site_root, "wp-content/plugins/demo/extra.php")]

    def test_component_directory_is_walked(self, site_root):
        write(site_root, "wp-content/plugins/demo/inc/a.php", "<?php\n")
        finding = make_finding().with_changes(
            metadata={"component_path": "wp-content/plugins/demo"})
        scope = manager(site_root).determine_scope(finding)
        rels = sorted(os.path.relpath(p, site_root) for p in scope.files)
        assert rels == [PLUGIN, "wp-content/plugins/demo/inc/a.php"]

    def test_lock_keys_cover_scope(self, site_root, database):
        mgr = manager(site_root, database)
        keys = mgr.lock_keys(make_finding("sql_injection"))
        assert keys == ["file:" + os.path.join(site_root, PLUGIN),
                        "table:wp_options", "table:wp_users"]
        assert mgr.lock_keys(make_finding("xss")) == ["file:" + os.path.join(site_root, PLUGIN)]
        assert mgr.lock_keys(make_finding(path="../elsewhere.php")) == []

    def test_path_outside_site_fails(self, site_root):
        mgr = manager(site_root)
        result = mgr.create_fix_backup(make_finding(path="../elsewhere.php"))
        assert not result.success
        assert result.backup.status is BackupStatus.FAILED
        assert "outside the site root" in result.error
        assert mgr.get_backup(result.backup_id).status is BackupStatus.FAILED

    def test_file_older_than_zip_epoch(self, site_root):
        path = os.path.join(site_root, PLUGIN)
        os.utime(path, (0, 0))
        mgr = manager(site_root)
        result = mgr.create_fix_backup(make_finding())
        assert result.success
        assert result.backup.compressed
        assert mgr.verify_backup(result.backup_id)
        assert not os.path.exists(os.path.join(mgr.backup_dir, result.backup_id + ".zip.part"))

        write(site_root, PLUGIN, "<?php\n// patched\n")
        mgr.restore_from_backup(result.backup_id)
        assert read(path) == ORIGINAL

    @pytest.mark.parametrize("error", [OSError("no space left on device"),
                                       ValueError("ZIP does not support timestamps before 1980")])
    def test_compression_failure_keeps_directory(self, site_root, monkeypatch, error):
        def broken_zip(*args, **kwargs):
            raise error

        monkeypatch.setattr(backup_manager.zipfile, "ZipFile", broken_zip)
        mgr = manager(site_root)
        result = mgr.create_fix_backup(make_finding())
        assert result.success
        assert not result.backup.compressed
        assert os.path.isdir(os.path.join(mgr.backup_dir, result.backup_id))
        assert not os.path.exists(os.path.join(mgr.backup_dir, result.backup_id + ".zip"))
        assert mgr.verify_backup(result.backup_id)


class TestRestore:
    def test_files_round_trip(self, site_root):
        mgr = manager(site_root)
        backup_id = mgr.create_fix_backup(make_finding()).backup_id
        path = os.path.join(site_root, PLUGIN)
        write(site_root, PLUGIN, "<?php\n// patched\n")
        os.chmod(path, 0o600)

        restored = mgr.restore_from_backup(backup_id)
        assert read(path) == ORIGINAL
        assert stat.S_IMODE(os.stat(path).st_mode) == restored.files[0].mode
        assert mgr.get_backup(backup_id).status is BackupStatus.RESTORED

    def test_restored_backup_cannot_restore_again(self, site_root):
        mgr = manager(site_root)
        backup_id = mgr.create_fix_backup(make_finding()).backup_id
        mgr.restore_from_backup(backup_id)
        with pytest.raises(BackupError):
            mgr.restore_from_backup(backup_id)

    def test_file_created_by_fix_is_removed(self, site_root):
        mgr = manager(site_root)
        plan = FixPlan(strategy="code", affected_files=("wp-content/plugins/demo/new.php",))
        backup_id = mgr.create_fix_backup(make_finding(), plan).backup_id
        created = write(site_root, "wp-content/plugins/demo/new.php", "<?php\n")
        mgr.restore_from_backup(backup_id)
        assert not os.path.exists(created)

    def test_database_round_trip(self, site_root, database):
        """Tables and options come back exactly; other tables are left alone."""
        mgr = manager(site_root, database)
        before_options = database.rows("wp_options")
        before_users = database.rows("wp_users")
        result = mgr.create_fix_backup(make_finding("sql_injection"))
        assert result.success
        assert sorted(t.name for t in result.backup.database_tables) == ["wp_options", "wp_users"]
        assert result.backup.configuration_snapshot["options"]["siteurl"] == "https://example.org"

        conn = sqlite3.connect(database.path)
        conn.execute("UPDATE wp_options SET option_value='https://evil.example' "
                     "WHERE option_name='siteurl'")
        conn.execute("INSERT INTO wp_users (user_login, user_pass) VALUES ('intruder', 'x')")
        conn.execute("DELETE FROM wp_options WHERE option_name='default_role'")
        conn.commit()
        conn.close()

        mgr.restore_from_backup(result.backup_id)
        assert database.rows("wp_options") == before_options
        assert database.rows("wp_users") == before_users

    def test_xss_backup_skips_tables(self, site_root, database):
        result = manager(site_root, database).create_fix_backup(make_finding("xss"))
        assert result.backup.database_tables == []

    def test_tampered_backup_refused(self, site_root):
        mgr = manager(site_root, compression_enabled=False)
        backup_id = mgr.create_fix_backup(make_finding()).backup_id
        copy = os.path.join(mgr.backup_dir, backup_id, "files", PLUGIN)
        with open(copy, "a") as f:
            f.write("// tampered\n")
        write(site_root, PLUGIN, "<?php\n// patched\n")

        assert not mgr.verify_backup(backup_id)
        with pytest.raises(BackupError):
            mgr.restore_from_backup(backup_id)
        # nothing was restored from the altered copy
        assert read(os.path.join(site_root, PLUGIN)) == "<?php\n// patched\n"

    def test_corrupt_archive_refused(self, site_root):
        mgr = manager(site_root)
        backup_id = mgr.create_fix_backup(make_finding()).backup_id
        with open(os.path.join(mgr.backup_dir, backup_id + ".zip"), "wb") as f:
            f.write(b"not a zip")
        assert not mgr.verify_backup(backup_id)


class TestRecords:
    def test_unknown_backup(self, site_root):
        mgr = manager(site_root)
        with pytest.raises(BackupNotFoundError):
            mgr.get_backup("missing")
        with pytest.raises(BackupNotFoundError):
            mgr.get_backup("../escape")

    def test_list_newest_first(self, site_root):
        mgr = manager(site_root)
        first = mgr.create_fix_backup(make_finding()).backup_id
        time.sleep(0.01)
        second = mgr.create_fix_backup(make_finding()).backup_id
        assert [b.id for b in mgr.list_backups()] == [second, first]

    def test_retention_by_count(self, site_root):
        mgr = manager(site_root, max_backups=2)
        ids = []
        for _ in range(3):
            ids.append(mgr.create_fix_backup(make_finding()).backup_id)
            time.sleep(0.01)
        remaining = [b.id for b in mgr.list_backups()]
        assert remaining == [ids[2], ids[1]]
        assert not os.path.exists(os.path.join(mgr.backup_dir, ids[0] + ".zip"))

    def test_retention_by_age(self, site_root):
        mgr = manager(site_root, retention_days=1)
        backup_id = mgr.create_fix_backup(make_finding()).backup_id
        assert mgr.cleanup_old_backups(now=time.time() + 2 * 86400) == [backup_id]
        assert mgr.list_backups() == []

    def test_delete(self, site_root):
        mgr = manager(site_root)
        backup_id = mgr.create_fix_backup(make_finding()).backup_id
        assert mgr.delete_backup(backup_id) is True
        assert mgr.delete_backup(backup_id) is False

    def test_success_rate(self, site_root):
        mgr = manager(site_root)
        assert mgr.get_success_rate() == 100.0
        mgr.create_fix_backup(make_finding())
        mgr.create_fix_backup(make_finding(path="../elsewhere.php"))
        assert mgr.get_success_rate() == pytest.approx(50.0)
