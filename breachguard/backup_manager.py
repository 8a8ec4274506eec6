"""
Backups taken before a fix mutates anything, and the restore that undoes it.

On-disk layout under ``backup_dir``::

    <id>/files/<relative path>      copies of every file in scope
    <id>/database/<table>.sql       DROP/CREATE/INSERT export per table
    <id>/configuration.json         option values and permission bits
    <id>/manifest.json              per-artifact checksums + aggregate
    <id>.zip                        the same tree, when compressed
    index/<id>.json                 the Backup record

A backup is only reported successful after its tree has been re-read and
every checksum matches the manifest.  Compression runs afterwards as its
own stage: if it fails the partial archive is removed and the verified
directory stays in place.  Restore re-verifies, then replays files, tables,
option values and permission bits in that order.
"""

import hashlib
import json
import logging
import os
import secrets
import shutil
import stat
import tempfile
import threading
import time
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .config import BackupSettings
from .database import DatabaseAdapter
from .errors import BackupError, BackupNotFoundError, BackupVerificationError
from .models import BackedUpFile, BackedUpTable, Backup, BackupStatus, Finding
from .safety_assessor import FixPlan, SiteContext

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
CONFIG_NAME = "configuration.json"
INDEX_DIR = "index"

# Vulnerability classes whose fixes can touch user identity or site options.
DATABASE_SCOPED_TYPES = ("sql_injection", "privilege_escalation", "configuration")
DATABASE_SCOPED_TABLES = ("options", "users", "usermeta")

_CHUNK = 64 * 1024


def file_checksum(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def aggregate_checksum(checksums: Iterable[Optional[str]]) -> str:
    return hashlib.sha256("".join(c or "-" for c in checksums).encode("ascii")).hexdigest()


@dataclass
class BackupScope:
    files: List[str] = field(default_factory=list)
    tables: List[str] = field(default_factory=list)
    options: List[str] = field(default_factory=list)


@dataclass
class BackupResult:
    success: bool
    backup_id: str
    backup: Optional[Backup] = None
    error: Optional[str] = None


class BackupManager:
    def __init__(self, site: SiteContext, settings: Optional[BackupSettings] = None,
                 database: Optional[DatabaseAdapter] = None):
        self.site = site
        self.settings = settings or BackupSettings()
        self.database = database
        backup_dir = self.settings.backup_dir
        if not os.path.isabs(backup_dir) and site.site_root:
            backup_dir = os.path.join(site.site_root, backup_dir)
        self.backup_dir = os.path.abspath(backup_dir)
        self._index_lock = threading.Lock()

    # ==================== Paths ====================

    def _tree(self, backup_id: str) -> str:
        return os.path.join(self.backup_dir, backup_id)

    def _archive(self, backup_id: str) -> str:
        return self._tree(backup_id) + ".zip"

    def _record_path(self, backup_id: str) -> str:
        if os.sep in backup_id or "/" in backup_id or backup_id in ("", ".", ".."):
            raise BackupNotFoundError(f"Invalid backup id: {backup_id!r}")
        return os.path.join(self.backup_dir, INDEX_DIR, backup_id + ".json")

    def _new_id(self) -> str:
        return self.settings.prefix + time.strftime("%Y%m%d-%H%M%S") + "-" + secrets.token_hex(4)

    def _inside_site(self, path: str) -> str:
        full = os.path.abspath(self.site.resolve(path))
        if self.site.site_root:
            root = os.path.abspath(self.site.site_root)
            if full != root and not full.startswith(root + os.sep):
                raise BackupError(f"{path} is outside the site root {root}")
        return full

    # ==================== Scope ====================

    def determine_scope(self, finding: Finding, plan: Optional[FixPlan] = None) -> BackupScope:
        """Files, tables and option names a fix for *finding* may change."""
        scope = BackupScope()
        candidates: List[str] = []
        if finding.file_path:
            candidates.append(finding.file_path)
        if plan is not None:
            candidates.extend(plan.affected_files)
            candidates.extend(a.target for a in plan.actions if a.target)
        component = finding.metadata.get("component_path")
        if component:
            candidates.append(component)

        seen = set()
        for candidate in candidates:
            full = self._inside_site(candidate)
            paths = self._walk(full) if os.path.isdir(full) else [full]
            for path in paths:
                if path not in seen and not path.startswith(self.backup_dir + os.sep):
                    seen.add(path)
                    scope.files.append(path)

        if self.database is not None and self.settings.include_database:
            tables = []
            if finding.type in DATABASE_SCOPED_TYPES or finding.subtype in DATABASE_SCOPED_TYPES:
                tables.extend(self.database.table_name(t) for t in DATABASE_SCOPED_TABLES)
            if plan is not None:
                tables.extend(c.table for c in plan.database_changes if c.table)
            for table in dict.fromkeys(tables):
                if self.database.table_exists(table):
                    scope.tables.append(table)
                else:
                    logger.debug("Table %s not present, not backed up", table)
            scope.options = list(self.settings.config_options)
        return scope

    @staticmethod
    def _walk(directory: str) -> List[str]:
        found = []
        for root, dirs, files in os.walk(directory):
            dirs.sort()
            for name in sorted(files):
                found.append(os.path.join(root, name))
        return found

    def lock_keys(self, finding: Finding, plan: Optional[FixPlan] = None) -> List[str]:
        """Lock keys for everything the backup, and so a restore, will touch."""
        try:
            scope = self.determine_scope(finding, plan)
        except BackupError as e:
            # create_fix_backup reports the same error
            logger.debug("No backup scope for %s: %s", finding.finding_id, e)
            return []
        keys = ["file:" + self.site.resolve(path) for path in scope.files]
        keys.extend("table:" + table.lower() for table in scope.tables)
        return sorted(set(keys))

    # ==================== Creation ====================

    def create_fix_backup(self, finding: Finding, plan: Optional[FixPlan] = None) -> BackupResult:
        """Back up everything a fix for *finding* may touch, then verify it."""
        backup = Backup(id=self._new_id(), finding_id=finding.finding_id)
        backup.expiry = backup.created_at + self.settings.retention_days * 86400
        tree = self._tree(backup.id)
        try:
            scope = self.determine_scope(finding, plan)
            os.makedirs(tree)
            backup.files = self._backup_files(scope.files, tree)
            backup.database_tables = self._backup_tables(scope.tables, tree)
            backup.configuration_snapshot = self._backup_configuration(scope, tree)
            backup.size = sum(f.size for f in backup.files) + self._tree_size(
                os.path.join(tree, "database"))
            backup.checksum = self._write_manifest(backup, tree)

            if self.settings.verify_backups:
                self._verify_tree(backup, tree)
            backup.verified = True
            backup.transition(BackupStatus.COMPLETED)
        except Exception as e:
            logger.error("Backup %s failed: %s", backup.id, e)
            shutil.rmtree(tree, ignore_errors=True)
            backup.error = str(e)
            backup.verified = False
            backup.transition(BackupStatus.FAILED)
            self._save_record(backup)
            return BackupResult(False, backup.id, backup, str(e))

        if self.settings.compression_enabled:
            self._compress(backup)
        self._save_record(backup)
        logger.info("Backup %s completed: %d file(s), %d table(s)%s",
                    backup.id, len(backup.files), len(backup.database_tables),
                    " (compressed)" if backup.compressed else "")
        self.cleanup_old_backups()
        return BackupResult(True, backup.id, backup)

    def _backup_files(self, paths: List[str], tree: str) -> List[BackedUpFile]:
        entries = []
        for path in paths:
            rel = self.site.relative(path) if self.site.site_root else path.lstrip("/\\")
            if not os.path.exists(path):
                # Restoring this entry removes whatever the fix created.
                entries.append(BackedUpFile(path=path, relative_path=rel, checksum=None))
                continue
            target = os.path.join(tree, "files", rel)
            os.makedirs(os.path.dirname(target), exist_ok=True)
            shutil.copy2(path, target)
            st = os.stat(path)
            entries.append(BackedUpFile(
                path=path,
                relative_path=rel,
                checksum=file_checksum(target),
                size=st.st_size,
                mode=stat.S_IMODE(st.st_mode),
            ))
        return entries

    def _backup_tables(self, tables: List[str], tree: str) -> List[BackedUpTable]:
        entries = []
        if not tables:
            return entries
        db_dir = os.path.join(tree, "database")
        os.makedirs(db_dir, exist_ok=True)
        for table in tables:
            script, rows = self.database.export_table(table)
            sql_file = os.path.join(db_dir, table + ".sql")
            with open(sql_file, "w", encoding="utf-8") as f:
                f.write(script)
            entries.append(BackedUpTable(name=table, checksum=file_checksum(sql_file), rows=rows))
        return entries

    def _backup_configuration(self, scope: BackupScope, tree: str) -> Dict[str, Any]:
        options: Dict[str, Optional[str]] = {}
        if self.database is not None and scope.options and \
                self.database.table_exists(self.database.table_name("options")):
            options = self.database.get_options(scope.options)
        permissions: Dict[str, int] = {}
        for name in self.site.config_files:
            path = self.site.resolve(name)
            if path and os.path.exists(path):
                permissions[path] = stat.S_IMODE(os.stat(path).st_mode)
        snapshot = {"options": options, "file_permissions": permissions}
        with open(os.path.join(tree, CONFIG_NAME), "w", encoding="utf-8") as f:
            json.dump(snapshot, f, indent=2, sort_keys=True)
        return snapshot

    def _artifact_checksums(self, backup: Backup, config_checksum: str) -> List[Optional[str]]:
        return ([f.checksum for f in backup.files]
                + [t.checksum for t in backup.database_tables]
                + [config_checksum])

    def _write_manifest(self, backup: Backup, tree: str) -> str:
        config_checksum = file_checksum(os.path.join(tree, CONFIG_NAME))
        checksum = aggregate_checksum(self._artifact_checksums(backup, config_checksum))
        manifest = {
            "id": backup.id,
            "created_at": backup.created_at,
            "finding_id": backup.finding_id,
            "files": {f.relative_path: f.checksum for f in backup.files},
            "database": {t.name: t.checksum for t in backup.database_tables},
            "configuration": config_checksum,
            "checksum": checksum,
        }
        with open(os.path.join(tree, MANIFEST_NAME), "w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2, sort_keys=True)
        return checksum

    @staticmethod
    def _tree_size(directory: str) -> int:
        total = 0
        for root, _, files in os.walk(directory):
            total += sum(os.path.getsize(os.path.join(root, name)) for name in files)
        return total

    # ==================== Verification ====================

    def _verify_tree(self, backup: Backup, tree: str) -> None:
        """Recompute every checksum under *tree*; raise on the first mismatch."""
        manifest_path = os.path.join(tree, MANIFEST_NAME)
        if not os.path.isfile(manifest_path):
            raise BackupVerificationError(f"Backup {backup.id}: manifest missing")
        try:
            with open(manifest_path, "r", encoding="utf-8") as f:
                manifest = json.load(f)
        except ValueError as e:
            raise BackupVerificationError(f"Backup {backup.id}: unreadable manifest: {e}") from e

        if manifest.get("checksum") != backup.checksum:
            raise BackupVerificationError(f"Backup {backup.id}: manifest checksum mismatch")

        for entry in backup.files:
            if manifest.get("files", {}).get(entry.relative_path) != entry.checksum:
                raise BackupVerificationError(
                    f"Backup {backup.id}: manifest disagrees on {entry.relative_path}")
            if not entry.existed:
                continue
            copy = os.path.join(tree, "files", entry.relative_path)
            if not os.path.isfile(copy) or file_checksum(copy) != entry.checksum:
                raise BackupVerificationError(
                    f"Backup {backup.id}: file {entry.relative_path} is missing or altered")

        for table in backup.database_tables:
            sql_file = os.path.join(tree, "database", table.name + ".sql")
            if not os.path.isfile(sql_file) or file_checksum(sql_file) != table.checksum:
                raise BackupVerificationError(
                    f"Backup {backup.id}: table export {table.name} is missing or altered")

        config_path = os.path.join(tree, CONFIG_NAME)
        if not os.path.isfile(config_path):
            raise BackupVerificationError(f"Backup {backup.id}: configuration snapshot missing")
        config_checksum = file_checksum(config_path)
        if config_checksum != manifest.get("configuration"):
            raise BackupVerificationError(f"Backup {backup.id}: configuration snapshot altered")

        if aggregate_checksum(self._artifact_checksums(backup, config_checksum)) != backup.checksum:
            raise BackupVerificationError(f"Backup {backup.id}: aggregate checksum mismatch")

    def verify_backup(self, backup_id: str) -> bool:
        backup = self.get_backup(backup_id)
        if backup.status not in (BackupStatus.COMPLETED, BackupStatus.RESTORED):
            return False
        try:
            with self._materialized(backup) as tree:
                self._verify_tree(backup, tree)
        except BackupError as e:
            logger.error("%s", e)
            return False
        return True

    # ==================== Compression ====================

    def _compress(self, backup: Backup) -> None:
        tree = self._tree(backup.id)
        archive = self._archive(backup.id)
        partial = archive + ".part"
        try:
            # copy2 keeps source mtimes, which may predate what ZIP can store.
            with zipfile.ZipFile(partial, "w", compression=zipfile.ZIP_DEFLATED,
                                 strict_timestamps=False) as zf:
                for path in self._walk(tree):
                    zf.write(path, os.path.relpath(path, self.backup_dir))
            with zipfile.ZipFile(partial, "r") as zf:
                bad = zf.testzip()
                if bad is not None:
                    raise BackupError(f"corrupt member {bad}")
            os.replace(partial, archive)
        except Exception as e:
            # The uncompressed tree is already verified and stays the backup.
            logger.warning("Compression of backup %s failed, keeping uncompressed copy: %s",
                           backup.id, e)
            for leftover in (partial, archive):
                if os.path.exists(leftover):
                    os.remove(leftover)
            return
        shutil.rmtree(tree)
        backup.compressed = True

    @contextmanager
    def _materialized(self, backup: Backup) -> Iterator[str]:
        """Yield a readable tree for *backup*, extracting the archive if compressed."""
        if not backup.compressed:
            tree = self._tree(backup.id)
            if not os.path.isdir(tree):
                raise BackupVerificationError(f"Backup {backup.id}: directory missing")
            yield tree
            return
        archive = self._archive(backup.id)
        if not os.path.isfile(archive):
            raise BackupVerificationError(f"Backup {backup.id}: archive missing")
        with tempfile.TemporaryDirectory(dir=self.backup_dir) as tmp:
            try:
                with zipfile.ZipFile(archive, "r") as zf:
                    zf.extractall(tmp)
            except (OSError, zipfile.BadZipFile) as e:
                raise BackupVerificationError(
                    f"Backup {backup.id}: cannot extract archive: {e}") from e
            yield os.path.join(tmp, backup.id)

    # ==================== Restore ====================

    def restore_from_backup(self, backup_id: str) -> Backup:
        """Put every captured artifact back.  Raises BackupError on any problem."""
        backup = self.get_backup(backup_id)
        if backup.status is not BackupStatus.COMPLETED:
            raise BackupError(f"Backup {backup_id} is {backup.status.value}, cannot restore")

        with self._materialized(backup) as tree:
            self._verify_tree(backup, tree)
            for entry in backup.files:
                self._restore_file(entry, tree)
            for table in backup.database_tables:
                if self.database is None:
                    raise BackupError(f"Backup {backup_id} holds tables but no database is configured")
                with open(os.path.join(tree, "database", table.name + ".sql"), "r",
                          encoding="utf-8") as f:
                    self.database.execute_script(f.read())

        snapshot = backup.configuration_snapshot
        options = snapshot.get("options") or {}
        if options and self.database is not None:
            self.database.set_options(options)
        for path, mode in (snapshot.get("file_permissions") or {}).items():
            if os.path.exists(path):
                os.chmod(path, mode)

        backup.transition(BackupStatus.RESTORED)
        self._save_record(backup)
        logger.info("Restored backup %s: %d file(s), %d table(s)",
                    backup_id, len(backup.files), len(backup.database_tables))
        return backup

    @staticmethod
    def _restore_file(entry: BackedUpFile, tree: str) -> None:
        if not entry.existed:
            if os.path.exists(entry.path):
                os.remove(entry.path)
            return
        os.makedirs(os.path.dirname(entry.path) or ".", exist_ok=True)
        shutil.copyfile(os.path.join(tree, "files", entry.relative_path), entry.path)
        if entry.mode is not None:
            os.chmod(entry.path, entry.mode)

    # ==================== Records & retention ====================

    def _save_record(self, backup: Backup) -> None:
        path = self._record_path(backup.id)
        with self._index_lock:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            tmp = path + ".tmp"
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(backup.to_dict(), f, indent=2, sort_keys=True)
            os.replace(tmp, path)

    def get_backup(self, backup_id: str) -> Backup:
        path = self._record_path(backup_id)
        if not os.path.isfile(path):
            raise BackupNotFoundError(f"Backup {backup_id} not found")
        with open(path, "r", encoding="utf-8") as f:
            return Backup.from_dict(json.load(f))

    def list_backups(self) -> List[Backup]:
        """All recorded backups, newest first."""
        index = os.path.join(self.backup_dir, INDEX_DIR)
        if not os.path.isdir(index):
            return []
        backups = []
        for name in os.listdir(index):
            if not name.endswith(".json"):
                continue
            try:
                backups.append(self.get_backup(name[:-len(".json")]))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Skipping unreadable backup record %s: %s", name, e)
        return sorted(backups, key=lambda b: (b.created_at, b.id), reverse=True)

    def delete_backup(self, backup_id: str) -> bool:
        record = self._record_path(backup_id)
        existed = os.path.exists(record)
        shutil.rmtree(self._tree(backup_id), ignore_errors=True)
        for path in (self._archive(backup_id), record):
            if os.path.exists(path):
                os.remove(path)
        return existed

    def cleanup_old_backups(self, now: Optional[float] = None) -> List[str]:
        """Prune by count, then by age.  Returns the deleted ids."""
        now = time.time() if now is None else now
        backups = self.list_backups()
        doomed = [b.id for b in backups[self.settings.max_backups:]]
        cutoff = now - self.settings.retention_days * 86400
        doomed.extend(b.id for b in backups[:self.settings.max_backups] if b.created_at < cutoff)
        for backup_id in reversed(doomed):
            logger.warning("Removing backup %s under retention policy", backup_id)
            self.delete_backup(backup_id)
        return doomed

    def get_success_rate(self) -> float:
        """Percentage of backup attempts that completed."""
        backups = self.list_backups()
        if not backups:
            return 100.0
        ok = sum(1 for b in backups if b.status in (BackupStatus.COMPLETED, BackupStatus.RESTORED))
        return ok / len(backups) * 100.0
