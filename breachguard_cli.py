#!/usr/bin/env python3
"""
BreachGuard - PHP site vulnerability scanner and automated remediation

Usage:
    breachguard scan /var/www/html                      # Scan a site
    breachguard scan /var/www/html -f json -o out.json  # Machine-readable findings
    breachguard fix /var/www/html out.json --dry-run    # Preview fixes
    breachguard fix /var/www/html out.json              # Apply safe fixes
    breachguard backups /var/www/html list              # Inspect fix backups
    breachguard rules --stats                           # Pattern library summary
"""

import argparse
import json
import logging
import os
import sys
import time
from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from breachguard import __version__
from breachguard.config import Settings, load_settings
from breachguard.database import SQLiteAdapter
from breachguard.errors import BreachGuardError, RollbackError
from breachguard.backup_manager import BackupManager
from breachguard.fix_engine import FixEngine, FixOutcome
from breachguard.models import Finding
from breachguard.registry import DetectorRegistry, FileScan, SourceFile
from breachguard.rule_engine import RuleEngine
from breachguard.safety_assessor import SiteContext

# ── Color helpers (auto-disable on non-TTY) ──────────────────────────────────

_COLOR_ENABLED = hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _c(code: str, text: str) -> str:
    if not _COLOR_ENABLED:
        return text
    return f"\033[{code}m{text}\033[0m"

def _red(t):    return _c("31", t)
def _green(t):  return _c("32", t)
def _yellow(t): return _c("33", t)
def _cyan(t):   return _c("36", t)
def _bold(t):   return _c("1", t)
def _dim(t):    return _c("2", t)

def _severity_color(sev: str) -> str:
    colors = {'CRITICAL': "31;1", 'HIGH': "31", 'MEDIUM': "33", 'LOW': "36", 'INFO': "2"}
    return _c(colors.get(sev, "0"), sev)


# ── Progress output (stderr) ─────────────────────────────────────────────────

_quiet = False

def _progress(msg: str, prefix: str = "[*]"):
    """Print progress/status to stderr (not mixed with results)."""
    if _quiet:
        return
    print(f"{_cyan(prefix)} {msg}", file=sys.stderr)

def _success(msg: str):
    _progress(msg, _green("[+]"))

def _warn(msg: str):
    _progress(msg, _yellow("[!]"))

def _error(msg: str):
    print(f"{_red('[ERROR]')} {msg}", file=sys.stderr)


# ── File enumeration ─────────────────────────────────────────────────────────

SKIP_DIRS = {
    'vendor', 'node_modules', 'bower_components', '.git', '.svn',
    '__pycache__', 'cache', 'tmp',
}


def _is_skipped(path: str, extra: List[str]) -> bool:
    return any(part.lower() in SKIP_DIRS or part in extra for part in Path(path).parts)


def collect_sources(target: str, registry: DetectorRegistry, include_vendor: bool = False,
                    exclude: Optional[List[str]] = None) -> List[SourceFile]:
    """Read every file some detector handles; the registry itself never walks the disk."""
    exclude = list(exclude or [])
    if os.path.isfile(target):
        paths = [target]
    else:
        paths = []
        for root, dirs, files in os.walk(target):
            dirs[:] = sorted(d for d in dirs
                             if include_vendor or not _is_skipped(d, exclude))
            paths.extend(os.path.join(root, name) for name in sorted(files))
    sources = []
    for path in paths:
        if not registry.detectors_for(path):
            continue
        try:
            with open(path, 'rb') as f:
                content = f.read()
        except OSError as e:
            _warn(f"Cannot read {path}: {e}")
            continue
        sources.append(SourceFile(path, content, {"size": len(content)}))
    return sources


def _load_site(target: str, site_file: Optional[str]) -> SiteContext:
    data: Dict = {}
    if site_file:
        with open(site_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    data.setdefault('site_root', os.path.abspath(target))
    return SiteContext.from_dict(data)


# ── scan ─────────────────────────────────────────────────────────────────────

def cmd_scan(args, settings: Settings) -> int:
    if not os.path.exists(args.target):
        _error(f"Target not found: {args.target}")
        return 1

    engine = RuleEngine(args.rules_dir or settings.rules_dir)
    registry = DetectorRegistry.default(engine.ruleset, settings.detection)
    _success(f"Rules loaded (version {engine.version}, {len(registry.names)} detectors)")

    sources = collect_sources(args.target, registry, args.include_vendor, args.exclude)
    total = len(sources)
    _progress(f"Scanning {total} files...")

    done = [0]
    start = time.time()

    def on_file(scanned: FileScan):
        done[0] += 1
        if _quiet or total <= 20:
            return
        pct = done[0] / total
        bar_len = 30
        filled = int(bar_len * pct)
        bar = '=' * filled + '-' * (bar_len - filled)
        speed = done[0] / max(time.time() - start, 0.001)
        eta = (total - done[0]) / max(speed, 0.001)
        print(f"\r  [{bar}] {done[0]}/{total} ({pct:.0%}) ETA: {eta:.0f}s   ",
              end='', file=sys.stderr)

    report = registry.scan(sources, engine.version, on_file=on_file)
    if not _quiet and total > 20:
        print('\r' + ' ' * 70 + '\r', end='', file=sys.stderr)
    _success(f"Scan completed in {report.elapsed:.1f}s")
    if report.timed_out:
        _warn(f"{len(report.timed_out)} detector run(s) timed out")

    results = report.to_dict()
    results['target'] = args.target
    if args.format == 'json':
        text = json.dumps(results, indent=2)
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                f.write(text)
            _success(f"Report written to {args.output}")
        else:
            print(text)
    else:
        print_scan_results(results, args.verbose)

    counts = results['severity_counts']
    return 2 if counts.get('critical', 0) or counts.get('high', 0) else 0


def print_scan_results(results: Dict, verbose: bool = False):
    """Print scan results to stdout."""
    print("\n" + "=" * 70)
    print(_bold("SCAN RESULTS"))
    print("=" * 70)

    print(f"\nTarget: {results['target']}")
    print(f"Rules version: {results['rules_version']}")
    print(f"Files scanned: {results['files_scanned']}")
    if results['skipped']:
        print(f"Files skipped: {len(results['skipped'])}")
    print(f"Total findings: {_bold(str(results['total_findings']))}")
    print(f"Scan time: {results['elapsed']}s")

    counts = results['severity_counts']
    for label in ('critical', 'high', 'medium', 'low'):
        print(f"  {_severity_color(label.upper())}: {counts.get(label, 0)}")

    if results['type_counts']:
        print("\n  Vulnerability Types:")
        for vtype, count in Counter(results['type_counts']).most_common(10):
            print(f"    {vtype}: {count}")

    findings = results['findings']
    if not findings:
        return
    print("\n" + "-" * 70)
    print(_bold("FINDINGS"))
    print("-" * 70)
    for severity in ('critical', 'high', 'medium', 'low', 'info'):
        group = [f for f in findings if f['severity'] == severity]
        if not group:
            continue
        print(f"\n[{_severity_color(severity.upper())}] - {len(group)} findings")
        for f in group[:10]:
            marker = _dim(" [validated]") if f['has_validation'] else ""
            print(f"\n  {f['type']}/{f['subtype']}{marker}")
            print(f"    File: {f['file_path']}:{f['line']}")
            print(f"    Confidence: {f['confidence']:.0%}")
            if f.get('tainted_source'):
                print(f"    Source: {f['tainted_source']} (line {f.get('tainted_line', '?')})")
            if verbose:
                print(f"    Code: {f['matched_text'][:60]}...")
                print(f"    Fix: {f['recommendation'][:120]}")
        if len(group) > 10:
            print(f"\n  ... and {len(group) - 10} more {severity.upper()} findings")


# ── fix ──────────────────────────────────────────────────────────────────────

def _build_engine(args, settings: Settings) -> FixEngine:
    site = _load_site(args.site, args.site_config)
    database = SQLiteAdapter(args.database, args.table_prefix) if args.database else None
    rules = RuleEngine(getattr(args, 'rules_dir', None) or settings.rules_dir)
    return FixEngine(rules.ruleset, site, settings, database=database)


def cmd_fix(args, settings: Settings) -> int:
    with open(args.findings, 'r', encoding='utf-8') as f:
        data = json.load(f)
    entries = data['findings'] if isinstance(data, dict) else data
    findings = [Finding.from_dict(e) for e in entries]
    if args.type:
        findings = [f for f in findings if f.type in args.type]
    if args.dry_run:
        settings.fix.dry_run = True
    if args.allow_high_risk:
        settings.fix.allow_high_risk = True

    engine = _build_engine(args, settings)
    _progress(f"Processing {len(findings)} finding(s)"
              f"{' (dry run)' if settings.fix.dry_run else ''}...")
    batch = engine.process_batch(findings, manual_only=args.manual_only)

    if args.format == 'json':
        print(json.dumps(batch.to_dict(), indent=2))
    else:
        counts = batch.counts()
        print("\n" + "=" * 70)
        print(_bold("FIX RESULTS"))
        print("=" * 70)
        print(f"  {_green('Auto-fixed')}:      {counts['auto_fixed']}")
        print(f"  {_yellow('Manual required')}: {counts['manual_required']}")
        print(f"  {_red('Failed')}:          {counts['failed']}")
        print(f"  {_dim('Skipped')}:         {counts['skipped']}")
        for report in batch.reports:
            if report.outcome is FixOutcome.AUTO_FIXED:
                print(f"\n  {_green('[+]')} {report.finding_id} fixed "
                      f"(fix {report.fix_id}, backup {report.backup_id})")
            elif report.outcome is FixOutcome.FAILED:
                tag = _red('[CRITICAL]') if report.critical else _red('[-]')
                print(f"\n  {tag} {report.finding_id}: {report.error}")
            elif report.outcome is FixOutcome.MANUAL_REQUIRED and args.verbose:
                guide = report.instructions
                print(f"\n  {_yellow('[!]')} {guide.title}")
                for i, step in enumerate(guide.steps, 1):
                    print(f"      {i}. {step.title}")
            elif report.outcome is FixOutcome.SKIPPED and report.result and args.verbose:
                for action in report.result.actions_taken:
                    print(f"  {_dim('[dry-run]')} {action}")

    if batch.critical:
        _error(f"{len(batch.critical)} fix(es) could not be rolled back; restore manually")
        return 3
    return 0


# ── backups ──────────────────────────────────────────────────────────────────

def cmd_backups(args, settings: Settings) -> int:
    site = _load_site(args.site, args.site_config)
    database = SQLiteAdapter(args.database, args.table_prefix) if args.database else None
    manager = BackupManager(site, settings.backup, database)

    if args.action == 'list':
        for backup in manager.list_backups():
            created = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(backup.created_at))
            flags = []
            if backup.compressed:
                flags.append('zip')
            if backup.verified:
                flags.append('verified')
            print(f"{backup.id}  {created}  {backup.status.value:<9}  "
                  f"{len(backup.files)} file(s), {len(backup.database_tables)} table(s)  "
                  f"{_dim(' '.join(flags))}")
        print(f"\nSuccess rate: {manager.get_success_rate():.1f}%")
        return 0

    if args.action == 'cleanup':
        deleted = manager.cleanup_old_backups()
        _success(f"Removed {len(deleted)} backup(s)")
        return 0

    if not args.backup_id:
        _error(f"'{args.action}' needs a backup id")
        return 1
    if args.action == 'verify':
        if manager.verify_backup(args.backup_id):
            _success(f"Backup {args.backup_id} verified")
            return 0
        _error(f"Backup {args.backup_id} failed verification")
        return 2
    if args.action == 'restore':
        backup = manager.restore_from_backup(args.backup_id)
        _success(f"Restored {len(backup.files)} file(s) and "
                 f"{len(backup.database_tables)} table(s) from {backup.id}")
        return 0
    if args.action == 'delete':
        if manager.delete_backup(args.backup_id):
            _success(f"Deleted backup {args.backup_id}")
            return 0
        _error(f"No backup {args.backup_id}")
        return 1
    return 1


# ── rules ────────────────────────────────────────────────────────────────────

def cmd_rules(args, settings: Settings) -> int:
    engine = RuleEngine(args.rules_dir or settings.rules_dir)
    if args.validate:
        with open(args.validate, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        problems = []
        for entry in data.get('patterns') or []:
            for issue in engine.validate_pattern(entry):
                problems.append(f"{entry.get('id', '?') if isinstance(entry, dict) else '?'}: {issue}")
        for p in problems:
            _error(p)
        if not problems:
            _success(f"{args.validate}: all patterns valid")
        return 1 if problems else 0
    if args.test:
        detector, pattern_id, sample = args.test
        for match in engine.test_pattern(detector, pattern_id, sample):
            print(json.dumps(match))
        return 0
    if args.export:
        count = engine.export_patterns(args.export)
        _success(f"Exported {count} pattern(s) to {args.export}")
        return 0

    stats = engine.statistics()
    print(f"Rules version: {_bold(stats['version'])}")
    print(f"Total patterns: {stats['total_patterns']}")
    for name, count in sorted(stats['detectors'].items()):
        print(f"  {name}: {count}")
    print("By severity:")
    for label, count in stats['by_severity'].items():
        print(f"  {_severity_color(label.upper())}: {count}")
    print(f"Sources: {stats['sources']}  Sinks: {stats['sinks']}  "
          f"Sanitizers: {stats['sanitizers']}")
    print(f"Output contexts: {', '.join(stats['contexts'])}")
    return 0


# ── Main ─────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='breachguard',
        description='BreachGuard - PHP site vulnerability scanner and remediation',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s scan /var/www/html                         Text report
  %(prog)s scan /var/www/html -f json -o findings.json
  %(prog)s fix /var/www/html findings.json --dry-run  Preview fixes
  %(prog)s fix /var/www/html findings.json --database site.db
  %(prog)s backups /var/www/html restore <id>
        '''
    )
    parser.add_argument('-c', '--config', help='Settings YAML file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging and details')
    parser.add_argument('-q', '--quiet', action='store_true',
                        help='Suppress progress output (results only)')
    parser.add_argument('--version', action='version', version=f'BreachGuard v{__version__}')
    sub = parser.add_subparsers(dest='command', required=True)

    scan = sub.add_parser('scan', help='Scan files for vulnerabilities')
    scan.add_argument('target', help='PHP file or site directory')
    scan.add_argument('-f', '--format', choices=['text', 'json'], default='text')
    scan.add_argument('-o', '--output', help='Write the JSON report here')
    scan.add_argument('--rules-dir', help='Alternative pattern library directory')
    scan.add_argument('--include-vendor', action='store_true',
                      help='Include vendor/library directories (skipped by default)')
    scan.add_argument('--exclude', action='append', default=[], metavar='DIR',
                      help='Directory name to skip (repeatable)')

    def site_args(p):
        p.add_argument('site', help='Site root directory')
        p.add_argument('--site-config', help='YAML with site context flags and layout')
        p.add_argument('--database', help='SQLite database of the site')
        p.add_argument('--table-prefix', default='wp_')

    fix = sub.add_parser('fix', help='Remediate findings from a JSON scan report')
    site_args(fix)
    fix.add_argument('findings', help='JSON report produced by "scan -f json"')
    fix.add_argument('--rules-dir', help='Alternative pattern library directory')
    fix.add_argument('--dry-run', action='store_true', help='Show what would change')
    fix.add_argument('--manual-only', action='store_true', help='Only produce manual guidance')
    fix.add_argument('--allow-high-risk', action='store_true',
                     help='Auto-fix high risk findings that do not need manual review')
    fix.add_argument('--type', action='append', help='Only this vulnerability type (repeatable)')
    fix.add_argument('-f', '--format', choices=['text', 'json'], default='text')

    backups = sub.add_parser('backups', help='List, verify, restore or prune fix backups')
    site_args(backups)
    backups.add_argument('action', choices=['list', 'verify', 'restore', 'delete', 'cleanup'])
    backups.add_argument('backup_id', nargs='?')

    rules = sub.add_parser('rules', help='Inspect and check the pattern library')
    rules.add_argument('--rules-dir', help='Alternative pattern library directory')
    rules.add_argument('--stats', action='store_true', help='Summary (default)')
    rules.add_argument('--validate', metavar='FILE', help='Validate a pattern YAML file')
    rules.add_argument('--test', nargs=3, metavar=('DETECTOR', 'PATTERN_ID', 'SAMPLE'))
    rules.add_argument('--export', metavar='FILE', help='Export all patterns as YAML')
    return parser


COMMANDS = {
    'scan': cmd_scan,
    'fix': cmd_fix,
    'backups': cmd_backups,
    'rules': cmd_rules,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    global _quiet

    args = build_parser().parse_args(argv)
    _quiet = args.quiet
    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(level=level, format='%(levelname)s %(name)s: %(message)s',
                        stream=sys.stderr)

    try:
        settings = load_settings(args.config)
        return COMMANDS[args.command](args, settings)
    except RollbackError as e:
        _error(str(e))
        return 3
    except (BreachGuardError, OSError, ValueError, yaml.YAMLError) as e:
        _error(str(e))
        return 1
    except KeyboardInterrupt:
        print("\n\nScan interrupted.", file=sys.stderr)
        return 130


if __name__ == '__main__':
    sys.exit(main())
