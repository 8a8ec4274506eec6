#!/usr/bin/env python3
"""
Tests for breachguard_cli.py - scan and fix commands end to end.
"""

import pytest
import json
import os
import sys
import tempfile

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import breachguard_cli

PLUGIN = os.path.join("wp-content", "plugins", "demo", "demo.php")
VULNERABLE = "<?php\n$name = $_GET['name'];\necho $name;\n"


@pytest.fixture
def site_root():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, PLUGIN)
        os.makedirs(os.path.dirname(path))
        with open(path, "w") as f:
            f.write(VULNERABLE)
        os.makedirs(os.path.join(tmpdir, "vendor"))
        with open(os.path.join(tmpdir, "vendor", "lib.php"), "w") as f:
            f.write("<?php echo $_GET['x'];\n")
        yield tmpdir


def scan_json(site_root):
    out = os.path.join(site_root, "report.json")
    code = breachguard_cli.main(["-q", "scan", site_root, "-f", "json", "-o", out])
    with open(out) as f:
        return code, json.load(f), out


class TestScan:
    def test_json_report(self, site_root):
        code, report, _ = scan_json(site_root)
        assert code == 2
        assert report["files_scanned"] == 1
        paths = {f["file_path"] for f in report["findings"]}
        assert paths == {os.path.join(site_root, PLUGIN)}
        assert "tainted_variable_output" in {f["subtype"] for f in report["findings"]}

    def test_missing_target(self, site_root):
        assert breachguard_cli.main(["-q", "scan", os.path.join(site_root, "nope")]) == 1

    def test_no_detectors_no_sources(self, site_root):
        registry = breachguard_cli.DetectorRegistry([])
        assert breachguard_cli.collect_sources(site_root, registry) == []


class TestFix:
    def test_dry_run_leaves_files(self, site_root, capsys):
        _, report, out = scan_json(site_root)
        capsys.readouterr()
        code = breachguard_cli.main(["-q", "fix", site_root, out, "--dry-run", "-f", "json"])
        assert code == 0
        batch = json.loads(capsys.readouterr().out)
        assert batch["total_processed"] == len(report["findings"])
        assert batch["auto_fixed"] == 0
        with open(os.path.join(site_root, PLUGIN)) as f:
            assert f.read() == VULNERABLE

    def test_manual_only(self, site_root, capsys):
        _, report, out = scan_json(site_root)
        capsys.readouterr()
        code = breachguard_cli.main(["-q", "fix", site_root, out, "--manual-only", "-f", "json"])
        assert code == 0
        batch = json.loads(capsys.readouterr().out)
        assert batch["manual_required"] == len(report["findings"])
        assert all(f["instructions"]["steps"] for f in batch["fixes"])


class TestRules:
    def test_stats(self, capsys):
        assert breachguard_cli.main(["rules", "--stats"]) == 0
        assert "Total patterns" in capsys.readouterr().out
