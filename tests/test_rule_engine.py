#!/usr/bin/env python3
"""
Tests for breachguard/rule_engine.py - the YAML pattern library and its snapshots.
"""

import pytest
import os
import sys
import shutil
import tempfile

import yaml

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from breachguard.errors import RuleValidationError
from breachguard.models import Severity
from breachguard.rule_engine import (
    DEFAULT_RULES_DIR, RuleEngine, RuleSet, PatternRule, SanitizerDef, validate_pattern,
)


@pytest.fixture(scope="module")
def engine():
    """A RuleEngine loaded from the shipped rules directory."""
    return RuleEngine()


@pytest.fixture
def rules_copy():
    """A writable copy of the shipped rules for tests that mutate files."""
    with tempfile.TemporaryDirectory() as tmp:
        target = os.path.join(tmp, "rules")
        shutil.copytree(DEFAULT_RULES_DIR, target)
        yield target


VALID_ENTRY = {
    "id": "custom_echo",
    "name": "Custom echo",
    "pattern": r"echo\s+\$custom",
    "severity": "high",
    "confidence": 0.7,
    "description": "Echo of a custom variable",
}


def shipped_rule_files():
    files = []
    for root, _, names in os.walk(DEFAULT_RULES_DIR):
        files.extend(os.path.relpath(os.path.join(root, n), DEFAULT_RULES_DIR)
                     for n in sorted(names) if n.endswith(".yml"))
    return sorted(files)


class TestShippedRules:
    def test_rule_files_present(self):
        files = shipped_rule_files()
        assert "sources.yml" in files
        assert os.path.join("detectors", "xss.yml") in files

    @pytest.mark.parametrize("rel", shipped_rule_files())
    def test_file_parses(self, rel):
        """Every shipped rule file is valid YAML with a mapping at the top."""
        with open(os.path.join(DEFAULT_RULES_DIR, rel), encoding="utf-8") as f:
            data = yaml.safe_load(f)
        assert isinstance(data, dict)
        for entry in data.get("patterns") or []:
            assert validate_pattern(entry) == [], entry.get("id")

    def test_default_engine_loads(self):
        rs = RuleEngine().ruleset
        assert rs.patterns_for("xss")
        assert any(r.id == "href_injection" and "javascript: URLs" in r.description
                   for r in rs.patterns_for("xss"))


class TestLoading:
    def test_all_detectors_have_patterns(self, engine):
        """Every built-in detector ships at least one pattern."""
        rs = engine.ruleset
        for name in ("sql_injection", "xss", "csrf", "file_inclusion", "auth_bypass"):
            assert rs.patterns_for(name), f"no patterns for {name}"

    def test_pattern_fields(self, engine):
        """Pattern rules carry severity, confidence and the detector defaults."""
        rule = engine.get_pattern("sql_injection", "unescaped_input")
        assert isinstance(rule, PatternRule)
        assert rule.severity is Severity.CRITICAL
        assert rule.confidence == pytest.approx(0.95)
        assert rule.cwe == "CWE-89"
        assert rule.compiled.search('$wpdb->query("SELECT * FROM t WHERE id = $_GET[id]")')

    def test_sanitizers_by_class(self, engine):
        """Sanitizers are indexed by the class they protect against."""
        names = engine.ruleset.sanitizer_names("sql_injection")
        assert "esc_sql" in names
        assert "esc_html" not in names
        assert all(isinstance(s, SanitizerDef) for s in engine.ruleset.sanitizers_for("xss"))

    def test_source_kind(self, engine):
        """The first superglobal in the text decides the source kind."""
        assert engine.ruleset.source_kind_for("$a = $_POST['x'] . $_GET['y'];") == "post"
        assert engine.ruleset.source_kind_for("$a = 1;") is None

    def test_contexts_loaded(self, engine):
        """The five output contexts are defined."""
        names = {c.name for c in engine.ruleset.contexts}
        assert {"html_content", "attribute", "javascript", "css", "url"} <= names

    def test_version_contains_digest(self, engine):
        """The version combines the declared version and a content digest."""
        declared, _, digest = engine.version.partition("+")
        assert declared
        assert len(digest) == 12

    def test_missing_directory(self):
        """A missing rules directory is a validation error."""
        with pytest.raises(RuleValidationError):
            RuleEngine("/nonexistent/rules/dir")


class TestValidatePattern:
    def test_valid_entry(self):
        assert validate_pattern(VALID_ENTRY) == []

    def test_missing_fields(self):
        """Every required field is reported."""
        problems = validate_pattern({"id": "x"})
        assert any("name" in p for p in problems)
        assert any("pattern" in p for p in problems)
        assert any("confidence" in p for p in problems)

    def test_bad_severity_and_confidence(self):
        entry = dict(VALID_ENTRY, severity="urgent", confidence=1.5)
        problems = validate_pattern(entry)
        assert any("severity" in p for p in problems)
        assert any("between 0 and 1" in p for p in problems)

    def test_regex_must_compile(self):
        problems = validate_pattern(dict(VALID_ENTRY, pattern="echo ("))
        assert any("compile" in p for p in problems)

    def test_not_a_mapping(self):
        assert validate_pattern(["id"]) == ["pattern entry must be a mapping"]


class TestPatternManagement:
    def test_add_pattern_publishes_new_snapshot(self, rules_copy):
        """Adding a pattern bumps the version; the old snapshot is untouched."""
        engine = RuleEngine(rules_copy)
        before = engine.ruleset
        after = engine.add_pattern("xss", VALID_ENTRY)
        assert isinstance(after, RuleSet)
        assert after.version != before.version
        assert after.revision == before.revision + 1
        assert engine.get_pattern("xss", "custom_echo").custom is True
        assert all(r.id != "custom_echo" for r in before.patterns_for("xss"))

    def test_add_invalid_pattern(self, rules_copy):
        engine = RuleEngine(rules_copy)
        with pytest.raises(RuleValidationError):
            engine.add_pattern("xss", dict(VALID_ENTRY, confidence="high"))

    def test_add_to_unknown_detector(self, rules_copy):
        engine = RuleEngine(rules_copy)
        with pytest.raises(RuleValidationError):
            engine.add_pattern("nope", VALID_ENTRY)

    def test_remove_builtin_pattern(self, rules_copy):
        engine = RuleEngine(rules_copy)
        assert engine.remove_pattern("sql_injection", "legacy_mysql") is True
        assert engine.get_pattern("sql_injection", "legacy_mysql") is None
        assert engine.remove_pattern("sql_injection", "legacy_mysql") is False

    def test_test_pattern(self, engine):
        """test_pattern reports line numbers of each match."""
        sample = "<?php\n$x = 1;\nmysql_query($q);\n"
        matches = engine.test_pattern("sql_injection", "legacy_mysql", sample)
        assert len(matches) == 1
        assert matches[0]["line"] == 3

    def test_test_unknown_pattern(self, engine):
        with pytest.raises(KeyError):
            engine.test_pattern("sql_injection", "missing", "")

    def test_optimize_orders_by_confidence(self, rules_copy):
        engine = RuleEngine(rules_copy)
        engine.optimize_patterns()
        confidences = [r.confidence for r in engine.ruleset.patterns_for("sql_injection")]
        assert confidences == sorted(confidences, reverse=True)

    def test_export_import_round_trip(self, rules_copy):
        """Exported patterns import back as custom patterns."""
        engine = RuleEngine(rules_copy)
        engine.add_pattern("xss", VALID_ENTRY)
        path = os.path.join(rules_copy, "..", "export.yml")
        count = engine.export_patterns(path)
        assert count == engine.statistics()["total_patterns"]

        fresh = RuleEngine()
        imported = fresh.import_patterns(path)
        assert imported == count
        assert fresh.get_pattern("xss", "custom_echo") is not None

    def test_import_replace_disables_missing(self, rules_copy):
        """merge=False drops patterns of the detector that the file does not list."""
        engine = RuleEngine(rules_copy)
        path = os.path.join(rules_copy, "..", "only_one.yml")
        with open(path, "w") as f:
            yaml.safe_dump({"detectors": {"xss": [VALID_ENTRY]}}, f)
        engine.import_patterns(path, merge=False)
        assert [r.id for r in engine.ruleset.patterns_for("xss")] == ["custom_echo"]
        assert engine.ruleset.patterns_for("sql_injection")

    def test_statistics(self, engine):
        stats = engine.statistics()
        assert stats["total_patterns"] == sum(stats["detectors"].values())
        assert sum(stats["by_severity"].values()) == stats["total_patterns"]


class TestHotReload:
    def test_no_change_no_reload(self, rules_copy):
        engine = RuleEngine(rules_copy)
        assert engine.reload() is False

    def test_reload_on_change(self, rules_copy):
        """Editing a rule file on disk publishes a new snapshot."""
        engine = RuleEngine(rules_copy)
        old = engine.ruleset
        path = os.path.join(rules_copy, "detectors", "xss.yml")
        with open(path) as f:
            data = yaml.safe_load(f)
        data["patterns"].append(dict(VALID_ENTRY))
        with open(path, "w") as f:
            yaml.safe_dump(data, f)
        st = os.stat(path)
        os.utime(path, (st.st_atime, st.st_mtime + 10))

        assert engine.reload() is True
        assert engine.get_pattern("xss", "custom_echo") is not None
        assert old.version != engine.version

    def test_broken_file_keeps_previous(self, rules_copy):
        """A rule file that fails validation leaves the current snapshot in place."""
        engine = RuleEngine(rules_copy)
        version = engine.version
        path = os.path.join(rules_copy, "detectors", "xss.yml")
        with open(path, "a") as f:
            f.write("\n  - id: broken\n    name: broken\n")
        st = os.stat(path)
        os.utime(path, (st.st_atime, st.st_mtime + 10))

        assert engine.reload() is False
        assert engine.version == version
