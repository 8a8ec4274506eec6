#!/usr/bin/env python3
"""
Tests for breachguard/taint_tracker.py - source to sink tracking within a file.
"""

import pytest
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from breachguard.rule_engine import RuleEngine
from breachguard.taint_tracker import TaintTracker


@pytest.fixture(scope="module")
def ruleset():
    return RuleEngine().ruleset


@pytest.fixture(scope="module")
def tracker(ruleset):
    return TaintTracker(ruleset)


class TestCollect:
    def test_direct_source(self, tracker):
        """An assignment from a superglobal taints the variable."""
        tainted = tracker.collect("<?php\n$id = $_GET['id'];\n")
        assert set(tainted) == {"$id"}
        var = tainted["$id"]
        assert var.source_kind == "get"
        assert var.declaration_line == 2
        assert var.propagated_from is None
        assert var.sanitized_by is None

    def test_first_assignment_wins(self, tracker):
        tainted = tracker.collect("<?php\n$v = $_POST['a'];\n$v = $_COOKIE['b'];\n")
        assert tainted["$v"].source_kind == "post"

    def test_wrapping_sanitizer(self, tracker):
        tainted = tracker.collect("<?php\n$id = intval($_GET['id']);\n")
        assert tainted["$id"].sanitized_by == "intval"

    def test_cast_sanitizer(self, tracker):
        tainted = tracker.collect("<?php\n$id = (int) $_GET['id'];\n")
        assert tainted["$id"].sanitized_by == "(int)"

    def test_partial_wrap_is_not_sanitized(self, tracker):
        """A sanitizer covering only part of the expression does not count."""
        tainted = tracker.collect("<?php\n$q = esc_sql($_GET['a']) . $_GET['b'];\n")
        assert tainted["$q"].sanitized_by is None

    def test_propagation_chain(self, tracker):
        """Copies of tainted variables are tainted, transitively."""
        code = "<?php\n$a = $_POST['x'];\n$b = $a;\n$c = 'prefix' . $b;\n"
        tainted = tracker.collect(code)
        assert tainted["$b"].propagated_from == "$a"
        assert tainted["$c"].propagated_from == "$b"
        assert tainted["$c"].source_kind == "post"

    def test_propagation_keeps_sanitizer_on_plain_copy(self, tracker):
        code = "<?php\n$a = absint($_GET['n']);\n$b = $a;\n"
        assert tracker.collect(code)["$b"].sanitized_by == "absint"

    def test_propagation_disabled(self, ruleset):
        code = "<?php\n$a = $_POST['x'];\n$b = $a;\n"
        tainted = TaintTracker(ruleset, propagate=False).collect(code)
        assert set(tainted) == {"$a"}

    def test_superglobal_assignment_ignored(self, tracker):
        assert tracker.collect("<?php\n$_GET['x'] = 'y';\n") == {}


class TestSinkUsages:
    def test_sql_sink(self, tracker):
        code = '<?php\n$id = $_GET[\'id\'];\n$wpdb->query("SELECT * FROM t WHERE id = $id");\n'
        report = tracker.trace(code, "sql_injection")
        assert len(report.usages) == 1
        usage = report.usages[0]
        assert usage.sink == "query"
        assert usage.line == 3
        assert not usage.sanitized

    def test_nearby_sanitizer_taking_variable(self, tracker):
        """A sanitizer call in the window that takes the variable sanitizes the usage."""
        code = "<?php\n$n = $_GET['n'];\necho esc_html($n);\n"
        usages = tracker.trace(code, "xss").usages
        assert len(usages) == 1
        assert usages[0].sanitizer == "esc_html"

    def test_sanitizer_on_other_variable(self, tracker):
        """A nearby sanitizer applied to a different variable does not count."""
        code = "<?php\n$n = $_GET['n'];\n$m = 'x';\necho esc_html($m) . $n;\n"
        usages = tracker.trace(code, "xss").usages
        assert [u.variable.name for u in usages] == ["$n"]
        assert usages[0].sanitizer is None

    def test_wrong_class_sanitizer(self, tracker):
        """SQL escaping does not sanitize for output."""
        code = "<?php\n$n = esc_sql($_GET['n']);\necho $n;\n"
        usages = tracker.trace(code, "xss").usages
        assert len(usages) == 1
        assert usages[0].sanitizer is None

    def test_assignment_sanitizer_applies(self, tracker):
        code = "<?php\n$id = intval($_GET['id']);\n$wpdb->get_row(\"SELECT * FROM t WHERE id = $id\");\n"
        usages = tracker.trace(code, "sql_injection").usages
        assert usages[0].sanitizer == "intval"

    def test_usage_before_declaration_ignored(self, tracker):
        code = "<?php\necho $late;\n$late = $_GET['x'];\n"
        assert tracker.trace(code, "xss").usages == []

    def test_short_echo_tag(self, tracker):
        code = "<?php $t = $_GET['t']; ?>\n<p><?= $t ?></p>\n"
        usages = tracker.trace(code, "xss").usages
        assert any(u.sink == "echo" and u.line == 2 for u in usages)

    def test_include_construct(self, tracker):
        code = "<?php\n$page = $_GET['page'];\ninclude $page . '.php';\n"
        usages = tracker.trace(code, "file_inclusion").usages
        assert [u.sink for u in usages] == ["include"]

    def test_no_taint_no_usages(self, tracker):
        assert tracker.trace("<?php\necho $safe;\n", "xss").usages == []


FILLER = "".join(f"$pad{i} = 'lorem ipsum dolor sit amet, consectetur';\n" for i in range(14))


class TestReassignment:
    def test_latest_raw_assignment_wins_over_escaped_one(self, tracker):
        """Escaping on an earlier assignment does not cover a later raw one."""
        code = "<?php\n$x = esc_html($_GET['a']);\n$x = $_GET['b'];\n" + FILLER + "echo $x;\n"
        usages = tracker.trace(code, "xss").usages
        assert len(usages) == 1
        assert usages[0].sanitizer is None
        assert usages[0].variable.declaration_line == 3
        assert usages[0].variable.expression == "$_GET['b']"

    def test_latest_escaped_assignment_sanitizes(self, tracker):
        code = "<?php\n$x = $_GET['a'];\n$x = esc_html($x);\n" + FILLER + "echo $x;\n"
        usages = tracker.trace(code, "xss").usages
        assert len(usages) == 1
        assert usages[0].sanitizer == "esc_html"
        assert usages[0].variable.source_kind == "get"

    def test_each_sink_sees_its_own_state(self, tracker):
        code = ("<?php\n$x = esc_html($_GET['a']);\necho $x;\n" + FILLER +
                "$x = $_GET['b'];\necho $x;\n")
        usages = tracker.trace(code, "xss").usages
        assert [u.sanitizer for u in usages] == ["esc_html", None]

    def test_clean_reassignment_keeps_taint(self, tracker):
        """A clean value assigned in one branch does not clear the taint."""
        code = "<?php\n$x = $_GET['a'];\nif (!$ok) { $x = ''; }\necho $x;\n"
        usages = tracker.trace(code, "xss").usages
        assert len(usages) == 1
        assert usages[0].sanitizer is None

    def test_append_of_raw_input_drops_sanitizer(self, tracker):
        code = "<?php\n$x = esc_html($_GET['a']);\n$x .= $_GET['b'];\n" + FILLER + "echo $x;\n"
        usages = tracker.trace(code, "xss").usages
        assert len(usages) == 1
        assert usages[0].sanitizer is None

    def test_assignment_states_in_order(self, tracker):
        code = "<?php\n$x = esc_html($_GET['a']);\n$x = $_GET['b'];\n"
        history = tracker.assignment_states(code)["$x"]
        assert [state.sanitized_by for _, state in history] == ["esc_html", None]
        assert tracker.state_at(history, 0) is None
        assert tracker.state_at(history, len(code)).declaration_line == 3
