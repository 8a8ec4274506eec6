#!/usr/bin/env python3
"""
Tests for breachguard/arg_parser.py - quote and nesting aware call parsing.
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from breachguard.arg_parser import (
    split_arguments, match_delimiter, find_calls, references_variable, first_variable,
    cast_applies, find_block, find_function_body, callback_name, literal_value,
)


class TestSplitArguments:
    def test_simple(self):
        assert split_arguments("$a, $b, 3") == ["$a", "$b", "3"]

    def test_commas_inside_strings(self):
        """Commas in single, double and escaped quotes do not split."""
        assert split_arguments("'a, b', \"c, \\\"d, e\\\"\", $f") == [
            "'a, b'", "\"c, \\\"d, e\\\"\"", "$f"]

    def test_nested_delimiters(self):
        args = split_arguments("foo($a, $b), array(1, 2), $x[1, 2], {$y, $z}")
        assert args == ["foo($a, $b)", "array(1, 2)", "$x[1, 2]", "{$y, $z}"]

    def test_empty(self):
        assert split_arguments("") == []
        assert split_arguments("   ") == []

    def test_trailing_empty_argument(self):
        """A trailing comma yields an empty last argument."""
        assert split_arguments("$a,") == ["$a", ""]


class TestMatchDelimiter:
    def test_skips_strings_and_comments(self):
        code = "f(')' /* ) */ // )\n, $x)"
        assert match_delimiter(code, 1) == len(code) - 1

    def test_unbalanced(self):
        assert match_delimiter("f($a", 1) is None

    def test_mismatched(self):
        assert match_delimiter("f($a]", 1) is None

    def test_not_a_delimiter(self):
        assert match_delimiter("abc", 0) is None


class TestFindCalls:
    def test_method_calls_match(self):
        """Method calls are found by their bare name."""
        code = '$wpdb->prepare("SELECT %d", $id);'
        calls = list(find_calls(code, ["prepare"]))
        assert len(calls) == 1
        assert calls[0].arguments == ('"SELECT %d"', "$id")
        assert code[calls[0].end - 1] == ")"

    def test_identifier_boundaries(self):
        """A name embedded in a longer identifier is not a call to it."""
        assert list(find_calls("my_esc_sql($x); $esc_sql($y);", ["esc_sql"])) == []

    def test_window(self):
        code = "esc_html($a); esc_html($b);"
        calls = list(find_calls(code, ["esc_html"], start=5))
        assert [c.arguments for c in calls] == [("$b",)]

    def test_casts_are_ignored(self):
        assert list(find_calls("(int) $x", ["(int)"])) == []


class TestReferencesVariable:
    def test_whole_token(self):
        """$id matches $id but not $identifier."""
        assert references_variable(["$id"], "$id")
        assert not references_variable(["$identifier"], "$id")
        assert references_variable(["$id . 'x'"], "$id")

    def test_superglobal_quote_style(self):
        assert references_variable(['$_GET[ "x" ]'], "$_GET['x']")
        assert not references_variable(["$_GET['xy']"], "$_GET['x']")

    def test_empty_variable(self):
        assert not references_variable(["$a"], "  ")


class TestHelpers:
    def test_first_variable(self):
        assert first_variable("echo $_GET['name'] . $x;") == "$_GET['name']"
        assert first_variable("echo $title;") == "$title"
        assert first_variable("echo 'hi';") is None

    def test_cast_applies(self):
        code = "$q = 'SELECT ' . (int) $id;"
        assert cast_applies(code, 0, len(code), "(int)", "$id")
        assert not cast_applies(code, 0, len(code), "(int)", "$other")

    def test_find_block(self):
        code = "if ($a) { if ($b) { x(); } } y();"
        start, end = find_block(code, 0)
        assert code[start:end] == "{ if ($b) { x(); } }"

    def test_find_function_body(self):
        code = "<?php\nfunction &handle_save($a = array()) {\n  save($a);\n}\n"
        start, end = find_function_body(code, "handle_save")
        assert "save($a);" in code[start:end]
        assert find_function_body(code, "missing") is None

    def test_callback_name(self):
        assert callback_name("'my_handler'") == "my_handler"
        assert callback_name("array($this, 'on_save')") == "on_save"
        assert callback_name("[ $this, \"on_save\" ]") == "on_save"
        assert callback_name("'My_Class::render'") == "render"
        assert callback_name("function() { return 1; }") is None

    def test_literal_value(self):
        assert literal_value(" 'abc' ") == "abc"
        assert literal_value('"x"') == "x"
        assert literal_value("$x") is None
