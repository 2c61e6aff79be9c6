"""Tests for banned calls in deterministic functions."""

import pytest

from conftest import message_ids
from dbos_rules import ArgCountRange, DEFAULT_POLICY, RuleCategory, Severity


class TestBannedCalls:

    @pytest.mark.parametrize("code", [
        "foo();",
        "Date('December 17, 1995 03:24:00');",
        "new Date('December 17, 1995 03:24:00');",
        "setTimeout();",
        "bcrypt.hash(a, b);",
        "ctxt.logger.info('fine');",
    ])
    def test_allowed_calls(self, workflow, code):
        assert workflow(code) == []

    @pytest.mark.parametrize("code, expected", [
        ("Date();", "Date"),
        ("new Date();", "Date"),
        ("Date.now();", "Date.now"),
        ("Math.random();", "Math.random"),
        ("console.log(\"Hello!\");", "console.log"),
        ("console.log();", "console.log"),
        ("setTimeout(a, b);", "setTimeout"),
        ("bcrypt.hash(a, b, c);", "bcrypt.hash"),
        ("bcrypt.compare(a, b, c);", "bcrypt.compare"),
    ])
    def test_banned_calls(self, workflow, code, expected):
        diags = workflow(code)
        assert message_ids(diags) == [expected]
        assert diags[0].category is RuleCategory.BANNED_CALL
        assert diags[0].severity is Severity.MEDIUM

    def test_callee_text_ignores_whitespace_and_comments(self, workflow):
        diags = workflow("const r = Math . /* pick */ random();")
        assert message_ids(diags) == ["Math.random"]

    def test_banned_call_inside_argument_is_found(self, workflow):
        diags = workflow("const x = foo(Math.random());")
        assert message_ids(diags) == ["Math.random"]

    def test_message_mentions_helper_package(self, workflow):
        diags = workflow("const x = Date.now();")
        assert "@dbos-inc/communicator-datetime" in diags[0].message

    def test_not_checked_outside_workflows(self, analyze):
        code = """
        class Foo {
          @Transaction()
          t() { Math.random(); }
          plain() { console.log("x"); }
        }
        function free() { return Date.now(); }
        """
        assert analyze(code) == []

    def test_custom_banned_call_policy(self, workflow):
        policy = DEFAULT_POLICY.with_overrides(banned_calls={'fetch': ArgCountRange(1, None)})
        diags = workflow("fetch(url); Math.random();", policy=policy)
        assert message_ids(diags) == ["fetch"]
        assert "`fetch`" in diags[0].message
