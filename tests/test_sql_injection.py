"""Tests for literal-reducibility tracing on raw SQL calls."""

import textwrap

import pytest

from conftest import make_transaction_code, message_ids
from dbos_rules import DEFAULT_POLICY, RuleCategory, Severity


SUCCESS_CASES = [
    # Literal concatenation, and concatenation with reduced-to literals
    """
    const foo = "xyz", bar = "xyw";
    ctxt.client.raw(foo);
    ctxt.client.raw(bar);
    ctxt.client.raw("foo" + "bar" + "baz" + "bam");
    ctxt.client.raw("foo" + "bar" + "baz" + "bam" + foo);
    """,
    # Traces from z to y to x
    """
    let x, y, z;

    x = "fox" + "fob";
    y = x;
    z = y;

    ctxt.client.raw(x);
    ctxt.client.raw(y);
    ctxt.client.raw(z);
    """,
    # Every reassignment is literal
    """
    let y = "abc";
    y = "fox";
    y = "foy" + "fob";
    y = "foz" + "fob";
    y = "fox";
    ctxt.client.raw(y);
    """,
    # Reassignment inside a nested block
    """
    ctxt.client.raw("bob");
    ctxt.client.raw("bob" + "ba");

    const x = "foo";
    ctxt.client.raw(x);

    let z = "aha", y = "baha";

    {
      y = "fox";
      y = "foy" + "fob";
      ctxt.client.raw(y);
    }
    ctxt.client.raw(y);
    """,
    # Self-referencing reassignment
    """
    let foo = "xyz" + "zyw";
    foo = "xyz" + "zyw";
    foo = foo + foo, bar = "def" + foo;

    ctxt.client.raw(foo);
    ctxt.client.raw(bar);
    """,
    # Circular initializers
    """
    let foo = foo + "xyz";
    let bar = "xyz" + "zyw" + foo;

    ctxt.client.raw(foo);
    ctxt.client.raw(bar);

    let baz = bar + num.toString();
    """,
    """
    let x = "foo", y = "bar" + x + x;
    ctxt.client.raw(x);
    ctxt.client.raw(y);
    """,
    """
    let x = "foo", y = "bar";

    let z = x + y;
    ctxt.client.raw(z);

    z = z + "foo";
    ctxt.client.raw(z);
    """,
    # Used before declaration, and redeclaration
    """
    let foo = "xyz", bar = "zyw";
    ctxt.client.raw(foo + foo + foo + bar + baz + "foo" + "bar");

    let baz = foo + foo + foo + bar + baz + "foo" + "bar";
    ctxt.client.raw(baz);

    let x = "foo";
    let y = "bar";
    let x = y, y = x;
    ctxt.client.raw(x + y);
    """,
    # Template strings with literal substitutions
    """
    const table = "users";
    ctxt.client.raw(`SELECT * FROM ${table} WHERE id = ${42}`);
    ctxt.client.raw(("SELECT " + "1"));
    """,
    # Cycle through reassignment
    """
    let z = "a";
    z = z + z;
    ctxt.client.raw(z);
    """,
    # Bound parameters are not the query string
    """
    ctxt.client.raw("SELECT * FROM users WHERE name = ?", [untrusted]);
    """,
]


class TestSqlInjectionSuccess:

    @pytest.mark.parametrize("code", SUCCESS_CASES)
    def test_literal_reducible_queries(self, transaction, code):
        assert transaction(textwrap.dedent(code)) == []

    def test_long_literal_concatenation(self, transaction):
        terms = " + ".join(['"a"'] * 400)
        assert transaction(f"const q = {terms};\nctxt.client.raw(q);\nctxt.client.raw({terms});") == []


class TestSqlInjectionFailure:

    def test_reference_failure_case(self, transaction):
        code = """
        let bam = foo + foo + foo + bar + baz + "foo" + "bar", num = 5;
        ctxt.client.raw(bam + num.toString()); // Concatenating a literal-reducible string with one that is not

        let asVar = bam + num.toString();
        ctxt.client.raw(asVar);
        """
        diags = transaction(code)
        assert message_ids(diags) == ["sqlInjection", "sqlInjection"]
        assert all(d.severity is Severity.CRITICAL for d in diags)
        assert all(d.category is RuleCategory.SQL_INJECTION for d in diags)
        assert all(d.cwe_id == "CWE-89" for d in diags)
        assert [d.source for d in diags] == ["num.toString()", "num.toString()"]

    def test_root_cause_location_and_message(self, transaction):
        code = "let q = 'SELECT ' + input.name;\nctxt.client.raw(q);"
        diags = transaction(code)
        assert len(diags) == 1
        diag = diags[0]
        assert diag.source == "input.name"
        assert diag.format_data["theExpression"] == "input.name"
        assert diag.format_data["lineNumber"] == diag.source_line
        assert diag.source_line == diag.line_number - 1
        assert f"line {diag.source_line}: 'input.name'" in diag.message

    def test_parameter_reference_is_tainted(self, analyze):
        code = """
        class Foo {
          @Transaction()
          lookup(ctxt: TransactionContext<Knex>, name: string) {
            let q = "SELECT * FROM users WHERE name = '" + name + "'";
            return ctxt.client.raw(q);
          }
        }
        """
        diags = analyze(code)
        assert message_ids(diags) == ["sqlInjection"]
        assert diags[0].source == "name"
        assert diags[0].taint_chain[0].endswith(": q")
        assert diags[0].taint_chain[-1].endswith(": name")

    def test_tainted_template_substitution(self, transaction):
        code = "const id = req.query.id;\nctxt.client.raw(`SELECT * FROM t WHERE id = ${id}`);"
        diags = transaction(code)
        assert message_ids(diags) == ["sqlInjection"]
        assert diags[0].source == "req.query.id"

    def test_non_concatenation_operator(self, transaction):
        diags = transaction('ctxt.client.raw("a" - "b");')
        assert diags[0].source == '"a" - "b"'

    def test_one_tainted_assignment_taints_all_reads(self, transaction):
        code = """
        let q = "SELECT 1";
        ctxt.client.raw(q);
        q = getQuery();
        """
        # Flow-insensitive: any reaching value counts
        assert message_ids(transaction(textwrap.dedent(code))) == ["sqlInjection"]

    def test_destructured_binding_is_opaque(self, transaction):
        diags = transaction("const { sql } = body;\nctxt.client.raw(sql);")
        assert message_ids(diags) == ["sqlInjection"]
        assert diags[0].source == "sql"

    def test_long_concatenation_with_a_tainted_tail(self, transaction):
        terms = " + ".join(['"a"'] * 400)
        diags = transaction(f"ctxt.client.raw({terms} + req.body);")
        assert message_ids(diags) == ["sqlInjection"]
        assert diags[0].source == "req.body"


class TestShadowing:

    def test_inner_shadow_is_separate_from_outer(self, analyze):
        code = """
        class Foo {
          @Transaction()
          run(ctxt: TransactionContext<Knex>, param: string) {
            let q = param;
            {
              let q = "SELECT 1";
              ctxt.client.raw(q);
            }
            ctxt.client.raw(q);
          }
        }
        """
        diags = analyze(code)
        assert message_ids(diags) == ["sqlInjection"]
        assert diags[0].line_number == 10

    def test_inner_shadow_does_not_hide_outer_taint_of_literal(self, analyze):
        code = """
        class Foo {
          @Transaction()
          run(ctxt: TransactionContext<Knex>, param: string) {
            let q = "SELECT 1";
            {
              let q = param;
            }
            ctxt.client.raw(q);
          }
        }
        """
        assert analyze(code) == []


class TestClientsAndScope:

    def test_ambient_transaction_context(self, analyze):
        code = """
        import { Transaction, TransactionContext } from "@dbos-inc/dbos-sdk";
        import { Knex } from "knex";

        export class Ops {
          @Transaction()
          static async find(ctxt: TransactionContext<Knex>, name: string) {
            return ctxt.client.raw("SELECT * FROM t WHERE n = '" + name + "'");
          }
        }
        """
        assert message_ids(analyze(code)) == ["sqlInjection"]

    @pytest.mark.parametrize("client, call", [
        ("PrismaClient", "$queryRawUnsafe"),
        ("PrismaClient", "$executeRawUnsafe"),
        ("PoolClient", "query"),
        ("TypeORMEntityManager", "query"),
    ])
    def test_other_clients(self, analyze, client, call):
        code = f"""
        class Foo {{
          @Transaction()
          run(ctxt: TransactionContext<{client}>, name: string) {{
            return ctxt.client.{call}("SELECT " + name);
          }}
        }}
        """
        assert message_ids(analyze(code)) == ["sqlInjection"]

    @pytest.mark.parametrize("client, call", [
        ("Knex", "raw"),
        ("PrismaClient", "$queryRawUnsafe"),
        ("PrismaClient", "$executeRawUnsafe"),
        ("PoolClient", "query"),
        ("TypeORMEntityManager", "query"),
    ])
    def test_awaited_generic_query_calls(self, analyze, client, call):
        code = f"""
        class Foo {{
          @Transaction()
          async run(ctxt: TransactionContext<{client}>, name: string) {{
            const all = await ctxt.client.{call}<User[]>("SELECT * FROM users");
            return await ctxt.client.{call}<User[]>("SELECT * FROM users WHERE name = " + name);
          }}
        }}
        """
        diags = analyze(code)
        assert message_ids(diags) == ["sqlInjection"]
        assert diags[0].line_number == 6
        assert diags[0].source == "name"

    def test_non_query_methods_are_ignored(self, transaction):
        assert transaction("ctxt.client.select(untrusted);") == []

    def test_unannotated_code_is_scanned(self, analyze):
        code = """
        import { Knex } from "knex";

        export async function helper(db: Knex, name: string) {
          return db.raw("SELECT " + name);
        }
        """
        assert message_ids(analyze(code)) == ["sqlInjection"]

    def test_module_level_code_is_scanned(self, analyze):
        code = """
        declare const db: Knex;
        const name = process.argv[2];
        db.raw("SELECT " + name);
        """
        assert message_ids(analyze(code)) == ["sqlInjection"]

    def test_unannotated_scan_can_be_disabled(self, analyze):
        code = """
        export async function helper(db: Knex, name: string) {
          return db.raw("SELECT " + name);
        }
        """
        policy = DEFAULT_POLICY.with_overrides(scan_unannotated_for_injection=False)
        assert analyze(code, policy=policy) == []

    def test_module_level_code_is_scanned_regardless_of_policy(self, analyze):
        code = """
        declare const db: Knex;
        const name = process.argv[2];
        db.raw("SELECT " + name);

        function helper(conn: Knex, id: string) {
          return conn.raw("SELECT " + id);
        }
        """
        policy = DEFAULT_POLICY.with_overrides(scan_unannotated_for_injection=False)
        diags = analyze(code, policy=policy)
        assert message_ids(diags) == ["sqlInjection"]
        assert diags[0].line_number == 4

    def test_all_arguments_when_configured(self, transaction):
        code = 'ctxt.client.raw("SELECT ?", req.body);'
        assert transaction(code) == []
        policy = DEFAULT_POLICY.with_overrides(check_all_query_arguments=True)
        assert message_ids(transaction(code, policy=policy)) == ["sqlInjection"]

    def test_idempotent(self, analyze):
        code = make_transaction_code("let a = x.y;\nctxt.client.raw(a + 'z');")
        first = [(d.message_id, d.line_number, d.col_offset, d.source) for d in analyze(code)]
        second = [(d.message_id, d.line_number, d.col_offset, d.source) for d in analyze(code)]
        assert first == second
        assert len(first) == 1
