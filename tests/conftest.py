"""Pytest configuration and fixtures."""
import textwrap

import pytest

from dbos_rules import analyze_source


def make_workflow_code(code: str, code_above_class: str = "", params: str = "") -> str:
    """Wrap code in a `@Workflow()` method of a class."""
    return f"""
{code_above_class}

class Foo {{
  @Workflow()
  async foo({params}) {{
    {code}
  }}
}}
"""


def make_transaction_code(code: str) -> str:
    """Wrap code in a `@Transaction()` method whose context client is a Knex."""
    return f"""
class UserDatabaseClient {{}}
class DBOSContext {{}}

class Knex {{
  raw(x: string) {{

  }}
}}

export interface TransactionContext<T extends UserDatabaseClient> extends DBOSContext {{
  readonly client: T;
}}

class Foo {{
  @Transaction()
  injectionTime(ctxt: TransactionContext<Knex>) {{
    {code}
  }}
}}
"""


def message_ids(diagnostics):
    return [d.message_id for d in diagnostics]


@pytest.fixture
def analyze():
    """Analyze a snippet (dedented) and return its diagnostics."""
    def _analyze(code: str, file_path: str = "snippet.ts", **kwargs):
        return analyze_source(textwrap.dedent(code), file_path, **kwargs)
    return _analyze


@pytest.fixture
def workflow(analyze):
    def _workflow(code: str, code_above_class: str = "", params: str = "", **kwargs):
        return analyze(make_workflow_code(code, code_above_class, params), **kwargs)
    return _workflow


@pytest.fixture
def transaction(analyze):
    def _transaction(code: str, **kwargs):
        return analyze(make_transaction_code(code), **kwargs)
    return _transaction


@pytest.fixture
def sample_project(tmp_path):
    """Minimal DBOS app layout for CLI tests."""
    src = tmp_path / "src"
    src.mkdir()
    (src / "operations.ts").write_text(textwrap.dedent("""
        import { Workflow, WorkflowContext } from "@dbos-inc/dbos-sdk";

        let counter = 0;

        export class Operations {
          @Workflow()
          static async greet(ctxt: WorkflowContext, name: string) {
            counter += 1;
            const when = Date.now();
            return `hello ${name} ${when}`;
          }
        }
    """))
    (src / "clean.ts").write_text(textwrap.dedent("""
        import { Workflow, WorkflowContext } from "@dbos-inc/dbos-sdk";

        export class Clean {
          @Workflow()
          static async run(ctxt: WorkflowContext) {
            ctxt.logger.info("ok");
            return await ctxt.invoke(Clean).other();
          }
        }
    """))
    (src / "types.d.ts").write_text("declare let x: number;\n")
    node_modules = tmp_path / "node_modules" / "dep"
    node_modules.mkdir(parents=True)
    (node_modules / "index.ts").write_text("let g = 1;\nclass A { @Workflow() f() { g = 2; } }\n")
    return tmp_path
