"""Tests for the global-mutation check in deterministic functions."""

from conftest import message_ids
from dbos_rules import RuleCategory, Severity


GLOBAL_MUTATIONS = """
let x = 3;
let y = {a: 1, b: 2};
let z = 256;

class Bar {
  @Workflow()
  foo() {
    x = 4; // Not allowed
    this.x = 4; // Allowed
    y.a += 1; // Not allowed

    z = [y, y = z][0]; // Not allowed (this is a funky variable swap)

    x = 23 + x, y.a = 24 + x; // Two global modifications, so not allowed

    let x = 5; // x is now local
    x = 23 + x, y.a = 24 + x; // One local, one global (the right one is not allowed)
    y.a = 23 + x, x = 24 + x; // One global, one local (the left one is not allowed)

    let y = {a: 3, b: 4}; // Aliases the global 'y'
    y.a = 1; // Not a global modification anymore
  }

  bar() {
    y.b += 2;
    let z = 8;

    class Bar {
      @Workflow()
      w() {
        z = 9; // Not allowed
      }
    }
  }

  @Workflow()
  baz() {
    x *= 5; // Not allowed
    y.b += y.a; // Not allowed

    function bazbaz() {
      x -= 6;
      y.b += y.a;
    }
  }
}
"""


class TestGlobalMutation:

    def test_reference_case(self, analyze):
        diags = analyze(GLOBAL_MUTATIONS)
        assert message_ids(diags) == ["globalMutation"] * 11

    def test_reported_lines(self, analyze):
        diags = analyze(GLOBAL_MUTATIONS)
        lines = [d.line_number for d in diags]
        # x = 4, y.a += 1, both halves of the swap, the comma pair, then one per mixed pair
        assert lines[:8] == [9, 11, 13, 13, 15, 15, 18, 19]
        assert all(d.severity is Severity.HIGH for d in diags)
        assert all(d.category is RuleCategory.GLOBAL_MUTATION for d in diags)

    def test_this_field_assignment_is_local(self, workflow):
        assert workflow("this.count = 1; this.count += 1; this.items.push(3);") == []

    def test_local_declarations_are_not_flagged(self, workflow):
        code = """
        let total = 0;
        const acc = {n: 0};
        total += 5;
        acc.n = total;
        for (let i = 0; i < 3; i++) { total += i; }
        """
        assert workflow(code) == []

    def test_parameter_mutation_is_flagged(self, workflow):
        diags = workflow("input.count = 2;", params="input: {count: number}")
        assert message_ids(diags) == ["globalMutation"]

    def test_update_expressions(self, workflow):
        diags = workflow("counter++; --counter;", code_above_class="let counter = 0;")
        assert message_ids(diags) == ["globalMutation", "globalMutation"]

    def test_array_destructuring_assignment(self, workflow):
        diags = workflow("[a, b] = [b, a];", code_above_class="let a = 1, b = 2;")
        assert message_ids(diags) == ["globalMutation"]

    def test_block_local_is_gone_after_block(self, workflow):
        code = """
        {
          let g = 1;
          g = 2;
        }
        g = 3;
        """
        diags = workflow(code, code_above_class="let g = 0;")
        assert [d.line_number for d in diags] == [12]

    def test_var_is_local_to_whole_function(self, workflow):
        code = """
        if (true) {
          var v = 1;
        }
        v = 2;
        """
        assert workflow(code) == []

    def test_catch_parameter_is_local(self, workflow):
        code = """
        try {
          thing();
        } catch (err) {
          err = null;
        }
        """
        assert workflow(code) == []

    def test_nested_function_sees_outer_locals_as_global(self, analyze):
        code = """
        class Foo {
          @Workflow()
          outer() {
            let local = 1;
            local = 2;
            function inner() {
              local = 3;
            }
          }
        }
        """
        # inner carries no decorator of its own, so nothing is checked there
        assert analyze(code) == []

    def test_undecorated_methods_are_not_checked(self, analyze):
        code = """
        let g = 0;
        class Foo {
          helper() { g = 1; }
        }
        """
        assert analyze(code) == []

    def test_decorator_without_call_and_namespaced(self, analyze):
        code = """
        let g = 0;
        class Foo {
          @Workflow
          a() { g = 1; }

          @dbos.Workflow()
          b() { g = 2; }
        }
        """
        assert message_ids(analyze(code)) == ["globalMutation", "globalMutation"]

    def test_javascript_dialect(self, analyze):
        code = """
        let g = 0;
        class Foo {
          @Workflow()
          run() { g = 1; }
        }
        """
        assert message_ids(analyze(code, file_path="snippet.js")) == ["globalMutation"]
