"""
Tests for the MiniScript engine.

Tests cover:
- printing, if/else and while control flow
- math and string expressions (left-to-right, no precedence)
- string literals, escapes and interpolation
- local and shared variables
- host commands and built-ins
- malformed scripts and structured errors
- step tracing and tracebacks
"""

import json
import textwrap

import pytest

from extensions import ExtensionAPI, build_default_services
from interpreter import (
    ERROR_RESULT,
    Engine,
    MiniScriptRuntimeError,
    Script,
    TracebackFormatter,
    Value,
)
from lexer import MiniScriptParseError


def src(text):
    return textwrap.dedent(text).strip("\n")


class TestPrinting:
    def test_basic_printing(self, run):
        script = src(
            """
            print(1234)
            print(Test)
            print("Test")
            print("Hello, world!")
            """
        )
        assert run(script) == "1234\nTest\nTest\nHello, world!"

    def test_printc_concatenates(self, run):
        assert run("printc(a)\nprintc(b)\nprint(c)\nprintc(d)") == "ab\ncd"

    def test_print_joins_arguments(self, run):
        assert run('$x = 5\nprint(x is , $x, "!")') == "x is5!"

    def test_empty_print_emits_newline(self, run):
        assert run("print(a)\nprint()\nprint(b)") == "a\n\nb"

    def test_shorthand(self, run):
        script = src(
            """
            ``The man said \\"hi\\".
            $hi = "more quotes! \\""
            ``The man said \\"{{$hi}}\\".
            """
        )
        assert run(script) == 'The man said "hi".\nThe man said "more quotes! "".'

    def test_comments_and_blank_lines(self, run):
        assert run("// nothing\n\n   print(ok)   \n// done") == "ok"

    def test_empty_script(self, run):
        assert run("") == ""


class TestControlFlow:
    def test_if_true(self, run):
        assert run("if true\n    print(Pass)\nelse\n    print(Fail)\nend") == "Pass"

    def test_basic_if_else(self, run):
        script = src(
            """
            if true
                print(Pass1)
            else
                print(Fail1)
            end
            if false
                print(Fail2)
            else
                print(Pass2)
            end
            if true
                print(Pass3)
            end
            if false
                print(Fail4)
            end
            if false
                if true
                    print(Fail5)
                else
                    print(Fail6)
                end
            end
            if false
                if true
                    print(Fail7)
                end
            else
                if true
                    print(Pass8)
                end
            end
            if true
                if true
                    print(Pass9)
                    if true
                        if false
                            print(Fail9)
                        else
                            print(Pass10)
                        end
                    else
                        print(Fail11)
                    end
                else
                    print(Fail12)
                end
            else
                print(Fail13)
            end
            if true
                if true
                    print(Pass11)
                    print(Pass12)
                end
            end
            """
        )
        expected = "Pass1\nPass2\nPass3\nPass8\nPass9\nPass10\nPass11\nPass12"
        assert run(script) == expected

    def test_short_while(self, run):
        script = src(
            """
            $a = 0
            while $a < 3
                print("a: {{$a}}")
                $a = $a + 1
            end
            """
        )
        assert run(script) == "a: 0\na: 1\na: 2"

    def test_while_loops(self, run):
        script = src(
            """
            $a = 0
            while $a < 10
                print("a: {{$a}}")
                $a = $a + 1
            end
            while $a < 20
                print("a: {{$a}}")
                $a = $a + 1
            end

            $a = 1
            $b = 1
            while $a < 100
                if true
                    print("Looping!")
                else
                    while $a < 100
                        print("Nope")
                    end
                    print("Nope")
                end
                while $b < 10
                    print("b: {{$b}}")
                    $b = $b + 1
                end
                print("Finishing")
                $a = 101
            end
            $a = 0
            while $a < 5
                $a = $a + 1
                while false
                    print("No!")
                end
            end
            """
        )
        expected = (
            [f"a: {i}" for i in range(20)]
            + ["Looping!"]
            + [f"b: {i}" for i in range(1, 10)]
            + ["Finishing"]
        )
        assert run(script) == "\n".join(expected)

    def test_loop_restart_table_is_empty_after_loops(self, engine):
        script = Script("$a = 0\nwhile $a < 3\n$a = $a + 1\nwhile false\nend\nend")
        assert engine.run(script) == ""
        assert script._loop_start == {}
        assert script._depth == 0

    def test_plain_literal_statement_is_noop(self, run):
        assert run("hello\ntrue\nprint(ok)") == "ok"


class TestExpressions:
    def test_basic_math(self, run):
        script = src(
            """
            $a = 1 + 1
            $b = 2 - 5
            $c = $a + $b
            print($c)

            $a = 10
            $c = $a * 5
            print($c)
            if c != 49
                print("Ok1")
            end

            $c = 5 / 10 * 3
            print($c)
            if $c > 1.2
                print("Ok2")
            end
            if $c < 2
                print("Ok3")
            end

            $c = 1 + 2 - 1 * 0.25
            print($c)

            $c = 2 / 6 * 9
            print($c)
            if $c = 3
                print("Ok4")
            end
            if $c != 42
                print("Ok5")
            end
            if $c >= 3
                print("Ok6")
            end
            if $c <= 2.99
                print("Fail")
            else
                print("Ok7")
            end

            $c = 0.1283 + 8274.18 - 0.226
            print($c)

            if $c =
            """
        )
        expected = "-1\n50\nOk1\n1.5\nOk2\nOk3\n0.5\n3\nOk4\nOk5\nOk6\nOk7\n8274.0823"
        assert run(script) == expected

    def test_sum_of_locals(self, run):
        assert run("$a = 1 + 1\n$b = 2 - 5\n$c = $a + $b\nprint($c)") == "-1"

    def test_left_to_right_without_precedence(self, run):
        assert run("$x = 2 + 3 * 4\nprint($x)") == "20"

    def test_non_numeric_operand_degrades_to_zero(self, run):
        assert run("$x = abc * 3\nprint($x)") == "0"

    def test_division_by_zero(self, run):
        assert run("$x = 1 / 0\nprint($x)") == "inf"

    def test_string_operations(self, run):
        script = src(
            """
            $a = "Hello "
            $b = "world!"
            $c = $a + $b
            print($c)

            if $a = "Hello "
                print("Ok1")
            end
            if $a != $b
                print("Ok2")
            end
            """
        )
        assert run(script) == "Hello world!\nOk1\nOk2"

    def test_four_token_assignment_takes_first_value(self, run):
        assert run("$x = 5 +\nprint($x)") == "5"

    def test_trailing_token_is_ignored(self, run):
        assert run("if 1 = 1 extra\nprint(yes)\nend") == "yes"

    def test_command_inside_expression(self, run):
        assert run("$x = rand(1) + 5\nprint($x)") == "5"


class TestStrings:
    def test_escaped_quote_strings(self, run):
        script = src(
            """
            print("The man said \\"hi\\".")
            $hi = "more quotes! \\""
            print("The man said \\"{{$hi}}\\".")
            """
        )
        assert run(script) == 'The man said "hi".\nThe man said "more quotes! "".'

    def test_interpolation_expression(self, run):
        assert run('print("My favorite number is {{4 + 4 * 2}}.")') == "My favorite number is 16."

    def test_interpolation_with_host_command(self, engine):
        engine.add_command("sayHi", lambda args: f"Hi there, {args[0]} {args[1]}!")
        script = src(
            """
            $a = "red"
            $b = "balloon"
            print("{{sayHi(Matt, Reagan)}} Today at the zoo I bought a {{$a}} {{$b}}. It's a very bright {{$a}}! Please ignore these brackets: \\{\\{$a\\}\\}")
            """
        )
        expected = (
            "Hi there, Matt Reagan! Today at the zoo I bought a red balloon. "
            "It's a very bright red! Please ignore these brackets: {{$a}}"
        )
        assert engine.run(Script(script)) == expected

    def test_interpolation_concatenation(self, engine):
        engine.add_command("join", lambda args: args[0] + " " + args[1])
        script = src(
            """
            $a = "red"
            $space = " "
            $b = "balloon"
            print("Today at the {{join(Portland, Zoo)}} I bought a {{$a + $space + $b}}. It's very {{$a}}!")
            """
        )
        expected = "Today at the Portland Zoo I bought a red balloon. It's very red!"
        assert engine.run(Script(script)) == expected

    def test_plain_literal_passes_through(self, run):
        assert run('print("no spans here")') == "no spans here"

    def test_spaces_inside_braces(self, run):
        assert run('print("{{ 1 + 2 }}")') == "3"

    def test_empty_span(self, run):
        assert run('print("[{{}}]")') == "[]"

    def test_repeated_span_reuses_its_argument_entry(self, engine):
        engine.add_command("echo", lambda args: args[0])
        script = Script('$i = 0\nwhile $i < 500\nprintc("{{echo(a)}}")\n$i = $i + 1\nend')
        assert engine.run(script) == "a" * 500
        # one entry from preprocessing printc(...), one for the span
        assert len(script.arguments) == 2
        assert engine.run(script) == "a" * 500
        assert len(script.arguments) == 2

    def test_local_variables(self, run):
        script = src(
            """
            $a = "hi "
            $b = there
            $c = " how are "
            $d = "you today?"
            $e = "!"
            $part1 = $a + $b
            $part2 = $c + $d + $e
            $part3 = $part1 + $part2
            print($part3)
            """
        )
        assert run(script) == "hi there how are you today?!"


class TestVariables:
    def test_global_variables(self, engine):
        script1 = src(
            """
            $a = 2
            $b = $a * $a
            &c = $b * 3
            print($b)
            print(&c)
            """
        )
        script2 = src(
            """
            if $b = ""
                print("B is empty as expected")
            end
            print(&c)
            """
        )
        assert engine.run(Script(script1)) == "4\n12"
        assert engine.run(Script(script2)) == "B is empty as expected\n12"

    def test_globals_are_per_engine(self):
        first = Engine()
        second = Engine()
        first.run(Script("&c = 12"))
        assert second.run(Script('print("[{{&c}}]")')) == "[]"

    def test_globals_view_is_read_only(self, engine):
        engine.run(Script("&c = 12"))
        assert engine.globals["c"] == Value("12")
        with pytest.raises(TypeError):
            engine.globals["c"] = Value("0")

    def test_missing_variables_read_empty(self, run):
        assert run('print("[{{$nope}}{{&nope}}]")') == "[]"

    def test_variable_names_are_case_insensitive(self, run):
        assert run("$Name = Ada\nprint($NAME)") == "Ada"

    def test_environment(self, run):
        assert run("print($who)", {"who": "World"}) == "World"
        assert run("print($who)", {"$Who": "Sigil"}) == "Sigil"

    def test_locals_persist_on_the_script(self, engine):
        script = Script("$n = $n + 1\nprint($n)")
        assert engine.run(script) == "1"
        assert engine.run(script) == "2"
        assert script.variables["n"] == Value("2")


class TestCommands:
    def test_registration_is_trimmed_and_case_insensitive(self, engine):
        engine.add_command("  SayHi ", lambda args: "hi " + args[0])
        assert "sayhi" in engine.command_names()
        assert engine.run(Script("SAYHI(a)\n$x = sayhi(b)\nprint($x)")) == "hi b"

    def test_handler_receives_resolved_arguments(self, engine):
        seen = []
        engine.add_command("capture", lambda args: seen.append(args))
        engine.run(Script('$a = 1\n&b = 2\ncapture($a, &b, "three {{$a}}", rand(5), Word)'))
        # nested calls are passed through as text, up to the first ")"
        assert seen == [["1", "2", "three 1", "rand(5"]]

    def test_handler_returning_none_is_empty(self, engine):
        engine.add_command("quiet", lambda args: None)
        assert engine.run(Script('$x = quiet()\nprint("[{{$x}}]")')) == "[]"

    def test_handler_result_is_converted_to_text(self, engine):
        engine.add_command("answer", lambda args: 42)
        assert engine.run(Script("$x = answer()\nprint($x)")) == "42"

    def test_host_can_override_builtin(self, engine):
        calls = []
        engine.add_command("print", lambda args: calls.append(args))
        assert engine.run(Script("print(a, b)")) == ""
        assert calls == [["a", "b"]]

    def test_rand(self, engine):
        out = engine.run(Script("$r = rand(10)\nprint($r)"))
        assert 0 <= int(out) < 10

    def test_rand_is_seeded(self):
        source = "print(rand(1000000))\nprint(rand(1000000))"
        assert Engine(seed=5).run(Script(source)) == Engine(seed=5).run(Script(source))

    @pytest.mark.parametrize("bound", ["0", "-4", "abc", "2.5", ""])
    def test_rand_invalid_bound(self, run, bound):
        assert run(f'$r = rand({bound})\nprint("[{{{{$r}}}}]")') == "[]"

    def test_without_builtins(self):
        engine = Engine(include_builtins=False)
        assert "print" not in engine.command_names()
        assert engine.run(Script("print(x)")) == ""

    def test_current_script_during_run(self, engine):
        script = Script("probe()")
        seen = []
        engine.add_command("probe", lambda args: seen.append(engine.current_script))
        engine.run(script)
        assert seen == [script]
        assert engine.current_script is None


class TestErrors:
    @pytest.mark.parametrize(
        "source",
        ["$a", "+", "if false", "else", "if", "if\nelse\nelse", "end\nelse\nelse", "$a + 1", "$a = 1 2 3"],
    )
    def test_bad_scripts(self, run, source):
        assert run(source) == ERROR_RESULT

    def test_structured_parse_error(self, engine):
        result = engine.execute(Script("print(a)\nif false\nprint(b)"))
        assert not result.ok
        assert result.text == ERROR_RESULT
        assert result.output == ""
        assert isinstance(result.error, MiniScriptParseError)
        assert result.error.rule == "IF"
        assert result.error.location.line == 2
        assert result.error.location.statement == "if false"

    def test_unknown_command(self, engine):
        engine.add_command("mystery", None)
        assert engine.run(Script("mystery(1)")) == ERROR_RESULT
        result = engine.execute(Script("mystery(1)"))
        assert isinstance(result.error, MiniScriptRuntimeError)
        assert result.error.rule == "COMMAND"

    def test_failing_handler(self, engine):
        engine.add_command("boom", lambda args: 1 / 0)
        result = engine.execute(Script("print(before)\nboom()"))
        assert result.error.rule == "HANDLER"
        assert "division by zero" in result.error.message

    def test_error_in_interpolation_stops_run(self, engine):
        engine.add_command("boom", lambda args: 1 / 0)
        assert engine.run(Script('print("x {{boom()}}")\nprint(after)')) == ERROR_RESULT

    def test_missing_operator(self, engine):
        result = engine.execute(Script("$x = 1 2 3"))
        assert isinstance(result.error, MiniScriptRuntimeError)
        assert result.error.rule == "EXPR"

    def test_success_result(self, engine):
        result = engine.execute(Script("print(ok)"))
        assert result.ok
        assert result.text == "ok"
        assert result.error is None


class TestTracing:
    def test_step_log(self):
        engine = Engine(verbose=True)
        engine.run(Script("$a = 1\n&g = 2\nprint($a)"))
        entries = engine.logger.entries
        assert [e.rule for e in entries] == ["VAR_LOCAL", "VAR_GLOBAL", "COMMAND"]
        assert entries[2].state_id == "s_000002"
        assert entries[2].env_snapshot == {"$a": "1", "&g": "2"}
        assert entries[2].source_location.line == 3

    def test_quiet_engine_has_no_snapshots(self, engine):
        engine.run(Script("$a = 1"))
        assert engine.logger.entries[0].env_snapshot is None

    def test_loop_steps_are_logged_each_time(self, engine):
        engine.run(Script("$a = 0\nwhile $a < 2\n$a = $a + 1\nend"))
        lines = [e.line_index for e in engine.logger.entries]
        assert lines == [0, 1, 2, 3, 1, 2, 3, 1, 3]

    def test_traceback_text(self):
        engine = Engine(verbose=True)
        result = engine.execute(Script("$a = 1\nif false\nprint(x)"))
        text = TracebackFormatter(engine).format_text(result.error, verbose=True)
        assert text.startswith("Traceback (most recent call last):")
        assert 'Script "<string>", line 2' in text
        assert "    if false" in text
        assert "State log index: 1" in text
        assert "Env snapshot: $a=1" in text
        assert text.endswith("MiniScriptParseError: No matching 'end' for 'if' (rule: IF)")

    def test_traceback_json(self, engine):
        result = engine.execute(Script("+"))
        data = json.loads(TracebackFormatter(engine).to_json(result.error))
        assert data["error"]["type"] == "MiniScriptParseError"
        assert data["error"]["failing_step_index"] == 0
        assert data["source_location"]["line"] == 1
        assert data["state_id"] == "s_000000"


class TestHooks:
    def _engine(self, register):
        services = build_default_services()
        register(ExtensionAPI(services, "test"))
        return Engine(services=services)

    def test_events(self):
        events = []

        def register(ext):
            ext.on_event("script_start", lambda engine, script: events.append("start"))
            ext.on_event("before_statement", lambda engine, statement: events.append(statement.kind))
            ext.on_event("script_end", lambda engine, script, output: events.append(("end", output)))

        engine = self._engine(register)
        engine.run(Script("$a = 1\nprint($a)"))
        assert events == ["start", "VAR_LOCAL", "COMMAND", ("end", "1")]

    def test_on_error(self):
        errors = []

        def register(ext):
            ext.on_event("on_error", lambda engine, error: errors.append(error.rule))

        engine = self._engine(register)
        assert engine.run(Script("else")) == ERROR_RESULT
        assert errors == ["ELSE"]

    def test_step_rule_can_stop_runaway_loop(self):
        def register(ext):
            @ext.every_n_steps(100)
            def budget(engine, ctx):
                if ctx.step_index >= 1000:
                    raise RuntimeError("step budget exceeded")

        engine = self._engine(register)
        result = engine.execute(Script("while true\nend"))
        assert result.error.rule == "EXT"
        assert "step budget exceeded" in result.error.message

    def test_failing_event_hook(self):
        def register(ext):
            ext.on_event("after_statement", lambda engine, statement: 1 / 0)

        engine = self._engine(register)
        result = engine.execute(Script("print(a)"))
        assert result.error.rule == "EXT"
