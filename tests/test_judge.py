import shutil

import pytest

from ojudge.config import LANGUAGES
from ojudge.errors import InvalidTransitionError
from ojudge.judge import (Judge, JudgeOutcome, JudgeStateMachine, Phase, classify_run,
                          normalize_output, reduce_verdicts, score_for)
from ojudge.models import TestCase, Verdict
from ojudge.runner import RunResult
from ojudge.schemas import dump_results

ECHO = "import sys\nsys.stdout.write(sys.stdin.read())\n"

requires_gxx = pytest.mark.skipif(shutil.which("g++") is None, reason="g++ not installed")


def make_tests(store, pairs):
    tests = []
    for ordinal, (inp, out) in enumerate(pairs, 1):
        input_path, input_size = store.put(inp.encode())
        output_path, output_size = store.put(out.encode())
        tests.append(TestCase(ordinal=ordinal, input_path=input_path, output_path=output_path,
                              input_size=input_size, output_size=output_size))
    return tests


def run(result_code=0, stdout=b"", stderr="", timed_out=False, elapsed=10.0):
    return RunResult(exit_status=result_code, elapsed_ms=elapsed, timed_out=timed_out,
                     stdout=stdout, stderr=stderr)


# ===== Output normalisation and classification =====

@pytest.mark.parametrize("text", ["  1 2 3\r\n", "\r\n\r\nabc\r\n  ", "", "x\ry"])
def test_normalize_is_idempotent(text):
    once = normalize_output(text)
    assert normalize_output(once) == once


def test_whitespace_and_carriage_returns_do_not_cause_wrong_answer():
    assert classify_run(run(stdout=b"\n 42 \r\n\n"), "42\n") == Verdict.ACCEPTED
    assert classify_run(run(stdout=b"1\r\n2\r\n"), "1\n2") == Verdict.ACCEPTED


def test_inner_whitespace_is_significant():
    assert classify_run(run(stdout=b"1  2"), "1 2") == Verdict.WRONG_ANSWER


def test_classification_precedence():
    assert classify_run(run(stderr="trace", timed_out=True), "") == Verdict.TIME_LIMIT
    assert classify_run(run(stdout=b"42", stderr="warning"), "42") == Verdict.RUNTIME_ERROR
    assert classify_run(run(stdout=b"42", stderr="  \n"), "42") == Verdict.ACCEPTED
    assert classify_run(run(result_code=-11, stdout=b"42"), "42") == Verdict.ACCEPTED
    assert classify_run(run(result_code=1, stdout=b"41"), "42") == Verdict.WRONG_ANSWER
    assert classify_run(run(result_code=None, stderr="No such file"), "") == Verdict.SYSTEM_ERROR


# ===== Reduction =====

def test_time_limit_outranks_earlier_wrong_answer():
    assert reduce_verdicts([Verdict.WRONG_ANSWER, Verdict.TIME_LIMIT]) == Verdict.TIME_LIMIT


def test_runtime_error_outranks_wrong_answer():
    verdicts = [Verdict.ACCEPTED, Verdict.WRONG_ANSWER, Verdict.RUNTIME_ERROR]
    assert reduce_verdicts(verdicts) == Verdict.RUNTIME_ERROR


def test_empty_test_list_is_vacuously_accepted():
    assert reduce_verdicts([]) == Verdict.ACCEPTED


def test_only_system_errors_reduce_to_system_error():
    assert reduce_verdicts([Verdict.ACCEPTED, Verdict.SYSTEM_ERROR]) == Verdict.SYSTEM_ERROR


def test_score_is_all_or_nothing():
    assert score_for(Verdict.ACCEPTED, 250) == 250
    assert score_for(Verdict.WRONG_ANSWER, 250) == 0


# ===== State machine =====

def test_state_machine_happy_path():
    machine = JudgeStateMachine()
    machine.advance(Phase.COMPILING)
    machine.advance(Phase.RUNNING)
    machine.advance(Phase.REDUCING)
    outcome = machine.finish(JudgeOutcome(Verdict.ACCEPTED, score=100))
    assert machine.done
    assert machine.outcome is outcome


def test_state_machine_rejects_skipping_phases():
    machine = JudgeStateMachine()
    with pytest.raises(InvalidTransitionError):
        machine.advance(Phase.REDUCING)
    machine.advance(Phase.RUNNING)
    with pytest.raises(InvalidTransitionError):
        machine.finish(JudgeOutcome(Verdict.ACCEPTED))


def test_fail_is_allowed_from_any_phase_and_terminal_is_final():
    machine = JudgeStateMachine()
    machine.advance(Phase.RUNNING)
    outcome = machine.fail("disk on fire")
    assert outcome.status == Verdict.SYSTEM_ERROR
    assert outcome.message == "disk on fire"
    assert machine.fail("again") is outcome
    with pytest.raises(InvalidTransitionError):
        machine.advance(Phase.RUNNING)


# ===== End to end with real processes =====

@pytest.mark.asyncio
async def test_accepted_submission(store):
    tests = make_tests(store, [("1 2\n", "1 2\n"), ("abc", "abc\r\n")])
    judge = Judge(1, "python", ECHO, 5000, 100, tests, store)
    outcome = await judge.run()
    assert outcome.status == Verdict.ACCEPTED
    assert outcome.score == 100
    assert [r.index for r in outcome.results] == [1, 2]
    assert all(r.verdict == Verdict.ACCEPTED for r in outcome.results)
    assert outcome.runtime_ms == max(r.runtime_ms for r in outcome.results)
    assert outcome.compile_output is None
    assert not judge.work_dir.exists()


@pytest.mark.asyncio
async def test_wrong_answer_scores_zero_and_hides_stdout(store):
    code = "print('secret-output-xyz')\n"
    tests = make_tests(store, [("", "expected\n")])
    outcome = await Judge(2, "python", code, 5000, 100, tests, store).run()
    assert outcome.status == Verdict.WRONG_ANSWER
    assert outcome.score == 0
    assert "secret-output-xyz" not in dump_results(outcome.results)


@pytest.mark.asyncio
async def test_runtime_error_keeps_stderr(store):
    code = "raise ValueError('bad input')\n"
    tests = make_tests(store, [("", "")])
    outcome = await Judge(3, "python", code, 5000, 100, tests, store).run()
    assert outcome.status == Verdict.RUNTIME_ERROR
    assert "ValueError" in outcome.results[0].stderr


@pytest.mark.asyncio
async def test_nonzero_exit_with_correct_output_is_accepted(store):
    code = "import sys\nprint(42)\nsys.exit(1)\n"
    tests = make_tests(store, [("", "42")])
    outcome = await Judge(13, "python", code, 5000, 100, tests, store).run()
    assert outcome.results[0].verdict == Verdict.ACCEPTED
    assert outcome.status == Verdict.ACCEPTED
    assert outcome.score == 100


@pytest.mark.asyncio
async def test_time_limit_on_later_test_outranks_wrong_answer(store):
    code = (
        "import sys, time\n"
        "data = sys.stdin.read().strip()\n"
        "if data == 'slow':\n"
        "    time.sleep(3)\n"
        "print('nope')\n"
    )
    tests = make_tests(store, [("fast", "yes"), ("slow", "yes")])
    outcome = await Judge(4, "python", code, 1000, 100, tests, store).run()
    assert [r.verdict for r in outcome.results] == [Verdict.WRONG_ANSWER, Verdict.TIME_LIMIT]
    assert outcome.status == Verdict.TIME_LIMIT


@pytest.mark.asyncio
async def test_all_tests_run_after_a_failure(store):
    tests = make_tests(store, [("a", "b"), ("c", "c"), ("d", "d")])
    outcome = await Judge(5, "python", ECHO, 5000, 100, tests, store).run()
    assert len(outcome.results) == 3
    assert outcome.message == "Passed 2/3 test cases"


@pytest.mark.asyncio
async def test_zero_test_cases_is_accepted(store):
    outcome = await Judge(6, "python", ECHO, 5000, 70, [], store).run()
    assert outcome.status == Verdict.ACCEPTED
    assert outcome.score == 70
    assert outcome.results == []


@pytest.mark.asyncio
async def test_unreadable_fixture_is_treated_as_empty(store):
    tests = [TestCase(ordinal=1, input_path="missing/in", output_path="missing/out")]
    outcome = await Judge(7, "python", "pass\n", 5000, 100, tests, store).run()
    assert outcome.status == Verdict.ACCEPTED


@pytest.mark.asyncio
async def test_unsupported_language_is_a_system_error(store):
    tests = make_tests(store, [("1", "1")])
    outcome = await Judge(8, "cobol", "DISPLAY 1.", 5000, 100, tests, store).run()
    assert outcome.status == Verdict.SYSTEM_ERROR
    assert outcome.results is None
    assert "cobol" in outcome.message


@pytest.mark.asyncio
async def test_missing_interpreter_is_a_system_error(store, monkeypatch):
    monkeypatch.setitem(LANGUAGES, "ghost", {"interpreter": "/nonexistent/python", "source": "main.py"})
    tests = make_tests(store, [("1", "1")])
    outcome = await Judge(9, "ghost", ECHO, 5000, 100, tests, store).run()
    assert outcome.status == Verdict.SYSTEM_ERROR
    assert outcome.results[0].verdict == Verdict.SYSTEM_ERROR
    assert outcome.score == 0


@pytest.mark.asyncio
async def test_missing_compiler_is_a_system_error(store, monkeypatch):
    monkeypatch.setitem(LANGUAGES, "ghostc", {
        "compiler": "/nonexistent/cc", "args": ["-O2"], "libs": [], "source": "main.c",
    })
    outcome = await Judge(10, "ghostc", "int main(){}", 5000, 100, [], store).run()
    assert outcome.status == Verdict.SYSTEM_ERROR
    assert "Compiler failed to start" in outcome.message


@requires_gxx
@pytest.mark.asyncio
async def test_cpp_compile_error(store):
    tests = make_tests(store, [("1", "1")])
    outcome = await Judge(11, "cpp", "int main( {", 5000, 100, tests, store).run()
    assert outcome.status == Verdict.COMPILE_ERROR
    assert outcome.score == 0
    assert outcome.results is None
    assert "error" in outcome.compile_output


@requires_gxx
@pytest.mark.asyncio
async def test_cpp_accepted(store):
    code = (
        "#include <cstdio>\n"
        "#include <cmath>\n"
        "int main(){ double x; if(scanf(\"%lf\", &x)!=1) return 1; printf(\"%.0f\\n\", sqrt(x)); }\n"
    )
    tests = make_tests(store, [("16", "4"), ("81\n", "9\n")])
    outcome = await Judge(12, "cpp", code, 5000, 100, tests, store).run()
    assert outcome.status == Verdict.ACCEPTED
