from pathlib import Path

import pytest

from ojudge.errors import UnsupportedLanguageError
from ojudge.toolchains import (CompiledToolchain, InterpretedToolchain, available_languages,
                               get_toolchain)


def test_cpp_compiles_with_optimisation_and_libm():
    tc = get_toolchain("cpp")
    assert isinstance(tc, CompiledToolchain)
    assert tc.needs_compile
    cmd = tc.compile_command(Path("/w/main.cpp"), Path("/w/main"))
    assert cmd[0] == tc.compiler
    assert "-O2" in cmd
    assert cmd[-1] == "-lm"
    assert cmd[cmd.index("-o") + 1] == "/w/main"
    assert tc.run_command(Path("/w/main")) == ["/w/main"]


def test_python_runs_source_through_interpreter():
    tc = get_toolchain("python")
    assert isinstance(tc, InterpretedToolchain)
    assert not tc.needs_compile
    assert tc.artifact_name == "main.py"
    assert tc.run_command(Path("/w/main.py")) == [tc.interpreter, "/w/main.py"]


def test_interpreted_toolchain_has_no_compile_step():
    with pytest.raises(NotImplementedError):
        get_toolchain("python").compile_command(Path("a.py"), Path("a.py"))


def test_unknown_language_is_rejected():
    with pytest.raises(UnsupportedLanguageError) as excinfo:
        get_toolchain("brainfuck")
    assert excinfo.value.language == "brainfuck"


def test_available_languages():
    langs = available_languages()
    assert langs["cpp"]["compiled"] is True
    assert langs["python"]["compiled"] is False
    assert "c" in langs
