from pathlib import Path
from typing import Dict, List

from ojudge.config import LANGUAGES
from ojudge.errors import UnsupportedLanguageError


class Toolchain:
    """How to turn a source file into something the runner can execute."""

    needs_compile = False

    def __init__(self, language: str, source_name: str):
        self.language = language
        self.source_name = source_name

    @property
    def artifact_name(self) -> str:
        return Path(self.source_name).stem

    def compile_command(self, source: Path, artifact: Path) -> List[str]:
        raise NotImplementedError(f"{self.language} has no compile step")

    def run_command(self, path: Path) -> List[str]:
        raise NotImplementedError


class CompiledToolchain(Toolchain):
    needs_compile = True

    def __init__(self, language: str, source_name: str, compiler: str,
                 args: List[str], libs: List[str]):
        super().__init__(language, source_name)
        self.compiler = compiler
        self.args = list(args)
        self.libs = list(libs)

    def compile_command(self, source: Path, artifact: Path) -> List[str]:
        return [self.compiler] + self.args + [str(source), "-o", str(artifact)] + self.libs

    def run_command(self, path: Path) -> List[str]:
        return [str(path)]


class InterpretedToolchain(Toolchain):
    def __init__(self, language: str, source_name: str, interpreter: str):
        super().__init__(language, source_name)
        self.interpreter = interpreter

    @property
    def artifact_name(self) -> str:
        return self.source_name

    def run_command(self, path: Path) -> List[str]:
        return [self.interpreter, str(path)]


def get_toolchain(language: str) -> Toolchain:
    cfg = LANGUAGES.get(language)
    if cfg is None:
        raise UnsupportedLanguageError(language)
    if "compiler" in cfg:
        return CompiledToolchain(language, cfg["source"], cfg["compiler"],
                                 cfg.get("args", []), cfg.get("libs", []))
    return InterpretedToolchain(language, cfg["source"], cfg["interpreter"])


def available_languages() -> Dict[str, dict]:
    return {
        lang: {"compiled": "compiler" in cfg, "args": cfg.get("args", [])}
        for lang, cfg in LANGUAGES.items()
    }
