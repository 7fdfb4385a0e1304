import enum
import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ojudge.config import COMPILE_TIMEOUT, MAX_DIAGNOSTIC_LENGTH, MAX_STDERR_LENGTH, WORK_DIR
from ojudge.errors import InvalidTransitionError, JudgeError
from ojudge.fixtures import FixtureStore
from ojudge.models import TestCase, Verdict
from ojudge.runner import RunResult, run_process
from ojudge.schemas import TestResult
from ojudge.toolchains import Toolchain, get_toolchain

logger = logging.getLogger(__name__)

# First verdict present in this order decides a failed submission
REDUCTION_PRIORITY = (Verdict.TIME_LIMIT, Verdict.RUNTIME_ERROR, Verdict.WRONG_ANSWER)


def normalize_output(text: str) -> str:
    return text.replace("\r", "").strip()


def classify_run(run: RunResult, expected: str) -> Verdict:
    if run.timed_out:
        return Verdict.TIME_LIMIT
    if run.spawn_failed:
        return Verdict.SYSTEM_ERROR
    if run.stderr.strip():
        return Verdict.RUNTIME_ERROR
    actual = run.stdout.decode("utf-8", errors="replace")
    if normalize_output(actual) == normalize_output(expected):
        return Verdict.ACCEPTED
    return Verdict.WRONG_ANSWER


def reduce_verdicts(verdicts: Iterable[Verdict]) -> Verdict:
    """Collapse per-test verdicts; an empty list is vacuously accepted."""
    verdicts = list(verdicts)
    if all(v == Verdict.ACCEPTED for v in verdicts):
        return Verdict.ACCEPTED
    for verdict in REDUCTION_PRIORITY:
        if verdict in verdicts:
            return verdict
    return Verdict.SYSTEM_ERROR


def score_for(status: Verdict, weight: int) -> int:
    return weight if status == Verdict.ACCEPTED else 0


class Phase(str, enum.Enum):
    JUDGING = "judging"
    COMPILING = "compiling"
    RUNNING = "running"
    REDUCING = "reducing"
    TERMINAL = "terminal"


TRANSITIONS = {
    Phase.JUDGING: (Phase.COMPILING, Phase.RUNNING),
    Phase.COMPILING: (Phase.RUNNING, Phase.TERMINAL),
    Phase.RUNNING: (Phase.REDUCING,),
    Phase.REDUCING: (Phase.TERMINAL,),
    Phase.TERMINAL: (),
}


@dataclass
class JudgeOutcome:
    status: Verdict
    score: int = 0
    runtime_ms: int = 0
    results: Optional[List[TestResult]] = None
    compile_output: Optional[str] = None
    message: str = ""


class JudgeStateMachine:
    """Lifecycle of one judging run.

    ``fail`` is legal from every non-terminal phase, so any fault ends in a
    SystemError outcome. Once terminal the outcome never changes.
    """

    def __init__(self):
        self.phase = Phase.JUDGING
        self.outcome: Optional[JudgeOutcome] = None

    @property
    def done(self) -> bool:
        return self.phase is Phase.TERMINAL

    def advance(self, phase: Phase):
        if phase not in TRANSITIONS[self.phase]:
            raise InvalidTransitionError(f"{self.phase.value} -> {phase.value}")
        self.phase = phase

    def finish(self, outcome: JudgeOutcome) -> JudgeOutcome:
        self.advance(Phase.TERMINAL)
        self.outcome = outcome
        return outcome

    def fail(self, message: str) -> JudgeOutcome:
        if self.done:
            return self.outcome
        self.phase = Phase.TERMINAL
        self.outcome = JudgeOutcome(Verdict.SYSTEM_ERROR, message=message)
        return self.outcome


class Judge:
    def __init__(self, submission_id: int, language: str, code: str, time_limit: int,
                 score: int, test_cases: Sequence[TestCase], store: Optional[FixtureStore] = None):
        self.submission_id = submission_id
        self.language = language
        self.code = code
        self.time_limit = time_limit
        self.score = score
        self.test_cases = sorted(test_cases, key=lambda t: t.ordinal)
        self.store = store or FixtureStore()
        self.machine = JudgeStateMachine()
        self.work_dir: Optional[Path] = None

    async def run(self) -> JudgeOutcome:
        logger.info("[Judge #%s] Language: %s, %d test cases",
                    self.submission_id, self.language, len(self.test_cases))
        try:
            outcome = await self._judge()
        except Exception as e:
            logger.exception("[Judge #%s] System error", self.submission_id)
            outcome = self.machine.fail(f"{type(e).__name__}: {e}")
        finally:
            if self.work_dir and self.work_dir.exists():
                shutil.rmtree(self.work_dir, ignore_errors=True)
        logger.info("[Judge #%s] Result: %s, Time: %sms, Score: %s",
                    self.submission_id, outcome.status.value, outcome.runtime_ms, outcome.score)
        return outcome

    async def _judge(self) -> JudgeOutcome:
        toolchain = get_toolchain(self.language)
        self.work_dir = Path(tempfile.mkdtemp(prefix=f"judge_{self.submission_id}_", dir=WORK_DIR))
        source = self.work_dir / toolchain.source_name
        source.write_text(self.code, encoding="utf-8")

        target = self.work_dir / toolchain.artifact_name
        if toolchain.needs_compile:
            self.machine.advance(Phase.COMPILING)
            failure = await self._compile(toolchain, source, target)
            if failure is not None:
                return self.machine.finish(failure)

        self.machine.advance(Phase.RUNNING)
        results = []
        for index, test in enumerate(self.test_cases, 1):
            results.append(await self._run_test(index, test, toolchain, target))

        self.machine.advance(Phase.REDUCING)
        status = reduce_verdicts(r.verdict for r in results)
        passed = sum(1 for r in results if r.verdict == Verdict.ACCEPTED)
        return self.machine.finish(JudgeOutcome(
            status=status,
            score=score_for(status, self.score),
            runtime_ms=max((r.runtime_ms for r in results), default=0),
            results=results,
            message=f"Passed {passed}/{len(results)} test cases",
        ))

    async def _compile(self, toolchain: Toolchain, source: Path, artifact: Path) -> Optional[JudgeOutcome]:
        cmd = toolchain.compile_command(source, artifact)
        logger.info("[Judge #%s] Compile command: %s", self.submission_id, " ".join(cmd))
        result = await run_process(cmd[0], cmd[1:], b"", COMPILE_TIMEOUT, cwd=str(self.work_dir))

        if result.spawn_failed:
            raise JudgeError(f"Compiler failed to start: {result.stderr}")
        if result.timed_out:
            return JudgeOutcome(Verdict.COMPILE_ERROR, compile_output="Compilation timeout",
                                message="Compile Error")
        if result.exit_status != 0:
            diagnostic = result.stdout.decode("utf-8", errors="replace") + "\n" + result.stderr
            logger.info("[Judge #%s] Compile Error: %s", self.submission_id, diagnostic[:200])
            return JudgeOutcome(Verdict.COMPILE_ERROR, compile_output=diagnostic[:MAX_DIAGNOSTIC_LENGTH],
                                message="Compile Error")
        return None

    async def _run_test(self, index: int, test: TestCase, toolchain: Toolchain, target: Path) -> TestResult:
        input_data = self._load_fixture(test.input_path)
        expected = self._load_fixture(test.output_path).decode("utf-8", errors="replace")
        try:
            command = toolchain.run_command(target)
        except Exception as e:
            return TestResult(index=index, verdict=Verdict.SYSTEM_ERROR, stderr=str(e))

        run = await run_process(command[0], command[1:], input_data, self.time_limit,
                                cwd=str(self.work_dir))
        verdict = classify_run(run, expected)
        logger.debug("[Judge #%s] Test %d: %s (%.0fms)", self.submission_id, index, verdict.value, run.elapsed_ms)
        return TestResult(index=index, verdict=verdict, runtime_ms=round(run.elapsed_ms),
                          stderr=run.stderr[:MAX_STDERR_LENGTH])

    def _load_fixture(self, rel: str) -> bytes:
        # Unreadable fixtures judge as empty data
        try:
            return self.store.read(rel)
        except OSError as e:
            logger.warning("[Judge #%s] Unreadable fixture %s: %s", self.submission_id, rel, e)
            return b""
