"""Bounded judging pool.

A fixed set of workers pulls submission ids from a queue; queue depth is the
back-pressure signal for intake. Each submission is owned by exactly one
worker between creation and its terminal write.
"""
import asyncio
import logging
from typing import List, Optional

from sqlalchemy import select

from ojudge.config import JUDGE_QUEUE_SIZE, MAX_CONCURRENT_JUDGES
from ojudge.fixtures import FixtureStore
from ojudge.judge import Judge, JudgeOutcome
from ojudge.models import Attempt, Problem, Submission, TestCase, Verdict, async_session, utcnow
from ojudge.schemas import dump_results

logger = logging.getLogger(__name__)


def record_outcome(submission: Submission, outcome: JudgeOutcome) -> Attempt:
    """Apply the terminal write to ``submission`` and build its Attempt row."""
    now = utcnow()
    submission.status = outcome.status.value
    submission.score = outcome.score
    submission.runtime_ms = outcome.runtime_ms
    submission.message = outcome.message
    submission.compile_output = outcome.compile_output
    submission.result_json = dump_results(outcome.results)
    submission.judged_at = now
    return Attempt(
        contest_id=submission.contest_id,
        contestant_id=submission.contestant_id,
        problem_id=submission.problem_id,
        submission_id=submission.id,
        is_accepted=outcome.status == Verdict.ACCEPTED,
        is_compile_error=outcome.status == Verdict.COMPILE_ERROR,
        created_at=now,
    )


async def judge_submission(submission_id: int, session_factory=None, store: Optional[FixtureStore] = None):
    session_factory = session_factory or async_session
    try:
        async with session_factory() as session:
            submission = await session.get(Submission, submission_id)
            if submission is None:
                logger.warning("[Judge #%s] Submission not found", submission_id)
                return
            if submission.status != Verdict.JUDGING.value:
                logger.warning("[Judge #%s] Already terminal (%s), skipping", submission_id, submission.status)
                return

            problem = await session.get(Problem, submission.problem_id)
            if problem is None:
                raise LookupError(f"Problem {submission.problem_id} not found")
            result = await session.execute(
                select(TestCase).where(TestCase.problem_id == problem.id).order_by(TestCase.ordinal)
            )
            tests = result.scalars().all()

            judge = Judge(submission_id, submission.language, submission.code,
                          problem.time_limit, problem.score, tests, store)
            outcome = await judge.run()
            session.add(record_outcome(submission, outcome))
            await session.commit()
    except Exception as e:
        logger.exception("[Judge #%s] Failed to record result", submission_id)
        await _fail_submission(submission_id, f"{type(e).__name__}: {e}", session_factory)


async def _fail_submission(submission_id: int, message: str, session_factory):
    try:
        async with session_factory() as session:
            submission = await session.get(Submission, submission_id)
            if submission is None or submission.status != Verdict.JUDGING.value:
                return
            session.add(record_outcome(submission, JudgeOutcome(Verdict.SYSTEM_ERROR, message=message)))
            await session.commit()
    except Exception:
        logger.exception("[Judge #%s] Could not mark submission as SystemError", submission_id)


class JudgePool:
    def __init__(self, workers: int = MAX_CONCURRENT_JUDGES, maxsize: int = JUDGE_QUEUE_SIZE,
                 session_factory=None, store: Optional[FixtureStore] = None):
        self.workers = workers
        self.queue: "asyncio.Queue[int]" = asyncio.Queue(maxsize)
        self.session_factory = session_factory or async_session
        self.store = store
        self._tasks: List[asyncio.Task] = []

    def start(self):
        if self._tasks:
            return
        self._tasks = [asyncio.ensure_future(self._worker(n)) for n in range(self.workers)]
        logger.info("Started %d judge workers (queue size %d)", self.workers, self.queue.maxsize)

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    def full(self) -> bool:
        return self.queue.full()

    async def submit(self, submission_id: int):
        await self.queue.put(submission_id)

    async def join(self):
        await self.queue.join()

    async def recover_pending(self) -> int:
        """Re-enqueue submissions a previous process left in ``judging``."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Submission.id).where(Submission.status == Verdict.JUDGING.value).order_by(Submission.id)
            )
            pending = result.scalars().all()
        for submission_id in pending:
            await self.submit(submission_id)
        if pending:
            logger.info("Re-enqueued %d pending submissions", len(pending))
        return len(pending)

    async def _worker(self, n: int):
        while True:
            submission_id = await self.queue.get()
            try:
                await judge_submission(submission_id, self.session_factory, self.store)
            except Exception:
                logger.exception("[Worker %d] Unexpected failure on submission %s", n, submission_id)
            finally:
                self.queue.task_done()
