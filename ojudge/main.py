import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, UploadFile, File, Form, Header, HTTPException, Depends, Request
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ojudge import config
from ojudge.errors import FixtureImportError
from ojudge.fixtures import (FixturePair, FixtureStore, add_test_cases, pairs_from_directory,
                             pairs_from_zip, parse_text_bundle)
from ojudge.models import (Contest, ContestProblem, Problem, Registration, Submission, TestCase,
                           Verdict, engine, get_session, init_db, utcnow)
from ojudge.schemas import load_results
from ojudge.scoreboard import compute_scoreboard, contest_problems
from ojudge.toolchains import available_languages
from ojudge.worker import JudgePool

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

PROBLEM_ID_RE = re.compile(r"^[A-Za-z0-9_]+$")
SYSTEM_ERROR_MESSAGE = "System error, please contact the contest staff"

fixture_store = FixtureStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    pool = JudgePool(store=fixture_store)
    pool.start()
    app.state.judge_pool = pool
    await pool.recover_pending()
    yield
    await pool.stop()
    await engine.dispose()


app = FastAPI(title="Online Judge", lifespan=lifespan)


def require_admin(x_admin_token: Optional[str] = Header(None)):
    if not config.ADMIN_TOKEN or x_admin_token != config.ADMIN_TOKEN:
        raise HTTPException(403, "Admin only")


def _parse_time(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise HTTPException(400, f"Bad date: {value}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


async def _get_problem(session: AsyncSession, problem_id: str) -> Problem:
    problem = await session.get(Problem, problem_id)
    if not problem:
        raise HTTPException(404, "Problem not found")
    return problem


async def _get_contest(session: AsyncSession, contest_id: int) -> Contest:
    contest = await session.get(Contest, contest_id)
    if not contest:
        raise HTTPException(404, "Contest not found")
    return contest


async def _import_pairs(session: AsyncSession, problem_id: str, pairs: List[FixturePair]) -> int:
    created = await add_test_cases(session, problem_id, pairs, fixture_store)
    await session.commit()
    return len(created)


async def _test_case_counts(session: AsyncSession) -> Dict[str, int]:
    result = await session.execute(
        select(TestCase.problem_id, func.count(TestCase.id)).group_by(TestCase.problem_id)
    )
    return dict(result.all())


def _problem_dict(problem: Problem, test_case_count: int) -> dict:
    return {
        "id": problem.id,
        "title": problem.title,
        "time_limit": problem.time_limit,
        "memory_limit": problem.memory_limit,
        "score": problem.score,
        "test_case_count": test_case_count
    }

# ===== Problem APIs =====

@app.post("/api/problems")
async def create_problem(
    problem_id: str = Form(...),
    title: str = Form(""),
    time_limit: int = Form(config.DEFAULT_TIME_LIMIT),
    memory_limit: int = Form(config.DEFAULT_MEMORY_LIMIT),
    score: int = Form(config.DEFAULT_SCORE),
    testcases: Optional[UploadFile] = File(None),
    session: AsyncSession = Depends(get_session)
):
    """Create a problem, optionally with a zip of paired fixture files"""
    if not PROBLEM_ID_RE.match(problem_id):
        raise HTTPException(400, "Invalid problem id")
    if time_limit <= 0 or score < 0:
        raise HTTPException(400, "Invalid time limit or score")
    if await session.get(Problem, problem_id):
        raise HTTPException(409, "Problem already exists")

    pairs = []
    if testcases:
        try:
            pairs = pairs_from_zip(await testcases.read())
        except FixtureImportError as e:
            raise HTTPException(400, f"Failed to extract test cases: {e}")

    session.add(Problem(
        id=problem_id,
        title=title,
        time_limit=time_limit,
        memory_limit=memory_limit,
        score=score
    ))
    await session.flush()
    test_count = await _import_pairs(session, problem_id, pairs)

    return {"success": True, "problem_id": problem_id, "test_case_count": test_count}

@app.get("/api/problems")
async def list_problems(session: AsyncSession = Depends(get_session)):
    """List all problems"""
    result = await session.execute(select(Problem).order_by(Problem.id))
    counts = await _test_case_counts(session)
    return [_problem_dict(p, counts.get(p.id, 0)) for p in result.scalars().all()]

@app.get("/api/problems/{problem_id}")
async def get_problem(problem_id: str, session: AsyncSession = Depends(get_session)):
    """Problem details with fixture names and sizes (never contents)"""
    problem = await _get_problem(session, problem_id)
    result = await session.execute(
        select(TestCase).where(TestCase.problem_id == problem_id).order_by(TestCase.ordinal)
    )
    tests = result.scalars().all()
    data = _problem_dict(problem, len(tests))
    data["testcases"] = [
        {
            "ordinal": t.ordinal,
            "input_name": t.input_name,
            "output_name": t.output_name,
            "input_size": t.input_size,
            "output_size": t.output_size
        }
        for t in tests
    ]
    return data

@app.post("/api/problems/{problem_id}/testcases")
async def add_testcase(
    problem_id: str,
    input_file: Optional[UploadFile] = File(None),
    output_file: Optional[UploadFile] = File(None),
    input_text: Optional[str] = Form(None),
    output_text: Optional[str] = Form(None),
    session: AsyncSession = Depends(get_session)
):
    """Add one test case from uploaded files or inline text"""
    await _get_problem(session, problem_id)

    if input_file:
        input_name, input_data = input_file.filename or "input", await input_file.read()
    elif input_text:
        input_name, input_data = "inline", input_text.encode("utf-8")
    else:
        raise HTTPException(400, "Need both input and output")
    if output_file:
        output_name, output_data = output_file.filename or "output", await output_file.read()
    elif output_text:
        output_name, output_data = "inline", output_text.encode("utf-8")
    else:
        raise HTTPException(400, "Need both input and output")

    count = await _import_pairs(session, problem_id,
                                [FixturePair(input_name, output_name, input_data, output_data)])
    return {"success": True, "problem_id": problem_id, "added": count}

@app.post("/api/problems/{problem_id}/import")
async def import_tests(
    problem_id: str,
    file: UploadFile = File(...),
    session: AsyncSession = Depends(get_session)
):
    """Import test cases from the ---TESTCASE--- / ---OUTPUT--- text format"""
    await _get_problem(session, problem_id)
    content = (await file.read()).decode("utf-8", errors="replace")
    count = await _import_pairs(session, problem_id, parse_text_bundle(content))
    return {"success": True, "problem_id": problem_id, "added": count}

@app.post("/api/problems/{problem_id}/bulk_import")
async def bulk_import(
    problem_id: str,
    dir_path: str = Form(...),
    session: AsyncSession = Depends(get_session)
):
    """Import every input/output pair found under a server-side directory"""
    await _get_problem(session, problem_id)
    resolved = Path(dir_path).resolve()
    if not resolved.is_relative_to(config.BULK_IMPORT_ROOT):
        raise HTTPException(400, f"Directory must be inside allowed root: {config.BULK_IMPORT_ROOT}")
    try:
        pairs = pairs_from_directory(resolved)
    except (FixtureImportError, OSError) as e:
        raise HTTPException(400, f"Directory not found or inaccessible: {e}")

    count = await _import_pairs(session, problem_id, pairs)
    logger.info("Imported %d test cases into %s from %s", count, problem_id, resolved)
    return {
        "success": True,
        "problem_id": problem_id,
        "added": count,
        "pairs": [{"input": p.input_name, "output": p.output_name} for p in pairs]
    }

# ===== Contest APIs =====

@app.post("/api/contests")
async def create_contest(
    title: str = Form(""),
    start: str = Form(...),
    end: str = Form(...),
    problem_ids: List[str] = Form([]),
    session: AsyncSession = Depends(get_session)
):
    """Create a contest; problems keep the order they are given in"""
    start_at, end_at = _parse_time(start), _parse_time(end)
    if end_at <= start_at:
        raise HTTPException(400, "Bad dates")
    for pid in problem_ids:
        await _get_problem(session, pid)

    contest = Contest(title=title, start_at=start_at, end_at=end_at)
    session.add(contest)
    await session.flush()
    for ordinal, pid in enumerate(problem_ids, 1):
        session.add(ContestProblem(contest_id=contest.id, problem_id=pid, ordinal=ordinal))
    await session.commit()

    return {"success": True, "contest_id": contest.id}

@app.get("/api/contests/{contest_id}")
async def get_contest(contest_id: int, session: AsyncSession = Depends(get_session)):
    contest = await _get_contest(session, contest_id)
    problems = await contest_problems(session, contest_id)
    return {
        "id": contest.id,
        "title": contest.title,
        "start_at": contest.start_at.isoformat(),
        "end_at": contest.end_at.isoformat(),
        "is_running": contest.running(),
        "problems": [{"id": p.id, "title": p.title, "score": p.score} for p in problems]
    }

@app.post("/api/contests/{contest_id}/register")
async def register(
    contest_id: int,
    contestant_id: str = Form(...),
    session: AsyncSession = Depends(get_session)
):
    await _get_contest(session, contest_id)
    existing = await session.execute(
        select(Registration).where(
            Registration.contest_id == contest_id,
            Registration.contestant_id == contestant_id
        )
    )
    if existing.scalars().first() is None:
        session.add(Registration(contest_id=contest_id, contestant_id=contestant_id))
        await session.commit()
    return {"success": True, "contest_id": contest_id, "contestant_id": contestant_id}

# ===== Submission APIs =====

@app.post("/api/contests/{contest_id}/problems/{problem_id}/submit")
async def submit(
    request: Request,
    contest_id: int,
    problem_id: str,
    contestant_id: str = Form(...),
    language: str = Form(...),
    code: str = Form(...),
    session: AsyncSession = Depends(get_session)
):
    """Submit code for judging"""
    contest = await _get_contest(session, contest_id)
    if not contest.running():
        raise HTTPException(403, "Contest not running")
    link = await session.get(ContestProblem, (contest_id, problem_id))
    if not link:
        raise HTTPException(404, "Problem not in contest")

    # Validate language
    if language not in config.LANGUAGES:
        raise HTTPException(400, f"Unsupported language. Available: {list(config.LANGUAGES.keys())}")

    pool: JudgePool = request.app.state.judge_pool
    if pool.full():
        raise HTTPException(503, "Judge queue is full, try again later")

    # Create submission
    submission = Submission(
        contest_id=contest_id,
        problem_id=problem_id,
        contestant_id=contestant_id,
        language=language,
        code=code,
        status=Verdict.JUDGING.value,
        created_at=utcnow()
    )
    session.add(submission)
    await session.commit()
    await session.refresh(submission)

    await pool.submit(submission.id)
    return {"submission_id": submission.id, "status": submission.status}


def _submission_dict(s: Submission, admin: bool = False) -> dict:
    hide = s.status == Verdict.SYSTEM_ERROR.value and not admin
    try:
        results = load_results(s.result_json)
    except ValidationError:
        logger.warning("Submission %s has an unreadable result list", s.id)
        results = None
    if results is not None:
        results = [r.model_dump(by_alias=True, mode="json") for r in results]
        if not admin:
            for r in results:
                if r["verdict"] == Verdict.SYSTEM_ERROR.value:
                    r["stderr"] = ""
    return {
        "id": s.id,
        "contest_id": s.contest_id,
        "problem_id": s.problem_id,
        "contestant_id": s.contestant_id,
        "language": s.language,
        "status": s.status,
        "score": s.score,
        "runtime_ms": s.runtime_ms,
        "message": SYSTEM_ERROR_MESSAGE if hide else s.message,
        "compile_output": s.compile_output,
        "results": results,
        "created_at": s.created_at.isoformat(),
        "judged_at": s.judged_at.isoformat() if s.judged_at else None
    }

@app.get("/api/submissions/{submission_id}")
async def get_submission(submission_id: int, session: AsyncSession = Depends(get_session)):
    """Get submission status and result"""
    submission = await session.get(Submission, submission_id)
    if not submission:
        raise HTTPException(404, "Submission not found")
    return _submission_dict(submission)

@app.get("/api/admin/submissions/{submission_id}", dependencies=[Depends(require_admin)])
async def get_submission_admin(submission_id: int, session: AsyncSession = Depends(get_session)):
    submission = await session.get(Submission, submission_id)
    if not submission:
        raise HTTPException(404, "Submission not found")
    return _submission_dict(submission, admin=True)

@app.get("/api/contests/{contest_id}/submissions")
async def list_submissions(
    contest_id: int,
    problem_id: Optional[str] = None,
    contestant_id: Optional[str] = None,
    limit: int = 200,
    session: AsyncSession = Depends(get_session)
):
    """List recent submissions of a contest"""
    query = (select(Submission).where(Submission.contest_id == contest_id)
             .order_by(Submission.created_at.desc(), Submission.id.desc()).limit(limit))
    if problem_id:
        query = query.where(Submission.problem_id == problem_id)
    if contestant_id:
        query = query.where(Submission.contestant_id == contestant_id)

    result = await session.execute(query)
    return [
        {
            "id": s.id,
            "problem_id": s.problem_id,
            "contestant_id": s.contestant_id,
            "language": s.language,
            "status": s.status,
            "score": s.score,
            "runtime_ms": s.runtime_ms,
            "created_at": s.created_at.isoformat()
        }
        for s in result.scalars().all()
    ]

# ===== Scoreboard =====

@app.get("/api/contests/{contest_id}/scoreboard")
async def scoreboard(contest_id: int, session: AsyncSession = Depends(get_session)):
    contest = await _get_contest(session, contest_id)
    problems = await contest_problems(session, contest_id)
    rows = await compute_scoreboard(session, contest_id)
    return {
        "contest_id": contest.id,
        "title": contest.title,
        "problems": [{"id": p.id, "title": p.title, "score": p.score} for p in problems],
        "rows": [row.to_dict() for row in rows]
    }

# ===== Config APIs =====

@app.get("/api/languages")
async def get_languages():
    """Get available languages"""
    return available_languages()


def run():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
