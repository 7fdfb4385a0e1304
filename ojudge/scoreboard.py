"""Contest standings, recomputed from submission records on every read.

Ranking is by total score (descending), then total penalty (ascending).
Penalty for a solved problem is the whole seconds from contest start to the
first accepted submission plus a fixed cost per earlier non-CE attempt.
"""
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ojudge.config import PENALTY_PER_WRONG_ATTEMPT
from ojudge.models import Contest, ContestProblem, Problem, Registration, Submission, Verdict

CELL_AC = "ac"
CELL_TRIED = "tried"
CELL_EMPTY = "empty"


def format_penalty(seconds: int) -> str:
    """MM:SS with no hour rollover."""
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


@dataclass
class Cell:
    problem_id: str
    status: str = CELL_EMPTY
    score: int = 0
    tries: int = 0
    penalty: int = 0
    pending: int = 0  # submissions still judging

    @property
    def display(self) -> str:
        if self.status == CELL_AC:
            return f"{self.score} ({self.tries})" if self.tries else f"{self.score}"
        if self.status == CELL_TRIED:
            return f"({self.tries})"
        return "?" if self.pending else "-"

    def to_dict(self) -> dict:
        return {
            "problem_id": self.problem_id,
            "status": self.status,
            "score": self.score,
            "tries": self.tries,
            "penalty": self.penalty,
            "pending": self.pending,
            "display": self.display,
        }


@dataclass
class ScoreboardRow:
    contestant_id: str
    cells: List[Cell] = field(default_factory=list)
    total_score: int = 0
    total_penalty: int = 0
    rank: int = 0

    @property
    def penalty_display(self) -> str:
        return format_penalty(self.total_penalty)

    def to_dict(self) -> dict:
        return {
            "rank": self.rank,
            "contestant_id": self.contestant_id,
            "total_score": self.total_score,
            "total_penalty": self.total_penalty,
            "penalty_display": self.penalty_display,
            "cells": [cell.to_dict() for cell in self.cells],
        }


def build_cell(problem_id: str, weight: int, submissions: Iterable[Submission],
               contest_start: datetime) -> Cell:
    """Scan one contestant's submissions on one problem in creation order."""
    cell = Cell(problem_id)
    tries = 0
    for sub in submissions:
        if sub.status == Verdict.JUDGING.value:
            cell.pending += 1
            continue
        if sub.status == Verdict.COMPILE_ERROR.value:
            continue
        if sub.status == Verdict.ACCEPTED.value:
            elapsed = max(0, math.floor((sub.created_at - contest_start).total_seconds()))
            cell.status = CELL_AC
            cell.score = weight
            cell.tries = tries
            cell.penalty = elapsed + tries * PENALTY_PER_WRONG_ATTEMPT
            return cell
        tries += 1
    if tries:
        cell.status = CELL_TRIED
        cell.tries = tries
    return cell


def build_scoreboard(contest_start: datetime, problems: Sequence[Tuple[str, int]],
                     contestants: Sequence[str], submissions: Iterable[Submission]) -> List[ScoreboardRow]:
    """Rank ``contestants`` over ``problems`` given as (problem id, score weight)."""
    by_pair: Dict[Tuple[str, str], List[Submission]] = defaultdict(list)
    for sub in sorted(submissions, key=lambda s: (s.created_at, s.id or 0)):
        by_pair[(sub.contestant_id, sub.problem_id)].append(sub)

    rows = []
    for contestant_id in contestants:
        row = ScoreboardRow(contestant_id)
        for problem_id, weight in problems:
            cell = build_cell(problem_id, weight, by_pair.get((contestant_id, problem_id), ()), contest_start)
            row.cells.append(cell)
            if cell.status == CELL_AC:
                row.total_score += cell.score
                row.total_penalty += cell.penalty
        rows.append(row)

    rows.sort(key=lambda r: (-r.total_score, r.total_penalty))
    for position, row in enumerate(rows, 1):
        prev = rows[position - 2] if position > 1 else None
        if prev and (prev.total_score, prev.total_penalty) == (row.total_score, row.total_penalty):
            row.rank = prev.rank
        else:
            row.rank = position
    return rows


async def contest_problems(session: AsyncSession, contest_id: int) -> List[Problem]:
    result = await session.execute(
        select(Problem)
        .join(ContestProblem, ContestProblem.problem_id == Problem.id)
        .where(ContestProblem.contest_id == contest_id)
        .order_by(ContestProblem.ordinal)
    )
    return list(result.scalars().all())


async def contest_contestants(session: AsyncSession, contest_id: int) -> List[str]:
    """Registered contestants, or everyone who submitted when nobody registered."""
    result = await session.execute(
        select(Registration.contestant_id)
        .where(Registration.contest_id == contest_id)
        .order_by(Registration.created_at, Registration.id)
    )
    contestants = list(result.scalars().all())
    if contestants:
        return contestants

    result = await session.execute(
        select(Submission.contestant_id)
        .where(Submission.contest_id == contest_id)
        .order_by(Submission.created_at, Submission.id)
    )
    return list(dict.fromkeys(result.scalars().all()))


async def compute_scoreboard(session: AsyncSession, contest_id: int) -> List[ScoreboardRow]:
    contest = await session.get(Contest, contest_id)
    if contest is None:
        raise LookupError(f"Contest {contest_id} not found")
    problems = await contest_problems(session, contest_id)
    contestants = await contest_contestants(session, contest_id)
    result = await session.execute(select(Submission).where(Submission.contest_id == contest_id))
    return build_scoreboard(
        contest.start_at,
        [(p.id, p.score) for p in problems],
        contestants,
        result.scalars().all(),
    )
