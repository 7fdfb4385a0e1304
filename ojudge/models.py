from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from datetime import datetime, timezone
import enum

from ojudge.config import DATABASE_URL

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Verdict(str, enum.Enum):
    JUDGING = "judging"
    ACCEPTED = "AC"
    WRONG_ANSWER = "WA"
    TIME_LIMIT = "TLE"
    RUNTIME_ERROR = "RE"
    COMPILE_ERROR = "CE"
    SYSTEM_ERROR = "SystemError"


TERMINAL_VERDICTS = frozenset(v for v in Verdict if v is not Verdict.JUDGING)


class Contest(Base):
    __tablename__ = "contests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(256), default="")
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)

    def running(self, now: datetime = None) -> bool:
        now = now or utcnow()
        return self.start_at <= now <= self.end_at


class Problem(Base):
    __tablename__ = "problems"

    id = Column(String(64), primary_key=True)
    title = Column(String(256), default="")
    time_limit = Column(Integer, default=2000)  # ms
    memory_limit = Column(Integer, default=256)  # MB
    score = Column(Integer, default=100)
    created_at = Column(DateTime, default=utcnow)


class TestCase(Base):
    __tablename__ = "testcases"
    __test__ = False  # keep pytest from collecting the model

    id = Column(Integer, primary_key=True, autoincrement=True)
    problem_id = Column(String(64), ForeignKey("problems.id"), nullable=False, index=True)
    ordinal = Column(Integer, nullable=False)
    input_path = Column(String(512), nullable=False)
    output_path = Column(String(512), nullable=False)
    input_name = Column(String(256), default="")
    output_name = Column(String(256), default="")
    input_size = Column(Integer, default=0)
    output_size = Column(Integer, default=0)


class ContestProblem(Base):
    __tablename__ = "contest_problems"

    contest_id = Column(Integer, ForeignKey("contests.id"), primary_key=True)
    problem_id = Column(String(64), ForeignKey("problems.id"), primary_key=True)
    ordinal = Column(Integer, nullable=False)


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (UniqueConstraint("contest_id", "contestant_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    contest_id = Column(Integer, ForeignKey("contests.id"), nullable=False)
    contestant_id = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Submission(Base):
    __tablename__ = "submissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contest_id = Column(Integer, ForeignKey("contests.id"), nullable=False, index=True)
    problem_id = Column(String(64), nullable=False)
    contestant_id = Column(String(64), nullable=False)
    language = Column(String(16), nullable=False)
    code = Column(Text, nullable=False)
    status = Column(String(32), default=Verdict.JUDGING.value)
    score = Column(Integer, default=0)
    runtime_ms = Column(Integer, default=0)  # max over tests
    message = Column(Text, default="")
    compile_output = Column(Text, nullable=True)
    result_json = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    judged_at = Column(DateTime, nullable=True)


class Attempt(Base):
    __tablename__ = "attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contest_id = Column(Integer, nullable=False, index=True)
    contestant_id = Column(String(64), nullable=False)
    problem_id = Column(String(64), nullable=False)
    submission_id = Column(Integer, nullable=False)
    is_accepted = Column(Boolean, default=False)
    is_compile_error = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)


async def init_db(bind=None):
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def get_session():
    async with async_session() as session:
        yield session
