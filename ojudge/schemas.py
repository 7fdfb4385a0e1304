"""Versioned serialization of per-test results stored on a submission.

Captured stdout is never part of the schema; only the comparison outcome
survives judging.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ojudge.models import Verdict

RESULT_SCHEMA_VERSION = 1


class TestResult(BaseModel):
    __test__ = False

    model_config = ConfigDict(populate_by_name=True)

    index: int = Field(ge=1)
    verdict: Verdict
    runtime_ms: int = Field(default=0, alias="runtimeMs")
    stderr: str = ""


class TestReport(BaseModel):
    __test__ = False

    version: Literal[1] = RESULT_SCHEMA_VERSION
    results: List[TestResult] = []


def dump_results(results: Optional[List[TestResult]]) -> Optional[str]:
    if results is None:
        return None
    return TestReport(results=results).model_dump_json(by_alias=True)


def load_results(raw: Optional[str]) -> Optional[List[TestResult]]:
    """Decode a stored result list; raises ValidationError on unknown versions."""
    if not raw:
        return None
    return TestReport.model_validate_json(raw).results
