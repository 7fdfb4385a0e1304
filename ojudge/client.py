"""
Remote submitter - submits sources to a running judge over HTTP and waits
for the verdicts. Supports batch submission with bounded concurrency.
"""
import argparse
import asyncio
import time
from pathlib import Path
from typing import Dict, List, Optional

import aiohttp
from tqdm import tqdm

TERMINAL_STATUSES = {"AC", "WA", "TLE", "RE", "CE", "SystemError"}


class RemoteSubmitter:
    def __init__(self, base_url: str = "http://localhost:8000", max_workers: int = 4,
                 poll_interval: float = 0.5, timeout: float = 300):
        """
        Args:
            base_url: judge server address
            max_workers: maximum number of submissions in flight
            poll_interval: seconds between status queries
            timeout: give up waiting for a verdict after this many seconds
        """
        self.base_url = base_url.rstrip("/")
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self.timeout = timeout

    def submit_url(self, contest_id: int, problem_id: str) -> str:
        return f"{self.base_url}/api/contests/{contest_id}/problems/{problem_id}/submit"

    def query_url(self, submission_id: int) -> str:
        return f"{self.base_url}/api/submissions/{submission_id}"

    async def submit(
        self,
        session: aiohttp.ClientSession,
        contest_id: int,
        problem_id: str,
        contestant_id: str,
        code: str,
        language: str = "cpp"
    ) -> Dict:
        """
        Submit one source and poll until its verdict is terminal.

        Returns:
            result dict with ``success``, ``verdict``, ``score``, ``runtime_ms``
        """
        data = aiohttp.FormData()
        data.add_field("contestant_id", contestant_id)
        data.add_field("language", language)
        data.add_field("code", code)

        try:
            async with session.post(self.submit_url(contest_id, problem_id), data=data) as response:
                body = await response.json()
                if response.status != 200:
                    return _failure(f"Submit rejected ({response.status}): {body.get('detail', '')}")
                submission_id = body["submission_id"]
        except (aiohttp.ClientError, KeyError, ValueError) as e:
            return _failure(f"Submit failed: {e}")

        start_time = time.monotonic()
        while True:
            try:
                async with session.get(self.query_url(submission_id)) as response:
                    result = await response.json()
            except (aiohttp.ClientError, ValueError) as e:
                return _failure(f"Query failed: {e}", submission_id)

            status = result.get("status")
            if status in TERMINAL_STATUSES:
                return {
                    "success": True,
                    "submission_id": submission_id,
                    "verdict": status,
                    "score": result.get("score", 0),
                    "runtime_ms": result.get("runtime_ms", 0),
                    "message": result.get("message", ""),
                    "passed": status == "AC",
                    "total_time": time.monotonic() - start_time,
                }
            if time.monotonic() - start_time > self.timeout:
                return _failure("Timed out waiting for verdict", submission_id)
            await asyncio.sleep(self.poll_interval)

    async def batch_submit(
        self,
        contest_id: int,
        problem_id: str,
        contestant_id: str,
        sources: List[str],
        language: str = "cpp",
        progress: bool = True
    ) -> Dict:
        """
        Submit many sources concurrently.

        Returns:
            dict with per-source ``results`` (in input order), ``accepted``
            count, ``errors`` count and ``acceptance_rate`` over valid runs
        """
        semaphore = asyncio.Semaphore(self.max_workers)

        async with aiohttp.ClientSession() as session:
            with tqdm(total=len(sources), desc=f"Submitting {problem_id}", disable=not progress) as pbar:
                async def one(code: str) -> Dict:
                    async with semaphore:
                        result = await self.submit(session, contest_id, problem_id,
                                                   contestant_id, code, language)
                    pbar.update(1)
                    return result

                results = await asyncio.gather(*(one(code) for code in sources))

        errors = sum(1 for r in results if not r["success"])
        accepted = sum(1 for r in results if r["success"] and r["verdict"] == "AC")
        valid = len(results) - errors
        return {
            "results": list(results),
            "accepted": accepted,
            "errors": errors,
            "acceptance_rate": accepted / valid if valid else 0.0,
        }


def _failure(message: str, submission_id: Optional[int] = None) -> Dict:
    return {
        "success": False,
        "submission_id": submission_id,
        "verdict": "SystemError",
        "score": 0,
        "runtime_ms": 0,
        "message": message,
        "passed": False,
    }


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Submit source files to an ojudge server")
    parser.add_argument("files", nargs="+", type=Path)
    parser.add_argument("--url", default="http://localhost:8000")
    parser.add_argument("--contest", type=int, required=True)
    parser.add_argument("--problem", required=True)
    parser.add_argument("--contestant", required=True)
    parser.add_argument("--language", default="cpp")
    parser.add_argument("--workers", type=int, default=4)
    args = parser.parse_args(argv)

    sources = [f.read_text(encoding="utf-8") for f in args.files]
    submitter = RemoteSubmitter(args.url, max_workers=args.workers)
    summary = asyncio.run(submitter.batch_submit(
        args.contest, args.problem, args.contestant, sources, args.language
    ))

    for path, result in zip(args.files, summary["results"]):
        print(f"{path}: {result['verdict']} score={result['score']} time={result['runtime_ms']}ms")
        if not result["success"]:
            print(f"  {result['message']}")
    print(f"Accepted: {summary['accepted']}/{len(sources)}, errors: {summary['errors']}")


if __name__ == "__main__":
    main()
