import hashlib
import io
import os
import re
import zipfile
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ojudge.config import FIXTURES_DIR
from ojudge.errors import FixtureImportError
from ojudge.models import TestCase

INPUT_EXTS = (".in", ".inp", ".input", ".txt")
OUTPUT_EXTS = (".ans", ".out", ".answer", ".expected", ".txt")

TESTCASE_SEPARATOR = re.compile(r"\n---TESTCASE---\n")
OUTPUT_SEPARATOR = re.compile(r"\n---OUTPUT---\n")


class FixturePair(NamedTuple):
    input_name: str
    output_name: str
    input_data: bytes
    output_data: bytes


class FixtureStore:
    """Content-addressed byte store; returned paths are relative to the root."""

    def __init__(self, root: Path = FIXTURES_DIR):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def put(self, data: bytes) -> Tuple[str, int]:
        digest = hashlib.sha256(data).hexdigest()
        rel = f"{digest[:2]}/{digest}"
        path = self.root / rel
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            # Atomic rename so concurrent readers never see a partial file
            tmp = path.with_suffix(f".{os.getpid()}.tmp")
            tmp.write_bytes(data)
            tmp.replace(path)
        return rel, len(data)

    def read(self, rel: str) -> bytes:
        return (self.root / rel).read_bytes()


def _natural_key(name: str):
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


def match_pairs(paths: Iterable[str]) -> List[Tuple[str, str]]:
    """Pair inputs with outputs sharing a filename stem.

    The first output candidate (in natural order) wins when several share a
    stem; a file is never paired with itself.
    """
    groups: Dict[str, Dict[str, List[str]]] = {}
    for p in sorted(paths, key=lambda p: _natural_key(PurePosixPath(p).name)):
        name = PurePosixPath(p).name
        stem, ext = os.path.splitext(name)
        ext = ext.lower()
        entry = groups.setdefault(stem, {"inputs": [], "outputs": []})
        if ext in INPUT_EXTS:
            entry["inputs"].append(p)
        if ext in OUTPUT_EXTS:
            entry["outputs"].append(p)

    pairs = []
    for stem in sorted(groups, key=_natural_key):
        entry = groups[stem]
        for inp in entry["inputs"]:
            out = next((o for o in entry["outputs"] if o != inp), None)
            if out is not None:
                pairs.append((inp, out))
    return pairs


def scan_directory(root: Path) -> List[str]:
    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            files.append(str(Path(dirpath) / name))
    return files


def pairs_from_directory(root: Path) -> List[FixturePair]:
    root = Path(root)
    if not root.is_dir():
        raise FixtureImportError(f"Not a directory: {root}")
    pairs = []
    for inp, out in match_pairs(p.replace(os.sep, "/") for p in scan_directory(root)):
        pairs.append(FixturePair(
            PurePosixPath(inp).name, PurePosixPath(out).name,
            Path(inp).read_bytes(), Path(out).read_bytes(),
        ))
    return pairs


def pairs_from_zip(data: bytes) -> List[FixturePair]:
    try:
        with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
            names = [n for n in zf.namelist() if not n.endswith("/")]
            return [
                FixturePair(PurePosixPath(inp).name, PurePosixPath(out).name,
                            zf.read(inp), zf.read(out))
                for inp, out in match_pairs(names)
            ]
    except zipfile.BadZipFile as e:
        raise FixtureImportError(f"Bad zip archive: {e}") from e


def parse_text_bundle(content: str) -> List[FixturePair]:
    """Split the ``---TESTCASE---`` / ``---OUTPUT---`` text format into pairs."""
    pairs = []
    for block in TESTCASE_SEPARATOR.split(content.replace("\r", "")):
        parts = OUTPUT_SEPARATOR.split(block)
        if len(parts) != 2:
            continue
        pairs.append(FixturePair("imported", "imported",
                                 parts[0].encode("utf-8"), parts[1].encode("utf-8")))
    return pairs


async def add_test_cases(session: AsyncSession, problem_id: str, pairs: Iterable[FixturePair],
                         store: Optional[FixtureStore] = None) -> List[TestCase]:
    """Store fixture bytes and append TestCase rows after the existing ones."""
    store = store or FixtureStore()
    last = await session.scalar(
        select(func.max(TestCase.ordinal)).where(TestCase.problem_id == problem_id)
    )
    ordinal = last or 0
    created = []
    for pair in pairs:
        ordinal += 1
        input_path, input_size = store.put(pair.input_data)
        output_path, output_size = store.put(pair.output_data)
        test = TestCase(
            problem_id=problem_id,
            ordinal=ordinal,
            input_path=input_path,
            output_path=output_path,
            input_name=pair.input_name,
            output_name=pair.output_name,
            input_size=input_size,
            output_size=output_size,
        )
        session.add(test)
        created.append(test)
    await session.flush()
    return created
