import os
from pathlib import Path

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("OJUDGE_DATA_DIR", str(BASE_DIR / "data")))
FIXTURES_DIR = DATA_DIR / "fixtures"
WORK_DIR = DATA_DIR / "runs"

# Create directories
FIXTURES_DIR.mkdir(parents=True, exist_ok=True)
WORK_DIR.mkdir(parents=True, exist_ok=True)

GXX = os.getenv("OJUDGE_GXX", "g++")
GCC = os.getenv("OJUDGE_GCC", "gcc")
PYTHON = os.getenv("OJUDGE_PYTHON", "python3")

# Language configurations
LANGUAGES = {
    "cpp": {
        "compiler": GXX,
        "args": ["-std=c++17", "-O2"],
        "libs": ["-lm"],
        "source": "main.cpp",
    },
    "c++20": {
        "compiler": GXX,
        "args": ["-std=c++20", "-O2"],
        "libs": ["-lm"],
        "source": "main.cpp",
    },
    "c": {
        "compiler": GCC,
        "args": ["-std=c11", "-O2"],
        "libs": ["-lm"],
        "source": "main.c",
    },
    "python": {
        "interpreter": PYTHON,
        "source": "main.py",
    },
}

# Judge settings
MAX_CONCURRENT_JUDGES = int(os.getenv("OJUDGE_MAX_CONCURRENT_JUDGES", "4"))
JUDGE_QUEUE_SIZE = int(os.getenv("OJUDGE_JUDGE_QUEUE_SIZE", "256"))
DEFAULT_TIME_LIMIT = 2000  # ms
DEFAULT_MEMORY_LIMIT = 256  # MB, informational only
DEFAULT_SCORE = 100
TIME_LIMIT_MARGIN = 1.1  # kill timer armed at ceil(limit * margin)
COMPILE_TIMEOUT = int(os.getenv("OJUDGE_COMPILE_TIMEOUT", "30000"))  # ms
PENALTY_PER_WRONG_ATTEMPT = 300  # seconds
MAX_DIAGNOSTIC_LENGTH = 10000
MAX_STDERR_LENGTH = 2000

# Server-side directory imports must stay inside this root
BULK_IMPORT_ROOT = Path(os.getenv("OJUDGE_BULK_ROOT", os.getcwd())).resolve()

ADMIN_TOKEN = os.getenv("OJUDGE_ADMIN_TOKEN", "")
LOG_LEVEL = os.getenv("OJUDGE_LOG_LEVEL", "INFO")

# Database
DATABASE_URL = os.getenv("OJUDGE_DATABASE_URL", f"sqlite+aiosqlite:///{DATA_DIR}/ojudge.db")
