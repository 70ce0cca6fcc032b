"""
Configuration - env vars, constants, API key setup.
"""

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
import google.generativeai as genai

ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

# Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("grader")

# Document store
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "activity_grader")

# ============ AI JUDGE ============
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY")
JUDGE_MODEL = os.environ.get("JUDGE_MODEL", "gemini-2.5-flash")
JUDGE_TIMEOUT_SECONDS = float(os.environ.get("JUDGE_TIMEOUT_SECONDS", "60"))
JUDGE_MAX_RETRIES = int(os.environ.get("JUDGE_MAX_RETRIES", "2"))

# a submit claim older than this is treated as abandoned by a dead worker
SUBMIT_CLAIM_TIMEOUT_SECONDS = float(os.environ.get("SUBMIT_CLAIM_TIMEOUT_SECONDS", "900"))

if not GEMINI_API_KEY:
    logger.warning("⚠️ No GEMINI_API_KEY found - AI grading will be left for manual review")
else:
    genai.configure(api_key=GEMINI_API_KEY)

# ============ CODE EXECUTION ============
PISTON_URL = os.environ.get("PISTON_URL", "https://emkc.org/api/v2/piston/execute")
EXECUTION_TIMEOUT_SECONDS = float(os.environ.get("EXECUTION_TIMEOUT_SECONDS", "15"))
MAX_CONCURRENT_EXECUTIONS = int(os.environ.get("MAX_CONCURRENT_EXECUTIONS", "4"))
DEFAULT_LANGUAGE = os.environ.get("DEFAULT_LANGUAGE", "java")

# Piston pins java, everything else floats to the latest installed runtime
LANGUAGE_VERSIONS = {
    "java": "15.0.2",
}

# Entry-point file names help Piston pick the main class/module
LANGUAGE_FILE_NAMES = {
    "java": "Main.java",
    "python": "main.py",
    "c": "main.c",
    "c++": "main.cpp",
    "cpp": "main.cpp",
    "javascript": "main.js",
}


def get_llm_api_key():
    """Get the LLM API key from environment variables."""
    return GEMINI_API_KEY


def get_language_version(language: str) -> str:
    return LANGUAGE_VERSIONS.get(language, "*")


def get_version_info():
    """Get deployment version information."""
    git_commit = os.environ.get("GIT_COMMIT_SHA")
    if not git_commit:
        try:
            if os.path.exists(".git_commit"):
                with open(".git_commit", "r") as f:
                    git_commit = f.read().strip()
        except OSError as e:
            logger.warning(f"Could not read .git_commit: {e}")

    if not git_commit:
        git_commit = "unknown"

    build_time = os.environ.get("BUILD_TIME", "unknown")
    env = os.environ.get("ENV", os.environ.get("ENVIRONMENT", "development"))

    return {
        "git_commit": git_commit,
        "build_time": build_time,
        "environment": env
    }
