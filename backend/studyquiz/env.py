# Environment loading helpers.
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Repo-root .env shared by the API and local scripts.
DEFAULT_DOTENV = Path(__file__).resolve().parents[2] / ".env"


# Load .env values without overriding variables already set in the process.
def load_environment(dotenv_path: Optional[str] = None) -> bool:
    path = dotenv_path or DEFAULT_DOTENV
    return load_dotenv(dotenv_path=path, override=False)
