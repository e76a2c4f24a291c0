"""Configuration and asset lookup for the food classifier service."""
import os
import logging
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()

logger = logging.getLogger(__name__)

MODULE_DIR = Path(__file__).resolve().parent

MODEL_FILENAME = "model.onnx"
CLASS_NAMES_FILENAME = "class_names.json"


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration from environment variables."""

    MODEL_PATH: Optional[str] = os.getenv("MODEL_PATH") or None
    CLASS_NAMES_PATH: Optional[str] = os.getenv("CLASS_NAMES_PATH") or None
    LABEL_SCAN_MODEL_BYTES: bool = _env_flag("LABEL_SCAN_MODEL_BYTES", True)

    API_KEY: Optional[str] = os.getenv("API_KEY") or None
    PORT: int = int(os.getenv("PORT", "3000"))
    START_PINGER: bool = _env_flag("START_PINGER", False)
    SERVER_URL: Optional[str] = os.getenv("SERVER_URL") or None
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


config = Config()


def _candidate_paths(filename: str) -> List[Path]:
    cwd = Path.cwd()
    return [
        MODULE_DIR / filename,
        MODULE_DIR / "models" / filename,
        cwd / "models" / filename,
        cwd / filename,
    ]


def _exists(path: Path) -> bool:
    try:
        return path.is_file()
    except OSError:
        return False


def resolve_asset_path(filename: str) -> Path:
    """
    Find an asset next to the service modules or under the working directory.

    Returns the first candidate that exists, or the path next to the modules
    when none do. Callers are expected to handle a missing file.
    """
    candidates = _candidate_paths(filename)
    for candidate in candidates:
        if _exists(candidate):
            return candidate
    logger.debug(f"Asset {filename} not found in {[str(c) for c in candidates]}")
    return candidates[0]


def get_model_path() -> Path:
    if config.MODEL_PATH:
        return Path(config.MODEL_PATH)
    return resolve_asset_path(MODEL_FILENAME)


def get_class_names_path() -> Path:
    if config.CLASS_NAMES_PATH:
        return Path(config.CLASS_NAMES_PATH)
    return resolve_asset_path(CLASS_NAMES_FILENAME)
