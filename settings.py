import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

ROOT_DIR = Path(__file__).resolve().parent


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


DEFAULT_FONT_FAMILY: str = os.environ.get("DEFAULT_FONT_FAMILY", "Helvetica")
# Reject unknown font families instead of silently falling back.
STRICT_FONT_FAMILIES: bool = _env_flag("STRICT_FONT_FAMILIES")

SOFFICE_BINARY: str = os.environ.get("SOFFICE_BINARY", "")
CONVERSION_TIMEOUT: float = float(os.environ.get("CONVERSION_TIMEOUT", "60"))

OUTPUT_DIR: Path = Path(os.environ.get("OUTPUT_DIR", str(ROOT_DIR / "out")))

CORS_ORIGINS: list[str] = [
    origin.strip()
    for origin in os.environ.get(
        "CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
    ).split(",")
    if origin.strip()
]
