"""Environment-driven settings and logging setup."""

import logging
import os
from pathlib import Path
from typing import NamedTuple

from dotenv import load_dotenv


PROJECT_DIR = Path(__file__).resolve().parent.parent
DEFAULT_DB_PATH = PROJECT_DIR / "study_data.db"
DEFAULT_UPLOADS_DIR = PROJECT_DIR / "uploads"
DEFAULT_MODEL = "gemini-1.5-flash"
DEFAULT_PORT = 3000
STORE_BACKENDS = {"sqlite", "firestore"}
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Load env vars from project .env and user home .env if present.
load_dotenv(PROJECT_DIR / ".env")
load_dotenv(Path.home() / ".env")


def get_env(name: str, default: str = "") -> str:
    raw = os.environ.get(name, default) or default
    return raw.strip().strip('"').strip("'")


class Config(NamedTuple):
    google_api_key: str = ""
    gemini_model: str = DEFAULT_MODEL
    generator_timeout: int = 120
    store_backend: str = "sqlite"
    db_path: Path = DEFAULT_DB_PATH
    firebase_credentials: str = ""
    uploads_dir: Path = DEFAULT_UPLOADS_DIR
    public_base_url: str = f"http://localhost:{DEFAULT_PORT}"
    port: int = DEFAULT_PORT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        port = int(get_env("PORT", str(DEFAULT_PORT)))
        backend = get_env("STORE_BACKEND", "sqlite").lower()
        if backend not in STORE_BACKENDS:
            raise ValueError(f"STORE_BACKEND must be one of {sorted(STORE_BACKENDS)}.")
        return cls(
            google_api_key=get_env("GOOGLE_API_KEY"),
            gemini_model=get_env("GEMINI_MODEL", DEFAULT_MODEL),
            generator_timeout=int(get_env("GENERATOR_TIMEOUT", "120")),
            store_backend=backend,
            db_path=Path(get_env("DB_PATH", str(DEFAULT_DB_PATH))).expanduser(),
            firebase_credentials=get_env("FIREBASE_CREDENTIALS"),
            uploads_dir=Path(get_env("UPLOADS_DIR", str(DEFAULT_UPLOADS_DIR))).expanduser(),
            public_base_url=get_env("PUBLIC_BASE_URL", f"http://localhost:{port}").rstrip("/"),
            port=port,
            log_level=get_env("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
