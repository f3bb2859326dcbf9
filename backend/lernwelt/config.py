"""
Configuration - Centralized settings management
"""
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel
from dotenv import load_dotenv

# Load backend/.env if present
_backend_env = Path(__file__).parent.parent / ".env"
if _backend_env.exists():
    load_dotenv(_backend_env)


REPOSITORY_TYPES = ("local", "sqlite", "supabase")


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


class AppConfig(BaseModel):
    """Application configuration with environment variable support"""

    # Paths
    data_dir: Path = Path("data")
    sqlite_path: Optional[Path] = None  # defaults to <data_dir>/lernwelt.sqlite3
    local_store_dir: Optional[Path] = None  # defaults to <data_dir>/objects

    # Storage backend: "local", "sqlite" or "supabase"
    repository_type: str = "sqlite"
    # Backend holding data from an earlier install; migrated once into repository_type
    legacy_repository_type: Optional[str] = None

    # Remote store
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_bucket: str = "tasks-media"

    # Audio
    audio_cache_capacity: int = 50
    audio_sample_rate: int = 24000

    # AI Configuration
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    analysis_model: str = "gemini-3-flash-preview"
    tts_model: str = "gemini-2.5-flash-preview-tts"
    tts_voice: str = "Kore"
    ai_timeout: float = 60.0
    ai_max_retries: int = 3

    # Generate mock tasks instead of calling the analysis provider
    test_mode: bool = False

    log_level: str = "INFO"

    @property
    def resolved_sqlite_path(self) -> Path:
        return self.sqlite_path or (self.data_dir / "lernwelt.sqlite3")

    @property
    def resolved_local_store_dir(self) -> Path:
        return self.local_store_dir or (self.data_dir / "objects")

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Load configuration from environment variables"""
        sqlite_path = _optional("LERNWELT_SQLITE_PATH")
        local_dir = _optional("LERNWELT_LOCAL_STORE_DIR")
        return cls(
            data_dir=Path(os.getenv("LERNWELT_DATA_DIR", "data")),
            sqlite_path=Path(sqlite_path) if sqlite_path else None,
            local_store_dir=Path(local_dir) if local_dir else None,
            repository_type=os.getenv("LERNWELT_REPOSITORY", "sqlite").strip().lower(),
            legacy_repository_type=(_optional("LERNWELT_LEGACY_REPOSITORY") or "").lower() or None,
            supabase_url=os.getenv("LERNWELT_SUPABASE_URL", ""),
            supabase_key=os.getenv("LERNWELT_SUPABASE_KEY", ""),
            supabase_bucket=os.getenv("LERNWELT_SUPABASE_BUCKET", "tasks-media"),
            audio_cache_capacity=int(os.getenv("LERNWELT_AUDIO_CACHE_CAPACITY", "50")),
            audio_sample_rate=int(os.getenv("LERNWELT_AUDIO_SAMPLE_RATE", "24000")),
            gemini_api_key=os.getenv("LERNWELT_GEMINI_API_KEY", ""),
            gemini_base_url=os.getenv(
                "LERNWELT_GEMINI_BASE_URL",
                "https://generativelanguage.googleapis.com/v1beta",
            ),
            analysis_model=os.getenv("LERNWELT_ANALYSIS_MODEL", "gemini-3-flash-preview"),
            tts_model=os.getenv("LERNWELT_TTS_MODEL", "gemini-2.5-flash-preview-tts"),
            tts_voice=os.getenv("LERNWELT_TTS_VOICE", "Kore"),
            ai_timeout=float(os.getenv("LERNWELT_AI_TIMEOUT", "60.0")),
            ai_max_retries=int(os.getenv("LERNWELT_AI_MAX_RETRIES", "3")),
            test_mode=os.getenv("LERNWELT_TEST_MODE", "0") == "1",
            log_level=os.getenv("LERNWELT_LOG_LEVEL", "INFO").upper(),
        )


# Global config instance
config = AppConfig.from_env()
