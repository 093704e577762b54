from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import os

from dotenv import load_dotenv


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class TrackerSettings:
    use_inmemory: bool = True
    project: Optional[str] = None
    emulator_host: Optional[str] = None
    games_collection: str = "games"
    matches_collection: str = "matches"
    code_length: int = 6
    code_attempts: int = 5
    conditional_writes: bool = False

    @classmethod
    def from_env(cls, env_file: Optional[Path] = Path(".env.local")) -> "TrackerSettings":
        if env_file is not None:
            load_dotenv(dotenv_path=env_file)
        return cls(
            use_inmemory=_flag("USE_INMEMORY", "1"),
            project=os.getenv("GOOGLE_CLOUD_PROJECT"),
            emulator_host=os.getenv("FIRESTORE_EMULATOR_HOST"),
            games_collection=os.getenv("TRACKER_GAMES_COLLECTION", "games"),
            matches_collection=os.getenv("TRACKER_MATCHES_COLLECTION", "matches"),
            code_length=int(os.getenv("TRACKER_CODE_LENGTH", "6")),
            code_attempts=int(os.getenv("TRACKER_CODE_ATTEMPTS", "5")),
            conditional_writes=_flag("TRACKER_CONDITIONAL_WRITES", "0"),
        )
