from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parents[1]


@dataclass(frozen=True)
class AppConfig:
    data_dir: Path
    log_level: str = "INFO"
    generation_timeout_s: float = 60.0
    proposal_timeout_s: float = 45.0
    default_language: str = "ar"
    frontend_port: str = "5173"

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            data_dir=Path(os.getenv("THERASTORY_DATA_DIR", str(BACKEND_DIR.parent / "data"))),
            log_level=os.getenv("THERASTORY_LOG_LEVEL", "INFO").upper(),
            generation_timeout_s=float(os.getenv("THERASTORY_GENERATION_TIMEOUT_S", "60")),
            proposal_timeout_s=float(os.getenv("THERASTORY_PROPOSAL_TIMEOUT_S", "45")),
            default_language=os.getenv("THERASTORY_DEFAULT_LANGUAGE", "ar"),
            frontend_port=os.getenv("THERASTORY_FRONTEND_PORT", "5173"),
        )
