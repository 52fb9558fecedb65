import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _as_bool(raw: str, default: bool) -> bool:
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    # SQLite is for local runs only; row locks need PostgreSQL or MySQL
    DATABASE_URL: str = "sqlite:///taskledger.db"
    ADMIN_API_KEY: str = ""
    SCHEDULER_ENABLED: bool = True
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            DATABASE_URL=os.getenv("DATABASE_URL", "sqlite:///taskledger.db"),
            ADMIN_API_KEY=os.getenv("ADMIN_API_KEY", ""),
            SCHEDULER_ENABLED=_as_bool(os.getenv("SCHEDULER_ENABLED"), True),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").upper(),
            CORS_ORIGINS=origins or ["*"],
        )


settings = Settings.from_env()
