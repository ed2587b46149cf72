from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


@dataclass
class Settings:
    google_api_key: str | None = os.environ.get("GOOGLE_API_KEY")
    gemini_model: str = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")
    gemini_base_url: str = os.environ.get("GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL)
    upstream_timeout_seconds: float = 60.0
    system_instruction_path: str | None = os.environ.get("SYSTEM_INSTRUCTION_PATH")
    session_store: str = os.environ.get("SESSION_STORE", "memory")
    mongo_uri: str = os.environ.get("MONGO_URI", "mongodb://localhost:27017")
    mongo_db: str = os.environ.get("MONGO_DB", "advisor")
    mongo_session_collection: str = os.environ.get(
        "MONGO_SESSION_COLLECTION", "chat_sessions"
    )
    host: str = os.environ.get("HOST", "0.0.0.0")
    port: int = 3001
    log_level: str = os.environ.get("LOG_LEVEL", "INFO")

    def __post_init__(self) -> None:
        configured_port = os.environ.get("PORT")
        if configured_port:
            try:
                parsed_port = int(configured_port)
            except ValueError:
                parsed_port = self.port
            if 0 < parsed_port < 65536:
                self.port = parsed_port

        configured_timeout = os.environ.get("UPSTREAM_TIMEOUT_SECONDS")
        if configured_timeout:
            try:
                parsed_timeout = float(configured_timeout)
            except ValueError:
                parsed_timeout = self.upstream_timeout_seconds
            else:
                if parsed_timeout > 0:
                    self.upstream_timeout_seconds = parsed_timeout

        self.session_store = self.session_store.strip().lower() or "memory"
        self.log_level = self.log_level.strip().upper() or "INFO"


settings = Settings()
