import os
from typing import List, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError


class Config:
    SESSION_COOKIE_NAME = "splitledger_session"
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        env = os.environ if environ is None else environ

        # No fallback: a guessable default would let anyone forge sessions
        self.SECRET_KEY = env.get("SECRET_KEY")
        if not self.SECRET_KEY:
            raise ConfigError("SECRET_KEY must be set")

        self.DB_HOST = env.get("DB_HOST", "localhost")
        self.DB_PORT = int(env.get("DB_PORT", 3306))
        self.DB_USER = env.get("DB_USER", "root")
        self.DB_PASSWORD = env.get("DB_PASSWORD", "")
        self.DB_NAME = env.get("DB_NAME", "splitledger")
        self.DB_POOL_SIZE = int(env.get("DB_POOL_SIZE", 10))

        self.CORS_ORIGINS: List[str] = [
            origin.strip()
            for origin in env.get("CORS_ORIGINS", "http://localhost:5173").split(",")
            if origin.strip()
        ]
        self.LOG_LEVEL = env.get("LOG_LEVEL", "INFO").upper()


def load_config() -> Config:
    load_dotenv()
    return Config()
