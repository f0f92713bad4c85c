# backend/pharmaflow/core/config.py
import os
import json
from functools import lru_cache
from typing import List, Optional

from dotenv import dotenv_values, load_dotenv, find_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

# Project root (backend/) and default .env path
BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
DEFAULT_DOTENV = os.path.join(BASE_DIR, ".env")


class ConfigError(RuntimeError):
    pass


def _norm_key(k: str) -> str:
    return k.replace("\ufeff", "").strip() if isinstance(k, str) else k


def load_env_file() -> Optional[str]:
    """Load .env into os.environ without overriding values already set (CI)."""
    dotenv_path = DEFAULT_DOTENV if os.path.exists(DEFAULT_DOTENV) else find_dotenv(filename=".env", usecwd=True)
    if dotenv_path:
        cfg = dotenv_values(dotenv_path, encoding="utf-8-sig")
        for k, v in cfg.items():
            nk = _norm_key(k)
            if v is not None and (nk not in os.environ or not os.environ[nk].strip()):
                os.environ[nk] = v
        load_dotenv(dotenv_path, override=False)
    return dotenv_path or None


def parse_origins(env_val: Optional[str], fallback: str) -> List[str]:
    if env_val is None or not env_val.strip():
        return [fallback]
    if env_val.strip() == "*":
        return ["*"]
    try:
        parsed = json.loads(env_val)
        if isinstance(parsed, list):
            return [str(x) for x in parsed]
    except ValueError:
        pass
    return [s.strip() for s in env_val.split(",") if s.strip()]


class Settings(BaseModel):
    DATABASE_URL: str = Field(min_length=1)
    PORT: int = Field(6000, ge=1, le=65535)
    WEB_ORIGIN: str = "http://localhost:5173"
    CORS_ALLOW_ORIGINS: List[str] = Field(default_factory=list)

    JWT_ACCESS_SECRET: str = Field(min_length=16)
    JWT_REFRESH_SECRET: str = Field(min_length=16)
    JWT_ALG: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(15, ge=1)
    REFRESH_TOKEN_EXPIRE_DAYS: int = Field(30, ge=1)

    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASS: Optional[str] = None
    SMTP_FROM: Optional[str] = None
    SMTP_SECURE: bool = False

    PLATFORM_CONTACT_EMAIL: str = "admin@supernovatel.com"

    REPORT_SCHEDULER_ENABLED: bool = True
    REPORT_SCHEDULER_INTERVAL_SECONDS: int = Field(60, ge=1)

    LOG_LEVEL: str = "INFO"
    BCRYPT_ROUNDS: int = Field(10, ge=4, le=16)

    @field_validator("WEB_ORIGIN")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("LOG_LEVEL")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.strip().upper() or "INFO"

    @property
    def smtp_configured(self) -> bool:
        return bool(self.SMTP_HOST and self.SMTP_USER and self.SMTP_PASS and self.SMTP_FROM)


_KEYS = [name for name in Settings.model_fields if name != "CORS_ALLOW_ORIGINS"]


def settings_from_env(environ=None) -> Settings:
    env = os.environ if environ is None else environ
    raw = {}
    for key in _KEYS:
        val = env.get(key)
        if val is not None and str(val).strip() != "":
            raw[key] = str(val).strip()
    web_origin = (raw.get("WEB_ORIGIN") or "http://localhost:5173").rstrip("/")
    raw["CORS_ALLOW_ORIGINS"] = parse_origins(env.get("CORS_ALLOW_ORIGINS"), web_origin)
    try:
        return Settings(**raw)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid environment configuration: {details}") from e


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_env_file()
    return settings_from_env()
