"""
Application settings from the environment, `.env` and `.env.<ENVIRONMENT>`.

Field names map to upper-case environment variables (`AI_TIMEOUT_SECONDS`,
`TEMPLATE_MATCH_THRESHOLD`, ...).
"""
from __future__ import annotations
import os
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Base .env load first
load_dotenv()

class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # ignore unknown env keys to avoid crashes
    )

    # Environment
    environment: Literal["development", "staging", "production", "test"] = Field(default="development")
    log_level: str = Field(default="INFO")

    # Paths
    data_dir: Path = Field(default=Path(os.getenv("DATA_DIR", "data")))
    templates_dir: Path | None = None
    logs_dir: Path = Field(default=Path(os.getenv("LOGS_DIR", "data/output")))
    log_file: Path | None = None

    # GCP / Vertex AI
    gcp_project_id: str | None = Field(default=os.getenv("GCP_PROJECT_ID"))
    gcp_location: str = Field(default=os.getenv("GCP_LOCATION", "us-central1"))
    vertex_model: str = Field(default=os.getenv("VERTEX_MODEL", "gemini-2.0-flash-001"))
    ai_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    ai_max_output_tokens: int = Field(default=16384, ge=256)
    ai_timeout_seconds: float = Field(default=60.0, gt=0)
    ai_max_retries: int = Field(default=0, ge=0)
    ai_max_workers: int = Field(default=8, ge=1)
    ai_categorization: bool = Field(default=False)

    # Template storage
    template_bucket: str | None = Field(default=os.getenv("TEMPLATE_BUCKET"))

    # Template engine tuning
    template_match_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    template_initial_accuracy: float = Field(default=0.85, ge=0.0, le=1.0)
    default_template_accuracy: float = Field(default=0.9, ge=0.0, le=1.0)
    verify_min_usage: int = Field(default=10, ge=1)
    verify_min_accuracy: float = Field(default=0.9, ge=0.0, le=1.0)
    default_user_id: str = Field(default="system")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = str(value).upper() if value else "INFO"
        allowed = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"}
        if level not in allowed:
            # Fallback to INFO instead of raising to avoid boot failure
            return "INFO"
        return level

    @field_validator("template_bucket", "gcp_project_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _derive_paths_and_ensure_dirs(self) -> "AppConfig":
        # Layered environment loading: .env.<ENVIRONMENT> overrides base
        env_file_variant = Path(f".env.{self.environment}")
        if env_file_variant.exists():
            load_dotenv(dotenv_path=env_file_variant, override=True)
            self.gcp_project_id = os.getenv("GCP_PROJECT_ID", self.gcp_project_id)
            self.gcp_location = os.getenv("GCP_LOCATION", self.gcp_location)
            self.vertex_model = os.getenv("VERTEX_MODEL", self.vertex_model)
            self.template_bucket = os.getenv("TEMPLATE_BUCKET", self.template_bucket)

        if self.templates_dir is None:
            self.templates_dir = self.data_dir / "templates"
        if self.log_file is None:
            self.log_file = self.logs_dir / "app.log"

        # Ensure directories exist
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.templates_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        return self

config = AppConfig()
