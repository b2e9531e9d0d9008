"""Core configuration for the xcaudit engine."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="XCAUDIT_",
        case_sensitive=False,
        extra="ignore",
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "xcaudit"
    app_env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # ── Bounds ───────────────────────────────────────────────────────────
    max_flow_depth: int = Field(default=8, ge=1)
    max_files: int = Field(default=500, ge=1)
    extraction_workers: int = Field(default=4, ge=1)

    # ── Intake ───────────────────────────────────────────────────────────
    source_extensions: list[str] = Field(default_factory=lambda: [".sol"])
    apply_path_filter: bool = True

    # ── State flow ───────────────────────────────────────────────────────
    reentrancy_guard_markers: list[str] = Field(
        default_factory=lambda: [
            "nonReentrant",
            "noReentrancy",
            "noReentrant",
            "reentrancyGuard",
            "nonReentrantView",
            "lock",
        ]
    )
    accounting_keywords: list[str] = Field(
        default_factory=lambda: ["balance", "supply", "share"]
    )

    # ── Report policy ────────────────────────────────────────────────────
    # Keyword filtering trades recall for precision: a real issue whose
    # title happens to mention gas or naming is dropped unless it carries
    # a PoC or an economic impact.
    garbage_keywords: list[str] = Field(
        default_factory=lambda: [
            "gas optimization",
            "gas optimisation",
            "gas saving",
            "save gas",
            "gas efficiency",
            "naming convention",
            "code style",
            "coding style",
            "style guide",
            "typo",
            "natspec",
            "missing comment",
            "formatting",
            "indentation",
        ]
    )
    severity_weights: dict[str, float] = Field(
        default_factory=lambda: {
            "critical": 10.0,
            "high": 5.0,
            "medium": 2.0,
            "low": 0.5,
            "informational": 0.1,
        }
    )
    risk_damping: float = Field(default=25.0, gt=0)


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
