"""
Configuration settings for nlsurrogate.

Uses Pydantic Settings to load environment variables (or a local `.env`) for
logging, hotspot selection, range discovery, sampling and the external
simulator. Per-run overrides live in `nlsurrogate.orchestrator.PipelineConfig`.
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_workers() -> int:
    return max((os.cpu_count() or 2) - 1, 1)


class Settings(BaseSettings):
    # Application
    log_level: str = Field("INFO", alias="NLS_LOG_LEVEL")
    log_json: bool = Field(False, alias="NLS_LOG_JSON")
    results_dir: str = Field("results", alias="NLS_RESULTS_DIR")

    # Hotspot selection
    hotspot_threshold: float = Field(0.03, ge=0.0, le=1.0, alias="NLS_HOTSPOT_THRESHOLD")

    # Range discovery
    range_margin: float = Field(0.01, ge=0.0, alias="NLS_RANGE_MARGIN")
    range_absolute_margin: float = Field(1e-3, gt=0.0, alias="NLS_RANGE_ABSOLUTE_MARGIN")

    # Sampling
    sample_count: int = Field(1000, gt=0, alias="NLS_SAMPLE_COUNT")
    attempt_factor: int = Field(10, ge=1, alias="NLS_ATTEMPT_FACTOR")
    seed: int = Field(42, ge=0, alias="NLS_SEED")
    sampling_design: Literal["uniform", "latin_hypercube", "grid"] = Field(
        "uniform", alias="NLS_SAMPLING_DESIGN"
    )
    initial_guess: Literal["start", "zeros"] = Field("start", alias="NLS_INITIAL_GUESS")

    # Execution
    executor: Literal["serial", "threads", "processes"] = Field(
        "processes", alias="NLS_EXECUTOR"
    )
    workers: int = Field(default_factory=_default_workers, ge=1, alias="NLS_WORKERS")
    evaluation_timeout_seconds: float = Field(30.0, gt=0.0, alias="NLS_EVALUATION_TIMEOUT")
    equation_concurrency: int = Field(1, ge=1, alias="NLS_EQUATION_CONCURRENCY")

    # Reference simulation
    simulation_timeout_seconds: float = Field(600.0, gt=0.0, alias="NLS_SIMULATION_TIMEOUT")
    simulation_retries: int = Field(3, ge=1, alias="NLS_SIMULATION_RETRIES")
    omc_path: Optional[str] = Field(None, alias="NLS_OMC_PATH")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["Settings", "get_settings"]
