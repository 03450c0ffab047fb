"""
Configuration management for SlopedIn using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Nested Configuration Models ---


class FeedConfig(BaseModel):
    """Discovery-side settings: debouncing, item thresholds, reconciliation."""

    debounce_seconds: float = Field(default=0.3, ge=0, description="Quiet period before a mutation burst is scanned.")
    min_text_length: int = Field(default=50, ge=0, description="Minimum extracted characters to request a verdict.")
    eviction_scans: int = Field(
        default=3,
        ge=1,
        description="Consecutive scans a settled item may be absent from the source before it is forgotten.",
    )
    patterns: List[str] = Field(
        default_factory=lambda: ["*.txt", "*.md"],
        description="Glob patterns of post files for the directory feed.",
    )

    @field_validator("patterns")
    @classmethod
    def validate_patterns(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("patterns must contain at least one glob")
        return v


class InferenceConfig(BaseModel):
    """Settings of the inference context and its engine."""

    model: str = Field(
        default="openai-community/roberta-base-openai-detector",
        description="HuggingFace model id of the AI-text detector.",
    )
    task: str = Field(default="text-classification", description="transformers pipeline task.")
    device: Literal["auto", "cpu", "cuda"] = Field(default="auto", description="Device to run the detector on.")
    max_text_length: int = Field(default=1500, gt=0, description="Characters passed to the engine per request.")
    top_k: int = Field(default=2, gt=0, description="Number of ranked labels requested from the engine.")
    fake_label: str = Field(default="fake", description="Engine label of the synthetic class (case-insensitive).")
    ai_threshold: float = Field(default=0.5, ge=0, le=1, description="Score at or above which text is labelled AI.")
    preload: bool = Field(default=True, description="Start loading the model as soon as the context starts.")


class RelayConfig(BaseModel):
    """Addressing of the cross-context relay."""

    target: str = Field(default="inference", description="Address of the inference context.")
    context_name: str = Field(default="slopedin-inference", description="Thread name of the inference context.")


class PreferencesConfig(BaseModel):
    """Persisted on/off preference store."""

    path: Path = Field(
        default_factory=lambda: Path.home() / ".slopedin" / "preferences.json",
        description="JSON file holding user preferences.",
    )
    default_enabled: bool = Field(default=True, description="Value of 'enabled' when it was never set.")
    watch: bool = Field(default=True, description="Watch the file for changes made by other processes.")


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: int | None = Field(default=None, description="Port for Prometheus metrics exporter.")

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "SlopedIn"
    version: str = "0.1.0"
    feed: FeedConfig = Field(default_factory=FeedConfig)
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    preferences: PreferencesConfig = Field(default_factory=PreferencesConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="SLOPEDIN_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Optional[Path]:
    current_dir = Path.cwd()
    for path in (current_dir / "slopedin.yaml", current_dir / "slopedin.yml"):
        if path.exists():
            return path
    return None


def load_config(path: Optional[Path] = None) -> Config:
    """Load the given file, a discovered one, or defaults."""
    config_path = path or find_config_file()
    if config_path:
        log.info("Loading configuration from: %s", config_path)
        return Config.from_yaml(config_path)
    return Config()
