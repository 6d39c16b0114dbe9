"""Service configuration management using pydantic-settings."""
from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

from src.shared.constants import TERMINATE_POLL_MS, TERMINATE_TIMEOUT_MS


class DeploySettings(BaseSettings):
    """Environment configuration for the deploy service."""
    log_level: str = Field(default="info", validation_alias="LOG_LEVEL")
    state_path: str = Field(
        default="./data/pipeline_state.json", validation_alias="STATE_PATH"
    )
    log_dir: str = Field(default="./data/logs", validation_alias="LOG_DIR")
    pipelines_config: str = Field(
        default="./pipelines.yaml", validation_alias="PIPELINES_CONFIG"
    )
    artifact_secret: str = Field(default="", validation_alias="ARTIFACT_SECRET")
    secret_flag: str = Field(
        default="--jasypt.encryptor.password", validation_alias="SECRET_FLAG"
    )
    java_command: str = Field(default="java", validation_alias="JAVA_COMMAND")
    terminate_timeout_ms: int = Field(
        default=TERMINATE_TIMEOUT_MS, validation_alias="TERMINATE_TIMEOUT_MS"
    )
    terminate_poll_ms: int = Field(
        default=TERMINATE_POLL_MS, validation_alias="TERMINATE_POLL_MS"
    )
    host: str = Field(default="0.0.0.0", validation_alias="HOST")
    port: int = Field(default=3000, validation_alias="PORT")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }

    @property
    def log_path(self) -> Path:
        return Path(self.log_dir)
