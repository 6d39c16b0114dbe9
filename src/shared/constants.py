"""Shared constants used across the deploy service."""
from __future__ import annotations

# Application version
VERSION: str = "1.0.0"

SERVICE_NAME: str = "deploy-orchestrator"

# Persisted document
SCHEMA_VERSION: int = 2
LEGACY_SCHEMA_VERSION: int = 1

# Build progression checkpoints
PROGRESS_STARTED: int = 10
PROGRESS_INSTALLED: int = 30
PROGRESS_LINTED: int = 50
PROGRESS_PACKAGED: int = 90
PROGRESS_DONE: int = 100

# Process termination (milliseconds)
TERMINATE_TIMEOUT_MS: int = 5000
TERMINATE_POLL_MS: int = 100

# Consecutive write failures before the registry refuses further updates
MAX_WRITE_FAILURES: int = 3

# Pipeline types
PIPELINE_TYPE_FRONTEND: str = "frontend"
PIPELINE_TYPE_SPRING_BOOT: str = "spring_boot"

SUPPORTED_PIPELINE_TYPES: list[str] = [PIPELINE_TYPE_FRONTEND, PIPELINE_TYPE_SPRING_BOOT]

# File naming
BUILD_LOG_SUFFIX: str = ".log"
RUN_LOG_SUFFIX: str = ".run.log"
