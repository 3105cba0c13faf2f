"""Build orchestration: backends, native toolchain probing and process control."""

from .models import BuildArtifact, BuildConfig, host_platform
from .orchestrator import build
from .process import CancelToken

__all__ = ["BuildArtifact", "BuildConfig", "CancelToken", "build", "host_platform"]
