"""Build runs.

This module provides:
- The build orchestrator (run)
- Per-service results and the frozen RunReport
- Rendering the RunReport into the external build manifest
"""

from steiger.builds.manifest import ExternalManifest, read_manifest, render, write_manifest
from steiger.builds.models import BuildResult, RunReport, ServiceReport
from steiger.builds.service import RunOptions, run

__all__ = [
    "BuildResult",
    "ExternalManifest",
    "RunOptions",
    "RunReport",
    "ServiceReport",
    "read_manifest",
    "render",
    "run",
    "write_manifest",
]
