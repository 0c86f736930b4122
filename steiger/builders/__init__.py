"""Build backends.

This module provides:
- The builder contract (BuildContext, ProducedImage, BuildError)
- One builder per backend: docker, bazel, ko and nix
- MetaBuilder, dispatching a BuildSpec to its backend
"""

from steiger.builders.base import (
    BuildContext,
    BuildError,
    Builder,
    ProducedImage,
    UndefinedVariableError,
    substitute,
)
from steiger.builders.meta import MetaBuilder

__all__ = [
    "BuildContext",
    "BuildError",
    "Builder",
    "MetaBuilder",
    "ProducedImage",
    "UndefinedVariableError",
    "substitute",
]
