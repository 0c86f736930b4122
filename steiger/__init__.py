"""Steiger - build, push and deploy multi-service container projects.

This package orchestrates heterogeneous image builders (Docker buildx,
Bazel, ko, Nix), pushes only the images whose content changed, and emits
a machine-readable record of what was built.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
