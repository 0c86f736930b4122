"""OCI image handling.

This module handles:
- Loading OCI image layouts produced by the build backends
- Content digest computation and validation
"""

from steiger.image.layout import ImageArtifact, ImageError, LocalImage, load_layout

__all__ = ["ImageArtifact", "ImageError", "LocalImage", "load_layout"]
