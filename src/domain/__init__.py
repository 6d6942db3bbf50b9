"""Domain layer: errors, constants and schemas."""

from .errors import ComposeError, ErrorCodes
from .schemas import (
    CompositionReport,
    CompositionStatus,
    ComposeOptions,
    MergedDependencySet,
    Selection,
    TemplateManifest,
)

__all__ = [
    "ComposeError",
    "ErrorCodes",
    "Selection",
    "TemplateManifest",
    "MergedDependencySet",
    "ComposeOptions",
    "CompositionReport",
    "CompositionStatus",
]
