"""Upstream generation backends."""

from plan_dispatch.dispatcher.backend.base import (
    GenerationBackend,
    GenerationCall,
    GenerationOutput,
    UpstreamError,
    UpstreamErrorCategory,
)

__all__ = [
    "GenerationBackend",
    "GenerationCall",
    "GenerationOutput",
    "UpstreamError",
    "UpstreamErrorCategory",
]
