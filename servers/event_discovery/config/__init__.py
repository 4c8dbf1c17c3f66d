"""Pipeline configuration."""

from .settings import PipelineSettings

__all__ = ["PipelineSettings"]
