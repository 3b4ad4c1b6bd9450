"""Shared walkthrough models."""

from .dsl import models, registry, requirements

__all__ = ["models", "registry", "requirements"]
