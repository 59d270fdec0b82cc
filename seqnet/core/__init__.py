"""Core numerical primitives for seqnet."""

from . import activations, errors, parallel, stages, types

__all__ = ["activations", "errors", "parallel", "stages", "types"]
