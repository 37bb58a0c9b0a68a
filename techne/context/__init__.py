"""Context cache layer.

Classifies context items into stability tiers, tracks file changes and
assembles the tiered, cacheable context sent to the model every turn.
"""

from techne.context.assembler import ContextAssembler, ContextBudgetExceeded
from techne.context.classifier import StabilityClassifier
from techne.context.predictor import ComponentPredictor
from techne.context.schemas import (
    TIER_ORDER,
    AssemblyResult,
    CacheBlock,
    ContextItem,
    Prediction,
    StabilitySnapshot,
    Tier,
    WriteOutcome,
)
from techne.context.templates import TemplateLibrary
from techne.context.tracker import ChangeTracker, FingerprintConflictError

__all__ = [
    "AssemblyResult",
    "CacheBlock",
    "ChangeTracker",
    "ComponentPredictor",
    "ContextAssembler",
    "ContextBudgetExceeded",
    "ContextItem",
    "FingerprintConflictError",
    "Prediction",
    "StabilityClassifier",
    "StabilitySnapshot",
    "TIER_ORDER",
    "TemplateLibrary",
    "Tier",
    "WriteOutcome",
]
