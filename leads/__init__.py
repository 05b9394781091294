"""
Lead import module for LeadPulse.

Handles validating and deduplicating leads arriving in bulk.
"""

from .importer import (
    LeadImporter,
    LeadDraft,
    ValidationError,
    ImportResult,
    DedupeResult,
    dedupe,
    normalize_url,
)

__all__ = [
    "LeadImporter",
    "LeadDraft",
    "ValidationError",
    "ImportResult",
    "DedupeResult",
    "dedupe",
    "normalize_url",
]
