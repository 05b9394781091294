"""
Lead Importer - record validation and deduplication for bulk imports.

Callers hand over already-decoded records (one dict per prospect, e.g.
rows read from a spreadsheet). The importer:
- Validates the shape of each record
- Maps platform and category onto the closed enums
- Drops duplicates by normalized profile URL, against both the leads
  already tracked and earlier records of the same batch

Usage:
    from leads import LeadImporter

    importer = LeadImporter()
    result = importer.prepare(existing_leads, records)

    print(f"Imported: {result.imported}")
    print(f"Skipped duplicates: {result.duplicates}")
    print(f"Invalid rows: {result.invalid}")
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from outreach_engine import Category, Lead, Platform


class ValidationError(Exception):
    """Raised when an imported record is unusable."""
    pass


@dataclass
class LeadDraft:
    """Fields a caller supplies for a new lead; id, status and added_at are assigned on add."""
    name: str
    profile_url: str = ""
    platform: Platform = Platform.OTHER
    category: Category = Category.OTHER
    notes: str = ""


@dataclass
class DedupeResult:
    """Outcome of merging an incoming batch against existing leads."""
    accepted: List[Any] = field(default_factory=list)
    duplicate_count: int = 0

    @property
    def accepted_count(self) -> int:
        return len(self.accepted)


@dataclass
class ImportResult:
    """Results from a lead import operation."""
    imported: int = 0
    duplicates: int = 0
    invalid: int = 0
    leads: List[LeadDraft] = field(default_factory=list)
    errors: List[Dict] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return self.imported + self.duplicates + self.invalid

    def summary(self) -> str:
        return (
            f"Import complete: {self.imported} imported, "
            f"{self.duplicates} duplicates skipped, "
            f"{self.invalid} invalid rows"
        )


def normalize_url(url: Optional[str]) -> str:
    """Dedup key: trimmed, lower-cased profile URL ('' when absent)."""
    return (url or "").strip().lower()


def dedupe(existing: Iterable[Lead], incoming: Iterable[Any]) -> DedupeResult:
    """
    Split an incoming batch into accepted records and duplicates.

    Single pass in input order. A record is a duplicate when its key is
    already known, either from `existing` or from an earlier accepted
    record in `incoming`. Records without a URL are always accepted.

    Incoming items only need a `profile_url` attribute.
    """
    seen: Set[str] = {normalize_url(lead.profile_url) for lead in existing}
    seen.discard("")

    result = DedupeResult()
    for record in incoming:
        key = normalize_url(getattr(record, "profile_url", None))
        if key and key in seen:
            result.duplicate_count += 1
            continue
        if key:
            seen.add(key)
        result.accepted.append(record)

    return result


# Record keys accepted for each draft field
FIELD_ALIASES = {
    "name": ("name",),
    "profile_url": ("profile_url", "profileUrl"),
    "platform": ("platform",),
    "category": ("category",),
    "notes": ("notes",),
}


class LeadImporter:
    """
    Validates decoded records and prepares them for bulk add.

    Features:
    - Accepts snake_case or camelCase keys
    - Case-insensitive platform/category matching with fallbacks
    - Deduplicates by profile URL
    - Tracks invalid rows with reasons
    """

    def __init__(
        self,
        default_platform: Platform = Platform.OTHER,
        default_category: Category = Category.OTHER,
    ):
        """
        Initialize the importer.

        Args:
            default_platform: Used when a record's platform is missing or unknown
            default_category: Used when a record's category is missing or unknown
        """
        self.default_platform = default_platform
        self.default_category = default_category

    @staticmethod
    def _pick(record: Dict[str, Any], field_name: str) -> str:
        for key in FIELD_ALIASES[field_name]:
            value = record.get(key)
            if isinstance(value, Enum):
                return value.value
            if value is not None:
                return str(value).strip()
        return ""

    @staticmethod
    def _match(enum_cls, raw: str, default):
        lowered = raw.strip().lower()
        for member in enum_cls:
            if member.value.lower() == lowered:
                return member
        return default

    def normalize(self, record: Dict[str, Any]) -> LeadDraft:
        """
        Turn one decoded record into a LeadDraft.

        Raises:
            ValidationError: record is not a mapping or has no name
        """
        if not isinstance(record, dict):
            raise ValidationError(f"Expected a mapping, got {type(record).__name__}")

        name = self._pick(record, "name")
        if not name:
            raise ValidationError("Missing name")

        return LeadDraft(
            name=name,
            profile_url=self._pick(record, "profile_url"),
            platform=self._match(Platform, self._pick(record, "platform"), self.default_platform),
            category=self._match(Category, self._pick(record, "category"), self.default_category),
            notes=self._pick(record, "notes"),
        )

    def prepare(self, existing: Iterable[Lead], records: Iterable[Dict[str, Any]]) -> ImportResult:
        """
        Validate and deduplicate a batch of decoded records.

        Returns:
            ImportResult whose `leads` are ready for bulk add
        """
        result = ImportResult()
        valid: List[LeadDraft] = []

        for row_num, record in enumerate(records, start=1):
            try:
                valid.append(self.normalize(record))
            except ValidationError as e:
                result.invalid += 1
                result.errors.append({"row": row_num, "error": str(e), "data": record})

        merged = dedupe(existing, valid)
        result.leads = merged.accepted
        result.imported = merged.accepted_count
        result.duplicates = merged.duplicate_count
        return result
