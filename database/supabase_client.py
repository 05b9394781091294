"""
Supabase Database Client for LeadPulse

Mirrors leads, templates and settings to hosted Postgres tables so a
user's pipeline follows them across devices:
- leads      (one row per prospect)
- templates  (message skeletons)
- settings   (one row per user)

Every row carries a `user_id` column and every query is scoped by it.
Column names are snake_case; the converters below translate between rows
and the entities in outreach_engine.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from supabase import create_client, Client

from outreach_engine import (
    DEFAULT_FOLLOW_UP_DAYS,
    Category,
    Lead,
    LeadStatus,
    Platform,
    Settings,
    Template,
    TemplateType,
    coerce_status,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

LEADS = "leads"
TEMPLATES = "templates"
SETTINGS = "settings"

# entity attribute -> column
LEAD_COLUMNS = {
    "name": "name",
    "profile_url": "profile_url",
    "platform": "platform",
    "category": "category",
    "status": "status",
    "notes": "notes",
    "added_at": "added_at",
    "dm_sent_at": "dm_sent_at",
    "follow_up_sent_at": "follow_up_sent_at",
    "replied_at": "replied_at",
    "follow_up_due_date": "follow_up_due_date",
    "last_dm_text": "last_dm_text",
}

TEMPLATE_COLUMNS = {
    "name": "name",
    "type": "type",
    "content": "content",
    "created_at": "created_at",
}

SETTINGS_COLUMNS = {
    "gemini_api_key": "gemini_api_key",
    "service_description": "service_description",
    "follow_up_days": "follow_up_days",
}

COLUMNS_BY_KIND = {
    LEADS: LEAD_COLUMNS,
    TEMPLATES: TEMPLATE_COLUMNS,
    SETTINGS: SETTINGS_COLUMNS,
}


class RemoteStoreError(RuntimeError):
    """Raised when Supabase accepts a request but returns an unusable result."""


@dataclass
class DatabaseConfig:
    """Supabase connection configuration."""
    url: str
    key: str  # anon/public key for client-side, service key for server-side

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Load config from environment variables."""
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_KEY")

        if not url or not key:
            raise ValueError(
                "Missing Supabase credentials. Set SUPABASE_URL and SUPABASE_KEY environment variables."
            )

        return cls(url=url, key=key)

    @staticmethod
    def is_configured() -> bool:
        """True when both Supabase variables are set (otherwise run local-only)."""
        return bool(os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_KEY"))


@dataclass
class RemoteSnapshot:
    """Result of the one-time bulk read."""
    leads: List[Lead]
    templates: List[Template]
    settings: Optional[Settings]


# ==========================================
# ROW CONVERTERS
# ==========================================


def _to_column_value(value: Any) -> Any:
    if isinstance(value, (Platform, Category, LeadStatus, TemplateType)):
        return value.value
    if hasattr(value, "isoformat"):
        return format_timestamp(value)
    return value


def changes_to_row(kind: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Translate changed entity fields into column values.

    Fields without a column (e.g. `id`) are dropped.
    """
    columns = COLUMNS_BY_KIND[kind]
    return {
        columns[attr]: _to_column_value(value)
        for attr, value in changes.items()
        if attr in columns
    }


def lead_to_row(lead: Lead) -> Dict[str, Any]:
    """Insert payload for a lead; unset optional timestamps are left out."""
    row = changes_to_row(LEADS, {attr: getattr(lead, attr) for attr in LEAD_COLUMNS})
    return {column: value for column, value in row.items() if value is not None}


def template_to_row(template: Template) -> Dict[str, Any]:
    return changes_to_row(TEMPLATES, {attr: getattr(template, attr) for attr in TEMPLATE_COLUMNS})


def row_to_lead(row: Dict[str, Any]) -> Lead:
    try:
        platform = Platform(row.get("platform"))
    except ValueError:
        platform = Platform.OTHER
    try:
        category = Category(row.get("category"))
    except ValueError:
        category = Category.OTHER

    return Lead(
        id=str(row["id"]),
        name=row.get("name") or "",
        profile_url=row.get("profile_url") or "",
        platform=platform,
        category=category,
        status=coerce_status(row.get("status")),
        notes=row.get("notes") or "",
        added_at=(
            parse_timestamp(row.get("added_at"))
            or parse_timestamp(row.get("created_at"))
            or utcnow()
        ),
        dm_sent_at=parse_timestamp(row.get("dm_sent_at")),
        follow_up_sent_at=parse_timestamp(row.get("follow_up_sent_at")),
        replied_at=parse_timestamp(row.get("replied_at")),
        follow_up_due_date=parse_timestamp(row.get("follow_up_due_date")),
        last_dm_text=row.get("last_dm_text") or None,
    )


def row_to_template(row: Dict[str, Any]) -> Template:
    try:
        template_type = TemplateType(row.get("type"))
    except ValueError:
        template_type = TemplateType.DM
    return Template(
        id=str(row["id"]),
        name=row.get("name") or "",
        type=template_type,
        content=row.get("content") or "",
        created_at=parse_timestamp(row.get("created_at")) or utcnow(),
    )


def row_to_settings(row: Dict[str, Any]) -> Settings:
    defaults = Settings()
    return Settings(
        gemini_api_key=row.get("gemini_api_key") or defaults.gemini_api_key,
        service_description=row.get("service_description") or "",
        follow_up_days=row.get("follow_up_days") or DEFAULT_FOLLOW_UP_DAYS,
    )


_TO_ROW = {LEADS: lead_to_row, TEMPLATES: template_to_row}
_FROM_ROW = {LEADS: row_to_lead, TEMPLATES: row_to_template}


class SupabaseClient:
    """
    Supabase client for per-user lead tracking data.

    Calls are synchronous and errors from the Supabase client propagate;
    the sync layer decides what a failure means.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None, client: Optional[Client] = None):
        """
        Initialize Supabase client.

        Args:
            config: Database configuration. If None, loads from environment.
            client: Pre-built Supabase client (skips create_client)
        """
        if client is None:
            if config is None:
                config = DatabaseConfig.from_env()
            client = create_client(config.url, config.key)

        self.client: Client = client

    def _check_kind(self, kind: str) -> None:
        if kind not in _TO_ROW:
            raise ValueError(f"Unsupported record kind: {kind!r}")

    # ==========================================
    # BULK READ
    # ==========================================

    def fetch_all(self, user_id: str) -> RemoteSnapshot:
        """
        Load everything a user owns.

        Leads come newest-added first, templates oldest first.
        """
        leads = (
            self.client.table(LEADS)
            .select("*")
            .eq("user_id", user_id)
            .order("added_at", desc=True)
            .execute()
        )
        templates = (
            self.client.table(TEMPLATES)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at")
            .execute()
        )
        settings = self.client.table(SETTINGS).select("*").eq("user_id", user_id).limit(1).execute()

        logger.debug(
            "Fetched %d leads, %d templates for user %s",
            len(leads.data or []),
            len(templates.data or []),
            user_id,
        )

        return RemoteSnapshot(
            leads=[row_to_lead(row) for row in leads.data or []],
            templates=[row_to_template(row) for row in templates.data or []],
            settings=row_to_settings(settings.data[0]) if settings.data else None,
        )

    # ==========================================
    # LEAD / TEMPLATE OPERATIONS
    # ==========================================

    def insert(self, kind: str, record, user_id: str):
        """
        Create a lead or template row.

        Returns:
            The stored record, carrying the id assigned by the database
        """
        self._check_kind(kind)
        row = {**_TO_ROW[kind](record), "user_id": user_id}
        result = self.client.table(kind).insert(row).execute()
        if not result.data:
            raise RemoteStoreError(f"Insert into {kind} returned no rows")
        return _FROM_ROW[kind](result.data[0])

    def insert_many(self, kind: str, records: List, user_id: str) -> List:
        """Create several rows in one request; returns the stored records."""
        self._check_kind(kind)
        if not records:
            return []
        rows = [{**_TO_ROW[kind](record), "user_id": user_id} for record in records]
        result = self.client.table(kind).insert(rows).execute()
        if not result.data:
            raise RemoteStoreError(f"Bulk insert into {kind} returned no rows")
        return [_FROM_ROW[kind](row) for row in result.data]

    def update(self, kind: str, record_id: str, changes: Dict[str, Any], user_id: str) -> None:
        """Send only the changed fields of one row."""
        self._check_kind(kind)
        row = changes_to_row(kind, changes)
        if not row:
            return
        self.client.table(kind).update(row).eq("id", record_id).eq("user_id", user_id).execute()

    def delete(self, kind: str, record_id: str, user_id: str) -> None:
        self._check_kind(kind)
        self.client.table(kind).delete().eq("id", record_id).eq("user_id", user_id).execute()

    # ==========================================
    # SETTINGS
    # ==========================================

    def upsert_settings(self, user_id: str, changes: Dict[str, Any]) -> None:
        """
        Write settings for a user.

        The settings row has no creation hook, so look it up first and
        update it, or insert a new row with defaults for missing values.
        """
        existing = self.client.table(SETTINGS).select("id").eq("user_id", user_id).limit(1).execute()

        if existing.data:
            row = {**changes_to_row(SETTINGS, changes), "updated_at": format_timestamp(utcnow())}
            self.client.table(SETTINGS).update(row).eq("id", existing.data[0]["id"]).execute()
        else:
            defaults = Settings()
            values = {attr: getattr(defaults, attr) for attr in SETTINGS_COLUMNS}
            values.update({attr: value for attr, value in changes.items() if value})
            row = {**changes_to_row(SETTINGS, values), "user_id": user_id}
            self.client.table(SETTINGS).insert(row).execute()
