"""
Outreach Engine - Lead model and lifecycle rules

Defines the records every other module works with:
- Lead, Template and Settings entities plus the AppData aggregate
- Closed enumerations for platform, category and lead status
- Pure lifecycle transitions (DM sent, follow-up sent, manual status)
- Derived views (follow-up due now, upcoming, ready to DM)

Nothing here touches storage or the network. The lifecycle functions take
`now` explicitly so callers and tests control the clock.
"""

import random
import time
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

DEFAULT_FOLLOW_UP_DAYS = 3
NAME_PLACEHOLDER = "[Name]"


# =========================================
# Exceptions
# =========================================


class InvalidStatusError(ValueError):
    """Raised when a non-persistable status is assigned to a lead."""


class RecordNotFoundError(KeyError):
    """Raised when a mutation targets an id that is not loaded."""


class LeadNotFoundError(RecordNotFoundError):
    """No lead with the given id."""


class TemplateNotFoundError(RecordNotFoundError):
    """No template with the given id."""


# =========================================
# Enumerations
# =========================================


class Platform(Enum):
    """Where the prospect can be contacted."""
    TWITTER = "Twitter"
    INSTAGRAM = "Instagram"
    FACEBOOK = "Facebook"
    LINKEDIN = "LinkedIn"
    OTHER = "Other"


class Category(Enum):
    """Lead niches."""
    BUSINESS_COACH = "Business Coach"
    NEW_STARTUP = "New Startup"
    TECH_COMPANY = "Tech Company"
    FREELANCER = "Freelancer"
    AGENCY = "Agency"
    ECOMMERCE = "E-commerce"
    CREATOR = "Creator"
    OTHER = "Other"


class LeadStatus(Enum):
    """
    Outreach status of a lead.

    FOLLOW_UP_DUE is a display label computed from DM_SENT plus the due
    date. It is never stored.
    """
    NEW = "new"
    DM_SENT = "dm_sent"
    FOLLOW_UP_DUE = "follow_up_due"
    FOLLOW_UP_SENT = "follow_up_sent"
    REPLIED = "replied"
    CONVERTED = "converted"
    NOT_INTERESTED = "not_interested"


PERSISTED_STATUSES = frozenset(s for s in LeadStatus if s is not LeadStatus.FOLLOW_UP_DUE)


class TemplateType(Enum):
    DM = "dm"
    FOLLOWUP = "followup"


# =========================================
# Timestamp helpers
# =========================================


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp as ISO-8601, or None."""
    return value.isoformat() if value is not None else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string (trailing 'Z' allowed) into an aware datetime.

    Naive values are taken as UTC. Empty or unparseable input gives None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _enum_or_default(enum_cls, value, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


def coerce_status(value: Any) -> LeadStatus:
    """
    Read a stored status.

    Unknown values load as NEW; a legacy 'follow_up_due' loads as DM_SENT,
    which is the persisted state behind that label.
    """
    if isinstance(value, LeadStatus):
        status = value
    else:
        status = _enum_or_default(LeadStatus, value, LeadStatus.NEW)
    if status is LeadStatus.FOLLOW_UP_DUE:
        return LeadStatus.DM_SENT
    return status


def generate_temp_id(prefix: str) -> str:
    """Local id used until the remote store assigns the real one."""
    return f"{prefix}_{int(time.time() * 1000)}_{random.getrandbits(40):010x}"


# =========================================
# Entities
# =========================================


@dataclass
class Lead:
    """A tracked prospect and its outreach history."""
    id: str
    name: str
    profile_url: str = ""
    platform: Platform = Platform.OTHER
    category: Category = Category.OTHER
    status: LeadStatus = LeadStatus.NEW
    notes: str = ""
    added_at: datetime = field(default_factory=utcnow)
    dm_sent_at: Optional[datetime] = None
    follow_up_sent_at: Optional[datetime] = None
    replied_at: Optional[datetime] = None
    follow_up_due_date: Optional[datetime] = None
    last_dm_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot form, camelCase keys."""
        return {
            "id": self.id,
            "name": self.name,
            "profileUrl": self.profile_url,
            "platform": self.platform.value,
            "category": self.category.value,
            "status": self.status.value,
            "notes": self.notes,
            "addedAt": format_timestamp(self.added_at),
            "dmSentAt": format_timestamp(self.dm_sent_at),
            "followUpSentAt": format_timestamp(self.follow_up_sent_at),
            "repliedAt": format_timestamp(self.replied_at),
            "followUpDueDate": format_timestamp(self.follow_up_due_date),
            "lastDmText": self.last_dm_text,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lead":
        return cls(
            id=str(data.get("id") or generate_temp_id("lead")),
            name=data.get("name") or "",
            profile_url=data.get("profileUrl") or "",
            platform=_enum_or_default(Platform, data.get("platform"), Platform.OTHER),
            category=_enum_or_default(Category, data.get("category"), Category.OTHER),
            status=coerce_status(data.get("status")),
            notes=data.get("notes") or "",
            added_at=parse_timestamp(data.get("addedAt")) or utcnow(),
            dm_sent_at=parse_timestamp(data.get("dmSentAt")),
            follow_up_sent_at=parse_timestamp(data.get("followUpSentAt")),
            replied_at=parse_timestamp(data.get("repliedAt")),
            follow_up_due_date=parse_timestamp(data.get("followUpDueDate")),
            last_dm_text=data.get("lastDmText"),
        )


@dataclass
class Template:
    """Reusable message skeleton; `[Name]` is replaced with the lead's name."""
    id: str
    name: str
    type: TemplateType
    content: str
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "content": self.content,
            "createdAt": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Template":
        return cls(
            id=str(data.get("id") or generate_temp_id("tpl")),
            name=data.get("name") or "",
            type=_enum_or_default(TemplateType, data.get("type"), TemplateType.DM),
            content=data.get("content") or "",
            created_at=parse_timestamp(data.get("createdAt")) or utcnow(),
        )


@dataclass
class Settings:
    """Per-account preferences."""
    gemini_api_key: str = ""
    service_description: str = ""
    follow_up_days: int = DEFAULT_FOLLOW_UP_DAYS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "geminiApiKey": self.gemini_api_key,
            "serviceDescription": self.service_description,
            "followUpDays": self.follow_up_days,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        """Stored values win; anything missing keeps its default."""
        merged = {**cls().to_dict(), **{k: v for k, v in data.items() if v is not None}}
        try:
            follow_up_days = int(merged["followUpDays"])
        except (TypeError, ValueError):
            follow_up_days = DEFAULT_FOLLOW_UP_DAYS
        return cls(
            gemini_api_key=str(merged["geminiApiKey"]),
            service_description=str(merged["serviceDescription"]),
            follow_up_days=follow_up_days,
        )


@dataclass
class AppData:
    """Aggregate root: everything one account or device owns."""
    leads: List[Lead] = field(default_factory=list)
    templates: List[Template] = field(default_factory=list)
    settings: Settings = field(default_factory=Settings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leads": [lead.to_dict() for lead in self.leads],
            "templates": [tpl.to_dict() for tpl in self.templates],
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppData":
        templates = data.get("templates")
        return cls(
            leads=[Lead.from_dict(item) for item in data.get("leads") or []],
            templates=(
                [Template.from_dict(item) for item in templates]
                if templates is not None
                else default_templates()
            ),
            settings=Settings.from_dict(data.get("settings") or {}),
        )


# =========================================
# Defaults
# =========================================

DEFAULT_DM_CONTENT = (
    "Hey [Name]!\n\n"
    "I came across your profile and really like what you're building. "
    "Your work is exactly the kind of thing I love to support.\n\n"
    "Would you be open to a quick chat? I think I could help you grow.\n\n"
    "Looking forward to hearing from you!"
)

DEFAULT_FOLLOW_UP_CONTENT = (
    "Hey [Name]!\n\n"
    "Just circling back on my last message, I know things get busy.\n\n"
    "I think what I have could add real value to what you're doing. "
    "Would you have 10 minutes this week?\n\n"
    "Let me know either way!"
)


def default_templates(now: Optional[datetime] = None) -> List[Template]:
    """The two templates seeded for a new account or device."""
    now = now or utcnow()
    return [
        Template(
            id="tpl_dm_1",
            name="Default First DM",
            type=TemplateType.DM,
            content=DEFAULT_DM_CONTENT,
            created_at=now,
        ),
        Template(
            id="tpl_fu_1",
            name="Default Follow-Up",
            type=TemplateType.FOLLOWUP,
            content=DEFAULT_FOLLOW_UP_CONTENT,
            created_at=now,
        ),
    ]


def default_app_data() -> AppData:
    return AppData(leads=[], templates=default_templates(), settings=Settings())


def fill_template(content: str, name: str) -> str:
    """Replace every [Name] placeholder with the lead's name."""
    return content.replace(NAME_PLACEHOLDER, name)


# =========================================
# Lifecycle transitions
# =========================================

IMMUTABLE_LEAD_FIELDS = frozenset({"id", "added_at"})
LEAD_FIELDS = tuple(f.name for f in fields(Lead))
LEAD_TIMESTAMP_FIELDS = frozenset({"dm_sent_at", "follow_up_sent_at", "replied_at", "follow_up_due_date"})
LEAD_TEXT_FIELDS = frozenset({"name", "profile_url", "notes"})


def _to_timestamp(name: str, value: Any) -> Optional[datetime]:
    parsed = parse_timestamp(value)
    if parsed is None and value not in (None, ""):
        raise ValueError(f"{name} must be an ISO-8601 timestamp, got {value!r}")
    return parsed


def _coerce_lead_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Convert raw field values to the types a Lead stores."""
    coerced = {}
    for name, value in changes.items():
        if name == "status":
            value = _check_persistable(value)
        elif name == "platform":
            value = Platform(value)
        elif name == "category":
            value = Category(value)
        elif name in LEAD_TIMESTAMP_FIELDS:
            value = _to_timestamp(name, value)
        elif name in LEAD_TEXT_FIELDS:
            value = "" if value is None else str(value)
        elif name == "last_dm_text":
            value = None if value is None else str(value)
        coerced[name] = value
    return coerced


def _check_persistable(status: LeadStatus) -> LeadStatus:
    status = LeadStatus(status)
    if status not in PERSISTED_STATUSES:
        raise InvalidStatusError(
            f"{status.value!r} is derived from the follow-up due date and cannot be assigned"
        )
    return status


def apply_update(lead: Lead, changes: Dict[str, Any]) -> Lead:
    """
    Return a copy of `lead` with `changes` applied.

    Enum values may be given by value ("Twitter") and timestamps as
    ISO-8601 strings.

    Raises:
        ValueError: unknown field, unconvertible value, or an attempt to
            change id/added_at
        InvalidStatusError: status outside the persisted set
    """
    unknown = set(changes) - set(LEAD_FIELDS)
    if unknown:
        raise ValueError(f"Unknown lead fields: {sorted(unknown)}")
    frozen = IMMUTABLE_LEAD_FIELDS.intersection(changes)
    if frozen:
        raise ValueError(f"Lead fields cannot be changed: {sorted(frozen)}")
    return replace(lead, **_coerce_lead_changes(changes))


def changed_fields(before: Lead, after: Lead) -> Dict[str, Any]:
    """Fields of `after` whose values differ from `before`."""
    return {
        name: getattr(after, name)
        for name in LEAD_FIELDS
        if getattr(before, name) != getattr(after, name)
    }


def mark_dm_sent(
    lead: Lead,
    dm_text: Optional[str] = None,
    follow_up_days: int = DEFAULT_FOLLOW_UP_DAYS,
    now: Optional[datetime] = None,
) -> Lead:
    """
    Record the first outbound DM and schedule the follow-up.

    This is the only transition that sets `follow_up_due_date`.

    Args:
        lead: Lead being contacted
        dm_text: Message that was sent; the previous text is kept when None
        follow_up_days: Offset of the follow-up reminder in days
        now: Send time (defaults to current UTC time)
    """
    if follow_up_days < 0:
        raise ValueError(f"follow_up_days must be >= 0, got {follow_up_days}")
    now = now or utcnow()
    return replace(
        lead,
        status=LeadStatus.DM_SENT,
        dm_sent_at=now,
        follow_up_due_date=now + timedelta(days=follow_up_days),
        last_dm_text=dm_text if dm_text is not None else lead.last_dm_text,
    )


def mark_follow_up_sent(lead: Lead, now: Optional[datetime] = None) -> Lead:
    """Record the follow-up. The prior status is not checked."""
    return replace(
        lead,
        status=LeadStatus.FOLLOW_UP_SENT,
        follow_up_sent_at=now or utcnow(),
    )


def mark_status(lead: Lead, status: LeadStatus) -> Lead:
    """Overwrite the status; any persisted status may follow any other."""
    return replace(lead, status=_check_persistable(status))


# =========================================
# Derived views
# =========================================


def is_follow_up_due(lead: Lead, now: Optional[datetime] = None) -> bool:
    if lead.status is not LeadStatus.DM_SENT or lead.follow_up_due_date is None:
        return False
    return lead.follow_up_due_date <= (now or utcnow())


def is_follow_up_upcoming(lead: Lead, now: Optional[datetime] = None) -> bool:
    if lead.status is not LeadStatus.DM_SENT or lead.follow_up_due_date is None:
        return False
    return lead.follow_up_due_date > (now or utcnow())


def follow_up_due_now(leads: Iterable[Lead], now: Optional[datetime] = None) -> List[Lead]:
    now = now or utcnow()
    return [lead for lead in leads if is_follow_up_due(lead, now)]


def follow_up_upcoming(leads: Iterable[Lead], now: Optional[datetime] = None) -> List[Lead]:
    now = now or utcnow()
    return [lead for lead in leads if is_follow_up_upcoming(lead, now)]


def ready_to_dm(leads: Iterable[Lead]) -> List[Lead]:
    return [lead for lead in leads if lead.status is LeadStatus.NEW]


def follow_ups_sent(leads: Iterable[Lead]) -> List[Lead]:
    return [lead for lead in leads if lead.status is LeadStatus.FOLLOW_UP_SENT]


def display_status(lead: Lead, now: Optional[datetime] = None) -> LeadStatus:
    """Status to show: FOLLOW_UP_DUE for DMs whose reminder has come up."""
    if is_follow_up_due(lead, now):
        return LeadStatus.FOLLOW_UP_DUE
    return lead.status
