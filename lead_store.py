"""
Lead Store - optimistic local state with best-effort Supabase sync

The single owner of a user's AppData. Every mutation:
1. Applies to the in-memory copy immediately (callers see it at once)
2. Writes the local snapshot
3. If a remote store and a user id are configured, schedules the matching
   Supabase call on the running asyncio loop and returns without waiting

Remote failures are logged and otherwise ignored: the local state stays as
the caller left it, with no retry and no rollback. Records created locally
carry a temporary id until the remote insert returns, at which point the
pending creation is reconciled (temp record swapped for the stored one).

Usage:
    store = LeadStore(LocalStore(), remote=SupabaseClient(), user_id=user.id)
    await store.initialize()

    lead = store.add_lead("Ada", profile_url="https://x.com/ada", platform=Platform.TWITTER)
    store.mark_dm_sent(lead.id, dm_text="Hey Ada!")
    ...
    await store.wait_for_pending()
"""

import asyncio
import logging
import os
import random
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from database import LEADS, TEMPLATES, LocalStore, SupabaseClient
from leads import LeadDraft, dedupe
from outreach_engine import (
    AppData,
    Lead,
    LeadNotFoundError,
    LeadStatus,
    Settings,
    Template,
    TemplateNotFoundError,
    TemplateType,
    apply_update,
    changed_fields,
    default_templates,
    follow_up_due_now,
    follow_up_upcoming,
    generate_temp_id,
    mark_dm_sent,
    mark_follow_up_sent,
    mark_status,
    ready_to_dm,
    utcnow,
)

logger = logging.getLogger(__name__)

LEAD_ID_PREFIX = "lead"
BULK_LEAD_ID_PREFIX = "lead_bulk"
TEMPLATE_ID_PREFIX = "tpl"

TEMPLATE_EDITABLE_FIELDS = frozenset({"name", "type", "content"})
SETTINGS_FIELDS = frozenset({"gemini_api_key", "service_description", "follow_up_days"})


def _coerce_settings_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    coerced = {}
    for name, value in changes.items():
        if name == "follow_up_days":
            try:
                if isinstance(value, bool):
                    raise TypeError
                days = int(value)
            except (TypeError, ValueError):
                raise ValueError(f"follow_up_days must be a whole number, got {value!r}")
            if days < 0:
                raise ValueError(f"follow_up_days must be >= 0, got {value!r}")
            value = days
        else:
            value = "" if value is None else str(value)
        coerced[name] = value
    return coerced


@dataclass
class BulkAddResult:
    """What bulk_add_leads did with a batch."""
    imported: int = 0
    duplicates: int = 0
    leads: List[Lead] = field(default_factory=list)


class LeadStore:
    """
    Owns the authoritative AppData for one user or device.

    Remote sync is on only when both `remote` and `user_id` are given;
    otherwise the store runs local-only and never touches the network.
    """

    def __init__(
        self,
        local: LocalStore,
        remote: Optional[SupabaseClient] = None,
        user_id: Optional[str] = None,
    ):
        """
        Args:
            local: Snapshot store, read once here and written after every change
            remote: Supabase mirror (optional)
            user_id: Scope for remote rows (optional)
        """
        self.local = local
        self.remote = remote
        self.user_id = user_id
        self._data: AppData = local.load()
        self._initialized = False
        self._synced = not self.remote_enabled
        self._pending: Set[asyncio.Task] = set()

    # =========================================
    # Read-only views
    # =========================================

    @property
    def remote_enabled(self) -> bool:
        return self.remote is not None and bool(self.user_id)

    @property
    def synced(self) -> bool:
        """True once the startup load finished (or when running local-only)."""
        return self._synced

    @property
    def data(self) -> AppData:
        return self._data

    @property
    def leads(self) -> List[Lead]:
        return list(self._data.leads)

    @property
    def templates(self) -> List[Template]:
        return list(self._data.templates)

    @property
    def settings(self) -> Settings:
        return self._data.settings

    @property
    def follow_up_due(self) -> List[Lead]:
        return follow_up_due_now(self._data.leads, utcnow())

    @property
    def follow_up_upcoming(self) -> List[Lead]:
        return follow_up_upcoming(self._data.leads, utcnow())

    @property
    def new_leads_ready_to_dm(self) -> List[Lead]:
        return ready_to_dm(self._data.leads)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_lead(self, lead_id: str) -> Optional[Lead]:
        return next((lead for lead in self._data.leads if lead.id == lead_id), None)

    def get_template(self, template_id: str) -> Optional[Template]:
        return next((tpl for tpl in self._data.templates if tpl.id == template_id), None)

    # =========================================
    # Internal: state and remote dispatch
    # =========================================

    def _commit(self, data: AppData) -> None:
        """
        Mirror `data` to the local snapshot, then make it the in-memory state.

        Data that cannot be serialized raises before anything is replaced.
        Disk errors are logged and the new state is kept.
        """
        try:
            self.local.save(data)
        except OSError as e:
            logger.error("Failed to save local snapshot: %s", e)
        self._data = data

    def _dispatch(
        self,
        action: str,
        call: Callable[[], Any],
        on_success: Optional[Callable[[Any], None]] = None,
    ) -> None:
        """
        Run a remote call without making the caller wait for it.

        Inside a running event loop the call becomes a detached task; with
        no loop running (scripts) it is run to completion inline.
        """
        if not self.remote_enabled:
            return

        coro = self._run_remote(action, call, on_success)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(coro)
            return

        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run_remote(
        self,
        action: str,
        call: Callable[[], Any],
        on_success: Optional[Callable[[Any], None]],
    ) -> None:
        try:
            result = await asyncio.to_thread(call)
        except Exception as e:
            logger.error("Failed to %s: %s", action, e)
            return
        logger.debug("Remote %s succeeded", action)
        if on_success is not None:
            on_success(result)

    async def wait_for_pending(self) -> None:
        """Wait until every scheduled remote call has settled."""
        while self._pending:
            pending = list(self._pending)
            await asyncio.gather(*pending, return_exceptions=True)
            self._pending.difference_update(pending)

    def _require_lead(self, lead_id: str) -> Lead:
        lead = self.get_lead(lead_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        return lead

    def _require_template(self, template_id: str) -> Template:
        template = self.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    # =========================================
    # Startup
    # =========================================

    async def initialize(self) -> None:
        """
        One-time bulk load from Supabase.

        The remote data replaces the local state. Missing templates or
        settings are seeded remotely while the in-memory defaults are kept.
        On failure the local snapshot stays in place. Either way `synced`
        ends up True. Later calls are no-ops.
        """
        if not self.remote_enabled or self._initialized:
            return
        self._initialized = True
        self._synced = False

        try:
            snapshot = await asyncio.to_thread(self.remote.fetch_all, self.user_id)

            templates = snapshot.templates
            if not templates:
                templates = default_templates()
                for template in templates:
                    await asyncio.to_thread(self.remote.insert, TEMPLATES, template, self.user_id)
                logger.info("Seeded %d default templates for user %s", len(templates), self.user_id)

            settings = snapshot.settings
            if settings is None:
                settings = Settings()
                await asyncio.to_thread(
                    self.remote.upsert_settings,
                    self.user_id,
                    {name: getattr(settings, name) for name in SETTINGS_FIELDS},
                )
                logger.info("Seeded default settings for user %s", self.user_id)

            self._commit(AppData(leads=snapshot.leads, templates=templates, settings=settings))
            logger.info(
                "Loaded %d leads and %d templates from Supabase",
                len(snapshot.leads),
                len(templates),
            )
        except Exception as e:
            logger.error("Failed to load from Supabase, keeping local data: %s", e)
        finally:
            self._synced = True

    # =========================================
    # Reconciliation
    # =========================================

    def reconcile_pending_creation(self, kind: str, temp_id: str, stored) -> bool:
        """
        Swap the temp-id record for the record the remote store returned.

        Returns False when the temp record is gone (deleted while the
        insert was in flight); the remote row then outlives the local
        delete and comes back on the next load.
        """
        attr = "leads" if kind == LEADS else "templates"
        items = getattr(self._data, attr)
        if not any(item.id == temp_id for item in items):
            logger.warning(
                "%s %s was removed before its insert finished; remote row %s is orphaned",
                kind,
                temp_id,
                stored.id,
            )
            return False

        updated = [stored if item.id == temp_id else item for item in items]
        self._commit(replace(self._data, **{attr: updated}))
        logger.debug("Reconciled %s %s -> %s", kind, temp_id, stored.id)
        return True

    def reconcile_bulk_creation(self, batch_prefix: str, stored: List[Lead]) -> None:
        """Replace every pending lead of one bulk batch with the stored rows."""
        remaining = [lead for lead in self._data.leads if not lead.id.startswith(batch_prefix)]
        self._commit(replace(self._data, leads=list(stored) + remaining))
        logger.debug("Reconciled bulk batch %s with %d stored leads", batch_prefix, len(stored))

    # =========================================
    # Leads
    # =========================================

    def add_lead(self, name: str, **fields) -> Lead:
        """
        Create a lead with status NEW.

        Keyword fields: profile_url, platform, category, notes.

        Returns:
            The new lead, under a temporary id until Supabase confirms it
        """
        draft = LeadDraft(name=name, **fields)
        lead = Lead(
            id=generate_temp_id(LEAD_ID_PREFIX),
            name=draft.name,
            profile_url=draft.profile_url,
            platform=draft.platform,
            category=draft.category,
            notes=draft.notes,
            status=LeadStatus.NEW,
            added_at=utcnow(),
        )
        self._commit(replace(self._data, leads=[lead] + self._data.leads))

        self._dispatch(
            "insert lead",
            lambda: self.remote.insert(LEADS, lead, self.user_id),
            on_success=lambda stored: self.reconcile_pending_creation(LEADS, lead.id, stored),
        )
        return lead

    def bulk_add_leads(self, drafts: Iterable[LeadDraft]) -> BulkAddResult:
        """
        Add a batch of leads, skipping duplicates by profile URL.

        Duplicates are checked against current leads and against earlier
        records of the same batch.
        """
        merged = dedupe(self._data.leads, list(drafts))
        result = BulkAddResult(imported=merged.accepted_count, duplicates=merged.duplicate_count)
        if not merged.accepted:
            return result

        batch_prefix = f"{generate_temp_id(BULK_LEAD_ID_PREFIX)}_"
        now = utcnow()
        result.leads = [
            Lead(
                id=f"{batch_prefix}{idx}_{random.getrandbits(32):08x}",
                name=draft.name,
                profile_url=draft.profile_url,
                platform=draft.platform,
                category=draft.category,
                notes=draft.notes,
                status=LeadStatus.NEW,
                added_at=now,
            )
            for idx, draft in enumerate(merged.accepted)
        ]
        self._commit(replace(self._data, leads=result.leads + self._data.leads))
        logger.info("Imported %d leads, skipped %d duplicates", result.imported, result.duplicates)

        pending = list(result.leads)
        self._dispatch(
            "bulk insert leads",
            lambda: self.remote.insert_many(LEADS, pending, self.user_id),
            on_success=lambda stored: self.reconcile_bulk_creation(batch_prefix, stored),
        )
        return result

    def _change_lead(self, lead_id: str, transform: Callable[[Lead], Lead]) -> Lead:
        before = self._require_lead(lead_id)
        after = transform(before)
        changes = changed_fields(before, after)
        self._commit(
            replace(self._data, leads=[after if lead.id == lead_id else lead for lead in self._data.leads])
        )
        if changes:
            self._dispatch(
                "update lead",
                lambda: self.remote.update(LEADS, lead_id, changes, self.user_id),
            )
        return after

    def update_lead(self, lead_id: str, changes: Dict[str, Any]) -> Lead:
        """Set arbitrary lead fields (id and added_at excepted)."""
        return self._change_lead(lead_id, lambda lead: apply_update(lead, changes))

    def delete_lead(self, lead_id: str) -> None:
        self._require_lead(lead_id)
        self._commit(replace(self._data, leads=[lead for lead in self._data.leads if lead.id != lead_id]))
        self._dispatch("delete lead", lambda: self.remote.delete(LEADS, lead_id, self.user_id))

    def mark_dm_sent(
        self,
        lead_id: str,
        dm_text: Optional[str] = None,
        follow_up_days: Optional[int] = None,
    ) -> Lead:
        """
        Record the first DM; the follow-up offset defaults to the current
        settings value.
        """
        if follow_up_days is None:
            follow_up_days = self._data.settings.follow_up_days
        now = utcnow()
        return self._change_lead(
            lead_id, lambda lead: mark_dm_sent(lead, dm_text, follow_up_days, now)
        )

    def mark_follow_up_sent(self, lead_id: str) -> Lead:
        now = utcnow()
        return self._change_lead(lead_id, lambda lead: mark_follow_up_sent(lead, now))

    def mark_status(self, lead_id: str, status: LeadStatus) -> Lead:
        return self._change_lead(lead_id, lambda lead: mark_status(lead, status))

    # =========================================
    # Templates
    # =========================================

    def add_template(self, name: str, template_type: TemplateType, content: str) -> Template:
        template = Template(
            id=generate_temp_id(TEMPLATE_ID_PREFIX),
            name=name,
            type=TemplateType(template_type),
            content=content,
            created_at=utcnow(),
        )
        self._commit(replace(self._data, templates=self._data.templates + [template]))

        self._dispatch(
            "insert template",
            lambda: self.remote.insert(TEMPLATES, template, self.user_id),
            on_success=lambda stored: self.reconcile_pending_creation(TEMPLATES, template.id, stored),
        )
        return template

    def update_template(self, template_id: str, changes: Dict[str, Any]) -> Template:
        unknown = set(changes) - TEMPLATE_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Template fields cannot be changed: {sorted(unknown)}")
        if "type" in changes:
            changes = {**changes, "type": TemplateType(changes["type"])}

        updated = replace(self._require_template(template_id), **changes)
        self._commit(
            replace(
                self._data,
                templates=[updated if tpl.id == template_id else tpl for tpl in self._data.templates],
            )
        )
        self._dispatch(
            "update template",
            lambda: self.remote.update(TEMPLATES, template_id, changes, self.user_id),
        )
        return updated

    def delete_template(self, template_id: str) -> None:
        self._require_template(template_id)
        self._commit(
            replace(self._data, templates=[tpl for tpl in self._data.templates if tpl.id != template_id])
        )
        self._dispatch("delete template", lambda: self.remote.delete(TEMPLATES, template_id, self.user_id))

    # =========================================
    # Settings
    # =========================================

    def update_settings(self, changes: Dict[str, Any]) -> Settings:
        """
        Change account settings.

        Raises:
            ValueError: unknown key, or a follow-up offset that is not a
                non-negative whole number of days
        """
        unknown = set(changes) - SETTINGS_FIELDS
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")

        changes = _coerce_settings_changes(changes)
        settings = replace(self._data.settings, **changes)
        self._commit(replace(self._data, settings=settings))
        self._dispatch(
            "update settings",
            lambda: self.remote.upsert_settings(self.user_id, dict(changes)),
        )
        return settings


# =========================================
# Composition & CLI
# =========================================


def build_store(user_id: Optional[str] = None, data_dir: Optional[str] = None) -> LeadStore:
    """
    Wire a LeadStore from the environment.

    Supabase is used only when SUPABASE_URL/SUPABASE_KEY are set and a user
    id is available (argument or LEADPULSE_USER_ID).
    """
    from database import DatabaseConfig

    user_id = user_id or os.environ.get("LEADPULSE_USER_ID")
    remote = SupabaseClient() if DatabaseConfig.is_configured() and user_id else None
    return LeadStore(LocalStore(data_dir=data_dir), remote=remote, user_id=user_id)


def _cli():
    """Simple CLI for inspecting the pipeline."""
    import argparse
    import json

    from analytics import OutreachAnalytics

    parser = argparse.ArgumentParser(description="LeadPulse lead store")
    parser.add_argument("command", choices=["list", "due", "upcoming", "ready", "stats", "smoke-test"])
    parser.add_argument("--user-id", help="Remote scope (or set LEADPULSE_USER_ID)")
    parser.add_argument("--data-dir", help="Local snapshot directory (or set LEADPULSE_DATA_DIR)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")

    try:
        store = build_store(user_id=args.user_id, data_dir=args.data_dir)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    async def run() -> int:
        await store.initialize()

        if args.command in ("list", "due", "upcoming", "ready"):
            selected = {
                "list": store.leads,
                "due": store.follow_up_due,
                "upcoming": store.follow_up_upcoming,
                "ready": store.new_leads_ready_to_dm,
            }[args.command]
            print(json.dumps([lead.to_dict() for lead in selected], indent=2))

        elif args.command == "stats":
            print(json.dumps(OutreachAnalytics(store.leads).summary(), indent=2))

        elif args.command == "smoke-test":
            print("Running smoke test...")
            print(f"  Local snapshot: {store.local.path}")
            print(f"  Remote sync: {'on' if store.remote_enabled else 'off'}")
            print(f"  Synced: {store.synced}")
            print(f"  Leads: {len(store.leads)}, templates: {len(store.templates)}")
            print(f"  Follow-ups due: {len(store.follow_up_due)}")
            print("Smoke test passed!")

        await store.wait_for_pending()
        return 0

    return asyncio.run(run())


if __name__ == "__main__":
    exit(_cli())
