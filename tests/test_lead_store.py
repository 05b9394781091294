"""Tests for the optimistic lead store and its remote sync."""

import asyncio
import itertools
import pytest
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

from database import LEADS, TEMPLATES, LocalStore, RemoteSnapshot
from lead_store import LeadStore
from leads import LeadDraft
from outreach_engine import (
    AppData,
    Category,
    InvalidStatusError,
    Lead,
    LeadNotFoundError,
    LeadStatus,
    Platform,
    RecordNotFoundError,
    Settings,
    Template,
    TemplateNotFoundError,
    TemplateType,
)

USER_ID = "user-1"


class FakeRemote:
    """In-memory stand-in for SupabaseClient that assigns srv-N ids."""

    def __init__(self, snapshot=None, fail=False):
        self.snapshot = snapshot or RemoteSnapshot(leads=[], templates=[], settings=None)
        self.fail = fail
        self.calls = []
        self._ids = itertools.count(1)

    def _record(self, *call):
        self.calls.append(call)
        if self.fail:
            raise RuntimeError("network down")

    def _stored(self, record):
        return replace(record, id=f"srv-{next(self._ids)}")

    def calls_named(self, name):
        return [call for call in self.calls if call[0] == name]

    def fetch_all(self, user_id):
        self._record("fetch_all", user_id)
        return self.snapshot

    def insert(self, kind, record, user_id):
        self._record("insert", kind, record, user_id)
        return self._stored(record)

    def insert_many(self, kind, records, user_id):
        self._record("insert_many", kind, list(records), user_id)
        return [self._stored(record) for record in records]

    def update(self, kind, record_id, changes, user_id):
        self._record("update", kind, record_id, dict(changes), user_id)

    def delete(self, kind, record_id, user_id):
        self._record("delete", kind, record_id, user_id)

    def upsert_settings(self, user_id, changes):
        self._record("upsert_settings", user_id, dict(changes))


@pytest.fixture
def temp_data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def local(temp_data_dir):
    return LocalStore(data_dir=temp_data_dir)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def store(local, remote):
    """Store with remote sync on."""
    return LeadStore(local, remote=remote, user_id=USER_ID)


@pytest.fixture
def offline_store(local):
    """Store running local-only."""
    return LeadStore(local)


def run_and_settle(store, action):
    """Run `action` inside an event loop, then wait for its remote calls."""

    async def scenario():
        result = action()
        await store.wait_for_pending()
        return result

    return asyncio.run(scenario())


class TestLocalOnly:
    """Tests for a store with no remote configured."""

    def test_starts_synced_with_defaults(self, offline_store):
        assert offline_store.remote_enabled is False
        assert offline_store.synced is True
        assert offline_store.leads == []
        assert len(offline_store.templates) == 2

    def test_add_lead_persists_snapshot(self, offline_store, local):
        """Test mutations are written to disk immediately."""
        lead = offline_store.add_lead("Ada", profile_url="x.com/ada", platform=Platform.TWITTER)

        assert lead.id.startswith("lead_")
        assert lead.status == LeadStatus.NEW
        assert LocalStore(data_dir=local.data_dir).load().leads == [lead]

    def test_newest_lead_first(self, offline_store):
        offline_store.add_lead("First")
        offline_store.add_lead("Second")
        assert [lead.name for lead in offline_store.leads] == ["Second", "First"]

    def test_remote_without_user_id_stays_local(self, local, remote):
        store = LeadStore(local, remote=remote, user_id=None)

        store.add_lead("Ada")
        asyncio.run(store.initialize())

        assert store.remote_enabled is False
        assert remote.calls == []

    def test_reload_picks_up_previous_session(self, offline_store, local):
        offline_store.add_lead("Ada")
        assert [lead.name for lead in LeadStore(local).leads] == ["Ada"]


class TestOptimisticCreate:
    """Tests for temp ids and their reconciliation."""

    def test_lead_visible_before_remote_settles(self, store):
        """Test the caller sees the new lead before the insert returns."""

        async def scenario():
            lead = store.add_lead("Ada", profile_url="x.com/ada")
            assert store.get_lead(lead.id) == lead
            assert store.pending_count == 1
            await store.wait_for_pending()
            return lead

        lead = asyncio.run(scenario())

        assert store.pending_count == 0
        assert store.get_lead(lead.id) is None
        assert [item.id for item in store.leads] == ["srv-1"]
        assert store.get_lead("srv-1").name == "Ada"

    def test_reconciled_id_persisted(self, store, local):
        run_and_settle(store, lambda: store.add_lead("Ada"))
        assert [lead.id for lead in local.load().leads] == ["srv-1"]

    def test_runs_inline_without_event_loop(self, store, remote):
        """Test scripts with no running loop still reach the remote store."""
        store.add_lead("Ada")

        assert remote.calls_named("insert")
        assert store.leads[0].id == "srv-1"

    def test_remote_failure_keeps_local_state(self, local, caplog):
        """Test a failed insert leaves the temp-id lead in place."""
        store = LeadStore(local, remote=FakeRemote(fail=True), user_id=USER_ID)

        lead = run_and_settle(store, lambda: store.add_lead("Ada"))

        assert store.leads == [lead]
        assert lead.id.startswith("lead_")
        assert "Failed to insert lead: network down" in caplog.text

    def test_failed_update_not_rolled_back(self, local):
        store = LeadStore(local, remote=FakeRemote(fail=True), user_id=USER_ID)
        lead = run_and_settle(store, lambda: store.add_lead("Ada"))

        run_and_settle(store, lambda: store.mark_status(lead.id, LeadStatus.REPLIED))

        assert store.get_lead(lead.id).status == LeadStatus.REPLIED

    def test_delete_while_insert_in_flight(self, store, remote, caplog):
        """Test a lead deleted before reconciliation is not resurrected locally."""

        def action():
            lead = store.add_lead("Ada")
            store.delete_lead(lead.id)
            return lead

        lead = run_and_settle(store, action)

        assert store.leads == []
        assert remote.calls_named("delete")[0][2] == lead.id
        assert "orphaned" in caplog.text

    def test_template_reconciled(self, store):
        template = run_and_settle(store, lambda: store.add_template("Mine", TemplateType.DM, "Hi [Name]"))

        assert store.get_template(template.id) is None
        assert store.templates[-1].id == "srv-1"
        assert store.templates[-1].content == "Hi [Name]"


class TestBulkAdd:
    """Tests for bulk import through the store."""

    def test_dedupes_and_reconciles_batch(self, store, remote):
        """Test duplicates are skipped and every accepted lead gets a server id."""

        def action():
            store.add_lead("Existing", profile_url="a.com")
            return store.bulk_add_leads(
                [
                    LeadDraft("A again", "A.com"),
                    LeadDraft("C", "c.com"),
                    LeadDraft("C again", "c.com"),
                    LeadDraft("No URL"),
                ]
            )

        result = run_and_settle(store, action)

        assert result.imported == 2
        assert result.duplicates == 2
        assert [lead.name for lead in result.leads] == ["C", "No URL"]
        assert len(remote.calls_named("insert_many")[0][2]) == 2

        ids = [lead.id for lead in store.leads]
        assert len(ids) == 3
        assert len(set(ids)) == 3
        assert all(lead_id.startswith("srv-") for lead_id in ids)

    def test_bulk_leads_visible_before_settle(self, store):
        async def scenario():
            result = store.bulk_add_leads([LeadDraft("One"), LeadDraft("Two")])
            visible = [lead.name for lead in store.leads]
            await store.wait_for_pending()
            return result, visible

        result, visible = asyncio.run(scenario())

        assert visible == ["One", "Two"]
        assert all(lead.id.startswith("lead_bulk_") for lead in result.leads)

    def test_concurrent_batches_reconcile_separately(self, store):
        """Test one batch's reconciliation leaves another's leads alone."""

        def action():
            store.bulk_add_leads([LeadDraft("One", "1.com"), LeadDraft("Two", "2.com")])
            store.bulk_add_leads([LeadDraft("Three", "3.com"), LeadDraft("Four", "4.com")])

        run_and_settle(store, action)

        assert sorted(lead.name for lead in store.leads) == ["Four", "One", "Three", "Two"]
        assert len({lead.id for lead in store.leads}) == 4
        assert all(lead.id.startswith("srv-") for lead in store.leads)

    def test_all_duplicates_skips_remote(self, offline_store):
        offline_store.add_lead("Ada", profile_url="x.com/ada")
        result = offline_store.bulk_add_leads([LeadDraft("Ada", "X.com/Ada")])
        assert result.imported == 0
        assert result.duplicates == 1
        assert len(offline_store.leads) == 1

    def test_failed_bulk_insert_keeps_temp_leads(self, local, caplog):
        """Test a rejected batch stays local under its temp ids."""
        remote = FakeRemote(fail=True)
        store = LeadStore(local, remote=remote, user_id=USER_ID)

        result = run_and_settle(store, lambda: store.bulk_add_leads([LeadDraft("One", "1.com"), LeadDraft("Two")]))

        assert result.imported == 2
        assert [lead.id for lead in store.leads] == [lead.id for lead in result.leads]
        assert all(lead.id.startswith("lead_bulk_") for lead in store.leads)
        assert [lead.name for lead in local.load().leads] == ["One", "Two"]
        assert len(remote.calls_named("insert_many")) == 1
        assert "Failed to bulk insert leads: network down" in caplog.text


class TestLeadLifecycle:
    """Tests for lifecycle mutations through the store."""

    def test_mark_dm_sent_uses_settings_offset(self, offline_store):
        """Test the follow-up offset comes from the saved settings."""
        offline_store.update_settings({"follow_up_days": 5})
        lead = offline_store.add_lead("Ada")

        updated = offline_store.mark_dm_sent(lead.id, dm_text="Hi Ada")

        assert updated.status == LeadStatus.DM_SENT
        assert updated.follow_up_due_date - updated.dm_sent_at == timedelta(days=5)
        assert offline_store.get_lead(lead.id) == updated

    def test_explicit_offset_wins(self, offline_store):
        lead = offline_store.add_lead("Ada")
        updated = offline_store.mark_dm_sent(lead.id, follow_up_days=1)
        assert updated.follow_up_due_date - updated.dm_sent_at == timedelta(days=1)

    def test_only_changed_fields_sent(self, store, remote):
        lead = run_and_settle(store, lambda: store.add_lead("Ada"))
        stored_id = store.leads[0].id

        run_and_settle(store, lambda: store.mark_dm_sent(stored_id, dm_text="Hi"))

        _, kind, record_id, changes, user_id = remote.calls_named("update")[0]
        assert (kind, record_id, user_id) == (LEADS, stored_id, USER_ID)
        assert set(changes) == {"status", "dm_sent_at", "follow_up_due_date", "last_dm_text"}
        assert lead.id != stored_id

    def test_unchanged_lead_sends_nothing(self, store, remote):
        run_and_settle(store, lambda: store.add_lead("Ada"))
        run_and_settle(store, lambda: store.mark_status(store.leads[0].id, LeadStatus.NEW))
        assert remote.calls_named("update") == []

    def test_views(self, offline_store):
        due = offline_store.add_lead("Due")
        later = offline_store.add_lead("Later")
        fresh = offline_store.add_lead("Fresh")
        offline_store.mark_dm_sent(due.id, follow_up_days=0)
        offline_store.mark_dm_sent(later.id, follow_up_days=3)

        assert [lead.id for lead in offline_store.follow_up_due] == [due.id]
        assert [lead.id for lead in offline_store.follow_up_upcoming] == [later.id]
        assert [lead.id for lead in offline_store.new_leads_ready_to_dm] == [fresh.id]

    def test_follow_up_due_cannot_be_stored(self, offline_store):
        lead = offline_store.add_lead("Ada")
        with pytest.raises(InvalidStatusError):
            offline_store.mark_status(lead.id, LeadStatus.FOLLOW_UP_DUE)
        assert offline_store.get_lead(lead.id).status == LeadStatus.NEW

    def test_update_lead(self, offline_store):
        lead = offline_store.add_lead("Ada")
        updated = offline_store.update_lead(lead.id, {"notes": "Replied on Monday", "status": LeadStatus.REPLIED})
        assert updated.notes == "Replied on Monday"
        assert offline_store.get_lead(lead.id).status == LeadStatus.REPLIED

    def test_update_lead_converts_raw_values(self, offline_store, local):
        """Test enum values and ISO strings are stored as enums and datetimes."""
        lead = offline_store.add_lead("Ada")

        updated = offline_store.update_lead(
            lead.id, {"platform": "Twitter", "category": "Agency", "replied_at": "2026-10-14T12:00:00Z"}
        )

        assert updated.platform == Platform.TWITTER
        assert updated.category == Category.AGENCY
        assert updated.replied_at == datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)

        offline_store.add_lead("Bob")
        saved = {item.name: item for item in local.load().leads}
        assert set(saved) == {"Ada", "Bob"}
        assert saved["Ada"].platform == Platform.TWITTER

    @pytest.mark.parametrize(
        "changes",
        [{"platform": "MySpace"}, {"category": 7}, {"dm_sent_at": "yesterday"}, {"status": "ghosted"}],
    )
    def test_bad_update_leaves_state_untouched(self, offline_store, local, changes):
        """Test a rejected update changes nothing and later mutations still work."""
        lead = offline_store.add_lead("Ada")

        with pytest.raises(ValueError):
            offline_store.update_lead(lead.id, changes)

        assert offline_store.get_lead(lead.id) == lead
        offline_store.add_lead("Bob")
        assert [item.name for item in local.load().leads] == ["Bob", "Ada"]

    def test_unserializable_state_is_not_committed(self, offline_store, local):
        lead = offline_store.add_lead("Ada")
        broken = replace(offline_store.data, leads=[replace(lead, platform="Twitter")])

        with pytest.raises(AttributeError):
            offline_store._commit(broken)

        assert offline_store.get_lead(lead.id).platform == Platform.OTHER
        assert local.load().leads == [lead]

    def test_unknown_lead(self, offline_store):
        with pytest.raises(LeadNotFoundError):
            offline_store.update_lead("missing", {"notes": "x"})
        with pytest.raises(LeadNotFoundError):
            offline_store.delete_lead("missing")
        with pytest.raises(LeadNotFoundError):
            offline_store.mark_follow_up_sent("missing")

    def test_mark_follow_up_sent(self, offline_store):
        lead = offline_store.add_lead("Ada")
        offline_store.mark_dm_sent(lead.id)
        updated = offline_store.mark_follow_up_sent(lead.id)
        assert updated.status == LeadStatus.FOLLOW_UP_SENT
        assert updated.follow_up_sent_at is not None
        assert offline_store.follow_up_due == []


class TestTemplatesAndSettings:
    """Tests for template and settings mutations."""

    def test_update_template(self, offline_store):
        template = offline_store.templates[0]
        updated = offline_store.update_template(template.id, {"content": "Yo [Name]", "type": "followup"})
        assert updated.content == "Yo [Name]"
        assert updated.type == TemplateType.FOLLOWUP
        assert updated.id == template.id

    def test_template_id_is_immutable(self, offline_store):
        with pytest.raises(ValueError):
            offline_store.update_template(offline_store.templates[0].id, {"id": "other"})

    def test_delete_template(self, offline_store):
        template_id = offline_store.templates[0].id
        offline_store.delete_template(template_id)
        assert offline_store.get_template(template_id) is None
        with pytest.raises(TemplateNotFoundError):
            offline_store.delete_template(template_id)

    def test_missing_template_error(self, offline_store):
        with pytest.raises(TemplateNotFoundError) as excinfo:
            offline_store.update_template("missing", {"content": "Hi"})
        assert isinstance(excinfo.value, RecordNotFoundError)
        assert not isinstance(excinfo.value, LeadNotFoundError)

    def test_update_settings_sends_changes(self, store, remote):
        settings = run_and_settle(store, lambda: store.update_settings({"service_description": "Web design"}))

        assert settings.service_description == "Web design"
        assert remote.calls_named("upsert_settings") == [
            ("upsert_settings", USER_ID, {"service_description": "Web design"})
        ]

    def test_unknown_setting_rejected(self, offline_store):
        with pytest.raises(ValueError):
            offline_store.update_settings({"theme": "dark"})

    def test_follow_up_days_given_as_text(self, offline_store):
        """Test a numeric string offset is stored as an int and used by mark_dm_sent."""
        settings = offline_store.update_settings({"follow_up_days": "5"})
        assert settings.follow_up_days == 5

        lead = offline_store.add_lead("Ada")
        updated = offline_store.mark_dm_sent(lead.id)

        assert updated.follow_up_due_date - updated.dm_sent_at == timedelta(days=5)

    @pytest.mark.parametrize("days", ["five", "2.5", -1, None, True])
    def test_bad_follow_up_days_rejected(self, offline_store, days):
        with pytest.raises(ValueError):
            offline_store.update_settings({"follow_up_days": days})
        assert offline_store.settings.follow_up_days == 3


class TestInitialize:
    """Tests for the one-time remote load."""

    def test_remote_replaces_local(self, local):
        """Test remote data wins over the local snapshot."""
        local.save(AppData(leads=[Lead(id="local-1", name="Local")]))
        remote = FakeRemote(
            RemoteSnapshot(
                leads=[Lead(id="srv-9", name="Remote")],
                templates=[Template(id="srv-t", name="Remote tpl", type=TemplateType.DM, content="Hi")],
                settings=Settings(follow_up_days=7),
            )
        )
        store = LeadStore(local, remote=remote, user_id=USER_ID)
        assert store.synced is False

        asyncio.run(store.initialize())

        assert store.synced is True
        assert [lead.id for lead in store.leads] == ["srv-9"]
        assert [tpl.id for tpl in store.templates] == ["srv-t"]
        assert store.settings.follow_up_days == 7
        assert remote.calls_named("insert") == []
        assert remote.calls_named("upsert_settings") == []
        assert [lead.id for lead in local.load().leads] == ["srv-9"]

    def test_seeds_empty_account(self, store, remote):
        """Test a new account gets default templates and settings remotely."""
        asyncio.run(store.initialize())

        seeded = remote.calls_named("insert")
        assert [call[1] for call in seeded] == [TEMPLATES, TEMPLATES]
        assert [tpl.id for tpl in store.templates] == ["tpl_dm_1", "tpl_fu_1"]
        assert store.settings == Settings()
        assert remote.calls_named("upsert_settings")[0][2]["follow_up_days"] == 3

    def test_runs_once(self, store, remote):
        async def scenario():
            await store.initialize()
            await store.initialize()

        asyncio.run(scenario())

        assert len(remote.calls_named("fetch_all")) == 1

    def test_failure_keeps_local_and_marks_synced(self, local, caplog):
        """Test an unreachable remote leaves the local snapshot in charge."""
        local.save(AppData(leads=[Lead(id="local-1", name="Local")]))
        store = LeadStore(local, remote=FakeRemote(fail=True), user_id=USER_ID)

        asyncio.run(store.initialize())

        assert store.synced is True
        assert [lead.id for lead in store.leads] == ["local-1"]
        assert "keeping local data" in caplog.text
