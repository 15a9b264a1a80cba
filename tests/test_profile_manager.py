"""
Tests for the profile lifecycle manager.

Tests:
- Profile CRUD and the synthetic Default Context
- Switch migration between the working view and profile storage
- Round trips without loss or duplication
- Concurrency: one active profile per user under parallel switches
- Rollback when a switch fails midway
"""

import threading
from unittest.mock import patch

import pytest
from pydantic import ValidationError
from sqlalchemy import update

from contextbank.config import get_settings
from contextbank.constants import DEFAULT_ARCHIVE_NAMESPACE_ID, DEFAULT_PROFILE_NAME
from contextbank.db_models import DBAuditLog, DBProfile, DBUser
from contextbank.exceptions import (
    CannotDeleteActive,
    ConcurrentSwitch,
    DuplicateName,
    ProfileLocked,
    ProfileNotFound,
)
from contextbank.profile_manager import ProfileLifecycleManager


def active_count(session_factory, user_id):
    db = session_factory()
    try:
        return db.query(DBProfile).filter(
            DBProfile.user_id == user_id, DBProfile.is_active.is_(True)
        ).count()
    finally:
        db.close()


class TestProfileCrud:
    """Test create, list, get, update and delete."""

    def test_create_profile(self, profiles, user_id):
        """New profiles are inactive, unlocked, with an empty v1 knowledge state."""
        created = profiles.create(user_id, "Alpha", "First research track")

        assert created.profile.name == "Alpha"
        assert created.profile.is_active is False
        assert created.profile.is_locked is False
        assert created.knowledge_state.version == 1
        assert created.knowledge_state.payload == {}

    def test_duplicate_name_rejected(self, profiles, user_id):
        """Exact-match names collide per user."""
        profiles.create(user_id, "Alpha")

        with pytest.raises(DuplicateName):
            profiles.create(user_id, "Alpha")

    def test_same_name_for_different_users(self, profiles):
        """Uniqueness is per user."""
        profiles.create(1, "Alpha")
        assert profiles.create(2, "Alpha").profile.user_id == 2

    def test_blank_name_rejected(self, profiles, user_id):
        """Whitespace-only names fail validation."""
        with pytest.raises(ValidationError):
            profiles.create(user_id, "   ")

    def test_list_includes_default_context(self, profiles, user_id):
        """The synthetic Default Context is listed first and active initially."""
        profiles.create(user_id, "Alpha")
        listed = profiles.list(user_id)

        assert listed[0].id == 0
        assert listed[0].name == DEFAULT_PROFILE_NAME
        assert listed[0].is_active is True
        assert [p.name for p in listed[1:]] == ["Alpha"]
        assert listed[1].knowledge_version == 1

    def test_list_marks_active_profile(self, profiles, user_id):
        """After switching, the default is no longer flagged active."""
        alpha = profiles.create(user_id, "Alpha").profile
        profiles.switch(user_id, alpha.id)
        listed = profiles.list(user_id)

        assert listed[0].is_active is False
        assert listed[1].is_active is True

    def test_get_and_get_active(self, profiles, user_id):
        """get() resolves real and default profiles; get_active follows switches."""
        alpha = profiles.create(user_id, "Alpha").profile

        assert profiles.get(user_id, alpha.id).name == "Alpha"
        assert profiles.get_active(user_id).id == 0
        profiles.switch(user_id, alpha.id)
        assert profiles.get_active(user_id).id == alpha.id

    def test_get_other_users_profile(self, profiles):
        """Profiles are invisible to other users."""
        alpha = profiles.create(1, "Alpha").profile

        with pytest.raises(ProfileNotFound):
            profiles.get(2, alpha.id)

    def test_update_profile(self, profiles, user_id):
        """Profiles can be renamed, but not onto an existing name."""
        alpha = profiles.create(user_id, "Alpha").profile
        profiles.create(user_id, "Beta")

        renamed = profiles.update(user_id, alpha.id, name="Gamma", description="renamed")
        assert renamed.name == "Gamma"
        assert renamed.description == "renamed"

        with pytest.raises(DuplicateName):
            profiles.update(user_id, alpha.id, name="Beta")

    def test_delete_inactive_profile(self, profiles, store, user_id):
        """Delete removes the profile and its stored records."""
        alpha = profiles.create(user_id, "Alpha").profile
        profiles.switch(user_id, alpha.id)
        store.add_message(user_id, 0, "user", "in alpha")
        profiles.switch(user_id, 0)
        assert store.count_records(user_id, alpha.id) == 1

        profiles.delete(user_id, alpha.id)

        assert store.count_records(user_id, alpha.id) == 0
        with pytest.raises(ProfileNotFound):
            profiles.get(user_id, alpha.id)

    def test_delete_active_profile_rejected(self, profiles, user_id):
        """The active profile cannot be deleted."""
        alpha = profiles.create(user_id, "Alpha").profile
        profiles.switch(user_id, alpha.id)

        with pytest.raises(CannotDeleteActive):
            profiles.delete(user_id, alpha.id)

    def test_delete_default_context_rejected(self, profiles, user_id):
        """The synthetic Default Context is not a deletable profile."""
        with pytest.raises(ProfileNotFound):
            profiles.delete(user_id, 0)


class TestKnowledgeState:
    """Test profile knowledge payloads and the profile lock."""

    def test_update_knowledge_bumps_version(self, profiles, user_id):
        """Each update replaces the payload and increments the version."""
        alpha = profiles.create(user_id, "Alpha").profile

        state = profiles.update_knowledge(user_id, alpha.id, {"topics": ["rss"]})
        assert state.version == 2
        assert profiles.get_knowledge(user_id, alpha.id).payload == {"topics": ["rss"]}

    def test_locked_profile_rejects_knowledge_updates(self, profiles, user_id):
        """A locked profile fails ProfileLocked and keeps its version."""
        alpha = profiles.create(user_id, "Alpha").profile
        profiles.set_locked(user_id, alpha.id, True)

        with pytest.raises(ProfileLocked):
            profiles.update_knowledge(user_id, alpha.id, {"x": 1})
        assert profiles.get_knowledge(user_id, alpha.id).version == 1

        profiles.set_locked(user_id, alpha.id, False)
        assert profiles.update_knowledge(user_id, alpha.id, {"x": 1}).version == 2


class TestSwitch:
    """Test the switch protocol."""

    def test_switch_to_current_is_noop(self, profiles, store, user_id):
        """Switching to the active namespace migrates nothing."""
        store.add_message(user_id, 0, "user", "hello")

        result = profiles.switch(user_id, 0)

        assert result.switched is False
        assert result.migrated == 0
        assert store.count_records(user_id, 0) == 1

    def test_switch_unknown_profile(self, profiles, user_id):
        """Unknown targets fail ProfileNotFound and leave the pointer alone."""
        with pytest.raises(ProfileNotFound):
            profiles.switch(user_id, 999)
        assert profiles.get_active(user_id).id == 0

    def test_switch_activates_exactly_one(self, profiles, session_factory, user_id):
        """Only the target is flagged active after each switch."""
        alpha = profiles.create(user_id, "Alpha").profile
        beta = profiles.create(user_id, "Beta").profile

        profiles.switch(user_id, alpha.id)
        profiles.switch(user_id, beta.id)

        assert active_count(session_factory, user_id) == 1
        assert profiles.get(user_id, beta.id).is_active is True
        assert profiles.get(user_id, alpha.id).is_active is False

        profiles.switch(user_id, 0)
        assert active_count(session_factory, user_id) == 0

    def test_records_follow_their_profile(self, profiles, store, user_id):
        """Records written while a profile is active are stored under it."""
        alpha = profiles.create(user_id, "Alpha").profile
        profiles.switch(user_id, alpha.id)
        store.add_reference_item(user_id, 0, "https://one.example")
        store.add_reference_item(user_id, 0, "https://two.example")

        result = profiles.switch(user_id, 0)

        assert result.migrated_reference_items == 2
        assert store.count_records(user_id, alpha.id) == 2
        assert store.count_records(user_id, 0) == 0

    def test_profile_round_trip(self, profiles, store, user_id):
        """Alpha's items reappear on return, with no duplicates after more switches."""
        alpha = profiles.create(user_id, "Alpha").profile
        profiles.switch(user_id, alpha.id)
        store.add_reference_item(user_id, 0, "https://one.example")
        store.add_message(user_id, 0, "user", "question")
        profiles.switch(user_id, 0)

        back = profiles.switch(user_id, alpha.id)
        assert back.loaded_reference_items == 1
        assert back.loaded_messages == 1
        assert store.count_records(user_id, 0) == 2

        profiles.switch(user_id, 0)
        profiles.switch(user_id, alpha.id)
        assert store.count_records(user_id, 0) == 2
        # Storage keeps its copy while the working view is loaded
        assert store.count_records(user_id, alpha.id) == 2
        keys = {r.record_key for r in store.list_records(user_id, 0)}
        assert keys == {r.record_key for r in store.list_records(user_id, alpha.id)}

    def test_default_content_never_leaks(self, profiles, store, user_id):
        """Default Context records are archived, not copied into a profile."""
        store.add_reference_item(user_id, 0, "https://default.example")
        alpha = profiles.create(user_id, "Alpha").profile

        result = profiles.switch(user_id, alpha.id)

        assert result.migrated_reference_items == 1
        assert store.count_records(user_id, 0) == 0
        assert store.count_records(user_id, DEFAULT_ARCHIVE_NAMESPACE_ID) == 1

        profiles.switch(user_id, 0)
        assert store.count_records(user_id, alpha.id) == 0
        assert [i.url for i in store.list_reference_items(user_id, 0)] == ["https://default.example"]

    def test_edits_survive_round_trip(self, profiles, store, user_id):
        """Changes made in the working view are written back on flush."""
        alpha = profiles.create(user_id, "Alpha").profile
        profiles.switch(user_id, alpha.id)
        item = store.add_reference_item(user_id, 0, "https://one.example", notes="draft")
        profiles.switch(user_id, 0)
        profiles.switch(user_id, alpha.id)

        loaded = store.list_reference_items(user_id, 0)[0]
        assert loaded.record_key == item.record_key
        store.update_record(user_id, 0, loaded.id, {"notes": "final"})
        profiles.switch(user_id, 0)

        assert store.list_reference_items(user_id, alpha.id)[0].notes == "final"

    def test_switch_is_audited(self, profiles, session_factory, user_id):
        """Committed switches are written to the audit log."""
        alpha = profiles.create(user_id, "Alpha").profile
        profiles.switch(user_id, alpha.id)

        db = session_factory()
        try:
            actions = [a.action for a in db.query(DBAuditLog).filter(DBAuditLog.subject_type == "profile")]
        finally:
            db.close()
        assert "switch" in actions


class TestSwitchFailures:
    """Test rollback and concurrent-switch detection."""

    def test_failure_mid_switch_rolls_back(self, profiles, store, user_id):
        """A failure during load leaves records and pointer untouched."""
        alpha = profiles.create(user_id, "Alpha").profile
        store.add_message(user_id, 0, "user", "keep me")

        with patch.object(store, "copy_namespace", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                profiles.switch(user_id, alpha.id)

        assert profiles.get_active(user_id).id == 0
        assert store.count_records(user_id, 0) == 1
        assert store.count_records(user_id, DEFAULT_ARCHIVE_NAMESPACE_ID) == 0
        assert profiles.get(user_id, alpha.id).is_active is False

    def test_revision_change_raises_concurrent_switch(self, profiles, store, session_factory, user_id):
        """A pointer moved by another process is detected at the compare-and-set."""
        alpha = profiles.create(user_id, "Alpha").profile
        original_copy = store.copy_namespace

        def copy_then_bump(*args, **kwargs):
            result = original_copy(*args, **kwargs)
            db = kwargs["db"]
            # Simulate another process committing a switch first
            db.execute(update(DBUser).where(DBUser.id == user_id).values(
                switch_revision=DBUser.switch_revision + 1
            ))
            return result

        with patch.object(store, "copy_namespace", side_effect=copy_then_bump):
            with pytest.raises(ConcurrentSwitch):
                profiles.switch(user_id, alpha.id)

        assert profiles.get_active(user_id).id == 0

    def test_concurrent_switch_retried(self, profiles, store, user_id):
        """A transient conflict is retried and the switch completes."""
        alpha = profiles.create(user_id, "Alpha").profile
        original_copy = store.copy_namespace
        calls = []

        def conflict_once(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrentSwitch(user_id)
            return original_copy(*args, **kwargs)

        with patch.object(store, "copy_namespace", side_effect=conflict_once):
            result = profiles.switch(user_id, alpha.id)

        assert len(calls) == 2
        assert result.active_profile_id == alpha.id

    def test_retry_budget_read_from_settings(self, profiles, store, user_id, monkeypatch):
        """A switch_max_attempts override made after import bounds the retries."""
        alpha = profiles.create(user_id, "Alpha").profile
        monkeypatch.setattr(get_settings(), "switch_max_attempts", 5)
        calls = []

        def always_conflict(*args, **kwargs):
            calls.append(1)
            raise ConcurrentSwitch(user_id)

        with patch.object(store, "copy_namespace", side_effect=always_conflict):
            with pytest.raises(ConcurrentSwitch):
                profiles.switch(user_id, alpha.id)

        assert len(calls) == 5
        assert profiles.get_active(user_id).id == 0

    def test_user_locks_released_after_switch(self, profiles, user_id):
        """Per-user locks are shared while held and dropped once idle."""
        alpha = profiles.create(user_id, "Alpha").profile

        held = profiles._user_lock(user_id)
        shared = profiles._user_lock(user_id) is held
        del held
        assert shared

        profiles.switch(user_id, alpha.id)

        assert len(profiles._user_locks) == 0

    def test_parallel_switches_keep_one_active(self, session_factory, store, audit, user_id):
        """Parallel switches for one user never leave two active profiles."""
        manager = ProfileLifecycleManager(session_factory, store=store, audit=audit)
        targets = [manager.create(user_id, f"P{i}").profile.id for i in range(4)] + [0]
        store.add_message(user_id, 0, "user", "shared history")
        errors = []

        def worker(target):
            try:
                for _ in range(3):
                    manager.switch(user_id, target)
            except Exception as e:  # collected and asserted below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(t,)) for t in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert active_count(session_factory, user_id) <= 1
        active = manager.get_active(user_id).id
        assert active in targets
        if active != 0:
            assert active_count(session_factory, user_id) == 1

        # The Default Context message is archived once and never leaks into a profile
        assert store.count_records(user_id, DEFAULT_ARCHIVE_NAMESPACE_ID) == 1
        assert store.count_records(user_id, 0) == (1 if active == 0 else 0)
        assert all(store.count_records(user_id, p) == 0 for p in targets[:-1])
