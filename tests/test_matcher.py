"""
Tests for secondary matching of CRM records to unlinked local rows.
"""

import pytest

from crm_sync.sync.mapping import EntityType
from crm_sync.sync.matcher import (
    MatchResult,
    MatchTier,
    NameMatcher,
    record_name,
)


@pytest.fixture
def matcher(mapped_db):
    return NameMatcher(mapped_db)


class TestRecordName:
    """Tests for record_name."""

    def test_contact_display_name(self):
        assert record_name(EntityType.CONTACTS, {"display_name": "Ann Lee"}) == "Ann Lee"

    def test_contact_falls_back_to_parts(self):
        raw = {"first_name": "Ann", "last_name": "Lee"}
        assert record_name(EntityType.CONTACTS, raw) == "Ann Lee"

    def test_contact_without_name(self):
        assert record_name(EntityType.CONTACTS, {"email": "a@x.com"}) is None

    def test_matter_crm_and_local_shapes(self):
        assert record_name(EntityType.MATTERS, {"display_name": "Lee 1031"}) == "Lee 1031"
        assert record_name(EntityType.MATTERS, {"name": "Lee 1031"}) == "Lee 1031"

    def test_task_subject_or_title(self):
        assert record_name(EntityType.TASKS, {"subject": "Call"}) == "Call"
        assert record_name(EntityType.TASKS, {"title": "Call"}) == "Call"

    def test_non_string_names_become_text(self):
        assert record_name(EntityType.CONTACTS, {"display_name": 12345}) == "12345"
        assert record_name(EntityType.CONTACTS, {"first_name": 7, "last_name": "Lee"}) == "7 Lee"
        assert record_name(EntityType.MATTERS, {"name": 1031}) == "1031"


class TestMatchResult:
    def test_is_match(self):
        assert MatchResult(3, MatchTier.EXACT_NAME).is_match
        assert not MatchResult(None, MatchTier.NO_MATCH).is_match


class TestFindLink:
    """Tests for NameMatcher.find_link."""

    def test_no_unlinked_rows(self, matcher):
        result = matcher.find_link(EntityType.CONTACTS, {"id": "c1", "display_name": "Ann"})
        assert result.tier is MatchTier.NO_MATCH
        assert result.reason == "no unlinked rows"

    def test_linked_rows_are_not_candidates(self, mapped_db, matcher):
        mapped_db.upsert(
            "contacts", "external_id", {"external_id": "c0", "display_name": "Ann Lee"}
        )
        result = matcher.find_link(EntityType.CONTACTS, {"id": "c1", "display_name": "Ann Lee"})
        assert not result.is_match

    def test_exact_email(self, mapped_db, matcher):
        """Test email matching is case-insensitive and wins over names."""
        local_id = mapped_db.insert(
            "contacts", {"display_name": "A. Lee", "email": "Ann@Example.com"}
        )
        mapped_db.insert("contacts", {"display_name": "Ann Lee"})

        result = matcher.find_link(
            EntityType.CONTACTS,
            {"id": "c1", "display_name": "Ann Lee", "email": " ann@example.com"},
        )
        assert result.local_id == local_id
        assert result.tier is MatchTier.EXACT_EMAIL

    def test_exact_name_order_insensitive(self, mapped_db, matcher):
        """Test 'Lee, Ann' links to 'Ann Lee'."""
        local_id = mapped_db.insert("contacts", {"display_name": "Lee, Ann"})
        result = matcher.find_link(EntityType.CONTACTS, {"id": "c1", "display_name": "Ann Lee"})
        assert result.local_id == local_id
        assert result.tier is MatchTier.EXACT_NAME
        assert result.score == 1.0

    def test_exact_name_accent_insensitive(self, mapped_db, matcher):
        local_id = mapped_db.insert("contacts", {"display_name": "José Ramírez"})
        result = matcher.find_link(
            EntityType.CONTACTS, {"id": "c1", "display_name": "Jose Ramirez"}
        )
        assert result.local_id == local_id

    def test_ambiguous_exact_name(self, mapped_db, matcher):
        """Test two rows with the same name produce no link."""
        mapped_db.insert("contacts", {"display_name": "Ann Lee"})
        mapped_db.insert("contacts", {"display_name": "Ann Lee"})
        result = matcher.find_link(EntityType.CONTACTS, {"id": "c1", "display_name": "Ann Lee"})
        assert not result.is_match
        assert result.reason.startswith("ambiguous")

    def test_fuzzy_name(self, mapped_db, matcher):
        local_id = mapped_db.insert("contacts", {"display_name": "John Smith"})
        result = matcher.find_link(EntityType.CONTACTS, {"id": "c1", "display_name": "Jon Smith"})
        assert result.local_id == local_id
        assert result.tier is MatchTier.FUZZY_NAME
        assert 0.92 <= result.score < 1.0

    def test_ambiguous_fuzzy_name(self, mapped_db, matcher):
        mapped_db.insert("contacts", {"display_name": "John Smith"})
        mapped_db.insert("contacts", {"display_name": "Joan Smith"})
        result = matcher.find_link(EntityType.CONTACTS, {"id": "c1", "display_name": "Jon Smith"})
        assert not result.is_match
        assert "ambiguous" in result.reason

    def test_threshold(self, mapped_db):
        """Test a strict threshold refuses near matches."""
        mapped_db.insert("contacts", {"display_name": "John Smith"})
        strict = NameMatcher(mapped_db, threshold=0.99)
        result = strict.find_link(EntityType.CONTACTS, {"id": "c1", "display_name": "Jon Smith"})
        assert not result.is_match

    def test_unrelated_name(self, mapped_db, matcher):
        mapped_db.insert("contacts", {"display_name": "John Smith"})
        result = matcher.find_link(EntityType.CONTACTS, {"id": "c1", "display_name": "Alice Wong"})
        assert result.reason == "no unique candidate"

    def test_matter_by_name(self, mapped_db, matcher):
        """Test matters match CRM display_name against the local name column."""
        local_id = mapped_db.insert("exchanges", {"name": "Lee Exchange 2026"})
        result = matcher.find_link(
            EntityType.MATTERS, {"id": "m1", "display_name": "Lee Exchange 2026"}
        )
        assert result.local_id == local_id

    def test_matter_ignores_email(self, mapped_db, matcher):
        mapped_db.insert("exchanges", {"name": "Other"})
        result = matcher.find_link(
            EntityType.MATTERS, {"id": "m1", "display_name": "Lee", "email": "a@x.com"}
        )
        assert not result.is_match

    def test_tasks_disabled_by_default(self, mapped_db, matcher):
        mapped_db.insert("tasks", {"title": "Call client"})
        result = matcher.find_link(EntityType.TASKS, {"id": "t1", "subject": "Call client"})
        assert result.reason == "matching disabled"

    def test_enabled_types(self, mapped_db):
        local_id = mapped_db.insert("tasks", {"title": "Call client"})
        matcher = NameMatcher(mapped_db, enabled_types=frozenset({EntityType.TASKS}))
        result = matcher.find_link(EntityType.TASKS, {"id": "t1", "subject": "Call client"})
        assert result.local_id == local_id
        assert matcher.find_link(
            EntityType.CONTACTS, {"id": "c1", "display_name": "x"}
        ).reason == "matching disabled"


class TestCandidatePool:
    """Tests for candidate caching."""

    def test_mark_linked_removes_candidate(self, mapped_db, matcher):
        local_id = mapped_db.insert("contacts", {"display_name": "Ann Lee"})
        raw = {"id": "c1", "display_name": "Ann Lee"}

        assert matcher.find_link(EntityType.CONTACTS, raw).local_id == local_id
        matcher.mark_linked(EntityType.CONTACTS, local_id)
        assert not matcher.find_link(EntityType.CONTACTS, raw).is_match

    def test_pool_is_cached_until_reset(self, mapped_db, matcher):
        raw = {"id": "c1", "display_name": "Ann Lee"}
        assert not matcher.find_link(EntityType.CONTACTS, raw).is_match

        mapped_db.insert("contacts", {"display_name": "Ann Lee"})
        mapped_db.insert("contacts", {"display_name": "Bob Ray"})
        # Cached empty pool
        assert matcher.find_link(EntityType.CONTACTS, raw).reason == "no unlinked rows"

        matcher.reset(EntityType.CONTACTS)
        assert matcher.find_link(EntityType.CONTACTS, raw).is_match

    def test_rows_without_name_or_email_are_skipped(self, mapped_db, matcher):
        mapped_db.insert("contacts", {"phone_mobile": "555"})
        result = matcher.find_link(EntityType.CONTACTS, {"id": "c1", "display_name": "Ann"})
        assert result.reason == "no unlinked rows"
