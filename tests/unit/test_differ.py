"""Unit tests for crm_etl.differ."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from crm_etl.differ import ExistingIndex, compare_entity, find_differences, find_orphans
from crm_etl.identifiers import ValidIdSet, extract_valid_ids
from crm_etl.models import ACCOUNT, CONTACT, ESTIMATE, JOBSITE, Account

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# find_differences
# ---------------------------------------------------------------------------

class TestFindDifferences:
    def test_only_status_differs(self):
        imported = {"name": "Acme Corp", "status": "active"}
        existing = {"name": "acme corp ", "status": "inactive"}
        diffs = find_differences(ACCOUNT, imported, existing)
        assert diffs == [{"field": "status", "imported": "active", "existing": "inactive"}]

    def test_fields_outside_allow_list_ignored(self):
        imported = {"name": "A", "notes_internal": "x", "updated_at": "2024-01-01"}
        existing = {"name": "A", "notes_internal": "y", "updated_at": "2023-01-01"}
        assert find_differences(ACCOUNT, imported, existing) == []

    def test_missing_and_blank_are_equal(self):
        assert find_differences(CONTACT, {"email": ""}, {}) == []

    def test_numeric_and_date_fields(self):
        imported = {
            "total_price": "1,500.00",
            "estimate_date": "2024-02-01T00:00:00Z",
            "contract_start": "2024-03-01",
        }
        existing = {
            "total_price": Decimal("1500"),
            "estimate_date": date(2024, 2, 1),
            "contract_start": date(2024, 3, 2),
        }
        diffs = find_differences(ESTIMATE, imported, existing)
        assert [d["field"] for d in diffs] == ["contract_start"]

    def test_raw_values_reported(self):
        diffs = find_differences(JOBSITE, {"city": " Boston "}, {"city": "Cambridge"})
        assert diffs == [{"field": "city", "imported": " Boston ", "existing": "Cambridge"}]


# ---------------------------------------------------------------------------
# ExistingIndex
# ---------------------------------------------------------------------------

class TestExistingIndex:
    def test_external_id_match(self):
        index = ExistingIndex.build(ACCOUNT, [{"id": "a1", "lmn_crm_id": "7"}])
        assert index.match(ACCOUNT, {"lmn_crm_id": 7})["id"] == "a1"

    def test_internal_id_fallback_only_without_external_ids(self):
        index = ExistingIndex.build(ACCOUNT, [
            {"id": "a1", "lmn_crm_id": "7"},
            {"id": "a2"},
        ])
        assert index.match(ACCOUNT, {"id": "a2"})["id"] == "a2"
        # a1 has an external id, so it is only reachable by it
        assert index.match(ACCOUNT, {"id": "a1"}) is None

    def test_external_id_on_import_never_falls_back(self):
        index = ExistingIndex.build(ACCOUNT, [{"id": "a2"}])
        assert index.match(ACCOUNT, {"id": "a2", "lmn_crm_id": "99"}) is None


# ---------------------------------------------------------------------------
# compare_entity
# ---------------------------------------------------------------------------

class TestCompareEntity:
    def test_field_diff_example(self):
        result = compare_entity(
            ACCOUNT,
            [{"lmn_crm_id": "1", "name": "Acme Corp", "status": "active"}],
            [{"id": "a1", "lmn_crm_id": "1", "name": "acme corp ", "status": "inactive"}],
        )
        assert result.counts()["updated"] == 1
        entry = result.updated[0]
        assert [d["field"] for d in entry["differences"]] == ["status"]
        assert entry["existing"]["id"] == "a1"
        assert result.differences == [
            {"key": "1", "field": "status", "imported": "active", "existing": "inactive"}
        ]

    def test_identity_by_external_id_regardless_of_name(self):
        result = compare_entity(
            ACCOUNT,
            [{"lmn_crm_id": "5", "name": "Totally Different LLC", "city": "Salem"}],
            [{"id": "a5", "lmn_crm_id": "5", "name": "Acme", "city": "Boston"}],
        )
        assert result.new == []
        assert len(result.updated) == 1

    def test_same_name_different_external_id_is_new(self):
        result = compare_entity(
            ACCOUNT,
            [{"lmn_crm_id": "6", "name": "Acme"}],
            [{"id": "a5", "lmn_crm_id": "5", "name": "Acme"}],
        )
        assert len(result.new) == 1

    def test_unchanged(self):
        result = compare_entity(
            CONTACT,
            [{"lmn_contact_id": "C-1", "first_name": "Ann", "email": "ANN@x.com"}],
            [{"id": "c1", "lmn_contact_id": "C-1", "first_name": "ann", "email": "ann@x.com"}],
        )
        assert result.counts() == {
            "new": 0, "updated": 0, "unchanged": 1, "orphaned": 0, "differences": 0,
        }

    def test_int_import_matches_text_store_id(self):
        result = compare_entity(
            JOBSITE,
            [{"lmn_jobsite_id": 9906807, "name": "Main St"}],
            [{"id": "j1", "lmn_jobsite_id": "9906807", "name": "Main St"}],
        )
        assert len(result.unchanged) == 1

    def test_duplicates_in_import_first_wins(self):
        warnings = []
        result = compare_entity(
            ESTIMATE,
            [
                {"lmn_estimate_id": "X-1", "status": "Won"},
                {"lmn_estimate_id": "X-1", "status": "Lost"},
            ],
            [],
            warnings=warnings,
        )
        assert len(result.new) == 1
        assert result.new[0]["status"] == "Won"
        assert warnings[0].type == "duplicate_in_import"
        assert "X-1" in warnings[0].message

    def test_typed_records_accepted(self):
        result = compare_entity(ACCOUNT, [Account(lmn_crm_id="1", name="A")], [])
        assert result.new == [{"lmn_crm_id": "1", "name": "A"}]


# ---------------------------------------------------------------------------
# find_orphans
# ---------------------------------------------------------------------------

class TestFindOrphans:
    def test_orphan_classification_example(self):
        existing = [
            {
                "id": "A1", "lmn_crm_id": "ext-9", "name": "Old Co",
                "created_at": (NOW - timedelta(days=40)).isoformat(),
            },
            {
                "id": "3f2b8c1e-9a7d-4e21-b0c4-5d6e7f8a9b0c", "lmn_crm_id": None,
                "created_at": (NOW - timedelta(days=2)).isoformat(),
            },
        ]
        orphans, findings = find_orphans(ACCOUNT, existing, ValidIdSet(), now=NOW)
        assert [o["id"] for o in orphans] == ["A1"]
        assert orphans[0]["_source"] == "previous_import"
        assert orphans[0]["_source_note"]
        assert findings[0].type == "orphaned_account"
        assert 'Account "Old Co" (ID: ext-9)' in findings[0].message

    def test_present_in_valid_ids_not_orphan(self):
        valid = extract_valid_ids(estimates=[{"lmn_estimate_id": "E1", "account_id": "77"}])
        orphans, _ = find_orphans(ACCOUNT, [{"id": "a", "lmn_crm_id": "77"}], valid, now=NOW)
        assert orphans == []

    def test_contact_label_uses_full_name(self):
        _, findings = find_orphans(
            CONTACT,
            [{"id": "c", "lmn_contact_id": "C-9", "first_name": "Ann", "last_name": "Lee"}],
            ValidIdSet(),
            now=NOW,
        )
        assert 'Contact "Ann Lee" (ID: C-9)' in findings[0].message
