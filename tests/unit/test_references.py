"""Unit tests for crm_etl.references."""

from __future__ import annotations

from crm_etl.models import CONTACT, JOBSITE, ImportBundle
from crm_etl.references import sanitize_references, validate_references


# ---------------------------------------------------------------------------
# sanitize_references
# ---------------------------------------------------------------------------

class TestSanitizeReferences:
    def test_unknown_contact_set_to_null(self):
        record = {"lmn_jobsite_id": "J-1", "account_id": "a1", "contact_id": "c-missing"}
        clean, findings = sanitize_references(
            record, JOBSITE, {"account": {"a1"}, "contact": {"c1"}}
        )
        assert clean["contact_id"] is None
        assert clean["account_id"] == "a1"
        assert len(findings) == 1
        f = findings[0]
        assert f.type == "dangling_reference"
        assert f.entity_id == "J-1"
        assert f.field == "contact_id"
        assert f.value == "c-missing"

    def test_original_record_untouched(self):
        record = {"lmn_contact_id": "C-1", "account_id": "gone"}
        sanitize_references(record, CONTACT, {})
        assert record["account_id"] == "gone"

    def test_blank_reference_normalized_without_warning(self):
        clean, findings = sanitize_references(
            {"lmn_contact_id": "C-1", "account_id": "  "}, CONTACT, {}
        )
        assert clean["account_id"] is None
        assert findings == []

    def test_absent_reference_not_added(self):
        clean, findings = sanitize_references({"lmn_contact_id": "C-1"}, CONTACT, {})
        assert "account_id" not in clean
        assert findings == []

    def test_non_reference_columns_untouched(self):
        clean, _ = sanitize_references(
            {"lmn_jobsite_id": "J-1", "lmn_contact_id": "nowhere"}, JOBSITE, {}
        )
        assert clean["lmn_contact_id"] == "nowhere"

    def test_int_reference_matches_text_id(self):
        clean, findings = sanitize_references(
            {"lmn_contact_id": "C-1", "account_id": 42}, CONTACT, {"account": {"42"}}
        )
        assert clean["account_id"] == 42
        assert findings == []


# ---------------------------------------------------------------------------
# validate_references
# ---------------------------------------------------------------------------

class TestValidateReferences:
    def _bundle(self, **kwargs) -> ImportBundle:
        return ImportBundle.from_collections(**kwargs)

    def test_estimate_with_unknown_account_is_error(self):
        bundle = self._bundle(
            accounts=[{"id": "lmn-account-1", "lmn_crm_id": "1"}],
            estimates=[{"lmn_estimate_id": "E-1", "account_id": "lmn-account-2"}],
        )
        errors, warnings = validate_references(bundle)
        assert [e.type for e in errors] == ["invalid_reference"]
        assert errors[0].entity_id == "E-1"
        assert errors[0].field == "account_id"
        assert warnings == []

    def test_estimate_with_known_references_clean(self):
        bundle = self._bundle(
            accounts=[{"id": "lmn-account-1", "lmn_crm_id": "1"}],
            contacts=[{"id": "lmn-contact-5", "lmn_contact_id": "5"}],
            estimates=[{
                "lmn_estimate_id": "E-1",
                "account_id": "lmn-account-1",
                "contact_id": "lmn-contact-5",
            }],
        )
        assert validate_references(bundle) == ([], [])

    def test_trailing_segment_matches_external_id(self):
        bundle = self._bundle(
            accounts=[{"lmn_crm_id": "1"}],
            estimates=[{"lmn_estimate_id": "E-1", "account_id": "lmn-account-1"}],
        )
        errors, _ = validate_references(bundle)
        assert errors == []

    def test_jobsite_with_unknown_account_is_warning(self):
        bundle = self._bundle(
            jobsites=[{"lmn_jobsite_id": "J-1", "account_id": "nowhere"}],
        )
        errors, warnings = validate_references(bundle)
        assert errors == []
        assert warnings[0].type == "orphaned_jobsite"
        assert warnings[0].value == "nowhere"

    def test_null_references_ignored(self):
        bundle = self._bundle(
            estimates=[{"lmn_estimate_id": "E-1", "account_id": None, "contact_id": ""}],
            jobsites=[{"lmn_jobsite_id": "J-1"}],
        )
        assert validate_references(bundle) == ([], [])

    def test_explicit_known_ids(self):
        bundle = self._bundle(estimates=[{"lmn_estimate_id": "E-1", "account_id": "a9"}])
        errors, _ = validate_references(bundle, known_ids={"account": {"a9"}, "contact": set()})
        assert errors == []
