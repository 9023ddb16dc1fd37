"""Tests for group definitions and pure document building."""

from __future__ import annotations

import pytest

from schema_steward.consolidator import UNPARSED_KEY, build_document, documents_equal
from schema_steward.groups import (
    BUILTIN_GROUPS,
    available_groups,
    check_group,
    load_groups_file,
    resolve_groups,
)
from schema_steward.models.documents import validate_document
from schema_steward.models.types import ConsolidationGroup, FieldMapping

CONTACT = BUILTIN_GROUPS["contact_info"]


class TestBuildDocument:
    def test_contact_scenario(self):
        record = {"mobile": "012-3456789", "company_email": "a@b.com"}
        document, unparsed = build_document(CONTACT, record)
        assert document == {"phone": {"mobile": "60123456789"}, "emails": {"company": "a@b.com"}}
        assert unparsed == []

    def test_no_legacy_data_gives_none(self):
        assert build_document(CONTACT, {"name": "x", "mobile": "  ", "city": None}) == (None, [])

    def test_unparsed_value_is_kept_raw(self):
        document, unparsed = build_document(CONTACT, {"mobile": "12345", "city": "Ipoh"})
        assert unparsed == ["phone.mobile"]
        assert document[UNPARSED_KEY] == {"phone.mobile": "12345"}
        assert document["address"] == {"city": "Ipoh"}

    def test_only_unparsed_values_still_produce_a_document(self):
        document, _ = build_document(CONTACT, {"mobile": "12345"})
        assert document == {UNPARSED_KEY: {"phone.mobile": "12345"}}

    def test_first_mapping_wins(self):
        group = BUILTIN_GROUPS["tax_info"]
        document, _ = build_document(group, {"kwsp_no": "KW-1", "epf_no": "EPF-9"})
        assert document["epf"] == {"account_no": "KW-1"}

    def test_fallback_mapping_used_when_first_is_empty(self):
        group = BUILTIN_GROUPS["tax_info"]
        document, _ = build_document(group, {"kwsp_no": "", "epf_no": "EPF-9"})
        assert document["epf"] == {"account_no": "EPF-9"}

    def test_fallback_fills_in_for_unparsable_first_choice(self):
        group = ConsolidationGroup(
            name="dates",
            target="dates",
            mappings=[
                FieldMapping(source="a", dest="start", transform="parse_date"),
                FieldMapping(source="b", dest="start", transform="parse_date"),
            ],
        )
        document, unparsed = build_document(group, {"a": "garbage", "b": "2020-01-02"})
        assert document == {"start": "2020-01-02"}
        assert unparsed == []

    def test_declared_fallback_defers_even_when_listed_first(self):
        group = ConsolidationGroup(
            name="epf",
            target="epf",
            mappings=[
                FieldMapping(source="epf_no", dest="account_no", fallback_for="kwsp_no"),
                FieldMapping(source="kwsp_no", dest="account_no"),
            ],
        )
        document, _ = build_document(group, {"kwsp_no": "KW-1", "epf_no": "EPF-9"})
        assert document == {"account_no": "KW-1"}
        document, _ = build_document(group, {"epf_no": "EPF-9"})
        assert document == {"account_no": "EPF-9"}

    @pytest.mark.parametrize("reverse", [False, True])
    def test_colliding_paths_keep_the_raw_value(self, reverse):
        mappings = [
            FieldMapping(source="mobile", dest="phone.mobile"),
            FieldMapping(source="phone", dest="phone"),
        ]
        if reverse:
            mappings.reverse()
        group = ConsolidationGroup(name="c", target="c", mappings=mappings)

        document, unparsed = build_document(group, {"mobile": "0123", "phone": "0199"})

        loser = mappings[1]
        assert unparsed == [loser.dest]
        assert document[UNPARSED_KEY] == {loser.dest: "0123" if reverse else "0199"}

    def test_bank_code_derived(self):
        record = {"bank_name": "MBB/Maybank", "bank_acc_no": 1122334455}
        document, _ = build_document(BUILTIN_GROUPS["bank_info"], record)
        assert document == {
            "bank_name": "MBB/Maybank",
            "account_no": "1122334455",
            "bank_code": "MBB",
        }

    def test_timeline_derivations(self):
        record = {
            "employment_date": "01/03/2020",
            "confirmation_date": "2020-06-01",
            "active_status": True,
        }
        document, _ = build_document(BUILTIN_GROUPS["employment_timeline"], record)
        assert document["hire_date"] == "2020-03-01"
        assert document["probation_months"] == round(92 / 30.44, 1)
        assert document["employment_status"] == "active"

    def test_resigned_overrides_active_flag(self):
        record = {"resign_date": "2023-12-31", "active_status": True}
        document, _ = build_document(BUILTIN_GROUPS["employment_timeline"], record)
        assert document["employment_status"] == "resigned"

    def test_deterministic(self):
        record = {"mobile": "0123456789", "city": "KL", "postcode": 50000.0}
        first, _ = build_document(CONTACT, record)
        second, _ = build_document(CONTACT, dict(reversed(list(record.items()))))
        assert documents_equal(first, second)
        assert first["address"]["postcode"] == "50000"

    def test_built_documents_validate(self):
        for name, group in BUILTIN_GROUPS.items():
            record = {m.source: "2020-01-01" for m in group.mappings}
            document, _ = build_document(group, record)
            assert validate_document(name, document) == [], name


class TestGroupDefinitions:
    def test_builtin_groups_are_valid(self):
        for group in BUILTIN_GROUPS.values():
            assert check_group(group) is group

    def test_builtin_fallbacks_declared(self):
        tax = {m.source: m for m in BUILTIN_GROUPS["tax_info"].mappings}
        assert tax["epf_no"].fallback_for == "kwsp_no"
        assert tax["socso_no"].fallback_for == "perkeso_code"

    @pytest.mark.parametrize(
        "mappings",
        [
            [{"source": "a", "dest": "phone"}, {"source": "b", "dest": "phone.mobile"}],
            [{"source": "b", "dest": "phone.mobile"}, {"source": "a", "dest": "phone"}],
            [{"source": "a", "dest": "x"}, {"source": "b", "dest": "x", "fallback_for": "c"}],
            [{"source": "a", "dest": "x"}, {"source": "b", "dest": "y", "fallback_for": "a"}],
        ],
    )
    def test_check_group_rejects_conflicting_mappings(self, mappings):
        group = ConsolidationGroup(
            name="g", target="g", mappings=[FieldMapping(**m) for m in mappings]
        )
        with pytest.raises(ValueError):
            check_group(group)

    def test_check_group_allows_shared_destination(self):
        group = ConsolidationGroup(
            name="g",
            target="g",
            mappings=[
                FieldMapping(source="a", dest="phone.mobile"),
                FieldMapping(source="b", dest="phone.mobile", fallback_for="a"),
                FieldMapping(source="c", dest="phone.mobile"),
                FieldMapping(source="d", dest="phone.home"),
            ],
        )
        assert check_group(group) is group

    def test_source_columns_deduplicated_in_order(self):
        group = ConsolidationGroup(
            name="g",
            target="g",
            mappings=[
                FieldMapping(source="b", dest="x"),
                FieldMapping(source="a", dest="y"),
                FieldMapping(source="b", dest="z"),
            ],
        )
        assert group.source_columns == ["b", "a"]

    @pytest.mark.parametrize(
        "mapping",
        [
            {"source": "bad-name", "dest": "x"},
            {"source": "a", "dest": "x..y"},
            {"source": "a", "dest": "_private"},
            {"source": "a", "dest": "x", "transform": "nope"},
            {"source": "g", "dest": "x"},
        ],
    )
    def test_check_group_rejects(self, mapping):
        group = ConsolidationGroup(name="g", target="g", mappings=[FieldMapping(**mapping)])
        with pytest.raises(ValueError):
            check_group(group)

    def test_load_groups_file(self, tmp_path):
        path = tmp_path / "groups.yaml"
        path.write_text(
            "groups:\n"
            "  - name: emergency_contact\n"
            "    mappings:\n"
            "      - {source: emergency_name, dest: name}\n"
            "      - {source: emergency_phone, dest: phone, transform: normalize_phone}\n",
            encoding="utf-8",
        )
        groups = load_groups_file(path)
        group = groups["emergency_contact"]
        assert group.target == "emergency_contact"
        assert group.source_columns == ["emergency_name", "emergency_phone"]

    def test_load_groups_file_rejects_bad_entries(self, tmp_path):
        path = tmp_path / "groups.yaml"
        path.write_text("groups:\n  - name: broken\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_groups_file(path)

    def test_yaml_group_overrides_builtin(self, tmp_path):
        path = tmp_path / "groups.yaml"
        path.write_text(
            "- name: bank_info\n  mappings:\n    - {source: acct, dest: account_no}\n",
            encoding="utf-8",
        )
        groups = available_groups(path)
        assert groups["bank_info"].source_columns == ["acct"]
        assert "contact_info" in groups

    def test_resolve_groups(self):
        assert [g.name for g in resolve_groups(None)] == list(BUILTIN_GROUPS)
        picked = resolve_groups(["tax_info", "contact_info"])
        assert [g.name for g in picked] == ["tax_info", "contact_info"]
        with pytest.raises(ValueError, match="nope"):
            resolve_groups(["nope"])
