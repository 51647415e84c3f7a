# WORKFLOW: Tests for hierarchical tariff code resolution.
# Test scenarios:
# 1. Ancestor digit candidates (10, 8, 6)
# 2. Most specific entry with rate data wins; ancestors fill in missing rates
# 3. Version-aware entry selection
# 4. NotFound when no level exists

import pytest

from core.exceptions import NotFound
from db.repositories import TariffEntryRepository
from services.code_hierarchy import CodeHierarchyResolver, has_rate_or_formula_data, hierarchy_digits


def test_hierarchy_digits():
    assert hierarchy_digits("0101.21.0010") == ["0101210010", "01012100", "010121"]
    assert hierarchy_digits("0101.21.00") == ["01012100", "010121"]
    assert hierarchy_digits("0101.21") == ["010121"]
    assert hierarchy_digits("0101") == ["0101"]
    assert hierarchy_digits("") == []


def test_has_rate_or_formula_data(add_entry):
    bare = add_entry("0101.21.0010")
    staged = add_entry("0101.21.0020", entry_metadata={"stagedNormalized": {"generalRate": "Free"}})
    with_rate = add_entry("0101.21.0030", general_rate="5%")

    assert has_rate_or_formula_data(bare) is False
    assert has_rate_or_formula_data(staged) is True
    assert has_rate_or_formula_data(with_rate) is True


def test_resolves_exact_entry_with_rate(db_session, add_entry):
    add_entry("0101.21.00", general_rate="Free")
    add_entry("0101.21.0010", rate_formula="value * 0.02")

    resolver = CodeHierarchyResolver(TariffEntryRepository(db_session))
    entry = resolver.resolve("0101.21.0010")

    assert entry.hts_number == "0101.21.0010"


def test_falls_back_to_ancestor_with_rate(db_session, add_entry):
    add_entry("0101.21.00", general_rate="6.8%")
    add_entry("0101.21.0010", description="Statistical suffix without rates")

    resolver = CodeHierarchyResolver(TariffEntryRepository(db_session))
    entry = resolver.resolve("0101210010")

    assert entry.hts_number == "0101.21.00"


def test_returns_most_specific_when_no_level_has_rates(db_session, add_entry):
    add_entry("0101.21", description="Subheading")
    add_entry("0101.21.0010", description="Statistical suffix")

    resolver = CodeHierarchyResolver(TariffEntryRepository(db_session))
    entry = resolver.resolve("0101.21.0010")

    assert entry.hts_number == "0101.21.0010"


def test_version_selection_prefers_requested_version(db_session, add_entry):
    add_entry("0101.21.0010", version="2024", general_rate="4%")
    add_entry("0101.21.0010", version="2025", general_rate="5%")

    resolver = CodeHierarchyResolver(TariffEntryRepository(db_session))

    assert resolver.resolve("0101.21.0010", version="2024").general_rate == "4%"
    assert resolver.resolve("0101.21.0010", version="2025").general_rate == "5%"


def test_source_version_matches(db_session, add_entry):
    add_entry("0101.21.0010", version="2025-rev1", source_version="2025", general_rate="5%")

    resolver = CodeHierarchyResolver(TariffEntryRepository(db_session))

    assert resolver.resolve("0101.21.0010", version="2025").version == "2025-rev1"


def test_inactive_entries_ignored_without_version(db_session, add_entry):
    add_entry("0101.21.0010", general_rate="5%", is_active=False)

    resolver = CodeHierarchyResolver(TariffEntryRepository(db_session))

    with pytest.raises(NotFound):
        resolver.resolve("0101.21.0010")


def test_not_found(db_session):
    resolver = CodeHierarchyResolver(TariffEntryRepository(db_session))
    with pytest.raises(NotFound):
        resolver.resolve("9999.99.9999")
