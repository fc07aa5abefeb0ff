# playground/search_gate/test_domain_keywords_gate.py

from __future__ import annotations

import json
from pathlib import Path

import pytest

from docqa_search.backend.kb.domain_keywords import DomainKeywordRegistry, build_registry
from docqa_search.backend.utils.errors import ConfigurationError


pytestmark = pytest.mark.search_gate


def test_initialize_is_idempotent(registry: DomainKeywordRegistry) -> None:
    assert registry.initialized is True
    assert registry.initialize({"domainNames": ["別の領域"]}) is False
    assert not registry.is_domain_term("別の領域")
    assert registry.is_domain_term("教室管理")


def test_terms_sorted_longest_first_and_deduplicated() -> None:
    registry = build_registry({"domain_names": ["教室", "教室管理"], "relatedKeywords": ["教室", " 予約 "]})
    assert registry.terms == ("教室管理", "予約", "教室")


def test_terms_in_orders_by_position_then_length(registry: DomainKeywordRegistry) -> None:
    assert registry.terms_in("カレンダーから教室管理") == ["カレンダー", "教室管理"]
    assert registry.terms_in("ログイン") == ["ログイン"]
    assert registry.terms_in("") == []


def test_lookup_is_case_insensitive() -> None:
    registry = build_registry({"systemTerms": ["Confluence"]})
    assert registry.is_domain_term(" confluence ")
    assert registry.terms_in("CONFLUENCE sync") == ["Confluence"]


def test_unknown_category_rejected_but_metadata_ignored() -> None:
    registry = DomainKeywordRegistry()
    with pytest.raises(ConfigurationError) as exc:
        registry.initialize({"colours": ["red"]})
    assert exc.value.detail["category"] == "colours"
    assert registry.initialized is False

    assert registry.initialize({"metadata": {"version": 2}, "functionNames": ["予約"]}) is True
    assert registry.is_domain_term("予約")


def test_uninitialized_registry_matches_nothing() -> None:
    registry = DomainKeywordRegistry()
    assert registry.terms == ()
    assert registry.terms_in("教室管理") == []
    assert registry.snapshot()["initialized"] is False


def test_load_json_initializes_from_file(tmp_path: Path) -> None:
    path = tmp_path / "domain.json"
    path.write_text(
        json.dumps({"domainNames": ["教室管理"], "operationNames": ["登録"], "statistics": {"total": 2}}),
        encoding="utf-8",
    )
    registry = DomainKeywordRegistry()

    assert registry.load_json(path) is True
    snap = registry.snapshot()
    assert snap["term_count"] == 2
    assert snap["categories"]["domain_names"] == 1
    assert snap["categories"]["operation_names"] == 1


def test_load_json_rejects_non_object(tmp_path: Path) -> None:
    path = tmp_path / "domain.json"
    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        DomainKeywordRegistry().load_json(path)
