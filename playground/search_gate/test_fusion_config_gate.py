# playground/search_gate/test_fusion_config_gate.py

"""
[职责] FusionConfig gate：验证默认值、Settings 派生、不可变性、业务约束校验与指纹稳定性。
[边界] 不读取 .env（显式构造 Settings）。
[上游关系] backend/schemas/search.py + config.Settings。
[下游关系] services.resolve_config 与整体结果缓存 key。
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from docqa_search.backend.schemas.search import FusionConfig
from docqa_search.backend.utils.errors import ConfigurationError
from docqa_search.config import Settings


pytestmark = pytest.mark.search_gate


def test_defaults_are_valid() -> None:
    cfg = FusionConfig().ensure_valid()

    assert cfg.weight_sum() == pytest.approx(1.0)
    assert cfg.fusion_mode == "composite"
    assert cfg.rrf_k == 60
    assert cfg.rrf_weights == {"vector": 1.0, "lexical": 0.8, "title-exact": 1.2, "knowledge-graph": 0.6}
    assert cfg.candidate_limit == 20


def test_from_settings_reads_snapshot_and_overrides() -> None:
    s = Settings(DOCQA_TOP_K=5, DOCQA_RRF_K=30, DOCQA_CACHE_RESULT_TTL_MS=1234)
    cfg = FusionConfig.from_settings(s, fusion_mode="rrf", top_k=None)

    assert cfg.top_k == 5
    assert cfg.rrf_k == 30
    assert cfg.cache_ttl_ms == 1234
    assert cfg.fusion_mode == "rrf"


def test_config_is_immutable_and_strict() -> None:
    cfg = FusionConfig()
    with pytest.raises(ValidationError):
        cfg.top_k = 3  # type: ignore[misc]
    with pytest.raises(ValidationError):
        FusionConfig(unknown_option=True)  # type: ignore[call-arg]


def test_string_lists_are_coerced() -> None:
    cfg = FusionConfig(exclude_labels="draft", exclude_title_patterns=[" *一覧 ", ""])
    assert cfg.exclude_labels == ("draft",)
    assert cfg.exclude_title_patterns == ("*一覧",)


@pytest.mark.parametrize(
    "overrides",
    [
        {"vector_weight": 0.5},
        {"lexical_weight": -0.1, "vector_weight": 0.65},
        {"max_vector_distance": 0.0},
        {"max_lexical_score": float("inf")},
        {"top_k": 0},
        {"rrf_k": 0},
        {"rrf_blend_weight": 1.5},
        {"generic_penalty": 0.0},
        {"domain_boost_cap": 0.5},
        {"quality_threshold": -1.0},
        {"cache_ttl_ms": 0},
    ],
)
def test_invalid_values_fail_fast(overrides) -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        FusionConfig(**overrides).ensure_valid()
    assert exc_info.value.http_status == 400


def test_weight_sum_tolerance() -> None:
    FusionConfig(vector_weight=0.055).ensure_valid()
    with pytest.raises(ConfigurationError):
        FusionConfig(vector_weight=0.07).ensure_valid()


def test_fingerprint_tracks_scoring_fields_only() -> None:
    base = FusionConfig()
    assert base.fingerprint() == FusionConfig().fingerprint()
    assert base.fingerprint() != FusionConfig(top_k=5).fingerprint()
    assert base.fingerprint() == FusionConfig(cache_ttl_ms=99, use_result_cache=False).fingerprint()
