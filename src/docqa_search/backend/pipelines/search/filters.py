# src/docqa_search/backend/pipelines/search/filters.py

"""
[职责] relevance filter：按排除标签（子串、大小写不敏感）与排除标题模式（前缀/后缀/包含/精确）剔除候选。
[边界] 保持剩余候选原始顺序；不评分；在 vector 与 lexical 各自列表上独立执行（融合前）。
[上游关系] retriever 产出的每路候选列表 + FusionConfig.exclude_labels/exclude_title_patterns。
[下游关系] 被剔除候选不参与任何信号的 rank 计算；fusion 只看到过滤后的列表。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Literal, Sequence, Tuple, TypeVar

from docqa_search.backend.schemas.documents import DocumentLabels


PatternKind = Literal["prefix", "suffix", "contains", "exact"]

C = TypeVar("C")


@dataclass(frozen=True)
class TitlePattern:
    """解析后的标题排除模式（needle 已小写）。"""

    kind: PatternKind
    needle: str

    @classmethod
    def parse(cls, raw: str) -> "TitlePattern":
        """
        `*foo*` -> contains, `foo*` -> prefix, `*foo` -> suffix, 其他 -> exact。
        """
        p = str(raw or "").strip().lower()
        starts = p.startswith("*")
        ends = p.endswith("*") and len(p) > 1
        core = p.strip("*")
        if starts and ends:
            return cls("contains", core)
        if ends:
            return cls("prefix", core)
        if starts:
            return cls("suffix", core)
        return cls("exact", core)

    def matches(self, title: str) -> bool:
        t = str(title or "").lower()
        if not self.needle:
            return self.kind != "exact" or not t  # docstring: 单独的 `*` 匹配全部
        if self.kind == "contains":
            return self.needle in t
        if self.kind == "prefix":
            return t.startswith(self.needle)
        if self.kind == "suffix":
            return t.endswith(self.needle)
        return t == self.needle


class RelevanceFilter:
    """
    [职责] 预编译排除规则，对候选列表执行过滤。
    [边界] 标签来源 = 自由文本 labels + structured_label.tags；空规则时原样返回（拷贝）。
    """

    def __init__(self, *, exclude_labels: Iterable[str] = (), exclude_title_patterns: Iterable[str] = ()) -> None:
        self.exclude_labels: Tuple[str, ...] = tuple(
            s for s in (str(x).strip().lower() for x in exclude_labels) if s
        )
        self.patterns: Tuple[TitlePattern, ...] = tuple(
            TitlePattern.parse(p) for p in exclude_title_patterns if str(p or "").strip()
        )

    @property
    def active(self) -> bool:
        return bool(self.exclude_labels or self.patterns)

    def label_excluded(self, labels: DocumentLabels) -> bool:
        values: List[str] = list(labels.labels)
        if labels.structured_label is not None:
            values.extend(labels.structured_label.tags)
        for value in values:
            lowered = str(value).lower()
            if any(ex in lowered for ex in self.exclude_labels):
                return True
        return False

    def title_excluded(self, title: str) -> bool:
        return any(p.matches(title) for p in self.patterns)

    def is_excluded(self, title: str, labels: DocumentLabels) -> bool:
        return self.title_excluded(title) or self.label_excluded(labels)

    def apply(self, items: Sequence[C], *, title_of, labels_of) -> List[C]:
        """
        [职责] 过滤任意候选序列（通过 title_of/labels_of 取字段），保持顺序。
        [边界] 不修改输入序列。
        """
        if not self.active:
            return list(items)
        return [it for it in items if not self.is_excluded(title_of(it), labels_of(it))]
