from __future__ import annotations

import logging
import unicodedata
from typing import Iterable, Mapping, Sequence

from ..config import get_settings
from ..models import Stage, StageCategory
from .lookup_cache import LookupCache, stage_lookup_cache

logger = logging.getLogger(__name__)

CategoryPatterns = Mapping[str, Sequence[str]]

OTHER = StageCategory.OTHER.value


def normalize_stage_name(name: str | None) -> str:
    """Lowercase, strip diacritics and collapse whitespace."""
    decomposed = unicodedata.normalize("NFD", (name or "").casefold())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.split())


def classify(stage_name: str | None, category_patterns: CategoryPatterns) -> str:
    """Return the first category whose patterns occur in the stage name.

    Categories are tried in mapping order. Unmatched names fall back to
    ``"other"``; classification never raises.
    """
    normalized = normalize_stage_name(stage_name)
    if not normalized:
        return OTHER
    for category, patterns in category_patterns.items():
        for pattern in patterns:
            needle = normalize_stage_name(pattern)
            if needle and needle in normalized:
                return str(category)
    return OTHER


def classify_stage_names(
    names: Mapping[str, str], category_patterns: CategoryPatterns
) -> dict[str, str]:
    return {stage_id: classify(name, category_patterns) for stage_id, name in names.items()}


class StageCatalog:
    """Stage-name lookups and their classification, served through the cache.

    The cache is keyed by vocabulary and pipeline (or by the exact set of
    stage ids for ad-hoc lookups). Any stage change invalidates the whole
    namespace because renames can move a stage between categories.
    """

    def __init__(
        self,
        stages_repo=None,
        cache: LookupCache | None = None,
        patterns: CategoryPatterns | None = None,
        vocabulary: str = "workshop",
        ttl_seconds: float | None = None,
    ) -> None:
        if stages_repo is None:
            from ..repositories import stages_repo as default_repo

            stages_repo = default_repo
        settings = get_settings()
        self._repo = stages_repo
        self._cache = cache if cache is not None else stage_lookup_cache
        self._vocabulary = vocabulary
        if patterns is None:
            patterns = (
                settings.stage_patterns.funnel
                if vocabulary == "funnel"
                else settings.stage_patterns.workshop
            )
        self.patterns: CategoryPatterns = patterns
        self._ttl = (
            ttl_seconds
            if ttl_seconds is not None
            else settings.cache.stage_lookup_ttl_seconds
        )

    def classify(self, stage_name: str | None) -> str:
        return classify(stage_name, self.patterns)

    def category_map(self, pipeline_id: str) -> dict[str, str]:
        """Map every active stage of a pipeline to its category."""

        def _load() -> dict[str, str]:
            stages = self._repo.list_for_pipeline(pipeline_id)
            return {s.id: self.classify(s.name) for s in stages}

        return self._cache.get_or_load(
            ("category_map", self._vocabulary, pipeline_id), _load, self._ttl
        )

    def stage_ids_for_category(self, pipeline_id: str, category: str) -> list[str]:
        wanted = str(getattr(category, "value", category))
        return [
            stage_id
            for stage_id, cat in self.category_map(pipeline_id).items()
            if cat == wanted
        ]

    def stage_names(self, stage_ids: Iterable[str]) -> dict[str, str]:
        ids = tuple(sorted({sid for sid in stage_ids if sid}))
        if not ids:
            return {}
        return self._cache.get_or_load(
            ("stage_names", ids), lambda: dict(self._repo.resolve_names(ids)), self._ttl
        )

    def categories_for_stages(self, stage_ids: Iterable[str]) -> dict[str, str]:
        """Classify the given stage ids; unresolvable ids map to ``"other"``."""
        ids = [sid for sid in stage_ids if sid]
        names = self.stage_names(ids)
        return {sid: self.classify(names.get(sid)) for sid in ids}

    def upsert_stage(
        self,
        name: str,
        pipeline_id: str | None = None,
        stage_id: str | None = None,
        position: int = 0,
        is_active: bool = True,
    ) -> Stage:
        stage = self._repo.upsert(
            name=name,
            pipeline_id=pipeline_id,
            stage_id=stage_id,
            position=position,
            is_active=is_active,
        )
        self.invalidate()
        logger.info(
            "stage_catalog_stage_upserted",
            extra={"stage_id": stage.id, "pipeline_id": pipeline_id},
        )
        return stage

    def invalidate(self) -> None:
        self._cache.invalidate_all()
