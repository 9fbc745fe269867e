from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict


@dataclass
class CacheMetrics:
    hits: int = 0
    misses: int = 0
    loads: int = 0
    load_failures: int = 0
    invalidations: int = 0
    evictions: int = 0


@dataclass
class Metrics:
    work_sessions_started: int = 0
    work_sessions_reused: int = 0
    work_sessions_finished: int = 0
    work_sessions_finish_noop: int = 0
    work_sessions_edited: int = 0
    work_sessions_duplicate_open: int = 0
    funnel_moves_seen: int = 0
    funnel_moves_recorded: int = 0
    funnel_moves_deduplicated: int = 0
    funnel_moves_not_qualifying: int = 0
    funnel_dedup_check_failures: int = 0
    range_aggregations: int = 0
    cache_by_namespace: Dict[str, CacheMetrics] = field(default_factory=dict)

    def cache(self, namespace: str) -> CacheMetrics:
        return self.cache_by_namespace.setdefault(namespace, CacheMetrics())

    def reset(self) -> None:
        for f in fields(self):
            if f.name == "cache_by_namespace":
                self.cache_by_namespace.clear()
            else:
                setattr(self, f.name, 0)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "work_sessions_started": self.work_sessions_started,
            "work_sessions_reused": self.work_sessions_reused,
            "work_sessions_finished": self.work_sessions_finished,
            "work_sessions_finish_noop": self.work_sessions_finish_noop,
            "work_sessions_edited": self.work_sessions_edited,
            "work_sessions_duplicate_open": self.work_sessions_duplicate_open,
            "funnel_moves_seen": self.funnel_moves_seen,
            "funnel_moves_recorded": self.funnel_moves_recorded,
            "funnel_moves_deduplicated": self.funnel_moves_deduplicated,
            "funnel_moves_not_qualifying": self.funnel_moves_not_qualifying,
            "funnel_dedup_check_failures": self.funnel_dedup_check_failures,
            "range_aggregations": self.range_aggregations,
            "cache_by_namespace": {
                namespace: {
                    "hits": m.hits,
                    "misses": m.misses,
                    "loads": m.loads,
                    "load_failures": m.load_failures,
                    "invalidations": m.invalidations,
                    "evictions": m.evictions,
                }
                for namespace, m in self.cache_by_namespace.items()
            },
        }


metrics = Metrics()
