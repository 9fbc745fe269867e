from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel


DEFAULT_STAGE_PATTERNS: dict[str, list[str]] = {
    "in_progress": ["in lucru", "in work", "in progress"],
    "waiting": ["in asteptare", "asteptare", "astept piese", "waiting"],
    "done": [
        "finalizare",
        "finalizat",
        "finalized",
        "done",
        "de facturat",
        "to invoice",
    ],
}

# Order matters: the delivery patterns are checked before the generic intake
# vocabulary so "curier trimis" never classifies as a lead.
DEFAULT_FUNNEL_PATTERNS: dict[str, list[str]] = {
    "delivery": ["curier trimis", "office direct"],
    "order": ["avem comanda"],
    "no_deal": ["no deal"],
    "callback": ["callback", "call back"],
    "no_answer": ["nu raspunde", "no answer"],
    "intake": ["leads", "lead"],
}


class CacheSettings(BaseModel):
    stage_lookup_ttl_seconds: float = 300.0


class FunnelSettings(BaseModel):
    dedup_window_seconds: float = 120.0


class ReportingSettings(BaseModel):
    timezone: str = "Europe/Bucharest"

    @property
    def tzinfo(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return ZoneInfo("UTC")


class StagePatternSettings(BaseModel):
    workshop: dict[str, list[str]] = DEFAULT_STAGE_PATTERNS
    funnel: dict[str, list[str]] = DEFAULT_FUNNEL_PATTERNS


def _patterns_from_env(
    var_name: str, default: dict[str, list[str]]
) -> dict[str, list[str]]:
    raw = os.getenv(var_name)
    if not raw:
        return {k: list(v) for k, v in default.items()}
    try:
        data = json.loads(raw)
    except ValueError:
        logging.getLogger(__name__).warning(
            "stage_patterns_invalid_json", extra={"var": var_name}
        )
        return {k: list(v) for k, v in default.items()}
    if not isinstance(data, dict):
        return {k: list(v) for k, v in default.items()}
    return {
        str(category): [str(p) for p in patterns]
        for category, patterns in data.items()
        if isinstance(patterns, list)
    }


class AppSettings(BaseModel):
    cache: CacheSettings = CacheSettings()
    funnel: FunnelSettings = FunnelSettings()
    reporting: ReportingSettings = ReportingSettings()
    stage_patterns: StagePatternSettings = StagePatternSettings()
    owner_dashboard_token: str | None = None
    use_db_repositories: bool = False

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Load settings from environment variables with safe defaults."""
        try:
            ttl = float(os.getenv("STAGE_LOOKUP_TTL_SECONDS", "300"))
        except ValueError:
            ttl = 300.0
        try:
            dedup_window = float(os.getenv("FUNNEL_DEDUP_WINDOW_SECONDS", "120"))
        except ValueError:
            dedup_window = 120.0
        stage_patterns = StagePatternSettings(
            workshop=_patterns_from_env("STAGE_PATTERNS_JSON", DEFAULT_STAGE_PATTERNS),
            funnel=_patterns_from_env("FUNNEL_PATTERNS_JSON", DEFAULT_FUNNEL_PATTERNS),
        )
        # OWNER_DASHBOARD_TOKEN is the canonical env var; DASHBOARD_OWNER_TOKEN
        # is accepted as a legacy alias.
        owner_dashboard_token = os.getenv("OWNER_DASHBOARD_TOKEN") or os.getenv(
            "DASHBOARD_OWNER_TOKEN"
        )
        return cls(
            cache=CacheSettings(stage_lookup_ttl_seconds=ttl),
            funnel=FunnelSettings(dedup_window_seconds=dedup_window),
            reporting=ReportingSettings(
                timezone=os.getenv("REPORTING_TIMEZONE", "Europe/Bucharest")
            ),
            stage_patterns=stage_patterns,
            owner_dashboard_token=owner_dashboard_token,
            use_db_repositories=os.getenv("USE_DB_REPOSITORIES", "false").lower()
            == "true",
        )

    def validate_combinations(self) -> None:
        """Warn when values would silently degrade reports."""
        logger = logging.getLogger(__name__)
        warnings: list[str] = []

        try:
            ZoneInfo(self.reporting.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            warnings.append(
                f"REPORTING_TIMEZONE={self.reporting.timezone!r} is unknown; using UTC."
            )
        if self.cache.stage_lookup_ttl_seconds <= 0:
            warnings.append("STAGE_LOOKUP_TTL_SECONDS must be positive.")
        if self.funnel.dedup_window_seconds < 0:
            warnings.append("FUNNEL_DEDUP_WINDOW_SECONDS must not be negative.")
        if not self.stage_patterns.workshop:
            warnings.append("STAGE_PATTERNS_JSON produced an empty vocabulary.")
        for msg in warnings:
            logger.warning("configuration_warning", extra={"detail": msg})


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Settings for this process, read from the environment once."""
    settings = AppSettings.from_env()
    settings.validate_combinations()
    return settings
