"""
Typed access to runtime settings stored in ``platform_settings``.

Reads never raise: a missing row, an empty value, a value that does not
parse, or an unavailable store all yield the caller's default.
"""

import json
import re
from collections.abc import Iterable
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vilo.platform.settings import Settings, get_settings

from .models import PlatformSetting
from .schemas import AutomationSettingsSnapshot

logger = structlog.get_logger(__name__)

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")

# Keys read into the automation snapshot
SNAPSHOT_KEYS = (
    "trial_ending_notice_days",
    "grace_period_days",
    "payment_retry_intervals",
    "limit_warning_threshold",
    "auto_cancel_after_grace",
    "downgrade_to_free_on_cancel",
    "renewal_reminder_days",
)


def parse_int(value: str | None, default: int) -> int:
    """Leading integer of ``value``; zero or no digits yield ``default``."""
    if value is None:
        return default
    match = _LEADING_INT.match(value)
    if match is None:
        return default
    return int(match.group(1)) or default


def parse_day_count(value: str | None, default: int) -> int:
    days = parse_int(value, default)
    return days if days > 0 else default


def parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return default


def parse_json(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


def parse_retry_intervals(value: str | None, default: Iterable[int]) -> tuple[int, ...]:
    """Parse a JSON list of positive day counts, e.g. ``"[1, 3, 7]"``."""
    fallback = tuple(default)
    parsed = parse_json(value, None)
    if not isinstance(parsed, list) or not parsed:
        return fallback
    intervals: list[int] = []
    for item in parsed:
        if isinstance(item, bool) or not isinstance(item, int) or item <= 0:
            return fallback
        intervals.append(item)
    return tuple(intervals)


class PlatformSettingsProvider:
    """Reads automation settings from the settings table."""

    def __init__(self, db: AsyncSession, defaults: Settings.AutomationSettings | None = None):
        self.db = db
        self.defaults = defaults or get_settings().automation

    async def _fetch(self, keys: Iterable[str]) -> dict[str, str]:
        keys = list(keys)
        try:
            result = await self.db.execute(
                select(PlatformSetting.key, PlatformSetting.value).where(
                    PlatformSetting.key.in_(keys)
                )
            )
        except Exception as e:
            logger.warning("Platform settings unavailable, using defaults", keys=keys, error=str(e))
            try:
                await self.db.rollback()
            except Exception:
                logger.debug("Rollback after settings read failure failed", exc_info=True)
            return {}
        # Empty strings behave like missing rows
        return {key: value for key, value in result.all() if value not in (None, "")}

    async def get_string(self, key: str, default: str = "") -> str:
        values = await self._fetch([key])
        return values.get(key, default)

    async def get_int(self, key: str, default: int) -> int:
        values = await self._fetch([key])
        return parse_int(values.get(key), default)

    async def get_float(self, key: str, default: float) -> float:
        values = await self._fetch([key])
        return parse_float(values.get(key), default)

    async def get_bool(self, key: str, default: bool) -> bool:
        values = await self._fetch([key])
        return parse_bool(values.get(key), default)

    async def get_json(self, key: str, default: Any) -> Any:
        values = await self._fetch([key])
        return parse_json(values.get(key), default)

    async def get_retry_intervals(
        self, key: str = "payment_retry_intervals", default: Iterable[int] | None = None
    ) -> tuple[int, ...]:
        if default is None:
            default = self.defaults.payment_retry_intervals
        values = await self._fetch([key])
        return parse_retry_intervals(values.get(key), default)

    async def load_snapshot(self) -> AutomationSettingsSnapshot:
        """Read every automation setting in one query."""
        values = await self._fetch(SNAPSHOT_KEYS)
        d = self.defaults
        snapshot = AutomationSettingsSnapshot(
            trial_ending_notice_days=parse_day_count(
                values.get("trial_ending_notice_days"), d.trial_ending_notice_days
            ),
            grace_period_days=parse_day_count(
                values.get("grace_period_days"), d.grace_period_days
            ),
            payment_retry_intervals=parse_retry_intervals(
                values.get("payment_retry_intervals"), d.payment_retry_intervals
            ),
            limit_warning_threshold=parse_float(
                values.get("limit_warning_threshold"), d.limit_warning_threshold
            ),
            auto_cancel_after_grace=parse_bool(
                values.get("auto_cancel_after_grace"), d.auto_cancel_after_grace
            ),
            downgrade_to_free_on_cancel=parse_bool(
                values.get("downgrade_to_free_on_cancel"), d.downgrade_to_free_on_cancel
            ),
            renewal_reminder_days=parse_day_count(
                values.get("renewal_reminder_days"), d.renewal_reminder_days
            ),
        )
        logger.debug("Loaded automation settings", overrides=sorted(values))
        return snapshot


__all__ = [
    "PlatformSettingsProvider",
    "SNAPSHOT_KEYS",
    "parse_int",
    "parse_day_count",
    "parse_float",
    "parse_bool",
    "parse_json",
    "parse_retry_intervals",
]
