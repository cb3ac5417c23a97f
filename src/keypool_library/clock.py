# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Calendar-day clock used for quota accounting.

Every usage record is keyed by the day returned here, so the whole process
must share one instance (one timezone). There is no reset job: a new day
simply has no records yet.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

lib_logger = logging.getLogger("keypool_library")

# Upstream free-tier quotas roll over at midnight Pacific time
DEFAULT_QUOTA_TIMEZONE = "America/Los_Angeles"


class DailyClock:
    def __init__(
        self,
        tz_name: str = DEFAULT_QUOTA_TIMEZONE,
        now: Optional[Callable[[], datetime]] = None,
    ):
        try:
            self.tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            lib_logger.warning(
                f"Unknown quota timezone {tz_name!r}, falling back to UTC"
            )
            self.tz = timezone.utc
        self._now = now or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._now().astimezone(self.tz)

    def today(self) -> str:
        """Current calendar day as an ISO date string."""
        return self.now().date().isoformat()
