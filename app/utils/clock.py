"""
Server clock estimation for signed request timestamps.
"""

import logging
import math
import time
from typing import Callable, Optional

from app.utils.http_utils import RobustHTTPClient
from app.utils.user_agent import get_random_windows_ua

logger = logging.getLogger(__name__)


def wall_clock_ms() -> float:
    return time.time() * 1000


class ClockSynchronizer:
    """
    Tracks the offset between the local clock and the upstream's clock.

    ``sync()`` makes one round trip to ``{base_url}/api/time`` and assumes the
    server stamped its reply halfway through. A failed sync keeps whatever
    offset was known before (0 for a fresh synchronizer).
    """

    def __init__(
        self,
        base_url: str,
        http_client: Optional[RobustHTTPClient] = None,
        clock: Callable[[], float] = wall_clock_ms,
        timeout: float = 15,
    ):
        self.base_url = base_url.rstrip('/')
        self.http = http_client or RobustHTTPClient(timeout=timeout, max_retries=0)
        self.clock = clock
        self.offset_ms = 0
        self.synced = False

    def sync(self) -> int:
        local_before = self.clock()
        data = self.http.get_json(
            f"{self.base_url}/api/time",
            context="Flixer clock",
            headers={'User-Agent': get_random_windows_ua()},
            params={'t': int(local_before)},
        )
        local_after = self.clock()

        timestamp = data.get('timestamp') if isinstance(data, dict) else None
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            logger.warning(f"⚠️ Clock sync failed, keeping offset {self.offset_ms}ms")
            return self.offset_ms

        rtt = local_after - local_before
        self.offset_ms = int(round(timestamp * 1000 + rtt / 2 - local_after))
        self.synced = True
        logger.info(f"🕒 Clock offset {self.offset_ms}ms (rtt {rtt:.0f}ms)")
        return self.offset_ms

    def now_ms(self) -> float:
        return self.clock() + self.offset_ms

    def server_timestamp(self) -> int:
        """Upstream time in whole seconds."""
        return int(math.floor(self.now_ms() / 1000))
