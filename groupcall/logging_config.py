from __future__ import annotations

import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging for the client.

    There is no UI; the speaker view and group summary go to these logs.
    aioice/aiortc are noisy at DEBUG, so they stay at WARNING unless
    GROUPCALL_RTC_DEBUG is set.
    """

    effective_level = (level or os.environ.get("GROUPCALL_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root.setLevel(effective_level)

    if not os.environ.get("GROUPCALL_RTC_DEBUG"):
        for name in ("aioice", "aiortc"):
            logging.getLogger(name).setLevel(logging.WARNING)
