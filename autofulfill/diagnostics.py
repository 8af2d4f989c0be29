"""
Failure screenshots. Capture is best-effort and never raises.
"""

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from playwright.async_api import Page

from autofulfill import config
from autofulfill.events import event_broker, EventType


class Diagnostics:
    """Writes full-page screenshots to a timestamped path under the artifacts directory."""

    def __init__(self, artifacts_dir: Path = config.ARTIFACTS_DIR):
        self.artifacts_dir = Path(artifacts_dir)

    def _path_for(self, stage: str) -> Path:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        safe_stage = re.sub(r"[^A-Za-z0-9_-]+", "-", stage).strip("-") or "failure"
        return self.artifacts_dir / f"{timestamp}_{safe_stage}.png"

    async def capture(self, page: Optional[Page], stage: str) -> Optional[str]:
        """Screenshot `page`. Returns the file path, or None if nothing was written."""
        if page is None or page.is_closed():
            return None

        filepath = self._path_for(stage)
        try:
            filepath.parent.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(filepath), full_page=True)
        except Exception as e:
            await event_broker.emit(
                EventType.ERROR,
                "screenshot_failed",
                details={"stage": stage, "error": str(e)}
            )
            return None

        await event_broker.emit(
            EventType.SCREENSHOT,
            "screenshot_saved",
            url=page.url,
            details={"path": str(filepath), "stage": stage}
        )
        return str(filepath)
