"""Polling watcher that reports new segment files in a tier directory."""

from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Set, Union

logger = logging.getLogger(__name__)

SegmentCallback = Callable[[str, str], Union[Awaitable[None], None]]


class SegmentWatcher:
    """Fires ``callback(tier_id, filename)`` once per new segment file.

    Notifications are deduplicated by filename, so a file observed on several
    polls is reported once. Names that disappear (pruned by the encoder) are
    forgotten and would be reported again if rewritten.
    """

    def __init__(
        self,
        tier_id: str,
        directory: Path,
        callback: SegmentCallback,
        poll_interval: float = 0.5,
        suffix: str = ".ts",
    ):
        self.tier_id = tier_id
        self.directory = Path(directory)
        self.callback = callback
        self.poll_interval = poll_interval
        self.suffix = suffix
        self._seen: Set[str] = set()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._seen = set(await asyncio.to_thread(self._list_segments))
        self._task = asyncio.create_task(self._run(), name=f"segment-watcher-{self.tier_id}")
        logger.debug("Watching %s for %s segments", self.directory, self.tier_id)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def poll_once(self) -> List[str]:
        names = await asyncio.to_thread(self._list_segments)
        fresh = [name for name in names if name not in self._seen]
        self._seen = set(names)
        for name in fresh:
            await self._dispatch(name)
        return fresh

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except Exception:  # noqa: BLE001
                logger.exception("Segment poll failed for %s", self.tier_id)

    async def _dispatch(self, filename: str) -> None:
        try:
            result = self.callback(self.tier_id, filename)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            logger.exception("Segment callback failed for %s/%s", self.tier_id, filename)

    def _list_segments(self) -> List[str]:
        try:
            entries = list(self.directory.iterdir())
        except FileNotFoundError:
            return []
        return sorted(entry.name for entry in entries if entry.suffix == self.suffix)
