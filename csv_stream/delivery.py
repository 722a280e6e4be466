"""
Module for applying received rows to the client's row store and rendering a window of them.
"""
import asyncio
import logging
import math
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

from .models import RenderWindow

logger = logging.getLogger(__name__)


class FrameScheduler:
    """Coalesces work onto the next frame tick of the running event loop.

    Scheduling a key that is already pending is a no-op, so any number of
    requests between two ticks run the callback once.
    """

    def __init__(self, interval: float = 0.016):
        self.interval = interval
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def schedule(self, key: str, callback: Callable[[], None]) -> bool:
        """Run ``callback`` on the next tick unless ``key`` is already pending.

        Returns:
            True if a new tick was scheduled
        """
        if key in self._handles:
            return False

        def run():
            self._handles.pop(key, None)
            callback()

        self._handles[key] = asyncio.get_running_loop().call_later(self.interval, run)
        return True

    def pending(self, key: str) -> bool:
        return key in self._handles

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()


class DeliveryQueue:
    """FIFO of received rows applied to the row store in bounded batches per frame."""

    def __init__(self, target: List[List[str]], scheduler: FrameScheduler,
                 max_per_frame: int = 5000, low_water: int = 35000,
                 on_applied: Optional[Callable[[int], None]] = None,
                 on_drained: Optional[Callable[[], None]] = None):
        """Initialize the delivery queue.

        Args:
            target: Row store the queue appends to
            scheduler: Frame scheduler driving the apply step
            max_per_frame: Rows applied per frame at most
            low_water: Queue length at or below which on_drained fires
            on_applied: Called with the number of rows applied in a frame
            on_drained: Called after an apply step left the queue at or below low_water
        """
        self.target = target
        self.scheduler = scheduler
        self.max_per_frame = max(1, max_per_frame)
        self.low_water = low_water
        self.on_applied = on_applied
        self.on_drained = on_drained
        self.incoming: Deque[List[str]] = deque()
        self.authoritative_replace = False
        self.apply_calls = 0

    def __len__(self) -> int:
        return len(self.incoming)

    def enqueue(self, rows: Sequence[List[str]]) -> None:
        if not rows:
            return
        self.incoming.extend(rows)
        self.scheduler.schedule("apply", self.apply_batch)

    def apply_batch(self) -> int:
        """Move up to max_per_frame rows from the queue into the row store.

        Returns:
            Number of rows applied
        """
        if not self.incoming:
            return 0

        count = min(self.max_per_frame, len(self.incoming))
        batch = [self.incoming.popleft() for _ in range(count)]

        if self.authoritative_replace:
            logger.debug(f"Replacing {len(self.target)} preview rows with server rows")
            self.target.clear()
            self.authoritative_replace = False

        self.target.extend(batch)
        self.apply_calls += 1

        if self.incoming:
            self.scheduler.schedule("apply", self.apply_batch)
        if self.on_applied:
            self.on_applied(count)
        if len(self.incoming) <= self.low_water and self.on_drained:
            self.on_drained()
        return count

    def clear(self) -> None:
        self.incoming.clear()
        self.authoritative_replace = False


class VirtualViewport:
    """Maps a scroll position to the slice of rows worth painting.

    Tall stores are compressed into at most ``max_scroll_px`` of scrollable
    height, so the scroll position is normalized before it picks a row.
    """

    def __init__(self, row_height: int = 36, overscan: int = 8,
                 min_viewport_height: int = 260, max_scroll_px: int = 33000000):
        self.row_height = row_height
        self.overscan = overscan
        self.min_viewport_height = min_viewport_height
        self.max_scroll_px = max_scroll_px

    def compute(self, total: int, scroll_top: float, viewport_height: float) -> RenderWindow:
        """Compute the render window.

        Args:
            total: Rows in the store
            scroll_top: Current scroll offset in pixels
            viewport_height: Visible height in pixels

        Returns:
            RenderWindow with [start, end) and the spacer heights around it
        """
        row_height = self.row_height
        viewport_height = max(self.min_viewport_height, viewport_height)
        visible = math.ceil(viewport_height / row_height)
        max_start = max(0, total - visible)

        virtual_height = total * row_height
        effective_height = min(virtual_height, self.max_scroll_px)
        scale = effective_height / virtual_height if virtual_height > 0 else 1
        max_scroll_top = max(1, effective_height - viewport_height)
        normalized = max(0.0, min(1.0, scroll_top / max_scroll_top))

        base_start = min(max_start, math.floor(normalized * max_start))
        start = max(0, base_start - self.overscan)
        end = min(total, start + visible + self.overscan * 2)
        rendered_height = max(0, end - start) * row_height

        raw_top = max(0, round(start * row_height * scale))
        max_top_by_scroll = max(0, round(scroll_top + self.overscan * row_height))
        max_top_by_layout = max(0, round(effective_height - rendered_height))
        top = max(0, min(raw_top, max_top_by_scroll, max_top_by_layout))
        bottom = max(0, round(effective_height - top - rendered_height))
        return RenderWindow(start=start, end=end, top_px=top, bottom_px=bottom)


class TablePainter(ABC):
    """Paints a window of rows; implementations own the actual output surface."""

    has_bottom_spacer = False

    @abstractmethod
    def paint(self, headers: List[str], rows: Sequence[Tuple[int, List[str]]],
              window: RenderWindow) -> None:
        """Repaint the whole window."""

    @abstractmethod
    def resize_bottom(self, bottom_px: int) -> None:
        """Adjust only the bottom spacer."""


class TextPainter(TablePainter):
    """Paints the window as tab-separated text lines, numbered from 1."""

    def __init__(self):
        self.lines: List[str] = []
        self.top_px = 0
        self.bottom_px = 0
        self.paints = 0
        self.resizes = 0

    def paint(self, headers, rows, window):
        columns = max(1, len(headers))
        lines = ["#\t" + "\t".join(headers)] if headers else []
        for index, values in rows:
            cells = [values[col] if col < len(values) else "" for col in range(columns)]
            lines.append(f"{index + 1}\t" + "\t".join(cells))
        self.lines = lines
        self.top_px = window.top_px
        self.bottom_px = window.bottom_px
        self.has_bottom_spacer = window.bottom_px > 0
        self.paints += 1

    def resize_bottom(self, bottom_px):
        self.bottom_px = bottom_px
        self.resizes += 1

    def text(self) -> str:
        return "\n".join(self.lines)


class VirtualTable:
    """Renders only the rows around the scroll position, skipping redundant paints."""

    SKIPPED = "skipped"
    RESIZED = "resized"
    PAINTED = "painted"

    def __init__(self, viewport: VirtualViewport, painter: TablePainter):
        self.viewport = viewport
        self.painter = painter
        self.scroll_top = 0.0
        self.viewport_height = float(viewport.min_viewport_height)
        self.render_calls = 0
        self._last_key = ""
        self._last_total = 0

    def invalidate(self) -> None:
        self._last_key = ""
        self._last_total = 0

    def render(self, headers: List[str], rows: List[List[str]]) -> str:
        """Bring the painter up to date with the row store.

        Returns:
            SKIPPED when nothing changed, RESIZED when only rows below the
            window were added, PAINTED otherwise
        """
        total = len(rows)
        window = self.viewport.compute(total, self.scroll_top, self.viewport_height)
        unchanged = window.key == self._last_key

        if unchanged and total == self._last_total:
            return self.SKIPPED

        if unchanged and total > self._last_total and window.end < total \
                and self.painter.has_bottom_spacer:
            self._last_total = total
            self.painter.resize_bottom(window.bottom_px)
            return self.RESIZED

        self._last_key = window.key
        self._last_total = total
        self.painter.paint(headers, [(i, rows[i]) for i in range(window.start, window.end)], window)
        self.render_calls += 1
        return self.PAINTED
