"""Mapping between normalized and local screen coordinates."""
from __future__ import annotations

import dataclasses
import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ScreenSize:
    """Size of a screen or rendered surface in pixels."""

    width: int
    height: int


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def normalize(x: float, y: float, surface: ScreenSize) -> tuple[float, float]:
    """Map a position on a surface to `[0, 1] x [0, 1]`.

    Positions outside of the surface are clamped to its edges.

    Args:
        x: Horizontal position in pixels relative to the surface.
        y: Vertical position in pixels relative to the surface.
        surface: Size of the surface the position was observed on.

    Raises:
        ValueError: If the surface has no area.
    """
    if surface.width <= 0 or surface.height <= 0:
        raise ValueError(f'Cannot normalize against empty surface {surface}.')
    return (
        _clamp(x / surface.width, 0.0, 1.0),
        _clamp(y / surface.height, 0.0, 1.0),
    )


def denormalize(x: float, y: float, screen: ScreenSize) -> tuple[int, int]:
    """Map a normalized position to a pixel on the local screen.

    Example:
        ```python
        >>> denormalize(0.5, 0.5, ScreenSize(1920, 1080))
        (960, 540)
        ```

    Args:
        x: Normalized horizontal position.
        y: Normalized vertical position.
        screen: Size of the local screen.

    Returns:
        Pixel coordinates rounded to the nearest pixel and clamped to the
        screen.
    """
    max_x = max(screen.width - 1, 0)
    max_y = max(screen.height - 1, 0)
    return (
        int(_clamp(round(x * screen.width), 0, max_x)),
        int(_clamp(round(y * screen.height), 0, max_y)),
    )


def get_local_screen_size() -> ScreenSize:
    """Get the size of the primary screen via pyautogui."""
    import pyautogui

    width, height = pyautogui.size()
    return ScreenSize(width=int(width), height=int(height))


class ScreenSizeCache:
    """Cache of the local screen size.

    The size is polled from the provider when the cached value is older
    than `max_age`, so a resolution change is observed even if the
    environment never signals it.

    Args:
        provider: Callable returning the current local screen size.
        max_age: Seconds a cached size is trusted for.
        clock: Monotonic clock used to age the cached size.
    """

    def __init__(
        self,
        provider: Callable[[], ScreenSize] = get_local_screen_size,
        *,
        max_age: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._max_age = max_age
        self._clock = clock
        self._size: ScreenSize | None = None
        self._fetched = 0.0

    def get(self) -> ScreenSize:
        """Get the local screen size, refreshing the cache if stale."""
        now = self._clock()
        if self._size is None or now - self._fetched >= self._max_age:
            size = self._provider()
            if size != self._size:
                logger.debug(f'Local screen size is now {size}')
            self._size = size
            self._fetched = now
        return self._size

    def invalidate(self) -> None:
        """Drop the cached size after the display metrics changed."""
        self._size = None
