"""Injection of remote pointer input into the local desktop.

The way input is injected depends on the host. A native injector backed
by [pyautogui](https://pyautogui.readthedocs.io){target=_blank} is
preferred and the `xdotool` command line tool is the scripted fallback.
[`select_injector()`][remotedesk.control.input.select_injector] picks the
first injector that can be used on this host.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import shutil
import subprocess
from typing import Any
from typing import Callable
from typing import Protocol
from typing import runtime_checkable
from typing import Sequence

from remotedesk.control.exceptions import InjectorUnavailableError
from remotedesk.control.messages import ButtonEvent
from remotedesk.control.messages import ContextClick
from remotedesk.control.messages import DoubleClick
from remotedesk.control.messages import InputEvent
from remotedesk.control.messages import PointerMove
from remotedesk.control.messages import Wheel
from remotedesk.control.screen import denormalize
from remotedesk.control.screen import ScreenSizeCache

logger = logging.getLogger(__name__)


class MouseButton(enum.Enum):
    """Mouse buttons an injector can press."""

    LEFT = 'left'
    MIDDLE = 'middle'
    RIGHT = 'right'


_DOM_BUTTONS = {
    0: MouseButton.LEFT,
    1: MouseButton.MIDDLE,
    2: MouseButton.RIGHT,
}


def map_button(button: int) -> MouseButton:
    """Map a DOM button number to a mouse button.

    Unknown button numbers map to the left button.
    """
    return _DOM_BUTTONS.get(button, MouseButton.LEFT)


def _sign(value: float) -> int:
    return (value > 0) - (value < 0)


@runtime_checkable
class InputInjector(Protocol):
    """Injector protocol.

    Scroll steps are positive down and to the right.
    """

    def inject_pointer(self, x: int, y: int) -> None:
        """Move the pointer to a pixel on the local screen."""
        ...

    def inject_button(self, button: MouseButton, down: bool) -> None:
        """Press or release a mouse button."""
        ...

    def inject_scroll(self, dx: int, dy: int) -> None:
        """Scroll by a number of steps."""
        ...


class PyAutoGuiInjector:
    """Native injector using pyautogui.

    Raises:
        InjectorUnavailableError: If pyautogui cannot be imported or
            cannot reach a display.
    """

    def __init__(self) -> None:
        try:
            import pyautogui
        except Exception as e:
            # pyautogui raises more than ImportError without a display
            raise InjectorUnavailableError(
                f'pyautogui is not usable on this host: {e!r}',
            ) from e

        pyautogui.FAILSAFE = False
        pyautogui.PAUSE = 0
        self._pyautogui = pyautogui

    def inject_pointer(self, x: int, y: int) -> None:
        self._pyautogui.moveTo(x, y)

    def inject_button(self, button: MouseButton, down: bool) -> None:
        if down:
            self._pyautogui.mouseDown(button=button.value)
        else:
            self._pyautogui.mouseUp(button=button.value)

    def inject_scroll(self, dx: int, dy: int) -> None:
        # pyautogui scrolls up for positive values
        if dy:
            self._pyautogui.scroll(-dy)
        if dx:
            self._pyautogui.hscroll(dx)


class XdotoolInjector:
    """Scripted injector which shells out to `xdotool`.

    Args:
        executable: Name or path of the xdotool executable.

    Raises:
        InjectorUnavailableError: If the executable cannot be found.
    """

    _BUTTONS = {
        MouseButton.LEFT: '1',
        MouseButton.MIDDLE: '2',
        MouseButton.RIGHT: '3',
    }
    _SCROLL_UP, _SCROLL_DOWN, _SCROLL_LEFT, _SCROLL_RIGHT = '4', '5', '6', '7'

    def __init__(self, executable: str = 'xdotool') -> None:
        path = shutil.which(executable)
        if path is None:
            raise InjectorUnavailableError(
                f'Could not find {executable} on the PATH.',
            )
        self._executable = path

    def _run(self, *args: str) -> None:
        subprocess.run([self._executable, *args], check=True)

    def inject_pointer(self, x: int, y: int) -> None:
        self._run('mousemove', str(x), str(y))

    def inject_button(self, button: MouseButton, down: bool) -> None:
        command = 'mousedown' if down else 'mouseup'
        self._run(command, self._BUTTONS[button])

    def inject_scroll(self, dx: int, dy: int) -> None:
        if dy:
            button = self._SCROLL_DOWN if dy > 0 else self._SCROLL_UP
            self._run('click', '--repeat', str(abs(dy)), button)
        if dx:
            button = self._SCROLL_RIGHT if dx > 0 else self._SCROLL_LEFT
            self._run('click', '--repeat', str(abs(dx)), button)


DEFAULT_INJECTORS: tuple[Callable[[], InputInjector], ...] = (
    PyAutoGuiInjector,
    XdotoolInjector,
)


def select_injector(
    factories: Sequence[Callable[[], InputInjector]] = DEFAULT_INJECTORS,
) -> InputInjector:
    """Get the first injector usable on this host.

    Args:
        factories: Injector factories in order of preference.

    Raises:
        InjectorUnavailableError: If no injector can be created.
    """
    reasons = []
    for factory in factories:
        try:
            injector = factory()
        except InjectorUnavailableError as e:
            logger.debug(f'Skipping input injector {factory!r}: {e}')
            reasons.append(str(e))
            continue
        logger.info(f'Using input injector {type(injector).__name__}')
        return injector

    raise InjectorUnavailableError(
        'No input injector is available on this host. '
        f'Tried: {"; ".join(reasons) or "nothing"}.',
    )


class InputDispatcher:
    """Apply remote input events to the local desktop.

    Events are applied one at a time, in the order they are dispatched.
    Each injector call runs in a worker thread so the event loop is never
    blocked by the windowing system.

    Args:
        injector: Injector used to apply events.
        screen_cache: Cache of the local screen size used to map the
            normalized event coordinates to pixels.
    """

    def __init__(
        self,
        injector: InputInjector,
        screen_cache: ScreenSizeCache,
    ) -> None:
        self._injector = injector
        self._screen_cache = screen_cache

    async def _call(self, function: Callable[..., None], *args: Any) -> None:
        await asyncio.to_thread(function, *args)

    async def _move(self, x: float, y: float) -> None:
        px, py = denormalize(x, y, self._screen_cache.get())
        await self._call(self._injector.inject_pointer, px, py)

    async def _click(self, button: MouseButton) -> None:
        await self._call(self._injector.inject_button, button, True)
        await self._call(self._injector.inject_button, button, False)

    async def dispatch(self, event: InputEvent) -> None:
        """Apply an input event.

        Args:
            event: Input event received from the remote desktop.
        """
        if isinstance(event, PointerMove):
            await self._move(event.x, event.y)
        elif isinstance(event, ButtonEvent):
            if event.x is not None and event.y is not None:
                await self._move(event.x, event.y)
            await self._call(
                self._injector.inject_button,
                map_button(event.button),
                event.pressed,
            )
        elif isinstance(event, DoubleClick):
            button = map_button(event.button)
            await self._click(button)
            await self._click(button)
        elif isinstance(event, ContextClick):
            await self._click(MouseButton.RIGHT)
        elif isinstance(event, Wheel):
            dx, dy = _sign(event.dx), _sign(event.dy)
            if dx or dy:
                await self._call(self._injector.inject_scroll, dx, dy)
        else:
            raise AssertionError(f'Unreachable input event: {event!r}')
