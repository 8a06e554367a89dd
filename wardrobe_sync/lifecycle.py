"""Host lifecycle signal: tells the queue when the app comes to the foreground."""

from abc import ABC, abstractmethod
from typing import Callable, List

from wardrobe_sync.core.logging import get_logger

logger = get_logger(__name__)

ACTIVE = "active"
BACKGROUND = "background"
INACTIVE = "inactive"
_STATES = (ACTIVE, BACKGROUND, INACTIVE)


class HostLifecycle(ABC):
    """Abstract source of foreground transitions (OS hook, UI shell, ...)."""

    @abstractmethod
    def on_foreground(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` for background/inactive -> active. Returns an unsubscribe function."""
        ...


class AppStateMonitor(HostLifecycle):
    """HostLifecycle driven by explicit state reports from the host.

    The host calls ``set_state`` whenever its app state changes; listeners
    fire only when the state moves from non-active to active.
    """

    def __init__(self, initial_state: str = ACTIVE):
        if initial_state not in _STATES:
            raise ValueError(f"Unknown app state '{initial_state}'. Valid: {list(_STATES)}")
        self._state = initial_state
        self._listeners: List[Callable[[], None]] = []

    @property
    def state(self) -> str:
        return self._state

    def on_foreground(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def set_state(self, state: str) -> None:
        if state not in _STATES:
            raise ValueError(f"Unknown app state '{state}'. Valid: {list(_STATES)}")
        previous, self._state = self._state, state
        if state != ACTIVE or previous == ACTIVE:
            return
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error("Foreground listener failed", error=str(e))
