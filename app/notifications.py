"""Host notification seam.

The engine asks for a local notification once per session activation; how
it reaches the operating system is up to the host.
"""
import logging
from typing import Callable, List

logger = logging.getLogger(__name__)


class Notifier:
    """Collects notification handlers and dispatches to each of them."""

    def __init__(self):
        self._handlers: List[Callable[[str, int], None]] = []

    def register(self, handler: Callable[[str, int], None]) -> None:
        self._handlers.append(handler)

    def notify_session_active(self, course_label: str, duration_minutes: int) -> None:
        logger.info("Session active: %s (%s min)", course_label, duration_minutes)
        for handler in self._handlers:
            handler(course_label, duration_minutes)


notifier = Notifier()
