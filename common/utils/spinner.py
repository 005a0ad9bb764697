import threading
from datetime import datetime, timedelta
from typing import Optional

from common.constants import SPIN_SLEEP_SECONDS


class Spinner:
    """Paces a background loop: returns True at most once per ``interval``.

    Between ticks it parks the thread for ``SPIN_SLEEP_SECONDS`` (or until ``stop_event``
    is set) so loops stay responsive to shutdown.
    """

    def __init__(self, interval: timedelta, stop_event: Optional[threading.Event] = None) -> None:
        self._last_check: Optional[datetime] = None
        self._interval = interval
        self._stop_event = stop_event if stop_event is not None else threading.Event()

    def __call__(self) -> bool:
        now = datetime.now()
        if self._last_check is not None and self._last_check + self._interval > now:
            self._stop_event.wait(SPIN_SLEEP_SECONDS)
            return False
        self._last_check = now
        return True
