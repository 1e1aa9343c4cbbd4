"""Background scheduling.

Example:
    >>> from labguard.tasks import PeriodicTimer
    >>>
    >>> timer = PeriodicTimer("backup", 86400, scheduler.tick)
    >>> timer.start()
    >>> ...
    >>> await timer.cancel()
"""

from labguard.tasks.timer import PeriodicTimer

__all__ = [
    "PeriodicTimer",
]
