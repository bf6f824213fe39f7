"""
Clock Sources

Supplies "today" for days-past-due computation. Classification never reads
the wall clock directly, so tests can pin the date.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class ClockSource(ABC):
    """Abstract source of the current date and time"""
    
    @abstractmethod
    def now(self) -> datetime:
        """Current UTC timestamp"""
        pass
    
    def today(self) -> date:
        """Current UTC date"""
        return self.now().date()


class SystemClock(ClockSource):
    """Wall clock in UTC"""
    
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(ClockSource):
    """Pinned clock for deterministic runs and tests"""
    
    def __init__(self, current: date):
        if isinstance(current, datetime):
            self._now = current if current.tzinfo else current.replace(tzinfo=timezone.utc)
        else:
            self._now = datetime(current.year, current.month, current.day, tzinfo=timezone.utc)
    
    def now(self) -> datetime:
        return self._now
    
    def set(self, current: date) -> None:
        """Move the clock to a new date"""
        self._now = FixedClock(current)._now
    
    def advance(self, days: int = 0) -> None:
        """Move the clock forward by whole days"""
        self._now = self._now + timedelta(days=days)
