from datetime import datetime

from croniter import croniter

def schedule_hours(interval_hours: int) -> list[int]:
    """
    Hours of the day the timer fires at, always starting from midnight.

    When the interval does not divide 24 the last slot of the day is followed
    by midnight, e.g. interval 5 -> 0, 5, 10, 15, 20 and a 4 hour gap to 00:00.
    """
    return list(range(0, 24, interval_hours))

def cron_expression(interval_hours: int) -> str:
    hours = ",".join(str(hour) for hour in schedule_hours(interval_hours))
    return f"0 {hours} * * *"

def next_run_times(interval_hours: int, now: datetime, count: int = 5) -> list[datetime]:
    """Upcoming fire times strictly after `now`, in now's timezone."""
    it = croniter(cron_expression(interval_hours), now)
    return [it.get_next(datetime) for _ in range(count)]

def next_run_time(interval_hours: int, now: datetime) -> datetime:
    return next_run_times(interval_hours, now, count=1)[0]
