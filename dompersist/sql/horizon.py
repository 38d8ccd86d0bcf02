"""
Data horizon: the visibility window of horizon-controlled classes.

During ``synchronize`` objects of classes declaring ``use_data_horizon = True``
are only loaded if their horizon predicate accepts them. Objects outside the
window are still loaded on demand when a loaded object references them.
Predicates are pluggable per class; the default one accepts rows modified
within a configured period.
"""
import calendar
import re
from datetime import datetime, timedelta
from typing import Optional, Protocol, Tuple

from sqlalchemy import Table
from sqlalchemy.sql import ColumnElement

from dompersist.sql.records import utc_now

_PERIOD = re.compile(r"^\s*(\d+)\s*([smhdwMy])\s*$")


def parse_period(period: str) -> Tuple[int, str]:
    """'30s', '15m', '2h', '1d', '1w', '1M' (months), '1y' -> (amount, unit)"""
    match = _PERIOD.match(period or "")
    if not match:
        raise ValueError(f"Invalid period '{period}': expected <number><s|m|h|d|w|M|y>")
    return int(match.group(1)), match.group(2)


def subtract_period(moment: datetime, period: str) -> datetime:
    amount, unit = parse_period(period)
    if unit in "smhdw":
        seconds = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}[unit]
        return moment - timedelta(seconds=amount * seconds)
    months = amount * (12 if unit == "y" else 1)
    year, month = divmod(moment.year * 12 + moment.month - 1 - months, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class DataHorizon(Protocol):
    """Per-class visibility predicate over the class' root table."""

    def condition(self, base_table: Table) -> Optional[ColumnElement]:
        ...


class LastModifiedHorizon:
    """Accept rows whose LAST_MODIFIED lies within ``period`` before now."""

    def __init__(self, period: str, column: str = "LAST_MODIFIED"):
        parse_period(period)
        self.period = period
        self.column = column

    def condition(self, base_table: Table) -> Optional[ColumnElement]:
        column = next(c for c in base_table.columns if c.name.upper() == self.column)
        return column >= subtract_period(utc_now(), self.period)

    def __repr__(self) -> str:
        return f"LastModifiedHorizon({self.period})"
