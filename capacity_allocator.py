"""
Capacity Allocation Engine
Turns a project's phase plan into a per-member calendar schedule, spreads each
phase's man-day (MD) budget over months in proportion to real working days,
keeps a per-member ledger of commitments across projects, and reflows later
months when a user pins one month's value.

Features:
  - Working-day calendar with national holidays per country (IT, RO built in)
  - Sequential, gap-free phase timeline from a project start date
  - Proportional monthly distribution, last month absorbs rounding
  - Per member/month ledger with overflow flags (never refuses an allocation)
  - Manual override -> redistribute remainder over later unlocked months
  - Reset a pinned month back to its calculated value
"""

import math
import re
from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

import pandas as pd


# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_COUNTRY = "IT"
DEFAULT_ROLE = "G2"
VALID_ROLES = ["G1", "G2", "PM", "TA"]

# Allowed drift between an assignment's budget and the sum of its months.
ROUNDING_TOLERANCE = 0.5

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]

BUILTIN_HOLIDAYS = {
    "IT": {
        2024: ["2024-01-01", "2024-01-06", "2024-04-01", "2024-04-25",
               "2024-05-01", "2024-06-02", "2024-08-15", "2024-11-01",
               "2024-12-08", "2024-12-25", "2024-12-26"],
        2025: ["2025-01-01", "2025-01-06", "2025-04-21", "2025-04-25",
               "2025-05-01", "2025-06-02", "2025-08-15", "2025-11-01",
               "2025-12-08", "2025-12-25", "2025-12-26"],
        2026: ["2026-01-01", "2026-01-06", "2026-04-06", "2026-04-25",
               "2026-05-01", "2026-06-02", "2026-08-15", "2026-11-01",
               "2026-12-08", "2026-12-25", "2026-12-26"],
        2027: ["2027-01-01", "2027-01-06", "2027-03-29", "2027-04-25",
               "2027-05-01", "2027-06-02", "2027-08-15", "2027-11-01",
               "2027-12-08", "2027-12-25", "2027-12-26"],
        2028: ["2028-01-01", "2028-01-06", "2028-04-17", "2028-04-25",
               "2028-05-01", "2028-06-02", "2028-08-15", "2028-11-01",
               "2028-12-08", "2028-12-25", "2028-12-26"],
        2029: ["2029-01-01", "2029-01-06", "2029-04-02", "2029-04-25",
               "2029-05-01", "2029-06-02", "2029-08-15", "2029-11-01",
               "2029-12-08", "2029-12-25", "2029-12-26"],
        2030: ["2030-01-01", "2030-01-06", "2030-04-22", "2030-04-25",
               "2030-05-01", "2030-06-02", "2030-08-15", "2030-11-01",
               "2030-12-08", "2030-12-25", "2030-12-26"],
    },
    "RO": {
        2024: ["2024-01-01", "2024-01-02", "2024-01-24", "2024-04-29",
               "2024-05-05", "2024-05-06", "2024-05-01", "2024-06-01",
               "2024-06-24", "2024-08-15", "2024-11-30", "2024-12-01",
               "2024-12-25", "2024-12-26"],
        2025: ["2025-01-01", "2025-01-02", "2025-01-24", "2025-04-20",
               "2025-04-21", "2025-05-01", "2025-06-01", "2025-06-08",
               "2025-08-15", "2025-11-30", "2025-12-01", "2025-12-25",
               "2025-12-26"],
        2026: ["2026-01-01", "2026-01-02", "2026-01-24", "2026-04-12",
               "2026-04-13", "2026-05-01", "2026-06-01", "2026-05-31",
               "2026-08-15", "2026-11-30", "2026-12-01", "2026-12-25",
               "2026-12-26"],
        2027: ["2027-01-01", "2027-01-02", "2027-01-24", "2027-05-02",
               "2027-05-03", "2027-05-01", "2027-06-01", "2027-06-20",
               "2027-08-15", "2027-11-30", "2027-12-01", "2027-12-25",
               "2027-12-26"],
        2028: ["2028-01-01", "2028-01-02", "2028-01-24", "2028-04-16",
               "2028-04-17", "2028-05-01", "2028-06-01", "2028-06-04",
               "2028-08-15", "2028-11-30", "2028-12-01", "2028-12-25",
               "2028-12-26"],
        2029: ["2029-01-01", "2029-01-02", "2029-01-24", "2029-04-08",
               "2029-04-09", "2029-05-01", "2029-06-01", "2029-05-27",
               "2029-08-15", "2029-11-30", "2029-12-01", "2029-12-25",
               "2029-12-26"],
        2030: ["2030-01-01", "2030-01-02", "2030-01-24", "2030-04-28",
               "2030-04-29", "2030-05-01", "2030-06-01", "2030-06-16",
               "2030-08-15", "2030-11-30", "2030-12-01", "2030-12-25",
               "2030-12-26"],
    },
}

_MONTH_RE = re.compile(r"^\d{4}-\d{2}$")
_EPSILON = 1e-9


# ── Errors ───────────────────────────────────────────────────────────────────

class AllocationError(ValueError):
    """Base class for capacity allocation failures."""


class InvalidDateRange(AllocationError):
    """End date falls before start date."""

    def __init__(self, start, end, context=""):
        self.start = start
        self.end = end
        ctx = f" ({context})" if context else ""
        super().__init__(f"Invalid date range{ctx}: end {end} is before start {start}")


class EmptyWorkingDaySpan(AllocationError):
    """A phase or redistribution window contains no working days."""

    def __init__(self, start, end, mds=0.0, phase_id=None):
        self.start = start
        self.end = end
        self.mds = mds
        self.phase_id = phase_id
        what = f"phase '{phase_id}'" if phase_id else "span"
        super().__init__(f"No working days in {what} {start} - {end}; "
                         f"{mds:.4g} MD(s) could not be distributed")


class UnallocatableRemainder(AllocationError):
    """An override left budget that no unlocked later month can absorb.

    Raised after the edit has been applied, so ``allocations`` already holds
    the edited value.
    """

    def __init__(self, assignment_id, month, remainder, allocations=None):
        self.assignment_id = assignment_id
        self.month = month
        self.remainder = remainder
        self.allocations = allocations
        super().__init__(f"Assignment '{assignment_id}': edit of {month} leaves "
                         f"{remainder:+.4g} MD(s) with no unlocked later month to absorb it")


class UnknownHolidayCalendar(AllocationError, KeyError):
    """No holiday table is loaded for a country."""

    def __init__(self, country):
        self.country = country
        super().__init__(f"No holiday calendar for country '{country}'")

    def __str__(self):
        return self.args[0]


# ── Date Helpers ─────────────────────────────────────────────────────────────

def norm_date(d):
    """Normalise datetime / Timestamp / date to a plain date."""
    if isinstance(d, pd.Timestamp):
        return d.to_pydatetime().date()
    if isinstance(d, datetime):
        return d.date()
    if isinstance(d, date):
        return d
    raise TypeError(f"norm_date expected date, got {type(d).__name__}: {d!r}")


def parse_date(val, context=""):
    """Parse a date from a host value (date, datetime, Timestamp or string)."""
    ctx = f" ({context})" if context else ""
    if pd.isna(val):
        raise ValueError(f"Date is blank{ctx}")
    if isinstance(val, (date, pd.Timestamp)):
        return norm_date(val)
    if isinstance(val, str):
        val = val.strip()
        if not val:
            raise ValueError(f"Date is blank{ctx}")
        # ISO timestamps as written by the desktop host
        if "T" in val:
            val = val.split("T", 1)[0]
        for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y"):
            try:
                return datetime.strptime(val, fmt).date()
            except ValueError:
                pass
        raise ValueError(f"Cannot parse date{ctx}: {val!r}. Expected YYYY-MM-DD or DD/MM/YYYY")
    raise ValueError(f"Cannot parse date{ctx}: {val!r}")


def parse_month(month):
    """Split a 'YYYY-MM' string into (year, month)."""
    if not isinstance(month, str) or not _MONTH_RE.match(month):
        raise ValueError(f"Invalid month format. Expected YYYY-MM, got: {month!r}")
    year, num = int(month[:4]), int(month[5:])
    if not 1 <= num <= 12:
        raise ValueError(f"Invalid month: {month!r}. Month must be between 01 and 12.")
    return year, num


def month_key(d):
    return f"{d.year:04d}-{d.month:02d}"


def month_bounds(month):
    """First and last calendar day of a 'YYYY-MM' month."""
    year, num = parse_month(month)
    return date(year, num, 1), date(year, num, monthrange(year, num)[1])


def months_spanned(start, end):
    """Ordered 'YYYY-MM' keys touched by the inclusive range start..end."""
    start, end = norm_date(start), norm_date(end)
    if end < start:
        raise InvalidDateRange(start, end, "months_spanned")
    months = []
    year, num = start.year, start.month
    while (year, num) <= (end.year, end.month):
        months.append(f"{year:04d}-{num:02d}")
        if num == 12:
            year, num = year + 1, 1
        else:
            num += 1
    return months


def format_month(month):
    """'2026-03' -> 'March 2026'."""
    year, num = parse_month(month)
    return f"{MONTH_NAMES[num - 1]} {year}"


def round_half_up(value):
    """Round to the nearest whole MD, halves away from zero."""
    if value < 0:
        return -math.floor(-value + 0.5)
    return math.floor(value + 0.5)


# ── Data Model ───────────────────────────────────────────────────────────────

class HolidayCalendar:
    """Read-only table of national holidays keyed by (country, year).

    Accepts ``{country: {year: [dates]}}`` or ``{country: [dates]}``; dates may
    be ISO strings or date objects. Dates are regrouped by their own year.
    """

    def __init__(self, table=None):
        self._table = {}
        for country, values in (table or {}).items():
            dates = []
            if isinstance(values, dict):
                for year_values in values.values():
                    dates.extend(year_values)
            else:
                dates.extend(values)
            by_year = {}
            for raw in dates:
                d = parse_date(raw, context=f"holidays {country}")
                by_year.setdefault(d.year, set()).add(d)
            self._table[str(country).strip().upper()] = {
                year: frozenset(days) for year, days in by_year.items()
            }

    @classmethod
    def builtin(cls):
        """Calendar pre-loaded with the shipped IT/RO holiday tables."""
        return cls(BUILTIN_HOLIDAYS)

    def countries(self):
        return sorted(self._table)

    def lookup(self, country):
        """Return ``{year: frozenset(dates)}`` for a country."""
        key = (country or "").strip().upper()
        if key not in self._table:
            raise UnknownHolidayCalendar(key)
        return self._table[key]

    def holidays_for(self, country, year):
        return self.lookup(country).get(year, frozenset())

    def __contains__(self, country):
        return (country or "").strip().upper() in self._table

    def __len__(self):
        return sum(len(days) for years in self._table.values() for days in years.values())


@dataclass(frozen=True)
class Phase:
    """A stage of project work with an MD budget and per-role effort %."""

    id: str
    name: str
    man_days: float
    effort: dict = field(default_factory=dict)
    order: int = 0

    def effort_for(self, role):
        return float(self.effort.get(role, 0) or 0)

    def role_mds(self, role):
        """Role share of the phase budget, unrounded (rounding is per month)."""
        return self.man_days * self.effort_for(role) / 100


@dataclass
class Project:
    id: str
    name: str
    phases: list = field(default_factory=list)
    start_date: date = None
    country: str = None
    status: str = "active"


@dataclass
class TeamMember:
    id: str
    first_name: str = ""
    last_name: str = ""
    role: str = DEFAULT_ROLE
    country: str = DEFAULT_COUNTRY
    vacation_days: frozenset = frozenset()

    @property
    def display_name(self):
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.id


@dataclass
class PhaseScheduleEntry:
    """Resolved dates for one phase, for one member role."""

    phase_id: str
    phase_name: str
    start_date: date
    end_date: date
    total_mds: float
    role_mds: float
    months: list
    role: str = None


@dataclass
class MonthlyAllocation:
    """One (assignment, month) cell.

    ``locked`` cells were set by the user and are never overwritten by a
    redistribution; ``calculated_mds`` keeps the distributor's value.
    """

    assignment_id: str
    month: str
    planned_mds: float
    locked: bool = False
    calculated_mds: float = 0.0

    @property
    def is_modified(self):
        return self.locked or not math.isclose(self.planned_mds, self.calculated_mds, abs_tol=_EPSILON)


@dataclass
class Assignment:
    id: str
    member_id: str
    project_id: str
    phase_schedule: list = field(default_factory=list)
    total_mds: float = 0.0
    monthly_allocation: dict = field(default_factory=dict)
    # month -> [{"phase_id": ..., "allocated_mds": ...}] as first calculated
    phase_allocation: dict = field(default_factory=dict)
    country: str = None
    issues: list = field(default_factory=list)

    @property
    def months(self):
        return sorted(self.monthly_allocation)

    @property
    def planned_total(self):
        return sum(cell.planned_mds for cell in self.monthly_allocation.values())

    @property
    def start_date(self):
        spans = self.active_spans()
        return spans[0][0] if spans else None

    @property
    def end_date(self):
        spans = self.active_spans()
        return spans[-1][1] if spans else None

    def active_spans(self):
        """(start, end) of every phase in which this member's role has MDs."""
        return [(e.start_date, e.end_date) for e in self.phase_schedule if e.role_mds > 0]

    def is_balanced(self, tolerance=ROUNDING_TOLERANCE):
        return abs(self.planned_total - self.total_mds) <= tolerance


@dataclass
class CapacityLedgerEntry:
    member_id: str
    month: str
    allocated: float
    capacity: float

    @property
    def overflow_amount(self):
        return max(0.0, self.allocated - self.capacity)

    @property
    def available(self):
        return max(0.0, self.capacity - self.allocated)

    @property
    def has_overflow(self):
        return self.overflow_amount > _EPSILON


# ── Working Days Calendar ────────────────────────────────────────────────────

class WorkingDaysCalendar:
    """Weekend rule plus holiday table: the single 'is this a working day' source."""

    def __init__(self, holidays=None, default_country=DEFAULT_COUNTRY):
        self.holidays = holidays if holidays is not None else HolidayCalendar()
        self.default_country = default_country
        # Countries looked up without holiday data (weekday-only fallback)
        self.unknown_countries = set()
        self._month_cache = {}

    def _country(self, country):
        return (country or self.default_country or "").strip().upper()

    def _holidays(self, country, year):
        try:
            years = self.holidays.lookup(country)
        except UnknownHolidayCalendar:
            self.unknown_countries.add(country)
            return frozenset()
        return years.get(year, frozenset())

    def is_working_day(self, d, country=None):
        """False for Saturday/Sunday or a registered holiday, True otherwise."""
        d = norm_date(d)
        if d.weekday() >= 5:
            return False
        return d not in self._holidays(self._country(country), d.year)

    def working_days_between(self, start, end, country=None):
        """Count working days between start and end (inclusive); 0 if end < start."""
        d, end_d = norm_date(start), norm_date(end)
        count = 0
        while d <= end_d:
            if self.is_working_day(d, country):
                count += 1
            d += timedelta(days=1)
        return count

    def add_working_days(self, start, n, country=None):
        """Date on which the n-th working day from start (counting start) falls."""
        current = norm_date(start)
        if n <= 0:
            return current
        remaining = n
        while True:
            if self.is_working_day(current, country):
                remaining -= 1
                if remaining <= 0:
                    return current
            current += timedelta(days=1)

    def next_working_day(self, d, country=None):
        """Smallest working day strictly after d."""
        current = norm_date(d) + timedelta(days=1)
        while not self.is_working_day(current, country):
            current += timedelta(days=1)
        return current

    def first_working_day(self, d, country=None):
        """d itself when it is a working day, otherwise the next one."""
        d = norm_date(d)
        return d if self.is_working_day(d, country) else self.next_working_day(d, country)

    def working_days_in_month(self, month, country=None):
        """Real working days in a 'YYYY-MM' month (weekdays minus holidays)."""
        key = (month, self._country(country))
        if key not in self._month_cache:
            first, last = month_bounds(month)
            self._month_cache[key] = self.working_days_between(first, last, country)
        return self._month_cache[key]

    def working_days_in_month_between(self, month, start, end, country=None):
        """Working days of a month that fall inside start..end."""
        first, last = month_bounds(month)
        lo = max(first, norm_date(start))
        hi = min(last, norm_date(end))
        if hi < lo:
            return 0
        return self.working_days_between(lo, hi, country)


# ── Phase Timeline ───────────────────────────────────────────────────────────

class PhaseTimelineBuilder:
    """Lays phases end to end on working days from the project start date."""

    def __init__(self, calendar):
        self.calendar = calendar

    def build_timeline(self, phases, project_start_date, country=None, role=None):
        """Sequential, non-overlapping PhaseScheduleEntry list.

        Phases are taken by ascending ``order`` (ties keep list position).
        Zero-MD phases take no slot. With a role, ``role_mds`` is that role's
        share; a 0% role still occupies its slot but carries no MDs.
        """
        ordered = [p for _, p in sorted(enumerate(phases), key=lambda ip: (ip[1].order, ip[0]))]
        cursor = self.calendar.first_working_day(parse_date(project_start_date, "project start"),
                                                 country)
        timeline = []
        for phase in ordered:
            if phase.man_days <= 0:
                continue
            end_date = self.calendar.add_working_days(cursor, phase.man_days, country)
            timeline.append(PhaseScheduleEntry(
                phase_id=phase.id,
                phase_name=phase.name,
                start_date=cursor,
                end_date=end_date,
                total_mds=phase.man_days,
                role_mds=phase.role_mds(role) if role else phase.man_days,
                months=months_spanned(cursor, end_date),
                role=role,
            ))
            cursor = self.calendar.next_working_day(end_date, country)
        return timeline


# ── Monthly Distribution ─────────────────────────────────────────────────────

def apportion(amount, weights, total_weight=None):
    """Split amount over months proportionally to weights.

    Every month but the last with a positive weight gets a half-up rounded
    share, clamped to what is still unallocated; the last absorbs the rest so
    the shares always sum to amount. Zero-weight months are omitted.
    """
    months = [m for m in sorted(weights) if weights[m] > 0]
    if not months:
        return {}
    if total_weight is None:
        total_weight = sum(weights[m] for m in months)
    if total_weight <= 0:
        return {}

    shares = {}
    remaining = amount
    for month in months[:-1]:
        share = round_half_up(amount * weights[month] / total_weight)
        share = max(0.0, min(float(share), remaining))
        shares[month] = share
        remaining -= share
    shares[months[-1]] = remaining
    return shares


class MonthlyDistributor:
    """Spreads an MD total over the months of a span by working days per month."""

    def __init__(self, calendar):
        self.calendar = calendar

    def month_weights(self, start_date, end_date, months, country=None):
        """Working days each month contributes to start..end."""
        return {
            month: self.calendar.working_days_in_month_between(month, start_date, end_date, country)
            for month in months
        }

    def distribute(self, role_mds, start_date, end_date, months, country=None):
        """{month: planned MDs} summing exactly to role_mds.

        Returns {} when the span has no working days; the caller decides
        whether that is a data problem or a harmless zero-MD phase.
        """
        start, end = norm_date(start_date), norm_date(end_date)
        if end < start:
            raise InvalidDateRange(start, end, "distribute")
        total_working_days = self.calendar.working_days_between(start, end, country)
        if total_working_days == 0:
            return {}
        weights = self.month_weights(start, end, months, country)
        return apportion(role_mds, weights, total_weight=total_working_days)

    def span_weights(self, months, spans, country=None):
        """Working days per month restricted to a set of (start, end) spans."""
        weights = {}
        for month in months:
            weights[month] = sum(
                self.calendar.working_days_in_month_between(month, start, end, country)
                for start, end in spans
            )
        return weights


# ── Capacity Ledger ──────────────────────────────────────────────────────────

class CapacityLedger:
    """Per member, per month register of every assignment's planned MDs.

    Overflow is recorded, never enforced. Callers must record assignments for
    the same member in a stable order; available capacity depends on it.
    """

    def __init__(self, calendar, members=None):
        self.calendar = calendar
        self.members = {}
        self._cells = {}    # (member_id, month) -> {assignment_id: mds}
        self._entries = {}  # (member_id, month) -> CapacityLedgerEntry
        for member in members or []:
            self.register_member(member)

    def register_member(self, member):
        self.members[member.id] = member
        for member_id, month in list(self._entries):
            if member_id == member.id:
                self._refresh(member_id, month)

    def capacity(self, member_id, month):
        """Real working days in the month, less the member's vacation on working days."""
        member = self.members.get(member_id)
        country = member.country if member else None
        working_days = self.calendar.working_days_in_month(month, country)
        if member and member.vacation_days:
            first, last = month_bounds(month)
            vacation = sum(1 for d in member.vacation_days
                           if first <= d <= last and self.calendar.is_working_day(d, country))
            working_days -= vacation
        return max(0, working_days)

    def allocated(self, member_id, month, exclude_assignment=None):
        cell = self._cells.get((member_id, month), {})
        return sum(mds for aid, mds in cell.items() if aid != exclude_assignment)

    def available_capacity(self, member_id, month, exclude_assignment=None):
        """Capacity minus what other assignments already hold, never negative."""
        free = self.capacity(member_id, month) - self.allocated(member_id, month, exclude_assignment)
        return max(0.0, free)

    def record(self, member_id, month, assignment_id, planned_mds):
        """Upsert one assignment's contribution to a member-month and refresh overflow."""
        parse_month(month)
        self._cells.setdefault((member_id, month), {})[assignment_id] = float(planned_mds)
        return self._refresh(member_id, month)

    def record_assignment(self, assignment):
        for month, cell in sorted(assignment.monthly_allocation.items()):
            self.record(assignment.member_id, month, assignment.id, cell.planned_mds)

    def seed(self, assignments):
        """Load existing assignments (e.g. from other projects), in the given order."""
        for assignment in assignments:
            self.record_assignment(assignment)

    def remove_assignment(self, assignment_id):
        for key in list(self._cells):
            cell = self._cells[key]
            if assignment_id in cell:
                del cell[assignment_id]
                if cell:
                    self._refresh(*key)
                else:
                    del self._cells[key]
                    self._entries.pop(key, None)

    def _refresh(self, member_id, month):
        entry = CapacityLedgerEntry(
            member_id=member_id,
            month=month,
            allocated=self.allocated(member_id, month),
            capacity=self.capacity(member_id, month),
        )
        self._entries[(member_id, month)] = entry
        return entry

    def entry(self, member_id, month):
        return self._entries.get((member_id, month)) or CapacityLedgerEntry(
            member_id, month, 0.0, self.capacity(member_id, month))

    def entries(self, member_id=None):
        return [self._entries[k] for k in sorted(self._entries)
                if member_id is None or k[0] == member_id]

    def member_ids(self):
        return sorted({k[0] for k in self._entries} | set(self.members))

    def contributions(self, member_id, month):
        """{assignment_id: mds} recorded for a member-month."""
        return dict(self._cells.get((member_id, month), {}))

    def overflow_report(self, member_id):
        """Entries for every month in which the member is over capacity."""
        return [e for e in self.entries(member_id) if e.has_overflow]

    def utilization(self, member_id, month):
        """Allocated MDs as a rounded percentage of capacity."""
        entry = self.entry(member_id, month)
        if entry.capacity == 0:
            return math.inf if entry.allocated > 0 else 0
        return round_half_up(entry.allocated / entry.capacity * 100)

    def overflow_alerts(self, project_names=None):
        """Alert records for the host's notification banner."""
        alerts = []
        for entry in self.entries():
            if not entry.has_overflow:
                continue
            member = self.members.get(entry.member_id)
            name = member.display_name if member else entry.member_id
            contributors = sorted(self.contributions(entry.member_id, entry.month))
            if project_names:
                contributors = [project_names.get(aid, aid) for aid in contributors]
            alerts.append({
                "type": "overflow",
                "severity": "error",
                "memberId": entry.member_id,
                "memberName": name,
                "month": entry.month,
                "overflowAmount": entry.overflow_amount,
                "assignments": contributors,
                "message": (f"{name}: {format_month(entry.month)} overallocated by "
                            f"{entry.overflow_amount:.4g} MDs"),
            })
        return alerts


# ── Override Redistribution ──────────────────────────────────────────────────

class OverrideRedistributor:
    """Pins a user-edited month and reflows the budget over later unlocked months."""

    def __init__(self, calendar, ledger, distributor=None):
        self.calendar = calendar
        self.ledger = ledger
        self.distributor = distributor or MonthlyDistributor(calendar)

    @staticmethod
    def _cell(assignment, month):
        parse_month(month)
        cell = assignment.monthly_allocation.get(month)
        if cell is None:
            raise AllocationError(f"Assignment '{assignment.id}' has no allocation for {month}. "
                                  f"Months: {', '.join(assignment.months) or 'none'}")
        return cell

    def apply_override(self, assignment, edited_month, new_value):
        """Lock edited_month at new_value and redistribute the rest after it.

        Months before the edited one and every locked month keep their
        values. Raises UnallocatableRemainder (after applying the edit) when
        no later unlocked month can take the remaining budget.
        """
        cell = self._cell(assignment, edited_month)
        new_value = float(new_value)
        if new_value < 0:
            raise ValueError(f"Planned MDs cannot be negative: {new_value}")
        cell.planned_mds = new_value
        cell.locked = True
        tail = [m for m in assignment.months
                if m > edited_month and not assignment.monthly_allocation[m].locked]
        return self._reflow(assignment, edited_month, tail)

    def reset_month(self, assignment, month):
        """Unlock a month and recompute it with the later unlocked months."""
        cell = self._cell(assignment, month)
        cell.locked = False
        tail = [m for m in assignment.months
                if m >= month and not assignment.monthly_allocation[m].locked]
        return self._reflow(assignment, month, tail)

    def _reflow(self, assignment, month, tail):
        cells = assignment.monthly_allocation
        fixed = sum(c.planned_mds for m, c in cells.items() if m not in tail)
        remaining = assignment.total_mds - fixed
        error = None

        if not tail:
            if not math.isclose(remaining, 0.0, abs_tol=_EPSILON):
                error = UnallocatableRemainder(assignment.id, month, remaining, cells)
        elif remaining < -_EPSILON:
            # Locked months already exceed the budget
            for m in tail:
                cells[m].planned_mds = 0.0
            error = UnallocatableRemainder(assignment.id, month, remaining, cells)
        else:
            weights = self.distributor.span_weights(tail, assignment.active_spans(), assignment.country)
            if not any(w > 0 for w in weights.values()):
                # No phase dates to clip to, e.g. loaded without a phase schedule
                weights = {m: self.calendar.working_days_in_month(m, assignment.country) for m in tail}
            shares = apportion(max(0.0, remaining), weights)
            if shares:
                for m in tail:
                    cells[m].planned_mds = shares.get(m, 0.0)
            elif not math.isclose(remaining, 0.0, abs_tol=_EPSILON):
                error = UnallocatableRemainder(assignment.id, month, remaining, cells)

        for m in sorted({month, *tail}):
            self.ledger.record(assignment.member_id, m, assignment.id, cells[m].planned_mds)
        if error is not None:
            raise error
        return cells


# ── Engine ───────────────────────────────────────────────────────────────────

class AllocationEngine:
    """Wires the calendar, timeline, distributor, ledger and redistributor together."""

    def __init__(self, calendar=None, ledger=None, strict=False):
        self.calendar = calendar or WorkingDaysCalendar(HolidayCalendar.builtin())
        self.timeline = PhaseTimelineBuilder(self.calendar)
        self.distributor = MonthlyDistributor(self.calendar)
        self.ledger = ledger or CapacityLedger(self.calendar)
        self.redistributor = OverrideRedistributor(self.calendar, self.ledger, self.distributor)
        self.strict = strict
        self.assignments = {}

    def build_assignment(self, member, project, assignment_id=None):
        """Compute a member's schedule and monthly allocation for a project.

        Pure with respect to the ledger; see ``assign`` to record it.
        """
        if project.start_date is None:
            raise ValueError(f"Project '{project.id}' has no start date")
        assignment_id = assignment_id or f"asg-{member.id}-{project.id}"
        country = project.country or member.country
        schedule = self.timeline.build_timeline(project.phases, project.start_date,
                                                country, role=member.role)
        assignment = Assignment(
            id=assignment_id,
            member_id=member.id,
            project_id=project.id,
            phase_schedule=schedule,
            total_mds=sum(e.role_mds for e in schedule),
            country=country,
        )

        totals = {}
        for entry in schedule:
            if entry.role_mds <= 0:
                continue
            shares = self.distributor.distribute(entry.role_mds, entry.start_date,
                                                 entry.end_date, entry.months, country)
            if not shares:
                issue = EmptyWorkingDaySpan(entry.start_date, entry.end_date,
                                            entry.role_mds, entry.phase_id)
                if self.strict:
                    raise issue
                assignment.issues.append(issue)
                continue
            for month, mds in shares.items():
                totals[month] = totals.get(month, 0.0) + mds
                assignment.phase_allocation.setdefault(month, []).append(
                    {"phase_id": entry.phase_id, "allocated_mds": mds})

        for month in sorted(totals):
            assignment.monthly_allocation[month] = MonthlyAllocation(
                assignment_id=assignment_id,
                month=month,
                planned_mds=totals[month],
                locked=False,
                calculated_mds=totals[month],
            )
        return assignment

    def assign(self, member, project, assignment_id=None):
        """Build an assignment and record it in the ledger."""
        assignment = self.build_assignment(member, project, assignment_id)
        if assignment.id in self.assignments:
            self.ledger.remove_assignment(assignment.id)
        self.ledger.register_member(member)
        self.ledger.record_assignment(assignment)
        self.assignments[assignment.id] = assignment
        return assignment

    def assign_all(self, member, projects):
        """Assign a member to projects in order; projects without a start date are skipped."""
        return [self.assign(member, p) for p in projects if p.start_date is not None]

    def adopt(self, assignment, member=None):
        """Track an assignment loaded from the host and record it in the ledger."""
        if member is not None:
            self.ledger.register_member(member)
        if assignment.id in self.assignments:
            self.ledger.remove_assignment(assignment.id)
        self.ledger.record_assignment(assignment)
        self.assignments[assignment.id] = assignment
        return assignment

    def unassign(self, assignment_id):
        assignment = self.assignments.pop(assignment_id, None)
        self.ledger.remove_assignment(assignment_id)
        return assignment

    def _resolve(self, assignment):
        if isinstance(assignment, Assignment):
            return assignment
        try:
            return self.assignments[assignment]
        except KeyError:
            raise AllocationError(f"Unknown assignment '{assignment}'") from None

    def apply_override(self, assignment, month, new_value):
        return self.redistributor.apply_override(self._resolve(assignment), month, new_value)

    def reset_month(self, assignment, month):
        return self.redistributor.reset_month(self._resolve(assignment), month)

    def overflow_report(self, member_id):
        return self.ledger.overflow_report(member_id)

    def member_assignments(self, member_id):
        return [a for a in self.assignments.values() if a.member_id == member_id]
