"""
Host boundary for the capacity allocation engine.

Converts between the engine's objects and the persisted JSON shape the
desktop host reads and writes (dicts only; the host owns file access), loads
national holiday tables from an Excel workbook, exposes the ledger as pandas
frames, validates project/member input and prints a capacity summary.
"""

import math
from datetime import date

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment, Border, Side
from openpyxl.worksheet.datavalidation import DataValidation

from capacity_allocator import (
    BUILTIN_HOLIDAYS,
    DEFAULT_COUNTRY,
    DEFAULT_ROLE,
    VALID_ROLES,
    Assignment,
    HolidayCalendar,
    MonthlyAllocation,
    Phase,
    PhaseScheduleEntry,
    Project,
    TeamMember,
    format_month,
    month_key,
    months_spanned,
    parse_date,
    parse_month,
)


HOLIDAY_SHEET = "Public Holidays"
HOLIDAY_COLUMNS = ["Country", "Date", "Name"]


# ── Helpers ──────────────────────────────────────────────────────────────────

def clean_str(val):
    """Return stripped string or empty string for NaN/None."""
    if val is None or val is pd.NaT or (isinstance(val, float) and math.isnan(val)):
        return ""
    return str(val).strip()


def normalize_columns(df, expected):
    """Rename df columns to the expected spelling, ignoring case and whitespace.
    Returns the set of expected columns still missing."""
    lookup = {str(c).strip().lower(): c for c in df.columns}
    renames = {}
    for name in expected:
        original = lookup.get(name.lower())
        if original is not None and original != name:
            renames[original] = name
    if renames:
        df.rename(columns=renames, inplace=True)
    df.columns = [str(c).strip() for c in df.columns]
    return set(expected) - set(df.columns)


def _iso(d):
    return d.isoformat() if d else None


def _number(val, default=0.0):
    if val is None or val == "":
        return default
    return float(val)


# ── Holiday Workbook ─────────────────────────────────────────────────────────

def load_holiday_calendar(filepath, sheet_name=HOLIDAY_SHEET, default_country=DEFAULT_COUNTRY):
    """Load national holidays from an Excel sheet into a HolidayCalendar.

    Columns: Country (optional, defaults to default_country), Date, Name.
    A missing sheet yields an empty calendar (weekday-only scheduling).
    """
    try:
        df = pd.read_excel(filepath, sheet_name=sheet_name)
    except (ValueError, FileNotFoundError) as e:
        print(f"  WARNING: Could not read {sheet_name} sheet: {e}")
        return HolidayCalendar()
    if df.empty:
        return HolidayCalendar()
    missing = normalize_columns(df, HOLIDAY_COLUMNS)
    if "Date" in missing:
        print(f"  WARNING: {sheet_name} sheet has no 'Date' column, skipping.")
        return HolidayCalendar()

    table = {}
    for idx, row in df.iterrows():
        row_num = idx + 2
        raw = row["Date"]
        if clean_str(raw) == "":
            continue
        country = clean_str(row.get("Country", "")).upper() or default_country
        try:
            d = parse_date(raw, context=f"{sheet_name} row {row_num}, 'Date'")
        except ValueError as e:
            print(f"  WARNING: Could not parse holiday row {row_num}: {e}")
            continue
        table.setdefault(country, set()).add(d)
    return HolidayCalendar(table)


def generate_holiday_template(output_path, holidays=None):
    """Write a holiday workbook pre-filled with the built-in IT/RO tables."""
    holidays = BUILTIN_HOLIDAYS if holidays is None else holidays
    wb = Workbook()

    header_font = Font(bold=True, color="FFFFFF", size=11)
    header_fill = PatternFill(start_color="2E3B4E", end_color="2E3B4E", fill_type="solid")
    thin_border = Border(
        left=Side(style="thin"), right=Side(style="thin"),
        top=Side(style="thin"), bottom=Side(style="thin"),
    )

    ws = wb.active
    ws.title = HOLIDAY_SHEET
    ws.append(HOLIDAY_COLUMNS)
    for country in sorted(holidays):
        for year in sorted(holidays[country]):
            for iso in sorted(holidays[country][year]):
                ws.append([country, iso, ""])

    for cell in ws[1]:
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = Alignment(horizontal="center", vertical="center")
        cell.border = thin_border
    for row in ws.iter_rows(min_row=2, max_row=ws.max_row):
        for cell in row:
            cell.border = thin_border
        row[1].alignment = Alignment(horizontal="center", vertical="center")
    ws.column_dimensions["A"].width = 10
    ws.column_dimensions["B"].width = 14
    ws.column_dimensions["C"].width = 30
    ws.freeze_panes = "A2"

    countries = ",".join(sorted(holidays)) or DEFAULT_COUNTRY
    dv_country = DataValidation(type="list", formula1=f'"{countries}"', allow_blank=True)
    dv_country.error = f"Please select one of: {countries}"
    dv_country.errorTitle = "Invalid Country"
    ws.add_data_validation(dv_country)
    dv_country.add(f"A2:A{max(ws.max_row, 2) + 100}")

    wb.save(output_path)
    print(f"Holiday template created: {output_path}")
    print(f"  - Sheet '{HOLIDAY_SHEET}': {ws.max_row - 1} holiday(s) across {len(holidays)} country(ies)")
    return output_path


# ── JSON Shape ───────────────────────────────────────────────────────────────

def phase_from_dict(data):
    return Phase(
        id=str(data["id"]),
        name=clean_str(data.get("name")) or str(data["id"]),
        man_days=_number(data.get("manDays")),
        effort={str(k): _number(v) for k, v in (data.get("effort") or {}).items()},
        order=int(data.get("order") or 0),
    )


def phase_to_dict(phase):
    return {"id": phase.id, "name": phase.name, "manDays": phase.man_days,
            "effort": dict(phase.effort), "order": phase.order}


def project_from_dict(data):
    start = data.get("startDate")
    return Project(
        id=str(data["id"]),
        name=clean_str(data.get("name")) or str(data["id"]),
        phases=[phase_from_dict(p) for p in data.get("phases") or []],
        start_date=parse_date(start, context=f"project {data['id']}") if start else None,
        country=clean_str(data.get("country")).upper() or None,
        status=clean_str(data.get("status")) or "active",
    )


def project_to_dict(project):
    return {
        "id": project.id,
        "name": project.name,
        "startDate": _iso(project.start_date),
        "country": project.country,
        "status": project.status,
        "phases": [phase_to_dict(p) for p in project.phases],
    }


def member_from_dict(data):
    """Accepts vacationDays as a flat list or keyed by year, like the host stores it."""
    raw_vacation = data.get("vacationDays") or []
    if isinstance(raw_vacation, dict):
        raw_vacation = [d for days in raw_vacation.values() for d in days]
    return TeamMember(
        id=str(data["id"]),
        first_name=clean_str(data.get("firstName")),
        last_name=clean_str(data.get("lastName")),
        role=clean_str(data.get("role")) or DEFAULT_ROLE,
        country=clean_str(data.get("country")).upper() or DEFAULT_COUNTRY,
        vacation_days=frozenset(parse_date(d, context=f"vacation of {data['id']}")
                                for d in raw_vacation),
    )


def member_to_dict(member):
    by_year = {}
    for d in sorted(member.vacation_days):
        by_year.setdefault(str(d.year), []).append(d.isoformat())
    return {
        "id": member.id,
        "firstName": member.first_name,
        "lastName": member.last_name,
        "role": member.role,
        "country": member.country,
        "vacationDays": by_year,
    }


def assignment_to_dict(assignment):
    """Serialise to the manualAssignments shape, plus monthlyAllocation lock state."""
    return {
        "id": assignment.id,
        "teamMemberId": assignment.member_id,
        "projectId": assignment.project_id,
        "country": assignment.country,
        "totalMDs": assignment.total_mds,
        "phaseSchedule": [
            {
                "phaseId": e.phase_id,
                "phaseName": e.phase_name,
                "startDate": _iso(e.start_date),
                "endDate": _iso(e.end_date),
                "estimatedMDs": e.role_mds,
                "totalMDs": e.total_mds,
            }
            for e in assignment.phase_schedule
        ],
        "calculatedAllocation": {
            month: [{"phaseId": p["phase_id"], "allocatedMDs": p["allocated_mds"]} for p in parts]
            for month, parts in sorted(assignment.phase_allocation.items())
        },
        "monthlyAllocation": {
            month: {"plannedMDs": cell.planned_mds,
                    "calculatedMDs": cell.calculated_mds,
                    "locked": cell.locked}
            for month, cell in sorted(assignment.monthly_allocation.items())
        },
    }


def assignment_from_dict(data):
    """Rebuild an Assignment from the persisted shape.

    Without a monthlyAllocation block the cells are summed from
    calculatedAllocation and start unlocked.
    """
    assignment_id = str(data["id"])
    schedule = []
    for raw in data.get("phaseSchedule") or []:
        start = parse_date(raw["startDate"], context=f"{assignment_id} phase {raw.get('phaseId')}")
        end = parse_date(raw["endDate"], context=f"{assignment_id} phase {raw.get('phaseId')}")
        estimated = _number(raw.get("estimatedMDs"))
        schedule.append(PhaseScheduleEntry(
            phase_id=str(raw.get("phaseId")),
            phase_name=clean_str(raw.get("phaseName")),
            start_date=start,
            end_date=end,
            total_mds=_number(raw.get("totalMDs"), estimated),
            role_mds=estimated,
            months=months_spanned(start, end),
        ))

    phase_allocation = {}
    for month, parts in (data.get("calculatedAllocation") or {}).items():
        parse_month(month)
        phase_allocation[month] = [
            {"phase_id": str(p.get("phaseId")), "allocated_mds": _number(p.get("allocatedMDs"))}
            for p in parts
        ]

    cells = {}
    stored = data.get("monthlyAllocation")
    if stored:
        for month, raw in stored.items():
            parse_month(month)
            planned = _number(raw.get("plannedMDs"))
            cells[month] = MonthlyAllocation(
                assignment_id=assignment_id,
                month=month,
                planned_mds=planned,
                locked=bool(raw.get("locked", False)),
                calculated_mds=_number(raw.get("calculatedMDs"), planned),
            )
    else:
        for month, parts in phase_allocation.items():
            total = sum(p["allocated_mds"] for p in parts)
            cells[month] = MonthlyAllocation(assignment_id, month, total, False, total)

    total_mds = data.get("totalMDs")
    if total_mds is None:
        total_mds = sum(e.role_mds for e in schedule) if schedule else \
            sum(c.calculated_mds for c in cells.values())

    return Assignment(
        id=assignment_id,
        member_id=str(data["teamMemberId"]),
        project_id=str(data["projectId"]),
        phase_schedule=schedule,
        total_mds=float(total_mds),
        monthly_allocation=dict(sorted(cells.items())),
        phase_allocation=phase_allocation,
        country=clean_str(data.get("country")).upper() or None,
    )


def state_to_dict(members, projects, assignments):
    return {
        "teamMembers": [member_to_dict(m) for m in members],
        "projects": [project_to_dict(p) for p in projects],
        "manualAssignments": [assignment_to_dict(a) for a in assignments],
    }


def state_from_dict(data):
    """Returns (members, projects, assignments) from the persisted document."""
    members = [member_from_dict(m) for m in data.get("teamMembers") or []]
    projects = [project_from_dict(p) for p in data.get("projects") or []]
    assignments = [assignment_from_dict(a) for a in data.get("manualAssignments") or []]
    return members, projects, assignments


# ── Validation ───────────────────────────────────────────────────────────────

def validate_projects(projects):
    """Validate project phase definitions. Returns (errors, warnings) lists."""
    errors = []
    warnings = []
    if not projects:
        warnings.append("No projects defined.")
        return errors, warnings

    for project in projects:
        label = f"Project '{project.name}'"
        if project.start_date is None:
            warnings.append(f"{label}: no start date, it will not be scheduled.")
        if not project.phases:
            warnings.append(f"{label}: has no phases.")
            continue
        seen = set()
        for phase in project.phases:
            if phase.id in seen:
                errors.append(f"{label}: duplicate phase id '{phase.id}'.")
            seen.add(phase.id)
            if phase.man_days < 0:
                errors.append(f"{label}: phase '{phase.name}' has {phase.man_days:.4g} MDs "
                              f"(must not be negative).")
            for role, pct in phase.effort.items():
                if role not in VALID_ROLES:
                    warnings.append(f"{label}: phase '{phase.name}' has effort for unknown role "
                                    f"'{role}'. Valid: {', '.join(VALID_ROLES)}")
                if not 0 <= pct <= 100:
                    errors.append(f"{label}: phase '{phase.name}' effort {role}={pct:.4g}% "
                                  f"is outside 0-100.")
        if all(p.man_days == 0 for p in project.phases):
            warnings.append(f"{label}: every phase has 0 MDs, nothing to allocate.")
    return errors, warnings


def validate_members(members, holidays=None):
    """Validate team members against roles and the holiday table. Returns (errors, warnings)."""
    errors = []
    warnings = []
    ids = set()
    for member in members:
        if member.id in ids:
            errors.append(f"Team member id '{member.id}' is used more than once.")
        ids.add(member.id)
        if member.role not in VALID_ROLES:
            warnings.append(f"{member.display_name}: role '{member.role}' not recognised. "
                            f"Valid: {', '.join(VALID_ROLES)}")
        if holidays is not None and member.country not in holidays:
            warnings.append(f"{member.display_name}: no holiday calendar for "
                            f"'{member.country}', weekdays only.")
        weekend = sorted(d for d in member.vacation_days if d.weekday() >= 5)
        if weekend:
            warnings.append(f"{member.display_name}: {len(weekend)} vacation day(s) fall on a "
                            f"weekend (no effect).")
    return errors, warnings


# ── Frames ───────────────────────────────────────────────────────────────────

def ledger_frame(ledger, member_id=None):
    """One row per member-month: allocated, capacity, available, overflow."""
    rows = [{
        "member_id": e.member_id,
        "month": e.month,
        "allocated": e.allocated,
        "capacity": e.capacity,
        "available": e.available,
        "overflow": e.overflow_amount,
    } for e in ledger.entries(member_id)]
    return pd.DataFrame(rows, columns=["member_id", "month", "allocated",
                                       "capacity", "available", "overflow"])


def allocation_frame(assignments):
    """Allocation table: one row per assignment, one column per month (planned MDs)."""
    rows = []
    for a in assignments:
        for month, cell in a.monthly_allocation.items():
            rows.append({
                "assignment_id": a.id,
                "member_id": a.member_id,
                "project_id": a.project_id,
                "month": month,
                "planned": cell.planned_mds,
            })
    if not rows:
        return pd.DataFrame(columns=["assignment_id", "member_id", "project_id"])
    df = pd.DataFrame(rows)
    table = df.pivot_table(index=["assignment_id", "member_id", "project_id"],
                           columns="month", values="planned", aggfunc="sum", fill_value=0.0)
    table.columns.name = None
    return table.reset_index()


# ── Summary ──────────────────────────────────────────────────────────────────

def print_capacity_summary(engine, members=None, today=None):
    """Print per-member utilisation and overflow months to console."""
    ledger = engine.ledger
    members = members or [ledger.members[m] for m in ledger.member_ids() if m in ledger.members]
    today = today or date.today()
    current = month_key(today)
    frame = ledger_frame(ledger)

    print()
    print("=" * 60)
    print("  CAPACITY SUMMARY")
    print("=" * 60)
    print(f"  Members:       {len(members)}")
    print(f"  Assignments:   {len(engine.assignments)}")
    if not frame.empty:
        print(f"  Months:        {frame['month'].min()} .. {frame['month'].max()}")
        total_alloc = frame["allocated"].sum()
        total_cap = frame["capacity"].sum()
        overall = (total_alloc / total_cap * 100) if total_cap > 0 else 0
        print(f"  Utilisation:   {overall:.0f}% overall")

    for member in members:
        rows = frame[frame["member_id"] == member.id]
        allocated = rows["allocated"].sum() if not rows.empty else 0.0
        capacity = rows["capacity"].sum() if not rows.empty else 0.0
        util = ledger.utilization(member.id, current)
        util_str = "n/a" if util == math.inf else f"{util}%"
        print(f"    {member.display_name} ({member.role}): {allocated:.4g} / {capacity:.0f} MDs, "
              f"this month {util_str}")

    alerts = ledger.overflow_alerts()
    print(f"  Over-capacity: {len(alerts)} member-month(s)")
    for alert in alerts[:10]:
        print(f"    WARNING: {alert['message']}")
    if len(alerts) > 10:
        print(f"    ... +{len(alerts) - 10} more")

    issues = [(a, issue) for a in engine.assignments.values() for issue in a.issues]
    unbalanced = [a for a in engine.assignments.values() if not a.is_balanced()]
    if issues or unbalanced:
        print()
        for a, issue in issues:
            print(f"  WARNING: {a.id}: {issue}")
        for a in unbalanced:
            print(f"  WARNING: {a.id}: planned {a.planned_total:.4g} MDs vs budget {a.total_mds:.4g}")

    unknown = sorted(engine.calendar.unknown_countries)
    if unknown:
        print()
        print(f"  NOTE: no holiday data for {', '.join(unknown)}; weekdays only.")

    locked = [(a.id, m) for a in engine.assignments.values()
              for m, c in a.monthly_allocation.items() if c.locked]
    if locked:
        print()
        print(f"  Manual overrides: {len(locked)}")
        for aid, month in locked[:5]:
            print(f"    {aid}: {format_month(month)}")

    print("=" * 60)
    print()
