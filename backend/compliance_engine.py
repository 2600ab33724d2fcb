"""
CumpliRos — Compliance lifecycle engine

Rules behind obligation tracking, kept free of database and HTTP imports:
- Traffic-light urgency from due date + organisation thresholds
- Dashboard aggregation (buckets, upcoming and overdue lists)
- Template expansion: initial due date and recurrence rule per periodicity
- Completion gating on evidence count and review approval
- Checklist progress
- Upload hygiene (MIME allow-list, extension match, size cap) and CSV escaping
"""

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dateutil.relativedelta import relativedelta


# ============================================================
# ENUMS
# ============================================================

class Role(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    ACCOUNTANT = "ACCOUNTANT"
    MANAGER = "MANAGER"


class Plan(str, Enum):
    BASIC = "BASIC"
    PROFESSIONAL = "PROFESSIONAL"
    STUDIO = "STUDIO"


class ObligationType(str, Enum):
    TAX = "TAX"
    PERMIT = "PERMIT"
    INSURANCE = "INSURANCE"
    INSPECTION = "INSPECTION"
    DECLARATION = "DECLARATION"
    RENEWAL = "RENEWAL"
    OTHER = "OTHER"


class ObligationStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    OVERDUE = "OVERDUE"
    NOT_APPLICABLE = "NOT_APPLICABLE"


class Periodicity(str, Enum):
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"
    BIMONTHLY = "BIMONTHLY"
    QUARTERLY = "QUARTERLY"
    SEMIANNUAL = "SEMIANNUAL"
    ANNUAL = "ANNUAL"
    BIENNIAL = "BIENNIAL"
    ONE_TIME = "ONE_TIME"


class TemplateSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class TaskStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class TrafficLight(str, Enum):
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


TERMINAL_STATUSES = (ObligationStatus.COMPLETED, ObligationStatus.NOT_APPLICABLE)
OPEN_STATUSES = (ObligationStatus.PENDING, ObligationStatus.IN_PROGRESS)
REVIEWER_ROLES = (Role.OWNER, Role.ACCOUNTANT, Role.MANAGER)

DEFAULT_THRESHOLD_YELLOW_DAYS = 15
DEFAULT_THRESHOLD_RED_DAYS = 7
UPCOMING_WINDOW_DAYS = 7


# ============================================================
# TRAFFIC LIGHT
# ============================================================

@dataclass(frozen=True)
class TrafficLightResult:
    traffic_light: TrafficLight
    days_until_due: int


def days_until(due_date: date, today: date) -> int:
    """Whole calendar days from today to the due date (negative when past)."""
    return (due_date - today).days


def calculate_traffic_light(
    due_date: date,
    status: ObligationStatus,
    threshold_yellow: int,
    threshold_red: int,
    today: date,
) -> TrafficLightResult:
    """Urgency signal for one obligation.

    Both sides are calendar dates, so every branch (Overdue included)
    counts whole days between midnights.
    """
    status = ObligationStatus(status)
    if status in TERMINAL_STATUSES:
        return TrafficLightResult(TrafficLight.GREEN, 0)

    days = days_until(due_date, today)

    if status == ObligationStatus.OVERDUE or days < 0:
        return TrafficLightResult(TrafficLight.RED, days)
    if days <= threshold_red:
        return TrafficLightResult(TrafficLight.RED, days)
    if days <= threshold_yellow:
        return TrafficLightResult(TrafficLight.YELLOW, days)
    return TrafficLightResult(TrafficLight.GREEN, days)


def validate_thresholds(threshold_yellow: int, threshold_red: int) -> Optional[str]:
    if threshold_red <= 0 or threshold_yellow <= 0:
        return "Los umbrales deben ser mayores a cero"
    if threshold_yellow <= threshold_red:
        return "El umbral amarillo debe ser mayor que el umbral rojo"
    return None


# ============================================================
# DASHBOARD
# ============================================================

@dataclass
class ObligationSnapshot:
    """Plain view of an obligation; `ref` carries the caller's own record."""
    id: str
    title: str
    status: ObligationStatus
    due_date: date
    ref: Any = None


@dataclass
class EnrichedObligation:
    snapshot: ObligationSnapshot
    traffic_light: TrafficLight
    days_until_due: int


@dataclass
class DashboardSummary:
    total: int = 0
    completed: int = 0
    overdue: int = 0
    red: int = 0
    yellow: int = 0
    green: int = 0
    upcoming_7_days: List[EnrichedObligation] = field(default_factory=list)
    overdue_list: List[EnrichedObligation] = field(default_factory=list)


def enrich(
    snapshot: ObligationSnapshot, threshold_yellow: int, threshold_red: int, today: date
) -> EnrichedObligation:
    result = calculate_traffic_light(
        snapshot.due_date, snapshot.status, threshold_yellow, threshold_red, today
    )
    return EnrichedObligation(snapshot, result.traffic_light, result.days_until_due)


def build_dashboard(
    snapshots: Sequence[ObligationSnapshot],
    threshold_yellow: int,
    threshold_red: int,
    today: date,
) -> DashboardSummary:
    enriched = [enrich(s, threshold_yellow, threshold_red, today) for s in snapshots]
    summary = DashboardSummary(total=len(enriched))

    for item in enriched:
        status = item.snapshot.status
        if status == ObligationStatus.COMPLETED:
            summary.completed += 1
            continue
        if status == ObligationStatus.OVERDUE:
            summary.overdue += 1
        if item.traffic_light == TrafficLight.RED:
            summary.red += 1
        elif item.traffic_light == TrafficLight.YELLOW:
            summary.yellow += 1
        else:
            summary.green += 1

    summary.upcoming_7_days = sorted(
        (
            e for e in enriched
            if e.snapshot.status not in TERMINAL_STATUSES
            and 0 <= e.days_until_due <= UPCOMING_WINDOW_DAYS
        ),
        key=lambda e: e.days_until_due,
    )
    summary.overdue_list = sorted(
        (
            e for e in enriched
            if e.snapshot.status == ObligationStatus.OVERDUE or e.days_until_due < 0
        ),
        key=lambda e: e.days_until_due,
    )
    return summary


# ============================================================
# TEMPLATE EXPANSION
# ============================================================

PERIODICITY_INTERVALS: Dict[Periodicity, relativedelta] = {
    Periodicity.WEEKLY: relativedelta(days=7),
    Periodicity.BIWEEKLY: relativedelta(days=14),
    Periodicity.MONTHLY: relativedelta(months=1),
    Periodicity.BIMONTHLY: relativedelta(months=2),
    Periodicity.QUARTERLY: relativedelta(months=3),
    Periodicity.SEMIANNUAL: relativedelta(months=6),
    Periodicity.ANNUAL: relativedelta(years=1),
    Periodicity.BIENNIAL: relativedelta(years=2),
    Periodicity.ONE_TIME: relativedelta(months=1),
}

RECURRENCE_RULES: Dict[Periodicity, Optional[str]] = {
    Periodicity.WEEKLY: "FREQ=WEEKLY;INTERVAL=1",
    Periodicity.BIWEEKLY: "FREQ=WEEKLY;INTERVAL=2",
    Periodicity.MONTHLY: "FREQ=MONTHLY;INTERVAL=1",
    Periodicity.BIMONTHLY: "FREQ=MONTHLY;INTERVAL=2",
    Periodicity.QUARTERLY: "FREQ=MONTHLY;INTERVAL=3",
    Periodicity.SEMIANNUAL: "FREQ=MONTHLY;INTERVAL=6",
    Periodicity.ANNUAL: "FREQ=YEARLY;INTERVAL=1",
    Periodicity.BIENNIAL: "FREQ=YEARLY;INTERVAL=2",
    Periodicity.ONE_TIME: None,
}

DEFAULT_CHECKLIST_DESCRIPTION = "Completar los items del checklist"


def initial_due_date(periodicity: Optional[str], now: datetime) -> datetime:
    """First due date for an obligation expanded from a template.

    Month arithmetic clamps to the last day of the target month
    (Jan 31 + 1 month = Feb 28/29).
    """
    try:
        interval = PERIODICITY_INTERVALS[Periodicity(periodicity)]
    except ValueError:
        interval = relativedelta(years=1)
    return now + interval


def recurrence_rule(periodicity: Optional[str]) -> Optional[str]:
    try:
        return RECURRENCE_RULES[Periodicity(periodicity)]
    except ValueError:
        return None


def checklist_task_title(template_title: str) -> str:
    return f"Checklist: {template_title}"


def select_new_templates(templates: Sequence[Any], existing_titles: set) -> List[Any]:
    """Drop templates whose title already exists for the target scope.

    Titles seen earlier in the same batch also count as existing.
    """
    seen = set(existing_titles)
    fresh = []
    for template in templates:
        if template.title in seen:
            continue
        seen.add(template.title)
        fresh.append(template)
    return fresh


# ============================================================
# COMPLETION GATE & PROGRESS
# ============================================================

@dataclass(frozen=True)
class GateResult:
    allowed: bool
    reason: Optional[str] = None


def check_completion(
    document_count: int,
    required_evidence_count: int,
    requires_review: bool,
    has_approved_review: bool,
) -> GateResult:
    if required_evidence_count > 0 and document_count < required_evidence_count:
        return GateResult(
            False,
            f"Se requieren al menos {required_evidence_count} evidencias para completar esta obligación",
        )
    if requires_review and not has_approved_review:
        return GateResult(False, "Esta obligación requiere aprobación antes de poder ser completada")
    return GateResult(True)


def task_progress(done: int, total: int) -> int:
    """Checklist completion percentage, half-up rounding, 0 when empty."""
    if total <= 0:
        return 0
    return int(math.floor(done * 100 / total + 0.5))


# ============================================================
# UPLOAD HYGIENE
# ============================================================

MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024

ALLOWED_MIME_TYPES: Dict[str, Tuple[str, ...]] = {
    "application/pdf": (".pdf",),
    "image/jpeg": (".jpg", ".jpeg"),
    "image/png": (".png",),
    "image/gif": (".gif",),
    "image/webp": (".webp",),
    "application/msword": (".doc",),
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": (".docx",),
    "application/vnd.ms-excel": (".xls",),
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": (".xlsx",),
}

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def normalize_mime(mime_type: Optional[str]) -> str:
    """Lower-case and strip parameters (`image/png; charset=x` -> `image/png`)."""
    if not mime_type:
        return ""
    return mime_type.split(";", 1)[0].strip().lower()


def is_allowed_mime(mime_type: Optional[str]) -> bool:
    return normalize_mime(mime_type) in ALLOWED_MIME_TYPES


def extension_matches(file_name: str, mime_type: Optional[str]) -> bool:
    extensions = ALLOWED_MIME_TYPES.get(normalize_mime(mime_type), ())
    return file_name.lower().endswith(extensions) if extensions else False


def sanitize_filename(file_name: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", file_name)[:100]


def document_key(organization_id: str, file_name: str, now: datetime) -> str:
    millis = int(now.timestamp() * 1000)
    return f"org/{organization_id}/docs/{millis}_{sanitize_filename(file_name)}"


def organization_prefix(organization_id: str) -> str:
    return f"org/{organization_id}/"


# ============================================================
# REPORTING HELPERS
# ============================================================

_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


def sanitize_csv_field(value: Any) -> str:
    """Quote a CSV field and neutralise spreadsheet formulas."""
    text = "" if value is None else str(value)
    text = text.replace('"', '""')
    if text.startswith(_FORMULA_PREFIXES):
        text = "'" + text
    return f'"{text}"'


def compliance_rate(completed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(completed * 100 / total, 1)


def week_start(day: date) -> date:
    """Monday of the ISO week containing `day`."""
    return day - timedelta(days=day.weekday())
