"""
Lead CRM Reminders — Lead & Follow-up Feed.

Lead assignments and follow-ups are owned by the CRM. The engine sees
a minimal projection of each and turns it into reminders and pushes:

- a new assignment becomes a reminder for the assigned employee, due
  at the assignment's due date, plus an immediate ``alert`` push;
- an open follow-up with a next date becomes a "next follow-up"
  reminder for the agent;
- closing a follow-up requires a written result.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from src.core.errors import ValidationError
from src.core.payloads import TYPE_ALERT, build_payload
from src.data.models import Reminder, ReminderKind, count_words


class AssignmentStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class CaseStatus(Enum):
    OPEN = "open"
    CLOSE = "close"
    NOT_INTERESTED = "not-interested"


@dataclass
class LeadAssignment:
    id: str
    enquiry_id: str
    employee_id: str
    due_at: datetime | None = None
    status: AssignmentStatus = AssignmentStatus.PENDING
    priority: Priority = Priority.MEDIUM
    notes: str = ""
    client_name: str = ""


@dataclass
class FollowUp:
    id: str
    lead_id: str
    assigned_agent: str
    case_status: CaseStatus = CaseStatus.OPEN
    result: str = ""
    result_word_count: int = 0
    next_follow_up_at: datetime | None = None
    client_name: str = ""
    client_phone: str = ""


def reminder_from_assignment(
    assignment: LeadAssignment, created_by: str | None = None
) -> Reminder | None:
    """Reminder for the assigned employee at the assignment's due date.

    Returns None when the assignment has no due date or is already
    finished. The store rejects a due date in the past.
    """
    if assignment.due_at is None:
        return None
    if assignment.status in (AssignmentStatus.COMPLETED, AssignmentStatus.CANCELLED):
        return None

    who = assignment.client_name or f"enquiry {assignment.enquiry_id}"
    return Reminder(
        id=uuid4().hex,
        owner_id=assignment.employee_id,
        title=f"Lead due: {who}",
        note=assignment.notes,
        trigger_at=assignment.due_at,
        kind=ReminderKind.REMINDER,
        created_by=created_by,
        context={
            "assignmentId": assignment.id,
            "enquiryId": assignment.enquiry_id,
            "priority": assignment.priority.value,
        },
    )


def reminder_from_follow_up(
    follow_up: FollowUp, created_by: str | None = None
) -> Reminder | None:
    """"Next follow-up" reminder for the agent; None once the case is closed."""
    if follow_up.case_status is not CaseStatus.OPEN:
        return None
    if follow_up.next_follow_up_at is None:
        return None

    who = follow_up.client_name or f"lead {follow_up.lead_id}"
    note = f"Call {follow_up.client_phone}" if follow_up.client_phone else ""
    return Reminder(
        id=uuid4().hex,
        owner_id=follow_up.assigned_agent,
        title=f"Next follow-up: {who}",
        note=note,
        trigger_at=follow_up.next_follow_up_at,
        kind=ReminderKind.REMINDER,
        created_by=created_by,
        context={
            "followUpId": follow_up.id,
            "leadId": follow_up.lead_id,
            "clientName": follow_up.client_name,
            "clientPhone": follow_up.client_phone,
        },
    )


def close_follow_up(
    follow_up: FollowUp,
    result: str,
    case_status: CaseStatus = CaseStatus.CLOSE,
) -> FollowUp:
    if case_status is CaseStatus.OPEN:
        raise ValidationError("Closing a follow-up needs a closed case status")
    text = (result or "").strip()
    if not text:
        raise ValidationError("A result is required to close a follow-up")
    return replace(
        follow_up,
        case_status=case_status,
        result=text,
        result_word_count=count_words(text),
        next_follow_up_at=None,
    )


def assignment_payload(assignment: LeadAssignment) -> dict[str, Any]:
    """Immediate push telling an employee a lead was assigned to them."""
    who = assignment.client_name or f"enquiry {assignment.enquiry_id}"
    body = f"{who} ({assignment.priority.value} priority)"
    if assignment.due_at is not None:
        body += f", due {assignment.due_at.strftime('%d %b %H:%M')}"
    return build_payload(
        TYPE_ALERT,
        title="New lead assigned",
        body=body,
        data={
            "action": "open_assignment",
            "assignmentId": assignment.id,
            "enquiryId": assignment.enquiry_id,
            "priority": assignment.priority.value,
        },
    )
