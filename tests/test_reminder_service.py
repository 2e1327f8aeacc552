"""Tests for src.core.reminder_service — UI-agnostic service layer.

Runs the real engine pieces over in-memory stores with a scripted
push gateway. No HTTP dependency anywhere in this file.
"""

import pytest
from dataclasses import replace
from datetime import timedelta
from unittest.mock import MagicMock, patch

from src.core.announcer import BulkAnnouncer
from src.core.dispatcher import Dispatcher
from src.core.errors import StoreError
from src.core.leads import CaseStatus, FollowUp, LeadAssignment
from src.core.lifecycle import LifecycleManager
from src.core.reminder_service import ReminderService, ResponseKind
from src.data.models import RecipientRole, ReminderStatus


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway(make_gateway):
    return make_gateway()


@pytest.fixture
def service(memory_store, memory_directory, memory_notifications, gateway, clock):
    dispatcher = Dispatcher(memory_directory, gateway, store=memory_store, clock=clock)
    return ReminderService(
        memory_store,
        memory_directory,
        LifecycleManager(memory_store, clock=clock),
        dispatcher,
        BulkAnnouncer(memory_directory, gateway),
        memory_notifications,
        clock=clock,
        default_snooze_minutes=15,
    )


@pytest.fixture
def created(service, clock):
    response = service.create_reminder(
        owner_id="emp-1",
        title="Call Mr. Sharma",
        trigger_at=clock() + timedelta(hours=1),
        context={"propertyId": "p-1"},
    )
    return response.data["id"]


# ---------------------------------------------------------------------------
# create / list / stats
# ---------------------------------------------------------------------------


class TestCreate:
    def test_create_success(self, service, clock):
        response = service.create_reminder(
            owner_id="emp-1",
            title="Site visit",
            trigger_at=clock() + timedelta(hours=2),
            kind="alert",
            is_repeating=True,
            repeat_interval="weekly",
        )
        assert response.kind is ResponseKind.SUCCESS
        assert response.status_code == 201
        assert response.data["kind"] == "alert"
        assert response.data["repeatInterval"] == "weekly"
        assert response.data["status"] == "pending"

    def test_past_trigger_is_400(self, service, clock):
        response = service.create_reminder(
            owner_id="emp-1", title="Late", trigger_at=clock() - timedelta(minutes=1),
        )
        assert response.kind is ResponseKind.ERROR
        assert response.status_code == 400
        assert not response.ok

    def test_bad_enum_is_400(self, service, clock):
        response = service.create_reminder(
            owner_id="emp-1", title="x", trigger_at=clock() + timedelta(hours=1),
            repeat_interval="yearly",
        )
        assert response.status_code == 400
        assert "repeatInterval" in response.message


class TestQueries:
    def test_list_filters(self, service, created):
        assert service.list_reminders(owner_id="emp-1").data["count"] == 1
        assert service.list_reminders(owner_id="emp-2").data["count"] == 0
        assert service.list_reminders(status="pending").data["count"] == 1
        assert service.list_reminders(status="completed").data["count"] == 0

    def test_list_bad_status(self, service):
        assert service.list_reminders(status="archived").status_code == 400

    def test_list_due_includes_reminders_not_yet_fired(self, service, created, clock):
        clock.advance(hours=1, minutes=1)
        due = service.list_reminders(owner_id="emp-1", due_only=True)
        assert due.data["count"] == 1
        assert due.data["reminders"][0]["isDue"] is True
        assert due.data["reminders"][0]["isOverdue"] is False
        assert service.list_reminders(owner_id="emp-1", overdue_only=True).data["count"] == 0

    def test_list_due_skips_future_and_finished(self, service, created, clock):
        assert service.list_reminders(due_only=True).data["count"] == 0
        clock.advance(hours=2)
        service.dismiss(created)
        assert service.list_reminders(due_only=True).data["count"] == 0

    def test_list_overdue(self, service, created, memory_store, clock):
        clock.advance(hours=1)
        fired_at = clock()
        memory_store.update(
            created, lambda r: replace(r, trigger_count=1, last_triggered_at=fired_at),
        )
        response = service.list_reminders(owner_id="emp-1", overdue_only=True)
        assert response.data["count"] == 1
        assert response.data["reminders"][0]["isOverdue"] is True

    def test_stats(self, service, created, clock):
        service.create_reminder(
            owner_id="emp-1", title="Second", trigger_at=clock() + timedelta(hours=3),
        )
        service.dismiss(created)
        stats = service.get_stats("emp-1").data
        assert stats["pending"] == 1
        assert stats["dismissed"] == 1
        assert stats["completed"] == 0
        assert stats["total"] == 2
        assert stats["overdue"] == 0

    def test_attempts_for_missing_reminder(self, service):
        assert service.get_attempts("nope").status_code == 404


# ---------------------------------------------------------------------------
# lifecycle
# ---------------------------------------------------------------------------


class TestLifecycleOperations:
    @pytest.mark.asyncio
    async def test_complete(self, service, created):
        response = await service.complete(created, "Client confirmed visit on Saturday morning "
                                                   "with family, needs parking details")
        assert response.kind is ResponseKind.SUCCESS
        assert response.data["status"] == "completed"
        assert response.data["responseQuality"] == "yellow"

    @pytest.mark.asyncio
    async def test_complete_empty_is_400(self, service, created):
        response = await service.complete(created, "  ")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_complete_missing_is_404(self, service):
        response = await service.complete("nope", "done")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_complete_twice_is_409(self, service, created):
        await service.complete(created, "done")
        response = await service.complete(created, "done again")
        assert response.status_code == 409
        assert response.data == {"currentState": "completed", "attempted": "complete"}

    @pytest.mark.asyncio
    async def test_red_response_alerts_admins(self, service, created, memory_directory,
                                              gateway):
        memory_directory.register_address("admin-1", "tok-admin", RecipientRole.ADMIN)
        memory_directory.register_address("admin-2", "tok-admin-2", RecipientRole.ADMIN)
        memory_directory.register_address("emp-9", "tok-emp", RecipientRole.EMPLOYEE)

        await service.complete(created, "ok")

        sent_to = [address for address, _ in gateway.sent]
        assert sorted(sent_to) == ["tok-admin", "tok-admin-2"]
        payload = gateway.sent[0][1]
        assert payload["data"]["type"] == "alert"
        assert payload["data"]["reminderId"] == created
        assert payload["data"]["responseWordCount"] == "1"

    @pytest.mark.asyncio
    async def test_green_response_no_alert(self, service, created, memory_directory,
                                           gateway):
        memory_directory.register_address("admin-1", "tok-admin", RecipientRole.ADMIN)
        await service.complete(created, " ".join(["detail"] * 25))
        assert gateway.sent == []

    def test_snooze_default_minutes(self, service, created, clock):
        response = service.snooze(created)
        assert response.data["status"] == "snoozed"
        assert response.data["snoozeCount"] == 1
        assert response.data["nextTriggerAt"] == (clock() + timedelta(minutes=15)).isoformat()

    def test_snooze_bad_minutes(self, service, created):
        assert service.snooze(created, 0).status_code == 400

    def test_dismiss_idempotent(self, service, created):
        assert service.dismiss(created).data["status"] == "dismissed"
        assert service.dismiss(created).status_code == 200

    def test_busy_is_retriable_503(self, service, created, memory_store):
        memory_store.update(created, lambda r: replace(r, status=ReminderStatus.DISPATCHING))
        response = service.dismiss(created)
        assert response.status_code == 503
        assert response.data == {"retriable": True}

    def test_edit(self, service, created):
        response = service.edit(created, title="Call Mrs. Sharma", edited_by="admin-1")
        assert response.data["title"] == "Call Mrs. Sharma"
        assert response.data["editCount"] == 1

    def test_delete(self, service, created):
        assert service.delete(created).kind is ResponseKind.SUCCESS
        assert service.delete(created).status_code == 404


class TestStoreOutage:
    def test_store_error_is_503(self, memory_directory, clock):
        store = MagicMock()
        store.list_reminders.side_effect = StoreError("database is locked")
        service = ReminderService(
            store, memory_directory, MagicMock(), MagicMock(), MagicMock(), MagicMock(),
            clock=clock,
        )
        response = service.list_reminders()
        assert response.status_code == 503
        assert response.data["retriable"] is True


# ---------------------------------------------------------------------------
# leads, devices, notifications
# ---------------------------------------------------------------------------


class TestLeadFeed:
    @pytest.mark.asyncio
    async def test_assignment_pushes_and_schedules(self, service, memory_directory,
                                                   gateway, memory_store, clock):
        memory_directory.register_address("emp-3", "tok-3")
        assignment = LeadAssignment(
            id="as-1", enquiry_id="enq-1", employee_id="emp-3",
            due_at=clock() + timedelta(days=1),
        )
        response = await service.create_from_assignment(assignment, created_by="admin-1")

        assert response.status_code == 201
        assert response.data["notified"] is True
        assert gateway.sent[0][1]["data"]["type"] == "alert"
        reminder = memory_store.get(response.data["reminderId"])
        assert reminder.owner_id == "emp-3"
        assert reminder.context["assignmentId"] == "as-1"

    @pytest.mark.asyncio
    async def test_assignment_due_in_past_is_400(self, service, clock):
        assignment = LeadAssignment(
            id="as-1", enquiry_id="enq-1", employee_id="emp-3",
            due_at=clock() - timedelta(hours=1),
        )
        response = await service.create_from_assignment(assignment)
        assert response.status_code == 400

    def test_follow_up(self, service, clock):
        follow_up = FollowUp(
            id="fu-1", lead_id="lead-1", assigned_agent="emp-3",
            next_follow_up_at=clock() + timedelta(days=2),
        )
        assert service.create_from_follow_up(follow_up).status_code == 201

    def test_closed_follow_up_no_action(self, service, clock):
        follow_up = FollowUp(
            id="fu-1", lead_id="lead-1", assigned_agent="emp-3",
            case_status=CaseStatus.CLOSE, next_follow_up_at=clock() + timedelta(days=2),
        )
        assert service.create_from_follow_up(follow_up).kind is ResponseKind.NO_ACTION


class TestNotifications:
    @pytest.mark.asyncio
    async def test_announce(self, service, memory_directory):
        for i in range(3):
            memory_directory.register_address(f"emp-{i}", f"tok-{i}")
        response = await service.announce("Holiday", "Office closed Monday")
        assert response.data == {"sentCount": 3, "failedCount": 0, "totalRecipients": 3}

    @pytest.mark.asyncio
    async def test_announce_requires_text(self, service):
        assert (await service.announce("", "body")).status_code == 400

    @pytest.mark.asyncio
    async def test_announce_bad_role(self, service):
        assert (await service.announce("t", "b", roles=["owner"])).status_code == 400

    def test_register_device(self, service, memory_directory):
        response = service.register_device("emp-1", " tok-1 ", role="admin")
        assert response.kind is ResponseKind.SUCCESS
        assert memory_directory.resolve_addresses("emp-1") == ["tok-1"]
        assert memory_directory.list_recipients([RecipientRole.ADMIN])[0].recipient_id == "emp-1"

    def test_register_device_requires_token(self, service):
        assert service.register_device("emp-1", "").status_code == 400

    @pytest.mark.asyncio
    async def test_chat_notification(self, service, memory_directory, gateway):
        memory_directory.register_address("emp-2", "tok-2")
        response = await service.notify_chat_message(
            "emp-2", "chat-1", "emp-1", "Anita", "Client called back",
        )
        assert response.kind is ResponseKind.SUCCESS
        assert gateway.sent[0][1]["data"]["chatId"] == "chat-1"

    @pytest.mark.asyncio
    async def test_chat_to_self_skipped(self, service, gateway):
        response = await service.notify_chat_message("emp-1", "c", "emp-1", "A", "hi")
        assert response.kind is ResponseKind.NO_ACTION
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_chat_without_device(self, service):
        response = await service.notify_chat_message("emp-2", "c", "emp-1", "A", "hi")
        assert response.kind is ResponseKind.NO_ACTION


# ---------------------------------------------------------------------------
# admin inbox
# ---------------------------------------------------------------------------


def _reminder_for(service, clock, owner_id, title="Call back"):
    response = service.create_reminder(
        owner_id=owner_id, title=title, trigger_at=clock() + timedelta(hours=1),
    )
    return response.data["id"]


class TestAdminInbox:
    @pytest.mark.asyncio
    async def test_red_response_stored_without_admin_devices(self, service, created,
                                                             gateway):
        await service.complete(created, "ok")

        inbox = service.list_notifications(kind="bad_attendant")
        assert gateway.sent == []
        assert inbox.data["pagination"]["total"] == 1
        alert = inbox.data["notifications"][0]
        assert alert["type"] == "bad_attendant"
        assert alert["priority"] == "high"
        assert alert["read"] is False
        assert alert["metadata"]["reminderId"] == created
        assert alert["metadata"]["employeeId"] == "emp-1"
        assert alert["metadata"]["wordCount"] == 1
        assert alert["metadata"]["response"] == "ok"

    @pytest.mark.asyncio
    async def test_push_points_at_stored_alert(self, service, created, memory_directory,
                                               gateway):
        memory_directory.register_address("admin-1", "tok-admin", RecipientRole.ADMIN)
        await service.complete(created, "ok")

        stored = service.list_notifications(kind="bad_attendant").data["notifications"][0]
        assert gateway.sent[0][1]["data"]["notificationId"] == stored["id"]

    @pytest.mark.asyncio
    async def test_green_response_not_stored(self, service, created):
        await service.complete(created, " ".join(["detail"] * 25))
        assert service.list_notifications().data["pagination"]["total"] == 0

    @pytest.mark.asyncio
    async def test_unread_only_and_mark_read(self, service, clock):
        first = _reminder_for(service, clock, "emp-1")
        second = _reminder_for(service, clock, "emp-2")
        await service.complete(first, "done")
        clock.advance(minutes=1)
        await service.complete(second, "called")

        alerts = service.list_notifications(kind="bad_attendant").data["notifications"]
        assert [a["metadata"]["employeeId"] for a in alerts] == ["emp-2", "emp-1"]

        marked = service.mark_notification_read(alerts[1]["id"])
        assert marked.kind is ResponseKind.SUCCESS
        assert marked.data["read"] is True
        assert marked.data["readAt"] == clock().isoformat()

        unread = service.list_notifications(kind="bad_attendant", unread_only=True)
        assert unread.data["pagination"]["total"] == 1
        assert unread.data["notifications"][0]["id"] == alerts[0]["id"]

    def test_mark_missing_is_404(self, service):
        assert service.mark_notification_read("nope").status_code == 404

    @pytest.mark.asyncio
    async def test_pagination(self, service, clock):
        for i in range(3):
            await service.complete(_reminder_for(service, clock, f"emp-{i}"), "ok")
            clock.advance(seconds=1)

        page = service.list_notifications(page=2, limit=2).data
        assert len(page["notifications"]) == 1
        assert page["notifications"][0]["metadata"]["employeeId"] == "emp-0"
        assert page["pagination"] == {
            "currentPage": 2, "totalPages": 2, "total": 3,
            "hasNext": False, "hasPrev": True,
        }

    def test_bad_paging_is_400(self, service):
        assert service.list_notifications(page=0).status_code == 400
        assert service.list_notifications(kind="urgent").status_code == 400

    @pytest.mark.asyncio
    async def test_stats_grouped_by_employee(self, service, clock):
        await service.complete(_reminder_for(service, clock, "emp-1"), "ok")
        await service.complete(_reminder_for(service, clock, "emp-1"), "called, no answer")
        await service.complete(_reminder_for(service, clock, "emp-2"), "done")

        stats = service.get_low_quality_stats(days=7).data
        assert stats["total"] == 3
        assert stats["period"] == "Last 7 days"
        top = stats["byEmployee"][0]
        assert top == {
            "employeeId": "emp-1", "count": 2, "totalWordCount": 4, "avgWordCount": 2.0,
        }
        assert stats["byEmployee"][1]["employeeId"] == "emp-2"

    @pytest.mark.asyncio
    async def test_stats_window(self, service, created, clock):
        await service.complete(created, "ok")
        clock.advance(days=8)
        assert service.get_low_quality_stats(days=7).data["total"] == 0
        assert service.get_low_quality_stats(days=30).data["total"] == 1

    @pytest.mark.asyncio
    async def test_inbox_outage_does_not_fail_completion(self, service, created,
                                                        memory_notifications,
                                                        memory_directory, gateway):
        memory_directory.register_address("admin-1", "tok-admin", RecipientRole.ADMIN)
        with patch.object(memory_notifications, "add", side_effect=StoreError("disk full")):
            response = await service.complete(created, "ok")

        assert response.kind is ResponseKind.SUCCESS
        assert response.data["status"] == "completed"
        assert [address for address, _ in gateway.sent] == ["tok-admin"]
        assert "notificationId" not in gateway.sent[0][1]["data"]
