"""Unit tests for TaskManager: lifecycle orchestration and credit effects."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from campfire_service.core.exceptions import ServiceError
from campfire_service.services.transitions import TRANSITIONS, TaskStatus
from tests.helpers import (
    ADMIN,
    ADMIN_ID,
    CLIENT,
    CLIENT_ID,
    CONTRACTOR,
    CONTRACTOR_ID,
    OTHER_CLIENT,
    OTHER_CONTRACTOR,
    build_manager,
    make_notification_mock,
)

if TYPE_CHECKING:
    from unittest.mock import AsyncMock

    from campfire_service.services.database import Database
    from campfire_service.services.ledger import Ledger
    from campfire_service.services.task_manager import TaskManager
    from campfire_service.services.task_store import TaskStore

pytestmark = pytest.mark.unit


@pytest.fixture
def notifications() -> AsyncMock:
    return make_notification_mock()


@pytest.fixture
def wired(db: Database, notifications: AsyncMock) -> tuple[TaskManager, TaskStore, Ledger]:
    manager, store, ledger = build_manager(db, notifications=notifications)
    ledger.grant(CLIENT_ID, 10000, "Welcome credits", ADMIN_ID)
    return manager, store, ledger


@pytest.fixture
def manager(wired: tuple[TaskManager, TaskStore, Ledger]) -> TaskManager:
    return wired[0]


@pytest.fixture
def store(wired: tuple[TaskManager, TaskStore, Ledger]) -> TaskStore:
    return wired[1]


@pytest.fixture
def ledger(wired: tuple[TaskManager, TaskStore, Ledger]) -> Ledger:
    return wired[2]


async def _create(manager: TaskManager, **overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "title": "Spring launch carousel",
        "category_id": "social",
        "project_id": "p-spring",
        "credit_cost": 30,
    }
    body.update(overrides)
    return await manager.create_task(CLIENT, body)


async def _deliver(manager: TaskManager, task_id: str) -> None:
    await manager.add_attachment(
        CONTRACTOR, task_id, {"filename": "final.png", "upload_type": "deliverable"}
    )


async def _advance_to_review(manager: TaskManager, task_id: str) -> None:
    await manager.request_transition(
        ADMIN, task_id, {"status": "assigned", "contractor_id": CONTRACTOR_ID}
    )
    await manager.request_transition(CONTRACTOR, task_id, {"status": "in_progress"})
    await _deliver(manager, task_id)
    await manager.request_transition(CONTRACTOR, task_id, {"status": "review"})


def _balance(ledger: Ledger) -> tuple[int, int, int]:
    balance = ledger.get_balance(CLIENT_ID)
    return (
        balance["available_credits"],
        balance["held_credits"],
        balance["total_credits"],
    )


class TestCreateTask:
    async def test_creation_holds_the_cost(self, manager: TaskManager, ledger: Ledger) -> None:
        task = await _create(manager)

        assert task["status"] == "submitted"
        assert task["client_id"] == CLIENT_ID
        assert task["credit_cost"] == 30.0
        assert _balance(ledger) == (7000, 3000, 10000)
        tx = ledger.list_transactions(CLIENT_ID)[0]
        assert tx["type"] == "task_hold"
        assert tx["amount"] == -3000
        assert tx["task_id"] == task["task_id"]

    async def test_cost_derived_from_category_and_complexity(self, manager: TaskManager) -> None:
        social = await _create(manager, credit_cost=None, complexity_level=4)
        other = await _create(manager, credit_cost=None, category_id="unknown")

        assert social["credit_cost"] == 5.0
        assert other["credit_cost"] == 5.0

        brand = await _create(manager, credit_cost=None, category_id="brand", complexity_level=3)
        assert brand["credit_cost"] == 13.5

    async def test_insufficient_credits_leaves_no_task(
        self, manager: TaskManager, store: TaskStore, ledger: Ledger
    ) -> None:
        with pytest.raises(ServiceError) as exc_info:
            await _create(manager, credit_cost=150)

        assert exc_info.value.error == "INSUFFICIENT_CREDITS"
        assert exc_info.value.details == {"available": 100.0, "needed": 150.0}
        assert store.count_tasks() == 0
        assert _balance(ledger) == (10000, 0, 10000)

    async def test_contractors_cannot_create(self, manager: TaskManager) -> None:
        with pytest.raises(ServiceError) as exc_info:
            await manager.create_task(
                CONTRACTOR, {"title": "x", "category_id": "c", "project_id": "p"}
            )
        assert exc_info.value.error == "FORBIDDEN"

    async def test_admin_must_name_an_existing_client(
        self, manager: TaskManager, ledger: Ledger
    ) -> None:
        body = {"title": "Logo", "category_id": "brand", "project_id": "p-1", "credit_cost": 10}

        with pytest.raises(ServiceError) as exc_info:
            await manager.create_task(ADMIN, body)
        assert exc_info.value.error == "MISSING_FIELD"

        with pytest.raises(ServiceError) as exc_info:
            await manager.create_task(ADMIN, {**body, "client_id": "u-nobody"})
        assert exc_info.value.error == "USER_NOT_FOUND"

        with pytest.raises(ServiceError) as exc_info:
            await manager.create_task(ADMIN, {**body, "client_id": CONTRACTOR_ID})
        assert exc_info.value.error == "VALIDATION_ERROR"

        task = await manager.create_task(ADMIN, {**body, "client_id": CLIENT_ID})
        assert task["client_id"] == CLIENT_ID
        assert task["created_by"] == ADMIN_ID
        assert _balance(ledger) == (9000, 1000, 10000)

    @pytest.mark.parametrize(
        ("overrides", "field"),
        [
            ({"title": ""}, "title"),
            ({"priority": "asap"}, "priority"),
            ({"complexity_level": 13}, "complexity_level"),
            ({"deadline": "next tuesday"}, "deadline"),
            ({"campfire_eligible": "yes"}, "campfire_eligible"),
            ({"credit_cost": 0}, "credit_cost"),
            ({"credit_cost": 1.005}, "credit_cost"),
        ],
    )
    async def test_invalid_fields(
        self, manager: TaskManager, overrides: dict[str, Any], field: str
    ) -> None:
        with pytest.raises(ServiceError) as exc_info:
            await _create(manager, **overrides)
        assert exc_info.value.error == "VALIDATION_ERROR"
        assert exc_info.value.details["field"] == field

    async def test_unknown_and_missing_fields(self, manager: TaskManager) -> None:
        with pytest.raises(ServiceError) as exc_info:
            await _create(manager, status="closed")
        assert exc_info.value.error == "VALIDATION_ERROR"

        with pytest.raises(ServiceError) as exc_info:
            await manager.create_task(CLIENT, {"title": "No category", "project_id": "p"})
        assert exc_info.value.error == "MISSING_FIELD"


class TestLifecycleScenarios:
    async def test_assignment_has_no_ledger_effect(
        self, manager: TaskManager, store: TaskStore, ledger: Ledger
    ) -> None:
        task = await _create(manager)

        updated = await manager.request_transition(
            ADMIN, task["task_id"], {"status": "assigned", "contractor_id": CONTRACTOR_ID}
        )

        assert updated["status"] == "assigned"
        assert updated["contractor_id"] == CONTRACTOR_ID
        assert _balance(ledger) == (7000, 3000, 10000)
        assert store.get_history(task["task_id"])[-1]["to_status"] == "assigned"

    async def test_assignment_to_unknown_contractor_is_rejected(
        self, manager: TaskManager, store: TaskStore
    ) -> None:
        task = await _create(manager)

        with pytest.raises(ServiceError) as exc_info:
            await manager.request_transition(
                ADMIN, task["task_id"], {"status": "assigned", "contractor_id": "u-ghost"}
            )
        assert exc_info.value.error == "USER_NOT_FOUND"

        with pytest.raises(ServiceError) as exc_info:
            await manager.request_transition(
                ADMIN, task["task_id"], {"status": "assigned", "contractor_id": CLIENT_ID}
            )
        assert exc_info.value.error == "VALIDATION_ERROR"
        assert len(store.get_history(task["task_id"])) == 1

    async def test_review_requires_a_deliverable(self, manager: TaskManager) -> None:
        task = await _create(manager)
        task_id = task["task_id"]
        await manager.request_transition(
            ADMIN, task_id, {"status": "assigned", "contractor_id": CONTRACTOR_ID}
        )
        await manager.request_transition(CONTRACTOR, task_id, {"status": "in_progress"})

        with pytest.raises(ServiceError) as exc_info:
            await manager.request_transition(CONTRACTOR, task_id, {"status": "review"})
        assert exc_info.value.error == "PRECONDITION_FAILED"

        await _deliver(manager, task_id)
        updated = await manager.request_transition(CONTRACTOR, task_id, {"status": "review"})
        assert updated["status"] == "review"

    async def test_revision_requires_a_note(self, manager: TaskManager, store: TaskStore) -> None:
        task = await _create(manager)
        task_id = task["task_id"]
        await _advance_to_review(manager, task_id)

        with pytest.raises(ServiceError) as exc_info:
            await manager.request_transition(ADMIN, task_id, {"status": "revision"})
        assert exc_info.value.error == "MISSING_FIELD"

        updated = await manager.request_transition(
            ADMIN, task_id, {"status": "revision", "note": "Use the brand palette"}
        )
        assert updated["status"] == "revision"
        last = store.get_history(task_id)[-1]
        assert (last["from_status"], last["to_status"]) == ("review", "revision")
        assert last["note"] == "Use the brand palette"

    async def test_closing_finalizes_the_hold(
        self, manager: TaskManager, ledger: Ledger
    ) -> None:
        task = await _create(manager)
        task_id = task["task_id"]
        await _advance_to_review(manager, task_id)
        await manager.request_transition(ADMIN, task_id, {"status": "approved"})

        closed = await manager.request_transition(ADMIN, task_id, {"status": "closed"})

        assert closed["status"] == "closed"
        assert _balance(ledger) == (7000, 0, 7000)
        tx = ledger.list_transactions(CLIENT_ID)[0]
        assert tx["type"] == "task_deduct"
        assert tx["amount"] == -3000

    async def test_cancelling_releases_the_hold(
        self, manager: TaskManager, ledger: Ledger
    ) -> None:
        await _create(manager)
        task = await _create(manager, credit_cost=20)
        assert _balance(ledger) == (5000, 5000, 10000)

        cancelled = await manager.request_transition(
            ADMIN, task["task_id"], {"status": "cancelled"}
        )

        assert cancelled["status"] == "cancelled"
        assert _balance(ledger) == (7000, 3000, 10000)
        tx = ledger.list_transactions(CLIENT_ID)[0]
        assert tx["type"] == "task_release"
        assert tx["amount"] == 2000

    @pytest.mark.parametrize("status", ["submitted", "assigned", "in_progress"])
    async def test_cancel_releases_from_every_cancellable_state(
        self, manager: TaskManager, ledger: Ledger, status: str
    ) -> None:
        task = await _create(manager)
        task_id = task["task_id"]
        if status != "submitted":
            await manager.request_transition(
                ADMIN, task_id, {"status": "assigned", "contractor_id": CONTRACTOR_ID}
            )
        if status == "in_progress":
            await manager.request_transition(CONTRACTOR, task_id, {"status": "in_progress"})

        await manager.request_transition(ADMIN, task_id, {"status": "cancelled"})
        assert _balance(ledger) == (10000, 0, 10000)

    async def test_terminal_tasks_never_move(self, manager: TaskManager, ledger: Ledger) -> None:
        task = await _create(manager)
        await manager.request_transition(ADMIN, task["task_id"], {"status": "cancelled"})
        before = _balance(ledger)

        for status in TaskStatus:
            with pytest.raises(ServiceError) as exc_info:
                await manager.request_transition(
                    ADMIN, task["task_id"], {"status": status.value, "contractor_id": CONTRACTOR_ID}
                )
            assert exc_info.value.error == "INVALID_TRANSITION"
        assert _balance(ledger) == before

    async def test_rejected_transitions_leave_no_trace(
        self, manager: TaskManager, store: TaskStore, ledger: Ledger
    ) -> None:
        task = await _create(manager)
        task_id = task["task_id"]
        before = _balance(ledger)

        attempts = [
            (CLIENT, {"status": "cancelled"}),
            (CONTRACTOR, {"status": "assigned", "contractor_id": CONTRACTOR_ID}),
            (ADMIN, {"status": "closed"}),
            (ADMIN, {"status": "review"}),
        ]
        for actor, body in attempts:
            with pytest.raises(ServiceError) as exc_info:
                await manager.request_transition(actor, task_id, body)
            assert exc_info.value.error in {"INVALID_TRANSITION", "FORBIDDEN"}

        assert len(store.get_history(task_id)) == 1
        assert _balance(ledger) == before

    async def test_history_is_a_valid_path(self, manager: TaskManager) -> None:
        task = await _create(manager)
        task_id = task["task_id"]
        await _advance_to_review(manager, task_id)
        await manager.request_transition(ADMIN, task_id, {"status": "revision", "note": "Again"})
        await manager.request_transition(CONTRACTOR, task_id, {"status": "in_progress"})
        await manager.request_transition(CONTRACTOR, task_id, {"status": "review"})
        await manager.request_transition(ADMIN, task_id, {"status": "approved"})
        await manager.request_transition(ADMIN, task_id, {"status": "closed"})

        history = (await manager.get_history(ADMIN, task_id))["history"]

        successful_transitions = 8
        assert len(history) == successful_transitions + 1
        assert history[0]["from_status"] is None
        for previous, entry in zip(history, history[1:], strict=False):
            assert entry["from_status"] == previous["to_status"]
            source = TaskStatus(entry["from_status"])
            assert TaskStatus(entry["to_status"]) in TRANSITIONS[source]


class TestPassAndClaim:
    async def test_pass_returns_task_to_campfire_and_notifies_client(
        self, manager: TaskManager, ledger: Ledger, notifications: AsyncMock
    ) -> None:
        task = await _create(manager)
        task_id = task["task_id"]
        await manager.request_transition(
            ADMIN, task_id, {"status": "assigned", "contractor_id": CONTRACTOR_ID}
        )
        notifications.notify.reset_mock()

        passed = await manager.pass_task(CONTRACTOR, task_id)

        assert passed["status"] == "submitted"
        assert passed["contractor_id"] is None
        assert passed["campfire_eligible"] is True
        assert _balance(ledger) == (7000, 3000, 10000)
        notifications.notify.assert_awaited_once()
        assert notifications.notify.await_args.args[0] == CLIENT_ID
        assert notifications.notify.await_args.args[1] == "task_passed"

    async def test_pass_after_starting_is_rejected(self, manager: TaskManager) -> None:
        task = await _create(manager)
        task_id = task["task_id"]
        await manager.request_transition(
            ADMIN, task_id, {"status": "assigned", "contractor_id": CONTRACTOR_ID}
        )
        await manager.request_transition(CONTRACTOR, task_id, {"status": "in_progress"})

        with pytest.raises(ServiceError) as exc_info:
            await manager.pass_task(CONTRACTOR, task_id)
        assert exc_info.value.error == "INVALID_TRANSITION"

    async def test_campfire_listing_and_claim(self, manager: TaskManager) -> None:
        open_task = await _create(manager, campfire_eligible=True)
        await _create(manager)

        listed = await manager.list_campfire_tasks(CONTRACTOR)
        assert [t["task_id"] for t in listed["tasks"]] == [open_task["task_id"]]

        claimed = await manager.claim_task(CONTRACTOR, open_task["task_id"])
        assert claimed["status"] == "assigned"
        assert claimed["contractor_id"] == CONTRACTOR_ID

        with pytest.raises(ServiceError) as exc_info:
            await manager.claim_task(OTHER_CONTRACTOR, open_task["task_id"])
        assert exc_info.value.error == "INVALID_TRANSITION"
        assert (await manager.list_campfire_tasks(ADMIN))["tasks"] == []

    async def test_clients_cannot_see_the_campfire(self, manager: TaskManager) -> None:
        with pytest.raises(ServiceError) as exc_info:
            await manager.list_campfire_tasks(CLIENT)
        assert exc_info.value.error == "FORBIDDEN"


class TestVisibilityAndEdits:
    async def test_listing_is_scoped_by_role(self, manager: TaskManager) -> None:
        mine = await _create(manager)
        await _create(manager)
        await manager.request_transition(
            ADMIN, mine["task_id"], {"status": "assigned", "contractor_id": CONTRACTOR_ID}
        )

        assert len((await manager.list_tasks(CLIENT))["tasks"]) == 2
        assert (await manager.list_tasks(OTHER_CLIENT))["tasks"] == []
        contractor_view = (await manager.list_tasks(CONTRACTOR))["tasks"]
        assert [t["task_id"] for t in contractor_view] == [mine["task_id"]]
        assert len((await manager.list_tasks(ADMIN, status="submitted"))["tasks"]) == 1
        admin_filtered = await manager.list_tasks(ADMIN, contractor_id=CONTRACTOR_ID)
        assert len(admin_filtered["tasks"]) == 1

    async def test_get_task_access_control(self, manager: TaskManager) -> None:
        task = await _create(manager)

        assert (await manager.get_task(CLIENT, task["task_id"]))["task_id"] == task["task_id"]
        assert (await manager.get_task(ADMIN, task["task_id"]))["task_id"] == task["task_id"]
        for outsider in (OTHER_CLIENT, CONTRACTOR):
            with pytest.raises(ServiceError) as exc_info:
                await manager.get_task(outsider, task["task_id"])
            assert exc_info.value.error == "FORBIDDEN"

        with pytest.raises(ServiceError) as exc_info:
            await manager.get_task(ADMIN, "t-missing")
        assert exc_info.value.error == "TASK_NOT_FOUND"

    async def test_update_permissions(self, manager: TaskManager) -> None:
        task = await _create(manager)
        task_id = task["task_id"]
        await manager.request_transition(
            ADMIN, task_id, {"status": "assigned", "contractor_id": CONTRACTOR_ID}
        )

        updated = await manager.update_task(
            ADMIN, task_id, {"title": "Summer carousel", "priority": "urgent"}
        )
        assert updated["title"] == "Summer carousel"
        assert updated["priority"] == "urgent"

        moved = await manager.update_task(CONTRACTOR, task_id, {"deadline": "2026-11-01T12:00:00Z"})
        assert moved["deadline"] == "2026-11-01T12:00:00Z"

        with pytest.raises(ServiceError) as exc_info:
            await manager.update_task(CONTRACTOR, task_id, {"title": "Mine now"})
        assert exc_info.value.error == "FORBIDDEN"

        with pytest.raises(ServiceError) as exc_info:
            await manager.update_task(CLIENT, task_id, {"title": "Client edit"})
        assert exc_info.value.error == "FORBIDDEN"

        with pytest.raises(ServiceError) as exc_info:
            await manager.update_task(ADMIN, task_id, {"status": "closed"})
        assert exc_info.value.error == "VALIDATION_ERROR"

    async def test_delete_releases_open_hold(
        self, manager: TaskManager, store: TaskStore, ledger: Ledger
    ) -> None:
        task = await _create(manager)

        with pytest.raises(ServiceError) as exc_info:
            await manager.delete_task(CLIENT, task["task_id"])
        assert exc_info.value.error == "FORBIDDEN"

        await manager.delete_task(ADMIN, task["task_id"])

        assert store.get_task(task["task_id"]) is None
        assert _balance(ledger) == (10000, 0, 10000)

    async def test_delete_of_closed_task_keeps_the_deduction(
        self, manager: TaskManager, ledger: Ledger
    ) -> None:
        task = await _create(manager)
        task_id = task["task_id"]
        await _advance_to_review(manager, task_id)
        await manager.request_transition(ADMIN, task_id, {"status": "approved"})
        await manager.request_transition(ADMIN, task_id, {"status": "closed"})

        await manager.delete_task(ADMIN, task_id)
        assert _balance(ledger) == (7000, 0, 7000)

    async def test_attachment_permissions(self, manager: TaskManager) -> None:
        task = await _create(manager)
        task_id = task["task_id"]

        reference = await manager.add_attachment(
            CLIENT, task_id, {"filename": "brief.pdf", "upload_type": "reference"}
        )
        assert reference["uploader_id"] == CLIENT_ID

        with pytest.raises(ServiceError) as exc_info:
            await manager.add_attachment(
                CONTRACTOR, task_id, {"filename": "final.png", "upload_type": "deliverable"}
            )
        assert exc_info.value.error == "FORBIDDEN"

        with pytest.raises(ServiceError) as exc_info:
            await manager.add_attachment(
                CLIENT, task_id, {"filename": "x.png", "upload_type": "invoice"}
            )
        assert exc_info.value.error == "VALIDATION_ERROR"

        listed = await manager.list_attachments(CLIENT, task_id)
        assert [a["filename"] for a in listed["attachments"]] == ["brief.pdf"]


class TestNotifications:
    async def test_status_change_notifies_everyone_but_the_actor(
        self, manager: TaskManager, notifications: AsyncMock
    ) -> None:
        task = await _create(manager)
        task_id = task["task_id"]

        await manager.request_transition(
            ADMIN, task_id, {"status": "assigned", "contractor_id": CONTRACTOR_ID}
        )
        recipients = {call.args[0] for call in notifications.notify.await_args_list}
        assert recipients == {CLIENT_ID, CONTRACTOR_ID}

        notifications.notify.reset_mock()
        await manager.request_transition(CONTRACTOR, task_id, {"status": "in_progress"})
        recipients = {call.args[0] for call in notifications.notify.await_args_list}
        assert recipients == {CLIENT_ID}
        assert notifications.notify.await_args.args[1] == "status_change"
