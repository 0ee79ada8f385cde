"""Tests for the workflow engine: execution, waits, policies, parallel regions."""

from datetime import UTC, datetime

import pytest

from jml_workflow.core.models import (
    ApprovalDecisionType,
    DeadLetterStatus,
    ScheduledActionType,
    ScheduledItemStatus,
    StepState,
    TaskStatus,
    WorkflowStatus,
)
from jml_workflow.errors.exceptions import (
    BRANCH_NO_MATCH,
    HANDLER_ERROR,
    NO_HANDLER,
    PARALLEL_BRANCH_FAILED,
    STEP_NOT_FOUND,
    WAIT_TIMEOUT,
    ConfigurationError,
    InvalidStateError,
)
from jml_workflow.notifications.channel import NotificationPriority
from jml_workflow.workflow.definition import DefinitionStatus
from jml_workflow.workflow.engine import STEP_LIMIT_EXCEEDED, WorkflowEngine
from jml_workflow.workflow.handlers import APPROVAL_REJECTED, CHILD_WORKFLOW_FAILED

from workflow_fixtures import branch, default_path, end, goto, linear_definition, make_definition, start, step, when


PROCESS = {
    "employeeName": "Ada Lovelace",
    "managerEmail": "grace@example.com",
    "department": "Engineering",
}


def _start(engine, definition, **kwargs):
    kwargs.setdefault("process", PROCESS)
    kwargs.setdefault("started_by", "hr.admin")
    return engine.start_workflow(definition, **kwargs)


def _statuses(engine, instance_id):
    return {s.step_id: s for s in engine.get_step_statuses(instance_id)}


def _actions(store, instance_id):
    return [e.action for e in store.list_audit_entries(instance_id=instance_id)]


def _failing_action(definition_step_id="provision", **step_extra):
    return step(definition_step_id, "Action", 2, {"action_name": "provision"}, **step_extra)


class TestLinearRun:
    def test_runs_to_completion(self, engine, store, channel):
        instance = _start(engine, linear_definition())

        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.progress_percent == 100
        assert instance.completed_steps == 4
        assert instance.variables["greeting"] == "Welcome Ada Lovelace"
        assert instance.variables["notification_delivered"] is True
        assert channel.sent == [{
            "recipients": ["grace@example.com"],
            "subject": "New joiner",
            "body": "Welcome Ada Lovelace",
            "priority": NotificationPriority.NORMAL,
        }]
        assert all(s.status == StepState.COMPLETED for s in _statuses(engine, instance.id).values())

        actions = _actions(store, instance.id)
        assert actions[0] == "Workflow Started"
        assert actions[-1] == "Workflow Completed"
        assert store.get_instance(instance.id).status == WorkflowStatus.COMPLETED

    def test_start_by_code_uses_latest_published(self, engine):
        engine.definitions.publish(linear_definition(status="Draft"))
        instance = _start(engine, "JOINER-ONBOARD")
        assert instance.definition_version == "1.0.0"
        assert instance.status == WorkflowStatus.COMPLETED

    def test_retired_definition_cannot_start(self, engine):
        engine.definitions.save(linear_definition())
        engine.definitions.retire("JOINER-ONBOARD", "1.0.0")
        with pytest.raises(InvalidStateError):
            _start(engine, "JOINER-ONBOARD", version="1.0.0")

    def test_missing_required_variable(self, engine):
        definition = make_definition([start(), end()], variables=[{"name": "lastDay", "required": True}])
        with pytest.raises(ConfigurationError) as exc_info:
            _start(engine, definition)
        assert exc_info.value.issues == ["lastDay"]

    def test_declared_defaults_and_system_variables(self, engine):
        definition = make_definition(
            [
                start(),
                step("stamp", "SetVariable", 2, {"assignments": {
                    "ticket": "{{region}}-{{processId}}",
                    "owner": "{{currentUser}}",
                    "ref": "{{workflowInstanceId}}",
                }}),
                end(),
            ],
            variables=[{"name": "region", "default": "EMEA"}],
        )
        instance = _start(engine, definition, process_id="REQ-42")
        assert instance.variables["ticket"] == "EMEA-REQ-42"
        assert instance.variables["owner"] == "hr.admin"
        assert instance.variables["ref"] == instance.id

    def test_terminal_instance_rejects_operations(self, engine):
        instance = _start(engine, linear_definition())
        with pytest.raises(InvalidStateError):
            engine.execute_step(instance.id)
        with pytest.raises(InvalidStateError):
            engine.resume_workflow(instance.id)
        with pytest.raises(InvalidStateError):
            engine.cancel_workflow(instance.id)


class TestConditionsAndBranches:
    @staticmethod
    def _remote_vpn():
        return make_definition([
            start(),
            step(
                "vpn", "SetVariable", 2, {"assignments": {"vpn": "issued"}},
                entry_conditions=[{"conditions": [{"field": "remote", "operator": "eq", "value": True}]}],
            ),
            end(),
        ])

    def test_entry_conditions_not_met_skips(self, engine):
        instance = _start(engine, self._remote_vpn())

        vpn = _statuses(engine, instance.id)["vpn"]
        assert vpn.status == StepState.SKIPPED
        assert vpn.result["skip_reason"] == "Entry conditions not met"
        assert "vpn" not in instance.variables
        assert instance.status == WorkflowStatus.COMPLETED

    def test_entry_conditions_met_runs(self, engine):
        instance = _start(engine, self._remote_vpn(), variables={"remote": "yes"})
        assert instance.variables["vpn"] == "issued"

    @staticmethod
    def _routing(with_default=True):
        paths = [when("condition_result", "eq", True, "laptop")]
        if with_default:
            paths.append(default_path("end"))
        return make_definition([
            start(),
            step(
                "route", "Condition", 2,
                {"condition_groups": [{"conditions": [
                    {"field": "department", "operator": "eq", "value": "Engineering"},
                ]}]},
                on_complete=branch(*paths),
            ),
            step("laptop", "SetVariable", 3, {"assignments": {"laptop": "MacBook"}}, on_complete=goto("end")),
            end(),
        ])

    def test_branch_taken(self, engine):
        instance = _start(engine, self._routing())
        assert instance.variables["condition_result"] is True
        assert instance.variables["laptop"] == "MacBook"

    def test_default_path(self, engine):
        instance = _start(engine, self._routing(), process={**PROCESS, "department": "Finance"})
        assert instance.status == WorkflowStatus.COMPLETED
        assert _statuses(engine, instance.id)["laptop"].status == StepState.PENDING

    def test_no_match_without_default_fails(self, engine):
        instance = _start(engine, self._routing(with_default=False), process={**PROCESS, "department": "Finance"})
        assert instance.status == WorkflowStatus.FAILED
        assert instance.error_code == BRANCH_NO_MATCH
        assert instance.error_step_id == "route"

    def test_goto_missing_step(self, engine):
        instance = _start(engine, make_definition([start(on_complete=goto("ghost")), end()]))
        assert instance.status == WorkflowStatus.FAILED
        assert instance.error_code == STEP_NOT_FOUND

    @pytest.mark.parametrize("department, expected", [("Engineering", True), ("Finance", False)])
    def test_condition_expression(self, engine, department, expected):
        definition = make_definition([
            start(),
            step("route", "Condition", 2, {"expression": "department == engineering && employeeName contains Ada"}),
            end(),
        ])
        instance = _start(engine, definition, process={**PROCESS, "department": department})

        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.variables["condition_result"] is expected



class TestActions:
    def test_registered_action_output_becomes_variables(self, engine):
        calls = []

        def provision(params, ctx):
            calls.append(params)
            return {"account": "ada01"}

        engine.register_action("provision", provision)
        definition = make_definition([
            start(),
            step("provision", "Action", 2, {"action_name": "provision", "parameters": {
                "name": "{{employeeName}}", "seats": 1,
            }}),
            end(),
        ])
        instance = _start(engine, definition)

        assert calls == [{"name": "Ada Lovelace", "seats": 1}]
        assert instance.variables["account"] == "ada01"

    def test_unknown_action_fails_with_no_handler(self, engine):
        instance = _start(engine, make_definition([start(), _failing_action(), end()]))
        assert instance.status == WorkflowStatus.FAILED
        assert instance.error_code == NO_HANDLER

    def test_step_limit_guard(self, store, clock, notifications, queue):
        engine = WorkflowEngine(
            store, clock=clock, notifications=notifications, dead_letters=queue, max_steps_per_advance=10,
        )
        definition = make_definition([
            start(),
            step("ping", "SetVariable", 2, {"assignments": {"x": 1}}, on_complete=goto("pong")),
            step("pong", "SetVariable", 3, {"assignments": {"y": 2}}, on_complete=goto("ping")),
            end(),
        ])
        instance = _start(engine, definition)
        assert instance.status == WorkflowStatus.FAILED
        assert instance.error_code == STEP_LIMIT_EXCEEDED


class TestErrorPolicies:
    def test_retry_then_give_up(self, engine, store, scheduler, clock):
        def unavailable(params, ctx):
            raise RuntimeError("directory unavailable")

        engine.register_action("provision", unavailable)
        policy = {"action": "retry", "retry_count": 2, "retry_delay_minutes": 5}
        instance = _start(engine, make_definition([start(), _failing_action(error_policy=policy), end()]))

        assert instance.status == WorkflowStatus.RUNNING
        items = store.list_scheduled_items(instance_id=instance.id, action_type=ScheduledActionType.EXECUTE_STEP)
        assert len(items) == 1
        assert items[0].scheduled_at == datetime(2024, 3, 4, 9, 5, tzinfo=UTC)

        clock.advance(minutes=5)
        scheduler.tick()
        pending = store.list_scheduled_items(instance_id=instance.id, status=ScheduledItemStatus.PENDING)
        assert [i.scheduled_at for i in pending] == [datetime(2024, 3, 4, 9, 15, tzinfo=UTC)]

        clock.advance(minutes=10)
        scheduler.tick()
        instance = engine.get_instance(instance.id)
        assert instance.status == WorkflowStatus.FAILED
        assert instance.error_code == HANDLER_ERROR
        assert instance.error_message == "directory unavailable (gave up after 2 retries)"
        assert instance.retry_count == 2
        assert _actions(store, instance.id).count("Step Retry Scheduled") == 2

    def test_retry_recovers(self, engine, scheduler, clock):
        attempts = []

        def flaky(params, ctx):
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("timeout")
            return {"account": "ada01"}

        engine.register_action("provision", flaky)
        instance = _start(engine, make_definition([start(), _failing_action(error_policy={"action": "retry"}), end()]))

        clock.advance(minutes=5)
        scheduler.tick()

        instance = engine.get_instance(instance.id)
        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.variables["account"] == "ada01"

    def test_skip(self, engine, store):
        instance = _start(engine, make_definition([start(), _failing_action(error_policy={"action": "skip"}), end()]))
        assert instance.status == WorkflowStatus.COMPLETED
        assert _statuses(engine, instance.id)["provision"].status == StepState.SKIPPED
        assert "Step Error Skipped" in _actions(store, instance.id)

    def test_goto_recovery_step(self, engine):
        definition = make_definition([
            start(),
            _failing_action(error_policy={"action": "goto", "goto_step_id": "manual"}, on_complete=goto("end")),
            step("manual", "SetVariable", 3, {"assignments": {"manual": True}}),
            end(),
        ])
        instance = _start(engine, definition)

        statuses = _statuses(engine, instance.id)
        assert statuses["provision"].status == StepState.FAILED
        assert statuses["manual"].status == StepState.COMPLETED
        assert instance.status == WorkflowStatus.COMPLETED

    def test_fail_notifies(self, engine, channel):
        policy = {"action": "fail", "notify": "ops@example.com"}
        instance = _start(engine, make_definition([start(), _failing_action(error_policy=policy), end()]))

        assert instance.status == WorkflowStatus.FAILED
        assert channel.to("ops@example.com")[0]["subject"] == "Workflow step failed: Provision"


class TestWaitStep:
    def test_duration_wait_resumes_from_timer(self, engine, store, scheduler, clock):
        definition = make_definition([start(), step("cooldown", "Wait", 2, {"duration_hours": 2}), end()])
        instance = _start(engine, definition)

        assert instance.status == WorkflowStatus.WAITING_FOR_INPUT
        scheduler.tick()
        assert engine.get_instance(instance.id).status == WorkflowStatus.WAITING_FOR_INPUT

        clock.advance(hours=2)
        scheduler.tick()
        assert engine.get_instance(instance.id).status == WorkflowStatus.COMPLETED
        assert "Step Resumed" in _actions(store, instance.id)

    def test_until_field_in_the_past_continues(self, engine):
        definition = make_definition([start(), step("until", "Wait", 2, {"until_field": "startDate"}), end()])
        instance = _start(engine, definition, variables={"startDate": "2024-03-01"})
        assert instance.status == WorkflowStatus.COMPLETED

    def test_until_field_in_the_future_waits(self, engine, scheduler, clock):
        definition = make_definition([start(), step("until", "Wait", 2, {"until_field": "startDate"}), end()])
        instance = _start(engine, definition, variables={"startDate": "2024-03-06"})
        assert instance.status == WorkflowStatus.WAITING_FOR_INPUT

        clock.set(datetime(2024, 3, 6, tzinfo=UTC))
        scheduler.tick()
        assert engine.get_instance(instance.id).status == WorkflowStatus.COMPLETED

    def test_until_field_missing_fails(self, engine):
        definition = make_definition([start(), step("until", "Wait", 2, {"until_field": "startDate"}), end()])
        instance = _start(engine, definition)
        assert instance.status == WorkflowStatus.FAILED
        assert "startDate" in instance.error_message


class TestTasks:
    @staticmethod
    def _definition(wait_config=None, **wait_extra):
        return make_definition([
            start(),
            step("tasks", "AssignTasks", 2, {"tasks": [
                {"title": "Account", "assignee": "it.desk"},
                {"title": "Laptop", "assignee": "it.desk", "depends_on": ["Account"]},
            ]}),
            step("wait", "WaitForTasks", 3, wait_config, **wait_extra),
            end(),
        ])

    def test_dependent_task_starts_blocked(self, engine, store, channel):
        instance = _start(engine, self._definition())

        tasks = {t.title: t for t in store.list_tasks(instance_id=instance.id)}
        assert tasks["Account"].status == TaskStatus.NOT_STARTED
        assert tasks["Laptop"].status == TaskStatus.BLOCKED
        assert channel.subjects() == ["New task: Account"]
        assert instance.status == WorkflowStatus.WAITING_FOR_TASK
        assert set(instance.wait_for_item_ids) == {t.id for t in tasks.values()}

    def test_waits_for_all_tasks(self, engine, store, scheduler, channel):
        instance = _start(engine, self._definition())
        tasks = {t.title: t for t in store.list_tasks(instance_id=instance.id)}

        engine.tasks.mark_task_completed(tasks["Account"].id)
        assert "Task ready: Laptop" in channel.subjects()
        assert scheduler.process_waiting_workflows().processed == 0

        engine.tasks.mark_task_completed(tasks["Laptop"].id)
        assert scheduler.process_waiting_workflows().succeeded == 1

        instance = engine.get_instance(instance.id)
        assert instance.status == WorkflowStatus.COMPLETED
        assert set(instance.variables["completed_task_ids"]) == {t.id for t in tasks.values()}

    def test_wait_any(self, engine, store, scheduler):
        instance = _start(engine, self._definition({"wait_type": "any"}))
        account = next(t for t in store.list_tasks(instance_id=instance.id) if t.title == "Account")

        engine.tasks.mark_task_completed(account.id)
        scheduler.process_waiting_workflows()

        assert engine.get_instance(instance.id).status == WorkflowStatus.COMPLETED


class TestApprovals:
    @staticmethod
    def _definition():
        return make_definition([
            start(),
            step("approve", "Approval", 2, {"approvers": ["{{managerEmail}}"], "title": "Access for {{employeeName}}"}),
            end(),
        ])

    def test_approved_chain_resumes(self, engine, store, scheduler, channel):
        instance = _start(engine, self._definition())
        assert instance.status == WorkflowStatus.WAITING_FOR_APPROVAL

        chain = store.list_approval_chains(instance_id=instance.id)[0]
        assert chain.title == "Access for Ada Lovelace"
        assert instance.wait_for_item_ids == [chain.id]
        assert channel.to("grace@example.com")[0]["subject"] == "Approval required: Access for Ada Lovelace"

        assert scheduler.process_waiting_workflows().processed == 0
        engine.approvals.process_approval_decision(chain.id, "grace@example.com", ApprovalDecisionType.APPROVE)
        assert scheduler.process_waiting_workflows().succeeded == 1

        instance = engine.get_instance(instance.id)
        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.variables["approval_status"] == "Approved"
        assert instance.variables["approval_chain_id"] == chain.id

    def test_rejection_fails_the_instance(self, engine, store, scheduler):
        instance = _start(engine, self._definition())
        chain = store.list_approval_chains(instance_id=instance.id)[0]

        engine.approvals.process_approval_decision(
            chain.id, "grace@example.com", ApprovalDecisionType.REJECT, comments="no budget",
        )
        scheduler.process_waiting_workflows()

        instance = engine.get_instance(instance.id)
        assert instance.status == WorkflowStatus.FAILED
        assert instance.error_code == APPROVAL_REJECTED
        assert instance.error_message == "Rejected by grace@example.com: no budget"


class TestTimeouts:
    @staticmethod
    def _definition(wait_config=None, **wait_extra):
        wait_extra.setdefault("timeout_hours", 24)
        return make_definition([
            start(),
            step("tasks", "AssignTasks", 2, {"tasks": [{"title": "Laptop", "assignee": "it.desk"}]}),
            step("wait", "WaitForTasks", 3, wait_config, **wait_extra),
            end(),
        ])

    def test_timeout_is_set_on_wait(self, engine, clock):
        instance = _start(engine, self._definition())
        assert instance.timeout_at == datetime(2024, 3, 5, 9, 0, tzinfo=UTC)

    def test_not_yet_due(self, engine, scheduler, clock):
        instance = _start(engine, self._definition())
        clock.advance(hours=23)
        assert scheduler.process_timeouts().processed == 0
        assert engine.get_instance(instance.id).status == WorkflowStatus.WAITING_FOR_TASK

    def test_default_is_fail(self, engine, scheduler, clock, store):
        instance = _start(engine, self._definition())
        clock.advance(hours=25)
        assert scheduler.process_timeouts().succeeded == 1

        instance = engine.get_instance(instance.id)
        assert instance.status == WorkflowStatus.FAILED
        assert instance.error_code == WAIT_TIMEOUT
        assert "Step Timed Out" in _actions(store, instance.id)

    def test_skip_action(self, engine, scheduler, clock):
        instance = _start(engine, self._definition({"on_timeout_action": "skip"}))
        clock.advance(hours=25)
        scheduler.process_timeouts()

        assert engine.get_instance(instance.id).status == WorkflowStatus.COMPLETED
        assert _statuses(engine, instance.id)["wait"].status == StepState.SKIPPED

    def test_escalate_action(self, engine, scheduler, clock, channel, store):
        instance = _start(engine, self._definition({"on_timeout_action": "escalate", "escalate_to": "it.lead"}))
        clock.advance(hours=25)
        scheduler.process_timeouts()

        instance = engine.get_instance(instance.id)
        assert instance.status == WorkflowStatus.WAITING_FOR_TASK
        assert instance.timeout_at == datetime(2024, 3, 6, 10, 0, tzinfo=UTC)
        assert channel.to("it.lead")[0]["subject"] == "Escalation: Wait is overdue"
        assert "Step Escalated" in _actions(store, instance.id)

    def test_on_timeout_transition(self, engine, scheduler, clock, channel):
        definition = make_definition([
            start(),
            step("tasks", "AssignTasks", 2, {"tasks": [{"title": "Laptop", "assignee": "it.desk"}]}),
            step("wait", "WaitForTasks", 3, on_complete=goto("end"), on_timeout=goto("chase"), timeout_hours=24),
            step("chase", "Notification", 4, {"recipients": ["hr.lead"], "message": "Laptop overdue"}),
            end(),
        ])
        instance = _start(engine, definition)
        clock.advance(hours=25)
        scheduler.process_timeouts()

        assert engine.get_instance(instance.id).status == WorkflowStatus.COMPLETED
        assert _statuses(engine, instance.id)["wait"].result["timed_out"] is True
        assert channel.to("hr.lead")[0]["body"] == "Laptop overdue"


class TestLifecycle:
    def test_cancel_cancels_timers_and_steps(self, engine, store):
        definition = make_definition([start(), step("cooldown", "Wait", 2, {"duration_hours": 2}), end()])
        instance = _start(engine, definition)

        instance = engine.cancel_workflow(instance.id, reason="offer withdrawn", cancelled_by="hr.admin")

        assert instance.status == WorkflowStatus.CANCELLED
        assert instance.cancel_reason == "offer withdrawn"
        items = store.list_scheduled_items(instance_id=instance.id)
        assert items and all(i.status == ScheduledItemStatus.CANCELLED for i in items)
        assert _statuses(engine, instance.id)["cooldown"].status == StepState.CANCELLED
        assert "Workflow Cancelled" in _actions(store, instance.id)

    def test_only_running_instances_pause(self, engine):
        definition = make_definition([start(), step("cooldown", "Wait", 2, {"duration_hours": 2}), end()])
        instance = _start(engine, definition)
        with pytest.raises(InvalidStateError):
            engine.pause_workflow(instance.id)

    def test_paused_instance_keeps_its_timer_until_resumed(self, engine, store, scheduler, clock):
        attempts = []

        def flaky(params, ctx):
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("timeout")
            return {}

        engine.register_action("provision", flaky)
        instance = _start(engine, make_definition([start(), _failing_action(error_policy={"action": "retry"}), end()]))
        engine.pause_workflow(instance.id)

        clock.advance(minutes=30)
        scheduler.tick()
        assert engine.get_instance(instance.id).status == WorkflowStatus.PAUSED
        timer = store.list_scheduled_items(instance_id=instance.id)[0]
        assert timer.status == ScheduledItemStatus.PENDING

        engine.resume_workflow(instance.id)
        assert engine.get_instance(instance.id).status == WorkflowStatus.COMPLETED
        assert store.get_scheduled_item(timer.id).status == ScheduledItemStatus.CANCELLED


class TestParallel:
    @staticmethod
    def _definition(join_type="all", first_branch=None):
        first_branch = first_branch or step(
            "laptop", "SetVariable", 3, {"assignments": {"asset": "LT-1"}}, on_complete=goto("after"),
        )
        return make_definition([
            start(),
            step("fan", "Parallel", 2, {
                "branches": [first_branch["id"], "badge"], "join_type": join_type, "join_step": "after",
            }),
            first_branch,
            step("badge", "SetVariable", 4, {"assignments": {"badge": "B-7"}}, on_complete=goto("after")),
            step("after", "SetVariable", 5, {"assignments": {"joined": "yes"}}),
            end(),
        ])

    @staticmethod
    def _approval_branch():
        return step("approve", "Approval", 3, {"approvers": ["grace"]}, on_complete=goto("after"))

    def test_all_join_merges_branch_outputs(self, engine, store):
        instance = _start(engine, self._definition())

        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.variables["branch_0_output"] == {"asset": "LT-1"}
        assert instance.variables["branch_1_output"] == {"badge": "B-7"}
        assert instance.variables["joined"] == "yes"
        assert "Parallel Joined" in _actions(store, instance.id)

    def test_all_join_waits_for_approval_branch(self, engine, store, scheduler):
        instance = _start(engine, self._definition(first_branch=self._approval_branch()))
        assert instance.status == WorkflowStatus.WAITING_FOR_APPROVAL
        assert instance.current_step_id == "approve"

        chain = store.list_approval_chains(instance_id=instance.id)[0]
        engine.approvals.process_approval_decision(chain.id, "grace", ApprovalDecisionType.APPROVE)
        scheduler.process_waiting_workflows()

        instance = engine.get_instance(instance.id)
        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.variables["branch_0_output"]["approval_status"] == "Approved"
        assert instance.variables["branch_1_output"] == {"badge": "B-7"}

    def test_any_join_does_not_wait_for_slow_branch(self, engine):
        instance = _start(engine, self._definition("any", first_branch=self._approval_branch()))

        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.variables["branch_1_output"] == {"badge": "B-7"}
        assert "branch_0_output" not in instance.variables

    def test_branch_reported_from_outside(self, engine):
        instance = _start(engine, self._definition(first_branch=self._approval_branch()))

        engine.complete_parallel_branch(instance.id, "fan", "approve", output={"manual": True})

        instance = engine.get_instance(instance.id)
        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.variables["branch_0_output"] == {"manual": True}

    def test_failed_branch_fails_all_join(self, engine):
        bad = step("bad", "Action", 3, {"action_name": "nope"}, on_complete=goto("after"))
        instance = _start(engine, self._definition(first_branch=bad))

        assert instance.status == WorkflowStatus.FAILED
        assert instance.error_code == PARALLEL_BRANCH_FAILED
        assert instance.error_step_id == "fan"
        assert _statuses(engine, instance.id)["bad"].status == StepState.FAILED

    def test_join_without_join_step_completes(self, engine):
        definition = make_definition([
            start(),
            step("fan", "Parallel", 2, {"branches": ["a", "b"]}),
            step("a", "SetVariable", 3, {"assignments": {"x": 1}}, on_complete={"type": "End"}),
            step("b", "SetVariable", 4, {"assignments": {"y": 2}}, on_complete={"type": "End"}),
            end(),
        ])
        instance = _start(engine, definition)

        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.variables["branch_0_output"] == {"x": 1}
        assert instance.variables["branch_1_output"] == {"y": 2}

    def test_order_fallthrough_stops_at_sibling_branch(self, engine):
        calls = []

        def record(params, ctx):
            calls.append(params["step"])
            return {f"{params['step']}_done": True}

        engine.register_action("record", record)
        definition = make_definition([
            start(),
            step("fan", "Parallel", 2, {"branches": ["a", "b"], "join_step": "after"}),
            step("a", "Action", 3, {"action_name": "record", "parameters": {"step": "a"}}),
            step("b", "Action", 4, {"action_name": "record", "parameters": {"step": "b"}}),
            step("after", "SetVariable", 5, {"assignments": {"joined": "yes"}}),
            end(),
        ])
        instance = _start(engine, definition)

        assert calls == ["a", "b"]
        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.variables["branch_0_output"] == {"a_done": True}
        assert instance.variables["branch_1_output"] == {"b_done": True}
        assert instance.variables["joined"] == "yes"


class TestOtherStepTypes:
    def test_for_each_runs_body_per_item(self, engine):
        engine.register_action("revoke_access", lambda params, ctx: {"revoked": params["system"]})
        definition = make_definition([
            start(),
            step("loop", "ForEach", 2, {"collection_field": "systems", "item_variable": "system", "step_id": "revoke"}),
            end(),
            step("revoke", "Action", 100, {"action_name": "revoke_access", "parameters": {"system": "{{system}}"}}),
        ])
        instance = _start(engine, definition, variables={"systems": ["github", "slack"]})

        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.variables["loop_results"] == [{"revoked": "github"}, {"revoked": "slack"}]

    def test_call_workflow_waits_for_child(self, engine, store, scheduler, clock):
        engine.definitions.save(make_definition(
            [start(), step("cooldown", "Wait", 2, {"duration_hours": 1}), end()], code="BADGE-ISSUE",
        ))
        parent_definition = make_definition([
            start(),
            step("call", "CallWorkflow", 2, {
                "workflow_code": "BADGE-ISSUE",
                "input_mapping": {"holder": "employeeName"},
                "wait_for_completion": True,
            }),
            end(),
        ])
        parent = _start(engine, parent_definition)
        assert parent.status == WorkflowStatus.WAITING_FOR_INPUT

        child = next(i for i in store.list_instances() if i.definition_code == "BADGE-ISSUE")
        assert child.parent_instance_id == parent.id
        assert child.variables["holder"] == "Ada Lovelace"

        clock.advance(hours=1)
        scheduler.tick()

        parent = engine.get_instance(parent.id)
        assert parent.status == WorkflowStatus.COMPLETED
        assert parent.variables["child_status"] == "Completed"
        assert parent.variables["child_variables"]["holder"] == "Ada Lovelace"

    def test_call_workflow_fire_and_forget(self, engine):
        engine.definitions.save(make_definition(
            [start(), step("cooldown", "Wait", 2, {"duration_hours": 1}), end()], code="BADGE-ISSUE",
        ))
        parent = _start(engine, make_definition([
            start(), step("call", "CallWorkflow", 2, {"workflow_code": "BADGE-ISSUE"}), end(),
        ]))

        assert parent.status == WorkflowStatus.COMPLETED
        child = engine.get_instance(parent.variables["child_instance_id"])
        assert child.status == WorkflowStatus.WAITING_FOR_INPUT
        assert child.parent_instance_id is None

    def test_failed_child_fails_parent(self, engine):
        engine.definitions.save(make_definition([start(), _failing_action(), end()], code="BROKEN"))
        parent = _start(engine, make_definition([
            start(), step("call", "CallWorkflow", 2, {"workflow_code": "BROKEN", "wait_for_completion": True}), end(),
        ]))
        assert parent.status == WorkflowStatus.FAILED
        assert parent.error_code == CHILD_WORKFLOW_FAILED

    def test_webhook_renders_request(self, engine):
        definition = make_definition([
            start(),
            step("hook", "Webhook", 2, {
                "url": "https://hooks.example.com/joiners/{{processId}}",
                "method": "put",
                "body_template": '{"name": "{{employeeName}}"}',
                "headers": {"X-Department": "{{department}}"},
            }),
            end(),
        ])
        instance = _start(engine, definition, process_id="REQ-42")

        assert engine.webhook_sender.sent == [{
            "url": "https://hooks.example.com/joiners/REQ-42",
            "method": "PUT",
            "body": '{"name": "Ada Lovelace"}',
            "headers": {"X-Department": "Engineering"},
        }]
        assert instance.variables["webhook_response"] == {"status": "recorded"}

    def test_undeliverable_notification_is_dead_lettered_and_replayed(self, engine, queue, scheduler, channel):
        channel.failures = 10
        instance = _start(engine, linear_definition())

        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.variables["notification_delivered"] is False
        item = queue.get(instance.variables["notification_dead_letter_id"])
        assert item.operation_type == "notification"
        assert item.context == {"instance_id": instance.id}

        channel.failures = 0
        scheduler.tick()

        assert queue.get(item.id).status == DeadLetterStatus.RESOLVED
        assert channel.subjects() == ["New joiner"]


def test_definition_saved_on_first_start(engine, store):
    definition = linear_definition(status="Published")
    _start(engine, definition)
    assert store.get_definition("JOINER-ONBOARD", "1.0.0").status == DefinitionStatus.PUBLISHED
