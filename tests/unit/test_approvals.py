"""Tests for multi-level approval chains and escalation."""

import pytest

from jml_workflow.approvals.chain import ApprovalChainService, get_approval_status
from jml_workflow.core.models import ApprovalDecisionType, ApprovalStatus
from jml_workflow.errors.exceptions import InvalidStateError
from jml_workflow.workflow.definition import ApprovalLevelConfig, ApprovalType


APPROVE = ApprovalDecisionType.APPROVE
REJECT = ApprovalDecisionType.REJECT


@pytest.fixture
def service(store, clock, notifications):
    return ApprovalChainService(store, clock, notifications)


def _two_levels(**first_overrides):
    first = dict(approvers=["manager"], escalation_days=2, escalation_approvers=["director"])
    first.update(first_overrides)
    return [ApprovalLevelConfig(**first), ApprovalLevelConfig(approvers=["hr", "security"])]


class TestTwoLevelChain:
    def test_level_one_then_level_two(self, service, channel):
        chain = service.create_approval_chain(_two_levels(), title="Contractor access", instance_id="wf-1")
        assert chain.current_level == 1
        assert channel.to("manager")[0]["subject"] == "Approval required: Contractor access"

        chain = service.process_approval_decision(chain.id, "Manager", APPROVE)
        assert chain.current_level == 2
        assert chain.status == ApprovalStatus.PENDING
        assert len(channel.to("hr")) == 1
        assert len(channel.to("security")) == 1

        chain = service.process_approval_decision(chain.id, "hr", APPROVE)
        assert chain.status == ApprovalStatus.PENDING

        chain = service.process_approval_decision(chain.id, "security", APPROVE, comments="ok")
        assert chain.status == ApprovalStatus.APPROVED
        assert chain.completed_at is not None
        assert get_approval_status(chain).is_complete

    def test_rejection_at_any_level_is_final(self, service):
        chain = service.create_approval_chain(_two_levels(), title="Access")
        chain = service.process_approval_decision(chain.id, "manager", REJECT, comments="not needed")

        assert chain.status == ApprovalStatus.REJECTED
        assert chain.rejected_by == "manager"
        assert chain.rejection_comments == "not needed"
        with pytest.raises(InvalidStateError):
            service.process_approval_decision(chain.id, "manager", APPROVE)

    def test_without_auto_progress_level_waits(self, service):
        chain = service.create_approval_chain(_two_levels())
        chain = service.process_approval_decision(chain.id, "manager", APPROVE, auto_progress=False)
        assert chain.current_level == 1
        assert get_approval_status(chain).can_progress

        chain = service.progress_to_next_level(chain.id)
        assert chain.current_level == 2

    def test_cannot_progress_unapproved_level(self, service):
        chain = service.create_approval_chain(_two_levels())
        with pytest.raises(InvalidStateError):
            service.progress_to_next_level(chain.id)


class TestDecisionRules:
    def test_non_approver_rejected(self, service):
        chain = service.create_approval_chain(_two_levels())
        with pytest.raises(InvalidStateError, match="not an approver"):
            service.process_approval_decision(chain.id, "hr", APPROVE)

    def test_duplicate_decision_rejected(self, service):
        levels = [ApprovalLevelConfig(approvers=["a", "b"])]
        chain = service.create_approval_chain(levels)
        service.process_approval_decision(chain.id, "a", APPROVE)
        with pytest.raises(InvalidStateError, match="already decided"):
            service.process_approval_decision(chain.id, "A", APPROVE)

    def test_any_level_needs_one_approval(self, service):
        levels = [ApprovalLevelConfig(approvers=["a", "b"], approval_type=ApprovalType.ANY)]
        chain = service.create_approval_chain(levels)
        chain = service.process_approval_decision(chain.id, "b", APPROVE)
        assert chain.status == ApprovalStatus.APPROVED

    def test_empty_chain_not_allowed(self, service):
        with pytest.raises(InvalidStateError):
            service.create_approval_chain([])


class TestEscalation:
    def test_overdue_level_escalates_once(self, service, clock, channel):
        chain = service.create_approval_chain(_two_levels(), title="Access", instance_id="wf-1")

        clock.advance(days=1)
        assert service.process_overdue_approvals() == []

        clock.advance(days=1, hours=1)
        results = service.process_overdue_approvals()
        assert len(results) == 1
        assert results[0].escalated_to == ["director"]
        assert results[0].days_overdue == 2
        assert channel.to("director")[0]["subject"] == "Escalated approval: Access"
        assert channel.to("director")[0]["priority"].value == "Urgent"
        assert any(n["subject"] == "Reminder: Access" for n in channel.to("manager"))

        clock.advance(days=5)
        assert service.process_overdue_approvals() == []

        stored = service.get_chain(chain.id)
        assert stored.get_level(1).escalated

    def test_escalation_approver_can_decide(self, service, clock):
        chain = service.create_approval_chain(_two_levels(), title="Access")
        clock.advance(days=3)
        service.process_overdue_approvals()

        chain = service.process_approval_decision(chain.id, "director", APPROVE)
        assert chain.current_level == 2

    def test_original_approver_still_counts_after_escalation(self, service, clock):
        chain = service.create_approval_chain(_two_levels(), title="Access")
        clock.advance(days=3)
        service.process_overdue_approvals()

        chain = service.process_approval_decision(chain.id, "manager", APPROVE)
        assert chain.current_level == 2

    def test_level_without_escalation_config_is_left_alone(self, service, clock):
        service.create_approval_chain([ApprovalLevelConfig(approvers=["a"])])
        clock.advance(days=30)
        assert service.process_overdue_approvals() == []
