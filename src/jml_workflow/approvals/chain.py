"""Multi-level approval chains with time-based escalation."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from ..core.clock import Clock
from ..core.models import (
    ApprovalChain,
    ApprovalDecision,
    ApprovalDecisionType,
    ApprovalLevel,
    ApprovalStatus,
)
from ..errors.exceptions import InvalidStateError, NotFoundError
from ..notifications.channel import NotificationPriority, NotificationService
from ..storage.base import WorkflowStore
from ..workflow.definition import ApprovalLevelConfig, ApprovalType

logger = logging.getLogger(__name__)


@dataclass
class ApprovalChainStatus:
    overall: ApprovalStatus
    current_level: int
    level_statuses: Dict[int, ApprovalStatus] = field(default_factory=dict)
    can_progress: bool = False

    @property
    def is_complete(self) -> bool:
        return self.overall != ApprovalStatus.PENDING


@dataclass
class EscalationResult:
    chain_id: str
    level: int
    days_overdue: int
    escalated_to: List[str]
    original_approvers: List[str]
    escalated_at: datetime


def _eligible_approvers(level: ApprovalLevel) -> List[str]:
    if level.escalated:
        return list(level.approvers) + [a for a in level.escalation_approvers if a not in level.approvers]
    return list(level.approvers)


def get_level_status(level: ApprovalLevel) -> ApprovalStatus:
    """
    Rejected if anyone rejected. Otherwise:
    - all: every original approver approved, or, once escalated, every escalation approver
    - any: one approval from either group
    """
    if any(d.decision == ApprovalDecisionType.REJECT for d in level.decisions):
        return ApprovalStatus.REJECTED

    approved = {d.approver.lower() for d in level.decisions if d.decision == ApprovalDecisionType.APPROVE}
    originals = {a.lower() for a in level.approvers}
    escalation = {a.lower() for a in level.escalation_approvers} if level.escalated else set()

    if level.approval_type == ApprovalType.ANY:
        if approved & (originals | escalation):
            return ApprovalStatus.APPROVED
        return ApprovalStatus.PENDING

    if originals and originals <= approved:
        return ApprovalStatus.APPROVED
    if escalation and escalation <= approved:
        return ApprovalStatus.APPROVED
    return ApprovalStatus.PENDING


def get_approval_status(chain: ApprovalChain) -> ApprovalChainStatus:
    level_statuses = {level.level: get_level_status(level) for level in chain.levels}
    statuses = list(level_statuses.values())

    if any(s == ApprovalStatus.REJECTED for s in statuses):
        overall = ApprovalStatus.REJECTED
    elif statuses and all(s == ApprovalStatus.APPROVED for s in statuses):
        overall = ApprovalStatus.APPROVED
    else:
        overall = ApprovalStatus.PENDING

    current_status = level_statuses.get(chain.current_level, ApprovalStatus.PENDING)
    can_progress = (
        current_status == ApprovalStatus.APPROVED
        and overall != ApprovalStatus.APPROVED
        and chain.current_level < len(chain.levels)
    )
    return ApprovalChainStatus(
        overall=overall,
        current_level=chain.current_level,
        level_statuses=level_statuses,
        can_progress=can_progress,
    )


class ApprovalChainService:
    """Creates chains, records decisions, advances levels and escalates overdue ones."""

    def __init__(
        self,
        store: WorkflowStore,
        clock: Clock,
        notifications: Optional[NotificationService] = None,
    ):
        self.store = store
        self.clock = clock
        self.notifications = notifications

    def get_chain(self, chain_id: str) -> ApprovalChain:
        chain = self.store.get_approval_chain(chain_id)
        if chain is None:
            raise NotFoundError(f"Approval chain not found: {chain_id}")
        return chain

    def create_approval_chain(
        self,
        levels: List[ApprovalLevelConfig],
        title: str = "",
        instance_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> ApprovalChain:
        if not levels:
            raise InvalidStateError("An approval chain needs at least one level")

        now = self.clock.now()
        chain = ApprovalChain(
            instance_id=instance_id,
            step_id=step_id,
            title=title,
            levels=[
                ApprovalLevel(
                    level=i,
                    approvers=list(cfg.approvers),
                    approval_type=cfg.approval_type,
                    escalation_days=cfg.escalation_days,
                    escalation_approvers=list(cfg.escalation_approvers),
                )
                for i, cfg in enumerate(levels, start=1)
            ],
            current_level=1,
            level_started_at=now,
            created_at=now,
        )
        self.store.save_approval_chain(chain)
        self._notify_level(chain, chain.levels[0])
        logger.info(f"Created approval chain {chain.id} '{title}' with {len(levels)} level(s)")
        return chain

    def process_approval_decision(
        self,
        chain_id: str,
        approver: str,
        decision: ApprovalDecisionType,
        comments: Optional[str] = None,
        auto_progress: bool = True,
    ) -> ApprovalChain:
        chain = self.get_chain(chain_id)
        if chain.status != ApprovalStatus.PENDING:
            raise InvalidStateError(f"Approval chain {chain_id} is already {chain.status.value}")

        level = chain.get_level(chain.current_level)
        eligible = {a.lower() for a in _eligible_approvers(level)}
        if approver.lower() not in eligible:
            raise InvalidStateError(
                f"{approver} is not an approver for level {chain.current_level} of chain {chain_id}"
            )
        if any(d.approver.lower() == approver.lower() for d in level.decisions):
            raise InvalidStateError(f"{approver} has already decided on level {chain.current_level}")

        now = self.clock.now()
        level.decisions.append(ApprovalDecision(
            approver=approver,
            decision=ApprovalDecisionType(decision),
            comments=comments,
            decided_at=now,
        ))

        if decision == ApprovalDecisionType.REJECT:
            chain.status = ApprovalStatus.REJECTED
            chain.rejected_by = approver
            chain.rejection_comments = comments
            chain.completed_at = now
            self.store.save_approval_chain(chain)
            logger.info(f"Approval chain {chain_id} rejected by {approver} at level {level.level}")
            return chain

        status = get_approval_status(chain)
        if status.overall == ApprovalStatus.APPROVED:
            chain.status = ApprovalStatus.APPROVED
            chain.completed_at = now
        self.store.save_approval_chain(chain)

        if status.can_progress and auto_progress:
            return self.progress_to_next_level(chain_id)
        return chain

    def progress_to_next_level(self, chain_id: str) -> ApprovalChain:
        """Advance past an approved level, or mark the chain approved after the last."""
        chain = self.get_chain(chain_id)
        status = get_approval_status(chain)
        if status.level_statuses.get(chain.current_level) != ApprovalStatus.APPROVED:
            raise InvalidStateError(f"Level {chain.current_level} of chain {chain_id} is not approved yet")

        now = self.clock.now()
        if chain.current_level >= len(chain.levels):
            chain.status = ApprovalStatus.APPROVED
            chain.completed_at = now
            self.store.save_approval_chain(chain)
            return chain

        chain.current_level += 1
        chain.level_started_at = now
        self.store.save_approval_chain(chain)
        self._notify_level(chain, chain.get_level(chain.current_level))
        logger.info(f"Approval chain {chain_id} advanced to level {chain.current_level}")
        return chain

    def process_overdue_approvals(self, now: Optional[datetime] = None) -> List[EscalationResult]:
        """Add escalation approvers to levels pending longer than their escalation_days."""
        now = now or self.clock.now()
        results = []
        for chain in self.store.list_approval_chains(status=ApprovalStatus.PENDING):
            try:
                result = self._escalate_if_overdue(chain, now)
            except Exception as e:
                logger.error(f"Failed to escalate approval chain {chain.id}: {e}")
                continue
            if result is not None:
                results.append(result)
        return results

    def _escalate_if_overdue(self, chain: ApprovalChain, now: datetime) -> Optional[EscalationResult]:
        level = chain.get_level(chain.current_level)
        if level is None or level.escalated or not level.escalation_approvers:
            return None
        if level.escalation_days is None or chain.level_started_at is None:
            return None

        days_pending = int((now - chain.level_started_at).total_seconds() // 86400)
        if days_pending < level.escalation_days:
            return None

        level.escalated = True
        level.escalated_at = now
        self.store.save_approval_chain(chain)

        subject = f"Escalated approval: {chain.title or chain.id}"
        self._send(
            level.escalation_approvers, subject,
            f"Level {level.level} has been pending for {days_pending} day(s) and was escalated to you.",
            NotificationPriority.URGENT, chain.instance_id,
        )
        self._send(
            level.approvers, f"Reminder: {chain.title or chain.id}",
            f"Your approval has been pending for {days_pending} day(s) and was escalated.",
            NotificationPriority.NORMAL, chain.instance_id,
        )
        logger.warning(
            f"Approval chain {chain.id} level {level.level} escalated to "
            f"{', '.join(level.escalation_approvers)} after {days_pending} day(s)"
        )
        return EscalationResult(
            chain_id=chain.id,
            level=level.level,
            days_overdue=days_pending,
            escalated_to=list(level.escalation_approvers),
            original_approvers=list(level.approvers),
            escalated_at=now,
        )

    def _notify_level(self, chain: ApprovalChain, level: ApprovalLevel) -> None:
        self._send(
            level.approvers,
            f"Approval required: {chain.title or chain.id}",
            f"Your approval is requested (level {level.level} of {len(chain.levels)}).",
            NotificationPriority.NORMAL,
            chain.instance_id,
        )

    def _send(self, recipients, subject, body, priority, instance_id) -> None:
        if self.notifications is None or not recipients:
            return
        self.notifications.notify(list(recipients), subject, body, priority, instance_id=instance_id)
