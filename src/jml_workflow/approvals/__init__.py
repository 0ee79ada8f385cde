"""Multi-level approval chains."""

from .chain import ApprovalChainService, ApprovalChainStatus, EscalationResult

__all__ = ["ApprovalChainService", "ApprovalChainStatus", "EscalationResult"]
