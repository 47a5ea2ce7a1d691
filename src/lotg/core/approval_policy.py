"""Confidence-driven auto-approval policy for extracted questions."""

import os
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
import structlog

from .models import QuestionStatus

logger = structlog.get_logger(__name__)

AUTO_APPROVE_THRESHOLD = 0.95


class AutoApprovalPolicy(BaseModel):
    """Settings for deciding the initial status of an extracted question."""
    name: str = "default"
    description: str = "Auto-approve extractions the model is highly confident about"
    auto_approve_threshold: float = Field(AUTO_APPROVE_THRESHOLD, ge=0.0, le=1.0)
    enabled: bool = True


@dataclass
class ApprovalDecision:
    """Initial status chosen for one candidate."""
    status: QuestionStatus
    auto_approved: bool
    confidence: float
    threshold: float


class ApprovalPolicyEngine:
    """Decide whether a candidate skips human review."""

    def __init__(self, policy_path: Optional[str] = None, policy: Optional[AutoApprovalPolicy] = None):
        """Initialize with an explicit policy, a policy file, or the default."""
        self.policy = policy or self._load_policy(policy_path)

    def _load_policy(self, policy_path: Optional[str] = None) -> AutoApprovalPolicy:
        """Load policy from file or use default."""
        if policy_path and Path(policy_path).exists():
            try:
                with open(policy_path, 'r') as f:
                    policy_data = json.load(f)
                return AutoApprovalPolicy(**policy_data)
            except (OSError, ValueError) as e:
                logger.warning("approval_policy_load_failed", policy_path=policy_path, error=str(e))

        return AutoApprovalPolicy()

    @property
    def threshold(self) -> float:
        return self.policy.auto_approve_threshold

    def decide(self, confidence: float) -> ApprovalDecision:
        """Approve at or above the threshold; everything else waits for review."""
        auto_approved = self.policy.enabled and confidence >= self.threshold
        return ApprovalDecision(
            status=QuestionStatus.APPROVED if auto_approved else QuestionStatus.PENDING_REVIEW,
            auto_approved=auto_approved,
            confidence=confidence,
            threshold=self.threshold,
        )


def load_policy_from_env() -> ApprovalPolicyEngine:
    """Load policy engine from environment configuration."""
    policy_path = os.getenv("APPROVAL_POLICY_PATH")
    return ApprovalPolicyEngine(policy_path)
