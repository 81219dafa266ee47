"""Autopilot Kernel data models."""

from autopilot_kernel.models.compliance import (
    ComplianceReason,
    CompliancePolicy,
    ComplianceResult,
)
from autopilot_kernel.models.conversion import ConversionRequest, ConversionResult
from autopilot_kernel.models.crm import (
    Contact,
    Conversation,
    ConversationStatus,
    Message,
    MessageDirection,
    Workspace,
    WorkspaceSettings,
)
from autopilot_kernel.models.cycle import (
    CycleReport,
    DispatchOutcome,
    NextBestAction,
    PhaseReport,
)
from autopilot_kernel.models.decision import DEFAULT_ANALYSIS, Action, Analysis
from autopilot_kernel.models.ledger import (
    AutopilotEvent,
    BillingMeta,
    ComplianceMeta,
    ConversionMeta,
    DispatchMeta,
    ErrorMeta,
    EventStatus,
    HandoverMeta,
    RetryMeta,
)
from autopilot_kernel.models.scheduling import (
    BestTime,
    Confidence,
    RetryReason,
    RetryResult,
    TimeDistribution,
)

__all__ = [
    "Action",
    "Analysis",
    "AutopilotEvent",
    "BestTime",
    "BillingMeta",
    "ComplianceMeta",
    "CompliancePolicy",
    "ComplianceReason",
    "ComplianceResult",
    "Confidence",
    "Contact",
    "Conversation",
    "ConversationStatus",
    "ConversionMeta",
    "ConversionRequest",
    "ConversionResult",
    "CycleReport",
    "DEFAULT_ANALYSIS",
    "DispatchMeta",
    "DispatchOutcome",
    "ErrorMeta",
    "EventStatus",
    "HandoverMeta",
    "Message",
    "MessageDirection",
    "NextBestAction",
    "PhaseReport",
    "RetryMeta",
    "RetryReason",
    "RetryResult",
    "TimeDistribution",
    "Workspace",
    "WorkspaceSettings",
]
