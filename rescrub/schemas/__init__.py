from rescrub.schemas.base import (  # noqa: F401
    TERMINAL_STATUSES,
    AnalysisResult,
    Classification,
    Decision,
    DecisionAction,
    DocumentType,
    EscalationPacket,
    Evidence,
    EvidenceRecord,
    InboundMessage,
    OutboundKind,
    OutboundMessage,
    PacketStatus,
    RequestStatus,
    ResponseType,
    ViolationType,
    to_naive_utc,
)
from rescrub.schemas.request import (  # noqa: F401
    ArchiveResponse,
    AutomationStats,
    CampaignStatus,
    ChainVerification,
    DecisionStats,
    DeletionRequestCreate,
    DeletionRequestResponse,
    EvidenceVerification,
    InboundMessageCreate,
    ProcessingOutcome,
    SweepReport,
    TimelineEvent,
)
