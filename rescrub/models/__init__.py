from rescrub.models.deletion_request import (  # noqa: F401
    AnalysisResultModel,
    DecisionModel,
    DeletionRequestModel,
    InboundMessageModel,
    OutboundMessageModel,
    RequestTimelineModel,
)
from rescrub.models.evidence import EscalationPacketModel, EvidenceRecordModel  # noqa: F401
