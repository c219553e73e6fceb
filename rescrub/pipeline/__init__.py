"""
ReScrub deletion-request pipeline.

Operator reply → analyze → collect evidence → decide → escalation packet,
plus the sweep that sends follow-ups and regulator complaints.
"""
from rescrub.pipeline.analyzer import ResponseAnalyzer  # noqa: F401
from rescrub.pipeline.campaign import CampaignManager  # noqa: F401
from rescrub.pipeline.crypto import CryptoValidator, EvidenceSigner  # noqa: F401
from rescrub.pipeline.decision import DecisionEngine  # noqa: F401
from rescrub.pipeline.evidence import EvidenceCollector  # noqa: F401
from rescrub.pipeline.scheduler import EmailAutomationScheduler  # noqa: F401
