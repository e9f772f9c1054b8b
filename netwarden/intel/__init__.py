"""Intel package: threat rule table and finding classification."""

from .classify import classify, classify_all, network_risk_score, risk_level, summarize
from .rules import RULESET, RULESET_VERSION

__all__ = [
    "RULESET",
    "RULESET_VERSION",
    "classify",
    "classify_all",
    "network_risk_score",
    "risk_level",
    "summarize",
]
