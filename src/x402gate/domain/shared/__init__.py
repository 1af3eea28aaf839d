"""Shared domain interfaces.

This package is domain-accessible and should not depend on application code
at runtime.
"""

from .collaborators import (
    ComplianceChecker,
    ComplianceResult,
    EventDispatcher,
    MetricsSink,
    WebhookVerifier,
)
from .facilitator_client_protocol import FacilitatorClientProtocol

__all__ = [
    "ComplianceChecker",
    "ComplianceResult",
    "EventDispatcher",
    "FacilitatorClientProtocol",
    "MetricsSink",
    "WebhookVerifier",
]
