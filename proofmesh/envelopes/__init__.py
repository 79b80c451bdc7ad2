"""Envelope routing and delivery."""

from .models import (
    ANONYMOUS_SOURCES,
    ENVELOPE_STATUSES,
    SOURCE_TYPES,
    TARGET_TYPES,
    TERMINAL_ENVELOPE_STATUSES,
    EnvelopeStatus,
    EnvelopeView,
    TargetSpec,
    TargetView,
)
from .router import EnvelopeRouter, settle_status
from .sinks import DeliveryError, Sink, WebhookSink
from .worker import DeliveryWorker

__all__ = [
    "ANONYMOUS_SOURCES",
    "DeliveryError",
    "DeliveryWorker",
    "ENVELOPE_STATUSES",
    "EnvelopeRouter",
    "EnvelopeStatus",
    "EnvelopeView",
    "SOURCE_TYPES",
    "Sink",
    "TARGET_TYPES",
    "TERMINAL_ENVELOPE_STATUSES",
    "TargetSpec",
    "TargetView",
    "WebhookSink",
    "settle_status",
]
