"""Services package - export boundary protocols and in-process implementations."""

from luna.services.domain import DomainAPI, InMemoryDomainAPI
from luna.services.resolver import IntentResolver, KeywordIntentResolver
from luna.services.telemetry import TelemetryCollector

__all__ = [
    "DomainAPI",
    "InMemoryDomainAPI",
    "IntentResolver",
    "KeywordIntentResolver",
    "TelemetryCollector",
]
