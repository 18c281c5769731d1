# PRD: Intel Module - Threat Feed Ingestion
# Reference: docs/ARCHITECTURE.md
#
# Canonical indicator models, feed connectors (CISA KEV, NVD, OTX,
# STIX/TAXII 2.1) and the registry that schedules them.

from .models import (
    TLP,
    ConnectorHealth,
    FeedConfig,
    FilterRules,
    Indicator,
    IndicatorContext,
    IndicatorType,
    Reliability,
    Severity,
    SyncResult,
    stable_indicator_id,
)
from .validation import IndicatorValidator, normalize_confidence
from .throttle import RateLimiter, RetryPolicy
from .connector import (
    CircuitOpen,
    ConnectorDisabled,
    FeedConnector,
    FeedError,
    FeedHttpClient,
    FeedSource,
    FeedUnavailable,
    SyncAbandoned,
    SyncToken,
)
from .cisa_kev import CisaKevSource
from .nvd import NvdSource
from .otx import OtxSource
from .stix_taxii import StixTaxiiSource, TaxiiDiscoveryError, parse_stix_pattern
from .factory import create_connector, create_connectors, default_feed_configs
from .registry import ConnectorRegistry, SyncReport, UnknownConnector

__all__ = [
    "TLP",
    "ConnectorHealth",
    "FeedConfig",
    "FilterRules",
    "Indicator",
    "IndicatorContext",
    "IndicatorType",
    "Reliability",
    "Severity",
    "SyncResult",
    "stable_indicator_id",
    "IndicatorValidator",
    "normalize_confidence",
    "RateLimiter",
    "RetryPolicy",
    "CircuitOpen",
    "ConnectorDisabled",
    "FeedConnector",
    "FeedError",
    "FeedHttpClient",
    "FeedSource",
    "FeedUnavailable",
    "SyncAbandoned",
    "SyncToken",
    "CisaKevSource",
    "NvdSource",
    "OtxSource",
    "StixTaxiiSource",
    "TaxiiDiscoveryError",
    "parse_stix_pattern",
    "create_connector",
    "create_connectors",
    "default_feed_configs",
    "ConnectorRegistry",
    "SyncReport",
    "UnknownConnector",
]
