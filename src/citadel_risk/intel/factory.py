# PRD: Intel Module - Connector Factory
# Reference: docs/ARCHITECTURE.md, Section: Connector Registry
#
# Builds FeedConnector instances from plain config dicts (JSON config
# file or CLI) and provides the built-in defaults for the public feeds.

import logging
from typing import Any, Callable, Dict, List, Union

from .cisa_kev import CisaKevSource
from .cisa_kev import DEFAULT_URL as CISA_KEV_URL
from .connector import FeedConnector, FeedSource
from .models import FeedConfig
from .nvd import DEFAULT_URL as NVD_URL
from .nvd import NvdSource
from .otx import DEFAULT_URL as OTX_URL
from .otx import OtxSource
from .stix_taxii import StixTaxiiSource

logger = logging.getLogger(__name__)

SOURCE_TYPES: Dict[str, Callable[[FeedConfig], FeedSource]] = {
    "cisa_kev": CisaKevSource,
    "nvd": NvdSource,
    "otx": OtxSource,
    "stix_taxii": StixTaxiiSource,
}


def default_feed_configs() -> List[Dict[str, Any]]:
    """Built-in public feeds. OTX is disabled until an API key is set."""
    return [
        {
            "id": "cisa-kev",
            "name": "CISA Known Exploited Vulnerabilities",
            "type": "cisa_kev",
            "url": CISA_KEV_URL,
            "polling_interval": 86400,
            "timeout": 30,
            "retry_attempts": 3,
            "retry_delay": 5,
        },
        {
            "id": "nvd",
            "name": "NIST National Vulnerability Database",
            "type": "nvd",
            "url": NVD_URL,
            "polling_interval": 21600,
            "timeout": 45,
            "retry_attempts": 3,
            "retry_delay": 10,
        },
        {
            "id": "otx",
            "name": "AlienVault OTX",
            "type": "otx",
            "url": OTX_URL,
            "polling_interval": 3600,
            "timeout": 30,
            "retry_attempts": 3,
            "retry_delay": 5,
            "enabled": False,
        },
    ]


def create_connector(config: Union[FeedConfig, Dict[str, Any]]) -> FeedConnector:
    """Build a connector for ``config``.

    Raises:
        ValueError: unknown feed type or invalid config values.
    """
    if not isinstance(config, FeedConfig):
        config = FeedConfig.from_dict(config)
    source_cls = SOURCE_TYPES.get(config.type)
    if source_cls is None:
        raise ValueError(
            f"Unknown feed type {config.type!r} "
            f"(expected one of {', '.join(sorted(SOURCE_TYPES))})"
        )
    return FeedConnector(config, source_cls(config))


def create_connectors(configs: List[Dict[str, Any]]) -> List[FeedConnector]:
    """Build every valid connector, logging and skipping invalid configs."""
    connectors = []
    for raw in configs:
        try:
            connectors.append(create_connector(raw))
        except (KeyError, ValueError, TypeError) as exc:
            logger.error("Skipping feed config %s: %s", raw.get("id", "?"), exc)
    return connectors
