# PRD: Configuration - Settings Loader
# Reference: docs/ARCHITECTURE.md, Section: Configuration
#
# Settings come from, in increasing precedence:
#   1. built-in defaults (public feeds, thresholds)
#   2. a JSON config file (--config or CITADEL_RISK_CONFIG)
#   3. environment variables, including a local .env file
#
# API keys are never written to the config file; NVD_API_KEY,
# OTX_API_KEY and TAXII_USERNAME / TAXII_PASSWORD are injected into the
# matching feed configs at load time.

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv

from .intel.factory import default_feed_configs
from .risk.rules import DEFAULT_CREATE_THRESHOLD
from .risk.state_machine import AUTO_PROMOTE_THRESHOLD, HIGH_TRUST_SOURCES, HIGH_TRUST_THRESHOLD
from .risk.store import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)

CONFIG_ENV = "CITADEL_RISK_CONFIG"


@dataclass
class Settings:
    db_path: str = DEFAULT_DB_PATH
    audit_log_dir: str = "audit_logs"
    max_workers: int = 4
    auto_promote_threshold: float = AUTO_PROMOTE_THRESHOLD
    high_trust_threshold: float = HIGH_TRUST_THRESHOLD
    high_trust_sources: List[str] = field(default_factory=lambda: sorted(HIGH_TRUST_SOURCES))
    default_create_threshold: float = DEFAULT_CREATE_THRESHOLD
    feeds: List[Dict[str, Any]] = field(default_factory=default_feed_configs)
    rules: List[Dict[str, Any]] = field(default_factory=list)
    organization: Dict[str, Any] = field(default_factory=dict)
    # seconds between full rescoring passes in "serve"
    rescore_interval: float = 3600.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        unknown = sorted(set(data) - set(known))
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        return cls(**known)


def _apply_env(settings: Settings) -> None:
    if os.environ.get("CITADEL_RISK_DB"):
        settings.db_path = os.environ["CITADEL_RISK_DB"]
    if os.environ.get("CITADEL_RISK_AUDIT_DIR"):
        settings.audit_log_dir = os.environ["CITADEL_RISK_AUDIT_DIR"]
    if os.environ.get("CITADEL_RISK_MAX_WORKERS"):
        try:
            settings.max_workers = max(1, int(os.environ["CITADEL_RISK_MAX_WORKERS"]))
        except ValueError:
            logger.warning(
                "Ignoring invalid CITADEL_RISK_MAX_WORKERS=%r",
                os.environ["CITADEL_RISK_MAX_WORKERS"],
            )

    nvd_key = os.environ.get("NVD_API_KEY")
    otx_key = os.environ.get("OTX_API_KEY")
    taxii_user = os.environ.get("TAXII_USERNAME")
    taxii_pass = os.environ.get("TAXII_PASSWORD")
    for feed in settings.feeds:
        feed_type = feed.get("type")
        if feed_type == "nvd" and nvd_key and not feed.get("api_key"):
            feed["api_key"] = nvd_key
        elif feed_type == "otx" and otx_key and not feed.get("api_key"):
            # OTX ships disabled until a key is present
            feed["api_key"] = otx_key
            feed["enabled"] = True
        elif feed_type == "stix_taxii" and taxii_user:
            options = feed.setdefault("options", {})
            options.setdefault("username", taxii_user)
            if taxii_pass:
                options.setdefault("password", taxii_pass)


def load_settings(path: Optional[Union[str, Path]] = None) -> Settings:
    """Load settings from ``path`` (or $CITADEL_RISK_CONFIG) plus env.

    Raises:
        FileNotFoundError: an explicit config path does not exist.
        ValueError: the config file is not a JSON object.
    """
    load_dotenv()
    config_path = path or os.environ.get(CONFIG_ENV)
    data: Dict[str, Any] = {}
    if config_path:
        config_path = Path(config_path)
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_path} must contain a JSON object")
        logger.info("Loaded config from %s", config_path)

    settings = Settings.from_dict(data)
    _apply_env(settings)
    return settings
