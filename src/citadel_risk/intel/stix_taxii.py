# PRD: Intel Module - Generic STIX 2.1 / TAXII 2.1 Feed
# Reference: docs/ARCHITECTURE.md, Section: External Interfaces
#
# TAXII flow:
#   discovery document -> api_roots[0] -> {root}collections/
#   -> pick collection (configured id, configured title, or first)
#   -> {root}collections/{id}/objects/?added_after=...&limit=1000
#   -> follow envelope pagination ("more" + "next")
#
# STIX handling:
#   - indicator patterns are split on AND/OR and matched against a fixed
#     set of object paths (file hashes, domain-name, url, ipv4/ipv6-addr,
#     email, file:name)
#   - relationship objects enrich indicators with malware, intrusion-set,
#     campaign and attack-pattern context before emission

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .connector import FeedError, FeedHttpClient, FeedSource
from .models import (
    TLP,
    FeedConfig,
    Indicator,
    IndicatorContext,
    IndicatorType,
    Reliability,
    Severity,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

TAXII_ACCEPT = "application/taxii+json;version=2.1"
PAGE_LIMIT = 1000
DEFAULT_MAX_PAGES = 10


class TaxiiDiscoveryError(FeedError):
    """Discovery or collection selection failed."""


# Ordered: the first matching object path wins for an expression.
PATTERN_PATHS: List[Tuple[re.Pattern, IndicatorType]] = [
    (re.compile(r"file:hashes\.'?MD5'?\s*=\s*'([^']+)'"), IndicatorType.HASH),
    (re.compile(r"file:hashes\.'?SHA-1'?\s*=\s*'([^']+)'"), IndicatorType.HASH),
    (re.compile(r"file:hashes\.'?SHA-256'?\s*=\s*'([^']+)'"), IndicatorType.HASH),
    (re.compile(r"domain-name:value\s*=\s*'([^']+)'"), IndicatorType.DOMAIN),
    (re.compile(r"url:value\s*=\s*'([^']+)'"), IndicatorType.URL),
    (re.compile(r"ipv4-addr:value\s*=\s*'([^']+)'"), IndicatorType.IP),
    (re.compile(r"ipv6-addr:value\s*=\s*'([^']+)'"), IndicatorType.IP),
    (re.compile(r"email-message:sender_ref\.value\s*=\s*'([^']+)'"), IndicatorType.EMAIL),
    (re.compile(r"email-addr:value\s*=\s*'([^']+)'"), IndicatorType.EMAIL),
    (re.compile(r"file:name\s*=\s*'([^']+)'"), IndicatorType.FILE_PATH),
]

_BOOLEAN_SPLIT = re.compile(r"\s+(?:AND|OR)\s+")

LABEL_SEVERITY = {
    "malicious-activity": Severity.HIGH,
    "suspicious-activity": Severity.MEDIUM,
    "benign": Severity.LOW,
    "attribution": Severity.MEDIUM,
}

SOURCE_RELIABILITY = [
    ("misp", Reliability.B),
    ("opencti", Reliability.B),
    ("anomali", Reliability.A),
    ("threatconnect", Reliability.A),
    ("crowdstrike", Reliability.A),
]

# Well-known STIX 2.1 TLP marking-definition ids
TLP_MARKING_IDS = {
    "marking-definition--613f2e26-407d-48c7-9eca-b8e91df99dc9": TLP.WHITE,
    "marking-definition--34098fce-860f-48ae-8e50-ebd3cc5e41da": TLP.GREEN,
    "marking-definition--f88d31f6-486f-44da-b317-01333bde0b82": TLP.AMBER,
    "marking-definition--5e57c739-391a-4eb3-b6be-7d15ca92d5ed": TLP.RED,
}


def parse_stix_pattern(pattern: str) -> List[Tuple[IndicatorType, str]]:
    """Extract (type, value) observables from a STIX pattern.

    Example::

        >>> parse_stix_pattern("[ipv4-addr:value = '1.2.3.4'] OR [domain-name:value = 'x.com']")
        [(IndicatorType.IP, '1.2.3.4'), (IndicatorType.DOMAIN, 'x.com')]
    """
    observables: List[Tuple[IndicatorType, str]] = []
    clean = re.sub(r"[\[\]()]", "", pattern or "")
    for expr in _BOOLEAN_SPLIT.split(clean):
        for regex, indicator_type in PATTERN_PATHS:
            match = regex.search(expr)
            if match:
                observables.append((indicator_type, match.group(1)))
                break
    return observables


def map_label_severity(labels: Optional[List[str]]) -> Severity:
    for label in labels or []:
        if label in LABEL_SEVERITY:
            return LABEL_SEVERITY[label]
    return Severity.MEDIUM


def map_source_reliability(feed_name: str) -> Reliability:
    lower = (feed_name or "").lower()
    for key, grade in SOURCE_RELIABILITY:
        if key in lower:
            return grade
    return Reliability.C


def kill_chain_phase(phases: Optional[List[Dict[str, str]]]) -> Optional[str]:
    if not phases:
        return None
    for phase in phases:
        if phase.get("kill_chain_name") in ("mitre-attack", "kill-chain"):
            return phase.get("phase_name")
    return phases[0].get("phase_name")


def _external_id(obj: Dict[str, Any]) -> Optional[str]:
    for ref in obj.get("external_references") or []:
        if ref.get("source_name") == "mitre-attack" and ref.get("external_id"):
            return ref["external_id"]
    return None


class StixTaxiiSource(FeedSource):
    """TAXII 2.1 collection source emitting STIX 2.1 indicators.

    ``config.url`` is the TAXII discovery URL. Options:
        collection_id / collection_name: which collection to poll
        username / password: HTTP basic auth
        max_pages: envelope page cap (default 10)
    """

    def __init__(self, config: FeedConfig):
        super().__init__(config)
        self._api_root: Optional[str] = None
        self._collection_id: Optional[str] = config.options.get("collection_id")
        self._max_pages = int(config.options.get("max_pages", DEFAULT_MAX_PAGES))

    def request_budget(self) -> int:
        # discovery + collections listing + object pages
        return 2 + max(1, self._max_pages)

    @property
    def _auth(self) -> Optional[httpx.BasicAuth]:
        username = self.config.options.get("username")
        password = self.config.options.get("password")
        if username and password:
            return httpx.BasicAuth(username, password)
        return None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": TAXII_ACCEPT}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    # ------------------------------------------------------------------
    # TAXII
    # ------------------------------------------------------------------

    def discover(self, http: FeedHttpClient) -> str:
        """Resolve the API root from the discovery document."""
        discovery = http.get_json(self.config.url, headers=self._headers(), auth=self._auth)
        roots = discovery.get("api_roots") or []
        if not roots:
            raise TaxiiDiscoveryError(f"No API roots in TAXII discovery at {self.config.url}")
        root = roots[0]
        if not root.endswith("/"):
            root += "/"
        self._api_root = root
        return root

    def select_collection(self, http: FeedHttpClient) -> str:
        """Resolve the collection id by id, by title, or take the first."""
        data = http.get_json(
            f"{self._api_root}collections/", headers=self._headers(), auth=self._auth
        )
        collections = data.get("collections") or []
        wanted_id = self.config.options.get("collection_id")
        wanted_name = self.config.options.get("collection_name")

        if wanted_id:
            if not any(c.get("id") == wanted_id for c in collections):
                raise TaxiiDiscoveryError(f"Collection {wanted_id} not found")
            self._collection_id = wanted_id
        elif wanted_name:
            match = next((c for c in collections if c.get("title") == wanted_name), None)
            if match is None:
                raise TaxiiDiscoveryError(f'Collection "{wanted_name}" not found')
            self._collection_id = match["id"]
        elif collections:
            self._collection_id = collections[0]["id"]
        else:
            raise TaxiiDiscoveryError("No collections available")
        return self._collection_id

    def fetch_raw(self, http: FeedHttpClient, since: Optional[datetime] = None) -> Any:
        if self._api_root is None:
            self.discover(http)
        self.select_collection(http)

        url = f"{self._api_root}collections/{self._collection_id}/objects/"
        params: Dict[str, str] = {"limit": str(PAGE_LIMIT)}
        added_after = since.isoformat() if since else self.config.options.get("added_after")
        if added_after:
            params["added_after"] = added_after

        objects: List[Dict[str, Any]] = []
        for _ in range(self._max_pages):
            data = http.get_json(url, params=params, headers=self._headers(), auth=self._auth)
            if data.get("type") == "bundle":
                objects.extend(data.get("objects") or [])
                break
            if "objects" not in data and "more" not in data:
                raise TaxiiDiscoveryError("Unexpected response format from TAXII server")
            objects.extend(data.get("objects") or [])
            if data.get("more") and data.get("next"):
                params["next"] = str(data["next"])
                continue
            break
        return {"type": "bundle", "objects": objects}

    # ------------------------------------------------------------------
    # STIX
    # ------------------------------------------------------------------

    def parse(self, raw: Any) -> List[Indicator]:
        objects = (raw or {}).get("objects") or []
        by_id = {obj.get("id"): obj for obj in objects if obj.get("id")}
        relationships: Dict[str, List[Dict[str, Any]]] = {}
        for obj in objects:
            if obj.get("type") == "relationship":
                relationships.setdefault(obj.get("source_ref"), []).append(obj)

        indicators: List[Indicator] = []
        for obj in objects:
            if obj.get("type") != "indicator":
                continue
            context, extra_tags = self._enrich(obj["id"], by_id, relationships)
            context.kill_chain_phase = kill_chain_phase(obj.get("kill_chain_phases"))
            context.description = obj.get("description")
            labels = obj.get("labels") or obj.get("indicator_types") or []
            confidence = obj.get("confidence")
            for indicator_type, value in parse_stix_pattern(obj.get("pattern", "")):
                indicators.append(
                    Indicator(
                        source=self.config.id,
                        type=indicator_type,
                        value=value.strip(),
                        confidence=(
                            max(0.0, min(100.0, float(confidence)))
                            if isinstance(confidence, (int, float)) else 50.0
                        ),
                        severity=map_label_severity(labels),
                        first_seen=parse_timestamp(obj.get("valid_from") or obj.get("created")),
                        last_seen=parse_timestamp(obj.get("modified")),
                        tags=list(labels) + extra_tags,
                        context=IndicatorContext(**context.to_dict()),
                        source_reliability=map_source_reliability(self.config.name),
                        tlp=self._tlp(obj, by_id),
                    )
                )
        return indicators

    @staticmethod
    def _enrich(
        indicator_id: str,
        by_id: Dict[str, Dict[str, Any]],
        relationships: Dict[str, List[Dict[str, Any]]],
    ) -> Tuple[IndicatorContext, List[str]]:
        context = IndicatorContext()
        tags: List[str] = []
        for rel in relationships.get(indicator_id, []):
            target = by_id.get(rel.get("target_ref"))
            if target is None:
                continue
            rel_type = rel.get("relationship_type")
            target_type = target.get("type")
            name = target.get("name")
            if target_type == "malware" and rel_type in ("indicates", "related-to"):
                context.malware_family = name
                tags.append(f"malware:{name}")
            elif target_type == "intrusion-set" and rel_type in ("indicates", "attributed-to"):
                context.threat_actor = name
                tags.append(f"actor:{name}")
            elif target_type == "campaign" and rel_type in ("indicates", "related-to"):
                context.campaign = name
                tags.append(f"campaign:{name}")
            elif target_type == "attack-pattern" and rel_type == "indicates":
                context.attack_pattern = name
                context.mitre_technique = _external_id(target) or context.mitre_technique
        return context, tags

    @staticmethod
    def _tlp(obj: Dict[str, Any], by_id: Dict[str, Dict[str, Any]]) -> TLP:
        for ref in obj.get("object_marking_refs") or []:
            if ref in TLP_MARKING_IDS:
                return TLP_MARKING_IDS[ref]
            definition = by_id.get(ref) or {}
            tlp_name = (definition.get("definition") or {}).get("tlp") or definition.get("name", "")
            lower = f"{ref} {tlp_name}".lower()
            for tlp in (TLP.RED, TLP.AMBER, TLP.GREEN, TLP.WHITE):
                if tlp.value in lower:
                    return tlp
        return TLP.WHITE
