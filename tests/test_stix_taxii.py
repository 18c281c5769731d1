"""
Tests for the STIX 2.1 / TAXII 2.1 feed source.

All HTTP calls are mocked; no external network access required.
Covers: pattern parsing, label/source/TLP mapping, relationship
enrichment, discovery, collection selection and envelope pagination.
"""

from unittest.mock import MagicMock

import httpx
import pytest

from citadel_risk.intel.models import (
    TLP,
    FeedConfig,
    IndicatorType,
    Reliability,
    Severity,
)
from citadel_risk.intel.stix_taxii import (
    TAXII_ACCEPT,
    StixTaxiiSource,
    TaxiiDiscoveryError,
    kill_chain_phase,
    map_label_severity,
    map_source_reliability,
    parse_stix_pattern,
)


# ===================================================================
# Fixtures & helpers
# ===================================================================

@pytest.fixture
def config():
    return FeedConfig(id="misp-taxii", type="stix_taxii", name="MISP Community",
                      url="https://taxii.example/taxii2/")


@pytest.fixture
def source(config):
    return StixTaxiiSource(config)


INDICATOR_ID = "indicator--11111111-1111-4111-8111-111111111111"
MALWARE_ID = "malware--22222222-2222-4222-8222-222222222222"
ACTOR_ID = "intrusion-set--33333333-3333-4333-8333-333333333333"
TECHNIQUE_ID = "attack-pattern--44444444-4444-4444-8444-444444444444"
AMBER = "marking-definition--f88d31f6-486f-44da-b317-01333bde0b82"


def _bundle():
    return {"type": "bundle", "objects": [
        {
            "type": "indicator",
            "id": INDICATOR_ID,
            "pattern": "[ipv4-addr:value = '198.51.100.20'] OR [domain-name:value = 'c2.example.net']",
            "labels": ["malicious-activity"],
            "confidence": 85,
            "valid_from": "2024-05-28T00:00:00Z",
            "modified": "2024-05-30T00:00:00Z",
            "kill_chain_phases": [
                {"kill_chain_name": "lockheed", "phase_name": "recon"},
                {"kill_chain_name": "mitre-attack", "phase_name": "command-and-control"},
            ],
            "object_marking_refs": [AMBER],
        },
        {"type": "malware", "id": MALWARE_ID, "name": "DarkGate"},
        {"type": "intrusion-set", "id": ACTOR_ID, "name": "TA577"},
        {"type": "attack-pattern", "id": TECHNIQUE_ID, "name": "Application Layer Protocol",
         "external_references": [{"source_name": "mitre-attack", "external_id": "T1071"}]},
        {"type": "relationship", "source_ref": INDICATOR_ID, "target_ref": MALWARE_ID,
         "relationship_type": "indicates"},
        {"type": "relationship", "source_ref": INDICATOR_ID, "target_ref": ACTOR_ID,
         "relationship_type": "attributed-to"},
        {"type": "relationship", "source_ref": INDICATOR_ID, "target_ref": TECHNIQUE_ID,
         "relationship_type": "indicates"},
    ]}


# ===================================================================
# Pattern & mapping helpers
# ===================================================================

class TestPatterns:
    def test_or_pattern(self):
        assert parse_stix_pattern(
            "[ipv4-addr:value = '1.2.3.4'] OR [domain-name:value = 'x.com']"
        ) == [(IndicatorType.IP, "1.2.3.4"), (IndicatorType.DOMAIN, "x.com")]

    def test_hash_paths(self):
        pattern = "[file:hashes.'SHA-256' = '" + "ab" * 32 + "' AND file:hashes.MD5 = '" + "cd" * 16 + "']"
        assert parse_stix_pattern(pattern) == [
            (IndicatorType.HASH, "ab" * 32),
            (IndicatorType.HASH, "cd" * 16),
        ]

    def test_url_email_and_file_name(self):
        assert parse_stix_pattern("[url:value = 'http://x.com/a']") == [(IndicatorType.URL, "http://x.com/a")]
        assert parse_stix_pattern("[email-addr:value = 'a@b.com']") == [(IndicatorType.EMAIL, "a@b.com")]
        assert parse_stix_pattern("[file:name = 'invoice.exe']") == [(IndicatorType.FILE_PATH, "invoice.exe")]

    def test_unsupported_paths_ignored(self):
        assert parse_stix_pattern("[process:name = 'evil']") == []
        assert parse_stix_pattern("") == []

    def test_label_severity(self):
        assert map_label_severity(["malicious-activity"]) is Severity.HIGH
        assert map_label_severity(["unknown", "benign"]) is Severity.LOW
        assert map_label_severity(None) is Severity.MEDIUM

    def test_source_reliability(self):
        assert map_source_reliability("CrowdStrike Falcon Intel") is Reliability.A
        assert map_source_reliability("MISP Community") is Reliability.B
        assert map_source_reliability("random feed") is Reliability.C

    def test_kill_chain_prefers_mitre(self):
        phases = [{"kill_chain_name": "other", "phase_name": "a"},
                  {"kill_chain_name": "mitre-attack", "phase_name": "b"}]
        assert kill_chain_phase(phases) == "b"
        assert kill_chain_phase([{"kill_chain_name": "other", "phase_name": "a"}]) == "a"
        assert kill_chain_phase([]) is None


# ===================================================================
# Parse
# ===================================================================

class TestParse:
    def test_indicators_are_enriched(self, source):
        indicators = source.parse(_bundle())
        assert [(i.type, i.value) for i in indicators] == [
            (IndicatorType.IP, "198.51.100.20"),
            (IndicatorType.DOMAIN, "c2.example.net"),
        ]
        ip = indicators[0]
        assert ip.source == "misp-taxii"
        assert ip.confidence == 85
        assert ip.severity is Severity.HIGH
        assert ip.tlp is TLP.AMBER
        assert ip.source_reliability is Reliability.B
        assert ip.context.malware_family == "DarkGate"
        assert ip.context.threat_actor == "TA577"
        assert ip.context.attack_pattern == "Application Layer Protocol"
        assert ip.context.mitre_technique == "T1071"
        assert ip.context.kill_chain_phase == "command-and-control"
        assert "malware:DarkGate" in ip.tags
        assert "actor:TA577" in ip.tags
        assert ip.first_seen.day == 28

    def test_contexts_are_not_shared(self, source):
        ip, domain = source.parse(_bundle())
        ip.context.campaign = "changed"
        assert domain.context.campaign is None

    def test_missing_confidence_defaults(self, source):
        bundle = _bundle()
        del bundle["objects"][0]["confidence"]
        assert source.parse(bundle)[0].confidence == 50.0

    def test_tlp_from_marking_object(self, source):
        bundle = {"objects": [
            {"type": "indicator", "id": "indicator--x",
             "pattern": "[ipv4-addr:value = '10.0.0.1']",
             "object_marking_refs": ["marking-definition--custom"]},
            {"type": "marking-definition", "id": "marking-definition--custom",
             "definition": {"tlp": "green"}},
        ]}
        assert source.parse(bundle)[0].tlp is TLP.GREEN


# ===================================================================
# TAXII
# ===================================================================

def _http(*responses):
    http = MagicMock()
    http.get_json.side_effect = list(responses)
    return http


class TestTaxii:
    def test_full_flow_with_pagination(self, source, now):
        http = _http(
            {"api_roots": ["https://taxii.example/api1"]},
            {"collections": [{"id": "col-1", "title": "First"}]},
            {"objects": [{"id": "a"}], "more": True, "next": "page-2"},
            {"objects": [{"id": "b"}], "more": False},
        )
        raw = source.fetch_raw(http, since=now)
        assert raw == {"type": "bundle", "objects": [{"id": "a"}, {"id": "b"}]}

        calls = http.get_json.call_args_list
        assert calls[1].args[0] == "https://taxii.example/api1/collections/"
        assert calls[2].args[0] == "https://taxii.example/api1/collections/col-1/objects/"
        assert calls[2].kwargs["headers"]["Accept"] == TAXII_ACCEPT
        assert calls[3].kwargs["params"]["next"] == "page-2"
        assert calls[3].kwargs["params"]["added_after"] == now.isoformat()

    def test_no_api_roots(self, source):
        with pytest.raises(TaxiiDiscoveryError):
            source.discover(_http({"api_roots": []}))

    def test_collection_by_name(self, config):
        config.options["collection_name"] = "Second"
        src = StixTaxiiSource(config)
        src._api_root = "https://taxii.example/api1/"
        http = _http({"collections": [{"id": "c1", "title": "First"},
                                      {"id": "c2", "title": "Second"}]})
        assert src.select_collection(http) == "c2"

    def test_unknown_collection_id(self, config):
        config.options["collection_id"] = "missing"
        src = StixTaxiiSource(config)
        src._api_root = "https://taxii.example/api1/"
        with pytest.raises(TaxiiDiscoveryError, match="missing"):
            src.select_collection(_http({"collections": [{"id": "c1"}]}))

    def test_no_collections(self, source):
        source._api_root = "https://taxii.example/api1/"
        with pytest.raises(TaxiiDiscoveryError):
            source.select_collection(_http({"collections": []}))

    def test_unexpected_envelope(self, source):
        http = _http(
            {"api_roots": ["https://taxii.example/api1/"]},
            {"collections": [{"id": "c1"}]},
            {"weird": True},
        )
        with pytest.raises(TaxiiDiscoveryError):
            source.fetch_raw(http)

    def test_basic_auth_and_bearer(self, config):
        config.options.update({"username": "u", "password": "p"})
        config.api_key = "tok"
        src = StixTaxiiSource(config)
        assert isinstance(src._auth, httpx.BasicAuth)
        assert src._headers()["Authorization"] == "Bearer tok"

    def test_request_budget_includes_discovery(self, config):
        config.options["max_pages"] = 4
        assert StixTaxiiSource(config).request_budget() == 6
