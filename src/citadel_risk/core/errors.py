# PRD: Core Module - Exception Root
# Reference: docs/ARCHITECTURE.md, Section: Error Handling
#
# Concrete errors live beside the code that raises them
# (FeedUnavailable in intel.connector, InvalidTransition in
# risk.state_machine, ...). They all derive from CitadelRiskError so the
# CLI can report any core failure uniformly.


class CitadelRiskError(Exception):
    """Base class for all citadel-risk errors."""
