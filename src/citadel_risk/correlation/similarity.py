# PRD: Correlation Module - Pairwise Similarity Measures
# Reference: docs/ARCHITECTURE.md, Section: Correlation Engine
#
# Pure functions, no state:
#   ip_similarity      - matching positional octets / 4 (hextets / 8 for IPv6)
#   domain_similarity  - 0.3 * same TLD + 0.7 * LCS / max(len)
#   temporal_weight    - decaying weight by time gap, first matching window wins
#   jaccard            - set overlap

import ipaddress
from datetime import datetime
from typing import Iterable, Optional, Tuple

# (max gap in hours, weight). Ordered narrowest first.
TEMPORAL_WINDOWS: Tuple[Tuple[float, float], ...] = (
    (1.0, 0.9),
    (6.0, 0.7),
    (24.0, 0.5),
    (168.0, 0.3),
)

IP_LINK_THRESHOLD = 0.7
DOMAIN_LINK_THRESHOLD = 0.6


def ip_similarity(ip1: str, ip2: str) -> float:
    """Fraction of positionally equal octets (IPv4) or hextets (IPv6).

    Mixed families score 0.
    """
    try:
        a = ipaddress.ip_address(ip1)
        b = ipaddress.ip_address(ip2)
    except ValueError:
        return 0.0
    if a.version != b.version:
        return 0.0
    if a.version == 4:
        parts1, parts2 = str(a).split("."), str(b).split(".")
    else:
        parts1, parts2 = a.exploded.split(":"), b.exploded.split(":")
    matches = sum(1 for x, y in zip(parts1, parts2) if x == y)
    return matches / len(parts1)


def longest_common_substring(s1: str, s2: str) -> int:
    """Length of the longest common contiguous substring."""
    if not s1 or not s2:
        return 0
    longest = 0
    previous = [0] * (len(s2) + 1)
    for ch1 in s1:
        current = [0] * (len(s2) + 1)
        for j, ch2 in enumerate(s2, start=1):
            if ch1 == ch2:
                current[j] = previous[j - 1] + 1
                if current[j] > longest:
                    longest = current[j]
        previous = current
    return longest


def domain_similarity(domain1: str, domain2: str) -> float:
    d1 = domain1.lower().rstrip(".")
    d2 = domain2.lower().rstrip(".")
    if not d1 or not d2:
        return 0.0
    similarity = 0.0
    if d1.rsplit(".", 1)[-1] == d2.rsplit(".", 1)[-1]:
        similarity += 0.3
    similarity += 0.7 * longest_common_substring(d1, d2) / max(len(d1), len(d2))
    return min(1.0, similarity)


def hours_between(a: datetime, b: datetime) -> float:
    return abs((a - b).total_seconds()) / 3600.0


def temporal_weight(gap_hours: float) -> Optional[float]:
    """Correlation weight for a time gap, or None beyond one week."""
    for max_hours, weight in TEMPORAL_WINDOWS:
        if gap_hours <= max_hours:
            return weight
    return None


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)
