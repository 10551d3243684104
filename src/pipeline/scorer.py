"""Target scoring: how well a result matches the business/domain we want.

Signals are additive and independent (not mutually exclusive):
  +100  display text contains the full business name
  +90   link host contains the target domain
  +80   display text contains the target domain
  +70   >= 75% of business-name words appear in the text (else +40 at >= 50%)

A candidate matches at MATCH_THRESHOLD. Selection is first-match-wins in the
order candidates are offered, so callers control strategy priority.
"""

import logging
import re
from collections.abc import Iterable

from src.core.schemas import MatchCandidate

logger = logging.getLogger(__name__)

MATCH_THRESHOLD = 50

NAME_BONUS = 100
HOST_BONUS = 90
TEXT_DOMAIN_BONUS = 80
STRONG_OVERLAP_BONUS = 70
PARTIAL_OVERLAP_BONUS = 40

STRONG_OVERLAP_RATIO = 0.75
PARTIAL_OVERLAP_RATIO = 0.5

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


def normalize_domain(url: str) -> str:
    """Lowercase host of ``url`` with scheme, ``www.`` and path stripped."""
    bare = _SCHEME_RE.sub("", url.strip().lower())
    bare = bare.removeprefix("www.")
    return bare.split("/")[0]


def normalize_url(url: str) -> str:
    """Lowercase URL without scheme, ``www.`` or trailing slash."""
    bare = _SCHEME_RE.sub("", url.strip().lower())
    return bare.removeprefix("www.").rstrip("/")


def word_overlap_ratio(text: str, target_business: str) -> float:
    """Share of business-name words (longer than one char) present in ``text``."""
    words = [w for w in target_business.lower().split() if len(w) > 1]
    if not words:
        return 0.0
    haystack = text.lower()
    found = sum(1 for w in words if w in haystack)
    return found / len(words)


def overlap_bonus(ratio: float) -> int:
    if ratio >= STRONG_OVERLAP_RATIO:
        return STRONG_OVERLAP_BONUS
    if ratio >= PARTIAL_OVERLAP_RATIO:
        return PARTIAL_OVERLAP_BONUS
    return 0


def score_match(text: str, href: str, target_business: str, target_domain: str) -> int:
    """Score one result against the target business name and domain.

    Args:
        text: Displayed text of the result.
        href: Resolved link of the result.
        target_business: Business name to look for (may be empty).
        target_domain: Target URL or bare domain (may be empty).

    Returns:
        Non-negative integer score; higher is a better match.
    """
    business = target_business.strip().lower()
    domain = normalize_domain(target_domain) if target_domain else ""
    text_low = text.lower()
    score = 0

    if business and business in text_low:
        score += NAME_BONUS
    if domain and domain in normalize_domain(href):
        score += HOST_BONUS
    if domain and domain in text_low:
        score += TEXT_DOMAIN_BONUS
    score += overlap_bonus(word_overlap_ratio(text, target_business))
    return score


def is_match(score: int) -> bool:
    return score >= MATCH_THRESHOLD


def select_target(
    candidates: Iterable[MatchCandidate],
    target_business: str,
    target_domain: str,
) -> tuple[MatchCandidate, int] | None:
    """Return the first candidate meeting the threshold, with its score."""
    for candidate in candidates:
        score = score_match(candidate.text, candidate.href, target_business, target_domain)
        if is_match(score):
            logger.debug(
                "Selected %s #%d (score %d): %s",
                candidate.source.value, candidate.position, score, candidate.text[:80],
            )
            return candidate, score
    return None


def domain_matches(href: str, target: str, wildcard: bool = False) -> bool:
    """Whether ``href`` points at the target site.

    Wildcard mode accepts any host that starts with the target domain.
    Strict mode needs the host to equal the target domain or be a subdomain
    of it.
    """
    host = normalize_domain(href)
    want = normalize_domain(target)
    if not host or not want:
        return False
    if wildcard:
        return host.startswith(want)
    return host == want or host.endswith("." + want)


# --- Perceptual image matching ---

HASH_BITS = 64
IMMEDIATE_MATCH_DISTANCE = 10
BEST_MATCH_DISTANCE = 15


def average_hash(grays: list[float]) -> str:
    """8x8 average hash: one bit per pixel, set when at or above the mean."""
    if len(grays) != HASH_BITS:
        msg = f"average hash needs {HASH_BITS} gray values, got {len(grays)}"
        raise ValueError(msg)
    mean = sum(grays) / len(grays)
    return "".join("1" if g >= mean else "0" for g in grays)


def hamming_distance(a: str, b: str) -> int:
    """Differing bits between two hash strings; unequal lengths are maximal."""
    if len(a) != len(b):
        return HASH_BITS
    return sum(1 for x, y in zip(a, b) if x != y)
