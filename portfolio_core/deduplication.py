"""Vendor duplicate detection.

Scores every unordered pair of canonical vendors from independent signals,
each contributing a weighted amount and (when it fires) a human-readable
match reason:

| signal        | contribution                                   |
|---------------|------------------------------------------------|
| company name  | 0.50 x name similarity                          |
| phone         | 0.25 when digits match (10+ digits)             |
| email         | 0.15 exact address, 0.05 same company domain    |
| contact name  | 0.10 x similarity when similarity > 0.7         |
| address       | 0.10 when street and ZIP match                  |

The composite is capped at 1.0. Nothing is merged automatically; an admin
reviews the reported pairs.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Iterable, NamedTuple, Sequence

from fuzzywuzzy import fuzz
from sqlalchemy.orm import Session

from .exceptions import AnalysisTimeoutError
from .models import Vendor
from .schemas import DuplicateMatch, VendorSummary

logger = logging.getLogger(__name__)

# Shared free-mail domains are not evidence of the same business
COMMON_EMAIL_DOMAINS = frozenset({
    "gmail.com",
    "yahoo.com",
    "hotmail.com",
    "outlook.com",
    "aol.com",
    "icloud.com",
})

COMPANY_SUFFIXES = (
    "llc",
    "inc",
    "corp",
    "co",
    "ltd",
    "company",
    "corporation",
    "incorporated",
    "limited",
)

_SUFFIX_PATTERN = re.compile(r"\b(" + "|".join(COMPANY_SUFFIXES) + r")\b")
_NON_ALNUM_PATTERN = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_NON_DIGIT_PATTERN = re.compile(r"\D")

MAX_SIMILARITY = 1.0


# =============================================================================
# Normalization
# =============================================================================


def normalize_string(value: str) -> str:
    """Lowercase, drop company suffixes and punctuation, collapse whitespace.

    "ABC Plumbing, Inc." -> "abc plumbing"
    """
    value = value.strip().lower()
    value = _SUFFIX_PATTERN.sub("", value)
    value = _NON_ALNUM_PATTERN.sub("", value)
    value = _WHITESPACE_PATTERN.sub(" ", value)
    return value.strip()


def normalize_address(value: str | None) -> str:
    if not value:
        return ""
    value = _NON_ALNUM_PATTERN.sub("", value.strip().lower())
    return _WHITESPACE_PATTERN.sub(" ", value).strip()


def normalize_phone(value: str | None) -> str:
    if not value:
        return ""
    return _NON_DIGIT_PATTERN.sub("", value)


def extract_email_domain(email: str) -> str | None:
    _, at, domain = email.rpartition("@")
    if not at or not domain:
        return None
    return domain


def string_similarity(left: str, right: str) -> float:
    """Levenshtein ratio in [0, 1]; argument order does not matter."""
    left, right = sorted((left, right))
    return fuzz.ratio(left, right) / 100


# =============================================================================
# Per-vendor features (computed once per vendor, not once per pair)
# =============================================================================


@dataclass(frozen=True)
class VendorFeatures:
    """Normalized comparison fields for one vendor."""

    vendor: Vendor
    company_name: str | None
    contact_name: str | None
    phone: str
    email: str
    email_domain: str | None
    street: str
    zip_code: str

    @classmethod
    def from_vendor(cls, vendor: Vendor) -> "VendorFeatures":
        email = (vendor.email or "").strip().lower()
        return cls(
            vendor=vendor,
            company_name=normalize_string(vendor.company_name or "") or None,
            contact_name=normalize_string(vendor.contact_name or "") or None,
            phone=normalize_phone(vendor.phone),
            email=email,
            email_domain=extract_email_domain(email) if email else None,
            street=normalize_address(getattr(vendor, "address_street", None)),
            zip_code=normalize_phone(getattr(vendor, "address_zip", None))[:5],
        )


# =============================================================================
# Signals
# =============================================================================


class SignalResult(NamedTuple):
    score: float
    reason: str | None = None


NO_MATCH = SignalResult(0.0)


class MatchSignal:
    """One independent piece of duplicate evidence.

    Subclasses must be symmetric: evaluate(a, b) == evaluate(b, a).
    """

    name = "signal"

    def evaluate(self, a: VendorFeatures, b: VendorFeatures) -> SignalResult:
        raise NotImplementedError


class CompanyNameSignal(MatchSignal):
    name = "company_name"

    def __init__(self, weight: float = 0.5, reason_threshold: float = 0.6):
        self.weight = weight
        self.reason_threshold = reason_threshold

    def evaluate(self, a, b):
        if a.company_name is None or b.company_name is None:
            return NO_MATCH
        similarity = string_similarity(a.company_name, b.company_name)
        reason = None
        if similarity > self.reason_threshold:
            reason = f"Similar company names ({round(similarity * 100)}% match)"
        return SignalResult(similarity * self.weight, reason)


class PhoneSignal(MatchSignal):
    name = "phone"

    def __init__(self, weight: float = 0.25, min_digits: int = 10):
        self.weight = weight
        self.min_digits = min_digits

    def evaluate(self, a, b):
        if a.phone and a.phone == b.phone and len(a.phone) >= self.min_digits:
            return SignalResult(self.weight, "Same phone number")
        return NO_MATCH


class EmailSignal(MatchSignal):
    """Exact address match, or a shared non-free-mail domain."""

    name = "email"

    def __init__(self, exact_weight: float = 0.15, domain_weight: float = 0.05):
        self.exact_weight = exact_weight
        self.domain_weight = domain_weight

    def evaluate(self, a, b):
        if not a.email or not b.email:
            return NO_MATCH
        if a.email == b.email:
            return SignalResult(self.exact_weight, "Same email address")
        if (
            a.email_domain
            and a.email_domain == b.email_domain
            and a.email_domain not in COMMON_EMAIL_DOMAINS
        ):
            return SignalResult(self.domain_weight, "Same company email domain")
        return NO_MATCH


class ContactNameSignal(MatchSignal):
    name = "contact_name"

    def __init__(self, weight: float = 0.1, min_similarity: float = 0.7, reason_threshold: float = 0.8):
        self.weight = weight
        self.min_similarity = min_similarity
        self.reason_threshold = reason_threshold

    def evaluate(self, a, b):
        if a.contact_name is None or b.contact_name is None:
            return NO_MATCH
        similarity = string_similarity(a.contact_name, b.contact_name)
        if similarity <= self.min_similarity:
            return NO_MATCH
        reason = "Similar contact names" if similarity > self.reason_threshold else None
        return SignalResult(similarity * self.weight, reason)


class AddressSignal(MatchSignal):
    name = "address"

    def __init__(self, weight: float = 0.1):
        self.weight = weight

    def evaluate(self, a, b):
        if a.street and a.zip_code and a.street == b.street and a.zip_code == b.zip_code:
            return SignalResult(self.weight, "Same street address")
        return NO_MATCH


DEFAULT_SIGNALS: tuple[MatchSignal, ...] = (
    CompanyNameSignal(),
    PhoneSignal(),
    EmailSignal(),
    ContactNameSignal(),
    AddressSignal(),
)


# =============================================================================
# Pairwise scan
# =============================================================================


class PairScore(NamedTuple):
    similarity: float
    match_reasons: list[str]


class VendorDeduplicator:
    """Pairwise duplicate scan over a set of vendors."""

    def __init__(self, signals: Iterable[MatchSignal] | None = None):
        self.signals = tuple(signals) if signals is not None else DEFAULT_SIGNALS

    def score_features(self, a: VendorFeatures, b: VendorFeatures) -> PairScore:
        total = 0.0
        reasons = []
        for signal in self.signals:
            result = signal.evaluate(a, b)
            total += result.score
            if result.reason:
                reasons.append(result.reason)
        return PairScore(min(MAX_SIMILARITY, total), reasons)

    def score_pair(self, vendor1, vendor2) -> PairScore:
        return self.score_features(
            VendorFeatures.from_vendor(vendor1), VendorFeatures.from_vendor(vendor2)
        )

    def calculate_similarity(self, vendor1, vendor2) -> float:
        """Composite similarity in [0, 1]."""
        return self.score_pair(vendor1, vendor2).similarity

    def get_match_reasons(self, vendor1, vendor2) -> list[str]:
        return self.score_pair(vendor1, vendor2).match_reasons

    def find_duplicates_in(
        self,
        vendors: Sequence,
        threshold: float,
        limit: int,
        deadline: float | None = None,
    ) -> list[DuplicateMatch]:
        """Compare every unordered pair and keep those scoring >= threshold.

        Results are ordered by similarity descending (ties keep input order)
        and truncated to `limit`. `deadline` is a time.monotonic() value; the
        scan raises AnalysisTimeoutError once it passes.
        """
        features = [VendorFeatures.from_vendor(v) for v in vendors]
        summaries = [VendorSummary.model_validate(v) for v in vendors]
        matches = []

        for i, left in enumerate(features):
            if deadline is not None and time.monotonic() > deadline:
                raise AnalysisTimeoutError(
                    f"Duplicate scan timed out after {i} of {len(features)} vendors"
                )
            for j in range(i + 1, len(features)):
                right = features[j]
                if left.vendor.id == right.vendor.id:
                    continue
                score = self.score_features(left, right)
                if score.similarity >= threshold:
                    matches.append(DuplicateMatch(
                        vendor1=summaries[i],
                        vendor2=summaries[j],
                        similarity=round(score.similarity, 3),
                        match_reasons=score.match_reasons,
                    ))

        # sort() is stable, so equal scores keep scan order
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:limit]

    def find_potential_duplicates(
        self,
        db: Session,
        threshold: float,
        limit: int,
        deadline: float | None = None,
    ) -> list[DuplicateMatch]:
        """Scan all canonical vendors (linked duplicates are not re-compared)."""
        vendors = load_canonical_vendors(db)
        logger.info(f"Scanning {len(vendors)} canonical vendors for duplicates (threshold={threshold})")
        return self.find_duplicates_in(vendors, threshold, limit, deadline=deadline)


def load_canonical_vendors(db: Session) -> list[Vendor]:
    return db.query(Vendor).filter(
        Vendor.canonical_vendor_id.is_(None)
    ).order_by(Vendor.company_name, Vendor.id).all()


def count_comparisons(vendor_count: int) -> int:
    """Unordered pairs among n vendors: n * (n - 1) / 2."""
    return vendor_count * (vendor_count - 1) // 2
