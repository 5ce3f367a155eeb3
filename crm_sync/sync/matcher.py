"""
Secondary matching of CRM records to local rows that have no external id.

The CRM id is the only strong reconciliation key. When a record's id is not
yet known locally, the matcher looks for a single unlinked local row that
clearly represents the same entity:

- Exact email (contacts only)
- Exact normalized name (order-insensitive, accent-insensitive)
- Fuzzy name at or above the configured threshold

Anything ambiguous (zero or several candidates on a tier) moves on to the
next tier and finally yields no link, in which case the engine inserts a
new row. Every decision is written to the matching log.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from rapidfuzz import fuzz

from crm_sync.sync.mapping import EntityType
from crm_sync.utils.logging import get_matching_logger
from crm_sync.utils.normalization import name_key

if TYPE_CHECKING:
    from crm_sync.storage.db import SyncDatabase

logger = logging.getLogger(__name__)

# Fuzzy name similarity required for a link (0.0 to 1.0)
DEFAULT_NAME_MATCH_THRESHOLD = 0.92

# Tasks have no stable human name worth matching on
DEFAULT_MATCH_TYPES = frozenset({EntityType.CONTACTS, EntityType.MATTERS})


class MatchTier(Enum):
    """How a link was determined."""

    EXACT_EMAIL = "exact_email"
    EXACT_NAME = "exact_name"
    FUZZY_NAME = "fuzzy_name"
    NO_MATCH = "no_match"


@dataclass
class MatchResult:
    """Outcome of a secondary match attempt."""

    local_id: Optional[int]
    tier: MatchTier
    score: float = 0.0
    reason: str = ""

    @property
    def is_match(self) -> bool:
        return self.local_id is not None


@dataclass
class _Candidate:
    local_id: int
    key: str
    label: str
    email: Optional[str] = None


@dataclass
class _CandidatePool:
    items: list[_Candidate] = field(default_factory=list)


def record_name(entity_type: EntityType, record: dict[str, Any]) -> Optional[str]:
    """
    Human name of a CRM record or a local row, used for matching.

    Works on both shapes: CRM matters carry ``display_name`` while local
    exchanges carry ``name``.
    """
    if entity_type is EntityType.CONTACTS:
        name = record.get("display_name")
        if not name:
            parts = [record.get("first_name"), record.get("last_name")]
            name = " ".join(str(p) for p in parts if p)
    elif entity_type is EntityType.MATTERS:
        name = record.get("display_name") or record.get("name")
    else:
        name = record.get("subject") or record.get("title")
    return str(name) if name else None


def _normalize_email(email: Any) -> Optional[str]:
    if not email:
        return None
    return str(email).strip().lower() or None


class NameMatcher:
    """
    Links CRM records to unlinked local rows by email or name.

    Candidates (rows whose external_id is NULL) are loaded once per entity
    type and run; a candidate is removed from the pool once it is linked.

    Usage:
        matcher = NameMatcher(db)
        matcher.reset(EntityType.CONTACTS)
        result = matcher.find_link(EntityType.CONTACTS, raw)
        if result.is_match:
            db.link_external_id("contacts", result.local_id, raw["id"])
            matcher.mark_linked(EntityType.CONTACTS, result.local_id)
    """

    def __init__(
        self,
        db: "SyncDatabase",
        threshold: float = DEFAULT_NAME_MATCH_THRESHOLD,
        enabled_types: Optional[frozenset[EntityType]] = None,
    ):
        """
        Initialize the matcher.

        Args:
            db: Store holding the local rows
            threshold: Minimum fuzzy similarity for a name link (0.0 to 1.0)
            enabled_types: Entity types to match; defaults to contacts and matters
        """
        self.db = db
        self.threshold = threshold
        self.enabled_types = (
            DEFAULT_MATCH_TYPES if enabled_types is None else frozenset(enabled_types)
        )
        self._pools: dict[EntityType, _CandidatePool] = {}
        self._lock = threading.Lock()

    def reset(self, entity_type: Optional[EntityType] = None) -> None:
        """Drop cached candidates so the next lookup reloads them."""
        with self._lock:
            if entity_type is None:
                self._pools.clear()
            else:
                self._pools.pop(entity_type, None)

    def _pool(self, entity_type: EntityType) -> _CandidatePool:
        with self._lock:
            pool = self._pools.get(entity_type)
            if pool is not None:
                return pool

        rows = self.db.query(entity_type.table, {"external_id": None})
        pool = _CandidatePool()
        for row in rows:
            label = record_name(entity_type, row)
            key = name_key(label) if label else ""
            if not key and not row.get("email"):
                continue
            pool.items.append(
                _Candidate(
                    local_id=int(row["id"]),
                    key=key,
                    label=label or "",
                    email=_normalize_email(row.get("email")),
                )
            )

        with self._lock:
            return self._pools.setdefault(entity_type, pool)

    def mark_linked(self, entity_type: EntityType, local_id: int) -> None:
        """Remove a row from the candidate pool after it was linked."""
        with self._lock:
            pool = self._pools.get(entity_type)
            if pool is not None:
                pool.items = [c for c in pool.items if c.local_id != local_id]

    def find_link(self, entity_type: EntityType, raw: dict[str, Any]) -> MatchResult:
        """
        Find the single unlinked local row matching a CRM record.

        Args:
            entity_type: Entity type of the record
            raw: CRM record

        Returns:
            MatchResult; ``local_id`` is None when there is no unique match
        """
        matching_log = get_matching_logger()
        external_id = raw.get("id")

        if entity_type not in self.enabled_types:
            return MatchResult(None, MatchTier.NO_MATCH, reason="matching disabled")

        pool = self._pool(entity_type)
        if not pool.items:
            return MatchResult(None, MatchTier.NO_MATCH, reason="no unlinked rows")

        name = record_name(entity_type, raw)
        key = name_key(name) if name else ""

        result = self._match_email(entity_type, raw, pool)
        if result is None and key:
            result = self._match_exact_name(key, pool)
        if result is None and key:
            result = self._match_fuzzy_name(key, pool)
        if result is None:
            result = MatchResult(None, MatchTier.NO_MATCH, reason="no unique candidate")

        if result.is_match:
            matching_log.info(
                f"LINK {entity_type.value} {external_id} '{name}' -> local "
                f"{result.local_id} via {result.tier.value} "
                f"(score={result.score:.2f}): {result.reason}"
            )
        else:
            matching_log.debug(
                f"NO LINK {entity_type.value} {external_id} '{name}': {result.reason}"
            )
        return result

    def _match_email(
        self, entity_type: EntityType, raw: dict[str, Any], pool: _CandidatePool
    ) -> Optional[MatchResult]:
        if entity_type is not EntityType.CONTACTS:
            return None
        email = _normalize_email(raw.get("email"))
        if not email:
            return None
        hits = [c for c in pool.items if c.email == email]
        if len(hits) == 1:
            return MatchResult(
                hits[0].local_id, MatchTier.EXACT_EMAIL, 1.0, f"email {email}"
            )
        if len(hits) > 1:
            logger.debug(f"Email {email} matches {len(hits)} unlinked rows")
        return None

    @staticmethod
    def _match_exact_name(key: str, pool: _CandidatePool) -> Optional[MatchResult]:
        hits = [c for c in pool.items if c.key and c.key == key]
        if len(hits) == 1:
            return MatchResult(
                hits[0].local_id, MatchTier.EXACT_NAME, 1.0, f"name '{hits[0].label}'"
            )
        if len(hits) > 1:
            # Same name on several rows cannot be resolved by fuzzier tiers
            return MatchResult(
                None,
                MatchTier.NO_MATCH,
                reason=f"ambiguous: {len(hits)} rows named '{hits[0].label}'",
            )
        return None

    def _match_fuzzy_name(self, key: str, pool: _CandidatePool) -> Optional[MatchResult]:
        scored = []
        for candidate in pool.items:
            if not candidate.key:
                continue
            score = fuzz.ratio(key, candidate.key) / 100.0
            if score >= self.threshold:
                scored.append((score, candidate))

        if len(scored) == 1:
            score, candidate = scored[0]
            return MatchResult(
                candidate.local_id,
                MatchTier.FUZZY_NAME,
                score,
                f"similar name '{candidate.label}'",
            )
        if len(scored) > 1:
            return MatchResult(
                None,
                MatchTier.NO_MATCH,
                reason=f"ambiguous: {len(scored)} similar names",
            )
        return None
