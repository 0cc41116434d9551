"""
Conflict Resolution

Deterministic winner per field. Order of precedence:
1. user-declared facts
2. highest confidence
3. most recent observed_at
4. higher source trust weight
5. provenance, then value (total order, so reruns agree)
"""

from datetime import timezone
from typing import Dict, List, Mapping, Optional, Tuple

from ..common.config import DEFAULT_TRUST_WEIGHTS
from ..common.schemas import AuditEntry, NormalizedFact, SourceType


def trust_rank(fact: NormalizedFact, trust_weights: Mapping[str, float]) -> float:
    if fact.source_type == SourceType.USER_DECLARED:
        return 1.0
    return trust_weights.get(fact.source_type.value, 0.0)


def resolution_key(fact: NormalizedFact, trust_weights: Mapping[str, float]) -> Tuple:
    """Larger key wins"""
    observed = fact.observed_at
    if observed.tzinfo is None:
        observed = observed.replace(tzinfo=timezone.utc)
    return (
        fact.is_user_declared,
        fact.confidence,
        observed.timestamp(),
        trust_rank(fact, trust_weights),
        fact.provenance,
        fact.value,
    )


def resolve_facts(
    facts: List[NormalizedFact],
    trust_weights: Optional[Mapping[str, float]] = None,
) -> Tuple[Dict[str, NormalizedFact], List[AuditEntry]]:
    """
    Pick one fact per field.

    Returns:
        (structured_facts, audit_trail); the audit trail lists every
        contested field with the winner and the facts it beat
    """
    weights = trust_weights if trust_weights is not None else DEFAULT_TRUST_WEIGHTS

    by_field: Dict[str, List[NormalizedFact]] = {}
    for fact in facts:
        by_field.setdefault(fact.field_name, []).append(fact)

    structured: Dict[str, NormalizedFact] = {}
    audit: List[AuditEntry] = []
    for field_name in sorted(by_field):
        candidates = sorted(by_field[field_name], key=lambda f: resolution_key(f, weights), reverse=True)
        winner = candidates[0]
        structured[field_name] = winner
        if len(candidates) > 1:
            audit.append(AuditEntry(field_name=field_name, chosen=winner, rejected=candidates[1:]))

    return structured, audit
