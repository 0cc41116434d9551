"""
Profile Text Templates

Renders resolved facts into text: one-line labels used for index chunks,
the deterministic narrative used when generation is unavailable, and the
Markdown view of a snapshot.
"""

from typing import TYPE_CHECKING, Dict, List

from ..llm_utils import truncate_text

if TYPE_CHECKING:
    from .profile import NormalizedFact, ProfileSnapshot


FIELD_LABELS = {
    "name": "Name",
    "headline": "Headline",
    "location": "Location",
    "summary": "Summary",
    "skill": "Skill",
    "experience": "Experience",
    "education": "Education",
    "project": "Project",
    "topic": "Topic",
    "article": "Article",
    "endorsement": "Endorsement",
    "handle": "Handle",
}

# Order in which namespaces appear in chunks and in the Markdown view
NAMESPACE_ORDER = [
    "name", "headline", "location", "summary", "skill", "experience",
    "project", "education", "topic", "article", "endorsement", "handle",
]

PROFILE_TEMPLATE = """# Profile: {name}
Owner: {owner_id} | Version: {version} | Hash: {short_hash}
Narrative: {narrative_state}

## Narrative
{narrative}

## Facts
{facts}
"""


def field_label(field_name: str) -> str:
    """'skill.rust' → 'Skill'; unknown namespaces are title-cased"""
    namespace = field_name.split(".", 1)[0]
    return FIELD_LABELS.get(namespace, namespace.replace("_", " ").title())


def render_fact_line(fact: "NormalizedFact") -> str:
    return f"{field_label(fact.field_name)}: {fact.value}"


def group_by_namespace(facts: Dict[str, "NormalizedFact"]) -> Dict[str, List["NormalizedFact"]]:
    """Group resolved facts by namespace, namespaces in display order"""
    grouped: Dict[str, List["NormalizedFact"]] = {}
    for name in sorted(facts):
        fact = facts[name]
        grouped.setdefault(fact.namespace, []).append(fact)

    def _rank(namespace: str) -> int:
        return NAMESPACE_ORDER.index(namespace) if namespace in NAMESPACE_ORDER else len(NAMESPACE_ORDER)

    return {ns: grouped[ns] for ns in sorted(grouped, key=lambda ns: (_rank(ns), ns))}


def _join_values(values: List[str]) -> str:
    if len(values) == 1:
        return values[0]
    return ", ".join(values[:-1]) + " and " + values[-1]


def render_fallback_narrative(facts: Dict[str, "NormalizedFact"], max_chars: int = 2000) -> str:
    """Plain prose assembled only from resolved facts"""
    grouped = group_by_namespace(facts)

    def values(namespace: str) -> List[str]:
        return [f.value for f in grouped.get(namespace, [])]

    name = (values("name") or ["This person"])[0]
    sentences = []

    headline = values("headline")
    location = values("location")
    if headline and location:
        sentences.append(f"{name} is a {headline[0]} based in {location[0]}.")
    elif headline:
        sentences.append(f"{name} is a {headline[0]}.")
    elif location:
        sentences.append(f"{name} is based in {location[0]}.")

    for namespace, lead in (
        ("skill", "Skills include"),
        ("experience", "Experience includes"),
        ("project", "Projects include"),
        ("education", "Education:"),
        ("topic", "Works on topics such as"),
        ("article", "Has written"),
    ):
        items = values(namespace)
        if items:
            sentences.append(f"{lead} {_join_values(items)}.")

    summary = values("summary")
    if summary:
        sentences.append(summary[0].rstrip(".") + ".")

    if not sentences:
        return ""
    return truncate_text(" ".join(sentences), max_chars)


def render_profile_text(snapshot: "ProfileSnapshot") -> str:
    """Markdown view of a snapshot"""
    lines = []
    for namespace, facts in group_by_namespace(snapshot.structured_facts).items():
        for fact in facts:
            lines.append(
                f"- {render_fact_line(fact)} "
                f"(confidence {fact.confidence:.2f}, from {fact.provenance})"
            )

    return PROFILE_TEMPLATE.format(
        name=snapshot.fact_value("name") or snapshot.owner_id,
        owner_id=snapshot.owner_id,
        version=snapshot.version,
        short_hash=snapshot.content_hash[:12],
        narrative_state="degraded (facts only)" if snapshot.narrative_degraded else "generated",
        narrative=snapshot.narrative_text or "(none)",
        facts="\n".join(lines) or "- (none)",
    )
