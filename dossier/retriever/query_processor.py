"""
Query Processor

Parses natural-language profile queries: normalization, keywords, n-gram
phrases for exact fact matching, synonym expansion and structured filters.
An LLM rewrite can add further expansions when a client is configured.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from ..common.llm_client import LLMClient
from ..common.llm_utils import parse_llm_json

logger = logging.getLogger("dossier.retriever.query_processor")


class QueryIntent(str, Enum):
    """What the caller is looking for"""
    EXPERTISE = "expertise"  # "Who knows Rust?"
    EMPLOYMENT = "employment"  # "Who worked at Stripe?"
    AUTHORSHIP = "authorship"  # "Who wrote about consensus?"
    GENERAL = "general"


@dataclass
class ParsedQuery:
    """Parsed representation of a profile query"""
    original: str
    cleaned: str
    intent: QueryIntent = QueryIntent.GENERAL
    keywords: List[str] = field(default_factory=list)
    phrases: List[str] = field(default_factory=list)
    synonyms: List[str] = field(default_factory=list)
    expanded_queries: List[str] = field(default_factory=list)
    filters: Dict[str, str] = field(default_factory=dict)

    @property
    def match_terms(self) -> List[str]:
        """Phrases and their synonyms, compared against resolved fact values"""
        return list(dict.fromkeys(self.phrases + self.synonyms))

    @property
    def normalized(self) -> str:
        """Cache identity: cleaned text plus filters"""
        if not self.filters:
            return self.cleaned
        extra = " ".join(f"{k}={v}" for k, v in sorted(self.filters.items()))
        return f"{self.cleaned} | {extra}"


# Each group is interchangeable; expansion is symmetric within a group
SYNONYM_GROUPS = [
    ["kubernetes", "k8s"],
    ["golang", "go"],
    ["javascript", "js"],
    ["typescript", "ts"],
    ["postgresql", "postgres"],
    ["python", "py"],
    ["machine learning", "ml"],
    ["artificial intelligence", "ai"],
    ["large language models", "llm", "llms"],
    ["distributed systems", "distributed computing"],
    ["site reliability engineering", "sre"],
    ["amazon web services", "aws"],
    ["google cloud", "gcp"],
    ["continuous integration", "ci/cd", "ci"],
    ["frontend", "front-end", "front end"],
    ["backend", "back-end", "back end"],
]


def _build_synonyms(groups: List[List[str]]) -> Dict[str, List[str]]:
    table: Dict[str, List[str]] = {}
    for group in groups:
        for term in group:
            table[term] = [t for t in group if t != term]
    return table


SYNONYMS = _build_synonyms(SYNONYM_GROUPS)


class QueryProcessor:
    """
    Processes queries against the profile index.

    Responsibilities:
    1. Clean and normalize query text
    2. Detect intent
    3. Extract keywords and 1-3 word phrases
    4. Expand synonyms
    5. Extract structured filters (location)
    """

    INTENT_PATTERNS = {
        QueryIntent.EMPLOYMENT: [
            r"(worked|works|working|employed) (at|for|with)",
            r"(former|ex-?)\s*\w+ (engineers?|employees?)",
        ],
        QueryIntent.AUTHORSHIP: [
            r"(wrote|written|writes|published|blogged) (about|on)",
            r"(articles?|posts?|papers?) (about|on)",
        ],
        QueryIntent.EXPERTISE: [
            r"who (has|have|knows?|is good at|can)",
            r"(experience|expertise|skilled|proficient|background) (in|with)",
            r"\bexperts? (in|on)\b",
            r"\b(experience|expertise)\b",
        ],
    }

    STOP_WORDS = {
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "can", "to", "of", "in", "for",
        "on", "with", "at", "by", "from", "about", "into", "over", "after",
        "we", "our", "us", "i", "me", "my", "you", "your", "it", "its",
        "they", "them", "their", "this", "that", "these", "those", "what",
        "which", "who", "whom", "when", "where", "why", "how", "and", "or",
        "but", "if", "as", "any", "some", "someone", "somebody", "anyone",
        "people", "person", "find", "show", "me", "list", "knows", "know",
        "good", "strong", "based", "located", "living", "lives",
    }

    # Words after which "in X" names a skill area, not a place
    _SKILL_LEAD_WORDS = {
        "experience", "expertise", "skilled", "proficient", "background",
        "work", "worked", "working", "expert", "experts", "interested",
    }

    _EXPLICIT_LOCATION_RE = re.compile(
        r"\b(?:based|located|living|lives|live)\s+in\s+([a-z][a-z .'-]*?)"
        r"(?=\s+(?:with|who|that|and|having)\b|[?.!,]|$)"
    )
    _TRAILING_IN_RE = re.compile(r"\b(\w+)\s+in\s+([A-Z][\w.'-]*(?:\s+[A-Z][\w.'-]*)*)\s*[?.!]*\s*$")

    QUERY_REWRITE_PROMPT = """Rewrite this search query over professional profiles into
up to 3 alternative phrasings that use different but equivalent skill,
role or technology terms. Respond with a valid JSON object:
{{"expansions": ["...", "..."]}}

Query: {query}

JSON:"""

    def __init__(self, llm_client: Optional[LLMClient] = None, rewrite_timeout: float = 5.0):
        """Initialize query processor.

        Args:
            llm_client: Optional client used by rewrite() for extra expansions
            rewrite_timeout: Seconds allowed for the rewrite call
        """
        self._llm = llm_client
        self._rewrite_timeout = rewrite_timeout

    def parse(self, query: str, filters: Optional[Dict[str, str]] = None) -> ParsedQuery:
        """
        Parse a user query into structured form.

        Args:
            query: Raw user query string
            filters: Caller-supplied filters; override ones found in the text

        Returns:
            ParsedQuery with phrases, synonyms, expansions and filters
        """
        cleaned = self._clean_query(query)
        extracted = self._extract_filters(query, cleaned)
        if filters:
            extracted.update({k: v.strip().lower() for k, v in filters.items() if v and v.strip()})

        text = cleaned
        if extracted.get("location"):
            # Keep the place out of keyword and phrase matching
            text = re.sub(
                r"\b(?:(?:based|located|living|lives|live)\s+)?in\s+" + re.escape(extracted["location"]) + r"\b",
                " ", text,
            )
            text = re.sub(r"\s+", " ", text).strip()

        tokens = re.findall(r"[a-z0-9+#/.-]+", text)
        tokens = [t.strip(".") for t in tokens if t.strip(".")]
        keywords = self._extract_keywords(tokens)
        phrases = self._extract_phrases(tokens)
        synonyms = self._expand_synonyms(phrases)
        intent = self._detect_intent(cleaned)

        return ParsedQuery(
            original=query,
            cleaned=cleaned,
            intent=intent,
            keywords=keywords,
            phrases=phrases,
            synonyms=synonyms,
            expanded_queries=self._generate_expansions(text or cleaned, phrases, keywords),
            filters=extracted,
        )

    async def rewrite(self, parsed: ParsedQuery) -> ParsedQuery:
        """Add LLM-suggested expansions. Any failure leaves the query as parsed."""
        if self._llm is None or not self._llm.is_available:
            return parsed
        try:
            raw = await self._llm.agenerate(
                self.QUERY_REWRITE_PROMPT.format(query=parsed.cleaned),
                max_tokens=200,
                timeout=self._rewrite_timeout,
            )
        except Exception as e:
            logger.warning("Query rewrite failed: %s", e)
            return parsed

        suggestions = parse_llm_json(raw).get("expansions", [])
        if not isinstance(suggestions, list):
            return parsed
        for suggestion in suggestions[:3]:
            if isinstance(suggestion, str):
                candidate = self._clean_query(suggestion)
                if candidate and candidate not in parsed.expanded_queries:
                    parsed.expanded_queries.append(candidate)
        return parsed

    def _clean_query(self, query: str) -> str:
        """Lowercase, collapse whitespace, drop trailing punctuation"""
        cleaned = query.lower().strip()
        cleaned = re.sub(r"\s+", " ", cleaned)
        cleaned = re.sub(r"[?.!,;:]+$", "", cleaned)
        return cleaned.strip()

    def _detect_intent(self, query: str) -> QueryIntent:
        for intent, patterns in self.INTENT_PATTERNS.items():
            for pattern in patterns:
                if re.search(pattern, query, re.IGNORECASE):
                    return intent
        return QueryIntent.GENERAL

    def _extract_filters(self, original: str, cleaned: str) -> Dict[str, str]:
        filters: Dict[str, str] = {}

        explicit = self._EXPLICIT_LOCATION_RE.search(cleaned)
        if explicit:
            filters["location"] = explicit.group(1).strip()
            return filters

        # "... in Berlin" at the end of the query, unless it reads as "experience in Rust"
        trailing = self._TRAILING_IN_RE.search(original.strip())
        if trailing:
            lead, place = trailing.group(1).lower(), trailing.group(2).strip().lower()
            if lead not in self._SKILL_LEAD_WORDS and place not in SYNONYMS:
                filters["location"] = place
        return filters

    def _extract_keywords(self, tokens: List[str]) -> List[str]:
        keywords = [t for t in tokens if t not in self.STOP_WORDS and len(t) > 1]
        return list(dict.fromkeys(keywords))[:15]

    def _extract_phrases(self, tokens: List[str]) -> List[str]:
        """1-3 word n-grams that neither start nor end with a stop word"""
        phrases: List[str] = []
        for size in (3, 2, 1):
            for i in range(len(tokens) - size + 1):
                gram = tokens[i:i + size]
                if gram[0] in self.STOP_WORDS or gram[-1] in self.STOP_WORDS:
                    continue
                phrase = " ".join(gram)
                if phrase not in phrases:
                    phrases.append(phrase)
        return phrases

    def _expand_synonyms(self, phrases: List[str]) -> List[str]:
        synonyms: List[str] = []
        for phrase in phrases:
            for alternative in SYNONYMS.get(phrase, []):
                if alternative not in phrases and alternative not in synonyms:
                    synonyms.append(alternative)
        return synonyms

    def _generate_expansions(self, text: str, phrases: List[str], keywords: List[str]) -> List[str]:
        """Query variants to embed for better recall"""
        expansions = [text]

        substituted = text
        for phrase in sorted(phrases, key=len, reverse=True):
            alternatives = SYNONYMS.get(phrase)
            if alternatives and re.search(r"\b" + re.escape(phrase) + r"\b", substituted):
                substituted = re.sub(r"\b" + re.escape(phrase) + r"\b", alternatives[0], substituted)
        if substituted != text:
            expansions.append(substituted)

        if keywords:
            joined = " ".join(keywords)
            if joined not in expansions:
                expansions.append(joined)

        return expansions[:5]
