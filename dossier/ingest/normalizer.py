"""
Normalizer

Turns RawDocuments into provenance-tagged NormalizedFacts.

confidence = trust_weight(source_type) × extraction_certainty

Malformed input never raises: it yields zero facts and a diagnostic.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from html.parser import HTMLParser
from typing import Dict, Iterable, List, Optional, Tuple

from ..common.config import DEFAULT_TRUST_WEIGHTS
from ..common.schemas import NormalizedFact, RawDocument, SourceType, slugify
from .handlers import REPOSITORY_CONTENT_TYPE

logger = logging.getLogger("dossier.ingest.normalizer")


# Extraction certainty per parsing method
CERTAINTY_STRUCTURED = 1.0
CERTAINTY_SECTION = 0.85
CERTAINTY_GUESS = 0.7
CERTAINTY_ARTICLE_MENTION = 0.6
CERTAINTY_PROSE_MENTION = 0.55

SECTION_HEADERS = {
    "summary": ["summary", "profile", "about", "about me", "objective"],
    "skills": ["skills", "technical skills", "core skills", "technologies"],
    "experience": ["experience", "work history", "professional experience", "employment"],
    "education": ["education", "academic"],
    "projects": ["projects", "project experience", "open source"],
}

# Known technical terms recognised in free text, mapped to their display form
SKILL_VOCABULARY = {
    "python": "Python",
    "java": "Java",
    "javascript": "JavaScript",
    "typescript": "TypeScript",
    "rust": "Rust",
    "golang": "Golang",
    "c++": "C++",
    "kotlin": "Kotlin",
    "scala": "Scala",
    "ruby": "Ruby",
    "sql": "SQL",
    "graphql": "GraphQL",
    "grpc": "gRPC",
    "linux": "Linux",
    "kubernetes": "Kubernetes",
    "docker": "Docker",
    "terraform": "Terraform",
    "ansible": "Ansible",
    "aws": "AWS",
    "azure": "Azure",
    "gcp": "GCP",
    "postgresql": "PostgreSQL",
    "postgres": "PostgreSQL",
    "mysql": "MySQL",
    "mongodb": "MongoDB",
    "redis": "Redis",
    "kafka": "Kafka",
    "spark": "Spark",
    "react": "React",
    "django": "Django",
    "machine learning": "Machine Learning",
    "distributed systems": "Distributed Systems",
    "microservices": "Microservices",
    "system design": "System Design",
    "devops": "DevOps",
    "data engineering": "Data Engineering",
    "security": "Security",
    "llm": "LLM",
}

SENSITIVE_PATTERNS = [
    (r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b', '[EMAIL]'),
    (r'\b[0-9]{4}[-\s]?[0-9]{4}[-\s]?[0-9]{4}[-\s]?[0-9]{4}\b', '[CARD]'),
    (r'(?<![\w+])(?:\+\d{1,2}[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b', '[PHONE]'),
    (r'\b(?:sk|pk|api|key|token|secret|password)[_-][a-zA-Z0-9_-]{15,}\b', '[API_KEY]'),
    (r'\b[A-Za-z0-9]{32,}\b', '[API_KEY]'),
]

_BULLET_RE = re.compile(r"^\s*(?:[-*•·]|\d+[.)])\s+")
_ITEM_SPLIT_RE = re.compile(r"\s*[,;|•·]\s*")
_LOCATION_RE = re.compile(r"^\s*(?:location|based in)\s*[:\-]\s*(.+)$", re.IGNORECASE)
_FROM_RE = re.compile(r"^\s*from\s*:\s*(.+)$", re.IGNORECASE)


@dataclass
class NormalizationResult:
    """Facts extracted from one document plus anything worth reporting"""
    facts: List[NormalizedFact] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.facts


def redact_sensitive(text: str) -> Tuple[str, List[str]]:
    """Mask PII and secrets. Returns (redacted_text, notes)"""
    notes = []
    for pattern, replacement in SENSITIVE_PATTERNS:
        matches = re.findall(pattern, text, re.IGNORECASE)
        if matches:
            text = re.sub(pattern, replacement, text, flags=re.IGNORECASE)
            notes.append(f"Redacted {len(matches)} {replacement}")
    return text, notes


def find_vocabulary_terms(text: str) -> List[str]:
    """Display names of known skills mentioned in free text, in first-seen order"""
    lowered = text.lower()
    found: List[Tuple[int, str]] = []
    for term, display in SKILL_VOCABULARY.items():
        match = re.search(r"(?<![\w+#])" + re.escape(term) + r"(?![\w+#])", lowered)
        if match:
            found.append((match.start(), display))
    seen = set()
    ordered = []
    for _, display in sorted(found):
        if display not in seen:
            seen.add(display)
            ordered.append(display)
    return ordered


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 (with 'Z' or offset) → aware datetime, None if unparseable"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _ArticleParser(HTMLParser):
    """Collects the title, first heading, meta keywords and visible text"""

    SKIP_TAGS = {"script", "style", "head", "noscript", "nav", "footer"}

    def __init__(self):
        super().__init__()
        self.title = ""
        self.heading = ""
        self.keywords: List[str] = []
        self._text: List[str] = []
        self._skip_depth = 0
        self._in_title = False
        self._in_h1 = False

    def handle_starttag(self, tag, attrs):
        if tag == "title":
            self._in_title = True
        elif tag == "h1":
            self._in_h1 = True
        elif tag == "meta":
            attr_map = dict(attrs)
            if (attr_map.get("name") or "").lower() == "keywords":
                self.keywords = [k.strip() for k in (attr_map.get("content") or "").split(",") if k.strip()]
        if tag in self.SKIP_TAGS:
            self._skip_depth += 1

    def handle_endtag(self, tag):
        if tag == "title":
            self._in_title = False
        elif tag == "h1":
            self._in_h1 = False
        if tag in self.SKIP_TAGS and self._skip_depth:
            self._skip_depth -= 1

    def handle_data(self, data):
        if self._in_title:
            self.title += data
        if self._in_h1 and not self.heading:
            self.heading = data.strip()
        if not self._skip_depth:
            self._text.append(data)

    @property
    def text(self) -> str:
        return re.sub(r"\s+", " ", " ".join(self._text)).strip()


class Normalizer:
    """
    Converts RawDocuments into NormalizedFacts.

    Parsers:
    - Resumes: JSON Resume, or sectioned Markdown / plain text
    - Repositories: bundle produced by RepositoryHandler
    - Articles: HTML, Markdown or plain text
    - Endorsements: plain text with an optional "From:" line
    """

    def __init__(self, trust_weights: Optional[Dict[str, float]] = None):
        self._trust_weights = dict(DEFAULT_TRUST_WEIGHTS)
        if trust_weights:
            self._trust_weights.update(trust_weights)

    def trust_weight(self, source_type: SourceType) -> float:
        if source_type == SourceType.USER_DECLARED:
            return 1.0
        return self._trust_weights.get(source_type.value, 0.5)

    def normalize(self, doc: RawDocument) -> NormalizationResult:
        """
        Extract facts from a document.

        Args:
            doc: Fetched document

        Returns:
            NormalizationResult (empty facts plus diagnostics on malformed input)
        """
        result = NormalizationResult()

        if not doc.content_bytes.strip():
            result.diagnostics.append(f"{doc.source_id}: empty document")
            return result

        try:
            text = doc.content_bytes.decode("utf-8")
        except UnicodeDecodeError as e:
            result.diagnostics.append(f"{doc.source_id}: content is not valid UTF-8 ({e.reason})")
            return result

        parsers = {
            SourceType.RESUME: self._parse_resume,
            SourceType.REPOSITORY: self._parse_repository,
            SourceType.ARTICLE: self._parse_article,
            SourceType.ENDORSEMENT: self._parse_endorsement,
        }
        parser = parsers.get(doc.source_type)
        if parser is None:
            result.diagnostics.append(f"{doc.source_id}: no parser for {doc.source_type.value}")
            return result

        try:
            parser(doc, text, result)
        except ValueError as e:
            # json.JSONDecodeError is a ValueError
            result.facts = []
            result.diagnostics.append(f"{doc.source_id}: malformed {doc.source_type.value} ({e})")

        result.facts = self._dedupe(result.facts)
        if not result.facts and not result.diagnostics:
            result.diagnostics.append(f"{doc.source_id}: no facts found")

        for note in result.diagnostics:
            logger.warning("Normalization: %s", note)
        logger.info("Normalized %s into %d facts", doc.source_id, len(result.facts))
        return result

    # ------------------------------------------------------------------
    # Fact construction
    # ------------------------------------------------------------------

    def _fact(
        self,
        doc: RawDocument,
        result: NormalizationResult,
        field_name: str,
        value: str,
        certainty: float,
        observed_at: Optional[datetime] = None,
    ) -> None:
        value = re.sub(r"\s+", " ", (value or "")).strip()
        if not value or not field_name or field_name.endswith("."):
            return
        value, notes = redact_sensitive(value)
        for note in notes:
            result.diagnostics.append(f"{doc.source_id}: {note} in {field_name}")

        confidence = min(1.0, max(0.0, self.trust_weight(doc.source_type) * certainty))
        result.facts.append(NormalizedFact(
            owner_id=doc.owner_id,
            field_name=field_name,
            value=value,
            provenance=doc.source_id,
            source_type=doc.source_type,
            confidence=round(confidence, 4),
            observed_at=observed_at or doc.fetched_at,
        ))

    def _mentions(
        self,
        doc: RawDocument,
        result: NormalizationResult,
        text: str,
        namespace: str,
        certainty: float,
        observed_at: Optional[datetime] = None,
    ) -> None:
        """Vocabulary skills found in prose, skipping fields already extracted"""
        known = {f.field_name for f in result.facts}
        for display in find_vocabulary_terms(text):
            field_name = f"{namespace}.{slugify(display)}"
            if field_name not in known:
                self._fact(doc, result, field_name, display, certainty, observed_at)

    @staticmethod
    def _dedupe(facts: List[NormalizedFact]) -> List[NormalizedFact]:
        """Same field and value from one document: keep the most confident"""
        best: Dict[Tuple[str, str], NormalizedFact] = {}
        for fact in facts:
            key = (fact.field_name, fact.value.lower())
            current = best.get(key)
            if current is None or fact.confidence > current.confidence:
                best[key] = fact
        return list(best.values())

    # ------------------------------------------------------------------
    # Resumes
    # ------------------------------------------------------------------

    def _parse_resume(self, doc: RawDocument, text: str, result: NormalizationResult) -> None:
        stripped = text.lstrip()
        if doc.content_type == "application/json" or stripped.startswith("{"):
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError("JSON resume must be an object")
            self._parse_json_resume(doc, data, result)
        else:
            self._parse_text_resume(doc, text, result)

    def _parse_json_resume(self, doc: RawDocument, data: dict, result: NormalizationResult) -> None:
        """JSON Resume schema (jsonresume.org)"""
        basics = data.get("basics") or {}
        self._fact(doc, result, "name", basics.get("name", ""), CERTAINTY_STRUCTURED)
        self._fact(doc, result, "headline", basics.get("label", ""), CERTAINTY_STRUCTURED)
        self._fact(doc, result, "summary", basics.get("summary", ""), CERTAINTY_STRUCTURED)

        location = basics.get("location") or {}
        if isinstance(location, dict):
            place = ", ".join(
                str(location[key]) for key in ("city", "region", "countryCode") if location.get(key)
            )
        else:
            place = str(location)
        self._fact(doc, result, "location", place, CERTAINTY_STRUCTURED)

        for profile in basics.get("profiles") or []:
            network = slugify(str(profile.get("network", "")))
            if network:
                self._fact(doc, result, f"handle.{network}", profile.get("username", ""), CERTAINTY_STRUCTURED)

        for job in data.get("work") or []:
            company = job.get("name") or job.get("company") or ""
            position = job.get("position", "")
            if not company and not position:
                continue
            dates = " - ".join(d for d in (job.get("startDate"), job.get("endDate") or "present") if d)
            value = f"{position} at {company}" if position and company else (position or company)
            if dates and job.get("startDate"):
                value = f"{value} ({dates})"
            self._fact(doc, result, f"experience.{slugify(company or position)}", value, CERTAINTY_STRUCTURED)
            prose = " ".join([job.get("summary") or ""] + list(job.get("highlights") or []))
            self._mentions(doc, result, prose, "skill", CERTAINTY_PROSE_MENTION)

        for school in data.get("education") or []:
            institution = school.get("institution", "")
            degree = " ".join(p for p in (school.get("studyType"), school.get("area")) if p)
            value = f"{degree}, {institution}" if degree and institution else (degree or institution)
            self._fact(doc, result, f"education.{slugify(institution or degree)}", value, CERTAINTY_STRUCTURED)

        for skill in data.get("skills") or []:
            if isinstance(skill, str):
                skill = {"name": skill}
            names = [skill.get("name", "")] + list(skill.get("keywords") or [])
            for name in names:
                self._fact(doc, result, f"skill.{slugify(name)}", name, CERTAINTY_STRUCTURED)

        for project in data.get("projects") or []:
            name = project.get("name", "")
            description = project.get("description", "")
            value = f"{name}: {description}" if description else name
            self._fact(doc, result, f"project.{slugify(name)}", value, CERTAINTY_STRUCTURED)

        self._mentions(doc, result, basics.get("summary", ""), "skill", CERTAINTY_PROSE_MENTION)

    @staticmethod
    def _section_for(line: str) -> Optional[str]:
        header = line.strip().lstrip("#").strip().rstrip(":").strip().lower()
        for section, keywords in SECTION_HEADERS.items():
            if header in keywords:
                return section
        return None

    def _parse_text_resume(self, doc: RawDocument, text: str, result: NormalizationResult) -> None:
        """Markdown or plain text with section headers"""
        lines = [line.rstrip() for line in text.splitlines()]
        sections: Dict[str, List[str]] = {"_preamble": []}
        current = "_preamble"

        for line in lines:
            if not line.strip():
                continue
            location = _LOCATION_RE.match(line.lstrip("#*- "))
            if location:
                self._fact(doc, result, "location", location.group(1), CERTAINTY_SECTION)
                continue
            section = self._section_for(line)
            if section:
                current = section
                sections.setdefault(current, [])
                continue
            sections.setdefault(current, []).append(line.strip())

        preamble = [line.lstrip("#").strip() for line in sections.pop("_preamble")]
        if preamble:
            self._fact(doc, result, "name", preamble[0], CERTAINTY_GUESS)
        if len(preamble) > 1 and len(preamble[1]) <= 120:
            self._fact(doc, result, "headline", preamble[1], CERTAINTY_GUESS)

        summary = sections.get("summary", [])
        if summary:
            self._fact(doc, result, "summary", " ".join(summary), CERTAINTY_SECTION)
            self._mentions(doc, result, " ".join(summary), "skill", CERTAINTY_PROSE_MENTION)

        for line in sections.get("skills", []):
            item_line = _BULLET_RE.sub("", line)
            if ":" in item_line:
                # "Languages: Rust, Go"
                item_line = item_line.split(":", 1)[1]
            for item in _ITEM_SPLIT_RE.split(item_line):
                item = item.strip().strip(".")
                if item and len(item) <= 60:
                    self._fact(doc, result, f"skill.{slugify(item)}", item, CERTAINTY_SECTION)

        for section, namespace in (("experience", "experience"), ("education", "education"), ("projects", "project")):
            for entry in self._section_entries(sections.get(section, [])):
                key = slugify(re.split(r"\s[-–—|(]\s?|,", entry, maxsplit=1)[0])[:60]
                self._fact(doc, result, f"{namespace}.{key}", entry, CERTAINTY_SECTION)
                if namespace != "education":
                    self._mentions(doc, result, entry, "skill", CERTAINTY_PROSE_MENTION)

    @staticmethod
    def _section_entries(lines: Iterable[str]) -> List[str]:
        """Top-level bullets (or plain lines) become entries; indented detail folds into the previous one"""
        entries: List[str] = []
        for line in lines:
            cleaned = _BULLET_RE.sub("", line).strip()
            if not cleaned:
                continue
            if entries and not _BULLET_RE.match(line) and line[:1].islower():
                entries[-1] = f"{entries[-1]} {cleaned}"
            else:
                entries.append(cleaned)
        return entries

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    def _parse_repository(self, doc: RawDocument, text: str, result: NormalizationResult) -> None:
        if doc.content_type != REPOSITORY_CONTENT_TYPE and not text.lstrip().startswith("{"):
            raise ValueError(f"unexpected content type {doc.content_type!r}")
        bundle = json.loads(text)
        if not isinstance(bundle, dict) or not isinstance(bundle.get("repository"), dict):
            raise ValueError("repository bundle is missing the 'repository' record")

        repo = bundle["repository"]
        observed_at = parse_timestamp(repo.get("pushed_at")) or parse_timestamp(repo.get("created_at"))
        full_name = repo.get("full_name") or repo.get("name") or ""
        certainty = CERTAINTY_STRUCTURED if not repo.get("fork") else 0.5

        description = repo.get("description") or ""
        name = repo.get("name") or full_name
        project_value = f"{name}: {description}" if description else name
        self._fact(doc, result, f"project.{slugify(full_name)}", project_value, certainty, observed_at)

        login = bundle.get("owner_login")
        if login:
            self._fact(doc, result, "handle.github", login, CERTAINTY_STRUCTURED, observed_at)

        languages = bundle.get("languages") or {}
        total = sum(v for v in languages.values() if isinstance(v, (int, float)))
        for language, size in sorted(languages.items(), key=lambda kv: (-kv[1], kv[0])):
            share = size / total if total else 0.0
            self._fact(
                doc, result, f"skill.{slugify(language)}", language,
                (0.6 + 0.4 * share) * certainty, observed_at,
            )
        if not languages and repo.get("language"):
            self._fact(doc, result, f"skill.{slugify(repo['language'])}", repo["language"], 0.6 * certainty, observed_at)

        for topic in repo.get("topics") or []:
            self._fact(doc, result, f"topic.{slugify(topic)}", topic.replace("-", " "), certainty, observed_at)

        self._mentions(doc, result, description, "skill", CERTAINTY_PROSE_MENTION, observed_at)

    # ------------------------------------------------------------------
    # Articles
    # ------------------------------------------------------------------

    def _parse_article(self, doc: RawDocument, text: str, result: NormalizationResult) -> None:
        keywords: List[str] = []
        if "html" in doc.content_type or text.lstrip().lower().startswith(("<!doctype", "<html")):
            parser = _ArticleParser()
            parser.feed(text)
            parser.close()
            title = (parser.title or parser.heading).strip()
            body = parser.text
            keywords = parser.keywords
        else:
            lines = [line.strip() for line in text.splitlines() if line.strip()]
            headings = [line.lstrip("#").strip() for line in lines if line.startswith("# ")]
            title = headings[0] if headings else (lines[0] if lines else "")
            body = " ".join(lines)

        if not title:
            result.diagnostics.append(f"{doc.source_id}: article has no title")
            return
        title = title[:200]

        self._fact(doc, result, f"article.{slugify(title)[:60]}", title, CERTAINTY_STRUCTURED)
        for keyword in keywords:
            self._fact(doc, result, f"topic.{slugify(keyword)}", keyword, CERTAINTY_SECTION)
        self._mentions(doc, result, f"{title} {body}", "topic", CERTAINTY_ARTICLE_MENTION)

    # ------------------------------------------------------------------
    # Endorsements
    # ------------------------------------------------------------------

    def _parse_endorsement(self, doc: RawDocument, text: str, result: NormalizationResult) -> None:
        lines = [line.strip() for line in text.strip().splitlines()]
        endorser = ""
        if lines:
            match = _FROM_RE.match(lines[0])
            if match:
                endorser = match.group(1).strip()
                lines = lines[1:]

        body = " ".join(line for line in lines if line)
        if not body:
            result.diagnostics.append(f"{doc.source_id}: endorsement has no text")
            return

        key = slugify(endorser) or doc.checksum[:12]
        value = f"{endorser}: {body}" if endorser else body
        self._fact(doc, result, f"endorsement.{key}", value[:1000], CERTAINTY_STRUCTURED)
        self._mentions(doc, result, body, "skill", CERTAINTY_PROSE_MENTION)
