"""
Dossier Retriever

Query parsing, semantic retrieval with structured re-ranking, cited answer
synthesis and the versioned result cache.
"""

from .cache import ResultCache
from .query_processor import ParsedQuery, QueryIntent, QueryProcessor
from .searcher import Candidate, Searcher
from .synthesizer import UNSYNTHESIZED, AnswerSynthesizer

__all__ = [
    "ResultCache",
    "ParsedQuery",
    "QueryIntent",
    "QueryProcessor",
    "Candidate",
    "Searcher",
    "UNSYNTHESIZED",
    "AnswerSynthesizer",
]
