"""
Source Handlers

One handler per source type. Each converts a SourceRef into raw bytes and
a content type; the SourceConnector wraps them with retries and checksums.

Available Handlers:
- ResumeHandler: local files or URLs (JSON Resume, Markdown, text)
- RepositoryHandler: GitHub repositories via the REST API
- ArticleHandler: published articles over HTTP(S)
- EndorsementHandler: inline endorsement text
"""

from .base import BaseHandler
from .resume import ResumeHandler
from .repository import RepositoryHandler, REPOSITORY_CONTENT_TYPE
from .article import ArticleHandler
from .endorsement import EndorsementHandler

__all__ = [
    "BaseHandler",
    "ResumeHandler",
    "RepositoryHandler",
    "REPOSITORY_CONTENT_TYPE",
    "ArticleHandler",
    "EndorsementHandler",
]
