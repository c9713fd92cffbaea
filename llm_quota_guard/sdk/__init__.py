"""
SDK for LLM Quota Guard.

Provides programmatic access to quota-governed completions.
"""

from .openai_client import OpenAITransport
from .service import QuotaGuardService

__all__ = ["OpenAITransport", "QuotaGuardService"]
