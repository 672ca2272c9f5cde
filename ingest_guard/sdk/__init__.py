"""
SDK for Ingest Guard.

Provides ready-made implementations of the pipeline collaborators.
"""

from .openai_analyzer import OpenAIAnalyzer

__all__ = ["OpenAIAnalyzer"]
