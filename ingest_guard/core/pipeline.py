"""
Interfaces of the external services the orchestrator drives.

Extraction (transcripts, PDF text) and analysis (AI summarization) are
opaque, asynchronous and fallible. Implementations report sub-progress in
[0, 1] through the ``report`` callback they are given.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Protocol, runtime_checkable

from .sources import Source

ReportProgress = Callable[[float, str], None]


@dataclass(frozen=True)
class ExtractedContent:
    """Raw text pulled from a source, plus whatever metadata came with it."""
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Extractor(Protocol):
    """Pulls text out of one kind of source."""

    async def extract(self, source: Source, report: ReportProgress) -> ExtractedContent:
        ...


@runtime_checkable
class Analyzer(Protocol):
    """Turns extracted text into the result payload (summary, key points...)."""

    async def analyze(self, content: ExtractedContent, report: ReportProgress) -> Dict[str, Any]:
        ...


@runtime_checkable
class AuxiliaryStep(Protocol):
    """Best-effort follow-up run after a successful ingestion.

    Failures are logged and never reach the caller.
    """

    def __call__(self, user_id: str, source: Source, record_id: str, payload: Dict[str, Any]) -> Any:
        ...
