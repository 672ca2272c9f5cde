"""
OpenAI-backed content analyzer.

Summarizes extracted lecture content with a chat completion.
"""

from typing import Any, Dict, Optional

from openai import AsyncOpenAI

from ..core.pipeline import ExtractedContent, ReportProgress

SYSTEM_PROMPT = (
    "You are a study assistant. Summarize the provided learning material for a student: "
    "start with a short overview, then list the key concepts as bullet points."
)

# Characters of source text sent to the model
MAX_INPUT_CHARS = 48000


class OpenAIAnalyzer:
    """Analyzer that turns extracted text into a summary payload.

    Failures are loud: API errors propagate so the orchestrator can report
    the job as failed and leave the user's quota untouched.
    """

    def __init__(
        self,
        model: str,
        temperature: float = 0.3,
        max_tokens: Optional[int] = 1200,
        client: Optional[AsyncOpenAI] = None,
    ):
        """Initialize the analyzer.

        Args:
            model: OpenAI model name (required)
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate
            client: Preconfigured async OpenAI client; one is created from
                the environment when omitted

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = client or AsyncOpenAI()

    async def analyze(self, content: ExtractedContent, report: ReportProgress) -> Dict[str, Any]:
        """Summarize content.

        Raises:
            ValueError: If content has no text or the response has no usage
            OpenAI API errors: Propagated without modification
        """
        text = content.text.strip()
        if not text:
            raise ValueError("content text is required and cannot be empty")

        report(0.1, "Generating summary...")
        response = await self._complete(text[:MAX_INPUT_CHARS])
        report(1.0, "Summary ready")

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        return {
            "summary": response.choices[0].message.content or "",
            "title": content.metadata.get("title", ""),
            "metadata": dict(content.metadata),
            "model": self.model,
            "tokens_used": usage.total_tokens,
            "request_id": response.id,
            "truncated": len(text) > MAX_INPUT_CHARS,
        }

    async def _complete(self, text: str):
        # Awaited on the caller's task, so cancelling it aborts the request
        return await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": text},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
