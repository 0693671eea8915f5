"""Synthesizer — prompt text → raw candidate source.

One oracle call per invocation, at the configured minimum temperature so
repeated repairs stay reproducible. No internal retry: a repair needs a
*different* prompt, which is the RepairLoop's business.

The response is cleaned of wrapping noise (``<think>`` traces, markdown
fences, leading/trailing prose) but never checked for validity.
"""

from __future__ import annotations

import re

import structlog

from kiln.models.errors import OracleError
from kiln.synthesis.prompts import SYSTEM_PROMPT

logger = structlog.get_logger().bind(component="synthesis.synthesizer")

# Lines that look like Python code (rough heuristic)
_PY_LINE_RE = re.compile(
    r"^\s*(import |from |def |class |#|@|if |else:|elif |for |while |try:|except|"
    r"with |return |raise |yield |[a-zA-Z_][a-zA-Z0-9_.]*\s*[=(+\-\[{])"
)


def _strip_prose_lines(code: str) -> str:
    """Drop prose lines before the first and after the last code-looking line."""
    lines = code.splitlines()
    start = next(
        (i for i, line in enumerate(lines) if _PY_LINE_RE.match(line)),
        0,
    )
    end = len(lines)
    for i in range(len(lines) - 1, start - 1, -1):
        line = lines[i]
        if line.startswith((" ", "\t")) or _PY_LINE_RE.match(line) or line.strip().startswith((")", "]", "}")):
            end = i + 1
            break
    return "\n".join(lines[start:end])


def sanitize(raw: str) -> str:
    """Strip reasoning traces, markdown fences and stray prose from oracle text."""
    text = raw
    if "</think>" in text:
        think_part, _, text = text.partition("</think>")
        logger.debug("model_reasoning_trace", trace=think_part.replace("<think>", "").strip()[:500])
    text = re.sub(r"^```[a-zA-Z]*\n?", "", text.strip(), flags=re.MULTILINE)
    text = re.sub(r"\n?```$", "", text.strip(), flags=re.MULTILINE)
    return _strip_prose_lines(text).strip()


class Synthesizer:
    """Asks the oracle for candidate code."""

    def __init__(self, oracle, temperature: float = 0.0) -> None:
        self._oracle = oracle
        self.temperature = temperature

    async def synthesize(self, prompt: str) -> str:
        """Return sanitized candidate code.

        Raises:
            OracleError: ``reason="transport"`` if the call failed,
                ``reason="empty_response"`` if no usable text came back.
        """
        try:
            raw = await self._oracle.chat_simple(
                prompt=prompt,
                system=SYSTEM_PROMPT,
                temperature=self.temperature,
            )
        except Exception as exc:
            logger.warning("oracle_call_failed", error=str(exc))
            raise OracleError("transport", f"Oracle call failed: {exc}") from exc

        code = sanitize(raw or "")
        if not code:
            logger.warning("oracle_empty_response")
            raise OracleError("empty_response", "Oracle returned an empty code string.")
        logger.info("candidate_received", chars=len(code))
        return code
