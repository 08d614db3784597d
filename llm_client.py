"""
Gemini text-completion client.

The search core's only contract with the model is "prompt text in, text
out". Structured parsing happens in the callers; this module only sends the
prompt, records the call in the request trace, and turns any SDK failure
into UpstreamUnavailable.
"""

import logging
import re
import time
from typing import Optional

import google.generativeai as genai

from dw_trace import get_trace
from errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```$", re.S)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ``` / ```json fence if the model added one."""
    stripped = (text or "").strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


class GeminiClient:
    """Wrapper around the Google Gemini API for query parsing, ranking and Q&A."""

    DEFAULT_TIMEOUT = 30

    def __init__(self, api_key: str, model_name: str, timeout: Optional[float] = None) -> None:
        genai.configure(api_key=api_key)
        self._model_name = model_name
        self._model = genai.GenerativeModel(model_name)
        self._timeout = timeout or self.DEFAULT_TIMEOUT
        self._generation_config = {
            "temperature": 0.2,
            "candidate_count": 1,
        }
        logger.info("Gemini client initialized with model %s", model_name)

    def complete(self, prompt: str, purpose: str = "completion") -> str:
        """Send *prompt* and return the response text.

        *purpose* labels the call in traces ("parse_query", "rank", ...).
        Raises UpstreamUnavailable on any SDK error or an empty response.
        """
        t0 = time.time()
        trace = get_trace()
        try:
            response = self._model.generate_content(
                prompt,
                generation_config=self._generation_config,
                request_options={"timeout": self._timeout},
            )
            text = (response.text or "").strip()
        except Exception as exc:
            # The SDK raises a mix of google.api_core and ValueError types
            # (ValueError when the response was blocked and has no text).
            if trace:
                trace.record_api_call("gemini", purpose, int((time.time() - t0) * 1000),
                                      ok=False, provider_status=type(exc).__name__)
            raise UpstreamUnavailable(f"Gemini {purpose} failed: {exc}", service="gemini") from exc

        if trace:
            trace.record_api_call("gemini", purpose, int((time.time() - t0) * 1000), ok=bool(text))
        if not text:
            raise UpstreamUnavailable(f"Gemini {purpose} returned an empty response", service="gemini")
        logger.debug("Gemini %s response (first 200 chars): %s", purpose, text[:200])
        return text
