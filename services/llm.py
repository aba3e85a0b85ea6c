"""LLM completion client (OpenAI Responses API over plain HTTP)."""

import logging
from typing import Any, Dict, List, Optional

import requests

from config.settings import settings
from utils.retry import UpstreamError

logger = logging.getLogger(__name__)


class MalformedCompletionError(UpstreamError):
    """The completion arrived but its content is unusable."""


def extract_output_text(payload: Any) -> Optional[str]:
    """Read ``output_text``, or join the text chunks of ``output[].content[]``."""
    if not isinstance(payload, dict):
        return None
    text = payload.get("output_text")
    if isinstance(text, str) and text.strip():
        return text
    chunks: List[str] = []
    for item in payload.get("output") or []:
        if not isinstance(item, dict):
            continue
        for content in item.get("content") or []:
            if isinstance(content, dict) and isinstance(content.get("text"), str) and content["text"]:
                chunks.append(content["text"])
    return "\n".join(chunks) if chunks else None


class LlmClient:
    def __init__(
        self,
        api_key: Optional[str] = settings.OPENAI_API_KEY,
        base_url: str = settings.OPENAI_BASE_URL,
        model: str = settings.OPENAI_MODEL,
        timeout: float = settings.REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def complete(
        self,
        system: str,
        user: str,
        json_schema: Optional[Dict[str, Any]] = None,
        schema_name: str = "result",
        model: Optional[str] = None,
    ) -> str:
        """
        One completion request. Returns the output text.

        Raises ``UpstreamError`` for non-2xx or non-JSON responses and
        ``MalformedCompletionError`` when the body carries no text.
        """
        body: Dict[str, Any] = {
            "model": model or self.model,
            "input": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        if json_schema is not None:
            body["text"] = {
                "format": {
                    "type": "json_schema",
                    "name": schema_name,
                    "strict": True,
                    "schema": json_schema,
                }
            }

        resp = self.session.post(
            f"{self.base_url}/responses",
            json=body,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )
        content_type = resp.headers.get("content-type", "")
        if not resp.ok:
            raise UpstreamError(
                f"LLM error {resp.status_code}: {resp.text[:200]}",
                status=resp.status_code, content_type=content_type, body=resp.text[:200],
            )
        if "application/json" not in content_type.lower():
            raise UpstreamError(
                f"LLM returned {content_type or 'no content type'} instead of JSON",
                status=resp.status_code, content_type=content_type, body=resp.text[:200],
            )
        try:
            payload = resp.json()
        except ValueError as e:
            raise MalformedCompletionError(f"LLM returned invalid JSON envelope: {e}") from e

        text = extract_output_text(payload)
        if not text:
            raise MalformedCompletionError("LLM response missing output text")
        logger.debug(f"LLM {payload.get('id')} returned {len(text)} chars")
        return text
