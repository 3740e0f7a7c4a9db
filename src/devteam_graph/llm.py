from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .errors import ChannelError, StructuredOutputError
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

JSON_ONLY_SUFFIX = (
    "IMPORTANT: Respond with ONLY valid JSON. No markdown, no backticks, no explanation outside JSON."
)


@dataclass(frozen=True)
class Completion:
    """Raw answer of the reasoning service plus its measured usage, when reported."""

    text: str
    input_units: int | None = None
    output_units: int | None = None


class ReasoningClient(Protocol):
    """Opaque delegated reasoning service: instruction + context in, text + usage out."""

    def complete(self, instruction: str, context: str) -> Completion:
        ...


def build_prompt(instruction: str, context: str) -> str:
    """Assemble the single prompt string sent to the service and used for usage estimates."""
    return f"{instruction}\n\n---\n\nINPUT:\n{context}\n\n---\n\n{JSON_ONLY_SUFFIX}"


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for delegated reasoning calls")
    return key


def _content_to_text(content: Any) -> str:
    """Flatten string or list-of-parts message content into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
            else:
                chunks.append(json.dumps(item, sort_keys=True, default=str))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    return str(content)


class OpenAIReasoningClient:
    """``ReasoningClient`` backed by ``ChatOpenAI`` in JSON response mode.

    LangChain's own retries are disabled; the budgeted call adapter owns the retry policy
    so that usage is reported for the successful attempt only.
    """

    def __init__(
        self,
        *,
        model_name: str,
        timeout: int = 120,
        temperature: float = 0.0,
        repo_root: Path | None = None,
    ) -> None:
        if not model_name or not model_name.strip():
            raise ValueError("model_name must be a non-empty string")
        ensure_openai_api_key(repo_root=repo_root)
        self.model_name = model_name
        self._model = ChatOpenAI(
            model=model_name,
            temperature=temperature,
            timeout=timeout,
            max_retries=0,
        ).bind(response_format={"type": "json_object"})

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "OpenAIReasoningClient":
        return cls(
            model_name=settings.model_name,
            timeout=settings.request_timeout_seconds,
            repo_root=repo_root,
        )

    def complete(self, instruction: str, context: str) -> Completion:
        prompt = build_prompt(instruction, context)
        try:
            message = self._model.invoke(prompt)
        except Exception as exc:  # noqa: BLE001 - provider errors surface as channel failures.
            raise ChannelError(f"{self.model_name} call failed: {exc}") from exc

        usage = getattr(message, "usage_metadata", None) or {}
        return Completion(
            text=_content_to_text(getattr(message, "content", message)),
            input_units=usage.get("input_tokens"),
            output_units=usage.get("output_tokens"),
        )


def extract_json_payload(text: str) -> dict[str, Any]:
    """Extract a JSON object from the service's text output.

    Attempts parsing in order: direct JSON, fenced code block, first/last brace extraction.

    Raises:
        StructuredOutputError: If no JSON object can be extracted from the text.
    """
    body = text.strip()
    if not body:
        raise StructuredOutputError("Reasoning service returned empty output; expected a JSON object")

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    fenced = re.search(r"```(?:json)?\s*(\{.*\})\s*```", body, flags=re.DOTALL)
    if fenced is not None:
        try:
            payload = json.loads(fenced.group(1))
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            return payload

    start = body.find("{")
    end = body.rfind("}")
    if start != -1 and end > start:
        try:
            payload = json.loads(body[start : end + 1])
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            return payload

    preview = body[:200].replace("\n", " ")
    raise StructuredOutputError(f"Output did not contain a JSON object: {preview}")


def normalize_structured_output(*, payload: dict[str, Any], schema: type[ModelT]) -> dict[str, Any]:
    """Validate a parsed payload against ``schema`` and return its JSON-mode dump.

    Raises:
        StructuredOutputError: If the payload does not validate.
    """
    try:
        return schema.model_validate(payload).model_dump(mode="json")
    except ValidationError as exc:
        raise StructuredOutputError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc
