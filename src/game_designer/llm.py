from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

_DEFAULT_TIMEOUT: float = 120.0
_DEFAULT_MAX_RETRIES: int = 0
_RAW_EXCERPT_CHARS = 300

# OpenRouter uses these to attribute traffic to the calling application.
OPENROUTER_HEADERS: dict[str, str] = {
    "HTTP-Referer": "game_designer_mcp",
    "X-Title": "Game Designer MCP",
}

# Reasoning models on OpenRouter often wrap the JSON object in a fenced block.
_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


class StructuredOutputError(RuntimeError):
    """The model answered, but not with something that fits the requested schema."""

    def __init__(self, schema: type[BaseModel], problem: str, *, raw: str = "") -> None:
        message = f"{schema.__name__}: {problem}"
        if raw:
            message += f" (reply began: {raw[:_RAW_EXCERPT_CHARS]!r})"
        super().__init__(message)
        self.schema = schema
        self.raw = raw


class SupportsInvoke(Protocol):
    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Binds one output schema to a structured-output runnable."""

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, messages: list[BaseMessage]) -> ModelT:
        """Send ``messages`` and return the reply validated against ``schema``.

        Raises:
            StructuredOutputError: If the reply cannot be parsed or validated.
        """
        return normalize_structured_output(raw_output=self.runnable.invoke(messages), schema=self.schema)


def ensure_openrouter_api_key(repo_root: Path | None = None) -> str:
    """Return OPENROUTER_API_KEY, loading ``<repo_root>/.env`` (or ``./.env``) first.

    Raises:
        RuntimeError: If the key is still unset afterwards.
    """
    env_path = (repo_root if repo_root is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENROUTER_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENROUTER_API_KEY environment variable not set")
    return key


def get_chat_model(
    *,
    model_name: str,
    base_url: str,
    temperature: float = 0.7,
    timeout: float = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI client for an OpenAI-compatible endpoint (OpenRouter by default).

    ``max_retries`` is zero unless configured: a failed oracle call is
    reported to the agent, which decides whether to retry the tool.

    Raises:
        ValueError: If model_name is empty.
        RuntimeError: If OPENROUTER_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    kwargs: dict[str, Any] = {
        "model": model_name,
        "base_url": base_url,
        "api_key": ensure_openrouter_api_key(repo_root=repo_root),
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
        "default_headers": dict(OPENROUTER_HEADERS),
    }
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens
    logger.debug("Oracle client for %s at %s (timeout=%.0fs)", model_name, base_url, timeout)
    return ChatOpenAI(**kwargs)


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Turn whatever a structured-output runnable returned into a ``schema`` instance.

    Accepts the ``include_raw=True`` envelope (``raw``/``parsed``/``parsing_error``),
    a model instance, a dict, or a JSON string. When LangChain could not parse
    the reply itself, the raw message text is given one more chance as
    (possibly fenced) JSON before giving up.

    Raises:
        StructuredOutputError: If no valid ``schema`` instance can be recovered.
    """
    payload = raw_output
    raw_text = ""
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        raw_text = _message_text(payload.get("raw"))
        parsing_error = payload.get("parsing_error")
        payload = payload.get("parsed")
        if parsing_error is not None or payload is None:
            recovered = _parse_json_object(raw_text)
            if recovered is None:
                problem = f"reply could not be parsed: {parsing_error}" if parsing_error else "reply was empty"
                raise StructuredOutputError(schema, problem, raw=raw_text)
            logger.debug("Recovered %s from unparsed oracle reply", schema.__name__)
            payload = recovered

    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    elif isinstance(payload, str):
        raw_text = payload
        payload = _parse_json_object(payload)
    if not isinstance(payload, dict):
        raise StructuredOutputError(schema, f"unsupported reply type {type(raw_output).__name__}", raw=raw_text)

    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise StructuredOutputError(
            schema, f"validation failed with {exc.error_count()} error(s): {exc}", raw=raw_text
        ) from exc


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    return ""


def _parse_json_object(text: str) -> dict[str, Any] | None:
    if not text.strip():
        return None
    match = _FENCED_JSON_RE.search(text)
    candidate = match.group(1) if match else text[text.find("{") : text.rfind("}") + 1]
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def get_structured_chat_model(
    *,
    model_name: str,
    base_url: str,
    schema: type[ModelT],
    temperature: float = 0.7,
    timeout: float = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_tokens: int | None = None,
    method: StructuredOutputMethod = "json_mode",
    strict: bool = False,
    include_raw: bool = True,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Build the adapter the oracle gateway uses for one request kind.

    ``json_mode`` is the default because most OpenRouter models accept it;
    the schema itself travels in the system prompt. ``include_raw`` keeps
    parser failures inside the envelope so they surface as
    ``StructuredOutputError`` rather than escaping from LangChain.

    Raises:
        ValueError: If strict=True with method='json_mode'.
        RuntimeError: If OPENROUTER_API_KEY is not available.
    """
    if method == "json_mode" and strict:
        raise ValueError("strict=True is not valid for method='json_mode'")

    model = get_chat_model(
        model_name=model_name,
        base_url=base_url,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
        max_tokens=max_tokens,
        repo_root=repo_root,
    )
    runnable = model.with_structured_output(
        schema,
        method=method,
        include_raw=include_raw,
        strict=strict if method != "json_mode" else None,
    )
    return StructuredOutputAdapter(schema=schema, runnable=runnable)
