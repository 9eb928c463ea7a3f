from __future__ import annotations

import json
import re
from typing import Any

from ..errors import ProviderError, ProviderParseError
from ..schemas import NormalizedLlmResponse

_CODE_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def as_dict(response: Any) -> dict[str, Any]:
    if isinstance(response, dict):
        return response
    dump = getattr(response, "model_dump", None)
    if callable(dump):
        dumped = dump()
        if isinstance(dumped, dict):
            return dumped
    return {}


def _first_text(parts: Any) -> str | None:
    if not isinstance(parts, list):
        return None
    for part in parts:
        if not isinstance(part, dict):
            continue
        if part.get("type") in {"output_text", "text"}:
            text = part.get("text")
            if isinstance(text, str) and text:
                return text
    return None


def extract_text(payload: dict[str, Any]) -> str | None:
    """Pull assistant text out of any supported envelope.

    Handles the Responses API (``output_text`` or ``output[].content[]``),
    chat completions (``choices[0].message.content``) and Messages API
    (``content[]`` text blocks).
    """
    output_text = payload.get("output_text")
    if isinstance(output_text, str) and output_text:
        return output_text

    output = payload.get("output")
    if isinstance(output, list):
        for item in output:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "message" and item.get("role", "assistant") == "assistant":
                text = _first_text(item.get("content"))
                if text:
                    return text

    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0] if isinstance(choices[0], dict) else {}
        message = first.get("message") if isinstance(first.get("message"), dict) else {}
        content = message.get("content")
        if isinstance(content, str) and content:
            return content

    return _first_text(payload.get("content"))


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def extract_usage(payload: dict[str, Any]) -> tuple[int, int]:
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return 0, 0
    prompt = _as_int(usage.get("prompt_tokens"))
    if prompt is None:
        prompt = _as_int(usage.get("input_tokens"))
    completion = _as_int(usage.get("completion_tokens"))
    if completion is None:
        completion = _as_int(usage.get("output_tokens"))
    return prompt or 0, completion or 0


def _loads_object(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_json_object(text: str) -> dict[str, Any] | None:
    trimmed = (text or "").strip()
    if trimmed.startswith("{"):
        parsed = _loads_object(trimmed)
        if parsed is not None:
            return parsed

    last_block = None
    for match in _CODE_BLOCK_RE.finditer(trimmed):
        content = match.group(1).strip()
        if content.startswith("{"):
            last_block = content
    if last_block:
        parsed = _loads_object(last_block)
        if parsed is not None:
            return parsed

    first = trimmed.find("{")
    last = trimmed.rfind("}")
    if first >= 0 and last > first:
        return _loads_object(trimmed[first : last + 1])
    return None


def parse_structured(text: str, schema: dict[str, Any]) -> dict[str, Any]:
    parsed = extract_json_object(text)
    if parsed is None:
        raise ProviderParseError("response did not contain a JSON object")
    required = schema.get("required") or []
    missing = [key for key in required if key not in parsed]
    if missing:
        raise ProviderParseError(f"response missing required keys: {', '.join(missing)}")
    return parsed


def normalize_response(
    response: Any,
    provider: str,
    model: str,
    endpoint: str,
    schema: dict[str, Any] | None = None,
) -> NormalizedLlmResponse:
    payload = as_dict(response)
    text = extract_text(payload)
    if text is None:
        # SDK objects expose Responses API text as a computed property.
        attr_text = getattr(response, "output_text", None)
        if isinstance(attr_text, str) and attr_text:
            text = attr_text
    if not text:
        raise ProviderError(f"{provider} response missing assistant text")

    input_tokens, output_tokens = extract_usage(payload)
    structured = parse_structured(text, schema) if schema is not None else None
    return NormalizedLlmResponse(
        text=text.strip(),
        provider=provider,
        model=model,
        endpoint=endpoint,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        structured=structured,
        raw=payload or response,
    )
