"""OpenAI Chat Completions <-> Gemini generateContent translation.

This module translates OpenAI-format chat requests into Gemini
``generateContent`` bodies and Gemini responses back into OpenAI
``chat.completion`` objects.

Key mappings:
- OpenAI system/developer messages -> Gemini systemInstruction
- OpenAI assistant role -> Gemini model role
- OpenAI content parts -> Gemini text / inlineData parts
- OpenAI tools, tool_calls and tool messages -> Gemini functionDeclarations,
  functionCall and functionResponse parts
- Gemini finishReason -> OpenAI finish_reason
- Gemini usageMetadata -> OpenAI usage

Reference:
- Gemini API: https://ai.google.dev/api/generate-content
- OpenAI Chat Completions: https://platform.openai.com/docs/api-reference/chat
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from typing import Any, Mapping, Optional

from ..core.exceptions import InvalidRequestError

logger = logging.getLogger("gemgate")

DEFAULT_CHAT_MODEL = "gemini-1.5-pro-latest"
DEFAULT_SAFETY_THRESHOLD = "BLOCK_NONE"

FALLBACK_FINISH_REASON = "stop"

FINISH_REASON_MAP: dict[str, str] = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
    "IMAGE_SAFETY": "content_filter",
}

HARM_CATEGORIES = (
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_CIVIC_INTEGRITY",
)

_CHAT_MODEL_PREFIXES = ("gemini-", "gemma-", "learnlm-")

# OpenAI request field -> Gemini generationConfig field
_GENERATION_CONFIG_FIELDS = {
    "n": "candidateCount",
    "max_tokens": "maxOutputTokens",
    "max_completion_tokens": "maxOutputTokens",
    "temperature": "temperature",
    "top_p": "topP",
    "top_k": "topK",
    "frequency_penalty": "frequencyPenalty",
    "presence_penalty": "presencePenalty",
    "seed": "seed",
}

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^,;]*)*?);base64,(?P<data>.*)$", re.DOTALL)


# ---------------------------------------------------------------------------
# Shared helpers (used by the streaming adapter as well)
# ---------------------------------------------------------------------------


def generate_completion_id() -> str:
    """Generate an opaque, process-unique chat completion id."""
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


def generate_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def convert_finish_reason(finish_reason: str | None) -> str | None:
    """Convert Gemini finishReason to OpenAI finish_reason.

    Gemini: STOP, MAX_TOKENS, SAFETY, RECITATION, BLOCKLIST, PROHIBITED_CONTENT,
            SPII, IMAGE_SAFETY, LANGUAGE, OTHER, ...
    OpenAI: stop, length, content_filter, tool_calls
    """
    if not finish_reason:
        return None
    mapped = FINISH_REASON_MAP.get(finish_reason)
    if mapped is None:
        logger.debug(f"Unmapped Gemini finishReason {finish_reason!r}, using fallback")
        return FALLBACK_FINISH_REASON
    return mapped


def convert_usage(usage_metadata: Mapping[str, Any] | None) -> dict[str, int] | None:
    """Convert Gemini usageMetadata to OpenAI usage."""
    if not isinstance(usage_metadata, Mapping):
        return None
    prompt_tokens = int(usage_metadata.get("promptTokenCount") or 0)
    completion_tokens = int(usage_metadata.get("candidatesTokenCount") or 0)
    total_tokens = usage_metadata.get("totalTokenCount")
    if total_tokens is None:
        total_tokens = prompt_tokens + completion_tokens
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": int(total_tokens),
    }


def extract_candidate_parts(
    candidate: Mapping[str, Any],
) -> tuple[str, list[dict[str, Any]]]:
    """Split a Gemini candidate into its text and its function calls.

    Text parts are concatenated without a separator so streamed deltas add up
    to the same string as the one-shot response. Thought parts are dropped.

    Returns:
        Tuple of (text, function_calls) where function_calls are the raw
        Gemini ``functionCall`` objects in order.
    """
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, Mapping) else None
    if not isinstance(parts, list):
        return "", []

    texts: list[str] = []
    function_calls: list[dict[str, Any]] = []
    for part in parts:
        if not isinstance(part, Mapping):
            continue
        if part.get("thought"):
            continue
        if "functionCall" in part and isinstance(part["functionCall"], Mapping):
            function_calls.append(dict(part["functionCall"]))
        elif isinstance(part.get("text"), str):
            texts.append(part["text"])
    return "".join(texts), function_calls


def function_call_to_tool_call(
    function_call: Mapping[str, Any], index: Optional[int] = None
) -> dict[str, Any]:
    """Convert a Gemini functionCall into an OpenAI tool call entry."""
    tool_call: dict[str, Any] = {}
    if index is not None:
        tool_call["index"] = index
    tool_call.update({
        "id": function_call.get("id") or generate_tool_call_id(),
        "type": "function",
        "function": {
            "name": function_call.get("name", ""),
            "arguments": json.dumps(function_call.get("args") or {}, ensure_ascii=False),
        },
    })
    return tool_call


def prompt_block_reason(data: Mapping[str, Any]) -> str | None:
    """Return ``promptFeedback.blockReason`` when the prompt was blocked."""
    feedback = data.get("promptFeedback")
    if not isinstance(feedback, Mapping):
        return None
    reason = feedback.get("blockReason")
    return str(reason) if reason else None


def resolve_finish_reason(raw_reason: str | None, has_tool_calls: bool) -> str | None:
    """Map a finish reason, reporting tool_calls for a natural stop after a call."""
    mapped = convert_finish_reason(raw_reason)
    if mapped == "stop" and raw_reason == "STOP" and has_tool_calls:
        return "tool_calls"
    return mapped


def resolve_chat_model(requested: Any, default: str = DEFAULT_CHAT_MODEL) -> str:
    """Pick the Gemini model for an OpenAI-style model name.

    ``models/<name>`` is used verbatim (minus the prefix), Gemini-family names
    pass through, anything else falls back to the default model.
    """
    if not isinstance(requested, str):
        return default
    if requested.startswith("models/"):
        return requested[len("models/"):] or default
    if requested.startswith(_CHAT_MODEL_PREFIXES):
        return requested
    return default


def build_safety_settings(threshold: str = DEFAULT_SAFETY_THRESHOLD) -> list[dict[str, str]]:
    return [{"category": category, "threshold": threshold} for category in HARM_CATEGORIES]


# ---------------------------------------------------------------------------
# Request: OpenAI -> Gemini
# ---------------------------------------------------------------------------


def _parse_data_url(url: str) -> dict[str, Any]:
    """Convert a base64 data URL into a Gemini inlineData part.

    OpenAI format:
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,..."}}

    Gemini format:
        {"inlineData": {"mimeType": "image/png", "data": "..."}}
    """
    match = _DATA_URL.match(url)
    if not match:
        raise InvalidRequestError(
            "Only base64 data: URLs are supported for image content",
            code="invalid_image_url",
            param="messages",
        )
    return {
        "inlineData": {
            "mimeType": match.group("mime") or "application/octet-stream",
            "data": match.group("data"),
        }
    }


def _convert_content_parts(content: Any) -> list[dict[str, Any]]:
    """Convert OpenAI message content (string or parts array) to Gemini parts."""
    if content is None:
        return []
    if isinstance(content, str):
        return [{"text": content}]
    if not isinstance(content, list):
        raise InvalidRequestError(
            "Message content must be a string or an array of content parts",
            code="invalid_content",
            param="messages",
        )

    parts: list[dict[str, Any]] = []
    text_seen = False
    for item in content:
        if not isinstance(item, Mapping):
            raise InvalidRequestError("Content parts must be objects", code="invalid_content")
        item_type = item.get("type")

        if item_type == "text":
            parts.append({"text": item.get("text", "")})
            text_seen = True

        elif item_type == "image_url":
            image_url = item.get("image_url")
            url = image_url.get("url") if isinstance(image_url, Mapping) else image_url
            if not isinstance(url, str) or not url:
                raise InvalidRequestError("image_url part is missing a url", code="invalid_content")
            parts.append(_parse_data_url(url))

        elif item_type == "input_audio":
            audio = item.get("input_audio") or {}
            parts.append({
                "inlineData": {
                    "mimeType": f"audio/{audio.get('format', 'wav')}",
                    "data": audio.get("data", ""),
                }
            })

        else:
            raise InvalidRequestError(
                f"Unsupported content part type: {item_type}",
                code="unsupported_content",
                param="messages",
            )

    # Gemini rejects a user turn made only of media parts
    if parts and not text_seen:
        parts.append({"text": ""})
    return parts


def _convert_function_response(
    message: Mapping[str, Any], call_names: Mapping[str, str]
) -> dict[str, Any]:
    tool_call_id = message.get("tool_call_id")
    name = message.get("name") or call_names.get(tool_call_id or "")
    if not name:
        raise InvalidRequestError(
            f"No function call found for tool_call_id {tool_call_id!r}",
            code="invalid_tool_message",
            param="messages",
        )
    content = message.get("content")
    if isinstance(content, list):
        content = "".join(
            item.get("text", "") for item in content if isinstance(item, Mapping)
        )
    try:
        response = json.loads(content) if isinstance(content, str) else content
    except json.JSONDecodeError:
        response = content
    if not isinstance(response, dict):
        response = {"result": response}
    function_response: dict[str, Any] = {"name": name, "response": response}
    if tool_call_id:
        function_response["id"] = tool_call_id
    return {"functionResponse": function_response}


def _convert_assistant_tool_calls(
    tool_calls: Any, call_names: dict[str, str]
) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    for tool_call in tool_calls or []:
        function = tool_call.get("function") or {}
        name = function.get("name", "")
        arguments = function.get("arguments") or "{}"
        try:
            args = json.loads(arguments) if isinstance(arguments, str) else arguments
        except json.JSONDecodeError as exc:
            raise InvalidRequestError(
                f"Tool call arguments for {name!r} are not valid JSON",
                code="invalid_tool_call",
                param="messages",
            ) from exc
        call_id = tool_call.get("id")
        if call_id:
            call_names[call_id] = name
        function_call: dict[str, Any] = {"name": name, "args": args}
        if call_id:
            function_call["id"] = call_id
        parts.append({"functionCall": function_call})
    return parts


def _convert_messages(
    messages: list[Any],
) -> tuple[dict[str, Any] | None, list[dict[str, Any]]]:
    """Convert OpenAI messages to Gemini systemInstruction and contents."""
    system_parts: list[dict[str, Any]] = []
    contents: list[dict[str, Any]] = []
    call_names: dict[str, str] = {}

    for message in messages:
        if not isinstance(message, Mapping):
            raise InvalidRequestError("Each message must be an object", code="invalid_message")
        role = message.get("role", "user")
        content = message.get("content")

        if role in ("system", "developer"):
            for part in _convert_content_parts(content):
                if "text" in part:
                    system_parts.append({"text": part["text"]})
                else:
                    logger.warning("Dropping non-text part in system message")
            continue

        if role == "tool":
            part = _convert_function_response(message, call_names)
            # Consecutive tool results go back in a single turn
            if contents and contents[-1].get("_tool_turn"):
                contents[-1]["parts"].append(part)
            else:
                contents.append({"role": "user", "parts": [part], "_tool_turn": True})
            continue

        if role == "assistant":
            parts = [p for p in _convert_content_parts(content) if p != {"text": ""}]
            parts.extend(_convert_assistant_tool_calls(message.get("tool_calls"), call_names))
            if not parts:
                parts = [{"text": ""}]
            contents.append({"role": "model", "parts": parts})
            continue

        parts = _convert_content_parts(content)
        contents.append({"role": "user", "parts": parts or [{"text": ""}]})

    for item in contents:
        item.pop("_tool_turn", None)

    system_instruction = {"parts": system_parts} if system_parts else None
    return system_instruction, contents


def _convert_response_format(response_format: Any) -> dict[str, Any]:
    """Convert OpenAI response_format to generationConfig fields."""
    if not isinstance(response_format, Mapping):
        return {}
    format_type = response_format.get("type")
    if format_type == "json_object":
        return {"responseMimeType": "application/json"}
    if format_type == "json_schema":
        json_schema = response_format.get("json_schema") or {}
        config: dict[str, Any] = {"responseMimeType": "application/json"}
        schema = json_schema.get("schema")
        if schema is not None:
            config["responseSchema"] = schema
        return config
    if format_type == "text":
        return {"responseMimeType": "text/plain"}
    raise InvalidRequestError(
        f"Unsupported response_format type: {format_type}",
        code="invalid_response_format",
        param="response_format",
    )


def _convert_generation_config(payload: Mapping[str, Any]) -> dict[str, Any]:
    config: dict[str, Any] = {}
    for openai_field, gemini_field in _GENERATION_CONFIG_FIELDS.items():
        value = payload.get(openai_field)
        if value is not None:
            config[gemini_field] = value

    stop = payload.get("stop")
    if stop is not None:
        config["stopSequences"] = [stop] if isinstance(stop, str) else list(stop)

    config.update(_convert_response_format(payload.get("response_format")))
    return config


def _convert_tools(tools: Any) -> list[dict[str, Any]] | None:
    """Convert OpenAI function tools to Gemini functionDeclarations.

    OpenAI: {"type": "function", "function": {"name", "description", "parameters"}}
    Gemini: {"functionDeclarations": [{"name", "description", "parameters"}]}
    """
    if not tools:
        return None
    declarations = []
    for tool in tools:
        if not isinstance(tool, Mapping) or tool.get("type") != "function":
            logger.debug(f"Ignoring non-function tool: {tool!r}")
            continue
        function = tool.get("function") or {}
        declaration: dict[str, Any] = {"name": function.get("name", "")}
        if function.get("description"):
            declaration["description"] = function["description"]
        if function.get("parameters"):
            declaration["parameters"] = function["parameters"]
        declarations.append(declaration)
    if not declarations:
        return None
    return [{"functionDeclarations": declarations}]


def _convert_tool_choice(tool_choice: Any) -> dict[str, Any] | None:
    """Convert OpenAI tool_choice to Gemini toolConfig.

    OpenAI: "none" | "auto" | "required" | {"type": "function", "function": {"name": ...}}
    Gemini: {"functionCallingConfig": {"mode": NONE|AUTO|ANY, "allowedFunctionNames": [...]}}
    """
    if tool_choice is None:
        return None
    if isinstance(tool_choice, str):
        mode = {"none": "NONE", "auto": "AUTO", "required": "ANY"}.get(tool_choice)
        if mode is None:
            raise InvalidRequestError(
                f"Unsupported tool_choice: {tool_choice}", param="tool_choice"
            )
        return {"functionCallingConfig": {"mode": mode}}
    if isinstance(tool_choice, Mapping) and tool_choice.get("type") == "function":
        name = (tool_choice.get("function") or {}).get("name")
        if name:
            return {
                "functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [name]}
            }
    raise InvalidRequestError("Unsupported tool_choice object", param="tool_choice")


def chat_completions_to_generate_content(
    payload: Mapping[str, Any],
    *,
    safety_threshold: str = DEFAULT_SAFETY_THRESHOLD,
) -> dict[str, Any]:
    """Translate an OpenAI Chat Completions request to a Gemini request body.

    Args:
        payload: OpenAI Chat Completions request body
        safety_threshold: Threshold applied to every harm category

    Returns:
        Gemini generateContent request body

    Raises:
        InvalidRequestError: the request cannot be expressed for Gemini
    """
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise InvalidRequestError(
            "You must provide a messages array", code="missing_parameter", param="messages"
        )

    system_instruction, contents = _convert_messages(messages)
    body: dict[str, Any] = {"contents": contents}
    if system_instruction:
        body["systemInstruction"] = system_instruction

    body["safetySettings"] = build_safety_settings(safety_threshold)

    generation_config = _convert_generation_config(payload)
    if generation_config:
        body["generationConfig"] = generation_config

    tools = _convert_tools(payload.get("tools"))
    if tools:
        body["tools"] = tools
    tool_config = _convert_tool_choice(payload.get("tool_choice"))
    if tool_config:
        body["toolConfig"] = tool_config

    return body


# ---------------------------------------------------------------------------
# Response: Gemini -> OpenAI (non-streaming)
# ---------------------------------------------------------------------------


def _convert_candidate(candidate: Mapping[str, Any], index: int) -> dict[str, Any]:
    text, function_calls = extract_candidate_parts(candidate)
    message: dict[str, Any] = {"role": "assistant", "content": text}
    if function_calls:
        message["tool_calls"] = [
            function_call_to_tool_call(call) for call in function_calls
        ]
        if not text:
            message["content"] = None
    return {
        "index": index,
        "message": message,
        "logprobs": None,
        "finish_reason": resolve_finish_reason(
            candidate.get("finishReason"), bool(function_calls)
        ),
    }


def generate_content_to_chat_completion(
    data: Mapping[str, Any],
    model: str,
    completion_id: Optional[str] = None,
) -> dict[str, Any]:
    """Translate a complete Gemini generateContent response to OpenAI format.

    Candidates are mapped by array position because a one-shot response
    carries the full final set at once.
    """
    candidates = data.get("candidates")
    choices: list[dict[str, Any]] = []
    if isinstance(candidates, list):
        for position, candidate in enumerate(candidates):
            if isinstance(candidate, Mapping):
                choices.append(_convert_candidate(candidate, position))

    if not choices:
        block_reason = prompt_block_reason(data)
        if block_reason:
            logger.warning(f"Prompt blocked upstream: {block_reason}")
            choices.append({
                "index": 0,
                "message": {"role": "assistant", "content": ""},
                "logprobs": None,
                "finish_reason": "content_filter",
            })

    response: dict[str, Any] = {
        "id": completion_id or generate_completion_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": choices,
    }
    usage = convert_usage(data.get("usageMetadata"))
    if usage is not None:
        response["usage"] = usage
    return response
