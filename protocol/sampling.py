"""Sampling bridge.

A peer handler that needs a completion asks the connected host through
``sampling/createMessage``; the host answers with its own model. The peer
side lives in ``request_text`` / ``parse_model_json``, the host side in
``SamplingHandler``, which is passed to the client session as its sampling
callback.
"""
import json, re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union

import mcp.types as types
import pydantic
import structlog
from mcp.shared.exceptions import McpError

from protocol.errors import BackendError, ValidationError
from protocol.registry import CallContext, validate_model

logger = structlog.get_logger(__name__)

FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
FENCE_CLOSE_RE = re.compile(r"\s*```$")


def _text_of(content: Any) -> Optional[str]:
    if isinstance(content, list):
        for block in content:
            if isinstance(block, types.TextContent):
                return block.text
        return None
    if isinstance(content, types.TextContent):
        return content.text
    return None


# ---------- peer side ----------
async def request_text(ctx: CallContext, prompt: str, max_tokens: int = 1024,
                       model_hint: Optional[str] = "gpt-4o") -> str:
    """Ask the host's model for a completion and return its raw text."""
    if ctx.sampler is None:
        raise BackendError("Model call failed: sampling is not available on this connection")
    messages = [types.SamplingMessage(role="user", content=types.TextContent(type="text", text=prompt))]
    try:
        result = await ctx.sampler(messages, max_tokens, model_hint)
    except McpError as e:
        raise BackendError(f"Model call failed: {e.error.message}") from e
    text = _text_of(result.content)
    if text is None:
        raise BackendError(
            "Failed to generate fake user profile (no text returned): " + result.model_dump_json()
        )
    return text


def strip_fences(text: str) -> str:
    """Drop a ```json ... ``` wrapper around model output, if any."""
    cleaned = FENCE_OPEN_RE.sub("", text.strip())
    return FENCE_CLOSE_RE.sub("", cleaned).strip()


def parse_model_json(text: str, model: Type[pydantic.BaseModel]) -> pydantic.BaseModel:
    """Parse fenced or bare JSON model output into *model*.

    Every required field must be present before the content is trusted.
    """
    cleaned = strip_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Failed to parse model output as JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("Model output is not a JSON object")
    missing = [name for name, f in model.model_fields.items() if f.is_required() and name not in data]
    if missing:
        raise ValidationError(
            "Model output is missing required fields: " + ", ".join(missing), field=missing[0]
        )
    return validate_model(model, data, "model output")


# ---------- host side ----------
class SamplingHandler:
    """Serves sampling requests from the peer with the host's chat model.

    confirm, when given, receives the rendered request and may veto it.
    """

    def __init__(self, model, confirm: Optional[Callable[[str], Awaitable[bool]]] = None):
        self.model = model
        self.confirm = confirm

    async def __call__(self, context, params: types.CreateMessageRequestParams
                       ) -> Union[types.CreateMessageResult, types.ErrorData]:
        messages: List[Dict[str, str]] = []
        if params.systemPrompt:
            messages.append({"role": "system", "content": params.systemPrompt})
        for m in params.messages:
            text = _text_of(m.content)
            if text is not None:
                messages.append({"role": m.role, "content": text})

        hints = params.modelPreferences.hints if params.modelPreferences else None
        logger.info("sampling.requested", messages=len(messages),
                    hint=hints[0].name if hints else None)

        if self.confirm is not None:
            preview = "\n".join(m["content"] for m in messages)
            if not await self.confirm(preview):
                return types.ErrorData(code=types.INVALID_REQUEST, message="Sampling request declined by operator")

        try:
            reply = await self.model.complete(messages, max_tokens=params.maxTokens)
        except BackendError as e:
            logger.warning("sampling.failed", error=str(e))
            return types.ErrorData(code=types.INTERNAL_ERROR, message=str(e))

        return types.CreateMessageResult(
            role="assistant",
            content=types.TextContent(type="text", text=reply.content or ""),
            model=self.model.model,
            stopReason="endTurn",
        )
