# agent.py
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import mcp.types as types
import openai
import structlog
from openai import AsyncOpenAI

from config import Settings
from protocol.errors import BackendError, ProtocolError, ValidationError

logger = structlog.get_logger(__name__)

SYSTEM = (
    "You are an assistant connected to a user database through MCP tools. "
    "When the request needs data or changes, call the tools instead of guessing. "
    "Report tool results faithfully."
)


# ---------- model backend ----------
class ChatModel:
    """Chat-completions backend shared by queries, prompts and sampling."""

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None):
        self.settings = settings
        self.model = settings.model
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            try:
                self._client = AsyncOpenAI(api_key=self.settings.openai_api_key or None)
            except openai.OpenAIError as e:
                raise BackendError(f"Model backend not configured: {e}") from e
        return self._client

    async def complete(self, messages: List[Any], tools: Optional[List[Dict]] = None,
                       max_tokens: Optional[int] = None):
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.settings.temperature,
            "max_tokens": max_tokens or self.settings.max_tokens,
        }
        if tools:
            kwargs.update(tools=tools, tool_choice="auto")
        try:
            resp = await self.client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise BackendError(f"Model call failed ({type(e).__name__}): {e}") from e
        return resp.choices[0].message


# ---------- tools schema for function calling ----------
def to_openai_tool(tool: types.Tool) -> Dict[str, Any]:
    schema = dict(tool.inputSchema or {})
    schema.pop("title", None)
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description or "",
            "parameters": schema,
        },
    }


def result_text(result: types.CallToolResult) -> str:
    parts = [c.text for c in result.content if isinstance(c, types.TextContent)]
    return "\n".join(parts)


@dataclass
class ToolRun:
    name: str
    arguments: Dict[str, Any]
    text: str
    is_error: bool = False


@dataclass
class QueryOutcome:
    text: str
    tool_runs: List[ToolRun] = field(default_factory=list)


# ---------- agent ----------
async def run_query(session, model: ChatModel, user_msg: str, max_steps: int = 8) -> QueryOutcome:
    """Let the model answer *user_msg*, calling the peer's tools as it sees fit."""
    tools = [to_openai_tool(t) for t in session.capabilities.tools]
    messages: List[Any] = [{"role": "system", "content": SYSTEM}, {"role": "user", "content": user_msg}]
    runs: List[ToolRun] = []

    # Limit steps to prevent infinite loops
    for _ in range(max_steps):
        try:
            assistant_msg = await model.complete(messages, tools=tools or None)
        except BackendError as e:
            return QueryOutcome(str(e), runs)

        tool_calls = getattr(assistant_msg, "tool_calls", None)
        if not tool_calls:
            return QueryOutcome((assistant_msg.content or "").strip(), runs)

        messages.append({
            "role": "assistant",
            "content": assistant_msg.content,
            "tool_calls": [
                {"id": tc.id, "type": "function",
                 "function": {"name": tc.function.name, "arguments": tc.function.arguments}}
                for tc in tool_calls
            ],
        })
        for tc in tool_calls:
            name = tc.function.name
            try:
                args = json.loads(tc.function.arguments or "{}")
            except json.JSONDecodeError:
                args = {}
            logger.debug("query.tool_call", tool=name, arguments=args)

            try:
                result = await session.call_tool(name, args)
                run = ToolRun(name, args, result_text(result), bool(result.isError))
            except (ProtocolError, ValidationError) as e:
                run = ToolRun(name, args, str(e), True)
            runs.append(run)
            messages.append({"role": "tool", "tool_call_id": tc.id, "content": run.text})

    return QueryOutcome("Sorry, I couldn't complete the request in time. Please try again with a bit more detail.", runs)


def render_outcome(outcome: QueryOutcome) -> str:
    lines = []
    for run in outcome.tool_runs:
        status = "error" if run.is_error else "ok"
        lines.append(f"[tool {run.name} {status}] {run.text}")
    if outcome.text:
        lines.append(outcome.text)
    return "\n".join(lines) or "(no answer)"
