# chat.py
import asyncio, json, os, sys
from typing import Any, Dict

import mcp.types as types
import structlog
from mcp import StdioServerParameters

from agent import ChatModel, render_outcome, result_text, run_query
from config import ROOT, Settings, configure_logging
from protocol.errors import TransportError, UserMcpError, ValidationError
from protocol.registry import expand_template, template_params
from protocol.sampling import SamplingHandler
from protocol.session import HostSession
from tools import human

logger = structlog.get_logger(__name__)

ACTIONS = ["Query", "Tools", "Resources", "Prompts", "Exit"]


def server_params(settings: Settings) -> StdioServerParameters:
    env = dict(os.environ)
    env["USER_DATA_PATH"] = str(settings.user_data_path)
    return StdioServerParameters(
        command=settings.server_command, args=list(settings.server_args), env=env, cwd=str(ROOT),
    )


def open_session(settings: Settings, model: ChatModel, errlog=None) -> HostSession:
    confirm = human.review if settings.confirm_sampling else None
    return HostSession.stdio(
        server_params(settings), errlog=errlog,
        sampling_handler=SamplingHandler(model, confirm=confirm),
        timeout=settings.request_timeout,
    )


# ---------- parameter collection ----------
def coerce(key: str, raw: str, prop: Dict[str, Any]) -> Any:
    """Turn operator text into the JSON type the input schema declares."""
    kind = prop.get("type")
    try:
        if kind == "integer":
            return int(raw)
        if kind == "number":
            return float(raw)
    except ValueError:
        raise ValidationError(f"Expected {kind} for '{key}', got {raw!r}", field=key) from None
    if kind == "boolean":
        return raw.strip().lower() in ("1", "true", "yes", "y")
    return raw


async def collect_tool_args(tool: types.Tool) -> Dict[str, Any]:
    schema = tool.inputSchema or {}
    required = set(schema.get("required") or [])
    args: Dict[str, Any] = {}
    for key, prop in (schema.get("properties") or {}).items():
        raw = await human.ask(f"Enter value for {key} ({prop.get('type', 'any')})")
        if raw == "" and key not in required:
            continue
        args[key] = coerce(key, raw, prop)
    return args


async def resolve_uri(uri: str) -> str:
    values = {}
    for name in template_params(uri):
        values[name] = await human.ask(f"Enter value for {name}:")
    # an empty value is rejected here, before anything is sent
    return expand_template(uri, values)


# ---------- actions ----------
async def handle_tool(session: HostSession, tool: types.Tool) -> None:
    args = await collect_tool_args(tool)
    result = await session.call_tool(tool.name, args)
    label = "Tool error:" if result.isError else "Tool result:"
    print(label, result_text(result))


async def handle_resource(session: HostSession, uri: str) -> None:
    final_uri = await resolve_uri(uri)
    res = await session.read_resource(final_uri)
    for content in res.contents:
        text = getattr(content, "text", None)
        if text is None:
            print(f"Resource content ({content.uri}): <{content.mimeType or 'binary'} data>")
            continue
        try:
            text = json.dumps(json.loads(text), indent=2)
        except json.JSONDecodeError:
            pass
        print(f"Resource content ({content.uri}):\n{text}")


async def handle_prompt(session: HostSession, prompt: types.Prompt, model: ChatModel) -> None:
    args: Dict[str, str] = {}
    for arg in prompt.arguments or []:
        value = await human.ask(f"Enter value for {arg.name}:")
        if value or arg.required:
            args[arg.name] = value
    result = await session.get_prompt(prompt.name, args)
    for message in result.messages:
        text = getattr(message.content, "text", None)
        if text is None:
            continue
        if await human.review(text):
            reply = await model.complete([{"role": message.role, "content": text}])
            print("\n" + (reply.content or ""))


async def handle_query(session: HostSession, model: ChatModel) -> None:
    text = await human.ask("Enter your query")
    if not text:
        return
    outcome = await run_query(session, model, text)
    print("\n" + render_outcome(outcome))


def _title(item) -> str:
    annotations = getattr(item, "annotations", None)
    title = getattr(item, "title", None) or getattr(annotations, "title", None)
    return title or item.name


async def step(session: HostSession, model: ChatModel) -> bool:
    """One menu round. Returns False when the operator asks to leave."""
    caps = session.capabilities
    option = await human.choose("What would you like to do", human.menu_labels(ACTIONS))

    if option == "Exit":
        return False
    if option == "Query":
        await handle_query(session, model)
    elif option == "Tools":
        name = await human.choose("Select a tool", [(_title(t), t.name, t.description) for t in caps.tools])
        tool = caps.find_tool(name)
        if tool is None:
            print("Tool not found")
        else:
            await handle_tool(session, tool)
    elif option == "Resources":
        choices = [(_title(r), str(r.uri), r.description) for r in caps.resources]
        choices += [(_title(t), t.uriTemplate, t.description) for t in caps.resource_templates]
        uri = await human.choose("Select a resource", choices)
        if uri not in caps.resource_uris():
            print("Resource not found")
        else:
            await handle_resource(session, uri)
    elif option == "Prompts":
        name = await human.choose("Select a prompt", [(p.name, p.name, p.description) for p in caps.prompts])
        prompt = caps.find_prompt(name)
        if prompt is None:
            print("Prompt not found")
        else:
            await handle_prompt(session, prompt, model)
    else:
        print(f"Unknown option: {option}")
    return True


async def drive(session: HostSession, model: ChatModel) -> None:
    while True:
        try:
            if not await step(session, model):
                return
        except TransportError:
            raise
        except UserMcpError as e:
            # handler and protocol errors never end the loop
            print(f"Error: {e}")


async def main() -> int:
    settings = Settings.from_env()
    configure_logging(settings)
    model = ChatModel(settings)

    with open(os.devnull, "w") as devnull:
        session = open_session(settings, model, errlog=sys.stderr if settings.debug else devnull)
        try:
            await session.connect()
            print("You Are Connected Successfully")
            await drive(session, model)
        except TransportError as e:
            print(f"Error: {e}")
            return 1
        except EOFError:
            print("\nBye!")
        finally:
            await session.close()
    return 0


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nBye!")


if __name__ == "__main__":
    cli()
