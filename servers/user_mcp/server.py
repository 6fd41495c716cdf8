# servers/user_mcp/server.py
import asyncio, json, re
from typing import List

import mcp.types as types
import structlog
from pydantic import BaseModel, Field, field_validator

from config import Settings, configure_logging
from protocol.errors import BackendError, CorruptStoreError, ToolError, ValidationError
from protocol.peer import Peer
from protocol.registry import CallContext, CapabilityRegistry, ToolHints, text_message
from protocol.sampling import parse_model_json, request_text
from servers.user_mcp.store import UserStore

logger = structlog.get_logger(__name__)

SERVER_NAME = "user-mcp"
SERVER_VERSION = "1.0.0"
INSTRUCTIONS = "A simple MCP server that manages demo users"

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

RANDOM_USER_PROMPT = (
    "Generate a fake user profile with the name 'John Doe'. The profile should include "
    "name, email, and password. Return only the profile in JSON format."
)

CREATE_HINTS = ToolHints(read_only=False, destructive=False, idempotent=False, open_world=True)


class NewUser(BaseModel):
    name: str
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _email_shape(cls, v: str) -> str:
        if not EMAIL_RE.match(v):
            raise ValueError("Invalid email")
        return v


class FakeUserArgs(BaseModel):
    name: str = Field(description="Name of the user to generate")


def build_registry(store: UserStore) -> CapabilityRegistry:
    registry = CapabilityRegistry()

    @registry.tool("create-user", description="Create a new user in Database",
                   params=NewUser, title="Create User", hints=CREATE_HINTS)
    async def create_user(args: NewUser, ctx: CallContext) -> str:
        try:
            uid = store.create_user(args.name, args.email, args.password)
        except (CorruptStoreError, OSError) as e:
            raise ToolError(f"Failed to create user: {e}") from e
        return f"Created user: {uid}"

    @registry.tool("create-random-user",
                   description="Create a random user using fake data from the sampling API",
                   title="Create Random User", hints=CREATE_HINTS)
    async def create_random_user(args, ctx: CallContext) -> str:
        try:
            text = await request_text(ctx, RANDOM_USER_PROMPT, max_tokens=1024)
        except BackendError as e:
            raise ToolError(str(e)) from e
        try:
            fake = parse_model_json(text, NewUser)
        except ValidationError as e:
            raise ToolError(str(e)) from e
        try:
            uid = store.create_user(fake.name, fake.email, fake.password)
        except (CorruptStoreError, OSError) as e:
            raise ToolError(f"Failed to create user: {e}") from e
        return f"User {uid} created successfully"

    async def list_all() -> List[types.Resource]:
        return [types.Resource(uri="users://all", name="users", title="All Users",
                               description="All users in the database", mimeType="application/json")]

    @registry.resource("users", "users://all", list_fn=list_all,
                       description="All users in the database", title="All Users")
    async def read_all(uri: str, variables) -> str:
        return json.dumps(store.list_users())

    async def list_profiles() -> List[types.Resource]:
        # one example URI is enough; the read handler takes any id
        try:
            users = store.list_users()
        except CorruptStoreError as e:
            logger.warning("store.unreadable", error=str(e))
            users = []
        first = users[0].get("id", 1) if users else 1
        return [types.Resource(
            uri=f"users://{first}/profile", name="get-user", title="Get User by ID",
            description=f"Get user by ID. Use users://{{id}}/profile (e.g. users://{first}/profile, users://5/profile)",
            mimeType="application/json",
        )]

    @registry.resource("get-user", "users://{id}/profile", list_fn=list_profiles,
                       description="Get user details by ID. Use users://{id}/profile with desired id",
                       title="Get User by ID")
    async def read_profile(uri: str, variables) -> str:
        try:
            user = store.get_user(int(variables["id"]))
        except ValueError:
            user = None
        if user is None:
            return json.dumps({"error": "User not found"})
        return json.dumps(user)

    @registry.prompt("generate-fake-user", description="Generate a fake user profile by name",
                     params=FakeUserArgs)
    async def generate_fake_user(args: FakeUserArgs):
        return [text_message(
            "user",
            f'Generate a fake user profile with the name "{args.name}". '
            "The profile should include name, email, and password.",
        )]

    return registry


def build_peer(settings: Settings) -> Peer:
    store = UserStore(settings.user_data_path)
    return Peer(build_registry(store), SERVER_NAME, SERVER_VERSION, instructions=INSTRUCTIONS)


async def serve() -> None:
    settings = Settings.from_env()
    configure_logging(settings)
    logger.info("store.path", path=str(settings.user_data_path))
    await build_peer(settings).run_stdio()


def main() -> None:
    asyncio.run(serve())


if __name__ == "__main__":
    # clients connect over stdio
    main()
