"""Tests for the capability registry and the user capabilities registered on it."""

import json

import pytest

from protocol.errors import MethodNotFound, NotFoundError, ToolError, ValidationError
from protocol.registry import CapabilityRegistry, expand_template, match_template, template_params


# ---------------------------------------------------------------------------
# URI templates
# ---------------------------------------------------------------------------


class TestTemplates:

    def test_params_in_order(self):
        assert template_params("users://{id}/posts/{post}") == ["id", "post"]
        assert template_params("users://all") == []

    def test_expand_substitutes_literally(self):
        assert expand_template("users://{id}/profile", {"id": "7"}) == "users://7/profile"
        assert expand_template("a://{x}/{y}", {"x": "a b", "y": "%2F"}) == "a://a b/%2F"

    def test_expand_rejects_missing_value(self):
        with pytest.raises(ValidationError) as exc:
            expand_template("users://{id}/profile", {})
        assert exc.value.field == "id"

    def test_expand_rejects_empty_value(self):
        with pytest.raises(ValidationError) as exc:
            expand_template("a://{x}/{y}", {"x": "1", "y": ""})
        assert exc.value.field == "y"

    def test_match_extracts_variables(self):
        assert match_template("users://{id}/profile", "users://12/profile") == {"id": "12"}

    def test_match_does_not_decode(self):
        assert match_template("users://{id}/profile", "users://a%20b/profile") == {"id": "a%20b"}

    def test_match_rejects_other_shapes(self):
        assert match_template("users://{id}/profile", "users://all") is None
        assert match_template("users://{id}/profile", "users://1/2/profile") is None


# ---------------------------------------------------------------------------
# Registration rules
# ---------------------------------------------------------------------------


class TestRegistration:

    def test_duplicate_tool_name_rejected(self):
        reg = CapabilityRegistry()

        async def handler(args, ctx):
            return "ok"

        reg.add_tool("t", handler)
        with pytest.raises(ValueError):
            reg.add_tool("t", handler)

    def test_template_requires_list_function(self):
        reg = CapabilityRegistry()

        async def read(uri, variables):
            return "{}"

        with pytest.raises(ValueError):
            reg.add_resource("thing", "things://{id}", read)

    @pytest.mark.asyncio
    async def test_concrete_resource_listed_without_list_function(self):
        reg = CapabilityRegistry()

        async def read(uri, variables):
            return "hello"

        reg.add_resource("greeting", "greeting://world", read, mime_type="text/plain")
        listed = await reg.list_resources()
        assert [str(r.uri) for r in listed] == ["greeting://world"]
        assert reg.list_resource_templates() == []
        contents = await reg.read_resource("greeting://world")
        assert contents[0].text == "hello"


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


class TestDiscovery:

    def test_tools(self, registry):
        tools = {t.name: t for t in registry.list_tools()}
        assert set(tools) == {"create-user", "create-random-user"}
        create = tools["create-user"]
        assert create.annotations.title == "Create User"
        assert create.annotations.readOnlyHint is False
        assert create.annotations.openWorldHint is True
        assert set(create.inputSchema["properties"]) == {"name", "email", "password"}
        assert set(create.inputSchema["required"]) == {"name", "email", "password"}
        assert tools["create-random-user"].inputSchema["properties"] == {}

    @pytest.mark.asyncio
    async def test_resources_aggregate_listing_outputs(self, registry):
        uris = [str(r.uri) for r in await registry.list_resources()]
        assert uris == ["users://all", "users://1/profile"]

    @pytest.mark.asyncio
    async def test_profile_example_uses_first_user(self, registry, data_path):
        data_path.write_text(json.dumps([{"id": 3, "name": "x", "email": "x@x.com", "password": "p"}]))
        uris = [str(r.uri) for r in await registry.list_resources()]
        assert "users://3/profile" in uris

    @pytest.mark.asyncio
    async def test_profile_example_survives_corrupt_store(self, registry, data_path):
        data_path.write_text("garbage")
        uris = [str(r.uri) for r in await registry.list_resources()]
        assert "users://1/profile" in uris

    def test_templates(self, registry):
        templates = registry.list_resource_templates()
        assert [t.uriTemplate for t in templates] == ["users://{id}/profile"]

    def test_prompts(self, registry):
        (prompt,) = registry.list_prompts()
        assert prompt.name == "generate-fake-user"
        assert [(a.name, a.required) for a in prompt.arguments] == [("name", True)]

    @pytest.mark.asyncio
    async def test_discovery_is_idempotent(self, registry):
        assert registry.list_tools() == registry.list_tools()
        assert await registry.list_resources() == await registry.list_resources()
        assert registry.list_resource_templates() == registry.list_resource_templates()
        assert registry.list_prompts() == registry.list_prompts()


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:

    @pytest.mark.asyncio
    async def test_scenario_create_then_read(self, registry):
        """Create Ann, then read her profile and the full list."""
        content = await registry.call_tool(
            "create-user", {"name": "Ann", "email": "ann@x.com", "password": "p1"}
        )
        assert content[0].text == "Created user: 1"

        expected = {"id": 1, "name": "Ann", "email": "ann@x.com", "password": "p1"}
        profile = await registry.read_resource("users://1/profile")
        assert json.loads(profile[0].text) == expected
        assert profile[0].mimeType == "application/json"

        everyone = await registry.read_resource("users://all")
        assert json.loads(everyone[0].text) == [expected]

    @pytest.mark.asyncio
    async def test_unknown_profile_is_data_not_fault(self, registry):
        contents = await registry.read_resource("users://99/profile")
        assert json.loads(contents[0].text) == {"error": "User not found"}

    @pytest.mark.asyncio
    async def test_non_numeric_id_is_not_found(self, registry):
        contents = await registry.read_resource("users://abc/profile")
        assert json.loads(contents[0].text) == {"error": "User not found"}

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry):
        with pytest.raises(MethodNotFound):
            await registry.call_tool("drop-users", {})

    @pytest.mark.asyncio
    async def test_unknown_resource(self, registry):
        with pytest.raises(NotFoundError):
            await registry.read_resource("posts://1")

    @pytest.mark.asyncio
    async def test_unknown_prompt(self, registry):
        with pytest.raises(MethodNotFound):
            await registry.get_prompt("nope", {})

    @pytest.mark.asyncio
    async def test_bad_email_rejected_before_side_effect(self, registry, store):
        with pytest.raises(ValidationError) as exc:
            await registry.call_tool("create-user", {"name": "Ann", "email": "nope", "password": "p1"})
        assert exc.value.field == "email"
        assert store.list_users() == []

    @pytest.mark.asyncio
    async def test_missing_field_named(self, registry, store):
        with pytest.raises(ValidationError) as exc:
            await registry.call_tool("create-user", {"name": "Ann", "email": "ann@x.com"})
        assert exc.value.field == "password"
        assert store.list_users() == []

    @pytest.mark.asyncio
    async def test_wrong_type_named(self, registry):
        with pytest.raises(ValidationError) as exc:
            await registry.call_tool("create-user", {"name": 5, "email": "ann@x.com", "password": "p"})
        assert exc.value.field == "name"

    @pytest.mark.asyncio
    async def test_corrupt_store_is_tool_error(self, registry, data_path):
        data_path.write_text("garbage")
        with pytest.raises(ToolError, match="Failed to create user"):
            await registry.call_tool("create-user", {"name": "Ann", "email": "ann@x.com", "password": "p1"})

    @pytest.mark.asyncio
    async def test_non_integer_id_is_tool_error(self, registry, data_path):
        data_path.write_text(json.dumps([{"id": "x", "name": "a", "email": "a@x.com", "password": "p"}]))
        with pytest.raises(ToolError, match="Failed to create user: .*non-integer id"):
            await registry.call_tool("create-user", {"name": "Ann", "email": "ann@x.com", "password": "p1"})

    @pytest.mark.asyncio
    async def test_prompt_renders_one_user_message(self, registry):
        result = await registry.get_prompt("generate-fake-user", {"name": "Bob"})
        (message,) = result.messages
        assert message.role == "user"
        assert message.content.text == (
            'Generate a fake user profile with the name "Bob". '
            "The profile should include name, email, and password."
        )

    @pytest.mark.asyncio
    async def test_prompt_argument_required(self, registry):
        with pytest.raises(ValidationError) as exc:
            await registry.get_prompt("generate-fake-user", {})
        assert exc.value.field == "name"
