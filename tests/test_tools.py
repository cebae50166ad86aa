"""Tests for the Microsoft Graph operation catalogue."""

import json

import httpx
import pytest

from tools import OPERATIONS, OperationCatalogue

PROPS = {"upstream_access_token": "graph-token", "user_id": "ms-user-1"}


def make_catalogue(config, handler) -> OperationCatalogue:
    return OperationCatalogue(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestListing:
    def test_tools(self, config):
        names = {tool.name for tool in make_catalogue(config, None).list_tools()}
        assert names == {
            "sendEmail", "getEmails", "searchEmails", "getCalendarEvents",
            "createCalendarEvent", "getContacts", "getProfile",
        }

    def test_required_arguments_are_in_schema(self):
        assert OPERATIONS["sendEmail"].tool.inputSchema["required"] == ["to", "subject", "body"]
        assert "required" not in OPERATIONS["getProfile"].tool.inputSchema

    def test_resources(self, config):
        uris = {str(resource.uri) for resource in make_catalogue(config, None).list_resources()}
        assert uris == {"microsoft://profile", "microsoft://calendars"}


class TestCallTool:
    @pytest.mark.asyncio
    async def test_get_emails_calls_graph_with_upstream_token(self, config):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"value": [{"id": "m1", "subject": "Hello"}]})

        result = await make_catalogue(config, handler).call_tool(PROPS, "getEmails", {"count": 5})

        assert not result.isError
        assert json.loads(result.content[0].text) == [{"id": "m1", "subject": "Hello"}]
        request = seen[0]
        assert request.url.path == "/v1.0/me/mailFolders/inbox/messages"
        assert request.url.params["$top"] == "5"
        assert request.headers["Authorization"] == "Bearer graph-token"

    @pytest.mark.asyncio
    async def test_count_is_clamped(self, config):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"value": []})

        await make_catalogue(config, handler).call_tool(PROPS, "getEmails", {"count": 500})
        assert seen[0].url.params["$top"] == "50"

    @pytest.mark.asyncio
    async def test_folder_is_a_single_path_segment(self, config):
        """A folder name cannot reach other Graph paths or add query parameters."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"value": []})

        await make_catalogue(config, handler).call_tool(PROPS, "getEmails", {"folder": "../../users/x?$top=999"})

        raw_path = seen[0].url.raw_path.decode()
        assert raw_path.startswith("/v1.0/me/mailFolders/")
        assert "/mailFolders/..%2F..%2Fusers%2Fx%3F%24top%3D999/messages?" in raw_path
        assert seen[0].url.params["$top"] == "10"

    @pytest.mark.asyncio
    async def test_send_email_accepts_empty_202(self, config):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(202)

        result = await make_catalogue(config, handler).call_tool(
            PROPS, "sendEmail", {"to": "bob@example.com", "subject": "Hi", "body": "Hello", "contentType": "text"}
        )

        assert not result.isError
        assert "bob@example.com" in result.content[0].text
        body = json.loads(seen[0].content)
        assert seen[0].method == "POST"
        assert body["message"]["body"] == {"contentType": "text", "content": "Hello"}
        assert body["message"]["toRecipients"] == [{"emailAddress": {"address": "bob@example.com"}}]

    @pytest.mark.asyncio
    async def test_create_calendar_event(self, config):
        def handler(request):
            event = json.loads(request.content)
            assert event["attendees"] == [{"emailAddress": {"address": "a@example.com"}, "type": "required"}]
            return httpx.Response(201, json={"id": "e1", "subject": event["subject"]})

        result = await make_catalogue(config, handler).call_tool(PROPS, "createCalendarEvent", {
            "subject": "Sync",
            "start": "2026-01-01T10:00:00",
            "end": "2026-01-01T11:00:00",
            "attendees": ["a@example.com"],
        })
        assert json.loads(result.content[0].text) == {"id": "e1", "subject": "Sync"}

    @pytest.mark.asyncio
    async def test_downstream_error_is_labelled(self, config):
        def handler(request):
            return httpx.Response(403, json={"error": {"code": "ErrorAccessDenied", "message": "Access is denied."}})

        result = await make_catalogue(config, handler).call_tool(PROPS, "getProfile", {})

        assert result.isError
        text = result.content[0].text
        assert "Downstream (Microsoft Graph) error" in text
        assert "403" in text
        assert "Access is denied." in text

    @pytest.mark.asyncio
    async def test_missing_required_arguments(self, config):
        calls = []
        catalogue = make_catalogue(config, lambda request: calls.append(request))

        result = await catalogue.call_tool(PROPS, "sendEmail", {"to": "bob@example.com"})

        assert result.isError
        assert "subject" in result.content[0].text
        assert calls == []

    @pytest.mark.asyncio
    async def test_unknown_tool(self, config):
        result = await make_catalogue(config, None).call_tool(PROPS, "deleteEverything", {})
        assert result.isError
        assert "Unknown tool" in result.content[0].text


class TestReadResource:
    @pytest.mark.asyncio
    async def test_profile(self, config):
        def handler(request):
            assert request.url.path == "/v1.0/me"
            return httpx.Response(200, json={"id": "ms-user-1", "displayName": "Ada Lovelace"})

        result = await make_catalogue(config, handler).read_resource(PROPS, "microsoft://profile")

        (contents,) = result.contents
        assert contents.mimeType == "application/json"
        assert json.loads(contents.text)["displayName"] == "Ada Lovelace"

    @pytest.mark.asyncio
    async def test_downstream_error_is_reported_in_contents(self, config):
        result = await make_catalogue(config, lambda request: httpx.Response(500)).read_resource(
            PROPS, "microsoft://calendars"
        )
        payload = json.loads(result.contents[0].text)
        assert "Downstream (Microsoft Graph) error" in payload["error"]

    @pytest.mark.asyncio
    async def test_unknown_uri(self, config):
        assert await make_catalogue(config, None).read_resource(PROPS, "microsoft://nope") is None
