"""MCP tools for the Microsoft 365 bridge.

This module defines the protected operations (mail, calendar, contacts,
profile) that are exposed to clients, and the resources backed by the same
Microsoft Graph calls. Each operation receives the caller's session props and
calls Graph with the upstream bearer token held there.

The catalogue is never consulted for a caller without identity context; that
gate lives in the session actor.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

import httpx
from mcp.types import (
    CallToolResult,
    ReadResourceResult,
    Resource,
    TextContent,
    TextResourceContents,
    Tool,
)

from config import Config

logger = logging.getLogger(__name__)


class DownstreamError(Exception):
    """Microsoft Graph returned a non-success response."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"Microsoft Graph API error: {status_code} - {message}")
        self.status_code = status_code
        self.message = message


class GraphClient:
    """Thin async client for the Microsoft Graph REST API."""

    def __init__(self, base_url: str, client: httpx.AsyncClient):
        self.base_url = base_url.rstrip("/")
        self._client = client

    async def request(
        self,
        access_token: str,
        method: str,
        path: str,
        params: dict = None,
        body: dict = None,
    ) -> Any:
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise DownstreamError(502, str(e)) from e

        if response.status_code >= 400:
            try:
                message = response.json().get("error", {}).get("message") or "Unknown error"
            except (ValueError, AttributeError):
                message = response.text or "Unknown error"
            raise DownstreamError(response.status_code, message)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()


@dataclass
class Operation:
    tool: Tool
    handler: Callable[[GraphClient, str, dict], Awaitable[str]]
    required: tuple = ()


OPERATIONS: dict[str, Operation] = {}


def operation(name: str, description: str, properties: dict = None, required: tuple = ()):
    """Register a protected operation under its MCP tool name."""

    def decorator(func):
        schema = {"type": "object", "properties": properties or {}}
        if required:
            schema["required"] = list(required)
        OPERATIONS[name] = Operation(
            tool=Tool(name=name, description=description, inputSchema=schema),
            handler=func,
            required=tuple(required),
        )
        return func

    return decorator


def _count(args: dict, default: int, maximum: int) -> int:
    try:
        value = int(args.get("count") or default)
    except (TypeError, ValueError):
        value = default
    return max(1, min(value, maximum))


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2)


# ============== Mail ==============

@operation(
    "sendEmail",
    "Send an email via Outlook",
    {
        "to": {"type": "string", "description": "Recipient email address"},
        "subject": {"type": "string", "description": "Email subject"},
        "body": {"type": "string", "description": "Email body content"},
        "contentType": {"type": "string", "enum": ["text", "html"], "default": "html"},
    },
    required=("to", "subject", "body"),
)
async def send_email(graph: GraphClient, token: str, args: dict) -> str:
    message = {
        "subject": args["subject"],
        "body": {
            "contentType": "text" if args.get("contentType") == "text" else "html",
            "content": args["body"],
        },
        "toRecipients": [{"emailAddress": {"address": args["to"]}}],
    }
    await graph.request(token, "POST", "/me/sendMail", body={"message": message})
    return f"Email sent successfully to {args['to']}"


@operation(
    "getEmails",
    "Get recent emails",
    {
        "count": {"type": "integer", "maximum": 50, "default": 10, "description": "Number of emails"},
        "folder": {"type": "string", "default": "inbox", "description": "Mail folder"},
    },
)
async def get_emails(graph: GraphClient, token: str, args: dict) -> str:
    folder = args.get("folder") or "inbox"
    data = await graph.request(
        token,
        "GET",
        f"/me/mailFolders/{quote(str(folder), safe='')}/messages",
        params={
            "$top": _count(args, 10, 50),
            "$select": "id,subject,from,receivedDateTime,bodyPreview,isRead",
        },
    )
    return _dump(data.get("value", []))


@operation(
    "searchEmails",
    "Search emails",
    {
        "query": {"type": "string", "description": "Search query (KQL)"},
        "count": {"type": "integer", "maximum": 50, "default": 10, "description": "Number of results"},
    },
    required=("query",),
)
async def search_emails(graph: GraphClient, token: str, args: dict) -> str:
    data = await graph.request(
        token,
        "GET",
        "/me/messages",
        params={
            "$search": f'"{args["query"]}"',
            "$top": _count(args, 10, 50),
            "$select": "id,subject,from,receivedDateTime,bodyPreview",
        },
    )
    return _dump(data.get("value", []))


# ============== Calendar ==============

@operation(
    "getCalendarEvents",
    "Get calendar events",
    {"days": {"type": "integer", "maximum": 30, "default": 7, "description": "Days ahead"}},
)
async def get_calendar_events(graph: GraphClient, token: str, args: dict) -> str:
    try:
        days = max(1, min(int(args.get("days") or 7), 30))
    except (TypeError, ValueError):
        days = 7
    start = datetime.now(timezone.utc)
    end = start + timedelta(days=days)
    data = await graph.request(
        token,
        "GET",
        "/me/calendarView",
        params={
            "startDateTime": start.isoformat(),
            "endDateTime": end.isoformat(),
            "$select": "id,subject,start,end,attendees,organizer,webLink",
        },
    )
    return _dump(data.get("value", []))


@operation(
    "createCalendarEvent",
    "Create calendar event",
    {
        "subject": {"type": "string", "description": "Event title"},
        "start": {"type": "string", "description": "Start time (ISO 8601)"},
        "end": {"type": "string", "description": "End time (ISO 8601)"},
        "attendees": {"type": "array", "items": {"type": "string"}, "description": "Attendee emails"},
        "body": {"type": "string", "description": "Event description"},
    },
    required=("subject", "start", "end"),
)
async def create_calendar_event(graph: GraphClient, token: str, args: dict) -> str:
    event = {
        "subject": args["subject"],
        "start": {"dateTime": args["start"], "timeZone": "UTC"},
        "end": {"dateTime": args["end"], "timeZone": "UTC"},
        "attendees": [
            {"emailAddress": {"address": email}, "type": "required"}
            for email in args.get("attendees") or []
        ],
        "body": {"contentType": "html", "content": args.get("body") or ""},
    }
    created = await graph.request(token, "POST", "/me/events", body=event)
    return _dump(created)


# ============== Contacts and profile ==============

@operation(
    "getContacts",
    "Get contacts",
    {
        "count": {"type": "integer", "maximum": 100, "default": 50, "description": "Number of contacts"},
        "search": {"type": "string", "description": "Search term"},
    },
)
async def get_contacts(graph: GraphClient, token: str, args: dict) -> str:
    params = {
        "$top": _count(args, 50, 100),
        "$select": "id,displayName,scoredEmailAddresses,phones,personType",
    }
    if args.get("search"):
        params["$search"] = f'"{args["search"]}"'
    data = await graph.request(token, "GET", "/me/people", params=params)
    return _dump(data.get("value", []))


PROFILE_SELECT = "id,displayName,mail,userPrincipalName,jobTitle,department,companyName"


@operation("getProfile", "Get the signed-in user's Microsoft 365 profile")
async def get_profile(graph: GraphClient, token: str, args: dict) -> str:
    return _dump(await graph.request(token, "GET", "/me", params={"$select": PROFILE_SELECT}))


# ============== Resources ==============

RESOURCES: dict[str, tuple[Resource, Callable[[GraphClient, str], Awaitable[Any]]]] = {}


async def _read_profile(graph: GraphClient, token: str) -> Any:
    return await graph.request(token, "GET", "/me", params={"$select": PROFILE_SELECT})


async def _read_calendars(graph: GraphClient, token: str) -> Any:
    data = await graph.request(token, "GET", "/me/calendars", params={"$select": "id,name,color,canEdit,owner"})
    return data.get("value", [])


RESOURCES["microsoft://profile"] = (
    Resource(uri="microsoft://profile", name="profile", mimeType="application/json",
             description="Signed-in user's profile"),
    _read_profile,
)
RESOURCES["microsoft://calendars"] = (
    Resource(uri="microsoft://calendars", name="calendars", mimeType="application/json",
             description="Calendars the user can access"),
    _read_calendars,
)


class OperationCatalogue:
    """Lists and executes the protected operations.

    Args:
        config: Provides the Graph base URL and the HTTP timeout.
        client: Optional httpx client (tests pass one with a mock transport).
    """

    def __init__(self, config: Config, client: httpx.AsyncClient = None):
        self._http = client or httpx.AsyncClient(timeout=config.upstream_timeout)
        self.graph = GraphClient(config.graph_api_base, self._http)

    async def aclose(self) -> None:
        await self._http.aclose()

    def list_tools(self) -> list[Tool]:
        return [op.tool for op in OPERATIONS.values()]

    def list_resources(self) -> list[Resource]:
        return [resource for resource, _ in RESOURCES.values()]

    async def call_tool(self, props: dict, name: str, arguments: Optional[dict] = None) -> CallToolResult:
        op = OPERATIONS.get(name)
        if op is None:
            return _error_result(f"Unknown tool: {name}")

        arguments = arguments or {}
        missing = [key for key in op.required if key not in arguments]
        if missing:
            return _error_result(f"Missing required argument(s): {', '.join(missing)}")

        logger.info(f"[TOOL] {name} invoked for user {props.get('user_id', 'unknown')}")
        try:
            text = await op.handler(self.graph, props["upstream_access_token"], arguments)
        except DownstreamError as e:
            logger.warning(f"[TOOL] {name} failed: downstream status {e.status_code}")
            return _error_result(f"{name} failed. Downstream (Microsoft Graph) error: {e}")
        return CallToolResult(content=[TextContent(type="text", text=text)])

    async def read_resource(self, props: dict, uri: str) -> Optional[ReadResourceResult]:
        """Read a resource; None if the URI is unknown."""
        entry = RESOURCES.get(uri)
        if entry is None:
            return None
        resource, reader = entry
        try:
            payload = await reader(self.graph, props["upstream_access_token"])
        except DownstreamError as e:
            payload = {"error": f"Downstream (Microsoft Graph) error: {e}", "authenticated": True}
        return ReadResourceResult(
            contents=[TextResourceContents(uri=uri, mimeType=resource.mimeType, text=_dump(payload))]
        )


def _error_result(text: str) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=True)
