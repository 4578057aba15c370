#!/usr/bin/env python3
"""Vid-Discover MCP Server: YouTube suggestion generation and review."""

import json
import os

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from .config import ApiSettings, CurationSettings
from .curator import SuggestionCurator
from .db import Database
from .discovery import DiscoveryOrchestrator
from .notifications import Notifier
from .quota import QuotaLedger
from .youtube import YouTubeClient

load_dotenv()

DEFAULT_USER = os.getenv("VID_DISCOVER_USER", "default")

# Initialize global instances
settings = CurationSettings()
api_settings = ApiSettings.from_env()
db = Database(expiry_days=settings.suggestion_expiry_days)
notifier = Notifier()
ledger = QuotaLedger(api_settings, notifier=notifier, store=db)
youtube_client = YouTubeClient(ledger, api_settings, notifier=notifier)
curator = SuggestionCurator(
    db,
    DiscoveryOrchestrator(db, youtube_client, settings),
    ledger=ledger,
    notifier=notifier,
    settings=settings,
)

# Create MCP server
app = Server("vid-discover")


def _text(payload) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2, default=str))]


@app.list_tools()
async def list_tools() -> list[Tool]:
    """List all available tools."""
    return [
        Tool(
            name="generate_suggestions",
            description="Discover new videos from tracked channels and topics and queue the best as suggestions",
            inputSchema={
                "type": "object",
                "properties": {
                    "threshold": {
                        "type": "number",
                        "description": "Minimum score (0-11) for a video to be suggested",
                        "default": settings.default_score_threshold,
                    },
                },
            },
        ),
        Tool(
            name="list_suggestions",
            description="List pending suggestions, best score first",
            inputSchema={
                "type": "object",
                "properties": {
                    "limit": {
                        "type": "integer",
                        "description": "Maximum number of suggestions to return",
                        "default": 20,
                    },
                    "offset": {"type": "integer", "description": "Number of suggestions to skip", "default": 0},
                },
            },
        ),
        Tool(
            name="approve_suggestion",
            description="Approve a suggestion and add the video to the library",
            inputSchema={
                "type": "object",
                "properties": {
                    "suggestion_id": {"type": "integer", "description": "The suggestion ID"},
                },
                "required": ["suggestion_id"],
            },
        ),
        Tool(
            name="deny_suggestion",
            description="Dismiss a suggestion",
            inputSchema={
                "type": "object",
                "properties": {
                    "suggestion_id": {"type": "integer", "description": "The suggestion ID"},
                },
                "required": ["suggestion_id"],
            },
        ),
        Tool(
            name="add_topic",
            description="Add a topic of interest used for keyword discovery",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Topic, e.g. 'rust programming'"},
                },
                "required": ["name"],
            },
        ),
        Tool(
            name="track_channel",
            description="Track a YouTube channel for new uploads, optionally with a 1-5 star rating",
            inputSchema={
                "type": "object",
                "properties": {
                    "channel_id": {"type": "string", "description": "YouTube channel ID (UC...)"},
                    "name": {"type": "string", "description": "Channel name"},
                    "rating": {
                        "type": "integer",
                        "description": "Rating from 1-5 (1 stops polling the channel)",
                        "minimum": 1,
                        "maximum": 5,
                    },
                },
                "required": ["channel_id"],
            },
        ),
        Tool(
            name="quota_status",
            description="Show today's YouTube API quota usage",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    try:
        if name == "generate_suggestions":
            threshold = arguments.get("threshold")
            result = await curator.generate(DEFAULT_USER, threshold)
            return _text({"message": result.summary_message(), **result.model_dump(mode="json")})

        elif name == "list_suggestions":
            limit = arguments.get("limit", 20)
            offset = arguments.get("offset", 0)
            suggestions = curator.list_pending(DEFAULT_USER, limit, offset)
            return _text([s.model_dump(mode="json") for s in suggestions])

        elif name == "approve_suggestion":
            ok = curator.approve(DEFAULT_USER, arguments["suggestion_id"])
            return _text({"status": "success"} if ok else {"error": "Suggestion not found or already reviewed"})

        elif name == "deny_suggestion":
            ok = curator.deny(DEFAULT_USER, arguments["suggestion_id"])
            return _text({"status": "success"} if ok else {"error": "Suggestion not found or already reviewed"})

        elif name == "add_topic":
            topic = db.add_topic(DEFAULT_USER, arguments["name"])
            return _text({"status": "success", "topic": topic.model_dump()})

        elif name == "track_channel":
            source = db.add_source(DEFAULT_USER, arguments["channel_id"], arguments.get("name", ""))
            if "rating" in arguments:
                db.rate_source(DEFAULT_USER, source.source_id, arguments["rating"])
            return _text({"status": "success", "channel_id": source.source_id})

        elif name == "quota_status":
            status = ledger.status()
            return _text({**status.model_dump(mode="json"), "remaining": status.remaining})

        else:
            return _text({"error": f"Unknown tool: {name}"})

    except Exception as e:
        return _text({"error": str(e)})


async def main():
    """Run the MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
