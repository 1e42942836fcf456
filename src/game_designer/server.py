"""MCP server exposing the game designer tools over stdio or HTTP."""

from __future__ import annotations

import functools
import logging
from typing import Annotated, Callable

import anyio.to_thread
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import Field

from .errors import DesignerError
from .tools import TOOL_SPECS, GameDesignTools

logger = logging.getLogger(__name__)

SERVER_NAME = "game-designer"
INSTRUCTIONS = (
    "This server provides tools for managing a game design process. "
    "You can create design sessions, get an overview, receive the next feature to implement, "
    "submit a review of implemented features, reply to questions from the review, "
    "and ask ad-hoc questions about the current feature or design."
)

SessionName = Annotated[str, Field(description="Unique identifier for the design session")]

_DESCRIPTIONS = {spec.name: spec.description for spec in TOOL_SPECS}


def build_server(tools: GameDesignTools, *, host: str = "127.0.0.1", port: int = 8080) -> FastMCP:
    """Register the six design tools on a FastMCP server.

    Tool bodies run in worker threads so a slow oracle round trip for one
    session does not block calls for other sessions.
    """
    mcp = FastMCP(SERVER_NAME, instructions=INSTRUCTIONS, host=host, port=port)

    async def run_tool(tool_name: str, fn: Callable[..., str], *args: str) -> str:
        try:
            return await anyio.to_thread.run_sync(functools.partial(fn, *args))
        except DesignerError as exc:
            logger.info("Tool %s rejected: %s: %s", tool_name, exc.code, exc.message)
            raise ToolError(f"{exc.code}: {exc.message}") from exc

    @mcp.tool(name="designNew", description=_DESCRIPTIONS["designNew"])
    async def design_new(
        sessionName: SessionName,  # noqa: N803 - tool schema uses camelCase.
        gameDescription: Annotated[str, Field(description="Initial description of the game to be designed")],  # noqa: N803
    ) -> str:
        return await run_tool("designNew", tools.design_new, sessionName, gameDescription)

    @mcp.tool(name="designOverview", description=_DESCRIPTIONS["designOverview"])
    async def design_overview(sessionName: SessionName) -> str:  # noqa: N803
        return await run_tool("designOverview", tools.design_overview, sessionName)

    @mcp.tool(name="nextFeature", description=_DESCRIPTIONS["nextFeature"])
    async def next_feature(sessionName: SessionName) -> str:  # noqa: N803
        return await run_tool("nextFeature", tools.next_feature, sessionName)

    @mcp.tool(name="featureReview", description=_DESCRIPTIONS["featureReview"])
    async def feature_review(
        sessionName: SessionName,  # noqa: N803
        changesMade: Annotated[  # noqa: N803
            str,
            Field(description="A detailed report of the changes implemented, potentially including code snippets."),
        ],
    ) -> str:
        return await run_tool("featureReview", tools.feature_review, sessionName, changesMade)

    @mcp.tool(name="reviewReply", description=_DESCRIPTIONS["reviewReply"])
    async def review_reply(
        sessionName: SessionName,  # noqa: N803
        content: Annotated[str, Field(description="The answer or information provided in response to the questions.")],
    ) -> str:
        return await run_tool("reviewReply", tools.review_reply, sessionName, content)

    @mcp.tool(name="featureAsk", description=_DESCRIPTIONS["featureAsk"])
    async def feature_ask(
        sessionName: SessionName,  # noqa: N803
        question: Annotated[str, Field(description="The question to ask the designer.")],
    ) -> str:
        return await run_tool("featureAsk", tools.feature_ask, sessionName, question)

    return mcp
