"""Web search via the Brave Search API."""

import httpx
from pydantic import Field

from sportello.agent.tools.base import Tool, ToolArgs, ToolName

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"


class WebSearchArgs(ToolArgs):
    query: str = Field(description="Search query")
    count: int | None = Field(default=None, ge=1, le=10, description="Number of results")


class WebSearchTool(Tool):
    """Search the web and return titles, URLs and snippets."""

    args_model = WebSearchArgs

    def __init__(self, api_key: str = "", max_results: int = 5, timeout_s: float = 10.0):
        self.api_key = api_key
        self.max_results = max_results
        self.timeout_s = timeout_s

    @property
    def name(self) -> ToolName:
        return ToolName.WEB_SEARCH

    @property
    def description(self) -> str:
        return "Search the web for current information, documentation or references."

    async def execute(self, args: WebSearchArgs) -> str:
        if not self.api_key:
            return "Error: web search is not configured (missing Brave API key)"

        count = args.count or self.max_results
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                r = await client.get(
                    BRAVE_SEARCH_URL,
                    params={"q": args.query, "count": count},
                    headers={"Accept": "application/json", "X-Subscription-Token": self.api_key},
                )
                r.raise_for_status()
        except httpx.HTTPError as e:
            return f"Error: web search failed: {e}"

        results = r.json().get("web", {}).get("results", [])[:count]
        if not results:
            return f"No results for: {args.query}"

        lines = [f"Results for: {args.query}"]
        for i, item in enumerate(results, 1):
            lines.append(f"{i}. {item.get('title', '')}\n   {item.get('url', '')}")
            if desc := item.get("description"):
                lines.append(f"   {desc}")
        return "\n".join(lines)
