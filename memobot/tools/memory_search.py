"""Keyword search over stored patterns."""

from pydantic import BaseModel, Field

from ..memory.store import PatternStore


class SearchMemoryArgs(BaseModel):
    query: str = Field(min_length=1, description="Keyword or phrase to look for")
    limit: int = Field(10, ge=1, le=20)


class SearchMemoryTool:
    """Look up remembered patterns by keyword."""

    name: str = "search_memory"
    description: str = (
        "Search long-term memory (patterns learned from past conversations) "
        "by keyword. Returns one pattern per line."
    )
    args_model = SearchMemoryArgs
    truncation = "lines"

    def __init__(self, store: PatternStore) -> None:
        self._store = store

    async def run(self, args: SearchMemoryArgs) -> str:
        patterns = await self._store.search_text(args.query.strip(), limit=args.limit)
        if not patterns:
            return f'No memories found for "{args.query}".'
        return "\n".join(
            f"[{p.kind}] {p.content} (confidence: {p.confidence:.2f}, seen {p.times_seen}x)"
            for p in patterns
        )
