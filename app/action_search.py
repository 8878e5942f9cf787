from typing import List, Optional

from .config import MAX_SEARCH_LIMIT
from .db import Database
from .schemas import Action

DEFAULT_LIMIT = 10


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class ActionSearch:
    """Autocomplete lookup over action names. Read-only."""

    def __init__(self, db: Database, default_limit: int = DEFAULT_LIMIT):
        self.db = db
        self.default_limit = default_limit

    async def search(self, query: Optional[str], limit: Optional[int] = None) -> List[Action]:
        cleaned = (query or "").strip()
        if not cleaned:
            return []
        cap = max(1, min(int(limit or self.default_limit), MAX_SEARCH_LIMIT))
        pattern = _escape_like(cleaned.casefold())
        async with self.db.connect() as db:
            # sqlite lower() only folds ASCII.
            await db.create_function("casefold", 1, str.casefold, deterministic=True)
            # Prefix matches first, then alphabetical.
            cursor = await db.execute(
                "SELECT id, name FROM actions "
                "WHERE casefold(name) LIKE ? ESCAPE '\\' "
                "ORDER BY CASE WHEN casefold(name) LIKE ? ESCAPE '\\' THEN 0 ELSE 1 END, "
                "name COLLATE NOCASE ASC, id ASC LIMIT ?",
                (f"%{pattern}%", f"{pattern}%", cap),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [Action(id=row["id"], name=row["name"]) for row in rows]
