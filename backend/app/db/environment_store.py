"""Database operations for per-user environment variables."""

import json
from datetime import datetime, timezone

from app.db.database import get_db, transaction
from app.db.secrets import decrypt_variables, encrypt_variables


async def get_environment(user_id: str) -> dict[str, str]:
    """Return the user's variables, decrypted. Empty if none are stored."""
    db = await get_db()
    cursor = await db.execute(
        "SELECT variables_json FROM user_environment WHERE user_id = ?", (user_id,)
    )
    row = await cursor.fetchone()
    if row is None:
        return {}
    return decrypt_variables(json.loads(row["variables_json"] or "{}"))


async def set_environment(user_id: str, variables: dict[str, str]) -> list[str]:
    """Replace the user's variables with ``variables`` (stored encrypted).

    Returns:
        The sorted variable names now stored
    """
    encrypted = encrypt_variables(variables)
    async with transaction() as db:
        await db.execute(
            """
            INSERT INTO user_environment (user_id, variables_json, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                variables_json = excluded.variables_json,
                updated_at = excluded.updated_at
            """,
            (user_id, json.dumps(encrypted), datetime.now(timezone.utc).isoformat()),
        )
    return sorted(variables)
