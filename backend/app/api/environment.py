"""Environment variable routes for the calling user."""

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.deps import get_current_user, ok
from app.db import environment_store

logger = logging.getLogger(__name__)

router = APIRouter()


class EnvironmentRequest(BaseModel):
    """Complete set of variables; replaces whatever was stored."""

    variables: dict[str, str]


@router.get("/environment")
async def get_environment(user_id: str = Depends(get_current_user)) -> dict[str, Any]:
    """Names of the stored variables. Values are never returned."""
    variables = await environment_store.get_environment(user_id)
    return ok({"names": sorted(variables)})


@router.put("/environment")
async def set_environment(
    request: EnvironmentRequest, user_id: str = Depends(get_current_user)
) -> dict[str, Any]:
    names = await environment_store.set_environment(user_id, request.variables)
    logger.info(f"Stored {len(names)} environment variable(s) for user {user_id}")
    return ok({"names": names})
