from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from destinyrag.persistence.db import get_session
from destinyrag.services.llm_client import LLMClient


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_llm_client(request: Request) -> LLMClient:
    # The client is built once in create_app and shared by every request.
    return request.app.state.llm_client
