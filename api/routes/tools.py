from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException

from api.services.tools import TOOLS, run_tool

router = APIRouter(prefix="/api/tools", tags=["tools"])


@router.get("")
async def list_tools() -> list[dict[str, Any]]:
    return [
        {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.params.model_json_schema(),
        }
        for tool in TOOLS.values()
    ]


@router.post("/{tool_name}")
async def call_tool(tool_name: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
    if tool_name not in TOOLS:
        raise HTTPException(status_code=404, detail=f"Unknown tool: {tool_name}")
    return await run_tool(tool_name, body or {})
