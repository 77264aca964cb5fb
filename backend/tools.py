import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from zoneinfo import ZoneInfo

from gemini_live import FunctionCall, ToolResponse

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


def get_time_context(timezone: Optional[str] = None) -> dict:
    """
    Returns local time context.
      - timezone=None: uses OS local time zone
      - timezone=<IANA name>: uses that zone
    """
    if timezone:
        now = datetime.now(ZoneInfo(timezone))
        return {
            "mode": "manual",
            "timezone": timezone,
            "iso": now.isoformat(),
            "offset": now.strftime("%z"),
            "epoch_ms": int(now.timestamp() * 1000),
        }

    now_local = datetime.now().astimezone()
    tzinfo = now_local.tzinfo
    tz_name = getattr(tzinfo, "key", None) or str(tzinfo) or "local"
    return {
        "mode": "system",
        "timezone": tz_name,
        "iso": now_local.isoformat(),
        "offset": now_local.strftime("%z"),
        "epoch_ms": int(now_local.timestamp() * 1000),
    }


# --------------------------------------------------------------------------------------
# Tool (Function) Definitions
# --------------------------------------------------------------------------------------
get_time_context_tool = {
    "name": "get_time_context",
    "description": "Returns the current local date/time and time zone.",
    "parameters": {"type": "OBJECT", "properties": {}},
}


class ToolManager:
    """
    Registry of callable tools exposed to the model.

    Handlers receive the call's args dict and may be sync or async. Whatever a
    handler returns becomes the response `output`; an exception becomes `error`.
    """

    def __init__(self, timezone: Optional[str] = None, include_builtin: bool = True):
        self.timezone = timezone
        self._declarations: Dict[str, Dict[str, Any]] = {}
        self._handlers: Dict[str, ToolHandler] = {}
        if include_builtin:
            self.register(get_time_context_tool, self._handle_time_context)

    def register(self, declaration: Dict[str, Any], handler: ToolHandler) -> None:
        name = declaration.get("name")
        if not name:
            raise ValueError("Tool declaration must have a name")
        if name in self._declarations:
            logger.warning("[TOOLS] Replacing existing tool '%s'", name)
        self._declarations[name] = declaration
        self._handlers[name] = handler

    def unregister(self, name: str) -> bool:
        self._handlers.pop(name, None)
        return self._declarations.pop(name, None) is not None

    def get_declarations(self) -> List[Dict[str, Any]]:
        return list(self._declarations.values())

    def has_tool(self, name: str) -> bool:
        return name in self._handlers

    async def handle(self, function_call: Union[FunctionCall, Dict[str, Any]]) -> ToolResponse:
        if isinstance(function_call, dict):
            function_call = FunctionCall.from_dict(function_call)
        name = function_call.name
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("[TOOLS] Unknown tool requested: %s", name)
            return ToolResponse(id=function_call.id, name=name, error=f"Unknown tool: {name}")

        logger.info("[TOOLS] Calling %s (%s)", name, function_call.id)
        try:
            result = handler(function_call.args or {})
            if asyncio.iscoroutine(result):
                result = await result
        except Exception as e:
            logger.error("[TOOLS] Tool %s failed: %s", name, e)
            return ToolResponse(id=function_call.id, name=name, error=str(e))
        return ToolResponse(id=function_call.id, name=name, output=result)

    def _handle_time_context(self, _args: Dict[str, Any]) -> Dict[str, Any]:
        ctx = get_time_context(self.timezone)
        result_str = (
            f"Local time: {ctx['iso']}\n"
            f"Time zone: {ctx['timezone']} ({ctx['mode']})\n"
            f"UTC offset: {ctx['offset']}\n"
        )
        return {"result": result_str, "context": ctx}
