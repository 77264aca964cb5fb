import logging
from typing import Any, Dict, List, Optional, Union

from gemini_live import GeminiLiveClient
from gemini_rest import GeminiRestClient
from openai_chat import OpenAIChatClient
from settings import AgentConfig

logger = logging.getLogger(__name__)

ModelClient = Union[GeminiLiveClient, GeminiRestClient, OpenAIChatClient]


def create_model_client(
    config: AgentConfig,
    tool_declarations: Optional[List[Dict[str, Any]]] = None,
    **kwargs: Any,
) -> ModelClient:
    """Build the model client selected by `config.model.transport` ("live", "rest" or "openai")."""
    transport = config.model.transport
    if transport == "openai":
        logger.info("[OPENAI] Using chat-completions transport for %s", config.model.openai_model)
        return OpenAIChatClient(config.model, config.openai_api_key, tool_declarations, **kwargs)
    if transport == "rest":
        logger.info("[GEMINI] Using REST transport for %s", config.model.name)
        return GeminiRestClient(config.model, config.gemini_api_key, **kwargs)
    if transport != "live":
        raise ValueError(f"Unsupported model transport: {transport}")
    logger.info("[GEMINI] Using live transport for %s", config.model.name)
    return GeminiLiveClient(config.model, config.gemini_api_key, tool_declarations, **kwargs)
