"""
LLM helpers - chat model construction and rate limited invocation

The orchestrator talks to language models only through LangChain chat
models (``BaseChatModel.invoke``). Anything implementing that interface
can be handed to the planner; ``create_chat_model`` builds the default
Anthropic model from an LLMConfig.

Example usage:
    from step_orchestrator.config import LLMConfig
    from step_orchestrator.utils.llm_client import create_chat_model, invoke_with_rate_limit

    llm = create_chat_model(LLMConfig())
    response = invoke_with_rate_limit(llm, [HumanMessage(content="Plan my week")])
"""

import json
import time
from typing import Optional, List, Any, Dict

from langchain_core.language_models import BaseChatModel

from step_orchestrator.config.orchestrator_config import LLMConfig
from step_orchestrator.utils.exceptions import InvalidParameterError, LLMError
from step_orchestrator.utils.logger import get_logger
from step_orchestrator.utils.rate_limiter import RateLimiter, global_rate_limiter

logger = get_logger(__name__)


def create_chat_model(config: LLMConfig) -> BaseChatModel:
    """
    Initialize a chat model based on provider configuration.

    Raises:
        InvalidParameterError: unsupported provider
    """
    provider = config.provider.lower()

    if provider == "anthropic":
        from langchain_anthropic import ChatAnthropic

        kwargs: Dict[str, Any] = {"model": config.model_name, "temperature": config.temperature}
        if config.api_key:
            kwargs["api_key"] = config.api_key
        if config.base_url:
            kwargs["base_url"] = config.base_url
        if config.max_tokens:
            kwargs["max_tokens"] = config.max_tokens
        if config.timeout:
            kwargs["timeout"] = config.timeout
        kwargs.update(config.extra_params)
        return ChatAnthropic(**kwargs)

    raise InvalidParameterError(
        parameter_name="provider",
        message=f"Unsupported LLM provider: {provider}. Supported providers: anthropic"
    )


def invoke_with_rate_limit(
    llm: BaseChatModel,
    messages: List[Any],
    rate_limiter: Optional[RateLimiter] = None,
    **kwargs
) -> Any:
    """
    Invoke a chat model after waiting on the rate limiter.

    Raises:
        LLMError: the model call failed
    """
    limiter = rate_limiter or global_rate_limiter
    model_name = getattr(llm, "model", None) or type(llm).__name__

    total_content_length = sum(len(getattr(msg, 'content', str(msg))) for msg in messages)
    logger.debug(f"[LLM] Invoking {model_name} with {len(messages)} messages ({total_content_length} chars)")

    wait_time = limiter.wait()
    if wait_time > 0:
        logger.warning(f"[LLM] Rate limiter delayed request by {wait_time:.2f}s")

    start_time = time.time()
    try:
        response = llm.invoke(messages, **kwargs)
    except Exception as e:
        latency = time.time() - start_time
        logger.error(f"[LLM] Invocation failed after {latency:.2f}s: {type(e).__name__}: {e}")
        raise LLMError(
            provider=type(llm).__name__,
            message="chat model invocation failed",
            model=str(model_name),
            original_error=e
        ) from e

    latency = time.time() - start_time
    logger.debug(
        f"[LLM] Response received in {latency:.2f}s "
        f"({len(getattr(response, 'content', str(response)))} chars)"
    )
    return response


def parse_json_response(content: str) -> dict:
    """
    Parse a JSON object from an LLM response, handling markdown fences.

    Raises:
        ValueError: the content is not a JSON object
    """
    if not content or not isinstance(content, str):
        raise ValueError(f"Invalid content type: {type(content)}, expected string")

    content = content.strip()

    if "```json" in content:
        content = content.split("```json", 1)[1].split("```", 1)[0].strip()
    elif content.startswith("```"):
        parts = content.split("```")
        if len(parts) > 2:
            content = parts[1].strip()
    elif not content.startswith("{") and "{" in content and "}" in content:
        # Prose around a bare object
        content = content[content.index("{"):content.rindex("}") + 1]

    if not content:
        raise ValueError("Content is empty after removing markdown")

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValueError(f"Response is not valid JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise ValueError(f"Parsed result is not a dict: {type(parsed)}")

    return parsed
