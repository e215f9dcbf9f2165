"""
Orchestrator configuration - Settings for step based agents
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from enum import Enum
import os

from step_orchestrator.utils.exceptions import ConfigurationError

DEFAULT_ERROR_MESSAGE = "Sorry, I encountered an error while processing your request."


class LLMProvider(str, Enum):
    """Supported LLM providers"""
    ANTHROPIC = "anthropic"


@dataclass
class LLMConfig:
    """
    Configuration for the chat model backing the planner.

    Attributes:
        provider: LLM provider (anthropic)
        model_name: Model identifier for the provider
        api_key: API key (reads LLM_API_KEY, then ANTHROPIC_API_KEY if not provided)
        base_url: Base URL for API (useful for proxies)
        temperature: Temperature for response generation (0-2)
        max_tokens: Maximum tokens in response
        timeout: Request timeout in seconds
        extra_params: Additional provider-specific parameters
    """

    provider: str = "anthropic"
    model_name: str = "claude-sonnet-4-20250514"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.2
    max_tokens: Optional[int] = None
    timeout: int = 30
    extra_params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Validate and set up LLM configuration."""
        valid_providers = [p.value for p in LLMProvider]
        if self.provider not in valid_providers:
            raise ConfigurationError(
                setting_name="provider",
                message=f"Provider must be one of {valid_providers}",
                actual_value=self.provider
            )

        if not 0 <= self.temperature <= 2:
            raise ConfigurationError(
                setting_name="temperature",
                message="Temperature must be between 0 and 2",
                actual_value=self.temperature
            )

        if not self.api_key:
            self.api_key = os.getenv('LLM_API_KEY') or os.getenv(self._get_env_var_for_provider())
            if not self.api_key:
                raise ConfigurationError(
                    setting_name="api_key",
                    message=(
                        f"API key not provided and LLM_API_KEY or "
                        f"{self._get_env_var_for_provider()} environment variable not set"
                    )
                )

    def _get_env_var_for_provider(self) -> str:
        """Get environment variable name for provider (fallback only)."""
        return f"{self.provider.upper()}_API_KEY"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding API key for security."""
        return {
            "provider": self.provider,
            "model_name": self.model_name,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "timeout": self.timeout,
            "base_url": self.base_url,
        }

    @classmethod
    def from_env(cls, prefix: str = "AGENT_") -> "LLMConfig":
        """Create LLM config from environment variables."""
        max_tokens = os.getenv(f"{prefix}LLM_MAX_TOKENS")
        return cls(
            provider=os.getenv(f"{prefix}LLM_PROVIDER", "anthropic"),
            model_name=os.getenv(f"{prefix}LLM_MODEL", "claude-sonnet-4-20250514"),
            api_key=os.getenv("LLM_API_KEY"),
            base_url=os.getenv("LLM_API_BASE_URL"),
            temperature=float(os.getenv(f"{prefix}LLM_TEMPERATURE", "0.2")),
            max_tokens=int(max_tokens) if max_tokens else None,
            timeout=int(os.getenv(f"{prefix}TIMEOUT", "30")),
        )


@dataclass
class RateLimitConfig:
    """
    Configuration for LLM rate limiting.

    Attributes:
        requests_per_minute: Maximum requests per minute (0 = unlimited)
        requests_per_second: Maximum requests per second (0 = unlimited, overrides RPM)
        min_request_delay: Minimum delay between requests in seconds (0 = no delay)
    """
    requests_per_minute: int = 60
    requests_per_second: int = 0
    min_request_delay: float = 0.5

    def __post_init__(self):
        """Validate rate limit configuration."""
        if self.requests_per_minute < 0:
            raise ConfigurationError("requests_per_minute", "cannot be negative")
        if self.requests_per_second < 0:
            raise ConfigurationError("requests_per_second", "cannot be negative")
        if self.min_request_delay < 0:
            raise ConfigurationError("min_request_delay", "cannot be negative")

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        """Create rate limit config from environment variables."""
        return cls(
            requests_per_minute=int(os.getenv('LLM_RATE_LIMIT_RPM', '60')),
            requests_per_second=int(os.getenv('LLM_RATE_LIMIT_RPS', '0')),
            min_request_delay=float(os.getenv('LLM_MIN_REQUEST_DELAY', '0.5')),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "requests_per_minute": self.requests_per_minute,
            "requests_per_second": self.requests_per_second,
            "min_request_delay": self.min_request_delay,
        }


@dataclass
class OrchestratorConfig:
    """
    Configuration settings for a step based agent and its execution loop.

    Attributes:
        max_steps_per_run: Upper bound on steps executed by one loop run
        allow_replan: Whether step results may trigger replanning at all
        default_step_type: Step type planned when no planner is configured
        error_message: Chat reply sent when an executor fails
        event_history_size: Number of events kept by the event bus history
        llm: Chat model configuration for the LLM planner (None = no LLM planner)
        rate_limit: Rate limiting configuration for LLM calls
    """

    max_steps_per_run: int = 50
    allow_replan: bool = True
    default_step_type: str = "next-step"
    error_message: str = DEFAULT_ERROR_MESSAGE
    event_history_size: int = 1000
    llm: Optional[LLMConfig] = None
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.max_steps_per_run < 1:
            raise ConfigurationError(
                "max_steps_per_run", "must be at least 1", actual_value=self.max_steps_per_run
            )

        if self.event_history_size < 0:
            raise ConfigurationError(
                "event_history_size", "cannot be negative", actual_value=self.event_history_size
            )

        if not self.default_step_type:
            raise ConfigurationError("default_step_type", "must not be empty")

        if isinstance(self.llm, dict):
            self.llm = LLMConfig(**self.llm)

        if isinstance(self.rate_limit, dict):
            self.rate_limit = RateLimitConfig(**self.rate_limit)

    @property
    def recursion_limit(self) -> int:
        """LangGraph recursion limit for one loop run (four graph nodes per step)."""
        return self.max_steps_per_run * 4 + 10

    @classmethod
    def from_env(cls, prefix: str = "AGENT_") -> "OrchestratorConfig":
        """
        Create configuration from environment variables.

        The LLM section is only built when an API key is available.

        Args:
            prefix: Prefix for environment variables (default: "AGENT_")

        Returns:
            Configured OrchestratorConfig instance

        Example:
            export AGENT_MAX_STEPS_PER_RUN=20
            export AGENT_ALLOW_REPLAN=false
            export ANTHROPIC_API_KEY=sk-...
            config = OrchestratorConfig.from_env()
        """
        llm = None
        if os.getenv("LLM_API_KEY") or os.getenv("ANTHROPIC_API_KEY"):
            llm = LLMConfig.from_env(prefix)

        return cls(
            max_steps_per_run=int(os.getenv(f"{prefix}MAX_STEPS_PER_RUN", "50")),
            allow_replan=os.getenv(f"{prefix}ALLOW_REPLAN", "true").lower() == "true",
            default_step_type=os.getenv(f"{prefix}DEFAULT_STEP_TYPE", "next-step"),
            error_message=os.getenv(f"{prefix}ERROR_MESSAGE", DEFAULT_ERROR_MESSAGE),
            event_history_size=int(os.getenv(f"{prefix}EVENT_HISTORY_SIZE", "1000")),
            llm=llm,
            rate_limit=RateLimitConfig.from_env(),
        )

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "OrchestratorConfig":
        """
        Create configuration from dictionary.

        Example:
            config = OrchestratorConfig.from_dict({
                "max_steps_per_run": 10,
                "rate_limit": {"requests_per_minute": 30}
            })
        """
        return cls(**dict(config_dict))

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """
        Convert to dictionary.

        Args:
            include_secrets: Whether to include API keys (default: False)
        """
        result = {
            "max_steps_per_run": self.max_steps_per_run,
            "allow_replan": self.allow_replan,
            "default_step_type": self.default_step_type,
            "error_message": self.error_message,
            "event_history_size": self.event_history_size,
            "llm": self.llm.to_dict() if self.llm else None,
            "rate_limit": self.rate_limit.to_dict(),
        }

        if include_secrets and self.llm and self.llm.api_key:
            result["llm"]["api_key"] = self.llm.api_key

        return result
