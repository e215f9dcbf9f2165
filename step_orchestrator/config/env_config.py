"""
Environment configuration - Load settings from .env files
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict

from dotenv import load_dotenv

# Plain stdlib logger: the package logger setup itself reads EnvConfig.
logger = logging.getLogger("step_orchestrator.config.env_config")


class EnvConfig:
    """
    Load and manage configuration from environment variables and .env files.

    Supports multiple sources with priority:
    1. Environment variables (highest priority)
    2. .env file in current/specified directory (or up to 3 parents)
    """

    _loaded_path: Optional[Path] = None

    @classmethod
    def load_env_file(cls, path: Optional[str] = None) -> bool:
        """
        Load environment variables from .env file.

        Variables already present in the environment are not overridden.

        Args:
            path: Path to .env file (default: search current dir and parents)

        Returns:
            True if file was loaded, False otherwise
        """
        if path:
            env_path = Path(path)
        else:
            env_path = None
            current = Path.cwd()
            for _ in range(4):  # Current dir + 3 parent levels
                potential_path = current / ".env"
                if potential_path.exists():
                    env_path = potential_path
                    break
                if current.parent == current:
                    break
                current = current.parent

        if env_path and env_path.exists():
            load_dotenv(env_path, override=False)
            if cls._loaded_path != env_path:
                logger.debug(f"Loaded environment from {env_path}")
            cls._loaded_path = env_path
            return True

        return False

    @staticmethod
    def get(key: str, default: Optional[str] = None) -> Optional[str]:
        """Get environment variable with optional default."""
        return os.getenv(key, default)

    @staticmethod
    def get_bool(key: str, default: bool = False) -> bool:
        """Get boolean environment variable."""
        value = os.getenv(key, str(default)).lower()
        return value in ('true', '1', 'yes', 'on')

    @staticmethod
    def get_int(key: str, default: int = 0) -> int:
        """Get integer environment variable."""
        try:
            return int(os.getenv(key, str(default)))
        except ValueError:
            return default

    @staticmethod
    def get_float(key: str, default: float = 0.0) -> float:
        """Get float environment variable."""
        try:
            return float(os.getenv(key, str(default)))
        except ValueError:
            return default

    @staticmethod
    def get_json(key: str, default: Optional[Dict] = None) -> Optional[Dict]:
        """Get JSON environment variable."""
        value = os.getenv(key)
        if not value:
            return default
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default

    @staticmethod
    def check_required(*keys: str) -> bool:
        """
        Check if required environment variables are set.

        Args:
            *keys: Environment variable names to check

        Returns:
            True if all are set, False otherwise
        """
        missing = [key for key in keys if not os.getenv(key)]

        if missing:
            logger.warning(f"Missing required environment variables: {', '.join(missing)}")
            return False

        return True

    @staticmethod
    def show_config_template() -> str:
        """Return a .env template covering every setting the orchestrator reads."""
        return """
# Anthropic Configuration (planner)
ANTHROPIC_API_KEY=sk-ant-...
AGENT_LLM_PROVIDER=anthropic
AGENT_LLM_MODEL=claude-sonnet-4-20250514
AGENT_LLM_TEMPERATURE=0.2
LLM_RATE_LIMIT_RPM=60
LLM_RATE_LIMIT_RPS=0
LLM_MIN_REQUEST_DELAY=0.5

# Execution loop
AGENT_MAX_STEPS_PER_RUN=50
AGENT_ALLOW_REPLAN=true
AGENT_DEFAULT_STEP_TYPE=next-step
AGENT_EVENT_HISTORY_SIZE=1000

# Logging
AGENT_LOG_LEVEL=INFO
AGENT_LOG_FOLDER=./logs
AGENT_ENABLE_CONSOLE_LOGGING=true
AGENT_ENABLE_FILE_LOGGING=false
"""
