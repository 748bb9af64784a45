"""
Parley Logging Configuration - Color-Coded Console Logs

Provides:
- ColorFormatter: ANSI color-coded log output
- Helper functions: log_message_in, log_message_out, log_step, log_tool, log_llm, log_cache
- setup_logging(): Configure application logging

Usage:
    from logging_config import setup_logging, log_message_in, log_tool
    setup_logging()
    logger = logging.getLogger(__name__)
    log_message_in(logger, "User question", chat="c1", model="gpt-4.1")
"""

import logging
import os
import sys
from typing import List, Optional

# ANSI color codes
COLORS = {
    "RESET": "\033[0m",
    "BOLD": "\033[1m",
    "DIM": "\033[2m",
    # Event colors
    "MSG_IN": "\033[96m",  # Cyan - incoming message
    "MSG_OUT": "\033[92m",  # Green - outgoing response
    "STEP": "\033[95m",  # Magenta - turn steps
    "TOOL": "\033[93m",  # Yellow - tool calls
    "LLM": "\033[94m",  # Blue - LLM operations
    "ERROR": "\033[91m",  # Red - errors
    "WARN": "\033[33m",  # Orange/Yellow - warnings
    "DEBUG": "\033[90m",  # Gray - debug info
}


class ColorFormatter(logging.Formatter):
    """Custom formatter with colors for different log levels."""

    LEVEL_COLORS = {
        logging.DEBUG: COLORS["DEBUG"],
        logging.INFO: COLORS["RESET"],
        logging.WARNING: COLORS["WARN"],
        logging.ERROR: COLORS["ERROR"],
        logging.CRITICAL: COLORS["ERROR"] + COLORS["BOLD"],
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, COLORS["RESET"])

        # Format: timestamp [LEVEL] message (no module name for compactness)
        timestamp = self.formatTime(record, "%H:%M:%S")
        level = record.levelname[:4]

        formatted = (
            f"{COLORS['DIM']}{timestamp}{COLORS['RESET']} "
            f"[{color}{level}{COLORS['RESET']}] "
            f"{record.getMessage()}"
        )

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


def setup_logging(level: Optional[int] = None) -> None:
    """Configure colored logging for the application.

    PARLEY_LOG_LEVEL (e.g. DEBUG) overrides the default INFO level when no
    explicit level is passed.
    """
    if level is None:
        level_name = os.environ.get("PARLEY_LOG_LEVEL", "INFO").upper()
        level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColorFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# =============================================================================
# TURN EVENT HELPERS
# =============================================================================


def _event(color: str, label: str, text: str) -> str:
    return f"{COLORS[color]}{label}{COLORS['RESET']} {text}"


def _kv(context: dict) -> str:
    return " ".join(f"{k}={v}" for k, v in context.items())


def log_message_in(logger: logging.Logger, message: str, **context) -> None:
    """Log an incoming user message (first 80 chars) with turn context."""
    preview = message[:80] + "..." if len(message) > 80 else message
    logger.info(_event("MSG_IN", ">>> MESSAGE", f"{preview} [{_kv(context)}]"))


def log_message_out(
    logger: logging.Logger,
    finish_reason: str,
    tools_used: Optional[List[str]] = None,
    citations: int = 0,
) -> None:
    """Log the end of a turn."""
    tools = ", ".join(tools_used) if tools_used else "none"
    logger.info(_event("MSG_OUT", "<<< RESPONSE", f"finish={finish_reason} tools=[{tools}] citations={citations}"))


def log_step(
    logger: logging.Logger, chat_id: str, step: int, budget: int, tool_names: Optional[List[str]] = None
) -> None:
    """Log one completed model step and the tools it requested."""
    tools = ", ".join(tool_names) if tool_names else "-"
    logger.info(_event("STEP", "... STEP", f"chat={chat_id} {step}/{budget} tools=[{tools}]"))


def log_tool(logger: logging.Logger, tool_name: str, state: str, **context) -> None:
    """Log a tool invocation.

    Args:
        logger: Logger instance
        tool_name: Name of the tool
        state: 'start' or 'end'
        **context: args on start; success and duration on end
    """
    label = ">>> TOOL" if state == "start" else "<<< TOOL"
    logger.info(_event("TOOL", label, f"{tool_name} {_kv(context)}".rstrip()))


def log_llm(logger: logging.Logger, state: str, model: str = "", duration: float = 0) -> None:
    """Log the start or end of one model step."""
    if state == "start":
        logger.info(_event("LLM", ">>> LLM", f"calling {model}"))
    else:
        logger.info(_event("LLM", "<<< LLM", f"{model} completed in {duration:.1f}s"))


def log_cache(logger: logging.Logger, provider: str, metrics) -> None:
    """Log prompt-cache usage reported by the provider (debug level)."""
    if metrics is None:
        return
    logger.debug(_event(
        "LLM",
        "... CACHE",
        f"{provider} cached={metrics.cached_tokens} written={metrics.cache_write_tokens} prompt={metrics.prompt_tokens}",
    ))
