import sys
from typing import Literal
from loguru import logger

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

BASE_LOGGER_NAMESPACE = "mcpcp"

# Handler id of the active stderr sink, None until configured
_handler_id = None
_level = None


def get_logger(name: str) -> "logger":
    """
    Returns a loguru logger bound with the given component name.

    Example: get_logger("Router") → logger with module="mcpcp.Router"
    """
    return logger.bind(module=f"{BASE_LOGGER_NAMESPACE}.{name}")


def tool_context(tool_name: str):
    """
    Tag every record emitted inside the block with the public tool name.

    Backed by ``logger.contextualize``, so concurrent tool calls on the
    same event loop keep their own tag.
    """
    return logger.contextualize(tool=tool_name)


def format_record(record) -> str:
    parts = ["<green>{time:HH:mm:ss}</green> <level>{level: <8}</level>"]
    if "module" in record["extra"]:
        parts.append("<cyan>{extra[module]}</cyan>")
    if "tool" in record["extra"]:
        parts.append("<magenta>{extra[tool]}</magenta>")
    return " | ".join(parts) + " | {message}\n{exception}"


def configure_logging(level: LogLevel = "INFO") -> None:
    """
    Installs the stderr sink used by the whole app.

    Stdout is reserved for the MCP stdio transport. Calling again with the
    same level is a no-op; a different level replaces the sink.
    """
    global _handler_id, _level
    if _handler_id is not None and level == _level:
        return

    if _handler_id is None:
        logger.remove()
    else:
        logger.remove(_handler_id)

    _handler_id = logger.add(sys.stderr, format=format_record, level=level, colorize=True)
    _level = level
