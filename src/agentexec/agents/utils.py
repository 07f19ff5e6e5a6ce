import logging
from typing import Optional, TextIO

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(name)s] [%(agent_id)s] %(message)s"


class AgentLogFilter(logging.Filter):
    """
    Fills in ``agent_id`` (default ``"System"``) and a non-empty logger name
    so engine records and third-party records share one format.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        agent_id = getattr(record, "agent_id", None)
        record.agent_id = "System" if agent_id is None else str(agent_id)
        if not record.name or record.name == "root":
            record.name = "DefaultLogger"
        return True


def init_agent_logging(
    level: int = logging.INFO,
    clear_existing_handlers: bool = True,
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """
    Install a console handler on the root logger using :data:`LOG_FORMAT`.

    Args:
        level: Level for the root logger.
        clear_existing_handlers: Remove (and close) handlers already attached
            to the root logger. When False, only a handler previously
            installed by this function is replaced.
        stream: Target stream; defaults to stderr.

    Returns:
        The installed handler.
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        if clear_existing_handlers or getattr(handler, "agentexec_handler", False):
            root_logger.removeHandler(handler)
            handler.close()

    handler = logging.StreamHandler(stream)
    handler.agentexec_handler = True
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(AgentLogFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logger.info(f"Engine logging initialized at {logging.getLevelName(level)}")
    return handler
