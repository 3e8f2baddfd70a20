# Promptsmith package init
import logging
import os


def _configure_logging() -> None:
    level_name = (os.getenv("PROMPTSMITH_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("promptsmith")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[PROMPTSMITH][%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    llm_level_name = (os.getenv("PROMPTSMITH_LLM_LOG_LEVEL") or level_name).upper()
    llm_level = getattr(logging, llm_level_name, level)
    logging.getLogger("promptsmith.llm").setLevel(llm_level)


_configure_logging()

__version__ = "0.1.0"
