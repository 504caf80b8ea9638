from kitescale.observability.logging import LOG_LEVELS, LogConfig, setup_logging

__all__ = ["LOG_LEVELS", "LogConfig", "setup_logging"]
