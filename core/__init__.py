"""
Ambient services shared by the ledger, marketplace and rewards packages:
configuration, logging and post-commit events. Identity resolution lives
in core.identity.
"""

from .config import AppConfig, load_config
from .events import EventBus
from .logging_config import configure_logging

__all__ = [
    "AppConfig",
    "load_config",
    "EventBus",
    "configure_logging",
]
