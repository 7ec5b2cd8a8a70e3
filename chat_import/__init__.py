"""
Chat Import - Import third-party chat exports into conversation history.

This package provides functionality to:
- Detect and validate WhatsApp, Telegram, iMessage and generic CSV exports
- Parse and normalize messages, including mixed Tamil-English text
- Resolve sender labels to chat participants
- Commit messages in tagged batches that can be rolled back as a unit
"""

__version__ = "0.1.0"

from chat_import.config import get_config, Config, ImportSettings
from chat_import.database import DatabaseConnection

__all__ = [
    "get_config",
    "Config",
    "ImportSettings",
    "DatabaseConnection",
]
