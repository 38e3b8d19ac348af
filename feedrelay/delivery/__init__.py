"""
FeedRelay Delivery Module
=========================

Message formatting and Telegram delivery for published items.
"""

from .formatter import MessageFormatter
from .message_sender import TelegramSender

__all__ = ["MessageFormatter", "TelegramSender"]
