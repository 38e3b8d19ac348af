"""
Message Delivery
================

Sends formatted messages to named Telegram targets. Telegram failures are
raised as DeliveryError so the publication ledger can record them; retries
happen across runs through the ledger, never inside a single send.
"""

import asyncio
from typing import Awaitable, Callable, Dict

from telegram import Bot, LinkPreviewOptions
from telegram.constants import ParseMode
from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter, TelegramError, TimedOut

from ..utils.exceptions import DeliveryError, ErrorCode
from ..utils.logging import get_logger_for_component


MAX_MESSAGE_LENGTH = 4096  # Telegram limit


class TelegramSender:
    """Send capability for named Telegram chats."""

    def __init__(
        self,
        bot: Bot,
        targets: Dict[str, str],
        disable_web_page_preview: bool = False,
        message_delay: float = 0.0,
    ):
        """Initialize sender.

        Args:
            bot: Telegram bot instance
            targets: Mapping of target name to chat id
            disable_web_page_preview: Suppress link previews
            message_delay: Minimum spacing between messages to the same target
        """
        self.bot = bot
        self.targets = dict(targets)
        self.disable_web_page_preview = disable_web_page_preview
        self.message_delay = message_delay
        self._locks: Dict[str, asyncio.Lock] = {}
        self._last_sent: Dict[str, float] = {}
        self.logger = get_logger_for_component("message_sender")

    def chat_id_for(self, target: str) -> str:
        chat_id = self.targets.get(target)
        if not chat_id:
            raise DeliveryError(
                f"Unknown publication target '{target}'",
                target=target,
                error_code=ErrorCode.DELIVERY_UNKNOWN_TARGET,
                recoverable=False,
            )
        return chat_id

    async def send(self, target: str, content: str) -> str:
        """Send HTML content to a target.

        Returns:
            Platform message id as a string

        Raises:
            DeliveryError: Unknown target or any Telegram failure
        """
        chat_id = self.chat_id_for(target)
        lock = self._locks.setdefault(target, asyncio.Lock())

        async with lock:
            await self._pace(target)
            try:
                message = await self.bot.send_message(
                    chat_id=chat_id,
                    text=content[:MAX_MESSAGE_LENGTH],
                    parse_mode=ParseMode.HTML,
                    link_preview_options=LinkPreviewOptions(is_disabled=self.disable_web_page_preview),
                )
            except BadRequest as e:
                raise DeliveryError(
                    f"Telegram rejected message for {target}: {e}",
                    target=target,
                    chat_id=chat_id,
                    error_code=ErrorCode.DELIVERY_MESSAGE_REJECTED,
                )
            except Forbidden as e:
                raise DeliveryError(
                    f"Bot is not allowed to post to {target}: {e}",
                    target=target,
                    chat_id=chat_id,
                    error_code=ErrorCode.TELEGRAM_PERMISSION_DENIED,
                )
            except RetryAfter as e:
                raise DeliveryError(
                    f"Telegram flood control for {target}, retry after {e.retry_after}",
                    target=target,
                    chat_id=chat_id,
                    error_code=ErrorCode.TELEGRAM_API_ERROR,
                )
            except TimedOut as e:
                raise DeliveryError(
                    f"Timeout sending to {target}: {e}",
                    target=target,
                    chat_id=chat_id,
                    error_code=ErrorCode.DELIVERY_TIMEOUT,
                )
            except NetworkError as e:
                raise DeliveryError(
                    f"Network error sending to {target}: {e}",
                    target=target,
                    chat_id=chat_id,
                    error_code=ErrorCode.TELEGRAM_NETWORK_ERROR,
                )
            except TelegramError as e:
                raise DeliveryError(
                    f"Telegram error sending to {target}: {e}",
                    target=target,
                    chat_id=chat_id,
                    error_code=ErrorCode.TELEGRAM_API_ERROR,
                )

            self._last_sent[target] = asyncio.get_running_loop().time()

        self.logger.debug(f"Sent message {message.message_id} to {target} ({chat_id})")
        return str(message.message_id)

    async def _pace(self, target: str) -> None:
        # The wait precedes the send; nothing awaits after a delivered message
        last = self._last_sent.get(target)
        if self.message_delay <= 0 or last is None:
            return
        wait = self.message_delay - (asyncio.get_running_loop().time() - last)
        if wait > 0:
            await asyncio.sleep(wait)

    def send_fn_for(self, target: str, content: str) -> Callable[[], Awaitable[str]]:
        """Zero-argument send callable for PublicationRepository.publish."""

        async def send_fn() -> str:
            return await self.send(target, content)

        return send_fn

    async def start(self) -> None:
        await self.bot.initialize()

    async def close(self) -> None:
        await self.bot.shutdown()
