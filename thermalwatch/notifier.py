from __future__ import annotations

"""Telegram notification transport used by the alert channels."""

import asyncio
import logging
import threading
import time
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Protocol

from telegram import Bot
from telegram.error import NetworkError, RetryAfter, TimedOut
from telegram.request import HTTPXRequest

logger = logging.getLogger(__name__)


class MessagingChannel(Protocol):
    """Delivery interface consumed by the alert dispatcher."""

    def send_image(self, destination: str, image_bytes: bytes, caption: str) -> bool:
        ...

    def send_text(self, destination: str, message: str) -> bool:
        ...

    def close(self) -> None:
        ...


class TelegramNotifier:
    """Thread-safe Telegram bot client running on a private asyncio loop."""

    def __init__(
        self,
        bot_token: str,
        attempts: int = 3,
        send_timeout: float = 90.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize bot client and background asyncio loop when configured."""
        self.enabled = bool(bot_token)
        self.attempts = max(1, attempts)
        self.send_timeout = send_timeout
        self.bot = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: threading.Thread | None = None
        self._send_lock = threading.Lock()
        self._sleep = sleep

        if self.enabled:
            request = HTTPXRequest(
                connection_pool_size=8,
                pool_timeout=30.0,
                connect_timeout=10.0,
                read_timeout=30.0,
                write_timeout=30.0,
            )
            self.bot = Bot(token=bot_token, request=request)
            self._loop = asyncio.new_event_loop()
            self._loop_thread = threading.Thread(target=self._run_loop, name="telegram-loop", daemon=True)
            self._loop_thread.start()

    def _run_loop(self) -> None:
        """Run dedicated asyncio event loop for Telegram API calls."""
        if self._loop is None:
            return
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    async def _send_photo_async(self, chat_id: str, image_bytes: bytes, caption: str) -> int:
        """Asynchronously send one image alert message."""
        if self.bot is None:
            return 0
        message = await self.bot.send_photo(
            chat_id=chat_id,
            photo=image_bytes,
            caption=caption,
            pool_timeout=30.0,
            connect_timeout=10.0,
            read_timeout=30.0,
            write_timeout=30.0,
        )
        return int(getattr(message, "message_id", 0) or 0)

    async def _send_text_async(self, chat_id: str, text: str) -> int:
        """Asynchronously send plain-text message."""
        if self.bot is None:
            return 0
        message = await self.bot.send_message(
            chat_id=chat_id,
            text=text,
            pool_timeout=30.0,
            connect_timeout=10.0,
            read_timeout=30.0,
            write_timeout=30.0,
        )
        return int(getattr(message, "message_id", 0) or 0)

    def _backoff(self, delay: float, attempt: int) -> None:
        """Sleep before the next attempt; the final attempt does not wait."""
        if attempt < self.attempts:
            self._sleep(delay)

    def _submit(self, label: str, make_coro, timeout: float) -> bool:
        """Run a send coroutine on the bot loop with retry/backoff semantics."""
        if not self.enabled or self._loop is None:
            logger.info("Telegram not configured; skipping %s.", label)
            return False

        with self._send_lock:
            for attempt in range(1, self.attempts + 1):
                future = asyncio.run_coroutine_threadsafe(make_coro(), self._loop)
                try:
                    future.result(timeout=timeout)
                    return True
                except FutureTimeoutError:
                    # Cancel so the pending send cannot land after failure is reported.
                    future.cancel()
                    delay = 1.5 * attempt
                    logger.warning(
                        "Telegram %s timed out after %.1fs (attempt %d/%d)", label, timeout, attempt, self.attempts
                    )
                    self._backoff(delay, attempt)
                except RetryAfter as exc:
                    delay = float(getattr(exc, "retry_after", 2))
                    logger.warning(
                        "Telegram rate-limited; retrying in %.1fs (attempt %d/%d)", delay, attempt, self.attempts
                    )
                    self._backoff(delay, attempt)
                except (TimedOut, NetworkError) as exc:
                    delay = 1.5 * attempt
                    logger.warning(
                        "Telegram %s failed (%s); retrying in %.1fs (attempt %d/%d)",
                        label,
                        exc,
                        delay,
                        attempt,
                        self.attempts,
                    )
                    self._backoff(delay, attempt)
                except Exception as exc:
                    future.cancel()
                    logger.exception("Unexpected Telegram error: %s", exc)
                    return False

        logger.error("Telegram %s failed after %d attempts", label, self.attempts)
        return False

    def send_image(self, destination: str, image_bytes: bytes, caption: str) -> bool:
        """Synchronously send a JPEG snapshot with a caption."""
        return self._submit(
            "photo",
            lambda: self._send_photo_async(chat_id=destination, image_bytes=image_bytes, caption=caption),
            timeout=self.send_timeout,
        )

    def send_text(self, destination: str, message: str) -> bool:
        """Synchronously send a text message."""
        return self._submit(
            "message",
            lambda: self._send_text_async(chat_id=destination, text=message),
            timeout=min(60.0, self.send_timeout),
        )

    def close(self) -> None:
        """Stop the event loop thread and release resources."""
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=2)
