"""Outbound delivery of assistant text, with length-aware chunking."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from openfang.errors import DeliveryError

LOGGER = logging.getLogger(__name__)

ATTACHMENT_NAME = "response.txt"
ATTACHMENT_NOTICE = "\n\n[Full response attached]"
# Beyond this many chunks' worth of text, send a summary plus an attachment.
ATTACHMENT_THRESHOLD_CHUNKS = 3


@dataclass(slots=True)
class OutboundMessage:
    """One message to send; ``attachment`` is (filename, bytes) when present."""

    content: str
    attachment: tuple[str, bytes] | None = None


def chunk_text(text: str, max_len: int) -> list[str]:
    """Split ``text`` into pieces of at most ``max_len`` characters.

    Breaks at the last newline in the window, then the last space, but only
    when that point lies in the second half of the window; otherwise cuts hard
    at ``max_len``. Leading whitespace of each following piece is dropped.
    """

    if max_len < 1:
        raise ValueError("max_len must be positive")
    if len(text) <= max_len:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_len:
            chunks.append(remaining)
            break

        break_idx = remaining.rfind("\n", 0, max_len + 1)
        if break_idx < max_len / 2:
            break_idx = remaining.rfind(" ", 0, max_len + 1)
        if break_idx < max_len / 2:
            break_idx = max_len

        chunks.append(remaining[:break_idx])
        remaining = remaining[break_idx:].lstrip()
    return chunks


def plan_delivery(text: str, max_len: int) -> list[OutboundMessage]:
    """Decide how ``text`` goes out under a per-message length limit."""

    if len(text) <= max_len:
        return [OutboundMessage(content=text)]

    if len(text) > max_len * ATTACHMENT_THRESHOLD_CHUNKS:
        summary = text[: max(max_len - 100, 0)] + ATTACHMENT_NOTICE
        return [OutboundMessage(content=summary[:max_len], attachment=(ATTACHMENT_NAME, text.encode("utf-8")))]

    return [OutboundMessage(content=chunk) for chunk in chunk_text(text, max_len)]


class Delivery(ABC):
    """Sends final text to its destination (chat stream, direct message)."""

    @abstractmethod
    async def deliver(self, recipient: str | None, text: str) -> None:
        """Send ``text``; raise DeliveryError when it cannot be sent."""


class ConsoleDelivery(Delivery):
    """Writes planned messages to a text sink (stdout by default)."""

    def __init__(self, max_len: int = 1900, write: Callable[[str], None] = print) -> None:
        self._max_len = max_len
        self._write = write

    async def deliver(self, recipient: str | None, text: str) -> None:
        target = recipient or "console"
        try:
            for message in plan_delivery(text, self._max_len):
                self._write(f"[{target}] {message.content}")
                if message.attachment is not None:
                    name, payload = message.attachment
                    self._write(f"[{target}] attachment {name} ({len(payload)} bytes)")
        except OSError as exc:
            raise DeliveryError(f"Could not write to {target}: {exc}") from exc
        LOGGER.info("Delivered %d chars to %s", len(text), target)
