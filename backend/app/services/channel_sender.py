"""
Channel sender interface consumed by the executor.

Rendering and provider integration live outside the engine. A sender only
has to deliver `content_ref` to a target on a channel, or raise
TransientChannelError / PermanentChannelError.
"""
import asyncio
import importlib
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from app.core.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReceipt:
    channel: str
    target_id: str
    provider_message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    accepted_at: datetime = field(default_factory=utcnow)


class ChannelSender(ABC):

    @abstractmethod
    async def send(
        self,
        channel: str,
        target_id: str,
        content_ref: str,
        subject_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> DeliveryReceipt:
        ...


class LoggingChannelSender(ChannelSender):
    """Dry-run sender: logs what would have been sent and always succeeds."""

    async def send(self, channel, target_id, content_ref, subject_ref=None, idempotency_key=None):
        logger.info(
            f"[SEND][DRY_RUN] channel={channel} target={target_id} content={content_ref} "
            f"subject={subject_ref} key={idempotency_key}"
        )
        return DeliveryReceipt(channel=channel, target_id=target_id)


class ThrottledSender(ChannelSender):
    """Caps the number of sends in flight; excess callers queue on the semaphore."""

    def __init__(self, inner: ChannelSender, max_concurrent_sends: int):
        self.inner = inner
        self.max_concurrent_sends = max_concurrent_sends
        self._semaphore = asyncio.Semaphore(max_concurrent_sends)

    async def send(self, channel, target_id, content_ref, subject_ref=None, idempotency_key=None):
        async with self._semaphore:
            return await self.inner.send(
                channel,
                target_id,
                content_ref,
                subject_ref=subject_ref,
                idempotency_key=idempotency_key,
            )


def load_sender(dotted_path: str) -> ChannelSender:
    """Instantiate a sender class from "package.module.ClassName"."""
    module_name, _, class_name = dotted_path.rpartition(".")
    if not module_name:
        raise ValueError(f"CHANNEL_SENDER must be a dotted path, got {dotted_path!r}")
    sender_cls = getattr(importlib.import_module(module_name), class_name)
    sender = sender_cls()
    if not isinstance(sender, ChannelSender):
        raise TypeError(f"{dotted_path} is not a ChannelSender")
    logger.info(f"[SEND] Using channel sender {dotted_path}")
    return sender
