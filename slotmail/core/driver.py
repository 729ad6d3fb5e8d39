"""
slotmail Contact Driver

Periodic driver for all contacts of an account. Each tick polls for new
RTS messages, then runs one cycle for every outbound and inbound contact.

Distinct contacts run in parallel in worker threads, since their state
never overlaps. A per-contact lock keeps two cycles for the same contact
from overlapping, and the on-disk contact lock keeps them apart from the CLI.
All file and network work runs in the worker threads.
"""

import time
import signal
import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional, TYPE_CHECKING

from ..network.base import StorageClient
from ..protocol.policy import RetryPolicy
from ..protocol.results import CommResult
from . import events
from .inbound import InboundContact
from .messagebank import MessageBank
from .outbound import OutboundContact
from .rts import RTSReceiver

if TYPE_CHECKING:
    from .account import Account

logger = logging.getLogger(__name__)

OUTBOUND = "outbound"
INBOUND = "inbound"


def _contact_keys(path: Path) -> list[str]:
    if not path.exists():
        return []
    return sorted(entry.name for entry in path.iterdir() if entry.is_dir())


class ContactDriver:
    """
    Runs handshake, send and ack work for outbound contacts and the
    poll-ahead scan for inbound ones.
    """

    def __init__(
        self,
        account: "Account",
        client: StorageClient,
        policy: Optional[RetryPolicy] = None,
        message_bank: Optional[MessageBank] = None,
        max_parallel: int = 4,
        interval: float = 300,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            account: Local account
            client: Storage network client
            policy: Protocol timers
            message_bank: Where received mail goes (default: account inbox)
            max_parallel: Contacts processed at once
            interval: Seconds between ticks in run()
            clock: Time source in seconds
        """
        self.account = account
        self.client = client
        self.policy = policy or RetryPolicy()
        self.message_bank = message_bank or MessageBank(account.inbox_dir)
        self.max_parallel = max(1, max_parallel)
        self.interval = interval
        self.clock = clock

        self.rts = RTSReceiver(account, client, clock)
        self.running = False

        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._last_tick = 0.0

    def outbound_contact(self, mailsite_key: str) -> OutboundContact:
        return OutboundContact(
            self.account.outbound_dir,
            mailsite_key,
            self.account,
            self.client,
            policy=self.policy,
            clock=self.clock,
        )

    def inbound_contact(self, mailsite_key: str) -> InboundContact:
        return InboundContact(
            self.account.inbound_dir,
            mailsite_key,
            self.client,
            self.message_bank,
            poll_ahead=self.policy.poll_ahead,
        )

    def outbound_keys(self) -> list[str]:
        return _contact_keys(self.account.outbound_dir)

    def inbound_keys(self) -> list[str]:
        return _contact_keys(self.account.inbound_dir)

    def _lock_for(self, direction: str, mailsite_key: str) -> asyncio.Lock:
        key = (direction, mailsite_key)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def tick(self):
        """Run one cycle for the account and every contact."""
        try:
            accepted = await asyncio.to_thread(self.rts.poll)
            if accepted:
                logger.info(f"Accepted {accepted} new RTS message(s)")
        except Exception as e:
            logger.error(f"RTS poll failed: {e}")

        semaphore = asyncio.Semaphore(self.max_parallel)
        jobs = [self._run_outbound(semaphore, key) for key in self.outbound_keys()]
        jobs += [self._run_inbound(semaphore, key) for key in self.inbound_keys()]
        await asyncio.gather(*jobs)

    def _outbound_cycle(self, mailsite_key: str) -> Optional[CommResult]:
        """Blocking part of an outbound cycle, run in a worker thread."""
        contact = self.outbound_contact(mailsite_key)

        reason = contact.attention
        if reason:
            logger.debug(f"Skipping {mailsite_key}, needs attention: {reason}")
            return None

        return contact.run_cycle()

    def _inbound_cycle(self, mailsite_key: str) -> int:
        return self.inbound_contact(mailsite_key).fetch()

    async def _run_outbound(self, semaphore: asyncio.Semaphore, mailsite_key: str):
        lock = self._lock_for(OUTBOUND, mailsite_key)
        if lock.locked():
            logger.debug(f"Outbound cycle for {mailsite_key} still running, skipping")
            return

        async with lock, semaphore:
            try:
                result = await asyncio.to_thread(self._outbound_cycle, mailsite_key)
            except ValueError as e:
                logger.warning(f"Skipping outbound contact: {e}")
                return
            except Exception as e:
                logger.error(f"Outbound cycle for {mailsite_key} failed: {e}")
                return

            if result is None:
                return
            if result.fatal:
                logger.error(f"Contact {mailsite_key} needs attention: {result.error}")
                events.contact_fatal(mailsite_key, result.error)
            elif not result.success:
                logger.info(f"Contact {mailsite_key}: {result.error}, will try again")

    async def _run_inbound(self, semaphore: asyncio.Semaphore, mailsite_key: str):
        lock = self._lock_for(INBOUND, mailsite_key)
        if lock.locked():
            logger.debug(f"Inbound scan for {mailsite_key} still running, skipping")
            return

        async with lock, semaphore:
            try:
                received = await asyncio.to_thread(self._inbound_cycle, mailsite_key)
            except Exception as e:
                logger.error(f"Inbound scan for {mailsite_key} failed: {e}")
                return

            if received:
                logger.info(f"Received {received} message(s) from {mailsite_key}")

    def run(self):
        """Run ticks every interval until SIGINT or SIGTERM."""
        self.running = True

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        logger.info(f"Driver started for {self.account.mailsite_key}")
        asyncio.run(self._main_loop())
        logger.info("Driver stopped")

    async def _main_loop(self):
        while self.running:
            try:
                now = time.monotonic()
                if not self._last_tick or now - self._last_tick >= self.interval:
                    self._last_tick = now
                    await self.tick()

                # Short sleep keeps shutdown responsive
                await asyncio.sleep(1)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in driver loop: {e}")

    def stop(self):
        self.running = False

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, stopping driver...")
        self.stop()
