"""
Tests for slotmail Contact Driver
"""

import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from pubsub import pub

from slotmail.core import events
from slotmail.core.account import Account
from slotmail.core.crypto import generate_private_key
from slotmail.core.driver import ContactDriver, OUTBOUND
from slotmail.core.mailsite import mailpage_key, publish_mailsite
from slotmail.core.outbound import OutboundContact
from slotmail.network.loopback import LoopbackStorage
from slotmail.store.lock import ContactLock
from slotmail.store.models import HandshakeState

TEST_KEY_SIZE = 1024


class FakeClock:
    """Controllable time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class EventRecorder:
    """Collects pypubsub messages for one topic."""

    def __init__(self, topic: str):
        self.calls = []
        pub.subscribe(self, topic)

    def __call__(self, **data):
        self.calls.append(data)


class TestContactDriver:
    """Tests for the periodic driver."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.network = LoopbackStorage()
        self.clock = FakeClock()

        self.alice = self._account("alice")
        self.bob = self._account("bob")

        self.alice_driver = ContactDriver(self.alice, self.network, max_parallel=2, clock=self.clock)
        self.bob_driver = ContactDriver(self.bob, self.network, max_parallel=2, clock=self.clock)

    def teardown_method(self):
        pub.unsubAll()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _account(self, name: str) -> Account:
        account = Account(
            data_dir=Path(self.temp_dir) / name,
            private_key=generate_private_key(TEST_KEY_SIZE),
            mailsite_key=name,
            rtsksk=f"{name}-ksk",
        )
        publish_mailsite(self.network, account)
        return account

    def test_contact_discovery(self):
        """Test contacts are found from their directories."""
        assert self.alice_driver.outbound_keys() == []

        self.alice_driver.outbound_contact("bob")
        self.alice_driver.outbound_contact("carol")

        assert self.alice_driver.outbound_keys() == ["bob", "carol"]
        assert self.alice_driver.inbound_keys() == []

    @pytest.mark.asyncio
    async def test_tick_delivers_mail(self):
        """Test two drivers exchange a message and its ack."""
        self.alice_driver.outbound_contact("bob").send_message(b"Hello Bob")

        await self.alice_driver.tick()
        await self.bob_driver.tick()
        await self.alice_driver.tick()

        bob_inbox = self.bob_driver.message_bank.messages()
        assert [p.read_bytes() for p in bob_inbox] == [b"Hello Bob"]

        contact = self.alice_driver.outbound_contact("bob")
        assert contact.pending() == []
        assert contact.state.status == HandshakeState.CTS_RECEIVED

    @pytest.mark.asyncio
    async def test_fatal_marks_attention(self):
        """Test a fatal result marks the contact and publishes it."""
        recorder = EventRecorder(events.CONTACT_FATAL)
        self.network.put(b"rtsksk=carol-ksk\r\n\r\n", mailpage_key("carol"))
        self.alice_driver.outbound_contact("carol")

        await self.alice_driver.tick()

        contact = self.alice_driver.outbound_contact("carol")
        assert contact.attention is not None
        assert len(recorder.calls) == 1
        assert recorder.calls[0]["contact"] == "carol"

    @pytest.mark.asyncio
    async def test_marked_contact_skipped_until_reset(self):
        """Test contacts needing attention are left alone."""
        contact = self.alice_driver.outbound_contact("bob")
        contact.mark_attention("manual hold")

        await self.alice_driver.tick()
        assert contact.state.status == HandshakeState.UNSENT

        contact.clear_attention()
        await self.alice_driver.tick()
        assert contact.state.status == HandshakeState.RTS_SENT

    @pytest.mark.asyncio
    async def test_transient_failure_not_marked(self):
        """Test an unreachable mailsite is only retried."""
        self.alice_driver.outbound_contact("dave")

        await self.alice_driver.tick()

        assert self.alice_driver.outbound_contact("dave").attention is None

    @pytest.mark.asyncio
    async def test_busy_contact_skipped(self):
        """Test a contact with a cycle in flight is not run again."""
        self.alice_driver.outbound_contact("bob")
        lock = self.alice_driver._lock_for(OUTBOUND, "bob")

        await lock.acquire()
        try:
            await self.alice_driver.tick()
        finally:
            lock.release()

        assert self.alice_driver.outbound_contact("bob").state.status == HandshakeState.UNSENT

    @pytest.mark.asyncio
    async def test_contact_locked_by_cli_skipped(self):
        """Test a contact held by another process is left for the next tick."""
        contact = self.alice_driver.outbound_contact("bob")

        with ContactLock(contact.contact_dir):
            await self.alice_driver.tick()

        assert contact.state.status == HandshakeState.UNSENT
        assert contact.attention is None

        await self.alice_driver.tick()
        assert contact.state.status == HandshakeState.RTS_SENT

    @pytest.mark.asyncio
    async def test_contact_error_does_not_stop_tick(self):
        """Test one failing contact does not block the others."""
        self.alice_driver.outbound_contact("bob").send_message(b"Hello")
        self.bob_driver.outbound_contact("alice")
        await self.alice_driver.tick()

        with patch.object(OutboundContact, "run_cycle", side_effect=RuntimeError("boom")):
            await self.bob_driver.tick()

        assert len(self.bob_driver.message_bank.messages()) == 1

    def test_stop(self):
        """Test stop clears the running flag."""
        self.alice_driver.running = True
        self.alice_driver.stop()
        assert self.alice_driver.running is False
