"""
Tests for slotmail RTS Handling and End-to-End Delivery
"""

import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

from pubsub import pub

from slotmail.core.account import Account
from slotmail.core.crypto import ChainedBlockCipher, generate_private_key, sign
from slotmail.core.inbound import InboundContact
from slotmail.core.mailsite import publish_mailsite
from slotmail.core.messagebank import MessageBank
from slotmail.core.outbound import OutboundContact
from slotmail.core.rts import RTSReceiver
from slotmail.network.base import InsertError
from slotmail.network.loopback import LoopbackStorage
from slotmail.protocol.envelope import RTSPayload, date_key_string, rts_base_key
from slotmail.protocol.slots import new_seed
from slotmail.store.contacts import InboundStore
from slotmail.store.models import HandshakeState

TEST_KEY_SIZE = 1024
HOUR = 3600


class FakeClock:
    """Controllable time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RTSTestBase:
    """Alice and Bob on a shared loopback network."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.network = LoopbackStorage()
        self.clock = FakeClock()

        self.alice = self._account("alice")
        self.bob = self._account("bob")

        self.sender = OutboundContact(
            self.alice.outbound_dir, "bob", self.alice, self.network, clock=self.clock
        )
        self.receiver = RTSReceiver(self.bob, self.network, clock=self.clock)

    def teardown_method(self):
        pub.unsubAll()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _account(self, name: str, publish: bool = True) -> Account:
        account = Account(
            data_dir=Path(self.temp_dir) / name,
            private_key=generate_private_key(TEST_KEY_SIZE),
            mailsite_key=name,
            rtsksk=f"{name}-ksk",
        )
        if publish:
            publish_mailsite(self.network, account)
        return account

    def _inbound_state(self, name: str = "alice"):
        return InboundStore(self.bob.inbound_dir / name).load()

    def _forge_rts(self, index: int, to: str = "bob", mailsite: str = "alice", signer=None) -> RTSPayload:
        """Insert a hand-made RTS into Bob's RTS keys."""
        rts = RTSPayload(
            commssk="SSK@comm,pub/",
            ackssk=self.network.generate_key_pair().private_key,
            initialslot=new_seed(),
            to=to,
            mailsite=mailsite,
        )
        plaintext = rts.to_bytes()
        signed = plaintext + sign(signer or self.alice.private_key, plaintext)
        data = ChainedBlockCipher.encrypt(self.bob.public_key, signed)
        self.network.put(data, f"{rts_base_key('bob-ksk', self.clock())}-{index}")
        return rts


class TestRTSReceiver(RTSTestBase):
    """Tests for RTS reception and CTS publication."""

    def test_valid_rts_creates_contact(self):
        """Test an RTS sets up the inbound contact and publishes the CTS."""
        assert self.sender.init().success
        state = self.sender.state

        assert self.receiver.poll() == 1

        inbound = self._inbound_state()
        assert inbound.slots == state.initial_slot
        assert inbound.commssk == state.commssk_pubkey
        assert inbound.ackssk == state.ackssk_privkey
        assert self.network.fetch(state.ackssk_pubkey + "ack") is not None

    def test_cts_completes_handshake(self):
        """Test Alice sees Bob's CTS."""
        self.sender.init()
        self.receiver.poll()

        self.sender.check_cts()

        assert self.sender.state.status == HandshakeState.CTS_RECEIVED
        assert self.sender.state.initial_slot is None

    def test_rts_processed_once(self):
        """Test the last index is remembered."""
        self.sender.init()
        assert self.receiver.poll() == 1
        fetches = self.network.fetch_count

        assert self.receiver.poll() == 0
        # Only the next, empty index of yesterday and of today is polled
        assert self.network.fetch_count == fetches + 2

        date = date_key_string(self.clock())
        assert self.receiver.props.get(f"{date}.last") == "1"

    def test_old_dates_forgotten(self):
        """Test days before yesterday are dropped."""
        self._forge_rts(1)
        self.receiver.poll()
        old_date = date_key_string(self.clock())

        self.clock.advance(48 * HOUR)
        self._forge_rts(1)
        self.receiver.poll()

        props = self.receiver.props.as_dict()
        assert f"{old_date}.last" not in props
        assert props[f"{date_key_string(self.clock())}.last"] == "1"

    def test_rts_before_midnight(self):
        """Test an RTS inserted late yesterday is still picked up."""
        rts = self._forge_rts(1)
        old_date = date_key_string(self.clock())

        self.clock.advance(3 * HOUR)
        assert date_key_string(self.clock()) != old_date

        assert self.receiver.poll() == 1
        assert self._inbound_state().slots == rts.initialslot
        assert self.receiver.poll() == 0

    def test_wrong_recipient(self):
        """Test an RTS for someone else is rejected but consumed."""
        self._forge_rts(1, to="carol")

        assert self.receiver.poll() == 0
        assert not (self.bob.inbound_dir / "alice").exists()
        assert self.receiver.props.get(f"{date_key_string(self.clock())}.last") == "1"

    def test_bad_signature(self):
        """Test an RTS signed by someone else is rejected."""
        self._forge_rts(1, signer=generate_private_key(TEST_KEY_SIZE))

        assert self.receiver.poll() == 0
        assert not (self.bob.inbound_dir / "alice").exists()

    def test_garbage_skipped(self):
        """Test undecryptable data does not block later RTS messages."""
        self.network.put(b"garbage", f"{rts_base_key('bob-ksk', self.clock())}-1")
        rts = self._forge_rts(2)

        assert self.receiver.poll() == 1
        assert self._inbound_state().slots == rts.initialslot

    def test_sender_mailsite_pending(self):
        """Test an RTS whose sender mailsite is not yet retrievable is retried."""
        carol = self._account("carol", publish=False)
        self._forge_rts(1, mailsite="carol", signer=carol.private_key)
        date = date_key_string(self.clock())

        assert self.receiver.poll() == 0
        assert self.receiver.props.get(f"{date}.last") == "1"
        assert self.receiver.props.get(f"{date}.retry") == "1"

        publish_mailsite(self.network, carol)
        assert self.receiver.poll() == 1
        assert (self.bob.inbound_dir / "carol").exists()
        assert self.receiver.props.get(f"{date}.retry") is None

    def test_pending_rts_does_not_block_later_ones(self):
        """Test an RTS waiting on its sender does not hold up the next one."""
        carol = self._account("carol", publish=False)
        self._forge_rts(1, mailsite="carol", signer=carol.private_key)
        rts = self._forge_rts(2)

        assert self.receiver.poll() == 1
        assert self._inbound_state().slots == rts.initialslot
        assert not (self.bob.inbound_dir / "carol").exists()

        publish_mailsite(self.network, carol)
        assert self.receiver.poll() == 1
        assert (self.bob.inbound_dir / "carol").exists()

    def test_repeated_rts_keeps_watermark(self):
        """Test a re-sent RTS does not rewind the inbound scan."""
        self.sender.init()
        self.receiver.poll()
        InboundStore(self.bob.inbound_dir / "alice").save_slots("moved-on")

        # Alice never saw the CTS and sends the RTS again the next day
        self.clock.advance(27 * HOUR)
        assert self.sender.init().success
        assert self.receiver.poll() == 1

        assert self._inbound_state().slots == "moved-on"


class TestEndToEnd(RTSTestBase):
    """Full exchange between two accounts."""

    def setup_method(self):
        super().setup_method()
        self.bank = MessageBank(self.bob.inbox_dir)

    def _bob_inbound(self) -> InboundContact:
        return InboundContact(self.bob.inbound_dir, "alice", self.network, self.bank)

    def test_message_delivered_and_acked(self):
        """Test a message goes from Alice's queue to Bob's inbox and back as ack."""
        self.sender.send_message(b"Hello Bob")
        self.sender.run_cycle()
        self.receiver.poll()

        assert self._bob_inbound().fetch() == 1
        assert self.bank.messages()[0].read_bytes() == b"Hello Bob"

        self.sender.run_cycle()

        assert self.sender.pending() == []
        assert self.sender.state.status == HandshakeState.CTS_RECEIVED

    def test_lost_ack_triggers_retransmit(self):
        """Test a message whose ack was lost is re-sent, acked, and delivered once."""
        self.sender.send_message(b"one")
        self.sender.run_cycle()
        self.receiver.poll()
        inbound = self._bob_inbound()

        with patch.object(self.network, "put", side_effect=InsertError("offline")):
            assert inbound.fetch() == 1

        first_slot = self.sender.pending()[0].slot
        self.clock.advance(27 * HOUR)
        self.sender.run_cycle()
        self.sender.send_queued()

        assert self.sender.pending()[0].slot != first_slot
        assert inbound.fetch() == 0

        assert self.sender.poll_acks() == 1
        assert self.sender.pending() == []
        assert len(self.bank.messages()) == 1
