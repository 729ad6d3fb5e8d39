"""
Tests for slotmail Inbound Contact and Message Bank
"""

import shutil
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

from pubsub import pub

from slotmail.core import events
from slotmail.core.inbound import InboundContact
from slotmail.core.messagebank import MessageBank
from slotmail.network.base import InsertError
from slotmail.network.loopback import LoopbackStorage
from slotmail.protocol.envelope import wrap_message
from slotmail.protocol.slots import advance, new_seed
from slotmail.store.contacts import InboundStore
from slotmail.store.models import InboundState


def advance_n(slot: str, n: int) -> str:
    for _ in range(n):
        slot = advance(slot)
    return slot


class EventRecorder:
    """Collects pypubsub messages for one topic."""

    def __init__(self, topic: str):
        self.calls = []
        pub.subscribe(self, topic)

    def __call__(self, **data):
        self.calls.append(data)


class TestInboundScan:
    """Tests for the poll-ahead scan and message intake."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.inbound_dir = Path(self.temp_dir) / "inbound"
        self.network = LoopbackStorage()
        self.bank = MessageBank(Path(self.temp_dir) / "inbox")

        # Keys Alice generated and sent in her RTS
        self.comm = self.network.generate_key_pair()
        self.ack = self.network.generate_key_pair()
        self.seed = new_seed()

        self.store = InboundStore(self.inbound_dir / "alice")
        self.store.save(InboundState(
            slots=self.seed,
            commssk=self.comm.public_key,
            ackssk=self.ack.private_key,
        ))
        self.contact = InboundContact(self.inbound_dir, "alice", self.network, self.bank, poll_ahead=6)

    def teardown_method(self):
        pub.unsubAll()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _insert(self, slot: str, msg_id: int, body: bytes = b"hello"):
        """Insert a message the way Alice would."""
        self.network.put(wrap_message(msg_id, body), self.comm.private_key + slot)

    def _watermark(self) -> str:
        return self.store.load().slots

    def test_empty_scan(self):
        """Test misses leave the watermark alone."""
        assert self.contact.fetch() == 0
        assert self._watermark() == self.seed
        assert self.network.fetch_count == 7

    def test_poll_ahead_finds_gap(self):
        """Test a message four slots ahead is found."""
        target = advance_n(self.seed, 4)
        self._insert(target, 1)

        assert self.contact.fetch() == 1
        assert self._watermark() == target
        assert self.bank.messages()[0].read_bytes() == b"hello"

    def test_beyond_window_not_found(self):
        """Test slots past the window wait for the watermark to move."""
        self._insert(advance_n(self.seed, 7), 1)

        assert self.contact.fetch() == 0
        assert self._watermark() == self.seed

    def test_watermark_is_last_occupied(self):
        """Test the watermark stops at the last hit, not the window end."""
        self._insert(self.seed, 1)
        self._insert(advance_n(self.seed, 2), 2)

        assert self.contact.fetch() == 2
        assert self._watermark() == advance_n(self.seed, 2)

    def test_dedup_across_cycles(self):
        """Test ids [5, 7, 5] deliver 5 and 7 once each."""
        self._insert(self.seed, 5, b"first")
        assert self.contact.fetch() == 1

        self._insert(advance_n(self.seed, 1), 7, b"second")
        assert self.contact.fetch() == 1

        self._insert(advance_n(self.seed, 2), 5, b"replay")
        assert self.contact.fetch() == 0

        bodies = [path.read_bytes() for path in self.bank.messages()]
        assert bodies == [b"first", b"second"]
        assert self.contact.log.logfile.read_text() == "5\n7\n"
        assert self._watermark() == advance_n(self.seed, 2)

    def test_duplicate_skips_delivery(self):
        """Test a logged id never reaches the message bank."""
        self.contact.log.add(9)
        self.contact.message_bank = MagicMock()
        self._insert(self.seed, 9)

        self.contact.fetch()

        self.contact.message_bank.store.assert_not_called()

    def test_rescan_of_watermark(self):
        """Test the consumed watermark slot is not delivered twice."""
        self._insert(self.seed, 1)
        self.contact.fetch()

        assert self.contact.fetch() == 0
        assert len(self.bank.messages()) == 1

    def test_ack_after_store(self):
        """Test the ack appears where Alice polls for it."""
        self._insert(self.seed, 3)
        self.contact.fetch()

        assert self.network.fetch(self.ack.public_key + "3") == b""

    def test_duplicate_is_acked(self):
        """Test a replay is acked again so the sender stops resending."""
        self.contact.log.add(4)
        self._insert(self.seed, 4)

        self.contact.fetch()

        assert self.network.fetch(self.ack.public_key + "4") == b""
        assert self.bank.messages() == []

    def test_ack_failure_still_consumes(self):
        """Test a failed ack insert does not hold the slot."""
        target = advance_n(self.seed, 1)
        self._insert(target, 1)

        with patch.object(self.network, "put", side_effect=InsertError("offline")):
            assert self.contact.fetch() == 1

        assert self._watermark() == target
        assert self.contact.log.is_present(1)
        assert self.network.fetch(self.ack.public_key + "1") is None

    def test_missing_id_discarded(self):
        """Test a message without id consumes its slot."""
        self.network.put(b"subject=hi\r\n\r\nbody", self.comm.private_key + self.seed)
        self._insert(advance_n(self.seed, 1), 2)

        assert self.contact.fetch() == 1
        assert len(self.bank.messages()) == 1
        assert self._watermark() == advance_n(self.seed, 1)

    def test_non_integer_id_discarded(self):
        """Test a non-integer id is dropped."""
        target = advance_n(self.seed, 3)
        self.network.put(b"id=abc\r\n\r\nbody", self.comm.private_key + target)

        assert self.contact.fetch() == 0
        assert self.bank.messages() == []
        assert self._watermark() == target

    def test_store_failure_defers(self):
        """Test a local storage failure leaves the slot for later."""
        self._insert(self.seed, 1)

        with patch.object(MessageBank, "store", side_effect=OSError("disk full")):
            assert self.contact.fetch() == 0

        assert self._watermark() == self.seed
        assert not self.contact.log.is_present(1)

        assert self.contact.fetch() == 1
        assert self.contact.log.is_present(1)

    def test_log_read_failure_defers(self):
        """Test an unreadable log leaves the slot unconsumed."""
        target = advance_n(self.seed, 2)
        self._insert(target, 1)

        with patch.object(self.contact.log, "is_present", side_effect=OSError("io error")):
            assert self.contact.fetch() == 0

        assert self._watermark() == self.seed
        assert self.bank.messages() == []

    def test_log_write_failure_delivers_once(self):
        """Test a message stored while the log is unwritable is not stored again."""
        self._insert(self.seed, 1)

        with patch.object(self.contact.log, "add", side_effect=OSError("read-only")):
            assert self.contact.fetch() == 0

        assert len(self.bank.messages()) == 1
        assert self.store.pending_log() == 1
        assert self.network.fetch(self.ack.public_key + "1") is None

        assert self.contact.fetch() == 0

        assert len(self.bank.messages()) == 1
        assert self.contact.log.is_present(1)
        assert self.store.pending_log() is None
        assert self.network.fetch(self.ack.public_key + "1") == b""

    def test_log_still_unwritable_skips_scan(self):
        """Test the scan waits while a delivered id cannot be logged."""
        self.store.save_pending_log(4)
        self._insert(self.seed, 5)

        with patch.object(self.contact.log, "add", side_effect=OSError("read-only")):
            assert self.contact.fetch() == 0

        assert self.bank.messages() == []
        assert self.store.pending_log() == 4

    def test_deferred_slot_stops_scan(self):
        """Test later slots are not consumed past a deferred one."""
        self._insert(advance_n(self.seed, 1), 1)
        self._insert(advance_n(self.seed, 3), 2)

        with patch.object(MessageBank, "store", side_effect=OSError("disk full")):
            self.contact.fetch()

        assert self._watermark() == self.seed

        assert self.contact.fetch() == 2
        assert self._watermark() == advance_n(self.seed, 3)

    def test_received_event(self):
        """Test delivery is published."""
        recorder = EventRecorder(events.MESSAGE_RECEIVED)
        self._insert(self.seed, 11)

        self.contact.fetch()

        assert recorder.calls == [{"contact": "alice", "msg_id": 11}]

    def test_missing_slots_is_corruption(self):
        """Test a contact without watermark is skipped, not deleted."""
        recorder = EventRecorder(events.CONTACT_CORRUPT)
        self.store.props.remove("slots")

        assert self.contact.fetch() == 0
        assert self.network.fetch_count == 0
        assert self.store.exists()
        assert recorder.calls == [{"contact": "alice", "detail": "slots"}]

    def test_missing_commssk_is_corruption(self):
        """Test a contact without comm key is skipped."""
        self.store.props.remove("commssk")

        assert self.contact.fetch() == 0
        assert self.network.fetch_count == 0


class TestMessageBank:
    """Tests for the local mailbox."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.bank = MessageBank(Path(self.temp_dir) / "inbox")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_numbered_files(self):
        """Test messages are numbered in arrival order."""
        first = self.bank.store(b"one")
        second = self.bank.store(b"two")

        assert first.name == "1"
        assert second.name == "2"
        assert [p.read_bytes() for p in self.bank.messages()] == [b"one", b"two"]

    def test_no_temp_files_left(self):
        """Test temporary files are cleaned up."""
        self.bank.store(b"one")
        assert [p.name for p in self.bank.path.iterdir()] == ["1"]
