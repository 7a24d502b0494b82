"""
Tests for the K-line wake-up state machines.
"""

import time
import threading
import pytest
from kwplib.kline import (KLineInit, LinkState, InitMode, InitPhase, address_bits,
	KLINE_INIT_SUCCESS_MSG, KLINE_FAST_INIT_SUCCESS_MSG, KLINE_FAST_INIT_FAILED_MSG)
from kwplib.kwp import encode, decode
from kwplib.errors import InitFailed, TransportNotOpen, Cancelled, InvalidPayload


def calls(transport):
	return [(name, arg) for name, arg, _ in transport.calls]


def assert_released(transport):
	assert calls(transport)[-2:] == [("line", False), ("baud", 10400)]


class TestFiveBaud:

	def test_address_bits(self):
		assert address_bits(0x33) == [0, 1, 1, 0, 0, 1, 1, 0, 0, 1]

	def test_bit_banging_sequence(self, transport):
		link = KLineInit(transport, bit_time=.001, settle_time=.001)
		assert link.run(InitMode.FIVE_BAUD, 0x12) == LinkState.READY
		# 0x12 LSB first is 0 1 0 0 1 0 0 0, framed by a low start and a high stop bit
		lows = [True, True, False, True, True, False, True, True, True, False]
		assert calls(transport) == [("line", low) for low in lows] + [("baud", 10400)]
		assert transport.writes == []
		assert link.phase == InitPhase.IDLE

	def test_bit_period(self, transport):
		link = KLineInit(transport, bit_time=.02, settle_time=.001)
		link.run(InitMode.FIVE_BAUD, 0x01)
		times = [t for name, _, t in transport.calls]
		for a, b in zip(times, times[1:]):
			assert b - a >= .02

	def test_settle_after_baud_switch(self, transport):
		link = KLineInit(transport, bit_time=.001, settle_time=.03)
		start = []
		transport.hooks["baud"] = lambda bps: start.append(time.monotonic())
		link.run(InitMode.FIVE_BAUD, 0x12)
		assert time.monotonic() - start[0] >= .03

	def test_requires_open_transport(self, transport):
		transport.opened = False
		link = KLineInit(transport)
		with pytest.raises(TransportNotOpen):
			link.run(InitMode.FIVE_BAUD, 0x12)
		assert link.state == LinkState.FAILED
		assert transport.calls == []

	@pytest.mark.parametrize("mode", [InitMode.FIVE_BAUD, InitMode.FAST])
	def test_address_must_be_a_byte(self, transport, mode):
		link = KLineInit(transport, bit_time=.001, settle_time=.001)
		with pytest.raises(InvalidPayload):
			link.run(mode, 0x112)
		assert link.state == LinkState.FAILED
		assert link.phase == InitPhase.IDLE
		assert transport.calls == []

	def test_baud_switch_failure(self, transport):
		transport.fail.add("baud")
		link = KLineInit(transport, bit_time=.001, settle_time=.001)
		with pytest.raises(InitFailed) as e:
			link.run(InitMode.FIVE_BAUD, 0x12)
		assert "baudrate" in e.value.reason
		assert link.state == LinkState.FAILED
		assert link.reason == e.value.reason

	def test_key_byte_handshake(self, transport):
		link = KLineInit(transport, bit_time=.001, settle_time=.001,
			key_validator=lambda kb1, kb2: (kb1, kb2) == (0xef, 0x8f))
		transport.hooks["baud"] = lambda bps: link.feed(b"\x55\xef\x8f")
		# the adapter echoes ~KB2 before the ECU answers with ~address
		transport.hooks["write"] = lambda data: link.feed(data + bytes([0x12 ^ 0xff]))
		assert link.run(InitMode.FIVE_BAUD, 0x12) == LinkState.READY
		assert link.key_bytes == (0xef, 0x8f)
		assert transport.writes == [bytes([0x8f ^ 0xff])]

	def test_bad_sync_byte(self, transport):
		link = KLineInit(transport, bit_time=.001, settle_time=.001, key_validator=lambda kb1, kb2: True)
		transport.hooks["baud"] = lambda bps: link.feed(b"\x00\xef\x8f")
		with pytest.raises(InitFailed) as e:
			link.run(InitMode.FIVE_BAUD, 0x12)
		assert "sync" in e.value.reason
		assert_released(transport)

	def test_rejected_key_bytes(self, transport):
		link = KLineInit(transport, bit_time=.001, settle_time=.001, key_validator=lambda kb1, kb2: False)
		transport.hooks["baud"] = lambda bps: link.feed(b"\x55\x08\x08")
		with pytest.raises(InitFailed) as e:
			link.run(InitMode.FIVE_BAUD, 0x12)
		assert "rejected" in e.value.reason
		assert transport.writes == []

	def test_no_sync(self, transport):
		link = KLineInit(transport, bit_time=.001, settle_time=.001, sync_timeout=.05,
			key_validator=lambda kb1, kb2: True)
		with pytest.raises(InitFailed) as e:
			link.run(InitMode.FIVE_BAUD, 0x12)
		assert e.value.reason == "no sync byte from ECU"
		assert link.state == LinkState.FAILED

	def test_status_messages(self, transport, signals):
		link = KLineInit(transport, bit_time=.001, settle_time=.001)
		link.run(InitMode.FIVE_BAUD, 0x12)
		msgs = [kw["msg"] for signal, kw in signals if signal == "ecu.status"]
		assert msgs[0] == "Starting 5-baud init for address 0x12..."
		assert msgs[-1] == KLINE_INIT_SUCCESS_MSG


class TestFastInit:

	def test_pulse_sequence(self, transport):
		link = KLineInit(transport)
		assert link.run(InitMode.FAST, 0x12) == LinkState.READY
		assert calls(transport) == [
			("line", True),
			("line", False),
			("baud", 10400),
			("write", encode(0x12, 0xf1, 0x81, [0x01])),
		]
		times = [t for _, _, t in transport.calls]
		assert times[1] - times[0] >= .025
		assert times[2] - times[1] >= .025

	def test_session_type(self, transport):
		link = KLineInit(transport, fast_low=.001, fast_high=.001, session_type=0x85, tester_address=0xf0)
		link.run(InitMode.FAST, 0x10)
		frame = decode(transport.writes[0])
		assert frame.service_id == 0x81
		assert frame.payload == b"\x85"
		assert (frame.target, frame.source) == (0x10, 0xf0)

	def test_write_failure(self, transport, signals):
		transport.fail.add("write")
		link = KLineInit(transport, fast_low=.001, fast_high=.001)
		with pytest.raises(InitFailed):
			link.run(InitMode.FAST, 0x12)
		assert link.state == LinkState.FAILED
		assert_released(transport)
		msgs = [kw["msg"] for signal, kw in signals if signal == "ecu.status"]
		assert msgs[-1].startswith(KLINE_FAST_INIT_FAILED_MSG)

	def test_state_transitions(self, transport, signals):
		link = KLineInit(transport, fast_low=.001, fast_high=.001)
		link.run(InitMode.FAST, 0x12)
		states = [kw["state"] for signal, kw in signals if signal == "ecu.state"]
		assert states == [LinkState.SYNCHRONIZING, LinkState.READY]
		msgs = [kw["msg"] for signal, kw in signals if signal == "ecu.status"]
		assert KLINE_FAST_INIT_SUCCESS_MSG in msgs


class TestCancellation:

	def test_cancel_interrupts_bit_wait(self, transport):
		abort = threading.Event()
		link = KLineInit(transport, bit_time=5, abort=abort)
		threading.Timer(.05, abort.set).start()
		start = time.monotonic()
		with pytest.raises(Cancelled):
			link.run(InitMode.FIVE_BAUD, 0x12)
		assert time.monotonic() - start < 1
		assert link.state == LinkState.FAILED
		assert link.reason == "cancelled"
		assert_released(transport)

	def test_cancel_during_fast_pulse(self, transport):
		abort = threading.Event()
		link = KLineInit(transport, fast_low=5, abort=abort)
		threading.Timer(.05, abort.set).start()
		with pytest.raises(Cancelled):
			link.run(InitMode.FAST, 0x12)
		assert transport.writes == []
		assert_released(transport)


class TestLinkLoss:

	def test_mark_lost(self, transport):
		link = KLineInit(transport, fast_low=.001, fast_high=.001)
		link.run(InitMode.FAST, 0x12)
		link.mark_lost("no response")
		assert link.state == LinkState.FAILED
		assert link.reason == "no response"

	def test_mark_lost_needs_a_ready_link(self, transport):
		link = KLineInit(transport)
		link.mark_lost("no response")
		assert link.state == LinkState.UNINITIALIZED
