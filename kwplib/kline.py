import time
import queue
import threading
from enum import Enum
from pydispatch import dispatcher
from .errors import TransportNotOpen, TransportIoFailure, InitFailed, Cancelled, InvalidPayload
from .kwp import (encode, hexdump, KLINE_BAUDRATE, TESTER_ADDRESS, START_COMMUNICATION, W4)

KLINE_INIT_SUCCESS_MSG = "K-Line initialization successful"
KLINE_INIT_FAILED_MSG = "K-Line initialization failed"
KLINE_FAST_INIT_SUCCESS_MSG = "K-Line fast init successful"
KLINE_FAST_INIT_FAILED_MSG = "K-Line fast init failed"

SYNC_BYTE = 0x55
BIT_TIME = .200
SETTLE_TIME = .025
FAST_LOW = .025
FAST_HIGH = .025
SYNC_TIMEOUT = .5
DEFAULT_SESSION = 0x01

class LinkState(Enum):
	UNINITIALIZED = 0
	SYNCHRONIZING = 1
	READY = 2
	FAILED = 3

class InitMode(Enum):
	FIVE_BAUD = 0
	FAST = 1

class InitPhase(Enum):
	IDLE = 0
	SENDING_ADDRESS = 1
	AWAITING_SYNC = 2
	PULSE_LOW = 3
	PULSE_HIGH = 4
	SENDING_START_COMM = 5

def call(what, fn, *args):
	try:
		ok = fn(*args)
	except EnvironmentError as e:
		raise TransportIoFailure("%s: %s" % (what, e))
	if ok is False:
		raise TransportIoFailure("%s failed" % what)

def hold(abort, duration):
	deadline = time.monotonic() + duration
	while True:
		remaining = deadline - time.monotonic()
		if remaining <= 0:
			return
		if abort.wait(remaining):
			raise Cancelled("interrupted")

def address_bits(address):
	return [0] + [(address >> i) & 1 for i in range(8)] + [1]

class KLineInit(object):
	"""
	Wake-up state machine for a K-line ECU.

	run() blocks for the whole sequence and is meant to be executed by the
	session worker, never by a caller's thread. The machine is the only owner of
	the link state; every transition is published on the "ecu.state" signal and
	progress strings on "ecu.status".

	5-baud: the ECU address goes out at 200 ms per bit (start, 8 data bits LSB
	first, stop), then the adapter switches to 10400 bps. If a key_validator is
	given the ECU's 0x55/KB1/KB2 reply is checked and answered with ~KB2,
	otherwise the baud switch alone makes the link READY.

	Fast: line low 25 ms, high 25 ms, then StartCommunication at 10400 bps.
	"""

	def __init__(self, transport, tester_address=TESTER_ADDRESS, baudrate=KLINE_BAUDRATE,
			bit_time=BIT_TIME, settle_time=SETTLE_TIME, fast_low=FAST_LOW, fast_high=FAST_HIGH,
			session_type=DEFAULT_SESSION, key_validator=None, sync_timeout=SYNC_TIMEOUT, abort=None):
		self.dev = transport
		self.tester_address = tester_address
		self.baudrate = baudrate
		self.bit_time = bit_time
		self.settle_time = settle_time
		self.fast_low = fast_low
		self.fast_high = fast_high
		self.session_type = session_type
		self.key_validator = key_validator
		self.sync_timeout = sync_timeout
		self.abort = abort if abort is not None else threading.Event()
		self.state = LinkState.UNINITIALIZED
		self.phase = InitPhase.IDLE
		self.reason = None
		self.mode = None
		self.ecu_address = None
		self.key_bytes = None
		self._rx = queue.Queue()

	@property
	def ready(self):
		return self.state == LinkState.READY

	def _set_state(self, state, reason=None):
		self.state = state
		self.reason = reason
		dispatcher.send(signal="ecu.state", sender=self, state=state, reason=reason)

	def status(self, msg):
		dispatcher.send(signal="ecu.status", sender=self, msg=msg)

	def debug(self, msg):
		dispatcher.send(signal="ecu.debug", sender=self, msg=msg)

	def wants_bytes(self):
		return self.phase == InitPhase.AWAITING_SYNC

	def feed(self, data):
		for b in bytearray(data):
			self._rx.put(b)

	def run(self, mode, ecu_address):
		self.mode = mode
		self.ecu_address = ecu_address
		self.key_bytes = None
		if mode == InitMode.FAST:
			success, failed = KLINE_FAST_INIT_SUCCESS_MSG, KLINE_FAST_INIT_FAILED_MSG
		else:
			success, failed = KLINE_INIT_SUCCESS_MSG, KLINE_INIT_FAILED_MSG
		self._set_state(LinkState.SYNCHRONIZING)
		try:
			if not 0 <= ecu_address <= 0xff:
				raise InvalidPayload("ECU address 0x%x is not a byte" % ecu_address)
			if not self.dev.is_open():
				raise TransportNotOpen("transport not open")
			if mode == InitMode.FAST:
				self._fast(ecu_address)
			else:
				self._five_baud(ecu_address)
		except (TransportNotOpen, InvalidPayload) as e:
			self._fail(failed, str(e))
			raise
		except Cancelled:
			self.release()
			self._fail(failed, "cancelled")
			raise
		except TransportIoFailure as e:
			self.release()
			self._fail(failed, str(e))
			raise InitFailed(str(e))
		except InitFailed as e:
			self.release()
			self._fail(failed, e.reason)
			raise
		self.phase = InitPhase.IDLE
		self._set_state(LinkState.READY)
		self.status(success)
		return self.state

	def _fail(self, msg, reason):
		self.phase = InitPhase.IDLE
		self._set_state(LinkState.FAILED, reason)
		self.status("%s: %s" % (msg, reason))

	def release(self):
		for what, fn, arg in (("set line high", self.dev.set_line_state, False),
				("set baudrate %d" % self.baudrate, self.dev.set_baudrate, self.baudrate)):
			try:
				call(what, fn, arg)
			except TransportIoFailure as e:
				self.debug("release: %s" % e)

	def mark_lost(self, reason):
		if self.state == LinkState.READY:
			self._set_state(LinkState.FAILED, reason)
			self.status("K-Line link lost: %s" % reason)

	def _five_baud(self, address):
		self.phase = InitPhase.SENDING_ADDRESS
		self.status("Starting 5-baud init for address 0x%02x..." % address)
		for i, bit in enumerate(address_bits(address)):
			self.debug("5-baud: bit %d = %d" % (i, bit))
			call("set line %s" % ("low" if bit == 0 else "high"), self.dev.set_line_state, bit == 0)
			hold(self.abort, self.bit_time)
		self.phase = InitPhase.AWAITING_SYNC
		self._drain()
		call("set baudrate %d" % self.baudrate, self.dev.set_baudrate, self.baudrate)
		hold(self.abort, self.settle_time)
		self.status("Switched to %d bps. Waiting for ECU sync..." % self.baudrate)
		if self.key_validator is not None:
			self._handshake(address)

	def _handshake(self, address):
		sync = self._read_byte("no sync byte from ECU")
		if sync != SYNC_BYTE:
			raise InitFailed("bad sync byte 0x%02x" % sync)
		kb1 = self._read_byte("no key byte 1 from ECU")
		kb2 = self._read_byte("no key byte 2 from ECU")
		self.debug("key bytes %02x %02x" % (kb1, kb2))
		if not self.key_validator(kb1, kb2):
			raise InitFailed("key bytes 0x%02x 0x%02x rejected" % (kb1, kb2))
		self.key_bytes = (kb1, kb2)
		hold(self.abort, W4)
		call("write", self.dev.write, bytes([kb2 ^ 0xff]))
		echoed = False
		while True:
			b = self._read_byte("no inverted address from ECU")
			if b == address ^ 0xff:
				break
			if b == kb2 ^ 0xff and not echoed:
				echoed = True
				continue
			raise InitFailed("expected inverted address 0x%02x, got 0x%02x" % (address ^ 0xff, b))

	def _fast(self, address):
		self.status("Starting fast K-Line initialization...")
		self.phase = InitPhase.PULSE_LOW
		self.debug("fast init: line low for %d ms" % (self.fast_low * 1000))
		call("set line low", self.dev.set_line_state, True)
		hold(self.abort, self.fast_low)
		self.phase = InitPhase.PULSE_HIGH
		self.debug("fast init: line high for %d ms" % (self.fast_high * 1000))
		call("set line high", self.dev.set_line_state, False)
		hold(self.abort, self.fast_high)
		self.phase = InitPhase.SENDING_START_COMM
		call("set baudrate %d" % self.baudrate, self.dev.set_baudrate, self.baudrate)
		frame = encode(address, self.tester_address, START_COMMUNICATION, [self.session_type])
		self.debug("> %s" % hexdump(frame))
		call("write", self.dev.write, frame)
		self.status("StartCommunication frame sent, waiting for positive response...")

	def _drain(self):
		while True:
			try:
				self._rx.get_nowait()
			except queue.Empty:
				return

	def _read_byte(self, reason):
		deadline = time.monotonic() + self.sync_timeout
		while True:
			if self.abort.is_set():
				raise Cancelled("interrupted")
			remaining = deadline - time.monotonic()
			if remaining <= 0:
				raise InitFailed(reason)
			try:
				return self._rx.get(timeout=min(remaining, .01))
			except queue.Empty:
				pass
