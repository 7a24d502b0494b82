import time
import threading
import pytest
from pydispatch import dispatcher
from kwplib.base import Transport
from kwplib.kline import InitMode
from kwplib.kwp import encode, TESTER_ADDRESS, ECU_ADDRESS
from kwplib.kwp2000 import KWP2000ECU

SIGNALS = ("ecu.status", "ecu.state", "ecu.debug", "ecu.frame", "ecu.response")

class FakeTransport(Transport):
	"""
	In-memory K-line adapter.

	Every control call is recorded as (name, argument, monotonic time). Operations
	named in `fail` return False. `responder(frame)` may return chunks that are
	delivered to subscribers from another thread shortly after a write, and
	`hooks[name](argument)` runs synchronously inside the matching call.
	"""

	def __init__(self, responder=None):
		super(FakeTransport, self).__init__()
		self.opened = True
		self.calls = []
		self.writes = []
		self.fail = set()
		self.hooks = {}
		self.responder = responder

	def _record(self, name, arg):
		self.calls.append((name, arg, time.monotonic()))
		if name in self.hooks:
			self.hooks[name](arg)
		return name not in self.fail

	def is_open(self):
		return self.opened

	def set_baudrate(self, bps):
		return self._record("baud", bps)

	def set_line_state(self, low):
		return self._record("line", low)

	def write(self, data):
		data = bytes(data)
		self.writes.append(data)
		ok = self._record("write", data)
		if ok and self.responder is not None:
			chunks = self.responder(data)
			if chunks:
				self.deliver(*chunks)
		return ok

	def subscribe_read(self, callback):
		self._callbacks.append(callback)

	def feed(self, data):
		for callback in list(self._callbacks):
			callback(bytes(data))

	def deliver(self, *chunks, delay=.005):
		def run():
			time.sleep(delay)
			for chunk in chunks:
				self.feed(chunk)
		threading.Thread(target=run, daemon=True).start()

	def close(self):
		self.opened = False

def reply(service_id, payload=b""):
	return encode(TESTER_ADDRESS, ECU_ADDRESS, service_id, payload)

def wait_for(predicate, timeout=1.0):
	deadline = time.monotonic() + timeout
	while time.monotonic() < deadline:
		if predicate():
			return True
		time.sleep(.005)
	return predicate()

@pytest.fixture
def transport():
	return FakeTransport()

@pytest.fixture
def make_ecu(transport):
	ecus = []
	def factory(**kwargs):
		options = dict(timeout=.2, p3=.001, bit_time=.001, settle_time=.001, lost_after=None)
		options.update(kwargs)
		ecu = KWP2000ECU(transport, **options)
		ecus.append(ecu)
		return ecu
	yield factory
	for ecu in ecus:
		ecu.close()

@pytest.fixture
def ready_ecu(make_ecu):
	ecu = make_ecu()
	ecu.start_init(InitMode.FAST).result(timeout=2)
	return ecu

@pytest.fixture
def signals():
	received = []
	def receiver(signal=None, sender=None, **kwargs):
		received.append((signal, kwargs))
	for signal in SIGNALS:
		dispatcher.connect(receiver, signal=signal, weak=False)
	yield received
	for signal in SIGNALS:
		dispatcher.disconnect(receiver, signal=signal, weak=False)
