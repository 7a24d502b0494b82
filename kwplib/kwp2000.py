import struct
from pydispatch import dispatcher
from .base import ECU
from .errors import InvalidPayload, KWPError
from .kline import KLineInit, InitMode, DEFAULT_SESSION
from .session import Worker, SessionDispatcher, FIFO
from .kwp import (request, decode_dtcs, ECU_ADDRESS, TESTER_ADDRESS, P3_MIN, READ_DTCS, CLEAR_DTCS,
	TESTER_PRESENT, READ_MEMORY, WRITE_MEMORY, READ_DATA_BY_IDENTIFIER, START_COMMUNICATION)

def format_address(address):
	if not 0 <= address <= 0xffffff:
		raise InvalidPayload("address 0x%x does not fit in 3 bytes" % address)
	return struct.pack(">I", address)[1:]

def format_size(size):
	if not 0 <= size <= 0xffff:
		raise InvalidPayload("size %d does not fit in 2 bytes" % size)
	return struct.pack(">H", size)

def response_data(response):
	return response.payload

class KWP2000ECU(ECU):

	def __init__(self, klineadapter, ecu_address=ECU_ADDRESS, tester_address=TESTER_ADDRESS, timeout=1.0,
			p3=P3_MIN, mode=FIFO, keepalive=None, lost_after=3, **init_options):
		super(KWP2000ECU, self).__init__(klineadapter)
		self.ecu_address = ecu_address
		self.tester_address = tester_address
		self.link = KLineInit(self.dev, tester_address=tester_address, **init_options)
		self.worker = Worker(idle=keepalive, idle_callback=self._keepalive, abort=self.link.abort)
		try:
			self.session = SessionDispatcher(self.dev, self.link, self.worker, ecu_address, tester_address,
				timeout=timeout, p3=p3, mode=mode, lost_after=lost_after)
		except ValueError:
			self.worker.stop()
			raise
		self.dev.subscribe_read(self._on_read)

	@property
	def state(self):
		return self.link.state

	def _on_read(self, data):
		if self.link.wants_bytes():
			self.link.feed(data)
		else:
			self.session.feed(data)

	def _init(self, mode, address):
		self.ecu_address = address
		self.session.ecu_address = address
		state = self.link.run(mode, address)
		self.session.touch()
		return state

	def _keepalive(self):
		if not self.link.ready or self.session.outstanding > 0:
			return
		try:
			self.session.execute(request(TESTER_PRESENT))
		except KWPError as e:
			dispatcher.send(signal="ecu.debug", sender=self, msg="keepalive: %s" % e)

	def start_init(self, mode=InitMode.FIVE_BAUD, ecu_address=None):
		if ecu_address is None:
			ecu_address = self.ecu_address
		if not 0 <= ecu_address <= 0xff:
			raise InvalidPayload("ECU address 0x%x is not a byte" % ecu_address)
		return self.worker.submit(self._init, mode, ecu_address)

	def reinit(self):
		return self.start_init(self.link.mode or InitMode.FIVE_BAUD, self.link.ecu_address)

	def cancel(self):
		self.worker.cancel()
		self.session.interrupt()

	def close(self):
		self.cancel()
		self.worker.stop()
		self.dev.close()

	def send_service(self, service_id, payload=b"", expects_response=None, decoder=None):
		return self.session.send(request(service_id, payload, expects_response), decoder)

	def start_communication(self, session_type=DEFAULT_SESSION):
		return self.send_service(START_COMMUNICATION, [session_type])

	def read_dtcs(self, payload=b""):
		return self.send_service(READ_DTCS, payload, decoder=decode_dtcs)

	def clear_dtcs(self, group=(0xff,)):
		return self.send_service(CLEAR_DTCS, group)

	def tester_present(self):
		return self.send_service(TESTER_PRESENT)

	def read_memory(self, address, size):
		return self.send_service(READ_MEMORY, format_address(address) + format_size(size), decoder=response_data)

	def write_memory(self, address, data):
		data = bytes(bytearray(data))
		return self.send_service(WRITE_MEMORY, format_address(address) + format_size(len(data)) + data)

	def start_logging(self, pids):
		payload = b"".join([struct.pack(">H", pid) for pid in pids])
		return self.send_service(READ_DATA_BY_IDENTIFIER, payload, decoder=response_data)
