import platform
import threading
import time
import serial
from pydispatch import dispatcher
from pylibftdi import Device, FtdiError
from .errors import TransportIoFailure
from .kwp import KLINE_BAUDRATE

class Transport(object):
	"""
	Half-duplex K-line byte channel.

	Concrete adapters provide baud rate and line level control, raw writes and
	a non-blocking _poll() that the reader thread uses to deliver inbound chunks
	to every subscribed callback. Control calls return True on success; a False
	return or a TransportIoFailure both count as failure.
	"""

	def __init__(self):
		self._callbacks = []
		self._reader = None
		self._stop = threading.Event()

	def is_open(self):
		raise NotImplementedError

	def set_baudrate(self, bps):
		raise NotImplementedError

	def set_line_state(self, low):
		raise NotImplementedError

	def write(self, data):
		raise NotImplementedError

	def _poll(self):
		raise NotImplementedError

	def subscribe_read(self, callback):
		self._callbacks.append(callback)
		if self._reader is None:
			self._stop.clear()
			self._reader = threading.Thread(target=self._read_loop, name="kline-reader", daemon=True)
			self._reader.start()

	def _read_loop(self):
		while not self._stop.is_set():
			try:
				data = self._poll()
			except TransportIoFailure as e:
				dispatcher.send(signal="ecu.debug", sender=self, msg="reader stopped: %s" % e)
				break
			if data:
				for callback in list(self._callbacks):
					callback(bytes(data))
			else:
				time.sleep(.001)

	def close(self):
		self._stop.set()
		if self._reader is not None and self._reader is not threading.current_thread():
			self._reader.join(1)
		self._reader = None
		self._callbacks = []

class KlineAdapter(Transport, Device):

	def __init__(self, device_id, baudrate=KLINE_BAUDRATE):
		Transport.__init__(self)
		self._bitbang = False
		self._lock = threading.Lock()
		Device.__init__(self, device_id, auto_detach=(platform.system()!="Windows"))
		self.baudrate = baudrate
		self.ftdi_fn.ftdi_usb_reset()
		self.ftdi_fn.ftdi_set_line_property(8, 1, 0)
		self.ftdi_fn.ftdi_usb_purge_buffers()

	def kline(self):
		with self._lock:
			self.ftdi_fn.ftdi_set_bitmode(1, 0x00)
			self._write(b'\x00')
			time.sleep(.002)
			ret = (self._read(1) == b'\x00')
			self.ftdi_fn.ftdi_set_bitmode(1, 0x00)
			self.ftdi_fn.ftdi_set_bitmode(0, 0x00)
		return ret

	def is_open(self):
		return bool(self._opened)

	def set_baudrate(self, bps):
		try:
			with self._lock:
				self.baudrate = bps
		except FtdiError as e:
			raise TransportIoFailure("set baudrate %d: %s" % (bps, e))
		return True

	def set_line_state(self, low):
		# TX pin driven directly in bitbang mode, released back to the UART when high
		try:
			with self._lock:
				if low:
					if not self._bitbang:
						self.ftdi_fn.ftdi_set_bitmode(1, 0x01)
						self._bitbang = True
					self._write(b'\x00')
				else:
					if self._bitbang:
						self._write(b'\x01')
						self.ftdi_fn.ftdi_set_bitmode(0, 0x00)
						self._bitbang = False
						self.flush()
		except FtdiError as e:
			raise TransportIoFailure("set line %s: %s" % ("low" if low else "high", e))
		return True

	def write(self, data):
		try:
			with self._lock:
				n = self._write(bytes(data))
		except FtdiError as e:
			raise TransportIoFailure("write: %s" % e)
		return n == len(data)

	def _poll(self):
		try:
			with self._lock:
				if self._bitbang:
					return b""
				return self._read(64)
		except FtdiError as e:
			raise TransportIoFailure("read: %s" % e)

	def close(self):
		Transport.close(self)
		Device.close(self)

class SerialAdapter(Transport):

	def __init__(self, url, baudrate=KLINE_BAUDRATE):
		super(SerialAdapter, self).__init__()
		self.ser = serial.serial_for_url(url, baudrate=baudrate, timeout=.01)
		self.ser.reset_input_buffer()

	def is_open(self):
		return self.ser.is_open

	def set_baudrate(self, bps):
		try:
			self.ser.baudrate = bps
		except (serial.SerialException, ValueError) as e:
			raise TransportIoFailure("set baudrate %d: %s" % (bps, e))
		return True

	def set_line_state(self, low):
		# a break condition holds TX low for as long as it is set
		try:
			self.ser.break_condition = low
		except serial.SerialException as e:
			raise TransportIoFailure("set line %s: %s" % ("low" if low else "high", e))
		return True

	def write(self, data):
		try:
			n = self.ser.write(bytes(data))
			self.ser.flush()
		except serial.SerialException as e:
			raise TransportIoFailure("write: %s" % e)
		return n == len(data)

	def _poll(self):
		try:
			return self.ser.read(64)
		except serial.SerialException as e:
			raise TransportIoFailure("read: %s" % e)

	def close(self):
		super(SerialAdapter, self).close()
		self.ser.close()

class ECU(object):

	def __init__(self, klineadapter):
		self.dev = klineadapter
