import time
import queue
import threading
from concurrent.futures import Future
from pydispatch import dispatcher
from .errors import FrameError, NegativeResponseError, ResponseTimeout, Busy, LinkNotReady, Cancelled, TransportIoFailure
from .kline import call, hold
from .kwp import (encode, decode, hexdump, frame_length, NegativeResponse, FORMAT, HEADER_SIZE,
	POSITIVE_RESPONSE_OFFSET, RESPONSE_PENDING, ECU_ADDRESS, TESTER_ADDRESS, P3_MIN, SERVICES)

FIFO = "fifo"
BUSY = "busy"

class Worker(object):
	"""Single thread executing init sequences and requests strictly one at a time."""

	def __init__(self, name="kwp-worker", idle=None, idle_callback=None, abort=None):
		self.jobs = queue.Queue()
		self.abort = abort if abort is not None else threading.Event()
		self.idle = idle
		self.idle_callback = idle_callback
		self._lock = threading.Lock()
		self._generation = 0
		self._thread = threading.Thread(target=self._run, name=name, daemon=True)
		self._thread.start()

	def submit(self, fn, *args):
		future = Future()
		with self._lock:
			self.jobs.put((self._generation, future, fn, args))
		return future

	def _start(self, generation):
		# jobs queued before the last cancel() never run
		with self._lock:
			if generation != self._generation:
				return False
			self.abort.clear()
			return True

	def _run(self):
		while True:
			try:
				item = self.jobs.get(timeout=self.idle)
			except queue.Empty:
				if self.idle_callback is not None and self._start(self._generation):
					self.idle_callback()
				continue
			if item is None:
				break
			generation, future, fn, args = item
			if not self._start(generation):
				future.cancel()
				continue
			if not future.set_running_or_notify_cancel():
				continue
			try:
				result = fn(*args)
			except Exception as e:
				future.set_exception(e)
			else:
				future.set_result(result)

	def cancel(self):
		with self._lock:
			self._generation += 1
			self.abort.set()
			while True:
				try:
					item = self.jobs.get_nowait()
				except queue.Empty:
					break
				if item is None:
					self.jobs.put(None)
					break
				item[1].cancel()

	def stop(self, timeout=2):
		self.abort.set()
		self.jobs.put(None)
		if self._thread is not threading.current_thread():
			self._thread.join(timeout)

class PendingRequest(object):

	def __init__(self, request):
		self.request = request
		self.expected = (request.service_id + POSITIVE_RESPONSE_OFFSET) & 0xff
		self.response = None
		self.error = None
		self.done = False
		self.rearmed = 0

class SessionDispatcher(object):

	def __init__(self, transport, link, worker, ecu_address=ECU_ADDRESS, tester_address=TESTER_ADDRESS,
			timeout=1.0, p3=P3_MIN, mode=FIFO, lost_after=3):
		if mode not in (FIFO, BUSY):
			raise ValueError("unknown dispatch mode %r" % mode)
		self.dev = transport
		self.link = link
		self.worker = worker
		self.ecu_address = ecu_address
		self.tester_address = tester_address
		self.timeout = timeout
		self.p3 = p3
		self.mode = mode
		self.lost_after = lost_after
		self._cond = threading.Condition()
		self._pending = None
		self._buffer = bytearray()
		self._outstanding = 0
		self._timeouts = 0
		self._last = 0

	def debug(self, msg):
		dispatcher.send(signal="ecu.debug", sender=self, msg=msg)

	def touch(self):
		self._last = time.monotonic()

	@property
	def outstanding(self):
		with self._cond:
			return self._outstanding

	def send(self, request, decoder=None):
		# oversized requests fail here, the frame itself is built when dispatched
		encode(self.ecu_address, self.tester_address, request.service_id, request.payload)
		with self._cond:
			if self.mode == BUSY and self._outstanding > 0:
				raise Busy("request 0x%02x refused, %d outstanding" % (request.service_id, self._outstanding))
			self._outstanding += 1
		future = self.worker.submit(self.execute, request, None, decoder)
		future.add_done_callback(self._done)
		return future

	def _done(self, future):
		with self._cond:
			self._outstanding -= 1

	def execute(self, request, frame=None, decoder=None):
		if frame is None:
			frame = encode(self.ecu_address, self.tester_address, request.service_id, request.payload)
		try:
			response = self._transact(request, frame)
		except Exception as e:
			dispatcher.send(signal="ecu.response", sender=self, request=request, result=None, error=e)
			raise
		result = decoder(response) if decoder is not None and response is not None else response
		dispatcher.send(signal="ecu.response", sender=self, request=request, result=result, error=None)
		return result

	def _transact(self, request, frame):
		if not self.link.ready:
			raise LinkNotReady("link is %s" % self.link.state.name.lower())
		pending = PendingRequest(request)
		try:
			guard = self._last + self.p3 - time.monotonic()
			if guard > 0:
				hold(self.worker.abort, guard)
			with self._cond:
				del self._buffer[:]
				self._pending = pending if request.expects_response else None
			self.debug("> %s %s" % (hexdump(frame), SERVICES.get(request.service_id, "")))
			call("write", self.dev.write, frame)
			if not request.expects_response:
				return None
			response = self._wait(pending)
			self._timeouts = 0
			return response
		except ResponseTimeout:
			self._timeouts += 1
			if self.lost_after and self._timeouts >= self.lost_after:
				self._timeouts = 0
				self.link.mark_lost("no response from ECU to %d requests" % self.lost_after)
			raise
		except Cancelled:
			self.link.release()
			raise
		finally:
			with self._cond:
				if self._pending is pending:
					self._pending = None
			self.touch()

	def _wait(self, pending):
		deadline = time.monotonic() + self.timeout
		rearmed = 0
		with self._cond:
			while not pending.done:
				if self.worker.abort.is_set():
					raise Cancelled("request 0x%02x cancelled" % pending.request.service_id)
				if pending.rearmed != rearmed:
					rearmed = pending.rearmed
					deadline = time.monotonic() + self.timeout
				remaining = deadline - time.monotonic()
				if remaining <= 0:
					raise ResponseTimeout("no response to 0x%02x within %d ms" % (pending.request.service_id, self.timeout * 1000))
				self._cond.wait(remaining)
		if pending.error is not None:
			raise pending.error
		return pending.response

	def interrupt(self):
		with self._cond:
			self._cond.notify_all()

	def feed(self, data):
		msgs = []
		unrelated = []
		with self._cond:
			self._buffer.extend(data)
			frames, noise = self._extract()
			if noise:
				msgs.append("discarding noise %s" % hexdump(noise))
			for raw, response in frames:
				msgs.append("< %s" % hexdump(raw))
				if not self._match(response):
					unrelated.append(response)
		for msg in msgs:
			self.debug(msg)
		for response in unrelated:
			self.debug("unrelated frame %r" % (response,))
			dispatcher.send(signal="ecu.frame", sender=self, response=response)

	def _extract(self):
		buf = self._buffer
		frames = []
		noise = bytearray()
		while buf:
			i = buf.find(FORMAT)
			if i < 0:
				noise.extend(buf)
				del buf[:]
				break
			if i > 0:
				noise.extend(buf[:i])
				del buf[:i]
				continue
			if len(buf) < HEADER_SIZE:
				break
			n = frame_length(buf)
			if len(buf) < n:
				j = self._later_frame(buf)
				if j is None:
					break
				noise.extend(buf[:j])
				del buf[:j]
				continue
			try:
				response = decode(buf[:n])
			except FrameError:
				noise.append(buf[0])
				del buf[:1]
				continue
			frames.append((bytes(buf[:n]), response))
			del buf[:n]
		return frames, noise

	def _later_frame(self, buf):
		k = buf.find(FORMAT, 1)
		while k > 0:
			if len(buf) - k >= HEADER_SIZE:
				n = frame_length(buf[k:])
				if len(buf) - k >= n:
					try:
						decode(buf[k:k + n])
						return k
					except FrameError:
						pass
			k = buf.find(FORMAT, k + 1)
		return None

	def _addressed(self, response):
		return response.target == self.tester_address and response.source == self.ecu_address

	def _match(self, response):
		pending = self._pending
		if pending is None or not self._addressed(response):
			return False
		if isinstance(response, NegativeResponse):
			if response.requested_service_id != pending.request.service_id:
				return False
			if response.error_code == RESPONSE_PENDING:
				pending.rearmed += 1
			else:
				pending.error = NegativeResponseError(response.requested_service_id, response.error_code)
				pending.done = True
				self._pending = None
		elif response.service_id == pending.expected:
			pending.response = response
			pending.done = True
			self._pending = None
		else:
			return False
		self._cond.notify_all()
		return True
