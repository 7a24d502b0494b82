class KWPError(Exception):
	pass

class TransportNotOpen(KWPError):
	pass

class TransportIoFailure(KWPError):
	pass

class InvalidPayload(KWPError):
	pass

class FrameError(KWPError):
	pass

class FrameTooShort(FrameError):
	pass

class ChecksumMismatch(FrameError):
	pass

class LengthMismatch(FrameError):
	pass

class NegativeResponseError(KWPError):

	def __init__(self, service_id, error_code):
		from .kwp import NRC
		self.service_id = service_id
		self.error_code = error_code
		self.name = NRC.get(error_code, "unknown")
		super(NegativeResponseError, self).__init__(
			"negative response to service 0x%02x: 0x%02x (%s)" % (service_id, error_code, self.name))

class ResponseTimeout(KWPError):
	pass

class Busy(KWPError):
	pass

class LinkNotReady(KWPError):
	pass

class InitFailed(KWPError):

	def __init__(self, reason):
		self.reason = reason
		super(InitFailed, self).__init__(reason)

class Cancelled(KWPError):
	pass
