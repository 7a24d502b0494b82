from collections import namedtuple
from .errors import InvalidPayload, FrameTooShort, ChecksumMismatch, LengthMismatch

# physical addressing, target/source present, separate length byte
FORMAT = 0x80
HEADER_SIZE = 4
MAX_PAYLOAD = 0xff - 1
POSITIVE_RESPONSE_OFFSET = 0x40
NEGATIVE_RESPONSE = 0x7f

ECU_ADDRESS = 0x12
TESTER_ADDRESS = 0xf1

KLINE_BAUDRATE = 10400

# ISO 14230-2 timing (seconds)
P3_MIN = .055
W4 = .025

START_COMMUNICATION = 0x81
STOP_COMMUNICATION = 0x82
READ_DTCS = 0x18
CLEAR_DTCS = 0x14
READ_DATA_BY_IDENTIFIER = 0x22
READ_MEMORY = 0x23
WRITE_MEMORY = 0x34
TESTER_PRESENT = 0x3e

SERVICES = {
	START_COMMUNICATION: "startCommunication",
	STOP_COMMUNICATION: "stopCommunication",
	READ_DTCS: "readDiagnosticTroubleCodesByStatus",
	CLEAR_DTCS: "clearDiagnosticInformation",
	READ_DATA_BY_IDENTIFIER: "readDataByCommonIdentifier",
	READ_MEMORY: "readMemoryByAddress",
	WRITE_MEMORY: "requestDownload",
	TESTER_PRESENT: "testerPresent",
}

RESPONSE_PENDING = 0x78

NRC = {
	0x10: "generalReject",
	0x11: "serviceNotSupported",
	0x12: "subFunctionNotSupported-invalidFormat",
	0x21: "busy-repeatRequest",
	0x22: "conditionsNotCorrect-requestSequenceError",
	0x23: "routineNotComplete",
	0x31: "requestOutOfRange",
	0x33: "securityAccessDenied",
	0x35: "invalidKey",
	0x36: "exceedNumberOfAttempts",
	0x37: "requiredTimeDelayNotExpired",
	0x40: "downloadNotAccepted",
	0x50: "uploadNotAccepted",
	0x71: "transferSuspended",
	0x78: "requestCorrectlyReceived-responsePending",
	0x80: "serviceNotSupportedInActiveDiagnosticSession",
}

DTC_CATEGORIES = "PCBU"

DTC_DESCRIPTIONS = {
	"P0100": "Mass or volume air flow circuit malfunction",
	"P0101": "Mass or volume air flow circuit range/performance problem",
	"P0102": "Mass or volume air flow circuit low input",
	"P0103": "Mass or volume air flow circuit high input",
	"P0105": "Manifold absolute pressure/barometric pressure circuit malfunction",
	"P0110": "Intake air temperature circuit malfunction",
	"P0115": "Engine coolant temperature circuit malfunction",
	"P0120": "Throttle position sensor A circuit malfunction",
	"P0130": "O2 sensor circuit malfunction (bank 1 sensor 1)",
	"P0171": "System too lean (bank 1)",
	"P0172": "System too rich (bank 1)",
	"P0300": "Random/multiple cylinder misfire detected",
	"P0301": "Cylinder 1 misfire detected",
	"P0302": "Cylinder 2 misfire detected",
	"P0303": "Cylinder 3 misfire detected",
	"P0304": "Cylinder 4 misfire detected",
	"P0305": "Cylinder 5 misfire detected",
	"P0306": "Cylinder 6 misfire detected",
	"P0325": "Knock sensor 1 circuit malfunction",
	"P0335": "Crankshaft position sensor A circuit malfunction",
	"P0340": "Camshaft position sensor circuit malfunction",
	"P0420": "Catalyst system efficiency below threshold (bank 1)",
	"P0500": "Vehicle speed sensor malfunction",
	"P0505": "Idle control system malfunction",
	"P0560": "System voltage malfunction",
	"P0600": "Serial communication link malfunction",
	"P0605": "Internal control module ROM error",
	"U0100": "Lost communication with ECM/PCM",
}

ServiceRequest = namedtuple("ServiceRequest", ["service_id", "payload", "expects_response"])
ServiceResponse = namedtuple("ServiceResponse", ["service_id", "payload", "target", "source"], defaults=[None, None])
NegativeResponse = namedtuple("NegativeResponse", ["requested_service_id", "error_code", "target", "source"], defaults=[None, None])

class DTC(namedtuple("DTC", ["code", "status"])):
	__slots__ = ()

	@property
	def description(self):
		return describe_dtc(self.code)

def hexdump(data):
	return "[%s]" % ", ".join(["%02x" % b for b in bytearray(data)])

def checksum8bit(data):
	return sum(bytearray(data)) & 0xff

def request(service_id, payload=b"", expects_response=None):
	if expects_response is None:
		expects_response = (service_id != TESTER_PRESENT)
	return ServiceRequest(service_id, bytes(bytearray(payload)), expects_response)

def frame_length(header):
	return HEADER_SIZE + header[3] + 1

def encode(target, source, service_id, payload=b""):
	for name, value in (("target", target), ("source", source), ("service id", service_id)):
		if not 0 <= value <= 0xff:
			raise InvalidPayload("%s 0x%x is not a byte" % (name, value))
	payload = bytearray(payload)
	if len(payload) > MAX_PAYLOAD:
		raise InvalidPayload("payload of %d bytes exceeds %d" % (len(payload), MAX_PAYLOAD))
	msg = bytearray([FORMAT, target, source, 1 + len(payload), service_id]) + payload
	msg.append(checksum8bit(msg))
	return bytes(msg)

def decode(frame):
	frame = bytearray(frame)
	if len(frame) < 5:
		raise FrameTooShort("%d bytes" % len(frame))
	if checksum8bit(frame[:-1]) != frame[-1]:
		raise ChecksumMismatch("expected 0x%02x, got 0x%02x" % (checksum8bit(frame[:-1]), frame[-1]))
	if frame[3] != len(frame) - HEADER_SIZE - 1:
		raise LengthMismatch("declared %d, frame carries %d" % (frame[3], len(frame) - HEADER_SIZE - 1))
	if frame[3] == 0:
		raise LengthMismatch("frame carries no service id")
	target, source, service_id = frame[1], frame[2], frame[4]
	payload = bytes(frame[5:-1])
	if service_id == NEGATIVE_RESPONSE:
		if len(payload) < 2:
			raise LengthMismatch("negative response needs 2 bytes, got %d" % len(payload))
		return NegativeResponse(payload[0], payload[1], target, source)
	return ServiceResponse(service_id, payload, target, source)

def format_dtc(high, low):
	return "%s%04X" % (DTC_CATEGORIES[high >> 6], ((high & 0x3f) << 8) | low)

def describe_dtc(code):
	return DTC_DESCRIPTIONS.get(code, "Unknown")

def decode_dtcs(response):
	payload = bytearray(response.payload)
	if len(payload) < 1:
		return []
	count = payload[0]
	if len(payload) < 1 + 3 * count:
		return []
	dtcs = []
	for i in range(count):
		high, low, status = payload[1 + 3 * i:4 + 3 * i]
		dtcs.append(DTC(format_dtc(high, low), status))
	return dtcs
