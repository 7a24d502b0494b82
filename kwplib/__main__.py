import sys
import binascii
import argparse
from pydispatch import dispatcher
from pylibftdi import Driver, FtdiError
from kwplib import KlineAdapter, SerialAdapter, KWP2000ECU, InitMode, KWPError
from kwplib.kwp import hexdump, ECU_ADDRESS, TESTER_ADDRESS

def GetFtdiDevices():
	dev_list = {}
	try:
		devices = Driver().list_devices()
	except FtdiError:
		return dev_list
	for device in devices:
		dev_info = map(lambda x: x.decode('latin1') if isinstance(x, bytes) else x, device)
		vendor, product, serial = dev_info
		dev_list[serial] = (vendor, product)
	return dev_list

def auto_int(x):
	return int(x, 0)

def PrintMessage(sender, msg):
	sys.stdout.write("%s\n" % msg)
	sys.stdout.flush()

def Main():

	devices = GetFtdiDevices()
	default_device = None
	if len(devices) > 0:
		default_device = list(devices.keys())[0]

	parser = argparse.ArgumentParser(formatter_class=argparse.ArgumentDefaultsHelpFormatter)
	parser.add_argument('-d','--device', help="ftdi device serial number", default=default_device)
	parser.add_argument('-p','--port', help="serial port or pyserial url, used instead of an ftdi device")
	parser.add_argument('--ecu', type=auto_int, default=ECU_ADDRESS, help="ecu address")
	parser.add_argument('--tester', type=auto_int, default=TESTER_ADDRESS, help="tester address")
	parser.add_argument('--fast', action='store_true', help="use fast init instead of 5-baud init")
	parser.add_argument('--timeout', type=float, default=1.0, help="response timeout in seconds")
	subparsers = parser.add_subparsers(metavar='mode',dest='mode')

	parser_kline = subparsers.add_parser('kline', help='test kline')
	parser_init = subparsers.add_parser('init', help='wake up the ecu')
	parser_dtc = subparsers.add_parser('dtc', help='read diagnostic trouble codes')
	parser_clear = subparsers.add_parser('clear', help='clear diagnostic trouble codes')
	parser_tp = subparsers.add_parser('tester-present', help='send tester present')
	parser_read = subparsers.add_parser('read', help='read ecu memory')
	parser_read.add_argument('address', type=auto_int, help="start address")
	parser_read.add_argument('size', type=auto_int, help="number of bytes")
	parser_write = subparsers.add_parser('write', help='write ecu memory')
	parser_write.add_argument('address', type=auto_int, help="start address")
	parser_write.add_argument('data', help="hex encoded bytes")

	db_grp = parser.add_argument_group('debugging options')
	db_grp.add_argument('--list-devices', action='store_true', help="list ftdi devices")
	db_grp.add_argument('--debug', action='store_true', help="print frames and protocol details")
	args = parser.parse_args()

	if args.list_devices:
		print("FTDI Devices:")
		for k,v in devices.items():
			print(" * %s: %s %s" % (k, v[0], v[1]))
		return
	elif args.device is None and args.port is None:
		print("No FTDI device connected")
		return

	if args.mode is None:
		parser.print_help()
		return

	if args.port is not None:
		dev = SerialAdapter(args.port)
	else:
		dev = KlineAdapter(args.device)

	if args.mode == "kline":
		if not isinstance(dev, KlineAdapter):
			print("K-line probing needs an ftdi device")
			dev.close()
			return 1
		try:
			oldstate = None
			while True:
				newstate = dev.kline()
				if oldstate != newstate:
					sys.stdout.write("\rK-line state: %d" % newstate)
					sys.stdout.flush()
					oldstate = newstate
		except KeyboardInterrupt:
			sys.stdout.write("\n")
			sys.stdout.flush()
		finally:
			dev.close()
		return

	dispatcher.connect(PrintMessage, signal="ecu.status", weak=False)
	if args.debug:
		dispatcher.connect(PrintMessage, signal="ecu.debug", weak=False)

	ecu = KWP2000ECU(dev, ecu_address=args.ecu, tester_address=args.tester, timeout=args.timeout)
	try:
		ecu.start_init(InitMode.FAST if args.fast else InitMode.FIVE_BAUD).result()
		if args.mode == "dtc":
			dtcs = ecu.read_dtcs().result()
			print("Trouble codes: %d" % len(dtcs))
			for dtc in dtcs:
				print(" * %s (status 0x%02x): %s" % (dtc.code, dtc.status, dtc.description))
		elif args.mode == "clear":
			ecu.clear_dtcs().result()
			print("Trouble codes cleared")
		elif args.mode == "tester-present":
			ecu.tester_present().result()
		elif args.mode == "read":
			data = ecu.read_memory(args.address, args.size).result()
			print("0x%06x: %s" % (args.address, hexdump(data)))
		elif args.mode == "write":
			ecu.write_memory(args.address, binascii.unhexlify(args.data)).result()
			print("Wrote %d bytes at 0x%06x" % (len(args.data) // 2, args.address))
	except KWPError as e:
		print("Error: %s" % e)
		return 1
	except (binascii.Error, ValueError) as e:
		print("Invalid data: %s" % e)
		return 1
	finally:
		ecu.close()

if __name__ == '__main__':
	sys.exit(Main())
