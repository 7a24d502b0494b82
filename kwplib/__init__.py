from .base import Transport, KlineAdapter, SerialAdapter, ECU
from .errors import *
from .kwp import encode, decode, decode_dtcs, format_dtc, describe_dtc, ServiceRequest, ServiceResponse, NegativeResponse, DTC
from .kline import KLineInit, LinkState, InitMode
from .session import SessionDispatcher, Worker
from .kwp2000 import KWP2000ECU
