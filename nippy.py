#!/usr/bin/env python3


#   Copyright 2024 Jarek Siembida
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.


#
# Pure Python, single shot NTP4 client: packet codec and time conversions.
#
# https://datatracker.ietf.org/doc/html/rfc5905
#


import logging
import sys
from collections import namedtuple
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from hashlib import md5
from ipaddress import IPv4Address, IPv6Address, ip_address
from socket import AF_INET, AF_INET6, SOCK_DGRAM
from socket import socket, getaddrinfo, timeout as socket_timeout
from struct import error as struct_error, pack, unpack
from time import monotonic, time_ns


VERSION = 4
PORT = 123
PACKET_SIZE = 48
TIMEOUT = 5.0  # seconds
POOL_ADDRESS = "pool.ntp.org"
EPOCH_DELTA = 2208988800  # 1900/01/01 to 1970/01/01
NANOS = 1000000000
STRATUM_UNSPECIFIED = 0
STRATUM_PRIMARY = 1
MAXSTRAT = 16

# Page 18, header without extension fields and MAC.
PACKET_FORMAT = "!BBbbHHHH4sLLLLLLLL"

UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Page 22, Figure 12.
REFERENCE_CLOCKS = {
    "GOES": "Geosynchronous Orbit Environment Satellite",
    "GPS": "Global Position System",
    "GAL": "Galileo Positioning System",
    "PPS": "Generic pulse-per-second",
    "IRIG": "Inter-Range Instrumentation Group",
    "WWVB": "LF Radio WWVB Ft. Collins, CO 60 kHz",
    "DCF": "LF Radio DCF77 Mainflingen, DE 77.5 kHz",
    "HBG": "LF Radio HBG Prangins, HB 75 kHz",
    "MSF": "LF Radio MSF Anthorn, UK 60 kHz",
    "JJY": "LF Radio JJY Fukushima, JP 40 kHz, Saga, JP 60 kHz",
    "LORC": "MF Radio LORAN C station, 100 kHz",
    "TDF": "MF Radio Allouis, FR 162 kHz",
    "CHU": "HF Radio CHU Ottawa, Ontario",
    "WWV": "HF Radio WWV Ft. Collins, CO",
    "WWVH": "HF Radio WWVH Kauai, HI",
    "NIST": "NIST telephone modem",
    "ACTS": "NIST telephone modem",
    "USNO": "USNO telephone modem",
    "PTB": "European telephone modem",
    "LOCL": "Uncalibrated local clock",
}

# Page 24, Figure 13. Only meaningful with stratum 0.
KISS_CODES = {
    "ACST": "The association belongs to a unicast server",
    "AUTH": "Server authentication failed",
    "AUTO": "Autokey sequence failed",
    "BCST": "The association belongs to a broadcast server",
    "CRYP": "Cryptographic authentication or identification failed",
    "DENY": "Access denied by remote server",
    "DROP": "Lost peer in symmetric mode",
    "RSTR": "Access denied due to local policy",
    "INIT": "The association has not yet synchronized for the first time",
    "MCST": "The association belongs to a dynamically discovered server",
    "NKEY": "No key found",
    "RATE": "Rate exceeded",
    "RMOT": "Alteration of association from a remote host running ntpdc",
    "STEP": "A step change in system time has occurred",
}


log = logging.getLogger("nippy")


class NtpError(Exception):
    pass


class NtpFormatError(NtpError):
    pass


class NtpPacketError(NtpError):
    pass


class NtpUnsynchronizedError(NtpError):
    pass


class NtpDeniedError(NtpError):
    pass


class NtpThrottledError(NtpError):
    pass


class InstantError(ValueError):
    """Raised when an Instant would mix signs between its components."""


class LeapIndicator(IntEnum):
    NO_WARNING = 0
    LAST_MINUTE_61 = 1
    LAST_MINUTE_59 = 2
    ALARM = 3  # Clock unsynchronized


class Version(IntEnum):
    V3 = 3
    V4 = 4


class Mode(IntEnum):
    RESERVED = 0
    SYMMETRIC_ACTIVE = 1
    SYMMETRIC_PASSIVE = 2
    CLIENT = 3
    SERVER = 4
    BROADCAST = 5
    CONTROL = 6
    PRIVATE = 7


class Instant:
    """
    A point in time relative to the Unix epoch, in whole seconds plus
    nanoseconds. Before the epoch both components are negative (or zero),
    so Instant(-1, -500000000) is half a second before 1970/01/01.
    """

    __slots__ = ("_secs", "_subsec_nanos")

    def __init__(self, secs, subsec_nanos=0):
        if secs > 0 and subsec_nanos < 0:
            raise InstantError(
                "invalid instant: secs was positive"
                " but subsec_nanos was negative"
            )
        if secs < 0 and subsec_nanos > 0:
            raise InstantError(
                "invalid instant: secs was negative"
                " but subsec_nanos was positive"
            )
        if not -NANOS < subsec_nanos < NANOS:
            raise InstantError(
                "invalid instant: subsec_nanos %d out of range" % subsec_nanos
            )
        self._secs = secs
        self._subsec_nanos = subsec_nanos

    @classmethod
    def now(cls):
        return cls.from_nanos(time_ns())

    @classmethod
    def from_nanos(cls, nanos):
        # Split the magnitude, so that both parts carry the same sign.
        secs, subsec_nanos = divmod(abs(nanos), NANOS)
        if nanos < 0:
            return cls(-secs, -subsec_nanos)
        return cls(secs, subsec_nanos)

    @property
    def secs(self):
        return self._secs

    @property
    def subsec_nanos(self):
        return self._subsec_nanos

    def to_nanos(self):
        return self._secs * NANOS + self._subsec_nanos

    def timestamp(self):
        return self._secs + self._subsec_nanos / NANOS

    def to_datetime(self):
        return UNIX_EPOCH + timedelta(
            seconds=self._secs,
            microseconds=self._subsec_nanos / 1000,
        )

    def __eq__(self, other):
        if isinstance(other, Instant):
            return self.to_nanos() == other.to_nanos()
        return NotImplemented

    def __lt__(self, other):
        if isinstance(other, Instant):
            return self.to_nanos() < other.to_nanos()
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, Instant):
            return self.to_nanos() <= other.to_nanos()
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, Instant):
            return self.to_nanos() > other.to_nanos()
        return NotImplemented

    def __ge__(self, other):
        if isinstance(other, Instant):
            return self.to_nanos() >= other.to_nanos()
        return NotImplemented

    def __hash__(self):
        return hash((self._secs, self._subsec_nanos))

    def __repr__(self):
        return "Instant(secs=%d, subsec_nanos=%d)" % (
            self._secs,
            self._subsec_nanos,
        )


def _fraction_to_nanos(fraction, bits):
    # Rounds half up, exactly, in integer arithmetics.
    return (fraction * NANOS + (1 << (bits - 1))) >> bits


def _to_instant(seconds, fraction, bits):
    nanos = (seconds - EPOCH_DELTA) * NANOS
    nanos += _fraction_to_nanos(fraction, bits)
    return Instant.from_nanos(nanos)


def _from_instant(instant, bits):
    # Floor division keeps the remainder non-negative even before 1970,
    # which is what the unsigned fraction field needs.
    seconds, nanos = divmod(instant.to_nanos() + EPOCH_DELTA * NANOS, NANOS)
    fraction = (nanos << bits) // NANOS
    mask = (1 << bits) - 1
    # Seconds wrap around at the end of each era.
    return seconds & mask, fraction & mask


class ShortFormat(namedtuple("ShortFormat", "seconds fraction")):
    # Page 13, short format is 32bit, unsigned, 16.16 fixed point.
    __slots__ = ()
    BITS = 16

    def __new__(cls, seconds=0, fraction=0):
        return super().__new__(cls, seconds, fraction)

    @classmethod
    def from_instant(cls, instant):
        return cls(*_from_instant(instant, cls.BITS))

    @classmethod
    def from_seconds(cls, x):
        if not 0 <= x < 65536:
            raise NtpFormatError("Invalid NTP short format value %r" % (x,))
        secs = int(x)
        frac = int(65536 * (x - secs))
        return cls(secs, frac)

    def to_instant(self):
        return _to_instant(self.seconds, self.fraction, self.BITS)

    def to_seconds(self):
        return self.seconds + self.fraction / 65536


class TimestampFormat(namedtuple("TimestampFormat", "seconds fraction")):
    # Page 13, timestamp is 64bit, unsigned, 32.32 fixed point.
    __slots__ = ()
    BITS = 32

    def __new__(cls, seconds=0, fraction=0):
        return super().__new__(cls, seconds, fraction)

    @classmethod
    def from_instant(cls, instant):
        return cls(*_from_instant(instant, cls.BITS))

    def to_instant(self):
        return _to_instant(self.seconds, self.fraction, self.BITS)

    def to_seconds(self):
        return self.seconds + self.fraction / 4294967296

    def is_zero(self):
        return self.seconds == 0 and self.fraction == 0


class PrimarySource:
    """
    Reference identifier of stratum 0 and 1 packets: an ASCII code of up
    to four characters, either a reference clock (stratum 1) or a kiss
    code (stratum 0).
    """

    __slots__ = ("code",)

    def __init__(self, code=b""):
        if isinstance(code, str):
            code = code.encode("ascii")
        object.__setattr__(self, "code", bytes(code).rstrip(b"\0"))

    def __setattr__(self, name, value):
        raise AttributeError("PrimarySource is immutable")

    def __delattr__(self, name):
        raise AttributeError("PrimarySource is immutable")

    @property
    def name(self):
        return self.code.decode("ascii", "replace")

    @property
    def is_kiss_code(self):
        return self.name in KISS_CODES

    @property
    def description(self):
        name = self.name
        return KISS_CODES.get(name) or REFERENCE_CLOCKS.get(name)

    def to_bytes(self):
        return self.code.ljust(4, b"\0")

    def __eq__(self, other):
        if isinstance(other, PrimarySource):
            return self.code == other.code
        return NotImplemented

    def __hash__(self):
        return hash((PrimarySource, self.code))

    def __repr__(self):
        return "PrimarySource(%r)" % self.code

    def __str__(self):
        return self.name


PrimarySource.NULL = PrimarySource(b"")


class ReferenceIdentifier:
    """
    Reference identifier of stratum 2+ packets: four opaque bytes, usually
    the IPv4 address of the upstream server.
    """

    __slots__ = ("data",)

    def __init__(self, data):
        object.__setattr__(self, "data", bytes(data))

    def __setattr__(self, name, value):
        raise AttributeError("ReferenceIdentifier is immutable")

    def __delattr__(self, name):
        raise AttributeError("ReferenceIdentifier is immutable")

    @classmethod
    def from_address(cls, address):
        ip = ip_address(address)
        if isinstance(ip, IPv6Address):
            # Page 22, first four octets of the MD5 hash of the address.
            return cls(md5(ip.packed).digest()[:4])
        return cls(ip.packed)

    @property
    def address(self):
        return IPv4Address(self.data)

    def to_bytes(self):
        return self.data

    def __eq__(self, other):
        if isinstance(other, ReferenceIdentifier):
            return self.data == other.data
        return NotImplemented

    def __hash__(self):
        return hash((ReferenceIdentifier, self.data))

    def __repr__(self):
        return "ReferenceIdentifier(%r)" % self.data

    def __str__(self):
        if len(self.data) == 4:
            return str(self.address)
        return self.data.hex()


def is_primary_stratum(stratum):
    return stratum == STRATUM_UNSPECIFIED or stratum == STRATUM_PRIMARY


class Packet:
    FIELDS = (
        "leap_indicator",
        "version",
        "mode",
        "stratum",
        "poll",
        "precision",
        "root_delay",
        "root_dispersion",
        "reference_id",
        "reference_timestamp",
        "origin_timestamp",
        "receive_timestamp",
        "transmit_timestamp",
    )

    def __init__(
        self,
        *,
        leap_indicator=LeapIndicator.NO_WARNING,
        version=Version.V4,
        mode=Mode.CLIENT,
        stratum=STRATUM_UNSPECIFIED,
        poll=0,
        precision=0,
        root_delay=ShortFormat(),
        root_dispersion=ShortFormat(),
        reference_id=PrimarySource.NULL,
        reference_timestamp=TimestampFormat(),
        origin_timestamp=TimestampFormat(),
        receive_timestamp=TimestampFormat(),
        transmit_timestamp=TimestampFormat()
    ):
        self.leap_indicator = leap_indicator
        self.version = version
        self.mode = mode
        self.stratum = stratum
        self.poll = poll
        self.precision = precision
        self.root_delay = root_delay
        self.root_dispersion = root_dispersion
        self.reference_id = reference_id
        self.reference_timestamp = reference_timestamp
        self.origin_timestamp = origin_timestamp
        self.receive_timestamp = receive_timestamp
        self.transmit_timestamp = transmit_timestamp

    def _values(self):
        return tuple(getattr(self, f) for f in self.FIELDS)

    def __eq__(self, other):
        if isinstance(other, Packet):
            return self._values() == other._values()
        return NotImplemented

    __hash__ = None

    def __repr__(self):
        return "Packet(%s)" % ", ".join(
            "%s=%r" % (f, getattr(self, f)) for f in self.FIELDS
        )

    @property
    def kiss_code(self):
        ref = self.reference_id
        if (
            self.stratum == STRATUM_UNSPECIFIED
            and isinstance(ref, PrimarySource)
            and ref.is_kiss_code
        ):
            return ref.name
        return None

    def _reference_bytes(self):
        ref = self.reference_id
        if is_primary_stratum(self.stratum):
            if not isinstance(ref, PrimarySource):
                raise NtpFormatError(
                    "Stratum %r requires a primary source reference"
                    % self.stratum
                )
            if len(ref.code) > 4:
                raise NtpFormatError("Invalid primary source %r" % ref.code)
        else:
            if not isinstance(ref, ReferenceIdentifier):
                raise NtpFormatError(
                    "Stratum %r requires a reference identifier"
                    % self.stratum
                )
            if len(ref.data) != 4:
                raise NtpFormatError(
                    "Invalid reference identifier %r" % ref.data
                )
        return ref.to_bytes()

    def serialize(self):
        try:
            leap = LeapIndicator(self.leap_indicator)
            version = Version(self.version)
            mode = Mode(self.mode)
        except (TypeError, ValueError) as e:
            raise NtpFormatError("Invalid leap, version or mode") from e

        b1 = (leap << 6) | (version << 3) | mode
        reference_bytes = self._reference_bytes()

        # struct refuses out of range values instead of wrapping them.
        try:
            root_delay = ShortFormat(*self.root_delay)
            root_dispersion = ShortFormat(*self.root_dispersion)
            t_ref = TimestampFormat(*self.reference_timestamp)
            t_org = TimestampFormat(*self.origin_timestamp)
            t_rec = TimestampFormat(*self.receive_timestamp)
            t_xmt = TimestampFormat(*self.transmit_timestamp)
            return pack(
                PACKET_FORMAT,
                b1,
                self.stratum,
                self.poll,
                self.precision,
                root_delay.seconds,
                root_delay.fraction,
                root_dispersion.seconds,
                root_dispersion.fraction,
                reference_bytes,
                t_ref.seconds,
                t_ref.fraction,
                t_org.seconds,
                t_org.fraction,
                t_rec.seconds,
                t_rec.fraction,
                t_xmt.seconds,
                t_xmt.fraction,
            )
        except (TypeError, struct_error) as e:
            raise NtpFormatError("Invalid NTP packet fields: %s" % e) from e

    @staticmethod
    def deserialize(b):
        if len(b) != PACKET_SIZE:
            raise NtpFormatError("Invalid packet length %d" % len(b))

        (
            b1,
            stratum,
            poll,
            precision,
            delay_secs,
            delay_frac,
            dispersion_secs,
            dispersion_frac,
            reference_bytes,
            t_ref_secs,
            t_ref_frac,
            t_org_secs,
            t_org_frac,
            t_rec_secs,
            t_rec_frac,
            t_xmt_secs,
            t_xmt_frac,
        ) = unpack(PACKET_FORMAT, b)

        # All 2bit leap and 3bit mode patterns are defined, version is not.
        leap = LeapIndicator((b1 >> 6) & 3)
        mode = Mode((b1 >> 0) & 7)
        try:
            version = Version((b1 >> 3) & 7)
        except ValueError as e:
            raise NtpFormatError(
                "Invalid version %d" % ((b1 >> 3) & 7)
            ) from e

        if is_primary_stratum(stratum):
            reference_id = PrimarySource(reference_bytes)
        else:
            reference_id = ReferenceIdentifier(reference_bytes)

        return Packet(
            leap_indicator=leap,
            version=version,
            mode=mode,
            stratum=stratum,
            poll=poll,
            precision=precision,
            root_delay=ShortFormat(delay_secs, delay_frac),
            root_dispersion=ShortFormat(dispersion_secs, dispersion_frac),
            reference_id=reference_id,
            reference_timestamp=TimestampFormat(t_ref_secs, t_ref_frac),
            origin_timestamp=TimestampFormat(t_org_secs, t_org_frac),
            receive_timestamp=TimestampFormat(t_rec_secs, t_rec_frac),
            transmit_timestamp=TimestampFormat(t_xmt_secs, t_xmt_frac),
        )


def encode(packet):
    return packet.serialize()


def decode(b):
    return Packet.deserialize(b)


def client_packet(now=None):
    if now is None:
        now = Instant.now()

    return Packet(
        leap_indicator=LeapIndicator.NO_WARNING,
        version=Version.V4,
        mode=Mode.CLIENT,
        stratum=STRATUM_UNSPECIFIED,
        reference_id=PrimarySource.NULL,
        transmit_timestamp=TimestampFormat.from_instant(now),
    )


def check_response(packet):
    if packet.mode != Mode.SERVER:
        raise NtpPacketError("Invalid response mode %d" % packet.mode)

    if packet.stratum == STRATUM_UNSPECIFIED:
        kiss_code = packet.kiss_code
        if kiss_code == "DENY" or kiss_code == "RSTR":
            raise NtpDeniedError(kiss_code)
        if kiss_code == "RATE":
            raise NtpThrottledError(kiss_code)
        raise NtpUnsynchronizedError(
            "Unspecified stratum, reference %r" % packet.reference_id
        )

    if (
        packet.leap_indicator == LeapIndicator.ALARM
        or packet.stratum >= MAXSTRAT
    ):
        raise NtpUnsynchronizedError("Server is not synchronized")

    if TimestampFormat(*packet.transmit_timestamp).is_zero():
        raise NtpPacketError("Invalid transmit timestamp in response")

    return packet


def resolve(address, port=PORT):
    # Accepts a host name/address or a (host, port) pair.
    if isinstance(address, tuple):
        address, port = address[:2]
    for i in getaddrinfo(address, port, type=SOCK_DGRAM):
        if i[0] == AF_INET or i[0] == AF_INET6:
            return i[0], i[-1]
    raise OSError("Cannot resolve %s" % address)


def request(address, *, port=PORT, timeout=TIMEOUT):
    family, sockaddr = resolve(address, port)
    payload = client_packet().serialize()

    with socket(family, SOCK_DGRAM) as s:
        s.bind(("::", 0) if family == AF_INET6 else ("0.0.0.0", 0))
        log.debug("Bound %s", s.getsockname())
        sz = s.sendto(payload, sockaddr)
        log.debug("Sent %d bytes to %s", sz, sockaddr[0])

        deadline = monotonic() + timeout
        while True:
            remaining = deadline - monotonic()
            if remaining <= 0:
                raise socket_timeout("timed out")
            s.settimeout(remaining)
            data, peer = s.recvfrom(4096)
            if peer[:2] == sockaddr[:2]:
                break
            log.debug("Ignoring %d bytes from %s", len(data), peer[0])

    log.debug("Received %d bytes from %s", len(data), peer[0])
    # Extension fields and MAC, if any, are ignored.
    return Packet.deserialize(data[:PACKET_SIZE])


def get_unix_time(address=POOL_ADDRESS, *, port=PORT, timeout=TIMEOUT):
    packet = check_response(request(address, port=port, timeout=timeout))
    return packet.transmit_timestamp.to_instant().secs


def argv_parser(progname=None):
    import argparse

    if progname is None:
        progname = "nippy"

    parser = argparse.ArgumentParser(
        prog=progname,
        formatter_class=argparse.RawTextHelpFormatter,
        description="Single shot NTP client",
        epilog="Example: %s --output-format '{secs}' pool.ntp.org" % progname,
    )
    parser.add_argument(
        "server",
        nargs="?",
        default=POOL_ADDRESS,
        help="NTP server to query, defaults to %s." % POOL_ADDRESS,
    )
    parser.add_argument(
        "--port",
        type=int,
        default=PORT,
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["error", "warning", "info", "debug"],
        default="info",
    )
    parser.add_argument(
        "--output-format",
        type=str,
        default="{Y:04}-{M:02}-{D:02}T{h:02}:{m:02}:{s:02}.{u:06}Z",
        help=(
            "defaults to '{Y:04}-{M:02}-{D:02}T{h:02}:{m:02}:{s:02}.{u:06}Z'"
            " Other variables available: secs, nanos, stratum, leap,"
            " reference, delay and dispersion."
            " For example: 'secs={secs}'"
        )
    )
    parser.add_argument(
        "--socket-timeout",
        type=float,
        default=TIMEOUT,
        help="how long to wait for a reply from NTP server",
    )
    return parser


def main(argv=None):
    args = argv_parser().parse_args(argv)
    log_level = getattr(logging, args.log_level.upper())

    logging.basicConfig(format="%(asctime)s %(levelname)s %(message)s")
    logging.getLogger().setLevel(log_level)

    try:
        packet = check_response(
            request(
                args.server,
                port=args.port,
                timeout=args.socket_timeout,
            )
        )
    except (NtpError, OSError) as e:
        log.error("%s %s: %s", args.server, type(e).__name__, e)
        return 1

    log.debug("%r", packet)
    instant = packet.transmit_timestamp.to_instant()
    log.info(
        "%s stratum=%d reference=%s time=%s",
        args.server,
        packet.stratum,
        packet.reference_id,
        instant.timestamp(),
    )
    dt = instant.to_datetime()
    context = {
        "Y": dt.year,
        "M": dt.month,
        "D": dt.day,
        "h": dt.hour,
        "m": dt.minute,
        "s": dt.second,
        "u": dt.microsecond,
        "secs": instant.secs,
        "nanos": instant.subsec_nanos,
        "stratum": packet.stratum,
        "leap": int(packet.leap_indicator),
        "reference": str(packet.reference_id),
        "delay": packet.root_delay.to_seconds(),
        "dispersion": packet.root_dispersion.to_seconds(),
    }
    print(args.output_format.format_map(context), flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
