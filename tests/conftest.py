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


import threading
from socket import AF_INET, SOCK_DGRAM, socket

import pytest

import nippy


TRANSMIT = nippy.TimestampFormat(nippy.EPOCH_DELTA + 1700000000, 2 ** 31)


def server_reply(data, **kwargs):
    query = nippy.decode(data)
    fields = dict(
        leap_indicator=nippy.LeapIndicator.NO_WARNING,
        version=query.version,
        mode=nippy.Mode.SERVER,
        stratum=2,
        poll=6,
        precision=-20,
        root_delay=nippy.ShortFormat(0, 832),
        root_dispersion=nippy.ShortFormat(0, 907),
        reference_id=nippy.ReferenceIdentifier.from_address("192.0.2.1"),
        reference_timestamp=TRANSMIT,
        origin_timestamp=query.transmit_timestamp,
        receive_timestamp=TRANSMIT,
        transmit_timestamp=TRANSMIT,
    )
    fields.update(kwargs)
    return nippy.Packet(**fields).serialize()


class Responder:
    """Answers a single query on the loopback interface."""

    def __init__(self, reply=server_reply, decoy=False):
        self.reply = reply
        self.decoy = decoy
        self.received = []
        self.sock = socket(AF_INET, SOCK_DGRAM)
        self.sock.settimeout(5.0)
        self.sock.bind(("127.0.0.1", 0))
        self.address, self.port = self.sock.getsockname()
        self.thread = threading.Thread(target=self.serve, daemon=True)
        self.thread.start()

    def serve(self):
        try:
            data, peer = self.sock.recvfrom(4096)
        except OSError:
            return
        self.received.append(data)
        if self.decoy:
            # Same payload, wrong source port.
            with socket(AF_INET, SOCK_DGRAM) as s:
                s.sendto(b"\0" * nippy.PACKET_SIZE, peer)
        payload = self.reply(data)
        if payload is not None:
            self.sock.sendto(payload, peer)

    def close(self):
        self.thread.join(6.0)
        self.sock.close()


@pytest.fixture
def responder():
    started = []

    def start(*args, **kwargs):
        r = Responder(*args, **kwargs)
        started.append(r)
        return r

    yield start
    for r in started:
        r.close()
