"""
Decoding of single T3 records.

A T3 record is a little-endian 32 bit word. Two layouts are supported,
starting from the LSB:

    PicoHarp T3:                 | nsync 16 | dtime 12 | channel 4 |
    HydraHarp/TimeHarp/MultiHarp | nsync 10 | dtime 15 | channel 6 | special 1 |

Channel 15 (PicoHarp) or the special bit (HydraHarp family) mark a
non-photon record: a scan marker or a sync counter overflow. Overflows are
reported as markers with code 0.

The decoder keeps its running values (overflow accumulator, last fields,
scan line state) in a :class:`DecoderState`. Each pass over a record
stream must start from a new state.
"""

from enum import IntEnum
from typing import NamedTuple

import numpy as np
from numba import njit, int64, boolean
from numba.experimental import jitclass

from .errors import FormatError
from .header import PICOHARP_T3, HYDRAHARP_T3

# wraparound constants
PT3_WRAPAROUND = 65536
HT3_WRAPAROUND = 1024

# kinds returned by decode_record
PHOTON = 0
MARKER = 1

# code of the HydraHarp overflow channel
_HT3_OVERFLOW_CHANNEL = 63

_decoder_state_spec = [
    ('ofltime', int64),  # accumulated overflow time
    ('nsync', int64),  # sync counter of the last record
    ('dtime', int64),  # arrival time of the last record
    ('chan', int64),  # channel of the last photon (1-based)
    ('marker', int64),  # marker code of the last marker, 0 for overflows
    ('cur_line', int64),  # current line in the frame
    ('inside_line', boolean),
    ('sync_start', int64),  # global time of the line start, -1 outside lines
]


@jitclass(_decoder_state_spec)
class DecoderState:
    def __init__(self):
        self.ofltime = 0
        self.nsync = 0
        self.dtime = 0
        self.chan = 0
        self.marker = 0
        self.cur_line = 0
        self.inside_line = False
        self.sync_start = -1

    @property
    def global_sync(self):
        return self.ofltime + self.nsync

    def reset(self):
        self.ofltime = 0
        self.nsync = 0
        self.dtime = 0
        self.chan = 0
        self.marker = 0
        self.cur_line = 0
        self.inside_line = False
        self.sync_start = -1


@njit(nogil=True)
def _decode_picoharp(word, state):
    state.nsync = word & 0xFFFF
    state.dtime = (word >> 16) & 0xFFF
    chan = (word >> 28) & 0xF
    if chan == 15:
        state.marker = (word >> 16) & 0xF
        # dtime 0 implies marker 0: both flag an overflow
        if state.marker == 0 or state.dtime == 0:
            state.ofltime += PT3_WRAPAROUND
        return MARKER
    state.chan = chan
    return PHOTON


@njit(nogil=True)
def _decode_hydraharp(word, state, version):
    state.nsync = word & 0x3FF
    state.dtime = (word >> 10) & 0x7FFF
    chan = (word >> 25) & 0x3F
    if ((word >> 31) & 1) == 0:
        state.chan = chan + 1
        return PHOTON
    if chan == _HT3_OVERFLOW_CHANNEL:
        # V2 files pack several overflows in one record
        if state.nsync == 0 or version == 1:
            state.ofltime += HT3_WRAPAROUND
        else:
            state.ofltime += HT3_WRAPAROUND * state.nsync
        state.marker = 0
    elif chan >= 1 and chan <= 15:
        state.marker = chan
    else:
        state.marker = 0
    return MARKER


@njit(nogil=True)
def decode_record(record, state, record_format, version):
    """Decode one record into `state` and return PHOTON or MARKER."""
    word = np.int64(record) & 0xFFFFFFFF
    if record_format == PICOHARP_T3:
        return _decode_picoharp(word, state)
    return _decode_hydraharp(word, state, version)


class Channel(IntEnum):
    """Detector channels that carry image data."""
    C1 = 1
    C2 = 2
    C3 = 3
    C4 = 4

    @property
    def index(self):
        return self.value - 1


class Photon(NamedTuple):
    channel: int
    dtime: int
    global_sync: int


class Marker(NamedTuple):
    code: int
    global_sync: int


def check_record_format(config):
    if config.record_format not in (PICOHARP_T3, HYDRAHARP_T3):
        raise FormatError('Unsupported record format %r.' % (config.record_format,))


def decode(record, state, config):
    """Decode one record, returning a :class:`Photon` or a :class:`Marker`.

    Overflow records come back as markers with code 0.
    """
    kind = decode_record(record, state, config.record_format, config.version)
    if kind == PHOTON:
        return Photon(state.chan, state.dtime, state.global_sync)
    return Marker(state.marker, state.global_sync)


def iter_records(t3records, config):
    """Iterate over decoded records, starting from a fresh state."""
    check_record_format(config)
    state = DecoderState()
    for record in t3records:
        yield decode(int(record), state, config)
