import numpy as np
import pytest

from flim_reader.header import make_config
from flim_reader.pqwriter import encode_picoharp_t3


@pytest.fixture
def pt3_config():
    """PicoHarp 4x4 image, line start 1, line stop 2, frame marker 4."""
    return make_config('rtPicoHarpT3', pix_x=4, pix_y=4, time_resolution=0.016,
                       line_start=1, line_stop=2, frame_marker=4)


@pytest.fixture
def ht3_config():
    return make_config('rtHydraHarp2T3', pix_x=4, pix_y=4, time_resolution=0.025,
                       line_start=1, line_stop=2, frame_marker=4)


@pytest.fixture
def legacy_stream():
    """100 PicoHarp records: one 4x4 frame of 4 lines, 25 ticks each.

    10 photons on channel 1 inside the lines, one background photon between
    two lines with a late arrival time, and filler markers with code 3.
    Returns the records and the expected per pixel counts.
    """
    photons = {0: (3, 9, 15), 1: (3, 21), 2: (9, 15, 21), 3: (3, 15)}
    expected = np.zeros((4, 4), dtype=np.float32)
    nsync, dtime, chan = [], [], []

    def add(t, d, c):
        nsync.append(t)
        dtime.append(d)
        chan.append(c)

    for _ in range(80):
        add(0, 3, 15)
    for line in range(4):
        t0 = 1 + 30 * line
        add(t0, 1, 15)
        for i, offset in enumerate(photons[line]):
            add(t0 + offset, 1 + i, 1)
            expected[line, offset * 4 // 25] += 1
        add(t0 + 25, 2, 15)
        if line == 0:
            add(t0 + 27, 50, 1)
    add(1 + 30 * 4, 4, 15)
    records = encode_picoharp_t3(nsync, dtime, chan)
    assert records.size == 100
    return records, expected
