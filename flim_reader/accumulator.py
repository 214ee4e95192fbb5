"""Second pass: photons into per channel image stacks.

Array layout (one leading axis per present channel, see `slots`):

    intensity, time_sum: (n_slots, pix_y, pix_x, n_bins)
    histogram:           (n_slots, n_dtime)
    lt_stack:            (n_slots, pix_y, pix_x, n_dtime, n_bins or 1)

Photons are placed along a line by their sync time since the line start
marker, scaled with the average line duration of the first pass. This is
an approximation: scan lines of uneven duration smear by up to a pixel.
"""

import logging
from typing import NamedTuple, Optional

import numpy as np
from numba import njit
from numpy.typing import NDArray

from .errors import LoadCancelled, ResourceError
from .progress import PROGRESS_STRIDE, cancel_flag, progress_bar
from .records import MARKER, DecoderState, check_record_format, decode_record

log = logging.getLogger(__name__)

# indices in the `dropped` counters
DROPPED_OUTSIDE_IMAGE = 0
DROPPED_LATE_DTIME = 1


class Accumulation(NamedTuple):
    slots: NDArray[np.int64]  # channel index -> slot, -1 for absent channels
    intensity: Optional[NDArray[np.float32]]
    time_sum: Optional[NDArray[np.float64]]
    histogram: Optional[NDArray[np.int64]]
    lt_stack: Optional[NDArray[np.uint32]]
    dropped: NDArray[np.int64]


def channel_slots(channels):
    """Map the four channels to consecutive slots, -1 for absent ones."""
    slots = np.full(4, -1, dtype=np.int64)
    slot = 0
    for idx, present in enumerate(channels):
        if present:
            slots[idx] = slot
            slot += 1
    return slots


def allocate(shape, dtype, what):
    """Zeroed array of `shape`, ResourceError when memory runs out."""
    try:
        return np.zeros(shape, dtype=dtype)
    except MemoryError as e:
        nbytes = np.prod(shape, dtype=np.float64) * np.dtype(dtype).itemsize
        raise ResourceError("Unable to allocate %.1f MB for the %s." %
                            (nbytes / 2**20, what)) from e


@njit(nogil=True)
def _accumulate(t3records, state, record_format, version, line_start,
                line_stop, frame_marker, frame_marker_present, pix_x, pix_y,
                sync_per_line, dtime_max, frame_min, frame_max, bin_size,
                slots, load_intensity, load_stack, stack_binned, intensity,
                time_sum, histogram, lt_stack, dropped, cancel, progress_proxy):
    cur_frame = 1
    frame_update = True
    bin_idx = 0
    done = 0
    for n in range(t3records.size):
        if n - done == PROGRESS_STRIDE:
            progress_proxy.update(PROGRESS_STRIDE)
            done = n
            if cancel[0]:
                return False

        kind = decode_record(t3records[n], state, record_format, version)
        if kind == MARKER:
            marker = state.marker
            if marker == 0:
                continue
            if frame_marker_present and marker >= frame_marker:
                cur_frame += 1
                frame_update = True
                state.cur_line = 0
            if marker == line_start and not state.inside_line:
                state.inside_line = True
                state.sync_start = state.global_sync
            elif marker == line_stop and state.inside_line:
                state.inside_line = False
                state.sync_start = -1
                state.cur_line += 1
                # without frame markers a frame is pix_y lines
                if not frame_marker_present and state.cur_line == pix_y:
                    cur_frame += 1
                    state.cur_line = 0
                    frame_update = True
            continue

        if not state.inside_line:
            continue
        if cur_frame < frame_min or cur_frame > frame_max:
            continue
        chan = state.chan
        if chan < 1 or chan > 4 or slots[chan - 1] < 0:
            continue
        slot = slots[chan - 1]

        if frame_update:
            bin_idx = (cur_frame - frame_min) // bin_size
            frame_update = False

        x = (state.global_sync - state.sync_start) * pix_x // sync_per_line
        y = state.cur_line
        if x >= pix_x or y >= pix_y:
            dropped[DROPPED_OUTSIDE_IMAGE] += 1
            continue
        dtime = state.dtime
        if dtime > dtime_max:
            dropped[DROPPED_LATE_DTIME] += 1
            continue

        if load_intensity:
            intensity[slot, y, x, bin_idx] += 1
            time_sum[slot, y, x, bin_idx] += dtime
            histogram[slot, dtime] += 1
        if load_stack:
            stack_bin = bin_idx if stack_binned else 0
            lt_stack[slot, y, x, dtime, stack_bin] += 1
    progress_proxy.update(t3records.size - done)
    return True


def accumulate(t3records, config, geometry, validated, load_intensity=True,
               load_stack=False, cancel=None, progress=True):
    """Run the second pass and return the filled :class:`Accumulation`.

    The intensity (with time sums and histograms) and the lifetime ordered
    stack are allocated separately: if one of them does not fit in memory
    it is skipped with a warning and the other one is still filled.
    """
    check_record_format(config)
    t3records = np.ascontiguousarray(t3records, dtype=np.uint32)
    slots = channel_slots(geometry.channels)
    n_slots = int((slots >= 0).sum())
    image_shape = (n_slots, config.pix_y, config.pix_x)

    intensity = time_sum = histogram = lt_stack = None
    if load_intensity:
        try:
            intensity = allocate(image_shape + (validated.n_bins,), np.float32,
                                 "intensity images")
            time_sum = allocate(image_shape + (validated.n_bins,), np.float64,
                                "lifetime sums")
            histogram = allocate((n_slots, geometry.n_dtime), np.int64,
                                 "arrival time histograms")
        except ResourceError as e:
            log.warning("%s Skipping intensity and average lifetime.", e)
            intensity = time_sum = histogram = None
            load_intensity = False
    if load_stack:
        stack_bins = validated.n_bins if validated.binned else 1
        try:
            lt_stack = allocate(image_shape + (geometry.n_dtime, stack_bins),
                                np.uint32, "lifetime stack")
        except ResourceError as e:
            log.warning("%s Skipping lifetime loading.", e)
            load_stack = False

    dropped = np.zeros(2, dtype=np.int64)
    # disabled outputs are passed as small placeholders of the same type
    with progress_bar(t3records.size, "Reading lifetime data", progress) as bar:
        completed = _accumulate(
            t3records, DecoderState(), config.record_format, config.version,
            config.line_start, config.line_stop, config.frame_marker,
            config.frame_marker_present, config.pix_x, config.pix_y,
            geometry.sync_per_line, geometry.dtime_max, validated.frame_min,
            validated.frame_max, validated.bin_size, slots,
            load_intensity, load_stack, validated.binned,
            intensity if load_intensity else np.zeros((1, 1, 1, 1), np.float32),
            time_sum if load_intensity else np.zeros((1, 1, 1, 1), np.float64),
            histogram if load_intensity else np.zeros((1, 1), np.int64),
            lt_stack if load_stack else np.zeros((1, 1, 1, 1, 1), np.uint32),
            dropped, cancel_flag(cancel), bar)
    if not completed:
        raise LoadCancelled("Cancelled while reading lifetime data.")

    if dropped[DROPPED_OUTSIDE_IMAGE]:
        log.warning("%d photons fell outside the %dx%d image, the estimated "
                    "line duration may be wrong.", dropped[DROPPED_OUTSIDE_IMAGE],
                    config.pix_x, config.pix_y)
    if dropped[DROPPED_LATE_DTIME]:
        log.warning("%d photons arrived after the last arrival time bin %d "
                    "and were dropped.", dropped[DROPPED_LATE_DTIME],
                    geometry.dtime_max)
    return Accumulation(slots=slots, intensity=intensity, time_sum=time_sum,
                        histogram=histogram, lt_stack=lt_stack, dropped=dropped)
