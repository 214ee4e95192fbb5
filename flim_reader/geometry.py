"""First pass: scan geometry of the acquisition.

The line duration is not stored in the file header, it is averaged over
all the line start/stop marker pairs of the record stream. The same pass
counts frames, finds which detector channels carry photons and the
largest arrival time bin, which together size the output arrays.
"""

import logging
import math
from typing import NamedTuple, Tuple

import numpy as np
from numba import njit

from .errors import GeometryError, LoadCancelled
from .progress import PROGRESS_STRIDE, cancel_flag, progress_bar
from .records import MARKER, DecoderState, check_record_format, decode_record

log = logging.getLogger(__name__)


class ScanGeometry(NamedTuple):
    sync_per_line: int  # average sync ticks per scan line (truncated)
    n_lines: int  # completed scan lines
    n_frames: int
    channels: Tuple[bool, bool, bool, bool]
    dtime_max: int  # largest arrival time bin used for the outputs

    @property
    def n_dtime(self):
        return self.dtime_max + 1


@njit(nogil=True)
def _scan_records(t3records, state, record_format, version, line_start,
                  line_stop, frame_marker, frame_marker_present, channels,
                  cancel, progress_proxy):
    frame_nb = 1
    line_sync_sum = 0
    n_lines = 0
    dtime_max = -1
    done = 0
    for n in range(t3records.size):
        if n - done == PROGRESS_STRIDE:
            progress_proxy.update(PROGRESS_STRIDE)
            done = n
            if cancel[0]:
                return False, frame_nb, line_sync_sum, n_lines, dtime_max

        kind = decode_record(t3records[n], state, record_format, version)
        if kind == MARKER:
            marker = state.marker
            if marker == 0:
                continue
            if marker == line_start and not state.inside_line:
                state.inside_line = True
                state.sync_start = state.global_sync
            elif marker == line_stop and state.inside_line:
                line_sync_sum += state.global_sync - state.sync_start
                n_lines += 1
                state.inside_line = False
                state.sync_start = -1
            if frame_marker_present and marker >= frame_marker:
                frame_nb += 1
        elif state.chan >= 1 and state.chan <= 4:
            channels[state.chan - 1] = True
            if state.dtime > dtime_max:
                dtime_max = state.dtime
    progress_proxy.update(t3records.size - done)
    return True, frame_nb, line_sync_sum, n_lines, dtime_max


def estimate_geometry(t3records, config, cancel=None, progress=True):
    """Run the first pass over `t3records` and return a :class:`ScanGeometry`.

    Raises:
        GeometryError: no complete scan line was found.
        LoadCancelled: `cancel` was raised during the pass.
    """
    check_record_format(config)
    t3records = np.ascontiguousarray(t3records, dtype=np.uint32)
    channels = np.zeros(4, dtype=np.bool_)
    with progress_bar(t3records.size, "Scanning records", progress) as bar:
        completed, frame_nb, line_sync_sum, n_lines, dtime_max = _scan_records(
            t3records, DecoderState(), config.record_format, config.version,
            config.line_start, config.line_stop, config.frame_marker,
            config.frame_marker_present, channels, cancel_flag(cancel), bar)
    if not completed:
        raise LoadCancelled("Cancelled while scanning the records.")

    if n_lines == 0:
        raise GeometryError("No complete scan line (line start %d / line stop "
                            "%d) found in %d records." %
                            (config.line_start, config.line_stop, t3records.size))

    # somehow SymPhoTime removes the last arrival time bin
    dtime_max = max(dtime_max - 1, 0)
    if not channels.any():
        log.warning("No photon found on channels 1-4.")

    sync_per_line = line_sync_sum // n_lines
    if sync_per_line == 0:
        raise GeometryError("Scan lines have zero duration.")

    if not config.frame_marker_present:
        frame_nb = math.ceil(n_lines / config.pix_y) + 1
    n_frames = frame_nb - 1
    if n_frames < 1:
        log.warning("Frame marker %d never occurs, reading the file as a "
                    "single frame.", config.frame_marker)
        n_frames = 1

    geometry = ScanGeometry(sync_per_line=int(sync_per_line),
                            n_lines=int(n_lines),
                            n_frames=int(n_frames),
                            channels=tuple(bool(c) for c in channels),
                            dtime_max=int(dtime_max))
    log.info("syncCountPerLine: %d", geometry.sync_per_line)
    log.info("Total frames: %d", geometry.n_frames)
    log.info("Maximum time: %d", geometry.dtime_max)
    return geometry
