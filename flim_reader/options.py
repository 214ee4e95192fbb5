"""Load parameters chosen by the caller and their validation."""

import logging
import math
from typing import NamedTuple, Optional, Tuple

from .errors import ParameterValidationError

log = logging.getLogger(__name__)

# binning modes
JOIN_ALL = 'join'
BINNED = 'binned'


class LoadOptions(NamedTuple):
    """What to reconstruct.

    :param intensity_lifetime: produce intensity and average lifetime stacks
    :param lifetime_stack: produce the lifetime ordered stack
    :param binning: JOIN_ALL merges all frames into one slice, BINNED merges
        every `bin_size` frames
    :param bin_size: frames per output slice in BINNED mode
    :param frame_range: optional (min, max) inclusive range of frames to
        load, 1-based
    :param remove_negative: clamp negative corrected lifetimes to zero
    :param subtract_irf: subtract the estimated IRF time zero from the
        average lifetimes
    """
    intensity_lifetime: bool = True
    lifetime_stack: bool = False
    binning: str = JOIN_ALL
    bin_size: int = 1
    frame_range: Optional[Tuple[int, int]] = None
    remove_negative: bool = False
    subtract_irf: bool = True


class ValidatedOptions(NamedTuple):
    frame_min: int
    frame_max: int
    bin_size: int
    n_bins: int
    binned: bool


def _check_bin_size(bin_size, n_frames):
    if bin_size < 1 or bin_size > n_frames:
        raise ParameterValidationError(
            "Bin size should be in the range from 1 to %d, got %d." %
            (n_frames, bin_size))
    return bin_size


def _check_frame_range(frame_range, n_frames):
    frame_min, frame_max = (int(v) for v in frame_range)
    if frame_min < 1:
        frame_min = 1
    if frame_max > n_frames:
        frame_max = n_frames
    if frame_min > frame_max:
        raise ParameterValidationError(
            "Frame range %s is empty for %d frames." % (tuple(frame_range), n_frames))
    return frame_min, frame_max


def validate_options(options, n_frames):
    """Clamp `options` to the `n_frames` of the file.

    Out of bounds values never fail the load: the bin size falls back to 1
    and the frame range to all frames, with a warning.
    """
    if options.binning not in (JOIN_ALL, BINNED):
        raise ValueError("binning must be %r or %r, got %r." %
                         (JOIN_ALL, BINNED, options.binning))

    try:
        bin_size = _check_bin_size(int(options.bin_size), n_frames)
    except ParameterValidationError as e:
        log.warning("%s Resetting to 1.", e)
        bin_size = 1

    frame_min, frame_max = 1, n_frames
    if options.frame_range is not None:
        try:
            frame_min, frame_max = _check_frame_range(options.frame_range, n_frames)
        except ParameterValidationError as e:
            log.warning("%s Loading all frames.", e)

    binned = options.binning == BINNED
    if not binned:
        bin_size = frame_max - frame_min + 1
    n_bins = math.ceil((frame_max - frame_min + 1) / bin_size)
    return ValidatedOptions(frame_min=frame_min, frame_max=frame_max,
                            bin_size=bin_size, n_bins=n_bins, binned=binned)
