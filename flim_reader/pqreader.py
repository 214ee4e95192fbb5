"""
Reconstruction of FLIM images from PicoQuant .ptu and .pt3 files.

The records are read twice: the first pass measures the scan (line
duration, frames, channels, arrival time range), the second pass places
every photon in the output stacks. Both passes start from a fresh decoder
state.

Data dimensions (per channel):
    intensity, lifetime: (pix_y, pix_x, n_bins)
    lt_stack: (pix_y, pix_x, n_dtime) or (pix_y, pix_x, n_dtime, n_bins) when binned
"""

import logging
from typing import Dict, NamedTuple, Optional, TypedDict

import numpy as np
from numpy.typing import NDArray

from .accumulator import accumulate
from .errors import ConfigurationError
from .geometry import ScanGeometry, estimate_geometry
from .header import AcquisitionConfig, read_header
from .options import LoadOptions, ValidatedOptions, validate_options
from .postprocess import average_lifetime, estimate_irf_time_zero
from .records import Channel, check_record_format

log = logging.getLogger(__name__)


class Calibration(NamedTuple):
    pixel_width: float
    pixel_height: float
    unit: str
    time_resolution: float
    time_unit: str


class ChannelImages(TypedDict):
    intensity: Optional[NDArray[np.float32]]
    lifetime: Optional[NDArray[np.float32]]
    lt_stack: Optional[NDArray[np.uint32]]
    histogram: Optional[NDArray[np.int64]]
    irf_t_zero: float


class FlimImages(TypedDict):
    channels: Dict[Channel, ChannelImages]
    geometry: ScanGeometry
    config: AcquisitionConfig
    options: ValidatedOptions
    calibration: Optional[Calibration]
    info: str
    dropped: NDArray[np.int64]


def _calibration(config):
    if config.pixel_size <= 0:
        return None
    return Calibration(pixel_width=config.pixel_size,
                       pixel_height=config.pixel_size,
                       unit='um',
                       time_resolution=config.time_resolution,
                       time_unit='ns')


def reconstruct(
    t3records: NDArray[np.uint32],
    config: AcquisitionConfig,
    options: Optional[LoadOptions] = None,
    info: str = '',
    cancel=None,
    progress: bool = True,
) -> FlimImages:
    """Decode `t3records` into per channel FLIM stacks.

    :param t3records: raw T3 records
    :param config: acquisition configuration, usually from :func:`read_header`
    :param options: what to reconstruct, defaults to :class:`LoadOptions`
    :param info: acquisition info text attached to the result
    :param cancel: optional :class:`CancelToken`
    :param progress: show progress bars
    :return FlimImages: dictionary with keys:
        - **channels**: {Channel: ChannelImages} for each channel with photons,
          with keys 'intensity', 'lifetime', 'lt_stack', 'histogram' and
          'irf_t_zero'. Outputs that were not requested or could not be
          allocated are None.
        - **geometry**: the ScanGeometry of the first pass
        - **config**, **options**: the configuration and validated options used
        - **calibration**: pixel size and time resolution, None when the
          pixel size is unknown
        - **info**: acquisition info text
        - **dropped**: photons dropped outside the image / after the last bin
    """
    if options is None:
        options = LoadOptions()
    check_record_format(config)
    if options.intensity_lifetime and config.time_resolution <= 0:
        raise ConfigurationError("Average lifetime needs a positive time "
                                 "resolution, got %g." % config.time_resolution)

    geometry = estimate_geometry(t3records, config, cancel=cancel,
                                 progress=progress)
    validated = validate_options(options, geometry.n_frames)
    log.info("Loading frames %d-%d in %d bin(s).", validated.frame_min,
             validated.frame_max, validated.n_bins)

    acc = accumulate(t3records, config, geometry, validated,
                     load_intensity=options.intensity_lifetime,
                     load_stack=options.lifetime_stack,
                     cancel=cancel, progress=progress)

    channels = {}
    for channel in Channel:
        slot = acc.slots[channel.index]
        if slot < 0:
            continue
        images = ChannelImages(intensity=None, lifetime=None, lt_stack=None,
                               histogram=None, irf_t_zero=0.)
        if acc.intensity is not None:
            histogram = acc.histogram[slot]
            t_zero = 0.
            if options.subtract_irf:
                t_zero = estimate_irf_time_zero(histogram, config.time_resolution)
                log.info("Estimated IRF t=0 for channel %d: %g ns", channel, t_zero)
            images['intensity'] = acc.intensity[slot]
            images['lifetime'] = average_lifetime(
                acc.intensity[slot], acc.time_sum[slot], config.time_resolution,
                t_zero=t_zero, remove_negative=options.remove_negative)
            images['histogram'] = histogram
            images['irf_t_zero'] = t_zero
        if acc.lt_stack is not None:
            lt_stack = acc.lt_stack[slot]
            images['lt_stack'] = lt_stack if validated.binned else lt_stack[..., 0]
        channels[channel] = images

    return FlimImages(channels=channels,
                      geometry=geometry,
                      config=config,
                      options=validated,
                      calibration=_calibration(config),
                      info=info,
                      dropped=acc.dropped)


def load_ptfile(filename, options=None, cancel=None, progress=True):
    '''Load a .ptu or .pt3 file into per channel FLIM stacks

    :param filename: Name of file to load
    :param options: LoadOptions, what to reconstruct
    :param cancel: optional CancelToken to abort the load from another thread
    :param progress: show progress bars
    :return flim_images: FlimImages dictionary, see :func:`reconstruct`
    :return meta: metadata dictionary from the file header
    '''
    t3records, config, meta = read_header(filename)
    log.info("%s: %dx%d pixels, %d records, %s", filename, config.pix_x,
             config.pix_y, t3records.size, config.record_type)
    flim_images = reconstruct(t3records, config, options, info=meta['info'],
                              cancel=cancel, progress=progress)
    return flim_images, meta
