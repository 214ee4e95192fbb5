"""Average lifetime images and IRF time zero estimation."""

import logging

import numpy as np
from numpy.typing import NDArray

log = logging.getLogger(__name__)


def average_lifetime(
    intensity: NDArray[np.float32],
    time_sum: NDArray[np.float64],
    time_resolution: float,
    t_zero: float = 0.,
    remove_negative: bool = False,
) -> NDArray[np.float32]:
    """Mean photon arrival time of every pixel, in ns.

    :param intensity: photon counts
    :param time_sum: sum of the arrival time bins of the same photons
    :param time_resolution: ns per arrival time bin
    :param t_zero: time zero subtracted from every non-empty pixel
    :param remove_negative: clamp negative lifetimes to zero, otherwise
        they are kept as they are
    :return: array shaped like `intensity`, zero where there are no photons
    """
    lifetime = np.zeros(intensity.shape, dtype=np.float32)
    has_photons = intensity > 0
    lifetime[has_photons] = (time_resolution * time_sum[has_photons]
                             / intensity[has_photons]) - t_zero
    if remove_negative:
        np.maximum(lifetime, 0., out=lifetime)
    return lifetime


def peak_centroid(values: NDArray) -> float:
    """Sub-bin position of the maximum of `values`.

    Three point estimate around the first maximum, see Teague & Foreman-Mackey,
    "A Robust Method to Measure Centroids of Spectral Lines",
    DOI 10.3847/2515-5172/aae265. A maximum on the first or last bin returns
    the integer position.
    """
    values = np.asarray(values, dtype=np.float64)
    peak = int(np.argmax(values))
    if peak == 0 or peak == values.size - 1:
        return float(peak)
    before, at, after = values[peak - 1], values[peak], values[peak + 1]
    curvature = after + before - 2. * at
    if curvature == 0:
        return float(peak)
    return peak - 0.5 * (after - before) / curvature


def estimate_irf_time_zero(histogram: NDArray[np.int64], time_resolution: float) -> float:
    """Time zero (ns) from the steepest rise of an arrival time histogram.

    The difference ``h[t+1] - h[t]`` belongs to the rise into bin t+1,
    hence the one bin offset on the centroid of the differences.
    """
    if histogram.size < 2:
        return 0.
    rise = np.diff(histogram.astype(np.int64))
    return time_resolution * (peak_centroid(rise) + 1.)
