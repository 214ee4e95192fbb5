#!/usr/bin/env python

"""Tests for the first pass over the records."""

import logging

import numpy as np
import pytest

from flim_reader import CancelToken, GeometryError, LoadCancelled, make_config
from flim_reader.geometry import estimate_geometry
from flim_reader.header import HYDRAHARP_T3
from flim_reader.pqwriter import RecordStream, simulate_scan


def test_single_line_duration(pt3_config):
    stream = RecordStream()
    stream.marker(100, 1)
    stream.photon(110, 1, 7)
    stream.marker(100 + 37, 2)
    geometry = estimate_geometry(stream.to_array(), pt3_config, progress=False)
    assert geometry.sync_per_line == 37
    assert geometry.n_lines == 1


def test_line_duration_is_averaged_and_truncated(pt3_config):
    stream = RecordStream()
    stream.marker(0, 1)
    stream.marker(10, 2)
    stream.marker(20, 1)
    stream.marker(31, 2)
    geometry = estimate_geometry(stream.to_array(), pt3_config, progress=False)
    assert geometry.sync_per_line == 10


def test_line_across_wraparound(pt3_config):
    stream = RecordStream()
    stream.marker(65500, 1)
    stream.photon(65530, 1, 3)
    stream.marker(65600, 2)
    geometry = estimate_geometry(stream.to_array(), pt3_config, progress=False)
    assert geometry.sync_per_line == 100


def test_no_lines(pt3_config):
    stream = RecordStream()
    stream.marker(0, 1)
    stream.photon(5, 1, 3)
    with pytest.raises(GeometryError):
        estimate_geometry(stream.to_array(), pt3_config, progress=False)


def test_zero_length_lines(pt3_config):
    stream = RecordStream()
    stream.marker(10, 1)
    stream.marker(10, 2)
    with pytest.raises(GeometryError):
        estimate_geometry(stream.to_array(), pt3_config, progress=False)


def test_frames_from_frame_markers(pt3_config):
    records = simulate_scan(np.ones((3, 4, 4), dtype=int), pixel_ticks=6)
    geometry = estimate_geometry(records, pt3_config, progress=False)
    assert geometry.n_frames == 3
    assert geometry.n_lines == 12
    assert geometry.sync_per_line == 24


def test_frames_from_line_count():
    config = make_config('rtPicoHarpT3', pix_x=4, pix_y=4, time_resolution=0.016,
                         line_start=1, line_stop=2)
    # 2.5 frames worth of lines
    counts = np.ones((5, 2, 4), dtype=int)
    records = simulate_scan(counts, frame_marker=None)
    geometry = estimate_geometry(records, config, progress=False)
    assert geometry.n_lines == 10
    assert geometry.n_frames == 3


def test_missing_frame_markers_read_as_one_frame(pt3_config, caplog):
    records = simulate_scan(np.ones((1, 4, 4), dtype=int), frame_marker=None)
    with caplog.at_level(logging.WARNING):
        geometry = estimate_geometry(records, pt3_config, progress=False)
    assert geometry.n_frames == 1
    assert 'single frame' in caplog.text


def test_arrival_time_range_and_channels(pt3_config):
    dtimes = np.arange(16).reshape(1, 4, 4)
    records = simulate_scan(np.ones((1, 4, 4), dtype=int), channel=3, dtime=dtimes)
    geometry = estimate_geometry(records, pt3_config, progress=False)
    # the last arrival time bin is not used
    assert geometry.dtime_max == 14
    assert geometry.n_dtime == 15
    assert geometry.channels == (False, False, True, False)


def test_no_photons(pt3_config, caplog):
    records = simulate_scan(np.zeros((1, 4, 4), dtype=int))
    with caplog.at_level(logging.WARNING):
        geometry = estimate_geometry(records, pt3_config, progress=False)
    assert geometry.dtime_max == 0
    assert not any(geometry.channels)
    assert 'No photon' in caplog.text


def test_hydraharp_geometry(ht3_config):
    dtimes = np.full((2, 4, 4), 100)
    dtimes[1, 3, 3] = 300
    records = simulate_scan(np.ones((2, 4, 4), dtype=int), record_format=HYDRAHARP_T3,
                            channel=2, dtime=dtimes, pixel_ticks=400,
                            start=5000)
    geometry = estimate_geometry(records, ht3_config, progress=False)
    assert geometry.n_frames == 2
    assert geometry.sync_per_line == 1600
    assert geometry.dtime_max == 299
    assert geometry.channels == (False, True, False, False)


def test_cancelled(pt3_config):
    records = simulate_scan(np.ones((1, 4, 4), dtype=int))
    records = np.concatenate([records, np.tile(records[-1:], 70000)])
    cancel = CancelToken()
    cancel.cancel()
    assert cancel.cancelled
    with pytest.raises(LoadCancelled):
        estimate_geometry(records, pt3_config, cancel=cancel, progress=False)
