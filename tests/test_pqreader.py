#!/usr/bin/env python

"""End to end tests of loading FLIM images."""

import threading

import numpy as np
import pytest

from flim_reader import (BINNED, CancelToken, Channel, ConfigurationError, LoadCancelled,
                         LoadOptions, load_ptfile, make_config, reconstruct)
from flim_reader.geometry import estimate_geometry
from flim_reader.header import HYDRAHARP_T3, PICOHARP_T3
from flim_reader.pqwriter import RecordStream, pt3_meta, simulate_scan, write_pt3, write_ptu


@pytest.fixture
def scan():
    """Three 4x4 frames on channel 2 with arrival times 2..5."""
    rng = np.random.default_rng(7)
    counts = rng.integers(0, 4, size=(3, 4, 4))
    dtimes = rng.integers(2, 6, size=(3, 4, 4))
    records = simulate_scan(counts, channel=2, dtime=dtimes, start=100)
    return counts, dtimes, records


def test_legacy_stream(legacy_stream, pt3_config):
    records, expected = legacy_stream
    images = reconstruct(records, pt3_config, progress=False)

    assert images['geometry'].n_frames == 1
    assert images['geometry'].sync_per_line == 25
    assert list(images['channels']) == [Channel.C1]
    intensity = images['channels'][Channel.C1]['intensity']
    assert intensity.shape == (4, 4, 1)
    assert intensity.sum() == 10
    np.testing.assert_array_equal(intensity[..., 0], expected)
    assert images['dropped'].sum() == 0
    assert images['calibration'] is None


def test_legacy_stream_lifetime(legacy_stream, pt3_config):
    records, _ = legacy_stream
    options = LoadOptions(subtract_irf=False)
    images = reconstruct(records, pt3_config, options, progress=False)
    lifetime = images['channels'][Channel.C1]['lifetime'][..., 0]
    # first photon of line 0 at x=0, arrival time bin 1
    assert lifetime[0, 0] == pytest.approx(0.016)
    # line 2 photons at x=1,2,3 with bins 1,2,3
    np.testing.assert_allclose(lifetime[2, 1:], [0.016, 0.032, 0.048], rtol=1e-6)
    assert lifetime[2, 0] == 0
    assert images['channels'][Channel.C1]['irf_t_zero'] == 0.


def test_irf_subtraction(legacy_stream, pt3_config):
    records, _ = legacy_stream
    images = reconstruct(records, pt3_config, LoadOptions(remove_negative=True),
                         progress=False)
    images_raw = reconstruct(records, pt3_config, LoadOptions(subtract_irf=False),
                             progress=False)
    channel = images['channels'][Channel.C1]
    raw = images_raw['channels'][Channel.C1]['lifetime']
    assert channel['irf_t_zero'] > 0
    has_photons = channel['intensity'] > 0
    expected = np.maximum(raw[has_photons] - channel['irf_t_zero'], 0)
    np.testing.assert_allclose(channel['lifetime'][has_photons], expected, rtol=1e-6, atol=1e-7)
    assert channel['lifetime'].min() >= 0


def test_reconstruct_every_frame(scan, pt3_config):
    counts, dtimes, records = scan
    options = LoadOptions(binning=BINNED, bin_size=1, lifetime_stack=True)
    images = reconstruct(records, pt3_config, options, progress=False)

    channel = images['channels'][Channel.C2]
    dtime_max = images['geometry'].dtime_max
    kept = dtimes <= dtime_max
    for f in range(3):
        np.testing.assert_array_equal(channel['intensity'][..., f],
                                      (counts * kept)[f])
    assert channel['lt_stack'].shape == (4, 4, dtime_max + 1, 3)
    np.testing.assert_array_equal(channel['lt_stack'].sum(axis=2),
                                  channel['intensity'])
    assert channel['histogram'].sum() == (counts * kept).sum()
    assert images['dropped'][1] == (counts * ~kept).sum()


def test_unbinned_stack_drops_the_bin_axis(scan, pt3_config):
    _, _, records = scan
    options = LoadOptions(intensity_lifetime=False, lifetime_stack=True)
    images = reconstruct(records, pt3_config, options, progress=False)
    channel = images['channels'][Channel.C2]
    assert channel['intensity'] is None
    assert channel['lifetime'] is None
    assert channel['lt_stack'].ndim == 3


def test_lifetime_needs_time_resolution(legacy_stream):
    records, _ = legacy_stream
    config = make_config('rtPicoHarpT3', pix_x=4, pix_y=4, time_resolution=0.,
                         line_start=1, line_stop=2, frame_marker=4)
    with pytest.raises(ConfigurationError):
        reconstruct(records, config, progress=False)
    options = LoadOptions(intensity_lifetime=False, lifetime_stack=True)
    images = reconstruct(records, config, options, progress=False)
    assert images['channels'][Channel.C1]['lt_stack'].sum() == 10


def test_hydraharp_scan(ht3_config):
    counts = np.zeros((2, 4, 4), dtype=int)
    counts[0, 0, 1] = 3
    counts[1, 2, 3] = 4
    dtimes = np.full(counts.shape, 500)
    dtimes[0, 0, 0] = 900
    counts[0, 0, 0] = 1
    records = simulate_scan(counts, record_format=HYDRAHARP_T3, channel=3,
                            dtime=dtimes, pixel_ticks=700)
    images = reconstruct(records, ht3_config, progress=False)
    intensity = images['channels'][Channel.C3]['intensity'][..., 0]
    expected = np.zeros((4, 4))
    expected[0, 1] = 3
    expected[2, 3] = 4
    np.testing.assert_array_equal(intensity, expected)


def test_load_ptu(tmp_path, legacy_stream):
    records, expected = legacy_stream
    filename = str(tmp_path / 'legacy.ptu')
    write_ptu(filename, records, 'rtPicoHarpT3', pix_x=4, pix_y=4,
              resolution=16e-12, pixel_size=0.2)
    images, meta = load_ptfile(filename, progress=False)
    np.testing.assert_array_equal(
        images['channels'][Channel.C1]['intensity'][..., 0], expected)
    calibration = images['calibration']
    assert calibration.pixel_width == pytest.approx(0.2)
    assert calibration.unit == 'um'
    assert calibration.time_resolution == pytest.approx(0.016)
    assert images['info'] == meta['info']


def test_load_pt3(tmp_path, legacy_stream):
    records, expected = legacy_stream
    filename = str(tmp_path / 'legacy.pt3')
    write_pt3(pt3_meta(4, 4, 0.016), records, filename)
    images, meta = load_ptfile(filename, LoadOptions(lifetime_stack=True),
                               progress=False)
    channel = images['channels'][Channel.C1]
    np.testing.assert_array_equal(channel['intensity'][..., 0], expected)
    assert channel['lt_stack'].sum() == 10
    assert meta['imghdr'][7] == 4


def test_load_cancelled(pt3_config):
    records = simulate_scan(np.full((1, 4, 4), 5000, dtype=int), dtime=[[1, 2, 3, 4]])
    cancel = CancelToken()
    cancel.cancel()
    with pytest.raises(LoadCancelled):
        reconstruct(records, pt3_config, cancel=cancel, progress=False)


def test_cancel_from_another_thread(pt3_config):
    records = simulate_scan(np.full((1, 4, 4), 5000, dtype=int), dtime=[[1, 2, 3, 4]])
    cancel = CancelToken()
    errors = []

    def load():
        try:
            reconstruct(records, pt3_config, cancel=cancel, progress=False)
        except LoadCancelled as e:
            errors.append(e)

    thread = threading.Thread(target=load)
    cancel.cancel()
    thread.start()
    thread.join()
    assert len(errors) == 1


@pytest.mark.parametrize('record_format, stray_channels', [
    (PICOHARP_T3, (0, 9, 14)),
    (HYDRAHARP_T3, (5, 11, 64)),
])
def test_photons_on_other_channels_are_ignored(record_format, stray_channels,
                                               pt3_config, ht3_config):
    config = pt3_config if record_format == PICOHARP_T3 else ht3_config
    stream = RecordStream(record_format, version=2)
    t = 0
    for y in range(4):
        stream.marker(t, 1)
        for x in range(4):
            stream.photon(t + 10 * x + 2, 1, 1)
            for channel in stray_channels:
                stream.photon(t + 10 * x + 5, channel, 1)
        t += 40
        stream.photon(t - 1, 1, 3)
        stream.marker(t, 2)
        t += 5
    stream.marker(t, 4)
    records = stream.to_array()

    geometry = estimate_geometry(records, config, progress=False)
    assert geometry.channels == (True, False, False, False)
    images = reconstruct(records, config, LoadOptions(lifetime_stack=True),
                         progress=False)
    assert list(images['channels']) == [Channel.C1]
    channel = images['channels'][Channel.C1]
    np.testing.assert_array_equal(channel['intensity'][..., 0], np.ones((4, 4)))
    assert channel['lt_stack'].sum() == 16
    assert images['dropped'].sum() == 4
