"""Encoding of T3 records and writing of .ptu and .pt3 files.

The inverse of :mod:`flim_reader.records`: photons and markers with a
global sync time are packed into T3 words, inserting the overflow records
a real instrument would emit when the sync counter wraps around.
"""

import struct

import numpy as np

from .header import (HYDRAHARP_T3, PICOHARP_T3, PT3_BLOCKS, PT3_IMGHDR_NAMES,
                     _ptu_rec_type, _ptu_tag_type)
from .records import HT3_WRAPAROUND, PT3_WRAPAROUND


def encode_picoharp_t3(nsync, dtime, channel):
    """PicoHarp T3 words, channel 15 for markers and overflows."""
    return (np.left_shift(np.asarray(channel, dtype=np.uint32), 28)
            | np.left_shift(np.asarray(dtime, dtype=np.uint32) & 0xFFF, 16)
            | (np.asarray(nsync, dtype=np.uint32) & 0xFFFF))


def encode_hydraharp_t3(nsync, dtime, channel, special=0):
    """HydraHarp family T3 words, `channel` is the raw 6 bit field."""
    return (np.left_shift(np.asarray(special, dtype=np.uint32) & 1, 31)
            | np.left_shift(np.asarray(channel, dtype=np.uint32) & 0x3F, 25)
            | np.left_shift(np.asarray(dtime, dtype=np.uint32) & 0x7FFF, 10)
            | (np.asarray(nsync, dtype=np.uint32) & 0x3FF))


class RecordStream:
    """Builds a T3 record stream from events in global sync time order."""

    def __init__(self, record_format=PICOHARP_T3, version=2):
        self.record_format = record_format
        self.version = version
        self.wraparound = PT3_WRAPAROUND if record_format == PICOHARP_T3 else HT3_WRAPAROUND
        self.words = []
        self.overflows = 0
        self._time = 0

    def _advance(self, global_sync):
        assert global_sync >= self._time, "events must be added in time order"
        self._time = global_sync
        n_wraps = global_sync // self.wraparound - self.overflows
        if n_wraps <= 0:
            return
        if self.record_format == PICOHARP_T3:
            for _ in range(n_wraps):
                self.words.append(int(encode_picoharp_t3(0, 0, 15)))
        elif self.version == 1:
            for _ in range(n_wraps):
                self.words.append(int(encode_hydraharp_t3(0, 0, 63, special=1)))
        else:
            while n_wraps > 0:
                count = min(n_wraps, 0x3FF)
                self.words.append(int(encode_hydraharp_t3(count, 0, 63, special=1)))
                n_wraps -= count
                self.overflows += count
            return
        self.overflows += n_wraps

    def photon(self, global_sync, channel, dtime):
        """Add a photon on `channel` (1-based)."""
        self._advance(global_sync)
        if self.record_format == PICOHARP_T3:
            word = encode_picoharp_t3(global_sync, dtime, channel)
        else:
            word = encode_hydraharp_t3(global_sync, dtime, channel - 1)
        self.words.append(int(word))

    def marker(self, global_sync, code):
        self._advance(global_sync)
        if self.record_format == PICOHARP_T3:
            word = encode_picoharp_t3(global_sync, code, 15)
        else:
            word = encode_hydraharp_t3(global_sync, 0, code, special=1)
        self.words.append(int(word))

    def to_array(self):
        return np.array(self.words, dtype=np.uint32)


def simulate_scan(counts, record_format=PICOHARP_T3, version=2, channel=1,
                  dtime=10, pixel_ticks=10, line_gap=5, line_start=1,
                  line_stop=2, frame_marker=4, start=0):
    """Records of a raster scan with `counts` photons per pixel.

    :param counts: integer array (n_frames, pix_y, pix_x)
    :param channel: detector channel of all photons
    :param dtime: arrival time bin of all photons, or an array shaped like
        `counts` with one arrival time per pixel
    :param pixel_ticks: sync ticks spent on each pixel
    :param line_gap: sync ticks between a line stop and the next line start
    :param frame_marker: code emitted after every frame, None for no frame markers
    :param start: global sync time of the first line start
    :return: uint32 array of T3 records
    """
    counts = np.asarray(counts)
    dtimes = np.broadcast_to(np.asarray(dtime), counts.shape)
    n_frames, pix_y, pix_x = counts.shape
    stream = RecordStream(record_format, version)
    t = start
    for f in range(n_frames):
        for y in range(pix_y):
            stream.marker(t, line_start)
            for x in range(pix_x):
                for _ in range(int(counts[f, y, x])):
                    stream.photon(t + x * pixel_ticks + pixel_ticks // 2,
                                  channel, int(dtimes[f, y, x]))
            t += pix_x * pixel_ticks
            stream.marker(t, line_stop)
            t += line_gap
        if frame_marker is not None:
            stream.marker(t, frame_marker)
    return stream.to_array()


def pt3_meta(pix_x, pix_y, resolution, line_start=1, line_stop=2, frame_marker=4,
             comment=''):
    """Header blocks of a PT3 imaging file, as returned in the `meta` of
    :func:`flim_reader.header.read_header`.

    :param resolution: arrival time bin width in ns
    """
    meta = {name: np.zeros(count, dtype=dtype) for name, dtype, count in PT3_BLOCKS}
    header = meta['header']
    header['Ident'] = b'PicoHarp 300'
    header['FormatVersion'] = b'2.0'
    header['CreatorName'] = b'flim_reader'
    header['CRLF'] = b'\r\n'
    header['Comment'] = comment.encode()
    header['BitsPerRecord'] = 32
    header['MeasurementMode'] = 3
    meta['hardware']['HardwareIdent'] = b'PicoHarp 300'
    meta['hardware']['Resolution'] = resolution
    imghdr = np.zeros(len(PT3_IMGHDR_NAMES), dtype='<i4')
    imghdr[0] = 2  # dimensions
    imghdr[2] = frame_marker
    imghdr[3] = line_start
    imghdr[4] = line_stop
    imghdr[6] = pix_x
    imghdr[7] = pix_y
    meta['imghdr'] = imghdr
    meta['ttmode']['ImgHdrSize'] = imghdr.size
    return meta


def write_pt3(meta, t3records, filename):
    """Write PicoHarp T3 records to a .pt3 file

    :param meta: header blocks, from :func:`pt3_meta` or the meta dictionary
        of :func:`flim_reader.header.read_header`
    :param t3records: uint32 T3 records
    :param filename: Output filename
    """
    t3records = np.asarray(t3records, dtype='<u4')
    with open(filename, 'wb') as f:
        for name, dtype, count in PT3_BLOCKS:
            block = np.array(meta[name], dtype=dtype)
            if name == 'ttmode':
                block['nRecords'] = t3records.size
                block['ImgHdrSize'] = len(meta['imghdr'])
            f.write(block.tobytes())
        f.write(np.asarray(meta['imghdr'], dtype='<i4').tobytes())
        f.write(t3records.tobytes())


def _ptu_tag(name, value, idx=-1):
    if isinstance(value, bool):
        return struct.pack('<32s i I q', name.encode(), idx,
                           _ptu_tag_type['tyBool8'], int(value))
    if isinstance(value, (int, np.integer)):
        return struct.pack('<32s i I q', name.encode(), idx,
                           _ptu_tag_type['tyInt8'], int(value))
    if isinstance(value, float):
        bits = struct.unpack('<q', struct.pack('<d', value))[0]
        return struct.pack('<32s i I q', name.encode(), idx,
                           _ptu_tag_type['tyFloat8'], bits)
    # strings are padded to a multiple of 8 bytes
    data = value.encode()
    data += b'\0' * (8 - len(data) % 8)
    return struct.pack('<32s i I q', name.encode(), idx,
                       _ptu_tag_type['tyAnsiString'], len(data)) + data


def write_ptu(filename, t3records, record_type, pix_x, pix_y, resolution,
              line_start=1, line_stop=2, frame_marker=4, pixel_size=None,
              extra_tags=()):
    """Write T3 records to a .ptu imaging file.

    :param record_type: PTU record type name, e.g. 'rtPicoHarpT3'
    :param resolution: arrival time bin width in s, as stored in PTU files
    :param pixel_size: pixel size in um, the tag is omitted when None
    :param extra_tags: additional (name, value) tags, `value` being a bool,
        int, float or str
    """
    t3records = np.asarray(t3records, dtype='<u4')
    tags = [
        ('File_Comment', 'flim_reader'),
        ('TTResultFormat_TTTRRecType', _ptu_rec_type[record_type]),
        ('TTResult_NumberOfRecords', t3records.size),
        ('MeasDesc_Resolution', float(resolution)),
        ('ImgHdr_Dimensions', 3),
        ('ImgHdr_PixX', pix_x),
        ('ImgHdr_PixY', pix_y),
        ('ImgHdr_LineStart', line_start),
        ('ImgHdr_LineStop', line_stop),
        ('ImgHdr_Frame', frame_marker),
    ]
    if pixel_size is not None:
        tags.append(('ImgHdr_PixResol', float(pixel_size)))
    tags.extend(extra_tags)
    with open(filename, 'wb') as f:
        f.write(b'PQTTTR\0\0' + b'1.0.00\0\0')
        for name, value in tags:
            f.write(_ptu_tag(name, value))
        f.write(struct.pack('<32s i I q', b'Header_End', -1,
                            _ptu_tag_type['tyEmpty8'], 0))
        f.write(t3records.tobytes())
