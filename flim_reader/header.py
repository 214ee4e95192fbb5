#
# phconvert - Reference library to read and save Photon-HDF5 files
#
# Copyright (C) 2014-2015 Antonino Ingargiola <tritemio@gmail.com>
#
"""
This module reads the headers of PicoQuant .ptu and .pt3 files and turns
them into the acquisition configuration used by the record decoder.

"""

import logging
import os
import struct
import time
from collections import OrderedDict
from typing import NamedTuple

import numpy as np

from . import __version__
from .errors import ConfigurationError, FormatError

log = logging.getLogger(__name__)

# Record formats understood by the decoder
PICOHARP_T3 = 0
HYDRAHARP_T3 = 1

# Constants used to decode the PQ file headers
# Tag Types
_ptu_tag_type = dict(
    tyEmpty8=0xFFFF0008,
    tyBool8=0x00000008,
    tyInt8=0x10000008,
    tyBitSet64=0x11000008,
    tyColor8=0x12000008,
    tyFloat8=0x20000008,
    tyTDateTime=0x21000008,
    tyFloat8Array=0x2001FFFF,
    tyAnsiString=0x4001FFFF,
    tyWideString=0x4002FFFF,
    tyBinaryBlob=0xFFFFFFFF,
)

# Record Types
_ptu_rec_type = dict(
    rtPicoHarpT3=0x00010303,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $03 (T3), HW: $03 (PicoHarp)
    rtPicoHarpT2=0x00010203,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $02 (T2), HW: $03 (PicoHarp)
    rtHydraHarpT3=0x00010304,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $03 (T3), HW: $04 (HydraHarp)
    rtHydraHarpT2=0x00010204,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $02 (T2), HW: $04 (HydraHarp)
    rtHydraHarp2T3=0x01010304,  # (SubID = $01 ,RecFmt: $01) (V2), T-Mode: $03 (T3), HW: $04 (HydraHarp)
    rtHydraHarp2T2=0x01010204,  # (SubID = $01 ,RecFmt: $01) (V2), T-Mode: $02 (T2), HW: $04 (HydraHarp)
    rtTimeHarp260NT3=0x00010305,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $03 (T3), HW: $05 (TimeHarp260N)
    rtTimeHarp260NT2=0x00010205,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $02 (T2), HW: $05 (TimeHarp260N)
    rtTimeHarp260PT3=0x00010306,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $03 (T3), HW: $06 (TimeHarp260P)
    rtTimeHarp260PT2=0x00010206,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $02 (T2), HW: $06 (TimeHarp260P)
    rtMultiHarpNT3=0x00010307,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $03 (T3), HW: $07 (MultiHarp150N)
    rtMultiHarpNT2=0x00010207,  # (SubID = $00 ,RecFmt: $01) (V1), T-Mode: $02 (T2), HW: $07 (MultiHarp150N)
)

# T3 record types -> (record format, format version)
_t3_formats = {
    'rtPicoHarpT3': (PICOHARP_T3, 1),
    'rtHydraHarpT3': (HYDRAHARP_T3, 1),
    'rtHydraHarp2T3': (HYDRAHARP_T3, 2),
    'rtTimeHarp260NT3': (HYDRAHARP_T3, 2),
    'rtTimeHarp260PT3': (HYDRAHARP_T3, 2),
    'rtMultiHarpNT3': (HYDRAHARP_T3, 2),
}

# Reverse mappings
_ptu_tag_type_r = {v: k for k, v in _ptu_tag_type.items()}
_ptu_rec_type_r = {v: k for k, v in _ptu_rec_type.items()}


class AcquisitionConfig(NamedTuple):
    """Everything the decoder needs to know about an acquisition."""
    record_type: str
    record_format: int
    version: int
    pix_x: int
    pix_y: int
    pixel_size: float  # um, 0 when uncalibrated
    time_resolution: float  # ns per arrival time bin
    line_start: int
    line_stop: int
    frame_marker: int  # -1 when unset
    n_records: int

    @property
    def frame_marker_present(self):
        return self.frame_marker > 2


def record_format_of(record_type):
    """Return ``(record_format, version)`` for a record type name.

    T2 and unknown record types raise :class:`FormatError`.
    """
    if record_type in _t3_formats:
        return _t3_formats[record_type]
    if record_type.endswith('T2'):
        raise FormatError('Decoding "%s" is not supported, only T3 (imaging) '
                          'records can be reconstructed.' % record_type)
    raise FormatError('Sorry, decoding "%s" record type is not implemented!' %
                      record_type)


def _clamp_marker_codes(record_format, line_start, line_stop, frame_marker):
    """Marker codes above 2 are read as 4.

    Compatibility shim carried over from the ImageJ PTU reader, where
    marker values above 2 were found to decode wrongly. Not validated
    against all hardware.
    """
    codes = (line_start, line_stop, frame_marker)
    if line_start > 2:
        line_start = 4
    if line_stop > 2:
        line_stop = 4
    if frame_marker > 2 and record_format == PICOHARP_T3:
        frame_marker = 4
    if codes != (line_start, line_stop, frame_marker):
        log.warning("Marker codes %s remapped to %s, this is not validated "
                    "for all hardware.", codes,
                    (line_start, line_stop, frame_marker))
    return line_start, line_stop, frame_marker


def make_config(record_type, pix_x, pix_y, time_resolution, line_start,
                line_stop, frame_marker=-1, n_records=0, pixel_size=0.):
    """Build an :class:`AcquisitionConfig` from raw header values.

    Applies the marker code remapping and validates the image geometry.
    """
    record_format, version = record_format_of(record_type)
    if pix_x is None or pix_y is None or pix_x <= 0 or pix_y <= 0:
        raise ConfigurationError("Not a FLIM image file: no pixel geometry "
                                 "in the header.")
    if line_start is None or line_stop is None:
        raise ConfigurationError("Not a FLIM image file: no line markers "
                                 "in the header.")
    if frame_marker is None:
        frame_marker = -1
    line_start, line_stop, frame_marker = _clamp_marker_codes(
        record_format, int(line_start), int(line_stop), int(frame_marker))
    return AcquisitionConfig(
        record_type=record_type,
        record_format=record_format,
        version=version,
        pix_x=int(pix_x),
        pix_y=int(pix_y),
        pixel_size=float(pixel_size or 0.),
        time_resolution=float(time_resolution or 0.),
        line_start=line_start,
        line_stop=line_stop,
        frame_marker=frame_marker,
        n_records=int(n_records),
    )


def read_header(filename):
    """Read the header and the raw t3 records of a .ptu or .pt3 file.

    Returns:
        A tuple ``(t3records, config, meta)``: the records as an uint32
        array, the :class:`AcquisitionConfig` and a metadata dictionary
        with the keys 'info' (acquisition info text), 'tags' (PTU) or the
        PT3 header blocks.
    """
    assert os.path.isfile(filename), "File '%s' not found." % filename
    _, ext = os.path.splitext(filename)
    ext = ext.lower()
    if ext == '.ptu':
        return _load_ptu(filename)
    elif ext == '.pt3':
        return _load_pt3(filename)
    raise FormatError('Only ptu and pt3 format files are supported, got "%s".' % ext)


def _info_prefix():
    return 'PTU_Reader v.%s\n' % __version__


def _load_ptu(filename):
    t3records, tags = _ptu_reader(filename)

    if 'TTResultFormat_TTTRRecType' not in tags:
        raise FormatError("No record type in the header of '%s'." % filename)
    rec_value = _tag_value(tags, 'TTResultFormat_TTTRRecType')
    if rec_value not in _ptu_rec_type_r:
        raise FormatError('Invalid record type 0x%08X.' % rec_value)
    record_type = _ptu_rec_type_r[rec_value]
    log.info("Record type: %s", record_type)

    resolution = _tag_value(tags, 'MeasDesc_Resolution')
    config = make_config(
        record_type,
        pix_x=_tag_value(tags, 'ImgHdr_PixX'),
        pix_y=_tag_value(tags, 'ImgHdr_PixY'),
        time_resolution=resolution * 1e9 if resolution is not None else 0.,
        line_start=_tag_value(tags, 'ImgHdr_LineStart'),
        line_stop=_tag_value(tags, 'ImgHdr_LineStop'),
        frame_marker=_tag_value(tags, 'ImgHdr_Frame'),
        n_records=t3records.size,
        pixel_size=_tag_value(tags, 'ImgHdr_PixResol'),
    )
    meta = {'info': _info_prefix() + _ptu_tags_to_text(tags),
            'record_type': record_type,
            'tags': tags}
    return t3records, config, meta


def _load_pt3(filename):
    t3records, meta = _pt3_reader(filename)
    imghdr = meta['imghdr']
    config = make_config(
        'rtPicoHarpT3',
        pix_x=int(imghdr[6]),
        pix_y=int(imghdr[7]),
        time_resolution=float(meta['hardware']['Resolution'][0]),
        line_start=int(imghdr[3]),
        line_stop=int(imghdr[4]),
        frame_marker=int(imghdr[2]),
        n_records=t3records.size,
    )
    meta['info'] = _info_prefix() + _pt3_header_to_text(meta)
    meta['record_type'] = 'rtPicoHarpT3'
    return t3records, config, meta


def _tag_value(tags, name, default=None):
    """Value of the first tag called `name`."""
    tag = tags.get(name)
    if tag is None:
        return default
    if isinstance(tag, list):
        tag = tag[0]
    return tag['value']


def _ptu_reader(filename):
    """Read the header and the raw t3 records from a PTU file.
    """
    # All the info about the PTU format has been inferred from PicoQuant demo:
    # https://github.com/PicoQuant/PicoQuant-Time-Tagged-File-Format-Demos/blob/master/PTU/C/ptudemo.cc

    # Load only the first few bytes to see is file is valid
    with open(filename, 'rb') as f:
        magic = f.read(8).rstrip(b'\0')
        version = f.read(8).rstrip(b'\0')
    if magic != b'PQTTTR':
        raise FormatError("This file is not a valid PTU file. "
                          "Magic: '%s'." % magic)
    log.info("Tag version: %s", version.decode(errors='replace'))

    # Now load the entire file
    with open(filename, 'rb') as f:
        s = f.read()
    tags, offset = _read_header_tags(s)

    num_records = _tag_value(tags, 'TTResult_NumberOfRecords', 0)
    available = (len(s) - offset) // 4
    if num_records > available:
        log.warning("Header announces %d records but the file holds %d, "
                    "reading what is there.", num_records, available)
        num_records = available
    # A view of the t3records as a numpy array (no new memory is allocated)
    t3records = np.frombuffer(s, dtype='<u4', count=num_records,
                              offset=offset)
    return t3records, tags


def _read_header_tags(s):
    """Read the header tags and return an OrderedDict.

    Each item in `tags` is a dict as returned by _ptu_read_tag().
    The input `s` is a binary-string containing the raw binary data file.
    """
    offset = 16  # initial bytes to skip
    FileTagEnd = "Header_End"  # Last tag of the header (BLOCKEND)
    if s.find(FileTagEnd.encode()) < 0:
        raise FormatError("PTU header has no '%s' tag." % FileTagEnd)

    tags = OrderedDict()
    tagname = None
    while tagname != FileTagEnd:
        if offset + 48 > len(s):
            raise FormatError("PTU header is truncated.")
        tagname, tag, offset = _ptu_read_tag(s, offset)
        # In case a `tagname` appears multiple times, we make a list
        # to hold all the tags with the same name
        if tagname in tags.keys():
            if not isinstance(tags[tagname], list):
                tags[tagname] = [tags[tagname]]
            tags[tagname].append(tag)
        else:
            tags[tagname] = tag
    return tags, offset


def _ptu_read_tag(s, offset):
    """Decode a single tag from the PTU header struct.

    Returns:
        A dict with tag data. The keys 'idx', 'type' and 'value' are present
        in all tags. The key 'data' is present only for a few types of tags.
    """
    # Struct fields: 32-char string, int32, uint32, int64
    tag_struct = struct.unpack('<32s i I q', s[offset:offset + 48])
    offset += 48
    # and save it into a dict
    tagname = tag_struct[0].rstrip(b'\0').decode(errors='replace')
    keys = ('idx', 'type', 'value')
    tag = {k: v for k, v in zip(keys, tag_struct[1:])}
    tag['offset'] = offset
    # Recover the name of the type (a string)
    if tag['type'] not in _ptu_tag_type_r:
        raise FormatError("Unknown type 0x%08X for tag '%s'." %
                          (tag['type'], tagname))
    tag['type'] = _ptu_tag_type_r[tag['type']]

    # Some tag types need conversion
    if tag['type'] == 'tyFloat8':
        tag['value'] = float(np.int64(tag['value']).view('float64'))
    elif tag['type'] == 'tyBool8':
        tag['value'] = bool(tag['value'])
    elif tag['type'] == 'tyTDateTime':
        TDateTime = np.int64(tag['value']).view('float64')
        t = time.gmtime(_ptu_TDateTime_to_time_t(TDateTime))
        tag['value'] = time.strftime("%Y-%m-%d %H:%M:%S", t)

    # Some tag types have additional data
    if tag['type'] == 'tyAnsiString':
        byte_string = s[offset: offset + tag['value']].rstrip(b'\0')
        try:
            tag['data'] = byte_string.decode()  # try decoding from UTF-8
        except UnicodeDecodeError:
            # Not UTF-8, trying 'latin1'
            # See https://github.com/Photon-HDF5/phconvert/issues/35
            tag['data'] = byte_string.decode('latin1')
        offset += tag['value']
    elif tag['type'] == 'tyFloat8Array':
        tag['data'] = np.frombuffer(s, dtype='<f8', count=tag['value'] // 8,
                                    offset=offset)
        offset += tag['value']
    elif tag['type'] == 'tyWideString':
        # the value is the length in bytes of an UTF-16 string
        tag['data'] = s[offset: offset + tag['value']].decode('utf-16-le').rstrip('\0')
        offset += tag['value']
    elif tag['type'] == 'tyBinaryBlob':
        tag['data'] = s[offset: offset + tag['value']]
        offset += tag['value']
    return tagname, tag, offset


def _ptu_TDateTime_to_time_t(TDateTime):
    """Convert the weird time encoding used in PTU files to standard time_t."""
    EpochDiff = 25569  # days between 30/12/1899 and 01/01/1970
    SecsInDay = 86400  # number of seconds in a day
    return (TDateTime - EpochDiff) * SecsInDay


def _ptu_tags_to_text(tags):
    """One ``name(idx): value`` line per tag, in header order."""
    lines = []
    for name, tag_list in tags.items():
        if not isinstance(tag_list, list):
            tag_list = [tag_list]
        for tag in tag_list:
            label = '%s(%d)' % (name, tag['idx']) if tag['idx'] > -1 else name
            if tag['type'] == 'tyEmpty8':
                value = '<Empty>'
            elif tag['type'] in ('tyAnsiString', 'tyWideString'):
                value = tag['data']
            elif tag['type'] == 'tyFloat8Array':
                value = '<Float array with %d entries>' % tag['data'].size
            elif tag['type'] == 'tyBinaryBlob':
                value = '<Binary Blob with %d bytes>' % tag['value']
            elif tag['type'] == 'tyBool8':
                value = 'TRUE' if tag['value'] else 'FALSE'
            else:
                value = str(tag['value'])
            lines.append('%s: %s' % (label, value))
    return '\n'.join(lines) + '\n'


# PT3 header blocks, in file order: (name, dtype, count)
_pt3_header_dtype = np.dtype([
    ('Ident', 'S16'),
    ('FormatVersion', 'S6'),
    ('CreatorName', 'S18'),
    ('CreatorVersion', 'S12'),
    ('FileTime', 'S18'),
    ('CRLF', 'S2'),
    ('Comment', 'S256'),
    ('NumberOfCurves', '<i4'),
    ('BitsPerRecord', '<i4'),  # bits in each T3 record
    ('RoutingChannels', '<i4'),
    ('NumberOfBoards', '<i4'),
    ('ActiveCurve', '<i4'),
    ('MeasurementMode', '<i4'),
    ('SubMode', '<i4'),
    ('RangeNo', '<i4'),
    ('Offset', '<i4'),
    ('AcquisitionTime', '<i4'),  # in ms
    ('StopAt', '<u4'),
    ('StopOnOvfl', '<i4'),
    ('Restart', '<i4'),
    ('DispLinLog', '<i4'),
    ('DispTimeAxisFrom', '<i4'),
    ('DispTimeAxisTo', '<i4'),
    ('DispCountAxisFrom', '<i4'),
    ('DispCountAxisTo', '<i4'),
])

_pt3_dispcurve_dtype = np.dtype([
    ('DispCurveMapTo', '<i4'),
    ('DispCurveShow', '<i4')])

_pt3_params_dtype = np.dtype([
    ('ParamStart', '<f4'),
    ('ParamStep', '<f4'),
    ('ParamEnd', '<f4')])

_pt3_repeat_dtype = np.dtype([
    ('RepeatMode', '<i4'),
    ('RepeatsPerCurve', '<i4'),
    ('RepeatTime', '<i4'),
    ('RepeatWaitTime', '<i4'),
    ('ScriptName', 'S20')])

# Hardware information header
_pt3_hw_dtype = np.dtype([
    ('HardwareIdent', 'S16'),
    ('HardwarePartNo', 'S8'),
    ('HardwareSerial', '<i4'),
    ('SyncDivider', '<i4'),
    ('CFDZeroCross0', '<i4'),
    ('CFDLevel0', '<i4'),
    ('CFDZeroCross1', '<i4'),
    ('CFDLevel1', '<i4'),
    ('Resolution', '<f4'),  # in ns
    ('RouterModelCode', '<i4'),
    ('RouterEnabled', '<i4')])

_pt3_rtr_dtype = np.dtype([
    ('InputType', '<i4'),
    ('InputLevel', '<i4'),
    ('InputEdge', '<i4'),
    ('CFDPresent', '<i4'),
    ('CFDLevel', '<i4'),
    ('CFDZCross', '<i4')])

# Time tagging mode specific header
_pt3_ttmode_dtype = np.dtype([
    ('ExtDevices', '<i4'),
    ('Reserved1', '<i4'),
    ('Reserved2', '<i4'),
    ('InpRate0', '<i4'),
    ('InpRate1', '<i4'),
    ('StopAfter', '<i4'),
    ('StopReason', '<i4'),
    ('nRecords', '<i4'),
    ('ImgHdrSize', '<i4')])

PT3_BLOCKS = (
    ('header', _pt3_header_dtype, 1),
    ('dispcurve', _pt3_dispcurve_dtype, 8),
    ('params', _pt3_params_dtype, 3),
    ('repeatgroup', _pt3_repeat_dtype, 1),
    ('hardware', _pt3_hw_dtype, 1),
    ('router', _pt3_rtr_dtype, 4),
    ('ttmode', _pt3_ttmode_dtype, 1),
)

# Names of the first words of the imaging header
PT3_IMGHDR_NAMES = ('Dimensions', 'IdentImg', 'Frame', 'LineStart', 'LineStop',
                    'Pattern', 'PixX', 'PixY')


def _pt3_reader(filename):
    """Load raw t3 records and metadata from a PT3 file.
    """
    metadata = {}
    with open(filename, 'rb') as f:
        for name, dtype, count in PT3_BLOCKS:
            block = np.fromfile(f, dtype=dtype, count=count)
            if block.size < count:
                raise FormatError("PT3 header is truncated in the '%s' block."
                                  % name)
            metadata[name] = block
            if name == 'header':
                version = block['FormatVersion'][0].decode(errors='replace').strip()
                if version != '2.0':
                    raise FormatError(("Format '%s' not supported. "
                                       "Only valid format is '2.0'.") % version)

        # Special header for imaging. How many of the following ImgHdr
        # array elements are actually present in the file is indicated by
        # ImgHdrSize above.
        ttmode = metadata['ttmode']
        img_hdr_size = int(ttmode['ImgHdrSize'][0])
        if img_hdr_size < len(PT3_IMGHDR_NAMES):
            raise ConfigurationError("Not a FLIM image file: imaging header "
                                     "has %d words." % img_hdr_size)
        metadata['imghdr'] = np.fromfile(f, dtype='<i4', count=img_hdr_size)

        # The remainings are all T3 records
        num_records = int(ttmode['nRecords'][0])
        t3records = np.fromfile(f, dtype='<u4', count=num_records)
        if t3records.size < num_records:
            log.warning("Header announces %d records but the file holds %d, "
                        "reading what is there.", num_records, t3records.size)
    return t3records, metadata


def _pt3_header_to_text(meta):
    """One ``name: value`` line per scalar field of the PT3 header blocks."""
    lines = []
    for block in ('header', 'hardware', 'ttmode'):
        record = meta[block][0]
        for name in record.dtype.names:
            value = record[name]
            if isinstance(value, bytes):
                value = value.rstrip(b'\0').decode(errors='replace').strip()
            lines.append('%s: %s' % (name, value))
    for name, value in zip(PT3_IMGHDR_NAMES, meta['imghdr']):
        lines.append('%s: %d' % (name, value))
    return '\n'.join(lines) + '\n'
