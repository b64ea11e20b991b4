"""
PDF objects reserving room for a signature in the output file, and the
logic to digest the signed byte range and fill in the reserved region
afterwards.

Both placeholders are written with a fixed width, so their final values can
be written over them in place without shifting any offsets.
"""

import binascii
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from cryptography.hazmat.primitives import hashes

from ..pdf_utils import generic
from ..pdf_utils.generic import pdf_date, pdf_name, pdf_string
from .errors import SignatureTooLarge
from .general import get_pyca_cryptography_hash

__all__ = [
    'SigByteRangeObject', 'DERPlaceholder', 'SignatureObject',
    'PreparedByteRangeDigest', 'DEFAULT_BYTES_RESERVED',
]

# size of the DER-encoded CMS object that fits in the placeholder;
# it is written out in hex, so twice as many characters are reserved
DEFAULT_BYTES_RESERVED = 32 * 1024


class SigByteRangeObject(generic.PdfObject):

    def __init__(self):
        self._filled = False
        self._range_object_offset = None
        self.first_region_len = 0
        self.second_region_offset = 0
        self.second_region_len = 0

    def fill_offsets(self, stream, sig_start, sig_end, eof):
        if self._filled:
            raise ValueError('Offsets already filled')  # pragma: nocover
        if self._range_object_offset is None:
            raise ValueError(
                'Could not determine where to write /ByteRange value'
            )  # pragma: nocover

        old_seek = stream.tell()
        self.first_region_len = sig_start
        self.second_region_offset = sig_end
        self.second_region_len = eof - sig_end
        # fixed width, so we can just write over it
        stream.seek(self._range_object_offset)
        self.write_to_stream(stream)

        stream.seek(old_seek)
        self._filled = True

    def as_tuple(self):
        return (
            0, self.first_region_len,
            self.second_region_offset, self.second_region_len
        )

    def write_to_stream(self, stream):
        if self._range_object_offset is None:
            self._range_object_offset = stream.tell()
        string_repr = "[ %08d %08d %08d %08d ]" % self.as_tuple()
        stream.write(string_repr.encode('ascii'))


class DERPlaceholder(generic.PdfObject):
    """
    Hex string of zeroes standing in for the CMS object.

    :param bytes_reserved:
        Number of DER bytes to make room for.
    """

    def __init__(self, bytes_reserved: Optional[int] = None):
        self.bytes_reserved = bytes_reserved or DEFAULT_BYTES_RESERVED
        self.value = b'0' * (2 * self.bytes_reserved)
        self._offsets = None

    @property
    def offsets(self):
        """
        Offset of the opening ``<`` and the offset just after the closing
        ``>`` in the output stream.
        """
        if self._offsets is None:
            raise ValueError('No offsets available')  # pragma: nocover
        return self._offsets

    def write_to_stream(self, stream):
        start = stream.tell()
        stream.write(b'<')
        stream.write(self.value)
        stream.write(b'>')
        end = stream.tell()
        if self._offsets is None:
            self._offsets = start, end


class SignatureObject(generic.DictionaryObject):
    """
    Signature dictionary with placeholders for ``/ByteRange`` and
    ``/Contents``.

    :param timestamp:
        The signing time to put in the ``/M`` entry.
    :param name:
        Signer name.
    :param reason:
        Signing reason.
    :param bytes_reserved:
        Number of DER bytes to reserve for the CMS object.
    """

    def __init__(self, timestamp: Optional[datetime] = None, name=None,
                 reason=None, location=None, bytes_reserved=None):
        super().__init__()
        self.update({
            pdf_name('/Type'): pdf_name('/Sig'),
            pdf_name('/Filter'): pdf_name('/Adobe.PPKLite'),
            pdf_name('/SubFilter'): pdf_name('/ETSI.CAdES.detached'),
        })
        if timestamp is not None:
            self[pdf_name('/M')] = pdf_date(timestamp)
        if name:
            self[pdf_name('/Name')] = pdf_string(name)
        if location:
            self[pdf_name('/Location')] = pdf_string(location)
        if reason:
            self[pdf_name('/Reason')] = pdf_string(reason)
        self[pdf_name('/Contents')] = self.contents = \
            DERPlaceholder(bytes_reserved=bytes_reserved)
        self[pdf_name('/ByteRange')] = self.byte_range = SigByteRangeObject()

    def fill_byte_range(self, output, md_algorithm='sha256') \
            -> 'PreparedByteRangeDigest':
        """
        Fill in the ``/ByteRange`` of a signature dictionary that was just
        written to ``output``, and digest everything but the placeholder.

        :param output:
            A :class:`io.BytesIO` holding the complete output document,
            with its position at the end of the file.
        """
        eof = output.seek(0, 2)
        sig_start, sig_end = self.contents.offsets
        self.byte_range.fill_offsets(output, sig_start, sig_end, eof)

        md = hashes.Hash(get_pyca_cryptography_hash(md_algorithm))
        output_buffer = output.getbuffer()
        # memoryview slices, no copies
        md.update(output_buffer[:sig_start])
        md.update(output_buffer[sig_end:eof])
        output_buffer.release()
        return PreparedByteRangeDigest(
            document_digest=md.finalize(), md_algorithm=md_algorithm,
            document_handle=output, reserved_region_start=sig_start,
            reserved_region_end=sig_end,
        )


@dataclass(frozen=True)
class PreparedByteRangeDigest:
    document_digest: bytes
    md_algorithm: str
    document_handle: object
    reserved_region_start: int
    reserved_region_end: int

    @property
    def byte_range(self):
        eof = self.document_handle.seek(0, 2)
        return (
            0, self.reserved_region_start, self.reserved_region_end,
            eof - self.reserved_region_end
        )

    def fill_reserved_region(self, der_bytes: bytes):
        """
        Write the hex-encoded CMS object over the placeholder.

        :raises SignatureTooLarge:
            if it does not fit.
        """
        der_hex = binascii.hexlify(der_bytes).upper()
        start = self.reserved_region_start
        end = self.reserved_region_end
        # minus the angle brackets
        hex_reserved = end - start - 2
        if len(der_hex) > hex_reserved:
            raise SignatureTooLarge(
                f"Final DER payload larger than expected: "
                f"allocated {hex_reserved // 2} bytes, but the signature "
                f"requires {len(der_bytes)} bytes."
            )
        output = self.document_handle
        # +1 to skip the '<'
        output.seek(start + 1)
        output.write(der_hex)
        output.seek(0)
