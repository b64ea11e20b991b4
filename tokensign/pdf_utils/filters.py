"""
Stream filters needed to read cross-reference streams, object streams and
to compress the streams we write ourselves.
"""
import binascii
import zlib

from .misc import PdfReadError

__all__ = ['Decoder', 'FlateDecode', 'ASCIIHexDecode', 'DECODERS']


class Decoder:

    @classmethod
    def decode(cls, data: bytes, decode_params) -> bytes:
        raise NotImplementedError

    @classmethod
    def encode(cls, data: bytes) -> bytes:
        raise NotImplementedError


def _paeth(left, up, up_left):
    p = left + up - up_left
    pa, pb, pc = abs(p - left), abs(p - up), abs(p - up_left)
    if pa <= pb and pa <= pc:
        return left
    elif pb <= pc:
        return up
    return up_left


def _png_decode(data: memoryview, columns: int, bpp: int = 1) -> bytes:
    rowlength = columns + 1
    if len(data) % rowlength:
        raise PdfReadError("PNG-predicted data has an invalid length")

    output = bytearray()
    prev_row = bytearray(columns)
    for row_start in range(0, len(data), rowlength):
        filter_byte = data[row_start]
        row = bytearray(data[row_start + 1:row_start + rowlength])
        for i in range(columns):
            left = row[i - bpp] if i >= bpp else 0
            up = prev_row[i]
            if filter_byte == 0:
                continue
            elif filter_byte == 1:
                row[i] = (row[i] + left) % 256
            elif filter_byte == 2:
                row[i] = (row[i] + up) % 256
            elif filter_byte == 3:
                row[i] = (row[i] + (left + up) // 2) % 256
            elif filter_byte == 4:
                up_left = prev_row[i - bpp] if i >= bpp else 0
                row[i] = (row[i] + _paeth(left, up, up_left)) % 256
            else:
                raise PdfReadError(f"Unsupported PNG filter {filter_byte!r}")
        output.extend(row)
        prev_row = row
    return bytes(output)


class FlateDecode(Decoder):

    @classmethod
    def decode(cls, data: bytes, decode_params):
        try:
            data = zlib.decompress(data)
        except zlib.error as e:
            raise PdfReadError(f"Failed to inflate stream: {e}") from e
        predictor = 1
        if decode_params:
            predictor = decode_params.get('/Predictor', 1)

        # predictor 1 == no predictor
        if predictor == 1:
            return data

        columns = decode_params.get('/Columns', 1)
        if 10 <= predictor <= 15:
            return _png_decode(memoryview(data), columns)
        raise PdfReadError(f"Unsupported flatedecode predictor {predictor!r}")

    @classmethod
    def encode(cls, data):
        return zlib.compress(data)


class ASCIIHexDecode(Decoder):

    @classmethod
    def encode(cls, data: bytes) -> bytes:
        return binascii.hexlify(data) + b'>'

    @classmethod
    def decode(cls, data, decode_params=None):
        digits = bytearray()
        for c in data:
            if c == ord('>'):
                break
            if not bytes((c,)).isspace():
                digits.append(c)
        if len(digits) % 2:
            digits.append(ord('0'))
        return binascii.unhexlify(bytes(digits))


DECODERS = {
    '/FlateDecode': FlateDecode,
    '/Fl': FlateDecode,
    '/ASCIIHexDecode': ASCIIHexDecode,
    '/AHx': ASCIIHexDecode,
}
