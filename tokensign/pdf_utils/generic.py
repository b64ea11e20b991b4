"""
Implementation of generic PDF objects (dictionary, number, string, and so on),
together with the tokeniser that reads them from a byte stream.

Only the features needed to read a document's object graph and to serialise
the objects added during an incremental update are supported; in particular,
there is no support for encrypted objects.
"""
import binascii
import codecs
import decimal
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Optional, Tuple

from . import filters
from .misc import (
    PdfReadError,
    PdfStreamError,
    read_non_whitespace,
    read_until_regex,
    skip_over_comment,
)

__all__ = [
    'PdfObject', 'NullObject', 'BooleanObject', 'ArrayObject',
    'IndirectObject', 'FloatObject', 'NumberObject', 'pdf_name', 'pdf_string',
    'ByteStringObject', 'TextStringObject', 'NameObject', 'DictionaryObject',
    'StreamObject', 'read_object', 'pdf_date', 'Reference',
]

logger = logging.getLogger(__name__)

OBJECT_PREFIXES = b'/<[tf(n%'
NUMBER_SIGNS = b'+-'
INDIRECT_PATTERN = re.compile(rb"(\d+)\s+(\d+)\s+R[^a-zA-Z]")


@dataclass(frozen=True)
class Reference:
    """
    A reference to an indirect object, together with the handler
    (reader or writer) that is able to resolve it.
    """

    idnum: int
    generation: int = 0
    pdf: object = field(repr=False, hash=False, compare=False, default=None)

    def get_object(self):
        return self.pdf.get_object(self)


def read_object(stream, pdf) -> 'PdfObject':
    tok = stream.read(1)
    stream.seek(-1, os.SEEK_CUR)
    idx = OBJECT_PREFIXES.find(tok) if tok else -1
    if idx == 0:
        return NameObject.read_from_stream(stream)
    elif idx == 1:
        # hexadecimal string OR dictionary
        peek = stream.read(2)
        stream.seek(-2, os.SEEK_CUR)
        if peek == b'<<':
            return DictionaryObject.read_from_stream(stream, pdf)
        return read_hex_string_from_stream(stream)
    elif idx == 2:
        return ArrayObject.read_from_stream(stream, pdf)
    elif idx == 3 or idx == 4:
        return BooleanObject.read_from_stream(stream)
    elif idx == 5:
        return read_string_from_stream(stream)
    elif idx == 6:
        return NullObject.read_from_stream(stream)
    elif idx == 7:
        skip_over_comment(stream)
        read_non_whitespace(stream, seek_back=True)
        return read_object(stream, pdf)
    elif not tok:
        raise PdfStreamError("Stream has ended unexpectedly")
    if tok not in NUMBER_SIGNS:
        peek = stream.read(20)
        stream.seek(-len(peek), os.SEEK_CUR)
        if INDIRECT_PATTERN.match(peek) is not None:
            return IndirectObject.read_from_stream(stream, pdf)
    return NumberObject.read_from_stream(stream)


class PdfObject:

    def get_object(self):
        """Resolves indirect references."""
        return self

    def write_to_stream(self, stream):
        raise NotImplementedError


class NullObject(PdfObject):

    def write_to_stream(self, stream):
        stream.write(b"null")

    @staticmethod
    def read_from_stream(stream):
        nulltxt = stream.read(4)
        if nulltxt != b"null":
            raise PdfReadError("Could not read Null object")
        return NullObject()

    def __eq__(self, other):
        return self is other or isinstance(other, NullObject)

    def __hash__(self):
        return hash(None)

    def __bool__(self):
        return False


class BooleanObject(PdfObject):
    def __init__(self, value):
        self.value = value

    def write_to_stream(self, stream):
        stream.write(b"true" if self.value else b"false")

    @staticmethod
    def read_from_stream(stream):
        word = stream.read(4)
        if word == b"true":
            return BooleanObject(True)
        elif word == b"fals" and stream.read(1) == b"e":
            return BooleanObject(False)
        raise PdfReadError('Could not read Boolean object')

    def __eq__(self, other):
        if isinstance(other, BooleanObject):
            return self.value == other.value
        return self.value == other

    def __hash__(self):
        return hash(self.value)

    def __bool__(self):
        return bool(self.value)


class ArrayObject(list, PdfObject):
    """
    PDF array. Items are not dereferenced automatically.
    """

    def write_to_stream(self, stream):
        stream.write(b"[")
        for data in self:
            stream.write(b" ")
            data.write_to_stream(stream)
        stream.write(b" ]")

    @staticmethod
    def read_from_stream(stream, pdf):
        arr = ArrayObject()
        if stream.read(1) != b"[":
            raise PdfReadError("Could not read array")
        while True:
            tok = read_non_whitespace(stream)
            if tok == b"]":
                break
            stream.seek(-1, os.SEEK_CUR)
            arr.append(read_object(stream, pdf))
        return arr


class IndirectObject(PdfObject):
    def __init__(self, idnum, generation, pdf):
        self.reference = Reference(idnum, generation, pdf)

    def get_object(self):
        return self.reference.get_object()

    @property
    def idnum(self):
        return self.reference.idnum

    @property
    def generation(self):
        return self.reference.generation

    def __repr__(self):
        return "IndirectObject(%r, %r)" % (self.idnum, self.generation)

    def __hash__(self):
        return hash((self.idnum, self.generation))

    def __eq__(self, other):
        return (
            isinstance(other, IndirectObject)
            and self.idnum == other.idnum
            and self.generation == other.generation
        )

    def write_to_stream(self, stream):
        stream.write(b"%d %d R" % (self.idnum, self.generation))

    @staticmethod
    def read_from_stream(stream, pdf):
        idnum = read_until_regex(stream, _WHITESPACE_PATTERN)
        read_non_whitespace(stream, seek_back=True)
        generation = read_until_regex(stream, _WHITESPACE_PATTERN)
        r = read_non_whitespace(stream)
        if r != b"R":
            raise PdfReadError(
                "Error reading indirect object reference at byte %s"
                % hex(stream.tell())
            )
        return IndirectObject(int(idnum), int(generation), pdf)


_WHITESPACE_PATTERN = re.compile(rb'\s')


class FloatObject(decimal.Decimal, PdfObject):

    def __new__(cls, value="0", context=None):
        try:
            return decimal.Decimal.__new__(cls, str(value), context)
        except (ValueError, decimal.DecimalException):
            return decimal.Decimal.__new__(cls, str(float(value)))

    def __repr__(self):
        if self == self.to_integral():
            return str(self.quantize(decimal.Decimal(1)))
        # no exponents allowed in PDF syntax
        return format(self.normalize(), 'f')

    def as_numeric(self):
        return float(self)

    def write_to_stream(self, stream):
        stream.write(repr(self).encode('ascii'))


class NumberObject(int, PdfObject):
    NumberPattern = re.compile(b'[^+-.0-9]')

    def __new__(cls, value):
        return int.__new__(cls, int(value))

    def as_numeric(self):
        return int(self)

    def write_to_stream(self, stream):
        stream.write(repr(self).encode('ascii'))

    @staticmethod
    def read_from_stream(stream):
        num = read_until_regex(stream, NumberObject.NumberPattern)
        if not num:
            raise PdfReadError(
                "Expected a number at byte %s" % hex(stream.tell())
            )
        if b'.' in num:
            return FloatObject(num.decode('ascii'))
        return NumberObject(num.decode('ascii'))

    def __repr__(self):
        return int.__repr__(self)


def pdf_string(string) -> 'PdfObject':
    """
    Create a text or byte string object, depending on whether the value
    can be interpreted as text.
    """
    if isinstance(string, str):
        return TextStringObject(string)
    elif isinstance(string, (bytes, bytearray)):
        string = bytes(string)
        if string.startswith(codecs.BOM_UTF16_BE):
            try:
                retval = TextStringObject(string[2:].decode('utf-16be'))
            except UnicodeDecodeError:
                return ByteStringObject(string)
        else:
            # approximation of PDFDocEncoding that is exact on the ASCII
            # range, the raw bytes are retained for serialisation anyway
            retval = TextStringObject(string.decode('latin-1'))
        retval.original_bytes = string
        return retval
    raise TypeError("pdf_string should have str or bytes arg")


HEX_DIGITS = b'0123456789abcdefABCDEF'


def read_hex_string_from_stream(stream):
    stream.read(1)
    digits = bytearray()
    while True:
        tok = read_non_whitespace(stream)
        if tok == b">":
            break
        elif tok not in HEX_DIGITS:
            raise PdfStreamError(
                "Unexpected token in hex string: " + repr(tok)
            )
        digits.extend(tok)
    if len(digits) % 2:
        digits.append(ord('0'))
    result = binascii.unhexlify(bytes(digits))
    if result.startswith(codecs.BOM_UTF16_BE):
        return pdf_string(result)
    return ByteStringObject(result)


_ESCAPES = {
    b"n": b"\n", b"r": b"\r", b"t": b"\t", b"b": b"\b", b"f": b"\f",
}


def read_string_from_stream(stream):
    stream.read(1)
    parens = 1
    txt = bytearray()
    while True:
        tok = stream.read(1)
        if not tok:
            raise PdfStreamError("Stream has ended unexpectedly")
        if tok == b"(":
            parens += 1
        elif tok == b")":
            parens -= 1
            if parens == 0:
                break
        elif tok == b"\\":
            tok = stream.read(1)
            if tok in _ESCAPES:
                tok = _ESCAPES[tok]
            elif tok.isdigit():
                # up to three octal digits, overflow ignored
                for _ in range(2):
                    ntok = stream.read(1)
                    if ntok.isdigit():
                        tok += ntok
                    else:
                        stream.seek(-1, os.SEEK_CUR)
                        break
                tok = bytes((int(tok, base=8) % 256,))
            elif tok in b"\n\r":
                # escaped line break, consume a following \n of a CRLF
                if tok == b"\r" and stream.read(1) != b"\n":
                    stream.seek(-1, os.SEEK_CUR)
                tok = b''
            elif not tok:
                raise PdfStreamError("Stream has ended unexpectedly")
            # any other escaped character stands for itself
        txt.extend(tok)
    return pdf_string(bytes(txt))


class ByteStringObject(bytes, PdfObject):

    original_bytes = property(lambda self: bytes(self))

    def write_to_stream(self, stream):
        stream.write(b"<")
        stream.write(binascii.hexlify(self))
        stream.write(b">")


_LITERAL_SAFE = re.compile(rb'[\x20-\x7e]*')


class TextStringObject(str, PdfObject):
    original_bytes: Optional[bytes] = None

    def write_to_stream(self, stream):
        bytearr = self.original_bytes
        if bytearr is None:
            try:
                bytearr = self.encode('ascii')
            except UnicodeEncodeError:
                bytearr = codecs.BOM_UTF16_BE + self.encode('utf-16be')
        if _LITERAL_SAFE.fullmatch(bytearr):
            stream.write(b"(")
            for c in bytearr:
                if c in b'()\\':
                    stream.write(b"\\")
                stream.write(bytes((c,)))
            stream.write(b")")
        else:
            ByteStringObject(bytearr).write_to_stream(stream)


class NameObject(str, PdfObject):
    delimiter_pattern = re.compile(rb"\s+|[()<>\[\]{}/%]")

    def write_to_stream(self, stream):
        encoded = self.encode('utf-8')
        stream.write(b'/')
        for c in encoded[1:]:
            if c < 0x21 or c > 0x7e or c in b'#()<>[]{}/%':
                stream.write(b'#%02X' % c)
            else:
                stream.write(bytes((c,)))

    @staticmethod
    def read_from_stream(stream):
        if stream.read(1) != b"/":
            raise PdfReadError("name read error")
        name = read_until_regex(
            stream, NameObject.delimiter_pattern, ignore_eof=True
        )
        # undo #xx escapes
        name = re.sub(
            rb'#([0-9a-fA-F]{2})',
            lambda m: bytes((int(m.group(1), 16),)), name
        )
        try:
            return NameObject('/' + name.decode('utf-8'))
        except UnicodeDecodeError:
            logger.warning("Illegal character in Name Object")
            return NameObject('/' + name.decode('latin-1'))


def pdf_name(name: str) -> NameObject:
    return NameObject(name)


class DictionaryObject(dict, PdfObject):
    """
    PDF dictionary. Values are dereferenced on item access; use
    :meth:`raw_get` to retrieve indirect references as-is.
    """

    def raw_get(self, key):
        return dict.__getitem__(self, key)

    def __setitem__(self, key, value):
        if not isinstance(key, NameObject):
            key = NameObject(key)
        if not isinstance(value, PdfObject):
            raise ValueError("value must be PdfObject")
        return dict.__setitem__(self, key, value)

    def __getitem__(self, key):
        return dict.__getitem__(self, key).get_object()

    def get(self, key, default=None):
        try:
            return self[key]
        except KeyError:
            return default

    def get_value_as_reference(self, key) -> Optional[Reference]:
        value = dict.get(self, key)
        if isinstance(value, IndirectObject):
            return value.reference
        return None

    def write_to_stream(self, stream):
        stream.write(b"<<\n")
        for key, value in self.items():
            key.write_to_stream(stream)
            stream.write(b" ")
            value.write_to_stream(stream)
            stream.write(b"\n")
        stream.write(b">>")

    @staticmethod
    def read_from_stream(stream, pdf):
        if stream.read(2) != b"<<":
            raise PdfReadError(
                "Dictionary read error at byte %s: "
                "stream must begin with '<<'" % hex(stream.tell())
            )
        data = {}
        while True:
            tok = read_non_whitespace(stream)
            if tok == b'%':
                stream.seek(-1, os.SEEK_CUR)
                skip_over_comment(stream)
                continue
            if tok == b">":
                stream.read(1)
                break
            stream.seek(-1, os.SEEK_CUR)
            key = read_object(stream, pdf)
            if not isinstance(key, NameObject):
                raise PdfReadError(
                    "Dictionary key at byte %s is not a name"
                    % hex(stream.tell())
                )
            read_non_whitespace(stream, seek_back=True)
            value = read_object(stream, pdf)
            if key in data:
                logger.warning(
                    "Multiple definitions in dictionary at byte %s for "
                    "key %s", hex(stream.tell()), key
                )
            else:
                data[key] = value

        pos = stream.tell()
        s = read_non_whitespace(stream, allow_eof=True)
        if not (s == b's' and stream.read(5) == b'tream'):
            stream.seek(pos)
            return DictionaryObject(data)

        eol = stream.read(1)
        while eol == b' ':
            eol = stream.read(1)
        if eol == b"\r":
            if stream.read(1) != b'\n':
                stream.seek(-1, os.SEEK_CUR)
        elif eol != b"\n":
            raise PdfReadError("Stream keyword not followed by EOL")
        data_start = stream.tell()
        length = data.get('/Length')
        if isinstance(length, IndirectObject):
            length = length.get_object()
            stream.seek(data_start)
        stream_data = stream.read(length) if length is not None else b''
        e = read_non_whitespace(stream, allow_eof=True)
        if e + stream.read(8) != b"endstream":
            # /Length is off: scan for the endstream keyword instead
            stream.seek(data_start)
            remainder = stream.read()
            end_ix = remainder.find(b'endstream')
            if end_ix == -1:
                raise PdfReadError(
                    "Unable to find 'endstream' marker after stream at "
                    "byte %s." % hex(data_start)
                )
            stream_data = remainder[:end_ix].rstrip(b'\r\n')
            stream.seek(data_start + end_ix + 9)
        return StreamObject(data, encoded_data=stream_data)


class StreamObject(DictionaryObject):
    def __init__(self, dict_data=None, stream_data: Optional[bytes] = None,
                 encoded_data: Optional[bytes] = None):
        super().__init__(dict_data or {})
        self._data = stream_data
        self._encoded_data = encoded_data

    def _filters(self) -> Iterator[Tuple[str, dict]]:
        filter_arr = self.get('/Filter')
        if filter_arr is None:
            return
        if isinstance(filter_arr, NameObject):
            filter_arr = (filter_arr,)
        params = self.get('/DecodeParms')
        if isinstance(params, DictionaryObject):
            params = (params,)
        elif params is None:
            params = ()
        params = [p.get_object() if p else {} for p in params]
        params += [{}] * (len(filter_arr) - len(params))
        yield from zip(filter_arr, params)

    @property
    def data(self) -> bytes:
        if self._data is None:
            data = self._encoded_data or b''
            for filter_name, params in self._filters():
                try:
                    decoder = filters.DECODERS[filter_name]
                except KeyError:
                    raise NotImplementedError(
                        "Filters of type %s are not supported." % filter_name
                    )
                data = decoder.decode(data, params)
            self._data = bytes(data)
        return self._data

    @property
    def encoded_data(self) -> bytes:
        if self._encoded_data is None:
            if '/Filter' in self:
                raise NotImplementedError(
                    "Re-encoding filtered streams is not supported."
                )
            self._encoded_data = self._data or b''
        return self._encoded_data

    def compress(self):
        """Apply FlateDecode to the (unfiltered) stream content."""
        if '/Filter' in self:
            return
        self._encoded_data = filters.FlateDecode.encode(self.data)
        self['/Filter'] = pdf_name('/FlateDecode')

    def write_to_stream(self, stream):
        data = self.encoded_data
        self['/Length'] = NumberObject(len(data))
        DictionaryObject.write_to_stream(self, stream)
        stream.write(b"\nstream\n")
        stream.write(data)
        stream.write(b"\nendstream")


def pdf_date(dt: datetime) -> TextStringObject:
    """
    Convert a datetime object into a PDF string.
    Naive datetimes are treated as UTC.
    """
    base_dt = dt.strftime('D:%Y%m%d%H%M%S')
    utc_offset = dt.utcoffset()
    if not utc_offset:
        return TextStringObject(base_dt + 'Z')
    sign = '-' if utc_offset.days < 0 else '+'
    minutes = abs(int(utc_offset.total_seconds())) // 60
    return TextStringObject(
        "%s%s%02d'%02d'" % (base_dt, sign, minutes // 60, minutes % 60)
    )
