"""
Implementation of a PDF reader that exposes the object graph of an existing
document and the cross-reference information needed to append an
incremental update to it.

Both classic cross-reference tables and cross-reference streams (including
object streams and hybrid-reference files) are supported. Encrypted
documents can be opened, but their objects cannot be decrypted; callers
are expected to check :attr:`PdfFileReader.encrypted` and refuse them.
"""

import logging
import os
import re
from io import BytesIO
from typing import Dict, Iterator, List, Optional, Tuple, Union

from . import generic, misc
from .misc import PdfReadError, read_non_whitespace

__all__ = ['PdfFileReader', 'XRefEntry']

logger = logging.getLogger(__name__)

header_regex = re.compile(rb'%PDF-(\d)\.(\d)')
obj_header_regex = re.compile(rb'\s*(\d+)\s+(\d+)\s+obj')
startxref_regex = re.compile(rb'startxref\s+(\d+)')

# offset of a plain object, or (object stream number, index in stream)
XRefEntry = Union[int, Tuple[int, int]]

INHERITABLE_PAGE_ATTRS = ('/MediaBox', '/CropBox', '/Resources', '/Rotate')


def process_data_at_eof(stream) -> int:
    """
    Locate the ``startxref`` value in the last kilobyte of the file.

    :param stream:
        A stream to read from.
    :return:
        The value of the startxref pointer.
    """
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    if not size:
        raise PdfReadError('Cannot read an empty file')
    stream.seek(max(0, size - 1024))
    tail = stream.read()
    eof_ix = tail.rfind(b'%%EOF')
    if eof_ix == -1:
        raise PdfReadError("EOF marker not found")
    startxref_ix = tail.rfind(b'startxref', 0, eof_ix)
    m = startxref_regex.match(tail, startxref_ix) if startxref_ix != -1 \
        else None
    if m is None:
        raise PdfReadError("startxref not found")
    return int(m.group(1))


def convert_to_int(d: bytes) -> int:
    return int.from_bytes(d, 'big') if d else 0


class PdfFileReader:
    """
    Read-only view of a PDF file.

    :param stream:
        A binary stream supporting ``read`` and ``seek``.
    :param strict:
        Raise errors on recoverable syntax problems instead of logging them.
    """

    def __init__(self, stream, strict=False):
        self.stream = stream
        self.strict = strict
        self.resolved_objects: Dict[Tuple[int, int], generic.PdfObject] = {}
        self.xrefs: Dict[int, Tuple[int, XRefEntry]] = {}
        self.xref_sections = 0
        self.has_xref_stream = False
        self.trailer = generic.DictionaryObject()
        self.input_version: Optional[Tuple[int, int]] = None
        self.last_startxref = None
        self._pages: Optional[List[generic.IndirectObject]] = None
        self.read()

    def read(self):
        stream = self.stream
        stream.seek(0)
        m = header_regex.match(stream.read(16))
        if m is None:
            raise PdfReadError('Illegal PDF header')
        self.input_version = (int(m.group(1)), int(m.group(2)))

        self.last_startxref = process_data_at_eof(stream)
        self._read_xrefs()

        if '/Root' not in self.trailer:
            raise PdfReadError('Trailer does not reference a document catalog')

    def _merge_trailer(self, new_trailer: generic.DictionaryObject):
        # sections are processed newest first, so existing keys win
        for k, v in new_trailer.items():
            if k not in self.trailer:
                dict.__setitem__(self.trailer, k, v)

    def _put_ref(self, idnum, generation, entry: XRefEntry):
        if idnum not in self.xrefs:
            self.xrefs[idnum] = (generation, entry)

    def _read_xrefs(self):
        stream = self.stream
        startxref = self.last_startxref
        seen = set()
        while startxref is not None:
            if startxref in seen:
                raise PdfReadError(
                    f"Cycle in cross-reference sections at {startxref}"
                )
            seen.add(startxref)
            stream.seek(startxref)
            if stream.read(4) == b'xref':
                startxref = self._read_xref_table()
            else:
                stream.seek(startxref)
                startxref = self._read_xref_stream(startxref)
                if self.xref_sections == 0:
                    self.has_xref_stream = True
            self.xref_sections += 1

    def _read_xref_table(self) -> Optional[int]:
        stream = self.stream
        while True:
            read_non_whitespace(stream, seek_back=True)
            if stream.read(7) == b'trailer':
                break
            stream.seek(-7, os.SEEK_CUR)
            num = generic.NumberObject.read_from_stream(stream)
            read_non_whitespace(stream, seek_back=True)
            size = generic.NumberObject.read_from_stream(stream)
            for cnt in range(size):
                read_non_whitespace(stream, seek_back=True)
                line = stream.read(18)
                try:
                    offset, generation, marker = line.split()
                except ValueError:
                    raise PdfReadError(
                        f"Malformed cross-reference entry {line!r}"
                    )
                if marker == b'n':
                    self._put_ref(num + cnt, int(generation), int(offset))
                elif num + cnt not in self.xrefs:
                    # freed objects shadow older definitions
                    self.xrefs[num + cnt] = (int(generation), -1)
        read_non_whitespace(stream, seek_back=True)
        new_trailer = generic.read_object(stream, self)
        if not isinstance(new_trailer, generic.DictionaryObject):
            raise PdfReadError('Trailer is not a dictionary')

        # hybrid-reference file: the table takes precedence over the stream
        xref_stm = new_trailer.get('/XRefStm')
        if xref_stm is not None:
            stream.seek(xref_stm)
            self._read_xref_stream(xref_stm, merge_trailer=False)
        self._merge_trailer(new_trailer)
        return new_trailer.get('/Prev')

    def _read_xref_stream(self, location, merge_trailer=True) \
            -> Optional[int]:
        stream = self.stream
        idnum, generation = self._read_object_header(location)
        xrefstream = generic.read_object(stream, self)
        if not isinstance(xrefstream, generic.StreamObject) \
                or xrefstream.get('/Type') != '/XRef':
            raise PdfReadError(
                f"Could not find cross-reference data at {location}"
            )
        self.resolved_objects[(idnum, generation)] = xrefstream

        stream_data = BytesIO(xrefstream.data)
        entry_sizes = xrefstream['/W']
        idx_pairs = xrefstream.get('/Index', [0, xrefstream['/Size']])

        def get_entry(ix):
            if entry_sizes[ix] > 0:
                return convert_to_int(stream_data.read(entry_sizes[ix]))
            # the type field defaults to 1, others to 0
            return 1 if ix == 0 else 0

        for start, size in misc.pair_iter(idx_pairs):
            for num in range(start, start + size):
                xref_type = get_entry(0)
                field_1 = get_entry(1)
                field_2 = get_entry(2)
                if xref_type == 1:
                    self._put_ref(num, field_2, field_1)
                elif xref_type == 2:
                    self._put_ref(num, 0, (field_1, field_2))
                elif xref_type == 0 and num not in self.xrefs:
                    self.xrefs[num] = (field_2, -1)

        if merge_trailer:
            self._merge_trailer(xrefstream)
        return xrefstream.get('/Prev')

    def _read_object_header(self, offset) -> Tuple[int, int]:
        stream = self.stream
        stream.seek(offset)
        m = obj_header_regex.match(stream.read(64))
        if m is None:
            raise PdfReadError(f"Expected object header at byte {offset}")
        stream.seek(offset + m.end())
        read_non_whitespace(stream, seek_back=True)
        return int(m.group(1)), int(m.group(2))

    @property
    def encrypted(self) -> bool:
        return '/Encrypt' in self.trailer

    @property
    def root_ref(self) -> generic.Reference:
        root = self.trailer.raw_get('/Root')
        if not isinstance(root, generic.IndirectObject):
            raise PdfReadError('/Root must be an indirect reference')
        return root.reference

    @property
    def root(self) -> generic.DictionaryObject:
        return self.trailer['/Root']

    def get_object(self, ref: generic.Reference):
        key = (ref.idnum, ref.generation)
        try:
            return self.resolved_objects[key]
        except KeyError:
            pass
        try:
            generation, marker = self.xrefs[ref.idnum]
        except KeyError:
            generation, marker = None, -1
        if generation != ref.generation and not isinstance(marker, tuple):
            marker = -1
        stream = self.stream
        pos = stream.tell()
        try:
            if isinstance(marker, tuple):
                obj = self._get_object_from_stream(ref.idnum, *marker)
            elif marker < 0:
                obj = generic.NullObject()
            else:
                obj = self._read_plain_object(ref, marker)
        finally:
            stream.seek(pos)
        self.resolved_objects[key] = obj
        return obj

    def _read_plain_object(self, ref: generic.Reference, offset: int):
        idnum, generation = self._read_object_header(offset)
        if (idnum, generation) != (ref.idnum, ref.generation):
            raise PdfReadError(
                f"Expected object ID ({ref.idnum} {ref.generation}) "
                f"does not match actual ({idnum} {generation})."
            )
        obj = generic.read_object(self.stream, self)
        read_non_whitespace(self.stream, seek_back=True, allow_eof=True)
        if self.stream.read(6) != b'endobj':
            msg = f"Expected endobj marker after object {idnum} {generation}"
            if self.strict:
                raise PdfReadError(msg)
            logger.warning(msg)
        return obj

    def _get_object_from_stream(self, idnum, stmnum, idx):
        obj_stream = self.get_object(generic.Reference(stmnum, 0, self))
        if not isinstance(obj_stream, generic.StreamObject) \
                or obj_stream.get('/Type') != '/ObjStm':
            raise PdfReadError(f"Object {stmnum} is not an object stream")
        stream_data = BytesIO(obj_stream.data)
        first_object = obj_stream['/First']
        for i in range(obj_stream['/N']):
            read_non_whitespace(stream_data, seek_back=True)
            objnum = generic.NumberObject.read_from_stream(stream_data)
            read_non_whitespace(stream_data, seek_back=True)
            offset = generic.NumberObject.read_from_stream(stream_data)
            if objnum != idnum:
                continue
            if i != idx:
                logger.warning(
                    f"Object {idnum} is at index {i} of object stream "
                    f"{stmnum}, not {idx}"
                )
            stream_data.seek(first_object + offset)
            read_non_whitespace(stream_data, seek_back=True)
            return generic.read_object(stream_data, self)
        raise PdfReadError(
            f"Object {idnum} not found in object stream {stmnum}"
        )

    def _walk_page_tree(self, node_ref, seen) \
            -> Iterator[generic.IndirectObject]:
        if node_ref in seen:
            raise PdfReadError('Cycle in page tree')
        seen.add(node_ref)
        node = node_ref.get_object()
        node_type = node.get('/Type')
        if node_type == '/Pages' or (node_type is None and '/Kids' in node):
            for kid in node['/Kids']:
                yield from self._walk_page_tree(kid, seen)
        else:
            yield node_ref

    @property
    def pages(self) -> List[generic.IndirectObject]:
        """References to all pages of the document, in order."""
        if self._pages is None:
            pages_ref = self.root.raw_get('/Pages')
            self._pages = list(self._walk_page_tree(pages_ref, set()))
        return self._pages

    def get_page(self, page_ix: int) \
            -> Tuple[generic.Reference, generic.DictionaryObject]:
        page_ref = self.pages[page_ix]
        return page_ref.reference, page_ref.get_object()

    @staticmethod
    def get_inherited_page_attr(page: generic.DictionaryObject, attr: str):
        """
        Look up an inheritable page attribute, walking up the page tree.
        """
        node = page
        for _ in range(64):
            try:
                return node[attr]
            except KeyError:
                pass
            node = node.get('/Parent')
            if node is None:
                break
        raise KeyError(attr)
