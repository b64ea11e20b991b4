"""
Utility for writing incremental updates to existing PDF files.

Incremental updates append modifications to the end of the file, leaving
the original bytes untouched. This is critical when the original file
contains digital signatures, since their byte ranges must remain valid.
"""

import os
import struct
from io import BytesIO
from typing import Dict, Iterator, List, Tuple

from . import generic
from .generic import pdf_name
from .reader import PdfFileReader

__all__ = ['IncrementalPdfFileWriter', 'write_xref_table', 'XRefStream']

ObjKey = Tuple[int, int]


def _contiguous_xref_chunks(position_dict: Dict[ObjKey, int]) \
        -> Iterator[Tuple[int, List[Tuple[int, int]]]]:
    """
    Divide the cross-reference entries into runs of consecutive object IDs.
    """
    current_chunk = []
    first_idnum = previous_idnum = None
    for idnum, generation in sorted(position_dict.keys()):
        if current_chunk and idnum != previous_idnum + 1:
            yield first_idnum, current_chunk
            current_chunk = []
        if not current_chunk:
            first_idnum = idnum
        current_chunk.append((position_dict[(idnum, generation)], generation))
        previous_idnum = idnum
    if current_chunk:
        yield first_idnum, current_chunk


def write_xref_table(stream, position_dict: Dict[ObjKey, int]) -> int:
    xref_location = stream.tell()
    stream.write(b'xref\n')
    # the head of the free list always gets its own subsection
    stream.write(b'0 1\n0000000000 65535 f \n')
    for first_idnum, subsection in _contiguous_xref_chunks(position_dict):
        stream.write(b'%d %d\n' % (first_idnum, len(subsection)))
        for position, generation in subsection:
            stream.write(b'%010d %05d n \n' % (position, generation))
    return xref_location


class XRefStream(generic.StreamObject):

    def __init__(self, position_dict: Dict[ObjKey, int]):
        super().__init__()
        self.position_dict = position_dict
        # type indicator is one byte wide, offsets are 8 bytes,
        # generation numbers take two more
        self.update({
            pdf_name('/W'): generic.ArrayObject(
                map(generic.NumberObject, (1, 8, 2))
            ),
            pdf_name('/Type'): pdf_name('/XRef'),
        })

    def write_to_stream(self, stream):
        index = [0, 1]
        stream_content = BytesIO()
        stream_content.write(b'\x00' * 9 + b'\xff\xff')
        for first_idnum, subsection in \
                _contiguous_xref_chunks(self.position_dict):
            index += [first_idnum, len(subsection)]
            for position, generation in subsection:
                stream_content.write(b'\x01')
                stream_content.write(struct.pack('>Q', position))
                stream_content.write(struct.pack('>H', generation))
        self[pdf_name('/Index')] = generic.ArrayObject(
            map(generic.NumberObject, index)
        )
        self._data = stream_content.getvalue()
        self._encoded_data = None
        if '/Filter' in self:
            del self['/Filter']
        self.compress()
        super().write_to_stream(stream)


class IncrementalPdfFileWriter:
    """
    Class to incrementally update existing files.

    New objects are registered with :meth:`add_object`; existing objects
    that were modified in place must be flagged with :meth:`mark_update`.
    Only those objects are written out by :meth:`write`, followed by a
    cross-reference section in the same style (table or stream) as the
    most recent section of the input, and a trailer pointing back to it.

    :param input_stream:
        Input stream to read current revision from.
    :param prev:
        Explicitly pass in a PDF reader for the input stream.
    """

    IO_CHUNK_SIZE = 4096

    def __init__(self, input_stream, prev: PdfFileReader = None):
        self.input_stream = input_stream
        if prev is None:
            prev = PdfFileReader(input_stream)
        self.prev = prev
        self.objects: Dict[ObjKey, generic.PdfObject] = {}
        self.stream_xrefs = prev.has_xref_stream
        self._lastobj_id = int(prev.trailer['/Size']) - 1
        self._root = prev.trailer.raw_get('/Root')
        self._info = prev.trailer.raw_get('/Info') \
            if '/Info' in prev.trailer else None
        self._document_id = self._handle_id(prev)

    @staticmethod
    def _handle_id(prev: PdfFileReader) -> generic.ArrayObject:
        # the first half of the ID identifies the document and stays fixed;
        # the second half identifies the revision
        id2 = generic.ByteStringObject(os.urandom(16))
        try:
            id1 = prev.trailer['/ID'][0].get_object()
            id1 = generic.ByteStringObject(id1.original_bytes)
        except (KeyError, IndexError, TypeError, AttributeError):
            id1 = generic.ByteStringObject(os.urandom(16))
        return generic.ArrayObject([id1, id2])

    @property
    def root(self) -> generic.DictionaryObject:
        return self._root.get_object()

    def get_object(self, ref: generic.Reference):
        try:
            return self.objects[(ref.idnum, ref.generation)]
        except KeyError:
            return self.prev.get_object(ref)

    def add_object(self, obj: generic.PdfObject) -> generic.IndirectObject:
        self._lastobj_id += 1
        self.objects[(self._lastobj_id, 0)] = obj
        return generic.IndirectObject(self._lastobj_id, 0, self)

    def mark_update(self, obj_ref):
        """
        Mark an existing object as modified, so that its current value is
        written out as part of the update.

        :param obj_ref:
            An :class:`~.generic.IndirectObject` or
            :class:`~.generic.Reference` to the object.
        """
        if isinstance(obj_ref, generic.IndirectObject):
            obj_ref = obj_ref.reference
        key = (obj_ref.idnum, obj_ref.generation)
        if key not in self.objects:
            self.objects[key] = self.prev.get_object(obj_ref)

    def update_root(self):
        self.mark_update(self._root)

    def register_annotation(self, page_ref: generic.Reference,
                            annot_ref: generic.IndirectObject):
        """Add an annotation to the /Annots array of a page."""
        page_obj = page_ref.get_object()
        annots_ref = dict.get(page_obj, '/Annots')
        if isinstance(annots_ref, generic.IndirectObject):
            annots = annots_ref.get_object()
            self.mark_update(annots_ref)
        elif annots_ref is not None:
            # a direct array requires the page object to be rewritten
            annots = annots_ref
            self.mark_update(page_ref)
        else:
            annots = generic.ArrayObject()
            page_obj[pdf_name('/Annots')] = annots
            self.mark_update(page_ref)
        annots.append(annot_ref)

    def _write_objects(self, stream, object_positions: Dict[ObjKey, int]):
        for key in sorted(self.objects.keys()):
            idnum, generation = key
            object_positions[key] = stream.tell()
            stream.write(b'%d %d obj\n' % (idnum, generation))
            self.objects[key].write_to_stream(stream)
            stream.write(b'\nendobj\n')

    def _populate_trailer(self, trailer: generic.DictionaryObject):
        trailer[pdf_name('/Root')] = self._root
        if self._info is not None:
            trailer[pdf_name('/Info')] = self._info
        trailer[pdf_name('/ID')] = self._document_id
        trailer[pdf_name('/Prev')] = generic.NumberObject(
            self.prev.last_startxref
        )

    def _copy_input(self, stream):
        input_stream = self.input_stream
        input_stream.seek(0)
        last = b''
        while True:
            chunk = input_stream.read(self.IO_CHUNK_SIZE)
            if not chunk:
                break
            stream.write(chunk)
            last = chunk
        # make sure the update starts on a new line
        if not last.endswith(b'\n'):
            stream.write(b'\n')

    def write(self, stream):
        """
        Write the original document followed by the incremental update.

        :param stream:
            A writable, seekable binary stream positioned at offset zero.
        """
        self._copy_input(stream)
        object_positions: Dict[ObjKey, int] = {}

        if self.stream_xrefs:
            trailer = XRefStream(object_positions)
        else:
            trailer = generic.DictionaryObject()

        self._populate_trailer(trailer)
        self._write_objects(stream, object_positions)

        if self.stream_xrefs:
            xref_location = stream.tell()
            xrefs_id = self._lastobj_id + 1
            object_positions[(xrefs_id, 0)] = xref_location
            trailer[pdf_name('/Size')] = generic.NumberObject(xrefs_id + 1)
            stream.write(b'%d 0 obj\n' % xrefs_id)
            trailer.write_to_stream(stream)
            stream.write(b'\nendobj\n')
        else:
            xref_location = write_xref_table(stream, object_positions)
            trailer[pdf_name('/Size')] = generic.NumberObject(
                self._lastobj_id + 1
            )
            stream.write(b'trailer\n')
            trailer.write_to_stream(stream)

        stream.write(b'\nstartxref\n%d\n%%%%EOF\n' % xref_location)
