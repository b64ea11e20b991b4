"""
Utilities to deal with signature form fields and their properties in
PDF files.
"""

import logging
from typing import Iterator, Optional, Set, Tuple

from ..pdf_utils import generic
from ..pdf_utils.generic import pdf_name, pdf_string
from ..pdf_utils.incremental_writer import IncrementalPdfFileWriter
from ..pdf_utils.misc import PdfReadError
from .errors import InvalidExistingSignature

__all__ = [
    'SigFieldSpec', 'enumerate_sig_fields', 'enumerate_field_names',
    'check_existing_signatures', 'unique_field_name', 'append_signature_field',
    'ensure_sig_flags',
]

logger = logging.getLogger(__name__)

# print + locked
SIG_WIDGET_FLAGS = 132


class SigFieldSpec:
    """
    Description of a signature field to be created.

    :param sig_field_name:
        Name of the field.
    :param on_page:
        Reference to the page on which the widget should appear.
    :param box:
        Bounding box of the widget, ``(llx, lly, urx, ury)``. Invisible
        signatures use an all-zero box.
    """

    def __init__(self, sig_field_name: str, on_page: generic.Reference,
                 box: Tuple[float, float, float, float] = (0, 0, 0, 0)):
        self.sig_field_name = sig_field_name
        self.on_page = on_page
        self.box = box


def _walk_fields(field_list, parent_name, parents, refs_seen) \
        -> Iterator[Tuple[str, Optional[str], generic.DictionaryObject]]:
    if not isinstance(field_list, generic.ArrayObject):
        logger.warning(
            f"Values of type {type(field_list)} are not valid as field "
            f"lists, must be array objects -- skipping."
        )
        return
    for field_ref in field_list:
        if not isinstance(field_ref, generic.IndirectObject):
            logger.warning(
                "Entries in field list must be indirect references "
                "-- skipping."
            )
            continue
        if field_ref.reference in refs_seen:
            raise PdfReadError("Circular reference in form tree")
        field = field_ref.get_object()
        if not isinstance(field, generic.DictionaryObject):
            continue
        try:
            field_name = field['/T']
        except KeyError:
            # bare widget
            continue
        fq_name = field_name if not parent_name \
            else f"{parent_name}.{field_name}"
        # /FT is inheritable
        current_path = (field,) + parents
        field_type = next(
            (f['/FT'] for f in current_path if '/FT' in f), None
        )
        yield fq_name, field_type, field
        kids = field.get('/Kids')
        if kids is not None:
            yield from _walk_fields(
                kids, fq_name, current_path,
                refs_seen | {field_ref.reference}
            )


def enumerate_field_names(root: generic.DictionaryObject) -> Set[str]:
    """
    Collect the fully qualified names of all form fields.
    """
    try:
        fields = root['/AcroForm']['/Fields']
    except KeyError:
        return set()
    return {name for name, _, _ in _walk_fields(fields, '', (), set())}


def enumerate_sig_fields(root: generic.DictionaryObject) \
        -> Iterator[Tuple[str, Optional[generic.PdfObject]]]:
    """
    Enumerate signature fields.

    :param root:
        The document catalog.
    :return:
        A generator producing ``(name, value)`` pairs; the value is ``None``
        for empty fields.
    """
    try:
        fields = root['/AcroForm']['/Fields']
    except KeyError:
        return
    for fq_name, field_type, field in _walk_fields(fields, '', (), set()):
        if field_type == '/Sig':
            yield fq_name, field.get('/V')


def _check_signature_value(name, value, file_size: Optional[int]):
    if not isinstance(value, generic.DictionaryObject):
        raise InvalidExistingSignature(
            f"Signature field '{name}' does not hold a signature dictionary."
        )
    byte_range = value.get('/ByteRange')
    contents = value.get('/Contents')
    if not isinstance(byte_range, generic.ArrayObject) \
            or len(byte_range) != 4 \
            or not all(isinstance(x, generic.NumberObject)
                       for x in byte_range):
        raise InvalidExistingSignature(
            f"Signature field '{name}' has a malformed /ByteRange."
        )
    if not isinstance(contents, (bytes, str)):
        raise InvalidExistingSignature(
            f"Signature field '{name}' has no /Contents."
        )
    start, len1, offset2, len2 = byte_range
    if start != 0 or len1 < 0 or offset2 < len1 or len2 < 0 or \
            (file_size is not None and offset2 + len2 > file_size):
        raise InvalidExistingSignature(
            f"Signature field '{name}' has an inconsistent /ByteRange."
        )


def check_existing_signatures(root: generic.DictionaryObject,
                              file_size: Optional[int] = None) -> int:
    """
    Check that all filled signature fields hold a structurally sound
    signature dictionary. The signatures themselves are not validated.

    :param root:
        The document catalog.
    :param file_size:
        Size of the document, to check the byte ranges against.
    :return:
        The number of existing signatures.
    :raises InvalidExistingSignature:
        if a signature field is malformed.
    """
    count = 0
    try:
        for name, value in enumerate_sig_fields(root):
            if value is None:
                continue
            _check_signature_value(name, value, file_size)
            count += 1
    except PdfReadError as e:
        raise InvalidExistingSignature(
            f"Could not read the form fields: {e.msg}"
        ) from e
    return count


def unique_field_name(root: generic.DictionaryObject,
                      base='Signature') -> str:
    """
    Pick the first of ``Signature1``, ``Signature2``, ... that is not in
    use yet.
    """
    taken = enumerate_field_names(root)
    ix = 1
    while f"{base}{ix}" in taken:
        ix += 1
    return f"{base}{ix}"


def ensure_sig_flags(writer: IncrementalPdfFileWriter,
                     form: generic.DictionaryObject):
    """
    Flag the document as signed and append-only (``/SigFlags 3``).
    """
    if form.get('/SigFlags') != 3:
        form[pdf_name('/SigFlags')] = generic.NumberObject(3)
        _mark_form_update(writer)


def _mark_form_update(writer: IncrementalPdfFileWriter):
    form_ref = writer.root.get_value_as_reference('/AcroForm')
    if form_ref is not None:
        writer.mark_update(form_ref)
    else:
        writer.update_root()


def _get_or_create_form(writer: IncrementalPdfFileWriter) \
        -> generic.DictionaryObject:
    root = writer.root
    try:
        form = root['/AcroForm']
    except KeyError:
        form = generic.DictionaryObject({
            pdf_name('/Fields'): generic.ArrayObject()
        })
        root[pdf_name('/AcroForm')] = writer.add_object(form)
        writer.update_root()
        return form
    if not isinstance(form, generic.DictionaryObject):
        raise PdfReadError('/AcroForm is not a dictionary')
    if '/Fields' not in form:
        form[pdf_name('/Fields')] = generic.ArrayObject()
        _mark_form_update(writer)
    return form


def append_signature_field(writer: IncrementalPdfFileWriter,
                           sig_field_spec: SigFieldSpec,
                           sig_obj_ref: generic.IndirectObject,
                           appearance_ref: Optional[generic.IndirectObject]
                           = None) -> generic.IndirectObject:
    """
    Add a signature field with a merged widget annotation to the document,
    pointing at a signature dictionary.

    The field is registered in the AcroForm and on its page, and the form
    is flagged as signed.

    :return:
        A reference to the new field.
    """
    form = _get_or_create_form(writer)
    page_ref = sig_field_spec.on_page
    field = generic.DictionaryObject({
        pdf_name('/FT'): pdf_name('/Sig'),
        pdf_name('/Type'): pdf_name('/Annot'),
        pdf_name('/Subtype'): pdf_name('/Widget'),
        pdf_name('/F'): generic.NumberObject(SIG_WIDGET_FLAGS),
        pdf_name('/T'): pdf_string(sig_field_spec.sig_field_name),
        pdf_name('/V'): sig_obj_ref,
        pdf_name('/P'): generic.IndirectObject(
            page_ref.idnum, page_ref.generation, page_ref.pdf
        ),
        pdf_name('/Rect'): generic.ArrayObject(
            generic.FloatObject(x) for x in sig_field_spec.box
        ),
    })
    if appearance_ref is not None:
        field[pdf_name('/AP')] = generic.DictionaryObject({
            pdf_name('/N'): appearance_ref
        })
    field_ref = writer.add_object(field)

    fields_ref = form.get_value_as_reference('/Fields')
    form['/Fields'].append(field_ref)
    if fields_ref is not None:
        writer.mark_update(fields_ref)
    else:
        _mark_form_update(writer)
    ensure_sig_flags(writer, form)
    writer.register_annotation(page_ref, field_ref)
    return field_ref
