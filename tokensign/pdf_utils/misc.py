"""
Utility functions for the PDF layer: tokenising helpers and the PDF error
hierarchy.
"""

import os
from typing import Optional

__all__ = [
    'PdfError', 'PdfReadError', 'PdfStreamError', 'PdfWriteError',
    'PDF_WHITESPACE', 'pair_iter', 'read_non_whitespace',
    'skip_over_comment', 'read_until_regex', 'read_until_whitespace',
    'get_and_apply',
]

PDF_WHITESPACE = b' \n\r\t\x00\x0c'


class PdfError(Exception):

    def __init__(self, msg: str, *args):
        self.msg = msg
        super().__init__(msg, *args)


class PdfReadError(PdfError):
    pass


class PdfStreamError(PdfReadError):
    pass


class PdfWriteError(PdfError):
    pass


def pair_iter(lst):
    i = iter(lst)
    while True:
        try:
            x1 = next(i)
        except StopIteration:
            return
        try:
            x2 = next(i)
        except StopIteration:
            raise ValueError('List has odd number of elements')
        yield x1, x2


def get_and_apply(dictionary: dict, key, function, *, default=None):
    try:
        value = dictionary[key]
    except KeyError:
        return default
    return function(value)


def read_until_whitespace(stream, maxchars: Optional[int] = None) -> bytes:
    """
    Reads non-whitespace characters and returns them.
    Stops upon encountering whitespace or when maxchars is reached.
    """
    if maxchars == 0:
        return b''

    def _build():
        stop_at = None if maxchars is None else stream.tell() + maxchars
        while maxchars is None or stream.tell() < stop_at:
            tok = stream.read(1)
            if tok.isspace() or not tok:
                break
            yield tok
    return b''.join(_build())


def read_non_whitespace(stream, seek_back=False, allow_eof=False) -> bytes:
    """
    Finds and reads the next non-whitespace character (ignores whitespace).
    """
    tok = PDF_WHITESPACE[:1]
    while tok in PDF_WHITESPACE:
        if not tok:
            if allow_eof:
                return b''
            raise PdfStreamError('Stream ended prematurely')
        tok = stream.read(1)
    if seek_back:
        stream.seek(-1, os.SEEK_CUR)
    return tok


def skip_over_comment(stream):
    tok = stream.read(1)
    stream.seek(-1, os.SEEK_CUR)
    if tok == b'%':
        while tok not in (b'\n', b'\r', b''):
            tok = stream.read(1)


def read_until_regex(stream, regex, ignore_eof=False) -> bytes:
    """
    Reads until the regular expression pattern matched (ignore the match).
    Raise PdfStreamError on premature end-of-file.

    :param stream:
        The stream to read from.
    :param regex:
        The compiled pattern to look for.
    :param ignore_eof:
        If true, ignore end-of-line and return immediately.
    """
    name = b''
    while True:
        tok = stream.read(16)
        if not tok:
            if ignore_eof:
                return name
            raise PdfStreamError("Stream has ended unexpectedly")
        m = regex.search(tok)
        if m is not None:
            name += tok[:m.start()]
            stream.seek(m.start() - len(tok), os.SEEK_CUR)
            break
        name += tok
    return name
