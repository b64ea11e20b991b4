"""
Visible signature appearances.

The appearance is a form XObject showing the signer's name, the signing
time and the reason, set in the standard Helvetica font. It is referenced
from the ``/AP`` entry of the signature widget.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

import tzlocal

from .config_utils import ConfigurableMixin, ConfigurationError, process_rgb
from .pdf_utils import generic
from .pdf_utils.generic import pdf_name

__all__ = [
    'AppearanceOptions', 'TextStamp', 'format_signing_time',
    'DEFAULT_SIGNER_NAME',
]

DEFAULT_SIGNER_NAME = 'Digital Signature'
SIGNING_TIME_FORMAT = '%H:%M:%S %d/%m/%Y'

# horizontal padding, and line spacing relative to the font size
PADDING = 4
LEADING = 1.4


def format_signing_time(dt: datetime) -> str:
    """
    Render a signing time the way certificate authorities print it,
    ``HH:MM:SS dd/mm/YYYY``, in the local time zone.
    """
    return dt.astimezone(tzlocal.get_localzone()).strftime(SIGNING_TIME_FORMAT)


@dataclass(frozen=True)
class AppearanceOptions(ConfigurableMixin):
    """
    Styling options for visible signatures.
    """

    font_size: float = 10
    """Font size in points."""

    font_color: Tuple[float, float, float] = (0, 0, 0)
    """Text colour as RGB components between 0 and 1."""

    show_name: bool = True
    show_timestamp: bool = True
    show_reason: bool = True

    @classmethod
    def process_entries(cls, config_dict):
        super().process_entries(config_dict)
        try:
            config_dict['font_color'] = process_rgb(
                config_dict['font_color'], 'font-color'
            )
        except KeyError:
            pass
        font_size = config_dict.get('font_size')
        if font_size is not None and (
                not isinstance(font_size, (int, float)) or
                not 1 <= font_size <= 72):
            raise ConfigurationError(
                "'font-size' must be a number between 1 and 72."
            )


def _escape(text: str) -> bytes:
    # Helvetica with the standard encoding only covers Latin-1
    raw = text.encode('latin-1', errors='replace')
    return raw.replace(b'\\', b'\\\\').replace(b'(', b'\\(') \
        .replace(b')', b'\\)')


class TextStamp:
    """
    Text appearance for a signature widget.

    :param width:
        Width of the widget rectangle.
    :param height:
        Height of the widget rectangle.
    :param signer_name:
        Name to display.
    :param signing_time:
        Signing time to display.
    :param reason:
        Signing reason, if any.
    :param options:
        Styling options.
    """

    def __init__(self, width: float, height: float, signer_name: str,
                 signing_time: datetime, reason: Optional[str] = None,
                 options: Optional[AppearanceOptions] = None):
        self.width = width
        self.height = height
        self.signer_name = signer_name or DEFAULT_SIGNER_NAME
        self.signing_time = signing_time
        self.reason = reason
        self.options = options or AppearanceOptions()

    def lines(self) -> List[str]:
        opts = self.options
        result = []
        if opts.show_name:
            result.append(f"Signed by: {self.signer_name}")
        if opts.show_timestamp:
            result.append(f"Time: {format_signing_time(self.signing_time)}")
        if opts.show_reason and self.reason:
            result.append(f"Reason: {self.reason}")
        return result

    def render(self) -> bytes:
        opts = self.options
        font_size = opts.font_size
        leading = font_size * LEADING
        commands = [
            b'q',
            # white background
            b'1 1 1 rg 0 0 %g %g re f' % (self.width, self.height),
            b'%g %g %g rg' % opts.font_color,
            b'BT',
            b'/F1 %g Tf' % font_size,
            b'%g TL' % leading,
            b'%g %g Td' % (PADDING, self.height - PADDING - font_size),
        ]
        for ix, line in enumerate(self.lines()):
            if ix:
                commands.append(b'T*')
            commands.append(b'(%s) Tj' % _escape(line))
        commands += [b'ET', b'Q']
        return b'\n'.join(commands)

    def as_form_xobject(self) -> generic.StreamObject:
        font = generic.DictionaryObject({
            pdf_name('/Type'): pdf_name('/Font'),
            pdf_name('/Subtype'): pdf_name('/Type1'),
            pdf_name('/BaseFont'): pdf_name('/Helvetica'),
            pdf_name('/Encoding'): pdf_name('/WinAnsiEncoding'),
        })
        xobj = generic.StreamObject({
            pdf_name('/Type'): pdf_name('/XObject'),
            pdf_name('/Subtype'): pdf_name('/Form'),
            pdf_name('/BBox'): generic.ArrayObject([
                generic.NumberObject(0), generic.NumberObject(0),
                generic.FloatObject(self.width),
                generic.FloatObject(self.height),
            ]),
            pdf_name('/Resources'): generic.DictionaryObject({
                pdf_name('/Font'): generic.DictionaryObject({
                    pdf_name('/F1'): font
                })
            }),
        }, stream_data=self.render())
        xobj.compress()
        return xobj

    def register(self, writer) -> generic.IndirectObject:
        """
        Add the appearance stream to a writer.

        :return:
            An indirect reference to the form XObject.
        """
        return writer.add_object(self.as_form_xobject())
