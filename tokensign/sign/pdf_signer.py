"""
This module implements the PDF signing engine: it validates a signing
request, adds a signature field to the document through an incremental
update, has the token sign the resulting byte range and writes the signed
document to its destination.

The document is prepared in memory by :func:`prepare_document`, which does
not touch the token. :class:`PdfSigningEngine` then performs the
cryptographic steps and never raises: every outcome is reported as a
:class:`SignOutcome`.
"""

import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO
from typing import Optional, Tuple

from ..config_utils import ConfigurableMixin, ConfigurationError
from ..pdf_utils import generic
from ..pdf_utils.incremental_writer import IncrementalPdfFileWriter
from ..pdf_utils.misc import PdfError
from ..pdf_utils.reader import PdfFileReader
from ..stamp import AppearanceOptions, TextStamp
from . import library_paths
from .cms import TokenCMSSigner, check_signing_certificate, \
    timestamp_signer_info
from .errors import (
    InvalidInput,
    InvalidSignaturePage,
    PageParameterMissing,
    SigningCancelled,
    SigningErrorCode,
    SigningFailed,
    TokenReferenceError,
    TokenSignError,
    TsaError,
    describe,
)
from .fields import (
    SigFieldSpec,
    append_signature_field,
    check_existing_signatures,
    unique_field_name,
)
from .pdf_byterange import (
    DEFAULT_BYTES_RESERVED,
    PreparedByteRangeDigest,
    SignatureObject,
)

__all__ = [
    'PdfSignatureRequest', 'SignOutcome', 'SigningSettings',
    'PreparedDocument', 'PdfSigningEngine', 'open_document',
    'prepare_document',
    'validate_request', 'validate_input_path', 'validate_output_path',
    'DEFAULT_RECT', 'MAX_PAGE', 'MAX_REASON_LENGTH', 'MAX_SIGNER_NAME_LENGTH',
]

logger = logging.getLogger(__name__)

MAX_PAGE = 1000
MAX_REASON_LENGTH = 500
MAX_SIGNER_NAME_LENGTH = 200
DEFAULT_RECT = (50, 50, 250, 100)
INVISIBLE_RECT = (0, 0, 0, 0)

SYSTEM_DIRECTORIES = {
    'linux': ('/etc', '/usr', '/bin', '/sbin'),
    'darwin': ('/etc', '/usr', '/bin', '/sbin'),
    'win32': ('c:\\windows', 'c:\\program files'),
}


@dataclass(frozen=True)
class PdfSignatureRequest:
    """
    Parameters of a single signing operation.
    """

    source_path: str
    """Path of the document to sign."""

    dest_path: str
    """Path to write the signed document to."""

    visible: bool = False
    """Whether the signature gets a visible appearance."""

    page: Optional[int] = 1
    """Page to put the signature widget on, starting at 1."""

    rect: Optional[Tuple[float, float, float, float]] = None
    """
    Widget rectangle ``(llx, lly, urx, ury)`` in page coordinates.
    Defaults to :const:`DEFAULT_RECT` for visible signatures.
    """

    signer_name: Optional[str] = None
    reason: Optional[str] = None
    appearance: Optional[AppearanceOptions] = None

    timestamp: bool = True
    """Whether to request a timestamp for the signature."""


@dataclass(frozen=True)
class SignOutcome:
    """
    Result of a signing attempt.
    """

    code: SigningErrorCode
    message: str
    output_path: Optional[str] = None
    signed_at: Optional[datetime] = None
    timestamped: bool = False
    tsa_warning: Optional[str] = None
    """Set when a timestamp was requested but could not be obtained."""

    @property
    def success(self) -> bool:
        return self.code == SigningErrorCode.SUCCESS

    @classmethod
    def from_error(cls, err: TokenSignError) -> 'SignOutcome':
        return cls(code=err.code, message=err.msg)


@dataclass(frozen=True)
class SigningSettings(ConfigurableMixin):
    """
    Engine settings, configurable through the ``signing`` section of the
    configuration file.
    """

    bytes_reserved: int = DEFAULT_BYTES_RESERVED
    """Room for the DER-encoded signature container, in bytes."""

    field_name: str = 'Signature'
    """Prefix for the names of new signature fields."""

    appearance: Optional[AppearanceOptions] = None
    """Default styling for visible signatures."""

    md_algorithm: str = 'sha256'

    @classmethod
    def process_entries(cls, config_dict):
        super().process_entries(config_dict)
        appearance = config_dict.get('appearance')
        if appearance is not None:
            try:
                config_dict['appearance'] = \
                    AppearanceOptions.from_config(appearance)
            except ConfigurationError as e:
                raise ConfigurationError(
                    f"Error in appearance settings: {e}"
                ) from e
        bytes_reserved = config_dict.get('bytes_reserved')
        if bytes_reserved is not None and (
                not isinstance(bytes_reserved, int) or bytes_reserved < 1024):
            raise ConfigurationError(
                "'bytes-reserved' must be an integer of at least 1024."
            )
        if config_dict.get('md_algorithm', 'sha256') != 'sha256':
            raise ConfigurationError("Only sha256 is supported.")


def _is_system_path(path: str, platform: str) -> bool:
    if platform == 'win32':
        path = path.lower()
        return any(path.startswith(p) for p in SYSTEM_DIRECTORIES[platform])
    return any(
        path == p or path.startswith(p + '/')
        for p in SYSTEM_DIRECTORIES.get(platform, ())
    )


def validate_input_path(path: str, platform: Optional[str] = None) -> str:
    """
    Check the path of a document to be signed.

    :return:
        The canonical path.
    :raises InvalidInput:
        if the file does not exist, is not a PDF file, or lives in a system
        directory.
    """
    platform = platform or library_paths.current_platform()
    if not path:
        raise InvalidInput("No input file was given.")
    canonical = os.path.realpath(path)
    if not os.path.isfile(canonical):
        raise InvalidInput(f"Input file '{path}' does not exist.")
    if not canonical.lower().endswith('.pdf'):
        raise InvalidInput(f"Not a PDF file: {canonical}")
    if _is_system_path(canonical, platform):
        raise InvalidInput("Cannot read from system directory.")
    return canonical


def validate_output_path(path: str, platform: Optional[str] = None) -> str:
    """
    Check the path the signed document should be written to.

    :return:
        The canonical path.
    :raises InvalidInput:
        if the parent directory does not exist, the name lacks a ``.pdf``
        extension, or the path is in a system directory.
    """
    platform = platform or library_paths.current_platform()
    if not path:
        raise InvalidInput("No output file was given.")
    parent, name = os.path.split(os.path.abspath(path))
    canonical = os.path.join(os.path.realpath(parent), name)
    if not os.path.isdir(parent):
        raise InvalidInput(f"Output directory does not exist: {parent}")
    if not name.lower().endswith('.pdf'):
        raise InvalidInput(f"Output must have .pdf extension: {path}")
    if _is_system_path(canonical, platform):
        raise InvalidInput("Cannot write to system directory.")
    return canonical


def validate_request(request: PdfSignatureRequest,
                     platform: Optional[str] = None) -> Tuple[str, str]:
    """
    Check the parts of a request that can be checked without reading the
    document.

    :return:
        The canonical source and destination paths.
    """
    if request.page is None:
        if request.visible:
            raise PageParameterMissing()
    elif not 1 <= request.page <= MAX_PAGE:
        raise InvalidSignaturePage(
            f"Invalid page number {request.page} (must be 1-{MAX_PAGE})."
        )
    if request.reason and len(request.reason) > MAX_REASON_LENGTH:
        raise InvalidInput(
            f"Reason too long (max {MAX_REASON_LENGTH} characters)."
        )
    if request.signer_name \
            and len(request.signer_name) > MAX_SIGNER_NAME_LENGTH:
        raise InvalidInput(
            f"Signer name too long (max {MAX_SIGNER_NAME_LENGTH} characters)."
        )
    if request.rect is not None:
        if len(request.rect) != 4:
            raise InvalidInput("Signature rectangle needs four coordinates.")
        llx, lly, urx, ury = request.rect
        if llx >= urx or lly >= ury:
            raise InvalidInput(
                "Signature rectangle must have positive width and height."
            )
    source = validate_input_path(request.source_path, platform)
    dest = validate_output_path(request.dest_path, platform)
    if source == dest:
        raise InvalidInput("Output must not overwrite the input file.")
    return source, dest


def _media_box(page: generic.DictionaryObject):
    try:
        box = PdfFileReader.get_inherited_page_attr(page, '/MediaBox')
        llx, lly, urx, ury = (float(x.get_object()) for x in box)
    except (KeyError, TypeError, ValueError):
        # US letter
        return 0.0, 0.0, 612.0, 792.0
    return min(llx, urx), min(lly, ury), max(llx, urx), max(lly, ury)


def _check_rect(rect, media_box):
    m_llx, m_lly, m_urx, m_ury = media_box
    llx, lly, urx, ury = rect
    if llx < m_llx or lly < m_lly or urx > m_urx or ury > m_ury:
        raise InvalidInput(
            f"Signature rectangle {tuple(rect)} lies outside of the page "
            f"({m_llx:g}, {m_lly:g}, {m_urx:g}, {m_ury:g})."
        )


@dataclass(frozen=True)
class PreparedDocument:
    """
    Document with a signature placeholder, ready to be signed.
    """

    prepared_digest: PreparedByteRangeDigest
    field_name: str
    existing_signatures: int

    @property
    def output(self) -> BytesIO:
        return self.prepared_digest.document_handle

    @property
    def document_digest(self) -> bytes:
        return self.prepared_digest.document_digest


def open_document(input_data: bytes,
                  request: PdfSignatureRequest) -> PdfFileReader:
    """
    Parse a document and check that it can take the requested signature.

    :raises PdfError:
        if the document cannot be parsed.
    :raises TokenSignError:
        if the document is encrypted, the page does not exist or the
        widget rectangle lies outside of the page.
    """
    reader = PdfFileReader(BytesIO(input_data))
    if reader.encrypted:
        raise InvalidInput("Encrypted documents are not supported.")
    page_count = len(reader.pages)
    page_no = request.page or 1
    if page_no > page_count:
        raise InvalidSignaturePage(
            f"Page {page_no} does not exist; the document has "
            f"{page_count} page(s)."
        )
    if request.visible:
        _, page = reader.get_page(page_no - 1)
        _check_rect(request.rect or DEFAULT_RECT, _media_box(page))
    return reader


def prepare_document(input_data: bytes, request: PdfSignatureRequest,
                     signing_time: datetime,
                     settings: Optional[SigningSettings] = None) \
        -> PreparedDocument:
    """
    Append a signature field with an empty signature to a document, and
    digest the bytes the signature will cover.

    :param input_data:
        The original document.
    :param request:
        The signing request.
    :param signing_time:
        Signing time, for the ``/M`` entry and the appearance.
    :param settings:
        Engine settings.
    :raises PdfError:
        if the document cannot be parsed.
    :raises TokenSignError:
        if the document or the request is not acceptable.
    """
    settings = settings or SigningSettings()
    reader = open_document(input_data, request)
    existing = check_existing_signatures(reader.root, len(input_data))
    page_no = request.page or 1
    page_ref, _ = reader.get_page(page_no - 1)

    writer = IncrementalPdfFileWriter(reader.stream, prev=reader)
    field_name = unique_field_name(reader.root, settings.field_name)
    sig_obj = SignatureObject(
        timestamp=signing_time, name=request.signer_name,
        reason=request.reason, bytes_reserved=settings.bytes_reserved
    )
    sig_obj_ref = writer.add_object(sig_obj)

    appearance_ref = None
    if request.visible:
        rect = tuple(request.rect or DEFAULT_RECT)
        llx, lly, urx, ury = rect
        stamp = TextStamp(
            width=urx - llx, height=ury - lly,
            signer_name=request.signer_name, signing_time=signing_time,
            reason=request.reason,
            options=request.appearance or settings.appearance,
        )
        appearance_ref = stamp.register(writer)
    else:
        rect = INVISIBLE_RECT

    append_signature_field(
        writer, SigFieldSpec(field_name, on_page=page_ref, box=rect),
        sig_obj_ref, appearance_ref=appearance_ref
    )
    output = BytesIO()
    writer.write(output)
    prepared_digest = sig_obj.fill_byte_range(output, settings.md_algorithm)
    logger.debug(
        f"Prepared field {field_name} on page {page_no}, byte range "
        f"{prepared_digest.byte_range}"
    )
    return PreparedDocument(
        prepared_digest=prepared_digest, field_name=field_name,
        existing_signatures=existing,
    )


def write_atomically(dest_path: str, data: bytes):
    """
    Write a file by way of a temporary file in the same directory, so that
    the destination is either fully written or not touched at all.
    """
    dest_dir = os.path.dirname(dest_path) or '.'
    fd, temp_path = tempfile.mkstemp(
        dir=dest_dir, prefix='.tokensign-', suffix='.tmp'
    )
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, dest_path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except FileNotFoundError:
            pass
        raise


class PdfSigningEngine:
    """
    Sign PDF documents with a key held on a token.

    :param token:
        A :class:`~tokensign.sign.pkcs11.TokenSessionManager` (or an object
        with the same interface). It must be logged in when :meth:`sign` is
        called.
    :param timestamper:
        A :class:`~tokensign.sign.timestamps.FallbackTimeStamper`, or
        ``None`` to never timestamp.
    :param settings:
        Engine settings.
    :param require_timestamp:
        Fail the operation when a timestamp was requested but none could be
        obtained, instead of producing an untimestamped signature.
    :param cancel_event:
        Event that can be set from another thread to abandon the
        operation at the next step boundary.
    """

    def __init__(self, token, timestamper=None,
                 settings: Optional[SigningSettings] = None,
                 require_timestamp=False,
                 cancel_event: Optional[threading.Event] = None):
        self.token = token
        self.timestamper = timestamper
        self.settings = settings or SigningSettings()
        self.require_timestamp = require_timestamp
        self.cancel_event = cancel_event

    def _check_cancelled(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise SigningCancelled()

    def sign(self, request: PdfSignatureRequest) -> SignOutcome:
        """
        Sign a document.

        :return:
            A :class:`SignOutcome`; this method does not raise.
        """
        try:
            return self._sign(request)
        except TokenSignError as e:
            logger.warning(f"Signing failed ({e.code.name}): {e.msg}")
            return SignOutcome.from_error(e)
        except PdfError as e:
            logger.warning(f"Could not process document: {e.msg}")
            return SignOutcome(
                code=SigningErrorCode.INVALID_INPUT,
                message=f"Could not process document: {e.msg}"
            )
        except OSError as e:
            logger.error(f"I/O error while signing: {e}")
            return SignOutcome(
                code=SigningErrorCode.UNKNOWN_ERROR,
                message=f"I/O error: {e}"
            )
        except Exception as e:
            logger.exception("Unexpected error while signing")
            return SignOutcome(
                code=SigningErrorCode.UNKNOWN_ERROR,
                message=f"{describe(SigningErrorCode.UNKNOWN_ERROR)} {e}"
            )

    def _sign(self, request: PdfSignatureRequest) -> SignOutcome:
        source, dest = validate_request(request)
        self._check_cancelled()

        token = self.token
        if not token.is_logged_in:
            raise TokenReferenceError("Not logged in to a token.")
        signing_time = datetime.now(tz=timezone.utc)
        check_signing_certificate(token.certificate, signing_time)

        with open(source, 'rb') as f:
            input_data = f.read()
        prepared = prepare_document(
            input_data, request, signing_time, self.settings
        )
        self._check_cancelled()

        md_algorithm = self.settings.md_algorithm
        cms_signer = TokenCMSSigner(token, md_algorithm=md_algorithm)
        signer_info = cms_signer.sign(prepared.document_digest, signing_time)

        timestamped = False
        tsa_warning = None
        if request.timestamp and self.timestamper is not None:
            try:
                signer_info = timestamp_signer_info(
                    signer_info, self.timestamper, md_algorithm
                )
                timestamped = True
            except TsaError as e:
                if self.require_timestamp:
                    raise SigningFailed(
                        f"Could not obtain a timestamp: {e.msg}"
                    ) from e
                logger.warning(
                    f"Continuing without timestamp: {e.msg}"
                )
                tsa_warning = f"Signed without timestamp: {e.msg}"

        signed_data = cms_signer.assemble(signer_info)
        prepared.prepared_digest.fill_reserved_region(signed_data.dump())
        write_atomically(dest, prepared.output.getvalue())

        logger.info(
            f"Signed {source} as {dest} (field {prepared.field_name}, "
            f"{prepared.existing_signatures} earlier signature(s))"
        )
        message = "Document signed successfully."
        if tsa_warning:
            message += " " + tsa_warning
        return SignOutcome(
            code=SigningErrorCode.SUCCESS, message=message, output_path=dest,
            signed_at=signing_time, timestamped=timestamped,
            tsa_warning=tsa_warning,
        )
