"""
Command surface of tokensign.

:class:`SigningService` ties a :class:`.TokenSessionManager`, the PDF
signing engine, the timestamp configuration and the persisted settings
together, and exposes the operations a front-end needs. Operations on the
token raise :class:`.TokenSignError` subclasses; :meth:`sign_data` and
:meth:`sign_pdf` report their outcome as a result object instead.
"""

import base64
import binascii
import logging
import threading
from typing import List, Optional, Tuple, Union

from .config import CLIConfig, PersistedSettings, SettingsStore
from .sign.errors import (
    CertificateNotFound,
    InvalidInput,
    SigningResult,
    TokenSignError,
)
from .sign.library_paths import DetectedLibrary
from .sign.pdf_signer import (
    PdfSignatureRequest,
    PdfSigningEngine,
    SignOutcome,
    open_document,
    validate_request,
)
from .sign.pkcs11 import (
    CertificateInfo,
    PinBuffer,
    TokenInfo,
    TokenSessionManager,
)
from .stamp import AppearanceOptions

__all__ = [
    'SigningService', 'MAX_SIGN_DATA_SIZE', 'default_service',
    'detect_libraries', 'init_token', 'list_tokens', 'login_token',
    'get_certificate', 'logout_token', 'check_token_status', 'sign_data',
    'sign_pdf',
]

logger = logging.getLogger(__name__)

MAX_SIGN_DATA_SIZE = 10 * 1024 * 1024


def _common_name(token: TokenSessionManager) -> Optional[str]:
    try:
        subject = token.certificate.subject.native
    except CertificateNotFound:
        return None
    return subject.get('common_name')


class SigningService:
    """
    Facade over the token manager and the signing engine.

    :param token:
        Token manager to use; a new one is created if omitted.
    :param config:
        Configuration; defaults apply if omitted.
    :param settings_store:
        Where to remember the last library path and slot. Defaults to the
        file named in the configuration.
    """

    def __init__(self, token: Optional[TokenSessionManager] = None,
                 config: Optional[CLIConfig] = None,
                 settings_store: Optional[SettingsStore] = None):
        self.token = token or TokenSessionManager()
        self.config = config or CLIConfig()
        self.settings_store = settings_store \
            or SettingsStore(self.config.settings_file)
        self.cancel_event = threading.Event()

    @property
    def settings(self) -> PersistedSettings:
        return self.settings_store.load()

    def _remember(self, **kwargs):
        try:
            self.settings_store.update(**kwargs)
        except OSError as e:
            logger.warning(f"Could not save settings: {e}")

    def detect_libraries(self) -> List[DetectedLibrary]:
        return self.token.auto_detect()

    def init_token(self, library_path: str):
        """
        Load a PKCS#11 module, and remember its path for next time.
        """
        self.token.open(library_path)
        self._remember(last_library_path=self.token.library_path)

    def list_tokens(self) -> List[TokenInfo]:
        return self.token.list_tokens()

    def login_token(self, slot_id: int,
                    pin: Union[str, bytes, bytearray, PinBuffer]):
        """
        Log in to the token in a slot, and remember the slot for next time.
        The PIN is zeroed after use.
        """
        self.token.login(slot_id, pin)
        self._remember(last_slot_id=slot_id)

    def get_certificate(self) -> CertificateInfo:
        return self.token.certificate_info

    def logout_token(self):
        self.token.logout()

    def check_token_status(self) -> bool:
        return self.token.check_status()

    def sign_data(self, data_b64: str) -> SigningResult[str]:
        """
        Sign base64-encoded data with SHA-256 and RSA inside the token.

        :return:
            A :class:`.SigningResult` holding the base64-encoded signature.
        """
        try:
            try:
                data = base64.b64decode(data_b64, validate=True)
            except (binascii.Error, ValueError, TypeError) as e:
                raise InvalidInput(f"Data is not valid base64: {e}") from e
            # padding must be canonical
            if base64.b64encode(data).decode('ascii') != data_b64:
                raise InvalidInput("Data is not valid base64: bad padding")
            if not data:
                raise InvalidInput("No data to sign.")
            if len(data) > MAX_SIGN_DATA_SIZE:
                raise InvalidInput(
                    f"Data too large (max {MAX_SIGN_DATA_SIZE} bytes)."
                )
            signature = self.token.sign_data(data)
        except TokenSignError as e:
            logger.warning(f"sign_data failed: {e.msg}")
            return SigningResult.from_error(e)
        return SigningResult.ok(base64.b64encode(signature).decode('ascii'))

    def engine(self) -> PdfSigningEngine:
        tsa_config = self.config.tsa
        return PdfSigningEngine(
            self.token, timestamper=tsa_config.as_timestamper(),
            settings=self.config.signing,
            require_timestamp=tsa_config.require_timestamp,
            cancel_event=self.cancel_event,
        )

    def cancel(self):
        """Abandon the signing operation in progress, if any."""
        self.cancel_event.set()

    def validate_pdf_request(self, source_path: str, dest_path: str,
                             visible: bool, reason: Optional[str] = None,
                             signer_name: Optional[str] = None,
                             rect: Optional[Tuple[float, float,
                                                  float, float]] = None,
                             page: Optional[int] = 1):
        """
        Check a signing request against the file system and the document,
        without touching the token.

        :raises TokenSignError:
            if the request is not acceptable.
        :raises PdfError:
            if the document cannot be parsed.
        """
        request = PdfSignatureRequest(
            source_path=source_path, dest_path=dest_path, visible=visible,
            page=page, rect=rect, signer_name=signer_name, reason=reason,
        )
        source, _ = validate_request(request)
        with open(source, 'rb') as f:
            open_document(f.read(), request)

    def sign_pdf(self, source_path: str, dest_path: str, visible: bool,
                 reason: Optional[str] = None,
                 signer_name: Optional[str] = None,
                 rect: Optional[Tuple[float, float, float, float]] = None,
                 page: Optional[int] = 1,
                 appearance: Optional[AppearanceOptions] = None,
                 timestamp: bool = True) -> SignOutcome:
        """
        Sign a PDF file. The signer name defaults to the common name of the
        certificate on the token.
        """
        self.cancel_event.clear()
        if signer_name is None:
            signer_name = _common_name(self.token)
        request = PdfSignatureRequest(
            source_path=source_path, dest_path=dest_path, visible=visible,
            page=page, rect=rect, signer_name=signer_name, reason=reason,
            appearance=appearance, timestamp=timestamp,
        )
        return self.engine().sign(request)


_default_service: Optional[SigningService] = None
_default_service_lock = threading.Lock()


def default_service() -> SigningService:
    """
    Process-wide :class:`SigningService` used by the module-level functions.
    """
    global _default_service
    with _default_service_lock:
        if _default_service is None:
            _default_service = SigningService()
        return _default_service


def detect_libraries() -> List[DetectedLibrary]:
    return default_service().detect_libraries()


def init_token(library_path: str):
    default_service().init_token(library_path)


def list_tokens() -> List[TokenInfo]:
    return default_service().list_tokens()


def login_token(slot_id: int, pin: Union[str, bytes, bytearray, PinBuffer]):
    default_service().login_token(slot_id, pin)


def get_certificate() -> CertificateInfo:
    return default_service().get_certificate()


def logout_token():
    default_service().logout_token()


def check_token_status() -> bool:
    return default_service().check_token_status()


def sign_data(data_b64: str) -> SigningResult[str]:
    return default_service().sign_data(data_b64)


def sign_pdf(source_path: str, dest_path: str, visible: bool, **kwargs) \
        -> SignOutcome:
    return default_service().sign_pdf(
        source_path, dest_path, visible, **kwargs
    )
