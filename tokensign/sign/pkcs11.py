"""
This module manages the connection to a PKCS#11 token through
`python-pkcs11 <https://github.com/danni/python-pkcs11>`_.

A :class:`TokenSessionManager` owns the loaded module, at most one open
session and the signing key and certificates pulled from it. All calls into
the module are serialised behind a single lock, since PKCS#11 sessions are
not safely shareable between threads.
"""

import base64
import enum
import hashlib
import logging
import re
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from asn1crypto import algos, core, x509

from . import library_paths
from .errors import (
    CertificateNotFound,
    InitializationFailed,
    LibraryNotFound,
    LoginFailed,
    PinValidationError,
    PrivateKeyNotFound,
    SigningFailed,
    SlotNotFound,
    TokenReferenceError,
    TokenSignError,
)
from .library_paths import DetectedLibrary

try:
    from pkcs11 import Attribute, KeyType, Mechanism, ObjectClass, PKCS11Error
    from pkcs11 import exceptions as p11_exc
    from pkcs11 import lib as p11_lib
except ImportError as e:  # pragma: nocover
    raise ImportError(
        "tokensign.sign.pkcs11 requires python-pkcs11 to be installed. "
        "You can install it by running \"pip install python-pkcs11\".",
        e,
    )

__all__ = [
    'TokenState', 'TokenInfo', 'CertificateInfo', 'PinBuffer',
    'validate_pin', 'TokenSessionManager', 'format_name',
    'build_certificate_chain',
]

logger = logging.getLogger(__name__)

PIN_MIN_LENGTH = 4
PIN_MAX_LENGTH = 16
PIN_PATTERN = re.compile(rb'[A-Za-z0-9]+')
MAX_CHAIN_LENGTH = 10

# errors that can be fixed by entering another PIN
RETRYABLE_PIN_ERRORS = (
    p11_exc.PinIncorrect, p11_exc.PinInvalid, p11_exc.PinLenRange,
)
LOCKED_PIN_ERRORS = (p11_exc.PinLocked, p11_exc.PinExpired)
# errors that require the user to do something about the token itself
TOKEN_GONE_ERRORS = (
    p11_exc.TokenNotPresent, p11_exc.TokenNotRecognised,
    p11_exc.DeviceRemoved, p11_exc.DeviceError,
    p11_exc.SessionHandleInvalid, p11_exc.SessionClosed,
)


class TokenState(enum.Enum):
    DISCONNECTED = enum.auto()
    DETECTING = enum.auto()
    LIBRARY_FOUND = enum.auto()
    INITIALIZING = enum.auto()
    READY = enum.auto()
    LOGGING_IN = enum.auto()
    LOGGED_IN = enum.auto()
    ERROR = enum.auto()


@dataclass(frozen=True)
class TokenInfo:
    slot_id: int
    label: str
    manufacturer: str
    model: str
    serial: str
    has_token: bool


DN_LABELS = {
    'common_name': 'CN',
    'country_name': 'C',
    'locality_name': 'L',
    'state_or_province_name': 'ST',
    'organization_name': 'O',
    'organizational_unit_name': 'OU',
}


def format_name(name: x509.Name) -> str:
    """
    Render a distinguished name as ``CN=..., O=..., C=...``, in the order
    in which the attributes appear in the certificate.
    """
    parts = []
    for rdn in name.chosen:
        for type_and_value in rdn:
            attr_type = type_and_value['type'].native
            label = DN_LABELS.get(attr_type, type_and_value['type'].dotted)
            value = type_and_value['value'].native
            parts.append(f"{label}={value}")
    return ', '.join(parts)


def _iso_utc(dt) -> str:
    return dt.strftime('%Y-%m-%dT%H:%M:%SZ')


@dataclass(frozen=True)
class CertificateInfo:
    serial: str
    subject: str
    issuer: str
    valid_from: str
    valid_to: str
    thumbprint: str
    der_base64: str

    @classmethod
    def from_certificate(cls, cert: x509.Certificate) -> 'CertificateInfo':
        der = cert.dump()
        validity = cert['tbs_certificate']['validity']
        return cls(
            serial='%x' % cert.serial_number,
            subject=format_name(cert.subject),
            issuer=format_name(cert.issuer),
            valid_from=_iso_utc(validity['not_before'].native),
            valid_to=_iso_utc(validity['not_after'].native),
            thumbprint=hashlib.sha256(der).hexdigest(),
            der_base64=base64.b64encode(der).decode('ascii'),
        )


def validate_pin(pin: Union[bytes, bytearray]):
    """
    Check the length and character set of a PIN.

    :raises PinValidationError:
        if the PIN is not 4 to 16 ASCII letters or digits.
    """
    if not PIN_MIN_LENGTH <= len(pin) <= PIN_MAX_LENGTH:
        raise PinValidationError(
            f"PIN must be between {PIN_MIN_LENGTH} and {PIN_MAX_LENGTH} "
            f"characters long."
        )
    if PIN_PATTERN.fullmatch(pin) is None:
        raise PinValidationError("PIN may only contain letters and digits.")


class PinBuffer:
    """
    Mutable holder for a PIN that is overwritten with zeroes when the
    ``with`` block exits, whatever the outcome.

    :param pin:
        The PIN. Text is encoded as UTF-8 into a fresh buffer; a
        ``bytearray`` is taken over and zeroed in place.
    """

    def __init__(self, pin: Union[str, bytes, bytearray]):
        if isinstance(pin, bytearray):
            self._buf = pin
        elif isinstance(pin, str):
            self._buf = bytearray(pin.encode('utf-8'))
        else:
            self._buf = bytearray(pin)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.zeroize()

    def __repr__(self):
        return 'PinBuffer(<redacted>)'

    def __len__(self):
        return len(self._buf)

    @property
    def raw(self) -> bytearray:
        return self._buf

    def reveal(self) -> str:
        # python-pkcs11 only accepts the PIN as text
        return self._buf.decode('ascii')

    def zeroize(self):
        for i in range(len(self._buf)):
            self._buf[i] = 0

    @property
    def is_zeroed(self) -> bool:
        return not any(self._buf)


def build_certificate_chain(end_entity: x509.Certificate,
                            candidates: List[x509.Certificate]) \
        -> List[x509.Certificate]:
    """
    Order the certificates found on a token into a chain starting at the
    end-entity certificate, by matching issuer and subject names.
    The chain may be incomplete if issuers are missing from the token.
    """
    chain = [end_entity]
    current = end_entity
    for _ in range(MAX_CHAIN_LENGTH - 1):
        if current.self_signed != 'no':
            break
        issuer = next(
            (
                c for c in candidates
                if c.subject == current.issuer and c not in chain
            ), None
        )
        if issuer is None:
            break
        chain.append(issuer)
        current = issuer
    return chain


def _digest_info(digest: bytes, algorithm: str) -> bytes:
    return algos.DigestInfo({
        'digest_algorithm': {
            'algorithm': algorithm.lower(),
            'parameters': core.Null(),
        },
        'digest': digest,
    }).dump()


def _text_attr(value) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace').strip()
    return str(value).strip()


class TokenSessionManager:
    """
    Lifecycle manager for one PKCS#11 module and one token session.

    :param lib_loader:
        Callable that loads a PKCS#11 module from a path. Defaults to
        :class:`pkcs11.lib`.
    :param platform:
        Platform key to validate library paths against. Defaults to the
        current platform.
    """

    def __init__(self, lib_loader: Callable = p11_lib,
                 platform: Optional[str] = None):
        self._lib_loader = lib_loader
        self._platform = platform
        self._lock = threading.Lock()
        self._state = TokenState.DISCONNECTED
        self._lib = None
        self._library_path: Optional[str] = None
        self._session = None
        self._slot_id: Optional[int] = None
        self._key = None
        self._certificate: Optional[x509.Certificate] = None
        self._chain: List[x509.Certificate] = []

    @property
    def state(self) -> TokenState:
        return self._state

    @property
    def library_path(self) -> Optional[str]:
        return self._library_path

    @property
    def slot_id(self) -> Optional[int]:
        return self._slot_id

    @property
    def is_logged_in(self) -> bool:
        return self._state == TokenState.LOGGED_IN

    def auto_detect(self) -> List[DetectedLibrary]:
        with self._lock:
            if self._state == TokenState.DISCONNECTED:
                self._state = TokenState.DETECTING
            found = library_paths.auto_detect(self._platform)
            if self._state == TokenState.DETECTING:
                self._state = TokenState.LIBRARY_FOUND if found \
                    else TokenState.DISCONNECTED
            return found

    def open(self, library_path: str) -> List[TokenInfo]:
        """
        Load a PKCS#11 module and enumerate the slots with a token.
        Opening the module that is already loaded only refreshes the slot
        list.

        :raises LibraryNotFound:
            if the path is not allowlisted; nothing is loaded in that case.
        :raises InitializationFailed:
            if the module cannot be loaded.
        :raises SlotNotFound:
            if no token is present.
        """
        canonical = library_paths.validate_library_path(
            library_path, self._platform
        )
        with self._lock:
            if self._lib is None or canonical != self._library_path:
                self._reset()
                self._state = TokenState.INITIALIZING
                try:
                    self._lib = self._lib_loader(canonical)
                except (PKCS11Error, OSError, RuntimeError) as e:
                    self._state = TokenState.ERROR
                    logger.error(f"Failed to load PKCS#11 module: {e}")
                    raise library_paths.arch_mismatch_error(
                        str(e), canonical
                    ) or InitializationFailed(
                        f"Failed to load PKCS#11 module '{canonical}': {e}"
                    ) from e
                self._library_path = canonical
                logger.info(f"Loaded PKCS#11 module {canonical}")
            tokens = self._list_tokens()
            if self._state != TokenState.LOGGED_IN:
                self._state = TokenState.READY
            return tokens

    def list_tokens(self) -> List[TokenInfo]:
        with self._lock:
            self._require_library()
            return self._list_tokens()

    def _require_library(self):
        if self._lib is None:
            raise LibraryNotFound("No PKCS#11 module has been loaded.")

    def _list_tokens(self) -> List[TokenInfo]:
        try:
            slots = self._lib.get_slots(token_present=True)
        except PKCS11Error as e:
            self._state = TokenState.ERROR
            raise SlotNotFound(f"Failed to enumerate slots: {e}") from e
        tokens = []
        for slot in slots:
            try:
                token = slot.get_token()
            except PKCS11Error as e:
                logger.warning(f"Skipping slot {slot.slot_id}: {e}")
                continue
            tokens.append(TokenInfo(
                slot_id=slot.slot_id,
                label=_text_attr(token.label),
                manufacturer=_text_attr(token.manufacturer_id),
                model=_text_attr(token.model),
                serial=_text_attr(token.serial),
                has_token=True,
            ))
        if not tokens:
            raise SlotNotFound("No token found. Is the token plugged in?")
        return tokens

    def _find_token(self, slot_id: int):
        try:
            slots = self._lib.get_slots(token_present=True)
        except PKCS11Error as e:
            raise SlotNotFound(f"Failed to enumerate slots: {e}") from e
        for slot in slots:
            if slot.slot_id == slot_id:
                return slot.get_token()
        raise SlotNotFound(f"Slot {slot_id} not found.")

    def login(self, slot_id: int, pin: Union[str, bytes, PinBuffer]) \
            -> CertificateInfo:
        """
        Authenticate to the token in a slot and load its signing key and
        certificates. Any existing session is closed first.

        The PIN is validated before anything is sent to the token, and is
        zeroed before this method returns or raises.
        """
        pin_buf = pin if isinstance(pin, PinBuffer) else PinBuffer(pin)
        with pin_buf, self._lock:
            validate_pin(pin_buf.raw)
            self._require_library()
            self._close_session()
            self._state = TokenState.LOGGING_IN
            try:
                token = self._find_token(slot_id)
                session = token.open(rw=True, user_pin=pin_buf.reveal())
            except TokenSignError:
                self._state = TokenState.ERROR
                raise
            except RETRYABLE_PIN_ERRORS as e:
                self._state = TokenState.READY
                raise LoginFailed(
                    "Incorrect PIN.", retryable=True
                ) from e
            except LOCKED_PIN_ERRORS as e:
                self._state = TokenState.ERROR
                raise LoginFailed(
                    "The PIN is locked. Unlock the token with the "
                    "vendor's tools.", retryable=False
                ) from e
            except TOKEN_GONE_ERRORS as e:
                self._state = TokenState.ERROR
                raise TokenReferenceError() from e
            except PKCS11Error as e:
                self._state = TokenState.ERROR
                raise LoginFailed(
                    f"Login failed: {type(e).__name__}", retryable=False
                ) from e
            self._session = session
            self._slot_id = slot_id
            try:
                self._load_objects()
            except TokenSignError:
                self._close_session()
                self._state = TokenState.READY
                raise
            self._state = TokenState.LOGGED_IN
            logger.info(f"Logged in to token in slot {slot_id}")
            return CertificateInfo.from_certificate(self._certificate)

    def _load_objects(self):
        session = self._session
        try:
            keys = list(session.get_objects({
                Attribute.CLASS: ObjectClass.PRIVATE_KEY,
                Attribute.SIGN: True,
            }))
            cert_objs = list(session.get_objects({
                Attribute.CLASS: ObjectClass.CERTIFICATE,
            }))
        except TOKEN_GONE_ERRORS as e:
            raise TokenReferenceError() from e
        except PKCS11Error as e:
            raise CertificateNotFound(
                f"Failed to read objects from token: {e}"
            ) from e

        if not keys:
            raise PrivateKeyNotFound()
        if not cert_objs:
            raise CertificateNotFound()

        key = keys[0]
        try:
            key_id = key[Attribute.ID]
        except PKCS11Error:
            key_id = None

        certs = []
        end_entity = None
        for cert_obj in cert_objs:
            cert = x509.Certificate.load(cert_obj[Attribute.VALUE])
            certs.append(cert)
            if end_entity is None and key_id:
                try:
                    if cert_obj[Attribute.ID] == key_id:
                        end_entity = cert
                except PKCS11Error:
                    pass
        if end_entity is None:
            end_entity = certs[0]
        self._key = key
        self._certificate = end_entity
        self._chain = build_certificate_chain(end_entity, certs)
        logger.debug(
            f"Found {len(certs)} certificate(s) on token; chain length "
            f"{len(self._chain)}"
        )

    def _require_login(self):
        if self._state != TokenState.LOGGED_IN or self._key is None:
            raise TokenReferenceError("Not logged in to a token.")

    def _sign(self, data: bytes, mechanism) -> bytes:
        try:
            return bytes(self._key.sign(data, mechanism=mechanism))
        except TOKEN_GONE_ERRORS as e:
            self._state = TokenState.ERROR
            raise TokenReferenceError() from e
        except PKCS11Error as e:
            raise SigningFailed(
                f"The token refused to sign: {type(e).__name__}"
            ) from e

    def sign_hash(self, digest: bytes, algorithm: str = 'sha256') -> bytes:
        """
        Sign a precomputed digest with the private key on the token.

        :param digest:
            The message digest.
        :param algorithm:
            Name of the digest algorithm.
        :return:
            The signature value (DER-encoded for ECDSA keys).
        """
        with self._lock:
            self._require_login()
            if self._key.key_type == KeyType.EC:
                signature = self._sign(digest, Mechanism.ECDSA)
                return algos.DSASignature.from_p1363(signature).dump()
            return self._sign(
                _digest_info(digest, algorithm), Mechanism.RSA_PKCS
            )

    def sign_data(self, data: bytes) -> bytes:
        """
        Hash and sign raw data inside the token (SHA-256 with RSA).
        """
        with self._lock:
            self._require_login()
            return self._sign(data, Mechanism.SHA256_RSA_PKCS)

    @property
    def key_algorithm(self) -> str:
        self._require_login()
        return 'ecdsa' if self._key.key_type == KeyType.EC else 'rsa'

    @property
    def certificate(self) -> x509.Certificate:
        if self._certificate is None:
            raise CertificateNotFound("Not logged in or no certificate.")
        return self._certificate

    @property
    def certificate_info(self) -> CertificateInfo:
        return CertificateInfo.from_certificate(self.certificate)

    @property
    def chain(self) -> List[x509.Certificate]:
        return list(self._chain)

    def check_status(self) -> bool:
        """
        Check whether the logged-in token is still reachable.
        """
        with self._lock:
            if self._state != TokenState.LOGGED_IN:
                return False
            try:
                self._find_token(self._slot_id)
            except (SlotNotFound, PKCS11Error):
                logger.warning("Token is no longer present")
                self._state = TokenState.ERROR
                return False
            return True

    def _close_session(self):
        session = self._session
        self._session = None
        self._key = None
        self._certificate = None
        self._chain = []
        if session is not None:
            try:
                session.close()
            except PKCS11Error as e:
                logger.debug(f"Ignoring error while closing session: {e}")

    def logout(self):
        """
        Close the session and drop the cached key and certificates.
        Safe to call in any state.
        """
        with self._lock:
            had_session = self._session is not None
            self._close_session()
            self._state = TokenState.READY if self._lib is not None \
                else TokenState.DISCONNECTED
            if had_session:
                logger.info("Logged out of token")

    def _reset(self):
        self._close_session()
        self._lib = None
        self._library_path = None
        self._slot_id = None
        self._state = TokenState.DISCONNECTED

    def close(self):
        """Log out and unload the module."""
        with self._lock:
            self._reset()
