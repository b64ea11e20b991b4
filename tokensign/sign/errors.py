"""
Outcome codes and exceptions shared by every part of the signing pipeline.

The integer values of :class:`SigningErrorCode` and
:class:`CertValidationCode` are part of the public contract with existing
clients and must never change.
"""

import enum
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

__all__ = [
    'SigningErrorCode', 'CertValidationCode', 'SigningResult',
    'TokenSignError', 'LibraryNotFound', 'InitializationFailed',
    'SlotNotFound', 'LoginFailed', 'PinValidationError',
    'TokenReferenceError', 'CertificateNotFound', 'PrivateKeyNotFound',
    'SigningFailed', 'SignatureTooLarge', 'InvalidInput',
    'InvalidSignaturePage', 'PageParameterMissing',
    'InvalidExistingSignature', 'SigningCancelled',
    'CertificateValidationError', 'TsaError', 'MESSAGES', 'CERT_MESSAGES',
    'describe',
]


class SigningErrorCode(enum.IntEnum):
    SUCCESS = 0
    INVALID_INPUT = 1
    CERTIFICATE_NOT_FOUND = 2
    SIGNING_FAILED = 3
    PRIVATE_KEY_NOT_FOUND = 4
    UNKNOWN_ERROR = 5
    PAGE_PARAMETER_MISSING = 6
    INVALID_SIGNATURE_PAGE = 7
    TOKEN_NOT_FOUND = 8
    TOKEN_REFERENCE_ERROR = 9
    INVALID_EXISTING_SIGNATURE = 10
    USER_CANCELLED = 11


class CertValidationCode(enum.IntEnum):
    VALID = 0
    UNKNOWN_ERROR = 1
    EXPIRED = 2
    NOT_YET_VALID = 3
    REVOKED = 4
    CANNOT_SIGN = 5
    REVOCATION_CHECK_FAILED = 6
    UNTRUSTED_CA = 7
    CERT_INFO_UNAVAILABLE = 8
    CA_CERT_INFO_UNAVAILABLE = 9
    OCSP_URL_NOT_FOUND = 10


MESSAGES = {
    SigningErrorCode.SUCCESS: 'Operation completed successfully.',
    SigningErrorCode.INVALID_INPUT: 'The input data is invalid.',
    SigningErrorCode.CERTIFICATE_NOT_FOUND:
        'No signing certificate was found on the token.',
    SigningErrorCode.SIGNING_FAILED: 'The token could not produce a signature.',
    SigningErrorCode.PRIVATE_KEY_NOT_FOUND:
        'No private key usable for signing was found on the token.',
    SigningErrorCode.UNKNOWN_ERROR: 'An unexpected error occurred.',
    SigningErrorCode.PAGE_PARAMETER_MISSING:
        'A page number is required for a visible signature.',
    SigningErrorCode.INVALID_SIGNATURE_PAGE:
        'The requested signature page does not exist.',
    SigningErrorCode.TOKEN_NOT_FOUND:
        'No token was found. Check that the token is plugged in.',
    SigningErrorCode.TOKEN_REFERENCE_ERROR:
        'The connection to the token was lost. '
        'Reinsert the token and log in again.',
    SigningErrorCode.INVALID_EXISTING_SIGNATURE:
        'The document contains a malformed signature.',
    SigningErrorCode.USER_CANCELLED: 'The operation was cancelled.',
}


CERT_MESSAGES = {
    CertValidationCode.VALID: 'The certificate is valid.',
    CertValidationCode.UNKNOWN_ERROR:
        'The certificate could not be validated.',
    CertValidationCode.EXPIRED: 'The certificate has expired.',
    CertValidationCode.NOT_YET_VALID: 'The certificate is not yet valid.',
    CertValidationCode.REVOKED: 'The certificate has been revoked.',
    CertValidationCode.CANNOT_SIGN:
        'The certificate is not allowed to create signatures.',
    CertValidationCode.REVOCATION_CHECK_FAILED:
        'The revocation status of the certificate could not be checked.',
    CertValidationCode.UNTRUSTED_CA:
        'The certificate was issued by an untrusted authority.',
    CertValidationCode.CERT_INFO_UNAVAILABLE:
        'Certificate information is unavailable.',
    CertValidationCode.CA_CERT_INFO_UNAVAILABLE:
        'Issuer certificate information is unavailable.',
    CertValidationCode.OCSP_URL_NOT_FOUND:
        'The certificate does not specify an OCSP responder.',
}


def describe(code) -> str:
    """
    Look up the default human-readable message for an outcome code.
    """
    if isinstance(code, CertValidationCode):
        return CERT_MESSAGES[code]
    return MESSAGES[SigningErrorCode(code)]


class TokenSignError(Exception):
    """
    Base class for errors raised by the signing pipeline. Every subclass
    maps onto a fixed :class:`SigningErrorCode`.
    """

    code = SigningErrorCode.UNKNOWN_ERROR

    def __init__(self, msg: Optional[str] = None, *args):
        self.msg = msg or describe(self.code)
        super().__init__(self.msg, *args)


class InvalidInput(TokenSignError):
    code = SigningErrorCode.INVALID_INPUT


class PinValidationError(InvalidInput):
    """
    The PIN was rejected locally, before reaching the token.
    """
    pass


class LibraryNotFound(TokenSignError):
    code = SigningErrorCode.TOKEN_NOT_FOUND


class InitializationFailed(TokenSignError):
    code = SigningErrorCode.TOKEN_NOT_FOUND


class SlotNotFound(TokenSignError):
    code = SigningErrorCode.TOKEN_NOT_FOUND


class LoginFailed(TokenSignError):
    """
    Login was refused by the token.

    :param retryable:
        ``True`` if entering another PIN may help, ``False`` if the PIN
        is locked and the token needs attention outside of this program.
    """

    code = SigningErrorCode.SIGNING_FAILED

    def __init__(self, msg: Optional[str] = None, *args, retryable=True):
        self.retryable = retryable
        super().__init__(msg, *args)


class TokenReferenceError(TokenSignError):
    code = SigningErrorCode.TOKEN_REFERENCE_ERROR


class CertificateNotFound(TokenSignError):
    code = SigningErrorCode.CERTIFICATE_NOT_FOUND


class PrivateKeyNotFound(TokenSignError):
    code = SigningErrorCode.PRIVATE_KEY_NOT_FOUND


class SigningFailed(TokenSignError):
    code = SigningErrorCode.SIGNING_FAILED


class SignatureTooLarge(SigningFailed):
    """
    The final signature container does not fit in the reserved space.
    """
    pass


class InvalidSignaturePage(TokenSignError):
    code = SigningErrorCode.INVALID_SIGNATURE_PAGE


class PageParameterMissing(InvalidInput):
    code = SigningErrorCode.PAGE_PARAMETER_MISSING


class InvalidExistingSignature(TokenSignError):
    code = SigningErrorCode.INVALID_EXISTING_SIGNATURE


class SigningCancelled(TokenSignError):
    code = SigningErrorCode.USER_CANCELLED


class CertificateValidationError(SigningFailed):
    """
    The signer's certificate cannot be used at this time.
    """

    def __init__(self, cert_code: CertValidationCode,
                 msg: Optional[str] = None):
        self.cert_code = cert_code
        super().__init__(msg or describe(cert_code))


class TsaError(IOError):
    """
    Error raised when no timestamp could be obtained.
    """

    def __init__(self, msg: str, *args):
        self.msg = msg
        super().__init__(msg, *args)


T = TypeVar('T')


@dataclass(frozen=True)
class SigningResult(Generic[T]):
    """
    Result envelope for operations that report an outcome code instead of
    raising.
    """

    code: SigningErrorCode
    data: Optional[T] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.code == SigningErrorCode.SUCCESS

    @classmethod
    def ok(cls, data=None) -> 'SigningResult':
        return cls(code=SigningErrorCode.SUCCESS, data=data)

    @classmethod
    def from_error(cls, err: TokenSignError) -> 'SigningResult':
        return cls(code=err.code, error=err.msg)
