import pytest

from tokensign.sign import errors
from tokensign.sign.errors import (
    CertValidationCode,
    SigningErrorCode,
    SigningResult,
)


def test_signing_error_codes_are_stable():
    assert [(c.name, c.value) for c in SigningErrorCode] == [
        ('SUCCESS', 0),
        ('INVALID_INPUT', 1),
        ('CERTIFICATE_NOT_FOUND', 2),
        ('SIGNING_FAILED', 3),
        ('PRIVATE_KEY_NOT_FOUND', 4),
        ('UNKNOWN_ERROR', 5),
        ('PAGE_PARAMETER_MISSING', 6),
        ('INVALID_SIGNATURE_PAGE', 7),
        ('TOKEN_NOT_FOUND', 8),
        ('TOKEN_REFERENCE_ERROR', 9),
        ('INVALID_EXISTING_SIGNATURE', 10),
        ('USER_CANCELLED', 11),
    ]


def test_cert_validation_codes_are_stable():
    assert [c.value for c in CertValidationCode] == list(range(11))
    assert CertValidationCode.EXPIRED == 2
    assert CertValidationCode.CANNOT_SIGN == 5
    assert CertValidationCode.OCSP_URL_NOT_FOUND == 10


def test_every_code_has_a_message():
    for code in SigningErrorCode:
        assert errors.describe(code)
    for code in CertValidationCode:
        assert errors.describe(code)
    # plain integers are looked up as signing codes
    assert errors.describe(9) == errors.MESSAGES[
        SigningErrorCode.TOKEN_REFERENCE_ERROR
    ]


@pytest.mark.parametrize('exc_class,code', [
    (errors.InvalidInput, SigningErrorCode.INVALID_INPUT),
    (errors.PinValidationError, SigningErrorCode.INVALID_INPUT),
    (errors.LibraryNotFound, SigningErrorCode.TOKEN_NOT_FOUND),
    (errors.InitializationFailed, SigningErrorCode.TOKEN_NOT_FOUND),
    (errors.SlotNotFound, SigningErrorCode.TOKEN_NOT_FOUND),
    (errors.LoginFailed, SigningErrorCode.SIGNING_FAILED),
    (errors.TokenReferenceError, SigningErrorCode.TOKEN_REFERENCE_ERROR),
    (errors.CertificateNotFound, SigningErrorCode.CERTIFICATE_NOT_FOUND),
    (errors.PrivateKeyNotFound, SigningErrorCode.PRIVATE_KEY_NOT_FOUND),
    (errors.SigningFailed, SigningErrorCode.SIGNING_FAILED),
    (errors.SignatureTooLarge, SigningErrorCode.SIGNING_FAILED),
    (errors.InvalidSignaturePage, SigningErrorCode.INVALID_SIGNATURE_PAGE),
    (errors.PageParameterMissing, SigningErrorCode.PAGE_PARAMETER_MISSING),
    (errors.InvalidExistingSignature,
     SigningErrorCode.INVALID_EXISTING_SIGNATURE),
    (errors.SigningCancelled, SigningErrorCode.USER_CANCELLED),
])
def test_exception_codes(exc_class, code):
    err = exc_class()
    assert err.code == code
    assert err.msg == errors.describe(code)
    assert isinstance(err, errors.TokenSignError)


def test_custom_message():
    err = errors.InvalidInput("Bad rectangle")
    assert err.msg == "Bad rectangle"
    assert str(err) == "Bad rectangle"


def test_cert_validation_error():
    err = errors.CertificateValidationError(CertValidationCode.EXPIRED)
    assert err.code == SigningErrorCode.SIGNING_FAILED
    assert err.cert_code == CertValidationCode.EXPIRED
    assert 'expired' in err.msg


def test_login_failed_retryable():
    assert errors.LoginFailed().retryable
    assert not errors.LoginFailed("locked", retryable=False).retryable


def test_tsa_error_is_io_error():
    err = errors.TsaError("unreachable")
    assert isinstance(err, IOError)
    assert err.msg == "unreachable"


def test_signing_result():
    ok = SigningResult.ok('abc')
    assert ok.success and ok.data == 'abc' and ok.error is None
    failed = SigningResult.from_error(errors.PrivateKeyNotFound())
    assert not failed.success
    assert failed.code == SigningErrorCode.PRIVATE_KEY_NOT_FOUND
    assert failed.data is None
    assert failed.error == errors.describe(
        SigningErrorCode.PRIVATE_KEY_NOT_FOUND
    )
