from datetime import datetime, timezone

import pytest

from tokensign.sign.cms import (
    TokenCMSSigner,
    check_signing_certificate,
    signature_algorithm,
    timestamp_signer_info,
)
from tokensign.sign.errors import CertificateValidationError, \
    CertValidationCode, TsaError
from tokensign.sign.general import digest, find_cms_attribute
from tokensign.sign.timestamps import FallbackTimeStamper

from . import samples

SIGNING_TIME = datetime(2024, 5, 17, 9, 30, tzinfo=timezone.utc)
DOC_DIGEST = digest(b'%PDF-1.7 pretend document', 'sha256')


def test_check_signing_certificate_ok(signer_cert):
    check_signing_certificate(signer_cert, SIGNING_TIME)


@pytest.mark.parametrize('moment,code', [
    (datetime(2019, 6, 1, tzinfo=timezone.utc),
     CertValidationCode.NOT_YET_VALID),
    (datetime(2036, 6, 1, tzinfo=timezone.utc), CertValidationCode.EXPIRED),
])
def test_check_signing_certificate_window(signer_cert, moment, code):
    with pytest.raises(CertificateValidationError) as exc_info:
        check_signing_certificate(signer_cert, moment)
    assert exc_info.value.cert_code == code


def test_check_signing_certificate_usage(signer_key):
    cert = samples.make_cert(
        'Encryption Only', signer_key, key_usage=('key_encipherment',)
    )
    with pytest.raises(CertificateValidationError) as exc_info:
        check_signing_certificate(cert, SIGNING_TIME)
    assert exc_info.value.cert_code == CertValidationCode.CANNOT_SIGN


def test_check_signing_certificate_no_key_usage(signer_key):
    cert = samples.make_cert('Unrestricted', signer_key, key_usage=None)
    check_signing_certificate(cert, SIGNING_TIME)


def test_signature_algorithm():
    assert signature_algorithm('rsa', 'sha256')['algorithm'].native \
        == 'rsassa_pkcs1v15'
    assert signature_algorithm('ecdsa', 'sha256')['algorithm'].native \
        == 'sha256_ecdsa'


def test_signed_attrs(logged_in_token, signer_cert):
    signer = TokenCMSSigner(logged_in_token)
    attrs = signer.signed_attrs(DOC_DIGEST, SIGNING_TIME)
    assert find_cms_attribute(attrs, 'content_type')[0].native == 'data'
    assert find_cms_attribute(attrs, 'message_digest')[0].native \
        == DOC_DIGEST
    assert find_cms_attribute(attrs, 'signing_time')[0].native \
        == SIGNING_TIME
    ess = find_cms_attribute(attrs, 'signing_certificate_v2')[0]
    cert_id = ess['certs'][0]
    assert cert_id['cert_hash'].native == digest(signer_cert.dump(), 'sha256')


def test_sign_and_assemble(logged_in_token, signer_cert, ca_cert):
    signer = TokenCMSSigner(logged_in_token)
    signer_info = signer.sign(DOC_DIGEST, SIGNING_TIME)
    sid = signer_info['sid'].chosen
    assert sid['serial_number'].native == signer_cert.serial_number
    assert signer_info['digest_algorithm']['algorithm'].native == 'sha256'

    content_info = signer.assemble(signer_info)
    assert content_info['content_type'].native == 'signed_data'
    signed_data = content_info['content']
    assert signed_data['encap_content_info']['content'].native is None
    embedded = [c.chosen.dump() for c in signed_data['certificates']]
    assert embedded[0] == signer_cert.dump()
    assert ca_cert.dump() in embedded


def test_timestamp_signer_info(logged_in_token, fallback_tsa, dummy_tsa):
    signer = TokenCMSSigner(logged_in_token)
    signer_info = signer.sign(DOC_DIGEST, SIGNING_TIME)
    stamped = timestamp_signer_info(signer_info, fallback_tsa)
    assert dummy_tsa.requests_seen == 1
    # the signed part is left alone
    assert stamped['signature'].native == signer_info['signature'].native
    assert stamped['signed_attrs'].dump() == signer_info['signed_attrs'].dump()

    token = find_cms_attribute(
        stamped['unsigned_attrs'], 'signature_time_stamp_token'
    )[0]
    tst_info = token['content']['encap_content_info']['content'].parsed
    assert tst_info['message_imprint']['hashed_message'].native \
        == digest(signer_info['signature'].native, 'sha256')


def test_timestamp_signer_info_failure(logged_in_token):
    signer = TokenCMSSigner(logged_in_token)
    signer_info = signer.sign(DOC_DIGEST, SIGNING_TIME)
    with pytest.raises(TsaError):
        timestamp_signer_info(signer_info, FallbackTimeStamper([]))
