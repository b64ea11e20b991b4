import os
import threading
from io import BytesIO

import pytest
from freezegun import freeze_time
from pkcs11 import exceptions as p11_exc

from tokensign.pdf_utils.reader import PdfFileReader
from tokensign.sign.errors import SigningErrorCode
from tokensign.sign.general import digest, find_cms_attribute
from tokensign.sign.pdf_signer import (
    PdfSignatureRequest,
    PdfSigningEngine,
    SigningSettings,
    write_atomically,
)
from tokensign.sign.pkcs11 import TokenState
from tokensign.sign.timestamps import FallbackTimeStamper
from tokensign.sign.timestamps.dummy_client import DummyTimeStamper
from tokensign.stamp import AppearanceOptions

from . import samples
from .signing_commons import (
    assert_signature_intact,
    embedded_signatures,
    signed_attr,
)


def _read(path) -> bytes:
    with open(path, 'rb') as f:
        return f.read()


def _write_pdf(tmp_path, name, data) -> str:
    path = tmp_path / name
    path.write_bytes(data)
    return str(path)


def _fields(document: bytes):
    reader = PdfFileReader(BytesIO(document))
    return reader, [
        ref.get_object() for ref in reader.root['/AcroForm']['/Fields']
    ]


def test_sign_invisible(logged_in_token, signer_cert, input_pdf, output_pdf):
    engine = PdfSigningEngine(logged_in_token)
    outcome = engine.sign(PdfSignatureRequest(
        input_pdf, output_pdf, reason='Approved', signer_name='Nguyen Van A',
        timestamp=False,
    ))
    assert outcome.success, outcome.message
    assert outcome.code == SigningErrorCode.SUCCESS
    assert outcome.output_path == os.path.realpath(output_pdf)
    assert outcome.signed_at is not None
    assert not outcome.timestamped and outcome.tsa_warning is None

    signed = _read(output_pdf)
    assert signed.startswith(samples.THREE_PAGES)
    sigs = embedded_signatures(signed)
    assert len(sigs) == 1
    sig = sigs[0]
    assert sig.field_name == 'Signature1'
    assert sig.byte_range[2] + sig.byte_range[3] == len(signed)
    assert_signature_intact(signed, sig, signer_cert)

    sig_obj = sig.sig_object
    assert sig_obj['/SubFilter'] == '/ETSI.CAdES.detached'
    assert sig_obj['/Reason'] == 'Approved'
    assert sig_obj['/Name'] == 'Nguyen Van A'

    reader, fields = _fields(signed)
    assert reader.root['/AcroForm']['/SigFlags'] == 3
    assert [float(x) for x in fields[0]['/Rect']] == [0, 0, 0, 0]
    assert '/AP' not in fields[0]


def test_sign_visible(logged_in_token, signer_cert, input_pdf, output_pdf):
    engine = PdfSigningEngine(logged_in_token)
    outcome = engine.sign(PdfSignatureRequest(
        input_pdf, output_pdf, visible=True, page=2,
        rect=(100, 100, 300, 180), signer_name='Nguyen Van A',
        appearance=AppearanceOptions(font_size=9), timestamp=False,
    ))
    assert outcome.success, outcome.message

    signed = _read(output_pdf)
    sig, = embedded_signatures(signed)
    assert_signature_intact(signed, sig, signer_cert)

    reader, fields = _fields(signed)
    field = fields[0]
    assert [float(x) for x in field['/Rect']] == [100, 100, 300, 180]
    appearance = field['/AP']['/N']
    assert [float(x) for x in appearance['/BBox']] == [0, 0, 200, 80]
    assert b'Nguyen Van A' in appearance.data
    page_ref, page = reader.get_page(1)
    assert field.raw_get('/P').idnum == page_ref.idnum
    assert len(page['/Annots']) == 1
    _, first_page = reader.get_page(0)
    assert '/Annots' not in first_page


def test_sign_xref_stream(logged_in_token, signer_cert, tmp_path,
                          output_pdf):
    input_path = _write_pdf(
        tmp_path, 'stream.pdf', samples.THREE_PAGES_XREF_STREAM
    )
    outcome = PdfSigningEngine(logged_in_token).sign(
        PdfSignatureRequest(input_path, output_pdf, timestamp=False)
    )
    assert outcome.success, outcome.message
    signed = _read(output_pdf)
    assert PdfFileReader(BytesIO(signed)).has_xref_stream
    sig, = embedded_signatures(signed)
    assert_signature_intact(signed, sig, signer_cert)


def test_second_signature_preserves_first(logged_in_token, signer_cert,
                                          input_pdf, tmp_path):
    engine = PdfSigningEngine(logged_in_token)
    first_path = str(tmp_path / 'first.pdf')
    second_path = str(tmp_path / 'second.pdf')
    assert engine.sign(
        PdfSignatureRequest(input_pdf, first_path, timestamp=False)
    ).success
    outcome = engine.sign(PdfSignatureRequest(
        first_path, second_path, visible=True, page=3, timestamp=False
    ))
    assert outcome.success, outcome.message

    first = _read(first_path)
    second = _read(second_path)
    assert second.startswith(first)
    sigs = embedded_signatures(second)
    assert [s.field_name for s in sigs] == ['Signature1', 'Signature2']
    for sig in sigs:
        assert_signature_intact(second, sig, signer_cert)
    # the first signature still covers exactly the first revision
    assert sigs[0].byte_range[2] + sigs[0].byte_range[3] == len(first)


def test_custom_field_prefix(logged_in_token, input_pdf, output_pdf):
    engine = PdfSigningEngine(
        logged_in_token, settings=SigningSettings(field_name='Approval')
    )
    assert engine.sign(
        PdfSignatureRequest(input_pdf, output_pdf, timestamp=False)
    ).success
    sig, = embedded_signatures(_read(output_pdf))
    assert sig.field_name == 'Approval1'


def test_timestamped(logged_in_token, signer_cert, fallback_tsa, dummy_tsa,
                     input_pdf, output_pdf):
    engine = PdfSigningEngine(logged_in_token, timestamper=fallback_tsa)
    outcome = engine.sign(PdfSignatureRequest(input_pdf, output_pdf))
    assert outcome.success, outcome.message
    assert outcome.timestamped
    assert outcome.tsa_warning is None
    assert dummy_tsa.requests_seen == 1

    signed = _read(output_pdf)
    sig, = embedded_signatures(signed)
    assert_signature_intact(signed, sig, signer_cert)
    token = find_cms_attribute(
        sig.signer_info['unsigned_attrs'], 'signature_time_stamp_token'
    )[0]
    assert token['content_type'].native == 'signed_data'


def test_timestamp_not_requested(logged_in_token, fallback_tsa, dummy_tsa,
                                 input_pdf, output_pdf):
    engine = PdfSigningEngine(logged_in_token, timestamper=fallback_tsa)
    outcome = engine.sign(
        PdfSignatureRequest(input_pdf, output_pdf, timestamp=False)
    )
    assert outcome.success and not outcome.timestamped
    assert dummy_tsa.requests_seen == 0


@pytest.fixture
def failing_tsa(tsa_cert, tsa_key):
    return FallbackTimeStamper([
        DummyTimeStamper(tsa_cert, tsa_key, status='rejection', name='down')
    ])


def test_timestamp_failure_degrades(logged_in_token, signer_cert,
                                    failing_tsa, input_pdf, output_pdf):
    engine = PdfSigningEngine(logged_in_token, timestamper=failing_tsa)
    outcome = engine.sign(PdfSignatureRequest(input_pdf, output_pdf))
    assert outcome.success
    assert not outcome.timestamped
    assert 'down' in outcome.tsa_warning
    assert outcome.tsa_warning in outcome.message

    signed = _read(output_pdf)
    sig, = embedded_signatures(signed)
    assert_signature_intact(signed, sig, signer_cert)
    assert sig.signer_info['unsigned_attrs'].native is None


def test_malformed_timestamp_degrades(logged_in_token, tsa_cert, tsa_key,
                                      input_pdf, output_pdf):
    empty = DummyTimeStamper(
        tsa_cert, tsa_key, omit_tst_info=True, name='empty'
    )
    engine = PdfSigningEngine(
        logged_in_token, timestamper=FallbackTimeStamper([empty])
    )
    outcome = engine.sign(PdfSignatureRequest(input_pdf, output_pdf))
    assert outcome.success, outcome.message
    assert not outcome.timestamped
    assert 'empty' in outcome.tsa_warning


def test_malformed_timestamp_falls_back(logged_in_token, tsa_cert, tsa_key,
                                        dummy_tsa, input_pdf, output_pdf):
    empty = DummyTimeStamper(
        tsa_cert, tsa_key, omit_tst_info=True, name='empty'
    )
    engine = PdfSigningEngine(
        logged_in_token,
        timestamper=FallbackTimeStamper([empty, dummy_tsa])
    )
    outcome = engine.sign(PdfSignatureRequest(input_pdf, output_pdf))
    assert outcome.success, outcome.message
    assert outcome.timestamped
    assert (empty.requests_seen, dummy_tsa.requests_seen) == (1, 1)


def test_timestamp_failure_required(logged_in_token, failing_tsa, input_pdf,
                                    output_pdf):
    engine = PdfSigningEngine(
        logged_in_token, timestamper=failing_tsa, require_timestamp=True
    )
    outcome = engine.sign(PdfSignatureRequest(input_pdf, output_pdf))
    assert outcome.code == SigningErrorCode.SIGNING_FAILED
    assert 'timestamp' in outcome.message
    assert not os.path.exists(output_pdf)


@pytest.mark.parametrize('kwargs,code', [
    (dict(page=0), SigningErrorCode.INVALID_SIGNATURE_PAGE),
    (dict(page=1001), SigningErrorCode.INVALID_SIGNATURE_PAGE),
    (dict(page=4), SigningErrorCode.INVALID_SIGNATURE_PAGE),
    (dict(page=None, visible=True), SigningErrorCode.PAGE_PARAMETER_MISSING),
    (dict(visible=True, rect=(500, 800, 700, 900)),
     SigningErrorCode.INVALID_INPUT),
    (dict(visible=True, rect=(300, 100, 100, 200)),
     SigningErrorCode.INVALID_INPUT),
    (dict(reason='x' * 501), SigningErrorCode.INVALID_INPUT),
    (dict(signer_name='x' * 201), SigningErrorCode.INVALID_INPUT),
])
def test_rejected_requests(logged_in_token, fake_token, input_pdf,
                           output_pdf, kwargs, code):
    engine = PdfSigningEngine(logged_in_token)
    outcome = engine.sign(PdfSignatureRequest(
        input_pdf, output_pdf, timestamp=False, **kwargs
    ))
    assert outcome.code == code
    assert not outcome.success
    assert outcome.output_path is None
    assert not os.path.exists(output_pdf)
    # nothing was signed
    assert fake_token.keys[0].mechanisms_used == []


def test_invisible_without_page(logged_in_token, input_pdf, output_pdf):
    outcome = PdfSigningEngine(logged_in_token).sign(PdfSignatureRequest(
        input_pdf, output_pdf, page=None, timestamp=False
    ))
    assert outcome.success, outcome.message


@pytest.mark.parametrize('data,code', [
    (samples.simple_pdf(encrypted=True), SigningErrorCode.INVALID_INPUT),
    (b'%PDF-1.7\nnot really\n', SigningErrorCode.INVALID_INPUT),
    (samples.pdf_with_broken_signature(),
     SigningErrorCode.INVALID_EXISTING_SIGNATURE),
])
def test_rejected_documents(logged_in_token, tmp_path, output_pdf, data,
                            code):
    input_path = _write_pdf(tmp_path, 'bad.pdf', data)
    outcome = PdfSigningEngine(logged_in_token).sign(
        PdfSignatureRequest(input_path, output_pdf, timestamp=False)
    )
    assert outcome.code == code
    assert not os.path.exists(output_pdf)


def test_rejected_paths(logged_in_token, tmp_path, input_pdf, output_pdf):
    engine = PdfSigningEngine(logged_in_token)

    def sign(src, dest):
        return engine.sign(PdfSignatureRequest(src, dest, timestamp=False))

    assert sign(input_pdf, input_pdf).code == SigningErrorCode.INVALID_INPUT
    missing = str(tmp_path / 'missing.pdf')
    assert sign(missing, output_pdf).code == SigningErrorCode.INVALID_INPUT
    text_file = _write_pdf(tmp_path, 'notes.txt', samples.MINIMAL)
    assert sign(text_file, output_pdf).code == SigningErrorCode.INVALID_INPUT
    assert sign(input_pdf, str(tmp_path / 'out.txt')).code \
        == SigningErrorCode.INVALID_INPUT
    assert sign(input_pdf, str(tmp_path / 'nowhere' / 'out.pdf')).code \
        == SigningErrorCode.INVALID_INPUT


def test_not_logged_in(token_manager, lib_path, input_pdf, output_pdf):
    token_manager.open(lib_path)
    outcome = PdfSigningEngine(token_manager).sign(
        PdfSignatureRequest(input_pdf, output_pdf, timestamp=False)
    )
    assert outcome.code == SigningErrorCode.TOKEN_REFERENCE_ERROR
    assert not os.path.exists(output_pdf)


def test_token_removed_while_signing(logged_in_token, fake_token, input_pdf,
                                     output_pdf):
    fake_token.keys[0].fail_with = p11_exc.DeviceRemoved()
    outcome = PdfSigningEngine(logged_in_token).sign(
        PdfSignatureRequest(input_pdf, output_pdf, timestamp=False)
    )
    assert outcome.code == SigningErrorCode.TOKEN_REFERENCE_ERROR
    assert logged_in_token.state == TokenState.ERROR
    assert not os.path.exists(output_pdf)


def test_token_refuses(logged_in_token, fake_token, input_pdf, output_pdf):
    fake_token.keys[0].fail_with = p11_exc.FunctionFailed()
    outcome = PdfSigningEngine(logged_in_token).sign(
        PdfSignatureRequest(input_pdf, output_pdf, timestamp=False)
    )
    assert outcome.code == SigningErrorCode.SIGNING_FAILED
    assert not os.path.exists(output_pdf)


def test_cancelled(logged_in_token, fake_token, input_pdf, output_pdf):
    cancel = threading.Event()
    cancel.set()
    engine = PdfSigningEngine(logged_in_token, cancel_event=cancel)
    outcome = engine.sign(
        PdfSignatureRequest(input_pdf, output_pdf, timestamp=False)
    )
    assert outcome.code == SigningErrorCode.USER_CANCELLED
    assert not os.path.exists(output_pdf)
    assert fake_token.keys[0].mechanisms_used == []


def test_signature_too_large(logged_in_token, input_pdf, output_pdf):
    engine = PdfSigningEngine(
        logged_in_token, settings=SigningSettings(bytes_reserved=1024)
    )
    outcome = engine.sign(
        PdfSignatureRequest(input_pdf, output_pdf, timestamp=False)
    )
    assert outcome.code == SigningErrorCode.SIGNING_FAILED
    assert 'larger than expected' in outcome.message
    assert not os.path.exists(output_pdf)


@freeze_time('2036-06-01')
def test_expired_certificate(logged_in_token, input_pdf, output_pdf):
    outcome = PdfSigningEngine(logged_in_token).sign(
        PdfSignatureRequest(input_pdf, output_pdf, timestamp=False)
    )
    assert outcome.code == SigningErrorCode.SIGNING_FAILED
    assert 'expired' in outcome.message
    assert not os.path.exists(output_pdf)


def test_output_overwritten_atomically(logged_in_token, signer_cert,
                                       input_pdf, output_pdf, tmp_path):
    with open(output_pdf, 'wb') as f:
        f.write(b'stale')
    outcome = PdfSigningEngine(logged_in_token).sign(
        PdfSignatureRequest(input_pdf, output_pdf, timestamp=False)
    )
    assert outcome.success
    signed = _read(output_pdf)
    sig, = embedded_signatures(signed)
    assert_signature_intact(signed, sig, signer_cert)
    assert not [n for n in os.listdir(tmp_path) if n.endswith('.tmp')]


def test_write_atomically(tmp_path):
    dest = str(tmp_path / 'doc.pdf')
    write_atomically(dest, b'first')
    write_atomically(dest, b'second')
    assert _read(dest) == b'second'
    assert os.listdir(tmp_path) == ['doc.pdf']


def test_signed_attr_digest_binding(logged_in_token, input_pdf, output_pdf):
    PdfSigningEngine(logged_in_token).sign(
        PdfSignatureRequest(input_pdf, output_pdf, timestamp=False)
    )
    signed = _read(output_pdf)
    sig, = embedded_signatures(signed)
    # tampering with a covered byte breaks the digest
    tampered = signed[:20] + b'X' + signed[21:]
    assert signed_attr(sig.signer_info, 'message_digest').native \
        != digest(sig.covered_bytes(tampered), 'sha256')


def test_visible_timestamped_first_page(logged_in_token, signer_cert,
                                        fallback_tsa, input_pdf, output_pdf):
    engine = PdfSigningEngine(logged_in_token, timestamper=fallback_tsa)
    outcome = engine.sign(PdfSignatureRequest(
        input_pdf, output_pdf, visible=True, page=1,
        rect=(50, 50, 150, 100),
    ))
    assert outcome.success, outcome.message
    assert outcome.timestamped
    assert os.path.isfile(output_pdf)

    signed = _read(output_pdf)
    sig, = embedded_signatures(signed)
    assert_signature_intact(signed, sig, signer_cert)
    # everything but the /Contents hex string is covered
    start, len1, offset2, len2 = sig.byte_range
    placeholder = signed[len1:offset2]
    assert placeholder.startswith(b'<') and placeholder.endswith(b'>')
    assert len(signed) == len1 + len(placeholder) + len2
    assert signed[:len(samples.THREE_PAGES)] == samples.THREE_PAGES
