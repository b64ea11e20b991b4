import hashlib

import pytest
import requests
import requests_mock
from asn1crypto import tsp

from tokensign.sign.errors import TsaError
from tokensign.sign.timestamps import (
    DEFAULT_TSA_URLS,
    INSECURE_TSA_URLS,
    FallbackTimeStamper,
    HTTPTimeStamper,
    build_request,
    default_timestamper,
    validate_response,
)
from tokensign.sign.timestamps.dummy_client import DummyTimeStamper

MESSAGE_DIGEST = hashlib.sha256(b'Hello world!').digest()
TSA_REPLY = {'Content-Type': 'application/timestamp-reply'}


def _tst_info(token):
    return token['content']['encap_content_info']['content'].parsed


def _serve_from(dummy: DummyTimeStamper):
    def callback(request, context):
        req = tsp.TimeStampReq.load(request.body)
        context.headers.update(TSA_REPLY)
        return dummy.request_tsa_response(req).dump()
    return callback


def test_build_request():
    req = build_request(MESSAGE_DIGEST, 'sha256', nonce=1234)
    assert req['version'].native == 'v1'
    imprint = req['message_imprint']
    assert imprint['hash_algorithm']['algorithm'].native == 'sha256'
    assert imprint['hashed_message'].native == MESSAGE_DIGEST
    assert req['nonce'].native == 1234
    assert req['cert_req'].native
    assert build_request(MESSAGE_DIGEST, 'sha256')['nonce'].native is None


def test_dummy_timestamp(dummy_tsa):
    token = dummy_tsa.timestamp(MESSAGE_DIGEST, 'sha256')
    tst_info = _tst_info(token)
    assert tst_info['message_imprint']['hashed_message'].native \
        == MESSAGE_DIGEST
    assert tst_info['nonce'].native is not None
    assert dummy_tsa.requests_seen == 1


def test_wrong_imprint_rejected(tsa_cert, tsa_key):
    dummy = DummyTimeStamper(tsa_cert, tsa_key, tamper_imprint=True)
    with pytest.raises(TsaError, match='digest'):
        dummy.timestamp(MESSAGE_DIGEST, 'sha256')


def test_wrong_nonce_rejected(tsa_cert, tsa_key):
    dummy = DummyTimeStamper(tsa_cert, tsa_key, override_nonce=42)
    with pytest.raises(TsaError, match='nonce'):
        dummy.timestamp(MESSAGE_DIGEST, 'sha256')


def test_missing_nonce_accepted(tsa_cert, tsa_key):
    dummy = DummyTimeStamper(tsa_cert, tsa_key, include_nonce=False)
    token = dummy.timestamp(MESSAGE_DIGEST, 'sha256')
    assert _tst_info(token)['nonce'].native is None


def test_refused(tsa_cert, tsa_key):
    dummy = DummyTimeStamper(tsa_cert, tsa_key, status='rejection')
    with pytest.raises(TsaError, match='rejection'):
        dummy.timestamp(MESSAGE_DIGEST, 'sha256')


def test_validate_response_needs_token(tsa_cert, tsa_key):
    response = tsp.TimeStampResp({
        'status': tsp.PKIStatusInfo({'status': tsp.PKIStatus('granted')})
    })
    with pytest.raises(TsaError, match='token'):
        validate_response(response, MESSAGE_DIGEST, 'sha256', None)


def test_fallback_skips_bad_authorities(tsa_cert, tsa_key):
    bad = DummyTimeStamper(
        tsa_cert, tsa_key, tamper_imprint=True, name='bad'
    )
    refusing = DummyTimeStamper(
        tsa_cert, tsa_key, status='rejection', name='refusing'
    )
    good = DummyTimeStamper(tsa_cert, tsa_key, name='good')
    unused = DummyTimeStamper(tsa_cert, tsa_key, name='unused')
    fallback = FallbackTimeStamper([bad, refusing, good, unused])
    token = fallback.request_timestamp(MESSAGE_DIGEST, 'sha256')
    assert _tst_info(token)['message_imprint']['hashed_message'].native \
        == MESSAGE_DIGEST
    assert (bad.requests_seen, refusing.requests_seen) == (1, 1)
    assert good.requests_seen == 1
    assert unused.requests_seen == 0


def test_empty_tst_info_rejected(tsa_cert, tsa_key):
    dummy = DummyTimeStamper(tsa_cert, tsa_key, omit_tst_info=True)
    with pytest.raises(TsaError, match='empty TSTInfo'):
        dummy.timestamp(MESSAGE_DIGEST, 'sha256')


def test_fallback_skips_empty_tst_info(tsa_cert, tsa_key):
    empty = DummyTimeStamper(
        tsa_cert, tsa_key, omit_tst_info=True, name='empty'
    )
    good = DummyTimeStamper(tsa_cert, tsa_key, name='good')
    token = FallbackTimeStamper([empty, good]).request_timestamp(
        MESSAGE_DIGEST, 'sha256'
    )
    assert _tst_info(token)['message_imprint']['hashed_message'].native \
        == MESSAGE_DIGEST
    assert (empty.requests_seen, good.requests_seen) == (1, 1)


def test_fallback_all_fail(tsa_cert, tsa_key):
    fallback = FallbackTimeStamper([
        DummyTimeStamper(tsa_cert, tsa_key, status='rejection', name='one'),
        DummyTimeStamper(tsa_cert, tsa_key, status='waiting', name='two'),
    ])
    with pytest.raises(TsaError) as exc_info:
        fallback.request_timestamp(MESSAGE_DIGEST)
    assert 'one:' in exc_info.value.msg
    assert 'two:' in exc_info.value.msg


def test_fallback_empty():
    with pytest.raises(TsaError, match='No timestamp authority'):
        FallbackTimeStamper([]).request_timestamp(MESSAGE_DIGEST)


def test_http_timestamper(dummy_tsa):
    url = 'https://tsa.example.com/tsa'
    with requests_mock.Mocker() as m:
        m.post(url, content=_serve_from(dummy_tsa))
        token = HTTPTimeStamper(url).timestamp(MESSAGE_DIGEST, 'sha256')
        request = m.request_history[0]
    assert request.headers['Content-Type'] == 'application/timestamp-query'
    assert _tst_info(token)['message_imprint']['hashed_message'].native \
        == MESSAGE_DIGEST


def test_http_timestamper_errors():
    url = 'https://tsa.example.com/tsa'
    stamper = HTTPTimeStamper(url, timeout=1)
    with requests_mock.Mocker() as m:
        m.post(url, status_code=503)
        with pytest.raises(TsaError, match='HTTP 503'):
            stamper.timestamp(MESSAGE_DIGEST, 'sha256')
        m.post(url, content=b'<html/>', headers={'Content-Type': 'text/html'})
        with pytest.raises(TsaError, match='malformed'):
            stamper.timestamp(MESSAGE_DIGEST, 'sha256')
        m.post(url, exc=requests.exceptions.ConnectTimeout)
        with pytest.raises(TsaError, match='Could not reach'):
            stamper.timestamp(MESSAGE_DIGEST, 'sha256')


def test_http_fallback_order(dummy_tsa):
    urls = [
        'https://tsa1.example.com', 'https://tsa2.example.com',
        'https://tsa3.example.com',
    ]
    fallback = default_timestamper(urls, timeout=5)
    with requests_mock.Mocker() as m:
        m.post(urls[0], status_code=500)
        m.post(urls[1], exc=requests.exceptions.ConnectionError)
        m.post(urls[2], content=_serve_from(dummy_tsa))
        token = fallback.request_timestamp(MESSAGE_DIGEST, 'sha256')
        assert [r.url.rstrip('/') for r in m.request_history] == urls
    assert _tst_info(token)['message_imprint']['hashed_message'].native \
        == MESSAGE_DIGEST


def test_default_timestamper_https_only():
    fallback = default_timestamper(
        ['http://insecure.example.com', 'https://secure.example.com']
    )
    assert [t.url for t in fallback.timestampers] \
        == ['https://secure.example.com']
    fallback = default_timestamper()
    assert [t.url for t in fallback.timestampers] == list(DEFAULT_TSA_URLS)
    assert all(t.secure for t in fallback.timestampers)


def test_default_timestamper_allow_insecure():
    fallback = default_timestamper(allow_insecure=True)
    assert [t.url for t in fallback.timestampers] \
        == list(DEFAULT_TSA_URLS) + list(INSECURE_TSA_URLS)
