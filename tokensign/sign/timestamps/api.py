import logging
import os
import struct
from typing import List, Optional, Sequence, Tuple

from asn1crypto import algos, cms, core, tsp

from ..errors import TsaError

__all__ = [
    'TimeStamper', 'FallbackTimeStamper', 'get_nonce', 'build_request',
    'validate_response', 'set_tsp_headers',
]

logger = logging.getLogger(__name__)

ACCEPTED_STATUSES = ('granted', 'granted_with_mods')


def get_nonce() -> int:
    # random 8-byte integer, the leading byte fixes the width
    return struct.unpack('>q', b'\x01' + os.urandom(7))[0]


def set_tsp_headers(headers: dict):
    headers['Content-Type'] = 'application/timestamp-query'
    headers['Accept'] = 'application/timestamp-reply'
    return headers


def build_request(message_digest: bytes, md_algorithm: str,
                  nonce: Optional[int] = None) -> tsp.TimeStampReq:
    """
    Format the body of an :rfc:`3161` request.

    :param message_digest:
        Message digest to which the timestamp will apply.
    :param md_algorithm:
        Message digest algorithm used to compute ``message_digest``.
    :param nonce:
        Nonce to include, if any.
    :return:
        An :class:`.asn1crypto.tsp.TimeStampReq` object.
    """
    req = {
        'version': 1,
        'message_imprint': tsp.MessageImprint({
            'hash_algorithm': algos.DigestAlgorithm({
                'algorithm': md_algorithm
            }),
            'hashed_message': message_digest,
        }),
        # we want the server to send along its certs
        'cert_req': True,
    }
    if nonce is not None:
        req['nonce'] = cms.Integer(nonce)
    return tsp.TimeStampReq(req)


def validate_response(response: tsp.TimeStampResp, message_digest: bytes,
                      md_algorithm: str, nonce: Optional[int]) \
        -> cms.ContentInfo:
    """
    Check a timestamp response against the request it answers.

    :return:
        The timestamp token.
    :raises TsaError:
        if the request was refused, or the token does not timestamp the
        digest that was submitted, or the nonce does not match.
    """
    pki_status_info = response['status']
    status = pki_status_info['status'].native
    if status not in ACCEPTED_STATUSES:
        status_strs = pki_status_info['status_string'].native or []
        fail_infos = pki_status_info['fail_info'].native or []
        raise TsaError(
            f'Timestamp server refused our request: status {status}, '
            f'statusString "{"; ".join(status_strs)}", '
            f'failInfo "{"; ".join(sorted(fail_infos))}"'
        )
    tst = response['time_stamp_token']
    if not isinstance(tst, cms.ContentInfo) \
            or tst['content_type'].native != 'signed_data':
        raise TsaError('Timestamp response does not contain a token.')
    try:
        encap = tst['content']['encap_content_info']
        if encap['content_type'].native != 'tst_info':
            raise TsaError('Timestamp token does not contain TSTInfo.')
        content = encap['content']
        if isinstance(content, core.Void):
            raise TsaError('Timestamp token has an empty TSTInfo.')
        tst_info = content.parsed
        imprint = tst_info['message_imprint']
        imprint_algorithm = imprint['hash_algorithm']['algorithm'].native
        imprint_digest = imprint['hashed_message'].native
        nonce_received = tst_info['nonce'].native
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise TsaError(f'Malformed timestamp token: {e}') from e
    if imprint_algorithm != md_algorithm \
            or imprint_digest != message_digest:
        raise TsaError(
            'Timestamp token does not cover the submitted digest.'
        )
    if nonce is not None and nonce_received is not None \
            and nonce_received != nonce:
        raise TsaError(
            f'Time stamping authority sent back bad nonce value. Expected '
            f'{nonce}, but got {nonce_received}.'
        )
    return tst


class TimeStamper:
    """
    Class to make :rfc:`3161` timestamp requests.

    :param include_nonce:
        Include a random nonce in each request.
    """

    name = 'timestamper'

    def __init__(self, include_nonce=True):
        self.include_nonce = include_nonce

    def request_tsa_response(self, req: tsp.TimeStampReq) \
            -> tsp.TimeStampResp:
        """
        Submit the specified timestamp request to the server.

        :param req:
            Request body to submit.
        :return:
            A timestamp response from the server.
        :raises IOError:
            Raised in case of an I/O issue in the communication with the
            timestamping server.
        """
        raise NotImplementedError

    def timestamp(self, message_digest: bytes, md_algorithm: str) \
            -> cms.ContentInfo:
        """
        Request and validate a timestamp token for a digest.
        """
        nonce = get_nonce() if self.include_nonce else None
        req = build_request(message_digest, md_algorithm, nonce)
        response = self.request_tsa_response(req)
        return validate_response(response, message_digest, md_algorithm, nonce)


class FallbackTimeStamper:
    """
    Try a list of timestamp authorities in order, until one of them
    produces a valid token.

    :param timestampers:
        The timestamp clients to try, in priority order.
    """

    def __init__(self, timestampers: Sequence[TimeStamper]):
        self.timestampers = list(timestampers)

    def request_timestamp(self, message_digest: bytes,
                          md_algorithm: str = 'sha256') -> cms.ContentInfo:
        """
        Obtain a timestamp token for a digest.

        :raises TsaError:
            if every authority failed; the message lists each failure.
        """
        failures: List[Tuple[str, str]] = []
        for stamper in self.timestampers:
            try:
                token = stamper.timestamp(message_digest, md_algorithm)
            except (IOError, ValueError) as e:
                logger.warning(
                    f"Timestamp request to {stamper.name} failed: {e}"
                )
                failures.append((stamper.name, str(e)))
                continue
            logger.info(f"Obtained timestamp from {stamper.name}")
            return token
        if not failures:
            raise TsaError('No timestamp authority configured.')
        raise TsaError(
            'All timestamp authorities failed: ' + '; '.join(
                f'{name}: {err}' for name, err in failures
            )
        )
