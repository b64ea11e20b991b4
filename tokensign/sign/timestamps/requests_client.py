import logging

import requests
from asn1crypto import tsp

from ..errors import TsaError
from .api import TimeStamper, set_tsp_headers

__all__ = ['HTTPTimeStamper']

logger = logging.getLogger(__name__)


class HTTPTimeStamper(TimeStamper):
    """
    Standard HTTP-based timestamp client.
    """

    def __init__(self, url, timeout=30, auth=None, headers=None,
                 include_nonce=True):
        """
        Initialise the timestamp client.

        :param url:
            URL where the server listens for timestamp requests.
        :param timeout:
            Timeout (in seconds)
        :param auth:
            Value of HTTP ``Authorization`` header
        :param headers:
            Other headers to include.
        """
        self.url = url
        self.timeout = timeout
        self.auth = auth
        self.headers = headers
        super().__init__(include_nonce=include_nonce)

    @property
    def name(self):
        return self.url

    @property
    def secure(self) -> bool:
        return self.url.lower().startswith('https:')

    def request_headers(self) -> dict:
        """
        Format the HTTP request headers.

        :return:
            Header dictionary.
        """
        return set_tsp_headers(dict(self.headers or {}))

    def request_tsa_response(self, req: tsp.TimeStampReq) \
            -> tsp.TimeStampResp:
        if not self.secure:
            logger.warning(
                f"Requesting a timestamp from {self.url} over plain HTTP"
            )
        try:
            raw_res = requests.post(
                self.url, req.dump(), headers=self.request_headers(),
                auth=self.auth, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise TsaError(f'Could not reach {self.url}: {e}') from e
        if raw_res.status_code != 200:
            raise TsaError(
                f'Timestamp server returned HTTP {raw_res.status_code}.'
            )
        content_type = raw_res.headers.get('Content-Type', '')
        if content_type.split(';')[0].strip() \
                != 'application/timestamp-reply':
            raise TsaError('Timestamp server response is malformed.')
        try:
            return tsp.TimeStampResp.load(raw_res.content)
        except ValueError as e:
            raise TsaError(
                f'Could not parse timestamp response: {e}'
            ) from e
