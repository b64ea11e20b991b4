"""
Module to handle the timestamping functionality in tokensign.

Exports the :class:`.TimeStamper` API, the HTTP client, the multi-endpoint
:class:`.FallbackTimeStamper` and the list of default authorities.
"""

from typing import Iterable, List

from .api import (
    FallbackTimeStamper,
    TimeStamper,
    build_request,
    get_nonce,
    validate_response,
)
from .requests_client import HTTPTimeStamper

__all__ = [
    'TimeStamper', 'HTTPTimeStamper', 'FallbackTimeStamper',
    'build_request', 'validate_response', 'get_nonce',
    'DEFAULT_TSA_URLS', 'INSECURE_TSA_URLS', 'default_timestamper',
]

# in priority order
DEFAULT_TSA_URLS = (
    'https://ca.vnpt.vn/tsa',
    'https://tsa.viettel-ca.vn',
    'https://tsa.fpt.vn',
)

INSECURE_TSA_URLS = (
    'http://ca.vnpt.vn/tsa',
    'http://tsa.viettel-ca.vn',
    'http://tsa.fpt.vn',
)


def default_timestamper(urls: Iterable[str] = DEFAULT_TSA_URLS, timeout=30,
                        allow_insecure=False) -> FallbackTimeStamper:
    """
    Build a :class:`.FallbackTimeStamper` over a list of TSA URLs.

    :param urls:
        TSA endpoints, in priority order.
    :param timeout:
        Per-request timeout in seconds.
    :param allow_insecure:
        Append the plain-HTTP variants of the default authorities as a
        last resort, and accept ``http:`` URLs in ``urls``.
    """
    urls: List[str] = list(urls)
    if allow_insecure:
        urls += [u for u in INSECURE_TSA_URLS if u not in urls]
    else:
        urls = [u for u in urls if u.lower().startswith('https:')]
    return FallbackTimeStamper(
        [HTTPTimeStamper(url, timeout=timeout) for url in urls]
    )
