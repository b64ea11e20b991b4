"""
General ASN.1 and hashing helpers used when assembling CMS objects.
"""

from typing import Iterable

from asn1crypto import cms, tsp, x509
from cryptography.hazmat.primitives import hashes

__all__ = [
    'simple_cms_attribute', 'find_cms_attribute',
    'as_signing_certificate_v2', 'get_pyca_cryptography_hash', 'digest',
]


def simple_cms_attribute(attr_type, value):
    """
    Convenience method to quickly construct a CMS attribute object with
    one value.

    :param attr_type:
        The attribute type, as a string or OID.
    :param value:
        The value.
    :return:
        A :class:`.cms.CMSAttribute` object.
    """
    return cms.CMSAttribute({
        'type': cms.CMSAttributeType(attr_type),
        'values': (value,)
    })


def find_cms_attribute(attrs: Iterable[cms.CMSAttribute], name):
    """
    Find the values of a CMS attribute of a given type.

    :raises KeyError:
        if no attribute of that type is present.
    """
    for attr in attrs:
        if attr['type'].native == name:
            return attr['values']
    raise KeyError(f'Unable to locate attribute {name}.')


def get_pyca_cryptography_hash(algorithm) -> hashes.HashAlgorithm:
    return getattr(hashes, algorithm.upper())()


def digest(data: bytes, algorithm='sha256') -> bytes:
    md = hashes.Hash(get_pyca_cryptography_hash(algorithm))
    md.update(data)
    return md.finalize()


def as_signing_certificate_v2(cert: x509.Certificate, hash_algo='sha256') \
        -> tsp.SigningCertificateV2:
    """
    Format an ASN.1 ``SigningCertificateV2`` value, where the certificate
    is identified by the hash algorithm specified.

    :param cert:
        An X.509 certificate.
    :param hash_algo:
        Hash algorithm to use to digest the certificate.
        Default is SHA-256.
    :return:
        A :class:`tsp.SigningCertificateV2` object referring to the original
        certificate.
    """

    # see RFC 5035
    return tsp.SigningCertificateV2({
        'certs': [
            tsp.ESSCertIDv2({
                'hash_algorithm': {'algorithm': hash_algo},
                'cert_hash': digest(cert.dump(), hash_algo),
                'issuer_serial': {
                    'issuer': [
                        x509.GeneralName({'directory_name': cert.issuer})
                    ],
                    'serial_number': cert['tbs_certificate']['serial_number'],
                },
            })
        ]
    })
