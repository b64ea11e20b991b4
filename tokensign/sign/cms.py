"""
Assembly of the CMS ``SignedData`` container embedded in a PAdES-BES
signature.

The document digest is bound to the signer certificate through the signed
attributes; the token signs the DER encoding of those attributes. An
optional :rfc:`3161` timestamp over the signature value is carried as an
unsigned attribute.
"""

from datetime import datetime, timezone
from typing import List, Optional

from asn1crypto import algos, cms, core, x509

from .errors import CertificateValidationError, CertValidationCode
from .general import as_signing_certificate_v2, digest, simple_cms_attribute

__all__ = [
    'TokenCMSSigner', 'check_signing_certificate', 'signature_algorithm',
    'timestamp_signer_info',
]

SIGNING_KEY_USAGES = frozenset({'digital_signature', 'non_repudiation'})


def signature_algorithm(key_algorithm: str, md_algorithm: str) \
        -> algos.SignedDigestAlgorithm:
    if key_algorithm == 'ecdsa':
        return algos.SignedDigestAlgorithm(
            {'algorithm': f'{md_algorithm}_ecdsa'}
        )
    return algos.SignedDigestAlgorithm({'algorithm': 'rsassa_pkcs1v15'})


def check_signing_certificate(cert: x509.Certificate,
                              moment: Optional[datetime] = None):
    """
    Local sanity check of the signer's certificate: validity window and
    key usage. Revocation is not checked here.

    :raises CertificateValidationError:
        if the certificate is expired, not yet valid, or restricted to
        usages that do not include signing.
    """
    moment = moment or datetime.now(tz=timezone.utc)
    validity = cert['tbs_certificate']['validity']
    if moment < validity['not_before'].native:
        raise CertificateValidationError(CertValidationCode.NOT_YET_VALID)
    if moment > validity['not_after'].native:
        raise CertificateValidationError(CertValidationCode.EXPIRED)
    key_usage = cert.key_usage_value
    if key_usage is not None \
            and not SIGNING_KEY_USAGES & set(key_usage.native):
        raise CertificateValidationError(CertValidationCode.CANNOT_SIGN)


def timestamp_signer_info(signer_info: cms.SignerInfo, timestamper,
                          md_algorithm='sha256') -> cms.SignerInfo:
    """
    Obtain a timestamp token over the signature value of a
    :class:`cms.SignerInfo`, and return a copy of it with the token added
    as the ``signature_time_stamp_token`` unsigned attribute.

    :param timestamper:
        Anything with a ``request_timestamp(digest, md_algorithm)`` method,
        usually a :class:`~tokensign.sign.timestamps.FallbackTimeStamper`.
    :raises TsaError:
        if no timestamp could be obtained.
    """
    signature_digest = digest(signer_info['signature'].native, md_algorithm)
    tst_token = timestamper.request_timestamp(signature_digest, md_algorithm)
    unsigned_attrs = cms.CMSAttributes([
        simple_cms_attribute('signature_time_stamp_token', tst_token)
    ])
    return cms.SignerInfo({
        'version': signer_info['version'],
        'sid': signer_info['sid'],
        'digest_algorithm': signer_info['digest_algorithm'],
        'signed_attrs': signer_info['signed_attrs'],
        'signature_algorithm': signer_info['signature_algorithm'],
        'signature': signer_info['signature'],
        'unsigned_attrs': unsigned_attrs,
    })


class TokenCMSSigner:
    """
    Produce CMS signatures with a key that lives on a token.

    :param token:
        A logged-in :class:`~tokensign.sign.pkcs11.TokenSessionManager`,
        or any object offering ``sign_hash``, ``key_algorithm``,
        ``certificate`` and ``chain``.
    :param md_algorithm:
        Digest algorithm for the document and the signed attributes.
    """

    def __init__(self, token, md_algorithm='sha256'):
        self.token = token
        self.md_algorithm = md_algorithm

    @property
    def signing_cert(self) -> x509.Certificate:
        return self.token.certificate

    @property
    def cert_registry(self) -> List[x509.Certificate]:
        chain = self.token.chain
        return chain if chain else [self.signing_cert]

    def signed_attrs(self, document_digest: bytes,
                     signing_time: datetime) -> cms.CMSAttributes:
        """
        Format the signed attributes of a PAdES-BES signature.
        """
        signing_time = signing_time.astimezone(timezone.utc)
        return cms.CMSAttributes([
            simple_cms_attribute('content_type', 'data'),
            simple_cms_attribute('message_digest', document_digest),
            simple_cms_attribute(
                'signing_time',
                cms.Time({'utc_time': core.UTCTime(signing_time)})
            ),
            simple_cms_attribute(
                'signing_certificate_v2',
                as_signing_certificate_v2(
                    self.signing_cert, self.md_algorithm
                )
            ),
        ])

    def sign(self, document_digest: bytes, signing_time: datetime) \
            -> cms.SignerInfo:
        """
        Have the token sign the attributes for a document digest.

        :raises SigningFailed:
            if the token refuses.
        :raises TokenReferenceError:
            if the token went away.
        """
        signed_attrs = self.signed_attrs(document_digest, signing_time)
        attrs_digest = digest(signed_attrs.dump(), self.md_algorithm)
        signature = self.token.sign_hash(attrs_digest, self.md_algorithm)
        cert = self.signing_cert
        return cms.SignerInfo({
            'version': 'v1',
            'sid': cms.SignerIdentifier({
                'issuer_and_serial_number': cms.IssuerAndSerialNumber({
                    'issuer': cert.issuer,
                    'serial_number': cert.serial_number,
                })
            }),
            'digest_algorithm': algos.DigestAlgorithm(
                {'algorithm': self.md_algorithm}
            ),
            'signature_algorithm': signature_algorithm(
                self.token.key_algorithm, self.md_algorithm
            ),
            'signed_attrs': signed_attrs,
            'signature': signature,
        })

    def assemble(self, signer_info: cms.SignerInfo) -> cms.ContentInfo:
        """
        Wrap a signer info into a detached ``SignedData`` container.
        """
        signed_data = {
            'version': 'v1',
            'digest_algorithms': cms.DigestAlgorithms((
                algos.DigestAlgorithm({'algorithm': self.md_algorithm}),
            )),
            'encap_content_info': {'content_type': 'data'},
            'certificates': self.cert_registry,
            'signer_infos': [signer_info],
        }
        return cms.ContentInfo({
            'content_type': cms.ContentType('signed_data'),
            'content': cms.SignedData(signed_data),
        })
