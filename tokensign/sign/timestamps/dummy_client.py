from datetime import datetime
from typing import Iterable, Optional

import tzlocal
from asn1crypto import algos, cms, core, tsp, x509
from cryptography.hazmat.primitives.asymmetric.padding import PKCS1v15
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from ..general import (
    as_signing_certificate_v2,
    digest,
    get_pyca_cryptography_hash,
    simple_cms_attribute,
)
from .api import TimeStamper, get_nonce

__all__ = ['DummyTimeStamper']


class DummyTimeStamper(TimeStamper):
    """
    Timestamper that acts as its own TSA. It accepts all requests and
    signs them using the certificate provided.
    Used for testing purposes.

    :param tsa_cert:
        Certificate of the TSA.
    :param tsa_key:
        RSA private key of the TSA (a ``cryptography`` key object).
    :param certs_to_embed:
        Extra certificates to embed in the token.
    :param fixed_dt:
        Fixed timestamp value to use instead of the current time.
    :param tamper_imprint:
        Return a token for a different digest than the one requested.
    :param override_nonce:
        Echo this nonce instead of the one in the request.
    :param omit_tst_info:
        Leave the TSTInfo out of the token.
    :param status:
        PKI status to return. If not ``granted`` or ``granted_with_mods``,
        no token is included.
    """

    def __init__(self, tsa_cert: x509.Certificate, tsa_key: RSAPrivateKey,
                 certs_to_embed: Iterable[x509.Certificate] = (),
                 fixed_dt: Optional[datetime] = None,
                 include_nonce=True, tamper_imprint=False,
                 override_nonce: Optional[int] = None, omit_tst_info=False,
                 status='granted', name='dummy-tsa'):
        if not isinstance(tsa_key, RSAPrivateKey):
            raise NotImplementedError("Dummy timestamper is RSA-only.")
        self.tsa_cert = tsa_cert
        self.tsa_key = tsa_key
        self.certs_to_embed = list(certs_to_embed)
        self.fixed_dt = fixed_dt
        self.tamper_imprint = tamper_imprint
        self.override_nonce = override_nonce
        self.omit_tst_info = omit_tst_info
        self.status = status
        self.name = name
        self.requests_seen = 0
        super().__init__(include_nonce=include_nonce)

    def request_tsa_response(self, req: tsp.TimeStampReq) \
            -> tsp.TimeStampResp:
        self.requests_seen += 1
        status = tsp.PKIStatusInfo({'status': tsp.PKIStatus(self.status)})
        if self.status not in ('granted', 'granted_with_mods'):
            return tsp.TimeStampResp({'status': status})

        message_imprint: tsp.MessageImprint = req['message_imprint']
        md_algorithm = message_imprint['hash_algorithm']['algorithm'].native
        if self.tamper_imprint:
            message_imprint = tsp.MessageImprint({
                'hash_algorithm': message_imprint['hash_algorithm'],
                'hashed_message': digest(b'tampered', md_algorithm),
            })
        digest_algorithm_obj = algos.DigestAlgorithm({
            'algorithm': md_algorithm
        })
        dt = self.fixed_dt or datetime.now(tz=tzlocal.get_localzone())
        tst_info = {
            'version': 'v1',
            'policy': tsp.ObjectIdentifier('1.3.6.1.4.1.4146.2.2'),
            'message_imprint': message_imprint,
            'serial_number': get_nonce(),
            'gen_time': dt,
            'tsa': x509.GeneralName(
                name='directory_name', value=self.tsa_cert.subject
            )
        }
        if self.override_nonce is not None:
            tst_info['nonce'] = self.override_nonce
        elif req['nonce'].native is not None:
            tst_info['nonce'] = req['nonce']

        tst_info_data = tsp.TSTInfo(tst_info).dump()
        signed_attrs = cms.CMSAttributes([
            simple_cms_attribute('content_type', 'tst_info'),
            simple_cms_attribute(
                'signing_time', cms.Time({'utc_time': core.UTCTime(dt)})
            ),
            simple_cms_attribute(
                'signing_certificate_v2',
                as_signing_certificate_v2(self.tsa_cert)
            ),
            simple_cms_attribute(
                'message_digest', digest(tst_info_data, md_algorithm)
            ),
        ])
        signature = self.tsa_key.sign(
            signed_attrs.dump(), PKCS1v15(),
            get_pyca_cryptography_hash(md_algorithm)
        )
        sig_info = cms.SignerInfo({
            'version': 'v1',
            'sid': cms.SignerIdentifier({
                'issuer_and_serial_number': cms.IssuerAndSerialNumber({
                    'issuer': self.tsa_cert.issuer,
                    'serial_number': self.tsa_cert.serial_number,
                })
            }),
            'digest_algorithm': digest_algorithm_obj,
            'signature_algorithm': algos.SignedDigestAlgorithm(
                {'algorithm': 'rsassa_pkcs1v15'}
            ),
            'signed_attrs': signed_attrs,
            'signature': signature
        })
        certs = [self.tsa_cert] + self.certs_to_embed
        encap = {'content_type': cms.ContentType('tst_info')}
        if not self.omit_tst_info:
            encap['content'] = cms.ParsableOctetString(tst_info_data)
        signed_data = {
            # must use v3 to get access to the EncapsulatedContentInfo construct
            'version': 'v3',
            'digest_algorithms': cms.DigestAlgorithms((digest_algorithm_obj,)),
            'encap_content_info': cms.EncapsulatedContentInfo(encap),
            'certificates': certs,
            'signer_infos': [sig_info]
        }
        tst = cms.ContentInfo({
            'content_type': cms.ContentType('signed_data'),
            'content': cms.SignedData(signed_data)
        })
        return tsp.TimeStampResp({'status': status, 'time_stamp_token': tst})
