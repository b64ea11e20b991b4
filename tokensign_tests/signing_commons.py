from dataclasses import dataclass
from io import BytesIO
from typing import List

from asn1crypto import cms, x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from tokensign.pdf_utils import generic
from tokensign.pdf_utils.reader import PdfFileReader
from tokensign.sign.fields import enumerate_sig_fields
from tokensign.sign.general import digest, find_cms_attribute


@dataclass
class EmbeddedSignature:
    field_name: str
    sig_object: generic.DictionaryObject
    byte_range: tuple
    signed_data: cms.SignedData

    @property
    def signer_info(self) -> cms.SignerInfo:
        return self.signed_data['signer_infos'][0]

    def covered_bytes(self, document: bytes) -> bytes:
        start, len1, offset2, len2 = self.byte_range
        return document[start:start + len1] \
            + document[offset2:offset2 + len2]


def embedded_signatures(document: bytes) -> List[EmbeddedSignature]:
    reader = PdfFileReader(BytesIO(document))
    result = []
    for name, value in enumerate_sig_fields(reader.root):
        if value is None:
            continue
        byte_range = tuple(int(x) for x in value['/ByteRange'])
        content_info = cms.ContentInfo.load(bytes(value['/Contents']))
        result.append(EmbeddedSignature(
            field_name=name, sig_object=value, byte_range=byte_range,
            signed_data=content_info['content'],
        ))
    return result


def signed_attr(signer_info: cms.SignerInfo, name):
    return find_cms_attribute(signer_info['signed_attrs'], name)[0]


def assert_signature_intact(document: bytes, sig: EmbeddedSignature,
                            signer_cert: x509.Certificate):
    """
    Check the message digest against the byte range, and the signature
    against the signer's public key.
    """
    start, len1, offset2, len2 = sig.byte_range
    assert start == 0
    assert document[len1:len1 + 1] == b'<'
    assert document[offset2 - 1:offset2] == b'>'

    signer_info = sig.signer_info
    message_digest = signed_attr(signer_info, 'message_digest').native
    assert message_digest == digest(sig.covered_bytes(document), 'sha256')

    signed_attrs_der = b'\x31' + signer_info['signed_attrs'].dump()[1:]
    public_key = serialization.load_der_public_key(
        signer_cert.public_key.dump()
    )
    public_key.verify(
        signer_info['signature'].native, signed_attrs_der,
        padding.PKCS1v15(), hashes.SHA256()
    )
