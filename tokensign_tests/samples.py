"""
Sample documents and certificates for the test suite, generated on the fly.
"""

from datetime import datetime, timezone
from io import BytesIO
from typing import Iterable, Optional, Sequence

from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

SIGNER_CN = 'Nguyen Van A'
CA_CN = 'Test Root CA'
TSA_CN = 'Test TSA'
TOKEN_PIN = '123456'

NOT_BEFORE = datetime(2020, 1, 1, tzinfo=timezone.utc)
NOT_AFTER = datetime(2035, 1, 1, tzinfo=timezone.utc)


def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def ec_key():
    return ec.generate_private_key(ec.SECP256R1())


def _name(cn):
    return x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, cn),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, 'Tokensign Testing'),
        x509.NameAttribute(NameOID.COUNTRY_NAME, 'VN'),
    ])


def make_cert(cn, key, issuer_cn=None, issuer_key=None, *,
              not_before=NOT_BEFORE, not_after=NOT_AFTER, ca=False,
              key_usage: Optional[Sequence[str]] = (
                  'digital_signature', 'content_commitment'
              ),
              time_stamping=False) -> asn1_x509.Certificate:
    """
    Issue a certificate with the ``cryptography`` builder, and return it as
    an :mod:`asn1crypto` object. Self-signed if no issuer is given.
    """
    issuer_cn = issuer_cn or cn
    issuer_key = issuer_key or key
    builder = x509.CertificateBuilder() \
        .subject_name(_name(cn)) \
        .issuer_name(_name(issuer_cn)) \
        .public_key(key.public_key()) \
        .serial_number(x509.random_serial_number()) \
        .not_valid_before(not_before) \
        .not_valid_after(not_after) \
        .add_extension(
            x509.BasicConstraints(ca=ca, path_length=None), critical=True
        )
    if key_usage is not None:
        usages = set(key_usage)
        builder = builder.add_extension(x509.KeyUsage(
            digital_signature='digital_signature' in usages,
            content_commitment='content_commitment' in usages,
            key_encipherment='key_encipherment' in usages,
            data_encipherment=False,
            key_agreement=False,
            key_cert_sign=ca,
            crl_sign=ca,
            encipher_only=False,
            decipher_only=False,
        ), critical=True)
    if time_stamping:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.TIME_STAMPING]),
            critical=True
        )
    cert = builder.sign(issuer_key, hashes.SHA256())
    return asn1_x509.Certificate.load(
        cert.public_bytes(serialization.Encoding.DER)
    )


def _assemble(objects: Sequence[bytes], trailer_extra: bytes,
              xref_stream: bool) -> bytes:
    out = BytesIO()
    out.write(b'%PDF-1.7\n%\xe2\xe3\xcf\xd3\n')
    offsets = []
    for idnum, body in enumerate(objects, start=1):
        offsets.append(out.tell())
        out.write(b'%d 0 obj\n%s\nendobj\n' % (idnum, body))

    xref_pos = out.tell()
    if xref_stream:
        xref_id = len(objects) + 1
        offsets.append(xref_pos)
        data = b'\x00\x00\x00\x00\x00\xff\xff' + b''.join(
            b'\x01' + off.to_bytes(4, 'big') + b'\x00\x00' for off in offsets
        )
        out.write(
            b'%d 0 obj\n<< /Type /XRef /Size %d /W [1 4 2] /Root 1 0 R'
            b'%s /Length %d >>\nstream\n'
            % (xref_id, xref_id + 1, trailer_extra, len(data))
        )
        out.write(data)
        out.write(b'\nendstream\nendobj\n')
    else:
        out.write(b'xref\n0 %d\n' % (len(objects) + 1))
        out.write(b'0000000000 65535 f \n')
        for off in offsets:
            out.write(b'%010d 00000 n \n' % off)
        out.write(
            b'trailer\n<< /Size %d /Root 1 0 R%s >>\n'
            % (len(objects) + 1, trailer_extra)
        )
    out.write(b'startxref\n%d\n%%%%EOF\n' % xref_pos)
    return out.getvalue()


def simple_pdf(pages=3, xref_stream=False, encrypted=False,
               catalog_extra=b'', extra_objects: Iterable[bytes] = (),
               media_box=(0, 0, 595, 842)) -> bytes:
    """
    Build a small document with one line of text on each page.

    Objects are numbered as follows: 1 is the catalog, 2 the page tree,
    then the pages, then their content streams, then ``extra_objects``.
    """
    page_ids = range(3, 3 + pages)
    kids = b' '.join(b'%d 0 R' % ix for ix in page_ids)
    objects = [
        b'<< /Type /Catalog /Pages 2 0 R%s >>' % catalog_extra,
        b'<< /Type /Pages /Kids [%s] /Count %d /MediaBox [%s] >>' % (
            kids, pages, b' '.join(b'%d' % x for x in media_box)
        ),
    ]
    for ix in page_ids:
        objects.append(
            b'<< /Type /Page /Parent 2 0 R /Contents %d 0 R '
            b'/Resources << >> >>' % (ix + pages)
        )
    for ix in range(pages):
        content = b'BT /F1 12 Tf 72 720 Td (Page %d) Tj ET' % (ix + 1)
        objects.append(
            b'<< /Length %d >>\nstream\n%s\nendstream'
            % (len(content), content)
        )
    objects.extend(extra_objects)
    trailer_extra = b''
    if encrypted:
        trailer_extra = b' /Encrypt << /Filter /Standard /V 2 /R 3 >>'
    return _assemble(objects, trailer_extra, xref_stream)


def first_extra_object_id(pages=3) -> int:
    return 3 + 2 * pages


def pdf_with_broken_signature(pages=3) -> bytes:
    """
    A document whose only signature field has an impossible /ByteRange.
    """
    field_id = first_extra_object_id(pages)
    return simple_pdf(
        pages=pages,
        catalog_extra=b' /AcroForm << /Fields [%d 0 R] >>' % field_id,
        extra_objects=[
            b'<< /FT /Sig /T (Signature1) /V << /Type /Sig '
            b'/ByteRange [0 10 20 999999] /Contents <3000> >> >>'
        ]
    )


MINIMAL = simple_pdf(pages=1)
MINIMAL_XREF_STREAM = simple_pdf(pages=1, xref_stream=True)
THREE_PAGES = simple_pdf(pages=3)
THREE_PAGES_XREF_STREAM = simple_pdf(pages=3, xref_stream=True)
