"""
In-memory stand-in for a PKCS#11 module, exposing the subset of the
python-pkcs11 object model the token manager relies on. Keys are
``cryptography`` private keys.
"""

from typing import Dict, List, Optional

from asn1crypto import algos
from asn1crypto import x509 as asn1_x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed
from pkcs11 import Attribute, KeyType, Mechanism, ObjectClass
from pkcs11 import exceptions as p11_exc


class FakeObject:

    def __init__(self, attrs: Dict):
        self.attrs = attrs

    def __getitem__(self, item):
        try:
            return self.attrs[item]
        except KeyError:
            raise p11_exc.AttributeTypeInvalid()


class FakePrivateKey(FakeObject):

    def __init__(self, private_key, key_id: Optional[bytes] = b'\x01'):
        attrs = {Attribute.CLASS: ObjectClass.PRIVATE_KEY}
        if key_id is not None:
            attrs[Attribute.ID] = key_id
        super().__init__(attrs)
        self.private_key = private_key
        self.fail_with: Optional[Exception] = None
        self.mechanisms_used: List[Mechanism] = []

    @property
    def key_type(self):
        if isinstance(self.private_key, ec.EllipticCurvePrivateKey):
            return KeyType.EC
        return KeyType.RSA

    def sign(self, data, mechanism=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.mechanisms_used.append(mechanism)
        data = bytes(data)
        if mechanism == Mechanism.RSA_PKCS:
            digest_info = algos.DigestInfo.load(data)
            md = digest_info['digest_algorithm']['algorithm'].native
            return self.private_key.sign(
                digest_info['digest'].native, padding.PKCS1v15(),
                Prehashed(getattr(hashes, md.upper())())
            )
        elif mechanism == Mechanism.SHA256_RSA_PKCS:
            return self.private_key.sign(
                data, padding.PKCS1v15(), hashes.SHA256()
            )
        elif mechanism == Mechanism.ECDSA:
            der = self.private_key.sign(
                data, ec.ECDSA(Prehashed(hashes.SHA256()))
            )
            return algos.DSASignature.load(der).to_p1363()
        raise p11_exc.MechanismInvalid()


class FakeCertificate(FakeObject):

    def __init__(self, cert: asn1_x509.Certificate,
                 cert_id: Optional[bytes] = b'\x01'):
        attrs = {
            Attribute.CLASS: ObjectClass.CERTIFICATE,
            Attribute.VALUE: cert.dump(),
        }
        if cert_id is not None:
            attrs[Attribute.ID] = cert_id
        super().__init__(attrs)


class FakeSession:

    def __init__(self, token: 'FakeToken'):
        self.token = token
        self.closed = False

    def get_objects(self, attrs):
        object_class = attrs.get(Attribute.CLASS)
        if object_class == ObjectClass.PRIVATE_KEY:
            return iter(self.token.keys)
        elif object_class == ObjectClass.CERTIFICATE:
            return iter(self.token.certificates)
        return iter(())

    def close(self):
        self.closed = True


class FakeToken:

    def __init__(self, pin, keys=(), certificates=(), label='Test Token'):
        self.label = label
        self.manufacturer_id = 'Tokensign Labs'
        self.model = 'FT-2000'
        self.serial = b'0000000042'
        self._pin = pin
        self.keys = list(keys)
        self.certificates = list(certificates)
        self.locked = False
        self.sessions: List[FakeSession] = []
        self.login_attempts = 0

    def open(self, rw=False, user_pin=None):
        self.login_attempts += 1
        if self.locked:
            raise p11_exc.PinLocked()
        if user_pin != self._pin:
            raise p11_exc.PinIncorrect()
        session = FakeSession(self)
        self.sessions.append(session)
        return session


class FakeSlot:

    def __init__(self, slot_id, token: FakeToken):
        self.slot_id = slot_id
        self.token = token

    def get_token(self):
        return self.token


class FakeLibrary:

    def __init__(self, slots=()):
        self.slots = list(slots)

    def get_slots(self, token_present=False):
        return list(self.slots)


class FakeLoader:
    """
    Replacement for :class:`pkcs11.lib` that records the paths it is asked
    to load.
    """

    def __init__(self, library: FakeLibrary,
                 error: Optional[Exception] = None):
        self.library = library
        self.error = error
        self.loaded: List[str] = []

    def __call__(self, path):
        self.loaded.append(path)
        if self.error is not None:
            raise self.error
        return self.library
