import os

import pytest

from tokensign.config import SettingsStore
from tokensign.sign import library_paths
from tokensign.sign.pkcs11 import TokenSessionManager
from tokensign.sign.timestamps import FallbackTimeStamper
from tokensign.sign.timestamps.dummy_client import DummyTimeStamper

from . import samples
from .fake_pkcs11 import (
    FakeCertificate,
    FakeLibrary,
    FakeLoader,
    FakePrivateKey,
    FakeSlot,
    FakeToken,
)

SLOT_ID = 1


@pytest.fixture(scope='session')
def ca_key():
    return samples.rsa_key()


@pytest.fixture(scope='session')
def ca_cert(ca_key):
    return samples.make_cert(
        samples.CA_CN, ca_key, ca=True,
        key_usage=('digital_signature',)
    )


@pytest.fixture(scope='session')
def signer_key():
    return samples.rsa_key()


@pytest.fixture(scope='session')
def signer_cert(signer_key, ca_key):
    return samples.make_cert(
        samples.SIGNER_CN, signer_key, issuer_cn=samples.CA_CN,
        issuer_key=ca_key
    )


@pytest.fixture(scope='session')
def tsa_key():
    return samples.rsa_key()


@pytest.fixture(scope='session')
def tsa_cert(tsa_key, ca_key):
    return samples.make_cert(
        samples.TSA_CN, tsa_key, issuer_cn=samples.CA_CN, issuer_key=ca_key,
        time_stamping=True
    )


@pytest.fixture
def fake_token(signer_key, signer_cert, ca_cert):
    return FakeToken(
        samples.TOKEN_PIN,
        keys=[FakePrivateKey(signer_key, key_id=b'\x01')],
        certificates=[
            FakeCertificate(ca_cert, cert_id=b'\x02'),
            FakeCertificate(signer_cert, cert_id=b'\x01'),
        ],
    )


@pytest.fixture
def fake_loader(fake_token):
    return FakeLoader(FakeLibrary([FakeSlot(SLOT_ID, fake_token)]))


@pytest.fixture
def module_dir(tmp_path, monkeypatch):
    lib_dir = tmp_path / 'vendor'
    lib_dir.mkdir()
    prefix = os.path.realpath(lib_dir) + os.sep
    monkeypatch.setitem(library_paths.ALLOWED_PREFIXES, 'linux', (prefix,))
    return lib_dir


@pytest.fixture
def lib_path(module_dir):
    path = module_dir / 'libtestca.so'
    path.write_bytes(b'\x7fELF')
    return os.path.realpath(path)


@pytest.fixture
def token_manager(fake_loader):
    return TokenSessionManager(lib_loader=fake_loader, platform='linux')


@pytest.fixture
def logged_in_token(token_manager, lib_path):
    token_manager.open(lib_path)
    token_manager.login(SLOT_ID, samples.TOKEN_PIN)
    yield token_manager
    token_manager.close()


@pytest.fixture
def dummy_tsa(tsa_cert, tsa_key):
    return DummyTimeStamper(tsa_cert, tsa_key)


@pytest.fixture
def fallback_tsa(dummy_tsa):
    return FallbackTimeStamper([dummy_tsa])


@pytest.fixture
def settings_store(tmp_path):
    return SettingsStore(str(tmp_path / 'settings' / 'settings.yml'))


@pytest.fixture
def input_pdf(tmp_path):
    path = tmp_path / 'input.pdf'
    path.write_bytes(samples.THREE_PAGES)
    return str(path)


@pytest.fixture
def output_pdf(tmp_path):
    return str(tmp_path / 'output.pdf')
