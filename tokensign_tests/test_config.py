import logging
import os

import pytest

from tokensign.config import (
    DEFAULT_SETTINGS_FILE,
    LogConfig,
    PersistedSettings,
    SettingsStore,
    StdLogOutput,
    parse_cli_config,
)
from tokensign.config_utils import ConfigurationError
from tokensign.sign.pdf_byterange import DEFAULT_BYTES_RESERVED
from tokensign.sign.timestamps import DEFAULT_TSA_URLS


def test_empty_config():
    config = parse_cli_config('')
    assert config.tsa.endpoints == DEFAULT_TSA_URLS
    assert config.tsa.timeout == 30
    assert not config.tsa.require_timestamp
    assert config.signing.bytes_reserved == DEFAULT_BYTES_RESERVED
    assert config.settings_file == DEFAULT_SETTINGS_FILE
    assert config.log_config == {
        None: LogConfig(logging.INFO, StdLogOutput.STDERR)
    }


def test_full_config():
    config = parse_cli_config("""
tsa:
    endpoints:
        - https://tsa.example.com
        - http://tsa.example.org
    timeout: 10
    require-timestamp: true
    allow-insecure: true
signing:
    bytes-reserved: 16384
    field-name: Approval
    appearance:
        font-size: 8
        font-color: '#000080'
settings-file: /tmp/tokensign/settings.yml
logging:
    root-level: DEBUG
    root-output: stdout
    by-module:
        tokensign.sign:
            level: WARNING
            output: tokensign.log
""")
    tsa = config.tsa
    assert tsa.endpoints == (
        'https://tsa.example.com', 'http://tsa.example.org'
    )
    assert tsa.timeout == 10
    assert tsa.require_timestamp and tsa.allow_insecure
    timestamper = tsa.as_timestamper()
    assert [t.url for t in timestamper.timestampers][:2] \
        == list(tsa.endpoints)
    assert timestamper.timestampers[0].timeout == 10

    signing = config.signing
    assert signing.bytes_reserved == 16384
    assert signing.field_name == 'Approval'
    assert signing.appearance.font_size == 8
    assert signing.appearance.font_color == (0, 0, 128 / 255)

    assert config.settings_file == '/tmp/tokensign/settings.yml'
    assert config.log_config[None] == LogConfig('DEBUG', StdLogOutput.STDOUT)
    assert config.log_config['tokensign.sign'] \
        == LogConfig('WARNING', 'tokensign.log')


def test_single_endpoint():
    config = parse_cli_config(
        "tsa:\n    endpoints: https://tsa.example.com\n"
    )
    assert config.tsa.endpoints == ('https://tsa.example.com',)


def test_insecure_endpoints_dropped():
    config = parse_cli_config(
        "tsa:\n    endpoints: [http://tsa.example.com]\n"
    )
    assert config.tsa.as_timestamper().timestampers == []


@pytest.mark.parametrize('config_text', [
    'tsa: {timeout: 0}',
    'tsa: {timeout: soon}',
    'tsa: {endpoints: 5}',
    'tsa: {endpoint: https://tsa.example.com}',
    'signing: {bytes-reserved: 100}',
    'signing: {md-algorithm: sha1}',
    'signing: {appearance: {font-size: 100}}',
    'signing: {appearance: {colour: red}}',
    'signing: {appearance: [8]}',
    'settings-file: [a, b]',
    'keystore: {}',
    'logging: {by-module: {tokensign: {output: stdout}}}',
    'logging: {root-output: 1}',
    'tsa: [unbalanced',
    '- just a list',
])
def test_bad_config(config_text):
    with pytest.raises(ConfigurationError):
        parse_cli_config(config_text)


def test_settings_defaults(settings_store):
    assert settings_store.load() == PersistedSettings()


def test_settings_roundtrip(settings_store):
    settings_store.update(last_library_path='/usr/lib/libtestca.so')
    settings = settings_store.update(last_slot_id=3)
    assert settings == PersistedSettings('/usr/lib/libtestca.so', 3)
    assert SettingsStore(settings_store.path).load() == settings


def test_settings_file_has_no_secrets(settings_store):
    settings_store.update(last_library_path='/usr/lib/libtestca.so')
    with open(settings_store.path) as f:
        content = f.read()
    assert 'last-library-path' in content
    assert 'pin' not in content.lower()


@pytest.mark.parametrize('content', [
    'last-slot-id: one\n',
    'last-library-path: [1, 2]\n',
    '- a list\n',
    'last-slot-id: [unbalanced\n',
])
def test_malformed_settings(settings_store, content):
    os.makedirs(os.path.dirname(settings_store.path))
    with open(settings_store.path, 'w') as f:
        f.write(content)
    assert settings_store.load() == PersistedSettings()


def test_settings_path_expanded(monkeypatch, tmp_path):
    monkeypatch.setenv('HOME', str(tmp_path))
    store = SettingsStore('~/settings.yml')
    assert store.path == str(tmp_path / 'settings.yml')
