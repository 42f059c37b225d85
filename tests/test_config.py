import pytest

from certpump.config import ConfigError, Settings


def test_defaults():
    s = Settings.from_env({})
    assert s == Settings()
    assert s.nats_url == "nats://127.0.0.1:4222"
    assert s.channel == "get.CERT.*"
    assert s.queue_group == "certpump_group"
    assert s.default_timeout == 10
    assert s.ca_file is None


def test_overrides():
    s = Settings.from_env({
        "NATS_URL": "nats://bus:4222",
        "NATS_CHANNEL": "get.CERT.EU",
        "NATS_QUEUE_GROUP": "eu",
        "CERTPUMP_TIMEOUT": "15",
        "CERTPUMP_TRUST_STORE": "Mozilla",
        "CERTPUMP_CA_FILE": "/etc/roots.pem",
        "CERTPUMP_TLS_MIN_VERSION": "SSLv3",
        "CERTPUMP_TLS_MAX_VERSION": "TLSv1_3",
        "CERTPUMP_LOG_LEVEL": "debug",
    })
    assert s.nats_url == "nats://bus:4222"
    assert s.channel == "get.CERT.EU"
    assert s.queue_group == "eu"
    assert s.default_timeout == 15
    assert s.trust_store == "mozilla"
    assert s.ca_file == "/etc/roots.pem"
    assert (s.tls_min_version, s.tls_max_version) == ("SSLv3", "TLSv1_3")
    assert s.log_level == "DEBUG"


def test_heartbleed_defaults():
    s = Settings.from_env({"CERTPUMP_PROBE": "heartbleed"})
    assert s.probe == "heartbleed"
    assert s.channel == "get.HEARTBLEED.*"
    assert s.queue_group == "heartbleed_group"


def test_blank_values_use_defaults():
    assert Settings.from_env({"NATS_URL": "  ", "CERTPUMP_TIMEOUT": ""}) == Settings()


@pytest.mark.parametrize(
    "env",
    [
        {"CERTPUMP_TIMEOUT": "ten"},
        {"CERTPUMP_TIMEOUT": "0"},
        {"CERTPUMP_TIMEOUT": "-5"},
        {"CERTPUMP_PROBE": "ocsp"},
        {"CERTPUMP_TRUST_STORE": "corporate"},
        {"CERTPUMP_TLS_MIN_VERSION": "TLSv2"},
        {"CERTPUMP_TLS_MIN_VERSION": "TLSv1_3", "CERTPUMP_TLS_MAX_VERSION": "TLSv1"},
        {"CERTPUMP_LOG_LEVEL": "chatty"},
    ],
)
def test_invalid(env):
    with pytest.raises(ConfigError):
        Settings.from_env(env)
