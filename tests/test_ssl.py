import datetime
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from peerlink.tools.config import ClientConfig
from peerlink.tools.ssl import default_username, extract_common_name, get_ssl_session


def write_certificate(directory, common_name):
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    cert_path = directory / "client.crt"
    key_path = directory / "client.key"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    return str(cert_path), str(key_path)


def test_extract_common_name(tmp_path):
    cert_path, _ = write_certificate(tmp_path, "device-42")

    assert extract_common_name(cert_path) == "device-42"


def test_extract_common_name_of_unreadable_file(tmp_path):
    bogus = tmp_path / "bogus.crt"
    bogus.write_text("not a certificate")

    assert extract_common_name(str(bogus)) is None
    assert extract_common_name(str(tmp_path / "missing.crt")) is None


def test_default_username_prefers_configured_name(tmp_path):
    cert_path, key_path = write_certificate(tmp_path, "device-42")

    assert default_username(ClientConfig(username="alice", mtls_cert=cert_path)) == "alice"
    assert default_username(ClientConfig(mtls_cert=cert_path, mtls_key=key_path)) == "device-42"
    assert default_username(ClientConfig()) is None


def test_no_certificate_means_no_custom_session():
    assert get_ssl_session(ClientConfig()) is None


async def test_certificate_session(tmp_path):
    cert_path, key_path = write_certificate(tmp_path, "device-42")

    session = get_ssl_session(ClientConfig(mtls_cert=cert_path, mtls_key=key_path))
    try:
        assert session is not None
    finally:
        await session.close()
