import ssl
from typing import Optional
from aiohttp import ClientSession, TCPConnector
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from .logger import log_error, log_info


def build_ssl_context(cert_path: str, key_path: str) -> ssl.SSLContext:
    ssl_context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    ssl_context.minimum_version = ssl.TLSVersion.TLSv1_2
    ssl_context.load_cert_chain(certfile=cert_path, keyfile=key_path)

    ssl_context.check_hostname = True
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    return ssl_context


def get_ssl_session(config) -> Optional[ClientSession]:
    """
    HTTP session presenting the configured client certificate.

    Returns None when no certificate is configured, which lets the Socket.IO
    client create its own plain session.
    """
    if not (config.mtls_cert and config.mtls_key):
        return None
    log_info(f"Using client certificate {config.mtls_cert}")
    connector = TCPConnector(ssl=build_ssl_context(config.mtls_cert, config.mtls_key))
    return ClientSession(connector=connector)


def extract_common_name(cert_path: str) -> Optional[str]:
    """
    Extract the CN field of a PEM client certificate.
    Logs errors if extraction fails.

    Returns:
        str: The certificate CN, or None if not found
    """
    try:
        with open(cert_path, "rb") as cert_file:
            cert_data = cert_file.read()
            cert = x509.load_pem_x509_certificate(cert_data, default_backend())

            for attribute in cert.subject:
                if attribute.oid == x509.oid.NameOID.COMMON_NAME:
                    return attribute.value

        log_error(f"CN field not found in certificate: {cert_path}")
        return None
    except Exception as e:
        log_error(f"Failed to extract CN from {cert_path}: {e}")
        return None


def default_username(config) -> Optional[str]:
    """The configured username, else the client certificate CN when mTLS is configured."""
    if config.username:
        return config.username
    if config.mtls_cert:
        return extract_common_name(config.mtls_cert)
    return None
