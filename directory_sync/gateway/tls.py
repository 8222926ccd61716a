"""
SSL context construction for directory connections.

Supports the system trust store, a custom PEM bundle, or a PKCS12 truststore
(for directories reached through TLS-inspecting proxies).
"""

import ssl
import logging
from typing import Any, Dict, Union

logger = logging.getLogger(__name__)


class TLSConfigurationError(Exception):
    """Raised when the truststore cannot be loaded."""
    pass


def build_ssl_context(config: Dict[str, Any]) -> Union[ssl.SSLContext, bool]:
    """
    Build the ``verify`` argument for the HTTP client.
    
    Args:
        config: Directory configuration dictionary
        
    Returns:
        False when verification is disabled, otherwise an SSLContext
    """
    if not config.get('verify_ssl', True):
        logger.warning("SSL verification disabled for directory connection")
        return False
    
    context = ssl.create_default_context()
    
    truststore_file = config.get('truststore_file')
    if truststore_file:
        truststore_type = str(config.get('truststore_type', 'PEM')).upper()
        if truststore_type == 'PKCS12':
            _load_pkcs12_truststore(context, truststore_file, config.get('truststore_password'))
        else:
            try:
                context.load_verify_locations(cafile=truststore_file)
            except (OSError, ssl.SSLError) as e:
                raise TLSConfigurationError(f"Truststore loading failed: {e}")
            logger.info(f"Loaded PEM truststore: {truststore_file}")
    
    return context


def _load_pkcs12_truststore(context: ssl.SSLContext, truststore_file: str, password: str = None):
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.serialization import pkcs12
    
    try:
        with open(truststore_file, 'rb') as f:
            p12_data = f.read()
        
        _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
            p12_data, password.encode() if password else None
        )
    except (OSError, ValueError) as e:
        raise TLSConfigurationError(f"Truststore loading failed: {e}")
    
    ca_certs = []
    if certificate:
        ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM).decode('ascii'))
    for cert in (additional_certificates or []):
        ca_certs.append(cert.public_bytes(serialization.Encoding.PEM).decode('ascii'))
    
    if not ca_certs:
        raise TLSConfigurationError(f"No certificates found in truststore {truststore_file}")
    
    context.load_verify_locations(cadata='\n'.join(ca_certs))
    logger.info(f"Loaded PKCS12 truststore: {truststore_file}")
