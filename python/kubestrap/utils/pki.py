"""
kubestrap/utils/pki.py

Discovery-token CA cert hash, as kubeadm expects it: SHA-256 over the
DER-encoded SubjectPublicKeyInfo of the cluster CA's public key.
"""

import hashlib
from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives import serialization


def ca_public_key_der(ca_cert_pem: Union[str, bytes]) -> bytes:
    """Extract the CA public key from a PEM certificate, DER-encoded.

    Raises:
        ValueError: If the input is not a PEM certificate.
    """
    data = ca_cert_pem.encode("ascii") if isinstance(ca_cert_pem, str) else ca_cert_pem
    cert = x509.load_pem_x509_certificate(data)
    return cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def discovery_hash(ca_cert_pem: Union[str, bytes]) -> str:
    """Hex SHA-256 of the CA's DER public key (without the 'sha256:' prefix)."""
    return hashlib.sha256(ca_public_key_der(ca_cert_pem)).hexdigest()
