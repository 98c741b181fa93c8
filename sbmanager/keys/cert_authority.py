# @file cert_authority.py
# Creates the self-signed X.509 certificates of the secure boot key hierarchy.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Creates the self-signed X.509 certificates of the secure boot key hierarchy."""

import datetime
import logging

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from sbmanager.exceptions import CertToolFailure

DEFAULT_KEY_SIZE = 4096
DEFAULT_VALID_DAYS = 3650
PUBLIC_EXPONENT = 65537


def load_private_key(key_pem: bytes) -> rsa.RSAPrivateKey:
    """Loads an unencrypted PEM private key."""
    try:
        return serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError) as exc:
        raise CertToolFailure(f"Unable to load private key: {exc}")


def load_certificate(cert_pem: bytes) -> x509.Certificate:
    """Loads a PEM certificate."""
    try:
        return x509.load_pem_x509_certificate(cert_pem)
    except ValueError as exc:
        raise CertToolFailure(f"Unable to load certificate: {exc}")


def pem_to_der(cert_pem: bytes) -> bytes:
    return load_certificate(cert_pem).public_bytes(serialization.Encoding.DER)


class CertAuthority(object):
    """Generates RSA key pairs and self-signed certificates."""

    def create_self_signed(
        self, common_name: str, key_size: int = DEFAULT_KEY_SIZE, days: int = DEFAULT_VALID_DAYS
    ) -> tuple:
        """Creates a private key and a certificate for it, signed by itself.

        Args:
            common_name (str): subject and issuer CN, e.g. "SecureBoot PK"
            key_size (int): RSA modulus length in bits
            days (int): validity period starting now

        Returns:
            (tuple): PEM private key (unencrypted), PEM certificate

        Raises:
            (CertToolFailure): key or certificate creation failed
        """
        logging.info(f"Creating rsa:{key_size} certificate for CN '{common_name}' valid for {days} days")
        now = datetime.datetime.now(datetime.timezone.utc)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])

        try:
            key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=key_size)
            cert = (
                x509.CertificateBuilder()
                .subject_name(name)
                .issuer_name(name)
                .not_valid_before(now)
                .not_valid_after(now + datetime.timedelta(days=days))
                .serial_number(x509.random_serial_number())
                .public_key(key.public_key())
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
                .sign(private_key=key, algorithm=hashes.SHA256())
            )
        except (ValueError, TypeError) as exc:
            raise CertToolFailure(f"Unable to create certificate for '{common_name}': {exc}")

        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        cert_pem = cert.public_bytes(encoding=serialization.Encoding.PEM)
        return key_pem, cert_pem
