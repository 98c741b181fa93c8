# @file efi_sig_tool.py
# Converts certificates to EFI signature lists and wraps them into
# EFI_VARIABLE_AUTHENTICATION_2 payloads.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Converts certificates to EFI signature lists and signs them.

A signature list produced here holds exactly one EFI_CERT_X509 entry (the DER
encoded certificate) owned by the hierarchy GUID. The authenticated payload is
the time based EFI_VARIABLE_AUTHENTICATION_2 structure firmware expects for
writes to PK, KEK and db.
"""

import datetime
import io
import logging
import uuid
from typing import Optional

from edk2toollib.uefi.authenticated_variables_structure_support import (
    EfiSignatureDatabase,
    EfiSignatureDataFactory,
    EfiSignatureList,
    EfiVariableAuthentication2,
    EfiVariableAuthentication2Builder,
)

from sbmanager.exceptions import SigningToolFailure
from sbmanager.keys.cert_authority import load_certificate, load_private_key, pem_to_der

EFI_GLOBAL_VARIABLE = uuid.UUID("8be4df61-93ca-11d2-aa0d-00e098032b8c")
EFI_IMAGE_SECURITY_DATABASE_GUID = uuid.UUID("d719b2cb-3d3a-4596-a3bc-dad00e67656f")

# variable namespace of each secure boot variable
VARIABLE_NAMESPACES = {
    "PK": EFI_GLOBAL_VARIABLE,
    "KEK": EFI_GLOBAL_VARIABLE,
    "db": EFI_IMAGE_SECURITY_DATABASE_GUID,
    "dbx": EFI_IMAGE_SECURITY_DATABASE_GUID,
}

AUTHENTICATED_ATTRIBUTES = "NV,BS,RT,AT"


def variable_namespace(variable_name: str) -> uuid.UUID:
    try:
        return VARIABLE_NAMESPACES[variable_name]
    except KeyError:
        raise SigningToolFailure(f"{variable_name} is not a secure boot variable")


class EfiSigTool(object):
    """Signature list and authenticated variable encoder."""

    def cert_to_signature_list(self, cert_pem: bytes, owner: uuid.UUID) -> bytes:
        """Encodes a PEM certificate as an EFI_SIGNATURE_LIST owned by `owner`."""
        try:
            der = pem_to_der(cert_pem)
            siglist = EfiSignatureList(typeguid=EfiSignatureDataFactory.EFI_CERT_X509_GUID)
            sigdata = EfiSignatureDataFactory.create(EfiSignatureDataFactory.EFI_CERT_X509_GUID, io.BytesIO(der), owner)

            # X.509 entries are variable size, one per list
            siglist.AddSignatureHeader(None, SigSize=sigdata.get_total_size())
            siglist.AddSignatureData(sigdata)
            return siglist.encode()
        except Exception as exc:
            raise SigningToolFailure(f"Unable to create signature list for owner {owner}: {exc}") from exc

    def sign_signature_list(
        self,
        variable_name: str,
        signature_list: bytes,
        signer_key_pem: bytes,
        signer_cert_pem: bytes,
        timestamp: Optional[datetime.datetime] = None,
    ) -> bytes:
        """Wraps a signature list into a signed EFI_VARIABLE_AUTHENTICATION_2 payload.

        Args:
            variable_name (str): PK, KEK or db
            signature_list (bytes): the new variable contents
            signer_key_pem (bytes): PEM private key authorised to update the variable
            signer_cert_pem (bytes): PEM certificate matching signer_key_pem
            timestamp (datetime): EFI_TIME of the update, defaults to now (UTC)

        Raises:
            (SigningToolFailure): the payload could not be built or signed
        """
        if timestamp is None:
            timestamp = datetime.datetime.now(datetime.timezone.utc)
        namespace = variable_namespace(variable_name)

        signer_cert = load_certificate(signer_cert_pem)
        signer_key = load_private_key(signer_key_pem)

        logging.debug(f"Signing {variable_name} ({namespace}) as {signer_cert.subject.rfc4514_string()}")
        try:
            builder = EfiVariableAuthentication2Builder(
                name=variable_name,
                guid=namespace,
                attributes=AUTHENTICATED_ATTRIBUTES,
                payload=signature_list,
                efi_time=timestamp,
            )
            builder.sign(signer_cert, signer_key)
            return builder.finalize().encode()
        except Exception as exc:
            raise SigningToolFailure(f"Unable to sign the {variable_name} signature list: {exc}") from exc

    def decode_signature_list(self, data: bytes) -> list:
        """Returns the (owner, DER certificate) pairs of an EFI signature database."""
        try:
            database = EfiSignatureDatabase(io.BytesIO(data))
        except Exception as exc:
            raise SigningToolFailure(f"Unable to decode signature list: {exc}") from exc

        entries = []
        for esl in database.esl_list:
            for signature in esl.signature_data_list:
                entries.append((signature.signature_owner, bytes(signature.signature_data)))
        return entries

    def decode_authenticated_payload(self, data: bytes) -> bytes:
        """Returns the signature list carried by an EFI_VARIABLE_AUTHENTICATION_2 payload."""
        try:
            auth_var = EfiVariableAuthentication2(decodefs=io.BytesIO(data))
        except Exception as exc:
            raise SigningToolFailure(f"Unable to decode authenticated variable: {exc}") from exc
        payload = auth_var.payload
        if isinstance(payload, io.BytesIO):
            payload = payload.getvalue()
        return bytes(payload)
