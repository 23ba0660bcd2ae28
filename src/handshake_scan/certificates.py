from datetime import datetime, timezone
from typing import Optional
import dataclasses

from cryptography import x509
from OpenSSL import crypto

from .protocol import ScanError

class CertificateParseFailed(ScanError):
    """ Error for certificates sent by the server that can't be parsed. """
    pass

@dataclasses.dataclass
class Certificate:
    """
    Represents an X509 certificate in a chain sent by the server.
    """
    serial_number: str
    fingerprint_sha256: str
    subject: dict[str, str]
    issuer: dict[str, str]
    subject_alternative_names: list[str]
    key_type: str
    key_length_in_bits: int
    not_before: datetime
    not_after: datetime
    is_expired: bool
    days_until_expiration: int
    signature_algorithm: str
    pem: str

_public_key_type_by_openssl_id = {crypto.TYPE_DH: 'DH', crypto.TYPE_DSA: 'DSA', crypto.TYPE_EC: 'EC', crypto.TYPE_RSA: 'RSA'}

def _x509_name_to_dict(x509_name: crypto.X509Name) -> dict[str, str]:
    return {name.decode('utf-8'): value.decode('utf-8') for name, value in x509_name.get_components()}

def _x509_time_to_datetime(x509_time: Optional[bytes]) -> datetime:
    if x509_time is None:
        raise CertificateParseFailed('Timestamp cannot be None')
    return datetime.strptime(x509_time.decode('ascii'), '%Y%m%d%H%M%SZ').replace(tzinfo=timezone.utc)

def _subject_alternative_names(raw_cert: crypto.X509) -> list[str]:
    try:
        extension = raw_cert.to_cryptography().extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return extension.value.get_values_for_type(x509.DNSName)

def parse_certificate(data: bytes, current_date: Optional[datetime] = None) -> Certificate:
    """
    Parses a DER or PEM certificate into our Certificate dataclass.
    Raises CertificateParseFailed instead of returning partial information.
    """
    if current_date is None:
        current_date = datetime.now(tz=timezone.utc).replace(microsecond=0)
    file_type = crypto.FILETYPE_PEM if data.lstrip().startswith(b'-----BEGIN') else crypto.FILETYPE_ASN1

    try:
        raw_cert = crypto.load_certificate(file_type, data)
        not_after = _x509_time_to_datetime(raw_cert.get_notAfter())
        return Certificate(
            pem=crypto.dump_certificate(crypto.FILETYPE_PEM, raw_cert).decode('utf-8'),
            serial_number=str(raw_cert.get_serial_number()),
            subject=_x509_name_to_dict(raw_cert.get_subject()),
            issuer=_x509_name_to_dict(raw_cert.get_issuer()),
            subject_alternative_names=_subject_alternative_names(raw_cert),
            not_before=_x509_time_to_datetime(raw_cert.get_notBefore()),
            not_after=not_after,
            signature_algorithm=raw_cert.get_signature_algorithm().decode('utf-8'),
            key_length_in_bits=raw_cert.get_pubkey().bits(),
            key_type=_public_key_type_by_openssl_id.get(raw_cert.get_pubkey().type(), 'UNKNOWN'),
            fingerprint_sha256=raw_cert.digest('sha256').decode('utf-8'),
            is_expired=raw_cert.has_expired(),
            days_until_expiration=(not_after - current_date).days,
        )
    except (crypto.Error, ValueError, UnicodeDecodeError) as e:
        raise CertificateParseFailed(f'Could not parse certificate: {e}') from e
