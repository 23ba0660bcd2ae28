from typing import Dict, List, Optional, Sequence
import datetime

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from handshake_scan import probe, protocol
from handshake_scan.names_and_numbers import AlertDescription, AlertLevel, CipherSuite, CompressionMethod, Curve, Protocol, SignatureAlgorithm

class FakeServer:
    """
    Deterministic server that answers Client Hellos from its own preference lists,
    standing in for `probe.send_hello`.
    """
    def __init__(
        self,
        cipher_suites: Dict[Protocol, Sequence[CipherSuite]],
        curves: Sequence[Curve] = (),
        signature_algorithms: Optional[Sequence[SignatureAlgorithm]] = None,
        certificate_chain: Sequence[bytes] = (),
        curve_type: int = 3,
        ):
        self.cipher_suites = cipher_suites
        self.curves = curves
        self.signature_algorithms = signature_algorithms
        self.certificate_chain = certificate_chain
        self.curve_type = curve_type
        self.client_hellos: List[protocol.ClientHello] = []
        self.offered_signature_algorithms: List[Sequence[SignatureAlgorithm]] = []

    @property
    def handshakes(self) -> int:
        return len(self.client_hellos)

    def reject(self):
        raise protocol.ServerAlertError(AlertLevel.FATAL, AlertDescription.handshake_failure)

    def send_hello(self, connection_settings: probe.ConnectionSettings, client_hello: protocol.ClientHello) -> protocol.ServerHello:
        self.client_hellos.append(client_hello)
        signature_algorithms = client_hello.signature_algorithms or protocol.get_offered_signature_algorithms()
        self.offered_signature_algorithms.append(signature_algorithms)

        version = client_hello.protocols[0]
        if self.signature_algorithms is not None and not set(signature_algorithms) & set(self.signature_algorithms):
            self.reject()
        cipher_suite = next((c for c in self.cipher_suites.get(version, ()) if c in client_hello.cipher_suites), None)
        if cipher_suite is None:
            self.reject()

        server_key_exchange = None
        if cipher_suite.is_ecc:
            curve = next((c for c in self.curves if c in client_hello.curves), None)
            if curve is None:
                self.reject()
            server_key_exchange = bytes([self.curve_type]) + curve.value.to_bytes(2, 'big') + b'\x01\x04'
            if cipher_suite.has_psk_identity_hint:
                server_key_exchange = b'\x00\x00' + server_key_exchange

        return protocol.ServerHello(
            version=version,
            is_retry_request=False,
            compression=CompressionMethod.NULL,
            cipher_suite_id=cipher_suite.value,
            server_key_exchange=server_key_exchange,
            certificate_chain=list(self.certificate_chain),
        )

@pytest.fixture
def fake_server(monkeypatch):
    """ Returns a function that builds a FakeServer and installs it in place of the network. """
    def install(*args, **kwargs) -> FakeServer:
        server = FakeServer(*args, **kwargs)
        monkeypatch.setattr(probe, 'send_hello', server.send_hello)
        return server
    return install

@pytest.fixture(scope='session')
def certificate_der() -> bytes:
    """ Self-signed ECDSA P-256 certificate, signed with SHA-256. """
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, 'example.com')])
    now = datetime.datetime.now(datetime.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(1234)
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName('example.com'), x509.DNSName('www.example.com')]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.DER)
