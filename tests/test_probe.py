from typing import Optional
import socket
import threading

import pytest
from handshake_scan import probe, protocol
from handshake_scan.names_and_numbers import CipherSuite, CompressionMethod, Curve, ECCurveType, Protocol, SignatureAlgorithm
from handshake_scan.probe import *
from handshake_scan.protocol import BadServerResponse, ClientHello, ServerAlertError, ServerHello

ECDHE = CipherSuite.TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256
RSA = CipherSuite.TLS_RSA_WITH_AES_128_GCM_SHA256

def answer_with(monkeypatch, server_hello: Optional[ServerHello] = None, error: Optional[Exception] = None):
    calls = []
    def send_hello(connection_settings, client_hello):
        calls.append((client_hello, protocol.get_offered_signature_algorithms()))
        if error is not None:
            raise error
        return server_hello
    monkeypatch.setattr(probe, 'send_hello', send_hello)
    return calls

def hello(cipher_suite: CipherSuite, version: Protocol = Protocol.TLS1_2, server_key_exchange: Optional[bytes] = None, certificate_chain=()) -> ServerHello:
    return ServerHello(version, False, CompressionMethod.NULL, cipher_suite.value, server_key_exchange=server_key_exchange, certificate_chain=list(certificate_chain))

settings = ConnectionSettings('example.com')

def test_say_hello_outcome(monkeypatch):
    calls = answer_with(monkeypatch, hello(ECDHE, server_key_exchange=b'\x03\x00\x1d\x01\x04', certificate_chain=[b'leaf']))
    outcome = say_hello(settings, 'example.com', [RSA, ECDHE], [Curve.secp256r1, Curve.x25519])
    assert outcome == NegotiationOutcome(Protocol.TLS1_2, cipher_index=1, curve_index=1, certificate_chain=[b'leaf'])
    client_hello, _ = calls[0]
    assert client_hello.protocols == [Protocol.TLS1_2]
    assert client_hello.server_name == 'example.com'

def test_say_hello_defaults_to_registry(monkeypatch):
    calls = answer_with(monkeypatch, hello(RSA, version=Protocol.TLS1_0))
    say_hello(settings, '', protocol=Protocol.TLS1_0)
    client_hello, signature_algorithms = calls[0]
    assert client_hello.server_name is None
    assert CipherSuite.TLS_AES_128_GCM_SHA256 not in client_hello.cipher_suites
    assert RSA in client_hello.cipher_suites
    assert client_hello.curves == list(Curve)
    assert client_hello.signature_algorithms == list(SignatureAlgorithm)

def test_say_hello_signature_algorithms(monkeypatch):
    calls = answer_with(monkeypatch, hello(RSA))
    say_hello(settings, 'example.com', [RSA], signature_algorithms=[SignatureAlgorithm.rsa_pss_rsae_sha256])
    client_hello, ambient_signature_algorithms = calls[0]
    assert client_hello.signature_algorithms == [SignatureAlgorithm.rsa_pss_rsae_sha256]
    # Sent in the Client Hello itself, the process-wide offer is untouched.
    assert ambient_signature_algorithms == tuple(SignatureAlgorithm)

def test_say_hello_leaves_signature_algorithm_lock_free(monkeypatch):
    locked = []
    def send_hello(connection_settings, client_hello):
        locked.append(protocol._offered_signature_algorithms_lock.locked())
        return hello(RSA)
    monkeypatch.setattr(probe, 'send_hello', send_hello)
    say_hello(settings, 'example.com', [RSA], signature_algorithms=[SignatureAlgorithm.ed25519])
    assert locked == [False]

def test_say_hello_stray_os_error(monkeypatch):
    answer_with(monkeypatch, error=ConnectionAbortedError('aborted'))
    with pytest.raises(NetworkError):
        say_hello(settings, 'example.com', [RSA])

@pytest.mark.parametrize('error', [
    ServerAlertError(1, 40),
    EmptyServerResponse(),
])
def test_say_hello_rejected(monkeypatch, error):
    answer_with(monkeypatch, error=error)
    with pytest.raises(HandshakeFailed):
        say_hello(settings, 'example.com', [RSA])

def test_say_hello_network_error_propagates(monkeypatch):
    answer_with(monkeypatch, error=NetworkError('unreachable'))
    with pytest.raises(NetworkError):
        say_hello(settings, 'example.com', [RSA])

def test_say_hello_unexpected_version(monkeypatch):
    answer_with(monkeypatch, hello(RSA, version=Protocol.TLS1_1))
    with pytest.raises(UnexpectedVersion):
        say_hello(settings, 'example.com', [RSA], protocol=Protocol.TLS1_2)

def test_say_hello_unexpected_cipher(monkeypatch):
    answer_with(monkeypatch, hello(ECDHE))
    with pytest.raises(UnexpectedCipher):
        say_hello(settings, 'example.com', [RSA])

def test_say_hello_unexpected_curve(monkeypatch):
    answer_with(monkeypatch, hello(ECDHE, server_key_exchange=b'\x03\x00\x18\x01\x04'))
    with pytest.raises(UnexpectedCurve):
        say_hello(settings, 'example.com', [ECDHE], [Curve.secp256r1])

def test_say_hello_missing_key_exchange(monkeypatch):
    answer_with(monkeypatch, hello(ECDHE))
    with pytest.raises(BadServerResponse):
        say_hello(settings, 'example.com', [ECDHE])

def test_say_hello_non_named_curve(monkeypatch):
    answer_with(monkeypatch, hello(ECDHE, server_key_exchange=b'\x02\x00\x00', certificate_chain=[b'leaf']))
    with pytest.raises(NonNamedCurve) as e:
        say_hello(settings, 'example.com', [RSA, ECDHE])
    assert e.value.curve_type == ECCurveType.explicit_char2
    assert e.value.outcome.cipher_index == 1
    assert e.value.outcome.curve_index is None
    assert e.value.outcome.certificate_chain == [b'leaf']

def test_say_hello_cancelled(monkeypatch):
    calls = answer_with(monkeypatch, hello(RSA))
    cancel_event = threading.Event()
    cancel_event.set()
    with pytest.raises(ScanCancelled):
        say_hello(ConnectionSettings('example.com', cancel_event=cancel_event), 'example.com', [RSA])
    assert calls == []

def serve_once(response: bytes):
    """ Listens on a local port, answers the first connection with `response`, then closes it. """
    server = socket.create_server(('127.0.0.1', 0))
    received = []
    def run():
        with server:
            connection, _ = server.accept()
            with connection:
                received.append(connection.recv(65536))
                connection.sendall(response)
    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return server.getsockname()[1], received, thread

def canned_flight() -> bytes:
    server_hello = b'\x03\x03' + 32*b'\x11' + b'\x00' + RSA.value.to_bytes(2, 'big') + b'\x00'
    messages = b'\x02' + len(server_hello).to_bytes(3, 'big') + server_hello + b'\x0e\x00\x00\x00'
    return b'\x16\x03\x03' + len(messages).to_bytes(2, 'big') + messages

def test_send_hello_local_server():
    port, received, thread = serve_once(canned_flight())
    server_hello = send_hello(ConnectionSettings('127.0.0.1', port), ClientHello('localhost', protocols=[Protocol.TLS1_2], cipher_suites=[RSA]))
    thread.join(5)
    assert server_hello.version == Protocol.TLS1_2
    assert server_hello.cipher_suite_id == RSA.value
    assert received[0].startswith(b'\x16\x03\x01')

def test_send_hello_closed_without_answer():
    port, _, thread = serve_once(b'')
    with pytest.raises(EmptyServerResponse):
        send_hello(ConnectionSettings('127.0.0.1', port), ClientHello('localhost'))
    thread.join(5)

def test_send_hello_connection_refused():
    with socket.create_server(('127.0.0.1', 0)) as placeholder:
        port = placeholder.getsockname()[1]
    with pytest.raises(NetworkError):
        send_hello(ConnectionSettings('127.0.0.1', port, timeout_in_seconds=1), ClientHello('localhost'))

class UnreachableSocket:
    """ Accepts the Client Hello, then fails to read with an error other than timeout or reset. """
    def __enter__(self):
        return self
    def __exit__(self, *exc_info):
        return None
    def sendall(self, data):
        pass
    def settimeout(self, timeout):
        pass
    def recv(self, size):
        raise ConnectionAbortedError('aborted')

def test_send_hello_read_error(monkeypatch):
    monkeypatch.setattr(probe, 'make_socket', lambda connection_settings: UnreachableSocket())
    with pytest.raises(NetworkError):
        send_hello(settings, ClientHello('example.com'))

def test_unsupported_proxy():
    with pytest.raises(ProxyError):
        make_socket(ConnectionSettings('example.com', proxy='socks5://127.0.0.1:1080'))

def test_parse_target():
    assert parse_target('example.com') == ('example.com', 443)
    assert parse_target('example.com:8443') == ('example.com', 8443)
    assert parse_target('https://example.com:8443/path?q=1') == ('example.com', 8443)
    assert parse_target('127.0.0.1:8080', 80) == ('127.0.0.1', 8080)
