from typing import Iterator, List, Optional, Sequence
from urllib.parse import urlparse
import dataclasses
import re
import socket
import threading
import time

from .names_and_numbers import CipherSuite, Curve, ECCurveType, Protocol, SignatureAlgorithm, cipher_suites_for
from .protocol import ClientHello, ScanError, ProtocolViolation, ServerAlertError, BadServerResponse, ServerHello, make_client_hello, parse_server_flight, parse_ec_parameters, logger

# Default socket connection timeout, in seconds. Also bounds the whole server response.
DEFAULT_TIMEOUT: float = 2

class HandshakeFailed(ScanError):
    """
    The server accepted none of the offered values. This is how every enumeration ends,
    so callers must treat it as an answer, not as a failure.
    """
    pass

class UnexpectedVersion(ProtocolViolation):
    """ Error for servers that negotiate a protocol version other than the pinned one. """
    pass

class UnexpectedCipher(ProtocolViolation):
    """ Error for servers that pick a cipher suite that was not offered. """
    pass

class UnexpectedCurve(ProtocolViolation):
    """ Error for servers that pick an elliptic curve that was not offered. """
    pass

class NonNamedCurve(ProtocolViolation):
    """
    Error for servers that send explicit ECDH parameters instead of a named curve.
    The rest of the negotiation is still valid and available in `outcome`.
    """
    def __init__(self, curve_type: ECCurveType, outcome: 'NegotiationOutcome'):
        super().__init__(f'Server negotiated non-named ECDH parameters ({curve_type.name}), which are not analyzed')
        self.curve_type = curve_type
        self.outcome = outcome

class NetworkError(ScanError):
    """ Class for error in resolving or connecting to a server. """
    pass

class ProxyError(NetworkError):
    """ Class for errors in connecting through a proxy. """
    pass

class EmptyServerResponse(ScanError):
    """ Error for servers that close the connection without sending any data. """
    pass

class ScanCancelled(ScanError):
    """ The scan was cancelled between two handshakes. """
    pass

@dataclasses.dataclass
class ConnectionSettings:
    """
    Settings for a connection to a server, including the host, port, and proxy.
    """
    host: str
    port: int = 443
    proxy: Optional[str] = None
    timeout_in_seconds: Optional[float] = DEFAULT_TIMEOUT
    # Checked before every handshake; set it to stop a running scan.
    cancel_event: Optional[threading.Event] = dataclasses.field(default=None, compare=False, repr=False)

@dataclasses.dataclass
class NegotiationOutcome:
    """
    What the server picked in one handshake. Indexes are into the lists that were offered.
    """
    protocol: Protocol
    cipher_index: int
    # Only set for cipher suites with an elliptic curve key exchange.
    curve_index: Optional[int]
    certificate_chain: List[bytes]

def parse_target(target:str, default_port:int = 443) -> tuple[str, int]:
    """
    Parses the target string into a host and port, stripping protocol and path.
    """
    if not re.match(r'\w+://', target):
        # Without a scheme, urlparse will treat the target as a path.
        # Prefix // to make it a netloc.
        url = urlparse('//' + target)
    else:
        url = urlparse(target, scheme='https')
    host = url.hostname or 'localhost'
    port = url.port if url.port else default_port
    return host, port

def make_socket(settings: ConnectionSettings) -> socket.socket:
    """
    Creates and connects a socket to the target server, through the chosen proxy if any.
    """
    socket_host, socket_port = None, None # To appease the type checker.
    try:
        if not settings.proxy:
            socket_host, socket_port = settings.host, settings.port
            return socket.create_connection((socket_host, socket_port), timeout=settings.timeout_in_seconds)

        if not settings.proxy.startswith('http://'):
            raise ProxyError("Only HTTP proxies are supported at the moment.", settings.proxy)

        socket_host, socket_port = parse_target(settings.proxy, 80)

        sock = socket.create_connection((socket_host, socket_port), timeout=settings.timeout_in_seconds)
        try:
            sock.sendall(f"CONNECT {settings.host}:{settings.port} HTTP/1.1\r\nhost:{socket_host}\r\n\r\n".encode('utf-8'))
            with sock.makefile('r', newline='\r\n') as sock_file:
                line = sock_file.readline()
                if not re.fullmatch(r'HTTP/1\.[01] 200 Connection [Ee]stablished\r\n', line):
                    raise ProxyError("Proxy refused the connection: ", line)
                while sock_file.readline() not in ('\r\n', ''):
                    pass
        except BaseException:
            sock.close()
            raise
        return sock
    except TimeoutError as e:
        raise NetworkError(f"Connection to {socket_host}:{socket_port} timed out after {settings.timeout_in_seconds} seconds") from e
    except socket.gaierror as e:
        raise NetworkError(f"Could not resolve host {socket_host}") from e
    except socket.error as e:
        raise NetworkError(f"Could not connect to {socket_host}:{socket_port}") from e

def send_hello(connection_settings: ConnectionSettings, client_hello: ClientHello) -> ServerHello:
    """
    Sends a Client Hello to the server, and returns the parsed server response.
    Opens exactly one connection, which is closed before returning or raising.
    Raises exceptions for the different alert messages the server can send.
    """
    with make_socket(connection_settings) as sock:
        try:
            sock.sendall(make_client_hello(client_hello))
        except socket.error as e:
            raise NetworkError(f"Could not send Client Hello to {connection_settings.host}:{connection_settings.port}") from e

        timeout = connection_settings.timeout_in_seconds
        deadline = None if timeout is None else time.monotonic() + timeout

        def packet_stream() -> Iterator[bytes]:
            bytes_read = 0
            while True:
                try:
                    if deadline is not None:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            raise TimeoutError()
                        sock.settimeout(remaining)
                    packet = sock.recv(4096)
                except (TimeoutError, ConnectionResetError) as e:
                    # tiktok.com times out when no matching groups are found.
                    # live.com sends a RST packet when no matching protocols are found.
                    if bytes_read == 0:
                        raise EmptyServerResponse() from e
                    # Partial response, let the parser report it.
                    break
                except OSError as e:
                    raise NetworkError(f"Could not read response from {connection_settings.host}:{connection_settings.port}") from e
                bytes_read += len(packet)
                if packet:
                    yield packet
                elif bytes_read == 0:
                    raise EmptyServerResponse()
                else:
                    break

        return parse_server_flight(packet_stream())

def _index_in(value_id: int, offered: Sequence) -> Optional[int]:
    for index, offered_value in enumerate(offered):
        if offered_value.value == value_id:
            return index
    return None

def say_hello(
    connection_settings: ConnectionSettings,
    server_name: Optional[str],
    cipher_suites: Optional[Sequence[CipherSuite]] = None,
    curves: Optional[Sequence[Curve]] = None,
    protocol: Protocol = Protocol.TLS1_2,
    signature_algorithms: Optional[Sequence[SignatureAlgorithm]] = None,
    ) -> NegotiationOutcome:
    """
    Performs one handshake pinned to exactly `protocol` and the given candidates, and reports what
    the server picked. Empty or None candidate lists mean the whole registry.

    Raises HandshakeFailed if the server rejected everything offered, a ProtocolViolation subclass
    if it answered outside of the offer, and NetworkError if it couldn't be reached.
    """
    cancel_event = connection_settings.cancel_event
    if cancel_event is not None and cancel_event.is_set():
        raise ScanCancelled(f'Scan of {connection_settings.host}:{connection_settings.port} was cancelled')

    cipher_suites = list(cipher_suites or cipher_suites_for(protocol))
    curves = list(curves or Curve)
    # Passed in the Client Hello itself, so the process-wide offer is neither read nor locked.
    signature_algorithms = list(signature_algorithms or SignatureAlgorithm)
    client_hello = ClientHello(server_name=server_name or None, protocols=[protocol], cipher_suites=cipher_suites, curves=curves, signature_algorithms=signature_algorithms)

    logger.debug(f"Offering {len(cipher_suites)} cipher suites and {len(curves)} curves over {protocol.name}")
    try:
        server_hello = send_hello(connection_settings, client_hello)
    except (ServerAlertError, EmptyServerResponse) as e:
        # ServerAlertError could technically be raised for a variety of reasons, but in practice
        # there's too much variation on how servers pick Alert Descriptions to reject a handshake.
        logger.debug(f'Server responded with error {e!r}')
        raise HandshakeFailed(f'Server rejected handshake over {protocol.name}') from e
    except OSError as e:
        raise NetworkError(f"Lost connection to {connection_settings.host}:{connection_settings.port}") from e

    if server_hello.version != protocol:
        raise UnexpectedVersion(f"Server negotiated {server_hello.version.name} but only {protocol.name} was offered")

    cipher_index = _index_in(server_hello.cipher_suite_id, cipher_suites)
    if cipher_index is None:
        raise UnexpectedCipher(f"Server negotiated cipher suite 0x{server_hello.cipher_suite_id:04x} that was not offered")

    outcome = NegotiationOutcome(protocol, cipher_index, None, server_hello.certificate_chain)
    cipher_suite = cipher_suites[cipher_index]
    if cipher_suite.is_ecc:
        if server_hello.server_key_exchange is None:
            raise BadServerResponse(f'Server negotiated {cipher_suite.name} without a ServerKeyExchange')
        curve_type, curve_id = parse_ec_parameters(server_hello.server_key_exchange, cipher_suite.has_psk_identity_hint)
        if curve_id is None:
            raise NonNamedCurve(curve_type, outcome)
        outcome.curve_index = _index_in(curve_id, curves)
        if outcome.curve_index is None:
            raise UnexpectedCurve(f"Server negotiated curve 0x{curve_id:04x} that was not offered")

    logger.debug(f"Server picked {cipher_suite.name} over {protocol.name}")
    return outcome
