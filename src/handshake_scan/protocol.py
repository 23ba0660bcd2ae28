from typing import Iterator, List, Sequence, Optional, Iterable, Tuple, Union
from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
import threading

from .names_and_numbers import Protocol, RecordType, HandshakeType, CompressionMethod, CipherSuite, ExtensionType, Curve, AlertLevel, AlertDescription, PskKeyExchangeMode, SignatureAlgorithm, ECCurveType

logger = logging.getLogger(__name__)

class ScanError(Exception):
    """ Base error class for errors that occur during scanning. """
    pass

class ProtocolViolation(ScanError):
    """ Error for servers that answer outside of what the client offered. """
    pass

class ServerAlertError(ScanError):
    def __init__(self, level: Union[AlertLevel, int], description: Union[AlertDescription, int]):
        super().__init__(f'Server error: {level}: {description}')
        self.level = level
        self.description = description

class BadServerResponse(ProtocolViolation):
    """ Error for server responses that can't be parsed. """
    pass

# Signature algorithms sent by every Client Hello that doesn't list its own. Shared by all
# threads, so it must only be changed through `offered_signature_algorithms`.
_offered_signature_algorithms: Tuple[SignatureAlgorithm, ...] = tuple(SignatureAlgorithm)
_offered_signature_algorithms_lock = threading.Lock()

def get_offered_signature_algorithms() -> Tuple[SignatureAlgorithm, ...]:
    return _offered_signature_algorithms

@contextmanager
def offered_signature_algorithms(signature_algorithms: Sequence[SignatureAlgorithm]) -> Iterator[None]:
    """
    Replaces the process-wide signature algorithm offer for the duration of the block, and restores
    the previous one on the way out, even on errors.

    The lock is held for the whole block, so a handshake performed inside it can't be affected by
    another thread. Not reentrant.
    """
    global _offered_signature_algorithms
    with _offered_signature_algorithms_lock:
        previous = _offered_signature_algorithms
        _offered_signature_algorithms = tuple(signature_algorithms)
        try:
            yield None
        finally:
            _offered_signature_algorithms = previous

@dataclass
class ServerHello:
    version: Protocol
    is_retry_request: bool
    compression: CompressionMethod
    # Raw values, because the server might pick something outside our registry.
    cipher_suite_id: int
    group_id: Optional[int] = None
    # Body of the ServerKeyExchange message, if any (TLS 1.2 and lower).
    server_key_exchange: Optional[bytes] = None
    # DER certificates, leaf first (TLS 1.2 and lower).
    certificate_chain: List[bytes] = field(default_factory=list)

# Magic value meaning Hello Retry Request (see https://datatracker.ietf.org/doc/html/rfc8446#section-4.1.4 ).
# It's an error, but represented in server_random to maintain backwards compatibility.
HELLO_RETRY_REQUEST_RANDOM = b'\xCF\x21\xAD\x74\xE5\x9A\x61\x11\xBE\x1D\x8C\x02\x1E\x65\xB8\x91\xC2\xA2\x11\x16\x7A\xBB\x8C\x5E\x07\x9E\x09\xE2\xC8\xA8\x33\x9C'

def _bytes_to_int(b: bytes) -> int:
    return int.from_bytes(b, byteorder='big')

def _parse_protocol(b: bytes) -> Protocol:
    try:
        return Protocol(_bytes_to_int(b))
    except ValueError:
        raise BadServerResponse(f'Server picked unknown protocol version {b.hex()}')

def _parse_alert(payload: bytes) -> ScanError:
    if len(payload) < 2:
        return BadServerResponse('Server sent a truncated alert')
    level: Union[AlertLevel, int]
    description: Union[AlertDescription, int]
    try:
        level = AlertLevel(payload[0])
    except ValueError:
        level = payload[0]
    try:
        description = AlertDescription(payload[1])
    except ValueError:
        description = payload[1]
    return ServerAlertError(level, description)

def _read_records(packets: Iterable[bytes]) -> Iterator[Tuple[RecordType, bytes]]:
    """
    Splits a stream of packets into (record type, payload) pairs. Stops at the end of the stream.
    """
    packets_iter = iter(packets)
    data = b''
    def fill(length: int) -> bool:
        """ Buffers packets until `length` bytes are available. False if the stream ended first. """
        nonlocal data
        while len(data) < length:
            try:
                # This is quadratic, but there are few packets to loop over.
                data += next(packets_iter)
            except StopIteration:
                return False
        return True

    while fill(5):
        if data.startswith(b'HTTP/'):
            raise BadServerResponse('Server responded with plaintext HTTP, not TLS', data)
        try:
            record_type = RecordType(data[0])
        except ValueError:
            raise BadServerResponse(f'Server responded with unknown record type {data[0]}')
        record_length = _bytes_to_int(data[3:5])
        if not fill(5 + record_length):
            raise BadServerResponse('Server response ended unexpectedly')
        yield record_type, data[5:5+record_length]
        data = data[5+record_length:]

    if data:
        raise BadServerResponse('Server response ended unexpectedly')

def _read_handshake_messages(records: Iterable[Tuple[RecordType, bytes]]) -> Iterator[Tuple[int, bytes]]:
    """
    Reassembles handshake messages, which can be split over records or share one, and yields
    (handshake type value, body) pairs. Raises on fatal alerts, and if the records end before the caller stops.
    """
    pending = b''
    for record_type, payload in records:
        if record_type == RecordType.ALERT:
            if len(payload) >= 2 and payload[0] == AlertLevel.WARNING.value and payload[1] != AlertDescription.close_notify.value:
                # E.g. unrecognized_name, sent before a Server Hello that still goes through.
                logger.debug(f'Ignoring warning alert {payload[1]}')
                continue
            raise _parse_alert(payload)
        if record_type != RecordType.HANDSHAKE:
            # E.g. TLS 1.3 middlebox compatibility ChangeCipherSpec.
            logger.debug(f'Skipping record of type {record_type}')
            continue
        pending += payload
        while len(pending) >= 4:
            message_length = _bytes_to_int(pending[1:4])
            if len(pending) < 4 + message_length:
                break
            yield pending[0], pending[4:4+message_length]
            pending = pending[4+message_length:]
    raise BadServerResponse('Server response ended unexpectedly')

def parse_server_hello(data: bytes) -> ServerHello:
    """
    Parses the body of a Server Hello handshake message.
    """
    start = 0
    def read_next(length: int) -> bytes:
        """ Returns the next `length` unparsed bytes. """
        nonlocal start
        if start + length > len(data):
            raise BadServerResponse('Server Hello ended unexpectedly')
        value = data[start:start+length]
        start += length
        return value

    # At most TLS 1.2. Handshakes for TLS 1.3 use the supported_versions extension.
    version = _parse_protocol(read_next(2))
    server_random = read_next(32)
    is_retry_request = server_random == HELLO_RETRY_REQUEST_RANDOM

    session_id_length = read_next(1)
    read_next(_bytes_to_int(session_id_length))
    cipher_suite_id = _bytes_to_int(read_next(2))
    try:
        compression = CompressionMethod(_bytes_to_int(read_next(1)))
    except ValueError:
        raise BadServerResponse('Server picked unknown compression method')

    if start + 2 <= len(data):
        extensions_length = _bytes_to_int(read_next(2))
    else: # extensions may not be present in TLS 1.2 and lower
        extensions_length = 0
    extensions_end = start + extensions_length

    group_id = None
    while start < extensions_end:
        extension_type = _bytes_to_int(read_next(2))
        extension_data_length = read_next(2)
        extension_data = read_next(_bytes_to_int(extension_data_length))
        if extension_type == ExtensionType.supported_versions.value:
            version = _parse_protocol(extension_data)
        elif extension_type == ExtensionType.key_share.value:
            group_id = _bytes_to_int(extension_data[:2])

    return ServerHello(version, is_retry_request, compression, cipher_suite_id, group_id)

def parse_certificate_list(data: bytes) -> List[bytes]:
    """
    Parses the body of a TLS 1.2 Certificate handshake message into a list of DER certificates.
    """
    if len(data) < 3:
        raise BadServerResponse('Certificate message too short')
    list_end = 3 + _bytes_to_int(data[:3])
    if list_end > len(data):
        raise BadServerResponse('Certificate list ended unexpectedly')
    certificates = []
    start = 3
    while start < list_end:
        certificate_length = _bytes_to_int(data[start:start+3])
        certificate = data[start+3:start+3+certificate_length]
        if len(certificate) != certificate_length or start + 3 + certificate_length > list_end:
            raise BadServerResponse('Certificate ended unexpectedly')
        certificates.append(certificate)
        start += 3 + certificate_length
    return certificates

def parse_ec_parameters(server_key_exchange: bytes, has_psk_identity_hint: bool = False) -> Tuple[ECCurveType, Optional[int]]:
    """
    Reads the curve description at the start of an ECDHE ServerKeyExchange.
    Returns the curve type, and the curve id if it's a named curve.

    ECDHE_PSK suites put a length-prefixed PSK identity hint before the curve description
    (https://datatracker.ietf.org/doc/html/rfc5489#section-2 ).
    """
    if has_psk_identity_hint:
        if len(server_key_exchange) < 2:
            raise BadServerResponse('ServerKeyExchange ended unexpectedly')
        server_key_exchange = server_key_exchange[2+_bytes_to_int(server_key_exchange[:2]):]
    if not server_key_exchange:
        raise BadServerResponse('Empty ServerKeyExchange')
    try:
        curve_type = ECCurveType(server_key_exchange[0])
    except ValueError:
        raise BadServerResponse(f'Unknown ECDH curve type {server_key_exchange[0]}')
    if curve_type != ECCurveType.named_curve:
        return curve_type, None
    if len(server_key_exchange) < 3:
        raise BadServerResponse('ServerKeyExchange ended unexpectedly')
    return curve_type, _bytes_to_int(server_key_exchange[1:3])

def parse_server_flight(packets: Iterable[bytes]) -> ServerHello:
    """
    Reads the server's first flight: the Server Hello and, for TLS 1.2 and lower, every message up
    to Server Hello Done, collecting the certificate chain and ServerKeyExchange on the way.
    """
    messages = _read_handshake_messages(_read_records(packets))
    handshake_type, body = next(messages)
    if handshake_type != HandshakeType.server_hello.value:
        raise BadServerResponse(f'Expected Server Hello, got handshake type {handshake_type}')
    server_hello = parse_server_hello(body)

    if server_hello.version >= Protocol.TLS1_3 or server_hello.is_retry_request:
        # Everything after a TLS 1.3 Server Hello is encrypted.
        return server_hello

    for handshake_type, body in messages:
        if handshake_type == HandshakeType.certificate.value:
            server_hello.certificate_chain = parse_certificate_list(body)
        elif handshake_type == HandshakeType.server_key_exchange.value:
            server_hello.server_key_exchange = body
        elif handshake_type == HandshakeType.server_hello_done.value:
            break
    return server_hello

@dataclass
class ClientHello:
    server_name: Optional[str] # No default value because you probably want to set this.
    protocols: Sequence[Protocol] = tuple(Protocol)
    cipher_suites: Sequence[CipherSuite] = tuple(CipherSuite)
    curves: Sequence[Curve] = tuple(Curve)
    compression_methods: Sequence[CompressionMethod] = tuple(CompressionMethod)
    # None means the process-wide offer, see `offered_signature_algorithms`.
    signature_algorithms: Optional[Sequence[SignatureAlgorithm]] = None

def make_client_hello(client_hello: ClientHello) -> bytes:
    """
    Creates a TLS Record byte string with Client Hello handshake based on client preferences.
    """
    # Because Python's `bytes` are immutable, we must use a list of octets instead.
    octets: List[int] = []

    def write(value: int, width_bytes: int = 2) -> None:
        octets.extend(value.to_bytes(width_bytes, byteorder="big"))

    # TLS really likes its length-prefixed data structures. I strongly prefer writing
    # the bytes in the order they'll be sent, so I use this helper context manager to
    # insert a dummy length, and come back to update it when the context exits.
    @contextmanager
    def prefix_length(block_name: str, width_bytes: int = 2) -> Iterator[None]:
        """ Inserts `width_bytes` bytes of zeros, and on exit fills it with the observed length. """
        start_index = len(octets)
        octets.extend(width_bytes*[0])
        yield None
        length = len(octets) - start_index - width_bytes
        octets[start_index:start_index+width_bytes] = length.to_bytes(width_bytes, byteorder="big")

    signature_algorithms = client_hello.signature_algorithms
    if signature_algorithms is None:
        signature_algorithms = get_offered_signature_algorithms()
    has_tls1_3 = Protocol.TLS1_3 in client_hello.protocols

    write(RecordType.HANDSHAKE.value, 1)
    write(min(Protocol.TLS1_0, max(client_hello.protocols)).value) # Legacy record version: max TLS 1.0.
    with prefix_length('record'):
        write(HandshakeType.client_hello.value, 1)

        with prefix_length('Client Hello', width_bytes=3):
            write(min(Protocol.TLS1_2, max(client_hello.protocols)).value) # Legacy client version: max TLS 1.2.
            octets.extend(32*[0x07]) # Random. Any value will do.

            with prefix_length('session ID', width_bytes=1):
                octets.extend(32*[0x07]) # Legacy session ID. Any value will do.

            with prefix_length('cipher Suites'):
                for cipher_suite in client_hello.cipher_suites:
                    write(cipher_suite.value)

            with prefix_length('compression methods', width_bytes=1):
                if has_tls1_3:
                    # Only NULL compression is allowed in TLS 1.3.
                    write(CompressionMethod.NULL.value, 1)
                else:
                    for compression_method in client_hello.compression_methods:
                        write(compression_method.value, 1)

            with prefix_length('extensions'):

                if client_hello.server_name:
                    write(ExtensionType.server_name.value)
                    with prefix_length('server_name extension'):
                        with prefix_length('server_name list'):
                            octets.append(0x00) # Name type: host_name
                            with prefix_length('server_name'):
                                octets.extend(client_hello.server_name.encode('ascii'))

                write(ExtensionType.status_request.value)
                with prefix_length('status_request extension'):
                    octets.append(0x01) # Certificate status type: OCSP.
                    with prefix_length('status_request responder ID list'):
                        pass
                    with prefix_length('status_request information'):
                        pass

                write(ExtensionType.ec_point_formats.value)
                with prefix_length('EC point formats extension'):
                    with prefix_length('EC point formats list', width_bytes=1):
                        octets.append(0x00) # EC point format: uncompressed.
                        octets.append(0x01) # EC point format: ansiX962_compressed_prime.
                        octets.append(0x02) # EC point format: ansiX962_compressed_char2.

                write(ExtensionType.supported_groups.value)
                with prefix_length('supported_groups extension'):
                    with prefix_length('supported_groups list'):
                        for curve in client_hello.curves:
                            write(curve.value)

                write(ExtensionType.session_ticket.value)
                with prefix_length('session ticket extension'):
                    pass

                write(ExtensionType.encrypt_then_mac.value)
                with prefix_length('encrypt-then-MAC extension'):
                    pass

                write(ExtensionType.extended_master_secret.value)
                with prefix_length('extended master secret extension'):
                    pass

                write(ExtensionType.renegotiation_info.value)
                with prefix_length('renegotiation info extension'):
                    with prefix_length('renegotiated connection', width_bytes=1):
                        pass

                write(ExtensionType.signature_algorithms.value)
                with prefix_length('signature algorithms extension'):
                    with prefix_length('signature algorithm list'):
                        for signature_algorithm in signature_algorithms:
                            write(signature_algorithm.value)

                write(ExtensionType.signed_certificate_timestamp.value)
                with prefix_length('SCT extension'):
                    pass

                if has_tls1_3:
                    # These extensions are only available in TLS 1.3.
                    write(ExtensionType.supported_versions.value)
                    with prefix_length('supported_versions extension'):
                        with prefix_length('supported_versions list', width_bytes=1):
                            for protocol in client_hello.protocols:
                                write(protocol.value)

                    write(ExtensionType.psk_key_exchange_modes.value)
                    with prefix_length('pre_shared_key_modes extension'):
                        with prefix_length('pre_shared_key_modes list', width_bytes=1):
                            write(PskKeyExchangeMode.psk_dhe_ke.value, 1)

                    # Empty key_share, so the server answers with a Hello Retry Request naming its group.
                    # https://datatracker.ietf.org/doc/html/rfc8446#section-4.2.8
                    write(ExtensionType.key_share.value)
                    with prefix_length('key_share extension'):
                        with prefix_length('key share bytes'):
                            pass

    return bytes(octets)
