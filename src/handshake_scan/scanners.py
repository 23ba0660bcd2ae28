from multiprocessing.pool import ThreadPool
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
import dataclasses

from .certificates import parse_certificate
from .enumeration import enumerate_server_option
from .names_and_numbers import CipherSuite, Curve, Protocol, SignatureAlgorithm, SCANNED_PROTOCOLS, LEGACY_PROTOCOL, cipher_suites_for
from .probe import ConnectionSettings, HandshakeFailed, NegotiationOutcome, NonNamedCurve, parse_target, say_hello
from .protocol import ScanError, logger
from .results import CipherVersionList, Grade, ScanResult

# Default number of workers/threads/concurrent connections to use.
DEFAULT_MAX_WORKERS: int = 4

# Version used by the scans that offer one candidate at a time. It's the highest version
# where the certificate chain is sent in the clear.
SINGLE_CANDIDATE_PROTOCOL: Protocol = Protocol.TLS1_2

class NothingSupported(ScanError):
    """ Base class for scans that completed but found nothing the server accepts. """
    pass

class NoCiphersNegotiated(NothingSupported):
    pass

class NoSigAlgsSupported(NothingSupported):
    pass

class NoCiphersSupported(NothingSupported):
    pass

class NoCertificatesReturned(ScanError):
    """ Error for servers that complete a handshake without sending a certificate. """
    pass

def enumerate_server_curves(connection_settings: ConnectionSettings, server_name: Optional[str], protocol: Protocol, cipher_suite: CipherSuite) -> List[Curve]:
    """
    Lists the curves the server accepts for `cipher_suite` over `protocol`, in server preference order.
    Explicit ECDH parameters end the enumeration early, keeping the curves found so far.
    """
    def offer_curves(curves: List[Curve]) -> int:
        outcome = say_hello(connection_settings, server_name, cipher_suites=[cipher_suite], curves=curves, protocol=protocol)
        assert outcome.curve_index is not None
        return outcome.curve_index

    curves: List[Curve] = []
    try:
        for curve in enumerate_server_option(offer_curves, Curve, f'curves for {cipher_suite.name} over {protocol.name}'):
            curves.append(curve)
    except NonNamedCurve as e:
        logger.warning(f'Stopped curve enumeration for {cipher_suite.name} over {protocol.name}: {e}')
        return curves

    if not curves:
        logger.warning(f"Couldn't negotiate any curves for {cipher_suite.name} over {protocol.name}")
    return curves

def cipher_suite_scan(connection_settings: ConnectionSettings, server_name: Optional[str]) -> Tuple[Grade, CipherVersionList]:
    """
    Determines the cipher suites accepted at each protocol version, in server preference order,
    and the curves accepted for each elliptic curve cipher suite.
    """
    cipher_versions = CipherVersionList()
    grade = Grade.Good

    for protocol in SCANNED_PROTOCOLS:
        def offer_cipher_suites(cipher_suites: List[CipherSuite]) -> int:
            try:
                return say_hello(connection_settings, server_name, cipher_suites=cipher_suites, protocol=protocol).cipher_index
            except NonNamedCurve as e:
                # The cipher suite was negotiated all the same, the curve enumeration will report it.
                return e.outcome.cipher_index

        for cipher_suite in enumerate_server_option(offer_cipher_suites, cipher_suites_for(protocol), f'cipher suites over {protocol.name}'):
            if protocol == LEGACY_PROTOCOL:
                grade = Grade.Warning
            curves = enumerate_server_curves(connection_settings, server_name, protocol, cipher_suite) if cipher_suite.is_ecc else []
            cipher_versions.add(cipher_suite, protocol, curves)

    if not cipher_versions:
        raise NoCiphersNegotiated(f"Couldn't negotiate any cipher suites with {connection_settings.host}")
    return grade, cipher_versions

def _try_single_candidate(connection_settings: ConnectionSettings, server_name: Optional[str], **kwargs) -> Optional[NegotiationOutcome]:
    """ Performs one handshake, returning None if the server rejected it. """
    try:
        return say_hello(connection_settings, server_name, protocol=SINGLE_CANDIDATE_PROTOCOL, **kwargs)
    except HandshakeFailed:
        return None
    except NonNamedCurve as e:
        # Only matters when enumerating curves.
        return e.outcome

def _leaf_signature_algorithm(outcome: NegotiationOutcome) -> str:
    if not outcome.certificate_chain:
        raise NoCertificatesReturned('Server completed the handshake without sending any certificate')
    return parse_certificate(outcome.certificate_chain[0]).signature_algorithm

def sig_algs_scan(connection_settings: ConnectionSettings, server_name: Optional[str]) -> Tuple[Grade, List[SignatureAlgorithm]]:
    """
    Determines the signature and hash algorithms the server accepts, offering one at a time.
    """
    supported = []
    for signature_algorithm in SignatureAlgorithm:
        if _try_single_candidate(connection_settings, server_name, signature_algorithms=[signature_algorithm]) is not None:
            supported.append(signature_algorithm)

    if not supported:
        raise NoSigAlgsSupported('No signature algorithms supported')
    return Grade.Good, supported

def certs_by_sig_algs_scan(connection_settings: ConnectionSettings, server_name: Optional[str]) -> Tuple[Grade, Dict[str, str]]:
    """
    Maps each accepted signature algorithm to the signature algorithm of the certificate the server sends for it.
    """
    cert_sig_algs = {}
    for signature_algorithm in SignatureAlgorithm:
        outcome = _try_single_candidate(connection_settings, server_name, signature_algorithms=[signature_algorithm])
        if outcome is not None:
            cert_sig_algs[signature_algorithm.name] = _leaf_signature_algorithm(outcome)

    if not cert_sig_algs:
        raise NoSigAlgsSupported('No signature algorithms supported')
    return Grade.Good, cert_sig_algs

def certs_by_cipher_scan(connection_settings: ConnectionSettings, server_name: Optional[str]) -> Tuple[Grade, Dict[str, str]]:
    """
    Maps each accepted cipher suite to the signature algorithm of the certificate the server sends for it.

    Suites whose key exchange sends no certificate (anonymous, plain PSK, SRP, ...) are not offered,
    since a successful handshake with one of them would otherwise count as NoCertificatesReturned.
    """
    cert_sig_algs = {}
    for cipher_suite in cipher_suites_for(SINGLE_CANDIDATE_PROTOCOL):
        if not cipher_suite.authenticates_server:
            continue
        outcome = _try_single_candidate(connection_settings, server_name, cipher_suites=[cipher_suite])
        if outcome is not None:
            cert_sig_algs[cipher_suite.name] = _leaf_signature_algorithm(outcome)

    if not cert_sig_algs:
        raise NoCiphersSupported('No cipher suites supported')
    return Grade.Good, cert_sig_algs

@dataclasses.dataclass(frozen=True)
class Scanner:
    description: str
    scan: Callable[[ConnectionSettings, Optional[str]], Tuple[Grade, Any]]

    def run(self, connection_settings: ConnectionSettings, server_name: Optional[str]) -> ScanResult:
        """
        Runs the scan, turning scan errors into a Bad result that carries the error.
        """
        try:
            grade, output = self.scan(connection_settings, server_name)
        except ScanError as e:
            logger.info(f'Scan failed: {e!r}')
            return ScanResult(Grade.Bad, None, e)
        return ScanResult(grade, output)

@dataclasses.dataclass(frozen=True)
class Family:
    description: str
    scanners: Dict[str, Scanner]

TLS_HANDSHAKE = Family(
    "Scans for host's SSL/TLS version and cipher suite negotiation",
    {
        'CipherSuite': Scanner("Determines host's cipher suites accepted and preferred order", cipher_suite_scan),
        'SigAlgs': Scanner("Determines host's accepted signature and hash algorithms", sig_algs_scan),
        'CertsBySigAlgs': Scanner("Determines host's certificate signature algorithm matching client's accepted signature and hash algorithms", certs_by_sig_algs_scan),
        'CertsByCiphers': Scanner("Determines host's certificate signature algorithm matching client's accepted ciphers", certs_by_cipher_scan),
    },
)

def scan_host(
    connection_settings: Union[ConnectionSettings, str],
    server_name: Optional[str] = None,
    scanner_names: Optional[Sequence[str]] = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
    progress: Callable[[int, int], None] = lambda current, total: None,
    ) -> Dict[str, ScanResult]:
    """
    Runs the chosen scanners of the TLS handshake family against a server, all of them by default.

    `server_name` is sent as SNI and defaults to the host; pass an empty string to not send SNI.

    Scanners run in parallel, with up to `max_workers` threads, but each one makes its handshakes
    one after the other. Results are returned in the order the scanners were asked for.
    """
    if isinstance(connection_settings, str):
        connection_settings = ConnectionSettings(*parse_target(connection_settings))
    if server_name is None:
        server_name = connection_settings.host

    names = list(scanner_names) if scanner_names is not None else list(TLS_HANDSHAKE.scanners)
    unknown_names = [name for name in names if name not in TLS_HANDSHAKE.scanners]
    if unknown_names:
        raise ValueError(f"Unknown scanners {unknown_names}, must be among {list(TLS_HANDSHAKE.scanners)}")

    logger.info(f"Scanning {connection_settings.host}:{connection_settings.port} with {names}")

    def task(name: str) -> Tuple[str, ScanResult]:
        return name, TLS_HANDSHAKE.scanners[name].run(connection_settings, server_name)

    results: Dict[str, ScanResult] = {}
    with ThreadPool(max_workers) as pool:
        # Process scanners out of order, and wait for all of them to finish.
        for i, (name, result) in enumerate(pool.imap_unordered(task, names)):
            results[name] = result
            progress(i+1, len(names))

    return {name: results[name] for name in names}
