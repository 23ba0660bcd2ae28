from .names_and_numbers import Protocol, CipherSuite, Curve, SignatureAlgorithm, SCANNED_PROTOCOLS, LEGACY_PROTOCOL, cipher_suites_for
from .protocol import ScanError, ProtocolViolation, ServerAlertError, BadServerResponse, ClientHello, ServerHello, offered_signature_algorithms, get_offered_signature_algorithms
from .probe import ConnectionSettings, NegotiationOutcome, HandshakeFailed, UnexpectedVersion, UnexpectedCipher, UnexpectedCurve, NonNamedCurve, NetworkError, ProxyError, ScanCancelled, DEFAULT_TIMEOUT, parse_target, say_hello
from .certificates import Certificate, CertificateParseFailed, parse_certificate
from .enumeration import CandidateSet, RegistryLookupFailed, enumerate_server_option
from .results import Grade, ScanResult, CipherVersionList, VersionCurves, render_text, to_json_obj
from .scanners import Scanner, Family, TLS_HANDSHAKE, NothingSupported, NoCiphersNegotiated, NoSigAlgsSupported, NoCiphersSupported, NoCertificatesReturned, DEFAULT_MAX_WORKERS, cipher_suite_scan, sig_algs_scan, certs_by_sig_algs_scan, certs_by_cipher_scan, scan_host
from . import protocol, probe, enumeration, results, scanners
