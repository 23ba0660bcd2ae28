from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
import dataclasses
import json

from .names_and_numbers import CipherSuite, Curve, Protocol

class Grade(Enum):
    Bad = 0
    Warning = 1
    Good = 2

@dataclasses.dataclass
class ScanResult:
    grade: Grade
    # Shape depends on the scanner, see `render_text` and `to_json_obj`.
    output: Any
    error: Optional[Exception] = None

@dataclasses.dataclass
class VersionCurves:
    protocol: Protocol
    # Empty for cipher suites without an elliptic curve key exchange.
    curves: List[Curve]

class CipherVersionList:
    """
    Cipher suites accepted by a server, each with the protocol versions it was accepted at and,
    for ECC suites, the curves accepted at each version.

    Everything stays in the order it was added, which is the order the server preferred it in.
    """
    def __init__(self) -> None:
        self._by_cipher_suite: Dict[CipherSuite, List[VersionCurves]] = {}

    def add(self, cipher_suite: CipherSuite, protocol: Protocol, curves: Iterable[Curve] = ()) -> None:
        self._by_cipher_suite.setdefault(cipher_suite, []).append(VersionCurves(protocol, list(curves)))

    def __len__(self) -> int:
        return len(self._by_cipher_suite)

    def __iter__(self) -> Iterator[CipherSuite]:
        return iter(self._by_cipher_suite)

    def __getitem__(self, cipher_suite: CipherSuite) -> List[VersionCurves]:
        return self._by_cipher_suite[cipher_suite]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CipherVersionList):
            return NotImplemented
        return list(self.items()) == list(other.items())

    def items(self) -> Iterator[Tuple[CipherSuite, List[VersionCurves]]]:
        return iter(self._by_cipher_suite.items())

    def __str__(self) -> str:
        lines = []
        for cipher_suite, entries in self.items():
            versions = ', '.join(f'{entry.protocol.name}: [{",".join(curve.name for curve in entry.curves)}]' for entry in entries)
            lines.append(f'{cipher_suite.name}\t{versions}')
        return '\n'.join(lines)

    def to_json_obj(self) -> List[Dict[str, List[Any]]]:
        """
        One single-key object per cipher suite. A version without curves is a bare string,
        a version with curves is a single-key object mapping to the curve names.
        """
        return [
            {cipher_suite.name: [
                {entry.protocol.name: [curve.name for curve in entry.curves]} if entry.curves else entry.protocol.name
                for entry in entries
            ]}
            for cipher_suite, entries in self.items()
        ]

    def to_json(self) -> str:
        return json.dumps(self.to_json_obj(), separators=(',', ':'))

def render_text(output: Any) -> str:
    """
    Renders a scanner output as lines of text.
    """
    if output is None:
        return ''
    elif isinstance(output, CipherVersionList):
        return str(output)
    elif isinstance(output, dict):
        return '\n'.join(f'{key}\t{value}' for key, value in output.items())
    elif isinstance(output, (tuple, list)):
        return '\n'.join(item.name if isinstance(item, Enum) else str(item) for item in output)
    return str(output)

def to_json_obj(o: Any) -> Any:
    """
    Converts an object to a JSON-serializable structure, replacing dataclasses, enums, sets, datetimes, etc.
    """
    if isinstance(o, CipherVersionList):
        return o.to_json_obj()
    elif isinstance(o, dict):
        return {to_json_obj(key): to_json_obj(value) for key, value in o.items()}
    elif dataclasses.is_dataclass(o):
        # Not dataclasses.asdict, which would deep copy the outputs and errors inside.
        return {field.name: to_json_obj(getattr(o, field.name)) for field in dataclasses.fields(o)}
    elif isinstance(o, set):
        return sorted(to_json_obj(item) for item in o)
    elif isinstance(o, (tuple, list)):
        return [to_json_obj(item) for item in o]
    elif isinstance(o, Enum):
        return o.name
    elif isinstance(o, datetime):
        return o.isoformat(' ')
    elif isinstance(o, Exception):
        return str(o)
    return o
