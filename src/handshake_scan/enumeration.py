from typing import Callable, Generic, Iterable, Iterator, List, TypeVar

from .probe import HandshakeFailed
from .protocol import logger

T = TypeVar('T')

class RegistryLookupFailed(LookupError):
    """ A value reported as offered is not in the list it was offered from. Always a bug. """
    pass

class CandidateSet(Generic[T]):
    """
    Values still worth offering to the server, in their original order.

    Taking the value the server picked keeps the relative order of the others, so the
    order in which values are taken is the server's preference order.
    """
    def __init__(self, values: Iterable[T]):
        self._values: List[T] = list(values)

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[T]:
        return iter(self._values)

    def offer(self) -> List[T]:
        """ The list to send this round. Indexes returned by the server refer to it. """
        return list(self._values)

    def take(self, index: int) -> T:
        """ Removes and returns the value at `index` of the last offered list. """
        if not 0 <= index < len(self._values):
            raise RegistryLookupFailed(f'Index {index} is outside the {len(self._values)} offered values')
        return self._values.pop(index)

def enumerate_server_option(offer: Callable[[List[T]], int], candidates: Iterable[T], description: str) -> Iterator[T]:
    """
    Continually offers the remaining candidates, removing the one the server picked each time,
    until the server rejects the handshake. `offer` performs one handshake and returns the index
    of the picked value in the list it was given.

    Yields values in the order they were picked, which is the server's preference order. Makes at
    most one handshake more than there are candidates. Anything but HandshakeFailed propagates.
    """
    remaining = CandidateSet(candidates)
    logger.info(f"Enumerating server {description} with {len(remaining)} options")

    while remaining:
        try:
            index = offer(remaining.offer())
        except HandshakeFailed:
            logger.debug(f"Server accepted none of the {len(remaining)} remaining {description}")
            break
        yield remaining.take(index)
