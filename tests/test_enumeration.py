import pytest
from handshake_scan.enumeration import CandidateSet, RegistryLookupFailed, enumerate_server_option
from handshake_scan.probe import HandshakeFailed, NetworkError

def server_preferring(*preferred):
    """ Offer function for a server that picks by its own preference, and counts handshakes. """
    offers = []
    def offer(values):
        offers.append(values)
        for value in preferred:
            if value in values:
                return values.index(value)
        raise HandshakeFailed()
    return offer, offers

def test_server_preference_order():
    offer, offers = server_preferring('c', 'a', 'e')
    assert list(enumerate_server_option(offer, 'abcde', 'letters')) == ['c', 'a', 'e']
    assert offers == [list('abcde'), list('abde'), list('bde'), list('bd')]

def test_at_most_one_extra_handshake():
    offer, offers = server_preferring(*'abcde')
    assert list(enumerate_server_option(offer, 'edcba', 'letters')) == list('abcde')
    # Nothing left to offer, so no final rejected handshake.
    assert len(offers) == 5

def test_nothing_accepted():
    offer, offers = server_preferring()
    assert list(enumerate_server_option(offer, 'abc', 'letters')) == []
    assert len(offers) == 1

def test_no_candidates():
    offer, offers = server_preferring('a')
    assert list(enumerate_server_option(offer, [], 'letters')) == []
    assert offers == []

def test_errors_propagate():
    def offer(values):
        raise NetworkError('unreachable')
    with pytest.raises(NetworkError):
        list(enumerate_server_option(offer, 'abc', 'letters'))

def test_index_outside_offer():
    with pytest.raises(RegistryLookupFailed):
        list(enumerate_server_option(lambda values: len(values), 'abc', 'letters'))

def test_candidate_set():
    candidates = CandidateSet([1, 2, 3, 4])
    offered = candidates.offer()
    assert candidates.take(2) == 3
    # The offered list is a copy.
    assert offered == [1, 2, 3, 4]
    assert list(candidates) == [1, 2, 4]
    assert len(candidates) == 3
    with pytest.raises(RegistryLookupFailed):
        candidates.take(-1)
