# tests/test_dual_field_vss_session.py
# Tests for the SharingSession lifecycle.

import pytest

from dual_field_vss import (
    InsufficientSharesError,
    InvalidInputError,
    Parameters,
    SessionState,
    SessionStateError,
    Share,
    SharingSession,
)
from tests.conftest import TEST_Q_BITS_FAST, TOY_Q, make_config, seeded_rng


@pytest.fixture
def toy_session(toy_params: Parameters) -> SharingSession:
    return SharingSession(toy_params, config=make_config(), rng=seeded_rng())


def test_initial_state():
    session = SharingSession(config=make_config())
    assert session.state is SessionState.INITIALIZED
    assert session.parameters is None
    with pytest.raises(SessionStateError) as excinfo:
        session.issue(1, 5, 3)
    assert excinfo.value.current_state == "initialized"


def test_session_with_parameters_starts_ready(toy_session: SharingSession):
    assert toy_session.state is SessionState.PARAMETERS_READY
    with pytest.raises(SessionStateError):
        toy_session.generate_parameters()


def test_generate_parameters():
    session = SharingSession(config=make_config(), rng=seeded_rng())
    params = session.generate_parameters()
    assert session.state is SessionState.PARAMETERS_READY
    assert session.parameters is params
    assert params.q.bit_length() == TEST_Q_BITS_FAST
    assert params.is_valid()


def test_full_lifecycle(toy_session: SharingSession):
    commitments, shares = toy_session.issue(42, 5, 3)
    assert toy_session.state is SessionState.SHARES_ISSUED
    assert toy_session.n == 5 and toy_session.t == 3
    assert toy_session.commitments is commitments
    assert toy_session.polynomial is not None
    assert len(toy_session.issued) == 5

    assert toy_session.collect(shares[0])
    assert toy_session.state is SessionState.PARTIALLY_RECONSTRUCTED
    assert toy_session.collect(shares[2])
    assert toy_session.collected == 2
    with pytest.raises(InsufficientSharesError):
        toy_session.reconstruct()
    assert toy_session.state is SessionState.PARTIALLY_RECONSTRUCTED

    assert toy_session.collect(shares[4])
    assert toy_session.reconstruct() == 42
    assert toy_session.state is SessionState.RECONSTRUCTED


def test_issue_only_once(toy_session: SharingSession):
    toy_session.issue(42, 5, 3)
    with pytest.raises(SessionStateError):
        toy_session.issue(43, 5, 3)


def test_failed_issue_keeps_state(toy_session: SharingSession):
    with pytest.raises(InvalidInputError):
        toy_session.issue(42, 3, 4)
    assert toy_session.state is SessionState.PARAMETERS_READY
    toy_session.issue(42, 5, 3)
    assert toy_session.state is SessionState.SHARES_ISSUED


def test_collect_before_issue(toy_session: SharingSession):
    with pytest.raises(SessionStateError):
        toy_session.collect((1, 2))
    with pytest.raises(SessionStateError):
        toy_session.verify((1, 2))
    with pytest.raises(SessionStateError):
        toy_session.reconstruct()


def test_collect_rejects_tampered_share(toy_session: SharingSession):
    _, shares = toy_session.issue(42, 5, 3)
    tampered = Share(shares[1].index, (shares[1].value + 1) % TOY_Q)
    assert toy_session.collect(tampered) is False
    assert toy_session.state is SessionState.SHARES_ISSUED
    assert toy_session.collected == 0


def test_reconstruct_is_idempotent_and_retires_material(toy_session: SharingSession):
    _, shares = toy_session.issue(42, 5, 3)
    for s in shares[:3]:
        toy_session.collect(s)
    first = toy_session.reconstruct()

    assert toy_session.polynomial is None
    assert toy_session.issued == ()
    assert toy_session.collected == 0
    assert toy_session.reconstruct() == first == 42
    assert toy_session.state is SessionState.RECONSTRUCTED


def test_after_reconstruction(toy_session: SharingSession):
    _, shares = toy_session.issue(42, 5, 3)
    for s in shares[:3]:
        toy_session.collect(s)
    toy_session.reconstruct()

    with pytest.raises(SessionStateError) as excinfo:
        toy_session.collect(shares[3])
    assert excinfo.value.current_state == "reconstructed"
    with pytest.raises(SessionStateError):
        toy_session.issue(7, 5, 3)
    # Commitments stay public after reconstruction
    assert toy_session.verify(shares[3])
    assert not toy_session.verify(Share(shares[3].index, (shares[3].value + 1) % TOY_Q))


def test_inconsistent_state_raises_session_error(toy_session: SharingSession):
    # A state forced past issuance without a dealt sharing is refused, not crashed on
    toy_session.state = SessionState.SHARES_ISSUED
    with pytest.raises(SessionStateError):
        toy_session.collect((1, 2))
    with pytest.raises(SessionStateError):
        toy_session.reconstruct()

    bare = SharingSession(config=make_config())
    bare.state = SessionState.PARAMETERS_READY
    with pytest.raises(SessionStateError):
        bare.issue(1, 5, 3)

    toy_session.state = SessionState.RECONSTRUCTED
    with pytest.raises(SessionStateError):
        toy_session.reconstruct()
