"""Test PKCE helpers and the OAuth state store."""

import re
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from conftest import FrozenClock
from sqlalchemy.orm import Session, sessionmaker

from square_bff.core.database import create_db_engine, create_session_factory, init_db
from square_bff.core.errors import AlreadyExists, InvalidRequest, InvalidState
from square_bff.oauth.pkce import (
    PKCEStateStore,
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
)
from square_bff.storage.sql import SqlStateStore

BASE64URL = re.compile(r"^[A-Za-z0-9_-]+$")


def test_code_challenge_matches_rfc7636_vector() -> None:
    """Test the S256 challenge against the RFC 7636 appendix B example."""
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_code_verifier_shape() -> None:
    """Test that verifiers are 43 unpadded base64url characters."""
    verifier = generate_code_verifier()
    assert len(verifier) == 43
    assert BASE64URL.match(verifier)
    assert generate_code_verifier() != verifier


def test_state_is_random_and_urlsafe() -> None:
    states = {generate_state() for _ in range(20)}
    assert len(states) == 20
    assert all(BASE64URL.match(state) and len(state) >= 43 for state in states)


def test_begin_with_pkce_returns_challenge_of_stored_verifier(
    session_factory: sessionmaker[Session], clock: FrozenClock
) -> None:
    store = PKCEStateStore(
        SqlStateStore(session_factory),
        clock=clock,
        verifier_factory=lambda: "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk",
    )

    authorization = store.begin(redirect_uri="http://localhost:3000/auth/callback")

    assert authorization.code_challenge == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
    pending = store.consume(authorization.state)
    assert pending.code_verifier == "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert pending.redirect_uri == "http://localhost:3000/auth/callback"


def test_begin_without_pkce_stores_no_verifier(state_store: PKCEStateStore) -> None:
    authorization = state_store.begin(use_pkce=False)

    assert authorization.code_challenge is None
    assert state_store.consume(authorization.state).code_verifier is None


def test_state_is_single_use(state_store: PKCEStateStore) -> None:
    """Test that a second consume of the same state is rejected."""
    authorization = state_store.begin()
    state_store.consume(authorization.state)

    with pytest.raises(InvalidState):
        state_store.consume(authorization.state)


def test_unknown_state_is_rejected(state_store: PKCEStateStore) -> None:
    with pytest.raises(InvalidState):
        state_store.consume("never-issued")


def test_missing_state_is_invalid_request(state_store: PKCEStateStore) -> None:
    with pytest.raises(InvalidRequest):
        state_store.consume("")


def test_expired_state_is_rejected_and_removed(
    state_store: PKCEStateStore, clock: FrozenClock
) -> None:
    """Test that a state older than its window cannot be used, even once."""
    authorization = state_store.begin()
    clock.advance(601)

    with pytest.raises(InvalidState):
        state_store.consume(authorization.state)

    clock.advance(-601)
    with pytest.raises(InvalidState):
        state_store.consume(authorization.state)


def test_state_just_inside_window_is_accepted(
    state_store: PKCEStateStore, clock: FrozenClock
) -> None:
    authorization = state_store.begin()
    clock.advance(599)

    assert state_store.consume(authorization.state).state == authorization.state


def test_duplicate_state_is_rejected(session_factory: sessionmaker[Session]) -> None:
    store = PKCEStateStore(SqlStateStore(session_factory), state_factory=lambda: "fixed-state")
    store.begin()

    with pytest.raises(AlreadyExists):
        store.begin()


def test_purge_expired_removes_only_stale_states(
    state_store: PKCEStateStore, clock: FrozenClock
) -> None:
    stale = state_store.begin()
    clock.advance(400)
    fresh = state_store.begin()
    clock.advance(300)

    assert state_store.purge_expired() == 1

    assert state_store.consume(fresh.state).state == fresh.state
    with pytest.raises(InvalidState):
        state_store.consume(stale.state)


def test_concurrent_consume_has_single_winner(tmp_path: Path) -> None:
    """Test that racing callbacks for one state yield exactly one winner."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'states.db'}")
    init_db(engine)
    store = PKCEStateStore(SqlStateStore(create_session_factory(engine)))
    authorization = store.begin()
    barrier = threading.Barrier(8)

    def attempt() -> bool:
        barrier.wait()
        try:
            store.consume(authorization.state)
        except InvalidState:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(lambda _: attempt(), range(8)))

    engine.dispose()
    assert outcomes.count(True) == 1
