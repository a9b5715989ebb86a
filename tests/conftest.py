# tests/conftest.py
# Shared fixtures, helper functions, and configuration for the Dual-Field VSS test suite

import logging
import os
import secrets
import warnings
from typing import Any, Optional

import pytest
from gmpy2 import mpz

import dual_field_vss as dvss
from dual_field_vss import (
    CommitmentSet,
    Dealer,
    Parameters,
    ParameterGenerator,
    Randomizer,
    SecurityWarning,
    Share,
    VSSConfig,
    create_secure_deterministic_rng,
)

# --- Test Configuration ---
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
test_logger = logging.getLogger("dual_field_vss_pytest")

# Toy group: q = 101, p = 6*q + 1 = 607, g = 2^6 mod 607 has order q
TOY_P = 607
TOY_Q = 101
TOY_G = 64
TOY_PARAMS = Parameters.from_values(TOY_P, TOY_Q, TOY_G)

# Small generated groups keep unit and property tests fast
TEST_Q_BITS_FAST = 32
TEST_COFACTOR_BITS_FAST = 32
DEFAULT_THRESHOLD = 3
DEFAULT_NUM_SHARES = 5
LARGE_N = int(os.environ.get("VSS_LARGE_N", "100"))
LARGE_T = int(os.environ.get("VSS_LARGE_T", "30"))

RUN_PERFORMANCE_TESTS = os.environ.get("RUN_PERFORMANCE_TESTS", "0") == "1"

FIXED_SEED = bytes(range(32))


# --- Helper Functions ---


def make_config(**overrides: Any) -> VSSConfig:
    """VSSConfig sized for tests, with the small-parameter warnings silenced."""
    options: dict[str, Any] = {
        "q_bits": TEST_Q_BITS_FAST,
        "cofactor_bits": TEST_COFACTOR_BITS_FAST,
        "max_attempts": 200_000,
    }
    options.update(overrides)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", SecurityWarning)
        warnings.simplefilter("ignore", RuntimeWarning)
        return VSSConfig(**options)


def seeded_rng(seed: Optional[bytes] = None) -> Randomizer:
    return create_secure_deterministic_rng(seed or FIXED_SEED)


def deal(
    parameters: Parameters,
    secret: int,
    threshold: int = DEFAULT_THRESHOLD,
    num_shares: int = DEFAULT_NUM_SHARES,
    rng: Optional[Randomizer] = None,
) -> tuple[CommitmentSet, list[Share]]:
    """Run an honest dealer and return (commitments, shares)."""
    dealer = Dealer(parameters, rng=rng or seeded_rng())
    return dealer.share(secret, num_shares, threshold)


# --- Pytest Fixtures ---


@pytest.fixture
def toy_params() -> Parameters:
    return TOY_PARAMS


@pytest.fixture
def fast_config() -> VSSConfig:
    return make_config()


@pytest.fixture(scope="session")
def fast_params() -> Parameters:
    """A generated group with a 32-bit q, shared by the whole session."""
    generator = ParameterGenerator(make_config(), rng=seeded_rng())
    params = generator.generate()
    test_logger.info("Session parameters: q=%d bits, p=%d bits", params.q.bit_length(), params.p.bit_length())
    return params


@pytest.fixture
def deterministic_rng() -> Randomizer:
    return seeded_rng()


@pytest.fixture
def fast_secret(fast_params: Parameters) -> mpz:
    return mpz(secrets.randbelow(int(fast_params.q)))


@pytest.fixture
def fast_sharing(fast_params: Parameters, fast_secret: mpz) -> tuple[CommitmentSet, list[Share]]:
    return deal(fast_params, int(fast_secret), rng=dvss.secure_random)


@pytest.fixture
def toy_sharing(toy_params: Parameters) -> tuple[CommitmentSet, list[Share]]:
    """The reference scenario: q=101, t=3, n=5, secret=42."""
    return deal(toy_params, 42)


# --- Pytest Hooks ---


def pytest_configure(config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "performance: mark test as a performance benchmark (skipped by default)")
    config.addinivalue_line("markers", "security: mark test as specifically security-related")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "properties: mark test as a property-based test (requires Hypothesis)")


def pytest_collection_modifyitems(config, items) -> None:  # noqa: ARG001
    """Skip performance tests unless they are requested."""
    if not RUN_PERFORMANCE_TESTS:
        skip_performance = pytest.mark.skip(reason="Performance tests not requested (set RUN_PERFORMANCE_TESTS=1)")
        for item in items:
            if "performance" in item.keywords:
                item.add_marker(skip_performance)
