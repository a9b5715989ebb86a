# tests/test_dual_field_vss_performance.py
# Performance benchmarks; run with RUN_PERFORMANCE_TESTS=1.

import time

import pytest

from dual_field_vss import (
    Dealer,
    Parameters,
    ParameterGenerator,
    Player,
    VSSConfig,
    reconstruct_secret,
    secure_random,
    verify_share,
)
from tests.conftest import LARGE_N, LARGE_T, make_config, test_logger


@pytest.fixture(scope="module")
def production_params() -> Parameters:
    """Recommended-size group: 256-bit q inside a 2048-bit p."""
    start = time.perf_counter()
    params = ParameterGenerator(VSSConfig(workers=4)).generate()
    test_logger.info("Generated 2048-bit parameters in %.2fs", time.perf_counter() - start)
    return params


@pytest.mark.performance
def test_parameter_generation_scaling():
    for q_bits in (64, 128, 256):
        config = make_config(q_bits=q_bits, cofactor_bits=q_bits * 2)
        start = time.perf_counter()
        params = ParameterGenerator(config).generate()
        elapsed = time.perf_counter() - start
        assert params.q.bit_length() == q_bits
        test_logger.info("q=%d bits, p=%d bits generated in %.3fs", q_bits, params.p.bit_length(), elapsed)


@pytest.mark.performance
def test_share_and_verify_large_n(production_params: Parameters):
    secret = secure_random(int(production_params.q))
    dealer = Dealer(production_params, config=VSSConfig(workers=4, self_check=False))

    start = time.perf_counter()
    commitments, shares = dealer.share(secret, LARGE_N, LARGE_T)
    share_time = time.perf_counter() - start

    start = time.perf_counter()
    assert all(verify_share(s, commitments) for s in shares)
    verify_time = time.perf_counter() - start

    test_logger.info(
        "n=%d, t=%d: share %.3fs, verify all %.3fs (%.2f ms/share)",
        LARGE_N,
        LARGE_T,
        share_time,
        verify_time,
        1000 * verify_time / LARGE_N,
    )


@pytest.mark.performance
def test_batch_verify_and_reconstruct(production_params: Parameters):
    secret = secure_random(int(production_params.q))
    commitments, shares = Dealer(production_params).share(secret, LARGE_N, LARGE_T)
    player = Player(production_params, threshold=LARGE_T)

    start = time.perf_counter()
    all_valid, _ = player.batch_verify(shares, commitments)
    batch_time = time.perf_counter() - start
    assert all_valid

    start = time.perf_counter()
    assert reconstruct_secret(shares[:LARGE_T], LARGE_T, production_params.q) == secret
    reconstruct_time = time.perf_counter() - start
    test_logger.info("batch verify %.3fs, reconstruct %.3fs", batch_time, reconstruct_time)
