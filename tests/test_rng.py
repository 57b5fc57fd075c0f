"""Tests for plasmodyn.rng — per-host random streams and checkpointing."""

import numpy as np
import pytest

from plasmodyn.rng import (
    RandomSource,
    create_rng_hierarchy,
    get_host_rng,
    restore_rng_state,
    rng_state_snapshot,
)


class TestCreateRngHierarchy:
    def test_returns_correct_keys(self):
        rngs = create_rng_hierarchy(42, n_hosts=4)
        assert 'global' in rngs
        for i in range(4):
            assert f'host_{i}' in rngs
        assert len(rngs) == 4 + 1

    def test_streams_are_independent(self):
        rngs = create_rng_hierarchy(42, n_hosts=3)
        vals = {name: rng.random() for name, rng in rngs.items()}
        assert len(set(vals.values())) == len(vals)

    def test_reproducibility(self):
        rngs1 = create_rng_hierarchy(7, n_hosts=3)
        rngs2 = create_rng_hierarchy(7, n_hosts=3)
        for name in rngs1:
            np.testing.assert_array_equal(rngs1[name].random(50), rngs2[name].random(50))

    def test_zero_hosts(self):
        rngs = create_rng_hierarchy(42, n_hosts=0)
        assert list(rngs) == ['global']

    def test_adding_hosts_keeps_existing_streams(self):
        """Spawned children depend on position, not on the total count."""
        rngs_3 = create_rng_hierarchy(42, n_hosts=3)
        rngs_8 = create_rng_hierarchy(42, n_hosts=8)
        for i in range(3):
            np.testing.assert_array_equal(
                rngs_3[f'host_{i}'].random(20), rngs_8[f'host_{i}'].random(20))


class TestGetHostRng:
    def test_valid_host(self):
        rngs = create_rng_hierarchy(42, n_hosts=2)
        assert get_host_rng(rngs, 1) is rngs['host_1']

    def test_missing_host(self):
        rngs = create_rng_hierarchy(42, n_hosts=2)
        with pytest.raises(KeyError):
            get_host_rng(rngs, 5)


class TestRandomSource:
    def test_returns_python_scalars(self):
        rand = RandomSource(np.random.default_rng(0))
        assert isinstance(rand.gaussian(0.0, 1.0), float)
        assert isinstance(rand.gamma(2.0, 3.0), float)
        assert isinstance(rand.uniform(35), int)

    def test_uniform_range(self):
        rand = RandomSource(np.random.default_rng(1))
        draws = [rand.uniform(5) for _ in range(500)]
        assert min(draws) == 0
        assert max(draws) == 4

    def test_gamma_mean(self):
        rand = RandomSource(np.random.default_rng(2))
        draws = [rand.gamma(4.0, 2.5) for _ in range(4000)]
        assert np.mean(draws) == pytest.approx(10.0, rel=0.05)

    def test_zero_sd_gaussian_is_mean(self):
        rand = RandomSource(np.random.default_rng(3))
        assert rand.gaussian(1.5, 0.0) == 1.5

    def test_same_generator_same_draws(self):
        a = RandomSource(np.random.default_rng(9))
        b = RandomSource(np.random.default_rng(9))
        assert [a.gaussian(0, 1) for _ in range(5)] == [b.gaussian(0, 1) for _ in range(5)]


class TestSnapshotRestore:
    def test_restore_replays_draws(self):
        rngs = create_rng_hierarchy(42, n_hosts=2)
        rngs['host_0'].random(10)
        snap = rng_state_snapshot(rngs)
        expected = {name: rng.random(5) for name, rng in rngs.items()}

        restore_rng_state(rngs, snap)
        for name, rng in rngs.items():
            np.testing.assert_array_equal(rng.random(5), expected[name])

    def test_restore_unknown_stream(self):
        rngs = create_rng_hierarchy(42, n_hosts=1)
        snap = rng_state_snapshot(create_rng_hierarchy(42, n_hosts=3))
        with pytest.raises(KeyError):
            restore_rng_state(rngs, snap)
