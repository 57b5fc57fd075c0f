"""Tests for plasmodyn.molineaux — multi-variant infection dynamics.

Acceptance criteria:
  - Day 0 reports the seed density without growth
  - Densities are never negative and never a residual below 1e-5
  - A zero variant only reappears via pending promotion on an even day
  - The variant collection never shrinks and never exceeds 64 slots
  - With unit multiplication factors and no immune pressure, density
    decays at the closed-form switching-loss rate
  - Checkpoint/restore continues bit-identically
"""

import io
import math

import numpy as np
import pytest

from plasmodyn.checkpoint import (
    CheckpointReader,
    CheckpointWriter,
    read_infection,
    write_infection,
)
from plasmodyn.config import MolineauxSection
from plasmodyn.molineaux import (
    CASE_SPECIFIC_DATA,
    INITIAL_DENSITY,
    K_C,
    K_M,
    Q,
    Q_POW,
    S_PROB,
    Distribution,
    MolineauxInfection,
    MolineauxParams,
    Variant,
    gamma_shape_scale,
    sample_critical_densities,
    sample_multiplication_factors,
)
from plasmodyn.rng import RandomSource
from plasmodyn.types import EXTINCTION_THRESHOLD, MAX_VARIANTS


class StubRandom:
    """Deterministic RandomSource stand-in that records its calls."""

    def __init__(self, gaussians=(), gammas=(), uniforms=()):
        self.gaussians = list(gaussians)
        self.gammas = list(gammas)
        self.uniforms = list(uniforms)
        self.calls = []

    def gaussian(self, mean, sd):
        self.calls.append(('gaussian', mean, sd))
        return self.gaussians.pop(0) if self.gaussians else mean

    def gamma(self, shape, scale):
        self.calls.append(('gamma', shape, scale))
        return self.gammas.pop(0) if self.gammas else shape * scale

    def uniform(self, n):
        self.calls.append(('uniform', n))
        return self.uniforms.pop(0) if self.uniforms else 0


# ═══════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════

@pytest.fixture
def params() -> MolineauxParams:
    return MolineauxParams.from_config(MolineauxSection())


def make_infection(seed: int, params: MolineauxParams) -> MolineauxInfection:
    return MolineauxInfection(params, RandomSource(np.random.default_rng(seed)))


def unit_infection(initial_density: float = INITIAL_DENSITY) -> MolineauxInfection:
    """Unit multiplication factors, critical densities too large to matter."""
    return MolineauxInfection(
        MolineauxParams(), None,
        multiplication_factors=np.ones(MAX_VARIANTS),
        critical_densities=(1e12, 1e12),
        initial_density=initial_density,
    )


# ═══════════════════════════════════════════════════════════════════════
# CREATION
# ═══════════════════════════════════════════════════════════════════════

class TestCreation:
    def test_initial_state(self, params):
        inf = make_infection(1, params)
        assert inf.n_variants == 1
        assert inf.variants[0].density == INITIAL_DENSITY
        assert inf.density == 0.0
        assert inf.cumulative_exposure == 0.0
        assert inf.transcending_summation == 0.0
        assert not inf.lagged_transcending.any()

    def test_multiplication_factors_at_least_one(self, params):
        inf = make_infection(2, params)
        assert inf.multiplication_factors.shape == (MAX_VARIANTS,)
        assert np.all(inf.multiplication_factors >= 1.0)

    def test_draws_below_one_are_redrawn(self):
        rand = StubRandom(gaussians=[0.5, -3.0, 20.0])
        m = sample_multiplication_factors(MolineauxParams(), rand)
        assert m[0] == 20.0
        assert np.all(m[1:] == 16.0)
        assert len(rand.calls) == MAX_VARIANTS + 2

    def test_gamma_reparameterisation(self):
        shape, scale = gamma_shape_scale(16.0, 10.4)
        assert shape * scale == pytest.approx(16.0)
        assert shape * scale ** 2 == pytest.approx(10.4 ** 2)

    def test_gamma_multiplication_factors(self):
        section = MolineauxSection(multi_factor_gamma=True)
        params = MolineauxParams.from_config(section)
        rand = StubRandom()
        sample_multiplication_factors(params, rand)
        kinds = {c[0] for c in rand.calls}
        assert kinds == {'gamma'}
        _, shape, scale = rand.calls[0]
        assert shape == pytest.approx(16.0 ** 2 / 10.4 ** 2)
        assert scale == pytest.approx(10.4 ** 2 / 16.0)

    def test_pairwise_critical_densities(self):
        rand = StubRandom(uniforms=[3])
        pstar_c, pstar_m = sample_critical_densities(MolineauxParams(), rand)
        assert rand.calls == [('uniform', 35)]
        assert pstar_c == pytest.approx(K_C * 23760)
        assert pstar_m == pytest.approx(K_M * 366)

    def test_pairwise_sample_comes_from_table(self, params):
        inf = make_infection(3, params)
        local_max = CASE_SPECIFIC_DATA[:, 1] * K_C
        duration = CASE_SPECIFIC_DATA[:, 0] * K_M
        idx = np.flatnonzero(np.isclose(local_max, inf.pstar_c))
        assert len(idx) >= 1
        assert np.any(np.isclose(duration[idx], inf.pstar_m))

    def test_independent_critical_densities(self):
        section = MolineauxSection(
            pairwise_pstar_sample=False,
            mean_local_max_density=4.0, sd_local_max_density=0.5,
            mean_diff_pos_days=2.3, sd_diff_pos_days=0.2,
        )
        params = MolineauxParams.from_config(section)
        assert not params.pairwise_pstar_sample
        rand = StubRandom()
        inf = MolineauxInfection(params, rand)
        assert inf.pstar_c == pytest.approx(K_C * 4.0 ** 10)
        assert inf.pstar_m == pytest.approx(K_M * 2.3 ** 10)
        # 64 multiplication factors first, then the two critical densities
        assert len(rand.calls) == MAX_VARIANTS + 2
        assert rand.calls[-2] == ('gaussian', 4.0, 0.5)

    def test_independent_draws_raised_to_tenth_power(self):
        section = MolineauxSection(
            pairwise_pstar_sample=False,
            mean_local_max_density=4.0, sd_local_max_density=0.5,
            mean_diff_pos_days=2.3, sd_diff_pos_days=0.2,
        )
        params = MolineauxParams.from_config(section)
        rand = StubRandom(gaussians=[4.5, 3.0])
        pstar_c, pstar_m = sample_critical_densities(params, rand)
        assert pstar_c == pytest.approx(0.2 * 4.5 ** 10)
        assert pstar_c == pytest.approx(681012.58, rel=1e-6)
        assert pstar_m == pytest.approx(K_M * 3.0 ** 10)
        assert rand.calls == [('gaussian', 4.0, 0.5), ('gaussian', 2.3, 0.2)]

    def test_independent_gamma_critical_density(self):
        dist = Distribution.from_moments(4.0, 0.5, use_gamma=True)
        assert dist.use_gamma
        assert dist.a * dist.b == pytest.approx(4.0)

    def test_same_seed_same_infection(self, params):
        a = make_infection(7, params)
        b = make_infection(7, params)
        np.testing.assert_array_equal(a.multiplication_factors, b.multiplication_factors)
        assert (a.pstar_c, a.pstar_m) == (b.pstar_c, b.pstar_m)

    def test_bad_factor_length(self):
        with pytest.raises(ValueError):
            MolineauxInfection(MolineauxParams(), None,
                               multiplication_factors=np.ones(3),
                               critical_densities=(1.0, 1.0))


# ═══════════════════════════════════════════════════════════════════════
# DENSITY UPDATE
# ═══════════════════════════════════════════════════════════════════════

class TestUpdateDensity:
    def test_day_zero_bootstrap(self, params):
        inf = make_infection(1, params)
        extinct = inf.update_density(0.5, 0)
        assert not extinct
        assert inf.density == INITIAL_DENSITY
        assert inf.cumulative_exposure == INITIAL_DENSITY

    def test_day_zero_sets_growth_rate(self, params):
        inf = make_infection(1, params)
        inf.update_density(1.0, 0)
        assert inf.variants[0].growth_rate > 0.0

    def test_density_is_sum_of_variants(self, params):
        inf = make_infection(4, params)
        for day in range(60):
            if inf.update_density(1.0, day):
                break
            if day > 0:
                assert inf.density == pytest.approx(
                    sum(v.density for v in inf.variants), rel=1e-12)

    def test_cumulative_exposure_accumulates(self, params):
        inf = make_infection(5, params)
        total = 0.0
        for day in range(20):
            inf.update_density(1.0, day)
            total += inf.density
        assert inf.cumulative_exposure == pytest.approx(total, rel=1e-12)

    def test_strong_drug_kills(self, params):
        inf = make_infection(6, params)
        inf.update_density(1.0, 0)
        assert inf.update_density(1e-9, 1)
        assert inf.density <= EXTINCTION_THRESHOLD

    def test_growth_over_two_days(self):
        inf = unit_infection()
        inf.update_density(1.0, 0)
        g = inf.variants[0].growth_rate
        inf.update_density(1.0, 1)
        assert inf.variants[0].density == pytest.approx(INITIAL_DENSITY * g)
        inf.update_density(1.0, 2)
        assert inf.variants[0].density == pytest.approx(INITIAL_DENSITY * g * g)


class TestTrajectoryProperties:
    @pytest.mark.parametrize("seed", [11, 12, 13])
    def test_non_negative_and_floored(self, params, seed):
        inf = make_infection(seed, params)
        for day in range(150):
            extinct = inf.update_density(1.0, day)
            assert inf.density >= 0.0
            for v in inf.variants:
                assert v.density == 0.0 or v.density >= EXTINCTION_THRESHOLD
                assert v.pending_density >= 0.0
            if extinct:
                break

    @pytest.mark.parametrize("seed", [21, 22])
    def test_variant_count_never_decreases(self, params, seed):
        inf = make_infection(seed, params)
        previous = inf.n_variants
        for day in range(150):
            extinct = inf.update_density(1.0, day)
            assert inf.n_variants >= previous
            assert inf.n_variants <= MAX_VARIANTS
            previous = inf.n_variants
            if extinct:
                break
        assert previous > 1

    @pytest.mark.parametrize("seed", [31, 32])
    def test_zero_variant_only_returns_via_promotion(self, params, seed):
        inf = make_infection(seed, params)
        for day in range(150):
            before = [(v.density, v.pending_density) for v in inf.variants]
            extinct = inf.update_density(1.0, day)
            for i, (density, pending) in enumerate(before):
                if density == 0.0 and inf.variants[i].density > 0.0:
                    assert day % 2 == 0
                    assert pending > 0.0
            if extinct:
                break

    def test_emerging_variants_added_on_even_days_only(self, params):
        inf = make_infection(41, params)
        previous = inf.n_variants
        for day in range(100):
            if inf.update_density(1.0, day):
                break
            if inf.n_variants > previous:
                assert day % 2 == 0
            previous = inf.n_variants


class TestSelectionCutoff:
    def test_suppressed_variant_not_selected(self):
        inf = unit_infection()
        inf.variants[0].specific_summation = 1e6
        inf.update_density(1.0, 0)

        # S_0 < 0.1: variant 0 gets no switched-in parasites and is floored
        assert inf.variants[0].growth_rate == 0.0
        assert inf.n_variants >= 2

        base = inf.variants[0].specific_summation / 30.0
        s0 = 1.0 / (1.0 + base ** 3)
        sigma_qs = Q_POW[0] * s0 + Q_POW[1:].sum()
        p1 = Q_POW[1] / sigma_qs
        assert inf.variants[1].pending_density == pytest.approx(
            S_PROB * p1 * INITIAL_DENSITY, rel=1e-6)


class TestSwitchingLossScenario:
    """Unit multiplication factors, survival factor 1, no immune pressure.

    Only the fraction of switching parasites lost to unexpressed slots
    (all below the extinction threshold) leaves the infection, so variant 0
    retains r = (1 − sProb) + sProb × p_0 per two-day cycle.
    """

    D0 = 0.002

    @staticmethod
    def retention() -> float:
        p0 = Q_POW[0] / Q_POW.sum()
        return (1.0 - S_PROB) + S_PROB * p0

    def test_geometric_decay(self):
        inf = unit_infection(self.D0)
        r = self.retention()
        for day in range(201):
            assert not inf.update_density(1.0, day)
            if day % 2 == 0:
                assert inf.density == pytest.approx(self.D0 * r ** (day // 2), rel=1e-5)
        assert inf.n_variants == 1

    def test_half_life(self):
        inf = unit_infection(self.D0)
        half_life = 2.0 * math.log(2.0) / -math.log(self.retention())
        crossed = None
        for day in range(int(half_life) + 20):
            inf.update_density(1.0, day)
            if inf.density <= self.D0 / 2.0:
                crossed = day
                break
        assert crossed is not None
        assert abs(crossed - half_life) <= 2.0

    def test_retention_value(self):
        p0 = (1.0 - Q) / (1.0 - Q ** MAX_VARIANTS)
        assert self.retention() == pytest.approx(1.0 - S_PROB * (1.0 - p0))


# ═══════════════════════════════════════════════════════════════════════
# CHECKPOINTING
# ═══════════════════════════════════════════════════════════════════════

class TestCheckpoint:
    def _roundtrip(self, inf):
        buf = io.BytesIO()
        write_infection(CheckpointWriter(buf), inf)
        buf.seek(0)
        return read_infection(CheckpointReader(buf))

    def test_restored_type_and_state(self, params):
        inf = make_infection(51, params)
        for day in range(25):
            inf.update_density(1.0, day)
        restored = self._roundtrip(inf)
        assert isinstance(restored, MolineauxInfection)
        assert restored.density == inf.density
        assert restored.cumulative_exposure == inf.cumulative_exposure
        assert restored.n_variants == inf.n_variants
        assert (restored.pstar_c, restored.pstar_m) == (inf.pstar_c, inf.pstar_m)
        np.testing.assert_array_equal(restored.multiplication_factors,
                                      inf.multiplication_factors)
        np.testing.assert_array_equal(restored.lagged_transcending,
                                      inf.lagged_transcending)

    @pytest.mark.parametrize("n_before", [0, 7, 30])
    def test_continuation_is_bit_identical(self, params, n_before):
        reference = make_infection(61, params)
        interrupted = make_infection(61, params)

        for day in range(n_before):
            reference.update_density(1.0, day)
            interrupted.update_density(1.0, day)
        resumed = self._roundtrip(interrupted)

        for day in range(n_before, n_before + 60):
            ext_a = reference.update_density(0.9, day)
            ext_b = resumed.update_density(0.9, day)
            assert ext_a == ext_b
            assert reference.density == resumed.density
            assert [v.density for v in reference.variants] == \
                [v.density for v in resumed.variants]
            if ext_a:
                break

    def test_zero_variant_is_compact(self):
        zero_buf, full_buf = io.BytesIO(), io.BytesIO()
        Variant().write(CheckpointWriter(zero_buf))
        Variant(density=3.0, growth_rate=1.5).write(CheckpointWriter(full_buf))
        assert len(zero_buf.getvalue()) < len(full_buf.getvalue())

        zero_buf.seek(0)
        restored = Variant.read(CheckpointReader(zero_buf))
        assert restored.is_zero()

    def test_variant_with_only_lagged_history_is_kept(self):
        v = Variant()
        v.lagged_density[2] = 5.0
        assert not v.is_zero()
        buf = io.BytesIO()
        v.write(CheckpointWriter(buf))
        buf.seek(0)
        restored = Variant.read(CheckpointReader(buf))
        np.testing.assert_array_equal(restored.lagged_density, v.lagged_density)
