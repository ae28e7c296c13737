"""Tests for the noise engine, DP mechanisms and category bounds."""

from __future__ import annotations

import math
import warnings

import numpy as np
import pytest

from pdp_sec.config import get_security_config
from pdp_sec.constants import ErrorCodes
from pdp_sec.exceptions import EmptyInputError, InvalidInputError, InvalidParameterError
from pdp_sec.privacy import (
    CategoryBoundsRegistry,
    EpsilonAdvisoryWarning,
    NoiseEngine,
    anonymize_records,
    laplace_mechanism,
    private_mean,
    sample_laplace,
    validate_epsilon,
)

from conftest import FixedRandom, make_services


class TestLaplace:
    def test_midpoint_draw_gives_zero_noise(self) -> None:
        engine = NoiseEngine(FixedRandom([0.5]))
        assert engine.sample_laplace(3.0) == 0.0

    def test_inverse_cdf_values(self) -> None:
        engine = NoiseEngine(FixedRandom([0.75, 0.25]))
        assert engine.sample_laplace(2.0) == pytest.approx(-2.0 * math.log(2))
        assert engine.sample_laplace(2.0) == pytest.approx(2.0 * math.log(2))

    def test_zero_draw_is_redrawn(self) -> None:
        source = FixedRandom([0.0, 0.5])
        engine = NoiseEngine(source)

        assert engine.sample_laplace(1.0) == 0.0
        assert source.calls == 2

    def test_samples_are_finite(self) -> None:
        values = [sample_laplace(1.0) for _ in range(1000)]
        assert all(math.isfinite(v) for v in values)

    def test_variance_shrinks_with_epsilon(self) -> None:
        noisy_low = [laplace_mechanism(0.0, 0.1) for _ in range(1000)]
        noisy_high = [laplace_mechanism(0.0, 10.0) for _ in range(1000)]

        assert np.var(noisy_low) > np.var(noisy_high)

    def test_mechanism_scale_is_sensitivity_over_epsilon(self) -> None:
        engine = NoiseEngine(FixedRandom([0.75]))
        result = engine.laplace_mechanism(10.0, epsilon=0.5, sensitivity=2.0)
        assert result == pytest.approx(10.0 - 4.0 * math.log(2))

    @pytest.mark.parametrize("epsilon", [0, -1, float("nan"), float("inf"), True, "1"])
    def test_rejects_bad_epsilon(self, epsilon) -> None:
        with pytest.raises(InvalidParameterError) as exc_info:
            laplace_mechanism(5.0, epsilon)
        assert exc_info.value.error_code == ErrorCodes.INVALID_PARAMETER

    def test_rejects_non_positive_sensitivity(self) -> None:
        with pytest.raises(InvalidParameterError):
            laplace_mechanism(5.0, 1.0, sensitivity=0)


class TestGaussian:
    def test_box_muller_unit_sample(self) -> None:
        engine = NoiseEngine(FixedRandom([1 - math.exp(-0.5), 0.0]))
        assert engine.sample_gaussian() == pytest.approx(1.0)

    def test_sigma_calibration(self) -> None:
        engine = NoiseEngine(FixedRandom([1 - math.exp(-0.5), 0.0]))
        delta = 1e-5
        expected_sigma = math.sqrt(2 * math.log(1.25 / delta))

        assert engine.gaussian_mechanism(0.0, 1.0, delta) == pytest.approx(expected_sigma)

    @pytest.mark.parametrize("delta", [0, 1, -0.1, 1.5])
    def test_rejects_delta_outside_unit_interval(self, delta) -> None:
        engine = NoiseEngine()
        with pytest.raises(InvalidParameterError):
            engine.gaussian_mechanism(0.0, 1.0, delta)

    def test_engine_delta_is_the_default(self) -> None:
        engine = NoiseEngine(FixedRandom([1 - math.exp(-0.5), 0.0]), delta=1e-3)
        expected_sigma = math.sqrt(2 * math.log(1.25 / 1e-3))

        assert engine.gaussian_mechanism(0.0, 1.0) == pytest.approx(expected_sigma)

    def test_configured_delta_when_engine_has_none(self) -> None:
        engine = NoiseEngine(FixedRandom([1 - math.exp(-0.5), 0.0]))
        expected_sigma = math.sqrt(2 * math.log(1.25 / get_security_config().dp_delta))

        assert engine.gaussian_mechanism(0.0, 1.0) == pytest.approx(expected_sigma)

    def test_services_engine_uses_config_delta(self) -> None:
        services = make_services(FixedRandom([1 - math.exp(-0.5), 0.0]), dp_delta=0.01)
        expected_sigma = math.sqrt(2 * math.log(1.25 / 0.01))

        assert services.noise.delta == 0.01
        assert services.noise.gaussian_mechanism(0.0, 1.0) == pytest.approx(expected_sigma)


class TestPrivateMean:
    def test_zero_noise_returns_true_mean(self) -> None:
        engine = NoiseEngine(FixedRandom([0.5]))
        assert engine.private_mean([1.0, 2.0, 3.0], 1.0, 0.0, 10.0) == pytest.approx(2.0)

    def test_sensitivity_uses_bounds_over_n(self) -> None:
        engine = NoiseEngine(FixedRandom([0.75]))
        result = engine.private_mean([1.0, 2.0, 3.0], 1.0, 0.0, 10.0)
        assert result == pytest.approx(2.0 - (10.0 / 3) * math.log(2))

    def test_empty_input(self) -> None:
        with pytest.raises(EmptyInputError) as exc_info:
            private_mean([], 1.0, 0.0, 10.0)
        assert exc_info.value.error_code == ErrorCodes.EMPTY_INPUT

    def test_empty_input_checked_before_epsilon(self) -> None:
        with pytest.raises(EmptyInputError):
            private_mean([], -1.0, 0.0, 10.0)

    @pytest.mark.parametrize("low,high", [(10.0, 10.0), (10.0, 0.0)])
    def test_rejects_inverted_bounds(self, low, high) -> None:
        with pytest.raises(InvalidParameterError):
            private_mean([1.0, 2.0], 1.0, low, high)


class TestValidateEpsilon:
    def test_normal_range_is_silent(self) -> None:
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            assert validate_epsilon(1.0) is True

    def test_large_epsilon_warns(self) -> None:
        with pytest.warns(EpsilonAdvisoryWarning, match="weak privacy"):
            assert validate_epsilon(50.0, context="test") is True

    def test_tiny_epsilon_warns(self) -> None:
        with pytest.warns(EpsilonAdvisoryWarning, match="significant noise"):
            assert validate_epsilon(0.001) is True

    @pytest.mark.parametrize("epsilon", [0, -0.5, None, "abc", float("nan")])
    def test_invalid_epsilon_raises(self, epsilon) -> None:
        with pytest.raises(InvalidParameterError):
            validate_epsilon(epsilon)


class TestAnonymizeRecords:
    def test_drops_named_fields(self) -> None:
        rows = [{"name": "Ada", "steps": 9000}, {"name": "Lin", "steps": 7000, "city": "X"}]

        result = anonymize_records(rows, ["name", "city"])

        assert result == [{"steps": 9000}, {"steps": 7000}]
        assert rows[0]["name"] == "Ada"

    def test_rejects_non_mapping_rows(self) -> None:
        with pytest.raises(InvalidInputError):
            anonymize_records([{"a": 1}, "not-a-row"], ["a"])

    def test_rejects_string_drop_fields(self) -> None:
        with pytest.raises(InvalidInputError):
            anonymize_records([{"a": 1}], "a")


class TestCategoryBounds:
    def setup_method(self) -> None:
        self.registry = CategoryBoundsRegistry({"health": (0.0, 20000.0)})

    def test_registered_bounds(self) -> None:
        assert self.registry.estimate("health", [7000.0, 9000.0]) == (0.0, 20000.0)

    def test_registered_bounds_widen_to_observed(self) -> None:
        assert self.registry.estimate("health", [-5.0, 25000.0]) == (-5.0, 25000.0)

    def test_unknown_category_pads_observed_range(self) -> None:
        low, high = self.registry.estimate("sleep", [10.0, 20.0])
        assert low == pytest.approx(9.0)
        assert high == pytest.approx(21.0)

    def test_constant_values_still_give_valid_bounds(self) -> None:
        low, high = self.registry.estimate("sleep", [0.0, 0.0])
        assert (low, high) == (-1.0, 1.0)

    def test_register_rejects_inverted_bounds(self) -> None:
        with pytest.raises(InvalidParameterError):
            self.registry.register("bad", 5.0, 5.0)

    def test_estimate_rejects_empty(self) -> None:
        with pytest.raises(EmptyInputError):
            self.registry.estimate("health", [])
