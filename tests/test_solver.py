import numpy as np
import pytest

from lio_frontend.factors import (B, BetweenBiasFactor, Factor, Gaussian, ImuFactor,
                                  PriorFactor, V, X)
from lio_frontend.preintegration import PreintegratedImu, PreintegrationParams
from lio_frontend.so3 import exp_so3
from lio_frontend.solver import IncrementalSmoother
from lio_frontend.state import ImuBias, NavState, Pose3


def test_gaussian_from_covariance():
    cov = np.array([[0.04, 0.01, 0.0], [0.01, 0.09, 0.0], [0.0, 0.0, 0.01]])
    noise = Gaussian.from_covariance(cov)
    np.testing.assert_allclose(noise.sqrt_info.T @ noise.sqrt_info, np.linalg.inv(cov))
    np.testing.assert_allclose(noise.covariance(), cov, atol=1e-12)


def test_gaussian_from_sigmas():
    noise = Gaussian.from_sigmas([0.5, 2.0])
    np.testing.assert_allclose(noise.whiten(np.array([1.0, 1.0])), [2.0, 0.5])
    assert Gaussian.isotropic(3, 0.1).dim == 3


def test_pose_prior_residual_and_jacobian():
    prior = Pose3(exp_so3(np.array([0.1, 0.2, 0.3])), np.array([1.0, 2.0, 3.0]))
    factor = PriorFactor(X(0), prior, Gaussian.isotropic(6, 1.0))

    np.testing.assert_allclose(factor.unwhitened_error({X(0): prior}), np.zeros(6), atol=1e-12)
    np.testing.assert_allclose(factor.jacobians({X(0): prior})[0], np.eye(6), atol=1e-6)


def test_bias_between_jacobians_match_numeric():
    factor = BetweenBiasFactor(B(0), B(1), ImuBias(), Gaussian.isotropic(6, 1.0))
    values = {B(0): ImuBias(np.array([0.1, 0.0, 0.0]), np.zeros(3)),
              B(1): ImuBias(np.zeros(3), np.array([0.0, 0.2, 0.0]))}
    numeric = Factor.jacobians(factor, values)
    for analytic, expected in zip(factor.jacobians(values), numeric):
        np.testing.assert_allclose(analytic, expected, atol=1e-8)


def test_imu_factor_zero_at_prediction():
    pim = PreintegratedImu(PreintegrationParams.make_u(9.81))
    for _ in range(20):
        pim.integrate_measurement(np.array([0.5, 0.1, 9.7]), np.array([0.05, -0.02, 0.1]), 0.01)

    start = NavState(Pose3(exp_so3(np.array([0.1, 0.0, 0.4])), np.array([1.0, 0.0, 0.0])),
                     np.array([0.5, 0.0, 0.0]))
    bias = ImuBias()
    end = pim.predict(start, bias)
    factor = ImuFactor(X(0), V(0), X(1), V(1), B(0), pim)
    values = {X(0): start.pose, V(0): start.vel, X(1): end.pose, V(1): end.vel, B(0): bias}

    np.testing.assert_allclose(factor.unwhitened_error(values), np.zeros(9), atol=1e-10)
    blocks = factor.jacobians(values)
    assert [b.shape for b in blocks] == [(9, 6), (9, 3), (9, 6), (9, 3), (9, 6)]


def test_solver_rejects_duplicate_and_unknown_keys():
    smoother = IncrementalSmoother()
    smoother.update([PriorFactor(V(0), np.zeros(3), Gaussian.isotropic(3, 1.0))],
                    {V(0): np.zeros(3)})

    with pytest.raises(KeyError):
        smoother.add(values={V(0): np.ones(3)})
    with pytest.raises(KeyError):
        smoother.add([PriorFactor(V(1), np.zeros(3), Gaussian.isotropic(3, 1.0))])
    assert V(1) not in smoother


def test_solver_converges_to_prior_and_reports_marginal():
    smoother = IncrementalSmoother()
    smoother.update([PriorFactor(V(0), np.array([1.0, 2.0, 3.0]), Gaussian.isotropic(3, 0.5))],
                    {V(0): np.zeros(3)})

    np.testing.assert_allclose(smoother.calculate_estimate(V(0)), [1.0, 2.0, 3.0], atol=1e-6)
    np.testing.assert_allclose(smoother.marginal_covariance(V(0)), np.eye(3) * 0.25, rtol=1e-6)
    assert smoother.error() == pytest.approx(0.0, abs=1e-9)


def test_solver_fuses_two_pose_priors():
    target = Pose3(exp_so3(np.array([0.0, 0.0, 0.2])), np.array([2.0, 0.0, 0.0]))
    noise = Gaussian.isotropic(6, 0.1)
    smoother = IncrementalSmoother()
    smoother.update([PriorFactor(X(0), Pose3(), noise), PriorFactor(X(0), target, noise)],
                    {X(0): Pose3()})
    smoother.update()
    smoother.update()

    result = smoother.calculate_estimate(X(0))
    np.testing.assert_allclose(result.pos, [1.0, 0.0, 0.0], atol=1e-2)
    np.testing.assert_allclose(result.boxminus(Pose3())[0:3], [0.0, 0.0, 0.1], atol=1e-3)
    np.testing.assert_allclose(np.diag(smoother.marginal_covariance(X(0))), [0.005] * 6, rtol=1e-2)


def test_solver_reset_drops_everything():
    smoother = IncrementalSmoother()
    smoother.update([PriorFactor(V(0), np.zeros(3), Gaussian.isotropic(3, 1.0))],
                    {V(0): np.zeros(3)})
    smoother.reset()
    assert V(0) not in smoother
    assert smoother.factors == []
    with pytest.raises(KeyError):
        smoother.marginal_covariance(V(0))
