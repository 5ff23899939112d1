import numpy as np

from lio_frontend.config import PipelineConfig
from lio_frontend.imu_integrator import DualImuIntegrator
from lio_frontend.preintegration import PreintegratedImu, PreintegrationParams
from lio_frontend.so3 import exp_so3
from lio_frontend.state import ImuBias, NavState, Pose3
from lio_frontend.types import ImuSample

G = 9.80511


def _integrate(pim, acc, gyr, n=100, dt=0.01):
    for _ in range(n):
        pim.integrate_measurement(np.asarray(acc, dtype=np.float64),
                                  np.asarray(gyr, dtype=np.float64), dt)
    return pim


def test_params_from_config():
    params = PreintegrationParams.from_config(PipelineConfig())
    np.testing.assert_allclose(params.gravity, [0.0, 0.0, -G])
    np.testing.assert_allclose(np.diag(params.acc_cov), [3.9939570888238808e-03 ** 2] * 3)


def test_stationary_prediction_stays_put():
    pim = _integrate(PreintegratedImu(PreintegrationParams.make_u(G)), [0.0, 0.0, G], [0.0] * 3)
    state = pim.predict(NavState(), ImuBias())

    assert abs(pim.delta_t - 1.0) < 1e-12
    np.testing.assert_allclose(state.pos, np.zeros(3), atol=1e-9)
    np.testing.assert_allclose(state.vel, np.zeros(3), atol=1e-9)
    np.testing.assert_allclose(state.rot, np.eye(3), atol=1e-12)


def test_constant_acceleration():
    pim = _integrate(PreintegratedImu(PreintegrationParams.make_u(G)), [1.0, 0.0, G], [0.0] * 3)
    state = pim.predict(NavState(vel=np.array([0.0, 2.0, 0.0])), ImuBias())

    np.testing.assert_allclose(state.vel, [1.0, 2.0, 0.0], atol=1e-9)
    np.testing.assert_allclose(state.pos, [0.5, 2.0, 0.0], atol=1e-9)


def test_constant_rotation_rate():
    pim = _integrate(PreintegratedImu(PreintegrationParams.make_u(G)), [0.0, 0.0, G], [0.0, 0.0, 0.5])
    np.testing.assert_allclose(pim.delta_R, exp_so3(np.array([0.0, 0.0, 0.5])), atol=1e-12)


def test_non_positive_dt_is_ignored():
    pim = PreintegratedImu(PreintegrationParams.make_u(G))
    pim.integrate_measurement(np.ones(3), np.ones(3), 0.0)
    pim.integrate_measurement(np.ones(3), np.ones(3), -0.01)
    assert pim.delta_t == 0.0
    np.testing.assert_array_equal(pim.delta_v, np.zeros(3))


def test_covariance_grows_and_stays_symmetric():
    pim = PreintegratedImu(PreintegrationParams.from_config(PipelineConfig()))
    _integrate(pim, [0.0, 0.0, G], [0.1, 0.0, 0.0], n=10)
    cov_short = pim.covariance().copy()
    _integrate(pim, [0.0, 0.0, G], [0.1, 0.0, 0.0], n=10)
    cov = pim.covariance()

    np.testing.assert_allclose(cov, cov.T, atol=1e-15)
    assert np.all(np.diag(cov) > np.diag(cov_short))
    assert np.all(np.linalg.eigvalsh(cov) > 0)


def test_bias_correction_matches_reintegration():
    params = PreintegrationParams.make_u(G)
    acc = [0.3, -0.2, G]
    gyr = [0.0, 0.0, 0.0]
    new_bias = ImuBias(acc=np.array([0.01, 0.02, -0.01]), gyr=np.zeros(3))

    pim = _integrate(PreintegratedImu(params), acc, gyr)
    reference = _integrate(PreintegratedImu(params, new_bias), acc, gyr)

    delta_R, delta_p, delta_v = pim.corrected_deltas(new_bias)
    np.testing.assert_allclose(delta_p, reference.delta_p, atol=1e-12)
    np.testing.assert_allclose(delta_v, reference.delta_v, atol=1e-12)
    np.testing.assert_allclose(delta_R, reference.delta_R, atol=1e-12)


def test_gyro_bias_correction_first_order():
    params = PreintegrationParams.make_u(G)
    acc = [0.3, -0.2, G]
    gyr = [0.1, 0.2, -0.3]
    new_bias = ImuBias(acc=np.zeros(3), gyr=np.array([1e-3, -2e-3, 1e-3]))

    pim = _integrate(PreintegratedImu(params), acc, gyr)
    reference = _integrate(PreintegratedImu(params, new_bias), acc, gyr)

    delta_R, delta_p, delta_v = pim.corrected_deltas(new_bias)
    np.testing.assert_allclose(delta_R, reference.delta_R, atol=1e-5)
    np.testing.assert_allclose(delta_v, reference.delta_v, atol=1e-4)
    np.testing.assert_allclose(delta_p, reference.delta_p, atol=1e-4)


def test_copy_is_independent():
    pim = _integrate(PreintegratedImu(PreintegrationParams.make_u(G)), [0.0, 0.0, G], [0.0] * 3, n=5)
    other = pim.copy()
    _integrate(pim, [1.0, 0.0, G], [0.0] * 3, n=5)

    assert other.delta_t < pim.delta_t
    np.testing.assert_allclose(other.delta_v, [0.0, 0.0, G * 0.05])


def test_reset_sets_bias():
    pim = _integrate(PreintegratedImu(PreintegrationParams.make_u(G)), [0.0, 0.0, G], [0.0] * 3, n=5)
    bias = ImuBias(acc=np.array([0.1, 0.0, 0.0]))
    pim.reset_integration_and_set_bias(bias)

    assert pim.delta_t == 0.0
    np.testing.assert_array_equal(pim.bias_hat.acc, bias.acc)
    bias.acc[0] = 5.0
    assert pim.bias_hat.acc[0] == 0.1


# ─────────────────────────────────────────────────────────────
#  Dual integrator
# ─────────────────────────────────────────────────────────────

def _samples(times, acc=(0.0, 0.0, G)):
    return [ImuSample(timestamp=t, acc=np.array(acc), gyr=np.zeros(3)) for t in times]


def test_first_sample_uses_default_dt():
    integrator = DualImuIntegrator(PreintegrationParams.make_u(G), imu_rate=200.0)
    for imu in _samples([1.0, 1.01, 1.03]):
        integrator.integrate_windowed(imu)

    assert abs(integrator.windowed.delta_t - 0.035) < 1e-12
    assert integrator.last_time_windowed == 1.03
    assert integrator.fast.delta_t == 0.0
    assert integrator.last_time_fast == -1.0


def test_accumulators_are_independent():
    integrator = DualImuIntegrator(PreintegrationParams.make_u(G), imu_rate=100.0)
    for imu in _samples([0.0, 0.01, 0.02]):
        integrator.integrate_fast(imu)
        integrator.integrate_windowed(imu)

    integrator.reset_windowed(ImuBias())
    assert integrator.windowed.delta_t == 0.0
    assert abs(integrator.fast.delta_t - 0.03) < 1e-12


def test_repropagate_restarts_fast_accumulator():
    integrator = DualImuIntegrator(PreintegrationParams.make_u(G), imu_rate=100.0)
    for imu in _samples([0.0, 0.01, 0.02, 0.03]):
        integrator.integrate_fast(imu)

    bias = ImuBias(gyr=np.array([0.0, 0.0, 0.01]))
    integrator.repropagate_fast(_samples([0.02, 0.03]), bias)

    assert abs(integrator.fast.delta_t - 0.02) < 1e-12
    np.testing.assert_array_equal(integrator.fast.bias_hat.gyr, bias.gyr)
    # the fast clock keeps following the live stream
    assert integrator.last_time_fast == 0.03


def test_repropagate_continues_from_preceding_sample():
    integrator = DualImuIntegrator(PreintegrationParams.make_u(G), imu_rate=100.0)
    integrator.repropagate_fast(_samples([0.02, 0.03]), ImuBias(), last_time=0.0)
    # first dt spans the gap to the last dropped sample, not 1 / imu_rate
    assert abs(integrator.fast.delta_t - 0.03) < 1e-12


def test_predict_from_rotated_state():
    pim = _integrate(PreintegratedImu(PreintegrationParams.make_u(G)), [1.0, 0.0, 0.0], [0.0] * 3)
    R = exp_so3(np.array([np.pi / 2, 0.0, 0.0]))  # body z points along world -y
    state = pim.predict(NavState(Pose3(R)), ImuBias())
    # body +x stays world +x, gravity is not compensated by the measured force
    np.testing.assert_allclose(state.vel, [1.0, 0.0, -G], atol=1e-9)
