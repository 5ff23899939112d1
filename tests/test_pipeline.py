import numpy as np

from lio_frontend.pipeline import LIOFrontend
from lio_frontend.types import OdometrySample


def _correction(t):
    return OdometrySample(timestamp=t, position=np.zeros(3))


def test_fast_odometry_feeds_projector_and_trajectory(config, imu_stream):
    received = []
    frontend = LIOFrontend(config, odometry_callback=received.append)
    stream = imu_stream(0.0, 1.0, rate=100.0)

    for imu in stream[:30]:
        assert frontend.imu_handler(imu) is None
    frontend.correction_handler(_correction(0.05))
    frontend.correction_handler(_correction(0.25))
    assert frontend.estimator.done_first_opt

    for imu in stream[30:]:
        frontend.imu_handler(imu)

    n = len(stream) - 30
    assert len(received) == n
    assert len(frontend.trajectory) == n
    assert len(frontend.projection.odom_queue) == n
    assert frontend.projection.odom_queue[-1] is received[-1]
    # a level, motionless platform stays near the correction
    np.testing.assert_allclose(frontend.trajectory[-1][1], np.zeros(3), atol=0.05)


def test_imu_reaches_both_consumers(config, imu_stream):
    frontend = LIOFrontend(config)
    for imu in imu_stream(0.0, 0.1, rate=100.0):
        frontend.imu_handler(imu)

    assert len(frontend.projection.imu_queue) == 11
    assert len(frontend.estimator.imu_que_opt) == 11
    assert frontend.trajectory == []


def test_cloud_callback_receives_published_scans(config, imu_stream, make_raw_scan):
    published = []
    frontend = LIOFrontend(config, cloud_callback=published.append)
    for imu in imu_stream(0.0, 1.0, rate=100.0):
        frontend.imu_handler(imu)

    xyz = [[5.0, 0.0, 0.0], [0.0, 5.0, 0.0]]
    returned = []
    for t in (0.1, 0.2, 0.3):
        returned += frontend.cloud_handler(make_raw_scan(t, xyz, [0, 1], [0.0, 0.05]))

    assert len(returned) == 1
    assert published == returned
    assert returned[0].header_time == 0.1
    assert len(returned[0].cloud_deskewed) == 2
