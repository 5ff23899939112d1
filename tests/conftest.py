import numpy as np
import pytest

from lio_frontend.config import PipelineConfig
from lio_frontend.types import ImuSample, RawScan


def _raw_scan(header_time, xyz, rings, times=None, intensity=None,
              time_field='time', is_dense=True):
    xyz = np.asarray(xyz, dtype=np.float64).reshape(-1, 3)
    n = len(xyz)
    fields = [('x', 'f8'), ('y', 'f8'), ('z', 'f8'), ('intensity', 'f4')]
    if rings is not None:
        fields.append(('ring', 'i4'))
    if times is not None:
        fields.append((time_field, 'u4' if time_field == 't' else 'f8'))
    points = np.zeros(n, dtype=fields)
    points['x'] = xyz[:, 0]
    points['y'] = xyz[:, 1]
    points['z'] = xyz[:, 2]
    points['intensity'] = np.arange(n) if intensity is None else intensity
    if rings is not None:
        points['ring'] = rings
    if times is not None:
        points[time_field] = times
    return RawScan(header_time=header_time, points=points, is_dense=is_dense)


@pytest.fixture
def make_raw_scan():
    """Factory for RawScan with float64 xyz, intensity = arrival index by default."""
    return _raw_scan


@pytest.fixture
def config():
    return PipelineConfig(n_scan=16, horizon_scan=1800, imu_rate=100.0)


@pytest.fixture
def imu_stream():
    """Factory for evenly spaced IMU samples with constant rates."""
    def _stream(t0, t1, rate=10.0, acc=(0.0, 0.0, 9.80511), gyr=(0.0, 0.0, 0.0)):
        n = int(round((t1 - t0) * rate)) + 1
        return [ImuSample(timestamp=t0 + i / rate, acc=np.array(acc, dtype=np.float64),
                          gyr=np.array(gyr, dtype=np.float64))
                for i in range(n)]
    return _stream
