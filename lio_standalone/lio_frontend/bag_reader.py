"""ROS1 bag file reader using the rosbags library (no ROS install needed).

Parses sensor_msgs/PointCloud2, sensor_msgs/Imu and nav_msgs/Odometry
messages from .bag files. Point clouds keep every driver field (ring,
time, t, intensity, ...) in a numpy structured array so the projector can
decide how to interpret them.
"""
import numpy as np
from pathlib import Path

from rosbags.rosbag1 import Reader
from rosbags.typesys import Stores, get_typestore
from tqdm import tqdm

from .types import ImuSample, OdometrySample, RawScan


# Numpy dtype mapping for PointField datatypes
_POINTFIELD_NP_DTYPES = {
    1: np.uint8,
    2: np.int8,
    3: np.uint16,
    4: np.int16,
    5: np.uint32,
    6: np.int32,
    7: np.float32,
    8: np.float64,
}


def _stamp_to_sec(stamp) -> float:
    return stamp.sec + stamp.nanosec * 1e-9


def _pointcloud2_dtype(msg) -> np.dtype:
    """Structured dtype covering every scalar field of a PointCloud2."""
    names = []
    formats = []
    offsets = []
    for f in msg.fields:
        if f.datatype not in _POINTFIELD_NP_DTYPES or f.name in names:
            continue
        base = np.dtype(_POINTFIELD_NP_DTYPES[f.datatype])
        if msg.is_bigendian:
            base = base.newbyteorder('>')
        names.append(f.name)
        formats.append(base if f.count <= 1 else (base, f.count))
        offsets.append(f.offset)
    return np.dtype({'names': names, 'formats': formats,
                     'offsets': offsets, 'itemsize': msg.point_step})


def parse_pointcloud2(msg) -> RawScan:
    """Parse a PointCloud2 message into a RawScan."""
    names = {f.name for f in msg.fields}
    if not {'x', 'y', 'z'} <= names:
        raise ValueError("PointCloud2 missing x/y/z fields")

    n_points = msg.width * msg.height
    dtype = _pointcloud2_dtype(msg)
    data = bytes(msg.data)
    if n_points == 0:
        points = np.zeros(0, dtype=dtype)
    elif msg.row_step == msg.width * msg.point_step:
        points = np.frombuffer(data, dtype=dtype, count=n_points).copy()
    else:
        rows = [np.frombuffer(data, dtype=dtype, count=msg.width, offset=r * msg.row_step)
                for r in range(msg.height)]
        points = np.concatenate(rows)

    return RawScan(header_time=_stamp_to_sec(msg.header.stamp),
                   points=points, is_dense=bool(msg.is_dense))


def parse_imu(msg) -> ImuSample:
    """Parse a sensor_msgs/Imu message into an ImuSample."""
    acc = np.array([
        msg.linear_acceleration.x,
        msg.linear_acceleration.y,
        msg.linear_acceleration.z
    ])
    gyr = np.array([
        msg.angular_velocity.x,
        msg.angular_velocity.y,
        msg.angular_velocity.z
    ])
    q = msg.orientation
    orientation = np.array([q.x, q.y, q.z, q.w])
    return ImuSample(timestamp=_stamp_to_sec(msg.header.stamp), acc=acc, gyr=gyr,
                     orientation=orientation)


def parse_odometry(msg) -> OdometrySample:
    """Parse a nav_msgs/Odometry message. covariance[0] == 1 marks a degenerate solution."""
    p = msg.pose.pose.position
    q = msg.pose.pose.orientation
    return OdometrySample(
        timestamp=_stamp_to_sec(msg.header.stamp),
        position=np.array([p.x, p.y, p.z]),
        orientation=np.array([q.x, q.y, q.z, q.w]),
        degenerate=int(round(msg.pose.covariance[0])) == 1,
    )


def read_bag(bag_path: str, lidar_topic: str, imu_topic: str,
             correction_topic: str = None):
    """Read a ROS1 bag file and yield sensor data chronologically.

    Args:
        bag_path: Path to the .bag file.
        lidar_topic: Topic name for PointCloud2 messages.
        imu_topic: Topic name for IMU messages.
        correction_topic: Optional topic name for correction Odometry messages.

    Yields:
        Tuples of ('lidar', RawScan), ('imu', ImuSample) or
        ('odom', OdometrySample), sorted by timestamp.
    """
    typestore = get_typestore(Stores.ROS1_NOETIC)
    bag = Path(bag_path)

    all_msgs = []

    with Reader(bag) as reader:
        msg_count = reader.message_count
        for connection, timestamp, rawdata in tqdm(
            reader.messages(), total=msg_count,
            desc="Reading bag", unit="msg", dynamic_ncols=True,
        ):
            topic = connection.topic
            if topic == lidar_topic:
                msg = typestore.deserialize_ros1(rawdata, connection.msgtype)
                scan = parse_pointcloud2(msg)
                all_msgs.append(('lidar', scan.header_time, scan))
            elif topic == imu_topic:
                msg = typestore.deserialize_ros1(rawdata, connection.msgtype)
                imu = parse_imu(msg)
                all_msgs.append(('imu', imu.timestamp, imu))
            elif correction_topic and topic == correction_topic:
                msg = typestore.deserialize_ros1(rawdata, connection.msgtype)
                odom = parse_odometry(msg)
                all_msgs.append(('odom', odom.timestamp, odom))

    # Merge and sort by timestamp
    all_msgs.sort(key=lambda x: x[1])

    for msg_type, _, data in all_msgs:
        yield msg_type, data
